import pytest

from app.core.exceptions import EntityNotFoundError
from app.models import ChurnSignal
from app.services.churn_service import (
    calculate_risk_level,
    analyze_churn_risk,
    detect_all_churn_signals,
    get_at_risk_buyers,
    get_buyer_churn_risk,
    get_churn_stats,
    resolve_churn_signal,
    resolve_on_purchase,
)


@pytest.mark.parametrize("days_since,interval,level,score", [
    (5, 10, "low", 0),
    (10, 10, "low", 0),
    (15, 10, "medium", 40),
    (20, 10, "high", 60),
    (30, 10, "critical", 80),
    (60, 10, "critical", 100),
])
def test_calculate_risk_level(days_since, interval, level, score):
    assert calculate_risk_level(days_since, interval) == (level, pytest.approx(score))


def test_risk_score_is_monotonic_in_overdue_ratio():
    ratios = [r / 20 for r in range(0, 120)]
    scores = [calculate_risk_level(r * 10, 10)[1] for r in ratios]
    assert scores == sorted(scores)


def _lapsed_buyer(factory, category="Flower"):
    seller = factory.seller()
    buyer = factory.user()
    product = factory.product(seller, category=category)
    # Intervalle 10j, dernier achat il y a 50j: ratio 5
    factory.transaction(buyer, product, days_ago=60)
    factory.transaction(buyer, product, days_ago=50)
    return buyer, product


def test_analyze_lapsed_buyer(db, factory):
    buyer, _ = _lapsed_buyer(factory)

    risks = analyze_churn_risk(db, buyer.id)

    assert len(risks) == 1
    assert risks[0].category_name == "Flower"
    assert risks[0].avg_interval_days == 10
    assert risks[0].days_since_purchase == 50
    assert risks[0].risk_level == "critical"
    assert risks[0].risk_score == 100


def test_stored_prediction_interval_takes_precedence(db, factory):
    buyer, _ = _lapsed_buyer(factory)
    factory.prediction(buyer, avg_interval_days=40)

    risks = analyze_churn_risk(db, buyer.id)

    # 50 / 40 = 1.25
    assert risks[0].avg_interval_days == 40
    assert risks[0].risk_level == "low"


def test_on_time_buyer_has_no_risk(db, factory):
    seller = factory.seller()
    buyer = factory.user()
    product = factory.product(seller)
    factory.transaction(buyer, product, days_ago=20)
    factory.transaction(buyer, product, days_ago=5)

    assert analyze_churn_risk(db, buyer.id) == []


def test_detect_creates_then_updates(db, factory):
    buyer, _ = _lapsed_buyer(factory)

    assert detect_all_churn_signals(db) == {"signals_created": 1, "signals_updated": 0, "errors": 0}
    assert detect_all_churn_signals(db) == {"signals_created": 0, "signals_updated": 1, "errors": 0}
    assert db.query(ChurnSignal).count() == 1
    assert get_buyer_churn_risk(db, buyer.id) == 100


def test_stats_and_at_risk(db, factory):
    buyer, _ = _lapsed_buyer(factory)
    detect_all_churn_signals(db)

    stats = get_churn_stats(db)
    assert stats == {"total_at_risk": 1, "critical_count": 1, "high_count": 0, "medium_count": 0, "low_count": 0}

    at_risk = get_at_risk_buyers(db, min_risk_level="high")
    assert [entry["buyer_id"] for entry in at_risk] == [buyer.id]
    assert at_risk[0]["overall_risk_level"] == "critical"
    assert len(at_risk[0]["signals"]) == 1


def test_purchase_deactivates_signal(db, factory):
    buyer, _ = _lapsed_buyer(factory)
    detect_all_churn_signals(db)

    assert resolve_on_purchase(db, buyer.id, "Flower") == 1

    signal = db.query(ChurnSignal).one()
    assert signal.is_active is False
    assert signal.resolved_reason == "purchase_made"
    assert get_buyer_churn_risk(db, buyer.id) == 0
    assert get_churn_stats(db)["total_at_risk"] == 0


def test_manual_resolution(db, factory):
    _lapsed_buyer(factory)
    detect_all_churn_signals(db)
    signal = db.query(ChurnSignal).one()

    resolved = resolve_churn_signal(db, signal.id, "contacted")

    assert resolved.is_active is False
    assert resolved.resolved_reason == "contacted"
    with pytest.raises(EntityNotFoundError):
        resolve_churn_signal(db, 9999, "contacted")

import pytest

from app.core.weights import MatchWeights, DEFAULT_MATCH_WEIGHTS
from app.models import Match, Notification, Product, ProductView, PropensityScore, ShortlistItem
from app.services import matching_engine, propensity_service
from app.services.matching_engine import (
    NO_SIGNAL,
    FactorScore,
    bid_elasticity_adjustment,
    calculate_weighted_score,
    generate_insights,
    generate_matches_for_product,
    regenerate_all_matches,
    score_category,
    score_location,
    score_match,
)


def flower_history(factory):
    """Acheteur régulier en Flower: 5 transactions à 4.00/g dont 3 avec le même vendeur."""
    regular_seller = factory.seller(location="Denver, CO")
    other_seller = factory.seller()
    buyer = factory.user()
    regular_listing = factory.product(regular_seller)
    other_listing = factory.product(other_seller)
    for days_ago in (50, 30, 10):
        factory.transaction(buyer, regular_listing, days_ago=days_ago)
    for days_ago in (40, 20):
        factory.transaction(buyer, other_listing, days_ago=days_ago)
    return buyer, regular_seller


@pytest.fixture
def flower_buyer(factory):
    return flower_history(factory)


def test_flower_scenario_end_to_end(db, factory, flower_buyer):
    buyer, seller = flower_buyer
    product = factory.product(seller, price_per_unit=3.40, quantity_available=10.0)

    result = score_match(db, buyer.id, product.id)

    assert result.breakdown["category"] >= 80
    assert result.breakdown["price_fit"] == 100
    assert result.breakdown["relationship_history"] == 90
    assert result.breakdown["quantity_fit"] == 100
    assert result.score > 50
    assert result.weights_version == "match_v1"

    created = generate_matches_for_product(db, product.id)

    assert created == 1
    match = db.query(Match).filter(Match.buyer_id == buyer.id, Match.product_id == product.id).one()
    assert match.status == "pending"
    assert match.score == result.score
    assert set(match.breakdown) == set(DEFAULT_MATCH_WEIGHTS.as_dict())


def test_overdue_buyer_gets_urgent_insight(db, factory, flower_buyer):
    buyer, seller = flower_buyer
    factory.prediction(buyer, days_from_now=-10)
    product = factory.product(seller)

    result = score_match(db, buyer.id, product.id)

    assert result.breakdown["reorder_timing"] == 100
    urgent = [i for i in result.insights if i["type"] == "urgent"]
    assert any("overdue" in i["text"] for i in urgent)


def test_relationship_insight_mentions_count(db, factory, flower_buyer):
    buyer, seller = flower_buyer
    product = factory.product(seller)

    result = score_match(db, buyer.id, product.id)

    assert {"type": "positive", "text": "3 previous transactions with this seller"} in result.insights


def test_regeneration_is_idempotent(db, factory, flower_buyer):
    buyer, seller = flower_buyer
    product = factory.product(seller, price_per_unit=3.40)

    generate_matches_for_product(db, product.id)
    first = db.query(Match).one()
    generate_matches_for_product(db, product.id)

    matches = db.query(Match).all()
    assert len(matches) == 1
    assert matches[0].id == first.id
    db.refresh(product)
    assert product.match_count == 1


def test_cold_buyer_below_threshold(db, factory):
    seller = factory.seller()
    factory.user()
    product = factory.product(seller)

    assert generate_matches_for_product(db, product.id) == 0
    assert db.query(Match).count() == 0


def test_seller_never_matched_to_own_product(db, factory):
    seller = factory.seller(is_buyer=True)
    product = factory.product(seller)

    generate_matches_for_product(db, product.id)

    assert db.query(Match).filter(Match.buyer_id == seller.id).count() == 0


def test_hidden_product_is_skipped(db, factory, flower_buyer):
    _, seller = flower_buyer
    product = factory.product(seller, marketplace_visible=False)

    assert generate_matches_for_product(db, product.id) == 0


def test_unknown_pair_scores_zero(db):
    result = score_match(db, 999, 999)
    assert result.score == 0
    assert result.breakdown == {}


def test_cold_buyer_factors_and_no_signal(db, factory):
    seller = factory.seller()
    buyer = factory.user()
    product = factory.product(seller)

    result = score_match(db, buyer.id, product.id)

    assert all(0 <= v <= 100 for v in result.breakdown.values())
    assert result.breakdown["category"] == 30
    assert result.breakdown["reorder_timing"] == 40
    for name in ("price_fit", "quantity_fit", "location", "seller_reliability", "price_vs_market"):
        assert name in result.no_signal
        assert result.breakdown[name] == 50
    assert "category" not in result.no_signal
    assert "reorder_timing" not in result.no_signal


def test_category_tiers_below_transactions(db, factory):
    seller = factory.seller()
    product = factory.product(seller)
    bidder = factory.user()
    heavy_bidder = factory.user()
    shortlister = factory.user()
    viewer = factory.user()

    factory.bid(bidder, product, unit_price=3.0)
    for _ in range(3):
        factory.bid(heavy_bidder, product, unit_price=3.0)
    db.add(ShortlistItem(buyer_id=shortlister.id, product_id=product.id))
    db.add(ProductView(buyer_id=viewer.id, product_id=product.id))
    db.commit()

    assert score_category(db, bidder.id, "Flower") == FactorScore(55)
    assert score_category(db, heavy_bidder.id, "Flower") == FactorScore(70)
    assert score_category(db, shortlister.id, "Flower") == FactorScore(45)
    assert score_category(db, viewer.id, "Flower") == FactorScore(40)
    assert score_category(db, viewer.id, "Edibles") == FactorScore(30)
    assert score_category(db, viewer.id, None) == NO_SIGNAL


def test_aggressive_bidder_penalized_above_market(db, factory, flower_buyer):
    buyer, seller = flower_buyer
    for _ in range(3):
        factory.bid(buyer, factory.product(seller, price_per_unit=4.0), unit_price=3.2)

    baseline = matching_engine.score_price_fit(db, buyer.id, 4.0, "Flower")
    adjusted = matching_engine.score_price_fit(db, buyer.id, 4.0, "Flower", market_avg=3.8)

    assert baseline.value == 80
    assert adjusted.value == 70


@pytest.mark.parametrize("ratio,price,market,expected", [
    (0.80, 4.0, 3.8, -10),
    (0.90, 4.0, 3.8, -5),
    (0.95, 4.0, 3.8, 0),
    (1.00, 3.5, 3.8, 10),
    (0.98, 3.5, 3.8, 5),
    (0.80, 3.5, 3.8, 0),
])
def test_bid_elasticity_adjustment(ratio, price, market, expected):
    assert bid_elasticity_adjustment(ratio, price, market) == expected


@pytest.mark.parametrize("buyer_loc,seller_loc,expected", [
    ("Denver, CO", "denver, co", 100),
    ("Denver CO USA", "Aurora CO USA", 80),
    ("Denver, CO", "Boulder, CO", 60),
    ("Denver", "Miami", 30),
])
def test_score_location(buyer_loc, seller_loc, expected):
    assert score_location(buyer_loc, seller_loc).value == expected


def test_missing_location_has_no_signal():
    assert score_location(None, "Denver") == NO_SIGNAL


def test_weighted_score_of_neutral_factors():
    factors = {name: NO_SIGNAL for name in DEFAULT_MATCH_WEIGHTS.as_dict()}
    assert calculate_weighted_score(factors) == 50


def test_injected_weights_drive_score(db, factory, flower_buyer):
    buyer, seller = flower_buyer
    product = factory.product(seller)
    category_only = MatchWeights(
        version="category_only",
        category=1.0,
        price_fit=0.0,
        location=0.0,
        relationship_history=0.0,
        reorder_timing=0.0,
        quantity_fit=0.0,
        seller_reliability=0.0,
        price_vs_market=0.0,
        supply_demand=0.0,
        buyer_propensity=0.0,
    )

    result = score_match(db, buyer.id, product.id, weights=category_only)

    assert result.score == result.breakdown["category"] == 95
    assert result.weights_version == "category_only"


def test_failing_collaborator_degrades_single_factor(db, factory, flower_buyer, monkeypatch):
    buyer, seller = flower_buyer
    product = factory.product(seller, price_per_unit=3.40)

    def broken(*args, **kwargs):
        raise RuntimeError("propensity store down")

    monkeypatch.setattr(matching_engine, "get_propensity", broken)
    result = score_match(db, buyer.id, product.id)

    assert result.breakdown["buyer_propensity"] == 50
    assert "buyer_propensity" in result.no_signal
    assert result.breakdown["price_fit"] == 100


def test_insights_rules():
    breakdown = {
        "category": 95,
        "price_fit": 30,
        "location": 50,
        "relationship_history": 30,
        "reorder_timing": 90,
        "quantity_fit": 50,
        "seller_reliability": 0,
        "price_vs_market": 80,
        "supply_demand": 75,
        "buyer_propensity": 20,
    }

    insights = {(i.type, i.text) for i in generate_insights(breakdown)}

    assert ("positive", "Strong category purchase history") in insights
    assert ("warning", "Price higher than buyer typically pays") in insights
    assert ("urgent", "Buyer due to reorder soon") in insights
    assert ("urgent", "High demand category") in insights
    assert ("warning", "Lower engagement buyer") in insights
    assert not any("reliability" in text for _, text in insights)


def test_high_score_match_notifies_buyer(db, factory, flower_buyer):
    buyer, seller = flower_buyer
    buyer.location = "Denver, CO"
    db.commit()
    factory.prediction(buyer, days_from_now=-3)
    product = factory.product(seller, price_per_unit=3.40)

    generate_matches_for_product(db, product.id)
    match = db.query(Match).one()

    notifications = db.query(Notification).filter(Notification.user_id == buyer.id).all()
    assert match.score >= 70
    assert [n.type for n in notifications] == ["MATCH_SUGGESTION"]


def test_regenerate_all_counts_products(db, factory, flower_buyer):
    _, seller = flower_buyer
    factory.product(seller, price_per_unit=3.40)

    summary = regenerate_all_matches(db)

    # Les deux annonces de l'historique sont aussi actives
    assert summary["products_processed"] == 3
    assert summary["errors"] == 0
    assert summary["matches_created"] >= 1


def test_failed_cache_write_does_not_abort_product_batch(db, factory, monkeypatch):
    cold = factory.user()
    buyer, seller = flower_history(factory)
    product = factory.product(seller, price_per_unit=3.40)
    real_score_features = propensity_service.score_features

    def null_score_for_cold_buyers(features, *args, **kwargs):
        result = real_score_features(features, *args, **kwargs)
        if features.total_transactions == 0:
            result.overall_score = None
        return result

    monkeypatch.setattr(propensity_service, "score_features", null_score_for_cold_buyers)

    created = generate_matches_for_product(db, product.id, max_workers=1)

    assert created == 1
    assert db.query(Match).one().buyer_id == buyer.id
    assert db.get(Product, product.id).match_count == 1
    assert db.query(PropensityScore).filter(PropensityScore.buyer_id == cold.id).count() == 0


def test_failing_buyer_is_skipped_and_batch_continues(db, factory, monkeypatch):
    cold = factory.user()
    buyer, seller = flower_history(factory)
    product = factory.product(seller, price_per_unit=3.40)
    real_score_match = matching_engine.score_match

    def explode_for_cold(session, buyer_id, *args, **kwargs):
        if buyer_id == cold.id:
            session.add(Notification(user_id=buyer_id, type="MATCH_SUGGESTION", title="partial", body="x"))
            session.flush()
            raise RuntimeError("scoring blew up")
        return real_score_match(session, buyer_id, *args, **kwargs)

    monkeypatch.setattr(matching_engine, "score_match", explode_for_cold)

    assert generate_matches_for_product(db, product.id, max_workers=1) == 1
    assert db.query(Match).one().buyer_id == buyer.id
    assert db.query(Notification).filter(Notification.user_id == cold.id).count() == 0


def test_threaded_scoring_matches_inline(file_db, file_factory):
    file_factory.user()
    buyer, seller = flower_history(file_factory)
    other = file_factory.user()
    file_factory.transaction(other, file_factory.product(seller), days_ago=15)
    product = file_factory.product(seller, price_per_unit=3.40)

    inline_count = generate_matches_for_product(file_db, product.id, max_workers=1)
    inline = {m.buyer_id: (m.score, m.breakdown) for m in file_db.query(Match).all()}

    threaded_count = generate_matches_for_product(file_db, product.id, max_workers=4)
    file_db.expire_all()
    threaded = {m.buyer_id: (m.score, m.breakdown) for m in file_db.query(Match).all()}

    assert inline_count == threaded_count >= 1
    assert buyer.id in threaded
    assert threaded == inline
    assert file_db.get(Product, product.id).match_count == threaded_count

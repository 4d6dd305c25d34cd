from app.models import Match, ChurnSignal
from app.repositories.match_repository import MatchRepository
from app.services.matching_engine import MatchResult


def _match(db, buyer, product, score=75):
    match = MatchRepository(db).upsert(buyer.id, product.id, MatchResult(score=score, breakdown={"category": 80})).match
    db.commit()
    return match


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
    response = client.get("/v1/info")
    assert response.json()["name"] == "Deal Intelligence API"
    assert "X-Request-ID" in response.headers


def test_admin_routes_reject_non_admin(factory, as_user):
    buyer = factory.user()
    response = as_user(buyer).get("/v1/intelligence/churn/stats")
    assert response.status_code == 403


def test_generate_matches_for_product(client, factory):
    product = factory.product(factory.seller())

    response = client.post("/v1/intelligence/matches/generate", json={"product_id": product.id})

    assert response.status_code == 200
    assert response.json() == {"product_id": product.id, "matches_created": 0}


def test_generate_matches_failure_is_500(client, monkeypatch):
    from app.routers import intelligence

    def broken(session):
        raise RuntimeError("boom")

    monkeypatch.setattr(intelligence, "regenerate_all_matches", broken)

    response = client.post("/v1/intelligence/matches/generate", json={})

    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to generate matches"


def test_background_generation_without_queue_is_503(client, monkeypatch):
    from app.routers import intelligence

    def unavailable(product_id=None):
        raise ConnectionError("redis down")

    monkeypatch.setattr(intelligence, "enqueue_match_generation", unavailable)

    response = client.post("/v1/intelligence/matches/generate", json={"background": True})

    assert response.status_code == 503


def test_churn_endpoints(client, db, factory):
    buyer = factory.user()
    db.add(ChurnSignal(
        buyer_id=buyer.id,
        category_name="Flower",
        days_since_purchase=30,
        avg_interval_days=10,
        risk_level="critical",
        risk_score=80,
    ))
    db.commit()

    assert client.get("/v1/intelligence/churn/stats").json()["critical_count"] == 1
    at_risk = client.get("/v1/intelligence/churn/at-risk", params={"min_risk_level": "high"}).json()
    assert at_risk[0]["buyer_id"] == buyer.id
    assert client.get("/v1/intelligence/churn/at-risk", params={"min_risk_level": "extreme"}).status_code == 400

    signal_id = at_risk[0]["signals"][0]["id"]
    resolved = client.post(f"/v1/intelligence/churn/{signal_id}/resolve", json={"reason": "called"})
    assert resolved.json() == {"id": signal_id, "is_active": False, "resolved_reason": "called"}
    assert client.post("/v1/intelligence/churn/999/resolve", json={}).status_code == 404


def test_seller_score_endpoint(client, factory):
    seller = factory.seller()
    buyer = factory.user()

    response = client.get(f"/v1/intelligence/sellers/{seller.id}/score")

    assert response.status_code == 200
    assert response.json()["has_data"] is False
    assert response.json()["transactions_scored"] == 0
    assert client.get(f"/v1/intelligence/sellers/{buyer.id}/score").status_code == 404


def test_propensity_endpoint(client, factory):
    buyer = factory.user()

    response = client.get(f"/v1/intelligence/propensity/{buyer.id}")

    assert response.status_code == 200
    assert response.json()["overall_score"] == 0
    assert client.get("/v1/intelligence/propensity/999").status_code == 404


def test_predictions_and_market_endpoints(client, factory):
    factory.prediction(factory.user(transaction_count=2), days_from_now=2)

    assert len(client.get("/v1/intelligence/predictions/upcoming").json()) == 1
    assert client.get("/v1/intelligence/predictions/overdue").json() == []
    assert client.get("/v1/intelligence/market/trends").json() == []
    assert client.get("/v1/intelligence/market/Flower").json()["active_buyers"] == 1


def test_buyer_lists_and_views_own_matches(db, factory, as_user):
    buyer = factory.user()
    product = factory.product(factory.seller())
    match = _match(db, buyer, product)
    api = as_user(buyer)

    listed = api.get("/v1/matches").json()
    assert [m["id"] for m in listed] == [match.id]

    viewed = api.get(f"/v1/matches/{match.id}")
    assert viewed.status_code == 200
    assert viewed.json()["status"] == "viewed"


def test_buyer_cannot_see_other_matches(db, factory, as_user):
    owner = factory.user()
    intruder = factory.user()
    match = _match(db, owner, factory.product(factory.seller()))

    assert as_user(intruder).get(f"/v1/matches/{match.id}").status_code == 404


def test_dismiss_closed_match_conflicts(db, factory, as_user):
    buyer = factory.user()
    match = _match(db, buyer, factory.product(factory.seller()))
    api = as_user(buyer)

    assert api.post(f"/v1/matches/{match.id}/dismiss").json()["status"] == "rejected"
    assert api.post(f"/v1/matches/{match.id}/dismiss").status_code == 409
    assert db.get(Match, match.id).status == "rejected"


def test_scheduled_jobs_listing(client, monkeypatch):
    from app.routers import intelligence

    monkeypatch.setattr(intelligence, "get_scheduled_jobs_info", lambda: [
        {"id": "abc", "func_name": "app.jobs_intelligence.detect_churn_job", "interval": 86400},
    ])

    response = client.get("/v1/intelligence/jobs/scheduled")

    assert response.status_code == 200
    assert response.json()[0]["interval"] == 86400

"""
Router Intelligence - Déclencheurs admin et lectures du moteur.
Endpoints: /v1/intelligence/*
"""
from typing import Optional, List, Dict

import redis
from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.exceptions import EntityNotFoundError
from app.db.deps import get_db, get_admin_user
from app.jobs_intelligence import enqueue_match_generation
from app.scheduler import get_scheduled_jobs_info
from app.models.churn_signal import RISK_LEVELS
from app.models.user import User
from app.services.churn_service import get_at_risk_buyers, get_churn_stats, resolve_churn_signal
from app.services.market_context_service import get_market_context, get_market_trends
from app.services.matching_engine import generate_matches_for_product, regenerate_all_matches
from app.services.prediction_service import get_overdue_predictions, get_upcoming_predictions
from app.services.propensity_service import get_propensity, get_top_propensity_buyers
from app.services.seller_score_service import update_seller_score, get_top_rated_sellers

router = APIRouter(
    prefix="/v1/intelligence",
    tags=["intelligence"],
    dependencies=[Depends(get_admin_user)],
)


# Schemas
class GenerateMatchesRequest(BaseModel):
    product_id: Optional[int] = None
    background: bool = False


class ResolveSignalRequest(BaseModel):
    reason: str = "manual"


class SellerScoreResponse(BaseModel):
    seller_id: int
    fill_rate: float
    quality_score: float
    delivery_score: float
    pricing_score: float
    overall_score: float
    transactions_scored: int
    has_data: bool


class TopSellerResponse(BaseModel):
    seller_id: int
    overall_score: float
    transactions_scored: int

    class Config:
        from_attributes = True


@router.post("/matches/generate")
def trigger_match_generation(payload: GenerateMatchesRequest, db: Session = Depends(get_db)):
    """Génère les matches d'un produit, ou de tous les produits éligibles."""
    if payload.background:
        try:
            return enqueue_match_generation(payload.product_id)
        except Exception as e:
            logger.error(f"Failed to enqueue match generation: {e}")
            raise HTTPException(status_code=503, detail="Job queue unavailable")

    try:
        if payload.product_id is not None:
            created = generate_matches_for_product(db, payload.product_id)
            return {"product_id": payload.product_id, "matches_created": created}
        return regenerate_all_matches(db)
    except Exception as e:
        logger.error(f"Match generation failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to generate matches")


@router.get("/predictions/upcoming")
def upcoming_predictions(
    days: int = Query(7, ge=1, le=90),
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return get_upcoming_predictions(db, days=days, limit=limit)


@router.get("/predictions/overdue")
def overdue_predictions(limit: int = Query(20, ge=1, le=200), db: Session = Depends(get_db)):
    return get_overdue_predictions(db, limit=limit)


@router.get("/churn/at-risk")
def at_risk_buyers(
    min_risk_level: str = Query("medium"),
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    if min_risk_level not in RISK_LEVELS:
        raise HTTPException(status_code=400, detail=f"Invalid risk level: {min_risk_level}")
    return get_at_risk_buyers(db, min_risk_level=min_risk_level, limit=limit)


@router.get("/churn/stats")
def churn_stats(db: Session = Depends(get_db)):
    return get_churn_stats(db)


@router.post("/churn/{signal_id}/resolve")
def resolve_signal(signal_id: int, payload: ResolveSignalRequest, db: Session = Depends(get_db)):
    try:
        signal = resolve_churn_signal(db, signal_id, payload.reason)
    except EntityNotFoundError:
        raise HTTPException(status_code=404, detail="Churn signal not found")
    return {"id": signal.id, "is_active": signal.is_active, "resolved_reason": signal.resolved_reason}


@router.get("/sellers/top", response_model=List[TopSellerResponse])
def top_sellers(limit: int = Query(5, ge=1, le=50), db: Session = Depends(get_db)):
    return get_top_rated_sellers(db, limit=limit)


@router.get("/sellers/{seller_id}/score", response_model=SellerScoreResponse)
def seller_score(seller_id: int, db: Session = Depends(get_db)):
    """Recalcule et persiste le score du vendeur."""
    seller = db.get(User, seller_id)
    if not seller or not seller.is_seller:
        raise HTTPException(status_code=404, detail="Seller not found")
    result = update_seller_score(db, seller_id)
    return SellerScoreResponse(seller_id=seller_id, has_data=result.has_data, **result.to_dict())


@router.get("/propensity/top")
def top_propensity(limit: int = Query(10, ge=1, le=100), db: Session = Depends(get_db)):
    return get_top_propensity_buyers(db, limit=limit)


@router.get("/propensity/{buyer_id}")
def buyer_propensity(buyer_id: int, category: Optional[str] = None, db: Session = Depends(get_db)) -> Dict:
    if not db.get(User, buyer_id):
        raise HTTPException(status_code=404, detail="Buyer not found")
    return get_propensity(db, buyer_id, category).to_dict()


@router.get("/market/trends")
def market_trends(db: Session = Depends(get_db)):
    return get_market_trends(db)


@router.get("/market/{category}")
def market_context(category: str, db: Session = Depends(get_db)):
    return get_market_context(db, category)


@router.get("/jobs/scheduled")
def scheduled_jobs():
    """Jobs périodiques enregistrés dans rq-scheduler."""
    try:
        return get_scheduled_jobs_info()
    except redis.RedisError as e:
        logger.error(f"Scheduler unavailable: {e}")
        raise HTTPException(status_code=503, detail="Scheduler unavailable")

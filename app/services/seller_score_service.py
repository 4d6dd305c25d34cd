"""
Service Seller Score - Fiabilité vendeur à partir des outcomes de transactions.

Score global = pondération de:
- Fill rate: quantité livrée / commandée (30%)
- Qualité: % conforme aux attentes (30%)
- Livraison: % à l'heure (25%)
- Pricing: valeur moyenne vs marché de la catégorie (15%)
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.weights import SellerScoreWeights, DEFAULT_SELLER_WEIGHTS
from app.models.seller_score import SellerScore
from app.models.transaction import Transaction
from app.models.user import User
from app.services.market_context_service import average_transaction_value_for_category

# Écart de prix vs marché saturant le score pricing
PRICING_BAND = 0.15


@dataclass
class SellerScoreResult:
    fill_rate: float
    quality_score: float
    delivery_score: float
    pricing_score: float
    overall_score: float
    transactions_scored: int

    @property
    def has_data(self) -> bool:
        return self.transactions_scored > 0

    def to_dict(self) -> Dict:
        return asdict(self)


def _percent_true(values: List[Optional[bool]]) -> float:
    recorded = [v for v in values if v is not None]
    if not recorded:
        return 0.0
    return sum(1 for v in recorded if v) / len(recorded) * 100


def _fill_rate(transactions: List[Transaction]) -> float:
    ordered = 0.0
    delivered = 0.0
    for t in transactions:
        if t.quantity and t.quantity > 0 and t.actual_quantity_delivered is not None:
            ordered += t.quantity
            delivered += t.actual_quantity_delivered
    if ordered <= 0:
        return 0.0
    return max(0.0, min(100.0, delivered / ordered * 100))


def price_diff_to_score(price_diff: float) -> float:
    """
    Écart relatif vs marché -> score pricing.
    <= -15% = 100, >= +15% = 40, 70 au prix du marché, linéaire entre.
    """
    if price_diff <= -PRICING_BAND:
        return 100.0
    if price_diff < 0:
        return 70 + (abs(price_diff) / PRICING_BAND) * 30
    if price_diff >= PRICING_BAND:
        return 40.0
    return 70 - (price_diff / PRICING_BAND) * 30


def _pricing_score(session: Session, transactions: List[Transaction]) -> float:
    per_category: Dict[str, List[float]] = {}
    for t in transactions:
        category = t.product.category if t.product else None
        if category and t.total_value:
            per_category.setdefault(category, []).append(t.total_value)

    if not per_category:
        return 50.0

    weighted_sum = 0.0
    weight = 0
    for category, values in per_category.items():
        market_avg = average_transaction_value_for_category(session, category)
        if not market_avg:
            continue
        seller_avg = sum(values) / len(values)
        diff = (seller_avg - market_avg) / market_avg
        weighted_sum += price_diff_to_score(diff) * len(values)
        weight += len(values)

    return weighted_sum / weight if weight > 0 else 50.0


def calculate_seller_scores(
    session: Session,
    seller_id: int,
    weights: SellerScoreWeights = DEFAULT_SELLER_WEIGHTS,
) -> SellerScoreResult:
    """Calcule les sous-scores d'un vendeur. transactions_scored == 0 signifie 'pas de données'."""
    transactions = (
        session.query(Transaction)
        .filter(
            Transaction.seller_id == seller_id,
            or_(
                Transaction.actual_quantity_delivered.isnot(None),
                Transaction.delivery_on_time.isnot(None),
                Transaction.quality_as_expected.isnot(None),
            ),
        )
        .all()
    )

    if not transactions:
        return SellerScoreResult(0.0, 0.0, 0.0, 0.0, 0.0, 0)

    fill_rate = _fill_rate(transactions)
    quality = _percent_true([t.quality_as_expected for t in transactions])
    delivery = _percent_true([t.delivery_on_time for t in transactions])
    pricing = _pricing_score(session, transactions)

    overall = (
        fill_rate * weights.fill_rate
        + quality * weights.quality_score
        + delivery * weights.delivery_score
        + pricing * weights.pricing_score
    )

    return SellerScoreResult(
        fill_rate=round(fill_rate, 2),
        quality_score=round(quality, 2),
        delivery_score=round(delivery, 2),
        pricing_score=round(pricing, 2),
        overall_score=round(max(0.0, min(100.0, overall)), 2),
        transactions_scored=len(transactions),
    )


def update_seller_score(session: Session, seller_id: int) -> SellerScoreResult:
    """Recalcule, upsert le SellerScore et dénormalise avg_fulfillment_score sur le vendeur."""
    result = calculate_seller_scores(session, seller_id)

    score = session.query(SellerScore).filter(SellerScore.seller_id == seller_id).first()
    if not score:
        score = SellerScore(seller_id=seller_id)
        session.add(score)

    score.fill_rate = result.fill_rate
    score.quality_score = result.quality_score
    score.delivery_score = result.delivery_score
    score.pricing_score = result.pricing_score
    score.overall_score = result.overall_score
    score.transactions_scored = result.transactions_scored
    score.last_calculated_at = datetime.utcnow()

    seller = session.get(User, seller_id)
    if seller:
        seller.avg_fulfillment_score = result.overall_score

    session.commit()
    return result


def recalculate_all_seller_scores(session: Session) -> Dict[str, int]:
    seller_ids = [row.id for row in session.query(User.id).filter(User.is_seller.is_(True)).all()]

    updated = 0
    errors = 0
    for seller_id in seller_ids:
        try:
            update_seller_score(session, seller_id)
            updated += 1
        except Exception as e:
            session.rollback()
            errors += 1
            logger.error(f"Seller score failed for seller {seller_id}: {e}")

    return {"sellers_updated": updated, "errors": errors}


def get_top_rated_sellers(session: Session, limit: int = 5) -> List[SellerScore]:
    return (
        session.query(SellerScore)
        .filter(SellerScore.transactions_scored > 0)
        .order_by(SellerScore.overall_score.desc())
        .limit(limit)
        .all()
    )

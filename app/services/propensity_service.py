"""
Service Propensity - Score RFM de probabilité d'achat d'un acheteur.

Score global = pondération de:
- Récence du dernier achat (25%)
- Fréquence (20%)
- Montant (15%)
- Affinité catégorie (15%)
- Engagement sur les matches (25%)
puis pénalité churn (jusqu'à -30%) et bonus de retard de réassort (jusqu'à +20).

Cache read-through par (acheteur, catégorie ou "_all") avec TTL, plus
invalidation explicite à l'écriture d'une transaction.
"""
from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import PROPENSITY_TTL_HOURS
from app.core.weights import PropensityWeights, DEFAULT_PROPENSITY_WEIGHTS
from app.models.match import Match, MATCH_PENDING, MATCH_CONVERTED, REVIEWED_STATUSES
from app.models.prediction import Prediction
from app.models.product import Product
from app.models.propensity_score import PropensityScore, ALL_CATEGORIES
from app.models.transaction import Transaction
from app.models.user import User
from app.services.churn_service import get_buyer_churn_risk

# Acheteur sans achat: traité comme inactif depuis un an
NO_PURCHASE_DAYS = 365


@dataclass
class PropensityFeatures:
    days_since_last_purchase: int = NO_PURCHASE_DAYS
    days_since_last_match: Optional[int] = None
    total_transactions: int = 0
    transactions_last_30d: int = 0
    transactions_last_90d: int = 0
    avg_days_between_purchases: Optional[float] = None
    total_spend: float = 0.0
    avg_order_value: float = 0.0
    spend_last_30d: float = 0.0
    spend_last_90d: float = 0.0
    category_count: int = 0
    top_category_transactions: int = 0
    matches_reviewed: int = 0
    match_conversion_rate: float = 0.0
    pending_matches: int = 0
    churn_risk_score: float = 0.0
    overdue_reorder_days: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class PropensityResult:
    overall_score: float
    recency_score: float
    frequency_score: float
    monetary_score: float
    category_affinity: float
    engagement_score: float
    features: Dict = field(default_factory=dict)
    cached: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)


def _days(delta: timedelta) -> int:
    return int(delta.total_seconds() // 86400)


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def extract_features(session: Session, buyer_id: int, category: Optional[str] = None, now: Optional[datetime] = None) -> PropensityFeatures:
    """Vecteur de features brut (acheteur, catégorie optionnelle)."""
    now = now or datetime.utcnow()
    thirty_days_ago = now - timedelta(days=30)
    ninety_days_ago = now - timedelta(days=90)

    tx_query = (
        session.query(Transaction, Product.category)
        .join(Product, Product.id == Transaction.product_id)
        .filter(Transaction.buyer_id == buyer_id)
    )
    if category:
        tx_query = tx_query.filter(Product.category == category)
    rows = tx_query.order_by(Transaction.transaction_date.desc()).all()
    transactions = [t for t, _ in rows]

    f = PropensityFeatures()
    f.total_transactions = len(transactions)

    if transactions:
        f.days_since_last_purchase = max(0, _days(now - transactions[0].transaction_date))

    recent_30 = [t for t in transactions if t.transaction_date >= thirty_days_ago]
    recent_90 = [t for t in transactions if t.transaction_date >= ninety_days_ago]
    f.transactions_last_30d = len(recent_30)
    f.transactions_last_90d = len(recent_90)

    if len(transactions) >= 2:
        dates = sorted(t.transaction_date for t in transactions)
        intervals = [(b - a).total_seconds() / 86400 for a, b in zip(dates, dates[1:])]
        f.avg_days_between_purchases = sum(intervals) / len(intervals)

    f.total_spend = sum(t.total_value for t in transactions)
    f.avg_order_value = f.total_spend / len(transactions) if transactions else 0.0
    f.spend_last_30d = sum(t.total_value for t in recent_30)
    f.spend_last_90d = sum(t.total_value for t in recent_90)

    category_counts: Dict[str, int] = {}
    for _, cat in rows:
        if cat:
            category_counts[cat] = category_counts.get(cat, 0) + 1
    f.category_count = len(category_counts)
    f.top_category_transactions = max(category_counts.values(), default=0)

    matches = session.query(Match).filter(Match.buyer_id == buyer_id).all()
    reviewed = [m for m in matches if m.status in REVIEWED_STATUSES]
    f.matches_reviewed = len(reviewed)
    converted = sum(1 for m in matches if m.status == MATCH_CONVERTED)
    f.match_conversion_rate = converted / len(reviewed) if reviewed else 0.0
    f.pending_matches = sum(1 for m in matches if m.status == MATCH_PENDING)
    if reviewed:
        last_reviewed = max(m.updated_at or m.created_at for m in reviewed)
        f.days_since_last_match = max(0, _days(now - last_reviewed))

    f.churn_risk_score = get_buyer_churn_risk(session, buyer_id, category)

    pred_query = session.query(Prediction).filter(Prediction.buyer_id == buyer_id)
    if category:
        pred_query = pred_query.filter(Prediction.category_name == category)
    f.overdue_reorder_days = max(
        (max(0, _days(now - p.predicted_date)) for p in pred_query.all()),
        default=0,
    )

    return f


def score_features(features: PropensityFeatures, weights: PropensityWeights = DEFAULT_PROPENSITY_WEIGHTS) -> PropensityResult:
    recency = _clamp(100 - features.days_since_last_purchase / 180 * 100)

    frequency = min(100.0, features.total_transactions * 10)
    if features.transactions_last_30d > 0:
        frequency = min(100.0, frequency + 20)
    if features.transactions_last_90d > 2:
        frequency = min(100.0, frequency + 10)

    monetary = min(100.0, features.avg_order_value / 1000 * 50 + min(50.0, features.total_spend / 10000 * 50))

    affinity = min(100.0, features.top_category_transactions * 20 + features.category_count * 10)

    engagement = features.match_conversion_rate * 50
    if features.matches_reviewed > 0:
        engagement += 20
    if features.pending_matches > 0:
        engagement += 15
    engagement = min(100.0, engagement)

    overall = (
        recency * weights.recency
        + frequency * weights.frequency
        + monetary * weights.monetary
        + affinity * weights.category_affinity
        + engagement * weights.engagement
    )

    churn_penalty = features.churn_risk_score / 100 * 0.3
    overdue_boost = min(20.0, features.overdue_reorder_days / 7 * 5) if features.overdue_reorder_days > 0 else 0.0
    overall = _clamp(overall * (1 - churn_penalty) + overdue_boost)

    return PropensityResult(
        overall_score=round(overall, 2),
        recency_score=round(recency, 2),
        frequency_score=round(frequency, 2),
        monetary_score=round(monetary, 2),
        category_affinity=round(affinity, 2),
        engagement_score=round(engagement, 2),
        features=features.to_dict(),
    )


def calculate_and_store_propensity(
    session: Session, buyer_id: int, category: Optional[str] = None, commit: bool = True
) -> PropensityResult:
    """
    Recalcule et écrase l'entrée de cache (TTL relancé).

    L'écriture passe par un savepoint: un échec laisse la session utilisable.
    commit=False laisse le commit à l'appelant (scoring dans une transaction ouverte).
    """
    now = datetime.utcnow()
    result = score_features(extract_features(session, buyer_id, category, now=now))
    key = category or ALL_CATEGORIES

    with session.begin_nested():
        row = (
            session.query(PropensityScore)
            .filter(PropensityScore.buyer_id == buyer_id, PropensityScore.category_name == key)
            .first()
        )
        if not row:
            row = PropensityScore(buyer_id=buyer_id, category_name=key)
            session.add(row)

        row.overall_score = result.overall_score
        row.recency_score = result.recency_score
        row.frequency_score = result.frequency_score
        row.monetary_score = result.monetary_score
        row.category_affinity = result.category_affinity
        row.engagement_score = result.engagement_score
        row.features = result.features
        row.computed_at = now
        row.expires_at = now + timedelta(hours=PROPENSITY_TTL_HOURS)

    if commit:
        session.commit()
    return result


def _from_row(row: PropensityScore) -> PropensityResult:
    return PropensityResult(
        overall_score=row.overall_score,
        recency_score=row.recency_score,
        frequency_score=row.frequency_score,
        monetary_score=row.monetary_score,
        category_affinity=row.category_affinity,
        engagement_score=row.engagement_score,
        features=row.features or {},
        cached=True,
    )


def get_propensity(
    session: Session, buyer_id: int, category: Optional[str] = None, commit: bool = True
) -> PropensityResult:
    """Valeur en cache si non expirée, sinon recalcul."""
    key = category or ALL_CATEGORIES
    cached = (
        session.query(PropensityScore)
        .filter(PropensityScore.buyer_id == buyer_id, PropensityScore.category_name == key)
        .first()
    )
    if cached and cached.is_fresh():
        return _from_row(cached)
    return calculate_and_store_propensity(session, buyer_id, category, commit=commit)


def invalidate_propensity(session: Session, buyer_id: int) -> int:
    """Expire toutes les entrées de cache de l'acheteur. Le commit reste à l'appelant."""
    now = datetime.utcnow()
    rows = session.query(PropensityScore).filter(PropensityScore.buyer_id == buyer_id).all()
    for row in rows:
        row.expires_at = now
    return len(rows)


def calculate_all_propensities(session: Session) -> Dict[str, int]:
    buyer_ids = [row.id for row in session.query(User.id).filter(User.is_buyer.is_(True)).all()]

    calculated = 0
    errors = 0
    for buyer_id in buyer_ids:
        try:
            calculate_and_store_propensity(session, buyer_id)
            calculated += 1
        except Exception as e:
            session.rollback()
            errors += 1
            logger.error(f"Propensity failed for buyer {buyer_id}: {e}")

    return {"calculated": calculated, "errors": errors}


def get_top_propensity_buyers(session: Session, limit: int = 10) -> List[Dict]:
    rows = (
        session.query(PropensityScore, User)
        .join(User, User.id == PropensityScore.buyer_id)
        .filter(PropensityScore.category_name == ALL_CATEGORIES)
        .order_by(PropensityScore.overall_score.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "buyer_id": user.id,
            "buyer_email": user.email,
            "company_name": user.company_name,
            "propensity": _from_row(score).to_dict(),
        }
        for score, user in rows
    ]

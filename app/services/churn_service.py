"""
Service Churn - Détection des acheteurs en retard sur leur rythme d'achat.

ratio = jours depuis le dernier achat / intervalle habituel
- >= 3.0 : critical
- >= 2.0 : high
- >= 1.5 : medium
- >= 1.0 : low
Un signal n'est jamais supprimé: un nouvel achat le désactive.
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import MIN_TRANSACTIONS_FOR_PREDICTION
from app.core.exceptions import EntityNotFoundError
from app.models.churn_signal import ChurnSignal, RISK_LEVELS
from app.models.prediction import Prediction
from app.models.product import Product
from app.models.transaction import Transaction
from app.models.user import User

RESOLVED_ON_PURCHASE = "purchase_made"


@dataclass
class ChurnRisk:
    buyer_id: int
    category_name: Optional[str]
    last_purchase_date: datetime
    days_since_purchase: int
    avg_interval_days: int
    risk_level: str
    risk_score: int

    def to_dict(self) -> Dict:
        return asdict(self)


def calculate_risk_level(days_since: float, avg_interval: float) -> Tuple[str, float]:
    """Niveau + score (0-100), monotone dans le ratio de retard."""
    ratio = days_since / avg_interval

    if ratio >= 3:
        return "critical", min(100.0, 80 + (ratio - 3) * 10)
    if ratio >= 2:
        return "high", 60 + (ratio - 2) * 20
    if ratio >= 1.5:
        return "medium", 40 + (ratio - 1.5) * 40
    if ratio >= 1:
        return "low", (ratio - 1) * 80
    return "low", 0.0


def _whole_days(delta_seconds: float) -> int:
    return int(delta_seconds // 86400)


def _mean_interval(dates_desc: List[datetime]) -> int:
    total = sum(_whole_days((newer - older).total_seconds()) for newer, older in zip(dates_desc, dates_desc[1:]))
    return round(total / (len(dates_desc) - 1))


def analyze_churn_risk(session: Session, buyer_id: int, category: Optional[str] = None) -> List[ChurnRisk]:
    """Risques (score > 0) par catégorie achetée pour un acheteur."""
    query = (
        session.query(Transaction, Product.category)
        .join(Product, Product.id == Transaction.product_id)
        .filter(Transaction.buyer_id == buyer_id)
    )
    if category:
        query = query.filter(Product.category == category)
    rows = query.order_by(Transaction.transaction_date.desc()).all()

    if len(rows) < 2:
        return []

    groups: Dict[Optional[str], List[datetime]] = {}
    for transaction, cat in rows:
        groups.setdefault(cat, []).append(transaction.transaction_date)

    stored_intervals = {
        p.category_name: p.avg_interval_days
        for p in session.query(Prediction).filter(Prediction.buyer_id == buyer_id).all()
    }

    now = datetime.utcnow()
    risks = []
    for cat, dates in groups.items():
        if len(dates) < 2:
            continue

        avg_interval = stored_intervals.get(cat) or _mean_interval(dates)
        if avg_interval <= 0:
            continue

        days_since = _whole_days((now - dates[0]).total_seconds())
        level, score = calculate_risk_level(days_since, avg_interval)
        if score <= 0:
            continue

        risks.append(ChurnRisk(
            buyer_id=buyer_id,
            category_name=cat,
            last_purchase_date=dates[0],
            days_since_purchase=days_since,
            avg_interval_days=avg_interval,
            risk_level=level,
            risk_score=round(score),
        ))

    return risks


def _active_signal(session: Session, buyer_id: int, category: Optional[str]) -> Optional[ChurnSignal]:
    query = session.query(ChurnSignal).filter(ChurnSignal.buyer_id == buyer_id, ChurnSignal.is_active.is_(True))
    if category is None:
        query = query.filter(ChurnSignal.category_name.is_(None))
    else:
        query = query.filter(ChurnSignal.category_name == category)
    return query.first()


def detect_all_churn_signals(session: Session) -> Dict[str, int]:
    buyer_ids = [
        row.id
        for row in session.query(User.id).filter(User.transaction_count >= MIN_TRANSACTIONS_FOR_PREDICTION).all()
    ]

    created = 0
    updated = 0
    errors = 0
    for buyer_id in buyer_ids:
        try:
            for risk in analyze_churn_risk(session, buyer_id):
                signal = _active_signal(session, buyer_id, risk.category_name)
                if signal:
                    updated += 1
                else:
                    signal = ChurnSignal(buyer_id=buyer_id, category_name=risk.category_name)
                    session.add(signal)
                    created += 1
                signal.days_since_purchase = risk.days_since_purchase
                signal.avg_interval_days = risk.avg_interval_days
                signal.risk_level = risk.risk_level
                signal.risk_score = risk.risk_score
            session.commit()
        except Exception as e:
            session.rollback()
            errors += 1
            logger.error(f"Churn analysis failed for buyer {buyer_id}: {e}")

    return {"signals_created": created, "signals_updated": updated, "errors": errors}


def get_buyer_churn_risk(session: Session, buyer_id: int, category: Optional[str] = None) -> float:
    """Score de risque actif le plus élevé (0 si aucun signal)."""
    query = session.query(ChurnSignal).filter(ChurnSignal.buyer_id == buyer_id, ChurnSignal.is_active.is_(True))
    if category:
        query = query.filter(ChurnSignal.category_name == category)
    return max((s.risk_score for s in query.all()), default=0.0)


def get_at_risk_buyers(session: Session, min_risk_level: str = "medium", limit: int = 20) -> List[Dict]:
    """Signaux actifs >= min_risk_level, regroupés par acheteur, triés par score."""
    min_rank = RISK_LEVELS.get(min_risk_level, RISK_LEVELS["medium"])

    signals = (
        session.query(ChurnSignal)
        .filter(ChurnSignal.is_active.is_(True))
        .order_by(ChurnSignal.risk_score.desc())
        .all()
    )

    by_buyer: Dict[int, Dict] = {}
    for signal in signals:
        if signal.risk_rank < min_rank:
            continue
        entry = by_buyer.get(signal.buyer_id)
        if entry is None:
            entry = by_buyer[signal.buyer_id] = {
                "buyer_id": signal.buyer_id,
                "buyer_email": signal.buyer.email if signal.buyer else None,
                "company_name": signal.buyer.company_name if signal.buyer else None,
                "signals": [],
                "overall_risk_level": signal.risk_level,
                "overall_risk_score": signal.risk_score,
            }
        entry["signals"].append({
            "id": signal.id,
            "category_name": signal.category_name,
            "days_since_purchase": signal.days_since_purchase,
            "avg_interval_days": signal.avg_interval_days,
            "risk_level": signal.risk_level,
            "risk_score": signal.risk_score,
        })
        if signal.risk_rank > RISK_LEVELS.get(entry["overall_risk_level"], 0):
            entry["overall_risk_level"] = signal.risk_level
        entry["overall_risk_score"] = max(entry["overall_risk_score"], signal.risk_score)

    ranked = sorted(by_buyer.values(), key=lambda e: e["overall_risk_score"], reverse=True)
    return ranked[:limit]


def get_churn_stats(session: Session) -> Dict[str, int]:
    """Compteurs par niveau. total_at_risk = acheteurs uniques medium et au-dessus."""
    stats = {"total_at_risk": 0, "critical_count": 0, "high_count": 0, "medium_count": 0, "low_count": 0}
    at_risk = set()

    for signal in session.query(ChurnSignal).filter(ChurnSignal.is_active.is_(True)).all():
        key = f"{signal.risk_level}_count"
        if key in stats:
            stats[key] += 1
        if signal.risk_rank >= RISK_LEVELS["medium"]:
            at_risk.add(signal.buyer_id)

    stats["total_at_risk"] = len(at_risk)
    return stats


def resolve_churn_signal(session: Session, signal_id: int, reason: str) -> ChurnSignal:
    signal = session.get(ChurnSignal, signal_id)
    if not signal:
        raise EntityNotFoundError("ChurnSignal", signal_id)

    signal.is_active = False
    signal.resolved_at = datetime.utcnow()
    signal.resolved_reason = reason
    session.commit()
    return signal


def resolve_on_purchase(session: Session, buyer_id: int, category: Optional[str] = None) -> int:
    """Désactive les signaux actifs de l'acheteur (de la catégorie si fournie)."""
    query = session.query(ChurnSignal).filter(ChurnSignal.buyer_id == buyer_id, ChurnSignal.is_active.is_(True))
    if category:
        query = query.filter(ChurnSignal.category_name == category)

    now = datetime.utcnow()
    resolved = 0
    for signal in query.all():
        signal.is_active = False
        signal.resolved_at = now
        signal.resolved_reason = RESOLVED_ON_PURCHASE
        resolved += 1

    session.commit()
    return resolved

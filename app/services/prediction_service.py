"""
Service Predictions - Date de réassort attendue par acheteur/catégorie.

Modèle d'intervalle: moyenne des écarts entre transactions successives
(écarts < 3j ou > 365j ignorés comme bruit). La confiance récompense la
régularité (écart-type faible) avec un bonus plafonné sur le volume.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import MIN_TRANSACTIONS_FOR_PREDICTION, PREDICTION_DUE_WINDOW_DAYS
from app.models.prediction import Prediction
from app.models.product import Product
from app.models.transaction import Transaction
from app.models.user import User
from app.services.notification_service import create_notification, PREDICTION_DUE

MIN_GAP_DAYS = 3
MAX_GAP_DAYS = 365


@dataclass
class ReorderPattern:
    avg_interval_days: int
    stddev_days: float
    confidence: float
    transaction_count: int
    last_transaction_id: int
    last_transaction_date: datetime

    @property
    def predicted_date(self) -> datetime:
        return self.last_transaction_date + timedelta(days=self.avg_interval_days)


def days_between(a: datetime, b: datetime) -> int:
    """Écart absolu en jours, arrondi."""
    return round(abs((a - b).total_seconds()) / 86400)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _population_stddev(values: List[float]) -> float:
    if len(values) < 2:
        return 0.0
    avg = _mean(values)
    return math.sqrt(_mean([(v - avg) ** 2 for v in values]))


def reorder_gaps(dates: List[datetime]) -> List[int]:
    """Écarts entre dates successives, filtrés dans [3, 365] jours."""
    gaps = []
    for previous, current in zip(dates, dates[1:]):
        days = days_between(previous, current)
        if MIN_GAP_DAYS <= days <= MAX_GAP_DAYS:
            gaps.append(days)
    return gaps


def calculate_reorder_pattern(session: Session, buyer_id: int, category: Optional[str] = None) -> Optional[ReorderPattern]:
    """None si moins de 2 transactions ou si tous les écarts sont du bruit."""
    query = session.query(Transaction).filter(Transaction.buyer_id == buyer_id)
    if category:
        query = query.join(Product, Product.id == Transaction.product_id).filter(Product.category == category)
    transactions = query.order_by(Transaction.transaction_date.asc(), Transaction.id.asc()).all()

    if len(transactions) < MIN_TRANSACTIONS_FOR_PREDICTION:
        return None

    gaps = reorder_gaps([t.transaction_date for t in transactions])
    if not gaps:
        return None

    stddev = _population_stddev(gaps)
    consistency = max(0.0, 100 - stddev * 2)
    volume_bonus = min(20, len(transactions) * 2)
    confidence = min(100.0, max(0.0, consistency + volume_bonus))
    last = transactions[-1]

    return ReorderPattern(
        avg_interval_days=round(_mean(gaps)),
        stddev_days=stddev,
        confidence=confidence,
        transaction_count=len(transactions),
        last_transaction_id=last.id,
        last_transaction_date=last.transaction_date,
    )


def generate_predictions_for_buyer(session: Session, buyer_id: int) -> int:
    """Upsert une prédiction par catégorie achetée. Retourne le nombre de prédictions écrites."""
    categories = [
        row[0]
        for row in (
            session.query(Product.category)
            .join(Transaction, Transaction.product_id == Product.id)
            .filter(Transaction.buyer_id == buyer_id, Product.category.isnot(None))
            .distinct()
            .all()
        )
    ]

    written = 0
    for category in categories:
        pattern = calculate_reorder_pattern(session, buyer_id, category)
        if not pattern:
            continue

        prediction = (
            session.query(Prediction)
            .filter(Prediction.buyer_id == buyer_id, Prediction.category_name == category)
            .first()
        )
        if not prediction:
            prediction = Prediction(buyer_id=buyer_id, category_name=category)
            session.add(prediction)
        elif prediction.predicted_date != pattern.predicted_date:
            # Nouveau cycle: la notification pourra repartir une fois
            prediction.notified_at = None

        prediction.predicted_date = pattern.predicted_date
        prediction.confidence_score = pattern.confidence
        prediction.based_on_transactions = pattern.transaction_count
        prediction.avg_interval_days = pattern.avg_interval_days
        prediction.last_transaction_id = pattern.last_transaction_id
        written += 1

    session.commit()
    return written


def _time_text(predicted_date: datetime, now: datetime) -> str:
    days_until = math.ceil((predicted_date - now).total_seconds() / 86400)
    if days_until <= 0:
        return "overdue"
    return f"in {days_until} day{'' if days_until == 1 else 's'}"


def send_due_notifications(session: Session) -> int:
    """PREDICTION_DUE une seule fois par cycle (garde notified_at)."""
    now = datetime.utcnow()
    horizon = now + timedelta(days=PREDICTION_DUE_WINDOW_DAYS)

    due = (
        session.query(Prediction)
        .filter(Prediction.predicted_date <= horizon, Prediction.notified_at.is_(None))
        .all()
    )

    sent = 0
    for prediction in due:
        create_notification(
            session,
            user_id=prediction.buyer_id,
            type=PREDICTION_DUE,
            title="Reorder prediction approaching",
            body=f"Your {prediction.category_name} reorder is predicted {_time_text(prediction.predicted_date, now)}",
            data={"category_name": prediction.category_name, "prediction_id": prediction.id},
        )
        prediction.notified_at = now
        sent += 1

    session.commit()
    return sent


def cleanup_stale_predictions(session: Session) -> int:
    """Supprime les prédictions des acheteurs passés sous le seuil de transactions."""
    stale_buyers = session.query(User.id).filter(User.transaction_count < MIN_TRANSACTIONS_FOR_PREDICTION)
    removed = (
        session.query(Prediction)
        .filter(Prediction.buyer_id.in_(stale_buyers.scalar_subquery()))
        .delete(synchronize_session=False)
    )
    session.commit()
    return removed


def generate_predictions(session: Session) -> Dict[str, int]:
    """Sweep complet: prédictions, notifications dues, nettoyage."""
    buyer_ids = [
        row.id
        for row in session.query(User.id).filter(User.transaction_count >= MIN_TRANSACTIONS_FOR_PREDICTION).all()
    ]

    created = 0
    errors = 0
    for buyer_id in buyer_ids:
        try:
            created += generate_predictions_for_buyer(session, buyer_id)
        except Exception as e:
            session.rollback()
            errors += 1
            logger.error(f"Prediction failed for buyer {buyer_id}: {e}")

    notified = 0
    try:
        notified = send_due_notifications(session)
    except Exception as e:
        session.rollback()
        logger.error(f"PREDICTION_DUE notification sweep failed: {e}")

    stale = cleanup_stale_predictions(session)

    return {
        "buyers_processed": len(buyer_ids),
        "predictions_created": created,
        "notifications_sent": notified,
        "stale_removed": stale,
        "errors": errors,
    }


def _serialize(prediction: Prediction, **extra) -> Dict:
    buyer = prediction.buyer
    return {
        "id": prediction.id,
        "buyer_id": prediction.buyer_id,
        "buyer_email": buyer.email if buyer else None,
        "company_name": buyer.company_name if buyer else None,
        "category_name": prediction.category_name,
        "predicted_date": prediction.predicted_date,
        "confidence_score": prediction.confidence_score,
        "avg_interval_days": prediction.avg_interval_days,
        "based_on_transactions": prediction.based_on_transactions,
        **extra,
    }


def get_overdue_predictions(session: Session, limit: int = 20) -> List[Dict]:
    now = datetime.utcnow()
    predictions = (
        session.query(Prediction)
        .filter(Prediction.predicted_date < now)
        .order_by(Prediction.predicted_date.asc())
        .limit(limit)
        .all()
    )
    return [_serialize(p, days_overdue=days_between(p.predicted_date, now)) for p in predictions]


def get_upcoming_predictions(session: Session, days: int = PREDICTION_DUE_WINDOW_DAYS, limit: int = 20) -> List[Dict]:
    now = datetime.utcnow()
    predictions = (
        session.query(Prediction)
        .filter(Prediction.predicted_date >= now, Prediction.predicted_date <= now + timedelta(days=days))
        .order_by(Prediction.predicted_date.asc())
        .limit(limit)
        .all()
    )
    return [_serialize(p, days_until=days_between(now, p.predicted_date)) for p in predictions]

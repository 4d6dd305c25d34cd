"""
Service Transactions - Hooks d'écriture dont dépend le moteur.

L'insert est la seule étape bloquante: les effets de bord (prix de marché,
churn, cache de propension, score vendeur) sont loggés en cas d'échec
sans annuler la transaction.
"""
from datetime import datetime
from typing import Optional

from loguru import logger
from sqlalchemy.orm import Session

from app.core.exceptions import EntityNotFoundError, IntelligenceError, OutcomeAlreadyRecordedError
from app.models.product import Product
from app.models.transaction import Transaction, Bid
from app.models.user import User
from app.repositories.match_repository import MatchRepository
from app.services.churn_service import resolve_on_purchase
from app.services.market_context_service import update_market_price
from app.services.propensity_service import invalidate_propensity
from app.services.seller_score_service import update_seller_score
from app.utils.proximity import calculate_ask_ratio, calculate_proximity


def _bump_counters(user: Optional[User], value: float, when: datetime):
    if not user:
        return
    user.transaction_count = (user.transaction_count or 0) + 1
    user.total_transaction_value = (user.total_transaction_value or 0.0) + value
    if not user.last_transaction_date or when > user.last_transaction_date:
        user.last_transaction_date = when


def record_transaction(
    session: Session,
    buyer_id: int,
    product_id: int,
    quantity: float,
    unit_price: float,
    transaction_date: Optional[datetime] = None,
) -> Transaction:
    product = session.get(Product, product_id)
    if not product:
        raise EntityNotFoundError("Product", product_id)

    when = transaction_date or datetime.utcnow()
    total_value = round(quantity * unit_price, 2)

    transaction = Transaction(
        buyer_id=buyer_id,
        seller_id=product.seller_id,
        product_id=product_id,
        quantity=quantity,
        unit_price=unit_price,
        total_value=total_value,
        transaction_date=when,
    )
    session.add(transaction)
    _bump_counters(session.get(User, buyer_id), total_value, when)
    _bump_counters(session.get(User, product.seller_id), total_value, when)
    session.commit()

    try:
        update_market_price(session, product.category, unit_price, quantity)
    except Exception as e:
        session.rollback()
        logger.warning(f"Market price update failed for transaction {transaction.id}: {e}")

    try:
        resolve_on_purchase(session, buyer_id, product.category)
    except Exception as e:
        session.rollback()
        logger.warning(f"Churn resolution failed for buyer {buyer_id}: {e}")

    try:
        invalidate_propensity(session, buyer_id)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.warning(f"Propensity invalidation failed for buyer {buyer_id}: {e}")

    logger.info(f"Transaction {transaction.id} recorded: buyer {buyer_id} <- product {product_id} ({total_value})")
    return transaction


def record_bid(session: Session, buyer_id: int, product_id: int, unit_price: float, quantity: float) -> Bid:
    """Enregistre un bid avec son ratio au prix demandé et convertit le match ouvert."""
    product = session.get(Product, product_id)
    if not product:
        raise EntityNotFoundError("Product", product_id)

    bid = Bid(
        buyer_id=buyer_id,
        product_id=product_id,
        unit_price=unit_price,
        quantity=quantity,
        ask_ratio=calculate_ask_ratio(unit_price, product.price_per_unit),
        proximity_score=calculate_proximity(unit_price, product.price_per_unit),
    )
    session.add(bid)

    converted = MatchRepository(session).convert_for_bid(buyer_id, product_id)
    invalidate_propensity(session, buyer_id)
    session.commit()

    if converted:
        logger.info(f"Match {converted.id} converted by bid {bid.id}")
    return bid


def record_outcome(
    session: Session,
    transaction_id: int,
    seller_id: int,
    actual_quantity_delivered: Optional[float] = None,
    delivery_on_time: Optional[bool] = None,
    quality_as_expected: Optional[bool] = None,
    notes: Optional[str] = None,
) -> Transaction:
    """Outcome saisi une seule fois, par le vendeur de la transaction, puis score vendeur rafraîchi."""
    transaction = session.get(Transaction, transaction_id)
    if not transaction:
        raise EntityNotFoundError("Transaction", transaction_id)
    if transaction.seller_id != seller_id:
        raise IntelligenceError(f"Only the seller can record the outcome of transaction {transaction_id}")
    if transaction.outcome_recorded_at is not None or transaction.has_outcome:
        raise OutcomeAlreadyRecordedError(transaction_id)
    if actual_quantity_delivered is None and delivery_on_time is None and quality_as_expected is None:
        raise IntelligenceError("At least one outcome field is required")

    transaction.actual_quantity_delivered = actual_quantity_delivered
    transaction.delivery_on_time = delivery_on_time
    transaction.quality_as_expected = quality_as_expected
    transaction.outcome_notes = notes
    transaction.outcome_recorded_at = datetime.utcnow()
    session.commit()

    try:
        update_seller_score(session, seller_id)
    except Exception as e:
        session.rollback()
        logger.warning(f"Seller score refresh failed for seller {seller_id}: {e}")

    return transaction

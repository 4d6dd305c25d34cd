"""
Service Market Context - Prix de marché et pression offre/demande par catégorie.

Tous les prix sont unitaires (prix au gramme sur la marketplace).
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Iterable

from loguru import logger
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import PREDICTION_DUE_WINDOW_DAYS
from app.models.market_price import MarketPrice
from app.models.prediction import Prediction
from app.models.product import Product
from app.models.transaction import Transaction

# Seuil (en %) entre "at market" et below/above, et pour la tendance up/down
MARKET_BAND_PCT = 5


@dataclass
class PriceComparison:
    listing_price: float
    market_avg_30d: float
    percent_diff: float
    score: float
    assessment: str  # below_market, at_market, above_market

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class SupplyDemand:
    buyers_predicted_to_reorder: int
    active_listings: int
    ratio: float
    score: float
    assessment: str  # high_demand, balanced, oversupply

    def to_dict(self) -> Dict:
        return asdict(self)


def _start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _weighted_avg(rows: Iterable[MarketPrice]) -> Optional[float]:
    total = 0.0
    count = 0
    for p in rows:
        total += p.avg_price * p.transaction_count
        count += p.transaction_count
    return total / count if count > 0 else None


def _prices_between(session: Session, category: str, start: datetime, end: Optional[datetime] = None) -> List[MarketPrice]:
    query = session.query(MarketPrice).filter(
        MarketPrice.category_name == category,
        MarketPrice.period_start >= start,
    )
    if end is not None:
        query = query.filter(MarketPrice.period_start < end)
    return query.order_by(MarketPrice.period_start.desc()).all()


def average_price_for_category(session: Session, category: str) -> Optional[float]:
    """Prix unitaire moyen sur 30 jours, pondéré par le nombre de transactions."""
    if not category:
        return None
    since = datetime.utcnow() - timedelta(days=30)
    return _weighted_avg(_prices_between(session, category, since))


def average_transaction_value_for_category(session: Session, category: str) -> Optional[float]:
    """Valeur moyenne d'une transaction dans la catégorie, tous vendeurs confondus."""
    avg = (
        session.query(func.avg(Transaction.total_value))
        .join(Product, Product.id == Transaction.product_id)
        .filter(Product.category == category, Transaction.total_value > 0)
        .scalar()
    )
    return float(avg) if avg else None


def price_diff_pct_to_score(percent_diff: float) -> float:
    if percent_diff <= -20:
        return 100.0
    if percent_diff >= 20:
        return 0.0
    return max(0.0, min(100.0, 50 - percent_diff * 2.5))


def score_price_vs_market(session: Session, product: Product) -> Optional[PriceComparison]:
    """Compare le prix de l'annonce à la moyenne 30j. None si pas de catégorie, prix ou données marché."""
    if not product or not product.category or not product.price_per_unit:
        return None

    market_avg = average_price_for_category(session, product.category)
    if not market_avg:
        return None

    percent_diff = (product.price_per_unit - market_avg) / market_avg * 100
    if percent_diff < -MARKET_BAND_PCT:
        assessment = "below_market"
    elif percent_diff > MARKET_BAND_PCT:
        assessment = "above_market"
    else:
        assessment = "at_market"

    return PriceComparison(
        listing_price=product.price_per_unit,
        market_avg_30d=market_avg,
        percent_diff=percent_diff,
        score=price_diff_pct_to_score(percent_diff),
        assessment=assessment,
    )


def supply_demand_ratio_to_score(ratio: float) -> float:
    if ratio >= 2:
        return 100.0
    if ratio <= 0.2:
        return 0.0
    return max(0.0, min(100.0, (ratio - 0.2) / 1.8 * 100))


def get_supply_demand_for_category(session: Session, category: str) -> SupplyDemand:
    """
    Ratio acheteurs attendus (prédiction due sous 7 jours) / annonces visibles.
    Sans annonce: ratio 10 s'il y a de la demande, sinon 0.
    """
    horizon = datetime.utcnow() + timedelta(days=PREDICTION_DUE_WINDOW_DAYS)

    demand = (
        session.query(func.count(Prediction.id))
        .filter(Prediction.category_name == category, Prediction.predicted_date <= horizon)
        .scalar()
    ) or 0
    listings = (
        session.query(func.count(Product.id))
        .filter(
            Product.category == category,
            Product.is_active.is_(True),
            Product.marketplace_visible.is_(True),
        )
        .scalar()
    ) or 0

    if listings > 0:
        ratio = demand / listings
    else:
        ratio = 10.0 if demand > 0 else 0.0

    if ratio > 1.5:
        assessment = "high_demand"
    elif ratio < 0.5:
        assessment = "oversupply"
    else:
        assessment = "balanced"

    return SupplyDemand(
        buyers_predicted_to_reorder=demand,
        active_listings=listings,
        ratio=ratio,
        score=supply_demand_ratio_to_score(ratio),
        assessment=assessment,
    )


def score_supply_demand(session: Session, product: Product) -> Optional[SupplyDemand]:
    if not product or not product.category:
        return None
    return get_supply_demand_for_category(session, product.category)


def update_market_price(session: Session, category: str, unit_price: float, quantity: Optional[float] = None) -> Optional[MarketPrice]:
    """Intègre un prix accepté dans la ligne du jour, puis recalcule les moyennes glissantes."""
    if not category or not unit_price or unit_price <= 0:
        return None

    today = _start_of_day(datetime.utcnow())
    volume = unit_price * (quantity or 1)

    row = (
        session.query(MarketPrice)
        .filter(MarketPrice.category_name == category, MarketPrice.period_start == today)
        .first()
    )
    if row:
        count = row.transaction_count + 1
        row.avg_price = (row.avg_price * row.transaction_count + unit_price) / count
        row.min_price = min(row.min_price, unit_price)
        row.max_price = max(row.max_price, unit_price)
        row.transaction_count = count
        row.total_volume = row.total_volume + volume
    else:
        row = MarketPrice(
            category_name=category,
            period_start=today,
            avg_price=unit_price,
            min_price=unit_price,
            max_price=unit_price,
            transaction_count=1,
            total_volume=volume,
        )
        session.add(row)

    session.flush()
    calculate_rolling_averages(session, category)
    session.commit()
    logger.debug(f"Market price updated for {category}: {row.avg_price:.2f} ({row.transaction_count} tx)")
    return row


def calculate_rolling_averages(session: Session, category: str) -> None:
    """Moyennes 7j/30j et variations, écrites sur la ligne du jour."""
    today = _start_of_day(datetime.utcnow())
    seven_days_ago = today - timedelta(days=7)
    thirty_days_ago = today - timedelta(days=30)
    sixty_days_ago = today - timedelta(days=60)

    last_30 = _prices_between(session, category, thirty_days_ago)
    if not last_30:
        return
    previous_30 = _prices_between(session, category, sixty_days_ago, thirty_days_ago)

    last_7 = [p for p in last_30 if p.period_start >= seven_days_ago]
    older = [p for p in last_30 if p.period_start < seven_days_ago]

    rolling_7d = _weighted_avg(last_7)
    rolling_30d = _weighted_avg(last_30)

    change_7d = None
    older_avg = _weighted_avg(older)
    if rolling_7d is not None and older_avg:
        change_7d = (rolling_7d - older_avg) / older_avg * 100

    change_30d = None
    previous_avg = _weighted_avg(previous_30)
    if rolling_30d is not None and previous_avg:
        change_30d = (rolling_30d - previous_avg) / previous_avg * 100

    for p in last_30:
        if p.period_start == today:
            p.rolling_avg_7d = rolling_7d
            p.rolling_avg_30d = rolling_30d
            p.price_change_7d = change_7d
            p.price_change_30d = change_30d
            break


def get_market_context(session: Session, category: str) -> Dict:
    since = datetime.utcnow() - timedelta(days=30)
    prices = _prices_between(session, category, since)
    latest_with_rolling = next((p for p in prices if p.rolling_avg_30d is not None), None)

    supply_demand = get_supply_demand_for_category(session, category)

    return {
        "category_name": category,
        "avg_price_30d": _weighted_avg(prices),
        "min_price_30d": min((p.min_price for p in prices), default=None),
        "max_price_30d": max((p.max_price for p in prices), default=None),
        "price_change_7d": latest_with_rolling.price_change_7d if latest_with_rolling else None,
        "price_change_30d": latest_with_rolling.price_change_30d if latest_with_rolling else None,
        "transaction_count_30d": sum(p.transaction_count for p in prices),
        "total_volume_30d": sum(p.total_volume for p in prices),
        "active_buyers": supply_demand.buyers_predicted_to_reorder,
        "active_listings": supply_demand.active_listings,
        "supply_demand_ratio": supply_demand.ratio,
    }


def get_market_trends(session: Session) -> List[Dict]:
    """Prix moyen 30j courant vs 30j précédents par catégorie, trié par volume."""
    today = _start_of_day(datetime.utcnow())
    thirty_days_ago = today - timedelta(days=30)
    sixty_days_ago = today - timedelta(days=60)

    categories = [row[0] for row in session.query(MarketPrice.category_name).distinct().all()]

    trends = []
    for category in categories:
        current = _prices_between(session, category, thirty_days_ago)
        current_avg = _weighted_avg(current)
        if current_avg is None:
            continue

        previous_avg = _weighted_avg(_prices_between(session, category, sixty_days_ago, thirty_days_ago))
        percent_change = (current_avg - previous_avg) / previous_avg * 100 if previous_avg else 0.0

        if percent_change > MARKET_BAND_PCT:
            trend = "up"
        elif percent_change < -MARKET_BAND_PCT:
            trend = "down"
        else:
            trend = "stable"

        trends.append({
            "category_name": category,
            "current_avg_price": current_avg,
            "previous_avg_price": previous_avg if previous_avg else current_avg,
            "percent_change": percent_change,
            "trend": trend,
            "volume": sum(p.total_volume for p in current),
        })

    trends.sort(key=lambda t: t["volume"], reverse=True)
    return trends

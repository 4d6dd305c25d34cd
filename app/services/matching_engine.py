"""
Matching Engine - Score acheteur/produit sur 10 facteurs pondérés.

MatchScore = moyenne pondérée de:
- Affinité catégorie (15%)
- Prix vs habitudes de l'acheteur (12%)
- Localisation (5%)
- Historique avec le vendeur (10%)
- Timing de réassort (10%)
- Quantité (8%)
- Fiabilité vendeur (10%)
- Prix vs marché (10%)
- Offre/demande (5%)
- Propension de l'acheteur (15%)

Chaque facteur renvoie un FactorScore: un facteur sans donnée vaut 50
mais reste marqué has_signal=False et apparaît dans no_signal.
"""
import re
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import MATCH_THRESHOLD, BATCH_MAX_WORKERS, BATCH_ITEM_TIMEOUT_SECONDS
from app.core.logging import get_logger, timed
from app.core.weights import MatchWeights, DEFAULT_MATCH_WEIGHTS
from app.models.prediction import Prediction
from app.models.product import Product
from app.models.transaction import Transaction, Bid, ShortlistItem, ProductView
from app.models.user import User
from app.repositories.match_repository import MatchRepository
from app.services.market_context_service import (
    average_price_for_category,
    score_price_vs_market,
    score_supply_demand,
)
from app.services.notification_service import create_notification, MATCH_SUGGESTION
from app.services.propensity_service import get_propensity
from app.services.seller_score_service import calculate_seller_scores
from app.utils.pool import run_bounded

batch_logger = get_logger(__name__)

NEUTRAL_SCORE = 50.0

# Élasticité: nombre minimum de bids avec ratio pour juger l'agressivité
MIN_BIDS_FOR_ELASTICITY = 3


@dataclass(frozen=True)
class FactorScore:
    value: float
    has_signal: bool = True


NO_SIGNAL = FactorScore(NEUTRAL_SCORE, has_signal=False)


@dataclass
class Insight:
    type: str  # positive, neutral, urgent, warning
    text: str


@dataclass
class ProductContext:
    """Facteurs qui ne dépendent que du produit: calculés une fois par produit en batch."""
    product_id: int
    seller_reliability: FactorScore
    price_vs_market: FactorScore
    supply_demand: FactorScore
    market_avg_price: Optional[float] = None


@dataclass
class MatchResult:
    score: float
    breakdown: Dict[str, float] = field(default_factory=dict)
    insights: List[Dict[str, str]] = field(default_factory=list)
    no_signal: List[str] = field(default_factory=list)
    weights_version: str = DEFAULT_MATCH_WEIGHTS.version

    def to_dict(self) -> Dict:
        return asdict(self)


def _safe_factor(session: Session, name: str, fn: Callable[[], FactorScore], **entity) -> FactorScore:
    """
    Une erreur de collaborateur dégrade uniquement ce facteur.
    Chaque facteur tourne dans un savepoint: ses écritures partielles sont annulées
    et la session reste utilisable pour les facteurs et acheteurs suivants.
    """
    try:
        with session.begin_nested():
            return fn()
    except Exception as e:
        logger.warning(f"Factor {name} degraded to neutral ({type(e).__name__}: {e}) {entity}")
        return NO_SIGNAL


def _in_category(query, model, category: str):
    return query.join(Product, Product.id == model.product_id).filter(Product.category == category)


# =============================================================================
# FACTEURS ACHETEUR x PRODUIT
# =============================================================================

def score_category(session: Session, buyer_id: int, category: Optional[str]) -> FactorScore:
    """Transactions > bids > shortlist > vues. 30 = aucune activité dans la catégorie."""
    if not category:
        return NO_SIGNAL

    transactions = _in_category(
        session.query(Transaction).filter(Transaction.buyer_id == buyer_id), Transaction, category
    ).count()
    if transactions >= 5:
        return FactorScore(95)
    if transactions >= 2:
        return FactorScore(80)
    if transactions == 1:
        return FactorScore(65)

    bids = _in_category(session.query(Bid).filter(Bid.buyer_id == buyer_id), Bid, category).count()
    if bids >= 3:
        return FactorScore(70)
    if bids >= 1:
        return FactorScore(55)

    shortlisted = _in_category(
        session.query(ShortlistItem).filter(ShortlistItem.buyer_id == buyer_id), ShortlistItem, category
    ).count()
    if shortlisted >= 1:
        return FactorScore(45)

    views = _in_category(
        session.query(ProductView).filter(ProductView.buyer_id == buyer_id), ProductView, category
    ).count()
    if views >= 1:
        return FactorScore(40)

    return FactorScore(30)


def _price_fit_tier(price_diff: float) -> float:
    if price_diff <= -0.15:
        return 100
    if price_diff <= -0.05:
        return 90
    if price_diff <= 0.05:
        return 80
    if price_diff <= 0.15:
        return 60
    if price_diff <= 0.30:
        return 40
    return 20


def bid_elasticity_adjustment(mean_ask_ratio: float, price: float, market_avg: float) -> float:
    """Acheteur agressif (bids bas) pénalisé au-dessus du marché, acheteur au prix récompensé en dessous."""
    if price >= market_avg:
        if mean_ask_ratio < 0.85:
            return -10
        if mean_ask_ratio < 0.92:
            return -5
    else:
        if mean_ask_ratio >= 1.0:
            return 10
        if mean_ask_ratio >= 0.97:
            return 5
    return 0


def score_price_fit(
    session: Session,
    buyer_id: int,
    price: Optional[float],
    category: Optional[str],
    market_avg: Optional[float] = None,
) -> FactorScore:
    if not price or not category:
        return NO_SIGNAL

    totals = (
        session.query(func.sum(Transaction.total_value), func.sum(Transaction.quantity))
        .select_from(Transaction)
        .join(Product, Product.id == Transaction.product_id)
        .filter(
            Transaction.buyer_id == buyer_id,
            Product.category == category,
            Transaction.total_value > 0,
            Transaction.quantity > 0,
        )
        .one()
    )
    total_value, total_quantity = totals
    if not total_value or not total_quantity:
        return NO_SIGNAL

    avg_unit_price = total_value / total_quantity
    score = _price_fit_tier((price - avg_unit_price) / avg_unit_price)

    if market_avg:
        ratios = [
            r[0]
            for r in session.query(Bid.ask_ratio)
            .filter(Bid.buyer_id == buyer_id, Bid.ask_ratio.isnot(None))
            .all()
        ]
        if len(ratios) >= MIN_BIDS_FOR_ELASTICITY:
            score += bid_elasticity_adjustment(sum(ratios) / len(ratios), price, market_avg)

    return FactorScore(max(0.0, min(100.0, score)))


def _location_tokens(value: str) -> List[str]:
    return [t for t in re.split(r"[,\s]+", value.lower().strip()) if t]


def score_location(buyer_location: Optional[str], seller_location: Optional[str]) -> FactorScore:
    if not buyer_location or not seller_location:
        return NO_SIGNAL

    b = buyer_location.lower().strip()
    s = seller_location.lower().strip()
    if b == s:
        return FactorScore(100)

    seller_tokens = _location_tokens(s)
    common = [
        part for part in _location_tokens(b)
        if any(sp in part or part in sp for sp in seller_tokens)
    ]
    if len(common) >= 2:
        return FactorScore(80)
    if len(common) == 1:
        return FactorScore(60)
    return FactorScore(30)


def count_transactions_between(session: Session, buyer_id: int, seller_id: int) -> int:
    return session.query(Transaction).filter(
        Transaction.buyer_id == buyer_id,
        Transaction.seller_id == seller_id,
    ).count()


def score_relationship(session: Session, buyer_id: int, seller_id: int) -> FactorScore:
    count = count_transactions_between(session, buyer_id, seller_id)
    if count >= 5:
        return FactorScore(100)
    if count >= 3:
        return FactorScore(90)
    if count == 2:
        return FactorScore(80)
    if count == 1:
        return FactorScore(60)
    return FactorScore(30)


def score_reorder_timing(session: Session, buyer: User, category: Optional[str], now: Optional[datetime] = None) -> FactorScore:
    """Depuis la prédiction stockée, sinon jours depuis la dernière transaction."""
    if not category:
        return NO_SIGNAL
    now = now or datetime.utcnow()

    prediction = session.query(Prediction).filter(
        Prediction.buyer_id == buyer.id,
        Prediction.category_name == category,
    ).first()

    if prediction:
        days_until = prediction.days_until(now)
        if days_until <= 0:
            return FactorScore(100)
        if days_until <= 7:
            return FactorScore(90)
        if days_until <= 14:
            return FactorScore(75)
        if days_until <= 30:
            return FactorScore(50)
        return FactorScore(25)

    last_date = buyer.last_transaction_date or session.query(func.max(Transaction.transaction_date)).filter(
        Transaction.buyer_id == buyer.id
    ).scalar()
    if not last_date:
        return FactorScore(40)

    days_since = int((now - last_date).total_seconds() // 86400)
    if days_since > 60:
        return FactorScore(70)
    if days_since > 30:
        return FactorScore(50)
    return FactorScore(30)


def score_quantity_fit(session: Session, buyer_id: int, available: Optional[float], category: Optional[str]) -> FactorScore:
    if not available or not category:
        return NO_SIGNAL

    avg_quantity = (
        session.query(func.avg(Transaction.quantity))
        .select_from(Transaction)
        .join(Product, Product.id == Transaction.product_id)
        .filter(
            Transaction.buyer_id == buyer_id,
            Product.category == category,
            Transaction.quantity > 0,
        )
        .scalar()
    )
    if not avg_quantity:
        return NO_SIGNAL

    ratio = available / avg_quantity
    if 0.8 <= ratio <= 1.2:
        return FactorScore(100)
    if 0.5 <= ratio <= 2.0:
        return FactorScore(75)
    if 0.25 <= ratio <= 4.0:
        return FactorScore(50)
    return FactorScore(25)


def score_buyer_propensity(session: Session, buyer_id: int, category: Optional[str]) -> FactorScore:
    return FactorScore(round(get_propensity(session, buyer_id, category, commit=False).overall_score))


# =============================================================================
# FACTEURS PRODUIT
# =============================================================================

def _seller_reliability(session: Session, seller_id: int) -> FactorScore:
    scores = calculate_seller_scores(session, seller_id)
    if not scores.has_data:
        return NO_SIGNAL
    return FactorScore(round(scores.overall_score))


def _price_vs_market(session: Session, product: Product) -> FactorScore:
    comparison = score_price_vs_market(session, product)
    if not comparison:
        return NO_SIGNAL
    return FactorScore(round(comparison.score))


def _supply_demand(session: Session, product: Product) -> FactorScore:
    analysis = score_supply_demand(session, product)
    if not analysis:
        return NO_SIGNAL
    return FactorScore(round(analysis.score))


def build_product_context(session: Session, product: Product) -> ProductContext:
    entity = {"product_id": product.id}
    market_avg = None
    if product.category:
        try:
            with session.begin_nested():
                market_avg = average_price_for_category(session, product.category)
        except Exception as e:
            logger.warning(f"Market average unavailable for {product.category}: {e}")

    return ProductContext(
        product_id=product.id,
        seller_reliability=_safe_factor(
            session, "seller_reliability", lambda: _seller_reliability(session, product.seller_id), **entity
        ),
        price_vs_market=_safe_factor(session, "price_vs_market", lambda: _price_vs_market(session, product), **entity),
        supply_demand=_safe_factor(session, "supply_demand", lambda: _supply_demand(session, product), **entity),
        market_avg_price=market_avg,
    )


# =============================================================================
# COMBINAISON
# =============================================================================

def calculate_weighted_score(factors: Dict[str, FactorScore], weights: MatchWeights = DEFAULT_MATCH_WEIGHTS) -> int:
    """Somme(poids x score) / somme des poids de la table (pas de renormalisation)."""
    table = weights.as_dict()
    total_weight = 0.0
    weighted_sum = 0.0
    for name, factor in factors.items():
        weight = table[name]
        total_weight += weight
        weighted_sum += factor.value * weight
    if total_weight <= 0:
        return 0
    return round(max(0.0, min(100.0, weighted_sum / total_weight)))


def generate_insights(breakdown: Dict[str, float], relationship_count: int = 0) -> List[Insight]:
    """Règles fixes sur les sous-scores. Annotations seulement, n'influencent pas le score."""
    insights = []

    if breakdown["relationship_history"] >= 80:
        insights.append(Insight("positive", f"{relationship_count} previous transactions with this seller"))

    if breakdown["reorder_timing"] >= 90:
        text = "Buyer is overdue for reorder" if breakdown["reorder_timing"] == 100 else "Buyer due to reorder soon"
        insights.append(Insight("urgent", text))

    if breakdown["price_fit"] >= 90:
        insights.append(Insight("positive", "Priced below buyer's typical spend"))
    elif breakdown["price_fit"] <= 40:
        insights.append(Insight("warning", "Price higher than buyer typically pays"))

    if breakdown["category"] >= 95:
        insights.append(Insight("positive", "Strong category purchase history"))

    if breakdown["quantity_fit"] >= 90:
        insights.append(Insight("positive", "Quantity matches typical order size"))

    if breakdown["location"] >= 80:
        insights.append(Insight("positive", "Same region as buyer"))

    if breakdown["seller_reliability"] >= 80:
        insights.append(Insight("positive", "Highly rated seller"))
    elif 0 < breakdown["seller_reliability"] <= 40:
        insights.append(Insight("warning", "Seller has lower reliability score"))

    if breakdown["price_vs_market"] >= 80:
        insights.append(Insight("positive", "Price below market average"))
    elif breakdown["price_vs_market"] <= 30:
        insights.append(Insight("warning", "Price above market average"))

    if breakdown["supply_demand"] >= 75:
        insights.append(Insight("urgent", "High demand category"))

    if breakdown["buyer_propensity"] >= 80:
        insights.append(Insight("positive", "High propensity buyer"))
    elif breakdown["buyer_propensity"] <= 30:
        insights.append(Insight("warning", "Lower engagement buyer"))

    return insights


def score_match(
    session: Session,
    buyer_id: int,
    product_id: int,
    weights: MatchWeights = DEFAULT_MATCH_WEIGHTS,
    context: Optional[ProductContext] = None,
) -> MatchResult:
    """
    Score d'une paire acheteur/produit, fonction pure des données courantes.
    Score 0 et breakdown vide si l'acheteur ou le produit n'existe pas.
    """
    product = session.get(Product, product_id)
    buyer = session.get(User, buyer_id)
    if not product or not buyer:
        return MatchResult(score=0, weights_version=weights.version)

    if context is None or context.product_id != product_id:
        context = build_product_context(session, product)

    entity = {"buyer_id": buyer_id, "product_id": product_id}
    category = product.category
    seller_location = product.seller.location if product.seller else None

    def guarded(name: str, fn: Callable[[], FactorScore]) -> FactorScore:
        return _safe_factor(session, name, fn, **entity)

    factors = {
        "category": guarded("category", lambda: score_category(session, buyer_id, category)),
        "price_fit": guarded(
            "price_fit",
            lambda: score_price_fit(session, buyer_id, product.price_per_unit, category, context.market_avg_price),
        ),
        "location": score_location(buyer.location, seller_location),
        "relationship_history": guarded(
            "relationship_history", lambda: score_relationship(session, buyer_id, product.seller_id)
        ),
        "reorder_timing": guarded("reorder_timing", lambda: score_reorder_timing(session, buyer, category)),
        "quantity_fit": guarded(
            "quantity_fit", lambda: score_quantity_fit(session, buyer_id, product.quantity_available, category)
        ),
        "seller_reliability": context.seller_reliability,
        "price_vs_market": context.price_vs_market,
        "supply_demand": context.supply_demand,
        "buyer_propensity": guarded("buyer_propensity", lambda: score_buyer_propensity(session, buyer_id, category)),
    }

    breakdown = {name: f.value for name, f in factors.items()}
    relationship_count = (
        count_transactions_between(session, buyer_id, product.seller_id)
        if breakdown["relationship_history"] >= 80 else 0
    )

    return MatchResult(
        score=calculate_weighted_score(factors, weights),
        breakdown=breakdown,
        insights=[asdict(i) for i in generate_insights(breakdown, relationship_count)],
        no_signal=[name for name, f in factors.items() if not f.has_signal],
        weights_version=weights.version,
    )


# =============================================================================
# BATCH
# =============================================================================

def _score_buyers(
    session: Session,
    buyer_ids: List[int],
    product: Product,
    context: ProductContext,
    weights: MatchWeights,
    max_workers: int,
):
    if max_workers <= 1:
        # Un savepoint par acheteur: un échec n'empoisonne pas la session des suivants
        def _score_inline(buyer_id: int) -> MatchResult:
            with session.begin_nested():
                return score_match(session, buyer_id, product.id, weights, context)

        return run_bounded(_score_inline, buyer_ids, max_workers=1)

    # Une session par worker (cache propension compris), les upserts restent sur la session appelante
    bind = session.get_bind()
    product_id = product.id

    def _score(buyer_id: int) -> MatchResult:
        with Session(bind=bind) as worker_session:
            result = score_match(worker_session, buyer_id, product_id, weights, context)
            worker_session.commit()
            return result

    return run_bounded(_score, buyer_ids, max_workers=max_workers, item_timeout=BATCH_ITEM_TIMEOUT_SECONDS)


@timed(batch_logger)
def generate_matches_for_product(
    session: Session,
    product_id: int,
    weights: MatchWeights = DEFAULT_MATCH_WEIGHTS,
    max_workers: Optional[int] = None,
) -> int:
    """
    Score le produit contre tous les acheteurs approuvés (hors vendeur)
    et upsert les matches >= MATCH_THRESHOLD. Retourne le nombre de matches du run.
    """
    product = session.get(Product, product_id)
    if not product or not product.is_eligible:
        return 0

    workers = BATCH_MAX_WORKERS if max_workers is None else max_workers
    buyer_ids = [
        row.id
        for row in session.query(User.id)
        .filter(User.is_approved.is_(True), User.is_buyer.is_(True), User.id != product.seller_id)
        .order_by(User.id)
        .all()
    ]

    context = build_product_context(session, product)
    outcomes = _score_buyers(session, buyer_ids, product, context, weights, workers)

    repo = MatchRepository(session)
    match_count = 0
    for outcome in outcomes:
        if not outcome.ok:
            batch_logger.item_error("match_scoring", outcome.error, buyer_id=outcome.item, product_id=product_id)
            continue

        result: MatchResult = outcome.value
        if result.score < MATCH_THRESHOLD:
            continue

        try:
            upserted = repo.upsert(outcome.item, product_id, result)
            session.commit()
        except Exception as e:
            session.rollback()
            batch_logger.item_error("match_upsert", e, buyer_id=outcome.item, product_id=product_id)
            continue

        match_count += 1
        if upserted.should_notify:
            create_notification(
                session,
                user_id=outcome.item,
                type=MATCH_SUGGESTION,
                title="New product match",
                body=f"{product.name} matches your buying profile ({int(result.score)}/100)",
                data={"product_id": product_id, "match_id": upserted.match.id, "score": result.score},
            )
            session.commit()

    product.match_count = match_count
    session.commit()

    batch_logger.debug(
        f"Matches generated for product {product_id}",
        product_id=product_id,
        buyers=len(buyer_ids),
        matches=match_count,
    )
    return match_count


def regenerate_all_matches(
    session: Session,
    weights: MatchWeights = DEFAULT_MATCH_WEIGHTS,
    max_workers: Optional[int] = None,
) -> Dict[str, int]:
    """Régénère les matches de tous les produits actifs et visibles."""
    start = time.perf_counter()
    product_ids = [
        row.id
        for row in session.query(Product.id)
        .filter(Product.is_active.is_(True), Product.marketplace_visible.is_(True))
        .order_by(Product.id)
        .all()
    ]
    batch_logger.batch_start("regenerate_all_matches", total=len(product_ids))

    matches = 0
    errors = 0
    for product_id in product_ids:
        try:
            matches += generate_matches_for_product(session, product_id, weights, max_workers)
        except Exception as e:
            session.rollback()
            errors += 1
            batch_logger.item_error("regenerate_all_matches", e, product_id=product_id)

    batch_logger.batch_done(
        "regenerate_all_matches",
        duration_ms=(time.perf_counter() - start) * 1000,
        products=len(product_ids),
        matches=matches,
        errors=errors,
    )
    return {"products_processed": len(product_ids), "matches_created": matches, "errors": errors}

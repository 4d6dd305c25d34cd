"""
Tables de pondération versionnées.

Les poids ne sont plus des littéraux dans les scorers: chaque scorer reçoit
un objet de configuration (par défaut la table livrée ci-dessous), ce qui
permet aux tests d'injecter un autre jeu de poids.
"""
from dataclasses import dataclass, fields
from typing import Dict

WEIGHT_SUM_TOLERANCE = 1e-6


@dataclass(frozen=True)
class _WeightTable:
    version: str

    def as_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "version"}

    def __post_init__(self):
        total = sum(self.as_dict().values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"{type(self).__name__} {self.version}: weights sum to {total}, expected 1.0")


@dataclass(frozen=True)
class MatchWeights(_WeightTable):
    """Poids des 10 facteurs du matching acheteur/produit."""
    version: str = "match_v1"
    category: float = 0.15
    price_fit: float = 0.12
    location: float = 0.05
    relationship_history: float = 0.10
    reorder_timing: float = 0.10
    quantity_fit: float = 0.08
    seller_reliability: float = 0.10
    price_vs_market: float = 0.10
    supply_demand: float = 0.05
    buyer_propensity: float = 0.15


@dataclass(frozen=True)
class SellerScoreWeights(_WeightTable):
    version: str = "seller_v1"
    fill_rate: float = 0.30
    quality_score: float = 0.30
    delivery_score: float = 0.25
    pricing_score: float = 0.15


@dataclass(frozen=True)
class PropensityWeights(_WeightTable):
    version: str = "propensity_v1"
    recency: float = 0.25
    frequency: float = 0.20
    monetary: float = 0.15
    category_affinity: float = 0.15
    engagement: float = 0.25


DEFAULT_MATCH_WEIGHTS = MatchWeights()
DEFAULT_SELLER_WEIGHTS = SellerScoreWeights()
DEFAULT_PROPENSITY_WEIGHTS = PropensityWeights()

"""PropensityScore model - Cache TTL du score RFM par acheteur/catégorie."""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Float, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.user import Base

# Clé catégorie pour le score tous produits confondus
ALL_CATEGORIES = "_all"


class PropensityScore(Base):
    __tablename__ = "propensity_scores"

    id: Mapped[int] = mapped_column(primary_key=True)
    buyer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False, default=ALL_CATEGORIES)

    overall_score: Mapped[float] = mapped_column(Float, nullable=False)
    recency_score: Mapped[float] = mapped_column(Float, nullable=False)
    frequency_score: Mapped[float] = mapped_column(Float, nullable=False)
    monetary_score: Mapped[float] = mapped_column(Float, nullable=False)
    category_affinity: Mapped[float] = mapped_column(Float, nullable=False)
    engagement_score: Mapped[float] = mapped_column(Float, nullable=False)

    # Snapshot du vecteur de features brut
    features: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    computed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("buyer_id", "category_name", name="uq_propensity_buyer_category"),
    )

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or datetime.utcnow())

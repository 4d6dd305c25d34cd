from datetime import datetime
from typing import Optional
from sqlalchemy import String, Float, Integer, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.user import Base


class Product(Base):
    """
    Annonce vendeur. Entrée en lecture seule pour le scoring,
    sauf le compteur dénormalisé match_count.
    """
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    seller_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Prix unitaire (prix au gramme sur la marketplace)
    price_per_unit: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quantity_available: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    marketplace_visible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Nombre de matches upsertés au dernier run (pas un cumul)
    match_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    seller = relationship("User", lazy="joined")

    __table_args__ = (
        Index("ix_products_category_visible", "category", "is_active", "marketplace_visible"),
    )

    @property
    def is_eligible(self) -> bool:
        """Annonce active ET visible sur la marketplace."""
        return bool(self.is_active and self.marketplace_visible)

    def __repr__(self) -> str:
        return f"<Product {self.id} {self.category} @ {self.price_per_unit}>"

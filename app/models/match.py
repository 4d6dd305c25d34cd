"""Match model - Paire acheteur/produit scorée par le matching engine."""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Float, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.user import Base

# Machine à états: pending -> viewed -> converted, pending/viewed -> rejected
MATCH_PENDING = "pending"
MATCH_VIEWED = "viewed"
MATCH_CONVERTED = "converted"
MATCH_REJECTED = "rejected"

TERMINAL_STATUSES = (MATCH_CONVERTED, MATCH_REJECTED)
REVIEWED_STATUSES = (MATCH_VIEWED, MATCH_CONVERTED, MATCH_REJECTED)


class Match(Base):
    __tablename__ = "matches"

    id: Mapped[int] = mapped_column(primary_key=True)
    buyer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False, index=True)

    # Score global 0-100
    score: Mapped[float] = mapped_column(Float, nullable=False)

    # Détail des 10 facteurs + facteurs tombés sur leur valeur neutre
    breakdown: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    no_signal: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    insights: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)  # [{"type": ..., "text": ...}]
    weights_version: Mapped[str] = mapped_column(String(50), default="match_v1")

    status: Mapped[str] = mapped_column(String(20), default=MATCH_PENDING, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship("Product", lazy="joined")

    __table_args__ = (
        UniqueConstraint("buyer_id", "product_id", name="uq_matches_buyer_product"),
    )

    def __repr__(self) -> str:
        return f"<Match buyer={self.buyer_id} product={self.product_id} {self.score}/100 {self.status}>"

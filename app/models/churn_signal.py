"""ChurnSignal model - Acheteur en retard sur son rythme de réassort."""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Float, Integer, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.user import Base

RISK_LEVELS = {"low": 1, "medium": 2, "high": 3, "critical": 4}


class ChurnSignal(Base):
    __tablename__ = "churn_signals"

    id: Mapped[int] = mapped_column(primary_key=True)
    buyer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    category_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    days_since_purchase: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_interval_days: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False)  # low, medium, high, critical
    risk_score: Mapped[float] = mapped_column(Float, nullable=False)

    # Désactivé (jamais supprimé) quand l'acheteur repasse commande
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolved_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    detected_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    buyer = relationship("User", lazy="joined")

    __table_args__ = (
        Index("ix_churn_signals_active", "buyer_id", "category_name", "is_active"),
    )

    @property
    def risk_rank(self) -> int:
        return RISK_LEVELS.get(self.risk_level, 0)

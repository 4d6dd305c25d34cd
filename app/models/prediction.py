"""Prediction model - Date de réassort projetée par acheteur/catégorie."""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Float, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.user import Base


class Prediction(Base):
    __tablename__ = "predictions"

    id: Mapped[int] = mapped_column(primary_key=True)
    buyer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)

    predicted_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)  # 0-100
    based_on_transactions: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_interval_days: Mapped[int] = mapped_column(Integer, nullable=False)
    last_transaction_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"), nullable=True)

    # Marqueur anti-doublon de la notification PREDICTION_DUE
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    buyer = relationship("User", lazy="joined")

    __table_args__ = (
        UniqueConstraint("buyer_id", "category_name", name="uq_predictions_buyer_category"),
    )

    def days_until(self, now: Optional[datetime] = None) -> int:
        """Jours restants avant la date prédite (négatif si en retard)."""
        now = now or datetime.utcnow()
        return int((self.predicted_date - now).total_seconds() // 86400)

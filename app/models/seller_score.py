"""SellerScore model - Fiabilité vendeur calculée depuis les outcomes."""
from datetime import datetime
from sqlalchemy import Float, Integer, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from app.models.user import Base


class SellerScore(Base):
    __tablename__ = "seller_scores"

    id: Mapped[int] = mapped_column(primary_key=True)
    seller_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, unique=True)

    fill_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    quality_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    delivery_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    pricing_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    overall_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    # 0 = pas de données (distinct d'un mauvais score)
    transactions_scored: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    last_calculated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def has_data(self) -> bool:
        return self.transactions_scored > 0

"""MarketPrice model - Historique journalier des prix unitaires par catégorie."""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Float, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.user import Base


class MarketPrice(Base):
    __tablename__ = "market_prices"

    id: Mapped[int] = mapped_column(primary_key=True)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # début de journée

    avg_price: Mapped[float] = mapped_column(Float, nullable=False)
    min_price: Mapped[float] = mapped_column(Float, nullable=False)
    max_price: Mapped[float] = mapped_column(Float, nullable=False)
    transaction_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_volume: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    # Moyennes glissantes (mises à jour sur la ligne du jour)
    rolling_avg_7d: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    rolling_avg_30d: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    price_change_7d: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    price_change_30d: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("category_name", "period_start", name="uq_market_prices_category_day"),
    )

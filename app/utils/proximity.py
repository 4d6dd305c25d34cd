"""Proximité d'un bid par rapport au prix demandé (0-100)."""
from typing import Optional


def calculate_proximity(bid_price: float, ask_price: Optional[float]) -> int:
    if not ask_price or ask_price <= 0:
        return 50

    ratio = bid_price / ask_price
    if ratio >= 1.0:
        return 100
    if ratio >= 0.9:
        return 90
    if ratio >= 0.8:
        return 75
    if ratio >= 0.7:
        return 60
    return max(10, round(ratio * 100))


def calculate_ask_ratio(bid_price: float, ask_price: Optional[float]) -> Optional[float]:
    if not ask_price or ask_price <= 0:
        return None
    return round(bid_price / ask_price, 4)

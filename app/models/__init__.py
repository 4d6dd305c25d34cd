from app.models.user import User, Notification, Base
from app.models.product import Product
from app.models.transaction import Transaction, Bid, ShortlistItem, ProductView
from app.models.match import Match
from app.models.prediction import Prediction
from app.models.propensity_score import PropensityScore
from app.models.seller_score import SellerScore
from app.models.churn_signal import ChurnSignal
from app.models.market_price import MarketPrice

__all__ = [
    'Base', 'User', 'Notification', 'Product',
    'Transaction', 'Bid', 'ShortlistItem', 'ProductView',
    'Match', 'Prediction', 'PropensityScore', 'SellerScore',
    'ChurnSignal', 'MarketPrice',
]

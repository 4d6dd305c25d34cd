import os

# Avant tout import de l'app: pool inline et base SQLite
os.environ["BATCH_MAX_WORKERS"] = "1"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DISCORD_ALERTS_WEBHOOK_URL"] = ""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import Base, User, Product, Transaction, Bid, Prediction

# Use in-memory SQLite for tests
SQLALCHEMY_DATABASE_URL = "sqlite://"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


def enable_savepoints(sqlite_engine):
    """pysqlite: transactions gérées par SQLAlchemy pour que les SAVEPOINT fonctionnent."""

    @event.listens_for(sqlite_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


enable_savepoints(engine)


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def file_db(tmp_path):
    """Base SQLite sur fichier: plusieurs connexions, pour les workers du pool."""
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'intel.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    enable_savepoints(file_engine)
    Base.metadata.create_all(bind=file_engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)()

    yield session

    session.close()
    file_engine.dispose()


@pytest.fixture
def now():
    return datetime.utcnow()


# =============================================================================
# FACTORIES
# =============================================================================

class Factory:
    def __init__(self, session):
        self.session = session
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def user(self, **kwargs) -> User:
        n = self._next()
        defaults = {
            "email": f"user{n}@example.com",
            "company_name": f"Company {n}",
            "is_buyer": True,
            "is_seller": False,
            "is_approved": True,
        }
        defaults.update(kwargs)
        user = User(**defaults)
        self.session.add(user)
        self.session.commit()
        return user

    def seller(self, **kwargs) -> User:
        kwargs.setdefault("is_seller", True)
        kwargs.setdefault("is_buyer", False)
        return self.user(**kwargs)

    def product(self, seller: User, **kwargs) -> Product:
        defaults = {
            "name": f"Product {self._next()}",
            "category": "Flower",
            "price_per_unit": 4.0,
            "quantity_available": 10.0,
        }
        defaults.update(kwargs)
        product = Product(seller_id=seller.id, **defaults)
        self.session.add(product)
        self.session.commit()
        return product

    def transaction(self, buyer: User, product: Product, days_ago: float = 0, quantity: float = 10.0,
                    unit_price: float = 4.0, bump: bool = True, **kwargs) -> Transaction:
        when = datetime.utcnow() - timedelta(days=days_ago)
        transaction = Transaction(
            buyer_id=buyer.id,
            seller_id=product.seller_id,
            product_id=product.id,
            quantity=quantity,
            unit_price=unit_price,
            total_value=round(quantity * unit_price, 2),
            transaction_date=when,
            **kwargs,
        )
        self.session.add(transaction)
        if bump:
            buyer.transaction_count = (buyer.transaction_count or 0) + 1
            if not buyer.last_transaction_date or when > buyer.last_transaction_date:
                buyer.last_transaction_date = when
        self.session.commit()
        return transaction

    def bid(self, buyer: User, product: Product, unit_price: float, **kwargs) -> Bid:
        ask = product.price_per_unit
        bid = Bid(
            buyer_id=buyer.id,
            product_id=product.id,
            unit_price=unit_price,
            quantity=kwargs.pop("quantity", 10.0),
            ask_ratio=round(unit_price / ask, 4) if ask else None,
            **kwargs,
        )
        self.session.add(bid)
        self.session.commit()
        return bid

    def prediction(self, buyer: User, category: str = "Flower", days_from_now: float = 0, **kwargs) -> Prediction:
        defaults = {
            "confidence_score": 80.0,
            "based_on_transactions": 3,
            "avg_interval_days": 10,
        }
        defaults.update(kwargs)
        prediction = Prediction(
            buyer_id=buyer.id,
            category_name=category,
            predicted_date=datetime.utcnow() + timedelta(days=days_from_now),
            **defaults,
        )
        self.session.add(prediction)
        self.session.commit()
        return prediction


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
def file_factory(file_db):
    return Factory(file_db)


# =============================================================================
# API
# =============================================================================

@pytest.fixture
def admin(factory):
    return factory.user(is_admin=True, is_buyer=False)


@pytest.fixture
def client(db, admin):
    from main import app
    from app.db.deps import get_db, get_current_user

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: admin
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def as_user(client):
    """Change l'utilisateur courant du client de test."""
    from main import app
    from app.db.deps import get_current_user

    def _switch(user):
        app.dependency_overrides[get_current_user] = lambda: user
        return client

    return _switch

"""Pytest fixtures for the grocery backend tests."""

import os

os.environ["DATABASE_URL"] = "sqlite://"
TEST_SECRET = "test-secret-key-for-the-grocery-suite"
os.environ["JWT_SECRET"] = TEST_SECRET
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SEED_SAMPLE_PRODUCTS"] = "false"
os.environ["ENVIRONMENT"] = "test"

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from database import Base, get_db, init_db, make_engine  # noqa: E402
from models import Product  # noqa: E402


@pytest.fixture
def engine():
    """In-memory SQLite engine with a fresh schema."""
    engine = make_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=True, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    """Test client whose requests each get their own session on the test engine."""
    from main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def register(client, name="Asha Buyer", email="asha@grocer.io", role="buyer", password="secret123"):
    response = client.post(
        "/api/auth/register",
        json={"name": name, "email": email, "password": password, "mobile": "9990001111", "role": role},
    )
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def buyer(client):
    return register(client)


@pytest.fixture
def other_buyer(client):
    return register(client, name="Ravi Buyer", email="ravi@grocer.io")


@pytest.fixture
def admin(client):
    return register(client, name="Meera Admin", email="meera@grocer.io", role="admin")


@pytest.fixture
def buyer_headers(buyer):
    return auth_headers(buyer["token"])


@pytest.fixture
def other_buyer_headers(other_buyer):
    return auth_headers(other_buyer["token"])


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin["token"])


@pytest.fixture
def make_product(db_session):
    def _make(name="Organic Tomatoes", price="20.00", stock=10, image_url=None):
        product = Product(
            name=name,
            description=f"Fresh {name.lower()}",
            price=Decimal(price),
            stock=stock,
            image_url=image_url,
        )
        db_session.add(product)
        db_session.commit()
        return product.id

    return _make


@pytest.fixture
def stock_of(db_session):
    def _stock(product_id):
        db_session.expire_all()
        return db_session.get(Product, product_id).stock

    return _stock

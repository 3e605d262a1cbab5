"""
Fixtures compartidos: SQLite en memoria con las tablas products/price_history.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CACHE_TTL_SECONDS", "0")

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import database
import models

AS_OF = datetime(2024, 6, 1, 12, 0)
TODAY = AS_OF.date()


def days_ago(n: int, hour: int = 9) -> datetime:
    return datetime.combine(TODAY - timedelta(days=n), datetime.min.time()).replace(hour=hour)


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    database.Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        database.Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def add_product(db):
    def _add(sku, ingredient="Milk", category="Dairy", brand=None, package_size=1000, unit="ml", full_name=None):
        product = models.Product(
            sku=sku,
            ingredient=ingredient,
            category=category,
            brand=brand or f"Brand {sku}",
            full_name=full_name or f"{ingredient} {sku}",
            package_size=package_size,
            unit=unit,
        )
        db.add(product)
        db.commit()
        return product
    return _add


@pytest.fixture
def observe(db):
    def _observe(sku, scraped_at, price, loyalty_price=None, savings=None, valid_until=None):
        obs = models.PriceObservation(
            sku=sku,
            scraped_at=scraped_at,
            price=price,
            loyalty_price=loyalty_price,
            deal_savings_percentage=savings,
            deal_valid_until=valid_until,
        )
        db.add(obs)
        db.commit()
        return obs
    return _observe


@pytest.fixture
def client(db):
    from main import app

    def override_get_db():
        yield db

    app.dependency_overrides[database.get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

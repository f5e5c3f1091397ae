# Pytest configuration for the API and engine tests.
# Forces a local SQLite DB, disables Redis, and pins the JWT secret for deterministic runs.
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Tuple

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("KAAMCONNECT_JWT_SECRET", "test-secret")

import sys
# Make the repo root importable when running pytest without an editable install
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from kaamconnect.main import app  # noqa: E402
from kaamconnect.db import Base, SessionLocal, engine  # noqa: E402
from kaamconnect import models  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_db() -> Iterator[None]:
    """
    Drop and recreate the schema around each test.

    Simple but effective for this small suite; avoids transactional complexity.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client() -> Iterator[TestClient]:
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def db() -> Iterator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


# Direct-to-database builders for service-level tests

def make_user(db, email: str, full_name: str = "Test User") -> models.User:
    user = models.User(email=email, password_hash="x", full_name=full_name)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_equipment(
    db,
    owner: models.User,
    name: str = "Tractor",
    rental_price: str = "500",
    price_type: str = "per_day",
    window: Tuple[datetime, datetime] = (
        datetime(2024, 1, 1, tzinfo=timezone.utc),
        datetime(2024, 1, 31, tzinfo=timezone.utc),
    ),
) -> models.Equipment:
    eq = models.Equipment(
        owner_id=owner.id,
        name=name,
        equipment_type="tractor",
        rental_price=Decimal(rental_price),
        price_type=price_type,
        location="Nashik",
        availability_start=window[0],
        availability_end=window[1],
        status="available",
    )
    db.add(eq)
    db.commit()
    db.refresh(eq)
    return eq


# HTTP helpers

def signup(client: TestClient, email: str, password: str = "changeme123", full_name: str = "") -> Tuple[str, dict]:
    payload = {"email": email, "password": password}
    if full_name:
        payload["full_name"] = full_name
    r = client.post("/auth/signup", json=payload)
    assert r.status_code == 201, r.text
    data = r.json()
    return data["access_token"], data["user"]


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def create_equipment(
    client: TestClient,
    token: str,
    name: str = "Mahindra Tractor",
    rental_price: float = 500,
    price_type: str = "per_day",
    availability_start: str = "2024-01-01T00:00:00Z",
    availability_end: str = "2024-01-31T00:00:00Z",
) -> dict:
    r = client.post(
        "/api/v1/equipment",
        headers=auth_headers(token),
        json={
            "name": name,
            "equipment_type": "tractor",
            "rental_price": rental_price,
            "price_type": price_type,
            "location": "Nashik",
            "availability_start": availability_start,
            "availability_end": availability_end,
        },
    )
    assert r.status_code == 201, r.text
    return r.json()

"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Auth tokens in tests are signed with this secret; set before auth is imported.
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import pytest

from fastapi.testclient import TestClient

from database import database
from server import app
from fakes import FakeBillingProvider, FakeDatabase


@pytest.fixture
def fake_db(monkeypatch):
    """In-memory database wired into the global database object (audit log reads it from there)."""
    db = FakeDatabase()
    monkeypatch.setattr(database, "db", db)
    return db


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def client(fake_db, provider):
    """TestClient for server:app with the in-memory database and fake Stripe provider."""
    app.state.billing_provider = provider
    yield TestClient(app)
    app.state.billing_provider = None

"""Pytest configuration and shared fixtures."""

import pytest

import cache
from models import Holding, Profile, Quote
from storage import ProfileStore


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Keep provider keys and the shared TTL cache out of every test."""
    for name in (
        "FMP_API_KEY",
        "AZURE_OPENAI_ENDPOINT",
        "AZURE_OPENAI_API_KEY",
        "AZURE_OPENAI_DEPLOYMENT",
        "AZURE_OPENAI_API_VERSION",
        "OPENAI_API_KEY",
        "OPENAI_MODEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TW_YFINANCE_FALLBACK", "0")
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def store(tmp_path):
    return ProfileStore(tmp_path / "profiles.json")


@pytest.fixture
def client(tmp_path):
    from web import app

    app.config.update(TESTING=True, DATA_PATH=tmp_path / "web_profiles.json")
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def us_holdings():
    return [
        Holding(id="h1", symbol="AAPL", name="Apple Inc.", quantity=10, cost_basis=100.0),
        Holding(id="h2", symbol="MSFT", name="Microsoft", quantity=5, cost_basis=200.0),
    ]


@pytest.fixture
def mixed_profile():
    return Profile(
        id="p-mixed",
        name="混合帳戶",
        risk_level="balanced",
        market="MIXED",
        base_currency="USD",
        holdings=[
            Holding(id="h1", symbol="AAPL", name="Apple Inc.", quantity=10, cost_basis=100.0, market="US"),
            Holding(id="h2", symbol="2330", name="台積電", quantity=100, cost_basis=500.0, market="TW"),
        ],
    )


@pytest.fixture
def sample_quotes():
    return [
        Quote(symbol="AAPL", name="Apple Inc.", price=150.0, market="US", currency="USD"),
        Quote(symbol="2330", name="台積電", price=600.0, market="TW", currency="TWD"),
    ]

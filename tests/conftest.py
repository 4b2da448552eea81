import pytest

from src.config.config import Config
from tests.helpers.mocks import FakeStripe, MockSupabaseClient


@pytest.fixture(autouse=True)
def _billing_config(monkeypatch):
    """Deterministic configuration for every test; no .env values leak in."""
    monkeypatch.setattr(Config, "SUPABASE_URL", "https://project.supabase.test")
    monkeypatch.setattr(Config, "SUPABASE_KEY", "service-role-key")
    monkeypatch.setattr(Config, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(Config, "STRIPE_WEBHOOK_SECRET", "whsec_test_123")
    monkeypatch.setattr(Config, "APP_URL", "https://app.example.test")
    monkeypatch.setattr(Config, "STRICT_PRICE_MAPPING", False)


@pytest.fixture
def fake_supabase(monkeypatch):
    sb = MockSupabaseClient()
    monkeypatch.setattr("src.config.supabase_config.get_supabase_client", lambda: sb)
    yield sb


@pytest.fixture
def fake_stripe(monkeypatch):
    return FakeStripe().install(monkeypatch)


@pytest.fixture
def family(fake_supabase):
    """Parent p1 linked to student s1, with the plan catalog loaded."""
    fake_supabase.seed_family()
    fake_supabase.seed_plans()
    return fake_supabase

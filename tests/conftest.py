import os
from types import SimpleNamespace

os.environ["APP_ENV"] = "test"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_mock")
os.environ.setdefault("APP_URL", "http://localhost:3000")

import pytest  # noqa: E402
import stripe  # noqa: E402

import app as ally_app  # noqa: E402

PLUS_PRICE_ID = "price_1SwtCbBfSldKMuDjM3p0kyG4"
SESSION_URL = "https://checkout.stripe.com/c/pay/cs_test_123"


@pytest.fixture(autouse=True)
def reset_state():
    saved = dict(ally_app.app.config)
    for limiter in (ally_app.api_limiter, ally_app.checkout_limiter, ally_app.subscribe_limiter):
        limiter.reset()
    ally_app.subscribers.clear()
    ally_app.notifications.reset()
    ally_app.push_subscriptions.clear()
    ally_app.referral_tracker.clear()
    ally_app.users.clear()
    yield
    ally_app.app.config.update(saved)


@pytest.fixture
def client():
    return ally_app.app.test_client()


@pytest.fixture
def dev_mode():
    ally_app.app.config["DEVELOPMENT_MODE"] = True


@pytest.fixture
def stripe_calls(monkeypatch):
    calls = []

    def fake_create(**params):
        calls.append(params)
        return SimpleNamespace(id="cs_test_123", url=SESSION_URL)

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    return calls


class FakeCompletions:
    def __init__(self, reply="Hello from Ally", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture
def fake_llm(monkeypatch):
    completions = FakeCompletions()
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    monkeypatch.setattr(ally_app, "get_chat_client", lambda: client)
    return completions

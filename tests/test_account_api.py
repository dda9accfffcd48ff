from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import pytest
from werkzeug.middleware.proxy_fix import ProxyFix

import app as ally_app

VALID_CONFIG = {
    "model": "claude",
    "channel": "telegram",
    "telegramToken": "123456789:AAEhBP0av28_fake-token",
    "email": "owner@example.com",
}


# --------------------
# /api/config
# --------------------
def test_config_saves(client):
    res = client.post("/api/config", json=VALID_CONFIG)
    assert res.status_code == 200
    assert res.get_json() == {
        "success": True,
        "message": "Configuration saved successfully",
        "redirectUrl": "/dashboard",
    }


@pytest.mark.parametrize("field", ["model", "channel", "telegramToken", "email"])
def test_config_requires_fields(client, field):
    body = dict(VALID_CONFIG)
    del body[field]
    res = client.post("/api/config", json=body)
    assert res.status_code == 400
    assert res.get_json()["error"] == "Missing required fields"


def test_config_rejects_bad_token(client):
    res = client.post("/api/config", json=dict(VALID_CONFIG, telegramToken="not-a-token"))
    assert res.status_code == 400
    assert res.get_json()["error"] == "Invalid Telegram bot token format"


def test_config_never_logs_token(client, caplog):
    with caplog.at_level("INFO"):
        client.post("/api/config", json=VALID_CONFIG)
    assert VALID_CONFIG["telegramToken"] not in caplog.text


# --------------------
# /api/customer and /api/referrals
# --------------------
@pytest.mark.parametrize("path", ["/api/customer", "/api/referrals"])
def test_requires_auth(client, path):
    res = client.get(path)
    assert res.status_code == 401
    assert res.get_json()["error"] == "Unauthorized"


@pytest.mark.parametrize("path", ["/api/customer", "/api/referrals"])
def test_not_implemented_outside_development(client, path):
    res = client.get(path, headers={"Authorization": "Bearer abc"})
    assert res.status_code == 501


def test_customer_mock_in_development(client, dev_mode):
    res = client.get("/api/customer", headers={"Authorization": "Bearer abc"})
    assert res.status_code == 200
    data = res.get_json()
    assert data["plan"] == "Pro"
    assert "_warning" in data


def test_referrals_mock_in_development(client, dev_mode):
    res = client.get("/api/referrals", headers={"Authorization": "Bearer abc"})
    data = res.get_json()
    assert data["referralCode"].startswith("CLAWD")
    assert data["referralLink"] == f"http://localhost:3000/r/{data['referralCode']}"


def test_track_referral(client):
    res = client.post("/api/referrals", json={"referralCode": "CLAWD1A", "action": "signup", "email": "A@B.com"})
    assert res.status_code == 200
    events = ally_app.referral_tracker.events_for("CLAWD1A")
    assert events[0]["action"] == "signup"
    assert events[0]["email"] == "a@b.com"


def test_track_referral_validation(client):
    assert client.post("/api/referrals", json={}).status_code == 400
    res = client.post("/api/referrals", data="{{", content_type="application/json")
    assert res.status_code == 400
    assert res.get_json()["error"] == "Invalid request body"
    assert client.post("/api/referrals", json={"referralCode": "X", "action": "steal"}).status_code == 400


def test_track_referral_defaults_to_click(client):
    client.post("/api/referrals", json={"referralCode": "CLAWD1A"})
    assert ally_app.referral_tracker.events_for("CLAWD1A")[0]["action"] == "click"


# --------------------
# Google sign-in
# --------------------
@pytest.fixture
def google(monkeypatch):
    ally_app.app.config["GOOGLE_CLIENT_ID"] = "client-id"
    ally_app.app.config["GOOGLE_CLIENT_SECRET"] = "client-secret"
    calls = {}

    def fake_post(url, data=None, timeout=None):
        calls["token"] = (url, data)
        return SimpleNamespace(raise_for_status=lambda: None, json=lambda: {"access_token": "at"})

    def fake_get(url, headers=None, timeout=None):
        calls["userinfo"] = (url, headers)
        profile = {"sub": "123", "email": "Person@Example.com", "email_verified": True, "name": "Person"}
        return SimpleNamespace(raise_for_status=lambda: None, json=lambda: profile)

    monkeypatch.setattr(ally_app.requests, "post", fake_post)
    monkeypatch.setattr(ally_app.requests, "get", fake_get)
    return calls


def start_sign_in(client, callback="/settings"):
    res = client.get(f"/auth/google?callbackUrl={callback}")
    assert res.status_code == 302
    query = parse_qs(urlparse(res.headers["Location"]).query)
    return query["state"][0], query


def test_google_not_configured(client):
    ally_app.app.config["GOOGLE_CLIENT_ID"] = ""
    assert client.get("/auth/google").status_code == 503


def test_google_redirect(client, google):
    _, query = start_sign_in(client)
    assert query["client_id"] == ["client-id"]
    assert query["redirect_uri"] == ["http://localhost:3000/auth/google/callback"]
    assert query["scope"] == ["openid email profile"]


def test_callback_rejects_bad_state(client, google):
    start_sign_in(client)
    res = client.get("/auth/google/callback?state=forged&code=abc")
    assert res.status_code == 400


def test_full_sign_in_flow(client, google):
    state, _ = start_sign_in(client, callback="/settings")
    res = client.get(f"/auth/google/callback?state={state}&code=abc")
    assert res.status_code == 302
    assert res.headers["Location"] == "http://localhost:3000/settings"
    assert google["token"][1]["code"] == "abc"
    assert google["userinfo"][1]["Authorization"] == "Bearer at"

    user = client.get("/api/auth/session").get_json()["user"]
    assert user["email"] == "person@example.com"
    assert len(ally_app.users) == 1

    settings = client.get("/settings")
    assert settings.status_code == 200
    assert settings.get_json()["user"]["email"] == "person@example.com"

    client.post("/auth/logout")
    assert client.get("/api/auth/session").get_json()["user"] is None


def test_unverified_email_is_refused(client, google, monkeypatch):
    def fake_get(url, headers=None, timeout=None):
        profile = {"sub": "1", "email": "x@example.com", "email_verified": False}
        return SimpleNamespace(raise_for_status=lambda: None, json=lambda: profile)

    monkeypatch.setattr(ally_app.requests, "get", fake_get)
    state, _ = start_sign_in(client)
    res = client.get(f"/auth/google/callback?state={state}&code=abc")
    assert "/setup" in res.headers["Location"]
    assert client.get("/api/auth/session").get_json()["user"] is None


@pytest.mark.parametrize("callback,expected", [
    ("http://localhost:3000/workspace/1", "http://localhost:3000/workspace/1"),
    ("/settings", "http://localhost:3000/settings"),
    ("https://evil.com/setup", "http://localhost:3000/setup"),
    ("https://evil.com/", "http://localhost:3000/dashboard"),
    ("http://localhost:3000.evil.com/x", "http://localhost:3000/dashboard"),
    ("//evil.com/x", "http://localhost:3000/dashboard"),
    ("", "http://localhost:3000/dashboard"),
])
def test_post_login_redirect(callback, expected):
    assert ally_app.resolve_post_login_redirect(callback, "http://localhost:3000") == expected


# --------------------
# Middleware
# --------------------
@pytest.mark.parametrize("path", ["/dashboard", "/settings", "/workspace/abc"])
def test_protected_pages_redirect_to_setup(client, path):
    res = client.get(path)
    assert res.status_code == 302
    assert "/setup" in res.headers["Location"]


def test_setup_page_describes_sign_in(client):
    data = client.get("/setup?callbackUrl=/dashboard").get_json()
    assert data["user"] is None
    assert data["signInUrl"].startswith("/auth/google")


def test_api_rate_limit(client):
    ally_app.api_limiter.max_requests = 3
    try:
        statuses = [client.get("/api/notifications").status_code for _ in range(4)]
    finally:
        ally_app.api_limiter.max_requests = ally_app.RATE_LIMIT_MAX
    assert statuses == [200, 200, 200, 429]


def test_api_rate_limit_is_per_client(client):
    ally_app.api_limiter.max_requests = 1
    try:
        first = client.get("/api/notifications", environ_base={"REMOTE_ADDR": "10.0.0.1"})
        second = client.get("/api/notifications", environ_base={"REMOTE_ADDR": "10.0.0.2"})
        third = client.get("/api/notifications", environ_base={"REMOTE_ADDR": "10.0.0.1"})
    finally:
        ally_app.api_limiter.max_requests = ally_app.RATE_LIMIT_MAX
    assert (first.status_code, second.status_code, third.status_code) == (200, 200, 429)


def test_api_responses_carry_rate_limit_headers(client):
    res = client.get("/api/notifications")
    assert res.headers["X-RateLimit-Limit"] == str(ally_app.RATE_LIMIT_MAX)
    assert res.headers["X-RateLimit-Remaining"] == str(ally_app.RATE_LIMIT_MAX - 1)


def test_forwarded_for_is_ignored_without_trusted_proxy(client):
    ally_app.api_limiter.max_requests = 2
    try:
        statuses = [
            client.get("/api/notifications", headers={"X-Forwarded-For": f"10.0.0.{i}"}).status_code
            for i in range(3)
        ]
    finally:
        ally_app.api_limiter.max_requests = ally_app.RATE_LIMIT_MAX
    assert statuses == [200, 200, 429]


def test_forwarded_for_is_used_behind_trusted_proxy(client, monkeypatch):
    monkeypatch.setattr(ally_app.app, "wsgi_app", ProxyFix(ally_app.app.wsgi_app, x_for=1))
    ally_app.api_limiter.max_requests = 1
    try:
        first = client.get("/api/notifications", headers={"X-Forwarded-For": "10.0.0.1"})
        second = client.get("/api/notifications", headers={"X-Forwarded-For": "10.0.0.2"})
        third = client.get("/api/notifications", headers={"X-Forwarded-For": "10.0.0.1"})
    finally:
        ally_app.api_limiter.max_requests = ally_app.RATE_LIMIT_MAX
    assert (first.status_code, second.status_code, third.status_code) == (200, 200, 429)


def test_sign_in_cookie_alone_is_not_authentication(client, google):
    start_sign_in(client)
    assert client.get("/api/customer").status_code == 401
    assert client.get("/api/referrals").status_code == 401


def test_callback_rejects_non_ascii_state(client, google):
    start_sign_in(client)
    res = client.get("/auth/google/callback?state=%C3%A9&code=abc")
    assert res.status_code == 400
    assert res.get_json()["error"] == "Invalid OAuth state"

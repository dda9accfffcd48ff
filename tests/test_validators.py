import pytest

from validators import (
    FALLBACK_PRICE_IDS,
    get_allowed_price_ids,
    is_disposable_email,
    is_valid_telegram_token,
    normalize_email,
    safe_redirect_url,
    validate_email,
    validate_price_id,
)


def test_normalize_email_trims_and_lowercases():
    assert normalize_email("  Test@Example.COM ") == "test@example.com"
    assert normalize_email(None) == ""


@pytest.mark.parametrize(
    "email",
    ["not-an-email", "@missing-local.com", "missing@", "spaces in@email.com", "no-dot@domain"],
)
def test_validate_email_rejects_bad_format(email):
    assert validate_email(email) == (False, "Invalid email format")


def test_validate_email_requires_value():
    assert validate_email("") == (False, "Email is required")
    assert validate_email("   ") == (False, "Email is required")


def test_validate_email_rejects_long_addresses():
    ok, err = validate_email("a" * 300 + "@example.com")
    assert not ok
    assert "too long" in err


@pytest.mark.parametrize("local", ["test", "someone.else", "x+tag"])
@pytest.mark.parametrize("domain", ["mailinator.com", "tempmail.com", "guerrillamail.com", "10minutemail.com", "yopmail.com"])
def test_disposable_domains_rejected_for_any_local_part(local, domain):
    email = f"{local}@{domain}"
    assert is_disposable_email(email)
    ok, err = validate_email(email)
    assert not ok
    assert err.startswith("Disposable")


def test_disposable_check_is_case_insensitive():
    assert validate_email("Person@MAILINATOR.com")[0] is False


def test_validate_email_accepts_normal_address():
    assert validate_email(" Valid@Example.com ") == (True, None)


def test_allowed_price_ids_merge_env_and_fallback():
    env = {
        "STRIPE_PRICE_PLUS": "price_env_plus",
        "NEXT_PUBLIC_STRIPE_PRICE_FAMILY": "price_env_family",
        "STRIPE_ALLOWED_PRICE_IDS": "price_extra_1, price_extra_2,",
    }
    allowed = get_allowed_price_ids(env)
    assert set(FALLBACK_PRICE_IDS) <= allowed
    assert {"price_env_plus", "price_env_family", "price_extra_1", "price_extra_2"} <= allowed
    assert "" not in allowed


def test_validate_price_id_requires_whitelist():
    allowed = {"price_good"}
    assert validate_price_id("price_good", allowed) == (True, None)
    assert validate_price_id("price_other", allowed) == (False, "Invalid price ID")
    assert validate_price_id("", allowed) == (False, "Price ID required")


def test_whitelisted_id_without_prefix_is_rejected():
    allowed = {"prod_whitelisted"}
    assert validate_price_id("prod_whitelisted", allowed) == (False, "Invalid price ID format")


def test_whitelisted_id_over_length_is_rejected():
    long_id = "price_" + "a" * 200
    assert validate_price_id(long_id, {long_id}) == (False, "Invalid price ID format")


def test_price_id_at_length_limit_is_accepted():
    exact = "price_" + "a" * 94
    assert len(exact) == 100
    assert validate_price_id(exact, {exact}) == (True, None)


@pytest.mark.parametrize("token,expected", [
    ("123456:ABC-def_ghi", True),
    ("1:a", True),
    ("abc:def", False),
    ("123456", False),
    ("123456:", False),
    ("123456:abc def", False),
    ("123456:abc\n", False),
    ("", False),
    (None, False),
])
def test_telegram_token(token, expected):
    assert is_valid_telegram_token(token) is expected


BASE = "http://localhost:3000"


def test_safe_redirect_keeps_same_origin():
    assert safe_redirect_url(f"{BASE}/thanks", BASE, "d") == f"{BASE}/thanks"
    assert safe_redirect_url("/thanks?x=1", BASE, "d") == f"{BASE}/thanks?x=1"


@pytest.mark.parametrize("url", [
    "https://evil.com/steal-data",
    "//evil.com/phishing",
    "javascript:alert(1)",
    "https://localhost:3000/",
])
def test_safe_redirect_rejects_other_origins(url):
    assert safe_redirect_url(url, BASE, "default") == "default"


def test_safe_redirect_uses_default_when_empty():
    assert safe_redirect_url(None, BASE, "default") == "default"
    assert safe_redirect_url("  ", BASE, "default") == "default"

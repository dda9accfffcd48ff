import os
import re
from typing import Iterable, Mapping, Optional, Set, Tuple
from urllib.parse import urljoin, urlparse

MAX_EMAIL_LENGTH = 254
MAX_PRICE_ID_LENGTH = 100
PRICE_ID_PREFIX = "price_"

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TELEGRAM_TOKEN_REGEX = re.compile(r"^\d+:[A-Za-z0-9_-]+$")

DISPOSABLE_EMAIL_DOMAINS = frozenset(
    {
        "10minutemail.com",
        "10minutemail.net",
        "discard.email",
        "dispostable.com",
        "fakeinbox.com",
        "getairmail.com",
        "getnada.com",
        "guerrillamail.biz",
        "guerrillamail.com",
        "guerrillamail.de",
        "guerrillamail.net",
        "guerrillamail.org",
        "mailcatch.com",
        "maildrop.cc",
        "mailinator.com",
        "mailinator.net",
        "mailnesia.com",
        "mintemail.com",
        "mohmal.com",
        "sharklasers.com",
        "spamgourmet.com",
        "temp-mail.org",
        "tempail.com",
        "tempmail.com",
        "tempmail.net",
        "tempr.email",
        "throwawaymail.com",
        "trashmail.com",
        "trashmail.net",
        "yopmail.com",
        "yopmail.net",
    }
)

# Live Stripe prices for Plus, Pro and Team; kept so checkout works before the env is set.
FALLBACK_PRICE_IDS = (
    "price_1SwtCbBfSldKMuDjM3p0kyG4",
    "price_1SwtCbBfSldKMuDjDmRHqErh",
    "price_1SwtCcBfSldKMuDjEKBqQ6lH",
)

PRICE_ENV_TIERS = ("PERSONAL", "PLUS", "PRO", "FAMILY", "TEAM")


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def email_domain(email: str) -> str:
    return normalize_email(email).rpartition("@")[2]


def is_disposable_email(email: str) -> bool:
    return email_domain(email) in DISPOSABLE_EMAIL_DOMAINS


def validate_email(email: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Check an email address for the waitlist and checkout flows.
    Returns (is_valid, error_message). The address is normalized first.
    """
    normalized = normalize_email(email)
    if not normalized:
        return False, "Email is required"
    if len(normalized) > MAX_EMAIL_LENGTH:
        return False, "Email is too long"
    if not EMAIL_REGEX.match(normalized):
        return False, "Invalid email format"
    if is_disposable_email(normalized):
        return False, "Disposable email addresses are not allowed"
    return True, None


def get_allowed_price_ids(env: Optional[Mapping[str, str]] = None) -> Set[str]:
    env = os.environ if env is None else env
    allowed: Set[str] = set(FALLBACK_PRICE_IDS)
    for tier in PRICE_ENV_TIERS:
        for name in (f"STRIPE_PRICE_{tier}", f"NEXT_PUBLIC_STRIPE_PRICE_{tier}"):
            value = (env.get(name) or "").strip()
            if value:
                allowed.add(value)
    extra = env.get("STRIPE_ALLOWED_PRICE_IDS") or ""
    allowed.update(p.strip() for p in extra.split(",") if p.strip())
    return allowed


def is_valid_price_id_format(price_id: str) -> bool:
    return price_id.startswith(PRICE_ID_PREFIX) and len(price_id) <= MAX_PRICE_ID_LENGTH


def validate_price_id(price_id: Optional[str], allowed: Iterable[str]) -> Tuple[bool, Optional[str]]:
    """
    Format and whitelist must both pass; a whitelisted id with a bad format is
    still rejected.
    """
    price_id = (price_id or "").strip()
    if not price_id:
        return False, "Price ID required"
    if not is_valid_price_id_format(price_id):
        return False, "Invalid price ID format"
    if price_id not in set(allowed):
        return False, "Invalid price ID"
    return True, None


def is_valid_telegram_token(token: Optional[str]) -> bool:
    return bool(token) and bool(TELEGRAM_TOKEN_REGEX.fullmatch(token))


def safe_redirect_url(url: Optional[str], base_url: str, default: str) -> str:
    """Return url if it stays on base_url's origin, otherwise default."""
    url = (url or "").strip()
    if not url:
        return default
    candidate = urljoin(base_url.rstrip("/") + "/", url)
    base = urlparse(base_url)
    target = urlparse(candidate)
    if target.scheme in ("http", "https") and (target.scheme, target.netloc) == (base.scheme, base.netloc):
        return candidate
    return default

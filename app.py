import os
import hmac
import hashlib
import logging
import secrets
import time
import traceback
import uuid
from datetime import timedelta
from typing import List, Optional
from urllib.parse import urlencode

import requests
import stripe
from dotenv import load_dotenv
from flask import Flask, g, jsonify, redirect, request, session, url_for
from flask_login import LoginManager, UserMixin, current_user, login_user, logout_user
from openai import OpenAI
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from pricing import (
    get_tier,
    get_tier_by_price_id,
    load_pricing_tiers,
    pricing_catalogue,
    should_show_upgrade_prompt,
)
from ratelimit import RateLimiter, RateLimitResult
from stores import (
    DEFAULT_NOTIFICATION_PREFERENCES,
    NOTIFICATION_STATUSES,
    NOTIFICATION_TYPES,
    REFERRAL_ACTIONS,
    NotificationRepository,
    PushSubscriptionStore,
    ReferralTracker,
    SubscriberStore,
    UserStore,
    mask_value,
    mock_referral_summary,
)
from validators import (
    get_allowed_price_ids,
    is_valid_telegram_token,
    normalize_email,
    safe_redirect_url,
    validate_email,
    validate_price_id,
)

# ==========================
# Environment / config
# ==========================
load_dotenv()

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
APP_ENV = (os.getenv("APP_ENV") or os.getenv("FLASK_ENV") or "").strip().lower()
DEVELOPMENT_MODE = APP_ENV == "development"
PRODUCTION_MODE = APP_ENV == "production" or bool(os.getenv("RAILWAY_ENVIRONMENT"))
APP_URL = (os.getenv("APP_URL") or os.getenv("NEXT_PUBLIC_APP_URL") or "").strip().rstrip("/")
DEBUG_LOGS = bool(os.getenv("DEBUG_LOGS", ""))

STRIPE_SECRET_KEY = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
CHECKOUT_TRIAL_DAYS = 14

OPENAI_API_KEY = (os.getenv("OPENAI_API_KEY") or "").strip()
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
CHAT_MAX_TOKENS = int(os.getenv("CHAT_MAX_TOKENS", "4096"))
MAX_HISTORY = 20

GOOGLE_CLIENT_ID = (os.getenv("GOOGLE_CLIENT_ID") or "").strip()
GOOGLE_CLIENT_SECRET = (os.getenv("GOOGLE_CLIENT_SECRET") or "").strip()
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_REQUEST_TIMEOUT = int(os.getenv("GOOGLE_REQUEST_TIMEOUT", "10"))

INTERNAL_API_KEY = (os.getenv("INTERNAL_API_KEY") or "").strip()
KV_REST_API_URL = (os.getenv("KV_REST_API_URL") or "").strip()
KV_REST_API_TOKEN = (os.getenv("KV_REST_API_TOKEN") or "").strip()

TRUSTED_PROXY_COUNT = int(os.getenv("TRUSTED_PROXY_COUNT", "0"))
RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "100"))
RATE_LIMIT_WINDOW_MS = int(os.getenv("RATE_LIMIT_WINDOW_MS", str(60 * 1000)))
CHECKOUT_RATE_LIMIT_MAX = int(os.getenv("CHECKOUT_RATE_LIMIT_MAX", "10"))
CHECKOUT_RATE_LIMIT_WINDOW_MS = int(os.getenv("CHECKOUT_RATE_LIMIT_WINDOW_MS", str(60 * 1000)))
SUBSCRIBE_RATE_LIMIT_MAX = int(os.getenv("SUBSCRIBE_RATE_LIMIT_MAX", "5"))
SUBSCRIBE_RATE_LIMIT_WINDOW_MS = int(os.getenv("SUBSCRIBE_RATE_LIMIT_WINDOW_MS", str(60 * 60 * 1000)))

MAX_NOTIFICATION_PAGE = 100
PROTECTED_PREFIXES = ("/dashboard", "/workspace", "/settings")

CHAT_SYSTEM_PROMPT = """You are Ally, a helpful AI assistant. You're friendly, concise, and actually useful.

You help users with:
- Answering questions
- Writing and editing
- Planning and organization
- Research and analysis
- Creative tasks

Be conversational but efficient. Don't be overly formal or robotic."""
CHAT_NOT_CONFIGURED_REPLY = "I'm not fully set up yet. Please contact support."
CHAT_FAILED_REPLY = "Sorry, I couldn't process that. Please try again."
CHAT_EMPTY_REPLY = "I couldn't generate a response."

if PRODUCTION_MODE and SECRET_KEY == "dev-secret-key":
    raise RuntimeError("Insecure default SECRET_KEY in production. Set a proper value in environment.")

# ==========================
# Flask app setup
# ==========================
app = Flask(__name__)
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DEVELOPMENT_MODE=DEVELOPMENT_MODE,
    APP_URL=APP_URL,
    DEBUG_LOGS=DEBUG_LOGS,
    STRIPE_SECRET_KEY=STRIPE_SECRET_KEY,
    ALLOWED_PRICE_IDS=get_allowed_price_ids(),
    PRICING_TIERS=load_pricing_tiers(),
    OPENAI_API_KEY=OPENAI_API_KEY,
    OPENAI_MODEL=OPENAI_MODEL,
    GOOGLE_CLIENT_ID=GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET=GOOGLE_CLIENT_SECRET,
    INTERNAL_API_KEY=INTERNAL_API_KEY,
    PERMANENT_SESSION_LIFETIME=timedelta(days=30),
    REMEMBER_COOKIE_DURATION=timedelta(days=30),
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=PRODUCTION_MODE,
)

# Behind a load balancer, trust that many X-Forwarded-For hops for remote_addr
if TRUSTED_PROXY_COUNT > 0:
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=TRUSTED_PROXY_COUNT, x_proto=TRUSTED_PROXY_COUNT)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ally")

login_manager = LoginManager()
login_manager.init_app(app)

api_limiter = RateLimiter(RATE_LIMIT_MAX, RATE_LIMIT_WINDOW_MS, name="api")
checkout_limiter = RateLimiter(CHECKOUT_RATE_LIMIT_MAX, CHECKOUT_RATE_LIMIT_WINDOW_MS, name="checkout")
subscribe_limiter = RateLimiter(SUBSCRIBE_RATE_LIMIT_MAX, SUBSCRIBE_RATE_LIMIT_WINDOW_MS, name="subscribe")

subscribers = SubscriberStore()
notifications = NotificationRepository()
push_subscriptions = PushSubscriptionStore()
referral_tracker = ReferralTracker()
users = UserStore(KV_REST_API_URL, KV_REST_API_TOKEN)

SECURITY_HEADERS = {
    "X-DNS-Prefetch-Control": "on",
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=(self)",
    "Content-Security-Policy": "; ".join(
        [
            "default-src 'self'",
            "script-src 'self' 'unsafe-inline' 'unsafe-eval' https://js.stripe.com",
            "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
            "font-src 'self' https://fonts.gstatic.com",
            "img-src 'self' data: https: blob:",
            "connect-src 'self' https://api.stripe.com wss: ws:",
            "frame-src 'self' https://js.stripe.com",
            "form-action 'self'",
            "base-uri 'self'",
            "object-src 'none'",
            "upgrade-insecure-requests",
        ]
    ),
}


# ==========================
# User model
# ==========================
class User(UserMixin):
    def __init__(self, id, email, name=None, image=None, provider="google"):
        self.id = str(id)
        self.email = email
        self.name = name
        self.image = image
        self.provider = provider

    @classmethod
    def from_stored(cls, stored):
        return cls(stored.id, stored.email, stored.name, stored.image, stored.provider)

    def to_dict(self) -> dict:
        return {"id": self.id, "email": self.email, "name": self.name, "image": self.image}


@login_manager.user_loader
def load_user(user_id):
    stored = users.get(user_id)
    return User.from_stored(stored) if stored else None


# ==========================
# Request helpers
# ==========================
def client_ip() -> str:
    # X-Forwarded-For is only honoured through ProxyFix (TRUSTED_PROXY_COUNT)
    return request.remote_addr or "unknown"


def base_url() -> str:
    return (app.config["APP_URL"] or request.host_url).rstrip("/")


def json_error(message: str, status: int, /, **extra):
    body = {"error": message}
    body.update(extra)
    return jsonify(body), status


def text_value(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def rate_limited_response(result: RateLimitResult, message: str):
    resp = jsonify({"error": "Too Many Requests", "message": message})
    resp.status_code = 429
    resp.headers["X-RateLimit-Limit"] = str(result.limit)
    resp.headers["X-RateLimit-Remaining"] = "0"
    resp.headers["Retry-After"] = str(result.retry_after)
    return resp


def tokens_match(provided: str, expected: str) -> bool:
    # compare_digest rejects non-ASCII str, so compare bytes
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def is_request_authenticated() -> bool:
    if current_user.is_authenticated:
        return True
    return bool(request.headers.get("Authorization"))


def is_protected_path(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in PROTECTED_PREFIXES)


# ==========================
# Middleware
# ==========================
@app.before_request
def guard_request():
    path = request.path
    if path.startswith("/static") or path == "/favicon.ico":
        return None

    if path.startswith("/api"):
        result = api_limiter.hit(client_ip())
        g.rate_limit = result
        if not result.allowed:
            logger.warning("Rate limit exceeded ip=%s path=%s", client_ip(), path)
            return rate_limited_response(result, "Rate limit exceeded. Please try again later.")
        return None

    if is_protected_path(path) and not current_user.is_authenticated:
        return redirect(url_for("setup", callbackUrl=path))
    return None


@app.after_request
def apply_response_headers(response):
    for key, value in SECURITY_HEADERS.items():
        response.headers.setdefault(key, value)
    response.headers["X-Request-ID"] = str(uuid.uuid4())

    result = g.get("rate_limit")
    if result is not None and "X-RateLimit-Limit" not in response.headers:
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    return response


# ==========================
# Health / pricing
# ==========================
@app.get("/health")
def health():
    return jsonify({"ok": True})


@app.get("/api/pricing")
def pricing():
    return jsonify(pricing_catalogue(app.config["PRICING_TIERS"]))


# ==========================
# Checkout
# ==========================
def build_checkout_params(price_id: str, email: Optional[str], success_url: str, cancel_url: str) -> dict:
    params = {
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "allow_promotion_codes": True,
        "billing_address_collection": "required",
        "subscription_data": {"trial_period_days": CHECKOUT_TRIAL_DAYS},
    }
    if email:
        params["customer_email"] = email
    tier = get_tier_by_price_id(price_id, app.config["PRICING_TIERS"])
    if tier:
        params["metadata"] = {"tier": tier.id}
        params["subscription_data"]["metadata"] = {"tier": tier.id}
    return params


@app.route("/api/checkout", methods=["GET", "POST"])
def checkout():
    if not app.config["STRIPE_SECRET_KEY"]:
        logger.error("Checkout requested but STRIPE_SECRET_KEY is not configured")
        return json_error("Payment service not configured", 503)

    limit = checkout_limiter.hit(client_ip())
    if not limit.allowed:
        return rate_limited_response(limit, "Too many checkout attempts. Please try again later.")

    success_input = cancel_input = None
    if request.method == "GET":
        price_id = text_value(request.args.get("price"))
        email = text_value(request.args.get("email"))
        if not price_id:
            return json_error("Price ID required", 400)
    else:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return json_error("Invalid JSON body", 400)
        price_id = text_value(data.get("priceId"))
        email = text_value(data.get("email"))
        success_input = text_value(data.get("successUrl"))
        cancel_input = text_value(data.get("cancelUrl"))
        if not price_id:
            return json_error("priceId is required", 400)
        if not email:
            return json_error("Email is required for checkout", 400)

    if email:
        ok, err = validate_email(email)
        if not ok:
            return json_error(err, 400)
        email = normalize_email(email)

    ok, err = validate_price_id(price_id, app.config["ALLOWED_PRICE_IDS"])
    if not ok:
        logger.warning("Checkout rejected price id (len=%d): %s", len(price_id), err)
        return json_error(err, 400)

    root = base_url()
    success_url = safe_redirect_url(
        success_input, root, f"{root}/success?session_id={{CHECKOUT_SESSION_ID}}"
    )
    cancel_url = safe_redirect_url(cancel_input, root, f"{root}/")

    stripe.api_key = app.config["STRIPE_SECRET_KEY"]
    try:
        checkout_session = stripe.checkout.Session.create(
            **build_checkout_params(price_id, email or None, success_url, cancel_url)
        )
    except Exception as e:
        logger.error("Stripe checkout error: %r", e)
        body = {"error": "Failed to create checkout session"}
        if app.config["DEVELOPMENT_MODE"]:
            body["detail"] = str(e)
        return jsonify(body), 500

    logger.info("Checkout session created id=%s price=%s", checkout_session.id, price_id)
    if request.method == "GET":
        return redirect(checkout_session.url, code=303)
    return jsonify({"sessionId": checkout_session.id, "url": checkout_session.url})


# ==========================
# Email list
# ==========================
def make_unsubscribe_token(email: str, secret: Optional[str] = None) -> str:
    key = (secret or app.config["SECRET_KEY"]).encode("utf-8")
    return hmac.new(key, normalize_email(email).encode("utf-8"), hashlib.sha256).hexdigest()


@app.post("/api/subscribe")
def subscribe():
    limit = subscribe_limiter.hit(client_ip())
    if not limit.allowed:
        return rate_limited_response(limit, "Too many subscription attempts. Please try again later.")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_error("Invalid JSON body", 400)

    raw_email = data.get("email")
    ok, err = validate_email(raw_email if isinstance(raw_email, str) else None)
    if not ok:
        return json_error(err, 400)

    email = normalize_email(raw_email)
    source = text_value(data.get("source"))[:64] or None
    if subscribers.add(email, source=source):
        logger.info("New email subscriber domain=%s source=%s", email.rpartition("@")[2], source)

    # Same response for new and existing addresses.
    return jsonify({"success": True, "message": "Thanks for subscribing!"})


@app.delete("/api/subscribe")
def unsubscribe():
    data = request.get_json(silent=True) if request.is_json else None
    data = data if isinstance(data, dict) else {}
    email = normalize_email(request.args.get("email") or text_value(data.get("email")))
    token = (request.args.get("token") or text_value(data.get("token"))).strip()

    if not email:
        return json_error("Email is required", 400)
    if not token:
        return json_error("Unsubscribe token is required", 400)
    if not tokens_match(token, make_unsubscribe_token(email)):
        return json_error("Invalid unsubscribe token", 400)

    subscribers.remove(email)
    return jsonify({"success": True, "message": "You have been unsubscribed."})


# ==========================
# Chat
# ==========================
def get_chat_client():
    api_key = app.config["OPENAI_API_KEY"]
    if not api_key:
        return None
    return OpenAI(api_key=api_key)


def build_chat_messages(message: str, history: List[dict]) -> List[dict]:
    msgs = [{"role": "system", "content": CHAT_SYSTEM_PROMPT}]
    for item in history[-MAX_HISTORY:]:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        role = "user" if item.get("role") == "user" else "assistant"
        msgs.append({"role": role, "content": content})
    msgs.append({"role": "user", "content": message})
    return msgs


@app.post("/api/chat")
def chat():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_error("Invalid JSON body", 400)
    message = text_value(data.get("message"))
    if not message:
        return json_error("Message required", 400)
    history = data.get("conversationHistory") or []
    if not isinstance(history, list):
        return json_error("conversationHistory must be a list", 400)

    client = get_chat_client()
    if client is None:
        return json_error("AI service not configured", 503, reply=CHAT_NOT_CONFIGURED_REPLY)

    try:
        resp = client.chat.completions.create(
            model=app.config["OPENAI_MODEL"],
            messages=build_chat_messages(message, history),
            max_tokens=CHAT_MAX_TOKENS,
        )
        reply = (resp.choices[0].message.content or "").strip() if resp.choices else ""
    except Exception as e:
        logger.error("Chat backend error: %r", e)
        return json_error("AI request failed", 500, reply=CHAT_FAILED_REPLY)

    return jsonify({"reply": reply or CHAT_EMPTY_REPLY, "messageId": f"msg_{int(time.time() * 1000)}"})


# ==========================
# Bot configuration / account
# ==========================
@app.post("/api/config")
def save_config():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_error("Invalid JSON body", 400)

    model = text_value(data.get("model"))
    channel = text_value(data.get("channel"))
    telegram_token = text_value(data.get("telegramToken"))
    email = text_value(data.get("email"))
    if not (model and channel and telegram_token and email):
        return json_error("Missing required fields", 400)
    if not is_valid_telegram_token(telegram_token):
        return json_error("Invalid Telegram bot token format", 400)
    ok, err = validate_email(email)
    if not ok:
        return json_error(err, 400)

    logger.info(
        "User config saved model=%s channel=%s token_length=%d",
        model,
        channel,
        len(telegram_token),
    )
    return jsonify(
        {
            "success": True,
            "message": "Configuration saved successfully",
            "redirectUrl": "/dashboard",
        }
    )


@app.get("/api/customer")
def customer():
    if not is_request_authenticated():
        return json_error("Unauthorized", 401, message="Authentication required. Please sign in.")

    if app.config["DEVELOPMENT_MODE"]:
        logger.warning("Customer API returning mock data (development mode)")
        email = current_user.email if current_user.is_authenticated else "dev@example.com"
        return jsonify(
            {
                "email": email,
                "plan": "Pro",
                "status": "active",
                "workspaceId": "claw_demo_workspace",
                "messagesUsed": 3420,
                "messagesLimit": 20000,
                "agentsUsed": 4,
                "agentsLimit": 10,
                "billingDate": "2026-03-01",
                "trialEndsAt": None,
                "_warning": "This is mock data. Implement proper auth before production.",
            }
        )

    return json_error("Not Implemented", 501, message="Authentication system not configured.")


# ==========================
# Notifications
# ==========================
def parse_page_arg(name: str, default: int) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value >= 0 else None


@app.get("/api/notifications")
def list_notifications():
    status = request.args.get("status")
    type_ = request.args.get("type")
    limit = parse_page_arg("limit", 50)
    offset = parse_page_arg("offset", 0)
    if limit is None or offset is None:
        return json_error("limit and offset must be non-negative integers", 400)
    if status and status != "all" and status not in NOTIFICATION_STATUSES:
        return json_error("Invalid status filter", 400)
    if type_ and type_ not in NOTIFICATION_TYPES:
        return json_error("Invalid type filter", 400)
    limit = min(limit, MAX_NOTIFICATION_PAGE)

    items, total = notifications.list(status=status, type_=type_, limit=limit, offset=offset)
    return jsonify(
        {
            "notifications": items,
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + limit < total,
        }
    )


@app.patch("/api/notifications")
def update_notifications():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_error("Invalid JSON body", 400)
    ids = data.get("ids")
    status = data.get("status")
    if not isinstance(ids, list):
        return json_error("Notification IDs required", 400)
    if status not in NOTIFICATION_STATUSES:
        return json_error("Valid status required (read, unread, archived)", 400)

    notifications.update_status([str(i) for i in ids], status)
    logger.info("[Notifications] Bulk update count=%d status=%s", len(ids), status)
    return jsonify({"success": True, "updated": len(ids)})


@app.delete("/api/notifications")
def delete_notifications():
    notification_id = text_value(request.args.get("id"))
    delete_all = request.args.get("all") == "true"
    if not notification_id and not delete_all:
        return json_error("Notification ID or all=true required", 400)

    if delete_all:
        notifications.delete_all()
        message = "All notifications deleted"
    else:
        notifications.delete(notification_id)
        message = f"Notification {notification_id} deleted"
    return jsonify({"success": True, "message": message})


def build_push_payload(data: dict) -> dict:
    return {
        "title": data["title"],
        "body": data["body"],
        "icon": text_value(data.get("icon")) or "/icons/icon-192x192.png",
        "badge": "/icons/badge-72x72.png",
        "tag": text_value(data.get("tag")) or f"notification-{int(time.time() * 1000)}",
        "data": data.get("data") if isinstance(data.get("data"), dict) else {},
        "actions": data.get("actions")
        if isinstance(data.get("actions"), list)
        else [{"action": "view", "title": "View"}, {"action": "dismiss", "title": "Dismiss"}],
    }


@app.post("/api/notifications/send")
def send_notification():
    expected = app.config["INTERNAL_API_KEY"]
    if expected:
        provided = request.headers.get("X-API-Key", "")
        if not tokens_match(provided, expected):
            return json_error("Unauthorized", 401)

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_error("Invalid JSON body", 400)
    title = text_value(data.get("title"))
    body = text_value(data.get("body"))
    if not title or not body:
        return json_error("Title and body are required", 400)

    payload = build_push_payload(dict(data, title=title, body=body))
    user_id = text_value(data.get("userId")) or None
    recipients = push_subscriptions.for_user(user_id)
    logger.info(
        "[Push Send] Notification queued user=%s title=%s recipients=%d",
        user_id or "all",
        title,
        len(recipients),
    )
    return jsonify(
        {
            "success": True,
            "message": "Notification sent successfully",
            "payload": payload,
            "recipients": len(recipients),
        }
    )


@app.post("/api/notifications/subscribe")
def push_subscribe():
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not text_value(data.get("endpoint")):
        return json_error("Invalid subscription object", 400)
    if data.get("keys") is not None and not isinstance(data["keys"], dict):
        return json_error("Invalid subscription object", 400)

    user_id = current_user.id if current_user.is_authenticated else None
    created = push_subscriptions.save(data, user_id=user_id)
    logger.info(
        "[Push Subscribe] endpoint=%s new=%s keys=%s",
        mask_value(data["endpoint"]),
        created,
        sorted((data.get("keys") or {}).keys()),
    )
    return jsonify({"success": True, "message": "Subscription saved successfully"})


@app.delete("/api/notifications/subscribe")
def push_unsubscribe():
    data = request.get_json(silent=True)
    endpoint = text_value(data.get("endpoint")) if isinstance(data, dict) else ""
    if not endpoint:
        return json_error("Endpoint required", 400)

    push_subscriptions.remove(endpoint)
    logger.info("[Push Unsubscribe] endpoint=%s", mask_value(endpoint))
    return jsonify({"success": True, "message": "Subscription removed successfully"})


# ==========================
# Referrals
# ==========================
@app.get("/api/referrals")
def referrals():
    if not is_request_authenticated():
        return json_error("Unauthorized", 401, message="Authentication required.")

    if app.config["DEVELOPMENT_MODE"]:
        user_id = current_user.id if current_user.is_authenticated else "user_demo_123"
        return jsonify(mock_referral_summary(user_id, app.config["APP_URL"] or "https://clawdbot.com"))

    return json_error("Not Implemented", 501, message="Connect to database.")


@app.post("/api/referrals")
def track_referral():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_error("Invalid request body", 400)
    code = text_value(data.get("referralCode"))
    if not code:
        return json_error("Missing referral code", 400)
    action = text_value(data.get("action")) or "click"
    if action not in REFERRAL_ACTIONS:
        return json_error("Invalid referral action", 400)
    email = normalize_email(text_value(data.get("email"))) or None

    referral_tracker.track(code, action=action, email=email)
    logger.info("Referral tracked code=%s action=%s", code, action)
    return jsonify({"success": True, "message": "Referral tracked successfully"})


# ==========================
# Auth (Google OAuth)
# ==========================
def google_configured() -> bool:
    return bool(app.config["GOOGLE_CLIENT_ID"] and app.config["GOOGLE_CLIENT_SECRET"])


def google_redirect_uri() -> str:
    return base_url() + url_for("google_callback")


def resolve_post_login_redirect(callback_url: Optional[str], root: str) -> str:
    callback_url = callback_url or ""
    if callback_url == root or callback_url.startswith(root + "/"):
        return callback_url
    if callback_url.startswith("/") and not callback_url.startswith("//"):
        return root + callback_url
    if "/setup" in callback_url:
        return f"{root}/setup"
    return f"{root}/dashboard"


@app.get("/setup")
def setup():
    callback = request.args.get("callbackUrl") or "/dashboard"
    return jsonify(
        {
            "user": current_user.to_dict() if current_user.is_authenticated else None,
            "googleConfigured": google_configured(),
            "signInUrl": url_for("google_login", callbackUrl=callback),
            "error": request.args.get("error"),
        }
    )


@app.get("/auth/google")
def google_login():
    if not google_configured():
        return json_error("Google sign-in not configured", 503)

    state = secrets.token_urlsafe(24)
    session["oauth_state"] = state
    session["oauth_callback"] = request.args.get("callbackUrl") or ""
    params = {
        "client_id": app.config["GOOGLE_CLIENT_ID"],
        "redirect_uri": google_redirect_uri(),
        "response_type": "code",
        "scope": "openid email profile",
        "state": state,
        "prompt": "select_account",
    }
    return redirect(f"{GOOGLE_AUTH_URL}?{urlencode(params)}")


def fetch_google_profile(code: str) -> dict:
    token_resp = requests.post(
        GOOGLE_TOKEN_URL,
        data={
            "code": code,
            "client_id": app.config["GOOGLE_CLIENT_ID"],
            "client_secret": app.config["GOOGLE_CLIENT_SECRET"],
            "redirect_uri": google_redirect_uri(),
            "grant_type": "authorization_code",
        },
        timeout=GOOGLE_REQUEST_TIMEOUT,
    )
    token_resp.raise_for_status()
    access_token = token_resp.json().get("access_token")
    if not access_token:
        raise ValueError("Google token response missing access_token")

    info_resp = requests.get(
        GOOGLE_USERINFO_URL,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=GOOGLE_REQUEST_TIMEOUT,
    )
    info_resp.raise_for_status()
    return info_resp.json()


@app.get("/auth/google/callback")
def google_callback():
    if request.args.get("error"):
        logger.warning("Google sign-in cancelled: %s", request.args.get("error"))
        return redirect(url_for("setup", error="OAuthCallback"))

    expected_state = session.pop("oauth_state", None)
    callback = session.pop("oauth_callback", "")
    state = request.args.get("state") or ""
    if not expected_state or not tokens_match(state, expected_state):
        return json_error("Invalid OAuth state", 400)
    code = request.args.get("code")
    if not code:
        return json_error("Missing authorization code", 400)

    try:
        profile = fetch_google_profile(code)
    except (requests.RequestException, ValueError) as e:
        logger.error("Google sign-in failed: %r", e)
        return redirect(url_for("setup", error="OAuthSignin"))

    email = normalize_email(profile.get("email"))
    if not email or profile.get("email_verified") is False:
        return redirect(url_for("setup", error="EmailNotVerified"))

    stored = users.store_user_on_sign_in(
        email=email,
        name=profile.get("name"),
        image=profile.get("picture"),
        provider="google",
        provider_account_id=profile.get("sub"),
    )
    session.permanent = True
    login_user(User.from_stored(stored), remember=True, duration=timedelta(days=30))
    return redirect(resolve_post_login_redirect(callback, base_url()))


@app.post("/auth/logout")
def logout():
    logout_user()
    return jsonify({"success": True})


@app.get("/api/auth/session")
def auth_session():
    if not current_user.is_authenticated:
        return jsonify({"user": None})
    return jsonify({"user": current_user.to_dict()})


# ==========================
# Dashboard pages
# ==========================
@app.get("/dashboard")
def dashboard():
    tier = get_tier("free", app.config["PRICING_TIERS"])
    return jsonify(
        {
            "user": current_user.to_dict(),
            "plan": tier.to_dict() if tier else None,
            "upgradePrompt": should_show_upgrade_prompt(
                "free", messages=0, skills=0, tiers=app.config["PRICING_TIERS"]
            ),
        }
    )


@app.get("/workspace/<workspace_id>")
def workspace(workspace_id):
    return jsonify({"workspaceId": workspace_id, "owner": current_user.email})


@app.get("/settings")
def settings():
    return jsonify(
        {
            "user": current_user.to_dict(),
            "notificationPreferences": DEFAULT_NOTIFICATION_PREFERENCES,
            "pushSubscriptions": len(push_subscriptions.for_user(current_user.id)),
        }
    )


# ==========================
# Global error handler
# ==========================
@app.errorhandler(Exception)
def handle_any_exception(e):
    if isinstance(e, HTTPException):
        if request.path.startswith("/api"):
            return json_error(e.name, e.code or 500)
        return e
    tb = traceback.format_exc()
    logger.error("[Ally] Unhandled exception: %s", repr(e))
    logger.error(tb)
    if app.config["DEBUG_LOGS"]:
        return json_error("Internal Server Error", 500, detail=f"{type(e).__name__}: {e}")
    return json_error("Internal Server Error", 500)


# ==========================
# Run
# ==========================
if __name__ == "__main__":
    debug_env = os.getenv("FLASK_DEBUG")
    if PRODUCTION_MODE:
        debug = debug_env is not None and debug_env.lower() == "true"
    else:
        debug = debug_env is None or debug_env.lower() == "true"
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=debug)

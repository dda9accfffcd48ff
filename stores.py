"""
In-memory stores for subscribers, notifications, push subscriptions, referrals
and signed-in users. Nothing here survives a restart.
"""
import base64
import copy
import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

NOTIFICATION_STATUSES = ("unread", "read", "archived")
NOTIFICATION_PRIORITIES = ("low", "normal", "high", "urgent")
NOTIFICATION_TYPES = (
    "ally_action",
    "task_completed",
    "reminder",
    "mention",
    "feature",
    "tip",
    "security",
    "billing",
    "integration",
    "system",
)
REFERRAL_ACTIONS = ("click", "signup", "subscribe")
KV_TIMEOUT = 5

DEFAULT_NOTIFICATION_PREFERENCES = {
    "enabled": True,
    "doNotDisturb": False,
    "inApp": {"enabled": True, "showBadge": True, "playSound": True, "soundVolume": 50},
    "push": {
        "enabled": True,
        "subscribed": False,
        "allyActions": True,
        "taskCompletions": True,
        "reminders": True,
        "mentions": True,
        "security": True,
        "billing": True,
    },
    "email": {
        "enabled": True,
        "address": "",
        "dailyDigest": True,
        "digestTime": "09:00",
        "weeklyReport": True,
        "importantOnly": False,
        "marketing": False,
    },
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def mask_value(value: str, keep: int = 50) -> str:
    return value if len(value) <= keep else value[:keep] + "..."


# ==========================
# Email subscribers
# ==========================
@dataclass
class Subscriber:
    email: str
    source: Optional[str] = None
    subscribed_at: str = field(default_factory=lambda: isoformat(utcnow()))


class SubscriberStore:
    """Subscribers keyed by normalized email. Callers normalize first."""

    def __init__(self):
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()

    def add(self, email: str, source: Optional[str] = None) -> bool:
        """Store email once. Returns False when it was already present."""
        with self._lock:
            if email in self._subscribers:
                return False
            self._subscribers[email] = Subscriber(email=email, source=source)
            return True

    def remove(self, email: str) -> bool:
        with self._lock:
            return self._subscribers.pop(email, None) is not None

    def get(self, email: str) -> Optional[Subscriber]:
        return self._subscribers.get(email)

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def __contains__(self, email: str) -> bool:
        return email in self._subscribers

    def __len__(self) -> int:
        return len(self._subscribers)


# ==========================
# Notifications
# ==========================
def default_notifications(now: Optional[datetime] = None) -> List[dict]:
    now = now or utcnow()
    ally = {"type": "ally", "name": "Ally", "avatar": "\U0001f916"}
    return [
        {
            "id": "notif_1",
            "type": "ally_action",
            "title": "Ally processed your emails",
            "message": "I sorted 23 emails, flagged 3 as important, and drafted 2 replies for your review.",
            "timestamp": isoformat(now - timedelta(minutes=5)),
            "status": "unread",
            "priority": "normal",
            "source": dict(ally),
        },
        {
            "id": "notif_2",
            "type": "feature",
            "title": "New: Voice Commands",
            "message": 'You can now talk to Ally using voice commands! Try saying "Hey Ally".',
            "timestamp": isoformat(now - timedelta(minutes=30)),
            "status": "unread",
            "priority": "low",
        },
        {
            "id": "notif_3",
            "type": "task_completed",
            "title": "Meeting scheduled",
            "message": "Meeting with Sarah scheduled for tomorrow at 2 PM.",
            "timestamp": isoformat(now - timedelta(hours=2)),
            "status": "read",
            "priority": "normal",
            "source": dict(ally),
        },
    ]


class NotificationRepository:
    def __init__(self, seed: Optional[List[dict]] = None):
        self._lock = threading.Lock()
        self._items: List[dict] = []
        self.reset(seed)

    def reset(self, seed: Optional[List[dict]] = None) -> None:
        with self._lock:
            self._items = copy.deepcopy(seed) if seed is not None else default_notifications()

    def list(
        self,
        status: Optional[str] = None,
        type_: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[dict], int]:
        with self._lock:
            items = list(self._items)
        if status and status != "all":
            items = [n for n in items if n["status"] == status]
        if type_:
            items = [n for n in items if n["type"] == type_]
        total = len(items)
        return copy.deepcopy(items[offset:offset + limit]), total

    def add(self, title: str, message: str, type_: str = "system", priority: str = "normal", **extra) -> dict:
        if type_ not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {type_}")
        if priority not in NOTIFICATION_PRIORITIES:
            raise ValueError(f"Unknown notification priority: {priority}")
        notification = {
            "id": f"notif_{uuid.uuid4().hex[:12]}",
            "type": type_,
            "title": title,
            "message": message,
            "timestamp": isoformat(utcnow()),
            "status": "unread",
            "priority": priority,
        }
        notification.update(extra)
        with self._lock:
            self._items.insert(0, notification)
        return copy.deepcopy(notification)

    def update_status(self, ids: List[str], status: str) -> int:
        wanted = set(ids)
        changed = 0
        with self._lock:
            for n in self._items:
                if n["id"] in wanted:
                    n["status"] = status
                    changed += 1
        return changed

    def delete(self, notification_id: str) -> bool:
        with self._lock:
            before = len(self._items)
            self._items = [n for n in self._items if n["id"] != notification_id]
            return len(self._items) != before

    def delete_all(self) -> int:
        with self._lock:
            count = len(self._items)
            self._items = []
            return count

    def __len__(self) -> int:
        return len(self._items)


# ==========================
# Web Push subscriptions
# ==========================
class PushSubscriptionStore:
    """Browser push subscriptions, unique per endpoint."""

    def __init__(self):
        self._subs: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def save(self, subscription: dict, user_id: Optional[str] = None) -> bool:
        """Insert or update by endpoint. Returns True for a new endpoint."""
        endpoint = subscription["endpoint"]
        record = {
            "endpoint": endpoint,
            "keys": dict(subscription.get("keys") or {}),
            "expirationTime": subscription.get("expirationTime"),
            "user_id": user_id,
        }
        with self._lock:
            existing = self._subs.get(endpoint)
            record["created_at"] = existing["created_at"] if existing else isoformat(utcnow())
            self._subs[endpoint] = record
            return existing is None

    def remove(self, endpoint: str) -> bool:
        with self._lock:
            return self._subs.pop(endpoint, None) is not None

    def for_user(self, user_id: Optional[str] = None) -> List[dict]:
        with self._lock:
            subs = list(self._subs.values())
        if user_id is None:
            return subs
        return [s for s in subs if s.get("user_id") == user_id]

    def clear(self) -> None:
        with self._lock:
            self._subs.clear()

    def __len__(self) -> int:
        return len(self._subs)


# ==========================
# Referrals
# ==========================
def _to_base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def generate_referral_code(user_id: str) -> str:
    """Deterministic code derived from the user id (char-code sum in base 36)."""
    total = sum(ord(ch) for ch in user_id)
    return f"CLAWD{_to_base36(total).upper()[:6]}"


def mock_referral_summary(user_id: str, base_url: str) -> dict:
    code = generate_referral_code(user_id)
    referrals = [
        ("ref_1", "sarah.j***@gmail.com", "Sarah J.", "subscribed", "2024-01-15T10:30:00Z", "2024-01-18T14:20:00Z", "Pro", 20),
        ("ref_2", "mike.t***@outlook.com", "Mike T.", "subscribed", "2024-01-20T09:15:00Z", "2024-01-25T11:45:00Z", "Pro", 20),
        ("ref_3", "emily.r***@company.com", "Emily R.", "subscribed", "2024-02-01T16:00:00Z", "2024-02-05T08:30:00Z", "Family", 40),
        ("ref_4", "alex.w***@startup.io", "Alex W.", "subscribed", "2024-02-10T13:45:00Z", "2024-02-12T10:00:00Z", "Pro", 20),
        ("ref_5", "jordan.k***@tech.co", "Jordan K.", "signed_up", "2024-02-15T11:20:00Z", None, None, None),
        ("ref_6", "taylor.m***@design.co", "Taylor M.", "signed_up", "2024-02-18T15:30:00Z", None, None, None),
        ("ref_7", "casey.b***@agency.com", "Casey B.", "pending", "2024-02-20T09:00:00Z", None, None, None),
    ]
    items = []
    for ref_id, email, name, status, signed_up, subscribed, plan, reward in referrals:
        item = {"id": ref_id, "email": email, "name": name, "status": status, "signedUpAt": signed_up}
        if subscribed:
            item.update({"subscribedAt": subscribed, "plan": plan, "rewardEarned": reward})
        items.append(item)

    return {
        "referralCode": code,
        "referralLink": f"{base_url.rstrip('/')}/r/{code}",
        "totalReferrals": len(items),
        "successfulReferrals": sum(1 for r in items if r["status"] == "subscribed"),
        "pendingReferrals": sum(1 for r in items if r["status"] in ("pending", "signed_up")),
        "totalCreditsEarned": sum(r.get("rewardEarned") or 0 for r in items),
        "pendingCredits": 60,
        "freeMonthsEarned": 1,
        "referrals": items,
        "rewards": {"perReferral": 20, "freeMonthThreshold": 5, "currentStreak": 3},
        "tiers": {
            "current": "Bronze Ambassador",
            "next": "Silver Ambassador",
            "progress": 70,
            "referralsToNext": 3,
        },
    }


class ReferralTracker:
    def __init__(self):
        self._events: List[dict] = []
        self._lock = threading.Lock()

    def track(self, referral_code: str, action: str = "click", email: Optional[str] = None) -> dict:
        event = {
            "referral_code": referral_code,
            "action": action,
            "email": email,
            "tracked_at": isoformat(utcnow()),
        }
        with self._lock:
            self._events.append(event)
        return event

    def events_for(self, referral_code: str) -> List[dict]:
        with self._lock:
            return [e for e in self._events if e["referral_code"] == referral_code]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        return len(self._events)


# ==========================
# Signed-in users
# ==========================
@dataclass
class StoredUser:
    id: str
    email: str
    provider: str
    created_at: str
    updated_at: str
    last_login_at: str
    name: Optional[str] = None
    image: Optional[str] = None
    provider_account_id: Optional[str] = None


def user_id_for_email(email: str) -> str:
    encoded = base64.urlsafe_b64encode(email.encode("utf-8")).decode("ascii").rstrip("=")
    return f"user_{encoded}"


class UserStore:
    """
    Users recorded at sign-in. When a Vercel-KV compatible REST endpoint is
    configured each record is also mirrored there; KV failures are logged and
    never block sign-in.
    """

    def __init__(self, kv_url: str = "", kv_token: str = ""):
        self.kv_url = (kv_url or "").rstrip("/")
        self.kv_token = kv_token or ""
        self._users: Dict[str, StoredUser] = {}
        self._lock = threading.Lock()

    @property
    def kv_enabled(self) -> bool:
        return bool(self.kv_url and self.kv_token)

    def store_user_on_sign_in(
        self,
        email: str,
        name: Optional[str] = None,
        image: Optional[str] = None,
        provider: str = "google",
        provider_account_id: Optional[str] = None,
    ) -> StoredUser:
        now = isoformat(utcnow())
        user_id = user_id_for_email(email)
        with self._lock:
            existing = self._users.get(user_id)
            user = StoredUser(
                id=user_id,
                email=email,
                name=name,
                image=image,
                provider=provider,
                provider_account_id=provider_account_id,
                created_at=existing.created_at if existing else now,
                updated_at=now,
                last_login_at=now,
            )
            self._users[user_id] = user
        logger.info("[Auth] User signed in: provider=%s new=%s", provider, existing is None)

        if self.kv_enabled:
            self._kv_put(user)
        return user

    def _kv_put(self, user: StoredUser) -> None:
        try:
            resp = requests.post(
                f"{self.kv_url}/set/user:{quote(user.email, safe='')}",
                headers={"Authorization": f"Bearer {self.kv_token}"},
                json=asdict(user),
                timeout=KV_TIMEOUT,
            )
            if resp.status_code >= 300:
                logger.error("[Auth] Failed to store user in KV: %s", resp.text)
        except requests.RequestException as e:
            logger.error("[Auth] KV storage error: %r", e)

    def get(self, user_id: str) -> Optional[StoredUser]:
        return self._users.get(user_id)

    def get_by_email(self, email: str) -> Optional[StoredUser]:
        user = self._users.get(user_id_for_email(email))
        if user or not self.kv_enabled:
            return user
        try:
            resp = requests.get(
                f"{self.kv_url}/get/user:{quote(email, safe='')}",
                headers={"Authorization": f"Bearer {self.kv_token}"},
                timeout=KV_TIMEOUT,
            )
            if resp.status_code >= 300:
                return None
            raw = resp.json().get("result")
        except (requests.RequestException, ValueError) as e:
            logger.error("[Auth] KV fetch error: %r", e)
            return None
        if not raw:
            return None
        data = raw if isinstance(raw, dict) else _loads(raw)
        if not data:
            return None
        fields = StoredUser.__dataclass_fields__
        return StoredUser(**{k: v for k, v in data.items() if k in fields})

    def clear(self) -> None:
        with self._lock:
            self._users.clear()

    def __len__(self) -> int:
        return len(self._users)


def _loads(raw: str) -> Optional[dict]:
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None

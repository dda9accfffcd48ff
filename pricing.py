"""
Pricing tiers, skill bundles and plan-limit helpers.

Limits are ints, or the string "unlimited" for uncapped plans, so the catalogue
serializes to JSON unchanged.
"""
import os
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple, Union

UNLIMITED = "unlimited"
Limit = Union[int, str]

TIER_ORDER = ("free", "personal", "plus", "pro")
UPGRADE_MESSAGE_THRESHOLD = 0.8


@dataclass(frozen=True)
class PricingTier:
    id: str
    name: str
    price: int
    price_display: str
    period: str
    description: str
    skills_included: Limit
    messages_per_month: Limit
    features: Tuple[str, ...] = field(default_factory=tuple)
    highlighted: bool = False
    popular: bool = False
    price_id: Optional[str] = None
    badge: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["features"] = list(self.features)
        return data


@dataclass(frozen=True)
class SkillBundle:
    tier: str
    count: Limit
    description: str


SKILL_BUNDLES: Dict[str, SkillBundle] = {
    "free": SkillBundle("Free", 5, "5 core skills included"),
    "personal": SkillBundle("Personal", 10, "10 skills to customize your experience"),
    "plus": SkillBundle("Plus", 15, "15 skills for power users"),
    "pro": SkillBundle("Pro", UNLIMITED, "Unlimited skills - unlock everything"),
    "family": SkillBundle("Family", 15, "15 skills per family member"),
    "team": SkillBundle("Team", UNLIMITED, "Unlimited skills for your team"),
}


def _price_env(env: Mapping[str, str], tier: str, fallback: str) -> str:
    return (
        env.get(f"STRIPE_PRICE_{tier}")
        or env.get(f"NEXT_PUBLIC_STRIPE_PRICE_{tier}")
        or fallback
    ).strip()


def load_pricing_tiers(env: Optional[Mapping[str, str]] = None) -> List[PricingTier]:
    env = os.environ if env is None else env
    return [
        PricingTier(
            id="free",
            name="Free",
            price=0,
            price_display="$0",
            period="forever",
            description="Get started with AI assistance",
            skills_included=5,
            messages_per_month=100,
            features=(
                "100 messages/month",
                "5 skills included",
                "Web search",
                "Basic memory (7 days)",
                "Community support",
            ),
        ),
        PricingTier(
            id="personal",
            name="Personal",
            price=9,
            price_display="$9",
            period="/month",
            description="For individuals who want more",
            skills_included=10,
            messages_per_month=2000,
            price_id=_price_env(env, "PERSONAL", "price_personal"),
            features=(
                "2,000 messages/month",
                "10 skills included",
                "Persistent memory (30 days)",
                "Calendar integration",
                "Email support",
            ),
        ),
        PricingTier(
            id="plus",
            name="Plus",
            price=19,
            price_display="$19",
            period="/month",
            description="For power users who need more",
            skills_included=15,
            messages_per_month=10000,
            popular=True,
            badge="Most Popular",
            price_id=_price_env(env, "PLUS", "price_1SwtCbBfSldKMuDjM3p0kyG4"),
            features=(
                "10,000 messages/month",
                "15 skills included",
                "Unlimited memory",
                "Gmail integration",
                "Browser automation",
                "Priority support",
            ),
        ),
        PricingTier(
            id="pro",
            name="Pro",
            price=39,
            price_display="$39",
            period="/month",
            description="Unlimited power for professionals",
            skills_included=UNLIMITED,
            messages_per_month=UNLIMITED,
            highlighted=True,
            badge="Best Value",
            price_id=_price_env(env, "PRO", "price_1SwtCbBfSldKMuDjDmRHqErh"),
            features=(
                "Unlimited messages",
                "Unlimited skills",
                "All integrations",
                "Custom workflows",
                "API access",
                "Dedicated support",
                "Early access to new features",
            ),
        ),
        PricingTier(
            id="family",
            name="Family",
            price=19,
            price_display="$19",
            period="/month",
            description="Share with up to 5 family members",
            skills_included=15,
            messages_per_month=20000,
            price_id=_price_env(env, "FAMILY", "price_family"),
            features=(
                "Up to 5 family members",
                "20,000 shared messages/month",
                "15 skills per member",
                "Shared family calendar",
                "Individual memories",
                "Family dashboard",
            ),
        ),
        PricingTier(
            id="team",
            name="Team",
            price=29,
            price_display="$29",
            period="/seat/month",
            description="For teams that need to collaborate",
            skills_included=UNLIMITED,
            messages_per_month=UNLIMITED,
            price_id=_price_env(env, "TEAM", "price_1SwtCcBfSldKMuDjEKBqQ6lH"),
            features=(
                "Unlimited messages",
                "Unlimited skills",
                "Team workspace",
                "Shared knowledge base",
                "Admin controls",
                "SSO/SAML",
                "Priority support",
                "Custom integrations",
            ),
        ),
    ]


PRICING_TIERS: List[PricingTier] = load_pricing_tiers()


def get_tier(tier_id: str, tiers: Optional[List[PricingTier]] = None) -> Optional[PricingTier]:
    for tier in tiers or PRICING_TIERS:
        if tier.id == tier_id:
            return tier
    return None


def get_tier_by_price_id(price_id: str, tiers: Optional[List[PricingTier]] = None) -> Optional[PricingTier]:
    for tier in tiers or PRICING_TIERS:
        if tier.price_id and tier.price_id == price_id:
            return tier
    return None


def can_use_skill(tier_skill_count: Limit, skills_used: int) -> bool:
    if tier_skill_count == UNLIMITED:
        return True
    return skills_used < tier_skill_count


def get_skills_remaining(tier_skill_count: Limit, skills_used: int) -> Limit:
    if tier_skill_count == UNLIMITED:
        return UNLIMITED
    return max(0, tier_skill_count - skills_used)


def get_next_tier(current_tier_id: str, tiers: Optional[List[PricingTier]] = None) -> Optional[PricingTier]:
    if current_tier_id not in TIER_ORDER:
        return None
    idx = TIER_ORDER.index(current_tier_id)
    if idx >= len(TIER_ORDER) - 1:
        return None
    return get_tier(TIER_ORDER[idx + 1], tiers)


def _as_float(limit: Limit) -> float:
    return float("inf") if limit == UNLIMITED else float(limit)


def should_show_upgrade_prompt(
    current_tier_id: str, messages: int, skills: int, tiers: Optional[List[PricingTier]] = None
) -> dict:
    """
    Decide whether the dashboard should nudge the user to upgrade.

    Returns {"show": False} or {"show": True, "reason": ..., "suggested_tier": ...}
    where reason is "message_limit" (80% of monthly messages used) or
    "skill_limit" (all included skills in use).
    """
    tier = get_tier(current_tier_id, tiers)
    if not tier:
        return {"show": False}

    next_tier = get_next_tier(current_tier_id, tiers)
    suggested = next_tier.id if next_tier else None

    if messages >= _as_float(tier.messages_per_month) * UPGRADE_MESSAGE_THRESHOLD:
        return {"show": True, "reason": "message_limit", "suggested_tier": suggested}
    if skills >= _as_float(tier.skills_included):
        return {"show": True, "reason": "skill_limit", "suggested_tier": suggested}
    return {"show": False}


def format_price(price: int, period: str) -> str:
    if price == 0:
        return "Free"
    return f"${price}{period}"


def calculate_annual_savings(monthly_price: int) -> dict:
    # Annual billing charges ten months.
    annual = monthly_price * 10
    regular = monthly_price * 12
    if regular == 0:
        return {"annual": 0, "savings": 0, "savings_percent": 0}
    return {
        "annual": annual,
        "savings": regular - annual,
        "savings_percent": round((1 - annual / regular) * 100),
    }


def pricing_catalogue(tiers: Optional[List[PricingTier]] = None) -> dict:
    return {
        "tiers": [t.to_dict() for t in (tiers or PRICING_TIERS)],
        "skill_bundles": {k: asdict(v) for k, v in SKILL_BUNDLES.items()},
    }

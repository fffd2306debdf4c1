"""
Static rate-limit policy table.

Expensive operations (AI generation, PDF export) get tight ceilings or long
windows, cheap reads get loose ones. Authentication endpoints get long windows
with very low ceilings to blunt credential stuffing and registration abuse.

Lookup order used by the request layer:
  1. Policy declared on the route (explicit values, preset, or table entry)
  2. Global default from settings
  3. Subscription tier multiplier applied to max_requests only
"""

import structlog

from .config import Settings, get_settings
from .models import RateLimitPolicy, SubscriptionTier

logger = structlog.get_logger()

_MINUTE = 60 * 1000
_HOUR = 60 * _MINUTE


def _policy(category: str, operation: str, window_ms: int, max_requests: int) -> RateLimitPolicy:
    return RateLimitPolicy(
        window_ms=window_ms,
        max_requests=max_requests,
        key_prefix=f"{category}.{operation}",
    )


RATE_LIMITS: dict[str, dict[str, RateLimitPolicy]] = {
    # Authentication - stricter limits
    "AUTH": {
        "LOGIN": _policy("AUTH", "LOGIN", 15 * _MINUTE, 5),
        "REGISTER": _policy("AUTH", "REGISTER", _HOUR, 3),
        "PASSWORD_RESET": _policy("AUTH", "PASSWORD_RESET", _HOUR, 3),
    },
    # AI/LLM - expensive operations
    "AI": {
        "CHAT": _policy("AI", "CHAT", _MINUTE, 20),
        "GENERATE": _policy("AI", "GENERATE", _MINUTE, 10),
        "SUMMARY": _policy("AI", "SUMMARY", _MINUTE, 5),
    },
    "SEARCH": {
        "ACADEMIC": _policy("SEARCH", "ACADEMIC", _MINUTE, 30),
        "GENERAL": _policy("SEARCH", "GENERAL", _MINUTE, 60),
    },
    # CRUD
    "API": {
        "READ": _policy("API", "READ", _MINUTE, 100),
        "WRITE": _policy("API", "WRITE", _MINUTE, 30),
        "DELETE": _policy("API", "DELETE", _MINUTE, 10),
    },
    "FILES": {
        "UPLOAD": _policy("FILES", "UPLOAD", _HOUR, 20),
        "DOWNLOAD": _policy("FILES", "DOWNLOAD", _MINUTE, 50),
    },
    "EXPORT": {
        "PDF": _policy("EXPORT", "PDF", _HOUR, 10),
    },
}

# Named presets for the short decorator form, e.g. rate_limit("LOGIN")
PRESETS: dict[str, RateLimitPolicy] = {
    "DEFAULT": RateLimitPolicy(window_ms=_MINUTE, max_requests=100, key_prefix="DEFAULT"),
    "AUTH": RateLimitPolicy(window_ms=_MINUTE, max_requests=10, key_prefix="AUTH"),
    "LOGIN": RateLimitPolicy(window_ms=_MINUTE, max_requests=5, key_prefix="LOGIN"),
    "SEARCH": RateLimitPolicy(window_ms=_MINUTE, max_requests=20, key_prefix="SEARCH"),
    "AI": RateLimitPolicy(window_ms=_MINUTE, max_requests=10, key_prefix="AI"),
    "HEAVY": RateLimitPolicy(window_ms=_MINUTE, max_requests=5, key_prefix="HEAVY"),
    "WEBHOOK": RateLimitPolicy(window_ms=_MINUTE, max_requests=1000, key_prefix="WEBHOOK"),
    "HEALTH": RateLimitPolicy(window_ms=1000, max_requests=1000, key_prefix="HEALTH"),
}

TIER_MULTIPLIERS: dict[SubscriptionTier, int] = {
    SubscriptionTier.FREE: 1,
    SubscriptionTier.PRO: 3,
    SubscriptionTier.ENTERPRISE: 10,
}


def get_policy(category: str, operation: str) -> RateLimitPolicy | None:
    """Look up a table entry. Unknown pairs return None."""
    return RATE_LIMITS.get(category.upper(), {}).get(operation.upper())


def get_preset(name: str) -> RateLimitPolicy | None:
    return PRESETS.get(name.upper())


def _coerce_tier(tier: SubscriptionTier | str | None) -> SubscriptionTier:
    if isinstance(tier, SubscriptionTier):
        return tier
    if tier is None:
        return SubscriptionTier.FREE
    try:
        return SubscriptionTier(str(tier).upper())
    except ValueError:
        logger.warning("unknown_subscription_tier", tier=tier)
        return SubscriptionTier.FREE


def get_rate_limit_for_tier(
    base: RateLimitPolicy,
    tier: SubscriptionTier | str | None = SubscriptionTier.FREE,
) -> RateLimitPolicy:
    """Scale a policy's ceiling by the tier multiplier. The window is unchanged."""
    multiplier = TIER_MULTIPLIERS[_coerce_tier(tier)]
    if multiplier == 1:
        return base
    return base.model_copy(update={"max_requests": base.max_requests * multiplier})


def default_policy(settings: Settings | None = None) -> RateLimitPolicy:
    """Global fallback used by routes that declare nothing."""
    settings = settings or get_settings()
    return RateLimitPolicy(
        window_ms=settings.rate_limit_default_window_ms,
        max_requests=settings.rate_limit_default_max,
        key_prefix="global",
    )


def resolve_policy(
    route_policy: RateLimitPolicy | None,
    tier: SubscriptionTier | str | None = None,
    settings: Settings | None = None,
) -> RateLimitPolicy:
    """Pick the route policy or the global default, then apply the tier."""
    policy = route_policy or default_policy(settings)
    if tier is None:
        return policy
    return get_rate_limit_for_tier(policy, tier)


def describe_policies() -> dict:
    """Table and multipliers as plain JSON-able data."""
    return {
        "categories": {
            category: {
                operation: {
                    "window_ms": policy.window_ms,
                    "max_requests": policy.max_requests,
                    "key_prefix": policy.key_prefix,
                }
                for operation, policy in operations.items()
            }
            for category, operations in RATE_LIMITS.items()
        },
        "presets": {
            name: {"window_ms": p.window_ms, "max_requests": p.max_requests}
            for name, p in PRESETS.items()
        },
        "tier_multipliers": {tier.value: m for tier, m in TIER_MULTIPLIERS.items()},
    }

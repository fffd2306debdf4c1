"""
Request-level rate limiting for the API.

Routes declare a policy with a decorator; one app-wide dependency enforces
it, so every route is checked against the global default unless it says
otherwise:

    @router.post("/login")
    @throttle("AUTH", "LOGIN")
    async def login(...): ...

    @router.get("/health")
    @skip_throttle
    async def health(): ...

Decisions come from the shared RateLimiter; this module only turns them into
X-RateLimit-* headers or a 429.
"""

from collections.abc import Callable

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.core import RateLimitPolicy, get_settings
from src.core.rate_limiter import (
    RateLimitDecision,
    RateLimiter,
    RateLimitExceeded,
    build_rate_limit_key,
    get_rate_limiter,
)
from src.core.rate_limits import default_policy, get_policy, get_preset, resolve_policy

logger = structlog.get_logger()

RATE_LIMIT_ATTR = "__rate_limit_policy__"
SKIP_THROTTLE_ATTR = "__skip_throttle__"
SKIP_IF_ATTR = "__rate_limit_skip_if__"

SkipPredicate = Callable[[Request], bool]


# =============================================================
# CLIENT IDENTITY
# =============================================================


def get_client_identity(request: Request) -> str:
    """
    Resolve the caller's address.

    Order: first X-Forwarded-For entry, X-Real-IP, socket peer, "unknown".
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_rate_limit_tracker(request: Request) -> str:
    """
    Who a route-level counter belongs to.

    Authenticated callers (the auth layer sets `request.state.user_id`) are
    counted as `user:<id>` so users sharing an address get separate buckets;
    anonymous callers by client address.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return get_client_identity(request)


# =============================================================
# ROUTE DECLARATIONS
# =============================================================


def _attach(policy: RateLimitPolicy | None, skip_if: SkipPredicate | None = None) -> Callable:
    def decorator(func):
        if policy is not None:
            setattr(func, RATE_LIMIT_ATTR, policy)
        if skip_if is not None:
            setattr(func, SKIP_IF_ATTR, skip_if)
        return func

    return decorator


def rate_limit(
    preset: str | None = None,
    *,
    window_ms: int | None = None,
    max_requests: int | None = None,
    key_prefix: str | None = None,
    skip_if: SkipPredicate | None = None,
) -> Callable:
    """
    Declare an explicit policy, or use a named preset.

        @rate_limit("LOGIN")
        @rate_limit(window_ms=60_000, max_requests=3, key_prefix="invite")

    Omitted values fall back to the global default window and ceiling.
    `skip_if(request)` returning True lets that request through unchecked.
    """
    if preset is not None:
        policy = get_preset(preset)
        if policy is None:
            logger.warning("unknown_rate_limit_preset", preset=preset)
            return _attach(None, skip_if)
        if key_prefix:
            policy = policy.model_copy(update={"key_prefix": key_prefix})
        return _attach(policy, skip_if)

    defaults = default_policy()
    return _attach(
        RateLimitPolicy(
            window_ms=window_ms or defaults.window_ms,
            max_requests=max_requests or defaults.max_requests,
            key_prefix=key_prefix or defaults.key_prefix,
        ),
        skip_if,
    )


def throttle(category: str, operation: str, *, skip_if: SkipPredicate | None = None) -> Callable:
    """Apply a RATE_LIMITS table entry. Unknown pairs leave the route on the default."""
    policy = get_policy(category, operation)
    if policy is None:
        logger.warning("unknown_rate_limit_policy", category=category, operation=operation)
    return _attach(policy, skip_if)


def skip_throttle(func):
    """Exempt a route from rate limiting."""
    setattr(func, SKIP_THROTTLE_ATTR, True)
    return func


def get_route_policy(endpoint) -> RateLimitPolicy | None:
    return getattr(endpoint, RATE_LIMIT_ATTR, None)


def is_throttle_exempt(endpoint, request: Request | None = None) -> bool:
    if getattr(endpoint, SKIP_THROTTLE_ATTR, False):
        return True
    skip_if = getattr(endpoint, SKIP_IF_ATTR, None)
    return bool(skip_if is not None and request is not None and skip_if(request))


# =============================================================
# ENFORCEMENT
# =============================================================


def _limiter_for(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = get_rate_limiter()
    return limiter


async def enforce_rate_limit(request: Request, response: Response):
    """App-wide dependency: check the route's policy and annotate the response."""
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return

    endpoint = request.scope.get("endpoint")
    if is_throttle_exempt(endpoint, request):
        return

    policy = resolve_policy(
        get_route_policy(endpoint),
        getattr(request.state, "subscription_tier", None),
        settings,
    )
    key = build_rate_limit_key(policy.key_prefix, get_rate_limit_tracker(request), request.url.path)
    decision = await _limiter_for(request).check(key, policy)

    # Read back by RateLimitHeadersMiddleware for error responses
    request.state.rate_limit = decision
    response.headers.update(decision.headers())
    if not decision.allowed:
        raise RateLimitExceeded(decision)


def rate_limit_response(decision: RateLimitDecision) -> JSONResponse:
    headers = decision.headers()
    headers["Retry-After"] = str(decision.retry_after)
    return JSONResponse(
        status_code=429,
        content=decision.rejection_payload(),
        headers=headers,
    )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return rate_limit_response(exc.decision)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-client ceiling applied to every request before routing.

    Counts by client only (no path). Route-level headers, when present, are
    left in place since they describe the tighter limit.
    """

    def __init__(self, app, policy: RateLimitPolicy, limiter: RateLimiter | None = None):
        super().__init__(app)
        self.policy = policy
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):
        limiter = self.limiter if self.limiter is not None else _limiter_for(request)
        key = build_rate_limit_key(self.policy.key_prefix, get_client_identity(request))
        decision = await limiter.check(key, self.policy)

        if not decision.allowed:
            return rate_limit_response(decision)

        response = await call_next(request)
        for name, value in decision.headers().items():
            if name not in response.headers:
                response.headers[name] = value
        return response


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """
    Put the route's X-RateLimit-* headers on every checked response.

    Validation errors and HTTPExceptions are rendered by exception handlers,
    which never see the headers enforce_rate_limit set on the dependency's
    response. Headers already present are left alone.
    """

    async def dispatch(self, request: Request, call_next):
        # Bind the shared state before routing copies the scope
        state = request.state
        response = await call_next(request)
        decision: RateLimitDecision | None = getattr(state, "rate_limit", None)
        if decision is not None:
            for name, value in decision.headers().items():
                response.headers.setdefault(name, value)
        return response

"""Core domain models and services."""

from .config import Settings, get_settings
from .models import (
    CardStage,
    RateLimitPolicy,
    ReviewResponse,
    ScheduledReview,
    SM2CardState,
    SubscriptionTier,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Models
    "CardStage",
    "RateLimitPolicy",
    "ReviewResponse",
    "ScheduledReview",
    "SM2CardState",
    "SubscriptionTier",
]

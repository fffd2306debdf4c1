"""
Core domain models for CampusMind admission control and review scheduling.

These models cover the two pieces of the API with real invariants:
- RateLimitPolicy: how many requests a key may make per window
- SM2CardState: the spaced-repetition state carried by each flashcard
- ScheduledReview: the outcome of grading a card
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

MIN_EASE_FACTOR = 1.3
DEFAULT_EASE_FACTOR = 2.5


class SubscriptionTier(str, Enum):
    """Billing plan of the caller; scales rate-limit ceilings."""

    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class ReviewResponse(str, Enum):
    """How well the student recalled a card, worst to best."""

    AGAIN = "again"  # Forgot completely
    HARD = "hard"  # Recalled with serious difficulty
    GOOD = "good"  # Recalled with some hesitation
    EASY = "easy"  # Perfect recall


class CardStage(str, Enum):
    """Learning stage derived from a card's SM-2 state."""

    NEW = "new"
    LEARNING = "learning"
    REVIEWING = "reviewing"
    MASTERED = "mastered"


class RateLimitPolicy(BaseModel):
    """
    Window and ceiling for one class of endpoint.

    The key prefix namespaces counters so that, for example, login attempts
    and AI chat messages from the same client are counted separately.
    """

    model_config = ConfigDict(frozen=True)

    window_ms: int = Field(gt=0)
    max_requests: int = Field(gt=0)
    key_prefix: str = "global"

    @property
    def window_seconds(self) -> int:
        """Window length rounded up to whole seconds (cache TTLs are integral)."""
        return -(-self.window_ms // 1000)


class SM2CardState(BaseModel):
    """Scheduling state of a single flashcard."""

    model_config = ConfigDict(frozen=True)

    repetitions: int = Field(default=0, ge=0)  # Consecutive successes since last lapse
    ease_factor: float = Field(default=DEFAULT_EASE_FACTOR, ge=MIN_EASE_FACTOR)
    interval: int = Field(default=0, ge=0)  # Days until next review

    @classmethod
    def new(cls) -> "SM2CardState":
        """State of a card that has never been reviewed."""
        return cls()


class ScheduledReview(BaseModel):
    """A graded review: the new card state and when it is due again."""

    response: ReviewResponse
    state: SM2CardState
    stage: CardStage
    reviewed_at: datetime
    next_review_at: datetime

"""
Flashcard review scheduling routes.

Card storage belongs to the flashcard service; these endpoints take the
card's current SM-2 state, grade it, and return what should be persisted.
"""

from datetime import datetime

import structlog
from fastapi import APIRouter
from pydantic import BaseModel, Field

from src.api.rate_limit import throttle
from src.core import CardStage, ReviewResponse, SM2CardState
from src.core.metrics import get_metrics
from src.core.models import DEFAULT_EASE_FACTOR, MIN_EASE_FACTOR
from src.core.sm2 import card_stage, preview_intervals, review_card

logger = structlog.get_logger()
router = APIRouter()


# =============================================================
# REQUEST/RESPONSE MODELS
# =============================================================


class CardStateRequest(BaseModel):
    """Current scheduling state of a card (defaults describe a new card)."""

    repetitions: int = Field(default=0, ge=0)
    ease_factor: float = Field(default=DEFAULT_EASE_FACTOR, ge=MIN_EASE_FACTOR)
    interval: int = Field(default=0, ge=0)

    def to_state(self) -> SM2CardState:
        return SM2CardState(
            repetitions=self.repetitions,
            ease_factor=self.ease_factor,
            interval=self.interval,
        )


class ReviewRequest(CardStateRequest):
    """A graded review."""

    response: ReviewResponse
    reviewed_at: datetime | None = None


class ReviewResult(BaseModel):
    repetitions: int
    ease_factor: float
    interval: int
    stage: CardStage
    reviewed_at: datetime
    next_review_at: datetime


class IntervalPreview(BaseModel):
    repetitions: int
    ease_factor: float
    interval: int


class PreviewResponse(BaseModel):
    stage: CardStage
    outcomes: dict[ReviewResponse, IntervalPreview]


# =============================================================
# ROUTES
# =============================================================


@router.post("/review", response_model=ReviewResult)
@throttle("API", "WRITE")
async def review(body: ReviewRequest):
    """Grade a card and return its next scheduling state."""
    scheduled = review_card(body.to_state(), body.response, body.reviewed_at)
    get_metrics().increment("sm2_reviews_total", {"response": body.response.value})

    logger.debug(
        "flashcard_reviewed",
        response=body.response.value,
        interval=scheduled.state.interval,
        ease_factor=scheduled.state.ease_factor,
    )

    return ReviewResult(
        repetitions=scheduled.state.repetitions,
        ease_factor=scheduled.state.ease_factor,
        interval=scheduled.state.interval,
        stage=scheduled.stage,
        reviewed_at=scheduled.reviewed_at,
        next_review_at=scheduled.next_review_at,
    )


@router.post("/preview", response_model=PreviewResponse)
@throttle("API", "READ")
async def preview(body: CardStateRequest):
    """Show the outcome of every possible grade without recording anything."""
    state = body.to_state()
    outcomes = preview_intervals(state)
    return PreviewResponse(
        stage=card_stage(state),
        outcomes={
            response: IntervalPreview(**outcome.model_dump())
            for response, outcome in outcomes.items()
        },
    )

"""
SM-2 spaced-repetition scheduling for flashcards.

Each graded review maps the four-button response onto the 0-5 SM-2 quality
scale, then:

    EF' = max(1.3, EF + (0.1 - (5 - q) * (0.08 + (5 - q) * 0.02)))

AGAIN and HARD count as lapses (repetitions reset, review tomorrow).
GOOD and EASY advance the interval ladder 1 -> 6 -> round(interval * EF').

Everything here is a pure function of its arguments: no clock is read unless
the caller omits reviewed_at.
"""

import math
from datetime import datetime, timedelta

from .models import (
    MIN_EASE_FACTOR,
    CardStage,
    ReviewResponse,
    ScheduledReview,
    SM2CardState,
)

QUALITY_BY_RESPONSE: dict[ReviewResponse, int] = {
    ReviewResponse.AGAIN: 0,
    ReviewResponse.HARD: 3,
    ReviewResponse.GOOD: 4,
    ReviewResponse.EASY: 5,
}

LAPSE_RESPONSES = frozenset({ReviewResponse.AGAIN, ReviewResponse.HARD})

# Interval (days) at which a card counts as mastered
MASTERED_INTERVAL_DAYS = 21


def _round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; intervals round .5 upward
    return int(math.floor(value + 0.5))


def update_ease_factor(ease_factor: float, quality: int) -> float:
    """Apply the SM-2 ease update for a 0-5 quality, floored at 1.3."""
    miss = 5 - quality
    updated = ease_factor + (0.1 - miss * (0.08 + miss * 0.02))
    return max(updated, MIN_EASE_FACTOR)


def calculate_sm2(
    response: ReviewResponse | str,
    repetitions: int,
    ease_factor: float,
    interval: int,
) -> SM2CardState:
    """
    Compute the next scheduling state for a graded card.

    Args:
        response: The student's grade (AGAIN < HARD < GOOD < EASY)
        repetitions: Consecutive successful reviews before this one
        ease_factor: Current ease factor
        interval: Current interval in days

    Returns:
        The updated (repetitions, ease_factor, interval)
    """
    response = ReviewResponse(response)
    new_ease = update_ease_factor(ease_factor, QUALITY_BY_RESPONSE[response])

    if response in LAPSE_RESPONSES:
        return SM2CardState(repetitions=0, ease_factor=new_ease, interval=1)

    new_repetitions = repetitions + 1
    if new_repetitions == 1:
        new_interval = 1
    elif new_repetitions == 2:
        new_interval = 6
    else:
        new_interval = _round_half_up(interval * new_ease)

    return SM2CardState(
        repetitions=new_repetitions,
        ease_factor=new_ease,
        interval=new_interval,
    )


def card_stage(state: SM2CardState) -> CardStage:
    """Classify a card for deck progress views."""
    if state.interval >= MASTERED_INTERVAL_DAYS:
        return CardStage.MASTERED
    if state.repetitions == 0:
        return CardStage.NEW
    if state.repetitions < 3:
        return CardStage.LEARNING
    return CardStage.REVIEWING


def next_review_date(interval: int, reviewed_at: datetime) -> datetime:
    return reviewed_at + timedelta(days=interval)


def review_card(
    state: SM2CardState,
    response: ReviewResponse | str,
    reviewed_at: datetime | None = None,
) -> ScheduledReview:
    """Grade a card and compute when it is due next."""
    response = ReviewResponse(response)
    reviewed_at = reviewed_at or datetime.utcnow()
    new_state = calculate_sm2(response, state.repetitions, state.ease_factor, state.interval)
    return ScheduledReview(
        response=response,
        state=new_state,
        stage=card_stage(new_state),
        reviewed_at=reviewed_at,
        next_review_at=next_review_date(new_state.interval, reviewed_at),
    )


def preview_intervals(state: SM2CardState) -> dict[ReviewResponse, SM2CardState]:
    """Outcome of each possible response, for labelling the grading buttons."""
    return {
        response: calculate_sm2(response, state.repetitions, state.ease_factor, state.interval)
        for response in ReviewResponse
    }

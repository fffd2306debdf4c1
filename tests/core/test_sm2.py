"""
Unit tests for SM-2 review scheduling.

Pure functions, no API or storage needed.
"""

from datetime import datetime

import pytest

from src.core import CardStage, ReviewResponse, SM2CardState
from src.core.sm2 import (
    calculate_sm2,
    card_stage,
    next_review_date,
    preview_intervals,
    review_card,
    update_ease_factor,
)


def test_again_resets_repetitions_and_lowers_ease():
    result = calculate_sm2(ReviewResponse.AGAIN, 5, 2.5, 10)

    assert result.repetitions == 0
    assert result.interval == 1
    assert result.ease_factor < 2.5


def test_hard_counts_as_lapse():
    result = calculate_sm2(ReviewResponse.HARD, 5, 2.5, 10)

    assert result.repetitions == 0
    assert result.interval == 1
    assert result.ease_factor == pytest.approx(2.36)


def test_good_grows_interval():
    result = calculate_sm2(ReviewResponse.GOOD, 3, 2.5, 6)

    assert result.repetitions == 4
    assert result.ease_factor == pytest.approx(2.5)
    assert result.interval == 15


def test_easy_beats_good_for_same_state():
    good = calculate_sm2(ReviewResponse.GOOD, 3, 2.5, 6)
    easy = calculate_sm2(ReviewResponse.EASY, 3, 2.5, 6)

    assert easy.interval > good.interval
    assert easy.ease_factor > good.ease_factor


@pytest.mark.parametrize(
    "repetitions,ease_factor,interval",
    [(0, 2.5, 0), (1, 2.5, 1), (2, 1.3, 6), (7, 2.8, 40)],
)
def test_easy_never_schedules_sooner_than_good(repetitions, ease_factor, interval):
    good = calculate_sm2(ReviewResponse.GOOD, repetitions, ease_factor, interval)
    easy = calculate_sm2(ReviewResponse.EASY, repetitions, ease_factor, interval)

    assert easy.interval >= good.interval
    assert easy.ease_factor > good.ease_factor


def test_ease_factor_floor_holds_under_repeated_lapses():
    result = calculate_sm2(ReviewResponse.AGAIN, 0, 1.5, 1)
    for _ in range(20):
        result = calculate_sm2(
            ReviewResponse.AGAIN, result.repetitions, result.ease_factor, result.interval
        )
        assert result.ease_factor >= 1.3

    assert result.ease_factor == pytest.approx(1.3)


def test_floor_applies_even_to_out_of_range_input():
    result = calculate_sm2(ReviewResponse.AGAIN, 0, 1.0, 1)
    assert result.ease_factor == pytest.approx(1.3)


def test_first_success_schedules_one_day():
    result = calculate_sm2(ReviewResponse.GOOD, 0, 2.5, 0)
    assert result.repetitions == 1
    assert result.interval == 1


def test_second_success_schedules_six_days():
    result = calculate_sm2(ReviewResponse.GOOD, 1, 2.5, 1)
    assert result.repetitions == 2
    assert result.interval == 6


def test_interval_rounds_half_up():
    # 5 * 2.5 = 12.5 -> 13 (not banker's 12)
    result = calculate_sm2(ReviewResponse.GOOD, 2, 2.5, 5)
    assert result.interval == 13


def test_accepts_response_value_strings():
    assert calculate_sm2("good", 0, 2.5, 0) == calculate_sm2(ReviewResponse.GOOD, 0, 2.5, 0)


def test_unknown_response_rejected():
    with pytest.raises(ValueError):
        calculate_sm2("meh", 0, 2.5, 0)


def test_deterministic():
    first = calculate_sm2(ReviewResponse.EASY, 4, 2.2, 17)
    second = calculate_sm2(ReviewResponse.EASY, 4, 2.2, 17)
    assert first == second


def test_update_ease_factor_quality_scale():
    assert update_ease_factor(2.5, 5) == pytest.approx(2.6)
    assert update_ease_factor(2.5, 4) == pytest.approx(2.5)
    assert update_ease_factor(2.5, 0) == pytest.approx(1.7)


def test_new_card_defaults():
    state = SM2CardState.new()
    assert (state.repetitions, state.ease_factor, state.interval) == (0, 2.5, 0)


@pytest.mark.parametrize(
    "repetitions,interval,stage",
    [
        (0, 0, CardStage.NEW),
        (1, 1, CardStage.LEARNING),
        (2, 6, CardStage.LEARNING),
        (3, 15, CardStage.REVIEWING),
        (4, 21, CardStage.MASTERED),
        (0, 30, CardStage.MASTERED),
    ],
)
def test_card_stage(repetitions, interval, stage):
    state = SM2CardState(repetitions=repetitions, interval=interval)
    assert card_stage(state) == stage


def test_review_card_sets_due_date():
    reviewed_at = datetime(2026, 3, 1, 9, 30)
    scheduled = review_card(SM2CardState(repetitions=1, interval=1), ReviewResponse.GOOD, reviewed_at)

    assert scheduled.state.interval == 6
    assert scheduled.next_review_at == datetime(2026, 3, 7, 9, 30)
    assert scheduled.stage == CardStage.LEARNING
    assert next_review_date(0, reviewed_at) == reviewed_at


def test_preview_covers_every_response():
    outcomes = preview_intervals(SM2CardState(repetitions=3, interval=6))

    assert set(outcomes) == set(ReviewResponse)
    assert outcomes[ReviewResponse.AGAIN].interval == 1
    assert outcomes[ReviewResponse.EASY].interval >= outcomes[ReviewResponse.GOOD].interval

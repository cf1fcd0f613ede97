"""
Unit tests for the dashboard math. No database, no HTTP.
"""
from datetime import date

import pytest

from analytics import (
    NOT_ENOUGH_DATA,
    Summary,
    build_suggestions,
    bodyweight_trend,
    compute_summary,
    estimated_1rm,
    exercise_trend,
    in_last_n_days,
)
from state_store import MealEntry, MetricEntry, TrackerState, WorkoutSet

TODAY = date(2026, 1, 15)


def _meal(day, **macros):
    return MealEntry(date=day, food="x", **macros)


def _set(day, weight, reps, exercise="Bench Press"):
    return WorkoutSet(date=day, exercise=exercise, weight=weight, reps=reps)


def _summary(**avgs):
    return Summary(n_days=7, day_count=1, **avgs)


# ─── Window ──────────────────────────────────────────────────────────────────

def test_window_is_inclusive():
    assert in_last_n_days("2026-01-15", 7, TODAY)
    assert in_last_n_days("2026-01-09", 7, TODAY)
    assert not in_last_n_days("2026-01-08", 7, TODAY)
    assert not in_last_n_days("2026-01-16", 7, TODAY)


def test_window_ignores_time_and_garbage():
    assert in_last_n_days("2026-01-15T23:59:00", 1, TODAY)
    assert not in_last_n_days("", 7, TODAY)
    assert not in_last_n_days(None, 7, TODAY)
    assert not in_last_n_days("yesterday", 7, TODAY)


# ─── compute_summary ─────────────────────────────────────────────────────────

def test_summary_none_for_empty_store():
    assert compute_summary(TrackerState(), 7, TODAY) is None


def test_summary_none_when_nothing_in_window():
    state = TrackerState(meals=[_meal("2025-12-01", calories=500)])
    assert compute_summary(state, 7, TODAY) is None
    assert compute_summary(state, 60, TODAY) is not None


def test_exercise_names_alone_are_not_data():
    state = TrackerState(exercises=["Squat"])
    assert compute_summary(state, 7, TODAY) is None


def test_protein_divided_by_days_not_meals():
    same_day = TrackerState(meals=[
        _meal("2026-01-15", protein=60),
        _meal("2026-01-15", protein=60),
    ])
    two_days = TrackerState(meals=[
        _meal("2026-01-14", protein=60),
        _meal("2026-01-15", protein=60),
    ])
    assert compute_summary(same_day, 7, TODAY).avg_protein == 120
    assert compute_summary(two_days, 7, TODAY).avg_protein == 60


def test_day_count_spans_all_collections():
    state = TrackerState(
        meals=[_meal("2026-01-15", calories=2000)],
        workouts=[_set("2026-01-14", 100, 10)],
        metrics=[MetricEntry(date="2026-01-13", steps=8000)],
    )
    s = compute_summary(state, 7, TODAY)
    assert s.day_count == 3
    assert s.n_days == 7
    assert s.avg_calories == pytest.approx(2000 / 3)
    assert s.avg_volume == pytest.approx(1000 / 3)
    assert s.avg_bodyweight is None


def test_bodyweight_uses_reading_count():
    state = TrackerState(
        meals=[_meal(d, calories=1800) for d in ("2026-01-12", "2026-01-13", "2026-01-14")],
        metrics=[
            MetricEntry(date="2026-01-14", bodyweight=180),
            MetricEntry(date="2026-01-14", bodyweight=184),
            MetricEntry(date="2026-01-14", sleepHours=8),
        ],
    )
    s = compute_summary(state, 7, TODAY)
    assert s.day_count == 3
    assert s.avg_bodyweight == 182


def test_averages_none_without_source():
    state = TrackerState(metrics=[MetricEntry(date="2026-01-15", bodyweight=180)])
    s = compute_summary(state, 7, TODAY)
    assert s.avg_calories is None
    assert s.avg_protein is None
    assert s.avg_carbs is None
    assert s.avg_fat is None
    assert s.avg_volume is None


def test_zero_meals_are_zero_not_none():
    state = TrackerState(meals=[_meal("2026-01-15", calories=0, protein=0, carbs=0, fat=0)])
    s = compute_summary(state, 7, TODAY)
    assert s.avg_calories == 0
    assert s.avg_protein == 0


# ─── build_suggestions ───────────────────────────────────────────────────────

def test_suggestions_for_missing_summary():
    assert build_suggestions(None) == [NOT_ENOUGH_DATA]


def test_suggestions_all_blocks_skipped():
    assert build_suggestions(_summary()) == [NOT_ENOUGH_DATA]


@pytest.mark.parametrize("protein,expected", [
    (107.9, "below your target"),
    (108, "within your target range"),
    (132, "within your target range"),
    (132.1, "above your target"),
])
def test_protein_boundaries(protein, expected):
    [msg] = build_suggestions(_summary(avg_protein=protein))
    assert expected in msg


@pytest.mark.parametrize("calories,expected", [
    (1499, "large deficit"),
    (1500, "moderate deficit"),
    (2000, "moderate deficit"),
    (2001, "close to or above maintenance"),
    (2600, "close to or above maintenance"),
])
def test_calorie_boundaries(calories, expected):
    [msg] = build_suggestions(_summary(avg_calories=calories))
    assert expected in msg


@pytest.mark.parametrize("volume,expected", [
    (1999, "lower side"),
    (2000, "moderate range"),
    (6000, "moderate range"),
    (6001, "quite high"),
])
def test_volume_boundaries(volume, expected):
    [msg] = build_suggestions(_summary(avg_volume=volume))
    assert expected in msg


def test_suggestion_order_and_formatting():
    msgs = build_suggestions(_summary(
        avg_bodyweight=180.26,
        avg_volume=2500.4,
        avg_calories=1000.4,
        avg_protein=95.6,
    ))
    assert len(msgs) == 4
    assert msgs[0].startswith("Average protein (~96 g)")
    assert "(~1000 kcal)" in msgs[1]
    assert "(~1200 kcal vs estimated maintenance 2200)" in msgs[1]
    assert msgs[2].startswith("Training volume (~2500 total lbs per day)")
    assert "about 180.3 lbs" in msgs[3]


# ─── Trends ──────────────────────────────────────────────────────────────────

def test_estimated_1rm():
    assert estimated_1rm(100, 5) == pytest.approx(116.67, abs=0.01)
    assert estimated_1rm(90, 10) == pytest.approx(120)


def test_exercise_trend_keeps_best_per_day():
    state = TrackerState(workouts=[
        _set("2026-01-15", 100, 5),
        _set("2026-01-15", 90, 10),
        _set("2026-01-15", 200, 1, exercise="Squat"),
    ])
    [point] = exercise_trend(state, "Bench Press")
    assert point.date == "2026-01-15"
    assert point.value == pytest.approx(120)


def test_exercise_trend_is_chronological():
    state = TrackerState(workouts=[
        _set("2026-01-15", 100, 5),
        _set("2025-12-31", 95, 5),
        _set("2026-01-02", 97.5, 5),
    ])
    dates = [p.date for p in exercise_trend(state, "Bench Press")]
    assert dates == ["2025-12-31", "2026-01-02", "2026-01-15"]


def test_exercise_trend_unknown_exercise():
    state = TrackerState(workouts=[_set("2026-01-15", 100, 5)])
    assert exercise_trend(state, "Deadlift") == []


def test_bodyweight_trend_means_per_day():
    state = TrackerState(metrics=[
        MetricEntry(date="2026-01-15", bodyweight=180),
        MetricEntry(date="2026-01-14", bodyweight=183),
        MetricEntry(date="2026-01-15", bodyweight=182),
        MetricEntry(date="2026-01-13", energy=7),
    ])
    points = bodyweight_trend(state)
    assert [(p.date, p.value) for p in points] == [("2026-01-14", 183), ("2026-01-15", 181)]


def test_bodyweight_trend_empty():
    assert bodyweight_trend(TrackerState()) == []

# analytics.py
# =============================================================================
# Gym Tracker: dashboard math. Rolling-window summary, rule-based suggestions
# and per-day trend series. Pure functions of (state, window, today).
# =============================================================================

from __future__ import annotations

from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from state_store import TrackerState

TARGET_PROTEIN = 120        # g/day
MAINTENANCE_CALORIES = 2200  # kcal/day
LOW_VOLUME = 2000            # weight x reps per day
HIGH_VOLUME = 6000

NOT_ENOUGH_DATA = "Not enough data yet to generate suggestions."


class Summary(BaseModel):
    n_days: int
    day_count: int
    avg_calories: Optional[float] = None
    avg_protein: Optional[float] = None
    avg_carbs: Optional[float] = None
    avg_fat: Optional[float] = None
    avg_volume: Optional[float] = None
    avg_bodyweight: Optional[float] = None


class TrendPoint(BaseModel):
    date: str
    value: float


# -----------------------------------------------------------------------------
# Dates
# -----------------------------------------------------------------------------
def parse_day(value: Optional[str]) -> Optional[date]:
    """Calendar date of a stored YYYY-MM-DD string (time-of-day ignored)."""
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def in_last_n_days(value: Optional[str], n: int, today: date) -> bool:
    d = parse_day(value)
    if d is None:
        return False
    cutoff = today - timedelta(days=n - 1)
    return cutoff <= d <= today


def _chronological(days: Iterable[str]) -> List[str]:
    return sorted(days, key=lambda d: (parse_day(d) or date.max, d))


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------
def compute_summary(state: TrackerState, window_days: int, today: date) -> Optional[Summary]:
    if state.is_empty():
        return None

    workouts = [w for w in state.workouts if in_last_n_days(w.date, window_days, today)]
    meals = [m for m in state.meals if in_last_n_days(m.date, window_days, today)]
    metrics = [m for m in state.metrics if in_last_n_days(m.date, window_days, today)]

    if not workouts and not meals and not metrics:
        return None

    dates = {e.date for e in workouts} | {e.date for e in meals} | {e.date for e in metrics}
    day_count = len(dates) or window_days

    # Totals are divided by days with any data, not by entry count.
    total_cals = sum(m.calories or 0 for m in meals)
    total_protein = sum(m.protein or 0 for m in meals)
    total_carbs = sum(m.carbs or 0 for m in meals)
    total_fat = sum(m.fat or 0 for m in meals)
    total_volume = sum((w.weight or 0) * (w.reps or 0) for w in workouts)

    # Bodyweight: mean over readings, not days.
    weights = [m.bodyweight for m in metrics if m.bodyweight is not None]

    return Summary(
        n_days=window_days,
        day_count=day_count,
        avg_calories=total_cals / day_count if meals else None,
        avg_protein=total_protein / day_count if meals else None,
        avg_carbs=total_carbs / day_count if meals else None,
        avg_fat=total_fat / day_count if meals else None,
        avg_volume=total_volume / day_count if workouts else None,
        avg_bodyweight=sum(weights) / len(weights) if weights else None,
    )


# -----------------------------------------------------------------------------
# Suggestions
# -----------------------------------------------------------------------------
def _protein_message(avg: float) -> str:
    if avg < TARGET_PROTEIN * 0.9:
        return (
            f"Average protein (~{avg:.0f} g) is below your target ({TARGET_PROTEIN} g). "
            f"Consider adding a higher-protein meal or shake."
        )
    if avg > TARGET_PROTEIN * 1.1:
        return (
            f"Average protein (~{avg:.0f} g) is above your target. "
            f"This is fine if digestion and recovery feel good."
        )
    return f"Protein intake (~{avg:.0f} g) is within your target range. Keep it consistent."


def _calorie_message(avg: float) -> str:
    deficit = MAINTENANCE_CALORIES - avg
    if deficit > 700:
        return (
            f"Average calories (~{avg:.0f} kcal) are likely putting you in a large deficit "
            f"(~{deficit:.0f} kcal vs estimated maintenance {MAINTENANCE_CALORIES}). "
            f"Consider increasing calories slightly to support recovery."
        )
    if deficit < 200:
        return (
            f"Average calories (~{avg:.0f} kcal) are close to or above maintenance. "
            f"If fat loss is a goal, consider tightening the deficit a bit."
        )
    return (
        f"Calorie intake (~{avg:.0f} kcal) suggests a moderate deficit. "
        f"This is generally sustainable for slow cutting or recomposition."
    )


def _volume_message(avg: float) -> str:
    if avg < LOW_VOLUME:
        return (
            f"Average training volume (~{avg:.0f} total lbs per day) is on the lower side. "
            f"If you feel good, you could experiment with adding a set or another exercise."
        )
    if avg > HIGH_VOLUME:
        return (
            f"Average training volume (~{avg:.0f} total lbs per day) is quite high. "
            f"Monitor fatigue and consider a deload week if recovery feels poor."
        )
    return (
        f"Training volume (~{avg:.0f} total lbs per day) is in a moderate range. "
        f"Focus on progressive overload and good form."
    )


def _bodyweight_message(avg: float) -> str:
    return (
        f"Average bodyweight over the window is about {avg:.1f} lbs. "
        f"Compare this with your goal trend (up, down, or stable)."
    )


def build_suggestions(summary: Optional[Summary]) -> List[str]:
    if summary is None:
        return [NOT_ENOUGH_DATA]

    rules = [
        (summary.avg_protein, _protein_message),
        (summary.avg_calories, _calorie_message),
        (summary.avg_volume, _volume_message),
        (summary.avg_bodyweight, _bodyweight_message),
    ]
    suggestions = [message(avg) for avg, message in rules if avg is not None]
    return suggestions or [NOT_ENOUGH_DATA]


# -----------------------------------------------------------------------------
# Trends
# -----------------------------------------------------------------------------
def estimated_1rm(weight: float, reps: float) -> float:
    """Epley: weight * (1 + reps/30)."""
    return weight * (1 + reps / 30)


def exercise_trend(state: TrackerState, exercise: str) -> List[TrendPoint]:
    """Best estimated 1RM per day for one exercise, oldest first."""
    best: Dict[str, float] = {}
    for w in state.workouts:
        if w.exercise != exercise or not w.date:
            continue
        e1rm = estimated_1rm(w.weight or 0, w.reps or 0)
        if w.date not in best or e1rm > best[w.date]:
            best[w.date] = e1rm
    return [TrendPoint(date=d, value=best[d]) for d in _chronological(best)]


def bodyweight_trend(state: TrackerState) -> List[TrendPoint]:
    """Mean bodyweight per day, oldest first."""
    readings: Dict[str, List[float]] = defaultdict(list)
    for m in state.metrics:
        if m.bodyweight is not None and m.date:
            readings[m.date].append(m.bodyweight)
    return [
        TrendPoint(date=d, value=sum(readings[d]) / len(readings[d]))
        for d in _chronological(readings)
    ]

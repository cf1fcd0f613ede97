# app.py
# =============================================================================
# Gym Tracker API: workouts, meals, body metrics & dashboard
# (FastAPI + SQLAlchemy 2.x async, Pydantic v2)
# Single user. The whole log is ONE JSON document in a key-value table,
# loaded once and rewritten after every change.
# =============================================================================

from __future__ import annotations

import asyncio
import csv
import io
import os
import logging
import traceback
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from pathlib import Path as OSPath
from typing import Any, AsyncGenerator, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi import Path as FPath
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from analytics import (
    Summary,
    TrendPoint,
    bodyweight_trend,
    build_suggestions,
    compute_summary,
    exercise_trend,
)
from state_store import (
    Base,
    Creating,
    Editing,
    MealEntry,
    MealIn,
    MealPreset,
    MealPresetIn,
    MetricEntry,
    MetricIn,
    MalformedStoredData,
    TrackerError,
    TrackerState,
    WorkoutIn,
    WorkoutSet,
    add_exercise_name,
    add_metric,
    add_workout,
    delete_exercise,
    delete_meal_preset,
    document_to_state,
    exercise_usage,
    find_meal_preset,
    load_state,
    meal_from_preset,
    meals_for_day,
    preset_from_meal,
    remove_entry,
    rename_exercise,
    replace_entry,
    save_state,
    submit_meal,
    upsert_meal_preset,
)

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=os.getenv("GYMTRACKER_LOG_LEVEL", "INFO").upper(),
    format="%(levelname)s %(message)s",
)
log = logging.getLogger("gym-tracker-api")

# -----------------------------------------------------------------------------
# DB connection
# Priority:
#   1) env GYMTRACKER_DB (path to gym_tracker.db)
#   2) ./data/gym_tracker.db
#   3) ./gym_tracker.db  (fallback)
# -----------------------------------------------------------------------------
env_db = os.getenv("GYMTRACKER_DB")
candidates = [
    str((OSPath(__file__).parent / "data" / "gym_tracker.db").resolve()),
    str((OSPath(__file__).parent / "gym_tracker.db").resolve()),
]
DB_PATH = env_db or next((p for p in candidates if OSPath(p).exists()), candidates[-1])
engine = create_async_engine(f"sqlite+aiosqlite:///{DB_PATH}", echo=False)
log.info(f"Using SQLite (async): {DB_PATH}")

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Serializes the first load so concurrent requests share one document.
_load_lock = asyncio.Lock()


async def _init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("kv_store table ready")


# -----------------------------------------------------------------------------
# Response schemas
# -----------------------------------------------------------------------------
class HealthOut(BaseModel):
    ok: bool = True
    db_connected: bool = True
    timestamp: str


class GenericResponse(BaseModel):
    message: str


class CreatedOut(BaseModel):
    message: str
    index: int


class IndexedWorkout(BaseModel):
    index: int
    entry: WorkoutSet


class IndexedMeal(BaseModel):
    index: int
    entry: MealEntry


class IndexedMetric(BaseModel):
    index: int
    entry: MetricEntry


class ExerciseOut(BaseModel):
    name: str
    sets: int


class RenameIn(BaseModel):
    new_name: str


class RenameOut(BaseModel):
    old_name: str
    new_name: str
    workouts_updated: int


class DeleteExerciseOut(BaseModel):
    name: str
    workouts_removed: int


class MealFromPresetIn(BaseModel):
    preset: str
    date: Optional[str] = None
    meal: Optional[str] = None


class SummaryOut(BaseModel):
    days: int
    summary: Optional[Summary] = None
    suggestions: List[str] = Field(default_factory=list)


class SummaryItem(BaseModel):
    label: str
    value: str


class TrendOut(BaseModel):
    label: str
    points: List[TrendPoint] = Field(default_factory=list)


class DashboardOut(BaseModel):
    days: int
    items: List[SummaryItem] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    exercise_trend: Optional[TrendOut] = None
    exercise_hint: str
    bodyweight_trend: TrendOut


class CsvExportOut(BaseModel):
    filename: str
    rows: int
    csv: str


# -----------------------------------------------------------------------------
# App (with lifespan)
# -----------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    await _init_db()
    async with async_session() as s:
        app.state.tracker = await load_state(s)
    yield
    await engine.dispose()


app = FastAPI(
    title="Gym Tracker API",
    description="Single-user log of workout sets, meals and body metrics with a rolling dashboard.",
    version="4.0.0",
    lifespan=lifespan,
)


# -----------------------------------------------------------------------------
# Error handlers
# -----------------------------------------------------------------------------
@app.exception_handler(TrackerError)
async def _tracker_error_handler(request: Request, exc: TrackerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exc()
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}\n{tb}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error: {type(exc).__name__}: {exc}"},
    )


# -----------------------------------------------------------------------------
# Dependencies & helpers
# -----------------------------------------------------------------------------
def get_today() -> date:
    """Local calendar date, read per request."""
    return date.today()


async def get_tracker(request: Request) -> TrackerState:
    tracker = getattr(request.app.state, "tracker", None)
    if tracker is not None:
        return tracker
    async with _load_lock:
        tracker = getattr(request.app.state, "tracker", None)
        if tracker is None:
            async with async_session() as s:
                tracker = await load_state(s)
            request.app.state.tracker = tracker
    return tracker


async def _persist(tracker: TrackerState) -> None:
    """Best-effort full rewrite; the in-memory document stays authoritative."""
    try:
        async with async_session() as s:
            await save_state(s, tracker)
            await s.commit()
    except SQLAlchemyError as e:
        log.error(f"Error saving state: {e}")


def _fmt(val: Optional[float], suffix: str = "", decimals: int = 0) -> str:
    return "—" if val is None else f"{val:.{decimals}f}{suffix}"


def _summary_items(s: Summary) -> List[SummaryItem]:
    return [
        SummaryItem(label="Avg calories / day", value=_fmt(s.avg_calories, " kcal")),
        SummaryItem(label="Avg protein / day", value=_fmt(s.avg_protein, " g")),
        SummaryItem(label="Avg training volume / day", value=_fmt(s.avg_volume, " lbs")),
        SummaryItem(label="Avg bodyweight", value=_fmt(s.avg_bodyweight, " lbs", 1)),
        SummaryItem(label="Days with data", value=str(s.day_count)),
    ]


# -----------------------------------------------------------------------------
# Health / Root
# -----------------------------------------------------------------------------
@app.get("/health", response_model=HealthOut)
async def health() -> HealthOut:
    db_connected = False
    try:
        async with async_session() as s:
            await s.execute(text("SELECT 1"))
            db_connected = True
    except SQLAlchemyError as e:
        log.error(f"Health check DB query failed: {e}")
    return HealthOut(
        ok=db_connected,
        db_connected=db_connected,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/", response_model=GenericResponse)
async def root() -> GenericResponse:
    return GenericResponse(message="Gym Tracker API v4 is running")


# -----------------------------------------------------------------------------
# Whole document
# -----------------------------------------------------------------------------
@app.get("/state", response_model=TrackerState)
async def export_state(tracker: TrackerState = Depends(get_tracker)) -> TrackerState:
    return tracker


@app.put("/state", response_model=GenericResponse)
async def import_state(request: Request, body: Any = Body(...)) -> GenericResponse:
    try:
        tracker = document_to_state(body)
    except MalformedStoredData as e:
        raise HTTPException(422, f"Invalid document: {e}")
    request.app.state.tracker = tracker
    await _persist(tracker)
    return GenericResponse(message="State replaced")


# -----------------------------------------------------------------------------
# Workouts
# -----------------------------------------------------------------------------
@app.get("/workouts", response_model=List[IndexedWorkout])
async def list_workouts(
    exercise: Optional[str] = None,
    start: Optional[str] = Query(None, description="YYYY-MM-DD"),
    end: Optional[str] = Query(None, description="YYYY-MM-DD"),
    tracker: TrackerState = Depends(get_tracker),
) -> List[IndexedWorkout]:
    out: List[IndexedWorkout] = []
    for i, w in enumerate(tracker.workouts):
        if exercise and w.exercise != exercise:
            continue
        if start and (w.date or "") < start:
            continue
        if end and (w.date or "") > end:
            continue
        out.append(IndexedWorkout(index=i, entry=w))
    return out


@app.post("/workouts", response_model=CreatedOut)
async def create_workout(
    body: WorkoutIn,
    tracker: TrackerState = Depends(get_tracker),
    today: date = Depends(get_today),
) -> CreatedOut:
    index = add_workout(tracker, body.to_record(today))
    await _persist(tracker)
    return CreatedOut(message="Workout saved", index=index)


@app.put("/workouts/{index}", response_model=WorkoutSet)
async def edit_workout(
    index: int = FPath(..., ge=0),
    body: WorkoutIn = Body(...),
    tracker: TrackerState = Depends(get_tracker),
    today: date = Depends(get_today),
) -> WorkoutSet:
    record = body.to_record(today)
    replace_entry(tracker, "workouts", index, record)
    add_exercise_name(tracker, record.exercise)
    await _persist(tracker)
    return record


@app.delete("/workouts/{index}", response_model=GenericResponse)
async def delete_workout(
    index: int = FPath(..., ge=0), tracker: TrackerState = Depends(get_tracker)
) -> GenericResponse:
    remove_entry(tracker, "workouts", index)
    await _persist(tracker)
    return GenericResponse(message="Workout deleted")


# -----------------------------------------------------------------------------
# Meals
# -----------------------------------------------------------------------------
@app.get("/meals", response_model=List[IndexedMeal])
async def meal_log(
    day: Optional[str] = Query(None, alias="date", description="YYYY-MM-DD, defaults to today"),
    tracker: TrackerState = Depends(get_tracker),
    today: date = Depends(get_today),
) -> List[IndexedMeal]:
    return [IndexedMeal(index=i, entry=m) for i, m in meals_for_day(tracker, day or today.isoformat())]


@app.post("/meals", response_model=CreatedOut)
async def create_meal(
    body: MealIn,
    save_preset: bool = Query(False, description="Also save this meal as a preset"),
    tracker: TrackerState = Depends(get_tracker),
    today: date = Depends(get_today),
) -> CreatedOut:
    entry = body.to_record(today)
    # Preset first: a meal without a description must not reach the log.
    preset = preset_from_meal(entry) if save_preset else None
    index = submit_meal(tracker, entry, Creating())
    if preset is not None:
        upsert_meal_preset(tracker, preset)
    await _persist(tracker)
    return CreatedOut(message="Meal and preset saved" if preset else "Meal saved", index=index)


@app.post("/meals/from_preset", response_model=CreatedOut)
async def create_meal_from_preset(
    body: MealFromPresetIn,
    tracker: TrackerState = Depends(get_tracker),
    today: date = Depends(get_today),
) -> CreatedOut:
    preset = find_meal_preset(tracker, body.preset)
    entry = meal_from_preset(preset, body.date or today.isoformat(), body.meal)
    index = submit_meal(tracker, entry, Creating())
    await _persist(tracker)
    return CreatedOut(message="Meal saved", index=index)


@app.put("/meals/{index}", response_model=MealEntry)
async def edit_meal(
    index: int = FPath(..., ge=0),
    body: MealIn = Body(...),
    tracker: TrackerState = Depends(get_tracker),
    today: date = Depends(get_today),
) -> MealEntry:
    entry = body.to_record(today)
    submit_meal(tracker, entry, Editing(index))
    await _persist(tracker)
    return entry


@app.delete("/meals/{index}", response_model=GenericResponse)
async def delete_meal(
    index: int = FPath(..., ge=0), tracker: TrackerState = Depends(get_tracker)
) -> GenericResponse:
    remove_entry(tracker, "meals", index)
    await _persist(tracker)
    return GenericResponse(message="Meal deleted")


# -----------------------------------------------------------------------------
# Body metrics
# -----------------------------------------------------------------------------
@app.get("/metrics", response_model=List[IndexedMetric])
async def list_metrics(tracker: TrackerState = Depends(get_tracker)) -> List[IndexedMetric]:
    return [IndexedMetric(index=i, entry=m) for i, m in enumerate(tracker.metrics)]


@app.post("/metrics", response_model=CreatedOut)
async def create_metric(
    body: MetricIn,
    tracker: TrackerState = Depends(get_tracker),
    today: date = Depends(get_today),
) -> CreatedOut:
    index = add_metric(tracker, body.to_record(today))
    await _persist(tracker)
    return CreatedOut(message="Metrics saved", index=index)


@app.put("/metrics/{index}", response_model=MetricEntry)
async def edit_metric(
    index: int = FPath(..., ge=0),
    body: MetricIn = Body(...),
    tracker: TrackerState = Depends(get_tracker),
    today: date = Depends(get_today),
) -> MetricEntry:
    entry = body.to_record(today)
    replace_entry(tracker, "metrics", index, entry)
    await _persist(tracker)
    return entry


@app.delete("/metrics/{index}", response_model=GenericResponse)
async def delete_metric(
    index: int = FPath(..., ge=0), tracker: TrackerState = Depends(get_tracker)
) -> GenericResponse:
    remove_entry(tracker, "metrics", index)
    await _persist(tracker)
    return GenericResponse(message="Metrics deleted")


# -----------------------------------------------------------------------------
# Exercise names
# -----------------------------------------------------------------------------
@app.get("/exercises", response_model=List[ExerciseOut])
async def list_exercises(tracker: TrackerState = Depends(get_tracker)) -> List[ExerciseOut]:
    usage = exercise_usage(tracker)
    return [
        ExerciseOut(name=name, sets=usage[name])
        for name in sorted(usage, key=lambda n: (n.casefold(), n))
    ]


@app.post("/exercises", response_model=GenericResponse)
async def create_exercise(
    name: str = Body(..., embed=True), tracker: TrackerState = Depends(get_tracker)
) -> GenericResponse:
    if not add_exercise_name(tracker, name):
        return GenericResponse(message="Exercise already exists or name is blank")
    await _persist(tracker)
    return GenericResponse(message="Exercise added")


@app.put("/exercises/{name:path}", response_model=RenameOut)
async def rename_exercise_endpoint(
    name: str, body: RenameIn, tracker: TrackerState = Depends(get_tracker)
) -> RenameOut:
    updated = rename_exercise(tracker, name, body.new_name)
    await _persist(tracker)
    new_name = body.new_name.strip() or name
    return RenameOut(old_name=name, new_name=new_name, workouts_updated=updated)


@app.delete("/exercises/{name:path}", response_model=DeleteExerciseOut)
async def delete_exercise_endpoint(
    name: str,
    confirm: bool = Query(False, description="Also remove the sets logged under this name"),
    tracker: TrackerState = Depends(get_tracker),
) -> DeleteExerciseOut:
    removed = delete_exercise(tracker, name, confirm=confirm)
    await _persist(tracker)
    return DeleteExerciseOut(name=name, workouts_removed=removed)


# -----------------------------------------------------------------------------
# Meal presets
# -----------------------------------------------------------------------------
@app.get("/meal_presets", response_model=List[MealPreset])
async def list_meal_presets(tracker: TrackerState = Depends(get_tracker)) -> List[MealPreset]:
    return tracker.meal_presets


@app.post("/meal_presets", response_model=GenericResponse)
async def save_meal_preset(
    body: MealPresetIn, tracker: TrackerState = Depends(get_tracker)
) -> GenericResponse:
    replaced = upsert_meal_preset(tracker, body.to_record())
    await _persist(tracker)
    return GenericResponse(message="Preset updated" if replaced else "Preset saved")


@app.delete("/meal_presets/{name:path}", response_model=GenericResponse)
async def remove_meal_preset(
    name: str, tracker: TrackerState = Depends(get_tracker)
) -> GenericResponse:
    delete_meal_preset(tracker, name)
    await _persist(tracker)
    return GenericResponse(message="Preset deleted")


# -----------------------------------------------------------------------------
# Dashboard
# -----------------------------------------------------------------------------
@app.get("/analytics/summary", response_model=SummaryOut)
async def analytics_summary(
    days: int = Query(7, ge=1, le=365),
    tracker: TrackerState = Depends(get_tracker),
    today: date = Depends(get_today),
) -> SummaryOut:
    summary = compute_summary(tracker, days, today)
    return SummaryOut(days=days, summary=summary, suggestions=build_suggestions(summary))


@app.get("/analytics/exercise_trend", response_model=TrendOut)
async def analytics_exercise_trend(
    exercise: str = Query(..., min_length=1),
    tracker: TrackerState = Depends(get_tracker),
) -> TrendOut:
    return TrendOut(label=f"Est. 1RM ({exercise})", points=exercise_trend(tracker, exercise))


@app.get("/analytics/bodyweight_trend", response_model=TrendOut)
async def analytics_bodyweight_trend(tracker: TrackerState = Depends(get_tracker)) -> TrendOut:
    return TrendOut(label="Bodyweight", points=bodyweight_trend(tracker))


@app.get("/analytics/dashboard", response_model=DashboardOut)
async def analytics_dashboard(
    days: int = Query(7, ge=1, le=365),
    exercise: Optional[str] = None,
    tracker: TrackerState = Depends(get_tracker),
    today: date = Depends(get_today),
) -> DashboardOut:
    summary = compute_summary(tracker, days, today)
    items = _summary_items(summary) if summary else []

    trend: Optional[TrendOut] = None
    if not exercise:
        hint = "Choose an exercise to see how your strength changes over time."
    else:
        points = exercise_trend(tracker, exercise)
        if points:
            trend = TrendOut(label=f"Est. 1RM ({exercise})", points=points)
            hint = "Each point is the best estimated 1RM for that day."
        else:
            hint = "No data yet for this exercise."

    return DashboardOut(
        days=days,
        items=items,
        suggestions=build_suggestions(summary),
        exercise_trend=trend,
        exercise_hint=hint,
        bodyweight_trend=TrendOut(label="Bodyweight", points=bodyweight_trend(tracker)),
    )


# -----------------------------------------------------------------------------
# Export CSV
# -----------------------------------------------------------------------------
@app.get("/export/csv", response_model=CsvExportOut)
async def export_csv(tracker: TrackerState = Depends(get_tracker)) -> CsvExportOut:
    rows = sorted(enumerate(tracker.workouts), key=lambda iw: ((iw[1].date or ""), iw[0]))

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(["index", "date", "muscle_group", "exercise", "set_number", "weight", "reps", "rpe"])
    for i, w in rows:
        writer.writerow([
            i, w.date, w.muscle_group, w.exercise,
            w.set_number, w.weight, w.reps, w.rpe,
        ])

    return CsvExportOut(filename="workouts.csv", rows=len(rows), csv=buf.getvalue())

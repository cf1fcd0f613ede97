# state_store.py
# =============================================================================
# Gym Tracker: persisted document, entry acceptance rules & store mutations.
# The whole tracker lives in ONE JSON document under a fixed storage key.
# Every mutation rewrites the document wholesale.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from sqlalchemy import String, Text, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

log = logging.getLogger(__name__)

STORAGE_KEY = "fitnessTracker_v4"


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
class MalformedStoredData(ValueError):
    """Stored value is not a JSON object matching the document layout."""


class TrackerError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class EntryNotFound(TrackerError):
    status_code = 404


class PresetNotFound(TrackerError):
    status_code = 404


class DuplicateName(TrackerError):
    status_code = 409


class ConfirmationRequired(TrackerError):
    status_code = 409

    def __init__(self, detail: str, affected: int):
        super().__init__(detail)
        self.affected = affected


class InvalidEntry(TrackerError, ValueError):
    """Acceptance rule violated. Inside a Pydantic validator this becomes a 422."""
    status_code = 422


# -----------------------------------------------------------------------------
# Key-value table (stands in for the browser's localStorage)
# -----------------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


class KVEntry(Base):
    __tablename__ = "kv_store"
    __table_args__ = {"extend_existing": True}

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


# -----------------------------------------------------------------------------
# Persisted records (lenient: legacy documents may carry nulls/extra keys)
# -----------------------------------------------------------------------------
# Keeps int vs float exactly as stored
Number = Union[int, float]


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator("*", mode="wrap")
    @classmethod
    def _lenient(cls, v, handler, info):
        try:
            return handler(v)
        except ValidationError:
            log.warning(f"{cls.__name__}.{info.field_name}: replacing unreadable value {v!r}")
            return cls.model_fields[info.field_name].get_default()


class WorkoutSet(_Record):
    date: Optional[str] = ""
    muscle_group: Optional[str] = Field("Other", alias="muscleGroup")
    exercise: Optional[str] = ""
    set_number: Optional[Number] = Field(1, alias="setNumber")
    weight: Optional[Number] = 0
    reps: Optional[Number] = 0
    rpe: Optional[Number] = None


class MealEntry(_Record):
    date: Optional[str] = ""
    meal: Optional[str] = "Meal"
    food: Optional[str] = ""
    calories: Optional[Number] = 0
    protein: Optional[Number] = 0
    carbs: Optional[Number] = 0
    fat: Optional[Number] = 0


class MetricEntry(_Record):
    date: Optional[str] = ""
    bodyweight: Optional[Number] = None
    sleep_hours: Optional[Number] = Field(None, alias="sleepHours")
    steps: Optional[Number] = None
    energy: Optional[Number] = None


class MealPreset(_Record):
    name: Optional[str] = ""
    calories: Optional[Number] = 0
    protein: Optional[Number] = 0
    carbs: Optional[Number] = 0
    fat: Optional[Number] = 0


class TrackerState(BaseModel):
    """The single application document. Owned by the caller, passed explicitly."""

    model_config = ConfigDict(populate_by_name=True)

    workouts: List[WorkoutSet] = Field(default_factory=list)
    meals: List[MealEntry] = Field(default_factory=list)
    metrics: List[MetricEntry] = Field(default_factory=list)
    exercises: List[str] = Field(default_factory=list)
    meal_presets: List[MealPreset] = Field(default_factory=list, alias="mealPresets")

    def is_empty(self) -> bool:
        return not (self.workouts or self.meals or self.metrics)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


# -----------------------------------------------------------------------------
# Input schemas: acceptance rules (violations surface as HTTP 422)
# -----------------------------------------------------------------------------
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _check_date(v: Optional[str]) -> Optional[str]:
    if v is None or v == "":
        return None
    if not _DATE_RE.match(v):
        raise ValueError("date must be YYYY-MM-DD format")
    try:
        datetime.strptime(v, "%Y-%m-%d")
    except ValueError:
        raise ValueError("date is not a valid calendar date")
    return v


class _EntryIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date: Optional[str] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: Optional[str]) -> Optional[str]:
        return _check_date(v)


class WorkoutIn(_EntryIn):
    """One working set. Rejected unless reps and weight are both positive."""
    exercise: str
    muscle_group: Optional[str] = Field(None, alias="muscleGroup")
    set_number: Optional[int] = Field(None, alias="setNumber", ge=1)
    weight: Optional[float] = Field(None, ge=0)
    reps: Optional[int] = Field(None, ge=0)
    rpe: Optional[float] = None

    @field_validator("exercise")
    @classmethod
    def strip_exercise(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise InvalidEntry("exercise name cannot be empty")
        return v

    @model_validator(mode="after")
    def require_reps_and_weight(self) -> "WorkoutIn":
        if not self.reps or not self.weight:
            raise InvalidEntry("Please enter reps and weight.")
        return self

    def to_record(self, today: date) -> WorkoutSet:
        return WorkoutSet(
            date=self.date or today.isoformat(),
            muscle_group=self.muscle_group or "Other",
            exercise=self.exercise,
            set_number=self.set_number or 1,
            weight=self.weight,
            reps=self.reps,
            rpe=self.rpe,
        )


class MealIn(_EntryIn):
    meal: Optional[str] = None
    food: str = ""
    calories: Optional[float] = Field(None, ge=0)
    protein: Optional[float] = Field(None, ge=0)
    carbs: Optional[float] = Field(None, ge=0)
    fat: Optional[float] = Field(None, ge=0)

    @field_validator("food")
    @classmethod
    def strip_food(cls, v: str) -> str:
        return v.strip()

    @model_validator(mode="after")
    def require_some_macro(self) -> "MealIn":
        if not (self.calories or self.protein or self.carbs or self.fat):
            raise InvalidEntry("Enter at least calories or macros.")
        return self

    def to_record(self, today: date) -> MealEntry:
        return MealEntry(
            date=self.date or today.isoformat(),
            meal=self.meal or "Meal",
            food=self.food,
            calories=self.calories or 0,
            protein=self.protein or 0,
            carbs=self.carbs or 0,
            fat=self.fat or 0,
        )


class MetricIn(_EntryIn):
    bodyweight: Optional[float] = Field(None, ge=0)
    sleep_hours: Optional[float] = Field(None, alias="sleepHours", ge=0)
    steps: Optional[float] = Field(None, ge=0)
    energy: Optional[float] = None

    @model_validator(mode="after")
    def require_one_metric(self) -> "MetricIn":
        if all(v is None for v in (self.bodyweight, self.sleep_hours, self.steps, self.energy)):
            raise InvalidEntry("Enter at least one metric.")
        return self

    def to_record(self, today: date) -> MetricEntry:
        return MetricEntry(
            date=self.date or today.isoformat(),
            bodyweight=self.bodyweight,
            sleep_hours=self.sleep_hours,
            steps=self.steps,
            energy=self.energy,
        )


class MealPresetIn(BaseModel):
    name: str
    calories: Optional[float] = Field(None, ge=0)
    protein: Optional[float] = Field(None, ge=0)
    carbs: Optional[float] = Field(None, ge=0)
    fat: Optional[float] = Field(None, ge=0)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise InvalidEntry("Enter a description before saving as a preset.")
        return v

    def to_record(self) -> MealPreset:
        return MealPreset(
            name=self.name,
            calories=self.calories or 0,
            protein=self.protein or 0,
            carbs=self.carbs or 0,
            fat=self.fat or 0,
        )


# -----------------------------------------------------------------------------
# Serialization
# -----------------------------------------------------------------------------
def _parse_document(raw: str) -> TrackerState:
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        raise MalformedStoredData(f"not JSON: {e}") from e
    return document_to_state(parsed)


def document_to_state(parsed: object) -> TrackerState:
    """Validate a decoded document. Raises MalformedStoredData."""
    if not isinstance(parsed, dict):
        raise MalformedStoredData(f"expected an object, got {type(parsed).__name__}")

    # One unreadable record or collection must not cost the rest of the log.
    doc = {
        key: _records(parsed, key)
        for key in ("workouts", "meals", "metrics", "mealPresets")
    }
    # Trust an explicit exercises list (even empty) so deletions stick;
    # derive it only for documents written before the field existed.
    if "exercises" in parsed:
        doc["exercises"] = [n for n in _collection_items(parsed, "exercises") if isinstance(n, str)]
    else:
        doc["exercises"] = _derive_exercises(doc["workouts"])
        log.warning(f"Legacy document without exercises; derived {len(doc['exercises'])} name(s)")

    try:
        return TrackerState.model_validate(doc)
    except ValidationError as e:
        raise MalformedStoredData(str(e)) from e


def _collection_items(parsed: dict, key: str) -> list:
    items = parsed.get(key)
    if items is None:
        return []
    if not isinstance(items, list):
        log.warning(f"Ignoring {key!r}: expected a list, got {type(items).__name__}")
        return []
    return items


def _records(parsed: dict, key: str) -> List[dict]:
    items = _collection_items(parsed, key)
    records = [r for r in items if isinstance(r, dict)]
    if len(records) != len(items):
        log.warning(f"Dropped {len(items) - len(records)} non-object entry(ies) from {key!r}")
    return records


def _derive_exercises(workouts: list) -> List[str]:
    names: List[str] = []
    for w in workouts:
        name = w.get("exercise") if isinstance(w, dict) else None
        name = name.strip() if isinstance(name, str) else ""
        if name and name not in names:
            names.append(name)
    return names


def state_from_json(raw: Optional[str]) -> TrackerState:
    """Parse a stored document; anything unreadable falls back to an empty one."""
    if not raw:
        return TrackerState()
    try:
        return _parse_document(raw)
    except MalformedStoredData as e:
        log.warning(f"Ignoring malformed stored data under {STORAGE_KEY!r}: {e}")
        return TrackerState()


def state_to_json(state: TrackerState) -> str:
    return json.dumps(state.to_document())


async def load_state(session: AsyncSession) -> TrackerState:
    result = await session.execute(select(KVEntry.value).where(KVEntry.key == STORAGE_KEY))
    return state_from_json(result.scalar())


async def save_state(session: AsyncSession, state: TrackerState) -> None:
    """Full-document rewrite as a single upsert. Caller commits."""
    payload = state_to_json(state)
    stmt = sqlite_insert(KVEntry).values(key=STORAGE_KEY, value=payload)
    await session.execute(
        stmt.on_conflict_do_update(index_elements=[KVEntry.key], set_={"value": stmt.excluded.value})
    )


# -----------------------------------------------------------------------------
# Submit mode for edits
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Creating:
    pass


@dataclass(frozen=True)
class Editing:
    index: int


SubmitMode = Union[Creating, Editing]


# -----------------------------------------------------------------------------
# Generic index-addressed mutations
# -----------------------------------------------------------------------------
_COLLECTIONS = ("workouts", "meals", "metrics")


def _collection(state: TrackerState, name: str) -> list:
    if name not in _COLLECTIONS:
        raise KeyError(name)
    return getattr(state, name)


def _check_index(items: list, index: int, name: str) -> None:
    if index < 0 or index >= len(items):
        raise EntryNotFound(f"No {name} entry at index {index}")


def replace_entry(state: TrackerState, name: str, index: int, record: BaseModel) -> None:
    items = _collection(state, name)
    _check_index(items, index, name)
    items[index] = record


def remove_entry(state: TrackerState, name: str, index: int) -> BaseModel:
    items = _collection(state, name)
    _check_index(items, index, name)
    return items.pop(index)


def add_metric(state: TrackerState, entry: MetricEntry) -> int:
    state.metrics.append(entry)
    return len(state.metrics) - 1


# -----------------------------------------------------------------------------
# Workouts & exercise names
# -----------------------------------------------------------------------------
def add_exercise_name(state: TrackerState, name: Optional[str]) -> bool:
    """Adds a trimmed name; returns False for blanks and names already present."""
    clean = (name or "").strip()
    if not clean or clean in state.exercises:
        return False
    state.exercises.append(clean)
    return True


def add_workout(state: TrackerState, entry: WorkoutSet) -> int:
    add_exercise_name(state, entry.exercise)
    state.workouts.append(entry)
    return len(state.workouts) - 1


def exercise_usage(state: TrackerState) -> Dict[str, int]:
    counts = {name: 0 for name in state.exercises}
    for w in state.workouts:
        if w.exercise in counts:
            counts[w.exercise] += 1
    return counts


def rename_exercise(state: TrackerState, old: str, new: str) -> int:
    """Renames a name and every set logged under it. Returns sets touched."""
    if old not in state.exercises:
        raise EntryNotFound(f"Exercise {old!r} not found")
    clean = (new or "").strip()
    if not clean or clean == old:
        return 0
    if clean in state.exercises:
        raise DuplicateName("An exercise with that name already exists.")

    state.exercises = [clean if n == old else n for n in state.exercises]
    touched = 0
    for i, w in enumerate(state.workouts):
        if w.exercise == old:
            state.workouts[i] = w.model_copy(update={"exercise": clean})
            touched += 1
    return touched


def delete_exercise(state: TrackerState, name: str, confirm: bool = False) -> int:
    """Removes a name; sets logged under it go too, but only when confirmed."""
    if name not in state.exercises:
        raise EntryNotFound(f"Exercise {name!r} not found")
    used = sum(1 for w in state.workouts if w.exercise == name)
    if used and not confirm:
        raise ConfirmationRequired(
            f'Delete "{name}"? This will also remove {used} logged workout set(s) '
            f"for this exercise. Use confirm=true to proceed.",
            affected=used,
        )
    state.exercises = [n for n in state.exercises if n != name]
    if used:
        state.workouts = [w for w in state.workouts if w.exercise != name]
    return used


# -----------------------------------------------------------------------------
# Meals & presets
# -----------------------------------------------------------------------------
def submit_meal(state: TrackerState, entry: MealEntry, mode: SubmitMode) -> int:
    if isinstance(mode, Editing):
        replace_entry(state, "meals", mode.index, entry)
        return mode.index
    state.meals.append(entry)
    return len(state.meals) - 1


def meals_for_day(state: TrackerState, day: str) -> List[tuple]:
    return [(i, m) for i, m in enumerate(state.meals) if m.date == day]


def upsert_meal_preset(state: TrackerState, preset: MealPreset) -> bool:
    """Returns True when an existing preset with the same name was replaced."""
    for i, p in enumerate(state.meal_presets):
        if p.name == preset.name:
            state.meal_presets[i] = preset
            return True
    state.meal_presets.append(preset)
    return False


def preset_from_meal(entry: MealEntry) -> MealPreset:
    if not entry.food:
        raise InvalidEntry("Enter a description before saving as a preset.")
    return MealPreset(
        name=entry.food,
        calories=entry.calories,
        protein=entry.protein,
        carbs=entry.carbs,
        fat=entry.fat,
    )


def find_meal_preset(state: TrackerState, name: str) -> MealPreset:
    for p in state.meal_presets:
        if p.name == name:
            return p
    raise PresetNotFound(f"No meal preset named {name!r}")


def delete_meal_preset(state: TrackerState, name: str) -> None:
    preset = find_meal_preset(state, name)
    state.meal_presets.remove(preset)


def meal_from_preset(preset: MealPreset, day: str, meal: Optional[str] = None) -> MealEntry:
    return MealEntry(
        date=day,
        meal=meal or "Meal",
        food=preset.name,
        calories=preset.calories or 0,
        protein=preset.protein or 0,
        carbs=preset.carbs or 0,
        fat=preset.fat or 0,
    )

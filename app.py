# app.py
# =============================================================================
# Workout Log API: Workouts, Exercises & Sets (FastAPI + SQLAlchemy 2.x async,
# Pydantic v2)
# A workout owns ordered exercise links; each link owns ordered weight x reps sets.
# v1.0.0: per-user catalog, day windows in the caller's timezone, atomic edits
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
import traceback
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path as OSPath
from typing import AsyncGenerator, Dict, List, Optional, Tuple, Union

from fastapi import Body, Depends, FastAPI, Header, Query, Request, Response
from fastapi import Path as FPath
from fastapi.responses import JSONResponse
from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    asc,
    event,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
log = logging.getLogger("workout-log-api")

# -----------------------------------------------------------------------------
# DB connection
# Priority:
#   1) Cloud SQL (PostgreSQL) if CLOUD_SQL_CONNECTION_NAME is set
#   2) env WORKOUT_LOG_DB (path to the SQLite file, created if missing)
#   3) ./data/workout_log.db if it exists
#   4) ./workout_log.db  (fallback)
# -----------------------------------------------------------------------------
_cloud_sql = os.getenv("CLOUD_SQL_CONNECTION_NAME")  # e.g. project:region:instance
_db_user = os.getenv("DB_USER", "postgres")
_db_pass = os.getenv("DB_PASSWORD", "")
_db_name = os.getenv("DB_NAME", "workout_log")

# Upper bound for a single core operation against the store.
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "10"))

if _cloud_sql:
    _socket_path = f"/cloudsql/{_cloud_sql}"
    DB_PATH = f"postgresql+asyncpg://{_db_user}:{_db_pass}@/{_db_name}?host={_socket_path}"
    engine = create_async_engine(DB_PATH, echo=False, pool_pre_ping=True)
    log.info(f"Using Cloud SQL (async): {_cloud_sql}")
else:
    env_db = os.getenv("WORKOUT_LOG_DB")
    candidates = [
        str((OSPath(__file__).parent / "data" / "workout_log.db").resolve()),
        str((OSPath(__file__).parent / "workout_log.db").resolve()),
    ]
    DB_PATH = env_db or next((p for p in candidates if OSPath(p).exists()), candidates[-1])
    engine = create_async_engine(f"sqlite+aiosqlite:///{DB_PATH}", echo=False)
    log.info(f"Using SQLite (async): {DB_PATH}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


class Exercise(Base):
    """A named movement in one user's catalog, shared by all their workouts."""

    __tablename__ = "exercises"
    __table_args__ = (
        UniqueConstraint("user_id", "name_key", name="uq_exercises_user_name_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    name_key: Mapped[str] = mapped_column(String(100), nullable=False)  # lower(strip(name))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class Workout(Base):
    __tablename__ = "workouts"
    __table_args__ = (Index("ix_workouts_user_started_at", "user_id", "started_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    workout_exercises: Mapped[List["WorkoutExercise"]] = relationship(
        back_populates="workout",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="WorkoutExercise.order",
    )


class WorkoutExercise(Base):
    """Links an exercise to a workout at a 1-based position."""

    __tablename__ = "workout_exercises"
    __table_args__ = (
        UniqueConstraint("workout_id", "order", name="uq_workout_exercises_order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workout_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("workouts.id", ondelete="CASCADE"), nullable=False
    )
    exercise_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("exercises.id"), nullable=False
    )
    order: Mapped[int] = mapped_column("order", Integer, nullable=False)

    workout: Mapped[Workout] = relationship(back_populates="workout_exercises")
    exercise: Mapped[Exercise] = relationship()
    sets: Mapped[List["WorkoutSet"]] = relationship(
        back_populates="workout_exercise",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="WorkoutSet.set_number",
    )


class WorkoutSet(Base):
    __tablename__ = "sets"
    __table_args__ = (
        UniqueConstraint("workout_exercise_id", "set_number", name="uq_sets_set_number"),
        CheckConstraint("weight >= 0", name="ck_sets_weight_non_negative"),
        CheckConstraint("reps > 0", name="ck_sets_reps_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workout_exercise_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("workout_exercises.id", ondelete="CASCADE"), nullable=False
    )
    set_number: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    reps: Mapped[int] = mapped_column(Integer, nullable=False)

    workout_exercise: Mapped[WorkoutExercise] = relationship(back_populates="sets")


class UserPreferences(Base):
    __tablename__ = "user_preferences"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    default_unit: Mapped[str] = mapped_column(String(8), nullable=False, default="kg")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


DEFAULT_UNIT = "kg"
ALLOWED_UNITS = {"kg", "lb"}


# -----------------------------------------------------------------------------
# Startup: create tables
# -----------------------------------------------------------------------------
async def _init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("Database tables ready")


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
class WorkoutError(Exception):
    """Base class for failures reported by the workout core."""

    status_code = 500


class ValidationError(WorkoutError):
    """Input failed shape or range checks; nothing was written."""

    status_code = 422

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class UnauthorizedError(WorkoutError):
    status_code = 401


class NotFoundError(WorkoutError):
    status_code = 404


class StoreError(WorkoutError):
    """Persistence failed or timed out; the transaction was rolled back."""

    status_code = 503


# -----------------------------------------------------------------------------
# Pydantic schemas
# -----------------------------------------------------------------------------
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class HealthOut(BaseModel):
    ok: bool = True
    db_connected: bool = True
    db_type: str
    timestamp: str


class GenericResponse(BaseModel):
    message: str


class SetIn(BaseModel):
    # No coercion: "100" or true are not numbers. Ints still pass as weights.
    model_config = ConfigDict(strict=True)

    weight: float = Field(..., ge=0, allow_inf_nan=False)
    reps: int = Field(..., gt=0)


class ExerciseEntryIn(BaseModel):
    """One exercise of a workout payload: an existing catalog id or a name."""

    model_config = ConfigDict(populate_by_name=True)

    exercise_id: Optional[uuid.UUID] = Field(None, alias="exerciseId")
    exercise_name: Optional[str] = Field(
        None, alias="exerciseName", min_length=1, max_length=100
    )
    sets: List[SetIn] = Field(..., min_length=1)

    @field_validator("exercise_name", mode="before")
    @classmethod
    def strip_exercise_name(cls, v):
        # Length limits apply to the stripped name.
        return v.strip() if isinstance(v, str) else v

    @model_validator(mode="after")
    def require_exercise_reference(self) -> "ExerciseEntryIn":
        if self.exercise_id is None and self.exercise_name is None:
            raise ValueError("each exercise must have an exerciseId or an exerciseName")
        return self


class WorkoutPayload(BaseModel):
    """Create/update body. Both operations take the same shape."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, max_length=100)
    started_at: AwareDatetime = Field(..., alias="startedAt")
    completed_at: Optional[AwareDatetime] = Field(None, alias="completedAt")
    exercises: List[ExerciseEntryIn] = Field(..., min_length=1)

    @field_validator("name", mode="before")
    @classmethod
    def normalize_name(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("started_at", "completed_at")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return v.astimezone(timezone.utc) if v is not None else None

    @model_validator(mode="after")
    def completed_after_start(self) -> "WorkoutPayload":
        if self.completed_at is not None and self.completed_at < self.started_at:
            raise ValueError("completedAt cannot be earlier than startedAt")
        return self


class SetOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    set_number: int = Field(..., alias="setNumber")
    weight: float
    reps: int


class WorkoutExerciseOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    order: int
    exercise_id: uuid.UUID = Field(..., alias="exerciseId")
    exercise_name: str = Field(..., alias="exerciseName")
    sets: List[SetOut] = Field(default_factory=list)


class WorkoutOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    name: Optional[str] = None
    started_at: datetime = Field(..., alias="startedAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")
    exercises: List[WorkoutExerciseOut] = Field(default_factory=list)


class ExerciseOut(BaseModel):
    id: uuid.UUID
    name: str


class PreferencesIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    default_unit: str = Field(..., alias="defaultUnit")


class PreferencesOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    default_unit: str = Field(..., alias="defaultUnit")


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _require_user(user_id: Optional[str]) -> str:
    """The caller's identity provider supplies user_id; we only refuse blanks."""
    if user_id is None or not str(user_id).strip():
        raise UnauthorizedError("Unauthorized")
    return str(user_id)


def _format_errors(exc: PydanticValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
        for err in exc.errors()
    ]


def _parse_payload(payload: Union[WorkoutPayload, dict]) -> WorkoutPayload:
    if isinstance(payload, WorkoutPayload):
        return payload
    try:
        return WorkoutPayload.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError("Invalid workout payload", errors=_format_errors(e)) from e


def _parse_workout_id(workout_id: Union[uuid.UUID, str]) -> uuid.UUID:
    if isinstance(workout_id, uuid.UUID):
        return workout_id
    try:
        return uuid.UUID(str(workout_id))
    except ValueError as e:
        raise ValidationError(f"Invalid workout id {workout_id!r}") from e


def _name_key(name: str) -> str:
    return name.strip().lower()


async def _with_store(coro, action: str):
    """Run a store coroutine under the timeout and map persistence failures."""
    try:
        return await asyncio.wait_for(coro, timeout=STORE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError as e:
        log.error(f"Store call timed out after {STORE_TIMEOUT_SECONDS}s: {action}")
        raise StoreError(f"{action} timed out") from e
    except SQLAlchemyError as e:
        log.error(f"Store failure during {action}: {e}")
        raise StoreError(f"{action} failed") from e


def _workout_to_out(w: Workout) -> WorkoutOut:
    return WorkoutOut(
        id=w.id,
        name=w.name,
        started_at=_as_utc(w.started_at),
        completed_at=_as_utc(w.completed_at),
        exercises=[
            WorkoutExerciseOut(
                id=we.id,
                order=we.order,
                exercise_id=we.exercise_id,
                exercise_name=we.exercise.name,
                sets=[
                    SetOut(id=s.id, set_number=s.set_number, weight=s.weight, reps=int(s.reps))
                    for s in we.sets
                ],
            )
            for we in w.workout_exercises
        ],
    )


def _db_type() -> str:
    """Return a safe description of the DB type (no credentials)."""
    if _cloud_sql:
        return f"Cloud SQL PostgreSQL ({_cloud_sql})"
    return "SQLite"


# -----------------------------------------------------------------------------
# Day windows
# -----------------------------------------------------------------------------
def resolve_day_window(date_str: str, utc_offset_minutes: int = 0) -> Tuple[datetime, datetime]:
    """Return the half-open UTC interval [start, end) for one local calendar day.

    ``utc_offset_minutes`` uses the browser's ``getTimezoneOffset`` convention:
    minutes *behind* UTC, so UTC-5 is ``300`` and the window starts at 05:00Z.
    A wrong offset only shifts which day is shown; it is not a security boundary.
    """
    year, month, day = (int(part) for part in date_str.split("-"))
    start = datetime(year, month, day, tzinfo=timezone.utc) + timedelta(
        minutes=utc_offset_minutes or 0
    )
    return start, start + timedelta(days=1)


# -----------------------------------------------------------------------------
# Workout store: reads
# -----------------------------------------------------------------------------
def _workout_select(user_id: str):
    return (
        select(Workout)
        .where(Workout.user_id == user_id)
        .options(
            selectinload(Workout.workout_exercises).selectinload(WorkoutExercise.exercise),
            selectinload(Workout.workout_exercises).selectinload(WorkoutExercise.sets),
        )
    )


async def _load_workout(
    s: AsyncSession, user_id: str, workout_id: uuid.UUID, refresh: bool = False
) -> Optional[Workout]:
    stmt = _workout_select(user_id).where(Workout.id == workout_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await s.execute(stmt)
    return result.scalar_one_or_none()


async def _query_workouts_in_window(
    user_id: str, start_utc: datetime, end_utc: datetime
) -> List[Workout]:
    stmt = (
        _workout_select(user_id)
        .where(Workout.started_at >= start_utc, Workout.started_at < end_utc)
        .order_by(asc(Workout.started_at), asc(Workout.id))
    )
    async with async_session() as s:
        result = await s.execute(stmt)
        return list(result.scalars().all())


async def _fetch_workout(user_id: str, workout_id: uuid.UUID) -> Workout:
    async with async_session() as s:
        workout = await _load_workout(s, user_id, workout_id)
    if workout is None:
        raise NotFoundError("Workout not found")
    return workout


async def list_workouts_in_window(
    user_id: str, date_str: str, utc_offset_minutes: int = 0
) -> List[Workout]:
    """All of the user's workouts started on ``date_str`` in their local time.

    Exercise links come back ordered by position, sets by set number.
    """
    user_id = _require_user(user_id)
    try:
        start_utc, end_utc = resolve_day_window(date_str, utc_offset_minutes)
    except (ValueError, AttributeError, OverflowError) as e:
        raise ValidationError(f"Invalid date {date_str!r}, expected YYYY-MM-DD") from e
    return await _with_store(
        _query_workouts_in_window(user_id, start_utc, end_utc), "list workouts"
    )


async def get_workout(user_id: str, workout_id: Union[uuid.UUID, str]) -> Workout:
    user_id = _require_user(user_id)
    workout_id = _parse_workout_id(workout_id)
    return await _with_store(_fetch_workout(user_id, workout_id), "get workout")


# -----------------------------------------------------------------------------
# Exercise catalog
# -----------------------------------------------------------------------------
async def _query_exercises(user_id: str) -> List[Exercise]:
    async with async_session() as s:
        result = await s.execute(
            select(Exercise)
            .where(Exercise.user_id == user_id)
            .order_by(asc(Exercise.name_key), asc(Exercise.id))
        )
        return list(result.scalars().all())


async def list_exercises(user_id: str) -> List[Exercise]:
    user_id = _require_user(user_id)
    return await _with_store(_query_exercises(user_id), "list exercises")


async def _resolve_exercise_id(
    s: AsyncSession,
    user_id: str,
    entry: ExerciseEntryIn,
    resolved: Dict[str, uuid.UUID],
) -> uuid.UUID:
    """Map an entry to a catalog id, creating the exercise on first use of a name."""
    if entry.exercise_id is not None:
        owned = await s.scalar(
            select(Exercise.id).where(
                Exercise.id == entry.exercise_id, Exercise.user_id == user_id
            )
        )
        if owned is None:
            log.warning(f"Rejected unknown exercise id {entry.exercise_id} for user {user_id}")
            raise ValidationError(f"Unknown exercise id {entry.exercise_id}")
        return owned

    key = _name_key(entry.exercise_name)
    if key in resolved:
        return resolved[key]
    exercise = await s.scalar(
        select(Exercise).where(Exercise.user_id == user_id, Exercise.name_key == key)
    )
    if exercise is None:
        exercise = Exercise(user_id=user_id, name=entry.exercise_name, name_key=key)
        s.add(exercise)
        await s.flush()
        log.info(f"Added exercise {exercise.name!r} to catalog of user {user_id}")
    resolved[key] = exercise.id
    return exercise.id


# -----------------------------------------------------------------------------
# Workout store: mutations
# Every mutation runs in one transaction; an exception anywhere rolls it all back.
# -----------------------------------------------------------------------------
async def _build_links(
    s: AsyncSession, user_id: str, exercises: List[ExerciseEntryIn]
) -> List[WorkoutExercise]:
    resolved: Dict[str, uuid.UUID] = {}
    links: List[WorkoutExercise] = []
    for position, entry in enumerate(exercises, start=1):
        exercise_id = await _resolve_exercise_id(s, user_id, entry, resolved)
        links.append(
            WorkoutExercise(
                exercise_id=exercise_id,
                order=position,
                sets=[
                    WorkoutSet(set_number=n, weight=st.weight, reps=st.reps)
                    for n, st in enumerate(entry.sets, start=1)
                ],
            )
        )
    return links


async def _insert_workout(user_id: str, payload: WorkoutPayload) -> Workout:
    async with async_session() as s:
        async with s.begin():
            links = await _build_links(s, user_id, payload.exercises)
            workout = Workout(
                user_id=user_id,
                name=payload.name,
                started_at=payload.started_at,
                completed_at=payload.completed_at,
                workout_exercises=links,
            )
            s.add(workout)
            await s.flush()
            created = await _load_workout(s, user_id, workout.id, refresh=True)
    log.info(
        f"Created workout {created.id} for user {user_id} "
        f"with {len(created.workout_exercises)} exercise(s)"
    )
    return created


async def _replace_workout(
    user_id: str, workout_id: uuid.UUID, payload: WorkoutPayload
) -> None:
    async with async_session() as s:
        async with s.begin():
            workout = await _load_workout(s, user_id, workout_id)
            if workout is None:
                raise NotFoundError("Workout not found")
            workout.name = payload.name
            workout.started_at = payload.started_at
            workout.completed_at = payload.completed_at
            # Old links must be gone before new ones reuse their positions.
            workout.workout_exercises.clear()
            await s.flush()
            workout.workout_exercises.extend(
                await _build_links(s, user_id, payload.exercises)
            )
    log.info(f"Updated workout {workout_id} for user {user_id}")


async def _remove_workout(user_id: str, workout_id: uuid.UUID) -> None:
    async with async_session() as s:
        async with s.begin():
            workout = await _load_workout(s, user_id, workout_id)
            if workout is None:
                raise NotFoundError("Workout not found")
            await s.delete(workout)
    log.info(f"Deleted workout {workout_id} for user {user_id}")


async def _retry_catalog_conflict(op, *args):
    """Run a mutation, replaying it once if a concurrent one added the same exercise.

    Two requests naming a new exercise can both miss it in the catalog; the
    second insert then trips the unique name constraint. The first attempt is
    fully rolled back, and the replay finds the committed row.
    """
    try:
        return await op(*args)
    except IntegrityError as e:
        log.warning(f"Catalog conflict during {op.__name__}, retrying: {e.orig}")
        return await op(*args)


async def create_workout(user_id: str, payload: Union[WorkoutPayload, dict]) -> Workout:
    """Validate ``payload`` and persist it as a new workout.

    Exercises named rather than referenced by id are looked up case-insensitively
    in the user's catalog and created when missing. Positions and set numbers
    come from array order.
    """
    user_id = _require_user(user_id)
    payload = _parse_payload(payload)
    return await _with_store(
        _retry_catalog_conflict(_insert_workout, user_id, payload), "create workout"
    )


async def update_workout(
    user_id: str, workout_id: Union[uuid.UUID, str], payload: Union[WorkoutPayload, dict]
) -> None:
    """Overwrite a workout: fields in place, exercises and sets rebuilt from scratch."""
    user_id = _require_user(user_id)
    workout_id = _parse_workout_id(workout_id)
    payload = _parse_payload(payload)
    await _with_store(
        _retry_catalog_conflict(_replace_workout, user_id, workout_id, payload),
        "update workout",
    )


async def delete_workout(user_id: str, workout_id: Union[uuid.UUID, str]) -> None:
    user_id = _require_user(user_id)
    workout_id = _parse_workout_id(workout_id)
    await _with_store(_remove_workout(user_id, workout_id), "delete workout")


# -----------------------------------------------------------------------------
# User preferences
# -----------------------------------------------------------------------------
async def _fetch_preferences(user_id: str) -> UserPreferences:
    async with async_session() as s:
        prefs = await s.scalar(
            select(UserPreferences).where(UserPreferences.user_id == user_id)
        )
    if prefs is None:
        return UserPreferences(user_id=user_id, default_unit=DEFAULT_UNIT)
    return prefs


async def _upsert_default_unit(user_id: str, unit: str) -> UserPreferences:
    async with async_session() as s:
        async with s.begin():
            prefs = await s.scalar(
                select(UserPreferences).where(UserPreferences.user_id == user_id)
            )
            if prefs is None:
                prefs = UserPreferences(user_id=user_id, default_unit=unit)
                s.add(prefs)
            else:
                prefs.default_unit = unit
    return prefs


async def get_preferences(user_id: str) -> UserPreferences:
    """Stored preferences, or unsaved defaults when the user never set any."""
    user_id = _require_user(user_id)
    return await _with_store(_fetch_preferences(user_id), "get preferences")


async def set_default_unit(user_id: str, unit: str) -> UserPreferences:
    user_id = _require_user(user_id)
    unit = (unit or "").strip().lower()
    if unit not in ALLOWED_UNITS:
        raise ValidationError(f"unit must be one of {sorted(ALLOWED_UNITS)}")
    return await _with_store(_upsert_default_unit(user_id, unit), "set default unit")


# -----------------------------------------------------------------------------
# App (with lifespan)
# -----------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    await _init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="Workout Log API",
    description="Personal workout log: workouts made of ordered exercises and weight x reps sets.",
    version="1.0.0",
    lifespan=lifespan,
)


# -----------------------------------------------------------------------------
# Exception handlers
# -----------------------------------------------------------------------------
@app.exception_handler(WorkoutError)
async def _workout_error_handler(request: Request, exc: WorkoutError):
    content: Dict[str, object] = {"detail": str(exc)}
    if isinstance(exc, ValidationError) and exc.errors:
        content["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=content)


# Global exception handler: log full traceback so the cause shows up in logs
@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exc()
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}\n{tb}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error: {type(exc).__name__}"},
    )


# -----------------------------------------------------------------------------
# Rate limiting middleware (simple in-memory, per-IP)
# -----------------------------------------------------------------------------
_rate_limit_store: Dict[str, List[float]] = defaultdict(list)
RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "60"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))  # seconds



def _prune_rate_limit_store(window_start: float) -> None:
    """Forget clients with no request inside the current window."""
    stale = [ip for ip, hits in _rate_limit_store.items() if not hits or hits[-1] <= window_start]
    for ip in stale:
        del _rate_limit_store[ip]


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()
    window_start = now - RATE_LIMIT_WINDOW

    _prune_rate_limit_store(window_start)
    _rate_limit_store[client_ip] = [
        t for t in _rate_limit_store[client_ip] if t > window_start
    ]

    if len(_rate_limit_store[client_ip]) >= RATE_LIMIT_REQUESTS:
        return Response(
            content='{"detail":"Rate limit exceeded. Try again later."}',
            status_code=429,
            media_type="application/json",
        )

    _rate_limit_store[client_ip].append(now)
    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(RATE_LIMIT_REQUESTS)
    response.headers["X-RateLimit-Remaining"] = str(
        RATE_LIMIT_REQUESTS - len(_rate_limit_store[client_ip])
    )
    return response


def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Identity is established upstream and forwarded in X-User-Id."""
    return _require_user(x_user_id)


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
    except Exception as e:
        log.error(f"Health check DB query failed: {e}")
    return HealthOut(
        ok=db_connected,
        db_connected=db_connected,
        db_type=_db_type(),
        timestamp=_utcnow().isoformat(),
    )


@app.get("/", response_model=GenericResponse)
async def root() -> GenericResponse:
    return GenericResponse(message="Workout Log API v1 is running")


# -----------------------------------------------------------------------------
# Workouts
# -----------------------------------------------------------------------------
@app.get("/workouts", response_model=List[WorkoutOut])
async def workouts_for_date(
    date: str = Query(..., description="YYYY-MM-DD, the caller's local calendar day"),
    utc_offset: int = Query(
        0, ge=-1440, le=1440, description="minutes behind UTC, as getTimezoneOffset()"
    ),
    user_id: str = Depends(current_user),
) -> List[WorkoutOut]:
    if not _DATE_RE.match(date):
        raise ValidationError("date must be YYYY-MM-DD format")
    workouts = await list_workouts_in_window(user_id, date, utc_offset)
    return [_workout_to_out(w) for w in workouts]


@app.get("/workouts/{workout_id}", response_model=WorkoutOut)
async def read_workout(
    workout_id: uuid.UUID = FPath(...), user_id: str = Depends(current_user)
) -> WorkoutOut:
    return _workout_to_out(await get_workout(user_id, workout_id))


@app.post("/workouts", response_model=WorkoutOut, status_code=201)
async def add_workout(
    payload: WorkoutPayload = Body(...), user_id: str = Depends(current_user)
) -> WorkoutOut:
    return _workout_to_out(await create_workout(user_id, payload))


@app.put("/workouts/{workout_id}", response_model=GenericResponse)
async def edit_workout(
    workout_id: uuid.UUID = FPath(...),
    payload: WorkoutPayload = Body(...),
    user_id: str = Depends(current_user),
) -> GenericResponse:
    await update_workout(user_id, workout_id, payload)
    return GenericResponse(message="Workout updated")


@app.delete("/workouts/{workout_id}", response_model=GenericResponse)
async def remove_workout(
    workout_id: uuid.UUID = FPath(...), user_id: str = Depends(current_user)
) -> GenericResponse:
    await delete_workout(user_id, workout_id)
    return GenericResponse(message="Workout deleted")


# -----------------------------------------------------------------------------
# Exercises & preferences
# -----------------------------------------------------------------------------
@app.get("/exercises", response_model=List[ExerciseOut])
async def exercises(user_id: str = Depends(current_user)) -> List[ExerciseOut]:
    return [ExerciseOut(id=e.id, name=e.name) for e in await list_exercises(user_id)]


@app.get("/preferences", response_model=PreferencesOut)
async def read_preferences(user_id: str = Depends(current_user)) -> PreferencesOut:
    prefs = await get_preferences(user_id)
    return PreferencesOut(default_unit=prefs.default_unit)


@app.put("/preferences", response_model=PreferencesOut)
async def edit_preferences(
    body: PreferencesIn = Body(...), user_id: str = Depends(current_user)
) -> PreferencesOut:
    prefs = await set_default_unit(user_id, body.default_unit)
    return PreferencesOut(default_unit=prefs.default_unit)

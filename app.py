# app.py
# =============================================================================
# Workout Tracker API (FastAPI + SQLAlchemy 2.x async, Pydantic v2)
# Templates, exercises, plans, sessions, logged sets, weekly calendar and a
# TSV plan importer. Every multi-statement write runs in one transaction.
# =============================================================================

from __future__ import annotations

import csv
import io
import os
import logging
import math
import time
import traceback
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path as OSPath
from typing import AsyncGenerator, Dict, List, Literal, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi import Path as FPath
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import (
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    and_,
    asc,
    delete,
    desc,
    func,
    select,
    text,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from starlette.exceptions import HTTPException as StarletteHTTPException

from plan_tsv import PlanTsvError, clean_name, parse_plan_tsv

load_dotenv()

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
log = logging.getLogger("workout-tracker-api")

# -----------------------------------------------------------------------------
# DB connection
# Priority:
#   1) DATABASE_URL (postgres:// or postgresql:// -> asyncpg; sqlite URLs as-is)
#   2) env WT_DB (path to a SQLite file)
#   3) ./workout_tracker.db
# -----------------------------------------------------------------------------
def _async_database_url(url: str) -> str:
    """Rewrite a libpq-style Postgres URL for SQLAlchemy + asyncpg.

    asyncpg takes ssl= instead of sslmode= and rejects channel_binding.
    """
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://"):]
    if not url.startswith("postgresql+asyncpg://"):
        return url
    parts = urlsplit(url)
    query = [
        ("ssl" if k == "sslmode" else k, v)
        for k, v in parse_qsl(parts.query)
        if k != "channel_binding"
    ]
    return urlunsplit(parts._replace(query=urlencode(query)))


_database_url = os.getenv("DATABASE_URL")

if _database_url and not _database_url.startswith("sqlite"):
    DB_URL = _async_database_url(_database_url)
    engine = create_async_engine(
        DB_URL, echo=False, pool_pre_ping=True,
        pool_size=10, max_overflow=20, pool_timeout=30,
    )
    log.info(f"Using PostgreSQL (async): {make_url(DB_URL).render_as_string(hide_password=True)}")
else:
    if _database_url:
        DB_URL = _database_url
    else:
        DB_PATH = os.getenv("WT_DB") or str((OSPath(__file__).parent / "workout_tracker.db").resolve())
        DB_URL = f"sqlite+aiosqlite:///{DB_PATH}"
    engine = create_async_engine(DB_URL, echo=False)
    log.info(f"Using SQLite (async): {DB_URL}")

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

CORS_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ORIGIN", "http://localhost:5173").split(",") if o.strip()
]
PORT = int(os.getenv("PORT", "3001"))


# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


class Exercise(Base):
    __tablename__ = "exercises"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WorkoutTemplate(Base):
    """A reusable named list of exercises (Lift A, Lift B, ...)."""
    __tablename__ = "workout_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WorkoutTemplateExercise(Base):
    __tablename__ = "workout_template_exercises"
    __table_args__ = (UniqueConstraint("workout_template_id", "exercise_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workout_template_id: Mapped[int] = mapped_column(ForeignKey("workout_templates.id"), nullable=False)
    exercise_id: Mapped[int] = mapped_column(ForeignKey("exercises.id"), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False)        # 1..N, contiguous
    target_sets: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    target_reps: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # "8", "8-12", "AMRAP"
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class WorkoutPlan(Base):
    """A template instantiation with its own target overrides."""
    __tablename__ = "workout_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    workout_template_id: Mapped[int] = mapped_column(ForeignKey("workout_templates.id"), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WorkoutPlanExercise(Base):
    __tablename__ = "workout_plan_exercises"
    __table_args__ = (UniqueConstraint("workout_plan_id", "exercise_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workout_plan_id: Mapped[int] = mapped_column(ForeignKey("workout_plans.id"), nullable=False)
    exercise_id: Mapped[int] = mapped_column(ForeignKey("exercises.id"), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False)
    target_sets: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    target_reps: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    target_weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class WorkoutSession(Base):
    __tablename__ = "workout_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workout_template_id: Mapped[Optional[int]] = mapped_column(ForeignKey("workout_templates.id"), nullable=True)
    # NULLed when the plan is deleted; the session and its sets survive
    workout_plan_id: Mapped[Optional[int]] = mapped_column(ForeignKey("workout_plans.id"), nullable=True)
    performed_on: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ExerciseSet(Base):
    __tablename__ = "exercise_sets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("workout_sessions.id"), nullable=False)
    exercise_id: Mapped[int] = mapped_column(ForeignKey("exercises.id"), nullable=False)
    set_number: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    reps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rpe: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WorkoutCalendar(Base):
    __tablename__ = "workout_calendar"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    planned_on: Mapped[date] = mapped_column(Date, nullable=False)
    workout_plan_id: Mapped[int] = mapped_column(ForeignKey("workout_plans.id"), nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String, nullable=True)   # display override
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


# -----------------------------------------------------------------------------
# Startup: create tables & run migrations
# -----------------------------------------------------------------------------
# Columns added after the first schema went live.
_COLUMN_MIGRATIONS = [
    ("workout_sessions", "workout_plan_id",
     "ALTER TABLE workout_sessions ADD COLUMN workout_plan_id INTEGER REFERENCES workout_plans(id)"),
    ("workout_sessions", "notes", "ALTER TABLE workout_sessions ADD COLUMN notes VARCHAR"),
    ("workout_plan_exercises", "target_weight", "ALTER TABLE workout_plan_exercises ADD COLUMN target_weight FLOAT"),
    ("workout_calendar", "label", "ALTER TABLE workout_calendar ADD COLUMN label VARCHAR"),
]


async def _init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    # Each column uses its own transaction so a failed SELECT doesn't abort
    # the ALTER TABLE in PostgreSQL (PG aborts entire txn on any error).
    for table, col_name, col_sql in _COLUMN_MIGRATIONS:
        try:
            async with engine.begin() as conn:
                await conn.execute(text(f"SELECT {col_name} FROM {table} LIMIT 1"))
        except Exception:
            try:
                async with engine.begin() as conn:
                    await conn.execute(text(col_sql))
                    log.info(f"Added {col_name} column to {table} table")
            except Exception as e:
                log.warning(f"Migration for {col_name} ({table}): {e}")


# -----------------------------------------------------------------------------
# Pydantic schemas
# -----------------------------------------------------------------------------
def _required_name(v: str) -> str:
    v = clean_name(v)
    if not v:
        raise ValueError("name cannot be empty")
    return v


def _blank_to_none(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    return v or None


def _reps_to_str(v):
    # clients send target_reps as 8 or "8-12"
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(int(v)) if float(v).is_integer() else str(v)
    return v


class HealthOut(BaseModel):
    ok: bool = True
    db_connected: bool = True
    db_type: str
    now: str


class GenericResponse(BaseModel):
    message: str


class OkOut(BaseModel):
    ok: bool = True


class ExerciseIn(BaseModel):
    name: str
    notes: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _required_name(v)

    @field_validator("notes")
    @classmethod
    def clean_notes(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)


class ExerciseOut(BaseModel):
    id: int
    name: str
    notes: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class WorkoutIn(BaseModel):
    name: str
    notes: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _required_name(v)

    @field_validator("notes")
    @classmethod
    def clean_notes(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)


class WorkoutSummaryOut(BaseModel):
    id: int
    name: str
    model_config = ConfigDict(from_attributes=True)


class WorkoutOut(BaseModel):
    id: int
    name: str
    notes: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class TemplateExerciseOut(BaseModel):
    """An exercise as it appears in the runner: id is the exercise id."""
    id: int
    name: str
    sort_order: int
    target_sets: Optional[int] = None
    target_reps: Optional[str] = None
    notes: Optional[str] = None


class PlanExerciseOut(TemplateExerciseOut):
    target_weight: Optional[float] = None


class WorkoutDetailOut(BaseModel):
    workout: WorkoutOut
    exercises: List[TemplateExerciseOut] = Field(default_factory=list)


class LinkUpdate(BaseModel):
    target_sets: Optional[int] = Field(None, ge=1)
    target_reps: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("target_reps", mode="before")
    @classmethod
    def reps_as_text(cls, v):
        return _reps_to_str(v)

    @field_validator("target_reps", "notes")
    @classmethod
    def clean_text(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)


class LinkIn(LinkUpdate):
    exercise_id: int = Field(..., ge=1)


class PlanLinkUpdate(LinkUpdate):
    target_weight: Optional[float] = Field(None, ge=0)


class PlanLinkIn(PlanLinkUpdate):
    exercise_id: int = Field(..., ge=1)


class MoveIn(BaseModel):
    direction: Literal["up", "down"]


class MoveOut(BaseModel):
    ok: bool = True
    moved: bool
    sort_order: int


class PlanIn(BaseModel):
    workout_template_id: int = Field(..., ge=1)
    name: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("name")
    @classmethod
    def clean_plan_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return clean_name(v) or None

    @field_validator("notes")
    @classmethod
    def clean_notes(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)


class PlanUpdate(BaseModel):
    name: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        return _required_name(v) if v is not None else None

    @field_validator("notes")
    @classmethod
    def clean_notes(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)


class PlanOut(BaseModel):
    id: int
    name: str
    workout_template_id: int
    template_name: Optional[str] = None
    notes: Optional[str] = None


class PlanDetailOut(BaseModel):
    plan: PlanOut
    exercises: List[PlanExerciseOut] = Field(default_factory=list)


class SessionIn(BaseModel):
    workout_template_id: Optional[int] = Field(None, ge=1)
    workout_plan_id: Optional[int] = Field(None, ge=1)
    performed_on: Optional[date] = None
    notes: Optional[str] = None

    @field_validator("notes")
    @classmethod
    def clean_notes(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)


class SessionCreatedOut(BaseModel):
    session_id: int


class SessionOut(BaseModel):
    id: int
    performed_on: date
    workout_template_id: Optional[int] = None
    workout_plan_id: Optional[int] = None
    template_name: Optional[str] = None
    plan_name: Optional[str] = None
    notes: Optional[str] = None
    set_count: int = 0


class SetValues(BaseModel):
    """One logged set. Empty fields stay NULL."""
    set_number: int = Field(..., ge=1)
    weight: Optional[float] = Field(None, ge=0)
    reps: Optional[int] = Field(None, ge=0)
    rpe: Optional[float] = Field(None, ge=1, le=10)


class SetIn(SetValues):
    session_id: int = Field(..., ge=1)
    exercise_id: int = Field(..., ge=1)


class SetCreatedOut(BaseModel):
    ok: bool = True
    id: int


class BulkSetsIn(BaseModel):
    session_id: int = Field(..., ge=1)
    exercise_id: int = Field(..., ge=1)
    sets: List[SetValues]


class BulkSetsOut(BaseModel):
    ok: bool = True
    replaced: bool = True
    inserted: int


class SetOut(BaseModel):
    id: int
    exercise_id: int
    set_number: int
    weight: Optional[float] = None
    reps: Optional[int] = None
    rpe: Optional[float] = None
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class HistoryRowOut(BaseModel):
    performed_on: date
    workout_name: Optional[str] = None
    plan_name: Optional[str] = None
    template_name: Optional[str] = None
    exercise_id: int
    exercise_name: str
    set_number: int
    weight: Optional[float] = None
    reps: Optional[int] = None
    rpe: Optional[float] = None
    target_sets: Optional[int] = None
    target_reps: Optional[str] = None
    target_weight: Optional[float] = None
    session_id: int


class HistoryOut(BaseModel):
    rows: List[HistoryRowOut] = Field(default_factory=list)


class ExportOut(BaseModel):
    filename: str
    rows: int
    content: str


class CalendarIn(BaseModel):
    planned_on: date
    workout_plan_id: int = Field(..., ge=1)
    label: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("label", "notes")
    @classmethod
    def clean_text(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)


class CalendarUpdate(BaseModel):
    planned_on: Optional[date] = None
    label: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("label", "notes")
    @classmethod
    def clean_text(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)


class CalendarItemOut(BaseModel):
    id: int
    planned_on: date
    workout_plan_id: int
    label: Optional[str] = None
    notes: Optional[str] = None
    plan_name: Optional[str] = None
    workout_name: Optional[str] = None


class CalendarWeekOut(BaseModel):
    week_start: date
    week_end: date
    items: List[CalendarItemOut] = Field(default_factory=list)


class PlanImportIn(BaseModel):
    tsv: str
    dry_run: bool = False
    mode: Literal["create", "replace"] = "create"


class ImportedPlanOut(BaseModel):
    name: str
    base_template: str
    action: Literal["create", "replace"]
    exercises: int
    plan_id: Optional[int] = None


class PlanImportOut(BaseModel):
    ok: bool = True
    dry_run: bool
    mode: str
    rows: int
    plans: List[ImportedPlanOut] = Field(default_factory=list)
    new_exercises: List[str] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# App
# -----------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    await _init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="Workout Tracker API",
    description="Templates, plans, guided sessions, logged sets and a weekly calendar.",
    version="1.4.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------------------------------------------------------
# Error handlers
# Every error body carries `detail` plus a one-line `error` string for
# clients that only display text.
# -----------------------------------------------------------------------------
def _error_text(detail) -> str:
    if isinstance(detail, dict):
        message = str(detail.get("message", "Request failed"))
        errors = detail.get("errors") or []
        return f"{message}: {'; '.join(str(e) for e in errors)}" if errors else message
    if isinstance(detail, list):
        parts = []
        for err in detail:
            where = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            parts.append(f"{where}: {err.get('msg')}" if where else str(err.get("msg")))
        return "; ".join(parts)
    return str(detail)


def _error_response(status_code: int, detail, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "error": _error_text(detail)},
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(exc.status_code, exc.detail, getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(400, jsonable_encoder(exc.errors()))


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exc()
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}\n{tb}")
    return _error_response(500, f"{type(exc).__name__}: {exc}")


# -----------------------------------------------------------------------------
# Rate limiting middleware (in-memory, per-IP sliding window)
# -----------------------------------------------------------------------------
_rate_limit_store: Dict[str, List[float]] = defaultdict(list)
RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "300"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))
# uptime probes poll this and must never be throttled
RATE_LIMIT_EXEMPT_PATHS = {"/api/health"}


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if request.url.path in RATE_LIMIT_EXEMPT_PATHS:
        return await call_next(request)
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()
    window_start = now - RATE_LIMIT_WINDOW
    hits = [t for t in _rate_limit_store[client_ip] if t > window_start]
    _rate_limit_store[client_ip] = hits
    if len(hits) >= RATE_LIMIT_REQUESTS:
        oldest = hits[0] if hits else now
        retry_after = max(1, math.ceil(oldest + RATE_LIMIT_WINDOW - now))
        log.warning(f"Rate limit hit for {client_ip} on {request.url.path}")
        return _error_response(
            429,
            "Rate limit exceeded. Try again later.",
            {"Retry-After": str(retry_after), "X-RateLimit-Limit": str(RATE_LIMIT_REQUESTS),
             "X-RateLimit-Remaining": "0"},
        )
    hits.append(now)
    # Prune stale IPs to prevent memory leak
    if len(_rate_limit_store) > 1000:
        stale = [ip for ip, ts in _rate_limit_store.items()
                 if not ts or ts[-1] < window_start]
        for ip in stale:
            del _rate_limit_store[ip]
    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(RATE_LIMIT_REQUESTS)
    response.headers["X-RateLimit-Remaining"] = str(max(0, RATE_LIMIT_REQUESTS - len(hits)))
    return response


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
_LIKE_ESCAPE_CHAR = "!"  # Use ! instead of \ to avoid PG backslash issues


def _escape_like(s: str) -> str:
    return s.replace("!", "!!").replace("%", "!%").replace("_", "!_")


def _safe_like(column, term: str):
    escaped = _escape_like(term.strip().lower())
    pattern = f"%{escaped}%"
    return func.lower(column).like(pattern, escape=_LIKE_ESCAPE_CHAR)


def _db_type() -> str:
    if engine.dialect.name == "postgresql":
        return "PostgreSQL"
    return "SQLite"


def week_bounds(anchor: date) -> Tuple[date, date]:
    """Monday and Sunday of the ISO week containing anchor."""
    monday = anchor - timedelta(days=anchor.weekday())
    return monday, monday + timedelta(days=6)


def _parse_date_param(value: Optional[str], name: str) -> Optional[date]:
    if value is None or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise HTTPException(400, f"{name} must be a YYYY-MM-DD date")


@asynccontextmanager
async def _transaction() -> AsyncGenerator[AsyncSession, None]:
    """Session whose work commits on clean exit and rolls back on any error."""
    async with async_session() as s:
        try:
            yield s
            await s.commit()
        except Exception:
            await s.rollback()
            raise


async def _get_or_404(s: AsyncSession, model, obj_id: int, what: str):
    obj = await s.get(model, obj_id)
    if obj is None:
        raise HTTPException(404, f"{what} not found")
    return obj


def _lowered(names) -> list:
    # folded by the database, same as the column side of the comparison
    return [func.lower(n) for n in sorted(set(names))]


async def _name_taken(s: AsyncSession, model, name: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(model.id).where(func.lower(model.name) == func.lower(name))
    if exclude_id is not None:
        stmt = stmt.where(model.id != exclude_id)
    result = await s.execute(stmt.limit(1))
    return result.first() is not None


# --- template/plan exercise links --------------------------------------------
# Template and plan links share the same ordering rules; the helpers take the
# link model plus the column pointing at the parent row.

async def _ordered_links(s: AsyncSession, link_model, parent_col, parent_id: int) -> list:
    result = await s.execute(
        select(link_model)
        .where(parent_col == parent_id)
        .order_by(asc(link_model.sort_order), asc(link_model.id))
    )
    return list(result.scalars().all())


def _renumber(links: list) -> None:
    for idx, link in enumerate(links, start=1):
        if link.sort_order != idx:
            link.sort_order = idx


async def _add_link(s: AsyncSession, link_model, parent_col, parent_id: int, body: BaseModel) -> None:
    await _get_or_404(s, Exercise, body.exercise_id, "Exercise")
    links = await _ordered_links(s, link_model, parent_col, parent_id)
    if any(link.exercise_id == body.exercise_id for link in links):
        raise HTTPException(409, "Exercise is already part of this workout")
    _renumber(links)
    s.add(link_model(
        **{parent_col.key: parent_id},
        sort_order=len(links) + 1,
        **body.model_dump(),
    ))
    await s.flush()


async def _find_link(s: AsyncSession, link_model, parent_col, parent_id: int, exercise_id: int):
    result = await s.execute(
        select(link_model).where(parent_col == parent_id, link_model.exercise_id == exercise_id)
    )
    link = result.scalar()
    if link is None:
        raise HTTPException(404, "Exercise is not part of this workout")
    return link


async def _update_link(
    s: AsyncSession, link_model, parent_col, parent_id: int, exercise_id: int, body: BaseModel
) -> None:
    link = await _find_link(s, link_model, parent_col, parent_id, exercise_id)
    for k, v in body.model_dump(exclude_unset=True).items():
        setattr(link, k, v)
    await s.flush()


async def _delete_link(s: AsyncSession, link_model, parent_col, parent_id: int, exercise_id: int) -> None:
    link = await _find_link(s, link_model, parent_col, parent_id, exercise_id)
    await s.delete(link)
    await s.flush()
    _renumber(await _ordered_links(s, link_model, parent_col, parent_id))
    await s.flush()


async def _move_link(
    s: AsyncSession, link_model, parent_col, parent_id: int, exercise_id: int, direction: str
) -> MoveOut:
    links = await _ordered_links(s, link_model, parent_col, parent_id)
    idx = next((i for i, link in enumerate(links) if link.exercise_id == exercise_id), None)
    if idx is None:
        raise HTTPException(404, "Exercise is not part of this workout")
    _renumber(links)
    other = idx - 1 if direction == "up" else idx + 1
    if other < 0 or other >= len(links):
        return MoveOut(moved=False, sort_order=links[idx].sort_order)
    a, b = links[idx], links[other]
    a.sort_order, b.sort_order = b.sort_order, a.sort_order
    await s.flush()
    return MoveOut(moved=True, sort_order=a.sort_order)


async def _template_exercises(s: AsyncSession, template_id: int) -> List[TemplateExerciseOut]:
    result = await s.execute(
        select(WorkoutTemplateExercise, Exercise.name)
        .join(Exercise, Exercise.id == WorkoutTemplateExercise.exercise_id)
        .where(WorkoutTemplateExercise.workout_template_id == template_id)
        .order_by(asc(WorkoutTemplateExercise.sort_order), asc(WorkoutTemplateExercise.id))
    )
    return [
        TemplateExerciseOut(
            id=link.exercise_id, name=name, sort_order=link.sort_order,
            target_sets=link.target_sets, target_reps=link.target_reps, notes=link.notes,
        )
        for link, name in result.all()
    ]


async def _plan_exercises(s: AsyncSession, plan_id: int) -> List[PlanExerciseOut]:
    result = await s.execute(
        select(WorkoutPlanExercise, Exercise.name)
        .join(Exercise, Exercise.id == WorkoutPlanExercise.exercise_id)
        .where(WorkoutPlanExercise.workout_plan_id == plan_id)
        .order_by(asc(WorkoutPlanExercise.sort_order), asc(WorkoutPlanExercise.id))
    )
    return [
        PlanExerciseOut(
            id=link.exercise_id, name=name, sort_order=link.sort_order,
            target_sets=link.target_sets, target_reps=link.target_reps,
            target_weight=link.target_weight, notes=link.notes,
        )
        for link, name in result.all()
    ]


async def _workout_detail(s: AsyncSession, template: WorkoutTemplate) -> WorkoutDetailOut:
    return WorkoutDetailOut(
        workout=WorkoutOut.model_validate(template),
        exercises=await _template_exercises(s, template.id),
    )


async def _plan_out(s: AsyncSession, plan: WorkoutPlan) -> PlanOut:
    template = await s.get(WorkoutTemplate, plan.workout_template_id)
    return PlanOut(
        id=plan.id, name=plan.name, workout_template_id=plan.workout_template_id,
        template_name=template.name if template else None, notes=plan.notes,
    )


async def _plan_detail(s: AsyncSession, plan: WorkoutPlan) -> PlanDetailOut:
    return PlanDetailOut(plan=await _plan_out(s, plan), exercises=await _plan_exercises(s, plan.id))


async def _copy_template_links(s: AsyncSession, template_id: int, plan_id: int) -> int:
    links = await _ordered_links(
        s, WorkoutTemplateExercise, WorkoutTemplateExercise.workout_template_id, template_id
    )
    for idx, link in enumerate(links, start=1):
        s.add(WorkoutPlanExercise(
            workout_plan_id=plan_id,
            exercise_id=link.exercise_id,
            sort_order=idx,
            target_sets=link.target_sets,
            target_reps=link.target_reps,
            notes=link.notes,
        ))
    return len(links)


async def _calendar_items(s: AsyncSession, *conditions) -> List[CalendarItemOut]:
    result = await s.execute(
        select(WorkoutCalendar, WorkoutPlan.name, WorkoutTemplate.name)
        .join(WorkoutPlan, WorkoutPlan.id == WorkoutCalendar.workout_plan_id)
        .outerjoin(WorkoutTemplate, WorkoutTemplate.id == WorkoutPlan.workout_template_id)
        .where(*conditions)
        .order_by(asc(WorkoutCalendar.planned_on), asc(WorkoutCalendar.id))
    )
    return [
        CalendarItemOut(
            id=item.id, planned_on=item.planned_on, workout_plan_id=item.workout_plan_id,
            label=item.label, notes=item.notes, plan_name=plan_name, workout_name=template_name,
        )
        for item, plan_name, template_name in result.all()
    ]


async def _history_rows(
    s: AsyncSession, start: Optional[date], end: Optional[date], limit: int
) -> List[HistoryRowOut]:
    """One row per logged set, with the targets the set was performed against.

    Targets come from the plan link when the session ran a plan, otherwise
    from the template link.
    """
    stmt = (
        select(
            WorkoutSession.performed_on,
            WorkoutSession.workout_plan_id,
            WorkoutTemplate.name.label("template_name"),
            WorkoutPlan.name.label("plan_name"),
            Exercise.id.label("exercise_id"),
            Exercise.name.label("exercise_name"),
            ExerciseSet.set_number,
            ExerciseSet.weight,
            ExerciseSet.reps,
            ExerciseSet.rpe,
            ExerciseSet.session_id,
            WorkoutPlanExercise.target_sets.label("plan_target_sets"),
            WorkoutPlanExercise.target_reps.label("plan_target_reps"),
            WorkoutPlanExercise.target_weight.label("plan_target_weight"),
            WorkoutTemplateExercise.target_sets.label("template_target_sets"),
            WorkoutTemplateExercise.target_reps.label("template_target_reps"),
        )
        .select_from(ExerciseSet)
        .join(WorkoutSession, WorkoutSession.id == ExerciseSet.session_id)
        .join(Exercise, Exercise.id == ExerciseSet.exercise_id)
        .outerjoin(WorkoutTemplate, WorkoutTemplate.id == WorkoutSession.workout_template_id)
        .outerjoin(WorkoutPlan, WorkoutPlan.id == WorkoutSession.workout_plan_id)
        .outerjoin(
            WorkoutPlanExercise,
            and_(
                WorkoutPlanExercise.workout_plan_id == WorkoutSession.workout_plan_id,
                WorkoutPlanExercise.exercise_id == ExerciseSet.exercise_id,
            ),
        )
        .outerjoin(
            WorkoutTemplateExercise,
            and_(
                WorkoutTemplateExercise.workout_template_id == WorkoutSession.workout_template_id,
                WorkoutTemplateExercise.exercise_id == ExerciseSet.exercise_id,
            ),
        )
    )
    if start:
        stmt = stmt.where(WorkoutSession.performed_on >= start)
    if end:
        stmt = stmt.where(WorkoutSession.performed_on <= end)
    stmt = stmt.order_by(
        desc(WorkoutSession.performed_on),
        desc(ExerciseSet.session_id),
        asc(func.coalesce(WorkoutPlanExercise.sort_order, WorkoutTemplateExercise.sort_order)),
        asc(ExerciseSet.exercise_id),
        asc(ExerciseSet.set_number),
    ).limit(limit)

    result = await s.execute(stmt)
    rows: List[HistoryRowOut] = []
    for r in result.all():
        from_plan = r.workout_plan_id is not None
        rows.append(HistoryRowOut(
            performed_on=r.performed_on,
            workout_name=r.plan_name or r.template_name,
            plan_name=r.plan_name,
            template_name=r.template_name,
            exercise_id=r.exercise_id,
            exercise_name=r.exercise_name,
            set_number=r.set_number,
            weight=r.weight,
            reps=r.reps,
            rpe=r.rpe,
            target_sets=r.plan_target_sets if from_plan else r.template_target_sets,
            target_reps=r.plan_target_reps if from_plan else r.template_target_reps,
            target_weight=r.plan_target_weight if from_plan else None,
            session_id=r.session_id,
        ))
    return rows


# -----------------------------------------------------------------------------
# Health / Root
# -----------------------------------------------------------------------------
@app.get("/api/health", response_model=HealthOut)
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
        now=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/", response_model=GenericResponse)
async def root() -> GenericResponse:
    return GenericResponse(message="Workout Tracker API is running")


# -----------------------------------------------------------------------------
# Exercises
# -----------------------------------------------------------------------------
@app.get("/api/exercises", response_model=List[ExerciseOut])
async def list_exercises(q: Optional[str] = Query(None, description="name or part of it")) -> List[ExerciseOut]:
    stmt = select(Exercise)
    if q and q.strip():
        stmt = stmt.where(_safe_like(Exercise.name, q))
    async with async_session() as s:
        result = await s.execute(stmt.order_by(asc(Exercise.name)))
        rows = result.scalars().all()
    return [ExerciseOut.model_validate(e) for e in rows]


@app.post("/api/exercises", response_model=ExerciseOut)
async def create_exercise(body: ExerciseIn) -> ExerciseOut:
    async with _transaction() as s:
        if await _name_taken(s, Exercise, body.name):
            raise HTTPException(409, f"Exercise {body.name!r} already exists")
        obj = Exercise(**body.model_dump())
        s.add(obj)
        await s.flush()
        return ExerciseOut.model_validate(obj)


@app.put("/api/exercises/{exercise_id}", response_model=ExerciseOut)
async def edit_exercise(exercise_id: int = FPath(..., ge=1), body: ExerciseIn = Body(...)) -> ExerciseOut:
    async with _transaction() as s:
        obj = await _get_or_404(s, Exercise, exercise_id, "Exercise")
        if await _name_taken(s, Exercise, body.name, exclude_id=exercise_id):
            raise HTTPException(409, f"Exercise {body.name!r} already exists")
        for k, v in body.model_dump().items():
            setattr(obj, k, v)
        await s.flush()
        return ExerciseOut.model_validate(obj)


@app.delete("/api/exercises/{exercise_id}", response_model=GenericResponse)
async def delete_exercise(exercise_id: int = FPath(..., ge=1)) -> GenericResponse:
    async with _transaction() as s:
        obj = await _get_or_404(s, Exercise, exercise_id, "Exercise")
        usage = {}
        for label, model in (
            ("templates", WorkoutTemplateExercise),
            ("plans", WorkoutPlanExercise),
            ("logged sets", ExerciseSet),
        ):
            result = await s.execute(
                select(func.count()).select_from(model).where(model.exercise_id == exercise_id)
            )
            count = int(result.scalar_one())
            if count:
                usage[label] = count
        if usage:
            used_by = ", ".join(f"{n} {label}" for label, n in usage.items())
            raise HTTPException(409, f"Exercise is in use ({used_by})")
        await s.delete(obj)
    return GenericResponse(message="Exercise deleted")


# -----------------------------------------------------------------------------
# Workout templates
# -----------------------------------------------------------------------------
@app.get("/api/workouts", response_model=List[WorkoutSummaryOut])
async def list_workouts() -> List[WorkoutSummaryOut]:
    async with async_session() as s:
        result = await s.execute(select(WorkoutTemplate).order_by(asc(WorkoutTemplate.name)))
        rows = result.scalars().all()
    return [WorkoutSummaryOut.model_validate(w) for w in rows]


@app.get("/api/workouts/{workout_id}", response_model=WorkoutDetailOut)
async def get_workout(workout_id: int = FPath(..., ge=1)) -> WorkoutDetailOut:
    async with async_session() as s:
        template = await _get_or_404(s, WorkoutTemplate, workout_id, "Workout")
        return await _workout_detail(s, template)


@app.post("/api/workouts", response_model=WorkoutDetailOut)
async def create_workout(body: WorkoutIn) -> WorkoutDetailOut:
    async with _transaction() as s:
        if await _name_taken(s, WorkoutTemplate, body.name):
            raise HTTPException(409, f"Workout {body.name!r} already exists")
        template = WorkoutTemplate(**body.model_dump())
        s.add(template)
        await s.flush()
        return await _workout_detail(s, template)


@app.put("/api/workouts/{workout_id}", response_model=WorkoutDetailOut)
async def edit_workout(workout_id: int = FPath(..., ge=1), body: WorkoutIn = Body(...)) -> WorkoutDetailOut:
    async with _transaction() as s:
        template = await _get_or_404(s, WorkoutTemplate, workout_id, "Workout")
        if await _name_taken(s, WorkoutTemplate, body.name, exclude_id=workout_id):
            raise HTTPException(409, f"Workout {body.name!r} already exists")
        for k, v in body.model_dump().items():
            setattr(template, k, v)
        await s.flush()
        return await _workout_detail(s, template)


@app.delete("/api/workouts/{workout_id}", response_model=GenericResponse)
async def delete_workout(workout_id: int = FPath(..., ge=1)) -> GenericResponse:
    async with _transaction() as s:
        template = await _get_or_404(s, WorkoutTemplate, workout_id, "Workout")
        for label, model in (("plans", WorkoutPlan), ("sessions", WorkoutSession)):
            result = await s.execute(
                select(func.count()).select_from(model).where(model.workout_template_id == workout_id)
            )
            if result.scalar_one():
                raise HTTPException(409, f"Workout is used by existing {label}")
        await s.execute(
            delete(WorkoutTemplateExercise).where(WorkoutTemplateExercise.workout_template_id == workout_id)
        )
        await s.delete(template)
    return GenericResponse(message="Workout deleted")


# --- template exercises ------------------------------------------------------
@app.post("/api/workouts/{workout_id}/exercises", response_model=WorkoutDetailOut)
async def add_workout_exercise(workout_id: int = FPath(..., ge=1), body: LinkIn = Body(...)) -> WorkoutDetailOut:
    async with _transaction() as s:
        template = await _get_or_404(s, WorkoutTemplate, workout_id, "Workout")
        await _add_link(s, WorkoutTemplateExercise, WorkoutTemplateExercise.workout_template_id, workout_id, body)
        return await _workout_detail(s, template)


@app.put("/api/workouts/{workout_id}/exercises/{exercise_id}", response_model=WorkoutDetailOut)
async def edit_workout_exercise(
    workout_id: int = FPath(..., ge=1),
    exercise_id: int = FPath(..., ge=1),
    body: LinkUpdate = Body(...),
) -> WorkoutDetailOut:
    async with _transaction() as s:
        template = await _get_or_404(s, WorkoutTemplate, workout_id, "Workout")
        await _update_link(
            s, WorkoutTemplateExercise, WorkoutTemplateExercise.workout_template_id, workout_id, exercise_id, body
        )
        return await _workout_detail(s, template)


@app.delete("/api/workouts/{workout_id}/exercises/{exercise_id}", response_model=WorkoutDetailOut)
async def remove_workout_exercise(
    workout_id: int = FPath(..., ge=1), exercise_id: int = FPath(..., ge=1)
) -> WorkoutDetailOut:
    async with _transaction() as s:
        template = await _get_or_404(s, WorkoutTemplate, workout_id, "Workout")
        await _delete_link(
            s, WorkoutTemplateExercise, WorkoutTemplateExercise.workout_template_id, workout_id, exercise_id
        )
        return await _workout_detail(s, template)


@app.post("/api/workouts/{workout_id}/exercises/{exercise_id}/move", response_model=MoveOut)
async def move_workout_exercise(
    workout_id: int = FPath(..., ge=1),
    exercise_id: int = FPath(..., ge=1),
    body: MoveIn = Body(...),
) -> MoveOut:
    async with _transaction() as s:
        await _get_or_404(s, WorkoutTemplate, workout_id, "Workout")
        return await _move_link(
            s, WorkoutTemplateExercise, WorkoutTemplateExercise.workout_template_id,
            workout_id, exercise_id, body.direction,
        )


# -----------------------------------------------------------------------------
# Plans
# -----------------------------------------------------------------------------
@app.get("/api/plans", response_model=List[PlanOut])
async def list_plans() -> List[PlanOut]:
    async with async_session() as s:
        result = await s.execute(
            select(WorkoutPlan, WorkoutTemplate.name)
            .outerjoin(WorkoutTemplate, WorkoutTemplate.id == WorkoutPlan.workout_template_id)
            .order_by(asc(WorkoutPlan.name))
        )
        rows = result.all()
    return [
        PlanOut(
            id=p.id, name=p.name, workout_template_id=p.workout_template_id,
            template_name=template_name, notes=p.notes,
        )
        for p, template_name in rows
    ]


@app.get("/api/plans/{plan_id}", response_model=PlanDetailOut)
async def get_plan(plan_id: int = FPath(..., ge=1)) -> PlanDetailOut:
    async with async_session() as s:
        plan = await _get_or_404(s, WorkoutPlan, plan_id, "Plan")
        return await _plan_detail(s, plan)


@app.post("/api/plans", response_model=PlanDetailOut)
async def create_plan(body: PlanIn) -> PlanDetailOut:
    async with _transaction() as s:
        template = await _get_or_404(s, WorkoutTemplate, body.workout_template_id, "Workout")
        name = body.name or template.name
        if await _name_taken(s, WorkoutPlan, name):
            raise HTTPException(409, f"Plan {name!r} already exists")
        plan = WorkoutPlan(name=name, workout_template_id=template.id, notes=body.notes)
        s.add(plan)
        await s.flush()
        await _copy_template_links(s, template.id, plan.id)
        await s.flush()
        return await _plan_detail(s, plan)


@app.put("/api/plans/{plan_id}", response_model=PlanDetailOut)
async def edit_plan(plan_id: int = FPath(..., ge=1), body: PlanUpdate = Body(...)) -> PlanDetailOut:
    async with _transaction() as s:
        plan = await _get_or_404(s, WorkoutPlan, plan_id, "Plan")
        changes = body.model_dump(exclude_unset=True)
        if changes.get("name") is None:
            changes.pop("name", None)
        elif await _name_taken(s, WorkoutPlan, changes["name"], exclude_id=plan_id):
            raise HTTPException(409, f"Plan {changes['name']!r} already exists")
        for k, v in changes.items():
            setattr(plan, k, v)
        await s.flush()
        return await _plan_detail(s, plan)


@app.delete("/api/plans/{plan_id}", response_model=GenericResponse)
async def delete_plan(plan_id: int = FPath(..., ge=1)) -> GenericResponse:
    async with _transaction() as s:
        plan = await _get_or_404(s, WorkoutPlan, plan_id, "Plan")
        # sessions keep their sets and template; only the plan reference goes
        await s.execute(
            update(WorkoutSession)
            .where(WorkoutSession.workout_plan_id == plan_id)
            .values(workout_plan_id=None)
        )
        await s.execute(delete(WorkoutCalendar).where(WorkoutCalendar.workout_plan_id == plan_id))
        await s.execute(delete(WorkoutPlanExercise).where(WorkoutPlanExercise.workout_plan_id == plan_id))
        await s.delete(plan)
    log.info(f"Deleted plan {plan_id}")
    return GenericResponse(message="Plan deleted")


# --- plan exercises ----------------------------------------------------------
@app.post("/api/plans/{plan_id}/exercises", response_model=PlanDetailOut)
async def add_plan_exercise(plan_id: int = FPath(..., ge=1), body: PlanLinkIn = Body(...)) -> PlanDetailOut:
    async with _transaction() as s:
        plan = await _get_or_404(s, WorkoutPlan, plan_id, "Plan")
        await _add_link(s, WorkoutPlanExercise, WorkoutPlanExercise.workout_plan_id, plan_id, body)
        return await _plan_detail(s, plan)


@app.put("/api/plans/{plan_id}/exercises/{exercise_id}", response_model=PlanDetailOut)
async def edit_plan_exercise(
    plan_id: int = FPath(..., ge=1),
    exercise_id: int = FPath(..., ge=1),
    body: PlanLinkUpdate = Body(...),
) -> PlanDetailOut:
    async with _transaction() as s:
        plan = await _get_or_404(s, WorkoutPlan, plan_id, "Plan")
        await _update_link(
            s, WorkoutPlanExercise, WorkoutPlanExercise.workout_plan_id, plan_id, exercise_id, body
        )
        return await _plan_detail(s, plan)


@app.delete("/api/plans/{plan_id}/exercises/{exercise_id}", response_model=PlanDetailOut)
async def remove_plan_exercise(
    plan_id: int = FPath(..., ge=1), exercise_id: int = FPath(..., ge=1)
) -> PlanDetailOut:
    async with _transaction() as s:
        plan = await _get_or_404(s, WorkoutPlan, plan_id, "Plan")
        await _delete_link(s, WorkoutPlanExercise, WorkoutPlanExercise.workout_plan_id, plan_id, exercise_id)
        return await _plan_detail(s, plan)


@app.post("/api/plans/{plan_id}/exercises/{exercise_id}/move", response_model=MoveOut)
async def move_plan_exercise(
    plan_id: int = FPath(..., ge=1),
    exercise_id: int = FPath(..., ge=1),
    body: MoveIn = Body(...),
) -> MoveOut:
    async with _transaction() as s:
        await _get_or_404(s, WorkoutPlan, plan_id, "Plan")
        return await _move_link(
            s, WorkoutPlanExercise, WorkoutPlanExercise.workout_plan_id, plan_id, exercise_id, body.direction
        )


# -----------------------------------------------------------------------------
# Sessions & sets
# -----------------------------------------------------------------------------
@app.post("/api/sessions", response_model=SessionCreatedOut)
async def start_session(body: SessionIn) -> SessionCreatedOut:
    if body.workout_template_id is None and body.workout_plan_id is None:
        raise HTTPException(400, "workout_template_id or workout_plan_id required")
    async with _transaction() as s:
        template_id = body.workout_template_id
        if body.workout_plan_id is not None:
            plan = await _get_or_404(s, WorkoutPlan, body.workout_plan_id, "Plan")
            if template_id is not None and template_id != plan.workout_template_id:
                raise HTTPException(400, "workout_template_id does not match the plan's template")
            template_id = plan.workout_template_id
        else:
            await _get_or_404(s, WorkoutTemplate, template_id, "Workout")
        session = WorkoutSession(
            workout_template_id=template_id,
            workout_plan_id=body.workout_plan_id,
            performed_on=body.performed_on or date.today(),
            notes=body.notes,
        )
        s.add(session)
        await s.flush()
        return SessionCreatedOut(session_id=session.id)


def _sessions_query():
    set_count = (
        select(func.count(ExerciseSet.id))
        .where(ExerciseSet.session_id == WorkoutSession.id)
        .scalar_subquery()
    )
    return (
        select(WorkoutSession, WorkoutTemplate.name, WorkoutPlan.name, set_count)
        .outerjoin(WorkoutTemplate, WorkoutTemplate.id == WorkoutSession.workout_template_id)
        .outerjoin(WorkoutPlan, WorkoutPlan.id == WorkoutSession.workout_plan_id)
    )


def _session_out(sess: WorkoutSession, template_name, plan_name, set_count) -> SessionOut:
    return SessionOut(
        id=sess.id, performed_on=sess.performed_on,
        workout_template_id=sess.workout_template_id, workout_plan_id=sess.workout_plan_id,
        template_name=template_name, plan_name=plan_name, notes=sess.notes,
        set_count=int(set_count or 0),
    )


@app.get("/api/sessions", response_model=List[SessionOut])
async def list_sessions(limit: int = Query(50, ge=1, le=500)) -> List[SessionOut]:
    async with async_session() as s:
        result = await s.execute(
            _sessions_query()
            .order_by(desc(WorkoutSession.performed_on), desc(WorkoutSession.id))
            .limit(limit)
        )
        rows = result.all()
    return [_session_out(*r) for r in rows]


@app.get("/api/sessions/{session_id}", response_model=SessionOut)
async def get_session(session_id: int = FPath(..., ge=1)) -> SessionOut:
    async with async_session() as s:
        result = await s.execute(_sessions_query().where(WorkoutSession.id == session_id))
        row = result.first()
    if row is None:
        raise HTTPException(404, "Session not found")
    return _session_out(*row)


@app.delete("/api/sessions/{session_id}", response_model=GenericResponse)
async def delete_session(session_id: int = FPath(..., ge=1)) -> GenericResponse:
    async with _transaction() as s:
        session = await _get_or_404(s, WorkoutSession, session_id, "Session")
        await s.execute(delete(ExerciseSet).where(ExerciseSet.session_id == session_id))
        await s.delete(session)
    return GenericResponse(message="Session deleted")


@app.get("/api/sessions/{session_id}/sets", response_model=List[SetOut])
async def session_sets(session_id: int = FPath(..., ge=1)) -> List[SetOut]:
    async with async_session() as s:
        await _get_or_404(s, WorkoutSession, session_id, "Session")
        result = await s.execute(
            select(ExerciseSet)
            .where(ExerciseSet.session_id == session_id)
            .order_by(asc(ExerciseSet.exercise_id), asc(ExerciseSet.set_number), asc(ExerciseSet.id))
        )
        rows = result.scalars().all()
    return [SetOut.model_validate(r) for r in rows]


@app.post("/api/sets", response_model=SetCreatedOut)
async def log_set(body: SetIn) -> SetCreatedOut:
    async with _transaction() as s:
        await _get_or_404(s, WorkoutSession, body.session_id, "Session")
        await _get_or_404(s, Exercise, body.exercise_id, "Exercise")
        obj = ExerciseSet(**body.model_dump())
        s.add(obj)
        await s.flush()
        return SetCreatedOut(id=obj.id)


@app.post("/api/sets/bulk", response_model=BulkSetsOut)
async def replace_sets(body: BulkSetsIn) -> BulkSetsOut:
    """Replace every set of one exercise in one session with the given rows."""
    async with _transaction() as s:
        await _get_or_404(s, WorkoutSession, body.session_id, "Session")
        await _get_or_404(s, Exercise, body.exercise_id, "Exercise")
        await s.execute(
            delete(ExerciseSet).where(
                ExerciseSet.session_id == body.session_id,
                ExerciseSet.exercise_id == body.exercise_id,
            )
        )
        for row in body.sets:
            s.add(ExerciseSet(session_id=body.session_id, exercise_id=body.exercise_id, **row.model_dump()))
    return BulkSetsOut(inserted=len(body.sets))


# -----------------------------------------------------------------------------
# History & export
# -----------------------------------------------------------------------------
HISTORY_COLUMNS = [
    ("performed_on", "date"),
    ("workout_name", "workout"),
    ("plan_name", "plan"),
    ("template_name", "template"),
    ("exercise_name", "exercise"),
    ("set_number", "set"),
    ("weight", "weight"),
    ("reps", "reps"),
    ("rpe", "rpe"),
    ("target_sets", "t_sets"),
    ("target_reps", "t_reps"),
    ("target_weight", "t_weight"),
    ("session_id", "session_id"),
]


@app.get("/api/history/sets", response_model=HistoryOut)
async def history_sets(
    start: Optional[str] = Query(None, alias="from", description="YYYY-MM-DD"),
    end: Optional[str] = Query(None, alias="to", description="YYYY-MM-DD"),
    limit: int = Query(5000, ge=1, le=20000),
) -> HistoryOut:
    start_d = _parse_date_param(start, "from")
    end_d = _parse_date_param(end, "to")
    async with async_session() as s:
        rows = await _history_rows(s, start_d, end_d, limit)
    return HistoryOut(rows=rows)


def _tsv_cell(v) -> str:
    if v is None:
        return ""
    return str(v).replace("\t", " ").replace("\r", " ").replace("\n", " ")


@app.get("/api/export/history", response_model=ExportOut)
async def export_history(
    fmt: Literal["csv", "tsv"] = Query("csv", alias="format"),
    start: Optional[str] = Query(None, alias="from", description="YYYY-MM-DD"),
    end: Optional[str] = Query(None, alias="to", description="YYYY-MM-DD"),
) -> ExportOut:
    start_d = _parse_date_param(start, "from")
    end_d = _parse_date_param(end, "to")
    async with async_session() as s:
        rows = await _history_rows(s, start_d, end_d, 20000)

    labels = [label for _, label in HISTORY_COLUMNS]
    records = [[getattr(r, key) for key, _ in HISTORY_COLUMNS] for r in rows]
    if fmt == "tsv":
        lines = ["\t".join(labels)]
        lines.extend("\t".join(_tsv_cell(v) for v in rec) for rec in records)
        content = "\n".join(lines) + "\n"
    else:
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(labels)
        for rec in records:
            writer.writerow(["" if v is None else v for v in rec])
        content = buf.getvalue()

    return ExportOut(filename=f"history.{fmt}", rows=len(rows), content=content)


# -----------------------------------------------------------------------------
# Calendar
# -----------------------------------------------------------------------------
@app.get("/api/calendar", response_model=CalendarWeekOut)
async def calendar_week(
    week_start: Optional[str] = Query(None, description="any YYYY-MM-DD in the week; normalized to Monday"),
) -> CalendarWeekOut:
    anchor = _parse_date_param(week_start, "week_start") or date.today()
    monday, sunday = week_bounds(anchor)
    async with async_session() as s:
        items = await _calendar_items(
            s, WorkoutCalendar.planned_on >= monday, WorkoutCalendar.planned_on <= sunday
        )
    return CalendarWeekOut(week_start=monday, week_end=sunday, items=items)


@app.post("/api/calendar", response_model=CalendarItemOut)
async def add_calendar_item(body: CalendarIn) -> CalendarItemOut:
    async with _transaction() as s:
        await _get_or_404(s, WorkoutPlan, body.workout_plan_id, "Plan")
        item = WorkoutCalendar(**body.model_dump())
        s.add(item)
        await s.flush()
        (out,) = await _calendar_items(s, WorkoutCalendar.id == item.id)
        return out


@app.put("/api/calendar/{item_id}", response_model=CalendarItemOut)
async def edit_calendar_item(item_id: int = FPath(..., ge=1), body: CalendarUpdate = Body(...)) -> CalendarItemOut:
    async with _transaction() as s:
        item = await _get_or_404(s, WorkoutCalendar, item_id, "Calendar item")
        changes = body.model_dump(exclude_unset=True)
        if changes.get("planned_on", item.planned_on) is None:
            raise HTTPException(400, "planned_on cannot be empty")
        for k, v in changes.items():
            setattr(item, k, v)
        await s.flush()
        (out,) = await _calendar_items(s, WorkoutCalendar.id == item.id)
        return out


@app.delete("/api/calendar/{item_id}", response_model=OkOut)
async def delete_calendar_item(item_id: int = FPath(..., ge=1)) -> OkOut:
    async with _transaction() as s:
        item = await _get_or_404(s, WorkoutCalendar, item_id, "Calendar item")
        await s.delete(item)
    return OkOut()


# -----------------------------------------------------------------------------
# TSV plan import
# -----------------------------------------------------------------------------
@app.post("/api/import/plans", response_model=PlanImportOut)
async def import_plans(body: PlanImportIn) -> PlanImportOut:
    """Create (or replace) plans from TSV, one exercise per row.

    Every check runs before anything is written; dry_run stops there and
    reports what would happen.
    """
    try:
        drafts = parse_plan_tsv(body.tsv)
    except PlanTsvError as e:
        raise HTTPException(400, detail={"message": "Plan TSV has errors", "errors": e.errors})
    row_count = sum(len(d.exercises) for d in drafts)

    async with _transaction() as s:
        result = await s.execute(
            select(WorkoutTemplate)
            .where(func.lower(WorkoutTemplate.name).in_(_lowered(d.base_template_name for d in drafts)))
        )
        templates = {t.name.lower(): t for t in result.scalars().all()}
        missing = [
            f"plan {d.name!r}: base template {d.base_template_name!r} not found"
            for d in drafts if d.base_template_name.lower() not in templates
        ]
        if missing:
            raise HTTPException(400, detail={"message": "Unknown base template", "errors": missing})

        result = await s.execute(
            select(WorkoutPlan).where(func.lower(WorkoutPlan.name).in_(_lowered(d.name for d in drafts)))
        )
        existing_plans = {p.name.lower(): p for p in result.scalars().all()}
        if body.mode == "create" and existing_plans:
            conflicts = [f"plan {p.name!r} already exists" for p in existing_plans.values()]
            raise HTTPException(409, detail={"message": "Plans already exist; use mode=replace", "errors": conflicts})

        wanted: Dict[str, str] = {}
        for d in drafts:
            for r in d.exercises:
                wanted.setdefault(r.exercise_name.lower(), r.exercise_name)
        result = await s.execute(select(Exercise).where(func.lower(Exercise.name).in_(_lowered(wanted.values()))))
        exercises = {e.name.lower(): e for e in result.scalars().all()}
        new_exercises = [name for key, name in wanted.items() if key not in exercises]

        plans_out: List[ImportedPlanOut] = []
        if body.dry_run:
            for d in drafts:
                existing = existing_plans.get(d.name.lower())
                plans_out.append(ImportedPlanOut(
                    name=d.name,
                    base_template=templates[d.base_template_name.lower()].name,
                    action="replace" if existing else "create",
                    exercises=len(d.exercises),
                    plan_id=existing.id if existing else None,
                ))
            return PlanImportOut(
                dry_run=True, mode=body.mode, rows=row_count,
                plans=plans_out, new_exercises=new_exercises,
            )

        for name in new_exercises:
            obj = Exercise(name=name)
            s.add(obj)
            exercises[name.lower()] = obj
        await s.flush()

        for d in drafts:
            template = templates[d.base_template_name.lower()]
            plan = existing_plans.get(d.name.lower())
            if plan is not None:
                await s.execute(delete(WorkoutPlanExercise).where(WorkoutPlanExercise.workout_plan_id == plan.id))
                plan.workout_template_id = template.id
                action = "replace"
            else:
                plan = WorkoutPlan(name=d.name, workout_template_id=template.id)
                s.add(plan)
                await s.flush()
                action = "create"
            for r in d.exercises:
                s.add(WorkoutPlanExercise(
                    workout_plan_id=plan.id,
                    exercise_id=exercises[r.exercise_name.lower()].id,
                    sort_order=r.sort_order,
                    target_sets=r.target_sets,
                    target_reps=r.target_reps,
                    target_weight=r.target_weight,
                    notes=r.notes,
                ))
            plans_out.append(ImportedPlanOut(
                name=d.name, base_template=template.name, action=action,
                exercises=len(d.exercises), plan_id=plan.id,
            ))

    log.info(f"Imported {len(plans_out)} plan(s), {row_count} row(s), {len(new_exercises)} new exercise(s)")
    return PlanImportOut(
        dry_run=False, mode=body.mode, rows=row_count,
        plans=plans_out, new_exercises=new_exercises,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)

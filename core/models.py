"""
TrainerGate Database Models
PostgreSQL (sqlite for local dev and tests)
"""

from datetime import datetime
from enum import Enum as PyEnum
import uuid
from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, Float, Date,
    DateTime, ForeignKey, CheckConstraint, Index, UniqueConstraint, Enum, JSON, event, inspect, text
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship, declarative_base

import core.config as config
from core.errors import ConflictError

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON
UUID_TYPE = UUID(as_uuid=True) if DB_BACKEND_EFFECTIVE == "postgres" else String(36)


def _uuid_default() -> str | uuid.UUID:
    value = uuid.uuid4()
    return value if DB_BACKEND_EFFECTIVE == "postgres" else str(value)


def _enum(enum_cls, name: str):
    return Enum(enum_cls, name=name, native_enum=False, length=40, validate_strings=True)


Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class SessionStatus(str, PyEnum):
    active = "active"
    completed = "completed"
    error = "error"


class EventType(str, PyEnum):
    user_message = "user_message"
    tool_call = "tool_call"
    tool_result = "tool_result"
    llm_request = "llm_request"
    llm_response = "llm_response"
    knowledge = "knowledge"
    error = "error"
    checkpoint = "checkpoint"
    artifact = "artifact"


class ArtifactStatus(str, PyEnum):
    draft = "draft"
    approved = "approved"
    active = "active"
    archived = "archived"
    deferred = "deferred"


class AuditEventType(str, PyEnum):
    draft = "draft"
    edit = "edit"
    review = "review"
    approve = "approve"
    activate = "activate"
    archive = "archive"
    defer = "defer"


class WorkoutSessionStatus(str, PyEnum):
    in_progress = "in_progress"
    completed = "completed"
    stopped = "stopped"
    canceled = "canceled"


class CoachMode(str, PyEnum):
    quiet = "quiet"
    ringer = "ringer"


class ExerciseType(str, PyEnum):
    reps = "reps"
    hold = "hold"
    duration = "duration"
    intervals = "intervals"


class ExerciseStatus(str, PyEnum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    skipped = "skipped"


class GoalWeightKind(str, PyEnum):
    category = "category"
    muscle = "muscle"


class IntakeStatus(str, PyEnum):
    submitted = "submitted"
    processing = "processing"
    processed = "processed"


# =============================================================================
# Sessions (ordered event streams)
# =============================================================================

class AgentSession(Base):
    __tablename__ = "sessions"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    owner_id = Column(String(100), nullable=False)
    kind = Column(String(50), nullable=False, default="chat")  # chat, intake, assessment, goals, program, workout
    status = Column(_enum(SessionStatus, "session_status"), default=SessionStatus.active, nullable=False)
    context_start_sequence = Column(Integer, default=0, nullable=False)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    total_tokens = Column(BigInteger, default=0, nullable=False)
    cached_tokens = Column(BigInteger, default=0, nullable=False)
    total_cost_cents = Column(Float, default=0.0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime(timezone=True))

    events = relationship(
        "SessionEvent",
        back_populates="session",
        order_by="SessionEvent.sequence_number",
        lazy="dynamic",
    )

    __table_args__ = (
        CheckConstraint("context_start_sequence >= 0", name="check_sessions_context_start"),
        Index("ix_sessions_owner_kind_status", "owner_id", "kind", "status"),
        Index("ix_sessions_owner_created", "owner_id", "created_at"),
    )


class SessionEvent(Base):
    __tablename__ = "session_events"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    session_id = Column(UUID_TYPE, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    sequence_number = Column(Integer, nullable=False)
    event_type = Column(_enum(EventType, "session_event_type"), nullable=False)
    timestamp = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    duration_ms = Column(Integer)
    data = Column(JSON_TYPE, nullable=False)

    session = relationship("AgentSession", back_populates="events")

    __table_args__ = (
        UniqueConstraint("session_id", "sequence_number", name="uq_session_events_sequence"),
        CheckConstraint("sequence_number >= 1", name="check_session_events_sequence"),
        Index("ix_session_events_session_type", "session_id", "event_type"),
    )


# =============================================================================
# Versioned Artifacts (one table per artifact class)
# =============================================================================

class ArtifactMixin:
    """Columns shared by every versioned artifact table.

    A lineage is every version of one artifact; each edit inserts the next
    version row and leaves earlier rows untouched.
    """

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    owner_id = Column(String(100), nullable=False)
    lineage_id = Column(UUID_TYPE, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    status = Column(_enum(ArtifactStatus, "artifact_status"), default=ArtifactStatus.draft, nullable=False)
    content = Column(JSON_TYPE, nullable=False)
    created_by = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    approved_at = Column(DateTime(timezone=True))
    activated_at = Column(DateTime(timezone=True))
    archived_at = Column(DateTime(timezone=True))
    deferred_at = Column(DateTime(timezone=True))


def _artifact_table_args(table: str) -> tuple:
    active_only = text("status = 'active'")
    return (
        UniqueConstraint("lineage_id", "version", name=f"uq_{table}_lineage_version"),
        CheckConstraint("version >= 1", name=f"check_{table}_version"),
        Index(f"ix_{table}_owner_status", "owner_id", "status"),
        Index(f"ix_{table}_lineage", "lineage_id"),
        Index(
            f"uq_{table}_owner_active",
            "owner_id",
            unique=True,
            postgresql_where=active_only,
            sqlite_where=active_only,
        ),
    )


class GoalContract(ArtifactMixin, Base):
    __tablename__ = "goal_contracts"
    __table_args__ = _artifact_table_args("goal_contracts")


class TrainingProgram(ArtifactMixin, Base):
    __tablename__ = "training_programs"
    __table_args__ = _artifact_table_args("training_programs")


class WorkoutInstance(ArtifactMixin, Base):
    __tablename__ = "workout_instances"
    __table_args__ = _artifact_table_args("workout_instances")


class ArtifactAuditEvent(Base):
    __tablename__ = "artifact_audit_events"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    artifact_class = Column(String(50), nullable=False)
    artifact_id = Column(UUID_TYPE, nullable=False)
    lineage_id = Column(UUID_TYPE, nullable=False)
    version = Column(Integer, nullable=False)
    owner_id = Column(String(100), nullable=False)
    event_type = Column(_enum(AuditEventType, "artifact_audit_event_type"), nullable=False)
    actor = Column(String(255))
    request_id = Column(String(255))
    data = Column(JSON_TYPE, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_artifact_audit_events_lineage", "lineage_id", "created_at"),
        Index("ix_artifact_audit_events_artifact", "artifact_id"),
        Index("ix_artifact_audit_events_owner", "owner_id"),
    )


# =============================================================================
# Active-Version Pointer
# =============================================================================

class ActivePointer(Base):
    __tablename__ = "active_pointers"

    owner_id = Column(String(100), primary_key=True)
    artifact_class = Column(String(50), primary_key=True)
    artifact_id = Column(UUID_TYPE)  # NULL once the active version is archived with no successor
    lineage_id = Column(UUID_TYPE)
    version = Column(Integer)
    revision = Column(Integer, nullable=False, default=1)  # bumped on every swap
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


# =============================================================================
# Workout Tracking
# =============================================================================

class WorkoutSession(Base):
    __tablename__ = "workout_sessions"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    owner_id = Column(String(100), nullable=False)
    status = Column(
        _enum(WorkoutSessionStatus, "workout_session_status"),
        default=WorkoutSessionStatus.in_progress,
        nullable=False,
    )
    coach_mode = Column(_enum(CoachMode, "coach_mode"), default=CoachMode.quiet, nullable=False)
    event_session_id = Column(UUID_TYPE, ForeignKey("sessions.id"), nullable=True)
    instance_id = Column(UUID_TYPE, nullable=True)  # workout_instances.id the session was built from
    started_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True))
    session_rpe = Column(Integer)
    notes = Column(Text)
    summary = Column(JSON_TYPE)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    workout = relationship("Workout", back_populates="session", uselist=False)

    __table_args__ = (
        CheckConstraint("session_rpe IS NULL OR (session_rpe >= 1 AND session_rpe <= 10)", name="check_workout_sessions_rpe"),
        Index("ix_workout_sessions_owner_started", "owner_id", "started_at"),
    )


class Workout(Base):
    __tablename__ = "workouts"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    session_id = Column(UUID_TYPE, ForeignKey("workout_sessions.id", ondelete="CASCADE"), nullable=False, unique=True)
    title = Column(String(500))
    workout_type = Column(String(100))
    planned_duration_min = Column(Integer)
    actual_duration_min = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    session = relationship("WorkoutSession", back_populates="workout")
    exercises = relationship(
        "WorkoutExercise",
        back_populates="workout",
        cascade="all, delete-orphan",
        order_by="WorkoutExercise.exercise_order",
    )


class WorkoutExercise(Base):
    __tablename__ = "workout_exercises"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    workout_id = Column(UUID_TYPE, ForeignKey("workouts.id", ondelete="CASCADE"), nullable=False)
    exercise_order = Column(Integer, nullable=False)
    exercise_type = Column(_enum(ExerciseType, "exercise_type"), nullable=False)
    status = Column(_enum(ExerciseStatus, "exercise_status"), default=ExerciseStatus.pending, nullable=False)
    payload = Column(JSON_TYPE, nullable=False)
    payload_version = Column(Integer, default=1, nullable=False)
    exercise_name = Column(String(255), nullable=False)
    exercise_rpe = Column(Integer)
    total_reps = Column(Integer, default=0, nullable=False)
    volume = Column(Float, default=0.0, nullable=False)
    duration_sec = Column(Integer, default=0, nullable=False)
    goals_addressed = Column(JSON_TYPE, default=list)  # [{"goal", "share"}] or names
    muscles_utilized = Column(JSON_TYPE, default=list)  # [{"muscle", "share"}]
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    workout = relationship("Workout", back_populates="exercises")

    __table_args__ = (
        UniqueConstraint("workout_id", "exercise_order", name="uq_workout_exercises_order"),
        CheckConstraint("payload_version >= 1", name="check_workout_exercises_payload_version"),
    )


class WorkoutActionLog(Base):
    __tablename__ = "workout_action_logs"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    owner_id = Column(String(100), nullable=False)
    command_id = Column(String(100), nullable=False)
    session_id = Column(UUID_TYPE, ForeignKey("workout_sessions.id", ondelete="CASCADE"), nullable=False)
    workout_id = Column(UUID_TYPE, nullable=False)
    exercise_id = Column(UUID_TYPE, nullable=False)
    action_type = Column(String(50), nullable=False)
    action_payload = Column(JSON_TYPE, nullable=False)
    result = Column(JSON_TYPE, nullable=False)
    source_screen = Column(String(100))
    app_version = Column(String(50))
    device_id = Column(String(255))
    correlation_id = Column(String(255))
    client_timestamp = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "command_id", name="uq_workout_action_logs_owner_command"),
        Index("ix_workout_action_logs_exercise", "exercise_id"),
    )


# =============================================================================
# Distribution Tracking (incremental aggregate)
# =============================================================================

class DistributionTracking(Base):
    __tablename__ = "distribution_tracking"

    owner_id = Column(String(100), primary_key=True)
    category_totals = Column(JSON_TYPE, nullable=False, default=dict)
    muscle_totals = Column(JSON_TYPE, nullable=False, default=dict)
    exercise_count = Column(Integer, nullable=False, default=0)
    tracking_started_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    last_updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("exercise_count >= 0", name="check_distribution_tracking_count"),
    )


class GoalWeight(Base):
    __tablename__ = "goal_weights"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False)
    kind = Column(_enum(GoalWeightKind, "goal_weight_kind"), nullable=False)
    name = Column(String(255), nullable=False)
    weight = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "kind", "name", name="uq_goal_weights_owner_kind_name"),
        CheckConstraint("weight >= 0 AND weight <= 1", name="check_goal_weights_weight"),
    )


# =============================================================================
# Journey State
# =============================================================================

class JourneyState(Base):
    __tablename__ = "journey_states"

    owner_id = Column(String(100), primary_key=True)
    state = Column(String(50), nullable=False, default="not_started")
    intake_status = Column(String(20), nullable=False, default="not_started")
    assessment_status = Column(String(20), nullable=False, default="not_started")
    goals_status = Column(String(20), nullable=False, default="not_started")
    program_status = Column(String(20), nullable=False, default="not_started")
    monitoring_status = Column(String(20), nullable=False, default="not_started")
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


# =============================================================================
# Structured Intake
# =============================================================================

class StructuredIntake(Base):
    __tablename__ = "structured_intakes"

    id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    owner_id = Column(String(100), nullable=False)

    # About you
    name = Column(Text)
    birthday = Column(Date)
    gender = Column(Text)

    # Goals
    goals = Column(Text)
    timeline = Column(Text)

    # Training history
    experience_level = Column(Text)
    frequency = Column(Text)
    current_routine = Column(Text)
    past_attempts = Column(Text)
    hobby_sports = Column(Text)

    # Body metrics
    height_inches = Column(Integer)
    weight_lbs = Column(Float)
    body_comp = Column(Text)

    # Fitness baseline
    physical_baseline = Column(Text)
    mobility = Column(Text)

    # Health
    injuries = Column(Text)
    health_nuances = Column(Text)
    supplements = Column(Text)

    # Lifestyle
    activity_level = Column(Text)
    sleep = Column(Text)
    nutrition = Column(Text)

    # Equipment
    environment = Column(Text)

    # Preferences
    movement_prefs = Column(Text)
    coaching_style = Column(Text)
    anything_else = Column(Text)

    status = Column(_enum(IntakeStatus, "intake_status"), default=IntakeStatus.submitted, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_structured_intakes_owner_created", "owner_id", "created_at"),
    )


ARTIFACT_MODELS = {
    "goal_contract": GoalContract,
    "program": TrainingProgram,
    "workout_instance": WorkoutInstance,
}

APPEND_ONLY_MODELS = (SessionEvent, ArtifactAuditEvent)


def _reject_mutation(mapper, connection, target) -> None:
    raise ConflictError(
        f"{mapper.class_.__tablename__} rows are append-only",
        error_code="append_only",
    )


for _model in APPEND_ONLY_MODELS:
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)


@event.listens_for(ArtifactMixin, "before_update", propagate=True)
def _reject_content_rewrite(mapper, connection, target) -> None:
    state = inspect(target)
    for attr in ("content", "version", "lineage_id", "owner_id"):
        if state.attrs[attr].history.has_changes():
            raise ConflictError(
                f"{attr} of an artifact version is immutable; create a new version instead",
                error_code="immutable_version",
            )


__all__ = [
    "Base",
    "SessionStatus",
    "EventType",
    "ArtifactStatus",
    "AuditEventType",
    "WorkoutSessionStatus",
    "CoachMode",
    "ExerciseType",
    "ExerciseStatus",
    "GoalWeightKind",
    "IntakeStatus",
    "AgentSession",
    "SessionEvent",
    "ArtifactMixin",
    "GoalContract",
    "TrainingProgram",
    "WorkoutInstance",
    "ArtifactAuditEvent",
    "ActivePointer",
    "WorkoutSession",
    "Workout",
    "WorkoutExercise",
    "WorkoutActionLog",
    "DistributionTracking",
    "GoalWeight",
    "JourneyState",
    "StructuredIntake",
    "ARTIFACT_MODELS",
    "APPEND_ONLY_MODELS",
]

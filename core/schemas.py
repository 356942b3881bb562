"""
Boundary schemas for event payloads, artifact content and workout commands.

Every session event type maps to exactly one payload model; unknown types
are rejected before anything is written.
"""

from __future__ import annotations

from datetime import date
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from core.errors import ValidationIssue
from core.models import EventType
from core.validators import issue_from_pydantic, validate_json_document

# === Session event payloads ===


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class UserMessagePayload(_Payload):
    message: str = Field(min_length=1)


class ToolCallPayload(_Payload):
    tool_name: str = Field(min_length=1)
    arguments: dict = Field(default_factory=dict)
    call_id: Optional[str] = None


class ToolResultPayload(_Payload):
    tool_name: str = Field(min_length=1)
    result: Any = None
    success: bool = True
    call_id: Optional[str] = None


class LlmRequestPayload(_Payload):
    model: Optional[str] = None
    prompt: Any = None
    estimated_tokens: Optional[int] = Field(default=None, ge=0)


class TokenUsage(BaseModel):
    prompt: int = Field(default=0, ge=0)
    completion: int = Field(default=0, ge=0)
    cached: int = Field(default=0, ge=0)
    cache_write: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)


class LlmResponsePayload(_Payload):
    content: Optional[str] = None
    raw_response: Any = None
    tool_call: Optional[dict] = None
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    cost_cents: float = Field(default=0.0, ge=0)
    finish_reason: Optional[str] = None


class KnowledgePayload(_Payload):
    source: str = Field(min_length=1)
    data: Any = None


class ErrorPayload(_Payload):
    message: str = Field(min_length=1)
    stack: Optional[str] = None
    context: Optional[str] = None
    details: Optional[dict] = None


class CheckpointPayload(_Payload):
    start_sequence: int = Field(ge=1)
    previous_start: int = Field(ge=0)
    reason: Optional[str] = None


class ArtifactRef(BaseModel):
    artifact_class: Literal["goal_contract", "program", "workout_instance"]
    artifact_id: str
    version: int = Field(ge=1)


class ArtifactPayload(_Payload):
    artifact_id: str = Field(pattern=r"^art_[0-9a-f]{8}$")
    type: str = Field(min_length=1)
    schema_version: str = "1.0"
    title: str = Field(min_length=1)
    summary: Optional[str] = None
    auto_start: bool = False
    payload: dict = Field(default_factory=dict)
    ref: Optional[ArtifactRef] = None


EVENT_PAYLOAD_MODELS: dict[EventType, type[BaseModel]] = {
    EventType.user_message: UserMessagePayload,
    EventType.tool_call: ToolCallPayload,
    EventType.tool_result: ToolResultPayload,
    EventType.llm_request: LlmRequestPayload,
    EventType.llm_response: LlmResponsePayload,
    EventType.knowledge: KnowledgePayload,
    EventType.error: ErrorPayload,
    EventType.checkpoint: CheckpointPayload,
    EventType.artifact: ArtifactPayload,
}


def parse_event_type(value) -> EventType:
    try:
        return EventType(value)
    except ValueError as exc:
        raise ValidationIssue(
            f"Unknown event_type: {value}",
            field="event_type",
            error_type="invalid_value",
        ) from exc


def validate_event_payload(event_type, payload) -> dict:
    """Validate a payload against its event type and return the stored form."""
    event_type = parse_event_type(event_type)
    if not isinstance(payload, dict):
        raise ValidationIssue("payload must be an object", field="payload", error_type="invalid_type")
    model = EVENT_PAYLOAD_MODELS[event_type]
    try:
        parsed = model.model_validate(payload)
    except ValidationError as exc:
        raise issue_from_pydantic(exc, "payload") from exc
    data = parsed.model_dump(mode="json", exclude_none=True)
    validate_json_document(data, "payload")
    return data


# === Artifact content ===


class WeeklyCommitment(BaseModel):
    sessions_per_week: Optional[int] = Field(default=None, ge=0, le=14)
    minutes_per_session: Optional[int] = Field(default=None, ge=0)


class GoalContractContent(_Payload):
    primary_goal: str = Field(min_length=1)
    secondary_goal: Optional[str] = None
    timeline_weeks: Optional[int] = Field(default=None, ge=1)
    metrics: list[str] = Field(default_factory=list)
    weekly_commitment: Optional[WeeklyCommitment] = None
    constraints: list[str] = Field(default_factory=list)
    tradeoffs: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)


class ProgramGoals(_Payload):
    primary: str = ""
    secondary: Optional[str] = None
    timeline_weeks: Optional[int] = Field(default=None, ge=1)
    metrics: list[str] = Field(default_factory=list)


class WeeklyTemplate(_Payload):
    days_per_week: Optional[int] = Field(default=None, ge=1, le=7)
    session_types: list[str] = Field(default_factory=list)
    preferred_days: list[str] = Field(default_factory=list)


class ProgramSession(_Payload):
    focus: str = Field(min_length=1)
    duration_min: Optional[int] = Field(default=None, ge=0)
    equipment: list[str] = Field(default_factory=list)
    notes: Optional[str] = None


class Progression(_Payload):
    strategy: Optional[str] = None
    deload_trigger: Optional[str] = None
    time_scaling: list[str] = Field(default_factory=list)


class ExerciseRules(_Payload):
    avoid: list[str] = Field(default_factory=list)
    prefer: list[str] = Field(default_factory=list)


class Guardrails(_Payload):
    pain_scale: Optional[str] = None
    red_flags: list[str] = Field(default_factory=list)


class TrainingProgramContent(_Payload):
    identity: Optional[dict] = None
    goals: Optional[ProgramGoals] = None
    weekly_template: Optional[WeeklyTemplate] = None
    sessions: list[ProgramSession] = Field(default_factory=list)
    progression: Optional[Progression] = None
    exercise_rules: Optional[ExerciseRules] = None
    guardrails: Optional[Guardrails] = None
    coach_cues: list[str] = Field(default_factory=list)


class GoalShare(BaseModel):
    goal: str = Field(min_length=1)
    share: float = Field(default=0.0, ge=0)


class MuscleShare(BaseModel):
    muscle: str = Field(min_length=1)
    share: float = Field(default=0.0, ge=0)


class PlannedExercise(_Payload):
    id: Optional[str] = None
    exercise_name: str = Field(min_length=1)
    exercise_type: Optional[str] = None
    sets: Optional[int] = Field(default=None, ge=1)
    reps: Optional[list[Optional[float]]] = None
    load_each: Optional[list[Optional[float]]] = None
    load_unit: Optional[str] = None
    hold_duration_sec: Optional[list[Optional[float]]] = None
    duration_min: Optional[float] = Field(default=None, ge=0)
    distance_km: Optional[float] = Field(default=None, ge=0)
    rounds: Optional[int] = Field(default=None, ge=1)
    work_sec: Optional[float] = Field(default=None, ge=0)
    rest_seconds: Optional[float] = Field(default=None, ge=0)
    goals_addressed: list[Union[str, GoalShare]] = Field(default_factory=list)
    muscles_utilized: list[MuscleShare] = Field(default_factory=list)


class WorkoutInstanceContent(_Payload):
    title: str = "Workout"
    estimated_duration_min: Optional[int] = Field(default=None, ge=0)
    focus: list[str] = Field(default_factory=list)
    exercises: list[PlannedExercise] = Field(min_length=1)


ARTIFACT_CONTENT_MODELS: dict[str, type[BaseModel]] = {
    "goal_contract": GoalContractContent,
    "program": TrainingProgramContent,
    "workout_instance": WorkoutInstanceContent,
}


def validate_artifact_content(artifact_class: str, content) -> dict:
    model = ARTIFACT_CONTENT_MODELS.get(artifact_class)
    if model is None:
        raise ValidationIssue(
            f"Unknown artifact class: {artifact_class}",
            field="artifact_class",
            error_type="invalid_value",
        )
    if not isinstance(content, dict):
        raise ValidationIssue("content must be a JSON object", field="content", error_type="invalid_type")
    try:
        parsed = model.model_validate(content)
    except ValidationError as exc:
        raise issue_from_pydantic(exc, "content") from exc
    data = parsed.model_dump(mode="json", exclude_none=True)
    validate_json_document(data, "content")
    return data


# === Workout exercise payload (stored per exercise row) ===

CURRENT_PAYLOAD_SCHEMA_VERSION = 1

ExerciseTypeLiteral = Literal["reps", "hold", "duration", "intervals"]
NonNegInt = Optional[Annotated[int, Field(ge=0)]]
NonNegFloat = Optional[Annotated[float, Field(ge=0)]]
Rpe = Optional[Annotated[int, Field(ge=1, le=10)]]


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PrescriptionSet(_Strict):
    target_reps: NonNegInt = None
    target_load: NonNegFloat = None
    load_unit: Optional[str] = None
    target_duration_sec: NonNegInt = None
    target_distance_km: NonNegFloat = None


class PerformanceSet(_Strict):
    actual_reps: NonNegInt = None
    actual_load: NonNegFloat = None
    load_unit: Optional[str] = None
    actual_duration_sec: NonNegInt = None
    actual_distance_km: NonNegFloat = None
    rpe: Rpe = None
    completed_at: Optional[str] = None


class ExerciseIdentity(_Strict):
    name: str = Field(min_length=1)
    type: ExerciseTypeLiteral


class Prescription(_Strict):
    sets: list[PrescriptionSet] = Field(min_length=1)
    rest_seconds: NonNegInt = None


class Performance(_Strict):
    sets: list[PerformanceSet] = Field(min_length=1)
    exercise_rpe: Rpe = None
    notes: Optional[str] = None


class ExerciseFlags(_Strict):
    pain: bool = False
    modified: bool = False
    skip_reason: Optional[str] = None


class ExercisePayload(_Strict):
    schema_version: int = Field(ge=1)
    identity: ExerciseIdentity
    prescription: Prescription
    performance: Performance
    flags: ExerciseFlags = Field(default_factory=ExerciseFlags)


# === Workout commands ===


class CompleteSet(_Strict):
    type: Literal["complete_set"]
    set_index: int = Field(ge=0)
    actual_reps: NonNegInt = None
    actual_load: NonNegFloat = None
    load_unit: Optional[str] = None
    actual_duration_sec: NonNegInt = None
    actual_distance_km: NonNegFloat = None
    rpe: Rpe = None


class UpdateSetTarget(_Strict):
    type: Literal["update_set_target"]
    set_index: int = Field(ge=0)
    target_reps: NonNegInt = None
    target_load: NonNegFloat = None
    load_unit: Optional[str] = None
    target_duration_sec: NonNegInt = None
    target_distance_km: NonNegFloat = None


class UpdateSetActual(_Strict):
    type: Literal["update_set_actual"]
    set_index: int = Field(ge=0)
    actual_reps: NonNegInt = None
    actual_load: NonNegFloat = None
    load_unit: Optional[str] = None
    actual_duration_sec: NonNegInt = None
    actual_distance_km: NonNegFloat = None
    rpe: Rpe = None


class SetExerciseRpe(_Strict):
    type: Literal["set_exercise_rpe"]
    rpe: Rpe = None


class SetExerciseNote(_Strict):
    type: Literal["set_exercise_note"]
    notes: Optional[str] = Field(default=None, max_length=2000)


class SkipExercise(_Strict):
    type: Literal["skip_exercise"]
    reason: Optional[str] = Field(default=None, max_length=200)


class UnskipExercise(_Strict):
    type: Literal["unskip_exercise"]


class CompleteExercise(_Strict):
    type: Literal["complete_exercise"]


class ReopenExercise(_Strict):
    type: Literal["reopen_exercise"]


class AdjustRestSeconds(_Strict):
    type: Literal["adjust_rest_seconds"]
    rest_seconds: NonNegInt = None


ExerciseCommand = Annotated[
    Union[
        CompleteSet,
        UpdateSetTarget,
        UpdateSetActual,
        SetExerciseRpe,
        SetExerciseNote,
        SkipExercise,
        UnskipExercise,
        CompleteExercise,
        ReopenExercise,
        AdjustRestSeconds,
    ],
    Field(discriminator="type"),
]

_command_adapter = TypeAdapter(ExerciseCommand)


def parse_exercise_command(command) -> BaseModel:
    if isinstance(command, BaseModel):
        return command
    if not isinstance(command, dict):
        raise ValidationIssue("command must be an object", field="command", error_type="invalid_type")
    try:
        return _command_adapter.validate_python(command)
    except ValidationError as exc:
        raise issue_from_pydantic(exc, "command") from exc


def parse_exercise_payload(payload) -> ExercisePayload:
    if not isinstance(payload, dict):
        raise ValidationIssue("payload must be an object", field="payload", error_type="invalid_type")
    version = payload.get("schema_version") or 1
    if not isinstance(version, int) or version > CURRENT_PAYLOAD_SCHEMA_VERSION:
        raise ValidationIssue(
            f"Unsupported payload schema_version {version}",
            field="payload.schema_version",
            error_type="unsupported_version",
        )
    migrated = {**payload, "schema_version": CURRENT_PAYLOAD_SCHEMA_VERSION}
    try:
        return ExercisePayload.model_validate(migrated)
    except ValidationError as exc:
        raise issue_from_pydantic(exc, "payload") from exc


class ClientMeta(BaseModel):
    source_screen: Optional[str] = Field(default=None, max_length=100)
    app_version: Optional[str] = Field(default=None, max_length=50)
    device_id: Optional[str] = Field(default=None, max_length=255)
    correlation_id: Optional[str] = Field(default=None, max_length=255)
    client_timestamp: Optional[str] = None


# === Structured intake ===


class StructuredIntakeInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=255)
    birthday: Optional[date] = None
    gender: Optional[str] = Field(default=None, max_length=100)
    goals: Optional[str] = None
    timeline: Optional[str] = None
    experience_level: Optional[str] = None
    frequency: Optional[str] = None
    current_routine: Optional[str] = None
    past_attempts: Optional[str] = None
    hobby_sports: Optional[str] = None
    height_inches: Optional[int] = Field(default=None, ge=0, le=120)
    weight_lbs: Optional[float] = Field(default=None, ge=0, le=1500)
    body_comp: Optional[str] = None
    physical_baseline: Optional[str] = None
    mobility: Optional[str] = None
    injuries: Optional[str] = None
    health_nuances: Optional[str] = None
    supplements: Optional[str] = None
    activity_level: Optional[str] = None
    sleep: Optional[str] = None
    nutrition: Optional[str] = None
    environment: Optional[str] = None
    movement_prefs: Optional[str] = None
    coaching_style: Optional[str] = None
    anything_else: Optional[str] = None


__all__ = [
    "EVENT_PAYLOAD_MODELS",
    "ARTIFACT_CONTENT_MODELS",
    "CURRENT_PAYLOAD_SCHEMA_VERSION",
    "ExercisePayload",
    "ExerciseCommand",
    "ClientMeta",
    "StructuredIntakeInput",
    "parse_event_type",
    "validate_event_payload",
    "validate_artifact_content",
    "parse_exercise_command",
    "parse_exercise_payload",
]

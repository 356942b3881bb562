"""Initial TrainerGate schema.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

ARTIFACT_TABLES = ("goal_contracts", "training_programs", "workout_instances")


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON
    uuid_type = postgresql.UUID(as_uuid=True) if is_postgres else sa.String(length=36)
    status_type = sa.String(length=40)

    op.create_table(
        "sessions",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("status", status_type, nullable=False),
        sa.Column("context_start_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", json_type),
        sa.Column("total_tokens", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("cached_tokens", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_cost_cents", sa.Float(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.Column("ended_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("context_start_sequence >= 0", name="check_sessions_context_start"),
    )
    op.create_index("ix_sessions_owner_kind_status", "sessions", ["owner_id", "kind", "status"])
    op.create_index("ix_sessions_owner_created", "sessions", ["owner_id", "created_at"])

    op.create_table(
        "session_events",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("session_id", uuid_type, sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("event_type", status_type, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer()),
        sa.Column("data", json_type, nullable=False),
        sa.UniqueConstraint("session_id", "sequence_number", name="uq_session_events_sequence"),
        sa.CheckConstraint("sequence_number >= 1", name="check_session_events_sequence"),
    )
    op.create_index("ix_session_events_session_type", "session_events", ["session_id", "event_type"])

    for table in ARTIFACT_TABLES:
        op.create_table(
            table,
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("owner_id", sa.String(length=100), nullable=False),
            sa.Column("lineage_id", uuid_type, nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("status", status_type, nullable=False),
            sa.Column("content", json_type, nullable=False),
            sa.Column("created_by", sa.String(length=255)),
            *_timestamps(),
            sa.Column("approved_at", sa.DateTime(timezone=True)),
            sa.Column("activated_at", sa.DateTime(timezone=True)),
            sa.Column("archived_at", sa.DateTime(timezone=True)),
            sa.Column("deferred_at", sa.DateTime(timezone=True)),
            sa.UniqueConstraint("lineage_id", "version", name=f"uq_{table}_lineage_version"),
            sa.CheckConstraint("version >= 1", name=f"check_{table}_version"),
        )
        op.create_index(f"ix_{table}_owner_status", table, ["owner_id", "status"])
        op.create_index(f"ix_{table}_lineage", table, ["lineage_id"])
        # At most one active version per owner.
        op.create_index(
            f"uq_{table}_owner_active",
            table,
            ["owner_id"],
            unique=True,
            postgresql_where=sa.text("status = 'active'"),
            sqlite_where=sa.text("status = 'active'"),
        )

    op.create_table(
        "artifact_audit_events",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("artifact_class", sa.String(length=50), nullable=False),
        sa.Column("artifact_id", uuid_type, nullable=False),
        sa.Column("lineage_id", uuid_type, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("event_type", status_type, nullable=False),
        sa.Column("actor", sa.String(length=255)),
        sa.Column("request_id", sa.String(length=255)),
        sa.Column("data", json_type, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_artifact_audit_events_lineage", "artifact_audit_events", ["lineage_id", "created_at"])
    op.create_index("ix_artifact_audit_events_artifact", "artifact_audit_events", ["artifact_id"])
    op.create_index("ix_artifact_audit_events_owner", "artifact_audit_events", ["owner_id"])

    op.create_table(
        "active_pointers",
        sa.Column("owner_id", sa.String(length=100), primary_key=True),
        sa.Column("artifact_class", sa.String(length=50), primary_key=True),
        sa.Column("artifact_id", uuid_type),
        sa.Column("lineage_id", uuid_type),
        sa.Column("version", sa.Integer()),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "workout_sessions",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("status", status_type, nullable=False),
        sa.Column("coach_mode", status_type, nullable=False),
        sa.Column("event_session_id", uuid_type, sa.ForeignKey("sessions.id")),
        sa.Column("instance_id", uuid_type),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("session_rpe", sa.Integer()),
        sa.Column("notes", sa.Text()),
        sa.Column("summary", json_type),
        sa.Column("metadata", json_type),
        *_timestamps(),
        sa.CheckConstraint(
            "session_rpe IS NULL OR (session_rpe >= 1 AND session_rpe <= 10)",
            name="check_workout_sessions_rpe",
        ),
    )
    op.create_index("ix_workout_sessions_owner_started", "workout_sessions", ["owner_id", "started_at"])

    op.create_table(
        "workouts",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column(
            "session_id",
            uuid_type,
            sa.ForeignKey("workout_sessions.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("title", sa.String(length=500)),
        sa.Column("workout_type", sa.String(length=100)),
        sa.Column("planned_duration_min", sa.Integer()),
        sa.Column("actual_duration_min", sa.Integer()),
        *_timestamps(),
    )

    op.create_table(
        "workout_exercises",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("workout_id", uuid_type, sa.ForeignKey("workouts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("exercise_order", sa.Integer(), nullable=False),
        sa.Column("exercise_type", status_type, nullable=False),
        sa.Column("status", status_type, nullable=False),
        sa.Column("payload", json_type, nullable=False),
        sa.Column("payload_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("exercise_name", sa.String(length=255), nullable=False),
        sa.Column("exercise_rpe", sa.Integer()),
        sa.Column("total_reps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("volume", sa.Float(), nullable=False, server_default="0"),
        sa.Column("duration_sec", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("goals_addressed", json_type),
        sa.Column("muscles_utilized", json_type),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint("workout_id", "exercise_order", name="uq_workout_exercises_order"),
        sa.CheckConstraint("payload_version >= 1", name="check_workout_exercises_payload_version"),
    )

    op.create_table(
        "workout_action_logs",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("command_id", sa.String(length=100), nullable=False),
        sa.Column(
            "session_id",
            uuid_type,
            sa.ForeignKey("workout_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("workout_id", uuid_type, nullable=False),
        sa.Column("exercise_id", uuid_type, nullable=False),
        sa.Column("action_type", sa.String(length=50), nullable=False),
        sa.Column("action_payload", json_type, nullable=False),
        sa.Column("result", json_type, nullable=False),
        sa.Column("source_screen", sa.String(length=100)),
        sa.Column("app_version", sa.String(length=50)),
        sa.Column("device_id", sa.String(length=255)),
        sa.Column("correlation_id", sa.String(length=255)),
        sa.Column("client_timestamp", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("owner_id", "command_id", name="uq_workout_action_logs_owner_command"),
    )
    op.create_index("ix_workout_action_logs_exercise", "workout_action_logs", ["exercise_id"])

    op.create_table(
        "distribution_tracking",
        sa.Column("owner_id", sa.String(length=100), primary_key=True),
        sa.Column("category_totals", json_type, nullable=False),
        sa.Column("muscle_totals", json_type, nullable=False),
        sa.Column("exercise_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tracking_started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("exercise_count >= 0", name="check_distribution_tracking_count"),
    )

    op.create_table(
        "goal_weights",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("kind", status_type, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("weight", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("owner_id", "kind", "name", name="uq_goal_weights_owner_kind_name"),
        sa.CheckConstraint("weight >= 0 AND weight <= 1", name="check_goal_weights_weight"),
    )

    op.create_table(
        "journey_states",
        sa.Column("owner_id", sa.String(length=100), primary_key=True),
        sa.Column("state", sa.String(length=50), nullable=False),
        sa.Column("intake_status", sa.String(length=20), nullable=False),
        sa.Column("assessment_status", sa.String(length=20), nullable=False),
        sa.Column("goals_status", sa.String(length=20), nullable=False),
        sa.Column("program_status", sa.String(length=20), nullable=False),
        sa.Column("monitoring_status", sa.String(length=20), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "structured_intakes",
        sa.Column("id", uuid_type, primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.Text()),
        sa.Column("birthday", sa.Date()),
        sa.Column("gender", sa.Text()),
        sa.Column("goals", sa.Text()),
        sa.Column("timeline", sa.Text()),
        sa.Column("experience_level", sa.Text()),
        sa.Column("frequency", sa.Text()),
        sa.Column("current_routine", sa.Text()),
        sa.Column("past_attempts", sa.Text()),
        sa.Column("hobby_sports", sa.Text()),
        sa.Column("height_inches", sa.Integer()),
        sa.Column("weight_lbs", sa.Float()),
        sa.Column("body_comp", sa.Text()),
        sa.Column("physical_baseline", sa.Text()),
        sa.Column("mobility", sa.Text()),
        sa.Column("injuries", sa.Text()),
        sa.Column("health_nuances", sa.Text()),
        sa.Column("supplements", sa.Text()),
        sa.Column("activity_level", sa.Text()),
        sa.Column("sleep", sa.Text()),
        sa.Column("nutrition", sa.Text()),
        sa.Column("environment", sa.Text()),
        sa.Column("movement_prefs", sa.Text()),
        sa.Column("coaching_style", sa.Text()),
        sa.Column("anything_else", sa.Text()),
        sa.Column("status", status_type, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_structured_intakes_owner_created", "structured_intakes", ["owner_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_structured_intakes_owner_created", table_name="structured_intakes")
    op.drop_table("structured_intakes")
    op.drop_table("journey_states")
    op.drop_table("goal_weights")
    op.drop_table("distribution_tracking")
    op.drop_index("ix_workout_action_logs_exercise", table_name="workout_action_logs")
    op.drop_table("workout_action_logs")
    op.drop_table("workout_exercises")
    op.drop_table("workouts")
    op.drop_index("ix_workout_sessions_owner_started", table_name="workout_sessions")
    op.drop_table("workout_sessions")
    op.drop_table("active_pointers")
    op.drop_index("ix_artifact_audit_events_owner", table_name="artifact_audit_events")
    op.drop_index("ix_artifact_audit_events_artifact", table_name="artifact_audit_events")
    op.drop_index("ix_artifact_audit_events_lineage", table_name="artifact_audit_events")
    op.drop_table("artifact_audit_events")
    for table in reversed(ARTIFACT_TABLES):
        op.drop_index(f"uq_{table}_owner_active", table_name=table)
        op.drop_index(f"ix_{table}_lineage", table_name=table)
        op.drop_index(f"ix_{table}_owner_status", table_name=table)
        op.drop_table(table)
    op.drop_index("ix_session_events_session_type", table_name="session_events")
    op.drop_table("session_events")
    op.drop_index("ix_sessions_owner_created", table_name="sessions")
    op.drop_index("ix_sessions_owner_kind_status", table_name="sessions")
    op.drop_table("sessions")

"""initial lottery schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("in_app_id", sa.String(length=64), nullable=False),
        sa.Column("nickname", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_users")),
        sa.UniqueConstraint("in_app_id", name=op.f("uq_users_in_app_id")),
    )
    op.create_table(
        "events",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("organizer_id", ID_TYPE, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["organizer_id"],
            ["users.id"],
            name=op.f("fk_events_organizer_id_users"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_events")),
    )
    op.create_index(op.f("ix_events_organizer_id"), "events", ["organizer_id"])

    op.create_table(
        "lottery_sessions",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("event_id", ID_TYPE, nullable=False),
        sa.Column("entry_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("entry_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("selection_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_winners", sa.Integer(), nullable=False),
        sa.Column("max_entries_per_slot", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column(
            "weight_enabled", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        sa.Column("weight_method", sa.String(length=20), nullable=False),
        sa.Column("weight_multiplier", sa.Float(), nullable=False),
        sa.Column(
            "model_selection_enabled",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("model_selection_scope", sa.String(length=20), nullable=False),
        sa.Column(
            "cheki_selection_enabled",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("cheki_selection_scope", sa.String(length=20), nullable=False),
        sa.Column("selection_criteria", sa.JSON(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "max_winners >= 1", name=op.f("ck_lottery_sessions_max_winners_positive")
        ),
        sa.CheckConstraint(
            "status IN ('upcoming','accepting','selecting','completed')",
            name=op.f("ck_lottery_sessions_status_enum"),
        ),
        sa.ForeignKeyConstraint(
            ["event_id"],
            ["events.id"],
            name=op.f("fk_lottery_sessions_event_id_events"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_lottery_sessions")),
        sa.UniqueConstraint("event_id", name="uq_lottery_sessions_event_id"),
    )
    op.create_index(
        "ix_lottery_sessions_status_deadline",
        "lottery_sessions",
        ["status", "selection_deadline"],
    )

    op.create_table(
        "lottery_entries",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("session_id", ID_TYPE, nullable=False),
        sa.Column("applicant_id", ID_TYPE, nullable=False),
        sa.Column(
            "slot_ref", sa.String(length=64), server_default=sa.text("''"), nullable=False
        ),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("preferred_provider_id", ID_TYPE, nullable=True),
        sa.Column("cheki_unsigned_count", sa.Integer(), nullable=False),
        sa.Column("cheki_signed_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("weight", sa.Float(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('applied','selected','rejected')",
            name=op.f("ck_lottery_entries_status_enum"),
        ),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["lottery_sessions.id"],
            name=op.f("fk_lottery_entries_session_id_lottery_sessions"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["applicant_id"],
            ["users.id"],
            name=op.f("fk_lottery_entries_applicant_id_users"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["preferred_provider_id"],
            ["users.id"],
            name=op.f("fk_lottery_entries_preferred_provider_id_users"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_lottery_entries")),
        sa.UniqueConstraint(
            "session_id",
            "applicant_id",
            "slot_ref",
            name="uq_lottery_entry_per_slot",
        ),
    )
    op.create_index(
        op.f("ix_lottery_entries_session_id"), "lottery_entries", ["session_id"]
    )
    op.create_index(
        op.f("ix_lottery_entries_applicant_id"), "lottery_entries", ["applicant_id"]
    )
    op.create_index(
        "ix_lottery_entries_session_status", "lottery_entries", ["session_id", "status"]
    )

    op.create_table(
        "lottery_selection_records",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("session_id", ID_TYPE, nullable=False),
        sa.Column("entry_id", ID_TYPE, nullable=False),
        sa.Column("actor_id", ID_TYPE, nullable=True),
        sa.Column(
            "automated", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        sa.Column("action", sa.String(length=10), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "action IN ('select','undo')",
            name=op.f("ck_lottery_selection_records_action_enum"),
        ),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["lottery_sessions.id"],
            name=op.f("fk_lottery_selection_records_session_id_lottery_sessions"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["entry_id"],
            ["lottery_entries.id"],
            name=op.f("fk_lottery_selection_records_entry_id_lottery_entries"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["actor_id"],
            ["users.id"],
            name=op.f("fk_lottery_selection_records_actor_id_users"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_lottery_selection_records")),
    )
    op.create_index(
        op.f("ix_lottery_selection_records_session_id"),
        "lottery_selection_records",
        ["session_id"],
    )
    op.create_index(
        op.f("ix_lottery_selection_records_entry_id"),
        "lottery_selection_records",
        ["entry_id"],
    )


def downgrade() -> None:
    op.drop_index(
        op.f("ix_lottery_selection_records_entry_id"),
        table_name="lottery_selection_records",
    )
    op.drop_index(
        op.f("ix_lottery_selection_records_session_id"),
        table_name="lottery_selection_records",
    )
    op.drop_table("lottery_selection_records")
    op.drop_index("ix_lottery_entries_session_status", table_name="lottery_entries")
    op.drop_index(op.f("ix_lottery_entries_applicant_id"), table_name="lottery_entries")
    op.drop_index(op.f("ix_lottery_entries_session_id"), table_name="lottery_entries")
    op.drop_table("lottery_entries")
    op.drop_index("ix_lottery_sessions_status_deadline", table_name="lottery_sessions")
    op.drop_table("lottery_sessions")
    op.drop_index(op.f("ix_events_organizer_id"), table_name="events")
    op.drop_table("events")
    op.drop_table("users")

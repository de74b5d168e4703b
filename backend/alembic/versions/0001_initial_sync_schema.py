"""initial sync schema

Revision ID: 0001_initial_sync_schema
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial_sync_schema"
down_revision = None
branch_labels = None
depends_on = None

TICKET_STATUSES = ("Open", "Pending", "Resolved", "Closed", "Waiting on Customer", "Waiting on Third Party")
TICKET_PRIORITIES = ("low", "medium", "high", "urgent")
SYNC_KINDS = ("full", "incremental", "scoped_range")
SYNC_RUN_STATUSES = ("started", "completed", "failed")
TICKET_ACTIVITY_KINDS = ("reassigned", "status_changed")


def upgrade() -> None:
    ticket_status = postgresql.ENUM(*TICKET_STATUSES, name="ticket_status")
    ticket_priority = postgresql.ENUM(*TICKET_PRIORITIES, name="ticket_priority")
    sync_kind = postgresql.ENUM(*SYNC_KINDS, name="sync_kind")
    sync_run_status = postgresql.ENUM(*SYNC_RUN_STATUSES, name="sync_run_status")
    ticket_activity_kind = postgresql.ENUM(*TICKET_ACTIVITY_KINDS, name="ticket_activity_kind")

    ticket_status_col = postgresql.ENUM(*TICKET_STATUSES, name="ticket_status", create_type=False)
    ticket_priority_col = postgresql.ENUM(*TICKET_PRIORITIES, name="ticket_priority", create_type=False)
    sync_kind_col = postgresql.ENUM(*SYNC_KINDS, name="sync_kind", create_type=False)
    sync_run_status_col = postgresql.ENUM(*SYNC_RUN_STATUSES, name="sync_run_status", create_type=False)
    ticket_activity_kind_col = postgresql.ENUM(*TICKET_ACTIVITY_KINDS, name="ticket_activity_kind", create_type=False)

    bind = op.get_bind()
    ticket_status.create(bind, checkfirst=True)
    ticket_priority.create(bind, checkfirst=True)
    sync_kind.create(bind, checkfirst=True)
    sync_run_status.create(bind, checkfirst=True)
    ticket_activity_kind.create(bind, checkfirst=True)

    op.create_table(
        "technicians",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("external_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("workspace_id", sa.BigInteger(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("timezone", sa.String(length=50), nullable=False, server_default="America/Los_Angeles"),
        sa.Column("location", sa.String(length=100), nullable=True),
        sa.Column("show_on_map", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(op.f("ix_technicians_external_id"), "technicians", ["external_id"], unique=True)

    op.create_table(
        "requesters",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("external_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("mobile", sa.String(length=64), nullable=True),
        sa.Column("department", sa.String(length=255), nullable=True),
        sa.Column("job_title", sa.String(length=255), nullable=True),
        sa.Column("time_zone", sa.String(length=64), nullable=True),
        sa.Column("language", sa.String(length=16), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(op.f("ix_requesters_external_id"), "requesters", ["external_id"], unique=True)

    op.create_table(
        "tickets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("external_id", sa.BigInteger(), nullable=False),
        sa.Column("subject", sa.String(length=512), nullable=False),
        sa.Column("description_text", sa.Text(), nullable=True),
        sa.Column("status", ticket_status_col, nullable=False),
        sa.Column("priority", ticket_priority_col, nullable=False),
        sa.Column("responder_external_id", sa.BigInteger(), nullable=True),
        sa.Column("assigned_tech_id", sa.Integer(), sa.ForeignKey("technicians.id", ondelete="SET NULL"), nullable=True),
        sa.Column("is_self_picked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("assigned_by", sa.String(length=255), nullable=True),
        sa.Column("first_assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_public_reply_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requester_external_id", sa.BigInteger(), nullable=True),
        sa.Column("requester_id", sa.Integer(), sa.ForeignKey("requesters.id", ondelete="SET NULL"), nullable=True),
        sa.Column("requester_name", sa.String(length=255), nullable=True),
        sa.Column("requester_email", sa.String(length=255), nullable=True),
        sa.Column("source", sa.Integer(), nullable=True),
        sa.Column("category", sa.String(length=255), nullable=True),
        sa.Column("sub_category", sa.String(length=255), nullable=True),
        sa.Column("ticket_category", sa.String(length=255), nullable=True),
        sa.Column("department", sa.String(length=255), nullable=True),
        sa.Column("is_escalated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolution_time_seconds", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_by", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fr_due_by", sa.DateTime(timezone=True), nullable=True),
        sa.Column("csat_response_id", sa.BigInteger(), nullable=True),
        sa.Column("csat_score", sa.Integer(), nullable=True),
        sa.Column("csat_total_score", sa.Integer(), nullable=True),
        sa.Column("csat_rating_text", sa.String(length=255), nullable=True),
        sa.Column("csat_feedback", sa.Text(), nullable=True),
        sa.Column("csat_submitted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(op.f("ix_tickets_external_id"), "tickets", ["external_id"], unique=True)
    op.create_index("ix_tickets_assigned_tech_id", "tickets", ["assigned_tech_id"])
    op.create_index("ix_tickets_created_at", "tickets", ["created_at"])
    op.create_index("ix_tickets_status", "tickets", ["status"])
    op.create_index(op.f("ix_tickets_requester_external_id"), "tickets", ["requester_external_id"])
    op.create_index(op.f("ix_tickets_requester_id"), "tickets", ["requester_id"])

    op.create_table(
        "ticket_activity_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("ticket_id", sa.Integer(), sa.ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", ticket_activity_kind_col, nullable=False),
        sa.Column("from_value", sa.String(length=255), nullable=True),
        sa.Column("to_value", sa.String(length=255), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("performed_by", sa.String(length=64), nullable=False, server_default="System"),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(op.f("ix_ticket_activity_logs_ticket_id"), "ticket_activity_logs", ["ticket_id"])
    op.create_index(op.f("ix_ticket_activity_logs_detected_at"), "ticket_activity_logs", ["detected_at"])

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("kind", sync_kind_col, nullable=False),
        sa.Column("status", sync_run_status_col, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("technicians_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tickets_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("requesters_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("csat_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("activities_enriched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index(op.f("ix_sync_runs_status"), "sync_runs", ["status"])
    op.create_index(op.f("ix_sync_runs_started_at"), "sync_runs", ["started_at"])


def downgrade() -> None:
    op.drop_index(op.f("ix_sync_runs_started_at"), table_name="sync_runs")
    op.drop_index(op.f("ix_sync_runs_status"), table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_index(op.f("ix_ticket_activity_logs_detected_at"), table_name="ticket_activity_logs")
    op.drop_index(op.f("ix_ticket_activity_logs_ticket_id"), table_name="ticket_activity_logs")
    op.drop_table("ticket_activity_logs")
    op.drop_index(op.f("ix_tickets_requester_id"), table_name="tickets")
    op.drop_index(op.f("ix_tickets_requester_external_id"), table_name="tickets")
    op.drop_index("ix_tickets_status", table_name="tickets")
    op.drop_index("ix_tickets_created_at", table_name="tickets")
    op.drop_index("ix_tickets_assigned_tech_id", table_name="tickets")
    op.drop_index(op.f("ix_tickets_external_id"), table_name="tickets")
    op.drop_table("tickets")
    op.drop_index(op.f("ix_requesters_external_id"), table_name="requesters")
    op.drop_table("requesters")
    op.drop_index(op.f("ix_technicians_external_id"), table_name="technicians")
    op.drop_table("technicians")

    bind = op.get_bind()
    for name in ("ticket_activity_kind", "sync_run_status", "sync_kind", "ticket_priority", "ticket_status"):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)

"""Ticket and ticket activity log models."""

from __future__ import annotations

import datetime as dt

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from helpdesk_sync.db.base import Base, JSONType
from helpdesk_sync.models.enums import TicketActivityKind, TicketPriority, TicketStatus


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        Index("ix_tickets_assigned_tech_id", "assigned_tech_id"),
        Index("ix_tickets_created_at", "created_at"),
        Index("ix_tickets_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, index=True)
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    description_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[TicketStatus] = mapped_column(
        Enum(TicketStatus, name="ticket_status", values_callable=lambda x: [e.value for e in x]),
        default=TicketStatus.open,
        nullable=False,
    )
    priority: Mapped[TicketPriority] = mapped_column(
        Enum(TicketPriority, name="ticket_priority", values_callable=lambda x: [e.value for e in x]),
        default=TicketPriority.medium,
        nullable=False,
    )

    responder_external_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    assigned_tech_id: Mapped[int | None] = mapped_column(
        ForeignKey("technicians.id", ondelete="SET NULL"), nullable=True
    )
    # Enrichment-owned: derived from the activity timeline, never from the ticket payload.
    is_self_picked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    assigned_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_assigned_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_public_reply_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    requester_external_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    requester_id: Mapped[int | None] = mapped_column(
        ForeignKey("requesters.id", ondelete="SET NULL"), nullable=True, index=True
    )
    requester_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    requester_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    source: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sub_category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ticket_category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    department: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_escalated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolution_time_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    assigned_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    due_by: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fr_due_by: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    csat_response_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    csat_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    csat_total_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    csat_rating_text: Mapped[str | None] = mapped_column(String(255), nullable=True)
    csat_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    csat_submitted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    assigned_tech = relationship("Technician", back_populates="tickets")
    requester = relationship("Requester", back_populates="tickets")
    activity_logs: Mapped[list[TicketActivityLog]] = relationship(
        "TicketActivityLog",
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="TicketActivityLog.detected_at",
    )


class TicketActivityLog(Base):
    __tablename__ = "ticket_activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[int] = mapped_column(ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    kind: Mapped[TicketActivityKind] = mapped_column(
        Enum(TicketActivityKind, name="ticket_activity_kind", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    from_value: Mapped[str | None] = mapped_column(String(255), nullable=True)
    to_value: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    performed_by: Mapped[str] = mapped_column(String(64), default="System", nullable=False)
    detected_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    ticket: Mapped[Ticket] = relationship("Ticket", back_populates="activity_logs")

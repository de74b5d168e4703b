"""Append-only record of every sync run."""

from __future__ import annotations

import datetime as dt

from sqlalchemy import DateTime, Enum, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from helpdesk_sync.db.base import Base
from helpdesk_sync.models.enums import SyncKind, SyncRunStatus


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[SyncKind] = mapped_column(
        Enum(SyncKind, name="sync_kind", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status", values_callable=lambda x: [e.value for e in x]),
        default=SyncRunStatus.started,
        nullable=False,
        index=True,
    )
    started_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    window_since: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    window_until: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    technicians_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tickets_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    requesters_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    csat_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    activities_enriched: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

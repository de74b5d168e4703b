"""Technician (Freshservice agent) model."""

from __future__ import annotations

import datetime as dt

from sqlalchemy import BigInteger, Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from helpdesk_sync.db.base import Base

DEFAULT_TIMEZONE = "America/Los_Angeles"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Technician(Base):
    __tablename__ = "technicians"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    workspace_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Manually curated from the dashboard; sync only fills these on insert.
    timezone: Mapped[str] = mapped_column(String(50), default=DEFAULT_TIMEZONE, nullable=False)
    location: Mapped[str | None] = mapped_column(String(100), nullable=True)
    show_on_map: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    tickets = relationship("Ticket", back_populates="assigned_tech")

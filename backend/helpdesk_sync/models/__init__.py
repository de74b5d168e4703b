"""Convenience imports for Alembic metadata discovery."""

from helpdesk_sync.models.technician import Technician
from helpdesk_sync.models.requester import Requester
from helpdesk_sync.models.ticket import Ticket, TicketActivityLog
from helpdesk_sync.models.sync_run import SyncRun  # noqa: F401

"""Change log queries: listing, stats, CSV export and retention purge."""

import csv
import io
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from ctms.config import settings
from ctms.db.repositories import ChangeLogRepository
from ctms.engine.errors import ValidationError
from ctms.engine.policy import require
from ctms.models import Actor, ChangeEventType, ChangeLogEntry, Operation, TargetType
from ctms.utils.time import ensure_aware, utc_now

logger = logging.getLogger(__name__)

CSV_HEADER = [
    "Timestamp",
    "Event Type",
    "User",
    "Email",
    "Role",
    "IP Address",
    "Action",
    "Target Type",
    "Target Name",
    "Description",
]


def _window(start_date: Optional[datetime], end_date: Optional[datetime]) -> dict[str, Any]:
    start = ensure_aware(start_date) if start_date else None
    end = ensure_aware(end_date) if end_date else None
    if start and end and start > end:
        raise ValidationError("start_date must not be after end_date", field="start_date")
    return {"start_date": start, "end_date": end}


class ChangeLogService:
    """Admin-facing reads over the audit trail. Records are never edited."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = ChangeLogRepository(session)

    async def list_logs(
        self,
        actor: Actor,
        page: int = 1,
        limit: Optional[int] = None,
        event_type: Optional[ChangeEventType] = None,
        user_id: Optional[UUID] = None,
        target_type: Optional[TargetType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
    ) -> dict[str, Any]:
        require(actor, Operation.VIEW_AUDIT)
        page = max(page, 1)
        limit = min(max(limit or settings.changelog_default_limit, 1), settings.changelog_max_limit)

        logs, total = await self.repo.query(
            page=page,
            limit=limit,
            event_type=event_type,
            user_id=user_id,
            target_type=target_type,
            search=search or None,
            **_window(start_date, end_date),
        )
        return {
            "logs": logs,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    async def stats(
        self,
        actor: Actor,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> dict[str, Any]:
        require(actor, Operation.VIEW_AUDIT)
        return await self.repo.stats(**_window(start_date, end_date))

    async def export_csv(
        self,
        actor: Actor,
        event_type: Optional[ChangeEventType] = None,
        user_id: Optional[UUID] = None,
        target_type: Optional[TargetType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
    ) -> str:
        """Render every matching record as CSV, newest first."""
        require(actor, Operation.VIEW_AUDIT)
        entries = await self.repo.export(
            event_type=event_type,
            user_id=user_id,
            target_type=target_type,
            search=search or None,
            **_window(start_date, end_date),
        )
        return render_csv(entries)

    def event_types(self, actor: Actor) -> list[str]:
        require(actor, Operation.VIEW_AUDIT)
        return [e.value for e in ChangeEventType]

    async def clear(self, actor: Actor, days: Optional[int] = None) -> int:
        """
        Delete records older than `days` days.

        A record created exactly at the cutoff instant is kept.
        """
        require(actor, Operation.PURGE_AUDIT)
        days = settings.changelog_retention_days if days is None else days
        if days < 0:
            raise ValidationError("days must be zero or positive", field="days")

        cutoff = utc_now() - timedelta(days=days)
        deleted = await self.repo.purge_older_than(cutoff)
        await self.session.commit()
        logger.info(f"Change log purge by {actor.id}: {deleted} record(s) older than {days} day(s)")
        return deleted


def render_csv(entries: list[ChangeLogEntry]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)
    for entry in entries:
        writer.writerow(
            [
                entry.created_at.isoformat(),
                entry.event_type.value,
                entry.user_name or "System",
                entry.user_email or "N/A",
                entry.user_role or "N/A",
                entry.user_ip or "N/A",
                entry.action,
                entry.target_type.value if entry.target_type else "N/A",
                entry.target_name or "N/A",
                entry.description,
            ]
        )
    return buffer.getvalue()

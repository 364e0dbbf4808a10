"""Database repositories for CTMS entities."""

from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID, uuid4

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ctms.db.tables import (
    ChangeLogTable,
    CommentTable,
    NotificationTable,
    TaskAssigneeTable,
    TaskTable,
    TeamTable,
    UserTable,
)
from ctms.models import (
    AuditEvent,
    ChangeEventType,
    ChangeLogEntry,
    Comment,
    Notification,
    NotificationDraft,
    Role,
    TargetType,
    Task,
    TaskPriority,
    TaskStatus,
    Team,
    User,
)
from ctms.utils.time import ensure_aware, utc_now


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_aware(value) if value is not None else None


class UserRepository:
    """Repository for user operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        full_name: str,
        email: str,
        role: Role = Role.MEMBER,
        team_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> User:
        """Create a user record."""
        now = utc_now()
        row = UserTable(
            id=user_id or uuid4(),
            full_name=full_name,
            email=email.lower(),
            role=role,
            team_id=team_id,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def get(self, user_id: UUID) -> User | None:
        """Get a user by ID."""
        row = await self.session.get(UserTable, user_id)
        return self._row_to_model(row) if row else None

    async def get_by_email(self, email: str) -> User | None:
        result = await self.session.execute(
            select(UserTable).where(UserTable.email == email.lower())
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def get_many(self, user_ids: Iterable[UUID]) -> dict[UUID, User]:
        """Fetch users by ID, keyed by ID. Missing IDs are simply absent."""
        ids = set(user_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(UserTable).where(UserTable.id.in_(ids)))
        return {row.id: self._row_to_model(row) for row in result.scalars().all()}

    async def missing_ids(self, user_ids: Iterable[UUID]) -> list[UUID]:
        """Return the subset of user_ids with no user record."""
        ids = set(user_ids)
        if not ids:
            return []
        result = await self.session.execute(select(UserTable.id).where(UserTable.id.in_(ids)))
        found = set(result.scalars().all())
        return sorted(ids - found, key=str)

    async def update_role(self, user_id: UUID, role: Role, team_id: UUID | None) -> User | None:
        """Set role and team association."""
        await self.session.execute(
            update(UserTable)
            .where(UserTable.id == user_id)
            .values(role=role, team_id=team_id, updated_at=utc_now())
        )
        row = await self.session.get(UserTable, user_id, populate_existing=True)
        return self._row_to_model(row) if row else None

    def _row_to_model(self, row: UserTable) -> User:
        return User(
            id=row.id,
            full_name=row.full_name,
            email=row.email,
            role=row.role,
            team_id=row.team_id,
            is_active=row.is_active,
            created_at=ensure_aware(row.created_at),
            updated_at=ensure_aware(row.updated_at),
        )


class TeamRepository:
    """Repository for team lookups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        name: str,
        hr_id: UUID | None = None,
        lead_id: UUID | None = None,
    ) -> Team:
        row = TeamTable(
            id=uuid4(),
            name=name,
            hr_id=hr_id,
            lead_id=lead_id,
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def get(self, team_id: UUID) -> Team | None:
        row = await self.session.get(TeamTable, team_id)
        return self._row_to_model(row) if row else None

    async def get_many(self, team_ids: Iterable[UUID]) -> dict[UUID, Team]:
        ids = {t for t in team_ids if t is not None}
        if not ids:
            return {}
        result = await self.session.execute(select(TeamTable).where(TeamTable.id.in_(ids)))
        return {row.id: self._row_to_model(row) for row in result.scalars().all()}

    def _row_to_model(self, row: TeamTable) -> Team:
        return Team(
            id=row.id,
            name=row.name,
            hr_id=row.hr_id,
            lead_id=row.lead_id,
            created_at=ensure_aware(row.created_at),
        )


class TaskRepository:
    """Repository for task operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, task: Task) -> Task:
        """Insert a fully built task and its assignee rows."""
        self.session.add(
            TaskTable(
                id=task.id,
                title=task.title,
                description=task.description,
                status=task.status,
                priority=task.priority,
                created_by=task.created_by,
                team_id=task.team_id,
                due_date=task.due_date,
                progress=task.progress,
                created_at=task.created_at,
                updated_at=task.updated_at,
                version=task.version,
            )
        )
        await self.session.flush()
        await self._insert_assignees(task.id, task.assigned_to)
        return task

    async def get(self, task_id: UUID) -> Task | None:
        """Get a task by ID, always reading the current committed row."""
        result = await self.session.execute(
            select(TaskTable)
            .where(TaskTable.id == task_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        assignees = await self._assignees_for([task_id])
        return self._row_to_model(row, assignees.get(task_id, frozenset()))

    async def list_tasks(
        self,
        status: TaskStatus | None = None,
        priority: TaskPriority | None = None,
        team_id: UUID | None = None,
        assigned_to: UUID | None = None,
        involving: UUID | None = None,
        visible_team_id: UUID | None = None,
    ) -> list[Task]:
        """
        List tasks, newest first.

        `involving` restricts to tasks created by or assigned to that user;
        `visible_team_id` restricts to one team. Both are coarse scopes, the
        authorization gate still has the final word.
        """
        query = select(TaskTable)

        if involving is not None:
            query = query.where(
                or_(
                    TaskTable.created_by == involving,
                    TaskTable.id.in_(
                        select(TaskAssigneeTable.task_id).where(
                            TaskAssigneeTable.user_id == involving
                        )
                    ),
                )
            )
        if visible_team_id is not None:
            query = query.where(TaskTable.team_id == visible_team_id)

        if status:
            query = query.where(TaskTable.status == status)
        if priority:
            query = query.where(TaskTable.priority == priority)
        if team_id:
            query = query.where(TaskTable.team_id == team_id)
        if assigned_to:
            query = query.where(
                TaskTable.id.in_(
                    select(TaskAssigneeTable.task_id).where(
                        TaskAssigneeTable.user_id == assigned_to
                    )
                )
            )

        query = query.order_by(TaskTable.created_at.desc())
        result = await self.session.execute(query.execution_options(populate_existing=True))
        rows = list(result.scalars().all())
        assignees = await self._assignees_for([r.id for r in rows])
        return [self._row_to_model(r, assignees.get(r.id, frozenset())) for r in rows]

    async def compare_and_swap(self, new: Task, expected_version: int) -> bool:
        """
        Persist new only if the stored version still equals expected_version.

        Returns False when another writer committed first; nothing is written
        in that case.
        """
        result = await self.session.execute(
            update(TaskTable)
            .where(TaskTable.id == new.id, TaskTable.version == expected_version)
            .values(
                title=new.title,
                description=new.description,
                status=new.status,
                priority=new.priority,
                team_id=new.team_id,
                due_date=new.due_date,
                progress=new.progress,
                updated_at=new.updated_at,
                version=new.version,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        await self.session.execute(
            delete(TaskAssigneeTable).where(TaskAssigneeTable.task_id == new.id)
        )
        await self._insert_assignees(new.id, new.assigned_to)
        return True

    async def delete_if_version(self, task_id: UUID, expected_version: int) -> bool:
        """Delete the task (and dependents) if it is still at expected_version."""
        result = await self.session.execute(
            delete(TaskTable)
            .where(TaskTable.id == task_id, TaskTable.version == expected_version)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self.session.execute(
            delete(TaskAssigneeTable).where(TaskAssigneeTable.task_id == task_id)
        )
        await self.session.execute(delete(CommentTable).where(CommentTable.task_id == task_id))
        return True

    async def _insert_assignees(self, task_id: UUID, user_ids: Iterable[UUID]) -> None:
        rows = [{"task_id": task_id, "user_id": uid} for uid in user_ids]
        if rows:
            await self.session.execute(insert(TaskAssigneeTable), rows)

    async def _assignees_for(self, task_ids: list[UUID]) -> dict[UUID, frozenset[UUID]]:
        if not task_ids:
            return {}
        result = await self.session.execute(
            select(TaskAssigneeTable.task_id, TaskAssigneeTable.user_id).where(
                TaskAssigneeTable.task_id.in_(task_ids)
            )
        )
        grouped: dict[UUID, set[UUID]] = {}
        for task_id, user_id in result.all():
            grouped.setdefault(task_id, set()).add(user_id)
        return {k: frozenset(v) for k, v in grouped.items()}

    def _row_to_model(self, row: TaskTable, assignees: frozenset[UUID]) -> Task:
        return Task(
            id=row.id,
            title=row.title,
            description=row.description,
            status=row.status,
            priority=row.priority,
            created_by=row.created_by,
            assigned_to=assignees,
            team_id=row.team_id,
            due_date=ensure_aware(row.due_date),
            progress=row.progress,
            created_at=ensure_aware(row.created_at),
            updated_at=ensure_aware(row.updated_at),
            version=row.version,
        )


class CommentRepository:
    """Repository for task comments."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, task_id: UUID, author_id: UUID, content: str) -> Comment:
        row = CommentTable(
            id=uuid4(),
            task_id=task_id,
            author_id=author_id,
            content=content,
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def list_for_task(self, task_id: UUID) -> list[Comment]:
        """Comments on a task, newest first."""
        result = await self.session.execute(
            select(CommentTable)
            .where(CommentTable.task_id == task_id)
            .order_by(CommentTable.created_at.desc())
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    def _row_to_model(self, row: CommentTable) -> Comment:
        return Comment(
            id=row.id,
            task_id=row.task_id,
            author_id=row.author_id,
            content=row.content,
            created_at=ensure_aware(row.created_at),
        )


class NotificationRepository:
    """Repository for notifications."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_many(self, drafts: list[NotificationDraft]) -> list[Notification]:
        """Insert a batch of drafts in one statement."""
        if not drafts:
            return []
        now = utc_now()
        notifications = [
            Notification(
                id=uuid4(),
                recipient_id=d.recipient_id,
                type=d.type,
                payload=d.payload,
                created_at=now,
            )
            for d in drafts
        ]
        await self.session.execute(
            insert(NotificationTable),
            [
                {
                    "id": n.id,
                    "user_id": n.recipient_id,
                    "type": n.type,
                    "payload": n.payload,
                    "read_at": None,
                    "created_at": n.created_at,
                }
                for n in notifications
            ],
        )
        return notifications

    async def list_for_user(self, user_id: UUID, limit: int = 50) -> list[Notification]:
        result = await self.session.execute(
            select(NotificationTable)
            .where(NotificationTable.user_id == user_id)
            .order_by(NotificationTable.created_at.desc())
            .limit(limit)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def unread_count(self, user_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(NotificationTable)
            .where(NotificationTable.user_id == user_id, NotificationTable.read_at.is_(None))
        )
        return int(result.scalar_one())

    async def mark_read(self, user_id: UUID, notification_ids: list[UUID] | None = None) -> int:
        """
        Set read_at on the caller's notifications.

        With ids, only those (still scoped to user_id); without, every unread one.
        Already-read notifications keep their original read_at.
        """
        query = update(NotificationTable).where(
            NotificationTable.user_id == user_id,
            NotificationTable.read_at.is_(None),
        )
        if notification_ids:
            query = query.where(NotificationTable.id.in_(notification_ids))
        result = await self.session.execute(
            query.values(read_at=utc_now()).execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def _row_to_model(self, row: NotificationTable) -> Notification:
        return Notification(
            id=row.id,
            recipient_id=row.user_id,
            type=row.type,
            payload=row.payload or {},
            read_at=_aware(row.read_at),
            created_at=ensure_aware(row.created_at),
        )


class ChangeLogRepository:
    """Repository for the append-only change log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, event: AuditEvent, created_at: datetime | None = None) -> ChangeLogEntry:
        """Append one record. There is deliberately no update method."""
        row = ChangeLogTable(
            id=uuid4(),
            event_type=event.event_type,
            user_id=event.actor.user_id,
            user_email=event.actor.user_email,
            user_name=event.actor.user_name,
            user_role=event.actor.user_role,
            user_ip=event.source_ip,
            target_type=event.target_type,
            target_id=event.target_id,
            target_name=event.target_name,
            action=event.action,
            description=event.description,
            metadata_=event.metadata,
            changes=event.changes,
            created_at=created_at or utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    def _filtered(
        self,
        query,
        event_type: ChangeEventType | None = None,
        user_id: UUID | None = None,
        target_type: TargetType | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        search: str | None = None,
    ):
        if event_type:
            query = query.where(ChangeLogTable.event_type == event_type)
        if user_id:
            query = query.where(ChangeLogTable.user_id == user_id)
        if target_type:
            query = query.where(ChangeLogTable.target_type == target_type)
        if start_date:
            query = query.where(ChangeLogTable.created_at >= start_date)
        if end_date:
            query = query.where(ChangeLogTable.created_at <= end_date)
        if search:
            # Search text is literal; % and _ must not act as wildcards
            escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            pattern = f"%{escaped}%"
            query = query.where(
                or_(
                    ChangeLogTable.description.ilike(pattern, escape="\\"),
                    ChangeLogTable.action.ilike(pattern, escape="\\"),
                    ChangeLogTable.user_email.ilike(pattern, escape="\\"),
                    ChangeLogTable.user_name.ilike(pattern, escape="\\"),
                    ChangeLogTable.target_name.ilike(pattern, escape="\\"),
                )
            )
        return query

    async def query(
        self,
        page: int = 1,
        limit: int = 50,
        **filters: Any,
    ) -> tuple[list[ChangeLogEntry], int]:
        """Filtered page of records (newest first) and the total match count."""
        base = self._filtered(select(ChangeLogTable), **filters)
        total_query = self._filtered(select(func.count()).select_from(ChangeLogTable), **filters)

        total = int((await self.session.execute(total_query)).scalar_one())
        result = await self.session.execute(
            base.order_by(ChangeLogTable.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return [self._row_to_model(r) for r in result.scalars().all()], total

    async def export(self, **filters: Any) -> list[ChangeLogEntry]:
        result = await self.session.execute(
            self._filtered(select(ChangeLogTable), **filters).order_by(
                ChangeLogTable.created_at.desc()
            )
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def stats(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        top_users: int = 10,
    ) -> dict[str, Any]:
        """Counts per event type and the most active users in a window."""
        window = {"start_date": start_date, "end_date": end_date}

        total = int(
            (
                await self.session.execute(
                    self._filtered(select(func.count()).select_from(ChangeLogTable), **window)
                )
            ).scalar_one()
        )

        count_col = func.count().label("count")
        by_type = await self.session.execute(
            self._filtered(
                select(ChangeLogTable.event_type, count_col).group_by(ChangeLogTable.event_type),
                **window,
            ).order_by(count_col.desc())
        )

        user_count = func.count().label("count")
        by_user = await self.session.execute(
            self._filtered(
                select(
                    ChangeLogTable.user_id,
                    func.max(ChangeLogTable.user_name).label("user_name"),
                    func.max(ChangeLogTable.user_email).label("user_email"),
                    user_count,
                ).group_by(ChangeLogTable.user_id),
                **window,
            )
            .order_by(user_count.desc())
            .limit(top_users)
        )

        return {
            "total": total,
            "by_event_type": [
                {"event_type": event_type.value, "count": count}
                for event_type, count in by_type.all()
            ],
            "top_users": [
                {
                    "user_id": str(uid) if uid else None,
                    "user_name": name,
                    "user_email": email,
                    "count": count,
                }
                for uid, name, email, count in by_user.all()
            ],
        }

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete records created strictly before cutoff."""
        result = await self.session.execute(
            delete(ChangeLogTable)
            .where(ChangeLogTable.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def _row_to_model(self, row: ChangeLogTable) -> ChangeLogEntry:
        return ChangeLogEntry(
            id=row.id,
            event_type=row.event_type,
            user_id=row.user_id,
            user_email=row.user_email,
            user_name=row.user_name,
            user_role=row.user_role,
            user_ip=row.user_ip,
            target_type=row.target_type,
            target_id=row.target_id,
            target_name=row.target_name,
            action=row.action,
            description=row.description,
            metadata=row.metadata_ or {},
            changes=row.changes or {},
            created_at=ensure_aware(row.created_at),
        )

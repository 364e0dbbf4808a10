"""CTMS core engine - task mutations and their post-commit side effects."""

import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from ctms.config import settings
from ctms.db.base import get_session
from ctms.db.repositories import (
    CommentRepository,
    NotificationRepository,
    TaskRepository,
    TeamRepository,
    UserRepository,
)
from ctms.engine.audit import (
    AuditRecorder,
    SessionFactory,
    comment_event,
    task_event,
    user_event,
)
from ctms.engine.errors import (
    ConflictError,
    NotFound,
    ReferentialError,
    TaskNotFound,
    ValidationError,
)
from ctms.engine.fanout import compute_comment_notifications, compute_notifications
from ctms.engine.mutations import apply_patch, build_task, deletion_diff
from ctms.engine.policy import (
    NewTaskRequest,
    TaskRelation,
    UserChange,
    authorize,
    require,
)
from ctms.models import (
    Actor,
    AuditEvent,
    Comment,
    Notification,
    NotificationDraft,
    Operation,
    RealtimeEvent,
    Role,
    Task,
    TaskCreate,
    TaskDiff,
    TaskPatch,
    TaskPriority,
    TaskStatus,
    TaskView,
    TeamRef,
    User,
    UserRef,
)
from ctms.observability.metrics import metrics
from ctms.realtime.broadcaster import EventPublisher
from ctms.tasks.side_effects import SideEffectJob, SideEffectQueue

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class CTMSEngine:
    """
    Coordinates every state-changing operation.

    Order per mutation: authorize, validate, conditional write, commit,
    read back, then enqueue notify/broadcast/audit jobs that run on their own
    sessions. The request never waits on those jobs.
    """

    def __init__(
        self,
        session: AsyncSession,
        publisher: EventPublisher,
        side_effects: SideEffectQueue,
        session_factory: SessionFactory = get_session,
        recorder: Optional[AuditRecorder] = None,
    ):
        self.session = session
        self.publisher = publisher
        self.side_effects = side_effects
        self.session_factory = session_factory
        self.recorder = recorder or AuditRecorder(session_factory)

        self.tasks = TaskRepository(session)
        self.users = UserRepository(session)
        self.teams = TeamRepository(session)
        self.comments = CommentRepository(session)
        self.notifications = NotificationRepository(session)

    # =========================================================================
    # Views
    # =========================================================================

    async def present_many(self, tasks: list[Task]) -> list[TaskView]:
        """Expand user and team references for client responses."""
        user_ids: set[UUID] = set()
        for task in tasks:
            user_ids.add(task.created_by)
            user_ids |= task.assigned_to
        users = await self.users.get_many(user_ids)
        teams = await self.teams.get_many(t.team_id for t in tasks)

        def ref(user_id: UUID) -> Optional[UserRef]:
            user = users.get(user_id)
            if user is None:
                return None
            return UserRef(id=user.id, full_name=user.full_name, email=user.email)

        views = []
        for task in tasks:
            team = teams.get(task.team_id) if task.team_id else None
            views.append(
                TaskView(
                    id=task.id,
                    title=task.title,
                    description=task.description,
                    status=task.status,
                    priority=task.priority,
                    created_by=ref(task.created_by),
                    assigned_to=[
                        r
                        for r in (ref(uid) for uid in sorted(task.assigned_to, key=str))
                        if r is not None
                    ],
                    team=TeamRef(id=team.id, name=team.name) if team else None,
                    due_date=task.due_date,
                    progress=task.progress,
                    created_at=task.created_at,
                    updated_at=task.updated_at,
                    version=task.version,
                )
            )
        return views

    async def present(self, task: Task) -> TaskView:
        return (await self.present_many([task]))[0]

    # =========================================================================
    # Tasks
    # =========================================================================

    async def _load_task(self, task_id: UUID) -> Task:
        task = await self.tasks.get(task_id)
        if task is None:
            raise TaskNotFound(str(task_id))
        return task

    async def _check_assignees_exist(self, user_ids) -> None:
        missing = await self.users.missing_ids(user_ids)
        if missing:
            raise ReferentialError([str(uid) for uid in missing])

    async def create_task(
        self,
        actor: Actor,
        draft: TaskCreate,
        source_ip: Optional[str] = None,
    ) -> TaskView:
        """Create a task. Members may only assign it to themselves."""
        requested = frozenset(draft.assigned_to) if draft.assigned_to else None
        require(actor, Operation.CREATE_TASK, NewTaskRequest(requested))

        task, diff = build_task(draft, actor)
        await self._check_assignees_exist(task.assigned_to)
        if draft.team_id is not None and await self.teams.get(draft.team_id) is None:
            raise NotFound("Team", str(draft.team_id))

        await self.tasks.create(task)
        await self.session.commit()

        stored = await self._load_task(task.id)
        view = await self.present(stored)
        logger.info(f"Task {task.id} created by {actor.id}")

        self._dispatch_task_effects(actor, diff, task, view, source_ip)
        return view

    async def get_task(self, actor: Actor, task_id: UUID) -> TaskView:
        task = await self._load_task(task_id)
        require(actor, Operation.READ_TASK, task)
        return await self.present(task)

    async def list_tasks(
        self,
        actor: Actor,
        status: Optional[TaskStatus] = None,
        priority: Optional[TaskPriority] = None,
        team_id: Optional[UUID] = None,
        assigned_to: Optional[UUID] = None,
    ) -> list[TaskView]:
        """Tasks visible to actor, newest first, with optional filters."""
        scope: dict[str, Any] = {}
        if actor.role is Role.MEMBER:
            scope["involving"] = actor.id
        elif actor.role is Role.TEAM_LEAD:
            if actor.team_id is None:
                return []
            scope["visible_team_id"] = actor.team_id

        tasks = await self.tasks.list_tasks(
            status=status,
            priority=priority,
            team_id=team_id,
            assigned_to=assigned_to,
            **scope,
        )
        visible = [
            t for t in tasks if authorize(actor, Operation.READ_TASK, TaskRelation.of(t)).allowed
        ]
        return await self.present_many(visible)

    async def update_task(
        self,
        actor: Actor,
        task_id: UUID,
        patch: TaskPatch,
        source_ip: Optional[str] = None,
    ) -> TaskView:
        """
        Apply a partial update with a compare-and-swap on the task version.

        When another writer commits between our read and our write, the read
        is repeated and the diff recomputed, so the diff always describes the
        state actually replaced.
        """
        attempts = settings.cas_max_retries
        for attempt in range(1, attempts + 1):
            current = await self._load_task(task_id)
            require(actor, Operation.UPDATE_TASK, current)

            new, diff = apply_patch(current, patch, actor)
            if diff.is_empty():
                await self.session.rollback()
                return await self.present(current)
            if diff.assigned_to is not None:
                await self._check_assignees_exist(diff.assigned_to.added)

            if await self.tasks.compare_and_swap(new, expected_version=current.version):
                await self.session.commit()
                break

            await self.session.rollback()
            metrics.inc_counter("tasks.cas_conflicts")
            logger.info(
                f"Task {task_id} changed underneath update (attempt {attempt}/{attempts}), retrying"
            )
        else:
            raise ConflictError(str(task_id), attempts)

        stored = await self._load_task(task_id)
        view = await self.present(stored)
        logger.info(f"Task {task_id} updated by {actor.id} to version {new.version}")

        self._dispatch_task_effects(actor, diff, new, view, source_ip)
        return view

    async def delete_task(
        self,
        actor: Actor,
        task_id: UUID,
        source_ip: Optional[str] = None,
    ) -> Task:
        """Delete a task. Returns the last known state."""
        attempts = settings.cas_max_retries
        for _ in range(attempts):
            current = await self._load_task(task_id)
            require(actor, Operation.DELETE_TASK, current)
            if await self.tasks.delete_if_version(task_id, current.version):
                await self.session.commit()
                break
            await self.session.rollback()
            metrics.inc_counter("tasks.cas_conflicts")
        else:
            raise ConflictError(str(task_id), attempts)

        logger.info(f"Task {task_id} deleted by {actor.id}")
        diff = deletion_diff(current)
        self._dispatch_task_effects(actor, diff, current, None, source_ip)
        return current

    # =========================================================================
    # Comments
    # =========================================================================

    async def add_comment(
        self,
        actor: Actor,
        task_id: UUID,
        content: Optional[str],
        source_ip: Optional[str] = None,
    ) -> Comment:
        task = await self._load_task(task_id)
        require(actor, Operation.COMMENT_TASK, task)
        content = (content or "").strip()
        if not content:
            raise ValidationError("Comment content is required", field="content")

        comment = await self.comments.create(task.id, actor.id, content)
        await self.session.commit()
        comment = comment.model_copy(
            update={"author": UserRef(id=actor.id, full_name=actor.full_name, email=actor.email)}
        )

        drafts = compute_comment_notifications(comment, task, actor)
        self._enqueue_notifications(drafts)
        self._enqueue_broadcast(
            RealtimeEvent.COMMENT_ADDED,
            {"task_id": str(task.id), "comment": comment.model_dump(mode="json")},
        )
        self._enqueue_audit(comment_event(comment, task, actor.snapshot(), source_ip))
        return comment

    async def list_comments(self, actor: Actor, task_id: UUID) -> list[Comment]:
        task = await self._load_task(task_id)
        require(actor, Operation.READ_TASK, task)
        comments = await self.comments.list_for_task(task_id)
        authors = await self.users.get_many(c.author_id for c in comments)
        return [
            c.model_copy(
                update={
                    "author": UserRef(id=a.id, full_name=a.full_name, email=a.email)
                    if (a := authors.get(c.author_id))
                    else None
                }
            )
            for c in comments
        ]

    # =========================================================================
    # Notifications (recipient side)
    # =========================================================================

    async def list_notifications(self, actor: Actor) -> tuple[list[Notification], int]:
        items = await self.notifications.list_for_user(actor.id, settings.notifications_page_size)
        unread = await self.notifications.unread_count(actor.id)
        return items, unread

    async def mark_notifications_read(
        self,
        actor: Actor,
        notification_ids: Optional[list[UUID]] = None,
    ) -> int:
        """Mark the given (or all unread) notifications of the caller as read."""
        count = await self.notifications.mark_read(actor.id, notification_ids)
        await self.session.commit()
        return count

    # =========================================================================
    # Users
    # =========================================================================

    async def _check_team(self, team_id: Optional[UUID]) -> None:
        if team_id is not None and await self.teams.get(team_id) is None:
            raise NotFound("Team", str(team_id))

    async def create_user(
        self,
        actor: Actor,
        full_name: str,
        email: str,
        role: Role = Role.MEMBER,
        team_id: Optional[UUID] = None,
        source_ip: Optional[str] = None,
    ) -> User:
        require(actor, Operation.MANAGE_USER, UserChange(role=role, team_id=team_id))
        if not full_name or not full_name.strip():
            raise ValidationError("Full name is required", field="full_name")
        if await self.users.get_by_email(email) is not None:
            raise ValidationError("Email already registered", field="email")
        await self._check_team(team_id)

        user = await self.users.create(full_name=full_name.strip(), email=email, role=role, team_id=team_id)
        await self.session.commit()

        self._enqueue_audit(user_event(True, user, actor.snapshot(), source_ip))
        return user

    async def change_user_role(
        self,
        actor: Actor,
        user_id: UUID,
        role: Role,
        team_id: Optional[UUID] = _UNSET,
        source_ip: Optional[str] = None,
    ) -> User:
        """
        Change a user's role and, optionally, team.

        Omitting team_id keeps the current team, except that admins never keep one.
        """
        requested_team = None if team_id is _UNSET else team_id
        require(actor, Operation.MANAGE_USER, UserChange(role=role, team_id=requested_team))

        previous = await self.users.get(user_id)
        if previous is None:
            raise NotFound("User", str(user_id))

        if role is Role.ADMIN:
            new_team = None
        elif team_id is _UNSET:
            new_team = previous.team_id
        else:
            new_team = team_id
        await self._check_team(new_team)

        user = await self.users.update_role(user_id, role, new_team)
        await self.session.commit()

        self._enqueue_audit(user_event(False, user, actor.snapshot(), source_ip, previous=previous))
        return user

    # =========================================================================
    # Side effects
    # =========================================================================

    def _dispatch_task_effects(
        self,
        actor: Actor,
        diff: TaskDiff,
        task: Task,
        view: Optional[TaskView],
        source_ip: Optional[str],
    ) -> None:
        """Enqueue the three independent post-commit effects of one task mutation."""
        drafts = compute_notifications(diff, task, actor)
        event = task_event(diff, task, actor.snapshot(), source_ip)

        self._enqueue_notifications(drafts)

        if diff.kind == "deleted":
            self._enqueue_broadcast(RealtimeEvent.TASK_DELETED, diff.deleted)
        else:
            payload = view.model_dump(mode="json") if view else {}
            name = RealtimeEvent.TASK_CREATED if diff.kind == "created" else RealtimeEvent.TASK_UPDATED
            self._enqueue_broadcast(name, payload)

            added = [uid for uid in (diff.assigned_to.added if diff.assigned_to else []) if uid != actor.id]
            if added:
                self._enqueue_broadcast(
                    RealtimeEvent.TASK_ASSIGNED,
                    {"task": payload, "assigned_by": actor.full_name},
                    targets=added,
                )

        self._enqueue_audit(event)

    def _enqueue_notifications(self, drafts: list[NotificationDraft]) -> None:
        if not drafts:
            return

        async def write() -> None:
            async with self.session_factory() as session:
                created = await NotificationRepository(session).create_many(drafts)
            for notification in created:
                await self.publisher.publish(
                    RealtimeEvent.NOTIFICATION_NEW,
                    notification.model_dump(mode="json"),
                    targets=[notification.recipient_id],
                )

        self.side_effects.enqueue(SideEffectJob(name="notify", run=write))

    def _enqueue_broadcast(
        self,
        event: RealtimeEvent,
        payload: Any,
        targets: Optional[list[UUID]] = None,
    ) -> None:
        async def send() -> None:
            await self.publisher.publish(event, payload, targets=targets)

        self.side_effects.enqueue(SideEffectJob(name="broadcast", run=send))

    def _enqueue_audit(self, event: AuditEvent) -> None:
        async def record() -> None:
            await self.recorder.record(event)

        self.side_effects.enqueue(
            SideEffectJob(
                name="audit",
                run=record,
                max_attempts=settings.audit_max_attempts,
                backoff_seconds=settings.audit_retry_backoff_seconds,
            )
        )

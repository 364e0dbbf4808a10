"""REST API router."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ctms import __version__
from ctms.api.deps import (
    get_client_ip,
    get_current_actor,
    get_db_session,
    get_engine,
    get_side_effects,
)
from ctms.api.schemas import (
    ChangeLogPage,
    ChangeLogStats,
    ChangeRoleRequest,
    ClearResponse,
    CommentEnvelope,
    CommentListResponse,
    CreateCommentRequest,
    CreateUserRequest,
    HealthResponse,
    MarkReadRequest,
    MarkReadResponse,
    MessageResponse,
    NotificationListResponse,
    TaskEnvelope,
    TaskListResponse,
    UserEnvelope,
)
from ctms.engine.changelog import ChangeLogService
from ctms.engine.core import CTMSEngine
from ctms.engine.policy import require
from ctms.models import (
    Actor,
    ChangeEventType,
    Operation,
    TargetType,
    TaskCreate,
    TaskPatch,
    TaskPriority,
    TaskStatus,
)
from ctms.observability.metrics import metrics
from ctms.realtime.broadcaster import connection_manager
from ctms.tasks.side_effects import SideEffectQueue

router = APIRouter()


# ============================================================================
# Health & Metrics
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(side_effects: SideEffectQueue = Depends(get_side_effects)):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        realtime_connections=len(connection_manager.connections),
        pending_side_effects=side_effects.pending,
    )


@router.get("/metrics")
async def get_metrics(actor: Actor = Depends(get_current_actor)):
    """In-process counters, gauges and timings. Admin only."""
    require(actor, Operation.VIEW_AUDIT)
    return metrics.snapshot()


# ============================================================================
# Tasks
# ============================================================================


@router.post("/tasks", response_model=TaskEnvelope, status_code=201)
async def create_task(
    request: Request,
    body: TaskCreate,
    actor: Actor = Depends(get_current_actor),
    engine: CTMSEngine = Depends(get_engine),
):
    task = await engine.create_task(actor, body, source_ip=get_client_ip(request))
    return TaskEnvelope(message="Task created successfully", task=task)


@router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(
    status: Optional[TaskStatus] = Query(None),
    priority: Optional[TaskPriority] = Query(None),
    team: Optional[UUID] = Query(None),
    assigned_to: Optional[UUID] = Query(None),
    actor: Actor = Depends(get_current_actor),
    engine: CTMSEngine = Depends(get_engine),
):
    """List tasks visible to the caller, newest first."""
    tasks = await engine.list_tasks(
        actor,
        status=status,
        priority=priority,
        team_id=team,
        assigned_to=assigned_to,
    )
    return TaskListResponse(tasks=tasks, count=len(tasks))


@router.get("/tasks/{task_id}", response_model=TaskEnvelope)
async def get_task(
    task_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: CTMSEngine = Depends(get_engine),
):
    task = await engine.get_task(actor, task_id)
    return TaskEnvelope(task=task)


@router.patch("/tasks/{task_id}", response_model=TaskEnvelope)
async def update_task(
    request: Request,
    task_id: UUID,
    body: TaskPatch,
    actor: Actor = Depends(get_current_actor),
    engine: CTMSEngine = Depends(get_engine),
):
    """
    Partially update a task.

    Reassignment by callers without the right to reassign is ignored rather
    than rejected; the other fields still apply.
    """
    task = await engine.update_task(actor, task_id, body, source_ip=get_client_ip(request))
    return TaskEnvelope(message="Task updated successfully", task=task)


@router.delete("/tasks/{task_id}", response_model=MessageResponse)
async def delete_task(
    request: Request,
    task_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: CTMSEngine = Depends(get_engine),
):
    await engine.delete_task(actor, task_id, source_ip=get_client_ip(request))
    return MessageResponse(message="Task deleted successfully")


# ============================================================================
# Comments
# ============================================================================


@router.post("/tasks/{task_id}/comments", response_model=CommentEnvelope, status_code=201)
async def add_comment(
    request: Request,
    task_id: UUID,
    body: CreateCommentRequest,
    actor: Actor = Depends(get_current_actor),
    engine: CTMSEngine = Depends(get_engine),
):
    comment = await engine.add_comment(actor, task_id, body.content, source_ip=get_client_ip(request))
    return CommentEnvelope(message="Comment added successfully", comment=comment)


@router.get("/tasks/{task_id}/comments", response_model=CommentListResponse)
async def list_comments(
    task_id: UUID,
    actor: Actor = Depends(get_current_actor),
    engine: CTMSEngine = Depends(get_engine),
):
    comments = await engine.list_comments(actor, task_id)
    return CommentListResponse(comments=comments, count=len(comments))


# ============================================================================
# Notifications
# ============================================================================


@router.get("/notifications", response_model=NotificationListResponse)
async def list_notifications(
    actor: Actor = Depends(get_current_actor),
    engine: CTMSEngine = Depends(get_engine),
):
    notifications, unread = await engine.list_notifications(actor)
    return NotificationListResponse(notifications=notifications, unread_count=unread)


@router.patch("/notifications/mark-read", response_model=MarkReadResponse)
async def mark_notifications_read(
    body: Optional[MarkReadRequest] = None,
    actor: Actor = Depends(get_current_actor),
    engine: CTMSEngine = Depends(get_engine),
):
    ids = body.notification_ids if body else None
    updated = await engine.mark_notifications_read(actor, ids)
    return MarkReadResponse(message="Notifications marked as read", updated=updated)


# ============================================================================
# Change log
# ============================================================================


@router.get("/changelog", response_model=ChangeLogPage)
async def list_changelog(
    event_type: Optional[ChangeEventType] = Query(None),
    user_id: Optional[UUID] = Query(None),
    target_type: Optional[TargetType] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await ChangeLogService(session).list_logs(
        actor,
        page=page,
        limit=limit,
        event_type=event_type,
        user_id=user_id,
        target_type=target_type,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )


@router.get("/changelog/stats", response_model=ChangeLogStats)
async def changelog_stats(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await ChangeLogService(session).stats(actor, start_date=start_date, end_date=end_date)


@router.get("/changelog/export")
async def export_changelog(
    event_type: Optional[ChangeEventType] = Query(None),
    user_id: Optional[UUID] = Query(None),
    target_type: Optional[TargetType] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    body = await ChangeLogService(session).export_csv(
        actor,
        event_type=event_type,
        user_id=user_id,
        target_type=target_type,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=changelog.csv"},
    )


@router.get("/changelog/event-types")
async def changelog_event_types(
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return {"event_types": ChangeLogService(session).event_types(actor)}


@router.delete("/changelog/clear", response_model=ClearResponse)
async def clear_changelog(
    days: Optional[int] = Query(None, ge=0),
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Purge change log records older than `days` days (default 90)."""
    deleted = await ChangeLogService(session).clear(actor, days)
    return ClearResponse(message=f"Deleted {deleted} change log record(s)", deleted_count=deleted)


# ============================================================================
# Users
# ============================================================================


@router.post("/users", response_model=UserEnvelope, status_code=201)
async def create_user(
    request: Request,
    body: CreateUserRequest,
    actor: Actor = Depends(get_current_actor),
    engine: CTMSEngine = Depends(get_engine),
):
    user = await engine.create_user(
        actor,
        full_name=body.full_name,
        email=body.email,
        role=body.role,
        team_id=body.team_id,
        source_ip=get_client_ip(request),
    )
    return UserEnvelope(message="User created successfully", user=user)


@router.patch("/users/{user_id}/role", response_model=UserEnvelope)
async def change_user_role(
    request: Request,
    user_id: UUID,
    body: ChangeRoleRequest,
    actor: Actor = Depends(get_current_actor),
    engine: CTMSEngine = Depends(get_engine),
):
    kwargs = {}
    if "team_id" in body.model_fields_set:
        kwargs["team_id"] = body.team_id
    user = await engine.change_user_role(
        actor,
        user_id,
        body.role,
        source_ip=get_client_ip(request),
        **kwargs,
    )
    return UserEnvelope(message="User role updated successfully", user=user)

"""
Concurrency tests for the conditional task update.

The diff must always describe the state actually replaced: when another
writer commits between our read and our write, we re-read and diff again.
"""

import pytest

from ctms.db.repositories import ChangeLogRepository, TaskRepository
from ctms.engine.errors import ConflictError
from ctms.models import ChangeEventType, TaskPatch, TaskStatus
from ctms.observability.metrics import metrics


async def status_changes(session_factory):
    async with session_factory() as session:
        entries, _ = await ChangeLogRepository(session).query(
            limit=100, event_type=ChangeEventType.TASK_STATUS_CHANGED
        )
    return [e.changes["status"] for e in entries]


@pytest.mark.asyncio
async def test_lost_race_recomputes_diff(seed, session_factory, make_engine, create_task, side_effects, load_task):
    task = await create_task(seed.actor("lead"), assigned_to=[seed.alice.id, seed.bob.id])

    async with session_factory() as session:
        engine_a = make_engine(session)
        original_get = engine_a.tasks.get
        reads = 0

        async def racing_get(task_id):
            nonlocal reads
            snapshot = await original_get(task_id)
            reads += 1
            if reads == 1:
                # Bob commits after A has read but before A writes
                async with session_factory() as other:
                    await make_engine(other).update_task(
                        seed.actor("bob"), task_id, TaskPatch(status=TaskStatus.IN_PROGRESS)
                    )
            return snapshot

        engine_a.tasks.get = racing_get
        view = await engine_a.update_task(
            seed.actor("lead"), task.id, TaskPatch(status=TaskStatus.DONE)
        )
    await side_effects.drain(timeout=5.0)

    assert view.status is TaskStatus.DONE
    assert view.version == 3
    assert metrics.counter_value("tasks.cas_conflicts") == 1

    changes = await status_changes(session_factory)
    assert {"old": "todo", "new": "in_progress"} in changes
    assert {"old": "in_progress", "new": "done"} in changes
    assert {"old": "todo", "new": "done"} not in changes


@pytest.mark.asyncio
async def test_conflict_after_exhausting_retries(seed, session_factory, make_engine, create_task, load_task):
    task = await create_task(seed.actor("lead"), assigned_to=[seed.alice.id])

    async with session_factory() as session:
        engine_a = make_engine(session)
        original_get = engine_a.tasks.get
        reads = 0

        async def always_loses(task_id):
            nonlocal reads
            snapshot = await original_get(task_id)
            reads += 1
            async with session_factory() as other:
                await make_engine(other).update_task(
                    seed.actor("admin"), task_id, TaskPatch(title=f"Edited {reads}")
                )
            return snapshot

        engine_a.tasks.get = always_loses
        with pytest.raises(ConflictError) as exc_info:
            await engine_a.update_task(
                seed.actor("lead"), task.id, TaskPatch(status=TaskStatus.REVIEW)
            )

    assert exc_info.value.status_code == 409
    assert metrics.counter_value("tasks.cas_conflicts") == 3
    stored = await load_task(task.id)
    assert stored.status is TaskStatus.TODO
    assert stored.title == "Edited 3"


@pytest.mark.asyncio
async def test_compare_and_swap_rejects_stale_version(seed, session_factory, create_task, load_task):
    task = await create_task(seed.actor("lead"), assigned_to=[seed.alice.id])
    current = await load_task(task.id)

    async with session_factory() as session:
        repo = TaskRepository(session)
        first = current.model_copy(update={"title": "First", "version": 2})
        assert await repo.compare_and_swap(first, expected_version=1) is True
        await session.commit()

        stale = current.model_copy(
            update={"title": "Stale", "version": 2, "assigned_to": frozenset({seed.bob.id})}
        )
        assert await repo.compare_and_swap(stale, expected_version=1) is False
        await session.commit()

    stored = await load_task(task.id)
    assert stored.title == "First"
    assert stored.assigned_to == frozenset({seed.alice.id})

# tests/test_authority.py

from __future__ import annotations

import asyncio
import threading

import pytest

from guardian_sync.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from guardian_sync.tasks.task_models import TaskStatus, new_id

from .fakes import task_payload


@pytest.mark.asyncio
async def test_create_notifies_dependent_and_stamps_version(authority, family, sink, clock) -> None:
    sink.connected |= {family.guardian.id, family.dependent.id}

    task, created = await authority.create_task(family.guardian, task_payload(family.dependent.id))

    assert created is True
    assert task.status == TaskStatus.PENDING
    assert task.last_updated == "2025-01-01T08:00:00.000000Z"
    assert sink.types_for(family.dependent.id) == ["new_task"]
    assert sink.types_for(family.guardian.id) == []


@pytest.mark.asyncio
async def test_create_with_same_id_is_a_noop(authority, family, task_store) -> None:
    task_id = new_id()
    first, created1 = await authority.create_task(family.guardian, task_payload(family.dependent.id, id=task_id))
    again, created2 = await authority.create_task(
        family.guardian, task_payload(family.dependent.id, id=task_id, title="Changed")
    )

    assert (created1, created2) == (True, False)
    assert again.title == first.title
    assert task_store.count_tasks() == 1


@pytest.mark.asyncio
async def test_create_rejects_unlinked_dependent_and_dependent_requester(authority, family) -> None:
    with pytest.raises(AuthorizationError):
        await authority.create_task(family.other, task_payload(family.dependent.id))
    with pytest.raises(AuthorizationError):
        await authority.create_task(family.dependent, task_payload(family.dependent.id))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "override",
    [{"title": "  "}, {"date": "01/01/2025"}, {"time": "8am"}, {"id": "not-a-uuid"}],
)
async def test_create_validates_payload(authority, family, override) -> None:
    with pytest.raises(ValidationError):
        await authority.create_task(family.guardian, task_payload(family.dependent.id, **override))


@pytest.mark.asyncio
async def test_status_update_notifies_both_parties(authority, family, sink, clock) -> None:
    task, _ = await authority.create_task(family.guardian, task_payload(family.dependent.id))
    sink.connected |= {family.guardian.id, family.dependent.id}

    clock.advance(5)
    updated = await authority.update_status(family.dependent, task.id, "in_progress")

    assert updated.status == TaskStatus.IN_PROGRESS
    assert updated.last_updated == "2025-01-01T08:00:05.000000Z"
    for party in (family.guardian.id, family.dependent.id):
        assert sink.types_for(party) == ["task_status_changed"]
    _, msg = sink.sent[0]
    assert msg["newStatus"] == "in_progress"
    assert msg["userId"] == family.dependent.id
    assert msg["timestamp"] == updated.last_updated


@pytest.mark.asyncio
async def test_stale_update_conflicts_until_forced(authority, family, clock) -> None:
    task, _ = await authority.create_task(family.guardian, task_payload(family.dependent.id))
    stale = task.last_updated

    clock.advance(10)
    await authority.update_status(family.dependent, task.id, TaskStatus.COMPLETED, last_updated=stale)

    clock.advance(10)
    with pytest.raises(ConflictError) as ei:
        await authority.update_status(
            family.guardian, task.id, TaskStatus.CANCELLED, last_updated="2025-01-01T08:00:05.000000Z"
        )
    assert ei.value.current_status == "completed"
    assert ei.value.current_version == "2025-01-01T08:00:10.000000Z"
    assert ei.value.to_dict()["currentStatus"] == "completed"

    forced = await authority.update_status(
        family.guardian, task.id, TaskStatus.CANCELLED, last_updated=stale, force=True
    )
    assert forced.status == TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_update_without_claim_is_unconditional(authority, family, clock) -> None:
    task, _ = await authority.create_task(family.guardian, task_payload(family.dependent.id))
    clock.advance(1)
    await authority.update_status(family.dependent, task.id, TaskStatus.IN_PROGRESS)
    result = await authority.update_status(family.guardian, task.id, TaskStatus.PENDING)
    assert result.status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_version_is_monotonic_when_clock_stalls(authority, family) -> None:
    task, _ = await authority.create_task(family.guardian, task_payload(family.dependent.id))
    a = await authority.update_status(family.guardian, task.id, TaskStatus.IN_PROGRESS)
    b = await authority.update_status(family.guardian, task.id, TaskStatus.COMPLETED)

    assert task.last_updated < a.last_updated < b.last_updated


@pytest.mark.asyncio
async def test_concurrent_updates_run_off_the_loop_one_at_a_time(authority, family, task_store, monkeypatch) -> None:
    task, _ = await authority.create_task(family.guardian, task_payload(family.dependent.id))
    loop_thread = threading.get_ident()
    writer_threads: list[int] = []
    original = task_store.update_task_status

    def recording(*args, **kwargs):
        writer_threads.append(threading.get_ident())
        return original(*args, **kwargs)

    monkeypatch.setattr(task_store, "update_task_status", recording)

    statuses = [TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED] * 5
    results = await asyncio.gather(
        *(authority.update_status(family.guardian, task.id, s) for s in statuses)
    )

    versions = [r.last_updated for r in results]
    assert len(set(versions)) == len(versions)
    assert task_store.get_task(task.id).last_updated == max(versions)
    assert writer_threads and loop_thread not in writer_threads


@pytest.mark.asyncio
async def test_status_update_errors(authority, family) -> None:
    task, _ = await authority.create_task(family.guardian, task_payload(family.dependent.id))

    with pytest.raises(ValidationError):
        await authority.update_status(family.guardian, "nope", TaskStatus.COMPLETED)
    with pytest.raises(ValidationError):
        await authority.update_status(family.guardian, task.id, "done")
    with pytest.raises(ValidationError):
        await authority.update_status(family.guardian, task.id, "completed", last_updated="yesterday")
    with pytest.raises(NotFoundError):
        await authority.update_status(family.guardian, new_id(), TaskStatus.COMPLETED)
    with pytest.raises(AuthorizationError):
        await authority.update_status(family.other, task.id, TaskStatus.COMPLETED)


@pytest.mark.asyncio
async def test_delete_is_guardian_only_and_notifies_dependent(authority, family, sink, task_store) -> None:
    task, _ = await authority.create_task(family.guardian, task_payload(family.dependent.id))
    sink.connected.add(family.dependent.id)

    with pytest.raises(AuthorizationError):
        await authority.delete_task(family.dependent, task.id)
    with pytest.raises(NotFoundError):
        await authority.delete_task(family.other, task.id)

    await authority.delete_task(family.guardian, task.id)
    assert task_store.get_task(task.id) is None
    assert sink.types_for(family.dependent.id) == ["task_deleted"]

    with pytest.raises(NotFoundError):
        await authority.delete_task(family.guardian, task.id)


def test_list_tasks_requires_matching_role(authority, family) -> None:
    assert authority.list_tasks(family.guardian, "guardian") == []
    with pytest.raises(AuthorizationError):
        authority.list_tasks(family.guardian, "dependent")

from __future__ import annotations

import asyncio

import pytest

from pflow.engine.client import EngineRejected, EngineUnavailable, TaskNotOwned
from pflow.engine.models import ExternalTask
from pflow.tickets.state import TicketStatus
from pflow.worker.poller import PollResult, TaskPoller
from pflow.workflow.coordinator import PROCESS_TICKET_ACTIVITY


def _task(business_key: str, *, task_id: str, activity_id: str = PROCESS_TICKET_ACTIVITY) -> ExternalTask:
    return ExternalTask(
        id=task_id,
        process_instance_id="proc-1",
        activity_id=activity_id,
        topic_name="ticket-processing",
        business_key=business_key,
    )


@pytest.fixture
def poller(engine, coordinator) -> TaskPoller:
    return TaskPoller(engine, coordinator, topic="ticket-processing", interval=0.01, lock_duration=30, max_tasks=5)


def _completed_task_ids(engine) -> list[str]:
    return [call.args[1] for call in engine.complete_task.await_args_list]


@pytest.mark.asyncio
async def test_poll_once_processes_and_completes_task(poller, engine, repository, publisher, ticket_factory):
    ticket = repository.add(ticket_factory(status=TicketStatus.SUBMITTED, process_instance_id="proc-1"))
    engine.fetch_and_lock.return_value = [_task(str(ticket.id), task_id="task-1")]

    result = await poller.poll_once()

    assert result == PollResult(fetched=1, completed=1)
    engine.fetch_and_lock.assert_awaited_once_with(poller.worker_id, "ticket-processing", 30, max_tasks=5)
    assert repository.tickets[ticket.id].status == TicketStatus.PROCESSING
    assert publisher.names == ["ticket.processing"]
    worker_id, task_id, variables = engine.complete_task.await_args.args
    assert worker_id == poller.worker_id
    assert task_id == "task-1"
    assert variables["handledAt"].endswith("Z")


@pytest.mark.asyncio
async def test_unsupported_activity_is_left_unacknowledged(poller, engine, repository, ticket_factory):
    ticket = repository.add(ticket_factory(status=TicketStatus.SUBMITTED))
    engine.fetch_and_lock.return_value = [_task(str(ticket.id), task_id="task-9", activity_id="UserTask_Review")]

    result = await poller.poll_once()

    assert result == PollResult(fetched=1, failed=1)
    engine.complete_task.assert_not_awaited()
    assert repository.tickets[ticket.id].status == TicketStatus.SUBMITTED


@pytest.mark.asyncio
async def test_failing_task_does_not_block_the_batch(poller, engine, repository, ticket_factory):
    first = repository.add(ticket_factory(status=TicketStatus.SUBMITTED))
    second = repository.add(ticket_factory(status=TicketStatus.SUBMITTED))
    engine.fetch_and_lock.return_value = [
        _task(str(first.id), task_id="task-1"),
        _task("not-a-uuid", task_id="task-2"),
        _task(str(second.id), task_id="task-3"),
    ]

    result = await poller.poll_once()

    assert result == PollResult(fetched=3, completed=2, failed=1)
    assert _completed_task_ids(engine) == ["task-1", "task-3"]
    assert repository.tickets[second.id].status == TicketStatus.PROCESSING


@pytest.mark.asyncio
async def test_lost_lock_is_counted_as_not_owned(poller, engine, repository, ticket_factory):
    ticket = repository.add(ticket_factory(status=TicketStatus.SUBMITTED))
    engine.fetch_and_lock.return_value = [_task(str(ticket.id), task_id="task-1")]
    engine.complete_task.side_effect = TaskNotOwned("task-1", status_code=404)

    result = await poller.poll_once()

    assert result == PollResult(fetched=1, not_owned=1)
    assert repository.tickets[ticket.id].status == TicketStatus.PROCESSING


@pytest.mark.asyncio
async def test_completion_failure_is_counted_as_failed(poller, engine, repository, ticket_factory):
    ticket = repository.add(ticket_factory(status=TicketStatus.SUBMITTED))
    engine.fetch_and_lock.return_value = [_task(str(ticket.id), task_id="task-1")]
    engine.complete_task.side_effect = EngineRejected("boom", status_code=500)

    result = await poller.poll_once()

    assert result == PollResult(fetched=1, failed=1)


@pytest.mark.asyncio
async def test_fetch_failure_returns_empty_result(poller, engine):
    engine.fetch_and_lock.side_effect = EngineUnavailable("connection refused")

    result = await poller.poll_once()

    assert result == PollResult()
    engine.complete_task.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_and_stop_run_the_loop(poller, engine):
    poller.start()
    assert poller.running

    for _ in range(100):
        if engine.fetch_and_lock.await_count:
            break
        await asyncio.sleep(0.01)
    await poller.stop()

    assert engine.fetch_and_lock.await_count >= 1
    assert not poller.running


@pytest.mark.asyncio
async def test_loop_survives_failing_tick(engine, coordinator):
    poller = TaskPoller(engine, coordinator, topic="ticket-processing", interval=0.01)
    engine.fetch_and_lock.side_effect = [RuntimeError("unexpected"), []]

    poller.start()
    for _ in range(100):
        if engine.fetch_and_lock.await_count >= 2:
            break
        await asyncio.sleep(0.01)
    await poller.stop()

    assert engine.fetch_and_lock.await_count >= 2


@pytest.mark.asyncio
async def test_stop_without_start_is_a_no_op(poller):
    await poller.stop()

    assert not poller.running


def test_each_poller_has_its_own_worker_id(engine, coordinator):
    first = TaskPoller(engine, coordinator, topic="ticket-processing")
    second = TaskPoller(engine, coordinator, topic="ticket-processing")

    assert first.worker_id != second.worker_id


@pytest.mark.asyncio
async def test_stop_lets_in_flight_acknowledgement_finish(engine, coordinator, repository, ticket_factory):
    ticket = repository.add(ticket_factory(status=TicketStatus.SUBMITTED))
    batches = [[_task(str(ticket.id), task_id="task-1")]]
    acknowledged: list[str] = []

    async def fetch(*args, **kwargs):
        return batches.pop() if batches else []

    async def slow_complete(worker_id, task_id, variables=None):
        await asyncio.sleep(0.05)
        acknowledged.append(task_id)

    engine.fetch_and_lock.side_effect = fetch
    engine.complete_task.side_effect = slow_complete
    poller = TaskPoller(engine, coordinator, topic="ticket-processing", interval=0.01, stop_timeout=5)

    poller.start()
    for _ in range(200):
        if engine.complete_task.await_count:
            break
        await asyncio.sleep(0.005)
    assert acknowledged == []
    await poller.stop()

    assert acknowledged == ["task-1"]
    assert repository.tickets[ticket.id].status == TicketStatus.PROCESSING
    assert not poller.running


def test_poller_keeps_supplied_worker_id(engine, coordinator):
    poller = TaskPoller(engine, coordinator, topic="ticket-processing", worker_id="worker-7")

    assert poller.worker_id == "worker-7"

"""Timed loop that claims external tasks from the engine and dispatches them."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from opentelemetry import trace

from pflow.engine.client import DEFAULT_MAX_TASKS, EngineClient, EngineError, TaskNotOwned
from pflow.engine.models import ExternalTask
from pflow.metrics import metrics_registry, track_duration
from pflow.workflow.coordinator import WorkflowCoordinator

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class PollResult:
    """Outcome counts of a single tick."""

    fetched: int = 0
    completed: int = 0
    failed: int = 0
    not_owned: int = 0


class TaskPoller:
    """Single-owner worker that fetches, handles and acknowledges external tasks.

    Tasks in a batch are handled one after another. A task is acknowledged only
    after the coordinator handled it; a task that fails is left locked so the
    engine redelivers it once the lock expires.
    """

    def __init__(
        self,
        engine: EngineClient,
        coordinator: WorkflowCoordinator,
        *,
        topic: str,
        interval: float = 5.0,
        lock_duration: float = 30.0,
        max_tasks: int = DEFAULT_MAX_TASKS,
        stop_timeout: float = 30.0,
        worker_id: str | None = None,
    ) -> None:
        self.worker_id = worker_id or str(uuid.uuid4())
        self.topic = topic
        self._engine = engine
        self._coordinator = coordinator
        self._interval = interval
        self._lock_duration = lock_duration
        self._max_tasks = max_tasks
        self._stop_timeout = stop_timeout
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name=f"task-poller-{self.topic}")
        logger.info("Started external task worker %s on topic %s", self.worker_id, self.topic)

    async def stop(self) -> None:
        """Signal the loop and wait for the current tick to finish."""

        task, self._task = self._task, None
        self._stop_event.set()
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("Worker %s did not stop within %.1fs, cancelling", self.worker_id, self._stop_timeout)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("External task worker %s shutting down", self.worker_id)

    async def run(self) -> None:
        """Tick every ``interval`` seconds until the stop event is set."""

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            else:
                break
            try:
                await self.poll_once()
            except Exception:  # the loop must survive any single tick
                logger.exception("Worker %s tick failed", self.worker_id)

    async def poll_once(self) -> PollResult:
        result = PollResult()
        with tracer.start_as_current_span("worker.poll"), track_duration(
            metrics_registry.distribution("worker_poll_duration_seconds")
        ):
            try:
                tasks = await self._engine.fetch_and_lock(
                    self.worker_id,
                    self.topic,
                    self._lock_duration,
                    max_tasks=self._max_tasks,
                )
            except EngineError as exc:
                logger.warning("Fetching external tasks on %s failed: %s", self.topic, exc)
                return result

            result.fetched = len(tasks)
            for task in tasks:
                outcome = await self._process(task)
                setattr(result, outcome, getattr(result, outcome) + 1)
                metrics_registry.counter("worker_tasks_total").inc(labels={"outcome": outcome})

        if result.fetched:
            logger.info(
                "Worker %s handled %d task(s): %d completed, %d failed, %d no longer owned",
                self.worker_id,
                result.fetched,
                result.completed,
                result.failed,
                result.not_owned,
            )
        return result

    async def _process(self, task: ExternalTask) -> str:
        try:
            await self._coordinator.handle_external_task(task)
        except Exception:  # one failing task must not block the rest of the batch
            logger.exception("Handling external task %s (%s) failed", task.id, task.activity_id)
            return "failed"

        handled_at = datetime.now(timezone.utc).replace(microsecond=0)
        try:
            await self._engine.complete_task(
                self.worker_id,
                task.id,
                {"handledAt": handled_at.isoformat().replace("+00:00", "Z")},
            )
        except TaskNotOwned as exc:
            logger.warning("External task %s was not completed: %s", task.id, exc)
            return "not_owned"
        except EngineError as exc:
            logger.error("Completing external task %s failed: %s", task.id, exc)
            return "failed"
        return "completed"

"""Async adapter for the subset of the process engine REST API used by pflow."""

from __future__ import annotations

import logging
from typing import Any, Mapping
from urllib.parse import quote

import httpx
from opentelemetry import trace

from pflow.metrics import metrics_registry

from .models import ExternalTask, ProcessVariables, wrap_variables

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_TIMEOUT = 15.0
DEFAULT_MAX_TASKS = 5

# Engine message fragment used when another worker holds the lock.
_FOREIGN_LOCK_MARKER = "cannot be completed by worker"


class EngineError(RuntimeError):
    """Base error for process engine calls."""


class EngineUnavailable(EngineError):
    """Raised when the engine could not be reached or did not answer in time."""


class EngineRejected(EngineError):
    """Raised when the engine answers with a non-2xx status."""

    def __init__(self, message: str, *, status_code: int, engine_message: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.engine_message = engine_message

    def __str__(self) -> str:
        detail = f": {self.engine_message}" if self.engine_message else ""
        return f"[{self.status_code}] {super().__str__()}{detail}"


class TaskNotOwned(EngineRejected):
    """Raised when completing a task whose lock this worker no longer holds."""

    def __init__(self, task_id: str, *, status_code: int, engine_message: str | None = None) -> None:
        super().__init__(
            f"External task {task_id} is no longer locked by this worker",
            status_code=status_code,
            engine_message=engine_message,
        )
        self.task_id = task_id


class DecodeError(EngineError):
    """Raised when an engine response body does not have the expected shape."""


def _extract_engine_message(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return response.text or None
    if isinstance(data, Mapping):
        message = data.get("message")
        if isinstance(message, str):
            return message
    return None


class EngineClient:
    """Stateless protocol adapter over the engine's REST surface.

    Each public method issues exactly one HTTP request. All calls share the
    client's timeout, so a stalled engine surfaces as ``EngineUnavailable``
    rather than hanging the caller.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._timeout = timeout

    async def __aenter__(self) -> EngineClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def deploy_definition(self, name: str, definition: bytes) -> None:
        """Upload a process definition; unchanged redeploys are filtered by the engine."""

        await self._request(
            "deploy",
            "POST",
            "/deployment/create",
            data={
                "deployment-name": name,
                "enable-duplicate-filtering": "true",
                "deploy-changed-only": "true",
            },
            files={"data": (f"{name}.bpmn", definition, "application/octet-stream")},
        )
        logger.info("Deployed process definition %s", name)

    async def start_instance(
        self,
        process_key: str,
        business_key: str,
        variables: ProcessVariables,
    ) -> str:
        response = await self._request(
            "start_instance",
            "POST",
            f"/process-definition/key/{quote(process_key, safe='')}/start",
            json={
                "variables": wrap_variables(variables.as_mapping()),
                "businessKey": business_key,
            },
        )
        body = self._decode(response, "start_instance")
        instance_id = body.get("id") if isinstance(body, Mapping) else None
        if not isinstance(instance_id, str) or not instance_id:
            raise DecodeError("Start instance response did not contain a process instance id")
        logger.debug("Started process instance %s for business key %s", instance_id, business_key)
        return instance_id

    async def fetch_and_lock(
        self,
        worker_id: str,
        topic: str,
        lock_duration: float,
        *,
        max_tasks: int = DEFAULT_MAX_TASKS,
    ) -> list[ExternalTask]:
        """Lock up to ``max_tasks`` tasks on ``topic``; ``lock_duration`` is in seconds."""

        response = await self._request(
            "fetch_and_lock",
            "POST",
            "/external-task/fetchAndLock",
            json={
                "workerId": worker_id,
                "maxTasks": max_tasks,
                "usePriority": True,
                "topics": [
                    {
                        "topicName": topic,
                        "lockDuration": int(lock_duration * 1000),
                    }
                ],
            },
        )
        body = self._decode(response, "fetch_and_lock")
        if body is None:
            return []
        if not isinstance(body, list):
            raise DecodeError("Fetch and lock response must be a list of tasks")
        try:
            return [ExternalTask.from_payload(item) for item in body]
        except (KeyError, TypeError, AttributeError) as exc:
            raise DecodeError(f"Malformed external task in fetch and lock response: {exc}") from exc

    async def complete_task(
        self,
        worker_id: str,
        task_id: str,
        variables: Mapping[str, Any] | None = None,
    ) -> None:
        try:
            await self._request(
                "complete_task",
                "POST",
                f"/external-task/{quote(task_id, safe='')}/complete",
                json={"workerId": worker_id, "variables": wrap_variables(variables)},
            )
        except EngineRejected as exc:
            if exc.status_code == 404 or _FOREIGN_LOCK_MARKER in (exc.engine_message or ""):
                raise TaskNotOwned(
                    task_id,
                    status_code=exc.status_code,
                    engine_message=exc.engine_message,
                ) from exc
            raise

    async def delete_instance(self, process_instance_id: str) -> None:
        """Cancel a process instance; an instance that is already gone counts as deleted."""

        try:
            await self._request(
                "delete_instance",
                "DELETE",
                f"/process-instance/{quote(process_instance_id, safe='')}",
            )
        except EngineRejected as exc:
            if exc.status_code != 404:
                raise

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._base_url}{path}"
        requests_total = metrics_registry.counter("engine_requests_total")
        with tracer.start_as_current_span(f"engine.{operation}") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("http.url", url)
            try:
                response = await self._client.request(method, url, timeout=self._timeout, **kwargs)
            except httpx.TransportError as exc:
                requests_total.inc(labels={"operation": operation, "outcome": "unavailable"})
                raise EngineUnavailable(f"Process engine {operation} call failed: {exc!r}") from exc

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code >= 300:
                requests_total.inc(labels={"operation": operation, "outcome": "rejected"})
                raise EngineRejected(
                    f"Process engine rejected {operation}",
                    status_code=response.status_code,
                    engine_message=_extract_engine_message(response),
                )

        requests_total.inc(labels={"operation": operation, "outcome": "ok"})
        return response

    @staticmethod
    def _decode(response: httpx.Response, operation: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise DecodeError(f"Process engine returned malformed JSON for {operation}") from exc

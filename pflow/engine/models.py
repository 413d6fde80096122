from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass(slots=True, frozen=True)
class TaskVariable:
    """Typed value as reported by the engine."""

    type: str | None
    value: Any


@dataclass(slots=True, frozen=True)
class ExternalTask:
    """Unit of work locked by a worker through fetch-and-lock."""

    id: str
    process_instance_id: str
    activity_id: str
    topic_name: str
    business_key: str
    variables: Mapping[str, TaskVariable] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ExternalTask:
        raw_variables = payload.get("variables") or {}
        if not isinstance(raw_variables, Mapping):
            raise TypeError("variables must be an object")
        variables: dict[str, TaskVariable] = {}
        for name, raw in raw_variables.items():
            if not isinstance(raw, Mapping):
                raise TypeError(f"variable {name!r} must be an object")
            variables[str(name)] = TaskVariable(type=raw.get("type"), value=raw.get("value"))
        return cls(
            id=str(payload["id"]),
            process_instance_id=str(payload.get("processInstanceId") or ""),
            activity_id=str(payload.get("activityId") or ""),
            topic_name=str(payload.get("topicName") or ""),
            business_key=str(payload.get("businessKey") or ""),
            variables=variables,
        )


@dataclass(slots=True, frozen=True)
class ProcessVariables:
    """Input variables carried into a new process instance.

    ``extra`` is forwarded as-is for variables the ticket flow does not model.
    """

    requester: str
    title: str
    extra: Mapping[str, Any] = field(default_factory=dict)

    def as_mapping(self) -> dict[str, Any]:
        values: dict[str, Any] = dict(self.extra)
        values["requester"] = self.requester
        values["title"] = self.title
        return values


def wrap_variables(variables: Mapping[str, Any] | None) -> dict[str, dict[str, Any]]:
    """Tag each value as ``{"value": ...}`` per the engine's variable protocol."""

    if not variables:
        return {}
    return {name: {"value": value} for name, value in variables.items()}

"""Best-effort domain event publishing."""

from .models import DomainEvent
from .publisher import EventPublisher, NullPublisher, PublishError, RabbitPublisher, create_publisher

__all__ = [
    "DomainEvent",
    "EventPublisher",
    "NullPublisher",
    "PublishError",
    "RabbitPublisher",
    "create_publisher",
]

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Mapping, Protocol

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractRobustConnection
from aio_pika.exceptions import AMQPError

from pflow.core.config import Settings

logger = logging.getLogger(__name__)

TICKET_EVENTS_BINDING = "ticket.*"

_TRANSPORT_ERRORS = (asyncio.TimeoutError, AMQPError, OSError, RuntimeError)


class PublishError(RuntimeError):
    """Raised when an event could not be handed to the message bus."""


class EventPublisher(Protocol):
    async def publish(self, routing_key: str, payload: Mapping[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...


class NullPublisher:
    """Publisher used when no message bus is configured; every publish succeeds."""

    async def publish(self, routing_key: str, payload: Mapping[str, Any]) -> None:
        logger.debug("No message bus configured, dropping %s", routing_key)

    async def close(self) -> None:
        return None


class RabbitPublisher:
    """Publish JSON events to a durable topic exchange."""

    def __init__(
        self,
        url: str,
        exchange_name: str,
        *,
        queue_name: str | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._url = url
        self._exchange_name = exchange_name
        self._queue_name = queue_name
        self._timeout = timeout
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None

    async def connect(self) -> None:
        self._connection = await aio_pika.connect_robust(self._url, timeout=self._timeout)
        self._channel = await self._connection.channel()
        self._exchange = await self._channel.declare_exchange(
            self._exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
        )
        if self._queue_name:
            queue = await self._channel.declare_queue(self._queue_name, durable=True)
            await queue.bind(self._exchange, routing_key=TICKET_EVENTS_BINDING)
        logger.info("Connected event publisher to exchange %s", self._exchange_name)

    async def publish(self, routing_key: str, payload: Mapping[str, Any]) -> None:
        if self._exchange is None:
            raise PublishError("Event publisher is not connected")
        message = aio_pika.Message(
            body=json.dumps(payload).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await asyncio.wait_for(
                self._exchange.publish(message, routing_key=routing_key),
                timeout=self._timeout,
            )
        except _TRANSPORT_ERRORS as exc:
            raise PublishError(f"Failed to publish {routing_key}: {exc!r}") from exc

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        self._channel = None
        self._exchange = None
        if connection is not None:
            try:
                await connection.close()
            except _TRANSPORT_ERRORS as exc:
                logger.warning("Closing message bus connection failed: %s", exc)


async def create_publisher(settings: Settings) -> EventPublisher:
    """Return a connected publisher, or a ``NullPublisher`` when the bus is unavailable."""

    if not settings.rabbitmq_url:
        logger.info("RABBITMQ_URL is empty, continuing without events")
        return NullPublisher()

    publisher = RabbitPublisher(
        settings.rabbitmq_url,
        settings.rabbitmq_ticket_exchange,
        queue_name=settings.rabbitmq_ticket_queue or None,
        timeout=settings.rabbitmq_publish_timeout,
    )
    try:
        await publisher.connect()
    except _TRANSPORT_ERRORS as exc:
        logger.warning("Message bus unavailable (%s), continuing without events", exc)
        await publisher.close()
        return NullPublisher()
    return publisher

"""
MessageQueue -- at-least-once topic queue consumed by the side-effect worker.

Responsibility:
    Carries ``{orderId}`` and ``{bookingId}`` messages from committed
    status transitions to the worker that performs the deferred work.

Architecture position:
    Kernel > Services.  Published to by the lifecycle services after their
    transaction commits; consumed by ``SideEffectWorker``.  Independent of
    any managed queue product: production adapters implement the same ABC.

Invariants enforced:
    - At-least-once: a received message stays in flight until acked.  A
      nack, or ``requeue_in_flight`` after a consumer crash, delivers it
      again.
    - Bodies are JSON text.  The queue never parses them; consumers
      validate shape and drop malformed bodies.
    - A message nacked ``max_deliveries`` times is dead-lettered instead of
      being requeued.

Failure modes:
    - ``publish`` may raise (broker unreachable).  Publishers treat that as
      a persisted processing error, never as an operation failure.
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Mapping
from uuid import uuid4

from kiosk_kernel.logging_config import get_logger

logger = get_logger("services.message_queue")


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    topic: str
    body: str
    delivery_count: int = 1

    def payload(self) -> Any:
        """Decoded JSON body.  Raises ValueError for malformed JSON."""
        return json.loads(self.body)


class MessageQueue(ABC):
    """Abstract topic queue with explicit acknowledgement."""

    @abstractmethod
    def publish(self, topic: str, payload: Mapping[str, Any]) -> str:
        """Enqueue ``payload`` as JSON and return the message id."""
        ...

    @abstractmethod
    def receive(self, topic: str, timeout: float | None = None) -> QueueMessage | None:
        """Next message of ``topic``, or None if none arrived within ``timeout``."""
        ...

    @abstractmethod
    def ack(self, message: QueueMessage) -> None:
        ...

    @abstractmethod
    def nack(self, message: QueueMessage, requeue: bool = True) -> None:
        ...


class InMemoryMessageQueue(MessageQueue):
    """Thread-safe in-process queue with delivery counts and dead-lettering."""

    def __init__(self, max_deliveries: int = 5):
        self._max_deliveries = max_deliveries
        self._cond = threading.Condition()
        self._ready: dict[str, deque[QueueMessage]] = {}
        self._in_flight: dict[str, QueueMessage] = {}
        self._dead: dict[str, list[QueueMessage]] = {}

    def publish(self, topic: str, payload: Mapping[str, Any]) -> str:
        return self.publish_raw(topic, json.dumps(dict(payload), default=str))

    def publish_raw(self, topic: str, body: str) -> str:
        """Enqueue an already-encoded body as-is."""
        message = QueueMessage(message_id=uuid4().hex, topic=topic, body=body)
        with self._cond:
            self._ready.setdefault(topic, deque()).append(message)
            self._cond.notify_all()
        logger.debug(
            "message_published",
            extra={"topic": topic, "queue_message_id": message.message_id},
        )
        return message.message_id

    def receive(self, topic: str, timeout: float | None = None) -> QueueMessage | None:
        with self._cond:
            if not self._cond.wait_for(lambda: bool(self._ready.get(topic)), timeout=timeout):
                return None
            message = self._ready[topic].popleft()
            self._in_flight[message.message_id] = message
            return message

    def ack(self, message: QueueMessage) -> None:
        with self._cond:
            self._in_flight.pop(message.message_id, None)

    def nack(self, message: QueueMessage, requeue: bool = True) -> None:
        with self._cond:
            if self._in_flight.pop(message.message_id, None) is None:
                return
            if not requeue or message.delivery_count >= self._max_deliveries:
                self._dead.setdefault(message.topic, []).append(message)
                logger.error(
                    "message_dead_lettered",
                    extra={
                        "topic": message.topic,
                        "queue_message_id": message.message_id,
                        "delivery_count": message.delivery_count,
                    },
                )
                return
            redelivery = replace(message, delivery_count=message.delivery_count + 1)
            self._ready.setdefault(message.topic, deque()).append(redelivery)
            self._cond.notify_all()

    def requeue_in_flight(self) -> int:
        """Redeliver every unacknowledged message, as after a consumer crash."""
        with self._cond:
            messages = list(self._in_flight.values())
            self._in_flight.clear()
            for message in messages:
                redelivery = replace(message, delivery_count=message.delivery_count + 1)
                self._ready.setdefault(message.topic, deque()).append(redelivery)
            self._cond.notify_all()
        return len(messages)

    def pending_count(self, topic: str) -> int:
        with self._cond:
            return len(self._ready.get(topic, ()))

    def in_flight_count(self) -> int:
        with self._cond:
            return len(self._in_flight)

    def dead_letters(self, topic: str) -> list[QueueMessage]:
        with self._cond:
            return list(self._dead.get(topic, ()))

"""Message broker client built on kombu.

Each destination is a kombu queue bound to a direct exchange by name. A
destination is drained by a fixed number of ConsumerMixin workers, each on
its own thread and its own connection, taking one message at a time.
Handler failures are logged and the message is acked; there are no retries.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from typing import Any

from kombu import Connection, Exchange, Queue
from kombu.message import Message
from kombu.mixins import ConsumerMixin

from dukeface.errors import QueueFullError, UnknownDestinationError

logger = logging.getLogger(__name__)

Handler = Callable[[Any, Message], None]

SAFETY_INTERVAL_SECONDS: float = 0.5


class ListenerWorker(ConsumerMixin):
    """Consumes one destination and hands each message to a handler."""

    def __init__(self, broker: MessageBroker, connection: Connection, queue: Queue, handler: Handler) -> None:
        self.connection = connection
        self._broker = broker
        self._queue = queue
        self._handler = handler

    def get_consumers(self, Consumer, channel):  # noqa: N803
        return [
            Consumer(
                queues=[self._queue],
                callbacks=[self.on_message],
                accept=["json"],
                prefetch_count=1,
            )
        ]

    def on_message(self, body: Any, message: Message) -> None:
        try:
            self._handler(body, message)
        except Exception:
            logger.exception(
                "Listener on %s failed for message %s",
                self._queue.name,
                message.headers.get("message_id"),
            )
        finally:
            message.ack()
            self._broker._mark_completed()


class MessageBroker:
    """Publishes to named destinations and runs their listener workers."""

    def __init__(
        self,
        url: str = "memory://",
        *,
        queue_prefix: str = "dukeface",
        queue_max_size: int = 100,
        polling_interval: float = 0.1,
    ) -> None:
        self._connection = Connection(url, transport_options={"polling_interval": polling_interval})
        self._exchange = Exchange(queue_prefix, type="direct")
        self._queue_prefix = queue_prefix
        self._queue_max_size = queue_max_size

        self._queues: dict[str, Queue] = {}
        self._handlers: dict[str, tuple[Handler, int]] = {}
        self._workers: list[tuple[ListenerWorker, threading.Thread]] = []

        self._lock = threading.Lock()
        self._done = threading.Condition()
        self._published = 0
        self._completed = 0

    def register_listener(self, destination: str, handler: Handler, *, concurrency: int = 1) -> None:
        """Attach a handler to a destination and declare its queue. Must be called before start()."""
        if destination in self._handlers:
            raise ValueError(f"Destination '{destination}' already has a listener")
        if self.is_running:
            raise RuntimeError("Cannot register listeners on a running broker")

        queue = Queue(f"{self._queue_prefix}.{destination}", self._exchange, routing_key=destination)
        with self._lock:
            queue.declare(channel=self._connection.default_channel)
        self._queues[destination] = queue
        self._handlers[destination] = (handler, concurrency)

    def send(self, destination: str, payload: str | bytes, headers: dict[str, str] | None = None) -> str:
        """Publish a message and return its id.

        Text payloads travel as JSON, bytes as raw binary.

        Raises:
            UnknownDestinationError: If nothing listens on the destination.
            QueueFullError: If the destination already holds queue_max_size messages.
        """
        queue = self._queues.get(destination)
        if queue is None:
            raise UnknownDestinationError(f"No listener for destination '{destination}'")

        message_id = uuid.uuid4().hex
        message_headers = {**(headers or {}), "message_id": message_id}
        if isinstance(payload, bytes):
            body_options: dict[str, Any] = {"content_type": "application/data", "content_encoding": "binary"}
        else:
            body_options = {"serializer": "json"}

        with self._lock:
            if self._size(queue) >= self._queue_max_size:
                raise QueueFullError(f"Destination '{destination}' is full")
            producer = self._connection.Producer(exchange=self._exchange)
            producer.publish(
                payload,
                routing_key=destination,
                declare=[queue],
                headers=message_headers,
                **body_options,
            )
        with self._done:
            self._published += 1
        logger.debug("Sent message %s to %s", message_id, destination)
        return message_id

    def start(self) -> None:
        """Start the listener threads for every destination."""
        if self.is_running:
            return
        for destination, (handler, concurrency) in self._handlers.items():
            for index in range(concurrency):
                worker = ListenerWorker(self, self._connection, self._queues[destination], handler)
                thread = threading.Thread(
                    target=worker.run,
                    kwargs={"safety_interval": SAFETY_INTERVAL_SECONDS},
                    name=f"{destination}-listener-{index}",
                    daemon=True,
                )
                thread.start()
                self._workers.append((worker, thread))
            logger.info("Listening on %s with %d workers", destination, concurrency)

    def join(self, timeout: float | None = None) -> bool:
        """Wait until every sent message has been handled. Returns False on timeout."""
        with self._done:
            return self._done.wait_for(lambda: self._completed >= self._published, timeout=timeout)

    def stop(self) -> None:
        """Stop and join all listener threads. Messages still queued stay on the broker."""
        if not self.is_running:
            return
        for worker, _ in self._workers:
            worker.should_stop = True
        for _, thread in self._workers:
            thread.join()
        self._workers.clear()

        pending = self.pending()
        if pending:
            logger.warning("Stopped with %d messages still queued", pending)
        logger.info("Message broker stopped")

    def close(self) -> None:
        self.stop()
        self._connection.release()

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def pending(self, destination: str | None = None) -> int:
        """Number of queued messages on one destination, or on all of them."""
        with self._lock:
            if destination is not None:
                queue = self._queues.get(destination)
                return self._size(queue) if queue is not None else 0
            return sum(self._size(queue) for queue in self._queues.values())

    @property
    def destinations(self) -> list[str]:
        return list(self._queues)

    def _size(self, queue: Queue) -> int:
        return queue.queue_declare(passive=True, channel=self._connection.default_channel).message_count

    def _mark_completed(self) -> None:
        with self._done:
            self._completed += 1
            self._done.notify_all()

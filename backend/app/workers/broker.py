"""AMQP connection management and queue topology for import jobs.

One ``BrokerConnection`` is owned by each process (the API app or a worker).
It lazily opens a single connection/channel pair, declares every work queue
with its dead-letter queue, and remembers how each consumer was registered
so subscriptions can be replayed after a reconnect.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from kombu import Connection, Consumer, Exchange, Queue
from kombu.exceptions import OperationalError

from app.core.config import get_settings
from app.ingestion.importers import EntityType
from app.utils.backoff import BackoffState

logger = logging.getLogger(__name__)

DLX_EXCHANGE_NAME = "dlx.exchange"
QUEUE_NAMES: tuple[str, ...] = tuple(entity_type.queue_name for entity_type in EntityType)

RECOVERABLE_ERRORS: tuple[type[BaseException], ...] = (OSError, OperationalError)

ConsumerRegistration = Callable[[Any], Consumer]


class BrokerUnavailableError(RuntimeError):
    """Raised when the broker cannot be reached within the reconnect budget."""


def dead_letter_queue_name(queue_name: str) -> str:
    return f"{queue_name}.dlq"


def dead_letter_exchange() -> Exchange:
    return Exchange(DLX_EXCHANGE_NAME, type="direct", durable=True)


def work_queue(queue_name: str) -> Queue:
    """Durable work queue, published to through the default exchange."""
    return Queue(
        queue_name,
        durable=True,
        queue_arguments={
            "x-dead-letter-exchange": DLX_EXCHANGE_NAME,
            "x-dead-letter-routing-key": queue_name,
        },
    )


def dead_letter_queue(queue_name: str) -> Queue:
    return Queue(
        dead_letter_queue_name(queue_name),
        exchange=dead_letter_exchange(),
        routing_key=queue_name,
        durable=True,
    )


def declare_topology(channel: Any, queue_names: Iterable[str] = QUEUE_NAMES) -> None:
    """Declare the dead-letter exchange, then each DLQ and its work queue."""
    dead_letter_exchange()(channel).declare()
    for queue_name in queue_names:
        dead_letter_queue(queue_name)(channel).declare()
        work_queue(queue_name)(channel).declare()
    logger.info(f"Declared queues: {', '.join(queue_names)}")


class BrokerConnection:
    """Process-wide AMQP connection with bounded, backed-off reconnection."""

    def __init__(
        self,
        url: str | None = None,
        *,
        queue_names: Sequence[str] = QUEUE_NAMES,
        prefetch_count: int | None = None,
        heartbeat: int | None = None,
        reconnect_delay: float | None = None,
        reconnect_max_delay: float | None = None,
        reconnect_max_attempts: int | None = None,
        connection_factory: Callable[..., Any] = Connection,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = get_settings()
        self.url = url or settings.rabbitmq_url
        self.queue_names = tuple(queue_names)
        self.prefetch_count = prefetch_count or settings.broker_prefetch_count
        self.heartbeat = heartbeat if heartbeat is not None else settings.broker_heartbeat
        self.reconnect_delay = (
            reconnect_delay if reconnect_delay is not None else settings.broker_reconnect_delay
        )
        self.reconnect_max_delay = reconnect_max_delay or settings.broker_reconnect_max_delay
        self.reconnect_max_attempts = (
            reconnect_max_attempts or settings.broker_reconnect_max_attempts
        )
        self._connection_factory = connection_factory
        self._sleep = sleep

        self._connection: Any = None
        self._channel: Any = None
        self._registrations: list[ConsumerRegistration] = []
        self._consumers: list[Consumer] = []
        self._closing = False
        self.lock = threading.RLock()

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def connected(self) -> bool:
        return self._channel is not None and bool(getattr(self._connection, "connected", False))

    @property
    def connection_errors(self) -> tuple[type[BaseException], ...]:
        errors = getattr(self._connection, "connection_errors", ())
        return tuple(errors) + RECOVERABLE_ERRORS

    def acquire_channel(self) -> Any:
        """Return the shared channel, connecting and declaring topology if needed."""
        with self.lock:
            if self._closing:
                raise BrokerUnavailableError("Broker connection is shutting down")
            if not self.connected:
                self._connect()
                self._replay_registrations()
            return self._channel

    def _connect(self) -> None:
        connection = self._connection_factory(self.url, heartbeat=self.heartbeat)
        try:
            connection.connect()
            channel = connection.channel()
            declare_topology(channel, self.queue_names)
        except BaseException:
            self._release(connection)
            raise
        self._connection, self._channel = connection, channel
        logger.info(f"Connected to broker at {connection.as_uri()}")

    def register_consumer(self, registration: ConsumerRegistration) -> Consumer:
        """Subscribe now and remember ``registration`` for later reconnects."""
        with self.lock:
            channel = self.acquire_channel()
            consumer = registration(channel)
            self._registrations.append(registration)
            self._consumers.append(consumer)
            return consumer

    def _replay_registrations(self) -> None:
        self._consumers = [registration(self._channel) for registration in self._registrations]
        if self._registrations:
            logger.info(f"Re-established {len(self._registrations)} consumer(s) after reconnect")

    def invalidate(self) -> None:
        """Drop the current connection so the next acquire opens a new one."""
        with self.lock:
            self._consumers = []
            connection, self._connection, self._channel = self._connection, None, None
            self._release(connection)

    def reconnect(self) -> bool:
        """Re-open the connection and replay every consumer registration.

        Waits before each attempt, doubling the delay up to the configured
        ceiling. Returns False if shutdown was requested meanwhile and raises
        ``BrokerUnavailableError`` once the attempt budget is spent.
        """
        self.invalidate()
        backoff = BackoffState(
            initial_delay=self.reconnect_delay, max_delay=self.reconnect_max_delay
        )
        while not backoff.exhausted(self.reconnect_max_attempts):
            if self._closing:
                return False
            delay = backoff.next_delay()
            logger.warning(
                f"Reconnecting to broker in {delay:.1f}s "
                f"(attempt {backoff.consecutive_failures + 1}/{self.reconnect_max_attempts})"
            )
            self._sleep(delay)
            if self._closing:
                return False
            try:
                with self.lock:
                    self._connect()
                    self._replay_registrations()
                return True
            except RECOVERABLE_ERRORS as e:
                backoff.record_failure()
                self.invalidate()
                logger.error(f"Reconnect attempt failed: {e}")
        raise BrokerUnavailableError(
            f"Broker unreachable after {self.reconnect_max_attempts} reconnect attempts"
        )

    def drain_events(self, timeout: float = 1.0) -> None:
        if not self.connected:
            self.acquire_channel()
        self._connection.drain_events(timeout=timeout)

    def heartbeat_check(self) -> None:
        if self._connection is not None and self.heartbeat:
            self._connection.heartbeat_check()

    def shutdown(self) -> None:
        """Stop consuming and close the connection without reconnecting."""
        with self.lock:
            self._closing = True
            for consumer in self._consumers:
                try:
                    consumer.cancel()
                except self.connection_errors as e:
                    logger.debug(f"Ignoring error while cancelling consumer: {e}")
            self._consumers = []
            connection, self._connection, self._channel = self._connection, None, None
            self._release(connection)
        logger.info("Broker connection closed")

    @staticmethod
    def _release(connection: Any) -> None:
        if connection is None:
            return
        try:
            connection.release()
        except RECOVERABLE_ERRORS as e:
            logger.debug(f"Ignoring error while releasing connection: {e}")

"""Kafka consumer for action invocation events."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaError
from aiokafka.helpers import create_ssl_context

from cirelay.config import KafkaConfig
from cirelay.engine.dispatcher import ActionDispatcher
from cirelay.errors import ConfigurationError, ConsumerFatalError
from cirelay.models.schemas import ActionMessage
from cirelay.utils.retry import reconnect_delay
from cirelay.utils.text import error_message, truncate_string

logger = logging.getLogger(__name__)

ConsumerFactory = Callable[[KafkaConfig], Any]


def create_consumer(config: KafkaConfig) -> AIOKafkaConsumer:
    """Build an aiokafka consumer subscribed to the actions topic."""
    options: dict[str, Any] = {
        "bootstrap_servers": config.brokers,
        "group_id": config.group_id,
        "client_id": f"cirelay-consumer-{config.org_id}",
        "auto_offset_reset": "latest",
        "session_timeout_ms": 30_000,
        "heartbeat_interval_ms": 3_000,
        "request_timeout_ms": 40_000,
    }
    if config.ssl:
        options.update(
            security_protocol="SASL_SSL",
            sasl_mechanism="SCRAM-SHA-512",
            sasl_plain_username=config.username,
            sasl_plain_password=config.password,
            ssl_context=create_ssl_context(),
        )
    return AIOKafkaConsumer(config.actions_topic, **options)


class ActionConsumer:
    """Feeds action events from Kafka into the dispatcher.

    Every message runs as its own task so a slow build never blocks the
    partition.  Lost connections are retried a bounded number of times with
    a linearly growing delay; when attempts run out :class:`ConsumerFatalError`
    is raised from :meth:`run`.
    """

    def __init__(
        self,
        config: KafkaConfig,
        dispatcher: ActionDispatcher,
        *,
        consumer_factory: ConsumerFactory = create_consumer,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        fetch_timeout_ms: int = 1000,
    ) -> None:
        self.config = config
        self.dispatcher = dispatcher
        self._factory = consumer_factory
        self._sleep = sleep
        self._fetch_timeout_ms = fetch_timeout_ms
        self._consumer: Any = None
        self._tasks: set[asyncio.Task] = set()
        self._stopping = False

    def validate(self) -> None:
        missing = [
            label
            for label, value in (
                ("brokers", self.config.brokers),
                ("username", self.config.username),
                ("password", self.config.password),
                ("group_id", self.config.group_id),
                ("org_id", self.config.org_id),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Kafka configuration invalid: missing {', '.join(missing)}")

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def run(self) -> None:
        """Consume until :meth:`stop` is called."""
        self.validate()
        logger.info(
            "Kafka consumer starting: topic=%s group=%s brokers=%s",
            self.config.actions_topic,
            self.config.group_id,
            ", ".join(self.config.brokers),
        )
        attempt = 0
        try:
            while not self._stopping:
                try:
                    await self._connect()
                    attempt = 0
                    await self._consume()
                except (KafkaError, OSError) as exc:
                    await self._disconnect()
                    if self._stopping:
                        break
                    attempt += 1
                    logger.error(
                        "Kafka connection lost (attempt %d/%d): %s",
                        attempt,
                        self.config.reconnect_attempts,
                        error_message(exc),
                    )
                    if attempt >= self.config.reconnect_attempts:
                        logger.error("Max reconnection attempts reached")
                        raise ConsumerFatalError(
                            f"Kafka consumer gave up after {attempt} reconnection attempts"
                        ) from exc
                    await self._sleep(reconnect_delay(self.config.reconnect_delay, attempt))
        finally:
            await self._drain()
            await self._disconnect()
            logger.info("Consumer disconnected")

    def stop(self) -> None:
        """Stop fetching; :meth:`run` returns once in-flight runs are done."""
        if not self._stopping:
            logger.info("Shutting down consumer...")
        self._stopping = True

    async def _connect(self) -> None:
        logger.info("Connecting to Kafka...")
        self._consumer = self._factory(self.config)
        await self._consumer.start()
        logger.info("Subscribed to %s, waiting for messages", self.config.actions_topic)

    async def _disconnect(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is None:
            return
        try:
            await consumer.stop()
        except (KafkaError, OSError) as exc:
            logger.warning("Error while disconnecting consumer: %s", exc)

    async def _consume(self) -> None:
        while not self._stopping:
            batches = await self._consumer.getmany(timeout_ms=self._fetch_timeout_ms)
            for records in batches.values():
                for record in records:
                    self.handle_record(record)

    def handle_record(self, record: Any) -> asyncio.Task | None:
        if record.value is None:
            return None
        try:
            payload = json.loads(record.value)
            message = ActionMessage.model_validate(payload)
        except ValueError as exc:
            logger.error(
                "Skipping malformed message at %s[%s]@%s: %s (payload: %s)",
                record.topic,
                record.partition,
                record.offset,
                truncate_string(str(exc), 300),
                truncate_string(repr(record.value), 120),
            )
            return None
        task = asyncio.create_task(self._process(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _process(self, message: ActionMessage) -> None:
        try:
            await self.dispatcher.process(message)
        except Exception as exc:
            logger.error("Error processing run %s: %s", message.run_id, error_message(exc))

    async def _drain(self) -> None:
        if not self._tasks:
            return
        logger.info("Waiting for %d in-flight run(s) to finish", len(self._tasks))
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

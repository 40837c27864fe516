"""
RabbitMQ work queue for invite requests.

This module provides the WorkQueue class, which both schedules work items
(immediately or after a delay) and consumes them for the worker process.

Delayed redelivery uses per-delay parking queues: a message published to
"<work_queue>.delay.<seconds>" sits there for exactly <seconds>, then is
dead-lettered back into the work queue. Delivery is never earlier than the
requested delay.

Usage:
    queue = WorkQueue.from_settings(settings)
    await queue.start()

    await queue.schedule(request_id)            # now
    await queue.schedule(request_id, 30)        # in 30s

    await queue.consume(worker.handle)          # worker process only
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol
from urllib.parse import urlparse, urlunparse

import aio_pika
import orjson

from .config import Settings

logger = logging.getLogger(__name__)

Handler = Callable[[str], Awaitable[object]]


class WorkScheduler(Protocol):
    async def schedule(self, request_id: str, delay_seconds: int = 0) -> None: ...


def _redacted_url(url: str) -> str:
    """Redact credentials from URL for safe logging."""
    parsed = urlparse(url)
    if not parsed.netloc:
        return url
    host = parsed.hostname or ""
    port = f":{parsed.port}" if parsed.port else ""
    return urlunparse(parsed._replace(netloc=host + port))


class WorkQueue:
    """
    At-least-once work queue with delayed redelivery.

    Features:
    - Persistent messages on a durable direct exchange
    - Delayed scheduling via TTL + dead-letter parking queues
    - Bounded consumer concurrency (prefetch) to respect the provider rate limit
    """

    def __init__(
        self,
        rabbit_url: str,
        exchange_name: str = "invite.relay.v1",
        work_queue: str = "invite.worker",
        concurrency: int = 1,
        connect_timeout: float = 10.0,
    ):
        self.rabbit_url = rabbit_url
        self.exchange_name = exchange_name
        self.work_queue = work_queue
        self.concurrency = concurrency
        self.connect_timeout = connect_timeout
        self._conn = None
        self._channel = None
        self._exchange = None
        self._queue = None
        self._handler: Optional[Handler] = None
        self._lock = asyncio.Lock()
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkQueue":
        return cls(
            rabbit_url=settings.rabbit_url,
            exchange_name=settings.exchange_name,
            work_queue=settings.work_queue,
            concurrency=settings.worker_concurrency,
            connect_timeout=settings.rabbit_connect_timeout,
        )

    def delay_queue_name(self, delay_seconds: int) -> str:
        return f"{self.work_queue}.delay.{delay_seconds}"

    async def start(self) -> None:
        """Connect, declare the exchange and the work queue."""
        if self._started:
            return

        async with self._lock:
            if self._started:
                return

            try:
                self._conn = await asyncio.wait_for(
                    aio_pika.connect_robust(self.rabbit_url),
                    timeout=self.connect_timeout,
                )
                self._channel = await self._conn.channel(publisher_confirms=True)
                self._exchange = await self._channel.declare_exchange(
                    self.exchange_name, aio_pika.ExchangeType.DIRECT, durable=True
                )
                self._queue = await self._channel.declare_queue(
                    self.work_queue, durable=True
                )
                await self._queue.bind(self._exchange, routing_key=self.work_queue)
            except Exception as exc:
                safe_url = _redacted_url(self.rabbit_url)
                raise RuntimeError(
                    f"Failed to connect to RabbitMQ at '{safe_url}': {exc}"
                ) from exc

            logger.info(
                f"WorkQueue: connected to exchange '{self.exchange_name}', "
                f"queue '{self.work_queue}'"
            )
            self._started = True

    def _message(self, request_id: str) -> aio_pika.Message:
        return aio_pika.Message(
            orjson.dumps({"requestId": request_id}),
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=request_id,
            content_type="application/json",
            content_encoding="utf-8",
        )

    async def schedule(self, request_id: str, delay_seconds: int = 0) -> None:
        """Deliver a work item for `request_id` no earlier than `delay_seconds` from now."""
        if not self._started:
            await self.start()

        delay_seconds = max(0, int(delay_seconds))
        if delay_seconds == 0:
            await self._exchange.publish(
                self._message(request_id), routing_key=self.work_queue
            )
            logger.debug(f"Scheduled {request_id} now")
            return

        # Redeclared on every use so the idle expiry never fires while messages wait
        ttl_ms = delay_seconds * 1000
        parking = self.delay_queue_name(delay_seconds)
        await self._channel.declare_queue(
            parking,
            durable=True,
            arguments={
                "x-message-ttl": ttl_ms,
                "x-dead-letter-exchange": self.exchange_name,
                "x-dead-letter-routing-key": self.work_queue,
                "x-expires": ttl_ms + 60_000,
            },
        )
        await self._channel.default_exchange.publish(
            self._message(request_id), routing_key=parking
        )
        logger.debug(f"Scheduled {request_id} in {delay_seconds}s via {parking}")

    async def consume(self, handler: Handler) -> None:
        """Start delivering work items to `handler(request_id)`."""
        if not self._started:
            await self.start()

        self._handler = handler
        await self._channel.set_qos(prefetch_count=self.concurrency)
        await self._queue.consume(self._on_message)
        logger.info(
            f"WorkQueue: consuming '{self.work_queue}' (concurrency={self.concurrency})"
        )

    async def _on_message(self, message: aio_pika.IncomingMessage) -> None:
        # Acked when the handler returns, rejected with requeue when it raises
        async with message.process(requeue=True):
            try:
                payload = orjson.loads(message.body)
            except orjson.JSONDecodeError:
                logger.error(f"Dropping undecodable work item {message.message_id}")
                return

            raw_id = payload.get("requestId") if isinstance(payload, dict) else None
            request_id = str(raw_id or "").strip()
            if not request_id:
                logger.error(f"Dropping work item without requestId: {payload}")
                return

            try:
                await self._handler(request_id)
            except Exception as e:
                logger.error(f"Work item {request_id} failed, requeueing: {e}")
                raise

    async def close(self) -> None:
        """Close connections gracefully."""
        async with self._lock:
            if self._channel and not self._channel.is_closed:
                await self._channel.close()
            if self._conn:
                await self._conn.close()

            self._conn = None
            self._channel = None
            self._exchange = None
            self._queue = None
            self._started = False
            logger.info("WorkQueue: closed")

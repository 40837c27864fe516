"""
Process wiring: build every collaborator from one Settings value.

Both the HTTP app and the worker process open a Runtime at startup and close
it on shutdown. Tests pass their own collaborators through the keyword
arguments of open_runtime().
"""

import logging
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis

from .config import Settings
from .intake import Intake
from .link_index import LinkIndex
from .notifications import NotificationGateway, WebEngageGateway
from .provider import InviteLinkProvider, TelegramInviteClient
from .queue import WorkQueue, WorkScheduler
from .retry import RetryPolicy
from .store import RequestStore, create_redis
from .webhook import JoinHandler
from .worker import InviteWorker

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    redis: redis.Redis
    queue: WorkScheduler
    provider: InviteLinkProvider
    gateway: NotificationGateway
    store: RequestStore
    link_index: LinkIndex
    intake: Intake
    worker: InviteWorker
    join_handler: JoinHandler

    async def close(self) -> None:
        for resource in (self.queue, self.provider, self.gateway):
            close = getattr(resource, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.error(f"Error closing {type(resource).__name__}: {e}")
        await self.redis.aclose()


def build_runtime(
    settings: Settings,
    *,
    redis_client: redis.Redis,
    queue: WorkScheduler,
    provider: InviteLinkProvider,
    gateway: NotificationGateway,
) -> Runtime:
    store = RequestStore(redis_client, prefix=settings.redis_key_prefix)
    link_index = LinkIndex(redis_client, prefix=settings.redis_key_prefix)
    return Runtime(
        settings=settings,
        redis=redis_client,
        queue=queue,
        provider=provider,
        gateway=gateway,
        store=store,
        link_index=link_index,
        intake=Intake(store, queue),
        worker=InviteWorker(
            store=store,
            link_index=link_index,
            provider=provider,
            gateway=gateway,
            queue=queue,
            policy=RetryPolicy.from_settings(settings),
            link_created_event=settings.link_created_event,
            notify_link_created=settings.notify_link_created,
            min_interval=settings.provider_min_interval_ms / 1000,
        ),
        join_handler=JoinHandler(
            store=store,
            link_index=link_index,
            gateway=gateway,
            joined_event=settings.joined_event,
            notify_joined=settings.notify_joined,
        ),
    )


async def open_runtime(
    settings: Settings,
    *,
    redis_client: Optional[redis.Redis] = None,
    queue: Optional[WorkScheduler] = None,
    provider: Optional[InviteLinkProvider] = None,
    gateway: Optional[NotificationGateway] = None,
) -> Runtime:
    """Build the runtime, connecting to RabbitMQ when no queue is supplied."""
    if settings.api_key is None:
        logger.warning("API_KEY is not set; intake and status routes are unauthenticated")

    if queue is None:
        queue = WorkQueue.from_settings(settings)
        await queue.start()

    return build_runtime(
        settings,
        redis_client=redis_client or create_redis(settings),
        queue=queue,
        provider=provider or TelegramInviteClient.from_settings(settings),
        gateway=gateway or WebEngageGateway.from_settings(settings),
    )

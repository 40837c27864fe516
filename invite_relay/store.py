"""
Redis-backed request store.

Each request lives in one Redis hash. Every mutation goes through
conditional_hset(): WATCH the key, evaluate a predicate against the current
fields, and apply the change in a MULTI/EXEC block. A concurrent write to the
same key aborts the EXEC, and the predicate is evaluated again on fresh data.

Usage:
    client = create_redis(settings)
    store = RequestStore(client, prefix=settings.redis_key_prefix)

    await store.create(InviteRequest(request_id="...", user_id="u1"))
    updated = await store.begin_attempt("...", expected_attempts=0)
"""

import functools
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from .config import Settings
from .errors import TransientError
from .models import InviteRequest, RequestStatus, utc_now

logger = logging.getLogger(__name__)

MAX_WATCH_RETRIES = 5

Fields = Dict[str, str]
Mutation = Callable[[Fields], Optional[Fields]]
T = TypeVar("T")


def create_redis(settings: Settings) -> redis.Redis:
    """Build the shared async Redis client (connections are opened lazily)."""
    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        password=settings.redis_password,
        decode_responses=True,
        socket_timeout=settings.redis_timeout,
        socket_connect_timeout=settings.redis_timeout,
    )


def translate_redis_errors(
    func: Callable[..., Awaitable[T]],
) -> Callable[..., Awaitable[T]]:
    """Re-raise Redis client failures as TransientError."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except RedisError as exc:
            raise TransientError(f"Redis call {func.__name__} failed: {exc}") from exc

    return wrapper


async def conditional_hset(
    client: redis.Redis, key: str, mutate: Mutation
) -> Tuple[Fields, Optional[Fields]]:
    """
    Atomically apply `mutate` to the hash at `key`.

    `mutate` receives the current fields ({} when the key is missing) and
    returns the fields to write, or None to leave the hash untouched.

    Returns:
        (fields before the update, fields written or None)

    Raises:
        TransientError: the key kept changing under us for MAX_WATCH_RETRIES rounds
    """
    for attempt in range(1, MAX_WATCH_RETRIES + 1):
        async with client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.hgetall(key)
                changes = mutate(current)
                if not changes:
                    return current, None
                pipe.multi()
                pipe.hset(key, mapping=changes)
                await pipe.execute()
                return current, changes
            except WatchError:
                logger.debug(f"Concurrent write on {key}, retrying ({attempt})")
    raise TransientError(f"Gave up updating {key} after {MAX_WATCH_RETRIES} tries")


class RequestStore:
    """Durable record of invite request lifecycle."""

    def __init__(self, client: redis.Redis, prefix: str = "invite"):
        self.client = client
        self.prefix = prefix

    def key(self, request_id: str) -> str:
        return f"{self.prefix}:request:{request_id}"

    async def _transition(
        self, request_id: str, mutate: Mutation
    ) -> Optional[InviteRequest]:
        current, changes = await conditional_hset(
            self.client, self.key(request_id), mutate
        )
        if changes is None:
            return None
        return InviteRequest.from_redis({**current, **changes})

    @translate_redis_errors
    async def create(self, request: InviteRequest) -> None:
        await self.client.hset(self.key(request.request_id), mapping=request.to_redis())

    @translate_redis_errors
    async def discard(self, request_id: str) -> None:
        """Remove a request that was never admitted (its work item could not be scheduled)."""
        await self.client.delete(self.key(request_id))

    @translate_redis_errors
    async def get(self, request_id: str) -> Optional[InviteRequest]:
        raw = await self.client.hgetall(self.key(request_id))
        if not raw:
            return None
        return InviteRequest.from_redis(raw)

    @translate_redis_errors
    async def begin_attempt(
        self, request_id: str, expected_attempts: int
    ) -> Optional[InviteRequest]:
        """
        Move to PROCESSING with attempts = expected_attempts + 1.

        Compare-and-set on the attempt counter: returns None when another
        delivery got there first or the request completed meanwhile.
        """

        def mutate(current: Fields) -> Optional[Fields]:
            if not current or current.get("status") == RequestStatus.DONE.value:
                return None
            if int(current.get("attempts", "0")) != expected_attempts:
                return None
            return {
                "status": RequestStatus.PROCESSING.value,
                "attempts": str(expected_attempts + 1),
                "updated_at": utc_now().isoformat(),
            }

        return await self._transition(request_id, mutate)

    @translate_redis_errors
    async def mark_failed(
        self, request_id: str, attempts: int
    ) -> Optional[InviteRequest]:
        """Terminal exhaustion. Records the attempt that crossed the ceiling."""

        def mutate(current: Fields) -> Optional[Fields]:
            if not current or current.get("status") == RequestStatus.DONE.value:
                return None
            if int(current.get("attempts", "0")) >= attempts:
                return None
            return {
                "status": RequestStatus.FAILED.value,
                "attempts": str(attempts),
                "updated_at": utc_now().isoformat(),
            }

        return await self._transition(request_id, mutate)

    @translate_redis_errors
    async def requeue(self, request_id: str) -> Optional[InviteRequest]:
        """PROCESSING -> QUEUED ahead of a scheduled retry."""

        def mutate(current: Fields) -> Optional[Fields]:
            if current.get("status") != RequestStatus.PROCESSING.value:
                return None
            return {
                "status": RequestStatus.QUEUED.value,
                "updated_at": utc_now().isoformat(),
            }

        return await self._transition(request_id, mutate)

    @translate_redis_errors
    async def mark_done(
        self, request_id: str, invite_link: str
    ) -> Optional[InviteRequest]:
        def mutate(current: Fields) -> Optional[Fields]:
            if current.get("status") != RequestStatus.PROCESSING.value:
                return None
            return {
                "status": RequestStatus.DONE.value,
                "invite_link": invite_link,
                "updated_at": utc_now().isoformat(),
            }

        return await self._transition(request_id, mutate)

    @translate_redis_errors
    async def mark_link_notified(self, request_id: str) -> Optional[InviteRequest]:
        """Set the created-notification flag, once, on a DONE request."""

        def mutate(current: Fields) -> Optional[Fields]:
            if current.get("status") != RequestStatus.DONE.value:
                return None
            if current.get("link_event_fired") == "1":
                return None
            return {"link_event_fired": "1", "updated_at": utc_now().isoformat()}

        return await self._transition(request_id, mutate)

    @translate_redis_errors
    async def mark_joined(
        self, request_id: str, member_id: Optional[str]
    ) -> Optional[InviteRequest]:
        """
        Flip `joined` false -> true.

        Returns the updated request when this call made the transition, None
        when the request is missing or was already joined. The caller fires
        the joined notification only on a non-None result.
        """

        def mutate(current: Fields) -> Optional[Fields]:
            if not current or current.get("joined") == "1":
                return None
            now = utc_now().isoformat()
            changes = {"joined": "1", "joined_at": now, "updated_at": now}
            if member_id and not current.get("member_id"):
                changes["member_id"] = member_id
            return changes

        return await self._transition(request_id, mutate)

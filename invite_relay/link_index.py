"""
Content-addressed link index.

Maps sha256(invite_link) to the request that produced the link, so a join
webhook that only carries the link can find its request with one key lookup.
"""

import hashlib
import logging
from typing import Optional

import redis.asyncio as redis

from .errors import LinkIndexConflict
from .models import LinkEntry
from .store import Fields, conditional_hset, translate_redis_errors

logger = logging.getLogger(__name__)


def link_digest(invite_link: str) -> str:
    """Deterministic fixed-length (64 hex chars) key for an invite link."""
    return hashlib.sha256(str(invite_link).encode("utf-8")).hexdigest()


class LinkIndex:
    """Redis hash per digest; written once by the worker, backfilled once on join."""

    def __init__(self, client: redis.Redis, prefix: str = "invite"):
        self.client = client
        self.prefix = prefix

    def key(self, digest: str) -> str:
        return f"{self.prefix}:link:{digest}"

    @translate_redis_errors
    async def put(self, digest: str, entry: LinkEntry) -> bool:
        """
        Create the entry for `digest`.

        Returns:
            True if written, False if the same request already owns it

        Raises:
            LinkIndexConflict: the digest belongs to a different request
        """

        def mutate(current: Fields) -> Optional[Fields]:
            if not current:
                return entry.to_redis()
            owner = current.get("request_id", "")
            if owner != entry.request_id:
                raise LinkIndexConflict(digest, owner, entry.request_id)
            return None

        try:
            _, written = await conditional_hset(self.client, self.key(digest), mutate)
        except LinkIndexConflict as exc:
            logger.error(f"Link index integrity anomaly: {exc}")
            raise
        return written is not None

    @translate_redis_errors
    async def get(self, digest: str) -> Optional[LinkEntry]:
        raw = await self.client.hgetall(self.key(digest))
        if not raw:
            return None
        return LinkEntry.from_redis(raw)

    @translate_redis_errors
    async def backfill(self, digest: str, member_id: str) -> bool:
        """Record the member identity if the entry exists and has none yet."""

        def mutate(current: Fields) -> Optional[Fields]:
            if not current or current.get("member_id"):
                return None
            return {"member_id": member_id}

        _, written = await conditional_hset(self.client, self.key(digest), mutate)
        return written is not None

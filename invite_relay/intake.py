"""Synchronous entrypoint: admit a request, schedule its work item, return."""

import logging
import uuid
from typing import Optional

from .errors import TransientError, ValidationError
from .models import InviteRequest, StatusView
from .queue import WorkScheduler
from .store import RequestStore

logger = logging.getLogger(__name__)


def new_request_id() -> str:
    return str(uuid.uuid4())


class Intake:
    def __init__(self, store: RequestStore, queue: WorkScheduler):
        self.store = store
        self.queue = queue

    async def submit(
        self, user_id: Optional[str], transaction_id: Optional[str] = None
    ) -> InviteRequest:
        """
        Persist a QUEUED request and schedule a zero-delay work item.

        Raises:
            ValidationError: user_id missing or blank
            TransientError: the work item could not be scheduled; nothing is kept
        """
        user_id = (user_id or "").strip()
        if not user_id:
            raise ValidationError("userId required")
        transaction_id = (transaction_id or "").strip() or None

        request = InviteRequest(
            request_id=new_request_id(),
            user_id=user_id,
            transaction_id=transaction_id,
        )
        await self.store.create(request)
        try:
            await self.queue.schedule(request.request_id, 0)
        except Exception as exc:
            logger.error(f"Could not schedule invite request {request.request_id}: {exc}")
            await self.store.discard(request.request_id)
            raise TransientError("work queue unavailable, request not accepted") from exc

        logger.info(
            f"Queued invite request {request.request_id} for user {user_id}"
            + (f" (transaction {transaction_id})" if transaction_id else "")
        )
        return request

    async def status(self, request_id: str) -> Optional[StatusView]:
        request_id = (request_id or "").strip()
        if not request_id:
            raise ValidationError("requestId required")
        request = await self.store.get(request_id)
        if request is None:
            return None
        return StatusView.from_request(request)

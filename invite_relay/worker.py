"""
Invite worker: drives one request from QUEUED to DONE or FAILED.

Each delivered work item runs InviteWorker.handle(request_id) once:

1. Missing or DONE request -> acknowledge, nothing else (redelivery guard)
2. attempts + 1 over the ceiling -> FAILED
3. QUEUED/PROCESSING -> PROCESSING with attempts + 1
4. Ask Telegram for a link:
   - throttled or refused -> back to QUEUED, explicit delayed reschedule
   - success -> link index entry, DONE
5. Fire the "link created" milestone once, if enabled

handle() never raises for business failures. The only exception it lets out
is TransientError when a retry could not even be scheduled, so the queue
redelivers the item instead of losing it.
"""

import asyncio
import logging
import signal
from typing import Optional

from .errors import LinkIndexConflict, ProviderError, RateLimitedError, TransientError
from .link_index import LinkIndex, link_digest
from .models import InviteRequest, LinkEntry, RequestStatus, WorkOutcome
from .notifications import NotificationGateway
from .provider import InviteLinkProvider
from .queue import WorkScheduler
from .retry import RetryPolicy
from .store import RequestStore

logger = logging.getLogger(__name__)


class InviteWorker:
    def __init__(
        self,
        store: RequestStore,
        link_index: LinkIndex,
        provider: InviteLinkProvider,
        gateway: NotificationGateway,
        queue: WorkScheduler,
        policy: RetryPolicy,
        link_created_event: str,
        notify_link_created: bool = True,
        min_interval: float = 0.0,
    ):
        self.store = store
        self.link_index = link_index
        self.provider = provider
        self.gateway = gateway
        self.queue = queue
        self.policy = policy
        self.link_created_event = link_created_event
        self.notify_link_created = notify_link_created
        self.min_interval = min_interval

    async def handle(self, request_id: str) -> WorkOutcome:
        try:
            return await self._process(request_id)
        except Exception as exc:
            logger.exception(f"Invite request {request_id} crashed mid-delivery: {exc}")

        try:
            await self.store.requeue(request_id)
        except TransientError as exc:
            logger.warning(f"Could not requeue invite request {request_id}: {exc}")

        delay = self.policy.backoff(1)
        try:
            await self.queue.schedule(request_id, delay)
        except Exception as exc:
            raise TransientError(
                f"Could not reschedule invite request {request_id}: {exc}"
            ) from exc
        return WorkOutcome.RETRY_SCHEDULED

    async def _process(self, request_id: str) -> WorkOutcome:
        request = await self.store.get(request_id)
        if request is None:
            logger.info(f"Invite request {request_id} not found, discarding work item")
            return WorkOutcome.MISSING
        if request.status is RequestStatus.DONE:
            logger.debug(f"Invite request {request_id} already DONE, discarding work item")
            return WorkOutcome.ALREADY_DONE

        attempts = request.attempts + 1
        if self.policy.exhausted(attempts):
            await self.store.mark_failed(request_id, attempts)
            logger.warning(
                f"Invite request {request_id} FAILED after {request.attempts} attempts "
                f"(ceiling {self.policy.max_attempts})"
            )
            return WorkOutcome.FAILED

        started = await self.store.begin_attempt(request_id, request.attempts)
        if started is None:
            logger.info(f"Invite request {request_id} claimed by another delivery")
            return WorkOutcome.SUPERSEDED
        logger.info(f"Invite request {request_id} PROCESSING (attempt {attempts})")

        if self.min_interval > 0:
            await asyncio.sleep(self.min_interval)

        try:
            invite_link = await self.provider.create_invite_link(request_id)
        except RateLimitedError as exc:
            return await self._retry(started, exc.retry_after, str(exc))
        except (ProviderError, TransientError) as exc:
            return await self._retry(started, None, str(exc))

        entry = LinkEntry(
            invite_link=invite_link,
            request_id=request_id,
            user_id=started.user_id,
            transaction_id=started.transaction_id,
        )
        try:
            await self.link_index.put(link_digest(invite_link), entry)
        except LinkIndexConflict as exc:
            return await self._retry(started, None, str(exc))

        done = await self.store.mark_done(request_id, invite_link)
        if done is None:
            logger.warning(
                f"Invite request {request_id} changed state before DONE, link {invite_link} unused"
            )
            return WorkOutcome.SUPERSEDED
        logger.info(f"Invite request {request_id} DONE")

        await self._notify_created(done)
        return WorkOutcome.DONE

    async def _retry(
        self, request: InviteRequest, retry_after: Optional[int], reason: str
    ) -> WorkOutcome:
        delay = self.policy.delay_for(request.attempts, retry_after)
        await self.store.requeue(request.request_id)
        await self.queue.schedule(request.request_id, delay)
        logger.warning(
            f"Invite request {request.request_id} retry in {delay}s "
            f"(attempt {request.attempts}/{self.policy.max_attempts}): {reason}"
        )
        return WorkOutcome.RETRY_SCHEDULED

    async def _notify_created(self, request: InviteRequest) -> None:
        if request.link_event_fired:
            return
        if not self.notify_link_created:
            logger.info(f"Link-created notification disabled, skipping {request.request_id}")
            return

        result = await self.gateway.send(
            request.user_id,
            self.link_created_event,
            {
                "transactionId": request.transaction_id or "",
                "inviteLink": request.invite_link,
            },
        )
        if result.ok:
            await self.store.mark_link_notified(request.request_id)
        else:
            # DONE requests are never redelivered, so this milestone is lost
            logger.error(
                f"Link-created notification for {request.request_id} failed "
                f"({result.status_code}); it will not be retried"
            )


async def run_worker(runtime) -> None:
    """Consume work items until SIGINT/SIGTERM. `runtime` is an open Runtime."""
    await runtime.queue.consume(runtime.worker.handle)

    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    logger.info("Invite worker is running")
    await stop_event.wait()

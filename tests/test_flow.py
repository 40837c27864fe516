"""
End-to-end flow on one Runtime: intake -> worker -> join webhook.

Queue deliveries are simulated by replaying what RecordingQueue captured.
"""

import pytest

from conftest import FakeProvider, make_update
from invite_relay.errors import RateLimitedError
from invite_relay.models import RequestStatus, WebhookResult, WorkOutcome

LINK = "https://t.me/+AbCdEf123"


async def deliver_all(runtime, queue):
    """Run the worker for every scheduled item, including ones scheduled meanwhile."""
    outcomes = []
    delivered = 0
    while delivered < len(queue.scheduled):
        request_id, _ = queue.scheduled[delivered]
        delivered += 1
        outcomes.append(await runtime.worker.handle(request_id))
    return outcomes


@pytest.mark.asyncio
async def test_happy_path(runtime, queue, gateway):
    settings = runtime.settings
    request = await runtime.intake.submit("u1", "tx-1")
    assert (await runtime.intake.status(request.request_id)).status is RequestStatus.QUEUED

    assert await deliver_all(runtime, queue) == [WorkOutcome.DONE]
    view = await runtime.intake.status(request.request_id)
    assert view.status is RequestStatus.DONE
    assert view.invite_link == LINK

    # The queue may deliver the same item again
    assert await runtime.worker.handle(request.request_id) is WorkOutcome.ALREADY_DONE

    update = make_update(LINK, member_id=4242)
    assert await runtime.join_handler.handle_update(update) is WebhookResult.OK
    assert await runtime.join_handler.handle_update(update) is WebhookResult.OK

    assert [name for _, name, _ in gateway.sent] == [
        settings.link_created_event,
        settings.joined_event,
    ]
    stored = await runtime.store.get(request.request_id)
    assert stored.link_event_fired is True
    assert stored.joined is True
    assert stored.member_id == "4242"


@pytest.mark.asyncio
async def test_throttled_then_issued(runtime, queue, gateway):
    runtime.worker.provider = FakeProvider(RateLimitedError("slow down", retry_after=30), LINK)
    request = await runtime.intake.submit("u1")

    outcomes = await deliver_all(runtime, queue)

    assert outcomes == [WorkOutcome.RETRY_SCHEDULED, WorkOutcome.DONE]
    assert queue.scheduled[1] == (request.request_id, 31)
    stored = await runtime.store.get(request.request_id)
    assert stored.status is RequestStatus.DONE
    assert stored.attempts == 2
    assert len(gateway.events(runtime.settings.link_created_event)) == 1


@pytest.mark.asyncio
async def test_exhaustion_then_join_attempt(runtime, queue, gateway):
    runtime.worker.provider = FakeProvider(RateLimitedError("slow down"))
    request = await runtime.intake.submit("u1")

    outcomes = await deliver_all(runtime, queue)

    # max_attempts=3 in the test settings
    assert outcomes[-1] is WorkOutcome.FAILED
    assert outcomes.count(WorkOutcome.RETRY_SCHEDULED) == 3
    assert (await runtime.intake.status(request.request_id)).status is RequestStatus.FAILED

    result = await runtime.join_handler.handle_update(make_update("https://t.me/+never"))
    assert result is WebhookResult.NOT_FOUND
    assert gateway.sent == []

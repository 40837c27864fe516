"""
Telegram join webhook.

decode_join_event() turns any supported update shape into one JoinEvent;
JoinHandler takes it from there:

1. not a member status        -> ignored
2. digest miss in link index  -> not_found
3. request missing            -> ok (nothing to do)
4. atomic joined false->true  -> notify once; already joined -> ok, no notify

The sender always gets a success acknowledgement.
"""

import logging
from typing import Any, Dict, Optional

from .errors import TransientError
from .link_index import LinkIndex, link_digest
from .models import JoinEvent, WebhookResult
from .notifications import NotificationGateway
from .store import RequestStore

logger = logging.getLogger(__name__)

UPDATE_KEYS = ("chat_member", "my_chat_member")


def decode_join_event(update: Any) -> Optional[JoinEvent]:
    """Extract (invite link, new status, member id) from a Telegram update."""
    if not isinstance(update, dict):
        return None

    member_update = None
    for key in UPDATE_KEYS:
        if isinstance(update.get(key), dict):
            member_update = update[key]
            break
    if member_update is None:
        return None

    invite = member_update.get("invite_link")
    invite_link = invite.get("invite_link") if isinstance(invite, dict) else None
    new_member = member_update.get("new_chat_member")
    if not isinstance(new_member, dict):
        return None
    user = new_member.get("user")
    member_id = user.get("id") if isinstance(user, dict) else None

    invite_link = str(invite_link or "").strip()
    member_id = str(member_id if member_id is not None else "").strip()
    if not invite_link or not member_id:
        return None

    return JoinEvent(
        invite_link=invite_link,
        status=str(new_member.get("status") or ""),
        member_id=member_id,
    )


class JoinHandler:
    def __init__(
        self,
        store: RequestStore,
        link_index: LinkIndex,
        gateway: NotificationGateway,
        joined_event: str,
        notify_joined: bool = True,
    ):
        self.store = store
        self.link_index = link_index
        self.gateway = gateway
        self.joined_event = joined_event
        self.notify_joined = notify_joined

    async def handle_update(self, update: Dict[str, Any]) -> WebhookResult:
        """Boundary entrypoint: decode, handle, and never raise."""
        event = decode_join_event(update)
        if event is None:
            return WebhookResult.IGNORED
        try:
            return await self.handle(event)
        except Exception as exc:
            logger.exception(f"Join webhook for member {event.member_id} failed: {exc}")
            return WebhookResult.OK

    async def handle(self, event: JoinEvent) -> WebhookResult:
        if not event.is_member:
            logger.debug(f"Ignoring membership status {event.status!r}")
            return WebhookResult.IGNORED

        digest = link_digest(event.invite_link)
        entry = await self.link_index.get(digest)
        if entry is None:
            logger.info(f"Join via unknown invite link (digest {digest[:12]}...)")
            return WebhookResult.NOT_FOUND

        joined = await self.store.mark_joined(entry.request_id, event.member_id)
        if joined is None:
            logger.info(
                f"Invite request {entry.request_id} missing or already joined, no-op"
            )
            return WebhookResult.OK
        logger.info(f"Invite request {entry.request_id} joined by member {event.member_id}")

        try:
            await self.link_index.backfill(digest, event.member_id)
        except TransientError as exc:
            logger.warning(f"Member id backfill for {digest[:12]}... skipped: {exc}")

        if not self.notify_joined:
            logger.info(f"Joined notification disabled, skipping {entry.request_id}")
            return WebhookResult.OK

        result = await self.gateway.send(
            joined.user_id,
            self.joined_event,
            {
                "transactionId": joined.transaction_id or "",
                "inviteLink": event.invite_link,
                "telegramUserId": event.member_id,
            },
        )
        if not result.ok:
            logger.error(
                f"Joined notification for {entry.request_id} failed "
                f"({result.status_code}); it will not be retried"
            )
        return WebhookResult.OK

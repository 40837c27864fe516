"""
Shared pytest configuration and fixtures for the invite-relay test suite.

Redis is replaced by fakeredis, RabbitMQ by RecordingQueue, Telegram and
WebEngage by scripted fakes. Nothing here needs a network.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple, Union

import fakeredis
import fakeredis.aioredis
import pytest

from invite_relay.config import Settings
from invite_relay.link_index import LinkIndex
from invite_relay.notifications import NotificationResult
from invite_relay.runtime import Runtime, build_runtime
from invite_relay.store import RequestStore

# Configure logging for tests
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


# ============================================================================
# Fakes
# ============================================================================


class RecordingQueue:
    """Work scheduler that only remembers what it was asked to do."""

    def __init__(self, fail: bool = False):
        self.scheduled: List[Tuple[str, int]] = []
        self.fail = fail

    async def schedule(self, request_id: str, delay_seconds: int = 0) -> None:
        if self.fail:
            raise ConnectionError("rabbitmq unavailable")
        self.scheduled.append((request_id, delay_seconds))

    @property
    def last(self) -> Tuple[str, int]:
        return self.scheduled[-1]


class FakeProvider:
    """Returns (or raises) scripted results in order; repeats the last one."""

    def __init__(self, *results: Union[str, Exception]):
        self.results = list(results) or ["https://t.me/+default"]
        self.calls: List[str] = []

    async def create_invite_link(self, name: str) -> str:
        self.calls.append(name)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeGateway:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    async def send(
        self, user_id: str, event_name: str, event_data: Dict[str, Any]
    ) -> NotificationResult:
        self.sent.append((user_id, event_name, event_data))
        return NotificationResult(ok=self.ok, status_code=200 if self.ok else 500)

    def events(self, event_name: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        return [s for s in self.sent if s[1] == event_name]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        api_key="test-secret",
        telegram_bot_token="123:abc",
        telegram_chat_id="-100200300",
        webengage_license_code="lic",
        webengage_api_key="we-key",
        max_attempts=3,
        base_backoff_seconds=5,
        max_backoff_seconds=3600,
        provider_min_interval_ms=0,
    )


@pytest.fixture
async def fake_redis():
    """Provide an isolated fake Redis instance for testing."""
    redis_instance = fakeredis.aioredis.FakeRedis(
        server=fakeredis.FakeServer(), decode_responses=True
    )
    yield redis_instance
    await redis_instance.aclose()


@pytest.fixture
def store(fake_redis) -> RequestStore:
    return RequestStore(fake_redis, prefix="test")


@pytest.fixture
def link_index(fake_redis) -> LinkIndex:
    return LinkIndex(fake_redis, prefix="test")


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider("https://t.me/+AbCdEf123")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def runtime(settings, fake_redis, queue, provider, gateway) -> Runtime:
    return build_runtime(
        settings.model_copy(update={"redis_key_prefix": "test"}),
        redis_client=fake_redis,
        queue=queue,
        provider=provider,
        gateway=gateway,
    )


def make_update(
    invite_link: Optional[str],
    member_id: Optional[int] = 777,
    status: str = "member",
    key: str = "chat_member",
) -> Dict[str, Any]:
    """Telegram chat_member update as delivered to the webhook."""
    update: Dict[str, Any] = {
        "update_id": 1,
        key: {
            "chat": {"id": -100200300, "type": "supergroup"},
            "from": {"id": member_id},
            "date": 1700000000,
            "old_chat_member": {"status": "left", "user": {"id": member_id}},
            "new_chat_member": {"status": status, "user": {"id": member_id}},
        },
    }
    if invite_link is not None:
        update[key]["invite_link"] = {"invite_link": invite_link, "member_limit": 1}
    return update


# ============================================================================
# Hooks
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_collection_modifyitems(config, items):
    """Mark tests based on name patterns."""
    for item in items:
        if "flow" in item.nodeid.lower():
            item.add_marker(pytest.mark.integration)
        elif "test_" in item.name:
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def log_test_info(request):
    """Log test information for debugging."""
    logger = logging.getLogger("test")
    logger.info(f"Starting test: {request.node.nodeid}")

    yield

    logger.info(f"Finished test: {request.node.nodeid}")

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from role_orchestrator.api.main import create_app
from role_orchestrator.audit import AuditLogger
from role_orchestrator.config import Settings
from role_orchestrator.notifier import AdminNotifier
from role_orchestrator.storage import InMemoryStore
from role_orchestrator.task_queue import TaskQueue

OWNER_KEY = "owner-secret-for-tests"
ADMIN_CHAT = "424242"
WEBHOOK_SECRET = "hook-secret"


class RecordingChannel:
    """Notification channel double that keeps every message it was asked to send."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    def send(self, destination: str, text: str) -> bool:
        if self.fail:
            raise ConnectionError("channel unreachable")
        self.sent.append((destination, text))
        return True


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def queue(store: InMemoryStore) -> TaskQueue:
    return TaskQueue(store)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def audit(store: InMemoryStore) -> AuditLogger:
    return AuditLogger(store)


@pytest.fixture
def notifier(channel: RecordingChannel) -> AdminNotifier:
    return AdminNotifier(channel, ADMIN_CHAT)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        owner_agent_key=OWNER_KEY,
        admin_chat_id=ADMIN_CHAT,
        telegram_webhook_secret=WEBHOOK_SECRET,
        planner_mode="deterministic",
        runner_enabled=False,
    )


@pytest.fixture
def client(store: InMemoryStore, settings: Settings, channel: RecordingChannel) -> Iterator[TestClient]:
    app = create_app(store=store, settings_override=settings, notification_channel=channel)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def owner_headers() -> dict[str, str]:
    return {"x-agent-key": OWNER_KEY}

"""Shared fixtures for the responder tests."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import Mock

import pytest

from inbox_responder.config import Settings
from inbox_responder.dedup_guard import RecentlySentGuard
from inbox_responder.models import FetchedMessage, Message, MessageStatus, SentMessage
from inbox_responder.store import JsonStore

OWNER = "support@example.com"
BASE_TIME = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of Settings()."""
    for field in Settings.model_fields.values():
        if field.alias:
            monkeypatch.delenv(field.alias, raising=False)


@pytest.fixture
def store(tmp_path):
    """Store backed by a temporary directory."""
    return JsonStore(tmp_path / "email_db.json", tmp_path / "db_corrupt_backups")


@pytest.fixture
def guard():
    return RecentlySentGuard(ttl_seconds=60)


@pytest.fixture
def make_message():
    """Factory for store messages spaced a minute apart."""

    def _make(message_id, thread_id="t1", minutes=0, sent_by_us=False, status=None, **kwargs):
        sender = kwargs.pop("sender", OWNER if sent_by_us else f"Student <{message_id}@students.example.org>")
        return Message(
            id=message_id,
            thread_id=thread_id,
            sender=sender,
            subject=kwargs.pop("subject", "Registration hold"),
            snippet=kwargs.pop("snippet", f"body of {message_id}"),
            date=BASE_TIME + timedelta(minutes=minutes),
            sent_by_us=sent_by_us,
            status=status or (MessageStatus.SENT if sent_by_us else MessageStatus.NEW),
            message_id_header=kwargs.pop("message_id_header", f"<{message_id}@mail.example.org>"),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_fetched():
    """Factory for messages as the mailbox returns them."""

    def _make(message_id, thread_id="t1", minutes=0, sender=None, **kwargs):
        return FetchedMessage(
            message_id=message_id,
            thread_id=thread_id,
            subject=kwargs.pop("subject", "Registration hold"),
            sender=sender or f"Student <{message_id}@students.example.org>",
            snippet=kwargs.pop("snippet", f"body of {message_id}"),
            received=BASE_TIME + timedelta(minutes=minutes),
            internet_message_id=kwargs.pop("internet_message_id", f"<{message_id}@mail.example.org>"),
            reply_to=kwargs.pop("reply_to", None),
        )

    return _make


@pytest.fixture
def seed(store):
    """Write messages into the store in one go."""

    def _seed(*messages):
        current = store.load()
        for message in messages:
            current.upsert(message)
        store.save(current)
        return current

    return _seed


@pytest.fixture
def mailbox():
    """Mailbox double whose send succeeds with transport id s1."""
    mock = Mock()
    mock.send.return_value = SentMessage(message_id="s1", thread_id="t1")
    mock.get_sent_headers.return_value = {"message-id": "<s1@mail.example.org>"}
    return mock


@pytest.fixture
def generator():
    """Reply generator double answering with a plain reply."""
    mock = Mock()
    mock.generate.return_value = json.dumps(
        {"reply": "Thanks", "requires_human_review": False, "reason": "", "filled_fields": []}
    )
    return mock

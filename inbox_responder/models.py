"""Typed containers shared across the pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from .utils import isoformat_utc, parse_graph_datetime

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    """Lifecycle of a stored message."""

    NEW = "new"
    RESPONDED = "responded"
    SENT = "sent"
    HUMAN_REVIEW = "human_review"


# Only forward moves are allowed; sent and human_review are terminal here.
ALLOWED_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.NEW: frozenset({MessageStatus.RESPONDED, MessageStatus.HUMAN_REVIEW}),
    MessageStatus.RESPONDED: frozenset(),
    MessageStatus.SENT: frozenset(),
    MessageStatus.HUMAN_REVIEW: frozenset(),
}


class StatusTransitionError(ValueError):
    """Raised when a status change would move a message backwards."""


# Stored records without a date sort first in their thread.
UNKNOWN_DATE = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass
class FetchedMessage:
    """Essential metadata about a mailbox message, as returned by the source."""

    message_id: str
    thread_id: str
    subject: str
    sender: str
    snippet: str
    received: datetime
    internet_message_id: Optional[str]
    reply_to: Optional[str]
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class SentMessage:
    """Identifiers the transport assigned to a message we sent."""

    message_id: str
    thread_id: Optional[str]


@dataclass
class ReplyRecord:
    """The reply generated for an inbound message."""

    subject: str
    body: str
    sent_message_id: Optional[str] = None
    sent_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "body": self.body,
            "sentMessageId": self.sent_message_id,
            "sentAt": isoformat_utc(self.sent_at) if self.sent_at else None,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ReplyRecord":
        sent_at = raw.get("sentAt")
        return cls(
            subject=raw.get("subject") or "",
            body=raw.get("body") or "",
            sent_message_id=raw.get("sentMessageId"),
            sent_at=parse_graph_datetime(sent_at) if sent_at else None,
        )


_MESSAGE_KEYS = {
    "id",
    "threadId",
    "from",
    "subject",
    "snippet",
    "date",
    "messageIdHeader",
    "replyToHeader",
    "sentByUs",
    "status",
    "humanReviewReason",
    "llm_raw",
    "llm_parsed",
    "reply",
    "respondedAt",
}


@dataclass
class Message:
    """A message as tracked in the store."""

    id: str
    thread_id: str
    sender: str
    subject: str
    snippet: str
    date: datetime
    sent_by_us: bool
    status: MessageStatus
    message_id_header: Optional[str] = None
    reply_to_header: Optional[str] = None
    human_review_reason: Optional[str] = None
    llm_raw: Optional[str] = None
    llm_parsed: Optional[dict[str, Any]] = None
    reply: Optional[ReplyRecord] = None
    responded_at: Optional[datetime] = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_pending(self) -> bool:
        """Inbound and still waiting for a reply."""
        return self.status == MessageStatus.NEW and not self.sent_by_us

    def can_transition(self, target: MessageStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition(self, target: MessageStatus) -> None:
        if not self.can_transition(target):
            raise StatusTransitionError(
                f"Message {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "threadId": self.thread_id,
                "snippet": self.snippet,
                "from": self.sender,
                "subject": self.subject,
                "date": isoformat_utc(self.date),
                "messageIdHeader": self.message_id_header,
                "replyToHeader": self.reply_to_header,
                "sentByUs": self.sent_by_us,
                "status": self.status.value,
            }
        )
        if self.human_review_reason is not None:
            payload["humanReviewReason"] = self.human_review_reason
        if self.llm_raw is not None:
            payload["llm_raw"] = self.llm_raw
        if self.llm_parsed is not None:
            payload["llm_parsed"] = self.llm_parsed
        if self.reply is not None:
            payload["reply"] = self.reply.to_dict()
        if self.responded_at is not None:
            payload["respondedAt"] = isoformat_utc(self.responded_at)
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Message":
        sent_by_us = bool(raw.get("sentByUs"))
        status = raw.get("status") or (
            MessageStatus.SENT if sent_by_us else MessageStatus.NEW
        )
        date = raw.get("date")
        responded_at = raw.get("respondedAt")
        reply = raw.get("reply")
        return cls(
            id=str(raw["id"]),
            thread_id=str(raw.get("threadId") or ""),
            sender=raw.get("from") or "",
            subject=raw.get("subject") or "",
            snippet=raw.get("snippet") or "",
            date=parse_graph_datetime(date) if date else UNKNOWN_DATE,
            sent_by_us=sent_by_us,
            status=MessageStatus(status),
            message_id_header=raw.get("messageIdHeader"),
            reply_to_header=raw.get("replyToHeader"),
            human_review_reason=raw.get("humanReviewReason"),
            llm_raw=raw.get("llm_raw"),
            llm_parsed=raw.get("llm_parsed"),
            reply=ReplyRecord.from_dict(reply) if isinstance(reply, dict) else None,
            responded_at=parse_graph_datetime(responded_at) if responded_at else None,
            extra={key: value for key, value in raw.items() if key not in _MESSAGE_KEYS},
        )


@dataclass
class Store:
    """Aggregate root: every known message plus thread membership."""

    messages: dict[str, Message] = field(default_factory=dict)
    threads: dict[str, list[str]] = field(default_factory=dict)
    # Entries that failed to load, written back untouched.
    unreadable: dict[str, Any] = field(default_factory=dict, repr=False)

    def knows(self, message_id: str) -> bool:
        return message_id in self.messages or message_id in self.unreadable

    def attach(self, thread_id: str, message_id: str) -> None:
        """Append a message id to a thread; membership is append-only."""
        members = self.threads.setdefault(thread_id, [])
        if message_id not in members:
            members.append(message_id)

    def upsert(self, message: Message) -> Message:
        """Insert or refresh a message without regressing what is already known."""
        existing = self.messages.get(message.id)
        if existing is not None:
            message.status = existing.status
            message.sent_by_us = message.sent_by_us or existing.sent_by_us
            message.message_id_header = message.message_id_header or existing.message_id_header
            message.reply_to_header = message.reply_to_header or existing.reply_to_header
            message.human_review_reason = existing.human_review_reason
            message.llm_raw = existing.llm_raw
            message.llm_parsed = existing.llm_parsed
            message.reply = existing.reply
            message.responded_at = existing.responded_at
            message.extra = {**existing.extra, **message.extra}
        self.messages[message.id] = message
        self.attach(message.thread_id, message.id)
        return message

    def thread_messages(self, thread_id: str) -> list[Message]:
        """Members of a thread, oldest first."""
        members = [
            self.messages[message_id]
            for message_id in self.threads.get(thread_id, [])
            if message_id in self.messages
        ]
        return sorted(members, key=lambda message: message.date)

    def record_sent(
        self,
        *,
        sent: SentMessage,
        fallback_thread_id: str,
        sender: str,
        subject: str,
        body: str,
        message_id_header: Optional[str],
        sent_at: datetime,
    ) -> Message:
        """Store the outbound copy of a reply so polling sees it as ours."""
        existing = self.messages.get(sent.message_id)
        if existing is not None:
            existing.sent_by_us = True
            existing.message_id_header = existing.message_id_header or message_id_header
            return existing
        record = Message(
            id=sent.message_id,
            thread_id=sent.thread_id or fallback_thread_id,
            sender=sender,
            subject=subject,
            snippet=body[:300],
            date=sent_at,
            sent_by_us=True,
            status=MessageStatus.SENT,
            message_id_header=message_id_header,
        )
        self.messages[record.id] = record
        self.attach(record.thread_id, record.id)
        return record

    def by_date_desc(self) -> list[Message]:
        return sorted(self.messages.values(), key=lambda message: message.date, reverse=True)

    def to_dict(self) -> dict[str, Any]:
        messages = {message_id: message.to_dict() for message_id, message in self.messages.items()}
        return {
            "messages": {**self.unreadable, **messages},
            "threads": {thread_id: list(ids) for thread_id, ids in self.threads.items()},
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Store":
        messages_raw = raw.get("messages")
        threads_raw = raw.get("threads")
        store = cls()
        if isinstance(messages_raw, dict):
            for message_id, payload in messages_raw.items():
                message_id = str(message_id)
                if not isinstance(payload, dict):
                    logger.warning("Keeping unreadable store entry %s as is (not an object)", message_id)
                    store.unreadable[message_id] = payload
                    continue
                try:
                    store.messages[message_id] = Message.from_dict({**payload, "id": message_id})
                except (AttributeError, KeyError, TypeError, ValueError) as exc:
                    logger.warning("Keeping unreadable store entry %s as is: %s", message_id, exc)
                    store.unreadable[message_id] = payload
        if isinstance(threads_raw, dict):
            store.threads = {
                str(thread_id): [str(message_id) for message_id in ids]
                for thread_id, ids in threads_raw.items()
                if isinstance(ids, list)
            }
        return store

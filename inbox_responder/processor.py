"""Drive each thread with unanswered mail through the reply lifecycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import requests

from .dedup_guard import RecentlySentGuard
from .models import Message, MessageStatus, ReplyRecord
from .outgoing import OutgoingReply, compose_reply, reply_subject
from .reply_generator import ReplyDraft, ReplyGenerationError, UnparsableReplyError, parse_reply
from .store import JsonStore
from .utils import same_address, utc_now
from .windower import build_context

logger = logging.getLogger(__name__)

RESPONDED = "responded"
LATEST_FROM_US = "latest_from_us"
STATUS_CHANGED = "status_changed"
LLM_ERROR = "llm_error"
UNPARSABLE_LLM = "unparsable_llm"
EMPTY_REPLY = "empty_reply"
LLM_REQUESTED_REVIEW = "llm_requested_review"
SEND_FAILED = "send_failed"
PROCESSING_ERROR = "processing_error"

# Errors the mailbox wrapper raises for a failed call.
MAILBOX_ERRORS = (requests.RequestException, RuntimeError)


@dataclass
class ProcessResult:
    """Outcome for one inbound message."""

    message_id: str
    ok: bool
    reason: str
    status: Optional[MessageStatus] = None
    sent_message_id: Optional[str] = None


class ThreadProcessor:
    """Build context, ask for a reply, send it and record every transition."""

    def __init__(
        self,
        store: JsonStore,
        mailbox,
        generator,
        guard: RecentlySentGuard,
        owner_address: str,
        from_header: str,
        n_inbound: int = 1,
        m_outbound: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.mailbox = mailbox
        self.generator = generator
        self.guard = guard
        self.owner_address = owner_address
        self.from_header = from_header or owner_address
        self.n_inbound = n_inbound
        self.m_outbound = m_outbound
        self.clock = clock

    def process_thread(self, thread_id: str) -> list[ProcessResult]:
        thread = self.store.load().thread_messages(thread_id)
        pending = [message for message in thread if message.is_pending]
        if not pending:
            logger.debug("Thread %s has no new inbound messages", thread_id)
            return []

        context = build_context(thread, self.n_inbound, self.m_outbound)
        latest = thread[-1]
        if not context or context[-1].id != latest.id:
            context.append(latest)

        if self._is_ours(latest):
            logger.info("Latest message in thread %s is ours; not replying", thread_id)
            return [ProcessResult(latest.id, ok=False, reason=LATEST_FROM_US, status=latest.status)]

        results: list[ProcessResult] = []
        for message in pending:
            current = self.store.load().messages.get(message.id)
            if current is None or current.status != MessageStatus.NEW:
                logger.info("Message %s changed status since it was queued; skipping", message.id)
                results.append(
                    ProcessResult(
                        message.id,
                        ok=False,
                        reason=STATUS_CHANGED,
                        status=current.status if current else None,
                    )
                )
                continue
            try:
                results.append(self._respond(message, context))
            except OSError:
                # Store write failures propagate to the poller.
                raise
            except Exception as exc:
                logger.exception("Processing message %s failed", message.id)
                results.append(self._review(message, f"{PROCESSING_ERROR}: {exc}"))
        return results

    def _is_ours(self, message: Message) -> bool:
        return message.sent_by_us or same_address(message.sender, self.owner_address)

    def _respond(self, message: Message, context: list[Message]) -> ProcessResult:
        try:
            raw = self.generator.generate(context)
        except (ReplyGenerationError, requests.RequestException) as exc:
            logger.error("Reply generation failed for message %s: %s", message.id, exc)
            return self._review(message, LLM_ERROR)

        try:
            draft = parse_reply(raw)
        except UnparsableReplyError as exc:
            logger.error("Unparsable model output for message %s: %s", message.id, exc)
            return self._review(message, UNPARSABLE_LLM, raw=raw)

        parsed = draft.model_dump()
        if draft.requires_human_review:
            reason = draft.reason.strip() or LLM_REQUESTED_REVIEW
            return self._review(message, reason, raw=raw, parsed=parsed)
        if not draft.reply_text:
            return self._review(message, EMPTY_REPLY, raw=raw, parsed=parsed)

        latest = context[-1]
        full_thread = self.store.load().thread_messages(latest.thread_id) or [latest]
        try:
            outgoing = compose_reply(latest, full_thread, draft.reply_text, self.from_header)
            payload = outgoing.to_mime()
        except (TypeError, ValueError) as exc:
            logger.error("Could not compose reply for message %s: %s", message.id, exc)
            unsent = ReplyRecord(subject=reply_subject(latest.subject), body=f"{draft.reply_text}\n")
            return self._review(message, SEND_FAILED, raw=raw, parsed=parsed, reply=unsent)

        return self._send(message, outgoing, payload, draft, raw, parsed)

    def _send(
        self,
        message: Message,
        outgoing: OutgoingReply,
        payload: bytes,
        draft: ReplyDraft,
        raw: str,
        parsed: dict[str, Any],
    ) -> ProcessResult:
        try:
            sent = self.mailbox.send(payload, outgoing.thread_id)
        except MAILBOX_ERRORS as exc:
            logger.error("Sending reply for message %s failed: %s", message.id, exc)
            unsent = ReplyRecord(subject=outgoing.subject, body=outgoing.body)
            return self._review(message, SEND_FAILED, raw=raw, parsed=parsed, reply=unsent)
        self.guard.mark(sent.message_id)

        message_id_header = None
        try:
            message_id_header = self.mailbox.get_sent_headers(sent.message_id).get("message-id")
        except MAILBOX_ERRORS as exc:
            logger.warning("Could not read headers of sent message %s: %s", sent.message_id, exc)

        sent_at = self.clock()
        record = ReplyRecord(
            subject=outgoing.subject,
            body=outgoing.body,
            sent_message_id=sent.message_id,
            sent_at=sent_at,
        )

        store = self.store.load()
        answered = 0
        for target in store.thread_messages(message.thread_id):
            if not target.is_pending:
                continue
            target.transition(MessageStatus.RESPONDED)
            target.responded_at = sent_at
            target.reply = record
            target.llm_raw = raw
            target.llm_parsed = parsed
            answered += 1
        store.record_sent(
            sent=sent,
            fallback_thread_id=message.thread_id,
            sender=self.from_header,
            subject=outgoing.subject,
            body=draft.reply_text,
            message_id_header=message_id_header,
            sent_at=sent_at,
        )
        self.store.save(store)

        logger.info(
            "Replied to thread %s with %s (%d message(s) marked responded)",
            message.thread_id,
            sent.message_id,
            answered,
        )
        return ProcessResult(
            message.id,
            ok=True,
            reason=RESPONDED,
            status=MessageStatus.RESPONDED,
            sent_message_id=sent.message_id,
        )

    def _review(
        self,
        message: Message,
        reason: str,
        raw: Optional[str] = None,
        parsed: Optional[dict[str, Any]] = None,
        reply: Optional[ReplyRecord] = None,
    ) -> ProcessResult:
        store = self.store.load()
        flagged = 0
        for target in store.thread_messages(message.thread_id):
            if not target.is_pending:
                continue
            target.transition(MessageStatus.HUMAN_REVIEW)
            target.human_review_reason = reason
            if raw is not None:
                target.llm_raw = raw
            if parsed is not None:
                target.llm_parsed = parsed
            if reply is not None:
                target.reply = reply
            flagged += 1
        if flagged:
            self.store.save(store)
        logger.warning(
            "Thread %s needs human review (%s); %d message(s) flagged",
            message.thread_id,
            reason,
            flagged,
        )
        return ProcessResult(message.id, ok=False, reason=reason, status=MessageStatus.HUMAN_REVIEW)

"""Tests for the thread processor state machine."""

import json
from unittest.mock import Mock, patch

import pytest
import requests

from inbox_responder.models import MessageStatus, SentMessage
from inbox_responder.poller import Poller
from inbox_responder.processor import (
    EMPTY_REPLY,
    LATEST_FROM_US,
    LLM_ERROR,
    LLM_REQUESTED_REVIEW,
    PROCESSING_ERROR,
    SEND_FAILED,
    STATUS_CHANGED,
    UNPARSABLE_LLM,
    ThreadProcessor,
)
from inbox_responder.reply_generator import ReplyGenerationError

from conftest import BASE_TIME, OWNER


@pytest.fixture
def processor(store, mailbox, generator, guard):
    return ThreadProcessor(
        store=store,
        mailbox=mailbox,
        generator=generator,
        guard=guard,
        owner_address=OWNER,
        from_header=f"Support Team <{OWNER}>",
        clock=lambda: BASE_TIME,
    )


def _draft(**fields):
    payload = {"reply": "", "requires_human_review": False, "reason": "", "filled_fields": []}
    payload.update(fields)
    return json.dumps(payload)


def test_end_to_end_reply_cycle(store, guard, mailbox, generator, processor, make_fetched):
    """Inbound m1 on t1 is ingested, answered, and the sent copy s1 is recorded."""
    mailbox.list_recent_ids.return_value = ["m1"]
    mailbox.fetch_full.return_value = make_fetched("m1")
    poller = Poller(mailbox, store, guard, processor, OWNER)

    poller.tick()

    loaded = store.load()
    m1 = loaded.messages["m1"]
    assert m1.status == MessageStatus.RESPONDED
    assert m1.reply.sent_message_id == "s1"
    assert m1.reply.subject == "Re: Registration hold"
    assert m1.reply.body == "Thanks\n"
    assert m1.reply.sent_at == BASE_TIME
    assert m1.responded_at == BASE_TIME
    assert m1.llm_parsed["reply"] == "Thanks"

    s1 = loaded.messages["s1"]
    assert s1.status == MessageStatus.SENT
    assert s1.sent_by_us is True
    assert s1.thread_id == "t1"
    assert s1.message_id_header == "<s1@mail.example.org>"
    assert loaded.threads["t1"] == ["m1", "s1"]
    assert guard.is_marked("s1")

    # The next tick sees s1 listed but neither refetches nor answers again.
    mailbox.list_recent_ids.return_value = ["s1", "m1"]
    poller.tick()
    mailbox.fetch_full.assert_called_once_with("m1")
    generator.generate.assert_called_once()


def test_sent_mime_carries_threading_headers(store, seed, mailbox, processor, make_message):
    seed(make_message("m1", reply_to_header="Parent <parent@example.org>"))

    processor.process_thread("t1")

    raw_mime, thread_id = mailbox.send.call_args.args
    text = raw_mime.decode()
    assert thread_id == "t1"
    assert "To: parent@example.org" in text
    assert "In-Reply-To: <m1@mail.example.org>" in text
    assert "References: <m1@mail.example.org>" in text
    assert "Subject: Re: Registration hold" in text


def test_context_is_bounded_and_chronological(store, seed, generator, processor, make_message):
    seed(
        make_message("m0", minutes=0, status=MessageStatus.RESPONDED),
        make_message("o1", minutes=1, sent_by_us=True),
        make_message("m2", minutes=2, status=MessageStatus.RESPONDED),
        make_message("o3", minutes=3, sent_by_us=True),
        make_message("m4", minutes=4),
    )

    processor.process_thread("t1")

    context = generator.generate.call_args.args[0]
    assert [m.id for m in context] == ["o3", "m4"]


def test_no_reply_when_latest_message_is_ours(store, seed, mailbox, generator, processor, make_message):
    seed(make_message("m1", minutes=0), make_message("o1", minutes=1, sent_by_us=True))

    results = processor.process_thread("t1")

    assert [r.reason for r in results] == [LATEST_FROM_US]
    generator.generate.assert_not_called()
    mailbox.send.assert_not_called()
    assert store.load().messages["m1"].status == MessageStatus.NEW


def test_nothing_pending_is_a_noop(store, seed, generator, processor, make_message):
    seed(make_message("m1", status=MessageStatus.HUMAN_REVIEW))

    assert processor.process_thread("t1") == []
    assert processor.process_thread("unknown") == []
    generator.generate.assert_not_called()


def test_generator_failure_goes_to_review(store, seed, mailbox, generator, processor, make_message):
    seed(make_message("m1"))
    generator.generate.side_effect = ReplyGenerationError("timed out after 60s")

    results = processor.process_thread("t1")

    assert results[0].reason == LLM_ERROR
    m1 = store.load().messages["m1"]
    assert m1.status == MessageStatus.HUMAN_REVIEW
    assert m1.human_review_reason == LLM_ERROR
    mailbox.send.assert_not_called()


def test_unparsable_output_is_kept_for_audit(store, seed, mailbox, generator, processor, make_message):
    seed(make_message("m1"))
    generator.generate.return_value = "Sure! Here is my answer without any JSON."

    processor.process_thread("t1")

    m1 = store.load().messages["m1"]
    assert m1.status == MessageStatus.HUMAN_REVIEW
    assert m1.human_review_reason == UNPARSABLE_LLM
    assert m1.llm_raw == "Sure! Here is my answer without any JSON."
    mailbox.send.assert_not_called()


def test_explicit_review_request_keeps_reason(store, seed, mailbox, generator, processor, make_message):
    seed(make_message("m1"))
    generator.generate.return_value = _draft(reply="draft", requires_human_review=True, reason="refund dispute")

    processor.process_thread("t1")

    m1 = store.load().messages["m1"]
    assert m1.status == MessageStatus.HUMAN_REVIEW
    assert m1.human_review_reason == "refund dispute"
    assert m1.llm_parsed["requires_human_review"] is True
    mailbox.send.assert_not_called()


def test_review_request_without_reason(store, seed, generator, processor, make_message):
    seed(make_message("m1"))
    generator.generate.return_value = _draft(requires_human_review=True)

    processor.process_thread("t1")

    assert store.load().messages["m1"].human_review_reason == LLM_REQUESTED_REVIEW


def test_empty_reply_goes_to_review(store, seed, mailbox, generator, processor, make_message):
    seed(make_message("m1"))
    generator.generate.return_value = _draft(reply="   ")

    processor.process_thread("t1")

    m1 = store.load().messages["m1"]
    assert m1.status == MessageStatus.HUMAN_REVIEW
    assert m1.human_review_reason == EMPTY_REPLY
    mailbox.send.assert_not_called()


def test_send_failure_retains_generated_reply(store, seed, mailbox, guard, processor, make_message):
    seed(make_message("m1"))
    mailbox.send.side_effect = requests.ConnectionError("smtp relay down")

    results = processor.process_thread("t1")

    assert results[0].reason == SEND_FAILED
    m1 = store.load().messages["m1"]
    assert m1.status == MessageStatus.HUMAN_REVIEW
    assert m1.human_review_reason == SEND_FAILED
    assert m1.reply.body == "Thanks\n"
    assert m1.reply.sent_message_id is None
    assert len(guard) == 0


def test_missing_sent_headers_do_not_block_success(store, seed, mailbox, processor, make_message):
    seed(make_message("m1"))
    mailbox.get_sent_headers.side_effect = RuntimeError("not yet indexed")

    results = processor.process_thread("t1")

    assert results[0].ok is True
    loaded = store.load()
    assert loaded.messages["m1"].status == MessageStatus.RESPONDED
    assert loaded.messages["s1"].message_id_header is None


def test_one_reply_answers_every_pending_message(store, seed, mailbox, generator, processor, make_message):
    seed(make_message("m1", minutes=0), make_message("m2", minutes=1))

    results = processor.process_thread("t1")

    assert [r.reason for r in results] == ["responded", STATUS_CHANGED]
    assert generator.generate.call_count == 1
    assert mailbox.send.call_count == 1
    loaded = store.load()
    assert loaded.messages["m1"].status == MessageStatus.RESPONDED
    assert loaded.messages["m2"].status == MessageStatus.RESPONDED


def test_status_changed_elsewhere_is_skipped(store, seed, generator, mailbox, guard, make_message):
    seed(make_message("m1"))

    class RacingStore:
        """Reports m1 as new on the first read, then as already answered."""

        def __init__(self, inner):
            self.inner = inner
            self.reads = 0

        def load(self):
            self.reads += 1
            loaded = self.inner.load()
            if self.reads > 1:
                loaded.messages["m1"].status = MessageStatus.RESPONDED
            return loaded

        def save(self, snapshot):
            return self.inner.save(snapshot)

    processor = ThreadProcessor(RacingStore(store), mailbox, generator, guard, OWNER, OWNER)

    results = processor.process_thread("t1")

    assert [r.reason for r in results] == [STATUS_CHANGED]
    assert results[0].status == MessageStatus.RESPONDED
    generator.generate.assert_not_called()


def test_answered_thread_is_not_answered_again(store, seed, generator, processor, make_message):
    seed(make_message("m1"))

    processor.process_thread("t1")
    again = processor.process_thread("t1")

    assert again == []
    assert generator.generate.call_count == 1


def test_store_is_not_written_while_waiting_on_collaborators(seed, mailbox, generator, guard, make_message, store):
    seed(make_message("m1"))
    tracking = Mock(wraps=store)
    events = []
    sent = SentMessage("s1", "t1")
    tracking.save.side_effect = lambda snapshot: events.append("save") or store.save(snapshot)
    generator.generate.side_effect = lambda context: events.append("generate") or _draft(reply="Thanks")
    mailbox.send.side_effect = lambda raw, thread_id: events.append("send") or sent
    processor = ThreadProcessor(tracking, mailbox, generator, guard, OWNER, OWNER)

    processor.process_thread("t1")

    assert events == ["generate", "send", "save"]


def test_null_reason_counts_as_review_request(store, seed, mailbox, generator, processor, make_message):
    seed(make_message("m1"))
    generator.generate.return_value = json.dumps({"reply": "", "requires_human_review": True, "reason": None})

    processor.process_thread("t1")

    assert store.load().messages["m1"].human_review_reason == LLM_REQUESTED_REVIEW
    mailbox.send.assert_not_called()


def test_null_reply_counts_as_empty(store, seed, mailbox, generator, processor, make_message):
    seed(make_message("m1"))
    generator.generate.return_value = json.dumps({"reply": None, "requires_human_review": False})

    processor.process_thread("t1")

    assert store.load().messages["m1"].human_review_reason == EMPTY_REPLY
    mailbox.send.assert_not_called()


def test_transport_error_from_generator_goes_to_review(store, seed, generator, processor, make_message):
    seed(make_message("m1"))
    generator.generate.side_effect = requests.ConnectionError("connection reset")

    results = processor.process_thread("t1")

    assert results[0].reason == LLM_ERROR
    assert store.load().messages["m1"].status == MessageStatus.HUMAN_REVIEW


def test_unexpected_error_goes_to_review(store, seed, mailbox, generator, processor, make_message):
    seed(make_message("m1"))
    generator.generate.side_effect = KeyError("choices")

    results = processor.process_thread("t1")

    assert results[0].reason.startswith(PROCESSING_ERROR)
    m1 = store.load().messages["m1"]
    assert m1.status == MessageStatus.HUMAN_REVIEW
    assert m1.human_review_reason.startswith(PROCESSING_ERROR)
    mailbox.send.assert_not_called()


def test_compose_failure_is_a_send_failure(store, seed, mailbox, processor, make_message):
    seed(make_message("m1"))

    with patch("inbox_responder.processor.compose_reply", side_effect=ValueError("bad header")):
        results = processor.process_thread("t1")

    assert results[0].reason == SEND_FAILED
    m1 = store.load().messages["m1"]
    assert m1.status == MessageStatus.HUMAN_REVIEW
    assert m1.reply.body == "Thanks\n"
    mailbox.send.assert_not_called()


def test_subject_with_line_breaks_is_still_answered(store, seed, mailbox, processor, make_message):
    seed(make_message("m1", subject="Hello\r\nBcc: someone@example.org"))

    results = processor.process_thread("t1")

    assert results[0].ok is True
    raw_mime = mailbox.send.call_args.args[0]
    assert b"\r\nBcc:" not in raw_mime
    assert store.load().messages["m1"].status == MessageStatus.RESPONDED


def test_guard_is_marked_even_when_save_fails(store, seed, mailbox, generator, guard, make_message):
    seed(make_message("m1"))
    tracking = Mock(wraps=store)
    tracking.save.side_effect = OSError("disk full")
    processor = ThreadProcessor(tracking, mailbox, generator, guard, OWNER, OWNER)

    with pytest.raises(OSError, match="disk full"):
        processor.process_thread("t1")

    assert guard.is_marked("s1")
    assert store.load().messages["m1"].status == MessageStatus.NEW

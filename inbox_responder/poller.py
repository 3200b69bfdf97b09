"""Periodic mailbox poll: fetch unseen messages, store them, process threads."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

from .dedup_guard import RecentlySentGuard
from .graph_client import MailboxAuthError
from .models import FetchedMessage, Message, MessageStatus
from .processor import MAILBOX_ERRORS, ThreadProcessor
from .store import JsonStore
from .utils import same_address

logger = logging.getLogger(__name__)


def normalize_message(fetched: FetchedMessage, owner_address: str) -> Message:
    """Turn source metadata into a store record with default status."""
    sent_by_us = same_address(fetched.sender, owner_address)
    return Message(
        id=fetched.message_id,
        thread_id=fetched.thread_id,
        sender=fetched.sender,
        subject=fetched.subject,
        snippet=fetched.snippet,
        date=fetched.received,
        sent_by_us=sent_by_us,
        status=MessageStatus.SENT if sent_by_us else MessageStatus.NEW,
        message_id_header=fetched.internet_message_id,
        reply_to_header=fetched.reply_to,
    )


class Poller:
    """One tick lists recent ids, ingests the unseen ones and processes their threads."""

    def __init__(
        self,
        mailbox,
        store: JsonStore,
        guard: RecentlySentGuard,
        processor: ThreadProcessor,
        owner_address: str,
        page_size: int = 10,
        interval_seconds: float = 5.0,
        fetch_workers: int = 4,
    ) -> None:
        self.mailbox = mailbox
        self.store = store
        self.guard = guard
        self.processor = processor
        self.owner_address = owner_address
        self.page_size = page_size
        self.interval_seconds = interval_seconds
        self.fetch_workers = fetch_workers
        self._tick_lock = threading.Lock()

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Tick every ``interval_seconds`` (start to start) until ``stop_event`` is set."""
        stop_event = stop_event or threading.Event()
        logger.info("Mailbox poller started (every %ss)", self.interval_seconds)
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                self.tick()
            except Exception:
                logger.exception("Poll tick failed")
            elapsed = time.monotonic() - started
            stop_event.wait(max(0.0, self.interval_seconds - elapsed))
        logger.info("Mailbox poller stopped")

    def tick(self) -> Optional[dict[str, int]]:
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous poll still running; skipping this tick")
            return None
        try:
            return self._tick()
        finally:
            self._tick_lock.release()

    def _tick(self) -> dict[str, int]:
        stats = {"listed": 0, "fetched": 0, "failed": 0, "ingested": 0, "threads": 0}

        try:
            self.mailbox.ensure_authenticated()
        except MailboxAuthError as exc:
            logger.warning("Skipping poll, mailbox not authenticated: %s", exc)
            return stats

        try:
            listed = self.mailbox.list_recent_ids(self.page_size)
        except MAILBOX_ERRORS as exc:
            logger.error("Listing recent messages failed: %s", exc)
            return stats
        stats["listed"] = len(listed)

        known = self.store.load()
        unseen = [
            message_id
            for message_id in dict.fromkeys(listed)
            if message_id and not known.knows(message_id) and not self.guard.is_marked(message_id)
        ]
        if not unseen:
            return stats

        fetched = self._fetch_all(unseen)
        stats["fetched"] = len(fetched)
        stats["failed"] = len(unseen) - len(fetched)
        if not fetched:
            return stats

        # Reload right before writing; processing may have run since the read above.
        store = self.store.load()
        for item in fetched:
            store.upsert(normalize_message(item, self.owner_address))
        self.store.save(store)
        stats["ingested"] = len(fetched)

        thread_ids = list(dict.fromkeys(item.thread_id for item in fetched))
        for thread_id in thread_ids:
            try:
                self.processor.process_thread(thread_id)
            except Exception:
                logger.exception("Processing thread %s failed", thread_id)
        stats["threads"] = len(thread_ids)

        logger.info(
            "Poll complete: listed=%s fetched=%s failed=%s threads=%s",
            stats["listed"],
            stats["fetched"],
            stats["failed"],
            stats["threads"],
        )
        return stats

    def _fetch_all(self, message_ids: list[str]) -> list[FetchedMessage]:
        """Fetch full messages in parallel, keeping listing order and dropping failures."""
        results: dict[str, FetchedMessage] = {}
        workers = max(1, min(self.fetch_workers, len(message_ids)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self.mailbox.fetch_full, message_id): message_id
                for message_id in message_ids
            }
            for future in as_completed(futures):
                message_id = futures[future]
                try:
                    results[message_id] = future.result()
                except Exception as exc:
                    logger.error("Failed to fetch message %s: %s", message_id, exc)
        return [results[message_id] for message_id in message_ids if message_id in results]

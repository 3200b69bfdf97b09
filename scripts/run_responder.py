"""Entry point that polls the mailbox and answers new mail."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

# Ensure project root is on sys.path when running as a script
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from inbox_responder.config import Settings
from inbox_responder.credentials import TokenRecord, refresh_notifier
from inbox_responder.dedup_guard import RecentlySentGuard
from inbox_responder.graph_client import GraphClient, MailboxAuthError
from inbox_responder.poller import Poller
from inbox_responder.processor import ThreadProcessor
from inbox_responder.reply_generator import ReplyGenerator
from inbox_responder.store import JsonStore

load_dotenv()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Answer incoming mail with generated replies.")
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("auth", help="Sign in with the device code flow and cache the token")

    poll = commands.add_parser("poll", help="Poll the mailbox on a fixed interval")
    poll.add_argument("--once", action="store_true", help="Run a single poll tick and exit")

    messages = commands.add_parser("messages", help="Print stored messages, newest first")
    messages.add_argument("--limit", type=int, help="Only print the N newest messages")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def log_token_refresh(record: TokenRecord) -> None:
    logging.info("Graph token refreshed (expires %s)", record.expires_at)


def build_poller(settings: Settings, mailbox: GraphClient, store: JsonStore) -> Poller:
    guard = RecentlySentGuard(settings.recently_sent_ttl_seconds)
    processor = ThreadProcessor(
        store=store,
        mailbox=mailbox,
        generator=ReplyGenerator.from_settings(settings),
        guard=guard,
        owner_address=settings.owner,
        from_header=settings.from_header,
        n_inbound=settings.context_inbound,
        m_outbound=settings.context_outbound,
    )
    return Poller(
        mailbox=mailbox,
        store=store,
        guard=guard,
        processor=processor,
        owner_address=settings.owner,
        page_size=settings.poll_page_size,
        interval_seconds=settings.poll_interval_seconds,
        fetch_workers=settings.fetch_workers,
    )


def print_messages(store: JsonStore, limit: int | None) -> None:
    messages = store.load().by_date_desc()
    if limit:
        messages = messages[:limit]
    print(json.dumps([message.to_dict() for message in messages], indent=2, ensure_ascii=False))


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings.log_level)
    store = JsonStore(settings.store_path, settings.store_quarantine_dir)

    if args.command == "messages":
        print_messages(store, args.limit)
        return

    refresh_notifier.register_once(log_token_refresh)
    mailbox = GraphClient(settings)

    if args.command == "auth":
        try:
            mailbox.ensure_authenticated(interactive=True)
        except MailboxAuthError as exc:
            raise SystemExit(f"Sign-in failed: {exc}") from exc
        logging.info("Signed in; token cache stored at %s", settings.graph_token_cache)
        return

    poller = build_poller(settings, mailbox, store)
    if getattr(args, "once", False):
        stats = poller.tick()
        logging.info("Single poll finished: %s", stats)
        return

    stop_event = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop_event.set())
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    poller.run_forever(stop_event)


if __name__ == "__main__":
    main()

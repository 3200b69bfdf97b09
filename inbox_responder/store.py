"""JSON document store holding every tracked message and thread."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from .models import Store
from .utils import utc_now

logger = logging.getLogger(__name__)

_DECODER = json.JSONDecoder()


def _looks_like_store(candidate: Any) -> bool:
    if not isinstance(candidate, dict):
        return False
    return isinstance(candidate.get("messages"), dict) or isinstance(candidate.get("threads"), dict)


def salvage_document(raw: str) -> Optional[dict[str, Any]]:
    """Return the last store-shaped JSON object embedded in ``raw``.

    Covers trailing garbage after a complete write, leading garbage, and a
    second write that was cut off half way.
    """
    found: Optional[dict[str, Any]] = None
    position = raw.find("{")
    while position != -1:
        try:
            candidate, end = _DECODER.raw_decode(raw, position)
        except json.JSONDecodeError:
            position = raw.find("{", position + 1)
            continue
        if _looks_like_store(candidate):
            found = candidate
            position = raw.find("{", end)
        else:
            position = raw.find("{", position + 1)
    return found


class JsonStore:
    """Load and atomically save the store document."""

    def __init__(self, path: Path, quarantine_dir: Path) -> None:
        self.path = Path(path)
        self.quarantine_dir = Path(quarantine_dir)
        self.tmp_path = self.path.with_name(self.path.name + ".tmp")

    def load(self) -> Store:
        """Read the store; missing, empty or unrecoverable files yield an empty one."""
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            return Store()
        except OSError as exc:
            logger.error("Store read failed, starting empty: %s", exc)
            return Store()

        try:
            raw = data.decode("utf-8").strip()
        except UnicodeDecodeError as exc:
            logger.warning("Store %s is not valid UTF-8 (%s); reading it with replacements", self.path, exc)
            raw = data.decode("utf-8", errors="replace").strip()

        if not raw:
            return Store()

        try:
            document = json.loads(raw)
        except json.JSONDecodeError:
            document = salvage_document(raw)
            if document is None:
                self._quarantine(raw)
                return Store()
            logger.warning("Recovered store from damaged file %s by extracting last JSON object", self.path)

        if not isinstance(document, dict):
            self._quarantine(raw)
            return Store()
        return Store.from_dict(document)

    def save(self, store: Store) -> bool:
        """Write via temp file + rename; fall back to a direct write, else raise."""
        payload = json.dumps(store.to_dict(), indent=2, ensure_ascii=False)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.tmp_path, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(self.tmp_path, self.path)
            return True
        except OSError as exc:
            logger.error("Atomic store save failed (%s); trying direct write", exc)

        try:
            self.path.write_text(payload, encoding="utf-8")
        except OSError as exc:
            logger.error("Direct store write failed: %s", exc)
            raise
        return True

    def _quarantine(self, raw: str) -> Optional[Path]:
        stamp = utc_now().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        target = self.quarantine_dir / f"email_db_corrupt_{stamp}.json"
        try:
            self.quarantine_dir.mkdir(parents=True, exist_ok=True)
            target.write_text(raw, encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to quarantine corrupt store: %s", exc)
            return None
        logger.warning("Store %s was unreadable; raw contents moved to %s", self.path, target)
        return target

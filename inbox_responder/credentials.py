"""Canonical token record and the process-wide refresh notifier."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .utils import utc_now

logger = logging.getLogger(__name__)

_TOKEN_FIELDS = ("access_token", "refresh_token", "scope", "token_type", "expires_in")


@dataclass(frozen=True)
class TokenRecord:
    """The only credential shape the rest of the code ever sees."""

    access_token: str
    refresh_token: Optional[str]
    scope: Optional[str]
    token_type: Optional[str]
    expires_at: Optional[datetime]
    from_cache: bool


def _pick(raw: dict[str, Any], key: str) -> Any:
    for container in (raw, raw.get("tokens"), raw.get("credentials")):
        if isinstance(container, dict) and container.get(key) not in (None, ""):
            return container[key]
    return None


def normalize_token_result(raw: dict[str, Any]) -> TokenRecord:
    """Collapse an msal result (or a nested legacy shape) into a ``TokenRecord``."""
    if not isinstance(raw, dict):
        raise RuntimeError("Token result must be a mapping")
    values = {key: _pick(raw, key) for key in _TOKEN_FIELDS}
    if not values["access_token"]:
        raise RuntimeError(f"Unable to obtain Graph token: {raw.get('error_description')}")

    scope = values["scope"]
    if isinstance(scope, (list, tuple)):
        scope = " ".join(scope)
    expires_at = None
    if values["expires_in"] is not None:
        expires_at = utc_now() + timedelta(seconds=int(values["expires_in"]))

    return TokenRecord(
        access_token=values["access_token"],
        refresh_token=values["refresh_token"],
        scope=scope,
        token_type=values["token_type"],
        expires_at=expires_at,
        from_cache=raw.get("token_source") == "cache",
    )


class CredentialRefreshNotifier:
    """Fan out freshly issued tokens to handlers registered exactly once."""

    def __init__(self) -> None:
        self.initialized = False
        self._handlers: list[Callable[[TokenRecord], None]] = []
        self._lock = threading.Lock()

    def register_once(self, handler: Callable[[TokenRecord], None]) -> bool:
        """Register ``handler``; returns False if it was already registered."""
        with self._lock:
            if handler in self._handlers:
                return False
            self._handlers.append(handler)
            self.initialized = True
            return True

    def notify(self, record: TokenRecord) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(record)
            except Exception:
                logger.exception("Credential refresh handler %r failed", handler)

    def reset(self) -> None:
        with self._lock:
            self._handlers.clear()
            self.initialized = False


refresh_notifier = CredentialRefreshNotifier()

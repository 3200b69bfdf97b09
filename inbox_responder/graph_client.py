"""Microsoft Graph helper focused on listing, reading and sending mail."""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any
from urllib.parse import quote

import msal
import requests
from requests import Response

from .config import Settings
from .credentials import TokenRecord, normalize_token_result, refresh_notifier
from .models import FetchedMessage, SentMessage
from .utils import parse_graph_datetime, utc_now

logger = logging.getLogger(__name__)

MESSAGE_FIELDS = (
    "id,conversationId,subject,from,replyTo,internetMessageId,receivedDateTime,bodyPreview"
)


class MailboxAuthError(RuntimeError):
    """Raised when no usable Graph token can be obtained without user action."""


class GraphClient:
    """Thin wrapper that authenticates with Graph and moves messages."""

    GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
    GRAPH_BASE = "https://graph.microsoft.com/v1.0"

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.session = requests.Session()
        # Immutable ids survive the move from Drafts to Sent Items.
        self.session.headers["Prefer"] = 'IdType="ImmutableId"'
        self.scopes = settings.graph_scopes
        self.auth_mode = settings.graph_auth_mode
        self.authority = settings.authority_url
        self._token_cache = None

        if self.auth_mode == "client_credentials":
            self.app = msal.ConfidentialClientApplication(
                client_id=settings.graph_client_id,
                client_credential=settings.graph_client_secret,
                authority=self.authority,
            )
        else:
            token_cache = msal.SerializableTokenCache()
            cache_path = settings.graph_token_cache
            if cache_path.exists():
                token_cache.deserialize(cache_path.read_text())
            self._token_cache = token_cache
            self.app = msal.PublicClientApplication(
                client_id=settings.graph_client_id,
                authority=self.authority,
                token_cache=token_cache,
            )

    def ensure_authenticated(self, interactive: bool = False) -> TokenRecord:
        """Make sure a token is available; device code prompts only when interactive."""
        try:
            return self._acquire_token(interactive=interactive)
        except MailboxAuthError:
            raise
        except (RuntimeError, requests.RequestException) as exc:
            raise MailboxAuthError(str(exc)) from exc

    def list_recent_ids(self, max_results: int) -> list[str]:
        """Newest message ids across all folders, bounded to one page."""
        url = f"{self.GRAPH_BASE}{self._messages_root()}/messages"
        params = {
            "$select": "id",
            "$orderby": "receivedDateTime desc",
            "$top": max_results,
        }
        payload = self._get(url, params=params).json()
        return [raw["id"] for raw in payload.get("value", []) if raw.get("id")]

    def fetch_full(self, message_id: str) -> FetchedMessage:
        url = f"{self.GRAPH_BASE}{self._messages_root()}/messages/{quote(message_id)}"
        payload = self._get(url, params={"$select": MESSAGE_FIELDS}).json()
        return self._to_message(payload)

    def send(self, raw_mime: bytes, thread_id: str | None = None) -> SentMessage:
        """Upload a MIME message as a draft and send it."""
        root = f"{self.GRAPH_BASE}{self._messages_root()}"
        timeout = self.settings.send_timeout_seconds
        draft = self._post(
            f"{root}/messages",
            data=base64.b64encode(raw_mime),
            headers={"Content-Type": "text/plain"},
            timeout=timeout,
        ).json()
        draft_id = draft.get("id")
        if not draft_id:
            raise RuntimeError(f"Graph did not return a draft id: {draft}")
        self._post(f"{root}/messages/{quote(draft_id)}/send", timeout=timeout)
        logger.info("Sent message %s in conversation %s", draft_id, draft.get("conversationId") or thread_id)
        return SentMessage(message_id=draft_id, thread_id=draft.get("conversationId") or thread_id)

    def get_sent_headers(self, message_id: str) -> dict[str, str | None]:
        url = f"{self.GRAPH_BASE}{self._messages_root()}/messages/{quote(message_id)}"
        payload = self._get(url, params={"$select": "internetMessageId"}).json()
        return {"message-id": payload.get("internetMessageId")}

    def _get(self, url: str, params: dict | None = None) -> Response:
        return self._request("GET", url, params=params, timeout=self.settings.graph_timeout_seconds)

    def _post(
        self,
        url: str,
        data: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> Response:
        return self._request(
            "POST",
            url,
            data=data,
            headers=headers,
            timeout=timeout or self.settings.graph_timeout_seconds,
        )

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        data: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float,
    ) -> Response:
        request_headers = {"Authorization": f"Bearer {self._acquire_token().access_token}"}
        if headers:
            request_headers.update(headers)
        resp = self.session.request(
            method, url, headers=request_headers, params=params, data=data, timeout=timeout
        )
        if resp.status_code >= 400:
            logger.error("Graph request failed (%s): %s", resp.status_code, resp.text)
            resp.raise_for_status()
        return resp

    def _acquire_token(self, interactive: bool = False) -> TokenRecord:
        if self.auth_mode == "client_credentials":
            result = self._acquire_token_client_credentials()
        else:
            result = self._acquire_token_device_flow(interactive)
        record = normalize_token_result(result)
        if not record.from_cache:
            refresh_notifier.notify(record)
        return record

    def _acquire_token_client_credentials(self) -> dict:
        result = self.app.acquire_token_silent(self.GRAPH_SCOPE, account=None)
        if not result:
            result = self.app.acquire_token_for_client(scopes=self.GRAPH_SCOPE)
        return result

    def _acquire_token_device_flow(self, interactive: bool) -> dict:
        accounts = self.app.get_accounts()
        result = None
        if accounts:
            result = self.app.acquire_token_silent(self.scopes, account=accounts[0])
        if not result:
            if not interactive:
                raise MailboxAuthError("No cached Graph sign-in; run the 'auth' command first.")
            flow = self.app.initiate_device_flow(scopes=self.scopes)
            if "user_code" not in flow:
                raise RuntimeError(f"Unable to start device code flow: {flow}")
            logger.info(flow.get("message"))
            result = self.app.acquire_token_by_device_flow(flow)
        self._persist_token_cache()
        return result

    def _persist_token_cache(self) -> None:
        if not self._token_cache or not self._token_cache.has_state_changed:
            return
        cache_path: Path = self.settings.graph_token_cache
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        cache_path.write_text(self._token_cache.serialize())

    def _messages_root(self) -> str:
        if self.settings.graph_mailbox:
            mailbox = quote(self.settings.graph_mailbox)
            return f"/users/{mailbox}"
        return "/me"

    @staticmethod
    def _format_address(raw: dict | None) -> str:
        address = (raw or {}).get("emailAddress") or {}
        email = address.get("address") or ""
        name = address.get("name")
        if name and email and name != email:
            return f"{name} <{email}>"
        return email or name or ""

    @classmethod
    def _to_message(cls, raw: dict) -> FetchedMessage:
        reply_to = raw.get("replyTo") or []
        received = raw.get("receivedDateTime")
        return FetchedMessage(
            message_id=raw["id"],
            thread_id=raw.get("conversationId") or raw["id"],
            subject=raw.get("subject") or "",
            sender=cls._format_address(raw.get("from")),
            snippet=raw.get("bodyPreview") or "",
            received=parse_graph_datetime(received) if received else utc_now(),
            internet_message_id=raw.get("internetMessageId") or None,
            reply_to=cls._format_address(reply_to[0]) if reply_to else None,
            raw=raw,
        )

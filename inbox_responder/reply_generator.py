"""Client for the reply-generation model and its output contract."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional, Sequence

import requests
from pydantic import BaseModel, Field, ValidationError, field_validator

from .models import Message
from .utils import isoformat_utc

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = """\
You are a support agent answering email enquiries on behalf of the mailbox owner.
Write a complete, polite, plain-text reply that can be sent as-is, with blank
lines between paragraphs and no placeholders, brackets or disclaimers.
If the enquiry needs sensitive information or a decision you cannot make,
set requires_human_review to true and explain why in reason.

Return valid JSON only, with exactly this schema:
{"reply": "Plain text email body", "requires_human_review": false, "reason": "", "filled_fields": []}
List in filled_fields any details you had to assume; never mention them in the reply.
"""

_JSON_FENCE = re.compile(r"```json([\s\S]*?)```", re.IGNORECASE)
_ANY_FENCE = re.compile(r"```([\s\S]*?)```")
_BRACES = re.compile(r"\{[\s\S]*\}")


class ReplyGenerationError(RuntimeError):
    """The model call failed, timed out or returned no usable envelope."""


class UnparsableReplyError(ValueError):
    """The model answered, but not in the expected result shape."""

    def __init__(self, message: str, raw: str) -> None:
        super().__init__(message)
        self.raw = raw


class ReplyDraft(BaseModel):
    """Structured result the model must produce."""

    reply: str = ""
    requires_human_review: bool = False
    reason: str = ""
    filled_fields: list[str] = Field(default_factory=list)

    @field_validator("reply", "reason", mode="before")
    @classmethod
    def _null_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("requires_human_review", mode="before")
    @classmethod
    def _null_flag(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("filled_fields", mode="before")
    @classmethod
    def _null_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def reply_text(self) -> str:
        return self.reply.strip()


def extract_json_block(text: str) -> Optional[str]:
    """Find the JSON payload in a model answer (fenced or bare)."""
    if not text:
        return None
    match = _JSON_FENCE.search(text) or _ANY_FENCE.search(text)
    if match:
        return match.group(1).strip()
    match = _BRACES.search(text)
    return match.group(0) if match else None


def parse_reply(raw: str) -> ReplyDraft:
    """Validate raw model output against the reply contract."""
    candidate = extract_json_block(raw) or raw
    try:
        payload = json.loads(candidate)
    except (json.JSONDecodeError, TypeError) as exc:
        raise UnparsableReplyError(f"Model output is not JSON: {exc}", raw) from exc
    if not isinstance(payload, dict):
        raise UnparsableReplyError("Model output is not a JSON object", raw)
    try:
        return ReplyDraft.model_validate(payload)
    except ValidationError as exc:
        raise UnparsableReplyError(f"Model output does not match the reply schema: {exc}", raw) from exc


def format_thread(context: Sequence[Message]) -> str:
    """Render the compact context the way the model sees it."""
    blocks = [
        f"From: {message.sender}\nDate: {isoformat_utc(message.date)}\n"
        f"Subject: {message.subject}\nSnippet: {message.snippet}\n"
        for message in context
    ]
    return "\n----\n".join(blocks)


class ReplyGenerator:
    """Call an OpenAI-compatible chat completion endpoint for a reply draft."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout: float = 60.0,
        instructions: str | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.instructions = instructions or DEFAULT_INSTRUCTIONS
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    @classmethod
    def from_settings(cls, settings) -> "ReplyGenerator":
        instructions = None
        path: Path | None = settings.reply_instructions_path
        if path is not None:
            instructions = path.read_text(encoding="utf-8")
        return cls(
            base_url=settings.llm_base_url,
            model=settings.llm_model,
            api_key=settings.llm_api_key,
            timeout=settings.llm_timeout_seconds,
            instructions=instructions,
        )

    def build_messages(self, context: Sequence[Message]) -> list[dict[str, str]]:
        user_message = (
            "Here is the email thread:\n"
            "-----------------------------------\n"
            f"{format_thread(context)}\n"
            "-----------------------------------\n"
            "Now produce the JSON output exactly as specified. Return ONLY valid JSON."
        )
        return [
            {"role": "system", "content": self.instructions},
            {"role": "user", "content": user_message},
        ]

    def generate(self, context: Sequence[Message]) -> str:
        """Return the raw model text for ``context`` (oldest first)."""
        if not context:
            raise ReplyGenerationError("Cannot generate a reply for an empty context")
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": self.build_messages(context),
            "temperature": 0.3,
        }
        try:
            response = self.session.post(
                f"{self.base_url}/chat/completions", json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except requests.Timeout as exc:
            raise ReplyGenerationError(f"Reply generation timed out after {self.timeout}s") from exc
        except (requests.RequestException, ValueError) as exc:
            raise ReplyGenerationError(f"Reply generation request failed: {exc}") from exc

        try:
            text = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ReplyGenerationError(f"Unexpected completion payload: {body!r}") from exc
        logger.debug("Model returned %d characters", len(text or ""))
        return text or ""

"""Configuration management for the inbox auto-responder."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal, Sequence

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env early so BaseSettings can pick values up seamlessly.
load_dotenv()


def _split_list(value: str | Sequence[str] | None, coerce_lower: bool = True) -> list[str]:
    """Turn delimiter-separated env strings into cleaned lists."""
    if value is None:
        return []
    if isinstance(value, str):
        items = re.split(r"[;,]", value)
    else:
        items = list(value)
    cleaned: list[str] = []
    for item in items:
        trimmed = item.strip()
        if not trimmed:
            continue
        cleaned.append(trimmed.lower() if coerce_lower else trimmed)
    return cleaned


class Settings(BaseSettings):
    """App configuration derived from environment variables."""

    graph_tenant_id: str | None = Field(None, alias="GRAPH_TENANT_ID")
    graph_client_id: str = Field(..., alias="GRAPH_CLIENT_ID")
    graph_client_secret: str | None = Field(None, alias="GRAPH_CLIENT_SECRET")
    graph_mailbox: str | None = Field(None, alias="GRAPH_MAILBOX")
    graph_auth_mode: Literal["client_credentials", "device_code"] = Field(
        "device_code", alias="GRAPH_AUTH_MODE"
    )
    graph_authority: str | None = Field(None, alias="GRAPH_AUTHORITY")
    graph_scopes_raw: str = Field("Mail.ReadWrite;Mail.Send", alias="GRAPH_SCOPES")
    graph_token_cache: Path = Field(Path("data/msal_token_cache.bin"), alias="GRAPH_TOKEN_CACHE")
    graph_timeout_seconds: float = Field(30.0, alias="GRAPH_TIMEOUT_SECONDS")

    owner_address: str | None = Field(None, alias="OWNER_ADDRESS")
    reply_from_header: str | None = Field(None, alias="REPLY_FROM_HEADER")

    poll_interval_seconds: float = Field(5.0, alias="POLL_INTERVAL_SECONDS", gt=0)
    poll_page_size: int = Field(10, alias="POLL_PAGE_SIZE", ge=1)
    fetch_workers: int = Field(4, alias="FETCH_WORKERS", ge=1)
    recently_sent_ttl_seconds: float = Field(60.0, alias="RECENTLY_SENT_TTL_SECONDS", gt=0)
    context_inbound: int = Field(1, alias="CONTEXT_INBOUND", ge=1)
    context_outbound: int = Field(1, alias="CONTEXT_OUTBOUND", ge=0)

    store_path: Path = Field(Path("data/email_db.json"), alias="STORE_PATH")
    store_quarantine_dir: Path = Field(Path("data/db_corrupt_backups"), alias="STORE_QUARANTINE_DIR")

    llm_base_url: str = Field("https://api.openai.com/v1", alias="LLM_BASE_URL")
    llm_api_key: str | None = Field(None, alias="LLM_API_KEY")
    llm_model: str = Field("gpt-4o-mini", alias="LLM_MODEL")
    llm_timeout_seconds: float = Field(60.0, alias="LLM_TIMEOUT_SECONDS", gt=0)
    reply_instructions_path: Path | None = Field(None, alias="REPLY_INSTRUCTIONS_PATH")
    send_timeout_seconds: float = Field(30.0, alias="SEND_TIMEOUT_SECONDS", gt=0)

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def _validate_authentication(self):
        if self.graph_auth_mode == "client_credentials":
            if not self.graph_client_secret:
                raise ValueError("GRAPH_CLIENT_SECRET is required for client_credentials mode.")
            if not self.graph_mailbox:
                raise ValueError("GRAPH_MAILBOX is required for client_credentials mode.")
            if not (self.graph_tenant_id or self.graph_authority):
                raise ValueError(
                    "GRAPH_TENANT_ID or GRAPH_AUTHORITY must be provided for client_credentials mode."
                )
        else:
            if self.graph_mailbox:
                raise ValueError(
                    "GRAPH_MAILBOX must be omitted for device_code mode; the signed-in mailbox is used."
                )
        if not (self.owner_address or self.graph_mailbox):
            raise ValueError("OWNER_ADDRESS is required to tell our own messages apart.")
        return self

    @field_validator(
        "graph_tenant_id",
        "graph_client_secret",
        "graph_mailbox",
        "graph_authority",
        "owner_address",
        "reply_from_header",
        "llm_api_key",
        "reply_instructions_path",
        mode="before",
    )
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @property
    def authority_url(self) -> str:
        if self.graph_authority:
            return self.graph_authority.rstrip("/")
        if self.graph_tenant_id:
            return f"https://login.microsoftonline.com/{self.graph_tenant_id}"
        return "https://login.microsoftonline.com/consumers"

    @property
    def graph_scopes(self) -> list[str]:
        """Scopes requested for delegated Graph auth."""
        scopes = _split_list(self.graph_scopes_raw, coerce_lower=False)
        return scopes or ["Mail.ReadWrite", "Mail.Send"]

    @property
    def owner(self) -> str:
        """Address of the account whose mail we answer."""
        return (self.owner_address or self.graph_mailbox or "").strip().lower()

    @property
    def from_header(self) -> str:
        return self.reply_from_header or self.owner_address or self.graph_mailbox or ""

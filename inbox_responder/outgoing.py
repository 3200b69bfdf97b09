"""Compose reply envelopes with the threading headers mail clients expect."""

from __future__ import annotations

from dataclasses import dataclass
from email.message import EmailMessage
from email.policy import SMTP
from typing import Optional, Sequence

from .models import Message
from .utils import extract_email_address


@dataclass
class OutgoingReply:
    """Everything needed to send one reply."""

    to: str
    subject: str
    body: str
    from_header: str
    thread_id: Optional[str]
    in_reply_to: Optional[str]
    references: Optional[str]

    def to_mime(self) -> bytes:
        message = EmailMessage()
        message["From"] = self.from_header
        message["To"] = self.to
        message["Subject"] = self.subject
        if self.in_reply_to:
            message["In-Reply-To"] = self.in_reply_to
        if self.references:
            message["References"] = self.references
        message.set_content(self.body)
        return message.as_bytes(policy=SMTP)


def _one_line(value: str | None) -> str:
    """Collapse all whitespace, CR/LF included, into single spaces."""
    return " ".join((value or "").split())


def reply_subject(subject: str | None) -> str:
    base = _one_line(subject) or "Enquiry"
    return base if base.lower().startswith("re:") else f"Re: {base}"


def _angle_id(message: Message) -> str:
    return f"<{message.id}>"


def compose_reply(
    latest: Message, thread: Sequence[Message], body: str, from_header: str
) -> OutgoingReply:
    """Address a reply to ``latest`` using the full stored ``thread`` for headers."""
    to = _one_line(extract_email_address(latest.reply_to_header) or extract_email_address(latest.sender))

    header_ids = [_one_line(message.message_id_header) for message in thread]
    header_ids = [value for value in header_ids if value]
    if header_ids:
        references = " ".join(header_ids)
    else:
        references = " ".join(_angle_id(message) for message in thread) or None

    in_reply_to = _one_line(latest.message_id_header) or _angle_id(latest)
    thread_id = latest.thread_id or (thread[0].thread_id if thread else None)

    return OutgoingReply(
        to=to,
        subject=reply_subject(latest.subject),
        body=f"{body}\n",
        from_header=from_header,
        thread_id=thread_id,
        in_reply_to=in_reply_to,
        references=references,
    )

"""Select the compact slice of a thread handed to the reply generator."""

from __future__ import annotations

from typing import Sequence

from .models import Message


def build_context(
    thread_messages: Sequence[Message], n_inbound: int = 1, m_outbound: int = 1
) -> list[Message]:
    """Return the last ``n_inbound`` inbound and ``m_outbound`` outbound messages.

    ``thread_messages`` must be oldest first; the result keeps that order, so
    the newest inbound message is always present when there is one.
    """
    inbound = [message for message in thread_messages if not message.sent_by_us]
    outbound = [message for message in thread_messages if message.sent_by_us]

    selected = inbound[-n_inbound:] if n_inbound > 0 else []
    selected += outbound[-m_outbound:] if m_outbound > 0 else []
    keep = {message.id for message in selected}
    return [message for message in thread_messages if message.id in keep]

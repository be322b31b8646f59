"""Classification of raw provider messages into mirror records."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.header import decode_header
from email.utils import parsedate_to_datetime
from typing import Callable, Union

from .constants import (
    AUTOMATED_SENDER_PATTERNS,
    BULK_PRECEDENCE,
    LABEL_PROMOTIONS,
    LABEL_SPAM,
    LABEL_TRASH,
    LABEL_UNREAD,
    LABEL_UPDATES,
    NO_SUBJECT,
)
from .errors import ClassificationSkip
from .models import NormalizedMessage, RawMessage

_BRACKETED_RE = re.compile(r'^(?:"?(.*?)"?\s*)?<\s*([^<>\s]+@[^<>\s]+)\s*>$')
_BARE_RE = re.compile(r"^[A-Za-z0-9._%+'-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_EMBEDDED_RE = re.compile(r"[A-Za-z0-9._%+'-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_HTTP_LINK_RE = re.compile(r"<\s*(https?://[^>\s]+)\s*>|(https?://[^\s,<>]+)", re.IGNORECASE)
_MAILTO_LINK_RE = re.compile(r"<\s*(mailto:[^>\s]+)\s*>|(mailto:[^\s,<>]+)", re.IGNORECASE)


@dataclass(frozen=True)
class ParsedSender:
    address: str
    name: str
    strategy: str


@dataclass(frozen=True)
class ParseFailure:
    reason: str


SenderParse = Union[ParsedSender, ParseFailure]


def decode_mime_header(value: str | None) -> str:
    """Decode RFC 2047 encoded words; undecodable parts are kept as-is."""
    if not value:
        return ""
    parts = []
    try:
        chunks = decode_header(value)
    except ValueError:
        return value
    for chunk, charset in chunks:
        if isinstance(chunk, bytes):
            try:
                parts.append(chunk.decode(charset or "utf-8", errors="replace"))
            except LookupError:
                parts.append(chunk.decode("utf-8", errors="replace"))
        else:
            parts.append(chunk)
    return "".join(parts)


def _clean_name(name: str) -> str:
    return name.strip().strip('"').strip("'").strip()


def _parse_bracketed(value: str) -> SenderParse:
    """``Name <addr>``, ``"Name" <addr>`` and ``<addr>``."""
    m = _BRACKETED_RE.match(value)
    if not m:
        return ParseFailure("no bracketed address")
    return ParsedSender(m.group(2).lower(), _clean_name(m.group(1) or ""), "bracketed")


def _parse_bare(value: str) -> SenderParse:
    """A bare address, or an address embedded in free text."""
    if _BARE_RE.match(value):
        return ParsedSender(value.lower(), "", "bare")
    m = _EMBEDDED_RE.search(value)
    if not m:
        return ParseFailure("no address found")
    name = re.sub(r"[<>\"'()]", "", value[: m.start()]).strip()
    return ParsedSender(m.group(0).lower(), name, "bare")


SENDER_STRATEGIES: tuple[tuple[str, Callable[[str], SenderParse]], ...] = (
    ("bracketed", _parse_bracketed),
    ("bare", _parse_bare),
)


def parse_sender(from_value: str | None) -> SenderParse:
    """Run the sender strategies in order and return the first success.

    Handles formats like:
      "John Doe <john@example.com>" -> ("john@example.com", "John Doe")
      "<john@example.com>"          -> ("john@example.com", "")
      "John@Example.com"            -> ("john@example.com", "")
    """
    value = decode_mime_header(from_value).strip()
    if not value or value in ("<>", '""', "''"):
        return ParseFailure("empty From header")
    reasons = []
    for name, strategy in SENDER_STRATEGIES:
        result = strategy(value)
        if isinstance(result, ParsedSender):
            return result
        reasons.append(f"{name}: {result.reason}")
    return ParseFailure("; ".join(reasons))


def extract_unsubscribe_link(header: str | None) -> str | None:
    """Return the HTTP(S) unsubscribe URL, falling back to mailto."""
    if not header:
        return None
    m = _HTTP_LINK_RE.search(header)
    if m:
        return m.group(1) or m.group(2)
    return extract_mailto_unsubscribe_link(header)


def extract_mailto_unsubscribe_link(header: str | None) -> str | None:
    if not header:
        return None
    m = _MAILTO_LINK_RE.search(header)
    if m:
        return m.group(1) or m.group(2)
    return None


def parse_received_at(raw: RawMessage) -> datetime:
    """Date header first, then the provider's internal timestamp (UTC)."""
    date_value = raw.header("Date")
    if date_value:
        try:
            parsed = parsedate_to_datetime(date_value)
        except (TypeError, ValueError, IndexError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    if raw.internal_date is not None:
        return datetime.fromtimestamp(raw.internal_date / 1000, tz=timezone.utc)
    raise ClassificationSkip(raw.remote_id, "no usable Date header or internal date")


def is_automated_sender(address: str) -> bool:
    return any(address.startswith(pattern) for pattern in AUTOMATED_SENDER_PATTERNS)


def classify(raw: RawMessage, account_address: str) -> NormalizedMessage | None:
    """Normalize one raw message.

    Returns None for messages that are never mirrored (spam, trash, mail sent
    by the account itself). Raises ClassificationSkip for malformed input.
    """
    labels = list(raw.labels or [])
    if LABEL_SPAM in labels or LABEL_TRASH in labels:
        return None

    from_value = raw.header("From")
    if not from_value:
        raise ClassificationSkip(raw.remote_id, "missing From header")
    sender = parse_sender(from_value)
    if isinstance(sender, ParseFailure):
        raise ClassificationSkip(raw.remote_id, sender.reason)
    if sender.address == account_address.strip().lower():
        return None

    received_at = parse_received_at(raw)

    list_unsubscribe = raw.header("List-Unsubscribe")
    unsubscribe_link = extract_unsubscribe_link(list_unsubscribe)
    http_link = bool(unsubscribe_link and not unsubscribe_link.lower().startswith("mailto:"))
    precedence = (raw.header("Precedence") or "").strip().lower()
    promotional = LABEL_PROMOTIONS in labels
    newsletter = bool(list_unsubscribe) and (
        promotional
        or LABEL_UPDATES in labels
        or precedence in BULK_PRECEDENCE
        or is_automated_sender(sender.address)
    )

    return NormalizedMessage(
        remote_id=raw.remote_id,
        sender_address=sender.address,
        # an empty display name falls back to the address so the key is never blank
        sender_name=sender.name or sender.address,
        subject=decode_mime_header(raw.header("Subject")).strip() or NO_SUBJECT,
        received_at=received_at,
        snippet=raw.snippet or "",
        unread=LABEL_UNREAD in labels,
        thread_id=raw.thread_id or "",
        labels=tuple(labels),
        unsubscribe_link=unsubscribe_link,
        one_click=http_link and raw.header("List-Unsubscribe-Post") is not None,
        newsletter=newsletter,
        promotional=promotional,
    )

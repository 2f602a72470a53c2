"""Gmail message normalizer: header extraction, label flags, unsubscribe links."""

from __future__ import annotations

import logging
import re
from typing import Any

from gmail_mirror.core.exceptions import ParseError
from gmail_mirror.core.models import MirroredMessage

logger = logging.getLogger(__name__)

UNKNOWN_SENDER = "unknown@unknown.com"

# Headers requested with format=metadata
METADATA_HEADERS = ("From", "Subject", "List-Unsubscribe")

_NAMED_ADDRESS_RE = re.compile(r'^\s*"?([^"<]*?)"?\s*<([^\s<>]+@[^\s<>]+)>')
_BARE_ADDRESS_RE = re.compile(r'([^\s<>"]+@[^\s<>"]+)')
_ANGLE_RE = re.compile(r"<([^>]+)>")


def parse_email_address(header: str | None) -> tuple[str, str | None]:
    """Split a From header into (lowercased email, display name).

    Handles ``"Name" <a@b.com>``, ``<a@b.com>`` and bare ``a@b.com``.
    """
    if not header:
        return UNKNOWN_SENDER, None

    match = _NAMED_ADDRESS_RE.search(header)
    if match:
        name = match.group(1).strip() or None
        return match.group(2).lower(), name

    match = _BARE_ADDRESS_RE.search(header)
    if match:
        return match.group(1).lower(), None

    return header.strip().lower(), None


def find_category(label_ids: tuple[str, ...] | list[str]) -> str | None:
    """Pick the provider classification from the message labels."""
    for label in label_ids:
        if label.startswith("CATEGORY_"):
            return label
    for special in ("SENT", "SPAM", "TRASH"):
        if special in label_ids:
            return special
    return None


def parse_unsubscribe_header(header: str | None) -> str | None:
    """Extract the best URL from a List-Unsubscribe header.

    Prefers https, then http, then mailto.
    """
    if not header:
        return None
    urls = [url.strip() for url in _ANGLE_RE.findall(header)]
    for prefix in ("https://", "http://", "mailto:"):
        for url in urls:
            if url.startswith(prefix):
                return url
    return None


def _has_attachments(part: dict[str, Any]) -> bool:
    for sub_part in part.get("parts", []) or []:
        if sub_part.get("filename"):
            return True
        if _has_attachments(sub_part):
            return True
    return False


def _safe_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class MessageNormalizer:
    """Turns raw Gmail API message dicts into MirroredMessage objects.

    Normalization is deterministic: the same raw message always yields the
    same fields. ``synced_at`` is left unset and stamped by the store.
    """

    def normalize(self, raw_message: dict[str, Any]) -> MirroredMessage:
        """Normalize a raw Gmail API message (format=metadata or full).

        Raises:
            ParseError: If the message has no id or an unusable structure.
        """
        try:
            message_id = raw_message["id"]
            payload = raw_message.get("payload", {}) or {}
            headers = self._extract_headers(payload)
            labels = tuple(raw_message.get("labelIds", []) or [])
            from_email, from_name = parse_email_address(headers.get("from"))

            return MirroredMessage(
                message_id=message_id,
                thread_id=raw_message.get("threadId", "") or "",
                subject=headers.get("subject"),
                snippet=raw_message.get("snippet") or None,
                from_email=from_email,
                from_name=from_name,
                labels=labels,
                category=find_category(labels),
                size_bytes=_safe_int(raw_message.get("sizeEstimate")),
                has_attachments=_has_attachments(payload),
                is_unread="UNREAD" in labels,
                is_starred="STARRED" in labels,
                is_trash="TRASH" in labels,
                is_spam="SPAM" in labels,
                is_important="IMPORTANT" in labels,
                internal_date=_safe_int(raw_message.get("internalDate")),
                unsubscribe_link=parse_unsubscribe_header(headers.get("list-unsubscribe")),
            )
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(
                f"Failed to normalize message {raw_message.get('id', '?')}: {e}"
            ) from e

    @staticmethod
    def _extract_headers(payload: dict[str, Any]) -> dict[str, str]:
        headers: dict[str, str] = {}
        for h in payload.get("headers", []) or []:
            name = h.get("name", "").lower()
            if name in ("from", "subject", "list-unsubscribe") and name not in headers:
                headers[name] = h.get("value", "")
        return headers

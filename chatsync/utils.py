"""
Utility functions for the chat sync service.
"""

import hmac
import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

# Suffix the provider appends to one-to-one chat identifiers
PERSONAL_CHAT_SUFFIX = "@c.us"

_NON_DIGITS = re.compile(r"[^\d]")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_chat_id(raw: str) -> str:
    """
    Turn a user-entered phone number into a provider chat identifier.

    Identifiers that already carry a provider suffix (anything with '@')
    are returned unchanged. Otherwise every non-digit is stripped and the
    personal chat suffix is appended.

    Raises:
        ValueError: if no digits remain
    """
    raw = (raw or "").strip()
    if "@" in raw:
        return raw
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        raise ValueError("chat id must contain digits")
    return f"{digits}{PERSONAL_CHAT_SUFFIX}"


def display_name_for(chat_id: str) -> str:
    """Human-friendly name for a chat id: the part before the provider suffix."""
    return chat_id.split("@", 1)[0]


def resolve_chat_id(from_me: bool, from_id: Optional[str], to_id: Optional[str]) -> Optional[str]:
    """Outbound messages belong to the recipient's chat, inbound ones to the sender's."""
    return to_id if from_me else from_id


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature, body length: {len(body)} bytes")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid

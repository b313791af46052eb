"""ID generation and parsing utilities for conversation storage.

Centralizes the ID format knowledge so callers never need to
construct or parse identifiers directly.

Conversation IDs: conv-{ULID}
    The ULID is 26 Crockford base32 characters: a 48-bit millisecond
    timestamp followed by 80 random bits, so IDs sort by creation time.
Index row IDs: {conversation_id}_turn_{turn_number}_{role}
"""

from __future__ import annotations

import secrets
import time
from datetime import UTC, datetime

CONVERSATION_PREFIX = "conv-"

_CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_CROCKFORD_INDEX = {c: i for i, c in enumerate(_CROCKFORD)}
_ULID_LENGTH = 26


def _encode_base32(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(_CROCKFORD[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def new_ulid(timestamp_ms: int | None = None) -> str:
    """Generate a ULID string for the given (or current) millisecond time."""
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    if not 0 <= timestamp_ms < 2**48:
        raise ValueError(f"ULID timestamp out of range: {timestamp_ms}")
    randomness = secrets.randbits(80)
    return _encode_base32(timestamp_ms, 10) + _encode_base32(randomness, 16)


def new_conversation_id(timestamp_ms: int | None = None) -> str:
    """Generate a conversation ID."""
    return f"{CONVERSATION_PREFIX}{new_ulid(timestamp_ms)}"


def is_valid_conversation_id(conversation_id: str) -> bool:
    """Check that an ID has the conv-{ULID} shape.

    Also guards against path traversal since IDs become file names.
    """
    if not conversation_id.startswith(CONVERSATION_PREFIX):
        return False
    ulid = conversation_id[len(CONVERSATION_PREFIX) :]
    return len(ulid) == _ULID_LENGTH and all(c in _CROCKFORD_INDEX for c in ulid)


def conversation_created_at(conversation_id: str) -> datetime:
    """Extract the creation time encoded in a conversation ID.

    Raises ValueError on malformed input.
    """
    if not is_valid_conversation_id(conversation_id):
        raise ValueError(f"Malformed conversation ID: {conversation_id}")
    ulid = conversation_id[len(CONVERSATION_PREFIX) :]
    value = 0
    for char in ulid[:10]:
        value = (value << 5) | _CROCKFORD_INDEX[char]
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def index_row_id(conversation_id: str, turn_number: int, role: str) -> str:
    """Generate a keyword index row ID."""
    return f"{conversation_id}_turn_{turn_number}_{role}"


def parse_index_row_id(row_id: str) -> tuple[str, int, str]:
    """Split an index row ID into (conversation_id, turn_number, role).

    Raises ValueError on malformed input.
    """
    try:
        head, role = row_id.rsplit("_", 1)
        conversation_id, turn = head.rsplit("_turn_", 1)
        if not conversation_id or not role:
            raise ValueError
        return conversation_id, int(turn), role
    except (ValueError, IndexError):
        raise ValueError(f"Malformed index row ID: {row_id}") from None

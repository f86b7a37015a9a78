from __future__ import annotations

import re
from typing import Sequence

_HEX_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_WHITESPACE_RE = re.compile(r"\s")

# Ledger amounts are uint256 in the token's base unit; post ids are stored as SQLite INTEGER.
MAX_AMOUNT = 2**256 - 1
MAX_POST_ID = 2**63 - 1
MAX_TIMESTAMP = 2**63 - 1


def normalize_address(value: str) -> str:
    """
    Canonical form of a wallet address: trimmed and lower-cased.

    Every address crossing into the index goes through here, so "0xABC.." and
    "0xabc.." are the same account. Hex addresses must have 40 digits.
    """
    addr = (value or "").strip().lower()
    if not addr:
        raise ValueError("address must be non-empty")
    if _WHITESPACE_RE.search(addr):
        raise ValueError(f"address must not contain whitespace: {value!r}")
    if addr.startswith("0x") and not _HEX_ADDRESS_RE.fullmatch(addr):
        raise ValueError(f"hex address must be 0x followed by 40 hex digits: {value!r}")
    return addr


def normalize_category(value: str, *, allowed: Sequence[str]) -> str:
    cat = (value or "").strip().casefold()
    if cat not in allowed:
        joined = ", ".join(allowed)
        raise ValueError(f"category must be one of: {joined} (got {value!r})")
    return cat


def normalize_caption(value: str | None, *, max_chars: int) -> str:
    caption = (value or "").strip()
    if len(caption) > max_chars:
        raise ValueError(f"caption exceeds {max_chars} characters")
    return caption


def normalize_rating(value: int | None, *, low: int, high: int) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"rating must be an integer (got {value!r})")
    if not (low <= value <= high):
        raise ValueError(f"rating must be between {low} and {high} (got {value})")
    return value


def normalize_display_name(value: str | None, *, max_chars: int) -> str | None:
    if value is None:
        return None
    name = " ".join(value.split())
    if not name:
        return None
    if len(name) > max_chars:
        raise ValueError(f"display name exceeds {max_chars} characters")
    return name


def normalize_amount(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"amount must be an integer (got {value!r})")
    if not (0 <= value <= MAX_AMOUNT):
        raise ValueError(f"amount must be between 0 and 2**256-1 (got {value})")
    return value


def normalize_post_id(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"post id must be an integer (got {value!r})")
    if not (0 <= value <= MAX_POST_ID):
        raise ValueError(f"post id must be between 0 and 2**63-1 (got {value})")
    return value


def normalize_timestamp(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"timestamp must be an integer (got {value!r})")
    if not (0 <= value <= MAX_TIMESTAMP):
        raise ValueError(f"timestamp out of range (got {value})")
    return value

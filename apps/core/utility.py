from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import uuid4


def parse_int(value: object, default: int) -> int:
    """Safe int parse with default fallback."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_decimal(value: object, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Parse money-ish values (str/int/float/Decimal) without binary float drift."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def new_local_id(prefix: str = "q") -> str:
    """Client-side identifier for questions that have not been persisted upstream yet."""
    return f"{prefix}_{uuid4().hex[:12]}"


def new_idempotency_key() -> str:
    """A fresh key per payment attempt."""
    return f"pay_{uuid4().hex}"

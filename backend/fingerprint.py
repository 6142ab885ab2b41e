"""
Import Fingerprints

Deterministic identity for an imported ledger row, built only from fields the
statement itself carries (date, description, amount, running balance, symbol,
quantity, price). Locally assigned fields such as category, row index, ids or
timestamps never take part, so re-categorizing or re-ordering a statement does
not defeat deduplication.

The algorithm is versioned. Any change to the normalization or the field list
must bump FINGERPRINT_VERSION, otherwise previously imported rows would stop
matching and be imported twice.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Union
import hashlib
import re
import uuid

FINGERPRINT_VERSION = 1
FINGERPRINT_PREFIX = f"v{FINGERPRINT_VERSION}:"
MANUAL_PREFIX = "m1:"
CORRECTION_PREFIX = "c1:"

_WHITESPACE = re.compile(r"\s+")

Number = Union[Decimal, float, int, str, None]


def _clean_text(value: Optional[str]) -> str:
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip().upper()


def _clean_number(value: Number, places: int) -> str:
    if value is None or value == "":
        return ""
    try:
        quantum = Decimal(1).scaleb(-places)
        normalized = Decimal(str(value)).quantize(quantum)
    except (InvalidOperation, ValueError):
        return _clean_text(str(value))
    # -0.00 and 0.00 are the same amount
    if normalized == 0:
        normalized = abs(normalized)
    return f"{normalized:.{places}f}"


def _clean_date(value: Union[date, datetime, str, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def _components(trans_date, description, amount, balance, symbol, qty, price) -> str:
    return "|".join([
        _clean_date(trans_date),
        _clean_text(description),
        _clean_number(amount, 2),
        _clean_number(balance, 2),
        _clean_text(symbol),
        _clean_number(qty, 4),
        _clean_number(price, 4),
    ])


def compute_fingerprint(
    trans_date: Union[date, datetime, str],
    description: Optional[str],
    amount: Number,
    balance: Number = None,
    symbol: Optional[str] = None,
    qty: Number = None,
    price: Number = None
) -> str:
    """
    Fingerprint of an imported row.

    Returns:
        "v1:" followed by the SHA256 hex digest of the normalized fields
    """
    raw_str = _components(trans_date, description, amount, balance, symbol, qty, price)
    return FINGERPRINT_PREFIX + hashlib.sha256(raw_str.encode()).hexdigest()


def compute_manual_fingerprint(
    trans_date: Union[date, datetime, str],
    description: Optional[str],
    amount: Number,
    symbol: Optional[str] = None,
    qty: Number = None,
    price: Number = None,
    salt: Optional[str] = None
) -> str:
    """
    Fingerprint for a hand-entered row.

    Two identical manual entries are two real events, so a random salt keeps
    them from colliding with each other or with imported rows.
    """
    salt = salt or uuid.uuid4().hex
    raw_str = _components(trans_date, description, amount, None, symbol, qty, price) + "|" + salt
    return MANUAL_PREFIX + hashlib.sha256(raw_str.encode()).hexdigest()


def compute_correction_fingerprint(transaction_id: int) -> str:
    """
    Fingerprint for the offsetting row that corrects one mismatched transaction.

    Deterministic per corrected row, so a second correction of the same row
    trips the (account, fingerprint) constraint instead of doubling the offset.
    """
    raw_str = f"CORRECTS|{int(transaction_id)}"
    return CORRECTION_PREFIX + hashlib.sha256(raw_str.encode()).hexdigest()


def fingerprint_version(fingerprint: str) -> Optional[str]:
    """Version tag of a stored fingerprint ("v1", "m1"), None if untagged."""
    if ":" not in fingerprint:
        return None
    return fingerprint.split(":", 1)[0]

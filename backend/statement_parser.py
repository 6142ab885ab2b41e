"""
Statement Parser and Normalization Layer

Turns an uploaded bank / brokerage statement (CSV bytes) into import rows:
1. Encoding and delimiter detection
2. Column alias mapping to canonical ledger fields
3. Strong typing helpers (dates with locale hints, EU/US amounts)

Values are left as strings in the parsed rows; typing happens in the import
service so that a bad cell rejects one row instead of the whole statement.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple, Union
from datetime import datetime, date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import io
import logging
import re

import pandas as pd

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

CANONICAL_FIELDS = ["date", "description", "amount", "balance", "symbol", "qty", "price", "category"]


@dataclass
class ParsedStatement:
    """Rows extracted from one statement file."""
    rows: List[Dict[str, Any]]
    columns: List[str]
    column_mapping: Dict[str, str]
    delimiter: str
    encoding: str
    unmapped_columns: List[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


# ═══════════════════════════════════════════════════════════════════════════════
# NORMALIZATION LAYER
# ═══════════════════════════════════════════════════════════════════════════════

class NormalizationLayer:
    """
    Shared normalization utilities for statement imports.

    Provides:
    - Column alias mapping
    - Strong typing (dates, amounts, quantities)
    """

    # Column alias mappings (source variations -> canonical)
    COLUMN_ALIASES = {
        "date": ["date", "trans_date", "transaction_date", "posting_date", "post_date", "posted_date",
                 "trade_date", "run_date", "value_date", "Transaction Date", "Posting Date",
                 "Trade Date", "Datum", "Buchungstag"],

        "description": ["description", "desc", "memo", "narration", "details", "payee", "action",
                        "Description", "Memo", "Transaction Description", "Beschreibung",
                        "Verwendungszweck"],

        "amount": ["amount", "amt", "transaction_amount", "net_amount", "value",
                   "Amount", "Amount ($)", "Amount (USD)", "Betrag"],

        "debit": ["debit", "withdrawal", "withdrawals", "money_out", "Debit", "Soll"],

        "credit": ["credit", "deposit", "deposits", "money_in", "Credit", "Haben"],

        "balance": ["balance", "running_balance", "running_bal", "running_bal.", "ledger_balance",
                    "Balance", "Balance ($)", "Running Bal.", "Saldo", "Kontostand"],

        "symbol": ["symbol", "ticker", "security", "asset", "Symbol", "Ticker"],

        "qty": ["qty", "quantity", "shares", "units", "Quantity", "Shares", "Anzahl"],

        "price": ["price", "unit_price", "share_price", "Price", "Price ($)", "Kurs"],

        "category": ["category", "transaction_category", "cat", "Category", "Kategorie"],
    }

    # Date format patterns to try
    DATE_FORMATS = [
        "%Y-%m-%d",           # ISO: 2026-01-15
        "%d/%m/%Y",           # EU: 15/01/2026
        "%m/%d/%Y",           # US: 01/15/2026
        "%d.%m.%Y",           # German: 15.01.2026
        "%Y/%m/%d",           # Asian: 2026/01/15
        "%d-%m-%Y",           # EU dash: 15-01-2026
        "%Y%m%d",             # Compact: 20260115
        "%d %b %Y",           # 15 Jan 2026
        "%d %B %Y",           # 15 January 2026
        "%b %d, %Y",          # Jan 15, 2026
        "%B %d, %Y",          # January 15, 2026
    ]

    CURRENCY_MARKERS = ['€', '$', '£', '¥', 'EUR', 'USD', 'GBP', 'CHF', 'JPY']

    ENCODINGS = ['utf-8-sig', 'utf-8', 'cp1252', 'latin-1']

    DELIMITERS = [',', ';', '\t', '|']

    @staticmethod
    def _norm(name: str) -> str:
        return name.strip().lower().replace(" ", "_").replace("-", "_")

    @classmethod
    def map_columns(cls, source_columns: List[str]) -> Dict[str, str]:
        """
        Map source columns to canonical names.

        Args:
            source_columns: List of source column names

        Returns:
            Dict mapping source column -> canonical column
        """
        mapping = {}
        normalized_source = {c: cls._norm(c) for c in source_columns}

        for canonical, aliases in cls.COLUMN_ALIASES.items():
            normalized_aliases = {cls._norm(a) for a in aliases}

            for source_col, norm_col in normalized_source.items():
                if source_col in mapping:
                    continue
                if norm_col in normalized_aliases:
                    mapping[source_col] = canonical
                    break

        return mapping

    @classmethod
    def parse_date(cls, value: Any, locale: str = "ISO") -> Optional[date]:
        """
        Parse date with explicit locale handling.

        Args:
            value: Date value (string, datetime, date)
            locale: Locale hint ("ISO", "EU", "US", "DE")

        Returns:
            Parsed date or None
        """
        if value is None or (isinstance(value, str) and not value.strip()):
            return None

        if isinstance(value, datetime):
            return value.date()

        if isinstance(value, date):
            return value

        value_str = str(value).strip()

        # Order formats based on locale hint
        formats = list(cls.DATE_FORMATS)
        if locale == "EU":
            formats = ["%d/%m/%Y", "%d.%m.%Y", "%d-%m-%Y"] + formats
        elif locale == "US":
            formats = ["%m/%d/%Y", "%m-%d-%Y"] + formats
        elif locale == "DE":
            formats = ["%d.%m.%Y"] + formats

        for fmt in formats:
            try:
                return datetime.strptime(value_str, fmt).date()
            except ValueError:
                continue

        # ISO timestamps and other pandas-recognizable forms as last resort
        try:
            parsed = pd.to_datetime(value_str, errors='coerce')
        except (ValueError, TypeError, OverflowError):
            return None
        if pd.notna(parsed):
            return parsed.date()

        return None

    @classmethod
    def parse_decimal(cls, value: Any, places: int = 2) -> Optional[Decimal]:
        """
        Parse a number to Decimal rounded half-up to `places`.

        Handles:
        - European format: 1.234,56
        - US format: 1,234.56
        - Currency symbols
        - Parentheses and trailing minus for negatives
        """
        quantum = Decimal(1).scaleb(-places)

        if value is None:
            return None

        if isinstance(value, bool):
            return None

        if isinstance(value, (int, float)):
            if isinstance(value, float) and value != value:
                return None
            return Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)

        if isinstance(value, Decimal):
            return value.quantize(quantum, rounding=ROUND_HALF_UP)

        value_str = str(value).strip()
        if not value_str:
            return None

        for marker in cls.CURRENCY_MARKERS:
            value_str = value_str.replace(marker, '')
        value_str = value_str.replace(' ', '').replace('\u00a0', '').replace("'", '')

        is_negative = False
        if value_str.startswith('(') and value_str.endswith(')'):
            is_negative = True
            value_str = value_str[1:-1]
        elif value_str.endswith('-'):
            is_negative = True
            value_str = value_str[:-1]
        if value_str.startswith('-'):
            is_negative = not is_negative
            value_str = value_str[1:]
        elif value_str.startswith('+'):
            value_str = value_str[1:]

        if not value_str or not re.fullmatch(r'[\d.,]+', value_str):
            return None

        # European: 1.234,56 (period for thousands, comma for decimal)
        # US: 1,234.56 (comma for thousands, period for decimal)
        if ',' in value_str and '.' in value_str:
            if value_str.rfind(',') > value_str.rfind('.'):
                value_str = value_str.replace('.', '').replace(',', '.')
            else:
                value_str = value_str.replace(',', '')
        elif ',' in value_str:
            # A single comma followed by 1-2 digits at the end is a decimal comma
            if re.fullmatch(r'\d*,\d{1,2}', value_str):
                value_str = value_str.replace(',', '.')
            else:
                value_str = value_str.replace(',', '')

        try:
            result = Decimal(value_str).quantize(quantum, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            return None
        return -result if is_negative else result

    @classmethod
    def parse_amount(cls, value: Any) -> Optional[Decimal]:
        return cls.parse_decimal(value, 2)

    @classmethod
    def parse_quantity(cls, value: Any) -> Optional[Decimal]:
        return cls.parse_decimal(value, 4)

    @classmethod
    def decode(cls, data: Union[bytes, str]) -> Tuple[str, str]:
        """Decode raw bytes, trying common statement encodings in turn."""
        if isinstance(data, str):
            return data, "str"
        for encoding in cls.ENCODINGS:
            try:
                return data.decode(encoding), encoding
            except UnicodeDecodeError:
                continue
        # latin-1 never fails, so this is unreachable in practice
        raise ValueError("Unable to decode statement")

    @classmethod
    def detect_delimiter(cls, text: str) -> str:
        """Most frequent candidate delimiter in the first lines."""
        sample = '\n'.join(text.splitlines()[:5])
        counts = {d: sample.count(d) for d in cls.DELIMITERS}
        best = max(counts, key=counts.get)
        return best if counts[best] > 0 else ','


# ═══════════════════════════════════════════════════════════════════════════════
# STATEMENT PARSING
# ═══════════════════════════════════════════════════════════════════════════════

def _combine_debit_credit(mapped: Dict[str, Any]) -> Dict[str, Any]:
    """Fold separate debit/credit columns into one signed amount string."""
    debit = (mapped.pop("debit", "") or "").strip()
    credit = (mapped.pop("credit", "") or "").strip()
    if mapped.get("amount"):
        return mapped
    if credit and not debit:
        mapped["amount"] = credit
    elif debit and not credit:
        parsed = NormalizationLayer.parse_amount(debit)
        mapped["amount"] = str(-abs(parsed)) if parsed is not None else debit
    elif debit and credit:
        d = NormalizationLayer.parse_amount(debit)
        c = NormalizationLayer.parse_amount(credit)
        mapped["amount"] = str(c - abs(d)) if d is not None and c is not None else f"{credit}/{debit}"
    return mapped


def parse_statement(
    data: Union[bytes, str],
    column_map: Optional[Dict[str, str]] = None,
    delimiter: Optional[str] = None
) -> ParsedStatement:
    """
    Parse a CSV statement into canonical import rows.

    Args:
        data: CSV content (bytes or string)
        column_map: Explicit source column -> canonical field overrides
        delimiter: Force a delimiter instead of detecting one

    Returns:
        ParsedStatement whose rows carry the canonical fields as raw strings
        plus 'import_text' (the original CSV line) and 'row_number'
    """
    text, encoding = NormalizationLayer.decode(data)
    delimiter = delimiter or NormalizationLayer.detect_delimiter(text)

    df = pd.read_csv(
        io.StringIO(text),
        sep=delimiter,
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        skipinitialspace=True,
    )
    df.columns = [str(c).strip() for c in df.columns]
    columns = list(df.columns)

    mapping = NormalizationLayer.map_columns(columns)
    if column_map:
        mapping.update({src: canonical for src, canonical in column_map.items() if src in columns})

    if "date" not in mapping.values():
        raise ValueError(f"Statement has no recognizable date column: {columns}")
    if not ({"amount", "debit", "credit"} & set(mapping.values())):
        raise ValueError(f"Statement has no recognizable amount column: {columns}")

    raw_lines = [line for line in text.splitlines() if line.strip()][1:]
    use_raw_lines = len(raw_lines) == len(df)

    rows = []
    for idx, record in enumerate(df.to_dict(orient="records")):
        mapped = {name: "" for name in CANONICAL_FIELDS}
        for source_col, canonical in mapping.items():
            mapped[canonical] = (record.get(source_col) or "").strip()
        mapped = _combine_debit_credit(mapped)
        mapped["import_text"] = raw_lines[idx] if use_raw_lines else delimiter.join(
            str(record.get(c, "")) for c in columns)
        mapped["row_number"] = idx + 1
        rows.append(mapped)

    unmapped = [c for c in columns if c not in mapping]
    logger.info(f"Parsed statement: {len(rows)} rows, delimiter={delimiter!r}, encoding={encoding}")
    if unmapped:
        logger.debug(f"Unmapped statement columns: {unmapped}")

    return ParsedStatement(
        rows=rows,
        columns=columns,
        column_mapping=mapping,
        delimiter=delimiter,
        encoding=encoding,
        unmapped_columns=unmapped,
    )

"""
Ledger Import Service

Idempotent import of statement rows into an account's ledger.

Guarantees:
- Re-importing the same rows inserts nothing (UNIQUE(account_id, import_fingerprint))
- A duplicate inside one batch is persisted exactly once
- A row that cannot be typed or categorized is rejected with a reason; the batch continues
- Each row commits on its own, so an interrupted import can simply be retried
"""

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Any, List, Optional, Iterable, Mapping, Union
import logging

import models
from models import TransactionSource
from access_service import require, Capability
from asset_service import resolve_asset
from catalog_service import get_catalog, ReferenceCatalog, TransactionCategoryEntry, CASH_SYMBOL
from fingerprint import compute_fingerprint, compute_manual_fingerprint
from ledger_errors import ValidationError
from statement_parser import NormalizationLayer, parse_statement

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# RESULT TYPES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class RowRejection:
    row_number: int
    reason: str
    field: Optional[str] = None


@dataclass
class ImportResult:
    """Outcome of one import batch. inserted + skipped_duplicate + rejected == rows seen."""
    account_id: int
    inserted: int = 0
    skipped_duplicate: int = 0
    rejected: int = 0
    rejections: List[RowRejection] = field(default_factory=list)
    sign_mismatches: List[int] = field(default_factory=list)  # Inserted rows whose sign disagrees with is_debit
    transaction_ids: List[int] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "inserted": self.inserted,
            "skipped_duplicate": self.skipped_duplicate,
            "rejected": self.rejected,
            "rejections": [
                {"row_number": r.row_number, "reason": r.reason, "field": r.field}
                for r in self.rejections
            ],
            "sign_mismatches": self.sign_mismatches,
            "transaction_ids": self.transaction_ids,
            "metadata": self.metadata,
        }


@dataclass
class PreparedRow:
    """A fully typed and resolved row, ready to insert."""
    trans_date: date
    description: Optional[str]
    amount: Decimal
    balance: Optional[Decimal]
    qty: Optional[Decimal]
    price: Optional[Decimal]
    cost: Optional[Decimal]
    symbol: str
    asset_id: int
    category: TransactionCategoryEntry
    import_text: Optional[str]
    fingerprint: str


# ═══════════════════════════════════════════════════════════════════════════════
# ROW PREPARATION
# ═══════════════════════════════════════════════════════════════════════════════

def _text(row: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = row.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def _optional_number(row: Mapping[str, Any], key: str, places: int) -> Optional[Decimal]:
    raw = row.get(key)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    parsed = NormalizationLayer.parse_decimal(raw, places)
    if parsed is None:
        raise ValidationError(f"Malformed {key}: {raw!r}", field=key)
    return parsed


def prepare_row(
    db: Session,
    catalog: ReferenceCatalog,
    row: Mapping[str, Any],
    user_id: int,
    default_category: Optional[TransactionCategoryEntry] = None,
    locale: str = "ISO"
) -> PreparedRow:
    """
    Type, categorize and fingerprint one raw row.

    Raises:
        ValidationError: malformed date/amount, unknown category or asset
    """
    raw_date = row.get("date", row.get("trans_date"))
    trans_date = NormalizationLayer.parse_date(raw_date, locale=locale)
    if trans_date is None:
        raise ValidationError(f"Malformed or missing date: {raw_date!r}", field="date")

    raw_amount = row.get("amount")
    if raw_amount is None or (isinstance(raw_amount, str) and not raw_amount.strip()):
        raise ValidationError("Missing amount", field="amount")
    amount = NormalizationLayer.parse_amount(raw_amount)
    if amount is None:
        raise ValidationError(f"Malformed amount: {raw_amount!r}", field="amount")

    balance = _optional_number(row, "balance", 2)
    qty = _optional_number(row, "qty", 4)
    price = _optional_number(row, "price", 4)
    cost = _optional_number(row, "cost", 2)

    category_text = _text(row, "category")
    if category_text:
        category = catalog.resolve_transaction_category(category_text)
    elif default_category is not None:
        category = default_category
    else:
        raise ValidationError("Row has no transaction category", field="category")
    if category.is_reconcile:
        raise ValidationError(f"{category.label} is reserved for reconciliation corrections", field="category")

    symbol = _text(row, "symbol").upper()
    if category.position_effect != 0:
        if not symbol:
            raise ValidationError(f"{category.label} requires an asset symbol", field="symbol")
        if qty is None:
            raise ValidationError(f"{category.label} requires a quantity", field="qty")
        if cost is None and category.position_effect > 0:
            cost = abs(amount)

    asset = resolve_asset(db, symbol or CASH_SYMBOL, user_id)
    if asset is None:
        raise ValidationError(f"Unknown asset symbol: {symbol}", field="symbol")

    description = _text(row, "description") or None
    fingerprint = compute_fingerprint(trans_date, description, amount, balance, symbol, qty, price)

    return PreparedRow(
        trans_date=trans_date,
        description=description,
        amount=amount,
        balance=balance,
        qty=qty,
        price=price,
        cost=cost,
        symbol=symbol,
        asset_id=asset.id,
        category=category,
        import_text=_text(row, "import_text") or None,
        fingerprint=fingerprint,
    )


def sign_disagrees(category: TransactionCategoryEntry, amount: Decimal) -> bool:
    """True when a debit category carries money in, or a credit category money out."""
    if amount == 0:
        return False
    return (amount > 0) == category.is_debit


def _row_number(row: Mapping[str, Any], position: int) -> int:
    try:
        return int(row.get("row_number") or position)
    except (TypeError, ValueError):
        return position


def _fingerprint_exists(db: Session, account_id: int, fingerprint: str) -> bool:
    return db.query(models.AccountTransaction.id).filter(
        models.AccountTransaction.account_id == account_id,
        models.AccountTransaction.import_fingerprint == fingerprint
    ).first() is not None


def _build_transaction(account_id: int, user_id: int, prepared: PreparedRow,
                       source: TransactionSource) -> models.AccountTransaction:
    return models.AccountTransaction(
        account_id=account_id,
        asset_id=prepared.asset_id,
        transaction_category_id=prepared.category.id,
        trans_date=prepared.trans_date,
        price=prepared.price,
        qty=prepared.qty,
        amount=prepared.amount,
        cost=prepared.cost,
        balance=prepared.balance,
        description=prepared.description,
        import_text=prepared.import_text,
        import_fingerprint=prepared.fingerprint,
        source=source.value,
        created_by=user_id,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# IMPORT
# ═══════════════════════════════════════════════════════════════════════════════

def import_batch(
    db: Session,
    account_id: int,
    user_id: int,
    rows: Iterable[Mapping[str, Any]],
    default_category: Optional[str] = None,
    locale: str = "ISO"
) -> ImportResult:
    """
    Import rows into an account. Requires WRITE.

    Args:
        rows: Mappings with date, description, amount and optional balance,
              symbol, qty, price, cost, category, import_text, row_number
        default_category: "Cat:Sub" applied to rows that carry no category
        locale: Date parsing hint ("ISO", "EU", "US", "DE")

    Returns:
        ImportResult with inserted / skipped_duplicate / rejected counts
    """
    require(db, account_id, user_id, Capability.WRITE)
    catalog = get_catalog(db)
    default_entry = catalog.resolve_transaction_category(default_category) if default_category else None

    result = ImportResult(account_id=account_id)
    seen_in_batch = set()

    for idx, row in enumerate(rows, start=1):
        row_number = _row_number(row, idx)

        try:
            prepared = prepare_row(db, catalog, row, user_id, default_entry, locale)
        except ValidationError as e:
            result.rejected += 1
            result.rejections.append(RowRejection(row_number, str(e), e.field))
            logger.debug(f"Rejected row {row_number} for account {account_id}: {e}")
            continue

        if prepared.fingerprint in seen_in_batch or _fingerprint_exists(db, account_id, prepared.fingerprint):
            result.skipped_duplicate += 1
            seen_in_batch.add(prepared.fingerprint)
            logger.debug(f"Skipped duplicate row {row_number} for account {account_id}")
            continue
        seen_in_batch.add(prepared.fingerprint)

        txn = _build_transaction(account_id, user_id, prepared, TransactionSource.IMPORT)
        db.add(txn)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            # A concurrent import of the same statement won the insert
            if _fingerprint_exists(db, account_id, prepared.fingerprint):
                result.skipped_duplicate += 1
                continue
            raise

        result.inserted += 1
        result.transaction_ids.append(txn.id)
        if sign_disagrees(prepared.category, prepared.amount):
            result.sign_mismatches.append(row_number)
            logger.debug(f"Row {row_number} in account {account_id}: {prepared.amount} "
                         f"against {prepared.category.label}")

    logger.info(
        f"Import into account {account_id}: inserted={result.inserted}, "
        f"skipped={result.skipped_duplicate}, rejected={result.rejected}"
    )

    from audit_service import log_import_action
    log_import_action(db, user_id, account_id, result.inserted, result.skipped_duplicate, result.rejected)
    return result


def import_statement(
    db: Session,
    account_id: int,
    user_id: int,
    content: Union[bytes, str],
    default_category: Optional[str] = None,
    locale: str = "ISO",
    column_map: Optional[Dict[str, str]] = None
) -> ImportResult:
    """Parse a CSV statement and import its rows."""
    require(db, account_id, user_id, Capability.WRITE)
    try:
        parsed = parse_statement(content, column_map=column_map)
    except ValueError as e:
        raise ValidationError(f"Unreadable statement: {e}", field="file")

    result = import_batch(db, account_id, user_id, parsed.rows,
                          default_category=default_category, locale=locale)
    result.metadata = {
        "rows": parsed.row_count,
        "delimiter": parsed.delimiter,
        "encoding": parsed.encoding,
        "column_mapping": parsed.column_mapping,
        "unmapped_columns": parsed.unmapped_columns,
    }
    return result


def record_manual_entry(
    db: Session,
    account_id: int,
    user_id: int,
    trans_date: Union[date, str],
    amount: Union[Decimal, float, str],
    category: str,
    description: Optional[str] = None,
    symbol: Optional[str] = None,
    qty: Union[Decimal, float, str, None] = None,
    price: Union[Decimal, float, str, None] = None,
    cost: Union[Decimal, float, str, None] = None
) -> models.AccountTransaction:
    """
    Record a hand-entered transaction. Requires WRITE.

    Manual entries get a salted fingerprint, so entering the same thing twice
    records two transactions.
    """
    require(db, account_id, user_id, Capability.WRITE)
    catalog = get_catalog(db)
    row = {"date": trans_date, "amount": amount, "category": category, "description": description,
           "symbol": symbol, "qty": qty, "price": price, "cost": cost}
    prepared = prepare_row(db, catalog, row, user_id)
    prepared.fingerprint = compute_manual_fingerprint(
        prepared.trans_date, prepared.description, prepared.amount,
        prepared.symbol, prepared.qty, prepared.price
    )

    txn = _build_transaction(account_id, user_id, prepared, TransactionSource.MANUAL)
    db.add(txn)
    db.commit()
    db.refresh(txn)
    logger.info(f"Manual entry {txn.id} recorded in account {account_id} by user {user_id}")
    return txn


def list_transactions(
    db: Session,
    account_id: int,
    user_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None
) -> List[models.AccountTransaction]:
    """Ledger rows in date order, ties broken by insertion order. Requires READ."""
    require(db, account_id, user_id, Capability.READ)
    query = db.query(models.AccountTransaction).filter(models.AccountTransaction.account_id == account_id)
    if start:
        query = query.filter(models.AccountTransaction.trans_date >= start)
    if end:
        query = query.filter(models.AccountTransaction.trans_date <= end)
    return query.order_by(models.AccountTransaction.trans_date, models.AccountTransaction.id).all()

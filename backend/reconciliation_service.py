"""
Running-Balance Reconciliation

Walks an account's ledger in (date, insertion) order and compares the running
balance with every balance the statement reported. All mismatches are
returned, never just the first.

The running balance starts from the account's opening balance. An account
with a System:Opening Balance row starts from zero, since that row carries
it. Otherwise the opening balance is implied by the first reported balance
(reported minus everything up to and including that row).

Reconciliation is read-only. A mismatch is fixed by post_correction(), which
appends an offsetting row in the reconcile category; the mismatched row itself
is never edited. Each correction is applied directly after the row it
corrects, so later rows on the same day see the corrected balance.
"""

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, List, Optional
import logging

import models
from models import TransactionSource
from access_service import require, Capability
from asset_service import resolve_asset
from catalog_service import get_catalog, CASH_SYMBOL
from fingerprint import compute_correction_fingerprint
from ledger_errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class RowState(str, Enum):
    """Lifecycle of a ledger row as seen by reconciliation."""
    IMPORTED = "imported"                        # No reported balance to check against
    RECONCILED_MATCH = "reconciled_match"
    RECONCILED_MISMATCH = "reconciled_mismatch"
    CORRECTED = "corrected"                      # Mismatched, offset by a correction row
    CORRECTION = "correction"                    # The offsetting row itself


@dataclass
class Discrepancy:
    transaction_id: int
    trans_date: date
    computed: Decimal
    reported: Decimal
    delta: Decimal  # reported - computed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "date": self.trans_date.isoformat(),
            "computed": str(self.computed),
            "reported": str(self.reported),
            "delta": str(self.delta),
        }


@dataclass
class ReconciliationRow:
    transaction_id: int
    trans_date: date
    amount: Decimal
    running_balance: Decimal
    reported_balance: Optional[Decimal]
    state: RowState
    corrected_by: Optional[int] = None


@dataclass
class ReconciliationReport:
    account_id: int
    as_of: Optional[date]
    opening_balance: Decimal = Decimal("0.00")
    opening_balance_inferred: bool = False
    final_balance: Decimal = Decimal("0.00")
    rows: List[ReconciliationRow] = field(default_factory=list)
    discrepancies: List[Discrepancy] = field(default_factory=list)
    corrected: List[Discrepancy] = field(default_factory=list)

    @property
    def is_reconciled(self) -> bool:
        return not self.discrepancies

    def row(self, transaction_id: int) -> Optional[ReconciliationRow]:
        for r in self.rows:
            if r.transaction_id == transaction_id:
                return r
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "as_of": self.as_of.isoformat() if self.as_of else None,
            "opening_balance": str(self.opening_balance),
            "opening_balance_inferred": self.opening_balance_inferred,
            "final_balance": str(self.final_balance),
            "is_reconciled": self.is_reconciled,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "corrected": [d.to_dict() for d in self.corrected],
            "rows": [
                {
                    "transaction_id": r.transaction_id,
                    "date": r.trans_date.isoformat(),
                    "amount": str(r.amount),
                    "running_balance": str(r.running_balance),
                    "reported_balance": str(r.reported_balance) if r.reported_balance is not None else None,
                    "state": r.state.value,
                    "corrected_by": r.corrected_by,
                }
                for r in self.rows
            ],
        }


def _cents(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT)


def _ledger_order(transactions: List[models.AccountTransaction]) -> List[models.AccountTransaction]:
    """Rows in (date, id) order, each correction moved directly behind the row it corrects."""
    present = {t.id for t in transactions}
    corrections = defaultdict(list)
    for txn in transactions:
        if txn.corrects_transaction_id in present:
            corrections[txn.corrects_transaction_id].append(txn)

    ordered = []
    for txn in transactions:
        if txn.corrects_transaction_id in present:
            continue
        ordered.append(txn)
        ordered.extend(corrections.get(txn.id, []))
    return ordered


def _opening_balance(db: Session, transactions: List[models.AccountTransaction]) -> Optional[Decimal]:
    """
    Balance the statement started from, implied by its first reported balance.

    None when an explicit opening-balance row exists or nothing was reported.
    """
    opening_category = get_catalog(db).opening_balance_category
    if opening_category is not None and any(
            t.transaction_category_id == opening_category.id for t in transactions):
        return None

    cumulative = Decimal("0.00")
    for txn in transactions:
        cumulative += _cents(txn.amount)
        if txn.balance is not None:
            return _cents(txn.balance) - cumulative
    return None


def reconcile(db: Session, account_id: int, user_id: int, as_of: Optional[date] = None) -> ReconciliationReport:
    """
    Recompute running balances and compare them with reported balances.

    Args:
        as_of: Only rows dated on or before this date (all rows when None)

    Returns:
        ReconciliationReport with every open discrepancy
    """
    require(db, account_id, user_id, Capability.READ)

    query = db.query(models.AccountTransaction).filter(models.AccountTransaction.account_id == account_id)
    if as_of is not None:
        query = query.filter(models.AccountTransaction.trans_date <= as_of)
    transactions = _ledger_order(
        query.order_by(models.AccountTransaction.trans_date, models.AccountTransaction.id).all())

    corrections = {
        t.corrects_transaction_id: t.id
        for t in transactions
        if t.corrects_transaction_id is not None
    }

    report = ReconciliationReport(account_id=account_id, as_of=as_of)
    opening = _opening_balance(db, transactions)
    if opening is not None:
        report.opening_balance = opening
        report.opening_balance_inferred = True
    running = report.opening_balance

    for txn in transactions:
        amount = _cents(txn.amount)
        running += amount
        reported = _cents(txn.balance) if txn.balance is not None else None
        corrected_by = corrections.get(txn.id)

        if txn.source == TransactionSource.CORRECTION.value:
            state = RowState.CORRECTION
        elif reported is None:
            state = RowState.IMPORTED
        elif reported == running:
            state = RowState.RECONCILED_MATCH
        else:
            discrepancy = Discrepancy(txn.id, txn.trans_date, running, reported, reported - running)
            if corrected_by is not None:
                state = RowState.CORRECTED
                report.corrected.append(discrepancy)
            else:
                state = RowState.RECONCILED_MISMATCH
                report.discrepancies.append(discrepancy)

        report.rows.append(ReconciliationRow(
            transaction_id=txn.id,
            trans_date=txn.trans_date,
            amount=amount,
            running_balance=running,
            reported_balance=reported,
            state=state,
            corrected_by=corrected_by,
        ))

    report.final_balance = running
    if report.discrepancies:
        logger.info(f"Account {account_id} reconciliation: {len(report.discrepancies)} open discrepancies")
    return report


def post_correction(db: Session, account_id: int, user_id: int, transaction_id: int) -> models.AccountTransaction:
    """
    Append one offsetting row for a mismatched transaction. Requires WRITE.

    The correction is dated like the mismatched row, carries amount = delta
    and references the row it corrects. Mismatches are corrected in ledger
    order, since each delta is cumulative.

    Raises:
        NotFound: transaction is not in this account
        ValidationError: row is not currently mismatched, is already corrected,
            or an earlier row is still mismatched
    """
    require(db, account_id, user_id, Capability.WRITE)

    txn = db.query(models.AccountTransaction).filter(
        models.AccountTransaction.id == transaction_id,
        models.AccountTransaction.account_id == account_id
    ).first()
    if not txn:
        raise NotFound(f"Transaction {transaction_id} not found in account {account_id}")

    report = reconcile(db, account_id, user_id, as_of=txn.trans_date)
    row = report.row(transaction_id)
    if row is None or row.state == RowState.CORRECTED:
        raise ValidationError(f"Transaction {transaction_id} is already corrected", field="transaction_id")
    if row.state != RowState.RECONCILED_MISMATCH:
        raise ValidationError(f"Transaction {transaction_id} is not mismatched ({row.state.value})",
                              field="transaction_id")
    for earlier in report.rows:
        if earlier.transaction_id == transaction_id:
            break
        if earlier.state == RowState.RECONCILED_MISMATCH:
            # The delta at this row still contains the earlier difference
            raise ValidationError(f"Transaction {earlier.transaction_id} must be corrected before "
                                  f"transaction {transaction_id}", field="transaction_id")

    delta = row.reported_balance - row.running_balance
    catalog = get_catalog(db)
    cash_asset = resolve_asset(db, CASH_SYMBOL)

    correction = models.AccountTransaction(
        account_id=account_id,
        asset_id=cash_asset.id,
        transaction_category_id=catalog.reconcile_category.id,
        trans_date=txn.trans_date,
        amount=delta,
        description=f"Reconciliation correction for transaction {transaction_id}",
        import_fingerprint=compute_correction_fingerprint(transaction_id),
        source=TransactionSource.CORRECTION.value,
        corrects_transaction_id=transaction_id,
        created_by=user_id,
    )
    db.add(correction)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError(f"Transaction {transaction_id} is already corrected", field="transaction_id")

    db.refresh(correction)
    logger.info(f"Posted correction {correction.id} ({delta}) for transaction {transaction_id} "
                f"in account {account_id}")

    from audit_service import log_correction_action
    log_correction_action(db, user_id, correction.id, transaction_id, delta=str(delta))
    return correction

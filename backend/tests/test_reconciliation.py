"""
Reconciliation Tests

Running balance from the opening balance in (date, insertion) order, compared
at cent precision against every reported balance. Corrections are appended,
never edited in place, and apply directly after the row they correct.
"""

import pytest
from datetime import date
from decimal import Decimal

import models
from access_service import grant
from ledger_import_service import import_batch
from reconciliation_service import reconcile, post_correction, RowState
from ledger_errors import PermissionDenied, ValidationError, NotFound


@pytest.fixture
def statement_with_gap(db_session, alice, checking_account):
    """
    Statement missing a 5.00 fee between Jan 3 and Jan 4:
    rows 3 and 4 both report balances 5.00 lower than the ledger computes.
    """
    rows = [
        {"date": "2024-01-01", "description": "Opening deposit", "amount": "100.00", "balance": "100.00",
         "category": "Transfer:In"},
        {"date": "2024-01-02", "description": "Groceries", "amount": "-30.00", "balance": "70.00",
         "category": "Expense:Groceries"},
        {"date": "2024-01-03", "description": "Fuel", "amount": "-20.00", "balance": "45.00",
         "category": "Expense:Transportation"},
        {"date": "2024-01-04", "description": "Refund", "amount": "10.00", "balance": "55.00",
         "category": "Income:Other"},
    ]
    result = import_batch(db_session, checking_account.id, alice.id, rows)
    assert result.inserted == 4
    return result.transaction_ids


class TestReconcile:

    def test_payroll_has_no_discrepancy(self, db_session, alice, checking_account, payroll_row):
        import_batch(db_session, checking_account.id, alice.id, [payroll_row])
        import_batch(db_session, checking_account.id, alice.id, [payroll_row])

        report = reconcile(db_session, checking_account.id, alice.id)

        assert report.is_reconciled
        assert report.discrepancies == []
        assert report.opening_balance == Decimal("3000.00")
        assert report.opening_balance_inferred
        assert report.final_balance == Decimal("5000.00")
        assert report.rows[0].state == RowState.RECONCILED_MATCH

    def test_every_mismatch_is_listed(self, db_session, alice, checking_account, statement_with_gap):
        report = reconcile(db_session, checking_account.id, alice.id)

        assert not report.is_reconciled
        assert [d.transaction_id for d in report.discrepancies] == statement_with_gap[2:]
        first = report.discrepancies[0]
        assert first.computed == Decimal("50.00")
        assert first.reported == Decimal("45.00")
        assert first.delta == Decimal("-5.00")
        assert report.final_balance == Decimal("60.00")

    def test_rows_without_reported_balance_stay_imported(self, db_session, alice, checking_account):
        import_batch(db_session, checking_account.id, alice.id, [
            {"date": "2024-02-01", "description": "Tip", "amount": "-3.00", "category": "Expense:Other"},
        ])
        report = reconcile(db_session, checking_account.id, alice.id)

        assert report.rows[0].state == RowState.IMPORTED
        assert report.is_reconciled

    def test_same_day_rows_follow_insertion_order(self, db_session, alice, checking_account):
        rows = [
            {"date": "2024-03-01", "description": "A", "amount": "50", "balance": "50", "category": "Income:Other"},
            {"date": "2024-03-01", "description": "B", "amount": "-20", "balance": "30",
             "category": "Expense:Other"},
        ]
        import_batch(db_session, checking_account.id, alice.id, rows)

        report = reconcile(db_session, checking_account.id, alice.id)
        assert report.is_reconciled
        assert [r.running_balance for r in report.rows] == [Decimal("50.00"), Decimal("30.00")]

    def test_as_of_limits_rows(self, db_session, alice, checking_account, statement_with_gap):
        report = reconcile(db_session, checking_account.id, alice.id, as_of=date(2024, 1, 2))

        assert len(report.rows) == 2
        assert report.is_reconciled
        assert report.final_balance == Decimal("70.00")

    def test_reconcile_is_read_only(self, db_session, alice, checking_account, statement_with_gap):
        before = db_session.query(models.AccountTransaction).count()
        reconcile(db_session, checking_account.id, alice.id)
        reconcile(db_session, checking_account.id, alice.id)
        assert db_session.query(models.AccountTransaction).count() == before

    def test_viewer_can_reconcile(self, db_session, alice, bob, checking_account, statement_with_gap):
        grant(db_session, checking_account.id, alice.id, bob.id, "viewer")
        report = reconcile(db_session, checking_account.id, bob.id)
        assert len(report.discrepancies) == 2

    def test_stranger_cannot_reconcile(self, db_session, bob, checking_account):
        with pytest.raises(PermissionDenied):
            reconcile(db_session, checking_account.id, bob.id)


class TestPostCorrection:

    def test_correction_appends_offsetting_row(self, db_session, alice, checking_account, statement_with_gap):
        fuel_id = statement_with_gap[2]

        correction = post_correction(db_session, checking_account.id, alice.id, fuel_id)

        assert correction.amount == Decimal("-5.00")
        assert correction.corrects_transaction_id == fuel_id
        assert correction.source == "correction"
        assert correction.trans_date == date(2024, 1, 3)
        assert correction.category.is_reconcile

        original = db_session.get(models.AccountTransaction, fuel_id)
        assert original.amount == Decimal("-20.00")

    def test_correction_resolves_downstream_mismatch(self, db_session, alice, checking_account,
                                                     statement_with_gap):
        fuel_id, refund_id = statement_with_gap[2], statement_with_gap[3]
        correction = post_correction(db_session, checking_account.id, alice.id, fuel_id)

        report = reconcile(db_session, checking_account.id, alice.id)

        assert report.is_reconciled
        assert report.row(fuel_id).state == RowState.CORRECTED
        assert report.row(fuel_id).corrected_by == correction.id
        assert report.row(correction.id).state == RowState.CORRECTION
        assert report.row(refund_id).state == RowState.RECONCILED_MATCH
        assert [d.transaction_id for d in report.corrected] == [fuel_id]
        assert report.final_balance == Decimal("55.00")

    def test_row_corrected_at_most_once(self, db_session, alice, checking_account, statement_with_gap):
        fuel_id = statement_with_gap[2]
        post_correction(db_session, checking_account.id, alice.id, fuel_id)

        with pytest.raises(ValidationError):
            post_correction(db_session, checking_account.id, alice.id, fuel_id)

        corrections = db_session.query(models.AccountTransaction).filter_by(corrects_transaction_id=fuel_id)
        assert corrections.count() == 1

    def test_matching_row_cannot_be_corrected(self, db_session, alice, checking_account, statement_with_gap):
        with pytest.raises(ValidationError):
            post_correction(db_session, checking_account.id, alice.id, statement_with_gap[0])

    def test_correction_requires_write(self, db_session, alice, bob, checking_account, statement_with_gap):
        grant(db_session, checking_account.id, alice.id, bob.id, "viewer")
        with pytest.raises(PermissionDenied):
            post_correction(db_session, checking_account.id, bob.id, statement_with_gap[2])

    def test_transaction_from_other_account(self, db_session, alice, checking_account, brokerage_account,
                                            statement_with_gap):
        with pytest.raises(NotFound):
            post_correction(db_session, brokerage_account.id, alice.id, statement_with_gap[2])

    def test_correction_is_audited(self, db_session, alice, checking_account, statement_with_gap):
        from audit_service import get_audit_trail
        post_correction(db_session, checking_account.id, alice.id, statement_with_gap[2])

        trail = get_audit_trail(db_session, action="Correct")
        assert len(trail) == 1
        assert trail[0].changes["corrects_transaction_id"] == statement_with_gap[2]

    def test_same_day_rows_see_the_correction(self, db_session, alice, checking_account):
        rows = [
            {"date": "2024-01-01", "description": "Deposit", "amount": "100", "balance": "100",
             "category": "Transfer:In"},
            {"date": "2024-01-02", "description": "Market", "amount": "-20", "balance": "75",
             "category": "Expense:Groceries"},
            {"date": "2024-01-02", "description": "Bus", "amount": "-10", "balance": "65",
             "category": "Expense:Transportation"},
        ]
        deposit_id, market_id, bus_id = import_batch(db_session, checking_account.id, alice.id, rows).transaction_ids

        correction = post_correction(db_session, checking_account.id, alice.id, market_id)
        report = reconcile(db_session, checking_account.id, alice.id)

        assert report.is_reconciled
        assert [r.transaction_id for r in report.rows] == [deposit_id, market_id, correction.id, bus_id]
        assert report.row(bus_id).state == RowState.RECONCILED_MATCH
        assert report.final_balance == Decimal("65.00")

        with pytest.raises(ValidationError):
            post_correction(db_session, checking_account.id, alice.id, bus_id)

    def test_earlier_mismatch_must_be_corrected_first(self, db_session, alice, checking_account,
                                                      statement_with_gap):
        fuel_id, refund_id = statement_with_gap[2], statement_with_gap[3]

        with pytest.raises(ValidationError) as exc_info:
            post_correction(db_session, checking_account.id, alice.id, refund_id)
        assert str(fuel_id) in str(exc_info.value)
        assert db_session.query(models.AccountTransaction).filter_by(source="correction").count() == 0

        post_correction(db_session, checking_account.id, alice.id, fuel_id)
        report = reconcile(db_session, checking_account.id, alice.id)
        assert report.is_reconciled
        assert report.final_balance == Decimal("55.00")


class TestOpeningBalance:

    def test_inferred_from_first_reported_balance(self, db_session, alice, checking_account):
        rows = [
            {"date": "2024-01-02", "description": "Coffee", "amount": "-4.50", "category": "Expense:Other"},
            {"date": "2024-01-03", "description": "Rent", "amount": "-1500", "balance": "995.50",
             "category": "Expense:Housing"},
            {"date": "2024-01-04", "description": "Fee", "amount": "-5", "balance": "985.50",
             "category": "Expense:Fees"},
        ]
        ids = import_batch(db_session, checking_account.id, alice.id, rows).transaction_ids

        report = reconcile(db_session, checking_account.id, alice.id)

        assert report.opening_balance == Decimal("2500.00")
        assert report.rows[0].running_balance == Decimal("2495.50")
        assert [d.transaction_id for d in report.discrepancies] == [ids[2]]
        assert report.discrepancies[0].delta == Decimal("-5.00")

    def test_explicit_opening_row_starts_from_zero(self, db_session, alice, checking_account):
        rows = [
            {"date": "2024-01-01", "description": "Opening", "amount": "3000", "category": "System:Opening Balance"},
            {"date": "2024-01-05", "description": "Payroll", "amount": "2000", "balance": "5500",
             "category": "Income:Salary"},
        ]
        ids = import_batch(db_session, checking_account.id, alice.id, rows).transaction_ids

        report = reconcile(db_session, checking_account.id, alice.id)

        assert report.opening_balance == Decimal("0.00")
        assert not report.opening_balance_inferred
        assert report.discrepancies[0].transaction_id == ids[1]
        assert report.discrepancies[0].delta == Decimal("500.00")

    def test_nothing_reported(self, db_session, alice, checking_account):
        import_batch(db_session, checking_account.id, alice.id, [
            {"date": "2024-02-01", "description": "Tip", "amount": "-3.00", "category": "Expense:Other"},
        ])
        report = reconcile(db_session, checking_account.id, alice.id)

        assert report.opening_balance == Decimal("0.00")
        assert not report.opening_balance_inferred
        assert report.final_balance == Decimal("-3.00")

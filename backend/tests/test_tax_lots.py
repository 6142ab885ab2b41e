"""
Realized Gain Tests (FIFO lots)
"""

import pytest
from datetime import date
from decimal import Decimal

from access_service import create_account
from ledger_import_service import import_batch
from valuation_service import realized_gain_slice
from tax_lots import match_fifo
from ledger_errors import PermissionDenied


def _trade(day, kind, qty, amount, symbol="VOO"):
    return {"date": day, "description": f"{kind.upper()} {symbol}", "amount": amount, "symbol": symbol,
            "qty": qty, "category": f"Trade:{kind}"}


@pytest.fixture
def two_lots(db_session, alice, brokerage_account, voo):
    """10 VOO @350 in Jan 2023, 5 VOO @380 in Jun 2023."""
    import_batch(db_session, brokerage_account.id, alice.id, [
        _trade("2023-01-03", "Buy", "10", "-3500.00"),
        _trade("2023-06-01", "Buy", "5", "-1900.00"),
    ])
    return brokerage_account


class TestRealizedGainSlice:

    def test_slice_collects_window_disposals_and_history(self, db_session, alice, two_lots):
        import_batch(db_session, two_lots.id, alice.id, [
            _trade("2023-12-01", "Sell", "2", "800.00"),
            _trade("2024-03-01", "Sell", "12", "5400.00"),
        ])

        gain_slice = realized_gain_slice(db_session, alice.id, two_lots.id, date(2024, 1, 1), date(2024, 12, 31))

        assert [d.trans_date for d in gain_slice.disposals] == [date(2024, 3, 1)]
        assert len(gain_slice.acquisitions) == 2
        assert [d.trans_date for d in gain_slice.prior_disposals] == [date(2023, 12, 1)]
        assert gain_slice.is_taxable
        assert gain_slice.account_type == "Brokerage"

    def test_buys_without_sales_produce_empty_slice(self, db_session, alice, two_lots):
        gain_slice = realized_gain_slice(db_session, alice.id, two_lots.id, date(2023, 1, 1), date(2023, 12, 31))
        assert gain_slice.disposals == []
        assert gain_slice.acquisitions == []

    def test_requires_read(self, db_session, bob, two_lots):
        with pytest.raises(PermissionDenied):
            realized_gain_slice(db_session, bob.id, two_lots.id, date(2024, 1, 1), date(2024, 12, 31))


class TestFifoMatching:

    def test_oldest_lot_consumed_first(self, db_session, alice, two_lots):
        import_batch(db_session, two_lots.id, alice.id, [_trade("2024-03-01", "Sell", "12", "5400.00")])

        result = match_fifo(realized_gain_slice(db_session, alice.id, two_lots.id,
                                                date(2024, 1, 1), date(2024, 12, 31)))

        assert [(m.acquired, m.qty) for m in result.matches] == [
            (date(2023, 1, 3), Decimal("10")),
            (date(2023, 6, 1), Decimal("2")),
        ]
        assert result.long_term_gain == Decimal("1000.00")
        assert result.short_term_gain == Decimal("140.00")
        assert result.realized_gain == Decimal("1140.00")
        assert result.unmatched_qty == {}
        assert result.reportable

    def test_prior_disposals_use_up_lots(self, db_session, alice, two_lots):
        import_batch(db_session, two_lots.id, alice.id, [
            _trade("2023-12-01", "Sell", "2", "800.00"),
            _trade("2024-03-01", "Sell", "12", "5400.00"),
        ])

        result = match_fifo(realized_gain_slice(db_session, alice.id, two_lots.id,
                                                date(2024, 1, 1), date(2024, 12, 31)))

        assert [m.qty for m in result.matches] == [Decimal("8"), Decimal("4")]
        assert result.realized_gain == Decimal("1080.00")

    def test_overselling_is_reported_not_invented(self, db_session, alice, two_lots):
        import_batch(db_session, two_lots.id, alice.id, [_trade("2024-03-01", "Sell", "20", "9000.00")])

        result = match_fifo(realized_gain_slice(db_session, alice.id, two_lots.id,
                                                date(2024, 1, 1), date(2024, 12, 31)))

        assert sum(m.qty for m in result.matches) == Decimal("15")
        assert list(result.unmatched_qty.values()) == [Decimal("5")]

    def test_tax_deferred_account_not_reportable(self, db_session, alice, voo):
        ira = create_account(db_session, alice.id, "IRA", "IRA")
        import_batch(db_session, ira.id, alice.id, [
            _trade("2023-01-03", "Buy", "1", "-350.00"),
            _trade("2024-03-01", "Sell", "1", "450.00"),
        ])

        result = match_fifo(realized_gain_slice(db_session, alice.id, ira.id, date(2024, 1, 1), date(2024, 12, 31)))

        assert result.realized_gain == Decimal("100.00")
        assert not result.reportable

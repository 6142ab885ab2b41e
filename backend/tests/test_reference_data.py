"""
External reference data store tests.
"""

import pytest
from datetime import date
from decimal import Decimal

import models
from sqlalchemy.orm import sessionmaker
from reference_data_service import (
    store_price_points, store_cpi_points, store_stock_profile, store_reporting_period,
    store_financial_statement, get_price_history, get_statements
)
from ledger_errors import ValidationError, NotFound


class TestPrices:

    def test_upsert_by_asset_and_date(self, db_session, voo):
        first = store_price_points(db_session, voo.id, [
            {"date": "2024-01-02", "open": "470.1", "close": "472.65", "volume": 4000000},
            {"date": date(2024, 1, 3), "close": "468.79"},
        ])
        second = store_price_points(db_session, voo.id, [{"date": "2024-01-03", "close": "469.00"}])

        assert first == {"inserted": 2, "updated": 0}
        assert second == {"inserted": 0, "updated": 1}

        history = get_price_history(db_session, voo.id)
        assert [p.close for p in history] == [Decimal("472.65"), Decimal("469.00")]
        assert history[0].volume == 4000000

    def test_history_window(self, db_session, voo):
        store_price_points(db_session, voo.id, [
            {"date": "2024-01-02", "close": "1"}, {"date": "2024-01-03", "close": "2"},
            {"date": "2024-01-04", "close": "3"},
        ])
        window = get_price_history(db_session, voo.id, start=date(2024, 1, 3), end=date(2024, 1, 3))
        assert [p.date for p in window] == [date(2024, 1, 3)]

    def test_unknown_asset(self, db_session):
        with pytest.raises(NotFound):
            store_price_points(db_session, 9999, [{"date": "2024-01-02", "close": "1"}])

    def test_repeated_date_in_one_batch(self, engine, db_session, voo):
        """Sessions without autoflush must not insert the same date twice."""
        session = sessionmaker(bind=engine, autoflush=False)()
        try:
            result = store_price_points(session, voo.id, [
                {"date": "2024-01-02", "close": "1", "volume": 100},
                {"date": date(2024, 1, 2), "close": "2"},
            ])
        finally:
            session.close()

        assert result == {"inserted": 1, "updated": 0}
        history = get_price_history(db_session, voo.id)
        assert [(p.close, p.volume) for p in history] == [(Decimal("2"), 100)]

    @pytest.mark.parametrize("point", [
        {"close": "1"},
        {"date": "2024-01-02"},
        {"date": "02/01/2024", "close": "1"},
        {"date": "2024-01-02", "close": "n/a"},
    ])
    def test_incomplete_point_rejected(self, db_session, voo, point):
        with pytest.raises(ValidationError):
            store_price_points(db_session, voo.id, [{"date": "2024-01-01", "close": "1"}, point])

        assert get_price_history(db_session, voo.id) == []
        assert store_price_points(db_session, voo.id, [{"date": "2024-01-05", "close": "3"}]) == \
            {"inserted": 1, "updated": 0}


class TestInflation:

    def test_cpi_upsert(self, db_session, cpi_points):
        result = store_cpi_points(db_session, "CUUR0000SA0", [{"year": 2024, "month": 1, "value": "308.5"}])
        assert result == {"inserted": 0, "updated": 1}
        assert db_session.query(models.InflationIndex).count() == 3

    def test_invalid_month(self, db_session):
        with pytest.raises(ValidationError):
            store_cpi_points(db_session, "CUUR0000SA0", [{"year": 2024, "month": 13, "value": "1"}])

    def test_repeated_period_keeps_last_value(self, engine):
        session = sessionmaker(bind=engine, autoflush=False)()
        try:
            result = store_cpi_points(session, "CUUR0000SA0", [
                {"year": 2023, "month": 6, "value": "303.8"},
                {"year": 2023, "month": 6, "value": "303.841"},
            ])
            rows = session.query(models.InflationIndex).filter_by(year=2023, month=6).all()
            assert result == {"inserted": 1, "updated": 0}
            assert [r.value for r in rows] == [Decimal("303.841")]
        finally:
            session.close()

    def test_missing_value(self, db_session):
        with pytest.raises(ValidationError):
            store_cpi_points(db_session, "CUUR0000SA0", [{"year": 2024, "month": 3}])


class TestFundamentals:

    def test_profile_replaced(self, db_session, voo):
        store_stock_profile(db_session, voo.id, {"name": "Vanguard S&P 500"})
        store_stock_profile(db_session, voo.id, {"name": "Vanguard S&P 500 ETF", "exchange": "NYSE Arca"})

        profiles = db_session.query(models.StockProfile).filter_by(asset_id=voo.id).all()
        assert len(profiles) == 1
        assert profiles[0].profile["exchange"] == "NYSE Arca"

    def test_statements_stored_per_period_and_type(self, db_session, voo):
        period = store_reporting_period(db_session, voo.id, date(2023, 12, 31), date(2024, 2, 20), 2023, "fy")
        store_financial_statement(db_session, period.id, "income_statement", {"revenue": 100})
        store_financial_statement(db_session, period.id, "income_statement", {"revenue": 120})
        store_financial_statement(db_session, period.id, "balance_sheet", {"assets": 900})

        statements = get_statements(db_session, voo.id, fiscal_year=2023)
        assert len(statements) == 2
        income = [s for s in statements if s.statement_type == "income_statement"][0]
        assert income.payload == {"revenue": 120}
        assert period.period == "FY"

    def test_invalid_period(self, db_session, voo):
        with pytest.raises(ValidationError):
            store_reporting_period(db_session, voo.id, date(2023, 12, 31), date(2024, 2, 20), 2023, "H1")

    def test_invalid_statement_type(self, db_session, voo):
        period = store_reporting_period(db_session, voo.id, date(2023, 12, 31), date(2024, 2, 20), 2023, "FY")
        with pytest.raises(ValidationError):
            store_financial_statement(db_session, period.id, "vibes", {})

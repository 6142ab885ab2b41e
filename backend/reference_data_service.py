"""
External Reference Data Store

Prices, CPI points, company profiles, reporting periods and financial
statements arrive from external providers. The ledger stores them as
delivered (idempotent upserts on natural keys) and reads them back. Beyond
the key and value fields a row needs, it never validates or interprets their
content.
"""

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional, Iterable, Mapping, Callable, Tuple
import logging

import models
from models import StatementType
from ledger_errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

PRICE_FIELDS = ["open", "high", "low", "close", "volume", "change", "change_percent", "vwap"]
PERIODS = ("FY", "Q1", "Q2", "Q3", "Q4")


def _require_asset(db: Session, asset_id: int) -> models.Asset:
    asset = db.query(models.Asset).filter(models.Asset.id == asset_id).first()
    if not asset:
        raise NotFound(f"Asset {asset_id} not found")
    return asset


def _as_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Malformed date: {value!r}", field="date")


def _as_decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, TypeError):
        raise ValidationError(f"Malformed {name}: {value!r}", field=name)


def _commit_upsert(db: Session, write: Callable[[], Dict[str, int]]) -> Dict[str, int]:
    """Run an upsert and commit it; if a concurrent writer inserted a key first, redo it once as updates."""
    try:
        counts = write()
        db.commit()
        return counts
    except IntegrityError:
        db.rollback()

    try:
        counts = write()
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    return counts


def store_price_points(db: Session, asset_id: int, points: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    """
    Upsert end-of-day prices for one asset.

    A date repeated within the batch is stored once; its later points win.

    Args:
        points: Mappings with 'date' and 'close' plus optional open/high/low/volume/...

    Returns:
        {"inserted": n, "updated": m} counted per distinct date

    Raises:
        ValidationError: a point without a usable date or close
    """
    _require_asset(db, asset_id)

    by_date: Dict[date, Dict[str, Any]] = {}
    for point in points:
        if point.get("date") is None:
            raise ValidationError("Price point has no date", field="date")
        if point.get("close") is None:
            raise ValidationError(f"Price point for {point['date']} has no close", field="close")
        values = by_date.setdefault(_as_date(point["date"]), {})
        for name in PRICE_FIELDS:
            if point.get(name) is not None:
                value = _as_decimal(point[name], name)
                values[name] = int(value) if name == "volume" else value

    def write() -> Dict[str, int]:
        inserted = updated = 0
        for price_date, values in by_date.items():
            row = db.query(models.EodPrice).filter(
                models.EodPrice.asset_id == asset_id,
                models.EodPrice.date == price_date
            ).first()
            if row is None:
                row = models.EodPrice(asset_id=asset_id, date=price_date)
                db.add(row)
                inserted += 1
            else:
                updated += 1
            for name, value in values.items():
                setattr(row, name, value)
        return {"inserted": inserted, "updated": updated}

    counts = _commit_upsert(db, write)
    logger.info(f"Stored prices for asset {asset_id}: inserted={counts['inserted']}, updated={counts['updated']}")
    return counts


def store_cpi_points(db: Session, series_id: str, points: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    """Upsert CPI index values keyed on (series, year, month); a repeated period keeps its last value."""
    by_period: Dict[Tuple[int, int], Decimal] = {}
    for point in points:
        try:
            year, month = int(point["year"]), int(point["month"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError(f"CPI point needs integer year and month: {dict(point)!r}", field="month")
        if not 1 <= month <= 12:
            raise ValidationError(f"Invalid CPI month {month}", field="month")
        if point.get("value") is None:
            raise ValidationError(f"CPI point {year}-{month:02d} has no value", field="value")
        by_period[(year, month)] = _as_decimal(point["value"], "value")

    def write() -> Dict[str, int]:
        inserted = updated = 0
        for (year, month), value in by_period.items():
            row = db.query(models.InflationIndex).filter(
                models.InflationIndex.series_id == series_id,
                models.InflationIndex.year == year,
                models.InflationIndex.month == month
            ).first()
            if row is None:
                row = models.InflationIndex(series_id=series_id, year=year, month=month)
                db.add(row)
                inserted += 1
            else:
                updated += 1
            row.value = value
        return {"inserted": inserted, "updated": updated}

    counts = _commit_upsert(db, write)
    logger.info(f"Stored CPI points for {series_id}: inserted={counts['inserted']}, updated={counts['updated']}")
    return counts


def store_stock_profile(db: Session, asset_id: int, profile: Dict[str, Any]) -> models.StockProfile:
    _require_asset(db, asset_id)
    row = db.query(models.StockProfile).filter(models.StockProfile.asset_id == asset_id).first()
    if row is None:
        row = models.StockProfile(asset_id=asset_id, profile=profile)
        db.add(row)
    else:
        row.profile = profile
    db.commit()
    return row


def store_reporting_period(
    db: Session,
    asset_id: int,
    end_date: date,
    filing_date: date,
    fiscal_year: int,
    period: str
) -> models.ReportingPeriod:
    """Upsert a reporting period keyed on (asset, filing_date)."""
    _require_asset(db, asset_id)
    period = period.upper()
    if period not in PERIODS:
        raise ValidationError(f"Invalid period {period}", field="period")

    row = db.query(models.ReportingPeriod).filter(
        models.ReportingPeriod.asset_id == asset_id,
        models.ReportingPeriod.filing_date == filing_date
    ).first()
    if row is None:
        row = models.ReportingPeriod(asset_id=asset_id, filing_date=filing_date)
        db.add(row)
    row.end_date = end_date
    row.fiscal_year = fiscal_year
    row.period = period
    db.commit()
    return row


def store_financial_statement(
    db: Session,
    reporting_period_id: int,
    statement_type: str,
    payload: Dict[str, Any],
    reported_currency: Optional[str] = None,
    filing_date: Optional[date] = None
) -> models.FinancialStatement:
    """Upsert one statement of a reporting period. One row per statement type."""
    try:
        statement_type = StatementType(statement_type).value
    except ValueError:
        raise ValidationError(f"Invalid statement type {statement_type}", field="statement_type")

    if not db.query(models.ReportingPeriod).filter(models.ReportingPeriod.id == reporting_period_id).first():
        raise NotFound(f"Reporting period {reporting_period_id} not found")

    row = db.query(models.FinancialStatement).filter(
        models.FinancialStatement.reporting_period_id == reporting_period_id,
        models.FinancialStatement.statement_type == statement_type
    ).first()
    if row is None:
        row = models.FinancialStatement(reporting_period_id=reporting_period_id, statement_type=statement_type)
        db.add(row)
    row.payload = payload
    row.reported_currency = reported_currency
    row.filing_date = filing_date
    db.commit()
    return row


def get_price_history(db: Session, asset_id: int, start: Optional[date] = None,
                      end: Optional[date] = None) -> List[models.EodPrice]:
    query = db.query(models.EodPrice).filter(models.EodPrice.asset_id == asset_id)
    if start:
        query = query.filter(models.EodPrice.date >= start)
    if end:
        query = query.filter(models.EodPrice.date <= end)
    return query.order_by(models.EodPrice.date).all()


def get_statements(db: Session, asset_id: int, fiscal_year: Optional[int] = None) -> List[models.FinancialStatement]:
    query = db.query(models.FinancialStatement).join(
        models.ReportingPeriod, models.ReportingPeriod.id == models.FinancialStatement.reporting_period_id
    ).filter(models.ReportingPeriod.asset_id == asset_id)
    if fiscal_year is not None:
        query = query.filter(models.ReportingPeriod.fiscal_year == fiscal_year)
    return query.order_by(models.ReportingPeriod.filing_date, models.FinancialStatement.statement_type).all()

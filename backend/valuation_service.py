"""
NAV Valuation Engine

Point-in-time Net Asset Value across every account a user can read:
- Cash is the sum of signed amounts up to the as-of date
- Holdings are the sum of position_effect * |qty| per non-cash asset
- Holdings are priced with the latest close on or before the as-of date
- Totals are grouped by asset category and optionally deflated with CPI

Degraded outcomes are warnings on the result, never exceptions and never
fabricated numbers: a stale price is used but flagged, a missing price leaves
the position unvalued (snapshot incomplete), a missing CPI point leaves the
snapshot nominal-only.
"""

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import IntegrityError
from abc import ABC, abstractmethod
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple
import logging

import models
from access_service import require, accessible_account_ids, Capability
from catalog_service import get_catalog
from config import get_config
from ledger_errors import NotFound

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
LIABILITY_LABEL = "Liabilities"

# Reference lookups run here so a slow provider cannot hang a valuation
executor = ThreadPoolExecutor(max_workers=4)


# ═══════════════════════════════════════════════════════════════════════════════
# REFERENCE FEEDS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class PricePoint:
    asset_id: int
    price_date: date
    close: Decimal


class MarketDataFeed(ABC):
    """Most-recent-at-or-before price lookups."""

    @abstractmethod
    def latest_close(self, asset_id: int, as_of: date) -> Optional[PricePoint]:
        pass


class InflationFeed(ABC):
    """CPI index lookups by series and period."""

    @abstractmethod
    def index_value(self, series_id: str, year: int, month: int) -> Optional[Decimal]:
        pass


class StoredMarketData(MarketDataFeed):
    """Prices from the eod_prices table, each lookup in its own session."""

    def __init__(self, bind):
        self._session_factory = sessionmaker(bind=bind)

    def latest_close(self, asset_id: int, as_of: date) -> Optional[PricePoint]:
        session = self._session_factory()
        try:
            row = session.query(models.EodPrice).filter(
                models.EodPrice.asset_id == asset_id,
                models.EodPrice.date <= as_of
            ).order_by(models.EodPrice.date.desc()).first()
            if row is None:
                return None
            return PricePoint(asset_id=asset_id, price_date=row.date, close=Decimal(str(row.close)))
        finally:
            session.close()


class StoredInflationIndex(InflationFeed):
    """CPI points from the inflation_index table."""

    def __init__(self, bind):
        self._session_factory = sessionmaker(bind=bind)

    def index_value(self, series_id: str, year: int, month: int) -> Optional[Decimal]:
        session = self._session_factory()
        try:
            row = session.query(models.InflationIndex).filter(
                models.InflationIndex.series_id == series_id,
                models.InflationIndex.year == year,
                models.InflationIndex.month == month
            ).first()
            return Decimal(str(row.value)) if row else None
        finally:
            session.close()


class ReferenceTimeout(Exception):
    pass


def _bounded_lookup(fn, *args, timeout: float):
    future = executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeout:
        future.cancel()
        raise ReferenceTimeout(f"{getattr(fn, '__qualname__', fn)} exceeded {timeout}s")


# ═══════════════════════════════════════════════════════════════════════════════
# RESULT TYPES
# ═══════════════════════════════════════════════════════════════════════════════

class WarningKind:
    STALE_PRICE = "stale_price"
    MISSING_PRICE = "missing_price"
    EXPIRED_ASSET = "expired_asset"
    NOMINAL_ONLY = "nominal_only"
    REFERENCE_TIMEOUT = "reference_timeout"


@dataclass
class ValuationWarning:
    kind: str
    message: str
    account_id: Optional[int] = None
    asset_id: Optional[int] = None
    symbol: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "account_id": self.account_id,
            "asset_id": self.asset_id,
            "symbol": self.symbol,
        }


@dataclass
class PositionValue:
    account_id: int
    asset_id: int
    symbol: str
    asset_category_id: int
    qty: Decimal
    price: Optional[Decimal]
    price_date: Optional[date]
    value: Optional[Decimal]  # None when unpriced


@dataclass
class CategoryLine:
    asset_category_id: int
    label: str
    nominal: Decimal
    real: Optional[Decimal] = None
    is_liability: bool = False


@dataclass
class NavReport:
    user_id: int
    as_of: date
    account_ids: List[int]
    total_nominal: Decimal
    total_real: Optional[Decimal]
    is_nominal_only: bool
    is_complete: bool
    lines: List[CategoryLine] = field(default_factory=list)
    positions: List[PositionValue] = field(default_factory=list)
    warnings: List[ValuationWarning] = field(default_factory=list)
    cpi_series: Optional[str] = None
    cpi_base_value: Optional[Decimal] = None
    cpi_as_of_value: Optional[Decimal] = None
    snapshot_id: Optional[int] = None

    def warnings_of(self, kind: str) -> List[ValuationWarning]:
        return [w for w in self.warnings if w.kind == kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "user_id": self.user_id,
            "as_of": self.as_of.isoformat(),
            "account_ids": self.account_ids,
            "total_nominal": str(self.total_nominal),
            "total_real": str(self.total_real) if self.total_real is not None else None,
            "is_nominal_only": self.is_nominal_only,
            "is_complete": self.is_complete,
            "cpi": {
                "series": self.cpi_series,
                "base_value": str(self.cpi_base_value) if self.cpi_base_value is not None else None,
                "as_of_value": str(self.cpi_as_of_value) if self.cpi_as_of_value is not None else None,
            },
            "lines": [
                {"asset_category_id": l.asset_category_id, "label": l.label, "is_liability": l.is_liability,
                 "nominal": str(l.nominal),
                 "real": str(l.real) if l.real is not None else None}
                for l in self.lines
            ],
            "positions": [
                {"account_id": p.account_id, "asset_id": p.asset_id, "symbol": p.symbol,
                 "qty": str(p.qty), "price": str(p.price) if p.price is not None else None,
                 "price_date": p.price_date.isoformat() if p.price_date else None,
                 "value": str(p.value) if p.value is not None else None}
                for p in self.positions
            ],
            "warnings": [w.to_dict() for w in self.warnings],
        }


# ═══════════════════════════════════════════════════════════════════════════════
# POSITIONS
# ═══════════════════════════════════════════════════════════════════════════════

def account_positions(db: Session, account_id: int, as_of: date) -> Tuple[Decimal, Dict[int, Decimal]]:
    """
    Cash balance and non-cash holdings of one account as of a date.

    Returns:
        (cash, {asset_id: qty}) with zero holdings dropped
    """
    catalog = get_catalog(db)
    rows = db.query(models.AccountTransaction, models.Asset).join(
        models.Asset, models.Asset.id == models.AccountTransaction.asset_id
    ).filter(
        models.AccountTransaction.account_id == account_id,
        models.AccountTransaction.trans_date <= as_of
    ).all()

    cash = Decimal("0.00")
    holdings: Dict[int, Decimal] = defaultdict(Decimal)

    for txn, asset in rows:
        cash += Decimal(str(txn.amount or 0))
        category = catalog.transaction_categories[txn.transaction_category_id]
        if category.position_effect == 0 or txn.qty is None:
            continue
        if catalog.asset_categories[asset.asset_category_id].is_cash:
            continue
        holdings[asset.id] += category.position_effect * abs(Decimal(str(txn.qty)))

    return cash.quantize(CENT), {asset_id: qty for asset_id, qty in holdings.items() if qty != 0}


# ═══════════════════════════════════════════════════════════════════════════════
# NAV
# ═══════════════════════════════════════════════════════════════════════════════

def compute_nav(
    db: Session,
    user_id: int,
    as_of: date,
    account_ids: Optional[List[int]] = None,
    market_data: Optional[MarketDataFeed] = None,
    inflation: Optional[InflationFeed] = None,
    persist: bool = True,
    timeout: Optional[float] = None
) -> NavReport:
    """
    Value every account the user can read and store the snapshot.

    Args:
        account_ids: Restrict to these accounts (each must be readable)
        market_data / inflation: Feeds; default to the stored reference tables
        persist: Replace the (user, as_of) snapshot with this result
        timeout: Seconds allowed per price or CPI lookup (LEDGER_REFERENCE_TIMEOUT_SECONDS when None)

    Returns:
        NavReport with category lines, positions and warnings
    """
    config = get_config()
    catalog = get_catalog(db)

    if account_ids is None:
        account_ids = accessible_account_ids(db, user_id, Capability.READ)
    else:
        for account_id in account_ids:
            require(db, account_id, user_id, Capability.READ)
        account_ids = sorted(set(account_ids))

    market_data = market_data or StoredMarketData(db.get_bind())
    inflation = inflation or StoredInflationIndex(db.get_bind())
    if timeout is None:
        timeout = config.reference_timeout_seconds

    warnings: List[ValuationWarning] = []
    positions: List[PositionValue] = []
    # (asset_category_id, is_liability) -> value
    by_category: Dict[Tuple[int, bool], Decimal] = defaultdict(Decimal)
    is_complete = True
    price_cache: Dict[int, Optional[PricePoint]] = {}
    timed_out: set = set()

    cash_category_id = None
    for entry in catalog.asset_categories.values():
        if entry.is_cash:
            cash_category_id = entry.id
            break

    liability_accounts = {
        account.id
        for account in db.query(models.Account).filter(models.Account.id.in_(account_ids)).all()
        if catalog.account_types[account.account_type_id].is_liability
    }

    for account_id in account_ids:
        cash, holdings = account_positions(db, account_id, as_of)
        by_category[(cash_category_id, account_id in liability_accounts)] += cash

        for asset_id, qty in sorted(holdings.items()):
            asset = db.query(models.Asset).filter(models.Asset.id == asset_id).first()
            position = PositionValue(account_id, asset_id, asset.symbol, asset.asset_category_id,
                                     qty, None, None, None)
            positions.append(position)
            # Make sure the category shows up even if nothing in it can be valued
            by_category[(asset.asset_category_id, False)] += Decimal("0")

            if asset.exp_date is not None and asset.exp_date < as_of:
                position.value = Decimal("0.00")
                warnings.append(ValuationWarning(
                    WarningKind.EXPIRED_ASSET,
                    f"{asset.symbol} expired on {asset.exp_date.isoformat()}; valued at 0",
                    account_id, asset_id, asset.symbol))
                continue

            if asset_id not in price_cache and asset_id not in timed_out:
                try:
                    price_cache[asset_id] = _bounded_lookup(market_data.latest_close, asset_id, as_of,
                                                            timeout=timeout)
                except ReferenceTimeout as e:
                    logger.warning(f"Price lookup for {asset.symbol} timed out: {e}")
                    timed_out.add(asset_id)
                    warnings.append(ValuationWarning(
                        WarningKind.REFERENCE_TIMEOUT, f"Price lookup for {asset.symbol} timed out",
                        account_id, asset_id, asset.symbol))

            point = price_cache.get(asset_id)
            if point is None:
                is_complete = False
                warnings.append(ValuationWarning(
                    WarningKind.MISSING_PRICE,
                    f"No price for {asset.symbol} on or before {as_of.isoformat()}; position unvalued",
                    account_id, asset_id, asset.symbol))
                continue

            age_days = (as_of - point.price_date).days
            if age_days > config.price_staleness_days:
                logger.warning(f"Stale price for {asset.symbol}: {age_days} days old at {as_of}")
                warnings.append(ValuationWarning(
                    WarningKind.STALE_PRICE,
                    f"Price for {asset.symbol} is from {point.price_date.isoformat()} ({age_days} days old)",
                    account_id, asset_id, asset.symbol))

            position.price = point.close
            position.price_date = point.price_date
            position.value = (qty * point.close).quantize(CENT)
            by_category[(asset.asset_category_id, False)] += position.value

    total_nominal = sum(by_category.values(), Decimal("0")).quantize(CENT)
    lines = [
        CategoryLine(category_id,
                     LIABILITY_LABEL if is_liability else catalog.asset_categories[category_id].label,
                     value.quantize(CENT), is_liability=is_liability)
        for (category_id, is_liability), value in sorted(by_category.items())
    ]

    # Inflation adjustment
    series = config.cpi_series
    base_year, base_month = config.cpi_base
    base_value = asof_value = None
    try:
        base_value = _bounded_lookup(inflation.index_value, series, base_year, base_month, timeout=timeout)
        asof_value = _bounded_lookup(inflation.index_value, series, as_of.year, as_of.month, timeout=timeout)
    except ReferenceTimeout as e:
        logger.warning(f"CPI lookup timed out: {e}")
        warnings.append(ValuationWarning(WarningKind.REFERENCE_TIMEOUT, "CPI lookup timed out"))

    total_real = None
    is_nominal_only = True
    if base_value is not None and asof_value is not None and asof_value > 0:
        ratio = base_value / asof_value
        total_real = (total_nominal * ratio).quantize(CENT)
        for line in lines:
            line.real = (line.nominal * ratio).quantize(CENT)
        is_nominal_only = False
    else:
        missing = []
        if base_value is None:
            missing.append(f"{base_year}-{base_month:02d}")
        if asof_value is None:
            missing.append(f"{as_of.year}-{as_of.month:02d}")
        logger.warning(f"CPI series {series} missing {missing}; snapshot is nominal-only")
        warnings.append(ValuationWarning(
            WarningKind.NOMINAL_ONLY,
            f"CPI series {series} has no value for {', '.join(missing) or 'the requested periods'}; "
            f"real values not computed"))

    report = NavReport(
        user_id=user_id,
        as_of=as_of,
        account_ids=list(account_ids),
        total_nominal=total_nominal,
        total_real=total_real,
        is_nominal_only=is_nominal_only,
        is_complete=is_complete,
        lines=lines,
        positions=positions,
        warnings=warnings,
        cpi_series=series,
        cpi_base_value=base_value,
        cpi_as_of_value=asof_value,
    )

    if persist:
        report.snapshot_id = store_snapshot(db, report)
    return report


def store_snapshot(db: Session, report: NavReport) -> int:
    """Insert or replace the (user, as_of) snapshot and its category lines."""
    for attempt in range(2):
        snapshot = db.query(models.NavSnapshot).filter(
            models.NavSnapshot.user_id == report.user_id,
            models.NavSnapshot.as_of == report.as_of
        ).first()
        action = "Recompute" if snapshot else "Create"
        if snapshot is None:
            snapshot = models.NavSnapshot(user_id=report.user_id, as_of=report.as_of)
            db.add(snapshot)
        else:
            snapshot.lines.clear()
            db.flush()

        snapshot.total_nominal = report.total_nominal
        snapshot.total_real = report.total_real
        snapshot.is_nominal_only = report.is_nominal_only
        snapshot.is_complete = report.is_complete
        snapshot.cpi_series = report.cpi_series
        snapshot.cpi_base_value = report.cpi_base_value
        snapshot.cpi_as_of_value = report.cpi_as_of_value
        snapshot.warnings = [w.to_dict() for w in report.warnings]
        snapshot.computed_at = models.utcnow()
        for line in report.lines:
            snapshot.lines.append(models.NavSnapshotLine(
                asset_category_id=line.asset_category_id,
                category_label=line.label,
                is_liability=line.is_liability,
                nominal_value=line.nominal,
                real_value=line.real,
            ))

        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            if attempt == 0:
                # Another computation stored the same (user, date) first; replace it
                continue
            raise

        logger.info(f"{action} NAV snapshot {snapshot.id} for user {report.user_id} at {report.as_of}: "
                    f"{report.total_nominal}")
        from audit_service import log_snapshot_action
        log_snapshot_action(db, report.user_id, action, snapshot.id,
                            changes={"as_of": report.as_of.isoformat(),
                                     "total_nominal": str(report.total_nominal)})
        return snapshot.id


def get_snapshot(db: Session, user_id: int, as_of: date) -> models.NavSnapshot:
    snapshot = db.query(models.NavSnapshot).filter(
        models.NavSnapshot.user_id == user_id,
        models.NavSnapshot.as_of == as_of
    ).first()
    if not snapshot:
        raise NotFound(f"No NAV snapshot for user {user_id} at {as_of}")
    return snapshot


def list_snapshots(db: Session, user_id: int) -> List[models.NavSnapshot]:
    return db.query(models.NavSnapshot).filter(
        models.NavSnapshot.user_id == user_id
    ).order_by(models.NavSnapshot.as_of).all()


# ═══════════════════════════════════════════════════════════════════════════════
# REALIZED GAINS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class LotEvent:
    transaction_id: int
    asset_id: int
    symbol: str
    trans_date: date
    qty: Decimal  # Always positive
    amount: Decimal
    cost: Optional[Decimal]
    price: Optional[Decimal]
    tax_category: Optional[str]


@dataclass
class RealizedGainSlice:
    """Inputs for realized-gain computation on one account and window."""
    account_id: int
    account_type: str
    is_taxable: bool
    is_tax_deferred: bool
    start: date
    end: date
    disposals: List[LotEvent] = field(default_factory=list)        # Capital-gain disposals in window
    acquisitions: List[LotEvent] = field(default_factory=list)     # Same assets, dated <= end
    prior_disposals: List[LotEvent] = field(default_factory=list)  # Same assets, dated < start


def realized_gain_slice(db: Session, user_id: int, account_id: int, start: date, end: date) -> RealizedGainSlice:
    """
    Disposals tagged with a capital-gain tax category inside [start, end],
    plus every earlier acquisition and disposal of the same assets so lots
    can be matched. Requires READ.
    """
    require(db, account_id, user_id, Capability.READ)
    catalog = get_catalog(db)

    account = db.query(models.Account).filter(models.Account.id == account_id).first()
    if not account:
        raise NotFound(f"Account {account_id} not found")
    account_type = catalog.account_types[account.account_type_id]

    rows = db.query(models.AccountTransaction, models.Asset).join(
        models.Asset, models.Asset.id == models.AccountTransaction.asset_id
    ).filter(
        models.AccountTransaction.account_id == account_id,
        models.AccountTransaction.trans_date <= end
    ).order_by(models.AccountTransaction.trans_date, models.AccountTransaction.id).all()

    def event(txn, asset) -> LotEvent:
        category = catalog.transaction_categories[txn.transaction_category_id]
        tax = catalog.tax_categories.get(category.tax_category_id) if category.tax_category_id else None
        return LotEvent(
            transaction_id=txn.id,
            asset_id=asset.id,
            symbol=asset.symbol,
            trans_date=txn.trans_date,
            qty=abs(Decimal(str(txn.qty or 0))),
            amount=Decimal(str(txn.amount or 0)),
            cost=Decimal(str(txn.cost)) if txn.cost is not None else None,
            price=Decimal(str(txn.price)) if txn.price is not None else None,
            tax_category=tax.name if tax else None,
        )

    result = RealizedGainSlice(
        account_id=account_id,
        account_type=account_type.name,
        is_taxable=account_type.is_taxable,
        is_tax_deferred=account_type.is_tax_deferred,
        start=start,
        end=end,
    )

    disposed_assets = set()
    for txn, asset in rows:
        category = catalog.transaction_categories[txn.transaction_category_id]
        if (category.position_effect < 0 and start <= txn.trans_date <= end
                and catalog.is_capital_gain(category.id)):
            result.disposals.append(event(txn, asset))
            disposed_assets.add(asset.id)

    for txn, asset in rows:
        if asset.id not in disposed_assets:
            continue
        category = catalog.transaction_categories[txn.transaction_category_id]
        if category.position_effect > 0:
            result.acquisitions.append(event(txn, asset))
        elif category.position_effect < 0 and txn.trans_date < start:
            result.prior_disposals.append(event(txn, asset))

    return result

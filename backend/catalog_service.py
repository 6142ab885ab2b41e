"""
Reference Catalog Service

Account types, asset categories, tax categories and transaction categories are
small, rarely-modified lookup tables. They are seeded idempotently and then
loaded once into an immutable, versioned snapshot that the ledger services
resolve against.
"""

from sqlalchemy.orm import Session
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Optional, Dict, Tuple, Mapping
import hashlib
import json
import logging
import re
import weakref

import models
from ledger_errors import ValidationError, NotFound, ReferenceInUse

logger = logging.getLogger(__name__)

CASH_SYMBOL = "USD"
OPENING_BALANCE_CATEGORY = ("System", "Opening Balance")

# ═══════════════════════════════════════════════════════════════════════════════
# DEFAULT CATALOG CONTENT
# ═══════════════════════════════════════════════════════════════════════════════

DEFAULT_ACCOUNT_TYPES = [
    # name, is_taxable, is_tax_deferred, is_liability
    ("Checking", True, False, False),
    ("Savings", True, False, False),
    ("Brokerage", True, False, False),
    ("IRA", False, True, False),
    ("Roth IRA", False, True, False),
    ("401k", False, True, False),
    ("HSA", False, True, False),
    ("Credit Card", False, False, True),
    ("Mortgage", False, False, True),
    ("Property", False, False, False),
]

DEFAULT_ASSET_CATEGORIES = [
    # cat, sub_cat, is_cash
    ("Cash", "Currency", True),
    ("Equity", "Stock", False),
    ("Equity", "ETF", False),
    ("Equity", "Mutual Fund", False),
    ("Fixed Income", "Bond", False),
    ("Fixed Income", "CD", False),
    ("Alternative", "Real Estate", False),
    ("Alternative", "Commodity", False),
    ("Alternative", "Crypto", False),
    ("Derivative", "Option", False),
]

DEFAULT_TAX_CATEGORIES = [
    # name, is_capital_gain, description
    ("Ordinary Income", False, "Wages, interest, non-qualified dividends"),
    ("Qualified Dividend", False, "Dividends taxed at capital-gain rates"),
    ("Capital Gain", True, "Gain or loss realized on disposal"),
    ("Deductible Expense", False, "Itemizable expense"),
    ("Non-Taxable", False, "Transfers and other non-events"),
]

DEFAULT_TRANSACTION_CATEGORIES = [
    # cat, sub_cat, is_debit, position_effect, tax_category, is_reconcile
    ("Income", "Salary", False, 0, "Ordinary Income", False),
    ("Income", "Interest", False, 0, "Ordinary Income", False),
    ("Income", "Dividend", False, 0, "Qualified Dividend", False),
    ("Income", "Other", False, 0, "Ordinary Income", False),
    ("Expense", "Groceries", True, 0, None, False),
    ("Expense", "Housing", True, 0, None, False),
    ("Expense", "Utilities", True, 0, None, False),
    ("Expense", "Transportation", True, 0, None, False),
    ("Expense", "Healthcare", True, 0, "Deductible Expense", False),
    ("Expense", "Charity", True, 0, "Deductible Expense", False),
    ("Expense", "Fees", True, 0, None, False),
    ("Expense", "Other", True, 0, None, False),
    ("Transfer", "In", False, 0, "Non-Taxable", False),
    ("Transfer", "Out", True, 0, "Non-Taxable", False),
    ("Trade", "Buy", True, 1, None, False),
    ("Trade", "Sell", False, -1, "Capital Gain", False),
    ("Holding", "Add Item", False, 1, None, False),
    ("Holding", "Remove Item", False, -1, "Capital Gain", False),
    ("System", "Opening Balance", False, 0, "Non-Taxable", False),
    ("System", "Reconcile", False, 0, "Non-Taxable", True),
]

_CATEGORY_SPLIT = re.compile(r"\s*[:/]\s*")


def _key(*parts: str) -> Tuple[str, ...]:
    return tuple(p.strip().lower() for p in parts)


# ═══════════════════════════════════════════════════════════════════════════════
# SEEDING
# ═══════════════════════════════════════════════════════════════════════════════

def seed_reference_catalogs(db: Session) -> Dict[str, int]:
    """
    Insert any missing default catalog rows plus the global cash asset.

    Existing rows are left untouched, so this is safe on every startup.

    Returns:
        Count of rows inserted per catalog
    """
    inserted = {"account_types": 0, "asset_categories": 0, "tax_categories": 0,
                "transaction_categories": 0, "assets": 0}

    for name, is_taxable, is_tax_deferred, is_liability in DEFAULT_ACCOUNT_TYPES:
        if not db.query(models.AccountType).filter(models.AccountType.name == name).first():
            db.add(models.AccountType(name=name, is_taxable=is_taxable,
                                      is_tax_deferred=is_tax_deferred, is_liability=is_liability))
            inserted["account_types"] += 1

    for cat, sub_cat, is_cash in DEFAULT_ASSET_CATEGORIES:
        exists = db.query(models.AssetCategory).filter(
            models.AssetCategory.cat == cat, models.AssetCategory.sub_cat == sub_cat
        ).first()
        if not exists:
            db.add(models.AssetCategory(cat=cat, sub_cat=sub_cat, is_cash=is_cash))
            inserted["asset_categories"] += 1

    for name, is_capital_gain, description in DEFAULT_TAX_CATEGORIES:
        if not db.query(models.TaxCategory).filter(models.TaxCategory.name == name).first():
            db.add(models.TaxCategory(name=name, is_capital_gain=is_capital_gain, description=description))
            inserted["tax_categories"] += 1
    db.flush()

    tax_ids = {t.name: t.id for t in db.query(models.TaxCategory).all()}
    for cat, sub_cat, is_debit, effect, tax_name, is_reconcile in DEFAULT_TRANSACTION_CATEGORIES:
        exists = db.query(models.TransactionCategory).filter(
            models.TransactionCategory.cat == cat, models.TransactionCategory.sub_cat == sub_cat
        ).first()
        if not exists:
            db.add(models.TransactionCategory(
                cat=cat, sub_cat=sub_cat, is_debit=is_debit, position_effect=effect,
                tax_category_id=tax_ids.get(tax_name) if tax_name else None,
                is_reconcile=is_reconcile
            ))
            inserted["transaction_categories"] += 1
    db.flush()

    cash_category = db.query(models.AssetCategory).filter(models.AssetCategory.is_cash.is_(True)).first()
    cash_asset = db.query(models.Asset).filter(
        models.Asset.symbol == CASH_SYMBOL, models.Asset.created_by.is_(None)
    ).first()
    if not cash_asset:
        db.add(models.Asset(symbol=CASH_SYMBOL, asset_category_id=cash_category.id,
                            description="US Dollar cash", created_by=None))
        inserted["assets"] += 1

    db.commit()
    if any(inserted.values()):
        logger.info(f"Seeded reference catalogs: {inserted}")
    return inserted


# ═══════════════════════════════════════════════════════════════════════════════
# IMMUTABLE CATALOG SNAPSHOT
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AccountTypeEntry:
    id: int
    name: str
    is_taxable: bool
    is_tax_deferred: bool
    is_liability: bool


@dataclass(frozen=True)
class AssetCategoryEntry:
    id: int
    cat: str
    sub_cat: str
    is_cash: bool

    @property
    def label(self) -> str:
        return f"{self.cat}:{self.sub_cat}"


@dataclass(frozen=True)
class TaxCategoryEntry:
    id: int
    name: str
    is_capital_gain: bool


@dataclass(frozen=True)
class TransactionCategoryEntry:
    id: int
    cat: str
    sub_cat: str
    is_debit: bool
    position_effect: int
    is_reconcile: bool
    tax_category_id: Optional[int]

    @property
    def label(self) -> str:
        return f"{self.cat}:{self.sub_cat}"


@dataclass(frozen=True)
class ReferenceCatalog:
    """Read-only view of every catalog, identified by a content digest."""
    version: str
    account_types: Mapping[int, AccountTypeEntry]
    asset_categories: Mapping[int, AssetCategoryEntry]
    tax_categories: Mapping[int, TaxCategoryEntry]
    transaction_categories: Mapping[int, TransactionCategoryEntry]
    _account_types_by_name: Mapping[Tuple[str, ...], int]
    _asset_categories_by_name: Mapping[Tuple[str, ...], int]
    _tax_categories_by_name: Mapping[Tuple[str, ...], int]
    _transaction_categories_by_name: Mapping[Tuple[str, ...], int]

    def account_type(self, name: str) -> AccountTypeEntry:
        type_id = self._account_types_by_name.get(_key(name))
        if type_id is None:
            raise ValidationError(f"Unknown account type: {name}", field="account_type")
        return self.account_types[type_id]

    def asset_category(self, cat: str, sub_cat: str) -> AssetCategoryEntry:
        category_id = self._asset_categories_by_name.get(_key(cat, sub_cat))
        if category_id is None:
            raise ValidationError(f"Unknown asset category: {cat}:{sub_cat}", field="asset_category")
        return self.asset_categories[category_id]

    def tax_category(self, name: str) -> TaxCategoryEntry:
        tax_id = self._tax_categories_by_name.get(_key(name))
        if tax_id is None:
            raise ValidationError(f"Unknown tax category: {name}", field="tax_category")
        return self.tax_categories[tax_id]

    def transaction_category(self, cat: str, sub_cat: str) -> TransactionCategoryEntry:
        category_id = self._transaction_categories_by_name.get(_key(cat, sub_cat))
        if category_id is None:
            raise ValidationError(f"Unknown transaction category: {cat}:{sub_cat}", field="category")
        return self.transaction_categories[category_id]

    def resolve_transaction_category(self, text: Optional[str]) -> TransactionCategoryEntry:
        """
        Resolve "Cat:Sub" or "Cat/Sub" (case-insensitive) to a category.

        There is no fallback: blank or unknown text is a ValidationError.
        """
        if text is None or not str(text).strip():
            raise ValidationError("Transaction category is required", field="category")
        parts = _CATEGORY_SPLIT.split(str(text).strip(), maxsplit=1)
        if len(parts) != 2:
            raise ValidationError(f"Category must look like 'Cat:Sub', got '{text}'", field="category")
        return self.transaction_category(parts[0], parts[1])

    def parse_asset_category(self, text: str) -> AssetCategoryEntry:
        parts = _CATEGORY_SPLIT.split(str(text).strip(), maxsplit=1)
        if len(parts) != 2:
            raise ValidationError(f"Asset category must look like 'Cat:Sub', got '{text}'", field="asset_category")
        return self.asset_category(parts[0], parts[1])

    @property
    def reconcile_category(self) -> TransactionCategoryEntry:
        for entry in self.transaction_categories.values():
            if entry.is_reconcile:
                return entry
        raise NotFound("No reconcile transaction category is configured")

    @property
    def opening_balance_category(self) -> Optional[TransactionCategoryEntry]:
        category_id = self._transaction_categories_by_name.get(_key(*OPENING_BALANCE_CATEGORY))
        return self.transaction_categories[category_id] if category_id is not None else None

    def is_capital_gain(self, transaction_category_id: int) -> bool:
        entry = self.transaction_categories.get(transaction_category_id)
        if entry is None or entry.tax_category_id is None:
            return False
        return self.tax_categories[entry.tax_category_id].is_capital_gain


def _digest(payload) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()[:16]


def load_catalog(db: Session) -> ReferenceCatalog:
    """Build an immutable catalog snapshot from the database."""
    account_types = {
        r.id: AccountTypeEntry(r.id, r.name, r.is_taxable, r.is_tax_deferred, r.is_liability)
        for r in db.query(models.AccountType).order_by(models.AccountType.id).all()
    }
    asset_categories = {
        r.id: AssetCategoryEntry(r.id, r.cat, r.sub_cat, r.is_cash)
        for r in db.query(models.AssetCategory).order_by(models.AssetCategory.id).all()
    }
    tax_categories = {
        r.id: TaxCategoryEntry(r.id, r.name, r.is_capital_gain)
        for r in db.query(models.TaxCategory).order_by(models.TaxCategory.id).all()
    }
    transaction_categories = {
        r.id: TransactionCategoryEntry(r.id, r.cat, r.sub_cat, r.is_debit, r.position_effect,
                                       r.is_reconcile, r.tax_category_id)
        for r in db.query(models.TransactionCategory).order_by(models.TransactionCategory.id).all()
    }

    version = _digest([
        [list(e.__dict__.values()) for e in account_types.values()],
        [list(e.__dict__.values()) for e in asset_categories.values()],
        [list(e.__dict__.values()) for e in tax_categories.values()],
        [list(e.__dict__.values()) for e in transaction_categories.values()],
    ])

    return ReferenceCatalog(
        version=version,
        account_types=MappingProxyType(account_types),
        asset_categories=MappingProxyType(asset_categories),
        tax_categories=MappingProxyType(tax_categories),
        transaction_categories=MappingProxyType(transaction_categories),
        _account_types_by_name=MappingProxyType({_key(e.name): i for i, e in account_types.items()}),
        _asset_categories_by_name=MappingProxyType(
            {_key(e.cat, e.sub_cat): i for i, e in asset_categories.items()}),
        _tax_categories_by_name=MappingProxyType({_key(e.name): i for i, e in tax_categories.items()}),
        _transaction_categories_by_name=MappingProxyType(
            {_key(e.cat, e.sub_cat): i for i, e in transaction_categories.items()}),
    )


# Keyed by engine; entries go away with their engine
_catalog_cache: "weakref.WeakKeyDictionary[Any, ReferenceCatalog]" = weakref.WeakKeyDictionary()


def get_catalog(db: Session) -> ReferenceCatalog:
    """
    Catalog snapshot for the session's engine, loaded on first use.

    Call invalidate_catalog() after changing catalog rows.
    """
    key = db.get_bind()
    catalog = _catalog_cache.get(key)
    if catalog is None:
        catalog = load_catalog(db)
        _catalog_cache[key] = catalog
        logger.info(f"Loaded reference catalog version {catalog.version}")
    return catalog


def invalidate_catalog():
    _catalog_cache.clear()


# ═══════════════════════════════════════════════════════════════════════════════
# RESTRICT-ON-DELETE
# ═══════════════════════════════════════════════════════════════════════════════

# Catalog model -> (referencing model, referencing column name)
_CATALOG_REFERENCES = {
    models.AccountType: [(models.Account, "account_type_id")],
    models.AssetCategory: [(models.Asset, "asset_category_id"), (models.NavSnapshotLine, "asset_category_id")],
    models.TaxCategory: [(models.TransactionCategory, "tax_category_id")],
    models.TransactionCategory: [(models.AccountTransaction, "transaction_category_id")],
}


def delete_catalog_entry(db: Session, model, entry_id: int):
    """Delete a catalog row, refusing while anything references it."""
    if model not in _CATALOG_REFERENCES:
        raise ValidationError(f"{model.__name__} is not a reference catalog")

    row = db.query(model).filter(model.id == entry_id).first()
    if not row:
        raise NotFound(f"{model.__name__} {entry_id} not found")

    for ref_model, column in _CATALOG_REFERENCES[model]:
        in_use = db.query(ref_model).filter(getattr(ref_model, column) == entry_id).first()
        if in_use:
            raise ReferenceInUse(f"{model.__name__} {entry_id} is referenced by {ref_model.__tablename__}")

    db.delete(row)
    db.commit()
    invalidate_catalog()
    logger.info(f"Deleted {model.__name__} {entry_id}")

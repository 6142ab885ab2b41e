"""
Asset Registry

Assets are global (created_by NULL, system-managed) or private to the user
who created them. Symbol lookups prefer the caller's private asset over the
global one. Once ledger rows reference an asset, only its description may
change.
"""

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from datetime import date
from typing import Optional, List
import logging

import models
from catalog_service import get_catalog
from ledger_errors import DuplicateAsset, NotFound, ReferenceInUse, ValidationError, PermissionDenied

logger = logging.getLogger(__name__)


def normalize_symbol(symbol: str) -> str:
    value = (symbol or "").strip().upper()
    if not value:
        raise ValidationError("Asset symbol is required", field="symbol")
    if len(value) > 15:
        raise ValidationError(f"Asset symbol too long: {value}", field="symbol")
    return value


def _is_referenced(db: Session, asset_id: int) -> bool:
    return db.query(models.AccountTransaction.id).filter(
        models.AccountTransaction.asset_id == asset_id
    ).first() is not None


def get_asset(db: Session, asset_id: int) -> models.Asset:
    asset = db.query(models.Asset).filter(models.Asset.id == asset_id).first()
    if not asset:
        raise NotFound(f"Asset {asset_id} not found")
    return asset


def create_asset(
    db: Session,
    symbol: str,
    category: str,
    description: Optional[str] = None,
    exp_date: Optional[date] = None,
    creator_id: Optional[int] = None
) -> models.Asset:
    """
    Register an asset.

    Args:
        symbol: Ticker or user-chosen code, stored upper-case
        category: Asset category as "Cat:Sub"
        creator_id: Owning user, or None for a global asset

    Raises:
        DuplicateAsset: symbol already registered in this scope
    """
    symbol = normalize_symbol(symbol)
    category_entry = get_catalog(db).parse_asset_category(category)

    scope = models.Asset.created_by.is_(None) if creator_id is None else models.Asset.created_by == creator_id
    if db.query(models.Asset).filter(models.Asset.symbol == symbol, scope).first():
        raise DuplicateAsset(f"Asset {symbol} already exists" + (f" for user {creator_id}" if creator_id else ""))

    asset = models.Asset(
        symbol=symbol,
        asset_category_id=category_entry.id,
        description=description,
        exp_date=exp_date,
        created_by=creator_id
    )
    db.add(asset)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateAsset(f"Asset {symbol} already exists")

    db.refresh(asset)
    logger.info(f"Asset {symbol} ({category_entry.label}) registered"
                + (f" for user {creator_id}" if creator_id else " globally"))
    return asset


def resolve_asset(db: Session, symbol: str, user_id: Optional[int] = None) -> Optional[models.Asset]:
    """Find the user's private asset for a symbol, falling back to the global one."""
    symbol = normalize_symbol(symbol)
    if user_id is not None:
        private = db.query(models.Asset).filter(
            models.Asset.symbol == symbol, models.Asset.created_by == user_id
        ).first()
        if private:
            return private
    return db.query(models.Asset).filter(
        models.Asset.symbol == symbol, models.Asset.created_by.is_(None)
    ).first()


def _require_editable(asset: models.Asset, user_id: Optional[int]):
    # Global assets are system-managed: only system callers (user_id None) touch them
    if asset.created_by != user_id:
        raise PermissionDenied(f"User {user_id} cannot modify asset {asset.symbol}", user_id=user_id)


def update_asset(
    db: Session,
    asset_id: int,
    user_id: Optional[int] = None,
    description: Optional[str] = None,
    exp_date: Optional[date] = None,
    category: Optional[str] = None
) -> models.Asset:
    """
    Update descriptive fields. Expiration date and category are frozen once
    the asset is referenced by a transaction.
    """
    asset = get_asset(db, asset_id)
    _require_editable(asset, user_id)

    if (exp_date is not None or category is not None) and _is_referenced(db, asset_id):
        raise ReferenceInUse(f"Asset {asset.symbol} is referenced by transactions")

    if description is not None:
        asset.description = description
    if exp_date is not None:
        asset.exp_date = exp_date
    if category is not None:
        asset.asset_category_id = get_catalog(db).parse_asset_category(category).id
    db.commit()
    return asset


def update_asset_description(db: Session, asset_id: int, description: str,
                             user_id: Optional[int] = None) -> models.Asset:
    return update_asset(db, asset_id, user_id=user_id, description=description)


def delete_asset(db: Session, asset_id: int, user_id: Optional[int] = None):
    asset = get_asset(db, asset_id)
    _require_editable(asset, user_id)
    if _is_referenced(db, asset_id):
        raise ReferenceInUse(f"Asset {asset.symbol} is referenced by transactions")

    symbol = asset.symbol
    db.delete(asset)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ReferenceInUse(f"Asset {symbol} is still referenced")
    logger.info(f"Asset {symbol} deleted")


def list_assets(db: Session, user_id: Optional[int] = None) -> List[models.Asset]:
    """Global assets plus the user's private ones."""
    query = db.query(models.Asset)
    if user_id is None:
        query = query.filter(models.Asset.created_by.is_(None))
    else:
        query = query.filter((models.Asset.created_by.is_(None)) | (models.Asset.created_by == user_id))
    return query.order_by(models.Asset.symbol, models.Asset.created_by).all()


# ═══════════════════════════════════════════════════════════════════════════════
# WATCHLISTS
# ═══════════════════════════════════════════════════════════════════════════════

def add_to_watchlist(db: Session, user_id: int, asset_id: int) -> models.Watchlist:
    asset = get_asset(db, asset_id)
    if asset.created_by is not None and asset.created_by != user_id:
        raise NotFound(f"Asset {asset_id} not found")

    existing = db.query(models.Watchlist).filter(
        models.Watchlist.user_id == user_id, models.Watchlist.asset_id == asset_id
    ).first()
    if existing:
        return existing

    entry = models.Watchlist(user_id=user_id, asset_id=asset_id)
    db.add(entry)
    db.commit()
    return entry


def remove_from_watchlist(db: Session, user_id: int, asset_id: int) -> bool:
    deleted = db.query(models.Watchlist).filter(
        models.Watchlist.user_id == user_id, models.Watchlist.asset_id == asset_id
    ).delete()
    db.commit()
    return deleted > 0


def list_watchlist(db: Session, user_id: int) -> List[models.Asset]:
    return db.query(models.Asset).join(
        models.Watchlist, models.Watchlist.asset_id == models.Asset.id
    ).filter(models.Watchlist.user_id == user_id).order_by(models.Asset.symbol).all()

"""
Ledger API Endpoints

Provides REST API for:
- Identity events from the external provider
- Accounts, grants and nicknames
- Statement import, manual entries, reconciliation and corrections
- NAV snapshots and realized gains
- Asset registry and watchlists

The caller is identified by the X-User-Id header (the provider's stable id).
"""

from fastapi import APIRouter, Depends, HTTPException, Header, Query, UploadFile, File, Form, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Dict, Any, List, Optional
from datetime import date
from sqlalchemy.orm import Session

import models
from database import get_db
import access_service
import asset_service
import identity_service
import ledger_import_service
import reconciliation_service
import valuation_service
import tax_lots
from ledger_errors import (
    LedgerError, ValidationError, NotFound, PermissionDenied, NicknameConflict,
    LastOwnerViolation, DuplicateAccountName, DuplicateAsset, ReferenceInUse
)


router = APIRouter(prefix="/api/v1", tags=["Ledger"])


# ═══════════════════════════════════════════════════════════════════════════════
# ERROR MAPPING
# ═══════════════════════════════════════════════════════════════════════════════

ERROR_STATUS = {
    PermissionDenied: 403,
    NotFound: 404,
    NicknameConflict: 409,
    DuplicateAccountName: 409,
    DuplicateAsset: 409,
    LastOwnerViolation: 409,
    ReferenceInUse: 409,
    ValidationError: 422,
}


def status_for(error: LedgerError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 400


async def ledger_error_handler(request: Request, exc: LedgerError):
    detail = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, ValidationError) and exc.field:
        detail["field"] = exc.field
    if isinstance(exc, PermissionDenied):
        detail["capability"] = exc.capability
    return JSONResponse(status_code=status_for(exc), content={"detail": detail})


def register_error_handlers(app):
    app.add_exception_handler(LedgerError, ledger_error_handler)


# ═══════════════════════════════════════════════════════════════════════════════
# CALLER IDENTITY
# ═══════════════════════════════════════════════════════════════════════════════

def current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db)
) -> models.User:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    user = identity_service.get_user(db, x_user_id)
    if not user:
        raise HTTPException(status_code=401, detail=f"Unknown user {x_user_id}")
    return user


def _user_by_external_id(db: Session, external_id: str) -> models.User:
    return identity_service.require_user(db, external_id)


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST MODELS
# ═══════════════════════════════════════════════════════════════════════════════

class UserEventRequest(BaseModel):
    """Identity provider sign-up / email-change event."""
    external_id: str
    email: str
    display_name: Optional[str] = None


class CreateAccountRequest(BaseModel):
    name: str = Field(..., description="Account name, unique per creator")
    account_type: str = Field(..., description="Account type name, e.g. Checking")
    account_number: Optional[str] = None
    nickname: Optional[str] = Field(None, description="Creator's nickname; defaults to the name")


class GrantRequest(BaseModel):
    grantee_external_id: str
    level: str = Field(..., description="owner, editor or viewer")
    nickname: Optional[str] = None
    notes: Optional[str] = None


class NicknameRequest(BaseModel):
    nickname: str


class ImportRowsRequest(BaseModel):
    rows: List[Dict[str, Any]]
    default_category: Optional[str] = None
    locale: str = "ISO"


class ManualEntryRequest(BaseModel):
    trans_date: date
    amount: str
    category: str
    description: Optional[str] = None
    symbol: Optional[str] = None
    qty: Optional[str] = None
    price: Optional[str] = None
    cost: Optional[str] = None


class NavRequest(BaseModel):
    as_of: date
    account_ids: Optional[List[int]] = None
    timeout_seconds: Optional[float] = Field(None, gt=0, le=60)


class CreateAssetRequest(BaseModel):
    symbol: str
    category: str = Field(..., description="Asset category as Cat:Sub")
    description: Optional[str] = None
    exp_date: Optional[date] = None


def _transaction_dict(t: models.AccountTransaction) -> Dict[str, Any]:
    return {
        "id": t.id,
        "account_id": t.account_id,
        "asset_id": t.asset_id,
        "transaction_category_id": t.transaction_category_id,
        "trans_date": t.trans_date.isoformat(),
        "amount": str(t.amount) if t.amount is not None else None,
        "balance": str(t.balance) if t.balance is not None else None,
        "qty": str(t.qty) if t.qty is not None else None,
        "price": str(t.price) if t.price is not None else None,
        "description": t.description,
        "source": t.source,
        "corrects_transaction_id": t.corrects_transaction_id,
    }


def _grant_dict(g: models.AccountAccess) -> Dict[str, Any]:
    return {
        "account_id": g.account_id,
        "user_id": g.user_id,
        "access_level": g.access_level,
        "can_read": g.can_read,
        "can_write": g.can_write,
        "nickname": g.nickname,
        "granted_by": g.granted_by,
        "notes": g.notes,
    }


def _asset_dict(a: models.Asset) -> Dict[str, Any]:
    return {
        "id": a.id,
        "symbol": a.symbol,
        "asset_category_id": a.asset_category_id,
        "description": a.description,
        "exp_date": a.exp_date.isoformat() if a.exp_date else None,
        "is_global": a.created_by is None,
    }


# ═══════════════════════════════════════════════════════════════════════════════
# IDENTITY EVENTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/identity/signed-up")
def user_signed_up(request: UserEventRequest, db: Session = Depends(get_db)):
    user = identity_service.on_user_signed_up(db, request.external_id, request.email, request.display_name)
    return {"id": user.id, "external_id": user.external_id, "email": user.email}


@router.post("/identity/email-changed")
def user_email_changed(request: UserEventRequest, db: Session = Depends(get_db)):
    user = identity_service.on_email_changed(db, request.external_id, request.email)
    return {"id": user.id, "external_id": user.external_id, "email": user.email}


# ═══════════════════════════════════════════════════════════════════════════════
# ACCOUNTS AND GRANTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/accounts")
def list_accounts(user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    return access_service.list_accounts_for_user(db, user.id)


@router.post("/accounts", status_code=201)
def create_account(request: CreateAccountRequest, user: models.User = Depends(current_user),
                   db: Session = Depends(get_db)):
    account = access_service.create_account(
        db, user.id, request.name, request.account_type,
        account_number=request.account_number, nickname=request.nickname
    )
    return {"id": account.id, "name": account.name, "account_type_id": account.account_type_id}


@router.delete("/accounts/{account_id}")
def delete_account(account_id: int, user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    access_service.delete_account(db, account_id, user.id)
    return {"deleted": True}


@router.get("/accounts/{account_id}/grants")
def list_grants(account_id: int, user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    return [_grant_dict(g) for g in access_service.list_grants(db, account_id, user.id)]


@router.put("/accounts/{account_id}/grants")
def grant_access(account_id: int, request: GrantRequest, user: models.User = Depends(current_user),
                 db: Session = Depends(get_db)):
    grantee = _user_by_external_id(db, request.grantee_external_id)
    grant_row = access_service.grant(db, account_id, user.id, grantee.id, request.level,
                                     nickname=request.nickname, notes=request.notes)
    return _grant_dict(grant_row)


@router.delete("/accounts/{account_id}/grants/{grantee_external_id}")
def revoke_access(account_id: int, grantee_external_id: str, user: models.User = Depends(current_user),
                  db: Session = Depends(get_db)):
    grantee = _user_by_external_id(db, grantee_external_id)
    access_service.revoke(db, account_id, user.id, grantee.id)
    return {"revoked": True}


@router.put("/accounts/{account_id}/nickname")
def rename_nickname(account_id: int, request: NicknameRequest, user: models.User = Depends(current_user),
                    db: Session = Depends(get_db)):
    return _grant_dict(access_service.rename_nickname(db, account_id, user.id, request.nickname))


# ═══════════════════════════════════════════════════════════════════════════════
# LEDGER
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/accounts/{account_id}/import")
def import_rows(account_id: int, request: ImportRowsRequest, user: models.User = Depends(current_user),
                db: Session = Depends(get_db)):
    result = ledger_import_service.import_batch(
        db, account_id, user.id, request.rows,
        default_category=request.default_category, locale=request.locale
    )
    return result.to_dict()


@router.post("/accounts/{account_id}/statements")
async def upload_statement(
    account_id: int,
    file: UploadFile = File(...),
    default_category: Optional[str] = Form(None),
    locale: str = Form("ISO"),
    user: models.User = Depends(current_user),
    db: Session = Depends(get_db)
):
    content = await file.read()
    result = ledger_import_service.import_statement(
        db, account_id, user.id, content, default_category=default_category, locale=locale
    )
    payload = result.to_dict()
    payload["filename"] = file.filename
    return payload


@router.post("/accounts/{account_id}/transactions", status_code=201)
def manual_entry(account_id: int, request: ManualEntryRequest, user: models.User = Depends(current_user),
                 db: Session = Depends(get_db)):
    txn = ledger_import_service.record_manual_entry(
        db, account_id, user.id, request.trans_date, request.amount, request.category,
        description=request.description, symbol=request.symbol, qty=request.qty,
        price=request.price, cost=request.cost
    )
    return _transaction_dict(txn)


@router.get("/accounts/{account_id}/transactions")
def list_transactions(account_id: int, start: Optional[date] = Query(None), end: Optional[date] = Query(None),
                      user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    rows = ledger_import_service.list_transactions(db, account_id, user.id, start=start, end=end)
    return [_transaction_dict(t) for t in rows]


@router.get("/accounts/{account_id}/reconciliation")
def reconcile(account_id: int, as_of: Optional[date] = Query(None),
              user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    return reconciliation_service.reconcile(db, account_id, user.id, as_of=as_of).to_dict()


@router.post("/accounts/{account_id}/transactions/{transaction_id}/correction", status_code=201)
def post_correction(account_id: int, transaction_id: int, user: models.User = Depends(current_user),
                    db: Session = Depends(get_db)):
    correction = reconciliation_service.post_correction(db, account_id, user.id, transaction_id)
    return _transaction_dict(correction)


@router.get("/accounts/{account_id}/realized-gains")
def realized_gains(account_id: int, start: date = Query(...), end: date = Query(...),
                   user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    gain_slice = valuation_service.realized_gain_slice(db, user.id, account_id, start, end)
    result = tax_lots.match_fifo(gain_slice)
    return {
        "account_id": account_id,
        "account_type": gain_slice.account_type,
        "is_taxable": gain_slice.is_taxable,
        "is_tax_deferred": gain_slice.is_tax_deferred,
        "reportable": result.reportable,
        "realized_gain": str(result.realized_gain),
        "short_term_gain": str(result.short_term_gain),
        "long_term_gain": str(result.long_term_gain),
        "matches": [
            {"disposal_id": m.disposal_id, "acquisition_id": m.acquisition_id, "symbol": m.symbol,
             "qty": str(m.qty), "proceeds": str(m.proceeds), "cost_basis": str(m.cost_basis),
             "gain": str(m.gain), "is_long_term": m.is_long_term}
            for m in result.matches
        ],
        "unmatched_qty": {str(k): str(v) for k, v in result.unmatched_qty.items()},
    }


# ═══════════════════════════════════════════════════════════════════════════════
# VALUATION
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/nav")
def compute_nav(request: NavRequest, user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    return valuation_service.compute_nav(db, user.id, request.as_of, account_ids=request.account_ids,
                                         timeout=request.timeout_seconds).to_dict()


@router.get("/nav/{as_of}")
def get_nav(as_of: date, user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    snapshot = valuation_service.get_snapshot(db, user.id, as_of)
    return {
        "snapshot_id": snapshot.id,
        "as_of": snapshot.as_of.isoformat(),
        "total_nominal": str(snapshot.total_nominal),
        "total_real": str(snapshot.total_real) if snapshot.total_real is not None else None,
        "is_nominal_only": snapshot.is_nominal_only,
        "is_complete": snapshot.is_complete,
        "warnings": snapshot.warnings or [],
        "lines": [
            {"label": l.category_label, "is_liability": l.is_liability, "nominal": str(l.nominal_value),
             "real": str(l.real_value) if l.real_value is not None else None}
            for l in snapshot.lines
        ],
    }


# ═══════════════════════════════════════════════════════════════════════════════
# ASSETS
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/assets")
def list_assets(user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    return [_asset_dict(a) for a in asset_service.list_assets(db, user.id)]


@router.post("/assets", status_code=201)
def create_asset(request: CreateAssetRequest, user: models.User = Depends(current_user),
                 db: Session = Depends(get_db)):
    asset = asset_service.create_asset(db, request.symbol, request.category, description=request.description,
                                       exp_date=request.exp_date, creator_id=user.id)
    return _asset_dict(asset)


@router.get("/watchlist")
def get_watchlist(user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    return [_asset_dict(a) for a in asset_service.list_watchlist(db, user.id)]


@router.put("/watchlist/{asset_id}")
def add_watch(asset_id: int, user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    asset_service.add_to_watchlist(db, user.id, asset_id)
    return {"watching": True}


@router.delete("/watchlist/{asset_id}")
def remove_watch(asset_id: int, user: models.User = Depends(current_user), db: Session = Depends(get_db)):
    return {"removed": asset_service.remove_from_watchlist(db, user.id, asset_id)}

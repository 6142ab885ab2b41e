"""
Ledger Audit Logging Service
Records who created, shared, imported into and corrected each account.
"""

from sqlalchemy.orm import Session
from typing import Optional, Dict, Any
import models


def _write(db: Session, user: Any, action: str, resource_type: str,
           resource_id: Optional[int], changes: Optional[Dict[str, Any]]):
    log = models.AuditLog(
        timestamp=models.utcnow(),
        user=str(user) if user is not None else None,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        changes=changes
    )
    db.add(log)
    db.commit()


def log_account_action(
    db: Session,
    user: Any,
    action: str,
    account_id: int,
    changes: Optional[Dict[str, Any]] = None
):
    """Log account create/delete"""
    _write(db, user, action, "Account", account_id, changes)


def log_access_action(
    db: Session,
    user: Any,
    action: str,
    account_id: int,
    grantee_id: int,
    old_level: Optional[str] = None,
    new_level: Optional[str] = None
):
    """Log grant, modification and revocation of account access"""
    _write(db, user, action, "AccountAccess", account_id, {
        "grantee_id": grantee_id,
        "old_level": old_level,
        "new_level": new_level
    })


def log_import_action(
    db: Session,
    user: Any,
    account_id: int,
    inserted: int,
    skipped_duplicate: int,
    rejected: int,
    changes: Optional[Dict[str, Any]] = None
):
    """Log an import batch summary"""
    log_data = {
        "inserted": inserted,
        "skipped_duplicate": skipped_duplicate,
        "rejected": rejected
    }
    if changes:
        log_data.update(changes)
    _write(db, user, "Import", "Account", account_id, log_data)


def log_correction_action(
    db: Session,
    user: Any,
    transaction_id: int,
    corrects_transaction_id: int,
    delta: Optional[str] = None
):
    """Log reconciliation corrections"""
    _write(db, user, "Correct", "AccountTransaction", transaction_id, {
        "corrects_transaction_id": corrects_transaction_id,
        "delta": delta
    })


def log_snapshot_action(
    db: Session,
    user: Any,
    action: str,
    snapshot_id: int,
    changes: Optional[Dict[str, Any]] = None
):
    """Log NAV snapshot stores"""
    _write(db, user, action, "NavSnapshot", snapshot_id, changes)


def get_audit_trail(
    db: Session,
    resource_type: Optional[str] = None,
    resource_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
):
    """Retrieve audit trail with filters"""
    query = db.query(models.AuditLog)

    if resource_type:
        query = query.filter(models.AuditLog.resource_type == resource_type)
    if resource_id:
        query = query.filter(models.AuditLog.resource_id == resource_id)
    if action:
        query = query.filter(models.AuditLog.action == action)

    return query.order_by(models.AuditLog.timestamp.desc(), models.AuditLog.id.desc()).limit(limit).all()

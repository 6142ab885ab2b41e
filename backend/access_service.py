"""
Account Access Control

Per-account grants with an ordered level (owner > editor > viewer), explicit
read/write flags kept consistent with the level, and a per-user nickname for
every account the user can see.

Rules:
- Creating an account grants the creator owner access in the same transaction
- Only owners grant (editors too when LEDGER_EDITORS_CAN_GRANT is on, never above their own level)
- Nobody changes their own grant through grant(); dropping your own grant goes through revoke()
- Weakening an owner takes a different owner
- Every account keeps at least one owner

Grant and revoke on the same account are serialized: a process-level lock per
account plus SELECT ... FOR UPDATE on the account row.
"""

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from contextlib import contextmanager
from typing import Optional, List, Dict, Any, Union
import enum
import logging
import threading

import models
from models import AccessLevel
from config import get_config
from catalog_service import get_catalog
from ledger_errors import (
    PermissionDenied, NotFound, NicknameConflict, LastOwnerViolation,
    DuplicateAccountName, ValidationError
)

logger = logging.getLogger(__name__)


class Capability(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    GRANT = "grant"


# ═══════════════════════════════════════════════════════════════════════════════
# PER-ACCOUNT SERIALIZATION
# ═══════════════════════════════════════════════════════════════════════════════

_registry_lock = threading.Lock()
_account_locks: Dict[int, threading.Lock] = {}


@contextmanager
def account_lock(account_id: int):
    with _registry_lock:
        lock = _account_locks.setdefault(account_id, threading.Lock())
    with lock:
        yield


def _lock_account_row(db: Session, account_id: int) -> models.Account:
    account = db.query(models.Account).filter(
        models.Account.id == account_id
    ).with_for_update().first()
    if not account:
        raise NotFound(f"Account {account_id} not found")
    return account


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def _as_level(level: Union[str, AccessLevel]) -> AccessLevel:
    try:
        return AccessLevel(level)
    except ValueError:
        raise ValidationError(f"Invalid access level: {level}", field="level")


def _apply_level(grant_row: models.AccountAccess, level: AccessLevel):
    grant_row.access_level = level.value
    grant_row.can_read = level.can_read
    grant_row.can_write = level.can_write


def get_grant(db: Session, account_id: int, user_id: int) -> Optional[models.AccountAccess]:
    return db.query(models.AccountAccess).filter(
        models.AccountAccess.account_id == account_id,
        models.AccountAccess.user_id == user_id
    ).first()


def _require_user(db: Session, user_id: int) -> models.User:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise NotFound(f"User {user_id} not found")
    return user


def _owner_count(db: Session, account_id: int) -> int:
    return db.query(models.AccountAccess).filter(
        models.AccountAccess.account_id == account_id,
        models.AccountAccess.access_level == AccessLevel.OWNER.value
    ).count()


def _check_nickname(db: Session, user_id: int, nickname: str, account_id: Optional[int]):
    clash = db.query(models.AccountAccess).filter(
        models.AccountAccess.user_id == user_id,
        models.AccountAccess.nickname == nickname
    ).first()
    if clash and clash.account_id != account_id:
        raise NicknameConflict(nickname, user_id, clash.account_id)


def _clean_nickname(nickname: Optional[str], default: str) -> str:
    value = (nickname or "").strip() or default
    if len(value) > 127:
        raise ValidationError("Nickname is too long", field="nickname")
    return value


def _grant_allowed(grant_row: Optional[models.AccountAccess]) -> bool:
    if grant_row is None:
        return False
    if grant_row.level == AccessLevel.OWNER:
        return True
    return grant_row.level == AccessLevel.EDITOR and get_config().editors_can_grant


# ═══════════════════════════════════════════════════════════════════════════════
# CHECKS
# ═══════════════════════════════════════════════════════════════════════════════

def check(db: Session, account_id: int, user_id: int, capability: Union[str, Capability]) -> bool:
    """Does the user hold the capability on the account?"""
    capability = Capability(capability)
    grant_row = get_grant(db, account_id, user_id)
    if grant_row is None:
        return False

    if capability == Capability.READ:
        return bool(grant_row.can_read)
    if capability == Capability.WRITE:
        return bool(grant_row.can_write)
    return _grant_allowed(grant_row)


def require(db: Session, account_id: int, user_id: int, capability: Union[str, Capability]):
    """Raise PermissionDenied unless the user holds the capability."""
    if not check(db, account_id, user_id, capability):
        capability = Capability(capability)
        logger.debug(f"Denied {capability.value} on account {account_id} for user {user_id}")
        raise PermissionDenied(
            f"User {user_id} lacks {capability.value} access to account {account_id}",
            account_id=account_id, user_id=user_id, capability=capability.value
        )


def accessible_account_ids(db: Session, user_id: int,
                           capability: Union[str, Capability] = Capability.READ) -> List[int]:
    capability = Capability(capability)
    query = db.query(models.AccountAccess).filter(models.AccountAccess.user_id == user_id)
    if capability == Capability.READ:
        query = query.filter(models.AccountAccess.can_read.is_(True))
    elif capability == Capability.WRITE:
        query = query.filter(models.AccountAccess.can_write.is_(True))
    return sorted(g.account_id for g in query.all()
                  if capability != Capability.GRANT or _grant_allowed(g))


# ═══════════════════════════════════════════════════════════════════════════════
# ACCOUNTS
# ═══════════════════════════════════════════════════════════════════════════════

def create_account(
    db: Session,
    creator_id: int,
    name: str,
    account_type: str,
    account_number: Optional[str] = None,
    nickname: Optional[str] = None
) -> models.Account:
    """
    Create an account and its creator's owner grant as one unit of work.

    Raises:
        DuplicateAccountName: creator already has an account with this name
        NicknameConflict: creator already uses the nickname elsewhere
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("Account name is required", field="name")
    account_type_entry = get_catalog(db).account_type(account_type)
    _require_user(db, creator_id)
    nickname = _clean_nickname(nickname, name)

    duplicate = db.query(models.Account).filter(
        models.Account.name == name, models.Account.created_by == creator_id
    ).first()
    if duplicate:
        raise DuplicateAccountName(f"User {creator_id} already has an account named '{name}'")
    _check_nickname(db, creator_id, nickname, None)

    account = models.Account(
        account_type_id=account_type_entry.id,
        name=name,
        account_number=account_number,
        created_by=creator_id
    )
    db.add(account)
    try:
        db.flush()
        owner_grant = models.AccountAccess(
            account_id=account.id,
            user_id=creator_id,
            nickname=nickname,
            granted_by=creator_id
        )
        _apply_level(owner_grant, AccessLevel.OWNER)
        db.add(owner_grant)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        # Lost a race with a concurrent create; nothing was persisted
        if "uq_nickname_per_user" in str(e.orig) or "account_access" in str(e.orig):
            raise NicknameConflict(nickname, creator_id)
        raise DuplicateAccountName(f"User {creator_id} already has an account named '{name}'")

    db.refresh(account)
    logger.info(f"Account {account.id} '{name}' created by user {creator_id}")

    from audit_service import log_account_action
    log_account_action(db, creator_id, "Create", account.id,
                       changes={"name": name, "account_type": account_type_entry.name, "nickname": nickname})
    return account


def delete_account(db: Session, account_id: int, user_id: int):
    """Delete an account with its grants and transactions. Owners only."""
    with account_lock(account_id):
        account = _lock_account_row(db, account_id)
        grant_row = get_grant(db, account_id, user_id)
        if grant_row is None or grant_row.level != AccessLevel.OWNER:
            raise PermissionDenied(f"Only an owner can delete account {account_id}",
                                   account_id=account_id, user_id=user_id, capability="delete")
        name = account.name
        db.delete(account)
        db.commit()

    logger.info(f"Account {account_id} '{name}' deleted by user {user_id}")
    from audit_service import log_account_action
    log_account_action(db, user_id, "Delete", account_id, changes={"name": name})


def list_accounts_for_user(db: Session, user_id: int) -> List[Dict[str, Any]]:
    """Accounts visible to the user, listed under the user's own nicknames."""
    catalog = get_catalog(db)
    rows = db.query(models.AccountAccess, models.Account).join(
        models.Account, models.Account.id == models.AccountAccess.account_id
    ).filter(
        models.AccountAccess.user_id == user_id,
        models.AccountAccess.can_read.is_(True)
    ).order_by(models.AccountAccess.nickname).all()

    return [
        {
            "account_id": account.id,
            "name": account.name,
            "nickname": grant_row.nickname,
            "access_level": grant_row.access_level,
            "account_type": catalog.account_types[account.account_type_id].name,
            "account_number": account.account_number,
        }
        for grant_row, account in rows
    ]


# ═══════════════════════════════════════════════════════════════════════════════
# GRANTS
# ═══════════════════════════════════════════════════════════════════════════════

def grant(
    db: Session,
    account_id: int,
    grantor_id: int,
    grantee_id: int,
    level: Union[str, AccessLevel],
    nickname: Optional[str] = None,
    notes: Optional[str] = None
) -> models.AccountAccess:
    """
    Grant or modify a user's access to an account.

    An existing grant for (account, grantee) is modified in place; a missing
    one is created with the account name as default nickname.

    Raises:
        PermissionDenied: grantor may not grant, targets themselves, or exceeds their level
        NicknameConflict: grantee already uses the nickname for another account
        LastOwnerViolation: demotion would leave the account without an owner
    """
    level = _as_level(level)

    with account_lock(account_id):
        account = _lock_account_row(db, account_id)
        grantor_grant = get_grant(db, account_id, grantor_id)

        if not _grant_allowed(grantor_grant):
            raise PermissionDenied(f"User {grantor_id} cannot grant access to account {account_id}",
                                   account_id=account_id, user_id=grantor_id, capability=Capability.GRANT.value)
        if grantor_id == grantee_id:
            raise PermissionDenied("Users cannot change their own grant",
                                   account_id=account_id, user_id=grantor_id, capability=Capability.GRANT.value)
        if level.rank > grantor_grant.level.rank:
            raise PermissionDenied(f"Cannot grant {level.value} above own level {grantor_grant.access_level}",
                                   account_id=account_id, user_id=grantor_id, capability=Capability.GRANT.value)

        _require_user(db, grantee_id)
        existing = get_grant(db, account_id, grantee_id)

        if existing:
            old_level = existing.level
            if old_level.rank > grantor_grant.level.rank:
                raise PermissionDenied(f"Cannot modify a grant above own level {grantor_grant.access_level}",
                                       account_id=account_id, user_id=grantor_id,
                                       capability=Capability.GRANT.value)
            if old_level == AccessLevel.OWNER and level != AccessLevel.OWNER:
                if grantor_grant.level != AccessLevel.OWNER:
                    raise PermissionDenied("Only another owner can weaken an owner",
                                           account_id=account_id, user_id=grantor_id,
                                           capability=Capability.GRANT.value)
                if _owner_count(db, account_id) <= 1:
                    raise LastOwnerViolation(f"Account {account_id} would be left without an owner")

            if nickname is not None:
                new_nickname = _clean_nickname(nickname, existing.nickname)
                _check_nickname(db, grantee_id, new_nickname, account_id)
                existing.nickname = new_nickname
            if notes is not None:
                existing.notes = notes
            _apply_level(existing, level)
            existing.granted_by = grantor_id
            existing.granted_at = models.utcnow()
            grant_row = existing
            action = "Modify"
        else:
            old_level = None
            new_nickname = _clean_nickname(nickname, account.name)
            _check_nickname(db, grantee_id, new_nickname, account_id)
            grant_row = models.AccountAccess(
                account_id=account_id,
                user_id=grantee_id,
                nickname=new_nickname,
                granted_by=grantor_id,
                notes=notes
            )
            _apply_level(grant_row, level)
            db.add(grant_row)
            action = "Grant"

        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise NicknameConflict(nickname or account.name, grantee_id)

    db.refresh(grant_row)
    logger.info(f"{action} {level.value} on account {account_id} to user {grantee_id} by user {grantor_id}")

    from audit_service import log_access_action
    log_access_action(db, grantor_id, action, account_id, grantee_id,
                      old_level=old_level.value if old_level else None, new_level=level.value)
    return grant_row


def revoke(db: Session, account_id: int, grantor_id: int, grantee_id: int):
    """
    Remove a user's grant on an account.

    Users may always drop their own grant unless they are the last owner.

    Raises:
        PermissionDenied: grantor lacks the right to revoke this grant
        LastOwnerViolation: the grant is the account's only owner
    """
    with account_lock(account_id):
        _lock_account_row(db, account_id)
        target = get_grant(db, account_id, grantee_id)
        if target is None:
            raise NotFound(f"User {grantee_id} has no grant on account {account_id}")

        if grantor_id != grantee_id:
            grantor_grant = get_grant(db, account_id, grantor_id)
            if not _grant_allowed(grantor_grant):
                raise PermissionDenied(f"User {grantor_id} cannot revoke access on account {account_id}",
                                       account_id=account_id, user_id=grantor_id,
                                       capability=Capability.GRANT.value)
            if target.level.rank > grantor_grant.level.rank:
                raise PermissionDenied("Cannot revoke a grant above own level",
                                       account_id=account_id, user_id=grantor_id,
                                       capability=Capability.GRANT.value)

        if target.level == AccessLevel.OWNER and _owner_count(db, account_id) <= 1:
            raise LastOwnerViolation(f"Cannot revoke the last owner of account {account_id}")

        old_level = target.access_level
        db.delete(target)
        db.commit()

    logger.info(f"Revoked {old_level} on account {account_id} from user {grantee_id} by user {grantor_id}")
    from audit_service import log_access_action
    log_access_action(db, grantor_id, "Revoke", account_id, grantee_id, old_level=old_level, new_level=None)


def rename_nickname(db: Session, account_id: int, user_id: int, nickname: str) -> models.AccountAccess:
    """Change the caller's own nickname for an account."""
    grant_row = get_grant(db, account_id, user_id)
    if grant_row is None:
        raise PermissionDenied(f"User {user_id} has no access to account {account_id}",
                               account_id=account_id, user_id=user_id, capability=Capability.READ.value)
    new_nickname = _clean_nickname(nickname, grant_row.nickname)
    _check_nickname(db, user_id, new_nickname, account_id)
    grant_row.nickname = new_nickname
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise NicknameConflict(new_nickname, user_id)
    return grant_row


def list_grants(db: Session, account_id: int, user_id: int) -> List[models.AccountAccess]:
    require(db, account_id, user_id, Capability.READ)
    return db.query(models.AccountAccess).filter(
        models.AccountAccess.account_id == account_id
    ).order_by(models.AccountAccess.granted_at, models.AccountAccess.user_id).all()

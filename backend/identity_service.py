"""
Identity Boundary

Users are mirrored from an external identity provider. The provider's stable
id (external_id) is the key; email is informational and may change.
"""

from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import Optional
import logging

import models
from ledger_errors import NotFound, ValidationError

logger = logging.getLogger(__name__)


def _normalize_email(email: str) -> str:
    if not email or "@" not in email:
        raise ValidationError(f"Invalid email: {email!r}", field="email")
    return email.strip().lower()


def get_user(db: Session, external_id: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.external_id == external_id).first()


def require_user(db: Session, external_id: str) -> models.User:
    user = get_user(db, external_id)
    if not user:
        raise NotFound(f"Unknown user {external_id}")
    return user


def on_user_signed_up(db: Session, external_id: str, email: str,
                      display_name: Optional[str] = None) -> models.User:
    """
    Create the user mirror if absent. Replaying the event is a no-op.

    Args:
        external_id: Provider's stable id (never the email)
        email: Current email reported by the provider
        display_name: Optional initial display name

    Returns:
        The (possibly pre-existing) user
    """
    email = _normalize_email(email)
    existing = get_user(db, external_id)
    if existing:
        if existing.email != email:
            return on_email_changed(db, external_id, email)
        return existing

    user = models.User(external_id=external_id, email=email, display_name=display_name)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # Concurrent delivery of the same event
        existing = get_user(db, external_id)
        if existing:
            return existing
        raise ValidationError(f"Email {email} already belongs to another user", field="email")

    db.refresh(user)
    logger.info(f"User {external_id} created")
    return user


def on_email_changed(db: Session, external_id: str, email: str) -> models.User:
    """Propagate a provider email change. Unknown ids are created."""
    email = _normalize_email(email)
    user = get_user(db, external_id)
    if not user:
        return on_user_signed_up(db, external_id, email)
    if user.email == email:
        return user

    old_email = user.email
    user.email = email
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError(f"Email {email} already belongs to another user", field="email")

    logger.info(f"User {external_id} email changed from {old_email} to {email}")
    return user


def record_login(db: Session, external_id: str) -> models.User:
    user = require_user(db, external_id)
    user.last_login_at = models.utcnow()
    db.commit()
    return user


def set_display_name(db: Session, external_id: str, display_name: Optional[str]) -> models.User:
    user = require_user(db, external_id)
    user.display_name = display_name.strip() if display_name else None
    db.commit()
    return user

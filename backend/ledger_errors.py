"""
Ledger Error Taxonomy

Hard failures raised by the ledger services. Degraded-but-successful outcomes
(duplicate skips, reconciliation mismatches, stale prices, nominal-only
snapshots) are not exceptions: they are reported inside result objects.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger failures."""
    pass


class ValidationError(LedgerError):
    """Malformed input row or unknown catalog reference."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFound(LedgerError):
    """Referenced entity does not exist."""
    pass


class PermissionDenied(LedgerError):
    """Access-control gate failure."""

    def __init__(self, message: str, account_id: Optional[int] = None,
                 user_id: Optional[int] = None, capability: Optional[str] = None):
        super().__init__(message)
        self.account_id = account_id
        self.user_id = user_id
        self.capability = capability


class NicknameConflict(LedgerError):
    """User already uses this nickname for a different account."""

    def __init__(self, nickname: str, user_id: int, existing_account_id: Optional[int] = None):
        super().__init__(
            f"Nickname '{nickname}' is already used by user {user_id}"
            + (f" for account {existing_account_id}" if existing_account_id else "")
        )
        self.nickname = nickname
        self.user_id = user_id
        self.existing_account_id = existing_account_id


class LastOwnerViolation(LedgerError):
    """Operation would leave an account without an owner."""
    pass


class DuplicateAccountName(LedgerError):
    """Creator already has an account with this name."""
    pass


class DuplicateAsset(LedgerError):
    """Symbol already registered for this creator scope."""
    pass


class ReferenceInUse(LedgerError):
    """Row is still referenced and cannot be deleted or re-keyed."""
    pass

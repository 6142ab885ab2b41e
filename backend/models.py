from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, Boolean, Date, DateTime, Numeric,
    ForeignKey, JSON, UniqueConstraint, CheckConstraint, Index, text
)
from sqlalchemy.orm import declarative_base, relationship
import datetime
import enum

Base = declarative_base()


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class AccessLevel(str, enum.Enum):
    """Ordered access levels on an account grant."""
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"

    @property
    def rank(self) -> int:
        return {"owner": 3, "editor": 2, "viewer": 1}[self.value]

    @property
    def can_read(self) -> bool:
        return True

    @property
    def can_write(self) -> bool:
        return self in (AccessLevel.OWNER, AccessLevel.EDITOR)


class TransactionSource(str, enum.Enum):
    """How a ledger row came to exist."""
    IMPORT = "import"
    MANUAL = "manual"
    CORRECTION = "correction"


class StatementType(str, enum.Enum):
    INCOME_STATEMENT = "income_statement"
    BALANCE_SHEET = "balance_sheet"
    CASH_FLOW = "cash_flow"
    ESTIMATE = "estimate"


# ═══════════════════════════════════════════════════════════════════════════════
# USERS (mirror of the external identity provider)
# ═══════════════════════════════════════════════════════════════════════════════

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String(64), unique=True, nullable=False, index=True)  # Provider's stable id
    email = Column(String(127), unique=True, nullable=False, index=True)
    display_name = Column(String(127), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    last_login_at = Column(DateTime, nullable=True)

    grants = relationship("AccountAccess", back_populates="user", foreign_keys="AccountAccess.user_id",
                          cascade="all, delete-orphan", passive_deletes=True)


# ═══════════════════════════════════════════════════════════════════════════════
# REFERENCE CATALOGS (infrequently modified)
# ═══════════════════════════════════════════════════════════════════════════════

class AccountType(Base):
    """Valid account types and their tax / liability handling."""
    __tablename__ = "account_types"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(127), unique=True, nullable=False)
    is_taxable = Column(Boolean, nullable=False)       # Unrealized gains ever taxed?
    is_tax_deferred = Column(Boolean, nullable=False)  # Sales this year NOT realized for tax?
    is_liability = Column(Boolean, nullable=False)


class AssetCategory(Base):
    """Asset classes (cash, bonds, equity, alt, ...) and sub-classes."""
    __tablename__ = "asset_categories"
    id = Column(Integer, primary_key=True, index=True)
    cat = Column(String(127), nullable=False)
    sub_cat = Column(String(127), nullable=False)
    is_cash = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("cat", "sub_cat", name="uq_asset_category"),
    )


class TaxCategory(Base):
    __tablename__ = "tax_categories"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(127), unique=True, nullable=False)
    is_capital_gain = Column(Boolean, nullable=False, default=False)
    description = Column(String(255), nullable=True)


class TransactionCategory(Base):
    """
    Valid transaction types.

    position_effect: +1 increases a holding (Buy, Add Item), -1 decreases it
    (Sell, Remove Item), 0 moves cash only (Income, Expense, Transfer).
    """
    __tablename__ = "transaction_categories"
    id = Column(Integer, primary_key=True, index=True)
    cat = Column(String(127), nullable=False)
    sub_cat = Column(String(127), nullable=False)
    is_debit = Column(Boolean, nullable=False, default=False)
    position_effect = Column(Integer, nullable=False, default=0)
    is_reconcile = Column(Boolean, nullable=False, default=False)
    tax_category_id = Column(Integer, ForeignKey("tax_categories.id", ondelete="RESTRICT"), nullable=True)

    tax_category = relationship("TaxCategory")

    __table_args__ = (
        UniqueConstraint("cat", "sub_cat", name="uq_transaction_category"),
        CheckConstraint("position_effect IN (-1, 0, 1)", name="ck_transaction_category_position_effect"),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# ACCOUNTS AND ACCESS
# ═══════════════════════════════════════════════════════════════════════════════

class Account(Base):
    __tablename__ = "accounts"
    id = Column(Integer, primary_key=True, index=True)
    account_type_id = Column(Integer, ForeignKey("account_types.id", ondelete="RESTRICT"), nullable=False)
    name = Column(String(127), nullable=False)  # Per-creator unique
    account_number = Column(String(127), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    account_type = relationship("AccountType")
    creator = relationship("User", foreign_keys=[created_by])
    grants = relationship("AccountAccess", back_populates="account",
                          cascade="all, delete-orphan", passive_deletes=True)
    transactions = relationship("AccountTransaction", back_populates="account",
                                cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("name", "created_by", name="uq_account_name_creator"),
    )


class AccountAccess(Base):
    """Who can access which account, and under which nickname."""
    __tablename__ = "account_access"
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True)
    access_level = Column(String(20), nullable=False)
    can_read = Column(Boolean, nullable=False, default=True)
    can_write = Column(Boolean, nullable=False, default=False)
    nickname = Column(String(127), nullable=False)  # Personal display name, defaults to account name
    granted_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    granted_at = Column(DateTime, default=utcnow, nullable=False)
    notes = Column(Text, nullable=True)

    account = relationship("Account", back_populates="grants")
    user = relationship("User", back_populates="grants", foreign_keys=[user_id])

    __table_args__ = (
        UniqueConstraint("user_id", "nickname", name="uq_nickname_per_user"),
        CheckConstraint("access_level IN ('owner', 'editor', 'viewer')", name="ck_access_level"),
        CheckConstraint("access_level <> 'owner' OR (can_read AND can_write)", name="ck_owner_full_access"),
    )

    @property
    def level(self) -> AccessLevel:
        return AccessLevel(self.access_level)


# ═══════════════════════════════════════════════════════════════════════════════
# ASSETS AND TRANSACTIONS
# ═══════════════════════════════════════════════════════════════════════════════

class Asset(Base):
    """Anything holdable. created_by NULL means a global, system-managed asset."""
    __tablename__ = "assets"
    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String(15), nullable=False, index=True)
    asset_category_id = Column(Integer, ForeignKey("asset_categories.id", ondelete="RESTRICT"), nullable=False)
    description = Column(Text, nullable=True)
    exp_date = Column(Date, nullable=True)  # NULL: no expiration
    created_by = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    category = relationship("AssetCategory")

    __table_args__ = (
        UniqueConstraint("symbol", "created_by", name="uq_asset_symbol_creator"),
        # NULLs are distinct in the constraint above, so globals need their own index
        Index("uix_asset_global_symbol", "symbol", unique=True,
              sqlite_where=text("created_by IS NULL"),
              postgresql_where=text("created_by IS NULL")),
    )


class AccountTransaction(Base):
    """
    Ledger entry. Reconciliation corrections live here too, tagged with the
    reconcile transaction category.
    """
    __tablename__ = "account_transactions"
    id = Column(Integer, primary_key=True, index=True)  # Insertion order, also lot ordering
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    asset_id = Column(Integer, ForeignKey("assets.id", ondelete="RESTRICT"), nullable=False, index=True)
    transaction_category_id = Column(Integer, ForeignKey("transaction_categories.id", ondelete="RESTRICT"),
                                     nullable=False)
    trans_date = Column(Date, nullable=False, index=True)
    price = Column(Numeric(14, 4), nullable=True)
    qty = Column(Numeric(14, 4), nullable=True)
    amount = Column(Numeric(14, 2), nullable=True)
    cost = Column(Numeric(14, 2), nullable=True)
    balance = Column(Numeric(14, 2), nullable=True)  # Imported running cash balance, for reconciliation
    description = Column(Text, nullable=True)
    import_text = Column(Text, nullable=True)
    import_fingerprint = Column(String(80), nullable=False, index=True)
    source = Column(String(20), nullable=False, default=TransactionSource.IMPORT.value)
    corrects_transaction_id = Column(Integer, ForeignKey("account_transactions.id", ondelete="CASCADE"),
                                     nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    account = relationship("Account", back_populates="transactions")
    asset = relationship("Asset")
    category = relationship("TransactionCategory")

    __table_args__ = (
        # CRITICAL: sole dedup mechanism - re-importing a statement must be a no-op
        UniqueConstraint("account_id", "import_fingerprint", name="uq_account_transaction_fingerprint"),
        CheckConstraint("source IN ('import', 'manual', 'correction')", name="ck_account_transaction_source"),
        Index("ix_account_transaction_account_date", "account_id", "trans_date"),
    )


class Watchlist(Base):
    __tablename__ = "watchlists"
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    asset_id = Column(Integer, ForeignKey("assets.id", ondelete="CASCADE"), primary_key=True)
    added_at = Column(DateTime, default=utcnow, nullable=False)

    asset = relationship("Asset")


# ═══════════════════════════════════════════════════════════════════════════════
# EXTERNAL REFERENCE DATA (stored as delivered, never written by the ledger)
# ═══════════════════════════════════════════════════════════════════════════════

class EodPrice(Base):
    __tablename__ = "eod_prices"
    id = Column(Integer, primary_key=True, index=True)
    asset_id = Column(Integer, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)
    open = Column(Numeric(14, 4), nullable=True)
    high = Column(Numeric(14, 4), nullable=True)
    low = Column(Numeric(14, 4), nullable=True)
    close = Column(Numeric(14, 4), nullable=False)
    volume = Column(BigInteger, nullable=True)
    change = Column(Numeric(14, 4), nullable=True)
    change_percent = Column(Numeric(14, 5), nullable=True)
    vwap = Column(Numeric(14, 4), nullable=True)

    __table_args__ = (
        UniqueConstraint("asset_id", "date", name="uq_eod_price_asset_date"),
        Index("ix_eod_price_asset_date", "asset_id", "date"),
    )


class StockProfile(Base):
    __tablename__ = "stock_profiles"
    asset_id = Column(Integer, ForeignKey("assets.id", ondelete="CASCADE"), primary_key=True)
    profile = Column(JSON, nullable=False)  # sector, market cap, exchange, ...
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ReportingPeriod(Base):
    __tablename__ = "reporting_periods"
    id = Column(Integer, primary_key=True, index=True)
    asset_id = Column(Integer, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    end_date = Column(Date, nullable=False)
    filing_date = Column(Date, nullable=False)
    fiscal_year = Column(Integer, nullable=False)
    period = Column(String(2), nullable=False)

    statements = relationship("FinancialStatement", back_populates="reporting_period",
                              cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("asset_id", "filing_date", name="uq_reporting_period_asset_filing"),
        CheckConstraint("period IN ('FY', 'Q1', 'Q2', 'Q3', 'Q4')", name="ck_reporting_period_period"),
        Index("ix_reporting_period_asset_year", "asset_id", "fiscal_year", "period"),
    )


class FinancialStatement(Base):
    """Income statement, balance sheet, cash flow or estimate for one reporting period."""
    __tablename__ = "financial_statements"
    id = Column(Integer, primary_key=True, index=True)
    reporting_period_id = Column(Integer, ForeignKey("reporting_periods.id", ondelete="CASCADE"), nullable=False)
    statement_type = Column(String(30), nullable=False)
    reported_currency = Column(String(3), nullable=True)
    filing_date = Column(Date, nullable=True)
    payload = Column(JSON, nullable=False)

    reporting_period = relationship("ReportingPeriod", back_populates="statements")

    __table_args__ = (
        UniqueConstraint("reporting_period_id", "statement_type", name="uq_financial_statement_period_type"),
        CheckConstraint(
            "statement_type IN ('income_statement', 'balance_sheet', 'cash_flow', 'estimate')",
            name="ck_financial_statement_type"
        ),
    )


class InflationIndex(Base):
    __tablename__ = "inflation_index"
    id = Column(Integer, primary_key=True, index=True)
    series_id = Column(String(40), nullable=False)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    value = Column(Numeric(12, 4), nullable=False)

    __table_args__ = (
        UniqueConstraint("series_id", "year", "month", name="uq_inflation_index_point"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_inflation_index_month"),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# NAV SNAPSHOTS
# ═══════════════════════════════════════════════════════════════════════════════

class NavSnapshot(Base):
    __tablename__ = "nav_snapshots"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    as_of = Column(Date, nullable=False)
    total_nominal = Column(Numeric(16, 2), nullable=False)
    total_real = Column(Numeric(16, 2), nullable=True)
    is_nominal_only = Column(Boolean, nullable=False, default=True)
    is_complete = Column(Boolean, nullable=False, default=True)
    cpi_series = Column(String(40), nullable=True)
    cpi_base_value = Column(Numeric(12, 4), nullable=True)
    cpi_as_of_value = Column(Numeric(12, 4), nullable=True)
    warnings = Column(JSON, nullable=True)
    computed_at = Column(DateTime, default=utcnow, nullable=False)

    lines = relationship("NavSnapshotLine", back_populates="snapshot",
                         cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("user_id", "as_of", name="uq_nav_snapshot_user_date"),
    )


class NavSnapshotLine(Base):
    __tablename__ = "nav_snapshot_lines"
    id = Column(Integer, primary_key=True, index=True)
    snapshot_id = Column(Integer, ForeignKey("nav_snapshots.id", ondelete="CASCADE"), nullable=False)
    asset_category_id = Column(Integer, ForeignKey("asset_categories.id", ondelete="RESTRICT"), nullable=False)
    category_label = Column(String(255), nullable=False)
    is_liability = Column(Boolean, nullable=False, default=False)  # Balance owed on a liability account
    nominal_value = Column(Numeric(16, 2), nullable=False)
    real_value = Column(Numeric(16, 2), nullable=True)

    snapshot = relationship("NavSnapshot", back_populates="lines")

    __table_args__ = (
        UniqueConstraint("snapshot_id", "asset_category_id", "is_liability", name="uq_nav_line_category"),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# AUDIT
# ═══════════════════════════════════════════════════════════════════════════════

class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow)
    user = Column(String)  # Acting users.id, stored as text
    action = Column(String)  # Create, Grant, Revoke, Import, Correct, Delete
    resource_type = Column(String)  # Account, AccountAccess, AccountTransaction, NavSnapshot
    resource_id = Column(Integer, nullable=True)
    changes = Column(JSON, nullable=True)

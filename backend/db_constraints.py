"""
Database Constraints for the Append-Only Ledger

Ledger rows are never edited in place; reconciliation fixes are new rows.
The triggers below enforce that at database level, so a direct SQL update
fails even if application checks are bypassed.
"""

from typing import Dict, List
from sqlalchemy import DDL, inspect
from sqlalchemy.engine import Engine
import logging

logger = logging.getLogger(__name__)

# Columns that make up a ledger fact
IMMUTABLE_TRANSACTION_COLUMNS = [
    "account_id", "asset_id", "transaction_category_id", "trans_date",
    "price", "qty", "amount", "cost", "balance", "import_fingerprint",
]

REQUIRED_UNIQUE_CONSTRAINTS = {
    "account_transactions": "uq_account_transaction_fingerprint",
    "account_access": "uq_nickname_per_user",
    "accounts": "uq_account_name_creator",
    "assets": "uq_asset_symbol_creator",
    "eod_prices": "uq_eod_price_asset_date",
    "nav_snapshots": "uq_nav_snapshot_user_date",
}


def create_ledger_constraints(engine: Engine):
    """
    Install the append-only triggers on account_transactions.

    Safe to call repeatedly (CREATE ... IF NOT EXISTS / OR REPLACE).
    """
    columns = ", ".join(IMMUTABLE_TRANSACTION_COLUMNS)

    if engine.dialect.name == 'sqlite':
        update_trigger_sql = f"""
        CREATE TRIGGER IF NOT EXISTS prevent_ledger_row_update
        BEFORE UPDATE OF {columns} ON account_transactions
        FOR EACH ROW
        BEGIN
            SELECT RAISE(ABORT, 'Ledger rows are append-only. Post a correction instead.');
        END;
        """

        with engine.connect() as conn:
            conn.execute(DDL(update_trigger_sql))
            conn.commit()

    elif engine.dialect.name == 'postgresql':
        function_sql = """
        CREATE OR REPLACE FUNCTION prevent_ledger_row_update() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'Ledger rows are append-only. Post a correction instead.';
        END;
        $$ LANGUAGE plpgsql;
        """
        trigger_sql = f"""
        DO $$
        BEGIN
            IF NOT EXISTS (
                SELECT 1 FROM pg_trigger WHERE tgname = 'prevent_ledger_row_update'
            ) THEN
                CREATE TRIGGER prevent_ledger_row_update
                BEFORE UPDATE OF {columns} ON account_transactions
                FOR EACH ROW EXECUTE FUNCTION prevent_ledger_row_update();
            END IF;
        END $$;
        """

        with engine.connect() as conn:
            conn.execute(DDL(function_sql))
            conn.execute(DDL(trigger_sql))
            conn.commit()

    else:
        logger.warning(f"No append-only trigger for dialect {engine.dialect.name}; relying on application checks")


def verify_ledger_constraints(engine: Engine) -> Dict[str, List[str]]:
    """
    Report which required unique constraints are missing from the live schema.

    Returns:
        {"missing": [...], "present": [...]} with "table.constraint" entries
    """
    inspector = inspect(engine)
    missing, present = [], []

    for table, constraint in REQUIRED_UNIQUE_CONSTRAINTS.items():
        names = {uc.get("name") for uc in inspector.get_unique_constraints(table)}
        # SQLite may surface named UNIQUE table constraints as unique indexes
        names |= {ix.get("name") for ix in inspector.get_indexes(table) if ix.get("unique")}
        key = f"{table}.{constraint}"
        if constraint in names:
            present.append(key)
        else:
            missing.append(key)

    if missing:
        logger.error(f"Missing ledger constraints: {missing}")
    return {"missing": missing, "present": present}

"""
Concurrency Tests

Each worker thread gets its own session on a file-backed SQLite database, so
the threads really share one store. Verifies that:
1. Racing imports of one statement persist every row exactly once
2. An insert that loses the race counts as a duplicate, not an error
3. Grant changes on one account are serialized
4. Owners dropping themselves at the same time never orphan the account
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.orm import sessionmaker

import models
import ledger_import_service
from access_service import create_account, grant, revoke, get_grant
from catalog_service import invalidate_catalog
from database import build_engine, init_db
from identity_service import on_user_signed_up
from ledger_errors import LastOwnerViolation
from ledger_import_service import import_batch

WORKERS = 4


@pytest.fixture
def file_engine(tmp_path, ledger_config):
    invalidate_catalog()
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield engine
    invalidate_catalog()
    engine.dispose()


@pytest.fixture
def session_factory(file_engine):
    return sessionmaker(bind=file_engine)


@pytest.fixture
def household(session_factory):
    """Users and one checking account, committed before any worker starts."""
    db = session_factory()
    try:
        users = {
            name: on_user_signed_up(db, f"ext-{name}", f"{name}@example.com", name.title()).id
            for name in ("alice", "bob", "carol", "dave", "erin")
        }
        users["account"] = create_account(db, users["alice"], "Checking", "Checking").id
        return users
    finally:
        db.close()


def run_together(session_factory, work, workers=WORKERS):
    """Start `work(db, index)` in every worker at once; returns the finished futures."""
    barrier = threading.Barrier(workers)

    def worker(index):
        db = session_factory()
        try:
            barrier.wait()
            return work(db, index)
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(worker, i) for i in range(workers)]
    return futures


def statement_rows(count=5):
    return [
        {"date": f"2024-01-{day:02d}", "description": f"Payroll {day}",
         "amount": f"{1000 + day}.00", "category": "Income:Salary"}
        for day in range(1, count + 1)
    ]


# ═══════════════════════════════════════════════════════════════════════════════
# IMPORT RACES
# ═══════════════════════════════════════════════════════════════════════════════

class TestConcurrentImport:

    def test_same_statement_from_many_threads_lands_once(self, session_factory, household):
        rows = statement_rows()

        futures = run_together(
            session_factory,
            lambda db, _: import_batch(db, household["account"], household["alice"], rows)
        )
        results = [f.result() for f in futures]

        assert sum(r.inserted for r in results) == len(rows)
        for r in results:
            assert r.inserted + r.skipped_duplicate == len(rows)
            assert r.rejected == 0

        db = session_factory()
        try:
            stored = db.query(models.AccountTransaction).filter(
                models.AccountTransaction.account_id == household["account"]
            ).all()
            assert len(stored) == len(rows)
            assert len({t.import_fingerprint for t in stored}) == len(rows)
        finally:
            db.close()

    def test_lost_insert_counts_as_duplicate(self, db_session, alice, checking_account, payroll_row,
                                             monkeypatch):
        import_batch(db_session, checking_account.id, alice.id, [payroll_row])

        real_exists = ledger_import_service._fingerprint_exists
        calls = []

        def stale_first_look(db, account_id, fingerprint):
            calls.append(fingerprint)
            # The pre-check runs before the other import commits
            if len(calls) == 1:
                return False
            return real_exists(db, account_id, fingerprint)

        monkeypatch.setattr(ledger_import_service, "_fingerprint_exists", stale_first_look)
        result = import_batch(db_session, checking_account.id, alice.id, [payroll_row])

        assert result.inserted == 0
        assert result.skipped_duplicate == 1
        assert len(calls) == 2
        assert db_session.query(models.AccountTransaction).count() == 1

    def test_session_usable_after_lost_insert(self, db_session, alice, checking_account, payroll_row,
                                              monkeypatch):
        import_batch(db_session, checking_account.id, alice.id, [payroll_row])
        real_exists = ledger_import_service._fingerprint_exists
        missed = set()

        def miss_once(db, account_id, fingerprint):
            if fingerprint not in missed:
                missed.add(fingerprint)
                return False
            return real_exists(db, account_id, fingerprint)

        monkeypatch.setattr(ledger_import_service, "_fingerprint_exists", miss_once)
        later = dict(payroll_row, date="2024-01-19", description="Payroll Jan 19")
        result = import_batch(db_session, checking_account.id, alice.id, [payroll_row, later])

        assert result.skipped_duplicate == 1
        assert result.inserted == 1
        assert db_session.query(models.AccountTransaction).count() == 2


# ═══════════════════════════════════════════════════════════════════════════════
# GRANT RACES
# ═══════════════════════════════════════════════════════════════════════════════

class TestConcurrentGrants:

    def test_grants_to_one_user_never_duplicate(self, session_factory, household):
        levels = ["read", "write", "read", "write"]

        futures = run_together(
            session_factory,
            lambda db, i: grant(db, household["account"], household["alice"], household["bob"], levels[i]).id
        )
        grant_ids = {f.result() for f in futures}

        assert len(grant_ids) == 1
        db = session_factory()
        try:
            rows = db.query(models.AccountAccess).filter(
                models.AccountAccess.account_id == household["account"],
                models.AccountAccess.user_id == household["bob"]
            ).all()
            assert len(rows) == 1
        finally:
            db.close()

    def test_grants_to_different_users_all_land(self, session_factory, household):
        grantees = [household[name] for name in ("bob", "carol", "dave", "erin")]

        futures = run_together(
            session_factory,
            lambda db, i: grant(db, household["account"], household["alice"], grantees[i], "read")
        )
        for f in futures:
            f.result()

        db = session_factory()
        try:
            assert db.query(models.AccountAccess).filter(
                models.AccountAccess.account_id == household["account"]
            ).count() == 1 + len(grantees)
        finally:
            db.close()

    def test_two_owners_leaving_at_once_keep_one_owner(self, session_factory, household):
        db = session_factory()
        try:
            grant(db, household["account"], household["alice"], household["bob"], "owner")
        finally:
            db.close()
        owners = [household["alice"], household["bob"]]

        futures = run_together(
            session_factory,
            lambda db, i: revoke(db, household["account"], owners[i], owners[i]),
            workers=2
        )
        errors = [f.exception() for f in futures]

        assert errors.count(None) == 1
        assert sum(isinstance(e, LastOwnerViolation) for e in errors) == 1

        db = session_factory()
        try:
            remaining = [get_grant(db, household["account"], user_id) for user_id in owners]
            survivors = [g for g in remaining if g is not None]
            assert len(survivors) == 1
            assert survivors[0].access_level == "owner"
        finally:
            db.close()

"""
HTTP surface tests (FastAPI TestClient).
"""

import pytest

pytestmark = pytest.mark.integration


def _headers(external_id):
    return {"X-User-Id": external_id}


@pytest.fixture
def api_users(client):
    for external_id, email in [("ext-alice", "alice@example.com"), ("ext-bob", "bob@example.com")]:
        response = client.post("/api/v1/identity/signed-up", json={"external_id": external_id, "email": email})
        assert response.status_code == 200
    return client


@pytest.fixture
def api_account(api_users):
    response = api_users.post("/api/v1/accounts", headers=_headers("ext-alice"),
                              json={"name": "Checking", "account_type": "Checking"})
    assert response.status_code == 201
    return response.json()["id"]


class TestIdentityAndAccounts:

    def test_missing_caller_header(self, client):
        assert client.get("/api/v1/accounts").status_code == 401

    def test_unknown_caller(self, client):
        assert client.get("/api/v1/accounts", headers=_headers("ext-ghost")).status_code == 401

    def test_create_and_list(self, api_users, api_account):
        accounts = api_users.get("/api/v1/accounts", headers=_headers("ext-alice")).json()
        assert accounts == [{
            "account_id": api_account, "name": "Checking", "nickname": "Checking",
            "access_level": "owner", "account_type": "Checking", "account_number": None,
        }]

    def test_duplicate_account_is_conflict(self, api_users, api_account):
        response = api_users.post("/api/v1/accounts", headers=_headers("ext-alice"),
                                  json={"name": "Checking", "account_type": "Savings"})
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "DuplicateAccountName"

    def test_grant_and_revoke(self, api_users, api_account):
        response = api_users.put(f"/api/v1/accounts/{api_account}/grants", headers=_headers("ext-alice"),
                                 json={"grantee_external_id": "ext-bob", "level": "viewer"})
        assert response.status_code == 200
        assert response.json()["can_write"] is False

        bob_view = api_users.get(f"/api/v1/accounts/{api_account}/grants", headers=_headers("ext-bob"))
        assert bob_view.status_code == 200
        assert len(bob_view.json()) == 2

        revoked = api_users.delete(f"/api/v1/accounts/{api_account}/grants/ext-bob", headers=_headers("ext-alice"))
        assert revoked.json() == {"revoked": True}

    def test_last_owner_cannot_leave(self, api_users, api_account):
        response = api_users.delete(f"/api/v1/accounts/{api_account}/grants/ext-alice",
                                    headers=_headers("ext-alice"))
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "LastOwnerViolation"

    def test_stranger_gets_forbidden(self, api_users, api_account):
        response = api_users.get(f"/api/v1/accounts/{api_account}/transactions", headers=_headers("ext-bob"))
        assert response.status_code == 403
        assert response.json()["detail"]["capability"] == "read"


class TestLedgerEndpoints:

    def test_json_import_is_idempotent(self, api_users, api_account):
        body = {"rows": [{"date": "2024-01-15", "description": "PAYROLL ACME CORP", "amount": "2000.00",
                          "balance": "2000.00", "category": "Income:Salary"}]}

        first = api_users.post(f"/api/v1/accounts/{api_account}/import", headers=_headers("ext-alice"), json=body)
        second = api_users.post(f"/api/v1/accounts/{api_account}/import", headers=_headers("ext-alice"), json=body)

        assert first.json()["inserted"] == 1
        assert second.json()["inserted"] == 0
        assert second.json()["skipped_duplicate"] == 1

        rows = api_users.get(f"/api/v1/accounts/{api_account}/transactions", headers=_headers("ext-alice")).json()
        assert [r["amount"] for r in rows] == ["2000.00"]

    def test_statement_upload(self, api_users, api_account):
        csv_bytes = b"Date,Description,Amount,Balance\n2024-01-02,Coffee,-4.50,-4.50\n"
        response = api_users.post(
            f"/api/v1/accounts/{api_account}/statements", headers=_headers("ext-alice"),
            files={"file": ("jan.csv", csv_bytes, "text/csv")},
            data={"default_category": "Expense:Other"},
        )
        assert response.status_code == 200
        payload = response.json()
        assert payload["inserted"] == 1
        assert payload["filename"] == "jan.csv"

    def test_reconcile_and_correct(self, api_users, api_account):
        body = {"rows": [
            {"date": "2024-01-01", "amount": "100", "balance": "100", "category": "Transfer:In"},
            {"date": "2024-01-02", "amount": "-30", "balance": "65", "category": "Expense:Other"},
        ]}
        imported = api_users.post(f"/api/v1/accounts/{api_account}/import", headers=_headers("ext-alice"),
                                  json=body).json()
        mismatched_id = imported["transaction_ids"][1]

        report = api_users.get(f"/api/v1/accounts/{api_account}/reconciliation", headers=_headers("ext-alice")).json()
        assert report["is_reconciled"] is False
        assert report["discrepancies"][0]["delta"] == "-5.00"
        assert report["opening_balance"] == "0.00"

        correction = api_users.post(
            f"/api/v1/accounts/{api_account}/transactions/{mismatched_id}/correction", headers=_headers("ext-alice"))
        assert correction.status_code == 201
        assert correction.json()["amount"] == "-5.00"

        again = api_users.post(
            f"/api/v1/accounts/{api_account}/transactions/{mismatched_id}/correction", headers=_headers("ext-alice"))
        assert again.status_code == 422

        report = api_users.get(f"/api/v1/accounts/{api_account}/reconciliation", headers=_headers("ext-alice")).json()
        assert report["is_reconciled"] is True

    def test_manual_entry(self, api_users, api_account):
        response = api_users.post(f"/api/v1/accounts/{api_account}/transactions", headers=_headers("ext-alice"),
                                  json={"trans_date": "2024-03-01", "amount": "20", "category": "Expense:Other"})
        assert response.status_code == 201
        assert response.json()["source"] == "manual"

    def test_bad_category_default_is_validation_error(self, api_users, api_account):
        response = api_users.post(f"/api/v1/accounts/{api_account}/import", headers=_headers("ext-alice"),
                                  json={"rows": [], "default_category": "Nope:Nothing"})
        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "category"


class TestValuationEndpoints:

    def test_nav_round_trip(self, api_users, api_account):
        api_users.post(f"/api/v1/accounts/{api_account}/import", headers=_headers("ext-alice"),
                       json={"rows": [{"date": "2024-01-15", "amount": "2000", "category": "Income:Salary"}]})

        computed = api_users.post("/api/v1/nav", headers=_headers("ext-alice"), json={"as_of": "2024-02-01"})
        assert computed.status_code == 200
        assert computed.json()["total_nominal"] == "2000.00"
        assert computed.json()["is_nominal_only"] is True

        stored = api_users.get("/api/v1/nav/2024-02-01", headers=_headers("ext-alice"))
        assert stored.json()["snapshot_id"] == computed.json()["snapshot_id"]

    def test_missing_snapshot(self, api_users):
        assert api_users.get("/api/v1/nav/2024-02-01", headers=_headers("ext-alice")).status_code == 404

    def test_private_asset_and_watchlist(self, api_users):
        created = api_users.post("/api/v1/assets", headers=_headers("ext-alice"),
                                 json={"symbol": "house1", "category": "Alternative:Real Estate"})
        assert created.status_code == 201
        asset_id = created.json()["id"]
        assert created.json()["is_global"] is False

        api_users.put(f"/api/v1/watchlist/{asset_id}", headers=_headers("ext-alice"))
        watchlist = api_users.get("/api/v1/watchlist", headers=_headers("ext-alice")).json()
        assert [a["symbol"] for a in watchlist] == ["HOUSE1"]

        assert api_users.put(f"/api/v1/watchlist/{asset_id}", headers=_headers("ext-bob")).status_code == 404

"""
Integration tests for the Loan Servicing API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from loan_servicing.api import create_app
from loan_servicing.config import ServicingConfig
from loan_servicing.engine import LoanServicingEngine
from loan_servicing.storage import InMemoryStorage

ACME = {"X-Tenant-ID": "acme"}
GLOBEX = {"X-Tenant-ID": "globex"}

LOAN_REQUEST = {
    "customer_id": "CUST-1",
    "principal": "12000",
    "annual_rate_pct": "12",
    "term_months": 12,
    "start_date": "2024-01-01",
    "loan_id": "L1",
}


@pytest.fixture
def client():
    """Create a test client backed by an in-memory engine"""
    engine = LoanServicingEngine(storage=InMemoryStorage(), config=ServicingConfig(database_url="memory://"))
    with TestClient(create_app(engine)) as client:
        yield client


@pytest.fixture
def disbursed_loan(client):
    assert client.post("/loans", json=LOAN_REQUEST, headers=ACME).status_code == 201
    r = client.post("/loans/L1/disburse", headers=ACME)
    assert r.status_code == 201
    return r.json()


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "endpoints" in r.json()


class TestTenantHeader:

    def test_missing_header(self, client):
        r = client.get("/loans")
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_input"

    def test_invalid_header(self, client):
        r = client.get("/loans", headers={"X-Tenant-ID": "a/b"})
        assert r.status_code == 400

    def test_other_tenant_sees_nothing(self, client, disbursed_loan):
        assert client.get("/loans/L1", headers=GLOBEX).status_code == 404
        assert client.get("/loans/L1/schedule", headers=GLOBEX).status_code == 404
        assert client.get("/loans", headers=GLOBEX).json()["count"] == 0


class TestLoanFlow:
    """End-to-end loan lifecycle"""

    def test_register_loan(self, client):
        r = client.post("/loans", json=LOAN_REQUEST, headers=ACME)
        assert r.status_code == 201
        data = r.json()
        assert data["loan_id"] == "L1"
        assert data["status"] == "pending"
        assert data["principal"] == "12000.00"

    def test_register_duplicate(self, client):
        client.post("/loans", json=LOAN_REQUEST, headers=ACME)
        r = client.post("/loans", json=LOAN_REQUEST, headers=ACME)
        assert r.status_code == 409
        assert r.json()["error"] == "duplicate_loan"

    def test_register_invalid_terms(self, client):
        r = client.post("/loans", json={**LOAN_REQUEST, "term_months": 0}, headers=ACME)
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_schedule_parameters"

    def test_approve_and_reject(self, client):
        client.post("/loans", json=LOAN_REQUEST, headers=ACME)
        assert client.post("/loans/L1/approve", headers=ACME).json()["status"] == "approved"
        r = client.post("/loans/L1/reject", json={"reason": "withdrawn"}, headers=ACME)
        assert r.json()["status"] == "rejected"
        assert r.json()["status_reason"] == "withdrawn"
        assert client.post("/loans/L1/approve", headers=ACME).status_code == 409

    def test_create_schedule(self, client):
        client.post("/loans", json=LOAN_REQUEST, headers=ACME)
        r = client.post("/loans/L1/schedule", json={
            "principal": "12000",
            "annual_rate_pct": "12",
            "term_months": 12,
            "start_date": "2024-01-01",
            "method": "reducing_balance",
        }, headers=ACME)
        assert r.status_code == 201
        data = r.json()
        assert data["loan"]["status"] == "disbursed"
        assert len(data["entries"]) == 12
        assert data["entries"][0]["total_due"] == "1066.19"
        assert data["entries"][0]["due_date"] == "2024-02-01"

        again = client.post("/loans/L1/schedule", json={
            "principal": "12000", "annual_rate_pct": "12", "term_months": 12, "start_date": "2024-01-01",
        }, headers=ACME)
        assert again.status_code == 409
        assert again.json()["error"] == "schedule_already_exists"

    def test_get_schedule_before_disbursement(self, client):
        client.post("/loans", json=LOAN_REQUEST, headers=ACME)
        r = client.get("/loans/L1/schedule", headers=ACME)
        assert r.status_code == 200
        assert r.json()["entries"] == []

    def test_list_loans_by_status(self, client, disbursed_loan):
        client.post("/loans", json={**LOAN_REQUEST, "loan_id": "L2"}, headers=ACME)
        r = client.get("/loans", params={"status": "disbursed"}, headers=ACME)
        assert [loan["loan_id"] for loan in r.json()["loans"]] == ["L1"]
        assert client.get("/loans", params={"status": "lost"}, headers=ACME).status_code == 400

    def test_unknown_loan(self, client):
        r = client.get("/loans/missing", headers=ACME)
        assert r.status_code == 404
        assert r.json()["error"] == "loan_not_found"


class TestPaymentFlow:

    def test_apply_payment(self, client, disbursed_loan):
        r = client.post("/loans/L1/payments", json={
            "amount": "1066.19", "idempotency_key": "pay-1", "received_at": "2024-02-01T09:00:00",
        }, headers=ACME)
        assert r.status_code == 200
        data = r.json()
        assert data["replayed"] is False
        assert data["applied_entries"][0]["status"] == "paid"
        assert data["interest_applied"] == "120.00"
        assert data["principal_applied"] == "946.19"
        assert data["outstanding_balance"] == "11053.81"

        loan = client.get("/loans/L1", headers=ACME).json()
        assert loan["outstanding_balance"] == "11053.81"
        assert loan["last_payment_date"] == "2024-02-01"

    def test_retry_is_replayed(self, client, disbursed_loan):
        body = {"amount": "500", "idempotency_key": "pay-1"}
        first = client.post("/loans/L1/payments", json=body, headers=ACME).json()
        second = client.post("/loans/L1/payments", json=body, headers=ACME).json()
        assert second["replayed"] is True
        assert second["applied_entries"] == first["applied_entries"]
        assert len(client.get("/loans/L1/payments", headers=ACME).json()["payments"]) == 1

    def test_invalid_amount(self, client, disbursed_loan):
        r = client.post("/loans/L1/payments", json={"amount": "-5", "idempotency_key": "pay-1"}, headers=ACME)
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_amount"

    def test_pending_loan_not_active(self, client):
        client.post("/loans", json=LOAN_REQUEST, headers=ACME)
        r = client.post("/loans/L1/payments", json={"amount": "100", "idempotency_key": "pay-1"}, headers=ACME)
        assert r.status_code == 409
        assert r.json()["error"] == "loan_not_active"

    def test_overpayment_closes_loan(self, client):
        client.post("/loans", json={**LOAN_REQUEST, "principal": "600", "annual_rate_pct": "0", "term_months": 2},
                    headers=ACME)
        client.post("/loans/L1/disburse", headers=ACME)
        data = client.post("/loans/L1/payments", json={"amount": "650", "idempotency_key": "pay-1"},
                           headers=ACME).json()
        assert data["remainder"] == "50.00"
        assert data["loan_status"] == "closed"


class TestCustomersAndPortfolio:

    def test_credit_score(self, client, disbursed_loan):
        r = client.put("/customers/CUST-1", json={"name": "Ada", "joined_on": "2023-01-01"}, headers=ACME)
        assert r.status_code == 200
        assert r.json()["joined_on"] == "2023-01-01"

        r = client.get("/customers/CUST-1/credit-score", params={"as_of": "2024-01-01"}, headers=ACME)
        assert r.status_code == 200
        data = r.json()
        assert data["customer_id"] == "CUST-1"
        assert 300 <= data["score"] <= 850
        assert {factor["name"] for factor in data["factors"]} >= {"loan_history", "payment_history", "tenure"}

    def test_unknown_customer(self, client):
        r = client.get("/customers/nobody/credit-score", headers=ACME)
        assert r.status_code == 404
        assert r.json()["error"] == "customer_not_found"

    def test_portfolio_metrics(self, client, disbursed_loan):
        r = client.get("/portfolio/metrics", params={"as_of": "2024-01-15"}, headers=ACME)
        assert r.status_code == 200
        data = r.json()
        assert data["total_loans"] == 1
        assert data["loans_by_status"]["disbursed"] == 1
        assert data["overdue_pressure"] == "10.00"
        assert data["health_score"] == 91
        assert data["health_band"] == "Excellent"


class TestAdminAndImport:

    def test_sweep_overdue(self, client, disbursed_loan):
        r = client.post("/admin/sweep-overdue", json={"as_of": "2024-04-15"}, headers=ACME)
        assert r.status_code == 200
        assert r.json()["entries_marked_overdue"] == 3
        schedule = client.get("/loans/L1/schedule", headers=ACME).json()["entries"]
        assert [entry["status"] for entry in schedule[:4]] == ["overdue", "overdue", "overdue", "pending"]

    def test_audit_verify(self, client, disbursed_loan):
        r = client.get("/admin/audit/verify")
        assert r.status_code == 200
        assert r.json()["valid"] is True
        assert r.json()["total_events"] == 2

    def test_import_csv(self, client):
        csv_data = (
            "customer_id,principal,annual_rate_pct,term_months,start_date,loan_id\n"
            "CUST-1,1000,5,12,2024-01-01,L1\n"
            "CUST-2,oops,5,12,2024-01-01,L2\n"
        )
        r = client.post("/loans/import", json={"csvData": csv_data}, headers=ACME)
        assert r.status_code == 200
        data = r.json()
        assert data["success"] == 1
        assert data["loan_ids"] == ["L1"]
        assert data["errors"][0]["row"] == 3

    def test_import_missing_columns(self, client):
        r = client.post("/loans/import", json={"csv_data": "customer_id\nCUST-1\n"}, headers=ACME)
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_csv"

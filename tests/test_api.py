"""End-to-end tests through the HTTP layer."""

from datetime import date, timedelta
from decimal import Decimal

API = "/api/billing"


def _num(v):
    return Decimal(str(v))


def _create(client, headers, **kw):
    body = {
        "patient_id": 1,
        "items": [{
            "description": "Consultation",
            "unit_price": "100",
            "discount_percentage": "10",
        }],
        "discount": "5",
        "tax_rate": "10",
        "issue": True,
    }
    body.update(kw)
    r = client.post(f"{API}/bills", json=body, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()["data"]


class TestAuth:
    """Header-based user context and permission checks."""

    def test_missing_user_is_401(self, client):
        r = client.get(f"{API}/bills")
        assert r.status_code == 401
        assert r.json() == {"status": False, "data": None,
                            "error": {"msg": "Not authenticated", "code": None}}

    def test_missing_permission_is_403(self, client):
        r = client.post(f"{API}/bills",
                        json={"patient_id": 1},
                        headers={"X-User-Id": "5", "X-User-Role": "doctor"})
        assert r.status_code == 403
        assert r.json()["status"] is False

    def test_revoked_permission(self, client):
        headers = {"X-User-Id": "5", "X-User-Role": "cashier",
                   "X-User-Revokes": "create-bills"}
        r = client.post(f"{API}/bills", json={"patient_id": 1}, headers=headers)
        assert r.status_code == 403


class TestBillFlow:
    """Create, pay, void."""

    def test_create_and_pay(self, client, admin_headers):
        bill = _create(client, admin_headers)
        assert bill["bill_number"].startswith("BL-")
        assert bill["status"] == "pending"
        assert _num(bill["total_amount"]) == Decimal("93.50")

        r = client.post(f"{API}/bills/{bill['id']}/payments",
                        json={"method": "CASH", "amount": "93.50",
                              "amount_tendered": "100"},
                        headers=admin_headers)
        assert r.status_code == 201, r.text
        data = r.json()["data"]
        assert _num(data["payment"]["change_due"]) == Decimal("6.50")
        assert data["bill"]["status"] == "paid"
        assert _num(data["bill"]["balance_due"]) == 0

        r = client.get(f"{API}/bills/{bill['id']}/payment-stats",
                       headers=admin_headers)
        assert r.json()["data"]["payment_count"] == 1

    def test_locked_bill_returns_409(self, client, admin_headers):
        bill = _create(client, admin_headers)
        client.post(f"{API}/bills/{bill['id']}/payments",
                    json={"method": "cash", "amount": "93.50"},
                    headers=admin_headers)
        r = client.post(f"{API}/bills/{bill['id']}/items",
                        json={"description": "X-Ray", "unit_price": "40"},
                        headers=admin_headers)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "BillLockedError"

    def test_void(self, client, admin_headers):
        bill = _create(client, admin_headers)
        r = client.post(f"{API}/bills/{bill['id']}/void",
                        json={"reason": "short"}, headers=admin_headers)
        assert r.status_code == 422

        r = client.post(f"{API}/bills/{bill['id']}/void",
                        json={"reason": "Duplicate of an earlier bill"},
                        headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["data"]["status"] == "void"

        r = client.post(f"{API}/bills/{bill['id']}/payments",
                        json={"method": "cash", "amount": "10"},
                        headers=admin_headers)
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "InvalidPaymentError"

        history = client.get(f"{API}/bills/{bill['id']}/history",
                             headers=admin_headers).json()["data"]
        assert history[-1]["status_to"] == "void"

    def test_unknown_bill_is_404(self, client, admin_headers):
        r = client.get(f"{API}/bills/999", headers=admin_headers)
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "BillNotFoundError"

    def test_stale_version_is_409(self, client, admin_headers):
        bill = _create(client, admin_headers)
        r = client.post(f"{API}/bills/{bill['id']}/discount",
                        json={"value": "1", "expected_version": bill["version"] + 3},
                        headers=admin_headers)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "ConcurrencyConflictError"

    def test_duplicate_source_item_is_no_op(self, client, admin_headers):
        bill = _create(client, admin_headers)
        item = {"description": "MRI", "unit_price": "300",
                "item_type": "department_service",
                "source_type": "radiology_order", "source_id": 44}
        first = client.post(f"{API}/bills/{bill['id']}/items", json=item,
                            headers=admin_headers)
        assert first.status_code == 201
        again = client.post(f"{API}/bills/{bill['id']}/items", json=item,
                            headers=admin_headers)
        assert again.status_code == 200
        assert again.json()["data"]["duplicate"] is True
        assert again.json()["data"]["bill_item_id"] == first.json()["data"]["id"]


class TestInsuranceFlow:
    """Policy, coverage and claim decision over HTTP."""

    def test_claim_approval(self, client, admin_headers):
        r = client.post(f"{API}/policies", json={
            "patient_id": 1,
            "provider_name": "Acme Health",
            "policy_number": "POL-001",
            "co_pay_percentage": "20",
            "deductible_amount": "50",
        }, headers=admin_headers)
        assert r.status_code == 201, r.text
        policy_id = r.json()["data"]["id"]

        bill = _create(client, admin_headers)
        r = client.post(f"{API}/bills/{bill['id']}/coverage",
                        json={"insurance_id": policy_id}, headers=admin_headers)
        assert _num(r.json()["data"]["coverage"]["insurer_share"]) == Decimal("34.80")

        claim = client.post(f"{API}/bills/{bill['id']}/claims", json={},
                            headers=admin_headers).json()["data"]
        for step in ("submit", "review"):
            r = client.post(f"{API}/claims/{claim['id']}/{step}",
                            headers=admin_headers)
            assert r.status_code == 200, r.text
        r = client.post(f"{API}/claims/{claim['id']}/approve",
                        json={"approved_amount": "34.80"}, headers=admin_headers)
        data = r.json()["data"]
        assert data["claim"]["status"] == "approved"
        assert _num(data["bill"]["balance_due"]) == Decimal("58.70")

        r = client.post(f"{API}/claims/{claim['id']}/approve",
                        json={"approved_amount": "34.80"}, headers=admin_headers)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "ClaimStateError"


class TestHooks:
    """Completion hooks over HTTP."""

    def test_appointment_completed(self, client, admin_headers):
        body = {"appointment_id": 21, "patient_id": 3, "fee": "75",
                "doctor_name": "Mehta"}
        r = client.post(f"{API}/hooks/appointment-completed", json=body,
                        headers=admin_headers)
        assert r.status_code == 200
        [res] = r.json()["data"]
        assert res["outcome"] == "billed"

        r = client.post(f"{API}/hooks/appointment-completed", json=body,
                        headers=admin_headers)
        assert r.json()["data"][0]["outcome"] == "duplicate"

        bills = client.get(f"{API}/bills", params={"patient_id": 3},
                           headers=admin_headers).json()["data"]
        assert len(bills) == 1
        assert _num(bills[0]["total_amount"]) == Decimal("75")

    def test_hook_needs_create_permission(self, client):
        r = client.post(f"{API}/hooks/lab-result-completed",
                        json={"result_id": 1, "patient_id": 1,
                              "test_name": "CBC", "cost": "10"},
                        headers={"X-User-Id": "5", "X-User-Role": "doctor"})
        assert r.status_code == 403


class TestPaymentVoid:
    """Reversing a payment over HTTP."""

    def test_void_payment(self, client, admin_headers):
        bill = _create(client, admin_headers)
        pay = client.post(f"{API}/bills/{bill['id']}/payments",
                          json={"method": "cash", "amount": "93.50"},
                          headers=admin_headers).json()["data"]["payment"]

        r = client.post(f"{API}/payments/{pay['id']}/void",
                        json={"reason": "Recorded against the wrong bill"},
                        headers=admin_headers)
        assert r.status_code == 200, r.text
        data = r.json()["data"]
        assert data["payment"]["status"] == "voided"
        assert data["bill"]["status"] == "pending"
        assert _num(data["bill"]["amount_paid"]) == 0

        r = client.post(f"{API}/payments/{pay['id']}/void",
                        json={"reason": "Recorded against the wrong bill"},
                        headers=admin_headers)
        assert r.json()["error"]["code"] == "InvalidPaymentError"

    def test_cashier_cannot_void(self, client, admin_headers):
        bill = _create(client, admin_headers)
        pay = client.post(f"{API}/bills/{bill['id']}/payments",
                          json={"method": "cash", "amount": "10"},
                          headers=admin_headers).json()["data"]["payment"]
        r = client.post(f"{API}/payments/{pay['id']}/void",
                        json={"reason": "Recorded against the wrong bill"},
                        headers={"X-User-Id": "5", "X-User-Role": "cashier"})
        assert r.status_code == 403


class TestReports:
    """Revenue, outstanding, method and claim reports."""

    def _range(self):
        today = date.today()
        return {"date_from": str(today - timedelta(days=1)),
                "date_to": str(today + timedelta(days=1))}

    def _partly_paid(self, client, headers):
        bill = _create(client, headers)
        client.post(f"{API}/bills/{bill['id']}/payments",
                    json={"method": "cash", "amount": "50"},
                    headers=headers)
        return bill

    def test_revenue(self, client, admin_headers):
        self._partly_paid(client, admin_headers)
        r = client.get(f"{API}/reports/revenue", params=self._range(),
                       headers=admin_headers)
        assert r.status_code == 200, r.text
        summary = r.json()["data"]["summary"]
        assert summary["bill_count"] == 1
        assert _num(summary["total_billed"]) == Decimal("93.50")
        assert _num(summary["total_paid"]) == Decimal("50.00")
        assert _num(summary["outstanding"]) == Decimal("43.50")
        assert _num(summary["collection_rate"]) == Decimal("53.48")

    def test_outstanding(self, client, admin_headers):
        self._partly_paid(client, admin_headers)
        paid = _create(client, admin_headers)
        client.post(f"{API}/bills/{paid['id']}/payments",
                    json={"method": "cash", "amount": "93.50"},
                    headers=admin_headers)

        data = client.get(f"{API}/reports/outstanding",
                          headers=admin_headers).json()["data"]
        assert data["summary"]["total_bills"] == 1
        assert _num(data["summary"]["total_outstanding"]) == Decimal("43.50")
        assert data["aging_buckets"]["current"]["count"] == 1
        assert data["aging_buckets"]["90+_days"]["count"] == 0

        data = client.get(f"{API}/reports/outstanding",
                          params={"days_overdue": 0},
                          headers=admin_headers).json()["data"]
        assert data["summary"]["total_bills"] == 0

    def test_payment_methods(self, client, admin_headers):
        self._partly_paid(client, admin_headers)
        data = client.get(f"{API}/reports/payment-methods",
                          params=self._range(),
                          headers=admin_headers).json()["data"]
        assert data["summary"]["total_transactions"] == 1
        [row] = data["methods"]
        assert row["method"] == "cash"
        assert _num(row["percentage"]) == Decimal("100.00")

    def test_bad_range_is_422(self, client, admin_headers):
        r = client.get(f"{API}/reports/revenue",
                       params={"date_from": "2026-03-10",
                               "date_to": "2026-03-01"},
                       headers=admin_headers)
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "ValidationError"

    def test_reports_need_permission(self, client):
        r = client.get(f"{API}/reports/revenue",
                       headers={"X-User-Id": "5", "X-User-Role": "cashier"})
        assert r.status_code == 403


class TestClaimStats:
    """Per-policy claim statistics over HTTP."""

    def test_claim_stats(self, client, admin_headers):
        policy = client.post(f"{API}/policies", json={
            "patient_id": 1,
            "provider_name": "Acme Health",
            "policy_number": "POL-002",
        }, headers=admin_headers).json()["data"]
        bill = _create(client, admin_headers, primary_insurance_id=policy["id"])
        client.post(f"{API}/bills/{bill['id']}/claims", json={},
                    headers=admin_headers)

        r = client.get(f"{API}/policies/{policy['id']}/claim-stats",
                       headers=admin_headers)
        assert r.status_code == 200, r.text
        data = r.json()["data"]
        assert data["total_claims"] == 1
        assert data["by_status"]["draft"] == 1
        assert data["approval_rate"] is None

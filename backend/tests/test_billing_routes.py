"""
API tests for the billing, webhook and admin billing routes (TestClient, in-memory database, fake Stripe).
"""
import json
from datetime import datetime, timedelta, timezone

from fakes import auth_headers, sign_payload

USER_ID = "user-routes-001"
ADMIN_ID = "admin-routes-001"
SUB_ID = "sub_test_1"
CUS_ID = "cus_test_1"


def _seed(fake_db, provider, plan="Pro", price_id="price_pro_monthly"):
    provider.add_subscription(subscription_id=SUB_ID, customer=CUS_ID, price_id=price_id, metadata={"planName": plan})
    fake_db.users.docs.append({
        "user_id": USER_ID,
        "plan": plan,
        "billing_cycle": "monthly",
        "stripe_customer_id": CUS_ID,
        "stripe_subscription_id": SUB_ID,
        "subscription_status": "active",
        "cancel_at_period_end": False,
    })


class TestPlanChangeRoutes:
    def test_requires_authentication(self, client):
        response = client.post("/plan-change", json={"planName": "Elite", "billingCycle": "monthly"})
        assert response.status_code == 401
        assert response.json()["detail"]["error_code"] == "UNAUTHENTICATED"

    def test_upgrade(self, client, fake_db, provider):
        _seed(fake_db, provider)

        response = client.post(
            "/api/billing/plan-change",
            json={"planName": "Elite", "billingCycle": "monthly"},
            headers=auth_headers(USER_ID),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["type"] == "upgrade_prorated"
        assert body["invoice"]["status"] == "paid"

    def test_downgrade(self, client, fake_db, provider):
        _seed(fake_db, provider, plan="Elite", price_id="price_elite_monthly")

        response = client.post(
            "/plan-change",
            json={"planName": "Pro", "billingCycle": "monthly"},
            headers=auth_headers(USER_ID),
        )

        assert response.status_code == 200
        assert response.json()["type"] == "downgrade_scheduled"
        assert response.json()["effective_date"]

    def test_no_subscription_is_404_with_error_code(self, client, fake_db):
        fake_db.users.docs.append({"user_id": USER_ID, "plan": "Free"})

        response = client.post(
            "/plan-change",
            json={"planName": "Pro", "billingCycle": "monthly"},
            headers=auth_headers(USER_ID),
        )

        assert response.status_code == 404
        detail = response.json()["detail"]
        assert detail["error_code"] == "NO_ACTIVE_SUBSCRIPTION"
        assert detail["request_id"]

    def test_unknown_plan_is_400(self, client, fake_db, provider):
        _seed(fake_db, provider)

        response = client.post(
            "/plan-change",
            json={"planName": "Platinum", "billingCycle": "monthly"},
            headers=auth_headers(USER_ID),
        )

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "UNSUPPORTED_PLAN"

    def test_preview(self, client, fake_db, provider):
        _seed(fake_db, provider)

        response = client.post(
            "/api/billing/preview-change",
            json={"plan_name": "Elite", "billing_cycle": "annually"},
            headers=auth_headers(USER_ID),
        )

        assert response.status_code == 200
        assert response.json()["type"] == "upgrade_cross_interval_prorated_preview"
        assert provider.calls_named("update_subscription") == []

    def test_cancel_and_reactivate(self, client, fake_db, provider):
        _seed(fake_db, provider)
        headers = auth_headers(USER_ID)

        cancelled = client.post("/api/billing/cancel", json={}, headers=headers)
        assert cancelled.status_code == 200
        assert cancelled.json()["type"] == "cancel_at_period_end"

        status = client.get("/api/billing/status", headers=headers).json()
        assert status["cancel_at_period_end"] is True
        assert status["subscription_end_date"]

        reactivated = client.post("/api/billing/cancel", json={"action": "reactivate"}, headers=headers)
        assert reactivated.status_code == 200
        assert client.get("/api/billing/status", headers=headers).json()["cancel_at_period_end"] is False

    def test_invalid_cancel_action_is_422(self, client, fake_db, provider):
        _seed(fake_db, provider)
        response = client.post("/api/billing/cancel", json={"action": "pause"}, headers=auth_headers(USER_ID))
        assert response.status_code == 422
        assert response.json()["request_id"]


class TestWebhookRoutes:
    def _event(self):
        return json.dumps({
            "id": "evt_route_1",
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": SUB_ID, "object": "subscription", "customer": CUS_ID, "status": "canceled"}},
        }).encode("utf-8")

    def test_signed_event_is_acknowledged(self, client, fake_db, provider):
        _seed(fake_db, provider, plan="Agency", price_id="price_agency_monthly")
        payload = self._event()

        response = client.post(
            "/billing-webhook",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload), "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert fake_db.users.docs[0]["plan"] == "Free"

    def test_bad_signature_is_400(self, client, fake_db):
        payload = self._event()

        response = client.post(
            "/api/webhook/stripe",
            content=payload,
            headers={"Stripe-Signature": "t=1,v1=bad", "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["received"] is False


class TestAdminBillingRoutes:
    def test_non_admin_is_forbidden(self, client, fake_db):
        response = client.get("/api/admin/billing/events", headers=auth_headers(USER_ID))
        assert response.status_code == 403

    def test_events_lists_recent_failures_and_upcoming_renewals(self, client, fake_db):
        now = datetime.now(timezone.utc)
        fake_db.billing_events.docs.extend([
            {"type": "invoice.payment_failed", "invoice_id": "in_recent", "created_at": now - timedelta(hours=2)},
            {"type": "invoice.payment_failed", "invoice_id": "in_old", "created_at": now - timedelta(days=2)},
            {"type": "invoice.payment_succeeded", "invoice_id": "in_soon", "created_at": now, "due_at": now + timedelta(days=3)},
            {"type": "invoice.payment_succeeded", "invoice_id": "in_later", "created_at": now, "due_at": now + timedelta(days=20)},
        ])

        response = client.get("/api/admin/billing/events", headers=auth_headers(ADMIN_ID, role="ROLE_ADMIN"))

        assert response.status_code == 200
        body = response.json()
        assert [e["invoice_id"] for e in body["failed"]] == ["in_recent"]
        assert [e["invoice_id"] for e in body["renewals"]] == ["in_soon"]

    def test_user_snapshot(self, client, fake_db, provider):
        _seed(fake_db, provider)
        admin = auth_headers(ADMIN_ID, role="ROLE_ADMIN")

        assert client.get("/api/admin/billing/users/nobody", headers=admin).status_code == 404

        body = client.get(f"/api/admin/billing/users/{USER_ID}", headers=admin).json()
        assert body["billing"]["plan"] == "Pro"
        assert body["stripe_subscription_id"] == SUB_ID

    def test_sync_reconciles_from_stripe(self, client, fake_db, provider):
        _seed(fake_db, provider)
        provider.subscriptions[SUB_ID]["metadata"] = {"planName": "Agency"}

        response = client.post(
            f"/api/admin/billing/users/{USER_ID}/sync",
            headers=auth_headers(ADMIN_ID, role="ROLE_ADMIN"),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["before"]["plan"] == "Pro"
        assert body["after"]["plan"] == "Agency"
        assert fake_db.plan_change_events.docs[0]["source"] == "admin_override"
        assert any(doc["action"] == "ADMIN_BILLING_SYNC" for doc in fake_db.audit_logs.docs)

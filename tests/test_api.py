import json
from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select, update

from schoolpay.core.enums import PlanType, SubscriptionStatus
from schoolpay.core.models import PaymentRecord, Tenant


# ----- Subscription plans -----
@pytest.mark.asyncio
async def test_list_plans_is_public_and_cheapest_first(client: AsyncClient, plans) -> None:
    response = await client.get("/api/v1/subscription-plans")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert [p["name"] for p in body["data"]] == ["Monthly Plan", "Per Term Plan", "Yearly Plan"]


@pytest.mark.asyncio
async def test_create_plan_requires_platform_admin(client: AsyncClient, auth_headers) -> None:
    payload = {"name": "Weekly Plan", "plan_type": "monthly", "amount": "1000.00", "duration_days": 7}

    forbidden = await client.post("/api/v1/subscription-plans", json=payload, headers=auth_headers(uuid4()))
    assert forbidden.status_code == 403
    assert forbidden.json() == {"success": False, "message": "Only Platform Admin can perform this action"}

    headers = auth_headers(uuid4(), role="PLATFORM_ADMIN")
    created = await client.post("/api/v1/subscription-plans", json=payload, headers=headers)
    assert created.status_code == 201
    assert created.json()["data"]["is_active"] is True

    duplicate = await client.post("/api/v1/subscription-plans", json=payload, headers=headers)
    assert duplicate.status_code == 409


@pytest.mark.asyncio
async def test_deactivated_plan_is_hidden(client: AsyncClient, auth_headers, plans) -> None:
    plan = plans[PlanType.TERM]
    headers = auth_headers(uuid4(), role="SUPER_ADMIN")

    response = await client.patch(f"/api/v1/subscription-plans/{plan.id}/deactivate", headers=headers)
    assert response.status_code == 200

    listed = (await client.get("/api/v1/subscription-plans")).json()["data"]
    assert "Per Term Plan" not in [p["name"] for p in listed]
    everything = (await client.get("/api/v1/subscription-plans", params={"include_inactive": True})).json()["data"]
    assert len(everything) == 3


# ----- Subscription checkout -----
@pytest.mark.asyncio
async def test_subscription_checkout_and_verify(
    client: AsyncClient, auth_headers, make_tenant, plans, fake_gateway
) -> None:
    tenant = await make_tenant()
    headers = auth_headers(tenant.id)

    init = await client.post("/api/v1/subscription/initialize-payment", json={"plan_type": "monthly"}, headers=headers)
    assert init.status_code == 200
    reference = init.json()["data"]["reference"]
    assert reference.startswith("SUB_")
    assert fake_gateway.initialized[0]["amount_minor"] == 300000

    fake_gateway.settle(reference, 300000)
    verified = await client.get("/api/v1/subscription/verify-payment", params={"reference": reference}, headers=headers)
    body = verified.json()
    assert body["success"] is True
    assert body["data"]["subscription_status"] == SubscriptionStatus.ACTIVE.value
    assert body["data"]["subscription_end_date"] == (date.today() + timedelta(days=30)).isoformat()
    assert body["data"]["already_applied"] is False

    again = await client.get("/api/v1/subscription/verify-payment", params={"reference": reference}, headers=headers)
    assert again.json()["data"]["already_applied"] is True
    assert again.json()["data"]["subscription_end_date"] == body["data"]["subscription_end_date"]

    status = (await client.get("/api/v1/subscription/status", headers=headers)).json()["data"]
    assert status["has_access"] is True
    assert status["current_subscription"]["plan_name"] == "Monthly Plan"
    assert len(status["recent_payments"]) == 1

    history = (await client.get("/api/v1/subscription/history", headers=headers)).json()["data"]
    assert [(h["plan_name"], h["status"]) for h in history] == [("Monthly Plan", "active")]

    upgrade = await client.post("/api/v1/subscription/change-plan", json={"new_plan_type": "yearly"}, headers=headers)
    data = upgrade.json()["data"]
    assert data["scheduled"] is False
    assert data["proration"]["is_upgrade"] is True
    assert Decimal(data["payment"]["amount"]) == Decimal("27000.00")
    change_reference = data["payment"]["reference"]
    assert change_reference.startswith("CHG_")

    fake_gateway.settle(change_reference, 2700000)
    changed = await client.get(
        "/api/v1/subscription/verify-payment", params={"reference": change_reference}, headers=headers
    )
    assert changed.status_code == 200
    assert changed.json()["data"]["subscription_end_date"] == (date.today() + timedelta(days=365)).isoformat()

    history = (await client.get("/api/v1/subscription/history", headers=headers)).json()["data"]
    assert [(h["plan_name"], h["status"]) for h in history] == [
        ("Yearly Plan", "active"),
        ("Monthly Plan", "superseded"),
    ]


@pytest.mark.asyncio
async def test_downgrade_covered_by_credit_is_scheduled(
    client: AsyncClient, auth_headers, make_tenant, plans, fake_gateway
) -> None:
    tenant = await make_tenant()
    headers = auth_headers(tenant.id)
    init = await client.post("/api/v1/subscription/initialize-payment", json={"plan_type": "term"}, headers=headers)
    reference = init.json()["data"]["reference"]
    fake_gateway.settle(reference, 800000)
    await client.get("/api/v1/subscription/verify-payment", params={"reference": reference}, headers=headers)
    term_end = date.today() + timedelta(days=90)

    response = await client.post(
        "/api/v1/subscription/change-plan", json={"new_plan_type": "monthly"}, headers=headers
    )

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == f"Plan change scheduled for {term_end.isoformat()}"
    data = body["data"]
    assert data["scheduled"] is True
    assert data["payment"] is None
    assert data["proration"]["is_upgrade"] is False
    assert Decimal(data["proration"]["amount_to_charge"]) == Decimal("0")
    assert data["scheduled_change"]["months_covered"] == 2
    assert data["scheduled_change"]["effective_date"] == term_end.isoformat()
    assert data["scheduled_change"]["to_plan_id"] == str(plans[PlanType.MONTHLY].id)
    assert len(fake_gateway.initialized) == 1

    status = (await client.get("/api/v1/subscription/status", headers=headers)).json()["data"]
    assert status["current_subscription"]["plan_name"] == "Per Term Plan"
    assert status["scheduled_change"]["status"] == "scheduled"


@pytest.mark.asyncio
async def test_upgrade_fully_covered_by_credit_is_refused(
    client: AsyncClient, auth_headers, make_tenant, plans, fake_gateway, db_session
) -> None:
    tenant = await make_tenant()
    headers = auth_headers(tenant.id)
    init = await client.post("/api/v1/subscription/initialize-payment", json={"plan_type": "monthly"}, headers=headers)
    reference = init.json()["data"]["reference"]
    fake_gateway.settle(reference, 300000)
    await client.get("/api/v1/subscription/verify-payment", params={"reference": reference}, headers=headers)
    # Many renewals ahead: 400 unused days of Monthly are worth more than a Yearly plan
    await db_session.execute(
        update(Tenant).where(Tenant.id == tenant.id).values(subscription_end_date=date.today() + timedelta(days=400))
    )
    await db_session.commit()

    response = await client.post("/api/v1/subscription/change-plan", json={"new_plan_type": "yearly"}, headers=headers)

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "message": "Unused credit exceeds the price of the new plan; switch plans at your next renewal",
    }
    assert len(fake_gateway.initialized) == 1


@pytest.mark.asyncio
async def test_failed_subscription_payment_is_a_bad_request(
    client: AsyncClient, auth_headers, make_tenant, plans, fake_gateway
) -> None:
    tenant = await make_tenant()
    headers = auth_headers(tenant.id)
    init = await client.post("/api/v1/subscription/initialize-payment", json={"plan_type": "term"}, headers=headers)
    reference = init.json()["data"]["reference"]
    fake_gateway.settle(reference, 800000, status="failed")

    response = await client.get("/api/v1/subscription/verify-payment", params={"reference": reference}, headers=headers)

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Payment was not successful"}

    again = await client.get("/api/v1/subscription/verify-payment", params={"reference": reference}, headers=headers)
    assert again.status_code == 400

    status = (await client.get("/api/v1/subscription/status", headers=headers)).json()["data"]
    assert status["status"] == SubscriptionStatus.TRIAL.value


@pytest.mark.asyncio
async def test_underpaid_fee_payment_is_a_bad_request(
    client: AsyncClient, auth_headers, make_tenant, make_student_fee, fake_gateway
) -> None:
    tenant = await make_tenant()
    fee = await make_student_fee(tenant)
    payload = {"student_id": str(fee.student_id), "student_fee_id": str(fee.id), "amount": "20000"}
    init = await client.post("/api/v1/fees/initialize-payment", json=payload, headers=auth_headers(tenant.id))
    reference = init.json()["data"]["reference"]
    fake_gateway.settle(reference, 100000)

    response = await client.get(
        "/api/v1/fees/verify-payment", params={"reference": reference}, headers=auth_headers(tenant.id)
    )

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "message": "Amount mismatch: expected 2020000, received 100000",
    }


@pytest.mark.asyncio
async def test_change_plan_requires_active_subscription(
    client: AsyncClient, auth_headers, make_tenant, plans
) -> None:
    tenant = await make_tenant()

    response = await client.post(
        "/api/v1/subscription/change-plan", json={"new_plan_type": "yearly"}, headers=auth_headers(tenant.id)
    )

    assert response.status_code == 400
    assert response.json()["message"] == "An active subscription is required to change plans"


@pytest.mark.asyncio
async def test_missing_plan_selection_is_a_validation_error(client: AsyncClient, auth_headers, make_tenant) -> None:
    tenant = await make_tenant()

    response = await client.post("/api/v1/subscription/initialize-payment", json={}, headers=auth_headers(tenant.id))

    assert response.status_code == 422
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_requests_without_token_are_unauthorized(client: AsyncClient) -> None:
    response = await client.get("/api/v1/subscription/status")

    assert response.status_code == 401
    assert response.json()["success"] is False


# ----- Fees -----
@pytest.mark.asyncio
async def test_fee_checkout_splits_to_school_subaccount(
    client: AsyncClient, auth_headers, make_tenant, make_student_fee, fake_gateway
) -> None:
    tenant = await make_tenant(subaccount="ACCT_greenfield")
    fee = await make_student_fee(tenant)
    payload = {"student_id": str(fee.student_id), "student_fee_id": str(fee.id), "amount": "20000"}

    response = await client.post("/api/v1/fees/initialize-payment", json=payload, headers=auth_headers(tenant.id))

    assert response.status_code == 200
    data = response.json()["data"]
    assert Decimal(data["amount"]) == Decimal("20200.00")
    assert Decimal(data["platform_fee"]) == Decimal("200.00")
    sent = fake_gateway.initialized[0]
    assert sent["amount_minor"] == 2020000
    assert sent["subaccount"] == "ACCT_greenfield"
    assert sent["transaction_charge_minor"] == 20000

    fake_gateway.settle(data["reference"], 2020000)
    verified = await client.get(
        "/api/v1/fees/verify-payment", params={"reference": data["reference"]}, headers=auth_headers(tenant.id)
    )
    result = verified.json()["data"]
    assert verified.json()["success"] is True
    assert result["fee_status"] == "partial"
    assert Decimal(result["amount_paid"]) == Decimal("20000")
    assert result["receipt_no"].startswith("RCT/")


@pytest.mark.asyncio
async def test_fee_checkout_above_balance_is_refused(
    client: AsyncClient, auth_headers, make_tenant, make_student_fee, fake_gateway, db_session
) -> None:
    tenant = await make_tenant()
    fee = await make_student_fee(tenant)
    payload = {"student_id": str(fee.student_id), "student_fee_id": str(fee.id), "amount": "60000"}

    response = await client.post("/api/v1/fees/initialize-payment", json=payload, headers=auth_headers(tenant.id))

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Payment amount exceeds outstanding balance"}
    assert fake_gateway.initialized == []
    assert await db_session.scalar(select(func.count()).select_from(PaymentRecord)) == 0


@pytest.mark.asyncio
async def test_parent_cannot_pay_for_another_child(
    client: AsyncClient, auth_headers, make_tenant, make_student_fee
) -> None:
    tenant = await make_tenant()
    fee = await make_student_fee(tenant, parent_user_id=uuid4())
    payload = {"student_id": str(fee.student_id), "student_fee_id": str(fee.id), "amount": "1000"}

    response = await client.post(
        "/api/v1/fees/initialize-payment", json=payload, headers=auth_headers(tenant.id, role="PARENT")
    )

    assert response.status_code == 403
    assert response.json()["message"] == "You can only manage fees for your own children"


@pytest.mark.asyncio
async def test_bank_transfer_review_flow(client: AsyncClient, auth_headers, make_tenant, make_student_fee) -> None:
    tenant = await make_tenant()
    parent_id = uuid4()
    fee = await make_student_fee(tenant, parent_user_id=parent_id)
    parent = auth_headers(tenant.id, role="PARENT", user_id=parent_id)
    admin = auth_headers(tenant.id)

    submitted = await client.post(
        "/api/v1/fees/submit-manual-payment",
        json={
            "student_id": str(fee.student_id),
            "student_fee_id": str(fee.id),
            "amount": "15000",
            "payment_date": date.today().isoformat(),
            "bank_name": "First Bank",
        },
        headers=parent,
    )
    assert submitted.status_code == 201
    payment_id = submitted.json()["data"]["id"]

    forbidden = await client.post(f"/api/v1/fees/payments/{payment_id}/verify", headers=parent)
    assert forbidden.status_code == 403

    pending = (await client.get("/api/v1/fees/payments/pending", headers=admin)).json()["data"]
    assert [p["id"] for p in pending] == [payment_id]

    verified = await client.post(f"/api/v1/fees/payments/{payment_id}/verify", headers=admin)
    assert verified.status_code == 200
    assert verified.json()["data"]["verification_status"] == "verified"

    repeat = await client.post(f"/api/v1/fees/payments/{payment_id}/verify", headers=admin)
    assert repeat.status_code == 400
    assert repeat.json()["message"] == "Payment has already been processed"

    history = (await client.get(f"/api/v1/fees/payment-history/{fee.student_id}", headers=parent)).json()["data"]
    assert len(history) == 1


@pytest.mark.asyncio
async def test_expired_school_is_blocked_from_admin_fee_routes(
    client: AsyncClient, auth_headers, make_tenant
) -> None:
    tenant = await make_tenant(status=SubscriptionStatus.EXPIRED)

    response = await client.get("/api/v1/fees/payments/pending", headers=auth_headers(tenant.id))

    assert response.status_code == 403
    assert response.json() == {"success": False, "message": "Subscription required"}


# ----- Webhooks -----
@pytest.mark.asyncio
async def test_webhook_with_bad_signature_is_unauthorized(client: AsyncClient) -> None:
    body = json.dumps({"event": "charge.success", "data": {"reference": "FEE_x"}}).encode()

    response = await client.post(
        "/api/v1/webhooks/payment", content=body, headers={"x-paystack-signature": "0" * 128}
    )

    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Invalid signature"}


@pytest.mark.asyncio
async def test_webhook_acknowledges_ignored_events(client: AsyncClient, fake_gateway) -> None:
    for payload, message in [
        ({"event": "subscription.create", "data": {}}, "Event ignored"),
        ({"event": "charge.success", "data": {"reference": "FEE_unknown"}}, "Unknown reference ignored"),
    ]:
        body = json.dumps(payload).encode()
        response = await client.post(
            "/api/v1/webhooks/payment", content=body, headers={"x-paystack-signature": fake_gateway.sign(body)}
        )
        assert response.status_code == 200
        assert response.json()["message"] == message
        assert response.json()["data"] == {"handled": False}


@pytest.mark.asyncio
async def test_webhook_completes_fee_payment(
    client: AsyncClient, auth_headers, make_tenant, make_student_fee, fake_gateway
) -> None:
    tenant = await make_tenant()
    fee = await make_student_fee(tenant)
    payload = {"student_id": str(fee.student_id), "student_fee_id": str(fee.id), "amount": "50000"}
    init = await client.post("/api/v1/fees/initialize-payment", json=payload, headers=auth_headers(tenant.id))
    reference = init.json()["data"]["reference"]

    body = json.dumps(
        {
            "event": "charge.success",
            "data": {"id": 1, "reference": reference, "status": "success", "amount": 5020000, "channel": "bank"},
        }
    ).encode()
    headers = {"x-paystack-signature": fake_gateway.sign(body)}
    first = await client.post("/api/v1/webhooks/payment", content=body, headers=headers)
    second = await client.post("/api/v1/webhooks/payment", content=body, headers=headers)

    assert first.json()["data"]["already_applied"] is False
    assert second.json()["data"]["already_applied"] is True
    verified = await client.get(
        "/api/v1/fees/verify-payment", params={"reference": reference}, headers=auth_headers(tenant.id)
    )
    assert verified.json()["data"]["fee_status"] == "paid"
    assert fake_gateway.verify_calls == 0


@pytest.mark.asyncio
async def test_webhook_with_non_ascii_signature_is_unauthorized(client: AsyncClient) -> None:
    body = json.dumps({"event": "charge.success", "data": {"reference": "FEE_x"}}).encode()

    response = await client.post(
        "/api/v1/webhooks/payment", content=body, headers={"x-paystack-signature": "é".encode("utf-8")}
    )

    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Invalid signature"}


@pytest.mark.asyncio
async def test_webhook_with_decimal_amount_is_acknowledged(
    client: AsyncClient, auth_headers, make_tenant, make_student_fee, fake_gateway
) -> None:
    tenant = await make_tenant()
    fee = await make_student_fee(tenant)
    payload = {"student_id": str(fee.student_id), "student_fee_id": str(fee.id), "amount": "50000"}
    init = await client.post("/api/v1/fees/initialize-payment", json=payload, headers=auth_headers(tenant.id))
    reference = init.json()["data"]["reference"]

    body = json.dumps(
        {"event": "charge.success", "data": {"id": 7, "reference": reference, "status": "success", "amount": "50500.00"}}
    ).encode()
    response = await client.post(
        "/api/v1/webhooks/payment", content=body, headers={"x-paystack-signature": fake_gateway.sign(body)}
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": False,
        "message": "Payment amount must be a whole number of minor units",
        "data": {"handled": False},
    }

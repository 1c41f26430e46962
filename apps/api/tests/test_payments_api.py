import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.future import select

from config import settings
from database import get_db
from main import app
from models.payment_session import PaymentSession
from models.user_credits import UserCredits
from routers.payments import get_payment_gateway
from services.payment_gateway import (
    CheckoutInitialization,
    PaymentGateway,
    PaymentGatewayError,
    PaymentVerification,
)
from services.session_token import create_session_token
from services.webhook_security import polar_webhook


BUYER_ID = "payments-buyer"
AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(BUYER_ID, 'buyer@example.com')['token']}"}


class FakeGateway(PaymentGateway):
    def __init__(self):
        self.initialized = []
        self.payment_status = "SUCCESS"
        self.conversation_id = None
        self.fail_initialize = False

    async def initialize(self, checkout_request):
        if self.fail_initialize:
            raise PaymentGatewayError("gateway unavailable")
        self.initialized.append(checkout_request)
        return CheckoutInitialization(token=f"tok-{len(self.initialized)}", checkout_form_content="<form/>")

    async def verify(self, token, conversation_id=None):
        return PaymentVerification(
            payment_status=self.payment_status,
            item_ids=["pkg-medium"],
            conversation_id=self.conversation_id,
            raw={"status": "success", "paymentStatus": self.payment_status, "token": token},
        )


@pytest_asyncio.fixture
async def payments_client(session_maker, seeded_packages):
    gateway = FakeGateway()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker, gateway

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_gateway, None)


async def _paid_credits(session_maker, user_id):
    async with session_maker() as session:
        result = await session.execute(select(UserCredits.paid_credits).where(UserCredits.user_id == user_id))
        return result.scalar_one_or_none()


@pytest.mark.asyncio
async def test_packages_are_active_and_sorted_by_price(payments_client):
    client, _, _ = payments_client

    response = await client.get("/payments/packages")

    assert response.status_code == 200
    assert [package["id"] for package in response.json()["packages"]] == ["pkg-small", "pkg-medium", "pkg-large"]


@pytest.mark.asyncio
async def test_initialize_form_records_payment_session(payments_client):
    client, session_maker, gateway = payments_client

    response = await client.post("/payments/initialize-form", json={"package_id": "pkg-medium"}, headers=AUTH_HEADER)

    assert response.status_code == 200
    assert response.json()["token"] == "tok-1"
    assert gateway.initialized[0]["conversationId"] == BUYER_ID
    assert gateway.initialized[0]["basketItems"][0]["price"] == "89.00"
    async with session_maker() as session:
        stored = (await session.execute(select(PaymentSession).where(PaymentSession.token == "tok-1"))).scalar_one()
    assert stored.user_id == BUYER_ID
    assert stored.package_id == "pkg-medium"


@pytest.mark.asyncio
async def test_initialize_form_errors(payments_client):
    client, _, gateway = payments_client

    unknown = await client.post("/payments/initialize-form", json={"package_id": "pkg-nope"}, headers=AUTH_HEADER)
    retired = await client.post("/payments/initialize-form", json={"package_id": "pkg-retired"}, headers=AUTH_HEADER)
    anonymous = await client.post("/payments/initialize-form", json={"package_id": "pkg-medium"})
    gateway.fail_initialize = True
    upstream = await client.post("/payments/initialize-form", json={"package_id": "pkg-medium"}, headers=AUTH_HEADER)

    assert unknown.status_code == 404
    assert retired.status_code == 404
    assert anonymous.status_code == 401
    assert upstream.status_code == 502


@pytest.mark.asyncio
async def test_callback_recovers_identity_from_payment_session_and_redirects(payments_client):
    client, session_maker, _ = payments_client
    await client.post("/payments/initialize-form", json={"package_id": "pkg-medium"}, headers=AUTH_HEADER)

    first = await client.post("/payments/callback", data={"token": "tok-1"})
    duplicate = await client.post("/payments/callback", data={"token": "tok-1"})

    assert first.status_code == 303
    assert first.headers["location"].startswith(settings.PAYMENT_RESULT_URL)
    assert "status=success" in first.headers["location"]
    assert duplicate.status_code == 303
    assert await _paid_credits(session_maker, BUYER_ID) == 10


@pytest.mark.asyncio
async def test_callback_failure_redirects_without_credit(payments_client):
    client, session_maker, gateway = payments_client
    gateway.payment_status = "FAILURE"
    gateway.conversation_id = BUYER_ID

    response = await client.post("/payments/callback", data={"token": "tok-declined"})

    assert response.status_code == 303
    assert "status=failed" in response.headers["location"]
    assert "reason=payment_failed" in response.headers["location"]
    assert await _paid_credits(session_maker, BUYER_ID) is None


@pytest.mark.asyncio
async def test_callback_without_token_is_rejected(payments_client):
    client, _, _ = payments_client

    response = await client.post("/payments/callback", data={})

    assert response.status_code == 400


POLAR_SECRET = "polar-secret"


@pytest.fixture
def polar_secret(monkeypatch):
    monkeypatch.setattr(settings, "POLAR_WEBHOOK_SECRET", POLAR_SECRET)
    return POLAR_SECRET


def _polar_body(order_id="order_api_1", **metadata):
    event_metadata = {"userId": BUYER_ID, "packageId": "pkg-small"}
    event_metadata.update(metadata)
    return json.dumps({"type": "order.paid", "data": {"id": order_id, "metadata": event_metadata}}).encode()


def _signed(body, msg_id="msg_1", secret=POLAR_SECRET):
    signed_at = datetime.now(timezone.utc)
    return {
        "webhook-id": msg_id,
        "webhook-timestamp": str(int(signed_at.timestamp())),
        "webhook-signature": polar_webhook(secret).sign(msg_id, signed_at, body.decode()),
    }


@pytest.mark.asyncio
async def test_polar_webhook_is_idempotent(payments_client, polar_secret):
    client, session_maker, _ = payments_client
    body = _polar_body()

    first = await client.post("/payments/webhooks/polar", content=body, headers=_signed(body))
    again = await client.post("/payments/webhooks/polar", content=body, headers=_signed(body))

    assert first.json()["status"] == "credited"
    assert again.json()["status"] == "already_processed"
    assert await _paid_credits(session_maker, BUYER_ID) == 5


@pytest.mark.asyncio
async def test_polar_webhook_rejects_unsigned_and_forged_deliveries(payments_client, polar_secret):
    client, session_maker, _ = payments_client
    body = _polar_body("order_forged")

    unsigned = await client.post("/payments/webhooks/polar", content=body)
    wrong_secret = await client.post(
        "/payments/webhooks/polar", content=body, headers=_signed(body, secret="someone-else")
    )
    garbled = await client.post(
        "/payments/webhooks/polar",
        content=body,
        headers={**_signed(body), "webhook-signature": "not-a-signature"},
    )

    assert unsigned.status_code == 403
    assert wrong_secret.status_code == 403
    assert garbled.status_code == 403
    assert await _paid_credits(session_maker, BUYER_ID) is None


@pytest.mark.asyncio
async def test_polar_webhook_without_secret_refuses_everything(payments_client, monkeypatch):
    client, session_maker, _ = payments_client
    monkeypatch.setattr(settings, "POLAR_WEBHOOK_SECRET", "")
    body = json.dumps(
        {"type": "order.paid", "data": {"id": "forged-1", "metadata": {"userId": "attacker", "credits": "1000"}}}
    ).encode()

    response = await client.post("/payments/webhooks/polar", content=body)

    assert response.status_code == 503
    assert response.json()["detail"] == "Polar webhook is not configured"
    assert await _paid_credits(session_maker, "attacker") is None


@pytest.mark.asyncio
async def test_polar_webhook_rejects_missing_metadata(payments_client, polar_secret):
    client, _, _ = payments_client
    body = json.dumps({"type": "order.paid", "data": {"id": "order_bad", "metadata": {}}}).encode()

    response = await client.post("/payments/webhooks/polar", content=body, headers=_signed(body))

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid webhook payload: missing metadata"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event",
    [
        {"type": "order.paid", "data": "oops"},
        {"type": "order.paid", "data": {"id": "order_list", "metadata": []}},
    ],
)
async def test_polar_webhook_rejects_malformed_signed_events(payments_client, polar_secret, event):
    client, session_maker, _ = payments_client
    body = json.dumps(event).encode()

    response = await client.post("/payments/webhooks/polar", content=body, headers=_signed(body))

    assert response.status_code == 400
    assert await _paid_credits(session_maker, BUYER_ID) is None


@pytest.mark.asyncio
async def test_polar_webhook_signed_non_json_body_is_bad_request(payments_client, polar_secret):
    client, _, _ = payments_client
    body = b"not json"

    response = await client.post("/payments/webhooks/polar", content=body, headers=_signed(body))

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_health_probes(payments_client, monkeypatch):
    client, _, _ = payments_client
    monkeypatch.setattr(settings, "IYZICO_API_KEY", "")
    monkeypatch.setattr(settings, "IYZICO_SECRET_KEY", "sandbox-secret")

    with patch("routers.health._database_status", new=AsyncMock(return_value="up")):
        live = await client.get("/health/live")
        health = await client.get("/health")
        ready = await client.get("/health/ready")

    assert live.json() == {"alive": True}
    assert health.json()["status"] == "healthy"
    assert health.json()["rate_limit_store"] == "local"
    assert health.json()["payment_gateway"] == "missing"
    assert ready.status_code == 503
    assert ready.json()["missing"] == ["IYZICO_API_KEY"]

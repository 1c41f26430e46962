"""iyzico checkout-form client used by the payment endpoints."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

INITIALIZE_PATH = "/payment/iyzipos/checkoutform/initialize/auth/ecom"
DETAIL_PATH = "/payment/iyzipos/checkoutform/auth/ecom/detail"


class PaymentGatewayError(RuntimeError):
    """Raised when the gateway cannot be reached or rejects a request outright."""


@dataclass(frozen=True)
class CheckoutInitialization:
    token: str
    checkout_form_content: Optional[str] = None
    payment_page_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentVerification:
    payment_status: str
    item_ids: List[str] = field(default_factory=list)
    conversation_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def item_id(self) -> Optional[str]:
        return self.item_ids[0] if self.item_ids else None


class PaymentGateway(ABC):
    @abstractmethod
    async def initialize(self, checkout_request: Dict[str, Any]) -> CheckoutInitialization:
        ...

    @abstractmethod
    async def verify(self, token: str, conversation_id: Optional[str] = None) -> PaymentVerification:
        ...


def build_authorization(api_key: str, secret_key: str, uri_path: str, body: str, random_key: str) -> str:
    """IYZWSv2 header: base64 of apiKey, randomKey and the hex HMAC of randomKey+path+body."""
    signature = hmac.new(
        secret_key.encode("utf-8"),
        f"{random_key}{uri_path}{body}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    credentials = f"apiKey:{api_key}&randomKey:{random_key}&signature:{signature}"
    return "IYZWSv2 " + base64.b64encode(credentials.encode("utf-8")).decode("ascii")


def _format_price(value: float) -> str:
    return f"{float(value):.2f}"


def build_checkout_request(
    *,
    user_id: str,
    email: Optional[str],
    package_id: str,
    package_name: str,
    price: float,
    buyer_ip: Optional[str] = None,
) -> Dict[str, Any]:
    """Checkout-form payload; conversationId carries the user id back on verify."""
    price_text = _format_price(price)
    return {
        "locale": settings.PAYMENT_LOCALE,
        "conversationId": user_id,
        "price": price_text,
        "paidPrice": price_text,
        "currency": settings.PAYMENT_CURRENCY,
        "basketId": f"{package_id}:{uuid.uuid4().hex[:12]}",
        "paymentGroup": "PRODUCT",
        "callbackUrl": settings.IYZICO_CALLBACK_URL,
        "buyer": {
            "id": user_id,
            "name": "WishTune",
            "surname": "Customer",
            "email": email or f"{user_id}@wishtune.invalid",
            "identityNumber": "11111111111",
            "registrationAddress": "Online",
            "ip": buyer_ip or "127.0.0.1",
            "city": "Istanbul",
            "country": "Turkey",
        },
        "billingAddress": {
            "contactName": "WishTune Customer",
            "city": "Istanbul",
            "country": "Turkey",
            "address": "Online",
        },
        "basketItems": [
            {
                "id": package_id,
                "name": package_name,
                "category1": "Song credits",
                "itemType": "VIRTUAL",
                "price": price_text,
            }
        ],
    }


class IyzicoGateway(PaymentGateway):
    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: str,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def _post(self, uri_path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = json.dumps(payload, separators=(",", ":"))
        random_key = f"{int(time.time() * 1000)}{uuid.uuid4().hex[:9]}"
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": build_authorization(self.api_key, self.secret_key, uri_path, body, random_key),
            "x-iyzi-rnd": random_key,
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(uri_path, content=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise PaymentGatewayError(f"Payment gateway timed out on {uri_path}") from exc
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"Payment gateway request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentGatewayError(f"Payment gateway returned non-JSON ({response.status_code})") from exc
        if response.status_code >= 500:
            raise PaymentGatewayError(f"Payment gateway error {response.status_code}")
        if not isinstance(data, dict):
            raise PaymentGatewayError("Payment gateway returned an unexpected payload")
        return data

    async def initialize(self, checkout_request: Dict[str, Any]) -> CheckoutInitialization:
        data = await self._post(INITIALIZE_PATH, checkout_request)
        token = str(data.get("token") or "")
        if data.get("status") != "success" or not token:
            message = data.get("errorMessage") or "Checkout form could not be initialized"
            raise PaymentGatewayError(str(message))
        return CheckoutInitialization(
            token=token,
            checkout_form_content=data.get("checkoutFormContent"),
            payment_page_url=data.get("paymentPageUrl"),
            raw=data,
        )

    async def verify(self, token: str, conversation_id: Optional[str] = None) -> PaymentVerification:
        payload: Dict[str, Any] = {"locale": settings.PAYMENT_LOCALE, "token": token}
        if conversation_id:
            payload["conversationId"] = conversation_id
        data = await self._post(DETAIL_PATH, payload)

        if data.get("status") != "success":
            # API-level failure counts as an unsuccessful payment.
            payment_status = str(data.get("status") or "failure").upper()
        else:
            payment_status = str(data.get("paymentStatus") or "")
        item_ids = [
            str(item.get("itemId"))
            for item in data.get("itemTransactions") or []
            if isinstance(item, dict) and item.get("itemId")
        ]
        return PaymentVerification(
            payment_status=payment_status,
            item_ids=item_ids,
            conversation_id=data.get("conversationId") or None,
            raw=data,
        )

"""Signature checks for inbound webhooks."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Dict, Mapping, Optional, Union

from standardwebhooks.webhooks import Webhook
from standardwebhooks.webhooks import WebhookVerificationError as StandardWebhookVerificationError

BytesLike = Union[bytes, str]

STANDARD_SECRET_PREFIX = "whsec_"
POLAR_SIGNATURE_HEADERS = ("webhook-id", "webhook-timestamp", "webhook-signature")


class WebhookVerificationError(ValueError):
    """Raised when a webhook fails its authenticity gate."""


def _as_bytes(value: BytesLike) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def compute_signature(body: BytesLike, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    return hmac.new(_as_bytes(secret), _as_bytes(body), hashlib.sha256).hexdigest()


def verify_hmac_signature(body: BytesLike, signature: Optional[str], secret: str) -> bool:
    if not signature or not secret:
        return False
    candidate = signature.strip()
    if candidate.startswith("sha256="):
        candidate = candidate[len("sha256="):]
    return hmac.compare_digest(compute_signature(body, secret), candidate.lower())


def polar_webhook(secret: str) -> Webhook:
    """Standard Webhooks verifier for a Polar endpoint secret.

    Polar hands out raw secrets, which are signed with as-is; the Standard
    Webhooks library expects them base64 encoded, the same way polar-sdk
    wraps them. ``whsec_`` secrets are already in library form.
    """
    if not secret:
        raise WebhookVerificationError("Webhook secret is not configured")
    if secret.startswith(STANDARD_SECRET_PREFIX):
        return Webhook(secret)
    return Webhook(base64.b64encode(secret.encode("utf-8")).decode("ascii"))


def verify_polar_webhook(body: BytesLike, headers: Mapping[str, str], secret: str) -> Dict[str, Any]:
    """Verify a Polar delivery and return its decoded JSON payload.

    Authenticity failures raise WebhookVerificationError; a correctly signed
    body that is not JSON raises ``json.JSONDecodeError``.
    """
    signature_headers = {
        name: headers[name] for name in POLAR_SIGNATURE_HEADERS if headers.get(name)
    }
    try:
        return polar_webhook(secret).verify(_as_bytes(body), signature_headers)
    except StandardWebhookVerificationError as exc:
        raise WebhookVerificationError(str(exc)) from exc
    except json.JSONDecodeError:
        raise
    except ValueError as exc:
        # bad base64 or a signature entry without a version
        raise WebhookVerificationError("Malformed webhook signature header") from exc

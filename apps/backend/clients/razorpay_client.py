"""Razorpay API client (subscriptions, customers, signatures)."""
from __future__ import annotations

import logging
from typing import Any, Callable

import razorpay
from razorpay.errors import SignatureVerificationError
from razorpay.utility import Utility

from apps.backend.config import get_settings
from apps.backend.utils.errors import UpstreamError

logger = logging.getLogger(__name__)


def _signature_ok(check: Callable[..., Any], *args: Any) -> bool:
    try:
        return bool(check(*args))
    except SignatureVerificationError:
        return False


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str | None) -> bool:
    """Hex HMAC-SHA256 of the raw body, checked by the SDK in constant time."""
    if not signature or not secret:
        return False
    try:
        body = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return _signature_ok(Utility().verify_webhook_signature, body, signature.strip(), secret)


class RazorpayClient:
    def __init__(self, key_id: str | None = None, key_secret: str | None = None, client: Any = None):
        s = get_settings()
        self.key_id = key_id if key_id is not None else s.razorpay_key_id
        self.key_secret = key_secret if key_secret is not None else s.razorpay_key_secret
        self._client = client or razorpay.Client(auth=(self.key_id, self.key_secret))

    def _call(self, op: str, fn, *args) -> dict[str, Any]:
        try:
            return fn(*args)
        except Exception as e:
            logger.warning("razorpay_call_failed op=%s error=%s", op, type(e).__name__)
            raise UpstreamError(f"razorpay {op} failed") from e

    def create_customer(self, name: str, email: str, notes: dict[str, Any] | None = None) -> dict[str, Any]:
        data = {"name": name or email, "email": email, "fail_existing": "0", "notes": notes or {}}
        return self._call("customer.create", self._client.customer.create, data)

    def create_subscription(self, data: dict[str, Any]) -> dict[str, Any]:
        return self._call("subscription.create", self._client.subscription.create, data)

    def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self._call("subscription.fetch", self._client.subscription.fetch, subscription_id)

    def cancel_subscription(self, subscription_id: str, cancel_at_cycle_end: bool = True) -> dict[str, Any]:
        data = {"cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0}
        return self._call("subscription.cancel", self._client.subscription.cancel, subscription_id, data)

    def verify_payment_signature(self, subscription_id: str, payment_id: str, signature: str | None) -> bool:
        """Checkout signature over ``payment_id|subscription_id``, keyed by the API secret."""
        if not signature:
            return False
        params = {
            "razorpay_subscription_id": subscription_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature.strip(),
        }
        return _signature_ok(self._client.utility.verify_subscription_payment_signature, params)

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None, secret: str | None = None) -> bool:
        return verify_webhook_signature(raw_body, signature, secret if secret is not None else get_settings().razorpay_webhook_secret)


def get_razorpay_client() -> RazorpayClient:
    return RazorpayClient()

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib import request
from urllib.error import HTTPError, URLError
from uuid import uuid4

from starlette.datastructures import Headers

from referralme.app.settings import Settings

logger = logging.getLogger("referralme.gateway")

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"


class GatewayServiceError(Exception):
    pass


class SignatureVerificationError(Exception):
    pass


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount_minor: int
    currency: str
    receipt: str
    status: str = "created"
    notes: dict[str, Any] = field(default_factory=dict)


def _hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def compute_payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    return _hmac_sha256_hex(secret, f"{order_id}|{payment_id}".encode("utf-8"))


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    if not secret or not signature:
        return False
    expected = compute_payment_signature(order_id, payment_id, secret)
    return hmac.compare_digest(expected, signature.strip())


def verify_webhook_signature(headers: Headers, raw_body: bytes, secret: str) -> None:
    # Unlike inbound notifications, an unsigned payment webhook is never trusted.
    if not secret:
        raise SignatureVerificationError("gateway webhook secret is not configured")
    signature = headers.get("x-razorpay-signature")
    if not signature:
        raise SignatureVerificationError("missing gateway signature header")
    expected = _hmac_sha256_hex(secret, raw_body)
    if not hmac.compare_digest(expected, signature.strip()):
        raise SignatureVerificationError("invalid gateway webhook signature")


class PaymentGateway:
    key_id = ""

    def __init__(self, key_secret: str) -> None:
        self._key_secret = key_secret

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[dict[str, Any]] = None,
    ) -> GatewayOrder:
        raise NotImplementedError

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return verify_payment_signature(order_id, payment_id, signature, self._key_secret)


class RazorpayGateway(PaymentGateway):
    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        base_url: str = RAZORPAY_API_BASE,
        timeout_seconds: int = 10,
    ) -> None:
        super().__init__(key_secret)
        self.key_id = key_id
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[dict[str, Any]] = None,
    ) -> GatewayOrder:
        body = json.dumps(
            {
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            }
        ).encode("utf-8")
        credentials = base64.b64encode(f"{self.key_id}:{self._key_secret}".encode("utf-8"))
        req = request.Request(
            f"{self.base_url}/orders",
            data=body,
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Basic {credentials.decode('ascii')}",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            raise GatewayServiceError(f"gateway rejected order: http {exc.code}") from exc
        except URLError as exc:
            raise GatewayServiceError("gateway order request failed") from exc

        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GatewayServiceError("gateway order response was not valid json") from exc

        order_id = decoded.get("id")
        if not isinstance(order_id, str) or not order_id:
            raise GatewayServiceError("gateway order response missing id")
        return GatewayOrder(
            id=order_id,
            amount_minor=int(decoded.get("amount", amount_minor)),
            currency=str(decoded.get("currency", currency)),
            receipt=str(decoded.get("receipt", receipt)),
            status=str(decoded.get("status", "created")),
            notes=dict(decoded.get("notes") or {}),
        )


class LocalGateway(PaymentGateway):
    """Issues order ids locally; used when no gateway API key is configured."""

    key_id = "local"

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[dict[str, Any]] = None,
    ) -> GatewayOrder:
        order = GatewayOrder(
            id=f"order_{uuid4().hex[:14]}",
            amount_minor=amount_minor,
            currency=currency,
            receipt=receipt,
            notes=dict(notes or {}),
        )
        logger.info("local_gateway_order order_id=%s receipt=%s", order.id, receipt)
        return order


def build_gateway(settings: Settings) -> PaymentGateway:
    if settings.razorpay_key_id and settings.razorpay_key_secret:
        return RazorpayGateway(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
        )
    return LocalGateway(settings.razorpay_key_secret)

from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import urllib.error
import urllib.request
from uuid import uuid4


def hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Simulate the payment gateway confirming an order against the local API."
    )
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--payment-id", default=None)
    parser.add_argument("--mode", choices=["verify", "webhook"], default="verify")
    parser.add_argument("--key-secret", default="", help="Signs the checkout callback.")
    parser.add_argument("--webhook-secret", default="", help="Signs the webhook body.")
    parser.add_argument("--user-id", default="dev-local", help="Sent as X-User-Id in dev mode.")
    parser.add_argument("--token", default=None, help="Bearer token when auth is enabled.")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    payment_id = args.payment_id or f"pay_{uuid4().hex[:14]}"

    if args.mode == "verify":
        signature = hmac_hex(args.key_secret, f"{args.order_id}|{payment_id}".encode("utf-8"))
        body = json.dumps(
            {"order_id": args.order_id, "payment_id": payment_id, "signature": signature},
            separators=(",", ":"),
        ).encode("utf-8")
        headers = {"X-User-Id": args.user_id}
        if args.token:
            headers["Authorization"] = f"Bearer {args.token}"
        endpoint = f"{base_url}/mentorship/payments/gateway/verify"
    else:
        body = json.dumps(
            {
                "event_id": f"evt_{uuid4().hex[:14]}",
                "event": "payment.captured",
                "order_id": args.order_id,
                "payment_id": payment_id,
            },
            separators=(",", ":"),
        ).encode("utf-8")
        headers = {"X-Razorpay-Signature": hmac_hex(args.webhook_secret, body)}
        endpoint = f"{base_url}/webhooks/razorpay"

    status_code, response = post_json(endpoint, body, headers)
    print(f"{status_code} {args.order_id} {response}")
    return 0 if status_code < 400 else 1


if __name__ == "__main__":
    sys.exit(main())

"""Send a signed sandbox webhook to a running payments service.

Useful for manual reconciliation and duplicate-delivery testing.
"""

import argparse
import json
from uuid import uuid4

import httpx

from zwpay.services.provider_adapter.sandbox import EVENT_INTENT_STATUS, SIGNATURE_HEADER, sign_payload


def build_payload(event_type: str, intent_id: str, payment_method: str | None) -> bytes:
    intent = {"id": intent_id, "amount": 0, "currency": "usd"}
    if payment_method:
        intent["payment_method"] = payment_method
    intent["status"] = EVENT_INTENT_STATUS.get(event_type, "requires_payment_method")
    envelope = {"id": f"evt_sandbox_{uuid4().hex[:24]}", "type": event_type, "data": {"object": intent}}
    return json.dumps(envelope).encode("utf-8")


def main() -> None:
    """Parse CLI args, sign one event and post it."""

    parser = argparse.ArgumentParser(description="Post a signed sandbox webhook event.")
    parser.add_argument("--url", default="http://localhost:8080/webhooks/sandbox")
    parser.add_argument("--secret", default="whsec_sandbox")
    parser.add_argument("--type", dest="event_type", default="payment_intent.succeeded")
    parser.add_argument("--intent", required=True)
    parser.add_argument("--payment-method", default=None)
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same event N times")
    args = parser.parse_args()

    raw = build_payload(args.event_type, args.intent, args.payment_method)
    headers = {SIGNATURE_HEADER: sign_payload(raw, args.secret), "content-type": "application/json"}
    for _ in range(args.repeat):
        resp = httpx.post(args.url, content=raw, headers=headers, timeout=10.0)
        print(f"status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union
from urllib.parse import parse_qs, urlencode
import hashlib
import hmac
import json
import logging
import os
import uuid

import httpx

from .errors import CallbackPayloadError, InvalidSignature
from .helpers import JAKARTA
from .model.lifecycle import CallbackNotice
from .schemas import FlipCallbackPayload, validate_request

log = logging.getLogger(__name__)

FLIP_BASE_URL = os.environ.get("FLIP_BASE_URL", "https://bigflip.id/api")
FLIP_SECRET_KEY = os.environ.get("FLIP_SECRET_KEY", "")
GATEWAY_BACKEND = os.environ.get(
    "GATEWAY_BACKEND", "flip" if FLIP_SECRET_KEY else "mock"
).lower()  # 'flip' | 'mock'

SIGNATURE_HEADERS = ("x-callback-token", "x-flip-signature")


# ----------------------------
# Gateway outcomes
# ----------------------------
@dataclass
class BillRequest:
    temp_id: str
    title: str
    amount: int
    email: str
    name: str
    expires_at: float
    redirect_url: str
    sender_bank_type: str = "qris"


@dataclass
class BillCreated:
    payment_url: str
    gateway_transaction_id: Optional[str]
    bill_link_id: Optional[str]


@dataclass
class GatewayValidationError:
    messages: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return ", ".join(self.messages) or "Payment validation failed"


@dataclass
class GatewayUnreachable:
    detail: str


BillOutcome = Union[BillCreated, GatewayValidationError, GatewayUnreachable]


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name = "abstract"

    @abstractmethod
    async def create_bill(
        self, http: httpx.AsyncClient, req: BillRequest
    ) -> BillOutcome: ...


def flip_expired_date(ts: float) -> str:
    # Flip wants local (WIB) wall clock time
    return datetime.fromtimestamp(ts, tz=JAKARTA).strftime("%Y-%m-%d %H:%M")


def bill_body(req: BillRequest) -> Dict[str, object]:
    return {
        "title": req.title or "Voucher Purchase",
        "amount": int(req.amount),
        "type": "SINGLE",
        "expired_date": flip_expired_date(req.expires_at),
        "redirect_url": req.redirect_url,
        "sender_email": req.email,
        "sender_name": req.name,
        "sender_bank_type": req.sender_bank_type or "qris",
        "step": 3,
    }


# ----------------------------
# Flip implementation
# ----------------------------
class FlipGateway(PaymentAdapter):
    name = "flip"

    def __init__(self, secret_key: str = FLIP_SECRET_KEY,
                 base_url: str = FLIP_BASE_URL) -> None:
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")

    async def create_bill(
        self, http: httpx.AsyncClient, req: BillRequest
    ) -> BillOutcome:
        try:
            resp = await http.post(
                f"{self.base_url}/v2/pwf/bill",
                json=bill_body(req),
                auth=(self.secret_key, ""),
            )
            data = json.loads(resp.text)
        except (httpx.HTTPError, ValueError) as e:
            log.error("flip create bill failed for %s: %s", req.temp_id, e)
            return GatewayUnreachable(str(e))

        if not isinstance(data, dict):
            return GatewayUnreachable(f"unexpected response: {data!r}")

        errors = data.get("errors")
        if errors:
            messages = [
                str(err.get("message")) for err in errors
                if isinstance(err, dict) and err.get("message")
            ]
            log.warning("flip rejected bill for %s: %s", req.temp_id,
                        messages)
            return GatewayValidationError(messages)

        link_url = data.get("link_url")
        if not link_url:
            log.error("flip returned no link_url (HTTP %s): %s",
                      resp.status_code, data)
            return GatewayUnreachable(f"no link_url (HTTP {resp.status_code})")
        if not link_url.startswith(("http://", "https://")):
            link_url = f"https://{link_url}"

        bill_payment = data.get("bill_payment") or {}
        gateway_id = bill_payment.get("id")
        link_id = data.get("link_id")
        return BillCreated(
            payment_url=link_url,
            gateway_transaction_id=str(gateway_id) if gateway_id else None,
            bill_link_id=str(link_id) if link_id is not None else None,
        )


# ----------------------------
# Mock implementation
# ----------------------------
class MockFlip(PaymentAdapter):
    """
    Local stand-in for Flip: the bill lives at /mockpay/{bill_link_id} and
    its buttons post a signed Flip-shaped callback back to us.
    """
    name = "mock"

    def __init__(self) -> None:
        self.bills: Dict[str, BillRequest] = {}

    async def create_bill(
        self, http: httpx.AsyncClient, req: BillRequest
    ) -> BillOutcome:
        link_id = str(uuid.uuid4().int % 10**9)
        self.bills[link_id] = req
        return BillCreated(
            payment_url=f"/mockpay/{link_id}",
            gateway_transaction_id=f"FT{uuid.uuid4().hex[:12].upper()}",
            bill_link_id=link_id,
        )

    def bill(self, bill_link_id: str) -> Optional[BillRequest]:
        return self.bills.get(bill_link_id)


def new_adapter() -> PaymentAdapter:
    if GATEWAY_BACKEND == "flip":
        return FlipGateway()
    return MockFlip()


# ----------------------------
# Callback authentication + normalization
# ----------------------------
def sign_callback(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def verify_callback(raw: bytes, headers: Dict[str, str],
                    secret: Optional[str]) -> None:
    if not secret:
        raise InvalidSignature("FLIP_WEBHOOK_SECRET is not configured")
    sig = next((headers.get(h) for h in SIGNATURE_HEADERS if headers.get(h)),
               None)
    if not sig:
        raise InvalidSignature("no signature provided")
    if not hmac.compare_digest(sign_callback(raw, secret), sig.strip()):
        raise InvalidSignature("signature mismatch")


def parse_callback(raw: bytes, content_type: Optional[str]) -> CallbackNotice:
    """
    Normalize a Flip callback into a CallbackNotice.

    Flip posts `application/x-www-form-urlencoded` with the JSON document in
    a `data` field; plain JSON bodies (with or without a `data` wrapper) are
    accepted too.
    """
    text = raw.decode("utf-8", errors="replace")
    ctype = (content_type or "").lower()
    try:
        if "application/x-www-form-urlencoded" in ctype:
            form = parse_qs(text)
            if "data" not in form:
                raise CallbackPayloadError("form body has no data field")
            payload = json.loads(form["data"][0])
        else:
            payload = json.loads(text)
            if isinstance(payload, dict) and isinstance(
                payload.get("data"), str
            ):
                payload = json.loads(payload["data"])
            elif isinstance(payload, dict) and isinstance(
                payload.get("data"), dict
            ):
                payload = payload["data"]
    except json.JSONDecodeError as e:
        raise CallbackPayloadError(f"invalid JSON: {e}") from e

    data, error = validate_request(FlipCallbackPayload, payload)
    if error:
        raise CallbackPayloadError(error)
    return CallbackNotice(
        gateway_transaction_id=data.id,
        amount=data.amount,
        status=data.status,
        sender_email=data.sender_email,
        bill_link_id=data.bill_link_id,
        payment_method=data.payment_method,
    )


def callback_body(notice: CallbackNotice) -> bytes:
    """Form-encode a notice the way Flip delivers it (used by the mock)."""
    doc = {
        "id": notice.gateway_transaction_id,
        "bill_link_id": notice.bill_link_id,
        "amount": notice.amount,
        "status": notice.status,
        "sender_email": notice.sender_email,
        "payment_method": notice.payment_method,
    }
    return urlencode({"data": json.dumps(doc)}).encode()

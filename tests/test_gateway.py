import base64
import json
from urllib.parse import urlencode

import httpx
import pytest

from voucherpay.errors import CallbackPayloadError, InvalidSignature
from voucherpay.gateway import (
    BillRequest, BillCreated, GatewayValidationError, GatewayUnreachable,
    FlipGateway, MockFlip, bill_body, flip_expired_date,
    sign_callback, verify_callback, parse_callback, callback_body,
)
from voucherpay.model.lifecycle import CallbackNotice

SECRET = "s3cret"


def bill_request(**kw):
    base = dict(temp_id="TX-1", title="Latte", amount=20000,
                email="buyer@example.com", name="Buyer",
                expires_at=0.0, redirect_url="http://shop/redirect-payment")
    base.update(kw)
    return BillRequest(**base)


def flip_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_expired_date_is_jakarta_wall_clock():
    # epoch is 07:00 in WIB
    assert flip_expired_date(0.0) == "1970-01-01 07:00"


def test_bill_body_fields():
    body = bill_body(bill_request(title="", sender_bank_type=None))

    assert body == {
        "title": "Voucher Purchase",
        "amount": 20000,
        "type": "SINGLE",
        "expired_date": "1970-01-01 07:00",
        "redirect_url": "http://shop/redirect-payment",
        "sender_email": "buyer@example.com",
        "sender_name": "Buyer",
        "sender_bank_type": "qris",
        "step": 3,
    }


async def test_flip_bill_created():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "link_id": 1234,
            "link_url": "flip.id/$shop/#latte",
            "bill_payment": {"id": "FT99"},
        })

    gw = FlipGateway(secret_key="sk", base_url="https://flip.test/api/")
    async with flip_client(handler) as http:
        out = await gw.create_bill(http, bill_request())

    assert out == BillCreated(payment_url="https://flip.id/$shop/#latte",
                              gateway_transaction_id="FT99",
                              bill_link_id="1234")
    assert seen["url"] == "https://flip.test/api/v2/pwf/bill"
    assert seen["auth"] == "Basic " + base64.b64encode(b"sk:").decode()
    assert seen["body"]["amount"] == 20000


async def test_flip_validation_errors_are_collected():
    def handler(request):
        return httpx.Response(422, json={"code": "VALIDATION_ERROR", "errors": [
            {"attribute": "amount", "message": "Minimum amount is 10000"},
            {"attribute": "sender_email", "message": "Email is invalid"},
        ]})

    async with flip_client(handler) as http:
        out = await FlipGateway("sk").create_bill(http, bill_request())

    assert isinstance(out, GatewayValidationError)
    assert out.message == "Minimum amount is 10000, Email is invalid"


def test_validation_error_without_messages_has_fallback():
    assert GatewayValidationError([]).message == "Payment validation failed"


async def test_flip_unreachable():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    async with flip_client(handler) as http:
        out = await FlipGateway("sk").create_bill(http, bill_request())

    assert isinstance(out, GatewayUnreachable)


async def test_flip_non_json_response():
    def handler(request):
        return httpx.Response(502, text="<html>bad gateway</html>")

    async with flip_client(handler) as http:
        out = await FlipGateway("sk").create_bill(http, bill_request())

    assert isinstance(out, GatewayUnreachable)


async def test_flip_response_without_link():
    def handler(request):
        return httpx.Response(500, json={"message": "oops"})

    async with flip_client(handler) as http:
        out = await FlipGateway("sk").create_bill(http, bill_request())

    assert isinstance(out, GatewayUnreachable)
    assert "HTTP 500" in out.detail


async def test_mock_flip_remembers_bill():
    mock = MockFlip()
    async with httpx.AsyncClient() as http:
        out = await mock.create_bill(http, bill_request())

    assert out.payment_url == f"/mockpay/{out.bill_link_id}"
    assert out.gateway_transaction_id.startswith("FT")
    assert mock.bill(out.bill_link_id).temp_id == "TX-1"
    assert mock.bill("nope") is None


# ---- callback signature

def test_verify_accepts_either_header():
    raw = b"data=%7B%7D"
    sig = sign_callback(raw, SECRET)

    verify_callback(raw, {"x-callback-token": sig}, SECRET)
    verify_callback(raw, {"x-flip-signature": sig}, SECRET)


@pytest.mark.parametrize("headers", [
    {},
    {"x-callback-token": ""},
    {"x-callback-token": "deadbeef"},
])
def test_verify_rejects_bad_signature(headers):
    with pytest.raises(InvalidSignature):
        verify_callback(b"body", headers, SECRET)


def test_verify_rejects_when_secret_unset():
    raw = b"body"
    with pytest.raises(InvalidSignature):
        verify_callback(raw, {"x-callback-token": sign_callback(raw, "")}, "")


def test_signature_covers_the_exact_bytes():
    sig = sign_callback(b"amount=1000", SECRET)
    with pytest.raises(InvalidSignature):
        verify_callback(b"amount=9000", {"x-callback-token": sig}, SECRET)


# ---- callback parsing

DOC = {"id": "FT1", "bill_link_id": 555, "amount": 25000,
       "status": "SUCCESSFUL", "sender_email": " Buyer@Example.com ",
       "payment_method": "qris"}


def test_parse_form_encoded_callback():
    raw = urlencode({"data": json.dumps(DOC), "token": "x"}).encode()

    notice = parse_callback(raw, "application/x-www-form-urlencoded")

    assert notice == CallbackNotice(
        gateway_transaction_id="FT1", amount=25000, status="SUCCESSFUL",
        sender_email="buyer@example.com", bill_link_id="555",
        payment_method="qris",
    )


@pytest.mark.parametrize("body", [
    DOC,
    {"data": DOC},
    {"data": json.dumps(DOC)},
])
def test_parse_json_callback_shapes(body):
    notice = parse_callback(json.dumps(body).encode(), "application/json")

    assert notice.gateway_transaction_id == "FT1"
    assert notice.bill_link_id == "555"


def test_parse_coerces_numeric_id_and_string_amount():
    doc = dict(DOC, id=98765, amount="25000.00")

    notice = parse_callback(json.dumps(doc).encode(), "application/json")

    assert notice.gateway_transaction_id == "98765"
    assert notice.amount == 25000


@pytest.mark.parametrize("raw,ctype", [
    (b"token=abc", "application/x-www-form-urlencoded"),
    (b"data=not-json", "application/x-www-form-urlencoded"),
    (b"{broken", "application/json"),
    (json.dumps(dict(DOC, sender_email="nope")).encode(), "application/json"),
    (json.dumps(dict(DOC, amount="12.5")).encode(), "application/json"),
    (json.dumps({k: v for k, v in DOC.items() if k != "id"}).encode(),
     "application/json"),
])
def test_parse_rejects_bad_payloads(raw, ctype):
    with pytest.raises(CallbackPayloadError):
        parse_callback(raw, ctype)


def test_callback_body_parses_back():
    notice = CallbackNotice(gateway_transaction_id="FT7", amount=1000,
                            status="CANCELLED", sender_email="a@example.com",
                            bill_link_id="9", payment_method=None)

    raw = callback_body(notice)

    assert parse_callback(raw, "application/x-www-form-urlencoded") == notice

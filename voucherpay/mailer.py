from __future__ import annotations
import logging
import os
from pathlib import Path
from typing import Any, Dict

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .helpers import format_idr, format_indonesian_date, redact_email
from .model.reconcile import VoucherEmail

log = logging.getLogger(__name__)

RESEND_API_URL = os.environ.get("RESEND_API_URL",
                                "https://api.resend.com/emails")
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
MAIL_FROM = os.environ.get("MAIL_FROM", "noreply@jajan.flip.id")
MAIL_SUBJECT = "Kode Voucher Kopi Kenangan"

TEMPLATES_DIR = Path(__file__).parent / "templates"

env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


def email_context(email: VoucherEmail) -> Dict[str, Any]:
    has_discount = email.discounted_amount is not None
    price = email.discounted_amount if has_discount else email.amount
    discount_pct = 0
    if has_discount and email.amount:
        discount_pct = round((email.amount - price) / email.amount * 100)
    return {
        "name": email.name,
        "code": email.code,
        "product_name": email.product_name,
        "transaction_id": email.transaction_id,
        "amount": format_idr(email.amount),
        "final_price": format_idr(price),
        "has_discount": has_discount,
        "discount_percentage": discount_pct,
        "used_at": format_indonesian_date(email.used_at),
        "expiry_date": format_indonesian_date(email.expiry_date),
    }


def render_voucher_email(email: VoucherEmail) -> str:
    return env.get_template("voucher_email.html").render(
        **email_context(email)
    )


async def send_voucher_email(
    http: httpx.AsyncClient, email: VoucherEmail, *,
    api_key: str = RESEND_API_KEY,
) -> bool:
    """Deliver the voucher email via Resend. Never raises."""
    if not api_key:
        log.error("RESEND_API_KEY is not set, voucher %s not emailed",
                  email.code)
        return False
    try:
        resp = await http.post(
            RESEND_API_URL,
            json={
                "from": MAIL_FROM,
                "to": email.to,
                "subject": MAIL_SUBJECT,
                "html": render_voucher_email(email),
            },
            headers={"Authorization": f"Bearer {api_key}"},
        )
        resp.raise_for_status()
    except Exception as e:
        log.error("voucher email to %s failed: %s", redact_email(email.to), e)
        return False
    log.info("voucher %s emailed to %s", email.code, redact_email(email.to))
    return True

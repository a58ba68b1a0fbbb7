# model/reconcile.py
"""
Callback reconciler.

Drives a transaction from PENDING to a terminal state when the gateway
reports a payment outcome. Callbacks can be redelivered, arrive before our
own bill update, or match nothing; every branch must be safe to run twice.

Only the caller that wins the conditional PENDING -> terminal write
performs side effects (voucher release, email). Losers re-read and fall
through to the already-terminal branch.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable, Awaitable, Tuple

from ..errors import DuplicateTransaction
from ..helpers import now_ts, redact_email
from . import lifecycle as lc
from .reservation import (
    claim_any_voucher, release_or_log, VOUCHER_VALIDITY_SECONDS,
)

log = logging.getLogger(__name__)


@dataclass
class VoucherEmail:
    to: str
    name: str
    code: str
    product_name: str
    amount: int
    discounted_amount: Optional[int]
    used_at: float
    expiry_date: float
    transaction_id: str
    paid_amount: int


Notify = Callable[[VoucherEmail], Awaitable[Any]]


@dataclass
class ReconcileResult:
    action: str
    rule: Optional[str] = None
    tx_id: Optional[str] = None
    status: Optional[str] = None
    voucher_code: Optional[str] = None
    emailed: bool = False
    message: str = ""


async def locate(
    store, notice: lc.CallbackNotice
) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Walk the resolution plan; return (transaction, rule that hit)."""
    for rule in lc.lookup_plan(notice):
        if rule == lc.BY_GATEWAY_ID:
            tx = await store.find_transaction(
                transaction_id=notice.gateway_transaction_id
            )
        elif rule == lc.BY_BILL_LINK:
            tx = await store.find_transaction(bill_link_id=notice.bill_link_id)
        elif rule == lc.PENDING_BY_EMAIL_AMOUNT:
            tx = await store.find_latest_pending(
                notice.sender_email, notice.amount
            )
        elif rule == lc.UNLINKED_PENDING_BY_EMAIL_AMOUNT:
            tx = await store.find_latest_pending(
                notice.sender_email, notice.amount, unlinked_only=True
            )
        else:
            tx = None
        if tx is not None:
            return tx, rule
    return None, None


def _gateway_fields(notice: lc.CallbackNotice,
                    tx: Dict[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    if not tx.get("transaction_id"):
        fields["transaction_id"] = notice.gateway_transaction_id
    if notice.bill_link_id:
        fields["bill_link_id"] = notice.bill_link_id
    if notice.payment_method:
        fields["payment_method"] = notice.payment_method
    return fields


async def reconcile(
    store, notice: lc.CallbackNotice, *,
    notify: Optional[Notify] = None,
    now: Optional[float] = None,
    validity_seconds: int = VOUCHER_VALIDITY_SECONDS,
) -> ReconcileResult:
    now = now_ts() if now is None else now
    event = lc.classify(notice.status)
    tx, rule = await locate(store, notice)
    action = lc.next_action(tx["status"] if tx else None, event)

    log.info(
        "callback %s status=%s from %s -> %s (rule=%s, tx=%s)",
        notice.gateway_transaction_id, notice.status,
        redact_email(notice.sender_email), action, rule,
        tx["id"] if tx else None,
    )

    if action == lc.FINALIZE:
        return await _finalize(store, tx, notice, rule, notify, now,
                               validity_seconds)
    if action == lc.RELEASE:
        return await _release(store, tx, notice, rule)
    if action == lc.BACKFILL:
        return await _backfill(store, tx, rule, now, validity_seconds)
    if action == lc.CREATE_SUCCESSFUL:
        return await _create_successful(store, notice, notify, now,
                                        validity_seconds)
    return ReconcileResult(
        action=lc.IGNORE, rule=rule,
        tx_id=tx["id"] if tx else None,
        status=tx["status"] if tx else None,
        voucher_code=tx.get("voucher_code") if tx else None,
        message=("Transaction already processed" if tx
                 else "No matching transaction"),
    )


async def _send(notify: Optional[Notify], email: VoucherEmail) -> bool:
    # fire-and-forget: never let delivery problems touch ledger state
    if notify is None:
        return False
    try:
        sent = await notify(email)
    except Exception:
        log.exception("voucher email to %s failed (tx %s)",
                      redact_email(email.to), email.transaction_id)
        return False
    return sent is not False


async def _finalize(store, tx, notice, rule, notify, now,
                    validity_seconds) -> ReconcileResult:
    expiry = now + validity_seconds
    fields = _gateway_fields(notice, tx)
    fields["status"] = lc.SUCCESSFUL
    code = tx.get("voucher_code")
    claimed = None

    if not code:
        claimed = await claim_any_voucher(
            store, tx.get("product_name"), used_by=notice.sender_email,
            used_at=now, expiry_date=expiry,
        )
        if claimed is None:
            log.error("paid transaction %s has no voucher left (%s)",
                      tx["id"], tx.get("product_name"))
        else:
            code = claimed["code"]
            fields["voucher_code"] = code

    try:
        try:
            won = await store.update_pending(tx["id"], fields)
        except DuplicateTransaction:
            log.warning("gateway id %s already linked elsewhere",
                        notice.gateway_transaction_id)
            fields.pop("transaction_id", None)
            won = await store.update_pending(tx["id"], fields)
    except Exception:
        # the voucher is ours but no transaction points at it
        if claimed is not None:
            await release_or_log(store, claimed["code"],
                                 f"finalize {tx['id']} failed")
        raise

    if not won:
        # somebody else moved it first; undo our claim and re-evaluate
        if claimed is not None:
            await release_or_log(store, claimed["code"],
                                 f"lost finalize {tx['id']}")
        current = await store.get_transaction(tx["id"])
        if current and current["status"] == lc.SUCCESSFUL:
            return await _backfill(store, current, rule, now,
                                   validity_seconds)
        log.warning("payment %s arrived after transaction %s became %s",
                    notice.gateway_transaction_id, tx["id"],
                    current["status"] if current else None)
        return ReconcileResult(
            action=lc.IGNORE, rule=rule, tx_id=tx["id"],
            status=current["status"] if current else None,
            message="Transaction already processed",
        )

    if code is None:
        return ReconcileResult(
            action=lc.FINALIZE, rule=rule, tx_id=tx["id"],
            status=lc.SUCCESSFUL,
            message="Payment successful but no vouchers available",
        )

    voucher = claimed
    if voucher is None:
        await store.stamp_voucher(code, used_by=notice.sender_email,
                                  used_at=now, expiry_date=expiry)
        voucher = await store.get_voucher(code)
    emailed = await _send(notify, _email_for(tx, notice, voucher, code,
                                             now, expiry))
    return ReconcileResult(
        action=lc.FINALIZE, rule=rule, tx_id=tx["id"],
        status=lc.SUCCESSFUL, voucher_code=code, emailed=emailed,
        message="Transaction updated to SUCCESSFUL",
    )


def _email_for(tx, notice, voucher, code, used_at, expiry) -> VoucherEmail:
    voucher = voucher or {}
    return VoucherEmail(
        to=notice.sender_email,
        name=(tx or {}).get("name") or "Customer",
        code=code,
        product_name=(voucher.get("product_name")
                      or (tx or {}).get("product_name") or ""),
        amount=int(voucher.get("amount") or (tx or {}).get("amount")
                   or notice.amount),
        discounted_amount=voucher.get("discounted_amount"),
        used_at=voucher.get("used_at") or used_at,
        expiry_date=voucher.get("expiry_date") or expiry,
        transaction_id=notice.gateway_transaction_id,
        paid_amount=notice.amount,
    )


async def _release(store, tx, notice, rule) -> ReconcileResult:
    status = lc.normalize_status(notice.status)
    fields = _gateway_fields(notice, tx)
    fields["status"] = status
    try:
        won = await store.update_pending(tx["id"], fields)
    except DuplicateTransaction:
        won = await store.update_pending(tx["id"], {"status": status})
    if not won:
        current = await store.get_transaction(tx["id"])
        return ReconcileResult(
            action=lc.IGNORE, rule=rule, tx_id=tx["id"],
            status=current["status"] if current else None,
            message="Transaction already processed",
        )
    released = await release_or_log(store, tx.get("voucher_code"),
                                    f"{status} {tx['id']}")
    return ReconcileResult(
        action=lc.RELEASE, rule=rule, tx_id=tx["id"], status=status,
        voucher_code=tx.get("voucher_code") if released else None,
        message=f"Transaction updated to {status}",
    )


async def _backfill(store, tx, rule, now, validity_seconds) -> ReconcileResult:
    code = tx.get("voucher_code")
    if code:
        stamped = await store.stamp_voucher(
            code, used_by=None, used_at=now, expiry_date=now + validity_seconds,
            only_missing=True,
        )
        if stamped:
            log.info("backfilled expiry for voucher %s", code)
    return ReconcileResult(
        action=lc.BACKFILL, rule=rule, tx_id=tx["id"], status=tx["status"],
        voucher_code=code, message="Transaction already processed",
    )


async def _create_successful(store, notice, notify, now,
                             validity_seconds) -> ReconcileResult:
    """Unmatched success: the payment is real, record it anyway."""
    expiry = now + validity_seconds
    claimed = await claim_any_voucher(
        store, None, used_by=notice.sender_email, used_at=now,
        expiry_date=expiry,
    )
    code = claimed["code"] if claimed else None
    try:
        tx = await store.insert_transaction({
            "transaction_id": notice.gateway_transaction_id,
            "bill_link_id": notice.bill_link_id,
            "payment_method": notice.payment_method,
            "name": "Customer",
            "email": notice.sender_email,
            "amount": notice.amount,
            "product_name": claimed["product_name"] if claimed else None,
            "voucher_code": code,
            "status": lc.SUCCESSFUL,
            "created_at": now,
        })
    except DuplicateTransaction:
        # concurrent redelivery created it first
        await release_or_log(store, code, "duplicate degraded insert")
        return ReconcileResult(action=lc.IGNORE, status=lc.SUCCESSFUL,
                               message="Transaction already processed")
    except Exception:
        await release_or_log(store, code, "degraded insert failed")
        raise

    if code is None:
        log.error("unmatched payment %s recorded without voucher",
                  notice.gateway_transaction_id)
        return ReconcileResult(
            action=lc.CREATE_SUCCESSFUL, tx_id=tx["id"],
            status=lc.SUCCESSFUL,
            message="Payment successful but no vouchers available",
        )
    emailed = await _send(notify, _email_for(tx, notice, claimed, code,
                                             now, expiry))
    return ReconcileResult(
        action=lc.CREATE_SUCCESSFUL, tx_id=tx["id"], status=lc.SUCCESSFUL,
        voucher_code=code, emailed=emailed,
        message="Transaction created as SUCCESSFUL",
    )

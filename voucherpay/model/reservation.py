# model/reservation.py
"""
Reservation engine: pair one unused voucher with a new PENDING transaction.

The store gives no atomicity across the two writes, so the engine does

    claim voucher (conditional used=false -> true)
    insert PENDING transaction
    on insert failure: release the voucher again

A lost claim (another buyer flipped the same voucher first) is retried with
a fresh selection; when the retries run out the pool counts as sold out.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from ..errors import NoVoucherAvailable, ReservationFailed
from ..helpers import now_ts, new_temp_id, effective_amount
from .lifecycle import PENDING, FAILED, SUCCESSFUL

log = logging.getLogger(__name__)

PENDING_TTL_SECONDS = 30 * 60
VOUCHER_VALIDITY_SECONDS = 30 * 24 * 3600
MAX_CLAIM_ATTEMPTS = 5


@dataclass
class ReservationRequest:
    product_name: str
    email: str
    name: str
    amount: int
    discounted_amount: Optional[int] = None


@dataclass
class Reservation:
    id: str               # ledger primary key
    temp_id: str          # handed to the client
    voucher_code: str
    effective_amount: int
    expiry_date: float


async def claim_any_voucher(
    store, product_name: Optional[str], *,
    used_by: Optional[str] = None,
    used_at: Optional[float] = None,
    expiry_date: Optional[float] = None,
    attempts: int = MAX_CLAIM_ATTEMPTS,
) -> Optional[Dict[str, Any]]:
    """
    Select the oldest unused voucher (of `product_name` when given) and flip
    it to used. Returns the claimed voucher row or None when none is left.
    """
    for _ in range(attempts):
        voucher = await store.find_unused_voucher(product_name)
        if voucher is None:
            return None
        ok = await store.claim_voucher(
            voucher["code"], used_by=used_by, used_at=used_at,
            expiry_date=expiry_date,
        )
        if ok:
            voucher.update(used=True, used_by=used_by, used_at=used_at,
                           expiry_date=expiry_date)
            return voucher
        log.info("lost race for voucher %s, reselecting", voucher["code"])
    return None


async def release_or_log(store, code: Optional[str], context: str) -> bool:
    """Best-effort release; a failure here leaks a voucher and is logged."""
    if not code:
        return False
    try:
        released = await store.release_voucher(code)
    except Exception:
        log.exception(
            "LEAKED VOUCHER %s: release failed (%s), needs manual fix",
            code, context,
        )
        return False
    if not released:
        log.warning("voucher %s was not held when releasing (%s)",
                    code, context)
    return released


async def reserve(
    store, req: ReservationRequest, *,
    now: Optional[float] = None,
    ttl_seconds: int = PENDING_TTL_SECONDS,
) -> Reservation:
    now = now_ts() if now is None else now
    voucher = await claim_any_voucher(store, req.product_name)
    if voucher is None:
        raise NoVoucherAvailable(req.product_name)

    temp_id = new_temp_id()
    expiry = now + ttl_seconds
    try:
        tx = await store.insert_transaction({
            "temp_id": temp_id,
            "email": req.email,
            "name": req.name,
            "product_name": req.product_name,
            "amount": req.amount,
            "discounted_amount": req.discounted_amount,
            "voucher_code": voucher["code"],
            "status": PENDING,
            "expiry_date": expiry,
            "created_at": now,
        })
    except Exception as exc:
        log.error("transaction insert failed for %s, releasing voucher %s",
                  temp_id, voucher["code"])
        await release_or_log(store, voucher["code"], f"reserve {temp_id}")
        raise ReservationFailed(str(exc)) from exc

    log.info("reserved voucher %s for %s (%s)",
             voucher["code"], temp_id, req.product_name)
    return Reservation(
        id=tx["id"],
        temp_id=temp_id,
        voucher_code=voucher["code"],
        effective_amount=effective_amount(req.amount, req.discounted_amount),
        expiry_date=expiry,
    )


async def attach_bill(
    store, reservation: Reservation, *,
    gateway_transaction_id: Optional[str],
    bill_link_id: Optional[str],
) -> bool:
    """Persist the gateway ids; the transaction stays PENDING."""
    fields: Dict[str, Any] = {}
    if gateway_transaction_id:
        fields["transaction_id"] = gateway_transaction_id
    if bill_link_id:
        fields["bill_link_id"] = str(bill_link_id)
    if not fields:
        return False
    return await store.update_pending(reservation.id, fields)


async def cancel_reservation(
    store, tx_id: str, *, status: str = FAILED
) -> bool:
    """
    Roll a PENDING reservation back: move it to `status` and give the
    voucher back. Only the caller that wins the PENDING -> status write
    releases, so a concurrent callback or sweep cannot double-release.
    """
    tx = await store.get_transaction(tx_id)
    if tx is None:
        return False
    if not await store.update_pending(tx_id, {"status": status}):
        log.info("reservation %s no longer PENDING, nothing to cancel", tx_id)
        return False
    await release_or_log(store, tx.get("voucher_code"), f"cancel {tx_id}")
    return True


async def issue_directly(
    store, *, product_name: str, email: str,
    name: Optional[str] = None,
    reference: Optional[str] = None,
    now: Optional[float] = None,
    validity_seconds: int = VOUCHER_VALIDITY_SECONDS,
) -> Dict[str, Any]:
    """
    Gateway-less issuance: claim a voucher, record an already SUCCESSFUL
    transaction for it and drop the voucher row from the pool.
    """
    now = now_ts() if now is None else now
    expiry = now + validity_seconds
    voucher = await claim_any_voucher(
        store, product_name, used_by=email, used_at=now, expiry_date=expiry,
    )
    if voucher is None:
        raise NoVoucherAvailable(product_name)
    try:
        tx = await store.insert_transaction({
            "email": email,
            "name": name or email.split("@")[0],
            "product_name": voucher["product_name"],
            "amount": voucher["amount"],
            "discounted_amount": voucher["discounted_amount"],
            "voucher_code": voucher["code"],
            "bill_link_id": reference,
            "status": SUCCESSFUL,
            "created_at": now,
        })
    except Exception as exc:
        await release_or_log(store, voucher["code"], f"direct {email}")
        raise ReservationFailed(str(exc)) from exc

    # the transaction carries the code now; a leftover row stays used=true
    try:
        await store.delete_voucher(voucher["code"])
    except Exception:
        log.warning("voucher %s issued but not deleted", voucher["code"],
                    exc_info=True)
    voucher["used_at"], voucher["expiry_date"] = now, expiry
    return {"voucher": voucher, "transaction": tx}

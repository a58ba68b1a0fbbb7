"""
Transaction lifecycle as data.

States: PENDING -> one of SUCCESSFUL / CANCELLED / FAILED / EXPIRED, and
terminal states never move again. A gateway callback is classified into a
`success` or `failure` event; `TRANSITIONS` maps (current state, event) to
the action the reconciler performs, and `lookup_plan` lists, in order, how
the target transaction of a callback is located.

Everything here is pure so the rules can be tested without a store.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

# ---- states
PENDING = "PENDING"
SUCCESSFUL = "SUCCESSFUL"
CANCELLED = "CANCELLED"
FAILED = "FAILED"
EXPIRED = "EXPIRED"

STATUSES = (PENDING, SUCCESSFUL, CANCELLED, FAILED, EXPIRED)
TERMINAL = frozenset({SUCCESSFUL, CANCELLED, FAILED, EXPIRED})
FAILURE_STATUSES = frozenset({CANCELLED, FAILED, EXPIRED})

# ---- callback events
EV_SUCCESS = "success"
EV_FAILURE = "failure"
EV_UNKNOWN = "unknown"

# ---- reconciler actions
FINALIZE = "finalize"            # PENDING -> SUCCESSFUL, assign voucher, email
RELEASE = "release"              # PENDING -> failure status, free voucher
BACKFILL = "backfill"            # already SUCCESSFUL: stamp voucher dates only
CREATE_SUCCESSFUL = "create"     # unmatched success: degraded insert
IGNORE = "ignore"

# ---- lookups, in resolution order
BY_GATEWAY_ID = "by_gateway_id"
BY_BILL_LINK = "by_bill_link_id"
PENDING_BY_EMAIL_AMOUNT = "pending_by_email_amount"
UNLINKED_PENDING_BY_EMAIL_AMOUNT = "unlinked_pending_by_email_amount"

NO_MATCH = None


@dataclass(frozen=True)
class CallbackNotice:
    """A gateway payment notification, normalized from JSON or form body."""
    gateway_transaction_id: str
    amount: int
    status: str
    sender_email: str
    bill_link_id: Optional[str] = None
    payment_method: Optional[str] = None


def normalize_status(raw: Optional[str]) -> str:
    return (raw or "").strip().upper()


def classify(status: Optional[str]) -> str:
    s = normalize_status(status)
    if s == SUCCESSFUL:
        return EV_SUCCESS
    if s in FAILURE_STATUSES:
        return EV_FAILURE
    return EV_UNKNOWN


def is_terminal(status: Optional[str]) -> bool:
    return normalize_status(status) in TERMINAL


TRANSITIONS: Dict[Tuple[Optional[str], str], str] = {
    (PENDING, EV_SUCCESS): FINALIZE,
    (PENDING, EV_FAILURE): RELEASE,
    (SUCCESSFUL, EV_SUCCESS): BACKFILL,
    (SUCCESSFUL, EV_FAILURE): IGNORE,
    (CANCELLED, EV_SUCCESS): IGNORE,
    (CANCELLED, EV_FAILURE): IGNORE,
    (FAILED, EV_SUCCESS): IGNORE,
    (FAILED, EV_FAILURE): IGNORE,
    (EXPIRED, EV_SUCCESS): IGNORE,
    (EXPIRED, EV_FAILURE): IGNORE,
    (NO_MATCH, EV_SUCCESS): CREATE_SUCCESSFUL,
    (NO_MATCH, EV_FAILURE): IGNORE,
}


def next_action(current: Optional[str], event: str) -> str:
    """Action for a transaction in `current` state (None: no match)."""
    if event == EV_UNKNOWN:
        return IGNORE
    state = normalize_status(current) if current is not None else NO_MATCH
    return TRANSITIONS.get((state, event), IGNORE)


def lookup_plan(notice: CallbackNotice) -> Tuple[str, ...]:
    """
    Ordered lookups used to find the transaction a callback refers to.

    1. transaction_id == gateway id
    2. bill_link_id
    3. failure event: latest PENDING with same email + amount
    4. success event: latest PENDING with same email + amount that has no
       gateway id yet (callback overtook our own bill update)
    """
    event = classify(notice.status)
    plan = [BY_GATEWAY_ID]
    if notice.bill_link_id:
        plan.append(BY_BILL_LINK)
    if event == EV_FAILURE:
        plan.append(PENDING_BY_EMAIL_AMOUNT)
    elif event == EV_SUCCESS:
        plan.append(UNLINKED_PENDING_BY_EMAIL_AMOUNT)
    return tuple(plan)

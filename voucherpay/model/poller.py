# model/poller.py
from __future__ import annotations
from typing import Optional, Dict, Any

from .lifecycle import is_terminal, SUCCESSFUL


async def check_transaction(store, temp_id: str) -> Optional[Dict[str, Any]]:
    """
    Read-only status lookup for the client polling loop.

    Returns None while the transaction is unknown or still PENDING. Once it
    has been reconciled the result carries the gateway id and voucher code.
    """
    if not temp_id:
        return None
    tx = await store.find_transaction(temp_id=temp_id)
    if tx is None or not is_terminal(tx["status"]):
        return None
    return {
        "success": True,
        "transaction_id": tx.get("transaction_id"),
        # a failed payment gave its voucher back
        "voucher_code": (
            tx.get("voucher_code") if tx["status"] == SUCCESSFUL else None
        ),
        "status": tx["status"],
    }

from __future__ import annotations
from typing import Optional, Dict, Any, List, Tuple, Iterable
import time
import uuid

from ..lifecycle import PENDING
from ...errors import DuplicateTransaction
from ._sql import TX_COLUMNS, TX_MUTABLE


class VoucherStore:
    """
    In-process store with the same contract as the SQL one.

    Each method runs without awaiting in the middle, so on one event loop
    every call is atomic, which is what the conditional updates rely on.
    Rows are copied in and out so callers never alias internal state.
    """

    def __init__(self) -> None:
        self.vouchers: Dict[str, Dict[str, Any]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # voucher pool
    # ------------------------------------------------------------------
    async def add_vouchers(self, rows: Iterable[Dict[str, Any]]) -> int:
        added = 0
        now = time.time()
        for v in rows:
            if v["code"] in self.vouchers:
                continue
            self.vouchers[v["code"]] = {
                "id": uuid.uuid4().hex,
                "code": v["code"],
                "product_name": v["product_name"],
                "amount": int(v["amount"]),
                "discounted_amount": (
                    None if v.get("discounted_amount") is None
                    else int(v["discounted_amount"])
                ),
                "image": v.get("image"),
                "used": bool(v.get("used", False)),
                "used_by": None,
                "used_at": None,
                "expiry_date": None,
                # keep insertion order stable for equal timestamps
                "created_at": float(v.get("created_at") or now + added * 1e-6),
            }
            added += 1
        return added

    async def get_voucher(self, code: str) -> Optional[Dict[str, Any]]:
        v = self.vouchers.get(code)
        return dict(v) if v else None

    async def find_unused_voucher(
        self, product_name: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        candidates = [
            v for v in self.vouchers.values()
            if not v["used"]
            and (not product_name or v["product_name"] == product_name)
        ]
        if not candidates:
            return None
        v = min(candidates, key=lambda x: (x["created_at"], x["code"]))
        return dict(v)

    async def claim_voucher(
        self, code: str, *, used_by: Optional[str] = None,
        used_at: Optional[float] = None, expiry_date: Optional[float] = None,
    ) -> bool:
        v = self.vouchers.get(code)
        if v is None or v["used"]:
            return False
        v.update(used=True, used_by=used_by, used_at=used_at,
                 expiry_date=expiry_date)
        return True

    async def release_voucher(self, code: str) -> bool:
        v = self.vouchers.get(code)
        if v is None or not v["used"]:
            return False
        v.update(used=False, used_by=None, used_at=None, expiry_date=None)
        return True

    async def stamp_voucher(
        self, code: str, *, used_by: Optional[str], used_at: float,
        expiry_date: float, only_missing: bool = False,
    ) -> bool:
        v = self.vouchers.get(code)
        if v is None:
            return False
        if only_missing and v["expiry_date"] is not None:
            return False
        v.update(used=True, used_at=used_at, expiry_date=expiry_date)
        if used_by is not None:
            v["used_by"] = used_by
        return True

    async def delete_voucher(self, code: str) -> bool:
        return self.vouchers.pop(code, None) is not None

    async def list_voucher_groups(self) -> List[Dict[str, Any]]:
        groups: Dict[tuple, Dict[str, Any]] = {}
        for v in self.vouchers.values():
            if v["used"]:
                continue
            key = (v["product_name"], v["amount"], v["discounted_amount"])
            g = groups.setdefault(key, {
                "product_name": v["product_name"],
                "amount": v["amount"],
                "discounted_amount": v["discounted_amount"],
                "image": v["image"],
                "available_count": 0,
            })
            g["available_count"] += 1
        return sorted(groups.values(),
                      key=lambda g: (g["product_name"], g["amount"]))

    async def count_vouchers(self) -> Dict[str, int]:
        total = len(self.vouchers)
        used = sum(1 for v in self.vouchers.values() if v["used"])
        return {"total": total, "used": used, "available": total - used}

    async def count_vouchers_by_product(self) -> List[Dict[str, Any]]:
        per: Dict[str, Dict[str, Any]] = {}
        for v in self.vouchers.values():
            name = v["product_name"] or "Unknown Product"
            p = per.setdefault(name, {"productName": name, "available": 0,
                                      "used": 0, "total": 0})
            p["used" if v["used"] else "available"] += 1
            p["total"] += 1
        return [per[k] for k in sorted(per)]

    # ------------------------------------------------------------------
    # transaction ledger
    # ------------------------------------------------------------------
    async def insert_transaction(
        self, mapping: Dict[str, Any]
    ) -> Dict[str, Any]:
        tx = {c: mapping.get(c) for c in TX_COLUMNS}
        tx["id"] = tx["id"] or uuid.uuid4().hex
        tx["status"] = tx["status"] or PENDING
        tx["created_at"] = float(tx["created_at"] or time.time())
        tx["updated_at"] = tx["created_at"]
        # same uniqueness the SQL schema enforces
        for col in ("id", "temp_id", "transaction_id"):
            if tx[col] is None:
                continue
            if any(t[col] == tx[col] for t in self.transactions.values()):
                raise DuplicateTransaction(f"duplicate {col}: {tx[col]}")
        self.transactions[tx["id"]] = tx
        return dict(tx)

    async def get_transaction(self, tx_id: str) -> Optional[Dict[str, Any]]:
        tx = self.transactions.get(tx_id)
        return dict(tx) if tx else None

    def _latest(self, rows: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not rows:
            return None
        return dict(max(rows, key=lambda t: t["created_at"]))

    async def find_transaction(
        self, *, temp_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        bill_link_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        if temp_id is not None:
            col, value = "temp_id", temp_id
        elif transaction_id is not None:
            col, value = "transaction_id", transaction_id
        elif bill_link_id is not None:
            col, value = "bill_link_id", str(bill_link_id)
        else:
            return None
        return self._latest(
            [t for t in self.transactions.values() if t[col] == value]
        )

    async def find_latest_pending(
        self, email: str, amount: int, *, unlinked_only: bool = False
    ) -> Optional[Dict[str, Any]]:
        def effective(t):
            if t["discounted_amount"] is not None:
                return t["discounted_amount"]
            return t["amount"]

        return self._latest([
            t for t in self.transactions.values()
            if t["email"] == email
            and t["status"] == PENDING
            and effective(t) == int(amount)
            and (not unlinked_only or t["transaction_id"] is None)
        ])

    async def update_pending(
        self, tx_id: str, fields: Dict[str, Any]
    ) -> bool:
        bad = set(fields) - TX_MUTABLE
        if bad:
            raise ValueError(f"not updatable: {sorted(bad)}")
        tx = self.transactions.get(tx_id)
        if tx is None or tx["status"] != PENDING:
            return False
        tid = fields.get("transaction_id")
        if tid is not None and any(
            t["transaction_id"] == tid and t["id"] != tx_id
            for t in self.transactions.values()
        ):
            raise DuplicateTransaction(f"duplicate transaction_id: {tid}")
        tx.update(fields)
        tx["updated_at"] = time.time()
        return True

    async def list_expired_pending(
        self, now: float, limit: int = 500
    ) -> List[Dict[str, Any]]:
        rows = [
            t for t in self.transactions.values()
            if t["status"] == PENDING
            and t["expiry_date"] is not None and t["expiry_date"] < now
        ]
        rows.sort(key=lambda t: t["expiry_date"])
        return [dict(t) for t in rows[:limit]]

    async def list_transactions(
        self, *, since: Optional[float] = None, until: Optional[float] = None,
        status: Optional[str] = None, search: Optional[str] = None,
        offset: int = 0, limit: Optional[int] = None,
    ) -> Tuple[int, List[Dict[str, Any]]]:
        def match(t):
            if since is not None and t["created_at"] < since:
                return False
            if until is not None and t["created_at"] > until:
                return False
            if status and t["status"] != status:
                return False
            if search:
                hay = (t["transaction_id"] or "", t["email"] or "",
                       t["temp_id"] or "")
                if not any(search in h for h in hay):
                    return False
            return True

        rows = sorted((t for t in self.transactions.values() if match(t)),
                      key=lambda t: t["created_at"], reverse=True)
        total = len(rows)
        if limit is not None:
            rows = rows[offset:offset + limit]
        return total, [dict(t) for t in rows]

from __future__ import annotations
from typing import Optional, Dict, Any, List, Tuple, Iterable
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import time
import uuid
from typing import Callable, AsyncContextManager

from ..lifecycle import PENDING
from ...errors import DuplicateTransaction


TX_COLUMNS = (
    "id", "temp_id", "transaction_id", "bill_link_id", "email", "name",
    "product_name", "amount", "discounted_amount", "voucher_code",
    "payment_method", "status", "expiry_date", "created_at", "updated_at",
)
TX_MUTABLE = frozenset({
    "transaction_id", "bill_link_id", "voucher_code", "payment_method",
    "status", "name", "product_name",
})


class VoucherStore:
    """
    Voucher pool + transaction ledger on PostgreSQL or SQLite.

    Every call is its own short DB transaction. The two primitives that
    carry the concurrency guarantees are conditional single-row updates:
      - claim_voucher: used false -> true only if still false
      - update_pending: write a transaction only while it is PENDING
    """

    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.gated = gated

    # ------------------------------------------------------------------
    # voucher pool
    # ------------------------------------------------------------------
    async def add_vouchers(self, rows: Iterable[Dict[str, Any]]) -> int:
        added = 0
        now = time.time()
        async with self.gated():
            async with self.db.begin():
                for v in rows:
                    res = await self.db.execute(text("""
                      INSERT INTO vouchers(
                        id, code, product_name, amount, discounted_amount,
                        image, used, created_at
                      ) VALUES (
                        :id, :code, :product_name, :amount,
                        :discounted_amount, :image, :used, :created_at
                      )
                      ON CONFLICT (code) DO NOTHING
                    """), {
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
                        "created_at": float(v.get("created_at") or now),
                    })
                    added += res.rowcount or 0
        return added

    async def get_voucher(self, code: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM vouchers WHERE code=:code
                """), {"code": code})).mappings().first()
                return dict(row) if row else None

    async def find_unused_voucher(
        self, product_name: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        sql = "SELECT * FROM vouchers WHERE used=:unused"
        params: Dict[str, Any] = {"unused": False}
        if product_name:
            sql += " AND product_name=:product_name"
            params["product_name"] = product_name
        sql += " ORDER BY created_at ASC, code ASC LIMIT 1"
        async with self.gated():
            async with self.db.begin():
                row = (
                    await self.db.execute(text(sql), params)
                ).mappings().first()
                return dict(row) if row else None

    async def claim_voucher(
        self, code: str, *, used_by: Optional[str] = None,
        used_at: Optional[float] = None, expiry_date: Optional[float] = None,
    ) -> bool:
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE vouchers
                  SET used=:used, used_by=:used_by, used_at=:used_at,
                      expiry_date=:expiry_date
                  WHERE code=:code AND used=:unused
                """), {
                    "used": True, "unused": False, "code": code,
                    "used_by": used_by, "used_at": used_at,
                    "expiry_date": expiry_date,
                })
        return res.rowcount == 1

    async def release_voucher(self, code: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE vouchers
                  SET used=:unused, used_by=NULL, used_at=NULL,
                      expiry_date=NULL
                  WHERE code=:code AND used=:used
                """), {"used": True, "unused": False, "code": code})
        return res.rowcount == 1

    async def stamp_voucher(
        self, code: str, *, used_by: Optional[str], used_at: float,
        expiry_date: float, only_missing: bool = False,
    ) -> bool:
        sql = """
          UPDATE vouchers
          SET used=:used, used_by=COALESCE(:used_by, used_by),
              used_at=:used_at, expiry_date=:expiry_date
          WHERE code=:code
        """
        if only_missing:
            sql += " AND expiry_date IS NULL"
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text(sql), {
                    "used": True, "code": code, "used_by": used_by,
                    "used_at": used_at, "expiry_date": expiry_date,
                })
        return res.rowcount == 1

    async def delete_voucher(self, code: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(
                    text("DELETE FROM vouchers WHERE code=:code"),
                    {"code": code},
                )
        return res.rowcount == 1

    async def list_voucher_groups(self) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT product_name, amount, discounted_amount,
                         MIN(image) AS image, COUNT(*) AS available_count
                  FROM vouchers
                  WHERE used=:unused
                  GROUP BY product_name, amount, discounted_amount
                  ORDER BY product_name ASC, amount ASC
                """), {"unused": False})).mappings().all()
        return [dict(r) for r in rows]

    async def count_vouchers(self) -> Dict[str, int]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT COUNT(*) AS total,
                         COALESCE(SUM(CASE WHEN used=:used THEN 1 ELSE 0 END), 0)
                           AS used
                  FROM vouchers
                """), {"used": True})).mappings().first()
        total, used = int(row["total"]), int(row["used"])
        return {"total": total, "used": used, "available": total - used}

    async def count_vouchers_by_product(self) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT COALESCE(product_name, 'Unknown Product') AS name,
                         COUNT(*) AS total,
                         COALESCE(SUM(CASE WHEN used=:used THEN 1 ELSE 0 END), 0)
                           AS used
                  FROM vouchers
                  GROUP BY COALESCE(product_name, 'Unknown Product')
                  ORDER BY name ASC
                """), {"used": True})).mappings().all()
        return [{
            "productName": r["name"],
            "available": int(r["total"]) - int(r["used"]),
            "used": int(r["used"]),
            "total": int(r["total"]),
        } for r in rows]

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
        cols = ", ".join(TX_COLUMNS)
        vals = ", ".join(f":{c}" for c in TX_COLUMNS)
        try:
            async with self.gated():
                async with self.db.begin():
                    await self.db.execute(
                        text(
                            f"INSERT INTO transactions({cols}) "
                            f"VALUES ({vals})"
                        ),
                        tx,
                    )
        except IntegrityError as exc:
            raise DuplicateTransaction(str(exc.orig)) from exc
        return tx

    async def get_transaction(self, tx_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM transactions WHERE id=:id
                """), {"id": tx_id})).mappings().first()
                return dict(row) if row else None

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
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                  SELECT * FROM transactions WHERE {col}=:v
                  ORDER BY created_at DESC LIMIT 1
                """), {"v": value})).mappings().first()
                return dict(row) if row else None

    async def find_latest_pending(
        self, email: str, amount: int, *, unlinked_only: bool = False
    ) -> Optional[Dict[str, Any]]:
        sql = """
          SELECT * FROM transactions
          WHERE email=:email
            AND status=:pending
            AND COALESCE(discounted_amount, amount)=:amount
        """
        if unlinked_only:
            sql += " AND transaction_id IS NULL"
        sql += " ORDER BY created_at DESC LIMIT 1"
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(sql), {
                    "email": email, "pending": PENDING, "amount": int(amount),
                })).mappings().first()
                return dict(row) if row else None

    async def update_pending(
        self, tx_id: str, fields: Dict[str, Any]
    ) -> bool:
        """Write `fields` only if the row is still PENDING."""
        bad = set(fields) - TX_MUTABLE
        if bad:
            raise ValueError(f"not updatable: {sorted(bad)}")
        params = dict(fields)
        params.update({"id": tx_id, "pending": PENDING,
                       "updated_at": time.time()})
        sets = ", ".join(f"{c}=:{c}" for c in fields)
        sets = f"{sets}, updated_at=:updated_at" if sets else \
            "updated_at=:updated_at"
        try:
            async with self.gated():
                async with self.db.begin():
                    res = await self.db.execute(text(f"""
                      UPDATE transactions SET {sets}
                      WHERE id=:id AND status=:pending
                    """), params)
        except IntegrityError as exc:
            raise DuplicateTransaction(str(exc.orig)) from exc
        return res.rowcount == 1

    async def list_expired_pending(
        self, now: float, limit: int = 500
    ) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT * FROM transactions
                  WHERE status=:pending AND expiry_date < :now
                  ORDER BY expiry_date ASC
                  LIMIT :lim
                """), {"pending": PENDING, "now": now, "lim": int(limit)})
                ).mappings().all()
        return [dict(r) for r in rows]

    async def list_transactions(
        self, *, since: Optional[float] = None, until: Optional[float] = None,
        status: Optional[str] = None, search: Optional[str] = None,
        offset: int = 0, limit: Optional[int] = None,
    ) -> Tuple[int, List[Dict[str, Any]]]:
        where = ["1=1"]
        params: Dict[str, Any] = {}
        if since is not None:
            where.append("created_at >= :since")
            params["since"] = since
        if until is not None:
            where.append("created_at <= :until")
            params["until"] = until
        if status:
            where.append("status = :status")
            params["status"] = status
        if search:
            where.append(
                "(transaction_id LIKE :q OR email LIKE :q OR temp_id LIKE :q)"
            )
            params["q"] = f"%{search}%"
        cond = " AND ".join(where)
        page = ""
        if limit is not None:
            page = " LIMIT :lim OFFSET :off"
            params.update({"lim": int(limit), "off": int(offset)})
        async with self.gated():
            async with self.db.begin():
                total = (await self.db.execute(
                    text(f"SELECT COUNT(*) FROM transactions WHERE {cond}"),
                    params,
                )).scalar_one()
                rows = (await self.db.execute(text(f"""
                  SELECT * FROM transactions WHERE {cond}
                  ORDER BY created_at DESC{page}
                """), params)).mappings().all()
        return int(total), [dict(r) for r in rows]

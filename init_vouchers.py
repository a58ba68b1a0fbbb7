"""
Load vouchers into the pool from a CSV file.

    DATABASE_URL=sqlite:///./voucherpay.db python init_vouchers.py vouchers.csv

Columns: code,product_name,amount,discounted_amount (discounted_amount may
be empty). Codes already present are skipped.
"""
import argparse
import asyncio
import csv
import logging
import os
import sys
from typing import Dict, Iterable, List

from voucherpay.infra.logs import setup_logging
from voucherpay.infra.sql import Database
from voucherpay.model.db import create_schema
from voucherpay.model.store._sql import VoucherStore

log = logging.getLogger("init_vouchers")

REQUIRED = ("code", "product_name", "amount")


def read_rows(lines: Iterable[str]) -> List[Dict[str, object]]:
    rows = []
    reader = csv.DictReader(lines)
    missing = [c for c in REQUIRED if c not in (reader.fieldnames or [])]
    if missing:
        raise ValueError(f"CSV is missing columns: {', '.join(missing)}")
    for n, rec in enumerate(reader, start=2):
        code = (rec.get("code") or "").strip()
        if not code:
            log.warning("line %d: empty code, skipped", n)
            continue
        discounted = (rec.get("discounted_amount") or "").strip()
        rows.append({
            "code": code,
            "product_name": rec["product_name"].strip(),
            "amount": int(rec["amount"]),
            "discounted_amount": int(discounted) if discounted else None,
            "image": (rec.get("image") or "").strip() or None,
        })
    return rows


async def load(database_url: str, rows: List[Dict[str, object]]) -> int:
    db = Database(database_url)
    try:
        await db.run_ddl(create_schema)
        async with db.session() as session:
            store = VoucherStore(db=session, gated=db.gated)
            return await store.add_vouchers(rows)
    finally:
        await db.dispose()


def main():
    setup_logging()
    ap = argparse.ArgumentParser(description="load vouchers from CSV")
    ap.add_argument("csv_path", help="CSV file with voucher codes")
    args = ap.parse_args()

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        log.critical("NEED DATABASE_URL!")
        sys.exit(1)

    with open(args.csv_path, newline="", encoding="utf-8") as f:
        rows = read_rows(f)
    added = asyncio.run(load(database_url, rows))
    log.info("%d vouchers added, %d already present", added,
             len(rows) - added)


if __name__ == "__main__":
    main()

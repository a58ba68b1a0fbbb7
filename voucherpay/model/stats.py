# model/stats.py
"""Admin dashboard aggregates, computed from plain transaction rows."""
from __future__ import annotations
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List

from ..helpers import JAKARTA, effective_amount
from .lifecycle import SUCCESSFUL, PENDING, CANCELLED, FAILED, EXPIRED

FAILED_FOR_STATS = (CANCELLED, FAILED, EXPIRED)


def _revenue(tx: Dict[str, Any]) -> int:
    return int(effective_amount(tx.get("amount") or 0,
                                tx.get("discounted_amount")))


def sales_stats(txs: List[Dict[str, Any]]) -> Dict[str, Any]:
    ok = [t for t in txs if t["status"] == SUCCESSFUL]
    revenue = sum(_revenue(t) for t in ok)
    total = len(txs)
    return {
        "totalRevenue": revenue,
        "totalTransactions": total,
        "successfulTransactions": len(ok),
        "pendingTransactions": sum(1 for t in txs if t["status"] == PENDING),
        "failedTransactions": sum(
            1 for t in txs if t["status"] in FAILED_FOR_STATS
        ),
        "averageOrderValue": revenue / len(ok) if ok else 0,
        "conversionRate": len(ok) / total * 100 if total else 0,
    }


def traffic_stats(txs: List[Dict[str, Any]]) -> Dict[str, int]:
    per_email = Counter(t.get("email") for t in txs)
    unique = len(per_email)
    repeat = sum(1 for n in per_email.values() if n > 1)
    return {
        "totalVisitors": unique,
        "repeatCustomers": repeat,
        "newCustomers": unique - repeat,
        "totalPageViews": len(txs),
    }


def top_products(txs: List[Dict[str, Any]], n: int = 5) -> List[Dict]:
    products: Dict[str, Dict[str, Any]] = {}
    for t in txs:
        if t["status"] != SUCCESSFUL:
            continue
        name = t.get("product_name") or "Unknown"
        p = products.setdefault(
            name, {"name": name, "sales": 0, "revenue": 0, "quantity": 0}
        )
        p["sales"] += 1
        p["quantity"] += 1
        p["revenue"] += _revenue(t)
    return sorted(products.values(), key=lambda p: -p["revenue"])[:n]


def daily_stats(txs: List[Dict[str, Any]], now: float,
                days: int = 7) -> List[Dict[str, Any]]:
    today = datetime.fromtimestamp(now, tz=JAKARTA).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    out = []
    for i in range(days - 1, -1, -1):
        start = today - timedelta(days=i)
        lo, hi = start.timestamp(), (start + timedelta(days=1)).timestamp()
        day = [t for t in txs if lo <= t["created_at"] < hi]
        out.append({
            "date": start.date().isoformat(),
            "total": len(day),
            "successful": sum(1 for t in day if t["status"] == SUCCESSFUL),
            "pending": sum(1 for t in day if t["status"] == PENDING),
            "failed": sum(1 for t in day if t["status"] in FAILED_FOR_STATS),
            "revenue": sum(_revenue(t) for t in day
                           if t["status"] == SUCCESSFUL),
        })
    return out


def hourly_distribution(txs: Iterable[Dict[str, Any]]) -> List[int]:
    hours = [0] * 24
    for t in txs:
        hours[datetime.fromtimestamp(t["created_at"], tz=JAKARTA).hour] += 1
    return hours


def compute_statistics(
    txs: List[Dict[str, Any]],
    voucher_counts: Dict[str, int],
    vouchers_by_product: List[Dict[str, Any]],
    *, now: float,
) -> Dict[str, Any]:
    hourly = hourly_distribution(txs)
    total_v = voucher_counts["total"]
    return {
        "sales": sales_stats(txs),
        "traffic": traffic_stats(txs),
        "products": top_products(txs),
        "daily": daily_stats(txs, now),
        "vouchers": {
            "totalVouchers": total_v,
            "usedVouchers": voucher_counts["used"],
            "availableVouchers": voucher_counts["available"],
            "utilizationRate": (
                voucher_counts["used"] / total_v * 100 if total_v else 0
            ),
        },
        "vouchersByProduct": vouchers_by_product,
        "peakHour": hourly.index(max(hourly)),
        "hourlyDistribution": hourly,
    }

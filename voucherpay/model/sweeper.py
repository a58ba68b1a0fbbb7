# model/sweeper.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Callable, Awaitable

from ..helpers import now_ts
from .lifecycle import EXPIRED
from .reservation import release_or_log

log = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 300
SWEEP_BATCH = 500


@dataclass
class SweepReport:
    expired: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    released: int = 0

    def as_dict(self) -> dict:
        return {
            "expired": len(self.expired),
            "skipped": len(self.skipped),
            "released_vouchers": self.released,
        }


async def sweep_expired(
    store, *, now: Optional[float] = None, limit: int = SWEEP_BATCH
) -> SweepReport:
    """
    Expire PENDING transactions past their deadline and free their vouchers.

    The EXPIRED write is conditional on the row still being PENDING, so a
    transaction reconciled between our read and our write is left alone.
    """
    now = now_ts() if now is None else now
    report = SweepReport()
    for tx in await store.list_expired_pending(now, limit=limit):
        if not await store.update_pending(tx["id"], {"status": EXPIRED}):
            report.skipped.append(tx["id"])
            continue
        report.expired.append(tx["id"])
        if await release_or_log(store, tx.get("voucher_code"),
                                f"expire {tx['id']}"):
            report.released += 1
    if report.expired or report.skipped:
        log.info("sweep: expired=%d skipped=%d released=%d",
                 len(report.expired), len(report.skipped), report.released)
    return report


async def run_periodically(
    sweep_once: Callable[[], Awaitable[SweepReport]],
    interval: float = SWEEP_INTERVAL_SECONDS,
) -> None:
    """Background loop; cancel the task to stop it."""
    log.info("expiry sweeper running every %ss", interval)
    while True:
        try:
            await sweep_once()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("expiry sweep failed, retrying next round")
        await asyncio.sleep(interval)

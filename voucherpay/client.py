#!/usr/bin/env python3
"""
voucherpay client (async)

Runs the customer flow against the server:
  1) POST /create-payment (product, email, amount) -> {payment_url, transaction_id}
  2) Extract bill_link_id from payment_url (/mockpay/{bill_link_id})
  3) POST /mockpay/{bill_link_id}/emit  (t=SUCCESSFUL|FAILED|CANCELLED)
  4) Poll GET /check-transaction with a bounded number of attempts, the
     same way the redirect page does, then give up ("check your email")

Usage:
  python -m voucherpay.client --base http://localhost:8000 \
                              --product Latte --amount 25000 \
                              --total 50 --concurrency 10

Notes:
- Needs GATEWAY_BACKEND=mock on the server.
- Each purchase consumes a voucher; load the pool with init_vouchers.py.
"""

import asyncio
import random
import string
import time
import argparse
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Callable, Awaitable

import httpx

POLL_MAX_ATTEMPTS = 15
POLL_INTERVAL_S = 2.0
TERMINAL = ("SUCCESSFUL", "FAILED", "CANCELLED", "EXPIRED")


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


async def poll_transaction(
    client: httpx.AsyncClient,
    base: str,
    temp_id: str,
    attempts: int = POLL_MAX_ATTEMPTS,
    interval_s: float = POLL_INTERVAL_S,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Optional[Dict[str, Any]]:
    """
    Ask the server at most `attempts` times whether `temp_id` has been
    reconciled. Returns the status document, or None when the caller should
    fall back to waiting for the email.
    """
    for attempt in range(1, attempts + 1):
        try:
            resp = await client.get(
                f"{base}/check-transaction",
                params={"transaction_id": temp_id},
                timeout=10.0,
            )
            if resp.status_code == 200:
                return resp.json()
        except httpx.HTTPError:
            pass  # same as "not yet": try again
        if attempt < attempts:
            await sleep(interval_s)
    return None


@dataclass
class Result:
    ok: bool
    outcome: str  # SUCCESSFUL/FAILED/CANCELLED/SOLD_OUT/TIMEOUT/ERROR
    t_create: float = 0.0
    t_emit: float = 0.0
    t_observed: float = 0.0  # time until a terminal status was observed
    voucher_code: Optional[str] = None
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        lat = [r.t_observed for r in self.results if r.t_observed > 0]

        def count(outcome: str) -> int:
            return sum(1 for r in self.results if r.outcome == outcome)

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "successful": count("SUCCESSFUL"),
            "failed": count("FAILED"),
            "cancelled": count("CANCELLED"),
            "sold_out": count("SOLD_OUT"),
            "timeout": count("TIMEOUT"),
            "error": count("ERROR"),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Purchase Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"SUCCESSFUL: {int(s['successful'])}   "
            f"FAILED: {int(s['failed'])}   "
            f"CANCELLED: {int(s['cancelled'])}   "
            f"SOLD OUT: {int(s['sold_out'])}   "
            f"TIMEOUT: {int(s['timeout'])}   ERROR: {int(s['error'])}"
        )
        print(
            f"Latency (until reconciled): avg {s['avg_s']:.3f}s   "
            f"p50 {s['p50_s']:.3f}s   p90 {s['p90_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )


async def one_purchase(
    client: httpx.AsyncClient,
    base: str,
    product: str,
    amount: int,
    emit_kind: str,
    poll_attempts: int = POLL_MAX_ATTEMPTS,
    poll_interval_s: float = POLL_INTERVAL_S,
) -> Result:
    r = Result(ok=False, outcome="ERROR")
    email = _rand_email()

    # 1) create payment
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/create-payment",
            json={"product_name": product, "amount": amount,
                  "email": email, "name": email.split("@")[0]},
            timeout=30.0,
        )
        if resp.status_code == 409:
            r.ok, r.outcome = True, "SOLD_OUT"
            return r
        resp.raise_for_status()
        j = resp.json()
        temp_id = j["transaction_id"]
        payment_url = j["payment_url"]
    except Exception as e:
        r.err = f"create-payment: {e}"
        return r
    r.t_create = time.perf_counter() - t0

    # 2) payment_url is like "/mockpay/{bill_link_id}"
    parts = payment_url.strip("/").split("/")
    if len(parts) < 2 or parts[-2] != "mockpay":
        r.err = f"not a mock payment url: {payment_url}"
        return r
    bill_link_id = parts[-1]

    # 3) press a button on the mock payment page
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{bill_link_id}/emit",
            data={"t": emit_kind},
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except Exception as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t1

    # 4) bounded polling
    t2 = time.perf_counter()
    doc = await poll_transaction(client, base, temp_id,
                                 poll_attempts, poll_interval_s)
    r.ok = True
    if doc is None or doc.get("status") not in TERMINAL:
        r.outcome = "TIMEOUT"
        return r
    r.t_observed = time.perf_counter() - t2
    r.outcome = doc["status"]
    r.voucher_code = doc.get("voucher_code")
    return r


async def run_load(
    base: str,
    total: int,
    concurrency: int,
    product: str,
    amount: int,
    fail_rate: float,
    cancel_rate: float,
    poll_attempts: int,
    poll_interval_s: float,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "voucherpay-client/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                rnd = random.random()
                if rnd < fail_rate:
                    emit_kind = "FAILED"
                elif rnd < fail_rate + cancel_rate:
                    emit_kind = "CANCELLED"
                else:
                    emit_kind = "SUCCESSFUL"

                res = await one_purchase(
                    client, base, product, amount, emit_kind,
                    poll_attempts, poll_interval_s,
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="voucherpay purchase client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--product", default="Latte",
                    help="Product name to buy")
    ap.add_argument("--amount", type=int, default=25000,
                    help="Price in IDR")
    ap.add_argument("--total", type=int, default=1,
                    help="Total purchases to run")
    ap.add_argument("--concurrency", type=int, default=1,
                    help="Concurrent workers")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of purchases to mark as failed")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of purchases to mark as cancelled")
    ap.add_argument("--poll-attempts", type=int, default=POLL_MAX_ATTEMPTS,
                    help="Max status polls per purchase")
    ap.add_argument("--poll-interval", type=float, default=POLL_INTERVAL_S,
                    help="Seconds between status polls")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base.rstrip("/"),
        total=args.total,
        concurrency=args.concurrency,
        product=args.product,
        amount=args.amount,
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        poll_attempts=args.poll_attempts,
        poll_interval_s=args.poll_interval,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()

import asyncio

import pytest

from voucherpay.model.lifecycle import PENDING, EXPIRED, SUCCESSFUL
from voucherpay.model.poller import check_transaction
from voucherpay.model.reservation import ReservationRequest, reserve
from voucherpay.model.store._memory import VoucherStore as MemoryStore
from voucherpay.model.sweeper import sweep_expired, run_periodically, SweepReport

from conftest import voucher_rows


async def book(store, email="buyer@example.com", now=0.0):
    return await reserve(store, ReservationRequest(
        product_name="Latte", email=email, name="Buyer", amount=25000,
    ), now=now, ttl_seconds=60)


async def test_sweep_expires_and_releases(store):
    await store.add_vouchers(voucher_rows("Latte", 2))
    old = await book(store, now=0.0)
    fresh = await book(store, "b@example.com", now=100.0)

    report = await sweep_expired(store, now=120.0)

    assert report.as_dict() == {"expired": 1, "skipped": 0,
                                "released_vouchers": 1}
    assert (await store.get_transaction(old.id))["status"] == EXPIRED
    assert (await store.get_voucher(old.voucher_code))["used"] is False
    assert (await store.get_transaction(fresh.id))["status"] == PENDING
    assert (await store.get_voucher(fresh.voucher_code))["used"] is True


async def test_sweep_twice_is_a_no_op(store):
    await store.add_vouchers(voucher_rows("Latte", 1))
    await book(store, now=0.0)
    await sweep_expired(store, now=120.0)

    again = await sweep_expired(store, now=240.0)

    assert again.as_dict() == {"expired": 0, "skipped": 0,
                               "released_vouchers": 0}


class PaidDuringSweep(MemoryStore):
    """The callback lands between the sweeper's read and its write."""

    async def list_expired_pending(self, now, limit=500):
        rows = await super().list_expired_pending(now, limit=limit)
        for tx in rows:
            self.transactions[tx["id"]]["status"] = SUCCESSFUL
        return rows


async def test_sweep_never_downgrades_a_paid_transaction():
    store = PaidDuringSweep()
    await store.add_vouchers(voucher_rows("Latte", 1))
    res = await book(store, now=0.0)

    report = await sweep_expired(store, now=120.0)

    assert report.skipped == [res.id]
    assert report.released == 0
    assert (await store.get_transaction(res.id))["status"] == SUCCESSFUL
    assert (await store.get_voucher(res.voucher_code))["used"] is True


async def test_sweep_handles_transaction_without_voucher(store):
    tx = await store.insert_transaction({
        "email": "a@example.com", "amount": 1000, "status": PENDING,
        "expiry_date": 10.0, "created_at": 1.0,
    })

    report = await sweep_expired(store, now=20.0)

    assert report.expired == [tx["id"]]
    assert report.released == 0


async def test_sweep_respects_batch_limit(store):
    await store.add_vouchers(voucher_rows("Latte", 3))
    for i in range(3):
        await book(store, f"u{i}@example.com", now=float(i))

    report = await sweep_expired(store, now=500.0, limit=2)

    assert len(report.expired) == 2


async def test_background_loop_survives_errors_until_cancelled():
    calls = []

    async def sweep_once():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database away")
        if len(calls) == 3:
            raise asyncio.CancelledError()
        return SweepReport()

    with pytest.raises(asyncio.CancelledError):
        await run_periodically(sweep_once, interval=0)

    assert len(calls) == 3


async def test_check_transaction_reports_only_terminal_states(store):
    await store.add_vouchers(voucher_rows("Latte", 1))
    res = await book(store)

    assert await check_transaction(store, res.temp_id) is None
    assert await check_transaction(store, "TX-unknown") is None
    assert await check_transaction(store, "") is None

    await store.update_pending(res.id, {"status": SUCCESSFUL,
                                        "transaction_id": "FT1"})
    assert await check_transaction(store, res.temp_id) == {
        "success": True, "transaction_id": "FT1",
        "voucher_code": res.voucher_code, "status": SUCCESSFUL,
    }


async def test_check_transaction_hides_code_of_failed_payment(store):
    await store.add_vouchers(voucher_rows("Latte", 1))
    res = await book(store)
    await store.update_pending(res.id, {"status": EXPIRED})

    result = await check_transaction(store, res.temp_id)

    assert result["status"] == EXPIRED
    assert result["voucher_code"] is None

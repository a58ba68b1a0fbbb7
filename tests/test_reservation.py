import asyncio
import logging

import pytest

from voucherpay.errors import NoVoucherAvailable, ReservationFailed
from voucherpay.model.lifecycle import PENDING, FAILED, SUCCESSFUL
from voucherpay.model.reservation import (
    ReservationRequest, reserve, attach_bill, cancel_reservation,
    issue_directly, PENDING_TTL_SECONDS, VOUCHER_VALIDITY_SECONDS,
)
from voucherpay.model.store._memory import VoucherStore as MemoryStore

from conftest import voucher_rows


def latte(email="buyer@example.com", discounted=None):
    return ReservationRequest(product_name="Latte", email=email,
                              name="Buyer", amount=25000,
                              discounted_amount=discounted)


async def test_reserve_pairs_oldest_voucher_with_pending_transaction(store):
    await store.add_vouchers(voucher_rows("Latte", 2))
    await store.add_vouchers(voucher_rows("Mocha", 1))

    res = await reserve(store, latte(discounted=20000), now=5000.0)

    assert res.voucher_code == "LAT-000"
    assert res.effective_amount == 20000
    assert res.temp_id.startswith("TX-")
    assert res.expiry_date == 5000.0 + PENDING_TTL_SECONDS

    tx = await store.get_transaction(res.id)
    assert tx["status"] == PENDING
    assert tx["voucher_code"] == "LAT-000"
    assert tx["temp_id"] == res.temp_id
    assert (await store.get_voucher("LAT-000"))["used"] is True
    assert (await store.get_voucher("LAT-001"))["used"] is False


async def test_sold_out_creates_no_transaction(store):
    await store.add_vouchers(voucher_rows("Mocha", 1))

    with pytest.raises(NoVoucherAvailable):
        await reserve(store, latte())

    total, _ = await store.list_transactions()
    assert total == 0


class YieldsAfterSelect(MemoryStore):
    """Hands control back to the loop between picking and claiming."""

    def __init__(self):
        super().__init__()
        self.claims = 0

    async def find_unused_voucher(self, product_name):
        voucher = await super().find_unused_voucher(product_name)
        await asyncio.sleep(0)
        return voucher

    async def claim_voucher(self, code, **kw):
        self.claims += 1
        return await super().claim_voucher(code, **kw)


async def test_single_voucher_under_contention():
    store = YieldsAfterSelect()
    await store.add_vouchers(voucher_rows("Latte", 1))

    results = await asyncio.gather(
        *[reserve(store, latte(f"u{i}@example.com")) for i in range(20)],
        return_exceptions=True,
    )

    won = [r for r in results if not isinstance(r, Exception)]
    lost = [r for r in results if isinstance(r, NoVoucherAvailable)]
    assert len(won) == 1
    assert len(lost) == 19
    # every buyer saw the same free voucher and tried to claim it
    assert store.claims == 20
    total, txs = await store.list_transactions()
    assert total == 1
    assert txs[0]["voucher_code"] == "LAT-000"
    assert (await store.get_voucher("LAT-000"))["used_by"] is None


class LosesFirstClaim(MemoryStore):
    """Another buyer grabs the first voucher between select and claim."""

    def __init__(self):
        super().__init__()
        self.stolen = False

    async def claim_voucher(self, code, **kw):
        if not self.stolen:
            self.stolen = True
            await super().claim_voucher(code)
        return await super().claim_voucher(code, **kw)


async def test_lost_claim_retries_with_next_voucher():
    store = LosesFirstClaim()
    await store.add_vouchers(voucher_rows("Latte", 2))

    res = await reserve(store, latte())

    assert res.voucher_code == "LAT-001"


class BrokenInsert(MemoryStore):
    async def insert_transaction(self, mapping):
        raise RuntimeError("disk full")


async def test_failed_insert_releases_voucher():
    store = BrokenInsert()
    await store.add_vouchers(voucher_rows("Latte", 1))

    with pytest.raises(ReservationFailed):
        await reserve(store, latte())

    assert (await store.get_voucher("LAT-000"))["used"] is False
    assert store.transactions == {}


class BrokenInsertAndRelease(BrokenInsert):
    async def release_voucher(self, code):
        raise RuntimeError("connection lost")


async def test_failed_rollback_is_logged_as_leak(caplog):
    store = BrokenInsertAndRelease()
    await store.add_vouchers(voucher_rows("Latte", 1))

    with caplog.at_level(logging.ERROR):
        with pytest.raises(ReservationFailed):
            await reserve(store, latte())

    assert "LEAKED VOUCHER LAT-000" in caplog.text


async def test_attach_bill_keeps_transaction_pending(store):
    await store.add_vouchers(voucher_rows("Latte", 1))
    res = await reserve(store, latte())

    assert await attach_bill(store, res, gateway_transaction_id="FT1",
                             bill_link_id=77)

    tx = await store.get_transaction(res.id)
    assert tx["status"] == PENDING
    assert tx["transaction_id"] == "FT1"
    assert tx["bill_link_id"] == "77"


async def test_cancel_reservation_releases_exactly_once(store):
    await store.add_vouchers(voucher_rows("Latte", 1))
    res = await reserve(store, latte())

    assert await cancel_reservation(store, res.id) is True
    assert await cancel_reservation(store, res.id) is False

    assert (await store.get_transaction(res.id))["status"] == FAILED
    assert (await store.get_voucher("LAT-000"))["used"] is False
    again = await reserve(store, latte("other@example.com"))
    assert again.voucher_code == "LAT-000"


async def test_issue_directly_records_success_and_drops_voucher(store):
    await store.add_vouchers(voucher_rows("Latte", 1, discounted=20000))

    issued = await issue_directly(store, product_name="Latte",
                                  email="jane@example.com",
                                  reference="REF-1", now=100.0)

    tx = issued["transaction"]
    assert tx["status"] == SUCCESSFUL
    assert tx["name"] == "jane"
    assert tx["bill_link_id"] == "REF-1"
    assert tx["discounted_amount"] == 20000
    assert issued["voucher"]["expiry_date"] == 100.0 + VOUCHER_VALIDITY_SECONDS
    assert await store.get_voucher("LAT-000") is None


async def test_issue_directly_sold_out(store):
    with pytest.raises(NoVoucherAvailable):
        await issue_directly(store, product_name="Latte",
                             email="jane@example.com")

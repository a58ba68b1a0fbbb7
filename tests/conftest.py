import os
import tempfile

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport
from sqlalchemy import text

# the server reads its configuration at import time
_tmp = tempfile.mkdtemp(prefix="voucherpay-test-")
os.environ.update({
    "DATABASE_URL": f"sqlite:///{_tmp}/test.db",
    "STORE_BACKEND": "sql",
    "RATELIMIT_BACKEND": "memory",
    "GATEWAY_BACKEND": "mock",
    "FLIP_WEBHOOK_SECRET": "test-webhook-secret",
    "INTERNAL_API_KEY": "test-internal-key",
    "CRON_SECRET": "test-cron-secret",
    "SWEEPER_ENABLED": "0",
    "DB_GATE_LIMIT": "64",
    "PUBLIC_BASE_URL": "http://test",
    "MOCK_CALLBACK_URL": "http://test/flip-callback",
    "ADMIN_USERNAME": "admin",
    "ADMIN_PASSWORD": "pw",
})

from voucherpay import server  # noqa: E402
from voucherpay.server import app  # noqa: E402
from voucherpay.model.store._memory import VoucherStore as MemoryStore  # noqa: E402
from voucherpay.model.store._sql import VoucherStore as SqlStore  # noqa: E402

WEBHOOK_SECRET = os.environ["FLIP_WEBHOOK_SECRET"]


def voucher_rows(product="Latte", n=1, amount=25000, discounted=None,
                 prefix=None):
    prefix = prefix or product.upper()[:3]
    return [
        {"code": f"{prefix}-{i:03d}", "product_name": product,
         "amount": amount, "discounted_amount": discounted,
         "created_at": 1000.0 + i}
        for i in range(n)
    ]


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def outbox():
    return []


@pytest_asyncio.fixture
async def running_app(outbox):
    async with app.router.lifespan_context(app):
        async with server.db.engine.begin() as conn:
            await conn.execute(text("DELETE FROM transactions"))
            await conn.execute(text("DELETE FROM vouchers"))

        async def record(email):
            outbox.append(email)
            return True

        app.state.notify = record
        # mock gateway callbacks go straight back into the app
        await app.state.http.aclose()
        app.state.http = httpx.AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        )
        yield app


@pytest_asyncio.fixture
async def client(running_app):
    """HTTP client wired to the app through ASGI."""
    transport = ASGITransport(app=running_app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def db_store(running_app):
    async with server.db.session() as session:
        yield SqlStore(db=session, gated=server.db.gated)

from __future__ import annotations
import sys

import asyncio
import httpx
import logging
import os
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from .infra.logs import setup_logging
from .infra.sql import Database
from .infra.ratelimit import (
    RATE_LIMITS, new_limiter, BACKEND as RATELIMIT_BACKEND,
)

from .errors import (
    NoVoucherAvailable, ReservationFailed, CallbackPayloadError,
    InvalidSignature,
)
from .gateway import (
    PaymentAdapter, MockFlip, BillRequest, GatewayValidationError,
    GatewayUnreachable, new_adapter, parse_callback, verify_callback,
    sign_callback, callback_body,
)
from .mailer import send_voucher_email
from .model.db import create_schema
from .model.lifecycle import CallbackNotice, SUCCESSFUL, STATUSES
from .model.reconcile import reconcile, VoucherEmail
from .model.reservation import (
    ReservationRequest, reserve, attach_bill, cancel_reservation,
    issue_directly,
)
from .model.sweeper import sweep_expired, run_periodically
from .model.poller import check_transaction as poll_transaction
from .model.stats import compute_statistics
from .model.store import (
    VoucherStore, new_store, BACKEND as STORE_BACKEND,
)
from .schemas import (
    CreatePaymentRequest, UseVoucherRequest, ResendVoucherRequest,
    validate_request,
)

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse, ORJSONResponse
from fastapi import Form
from fastapi.templating import Jinja2Templates

from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .helpers import now_ts, to_iso, ct_equal, JAKARTA, redact_email

import redis.asyncio as redis

setup_logging()
log = logging.getLogger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    log.critical("NEED DATABASE_URL! e.g. sqlite:///./voucherpay.db")
    sys.exit(1)

PUBLIC_BASE_URL = os.environ.get(
    "PUBLIC_BASE_URL", "http://localhost:8000"
).rstrip("/")
SUCCESS_PAGE_URL = os.environ.get("SUCCESS_PAGE_URL", "/success")
MOCK_CALLBACK_URL = os.environ.get(
    "MOCK_CALLBACK_URL", f"{PUBLIC_BASE_URL}/flip-callback"
)
FLIP_WEBHOOK_SECRET = os.environ.get("FLIP_WEBHOOK_SECRET", "")

PENDING_TTL_SECONDS = int(os.environ.get("PENDING_TTL_SECONDS", "1800"))
VOUCHER_VALIDITY_SECONDS = (
    int(os.environ.get("VOUCHER_VALIDITY_DAYS", "30")) * 24 * 3600
)
SWEEPER_ENABLED = os.environ.get("SWEEPER_ENABLED", "1") == "1"
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "300"))

# client-side polling of /check-transaction
POLL_MAX_ATTEMPTS = 15
POLL_INTERVAL_MS = 2000

INTERNAL_API_KEY = os.environ.get("INTERNAL_API_KEY", "")
CRON_SECRET = os.environ.get("CRON_SECRET", "")
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
ALLOWED_ORIGINS = [
    o.strip() for o in os.environ.get("ALLOWED_ORIGINS", "").split(",")
    if o.strip()
]

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")


db = Database(DATABASE_URL)

adapter: PaymentAdapter = new_adapter()


def voucher_notifier(http: httpx.AsyncClient):
    async def notify(email: VoucherEmail) -> bool:
        return await send_voucher_email(http, email)
    return notify


# ---
# startup / shutdown
# ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("=" * 50)
    log.info("voucherpay is starting up...")
    log.info("   - Store Backend: %s", STORE_BACKEND)
    log.info("   - Gateway: %s", adapter.name)
    log.info("   - Rate limit Backend: %s", RATELIMIT_BACKEND)
    log.info("=" * 50)

    await db.run_ddl(create_schema)

    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )
    app.state.notify = voucher_notifier(app.state.http)

    app.state.redis = None
    if RATELIMIT_BACKEND == "redis":
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    app.state.limiter = new_limiter(r=app.state.redis)
    app.state.memory = VoucherStore() if STORE_BACKEND == "memory" else None

    app.state.sweeper = None
    if SWEEPER_ENABLED:
        app.state.sweeper = asyncio.create_task(
            run_periodically(lambda: _sweep_once(app), SWEEP_INTERVAL_SECONDS)
        )
    try:
        yield
    finally:
        task = app.state.sweeper
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None
        await db.dispose()


app = FastAPI(
    title="voucherpay",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


async def vouchers(request: Request) -> VoucherStore:
    if STORE_BACKEND == "memory":
        yield new_store(memory=request.app.state.memory)
    else:
        async with db.session() as session:
            yield new_store(db=session, gated=db.gated)


async def _sweep_once(app: FastAPI):
    if STORE_BACKEND == "memory":
        return await sweep_expired(new_store(memory=app.state.memory))
    async with db.session() as session:
        return await sweep_expired(new_store(db=session, gated=db.gated))


# ----------------------------
# Helpers
# ----------------------------
def fail(message: str, status_code: int, **extra) -> ORJSONResponse:
    return ORJSONResponse(
        {"success": False, "message": message, **extra},
        status_code=status_code,
    )


def client_identifier(request: Request) -> str:
    api_key = request.headers.get("x-api-key")
    if api_key:
        return f"api-key:{api_key}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return f"ip:{real_ip.strip()}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


def rate_limited(scope: str):
    rule = RATE_LIMITS[scope]

    async def check(request: Request) -> None:
        ident = client_identifier(request)
        res = await request.app.state.limiter.hit(scope, ident, rule)
        if not res.success:
            log.warning("rate limit exceeded: scope=%s client=%s",
                        scope, ident)
            raise HTTPException(
                status_code=429,
                detail="Too many requests, please try again later.",
                headers={
                    "Retry-After": str(res.retry_after()),
                    "X-RateLimit-Limit": str(res.limit),
                    "X-RateLimit-Remaining": str(res.remaining),
                    "X-RateLimit-Reset": str(int(res.reset)),
                },
            )
    return check


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


async def read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return fail("Internal server error", 500)


@app.get("/")
async def index():
    return {
        "name": "voucherpay",
        "store": STORE_BACKEND,
        "gateway": adapter.name,
    }


# ----------------------------
# API: create payment (reserve voucher, open bill)
# ----------------------------
@app.post("/create-payment", dependencies=[Depends(rate_limited("create_payment"))])
async def create_payment(
    request: Request,
    store: VoucherStore = Depends(vouchers),
):
    data, error = validate_request(CreatePaymentRequest,
                                   await read_json(request))
    if error:
        return fail(error, 400)

    try:
        reservation = await reserve(store, ReservationRequest(
            product_name=data.product_name,
            email=data.email,
            name=data.name,
            amount=data.amount,
            discounted_amount=data.discounted_amount,
        ), ttl_seconds=PENDING_TTL_SECONDS)
    except NoVoucherAvailable:
        return fail("Voucher sold out. Please choose another product.", 409)
    except ReservationFailed:
        return fail("Failed to create transaction", 500)

    outcome = await adapter.create_bill(request.app.state.http, BillRequest(
        temp_id=reservation.temp_id,
        title=data.title or "Voucher Purchase",
        amount=reservation.effective_amount,
        email=data.email,
        name=data.name,
        expires_at=reservation.expiry_date,
        redirect_url=(
            f"{PUBLIC_BASE_URL}/redirect-payment"
            f"?transaction_id={reservation.temp_id}"
        ),
        sender_bank_type=data.sender_bank_type or "qris",
    ))

    if isinstance(outcome, (GatewayValidationError, GatewayUnreachable)):
        try:
            await cancel_reservation(store, reservation.id)
        except Exception:
            log.exception("LEAKED VOUCHER %s: cancel of %s failed",
                          reservation.voucher_code, reservation.temp_id)
        if isinstance(outcome, GatewayValidationError):
            return fail(outcome.message, 400)
        return fail("Failed to create payment link", 502)

    try:
        await attach_bill(
            store, reservation,
            gateway_transaction_id=outcome.gateway_transaction_id,
            bill_link_id=outcome.bill_link_id,
        )
    except Exception:
        # the callback can still find it by email + amount
        log.exception("could not attach bill %s to %s",
                      outcome.bill_link_id, reservation.temp_id)

    log.info("payment link created for %s (%s)",
             reservation.temp_id, redact_email(data.email))
    return {
        "success": True,
        "payment_url": outcome.payment_url,
        "transaction_id": reservation.temp_id,
        "voucher_code": reservation.voucher_code,
    }


# ----------------------------
# Webhook endpoint (Flip callback)
# ----------------------------
@app.post("/flip-callback")
async def flip_callback(
    request: Request,
    store: VoucherStore = Depends(vouchers),
):
    raw = await request.body()
    try:
        verify_callback(raw, request.headers, FLIP_WEBHOOK_SECRET)
    except InvalidSignature as e:
        log.warning("rejected callback from %s: %s",
                    client_identifier(request), e)
        raise HTTPException(status_code=401, detail="Invalid signature")

    # from here on the gateway always gets a 200
    try:
        notice = parse_callback(raw, request.headers.get("content-type"))
    except CallbackPayloadError as e:
        log.error("unusable callback payload: %s", e)
        return {"success": True, "message": "Invalid payload ignored"}

    try:
        result = await reconcile(
            store, notice,
            notify=request.app.state.notify,
            validity_seconds=VOUCHER_VALIDITY_SECONDS,
        )
    except Exception:
        log.exception("callback %s (%s) failed to reconcile",
                      notice.gateway_transaction_id, notice.status)
        return {"success": True, "message": "Callback received"}

    return {
        "success": True,
        "message": result.message,
        "action": result.action,
        "status": result.status,
    }


# ----------------------------
# API: transaction status (polled by redirect page)
# ----------------------------
@app.get("/check-transaction")
async def check_transaction(
    transaction_id: Optional[str] = None,
    store: VoucherStore = Depends(vouchers),
):
    if not transaction_id:
        return fail("transaction_id is required", 400)
    result = await poll_transaction(store, transaction_id)
    if result is None:
        # not reconciled yet -> let client keep polling
        raise HTTPException(404, detail="transaction not found or pending")
    return result


@app.get("/redirect-payment", response_class=HTMLResponse)
async def redirect_payment(request: Request,
                           transaction_id: Optional[str] = None):
    return templates.TemplateResponse(request, "redirect.html", {
        "transaction_id": transaction_id or "",
        "max_attempts": POLL_MAX_ATTEMPTS,
        "interval_ms": POLL_INTERVAL_MS,
        "success_url": SUCCESS_PAGE_URL,
    })


@app.get("/success", response_class=HTMLResponse)
async def success_page(request: Request,
                       transaction_id: Optional[str] = None,
                       voucher: Optional[str] = None,
                       status: Optional[str] = None):
    return templates.TemplateResponse(request, "success.html", {
        "transaction_id": transaction_id,
        "voucher": voucher,
        "status": status,
    })


# ----------------------------
# Expiry sweeps (manual + cron)
# ----------------------------
@app.post("/cleanup-expired",
          dependencies=[Depends(rate_limited("cleanup_expired"))])
async def cleanup_expired(
    request: Request,
    store: VoucherStore = Depends(vouchers),
):
    key = request.headers.get("x-api-key") or ""
    if not INTERNAL_API_KEY or not ct_equal(key, INTERNAL_API_KEY):
        log.warning("cleanup-expired with bad api key from %s",
                    client_identifier(request))
        raise HTTPException(status_code=401, detail="Unauthorized")
    report = await sweep_expired(store)
    return {"success": True, **report.as_dict()}


@app.get("/cron/release-vouchers")
async def cron_release_vouchers(
    request: Request,
    store: VoucherStore = Depends(vouchers),
):
    auth = request.headers.get("authorization") or ""
    if not CRON_SECRET or not ct_equal(auth, f"Bearer {CRON_SECRET}"):
        log.warning("cron trigger with bad secret from %s",
                    client_identifier(request))
        raise HTTPException(status_code=401, detail="Unauthorized")
    report = await sweep_expired(store)
    return {"released": report.released, **report.as_dict()}


# ----------------------------
# Voucher inventory + direct issuance
# ----------------------------
@app.get("/vouchers", dependencies=[Depends(rate_limited("default"))])
async def list_vouchers(store: VoucherStore = Depends(vouchers)):
    groups = await store.list_voucher_groups()
    return {
        "success": True,
        "vouchers": [
            {**g, "available_count": int(g["available_count"])}
            for g in groups
        ],
    }


@app.post("/vouchers/use", dependencies=[Depends(rate_limited("voucher_use"))])
async def use_voucher(
    request: Request,
    store: VoucherStore = Depends(vouchers),
):
    data, error = validate_request(UseVoucherRequest,
                                   await read_json(request))
    if error:
        return fail(error, 400)
    try:
        issued = await issue_directly(
            store,
            product_name=data.product_name,
            email=data.user_email,
            name=data.name,
            reference=data.transaction_id,
            validity_seconds=VOUCHER_VALIDITY_SECONDS,
        )
    except NoVoucherAvailable:
        groups = await store.list_voucher_groups()
        return fail(
            "No available vouchers for this product", 404,
            available_products=sorted({g["product_name"] for g in groups}),
        )
    except ReservationFailed:
        return fail("Failed to create transaction", 500)

    v, tx = issued["voucher"], issued["transaction"]
    discounted = v["discounted_amount"]
    return {
        "success": True,
        "message": "Voucher assigned successfully",
        "voucher": {
            "code": v["code"],
            "product_name": v["product_name"],
            "amount": v["amount"],
            "discounted_amount": discounted,
            "final_price": discounted if discounted is not None
            else v["amount"],
            "has_discount": discounted is not None,
            "expiry_date": to_iso(v["expiry_date"]),
            "used_at": to_iso(v["used_at"]),
        },
        "transaction": present_transaction(tx),
    }


# ----------------------------
# MockFlip UI (simple page with 3 buttons)
# ----------------------------
def mock_adapter() -> MockFlip:
    if not isinstance(adapter, MockFlip):
        raise HTTPException(404, "mock gateway disabled")
    return adapter


@app.get("/mockpay/{bill_link_id}", response_class=HTMLResponse)
async def mockpay_screen(request: Request, bill_link_id: str):
    bill = mock_adapter().bill(bill_link_id)
    if bill is None:
        raise HTTPException(404, "bill not found")
    return templates.TemplateResponse(request, "mockpay.html", {
        "bill_link_id": bill_link_id,
        "bill": bill,
        "amount_idr": f"{bill.amount:,}".replace(",", "."),
    })


@app.post("/mockpay/{bill_link_id}/emit")
async def mockpay_emit(
    bill_link_id: str, request: Request,
    t: str = Form(...),
    store: VoucherStore = Depends(vouchers),
):
    status = t.strip().upper()
    if status not in {"SUCCESSFUL", "CANCELLED", "FAILED"}:
        raise HTTPException(400, detail="invalid status")
    bill = mock_adapter().bill(bill_link_id)
    if bill is None:
        raise HTTPException(404, "bill not found")

    tx = await store.find_transaction(bill_link_id=bill_link_id)
    gateway_id = (tx or {}).get("transaction_id") or f"FT-{bill_link_id}"
    body = callback_body(CallbackNotice(
        gateway_transaction_id=gateway_id,
        amount=bill.amount,
        status=status,
        sender_email=bill.email,
        bill_link_id=bill_link_id,
        payment_method="qris",
    ))

    client_http: httpx.AsyncClient = request.app.state.http
    try:
        await client_http.post(
            MOCK_CALLBACK_URL,
            content=body,
            headers={
                "x-callback-token": sign_callback(body, FLIP_WEBHOOK_SECRET),
                "content-type": "application/x-www-form-urlencoded",
            },
        )
    except httpx.HTTPError as e:
        # the customer can press the button again
        log.warning("mock callback delivery failed: %s", e)

    return RedirectResponse(
        url=f"/redirect-payment?transaction_id={bill.temp_id}",
        status_code=HTTP_303_SEE_OTHER,
    )


# ----------------------------
# Admin: login + read APIs
# ----------------------------
@app.get("/admin/login", response_class=HTMLResponse)
async def admin_login_get(request: Request,
                          next: str | None = "/api/admin/statistics"):
    return templates.TemplateResponse(
        request, "login.html", {"next": next, "error": None}
    )


@app.post("/admin/login", response_class=HTMLResponse)
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/admin/statistics"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        # only local redirects
        dest = next if (next or "").startswith("/") else "/"
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    log.warning("failed admin login from %s", client_identifier(request))
    return templates.TemplateResponse(
        request, "login.html",
        {"next": next, "error": "Invalid credentials."},
        status_code=401,
    )


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


def present_transaction(tx: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(tx)
    for k in ("created_at", "updated_at", "expiry_date"):
        out[k] = to_iso(tx.get(k))
    return out


def day_bounds(value: str, *, end: bool) -> float:
    # admin dates are Jakarta calendar days
    d = datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=JAKARTA)
    if end:
        d += timedelta(days=1)
        return d.timestamp() - 0.001
    return d.timestamp()


@app.get("/api/admin/statistics", dependencies=[Depends(require_admin)])
async def api_admin_statistics(
    days: int = 30,
    store: VoucherStore = Depends(vouchers),
):
    now = now_ts()
    days = max(1, min(days, 365))
    _, txs = await store.list_transactions(since=now - days * 86400)
    return compute_statistics(
        txs,
        await store.count_vouchers(),
        await store.count_vouchers_by_product(),
        now=now,
    )


@app.get("/api/admin/transactions", dependencies=[Depends(require_admin)])
async def api_admin_transactions(
    page: int = 1,
    limit: int = 10,
    search: str = "",
    status: str = "ALL",
    startDate: str = "",
    endDate: str = "",
    store: VoucherStore = Depends(vouchers),
):
    page = max(1, page)
    limit = max(1, min(limit, 100))
    status = status.strip().upper()
    if status != "ALL" and status not in STATUSES:
        return fail(f"unknown status {status}", 400)
    try:
        since = day_bounds(startDate, end=False) if startDate else None
        until = day_bounds(endDate, end=True) if endDate else None
    except ValueError:
        return fail("dates must be YYYY-MM-DD", 400)

    total, items = await store.list_transactions(
        since=since, until=until,
        status=None if status == "ALL" else status,
        search=search.strip() or None,
        offset=(page - 1) * limit, limit=limit,
    )
    return {
        "transactions": [present_transaction(t) for t in items],
        "total": total,
        "page": page,
        "limit": limit,
    }


@app.post("/api/admin/resend-voucher", dependencies=[Depends(require_admin)])
async def api_admin_resend_voucher(
    request: Request,
    store: VoucherStore = Depends(vouchers),
):
    data, error = validate_request(ResendVoucherRequest,
                                   await read_json(request))
    if error:
        return fail(error, 400)
    key = data.transaction_id
    tx = (await store.get_transaction(key)
          or await store.find_transaction(transaction_id=key)
          or await store.find_transaction(temp_id=key))
    if tx is None:
        return fail("Transaction not found", 404)
    if tx["status"] != SUCCESSFUL or not tx.get("voucher_code"):
        return fail("Transaction has no issued voucher", 400)

    voucher = await store.get_voucher(tx["voucher_code"]) or {}
    used_at = voucher.get("used_at") or tx.get("updated_at") or now_ts()
    email = VoucherEmail(
        to=tx["email"],
        name=tx.get("name") or "Customer",
        code=tx["voucher_code"],
        product_name=voucher.get("product_name") or tx.get("product_name")
        or "",
        amount=int(voucher.get("amount") or tx["amount"]),
        discounted_amount=voucher.get("discounted_amount",
                                      tx.get("discounted_amount")),
        used_at=used_at,
        expiry_date=(voucher.get("expiry_date")
                     or used_at + VOUCHER_VALIDITY_SECONDS),
        transaction_id=tx.get("transaction_id") or tx["id"],
        paid_amount=int(tx.get("discounted_amount") or tx["amount"]),
    )
    if not await request.app.state.notify(email):
        return fail("Failed to send email", 502)
    return {"success": True, "message": "Voucher email sent"}

import time
import re
import secrets
from datetime import datetime, timedelta, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
JAKARTA = timezone(timedelta(hours=7), name="WIB")

MONTHS_ID = [
    "Januari", "Februari", "Maret", "April", "Mei", "Juni", "Juli",
    "Agustus", "September", "Oktober", "November", "Desember",
]


def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_temp_id() -> str:
    # correlation key for the client, not a secret
    return f"TX-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


def effective_amount(amount: int, discounted_amount: Optional[int]) -> int:
    return discounted_amount if discounted_amount is not None else amount


def format_idr(value: int | float | None) -> str:
    # 25000 -> "25.000"
    return f"{int(value or 0):,}".replace(",", ".")


def format_indonesian_date(ts: float | None) -> str:
    if ts is None:
        return "N/A"
    d = datetime.fromtimestamp(ts, tz=JAKARTA)
    return f"{d.day} {MONTHS_ID[d.month - 1]} {d.year} {d:%H:%M}"


def redact_email(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return "***"
    user, domain = email.split("@", 1)
    if len(user) <= 2:
        return f"**@{domain}"
    return f"{user[:2]}***@{domain}"

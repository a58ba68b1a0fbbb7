from datetime import datetime

from voucherpay.helpers import JAKARTA
from voucherpay.model.stats import compute_statistics

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=JAKARTA).timestamp()


def tx(status, email, ago, product="Latte", amount=25000, discounted=None):
    return {"status": status, "email": email, "created_at": NOW - ago,
            "product_name": product, "amount": amount,
            "discounted_amount": discounted}


TXS = [
    tx("SUCCESSFUL", "a@example.com", 3600, discounted=20000),
    tx("SUCCESSFUL", "a@example.com", 86400, product="Mocha", amount=30000),
    tx("PENDING", "b@example.com", 1800),
    tx("EXPIRED", "c@example.com", 7200),
    tx("FAILED", "d@example.com", 60),
]

BY_PRODUCT = [{"productName": "Latte", "available": 3, "used": 1, "total": 4}]


def stats():
    return compute_statistics(
        TXS, {"total": 4, "used": 1, "available": 3}, BY_PRODUCT, now=NOW,
    )


def test_sales_and_traffic():
    s = stats()

    assert s["sales"] == {
        "totalRevenue": 50000,
        "totalTransactions": 5,
        "successfulTransactions": 2,
        "pendingTransactions": 1,
        "failedTransactions": 2,
        "averageOrderValue": 25000,
        "conversionRate": 40.0,
    }
    assert s["traffic"] == {
        "totalVisitors": 4,
        "repeatCustomers": 1,
        "newCustomers": 3,
        "totalPageViews": 5,
    }


def test_top_products_by_revenue():
    assert [(p["name"], p["revenue"]) for p in stats()["products"]] == [
        ("Mocha", 30000), ("Latte", 20000),
    ]


def test_daily_buckets_are_jakarta_days():
    daily = stats()["daily"]

    assert len(daily) == 7
    assert daily[0]["date"] == "2026-10-12"
    assert daily[-1] == {"date": "2026-10-18", "total": 4, "successful": 1,
                         "pending": 1, "failed": 2, "revenue": 20000}
    assert daily[-2]["revenue"] == 30000


def test_hourly_distribution_and_peak():
    s = stats()

    assert s["hourlyDistribution"][11] == 3
    assert s["hourlyDistribution"][10] == 1
    assert s["hourlyDistribution"][12] == 1
    assert sum(s["hourlyDistribution"]) == 5
    assert s["peakHour"] == 11


def test_voucher_utilization():
    s = stats()

    assert s["vouchers"] == {"totalVouchers": 4, "usedVouchers": 1,
                             "availableVouchers": 3, "utilizationRate": 25.0}
    assert s["vouchersByProduct"] == BY_PRODUCT


def test_empty_dashboard():
    s = compute_statistics([], {"total": 0, "used": 0, "available": 0}, [],
                           now=NOW)

    assert s["sales"]["conversionRate"] == 0
    assert s["sales"]["averageOrderValue"] == 0
    assert s["vouchers"]["utilizationRate"] == 0
    assert s["peakHour"] == 0

"""
Admin dashboard.

Counts and recent activity across users, catalog, orders, reviews and
distributions, gathered in one read for the admin landing page.
"""
import logging
from collections import OrderedDict

from database import serialize_doc
from distribution import with_derived as distribution_view
from orders import with_derived as order_view
from utils import as_utc, round_money, utcnow

logger = logging.getLogger(__name__)

RECENT_LIMIT = 5
REVENUE_MONTHS = 12


def _group_count(collection, key: str, **sums) -> list:
    group = {"_id": f"${key}", "count": {"$sum": 1}}
    for name, path in sums.items():
        group[name] = {"$sum": f"${path}"}
    return list(collection.aggregate([{"$match": {"is_active": True}}, {"$group": group}]))


def monthly_revenue(orders, months: int = REVENUE_MONTHS) -> list:
    """Revenue and order count per calendar month, oldest first, the latest `months` only."""
    buckets = OrderedDict()
    for order in sorted(orders, key=lambda o: as_utc(o["created_at"])):
        created = as_utc(order["created_at"])
        row = buckets.setdefault((created.year, created.month), {"revenue": 0.0, "orders": 0})
        row["revenue"] = round_money(row["revenue"] + order["pricing"]["total"])
        row["orders"] += 1
    return [
        {"year": year, "month": month, **row}
        for (year, month), row in list(buckets.items())[-months:]
    ]


def dashboard(db) -> dict:
    orders = db["order"]
    paid = list(orders.find({"is_active": True, "payment.status": "completed"}, {"created_at": 1, "pricing": 1}))

    user_stats = {row["_id"]: row["count"] for row in _group_count(db["user"], "role")}
    product_stats = {
        row["_id"]: {"count": row["count"], "total_stock": row["total_stock"]}
        for row in _group_count(db["product"], "category", total_stock="stock")
    }
    order_stats = {
        row["_id"]: {"count": row["count"], "total_value": round_money(row["total_value"])}
        for row in _group_count(orders, "status", total_value="pricing.total")
    }

    recent_orders = orders.find({"is_active": True}).sort("created_at", -1).limit(RECENT_LIMIT)
    recent_reviews = db["review"].find({"is_active": True}).sort("created_at", -1).limit(RECENT_LIMIT)
    pending_distributions = db["distribution"].find(
        {"is_active": True, "status": {"$in": ["pending", "assigned"]}}
    ).sort("scheduled_date", 1).limit(RECENT_LIMIT)

    now = utcnow()
    logger.info("Admin dashboard assembled")
    return {
        "overview": {
            "total_users": db["user"].count_documents({"is_active": True}),
            "total_products": db["product"].count_documents({"is_active": True}),
            "total_orders": orders.count_documents({"is_active": True}),
            "total_revenue": round_money(sum(o["pricing"]["total"] for o in paid)),
        },
        "user_stats": user_stats,
        "product_stats": product_stats,
        "order_stats": order_stats,
        "revenue_stats": monthly_revenue(paid),
        "recent_activities": {
            "orders": [order_view(o) for o in recent_orders],
            "reviews": [serialize_doc(r) for r in recent_reviews],
            "distributions": [distribution_view(d, now) for d in pending_distributions],
        },
    }

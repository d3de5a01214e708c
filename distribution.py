"""
Distribution (fulfillment) tracking.

    pending -> assigned -> ready -> in_transit -> delivered
    in_transit -> ready                 (failed hand-over goes back to the hub)
    pending | assigned | ready -> cancelled

The tracking number is issued the first time a distribution enters in_transit
and never regenerated. Delivery is mirrored onto the parent order by
``mirror_delivery_to_order``, which callers invoke explicitly.
"""
import logging
import math
from datetime import datetime
from typing import Optional, Union

from bson import ObjectId

from database import create_document, serialize_doc, to_object_id
from errors import (
    DuplicateDistribution,
    IllegalTransition,
    NotFoundError,
    OrderNotReady,
    ValidationError,
)
from notifications import notify
from orders import ORDER_TRANSITIONS, OrderService
from schemas import DeliveryProof, Distribution, DistributionLocation
from utils import as_utc, epoch_ms, paginate, random_code, utcnow

logger = logging.getLogger(__name__)

DISTRIBUTION_STATUSES = ("pending", "assigned", "ready", "in_transit", "delivered", "cancelled")
DISTRIBUTION_TRANSITIONS = {
    "pending": {"assigned", "cancelled"},
    "assigned": {"ready", "cancelled"},
    "ready": {"in_transit", "cancelled"},
    "in_transit": {"delivered", "ready"},
    "delivered": set(),
    "cancelled": set(),
}
CANCELLABLE_STATUSES = ("pending", "assigned", "ready")
CLOSED_STATUSES = ("delivered", "cancelled")
READY_ORDER_STATUSES = ("confirmed", "processing")
ITEM_STATUSES = ("pending", "packed", "shipped", "delivered")


def can_cancel(distribution: dict) -> bool:
    return distribution.get("status") in CANCELLABLE_STATUSES


def is_overdue(distribution: dict, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return as_utc(distribution["scheduled_date"]) < now and distribution.get("status") not in CLOSED_STATUSES


def days_until_delivery(distribution: dict, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    remaining = as_utc(distribution["scheduled_date"]) - now
    return math.ceil(remaining.total_seconds() / 86400)


def generate_tracking_number(now: Optional[datetime] = None) -> str:
    stamp = str(epoch_ms(now or utcnow()))[-6:]
    return f"TRK-{stamp}-{random_code(4)}"


def apply_status(distribution: dict, new_status: str, note: Optional[str] = None,
                 actor: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    """Move a distribution document to ``new_status`` in place.

    Returns the fields that changed, ready for a ``$set``; the timeline entry is
    appended to ``distribution["timeline"]`` and also returned under "_entry".
    """
    now = now or utcnow()
    current = distribution.get("status")
    if new_status not in DISTRIBUTION_TRANSITIONS.get(current, set()):
        raise IllegalTransition("Distribution", current, new_status)

    changes = {"status": new_status}
    tracking = dict(distribution.get("tracking") or {})
    if new_status == "in_transit" and not tracking.get("tracking_number"):
        tracking["tracking_number"] = generate_tracking_number(now)
        changes["tracking"] = tracking
    if new_status in ("in_transit", "delivered") and not distribution.get("actual_date"):
        changes["actual_date"] = now
    if new_status == "delivered":
        tracking["actual_delivery"] = now
        changes["tracking"] = tracking

    entry = {
        "status": new_status,
        "timestamp": now,
        "note": note or f"Distribution status changed to {new_status}",
        "updated_by": actor,
    }
    distribution.update(changes)
    distribution.setdefault("timeline", []).append(entry)
    changes["_entry"] = entry
    return changes


def with_derived(distribution: dict, now: Optional[datetime] = None) -> dict:
    doc = serialize_doc(distribution)
    doc["can_cancel"] = can_cancel(distribution)
    doc["is_overdue"] = is_overdue(distribution, now)
    doc["days_until_delivery"] = days_until_delivery(distribution, now)
    return doc


def mirror_delivery_to_order(db, order_id: str, orders: Optional[OrderService] = None,
                             now: Optional[datetime] = None) -> Optional[dict]:
    """Mark the parent order and its distribution summary as delivered."""
    orders = orders or OrderService(db)
    now = now or utcnow()
    order = db["order"].find_one({"_id": to_object_id(order_id, "Order")})
    if not order:
        logger.warning(f"Delivered distribution references missing order {order_id}")
        return None
    summary = {"distribution.status": "delivered", "distribution.actual_date": now}
    if order["status"] == "delivered":
        db["order"].update_one({"_id": order["_id"]}, {"$set": summary})
        return db["order"].find_one({"_id": order["_id"]})
    if "delivered" not in ORDER_TRANSITIONS.get(order["status"], set()):
        logger.warning(f"Order {order['order_number']} is {order['status']}, not mirroring delivery")
        return order
    updated = orders.record_status(order, "delivered", "Delivered via distribution", extra=summary)
    notify(db, order["user_id"], "Order Delivered",
           f"Your order #{order['order_number']} has been delivered.", type="distribution")
    logger.info(f"Order {order['order_number']} marked delivered")
    return updated


class DistributionService:
    def __init__(self, db, orders: Optional[OrderService] = None):
        self.db = db
        self.collection = db["distribution"]
        self.orders = orders or OrderService(db)

    def get_distribution(self, distribution_id: str) -> dict:
        dist = self.collection.find_one({"_id": to_object_id(distribution_id, "Distribution"), "is_active": True})
        if not dist:
            raise NotFoundError("Distribution", str(distribution_id))
        return dist

    def create_assignment(self, order_id: str, assigned_to: str, location: Union[DistributionLocation, dict],
                          scheduled_date: datetime, tracking: Optional[dict] = None,
                          actor: Optional[str] = None) -> dict:
        order = self.orders.get_order(order_id)
        if order["status"] not in READY_ORDER_STATUSES:
            raise OrderNotReady(str(order_id), order["status"])
        assignee = self.db["user"].find_one({"_id": to_object_id(assigned_to, "User"), "is_active": True})
        if not assignee:
            raise NotFoundError("User", str(assigned_to))
        existing = self.collection.find_one({"order_id": str(order["_id"]), "is_active": True})
        if existing:
            raise DuplicateDistribution(str(order_id))

        if isinstance(location, dict):
            location = DistributionLocation(**location)
        dist = Distribution(
            order_id=str(order["_id"]),
            group_order_id=order.get("group_order_id"),
            assigned_to=str(assigned_to),
            location=location,
            scheduled_date=scheduled_date,
            tracking=tracking or {},
            items=[
                {"item_id": str(ObjectId()), "product_id": item["product_id"],
                 "quantity": item["quantity"], "status": "pending"}
                for item in order["items"]
            ],
            timeline=[{"status": "pending", "timestamp": utcnow(),
                       "note": f"Assigned to {assigned_to}", "updated_by": actor}],
        )
        did = create_document(self.db, "distribution", dist)

        summary = {
            "distribution.assigned_to": str(assigned_to),
            "distribution.location": location.name,
            "distribution.scheduled_date": scheduled_date,
            "distribution.status": "assigned",
        }
        if order["status"] == "confirmed":
            self.orders.record_status(order, "processing", "Distribution assigned", actor, extra=summary)
        else:
            self.db["order"].update_one({"_id": order["_id"]}, {"$set": summary})

        notify(self.db, str(assigned_to), "New Distribution Assignment",
               f"Order #{order['order_number']} is assigned to you for {location.name}.", type="distribution")
        logger.info(f"Distribution {did} created for order {order['order_number']}")
        return self.get_distribution(did)

    def list_assignments(self, assigned_to: str, status: Optional[str] = None,
                         page: int = 1, limit: int = 10) -> dict:
        filt = {"assigned_to": str(assigned_to), "is_active": True}
        if status:
            filt["status"] = status
        skip = (page - 1) * limit
        found = list(self.collection.find(filt).sort("scheduled_date", 1).skip(skip).limit(limit))
        total = self.collection.count_documents(filt)
        return {
            "distributions": [with_derived(d) for d in found],
            "pagination": paginate(total, page, limit, len(found)),
        }

    def _persist(self, dist: dict, previous_status: str, changes: dict) -> dict:
        entry = changes.pop("_entry")
        changes["updated_at"] = utcnow()
        res = self.collection.update_one(
            {"_id": dist["_id"], "status": previous_status},
            {"$set": changes, "$push": {"timeline": entry}},
        )
        if res.matched_count == 0:
            raise IllegalTransition("Distribution", previous_status, changes["status"])
        return self.collection.find_one({"_id": dist["_id"]})

    def update_status(self, distribution_id: str, new_status: str, note: Optional[str] = None,
                      actor: Optional[str] = None) -> dict:
        dist = self.get_distribution(distribution_id)
        previous = dist["status"]
        had_tracking = bool((dist.get("tracking") or {}).get("tracking_number"))
        changes = apply_status(dist, new_status, note, actor)
        if not had_tracking and (dist.get("tracking") or {}).get("tracking_number"):
            logger.info(f"Distribution {distribution_id} issued tracking {dist['tracking']['tracking_number']}")
        updated = self._persist(dist, previous, changes)
        logger.info(f"Distribution {distribution_id} moved {previous} -> {new_status}")
        if new_status == "delivered":
            mirror_delivery_to_order(self.db, updated["order_id"], self.orders)
        return updated

    def update_item_status(self, distribution_id: str, item_id: str, status: str,
                           notes: Optional[str] = None) -> dict:
        if status not in ITEM_STATUSES:
            raise ValidationError(f"Invalid item status {status!r}", field="status")
        dist = self.get_distribution(distribution_id)
        items = dist.get("items", [])
        for item in items:
            if item["item_id"] == item_id:
                item["status"] = status
                if notes:
                    item["notes"] = notes
                break
        else:
            raise NotFoundError("DistributionItem", item_id)
        self.collection.update_one({"_id": dist["_id"]}, {"$set": {"items": items, "updated_at": utcnow()}})
        return self.get_distribution(distribution_id)

    def record_delivery_proof(self, distribution_id: str, proof: Union[DeliveryProof, dict],
                              actor: Optional[str] = None) -> dict:
        dist = self.get_distribution(distribution_id)
        if dist["status"] == "cancelled":
            raise IllegalTransition("Distribution", "cancelled", "delivered")
        if isinstance(proof, dict):
            proof = DeliveryProof(**proof)
        proof.delivered_by = actor or proof.delivered_by
        now = utcnow()
        tracking = dict(dist.get("tracking") or {})
        tracking["actual_delivery"] = now
        entry = {"status": "delivered", "timestamp": now,
                 "note": f"Delivered to {proof.received_by.name}", "updated_by": actor}
        self.collection.update_one(
            {"_id": dist["_id"]},
            {"$set": {
                "delivery_proof": proof.model_dump(),
                "status": "delivered",
                "actual_date": now,
                "tracking": tracking,
                "updated_at": now,
            }, "$push": {"timeline": entry}},
        )
        logger.info(f"Delivery proof recorded for distribution {distribution_id}")
        mirror_delivery_to_order(self.db, dist["order_id"], self.orders, now)
        return self.get_distribution(distribution_id)

    def cancel(self, distribution_id: str, reason: str, actor: Optional[str] = None) -> dict:
        if not reason or len(reason.strip()) < 5:
            raise ValidationError("Cancellation reason required", field="reason")
        dist = self.get_distribution(distribution_id)
        if not can_cancel(dist):
            raise IllegalTransition("Distribution", dist["status"], "cancelled")
        previous = dist["status"]
        changes = apply_status(dist, "cancelled", f"Cancelled: {reason.strip()}", actor)
        updated = self._persist(dist, previous, changes)
        logger.info(f"Distribution {distribution_id} cancelled: {reason}")
        return updated

    def statistics(self) -> dict:
        counts = {status: 0 for status in DISTRIBUTION_STATUSES}
        for row in self.collection.aggregate([
            {"$match": {"is_active": True}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]):
            counts[row["_id"]] = row["count"]
        return {"status_breakdown": counts, "overdue": len(self.overdue())}

    def overdue(self, now: Optional[datetime] = None) -> list:
        now = now or utcnow()
        found = self.collection.find({"status": {"$nin": list(CLOSED_STATUSES)}, "is_active": True})
        return [d for d in found if is_overdue(d, now)]

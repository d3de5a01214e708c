"""
Order lifecycle.

Status machine (strict adjacency):

    pending -> confirmed -> processing -> shipped -> delivered
    pending | confirmed -> cancelled
    processing -> delivered            (distribution hand-over skips shipped)
    delivered | cancelled -> refunded  (only once payment is completed)

Every status write and its timeline entry go out in the same update.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import List, Optional

from database import create_document, serialize_doc, to_object_id
from errors import (
    GroupClosed,
    IllegalTransition,
    NotAMember,
    NotFoundError,
    OutOfStock,
    ProductNotFound,
    ValidationError,
)
from group_orders import GroupOrderService, is_member, is_open
from notifications import notify
from pricing import LineItem, calculate_pricing, line_total
from products import final_price, find_variant_option
from schemas import Order
from utils import epoch_ms, paginate, random_code, round_money, utcnow

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"processing", "cancelled"},
    "processing": {"shipped", "delivered"},
    "shipped": {"delivered"},
    "delivered": {"refunded"},
    "cancelled": {"refunded"},
    "refunded": set(),
}
CANCELLABLE_STATUSES = ("pending", "confirmed")
REFUNDABLE_STATUSES = ("delivered", "cancelled")
PAYMENT_METHODS = ("razorpay", "paytm", "upi", "cod")


def can_cancel(order: dict) -> bool:
    return order.get("status") in CANCELLABLE_STATUSES


def can_refund(order: dict) -> bool:
    payment = order.get("payment") or {}
    return (
        payment.get("status") == "completed"
        and order.get("status") in REFUNDABLE_STATUSES
        and payment.get("refunded_at") is None
    )


def total_items(order: dict) -> int:
    return sum(item["quantity"] for item in order.get("items", []))


def generate_order_number(now: Optional[datetime] = None) -> str:
    return f"ORD-{epoch_ms(now or utcnow())}-{random_code(4)}"


def timeline_entry(status: str, note: Optional[str] = None, actor: Optional[str] = None,
                   now: Optional[datetime] = None) -> dict:
    return {"status": status, "timestamp": now or utcnow(), "note": note, "updated_by": actor}


def check_transition(order: dict, new_status: str) -> None:
    current = order.get("status")
    if new_status not in ORDER_TRANSITIONS.get(current, set()):
        raise IllegalTransition("Order", current, new_status)
    if new_status == "refunded" and (order.get("payment") or {}).get("status") != "completed":
        raise IllegalTransition("Order", current, new_status)


def with_derived(order: dict) -> dict:
    doc = serialize_doc(order)
    doc["can_cancel"] = can_cancel(order)
    doc["can_refund"] = can_refund(order)
    doc["total_items"] = total_items(order)
    return doc


class OrderService:
    def __init__(self, db, groups: Optional[GroupOrderService] = None):
        self.db = db
        self.collection = db["order"]
        self.products = db["product"]
        self.groups = groups or GroupOrderService(db)

    # --- checkout ---

    def _build_items(self, items: List[dict]) -> tuple:
        """Validate the whole cart against live products before anything is written."""
        if not items:
            raise ValidationError("At least one item required", field="items")
        order_items = []
        lines = []
        requested = OrderedDict()
        for item in items:
            quantity = item.get("quantity", 0)
            if not isinstance(quantity, int) or quantity < 1:
                raise ValidationError(f"Invalid quantity {quantity!r}", field="quantity")
            product_id = str(item.get("product_id"))
            try:
                product = self.products.find_one({"_id": to_object_id(product_id, "Product")})
            except NotFoundError:
                raise ProductNotFound(product_id)
            if not product or not product.get("is_active", True):
                raise ProductNotFound(product_id)

            variant = item.get("variant") or {}
            modifier = 0.0
            if variant.get("name"):
                option = find_variant_option(product, variant["name"], variant.get("value"))
                modifier = float(option.get("price_modifier") or 0)

            unit_price = final_price(product)
            line = LineItem(unit_price=unit_price, quantity=quantity, price_modifier=modifier)
            total = line_total(line)
            lines.append(line)
            order_items.append({
                "product_id": product_id,
                "name": product.get("name"),
                "quantity": quantity,
                "price": unit_price,
                "variant": {
                    "name": variant.get("name"),
                    "value": variant.get("value"),
                    "price_modifier": modifier,
                },
                "total_price": total,
            })

            entry = requested.setdefault(product_id, {"quantity": 0, "revenue": 0.0, "product": product})
            entry["quantity"] += quantity
            entry["revenue"] = round_money(entry["revenue"] + total)
            if (product.get("stock") or 0) < entry["quantity"]:
                raise OutOfStock(product_id, entry["quantity"], product.get("name"))
        return order_items, lines, requested

    def _reserve_stock(self, requested: "OrderedDict[str, dict]") -> None:
        """Decrement stock with a conditional $inc so concurrent checkouts can't oversell."""
        reserved = []
        for product_id, entry in requested.items():
            qty = entry["quantity"]
            updated = self.products.find_one_and_update(
                {"_id": to_object_id(product_id, "Product"), "is_active": True, "stock": {"$gte": qty}},
                {"$inc": {"stock": -qty, "sales.total_sold": qty, "sales.revenue": entry["revenue"]}},
            )
            if updated is None:
                self._release_stock(reserved)
                logger.warning(f"Stock reservation failed for product {product_id} (qty {qty})")
                raise OutOfStock(product_id, qty, entry["product"].get("name"))
            reserved.append((product_id, entry))

    def _release_stock(self, reserved) -> None:
        for product_id, entry in reserved:
            self.products.update_one(
                {"_id": to_object_id(product_id, "Product")},
                {"$inc": {
                    "stock": entry["quantity"],
                    "sales.total_sold": -entry["quantity"],
                    "sales.revenue": -entry["revenue"],
                }},
            )

    def create_order(self, user_id: str, items: List[dict], shipping_address: dict, payment_method: str,
                     billing_address: Optional[dict] = None, group_order_id: Optional[str] = None,
                     customer_note: Optional[str] = None, discount: float = 0.0) -> dict:
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method {payment_method!r}", field="payment_method")

        group = None
        if group_order_id:
            group = self.groups.get_group(group_order_id)
            if not is_member(group, user_id):
                raise NotAMember(group_order_id, user_id)
            if not is_open(group):
                raise GroupClosed(group_order_id)

        order_items, lines, requested = self._build_items(items)
        pricing = calculate_pricing(lines, discount=discount, waive_shipping=group is not None)

        max_value = group["settings"].get("max_order_value") if group else None
        if max_value is not None and pricing["total"] > max_value:
            raise ValidationError(
                f"Order total {pricing['total']} exceeds the group limit of {max_value}", field="total"
            )

        now = utcnow()
        order = Order(
            order_number=generate_order_number(now),
            user_id=str(user_id),
            items=order_items,
            order_type="group" if group else "individual",
            group_order_id=str(group["_id"]) if group else None,
            shipping_address=shipping_address,
            billing_address=billing_address or shipping_address,
            pricing=pricing,
            payment={"method": payment_method, "status": "pending"},
            notes={"customer": customer_note or "", "admin": ""},
            timeline=[timeline_entry("pending", "Order placed", str(user_id), now)],
        ).model_dump()

        self._reserve_stock(requested)
        try:
            oid = create_document(self.db, "order", order)
        except Exception:
            logger.error(f"Order insert failed for user {user_id}, releasing stock", exc_info=True)
            self._release_stock(list(requested.items()))
            raise
        order = self.collection.find_one({"_id": to_object_id(oid)})
        logger.info(f"Order {order['order_number']} created for user {user_id} (total {pricing['total']})")

        if group:
            self.groups.join_order(group, order)

        notify(self.db, str(user_id), "Order Placed",
               f"Your order #{order['order_number']} has been placed.", type="order")
        return order

    # --- reads ---

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> dict:
        filt = {"_id": to_object_id(order_id, "Order"), "is_active": True}
        if user_id is not None:
            filt["user_id"] = str(user_id)
        order = self.collection.find_one(filt)
        if not order:
            raise NotFoundError("Order", str(order_id))
        return order

    def list_user_orders(self, user_id: str, status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
        filt = {"user_id": str(user_id), "is_active": True}
        if status:
            filt["status"] = status
        return self._list(filt, page, limit)

    def list_all_orders(self, status: Optional[str] = None, order_type: Optional[str] = None,
                        page: int = 1, limit: int = 20) -> dict:
        filt = {"is_active": True}
        if status:
            filt["status"] = status
        if order_type:
            filt["order_type"] = order_type
        return self._list(filt, page, limit)

    def _list(self, filt: dict, page: int, limit: int) -> dict:
        skip = (page - 1) * limit
        orders = list(self.collection.find(filt).sort("created_at", -1).skip(skip).limit(limit))
        total = self.collection.count_documents(filt)
        return {
            "orders": [with_derived(o) for o in orders],
            "pagination": paginate(total, page, limit, len(orders)),
        }

    def statistics(self) -> dict:
        breakdown = list(self.collection.aggregate([
            {"$match": {"is_active": True}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_value": {"$sum": "$pricing.total"}}},
        ]))
        revenue = list(self.collection.aggregate([
            {"$match": {"is_active": True, "payment.status": "completed"}},
            {"$group": {"_id": None, "total": {"$sum": "$pricing.total"}}},
        ]))
        return {
            "status_breakdown": {row["_id"]: {"count": row["count"], "total_value": round_money(row["total_value"])}
                                 for row in breakdown},
            "total_orders": self.collection.count_documents({"is_active": True}),
            "total_revenue": round_money(revenue[0]["total"]) if revenue else 0,
        }

    # --- status changes ---

    def record_status(self, order: dict, status: str, note: Optional[str] = None, actor: Optional[str] = None,
                      extra: Optional[dict] = None) -> dict:
        """Write a status with its timeline entry in one update, guarded on the status we read."""
        now = utcnow()
        update = {"status": status, "updated_at": now}
        update.update(extra or {})
        entry = timeline_entry(status, note or f"Order status changed to {status}", actor, now)
        res = self.collection.update_one(
            {"_id": order["_id"], "status": order["status"]},
            {"$set": update, "$push": {"timeline": entry}},
        )
        if res.matched_count == 0:
            # someone else moved the order since we read it
            raise IllegalTransition("Order", order["status"], status)
        return self.collection.find_one({"_id": order["_id"]})

    def advance_status(self, order_id: str, new_status: str, note: Optional[str] = None,
                       actor: Optional[str] = None) -> dict:
        order = self.get_order(order_id)
        if new_status == "cancelled":
            return self.cancel_order(order_id, actor=actor, note=note)
        check_transition(order, new_status)
        extra = {"notes.admin": note} if note else None
        updated = self.record_status(order, new_status, note, actor, extra)
        logger.info(f"Order {order['order_number']} moved {order['status']} -> {new_status}")
        return updated

    def cancel_order(self, order_id: str, user_id: Optional[str] = None, actor: Optional[str] = None,
                     note: Optional[str] = None) -> dict:
        order = self.get_order(order_id, user_id)
        if not can_cancel(order):
            raise IllegalTransition("Order", order["status"], "cancelled")
        updated = self.record_status(order, "cancelled", note or "Order cancelled", actor or user_id)
        self.restore_stock(order)
        if order.get("group_order_id"):
            self.groups.remove_order(order["group_order_id"], str(order["_id"]))
        logger.info(f"Order {order['order_number']} cancelled, stock restored")
        notify(self.db, order["user_id"], "Order Cancelled",
               f"Your order #{order['order_number']} has been cancelled.", type="order")
        return updated

    def restore_stock(self, order: dict) -> None:
        restored = OrderedDict()
        for item in order.get("items", []):
            entry = restored.setdefault(item["product_id"], {"quantity": 0, "revenue": 0.0})
            entry["quantity"] += item["quantity"]
            entry["revenue"] = round_money(entry["revenue"] + item["total_price"])
        self._release_stock(list(restored.items()))

"""
Payment reconciliation.

Applies gateway outcomes (client-side verification and webhooks) to the order's
payment record and, for group orders, to the group's collected/pending amounts.
Gateway events are facts about money already moved, so they are recorded even
where the admin status machine would not offer the same move.
"""
import logging
from typing import Optional

from errors import AlreadyRefunded, NotFoundError, PaymentNotCompleted, ValidationError
from group_orders import GroupOrderService
from orders import OrderService, can_cancel, with_derived as order_view
from utils import round_money, to_paise, utcnow

logger = logging.getLogger(__name__)

DEFAULT_REFUND_REASON = "Refund requested by admin"


class PaymentService:
    def __init__(self, db, gateway, orders: Optional[OrderService] = None,
                 groups: Optional[GroupOrderService] = None):
        self.db = db
        self.gateway = gateway
        self.collection = db["order"]
        self.groups = groups or GroupOrderService(db)
        self.orders = orders or OrderService(db, self.groups)
        self._handlers = {
            "payment.captured": self._on_payment_captured,
            "payment.failed": self._on_payment_failed,
            "refund.created": self._on_refund_created,
        }

    def create_payment_order(self, order_id: str, user_id: str, amount: float) -> dict:
        order = self.orders.get_order(order_id, user_id)
        if to_paise(amount) != to_paise(order["pricing"]["total"]):
            raise ValidationError("Amount mismatch", field="amount")
        gw_order = self.gateway.create_order(
            amount, order["order_number"], {"order_id": str(order["_id"]), "user_id": str(user_id)}
        )
        self.collection.update_one(
            {"_id": order["_id"]},
            {"$set": {"payment.razorpay_order_id": gw_order["id"], "updated_at": utcnow()}},
        )
        logger.info(f"Gateway order {gw_order['id']} created for {order['order_number']}")
        return {
            "razorpay_order_id": gw_order["id"],
            "amount": gw_order["amount"],
            "currency": gw_order["currency"],
            "key": getattr(self.gateway, "key_id", None),
        }

    def _complete(self, order: dict, payment_id: str, signature: Optional[str], note: str) -> dict:
        now = utcnow()
        fields = {
            "payment.status": "completed",
            "payment.razorpay_payment_id": payment_id,
            "payment.paid_at": now,
        }
        if signature:
            fields["payment.razorpay_signature"] = signature
        if order["status"] == "pending":
            updated = self.orders.record_status(order, "confirmed", note, extra=fields)
        else:
            fields["updated_at"] = now
            self.collection.update_one({"_id": order["_id"]}, {"$set": fields})
            updated = self.collection.find_one({"_id": order["_id"]})
        if order.get("group_order_id"):
            self.groups.record_collection(order["group_order_id"], order["pricing"]["total"])
        logger.info(f"Payment {payment_id} completed for order {order['order_number']}")
        return updated

    def verify_payment(self, razorpay_order_id: str, razorpay_payment_id: str, razorpay_signature: str,
                       user_id: Optional[str] = None) -> dict:
        filt = {"payment.razorpay_order_id": razorpay_order_id, "is_active": True}
        if user_id is not None:
            filt["user_id"] = str(user_id)
        order = self.collection.find_one(filt)
        if not order:
            raise NotFoundError("Order", razorpay_order_id)
        self.gateway.verify_payment_signature(razorpay_order_id, razorpay_payment_id, razorpay_signature)
        if order["payment"]["status"] == "completed":
            return order
        return self._complete(order, razorpay_payment_id, razorpay_signature, "Payment verified")

    def payment_details(self, order_id: str, user_id: str) -> dict:
        order = self.orders.get_order(order_id, user_id)
        payment = order["payment"]
        return {
            "order_number": order["order_number"],
            "amount": order["pricing"]["total"],
            "status": payment["status"],
            "method": payment["method"],
            "transaction_id": payment.get("transaction_id"),
            "razorpay_order_id": payment.get("razorpay_order_id"),
            "razorpay_payment_id": payment.get("razorpay_payment_id"),
            "paid_at": payment.get("paid_at"),
        }

    def refund(self, order_id: str, amount: Optional[float] = None, reason: Optional[str] = None,
               actor: Optional[str] = None) -> dict:
        order = self.orders.get_order(order_id)
        payment = order["payment"]
        if payment.get("refunded_at"):
            raise AlreadyRefunded(str(order_id))
        if payment["status"] != "completed":
            raise PaymentNotCompleted(str(order_id), payment["status"])
        refund_amount = amount or order["pricing"]["total"]
        if refund_amount <= 0 or refund_amount > order["pricing"]["total"]:
            raise ValidationError("Refund amount must be positive and at most the order total", field="amount")
        reason = reason or DEFAULT_REFUND_REASON

        gw_refund = self.gateway.refund(
            payment.get("razorpay_payment_id"), refund_amount, {"reason": reason, "order_id": str(order["_id"])}
        )
        self._record_refund(order, refund_amount, reason, actor)
        logger.info(f"Refunded {refund_amount} on order {order['order_number']}")
        return {"refund_id": gw_refund.get("id"), "amount": refund_amount, "status": gw_refund.get("status")}

    def _record_refund(self, order: dict, amount: float, reason: Optional[str], actor: Optional[str] = None) -> dict:
        fields = {
            "payment.status": "refunded",
            "payment.refunded_at": utcnow(),
            "payment.refund_amount": amount,
        }
        if reason:
            fields["payment.refund_reason"] = reason
        return self.orders.record_status(order, "refunded", reason or "Refunded", actor, extra=fields)

    def statistics(self) -> dict:
        breakdown = list(self.collection.aggregate([
            {"$match": {"is_active": True}},
            {"$group": {"_id": "$payment.status", "count": {"$sum": 1}, "total_amount": {"$sum": "$pricing.total"}}},
        ]))
        revenue = list(self.collection.aggregate([
            {"$match": {"is_active": True, "payment.status": "completed"}},
            {"$group": {"_id": None, "total": {"$sum": "$pricing.total"}}},
        ]))
        refunded = list(self.collection.aggregate([
            {"$match": {"is_active": True, "payment.status": "refunded"}},
            {"$group": {"_id": None, "total": {"$sum": "$payment.refund_amount"}}},
        ]))
        recent = self.collection.find(
            {"is_active": True, "payment.status": {"$in": ["completed", "refunded"]}}
        ).sort("payment.paid_at", -1).limit(10)
        return {
            "status_breakdown": {row["_id"]: {"count": row["count"], "total_amount": round_money(row["total_amount"])}
                                 for row in breakdown},
            "total_revenue": round_money(revenue[0]["total"]) if revenue else 0,
            "refunded_amount": round_money(refunded[0]["total"]) if refunded else 0,
            "recent_payments": [order_view(o) for o in recent],
        }

    # --- webhooks ---

    def apply_gateway_event(self, event_type: str, payload: dict) -> Optional[dict]:
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled webhook event: {event_type}")
            return None
        logger.info(f"Applying webhook event {event_type}")
        return handler(payload)

    def _find_by_payment(self, payment_id: Optional[str], gateway_order_id: Optional[str] = None) -> Optional[dict]:
        order = None
        if payment_id:
            order = self.collection.find_one({"payment.razorpay_payment_id": payment_id})
        if order is None and gateway_order_id:
            order = self.collection.find_one({"payment.razorpay_order_id": gateway_order_id})
        return order

    @staticmethod
    def _entity(payload: dict, kind: str) -> Optional[dict]:
        entity = (payload.get(kind) or {}).get("entity")
        if not entity:
            logger.warning(f"Webhook payload has no {kind} entity, ignoring")
        return entity

    def _on_payment_captured(self, payload: dict) -> Optional[dict]:
        entity = self._entity(payload, "payment")
        if not entity:
            return None
        order = self._find_by_payment(entity.get("id"), entity.get("order_id"))
        if order is None or order["payment"]["status"] != "pending":
            return order
        return self._complete(order, entity["id"], None, "Payment captured")

    def _on_payment_failed(self, payload: dict) -> Optional[dict]:
        entity = self._entity(payload, "payment")
        if not entity:
            return None
        order = self._find_by_payment(entity.get("id"), entity.get("order_id"))
        if order is None or order["payment"]["status"] != "pending":
            return order
        fields = {"payment.status": "failed", "payment.razorpay_payment_id": entity.get("id")}
        if not can_cancel(order):
            self.collection.update_one({"_id": order["_id"]}, {"$set": fields})
            return self.collection.find_one({"_id": order["_id"]})
        updated = self.orders.record_status(order, "cancelled", "Payment failed", extra=fields)
        self.orders.restore_stock(order)
        if order.get("group_order_id"):
            self.groups.remove_order(order["group_order_id"], str(order["_id"]))
        logger.warning(f"Payment failed for order {order['order_number']}, order cancelled")
        return updated

    def _on_refund_created(self, payload: dict) -> Optional[dict]:
        entity = self._entity(payload, "refund")
        if not entity:
            return None
        order = self._find_by_payment(entity.get("payment_id"))
        if order is None or order["payment"].get("refunded_at"):
            return order
        notes = entity.get("notes") or {}
        reason = notes.get("reason") if isinstance(notes, dict) else None
        return self._record_refund(order, entity["amount"] / 100, reason)

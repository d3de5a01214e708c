"""
Department group orders.

A group order pools member orders under one deadline. Its pricing block is never
patched incrementally: ``recalculate_pricing`` re-derives it from the contained
orders every time membership of the order list changes.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional, Union

from pymongo import ReturnDocument

from database import create_document, to_object_id
from errors import (
    GroupClosed,
    IllegalTransition,
    NotAMember,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from pricing import sum_pricing
from schemas import GroupOrder, GroupSettings
from utils import as_utc, paginate, round_money, utcnow

logger = logging.getLogger(__name__)

GROUP_TRANSITIONS = {
    "active": {"closed", "completed", "cancelled"},
    "closed": set(),
    "completed": set(),
    "cancelled": set(),
}


def is_member(group: dict, user_id: str) -> bool:
    return any(m["user_id"] == str(user_id) for m in group.get("members", []))


def is_admin(group: dict, user_id: str) -> bool:
    return any(
        m["user_id"] == str(user_id) and m.get("role") == "admin"
        for m in group.get("members", [])
    )


def add_member(group: dict, user_id: str, role: str = "member", now: Optional[datetime] = None) -> bool:
    """Append a member unless already present. Returns True if the list changed."""
    if is_member(group, user_id):
        return False
    group.setdefault("members", []).append(
        {"user_id": str(user_id), "role": role, "joined_at": now or utcnow()}
    )
    return True


def remove_member(group: dict, user_id: str) -> bool:
    members = group.get("members", [])
    kept = [m for m in members if m["user_id"] != str(user_id)]
    group["members"] = kept
    return len(kept) != len(members)


def is_open(group: dict, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    settings = group.get("settings") or {}
    deadline = as_utc(settings.get("deadline"))
    return (
        group.get("status") == "active"
        and deadline is not None
        and now < deadline
        and bool(settings.get("allow_member_orders", True))
    )


def member_count(group: dict) -> int:
    return len(group.get("members", []))


def order_count(group: dict) -> int:
    return len(group.get("order_ids", []))


def payment_status_for(pending_amount: float) -> str:
    return "completed" if pending_amount <= 0 else "partial"


def recalculate_pricing(group: dict, orders: Iterable[dict]) -> dict:
    """Reset the group's pricing to the sum of its orders' pricing blocks."""
    group["pricing"] = sum_pricing(order.get("pricing") for order in orders)
    payment = group.setdefault("payment", {})
    collected = payment.get("collected_amount") or 0
    payment["pending_amount"] = round_money(group["pricing"]["total"] - collected)
    if collected > 0:
        payment["status"] = payment_status_for(payment["pending_amount"])
    return group


def with_derived(group: dict, now: Optional[datetime] = None) -> dict:
    doc = dict(group)
    doc["_id"] = str(group["_id"])
    doc["is_open"] = is_open(group, now)
    doc["member_count"] = member_count(group)
    doc["order_count"] = order_count(group)
    return doc


class GroupOrderService:
    def __init__(self, db):
        self.db = db
        self.collection = db["grouporder"]

    def create_group(self, organizer_id: str, name: str, department: str,
                     settings: Union[GroupSettings, dict], description: Optional[str] = None) -> dict:
        if isinstance(settings, dict):
            settings = GroupSettings(**settings)
        if as_utc(settings.deadline) <= utcnow():
            raise ValidationError("Group order deadline must be in the future", field="deadline")
        group = GroupOrder(
            name=name,
            description=description,
            department=department,
            organizer_id=organizer_id,
            settings=settings,
        ).model_dump()
        add_member(group, organizer_id, role="admin")
        gid = create_document(self.db, "grouporder", group)
        logger.info(f"Group order {gid} created by {organizer_id} for {department}")
        return self.get_group(gid)

    def get_group(self, group_id: str) -> dict:
        group = self.collection.find_one({"_id": to_object_id(group_id, "GroupOrder"), "is_active": True})
        if not group:
            raise NotFoundError("GroupOrder", str(group_id))
        return group

    def list_groups(self, status: Optional[str] = None, department: Optional[str] = None,
                    page: int = 1, limit: int = 20) -> dict:
        filt = {"is_active": True}
        if status:
            filt["status"] = status
        if department:
            filt["department"] = department
        skip = (page - 1) * limit
        found = list(self.collection.find(filt).sort("created_at", -1).skip(skip).limit(limit))
        total = self.collection.count_documents(filt)
        now = utcnow()
        return {
            "group_orders": [with_derived(g, now) for g in found],
            "pagination": paginate(total, page, limit, len(found)),
        }

    def _save_members(self, group: dict) -> None:
        self.collection.update_one(
            {"_id": group["_id"]},
            {"$set": {"members": group["members"], "updated_at": utcnow()}},
        )

    def add_member(self, group_id: str, actor_id: str, user_id: str, role: str = "member") -> dict:
        group = self.get_group(group_id)
        if not is_admin(group, actor_id):
            raise PermissionDenied("Only group admins can add members")
        if add_member(group, user_id, role):
            self._save_members(group)
            logger.info(f"User {user_id} joined group order {group_id} as {role}")
        return group

    def remove_member(self, group_id: str, actor_id: str, user_id: str) -> dict:
        group = self.get_group(group_id)
        if str(actor_id) != str(user_id) and not is_admin(group, actor_id):
            raise PermissionDenied("Only group admins can remove other members")
        if str(user_id) == group["organizer_id"]:
            raise ValidationError("The organizer cannot be removed from the group")
        if remove_member(group, user_id):
            self._save_members(group)
            logger.info(f"User {user_id} left group order {group_id}")
        return group

    def recalculate(self, group: Union[dict, str]) -> dict:
        if not isinstance(group, dict):
            group = self.get_group(group)
        ids = [to_object_id(oid, "Order") for oid in group.get("order_ids", [])]
        orders = list(self.db["order"].find({"_id": {"$in": ids}})) if ids else []
        recalculate_pricing(group, orders)
        self.collection.update_one(
            {"_id": group["_id"]},
            {"$set": {
                "pricing": group["pricing"],
                "payment.pending_amount": group["payment"]["pending_amount"],
                "payment.status": group["payment"].get("status", "pending"),
                "updated_at": utcnow(),
            }},
        )
        return group

    def join_order(self, group: dict, order: dict) -> dict:
        gid = str(group["_id"])
        if not is_open(group):
            raise GroupClosed(gid)
        if not is_member(group, order["user_id"]):
            raise NotAMember(gid, order["user_id"])
        self.collection.update_one({"_id": group["_id"]}, {"$addToSet": {"order_ids": str(order["_id"])}})
        group = self.get_group(gid)
        return self.recalculate(group)

    def remove_order(self, group_id: str, order_id: str) -> dict:
        group = self.get_group(group_id)
        self.collection.update_one({"_id": group["_id"]}, {"$pull": {"order_ids": str(order_id)}})
        group = self.get_group(group_id)
        return self.recalculate(group)

    def set_status(self, group_id: str, status: str) -> dict:
        group = self.get_group(group_id)
        current = group.get("status", "active")
        if status not in GROUP_TRANSITIONS.get(current, set()):
            raise IllegalTransition("GroupOrder", current, status)
        res = self.collection.update_one(
            {"_id": group["_id"], "status": current},
            {"$set": {"status": status, "updated_at": utcnow()}},
        )
        if res.matched_count == 0:
            raise IllegalTransition("GroupOrder", current, status)
        logger.info(f"Group order {group_id} moved {current} -> {status}")
        return self.get_group(group_id)

    def record_collection(self, group_id: str, amount: float) -> dict:
        """Credit a member payment against the group's outstanding total."""
        gid = to_object_id(group_id, "GroupOrder")
        group = self.collection.find_one_and_update(
            {"_id": gid, "is_active": True},
            {"$inc": {"payment.collected_amount": amount}},
            return_document=ReturnDocument.AFTER,
        )
        if group is None:
            raise NotFoundError("GroupOrder", str(group_id))
        payment = group.setdefault("payment", {})
        collected = round_money(payment.get("collected_amount") or 0)
        pending = round_money(group["pricing"]["total"] - collected)
        payment.update(pending_amount=pending, status=payment_status_for(pending))
        self.collection.update_one(
            {"_id": gid},
            {"$set": {
                "payment.pending_amount": pending,
                "payment.status": payment["status"],
                "updated_at": utcnow(),
            }},
        )
        logger.info(f"Group order {group_id} collected {amount} (pending {pending})")
        return group

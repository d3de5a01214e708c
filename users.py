"""User accounts and the admin tools for managing them."""
import logging
import re
from typing import Optional

from database import create_document, serialize_doc, to_object_id
from errors import NotFoundError, ValidationError
from schemas import User
from utils import paginate, utcnow

logger = logging.getLogger(__name__)

ROLES = ("student", "department_head", "admin")
SEARCH_FIELDS = ("name", "email", "department")


class UserService:
    def __init__(self, db):
        self.db = db
        self.collection = db["user"]

    def find_by_email(self, email: str, active_only: bool = False) -> Optional[dict]:
        filt = {"email": email}
        if active_only:
            filt["is_active"] = True
        return self.collection.find_one(filt)

    def register(self, user: User) -> str:
        uid = create_document(self.db, "user", user)
        logger.info(f"User {uid} registered as {user.role}")
        return uid

    def get_user(self, user_id: str) -> dict:
        user = self.collection.find_one({"_id": to_object_id(user_id, "User")})
        if not user:
            raise NotFoundError("User", str(user_id))
        return user

    def list_users(self, role: Optional[str] = None, search: Optional[str] = None,
                   is_active: Optional[bool] = None, page: int = 1, limit: int = 20) -> dict:
        filt = {}
        if role:
            filt["role"] = role
        if is_active is not None:
            filt["is_active"] = is_active
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            filt["$or"] = [{field: pattern} for field in SEARCH_FIELDS]
        skip = (page - 1) * limit
        found = list(self.collection.find(filt).sort("created_at", -1).skip(skip).limit(limit))
        total = self.collection.count_documents(filt)
        return {
            "users": [serialize_doc(u) for u in found],
            "pagination": paginate(total, page, limit, len(found)),
        }

    def set_role(self, user_id: str, role: str) -> dict:
        if role not in ROLES:
            raise ValidationError(f"Invalid role {role!r}", field="role")
        user = self.get_user(user_id)
        self.collection.update_one({"_id": user["_id"]}, {"$set": {"role": role, "updated_at": utcnow()}})
        logger.info(f"User {user_id} role changed {user.get('role')} -> {role}")
        return self.get_user(user_id)

    def toggle_active(self, user_id: str) -> dict:
        user = self.get_user(user_id)
        active = not user.get("is_active", True)
        self.collection.update_one({"_id": user["_id"]}, {"$set": {"is_active": active, "updated_at": utcnow()}})
        logger.info(f"User {user_id} {'activated' if active else 'deactivated'}")
        return self.get_user(user_id)

"""In-app notifications stored in the "notification" collection."""

import logging

from database import create_document, get_documents
from schemas import Notification

logger = logging.getLogger(__name__)


def notify(db, user_id: str, title: str, message: str, type: str = "order") -> str:
    note = Notification(user_id=user_id, title=title, message=message, type=type)
    nid = create_document(db, "notification", note)
    logger.debug(f"Notification {nid} queued for user {user_id}: {title}")
    return nid


def list_notifications(db, user_id: str) -> list:
    return get_documents(db, "notification", {"user_id": user_id})

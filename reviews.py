"""Product reviews and the product rating aggregate they feed."""

import logging
from typing import Iterable, List, Optional

from pymongo.errors import DuplicateKeyError

from database import create_document, serialize_doc, to_object_id
from errors import DuplicateReview, NotFoundError, NotPurchased, ValidationError
from schemas import Review
from utils import paginate, round_half_up, utcnow

logger = logging.getLogger(__name__)

REVIEWABLE_ORDER_STATUSES = ("delivered", "completed")
REVIEW_STATUSES = ("pending", "approved", "rejected")
EDITABLE_FIELDS = ("rating", "title", "comment", "visibility")


def rating_summary(ratings: Iterable[int]) -> dict:
    ratings = list(ratings)
    if not ratings:
        return {"average": 0, "count": 0}
    return {"average": round_half_up(sum(ratings) / len(ratings), 1), "count": len(ratings)}


def rating_distribution(ratings: Iterable[int]) -> dict:
    dist = {star: 0 for star in (5, 4, 3, 2, 1)}
    for r in ratings:
        dist[r] += 1
    return dist


def validate_rating(rating) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be an integer between 1 and 5", field="rating")
    return rating


def recompute_product_rating(db, product_id: str) -> dict:
    """Rebuild Product.rating from the approved, active reviews of the product."""
    reviews = db["review"].find({"product_id": str(product_id), "status": "approved", "is_active": True})
    summary = rating_summary(r["rating"] for r in reviews)
    db["product"].update_one(
        {"_id": to_object_id(product_id, "Product")},
        {"$set": {"rating": summary, "updated_at": utcnow()}},
    )
    logger.info(f"Product {product_id} rating now {summary['average']} over {summary['count']} reviews")
    return summary


class ReviewService:
    def __init__(self, db):
        self.db = db
        self.collection = db["review"]

    def get_review(self, review_id: str, user_id: Optional[str] = None) -> dict:
        filt = {"_id": to_object_id(review_id, "Review"), "is_active": True}
        if user_id is not None:
            filt["user_id"] = str(user_id)
        review = self.collection.find_one(filt)
        if not review:
            raise NotFoundError("Review", str(review_id))
        return review

    def submit_review(self, user_id: str, product_id: str, order_id: str, rating: int, comment: str,
                      title: Optional[str] = None, images: Optional[List[dict]] = None,
                      visibility: str = "public") -> dict:
        validate_rating(rating)
        product = self.db["product"].find_one({"_id": to_object_id(product_id, "Product"), "is_active": True})
        if not product:
            raise NotFoundError("Product", str(product_id))
        order = self.db["order"].find_one({
            "_id": to_object_id(order_id, "Order"),
            "user_id": str(user_id),
            "status": {"$in": list(REVIEWABLE_ORDER_STATUSES)},
            "items.product_id": str(product_id),
        })
        if not order:
            logger.warning(f"Review rejected: user {user_id} has no delivered order {order_id} for {product_id}")
            raise NotPurchased(str(user_id), str(product_id), str(order_id))
        if self.collection.find_one({"user_id": str(user_id), "product_id": str(product_id)}):
            raise DuplicateReview(str(user_id), str(product_id))

        review = Review(
            user_id=str(user_id),
            product_id=str(product_id),
            order_id=str(order_id),
            rating=rating,
            title=title,
            comment=comment,
            images=images or [],
            visibility=visibility,
            status="pending",
            verified=True,
        )
        try:
            rid = create_document(self.db, "review", review)
        except DuplicateKeyError:
            raise DuplicateReview(str(user_id), str(product_id))
        logger.info(f"Review {rid} submitted by {user_id} for product {product_id}")
        recompute_product_rating(self.db, product_id)
        return self.get_review(rid)

    def update_review(self, review_id: str, user_id: str, fields: dict) -> dict:
        """Edit the owner's review; edits go back through moderation."""
        review = self.get_review(review_id, user_id)
        update = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS and v is not None}
        if "rating" in update:
            validate_rating(update["rating"])
        if "visibility" in update and update["visibility"] not in ("public", "private"):
            raise ValidationError("Invalid visibility setting", field="visibility")
        update["status"] = "pending"
        update["updated_at"] = utcnow()
        self.collection.update_one({"_id": review["_id"]}, {"$set": update})
        recompute_product_rating(self.db, review["product_id"])
        return self.get_review(review_id)

    def delete_review(self, review_id: str, user_id: str) -> None:
        review = self.get_review(review_id, user_id)
        self.collection.update_one({"_id": review["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
        logger.info(f"Review {review_id} deleted by {user_id}")
        recompute_product_rating(self.db, review["product_id"])

    def moderate(self, review_id: str, status: str, admin_response: Optional[str] = None,
                 actor: Optional[str] = None) -> dict:
        if status not in REVIEW_STATUSES:
            raise ValidationError(f"Invalid review status {status!r}", field="status")
        review = self.get_review(review_id)
        update = {"status": status, "updated_at": utcnow()}
        if admin_response:
            update["admin_response"] = {
                "message": admin_response,
                "responded_by": actor,
                "responded_at": utcnow(),
            }
        self.collection.update_one({"_id": review["_id"]}, {"$set": update})
        logger.info(f"Review {review_id} moderated to {status}")
        recompute_product_rating(self.db, review["product_id"])
        return self.get_review(review_id)

    def mark_helpful(self, review_id: str, user_id: str) -> dict:
        review = self.get_review(review_id)
        if str(user_id) in review["helpful"]["users"]:
            return review
        self.collection.update_one(
            {"_id": review["_id"], "helpful.users": {"$nin": [str(user_id)]}},
            {"$push": {"helpful.users": str(user_id)}, "$inc": {"helpful.count": 1}},
        )
        return self.get_review(review_id)

    def unmark_helpful(self, review_id: str, user_id: str) -> dict:
        review = self.get_review(review_id)
        if str(user_id) not in review["helpful"]["users"]:
            return review
        self.collection.update_one(
            {"_id": review["_id"], "helpful.users": str(user_id)},
            {"$pull": {"helpful.users": str(user_id)}, "$inc": {"helpful.count": -1}},
        )
        return self.get_review(review_id)

    def _approved(self, product_id: str):
        return self.collection.find({"product_id": str(product_id), "status": "approved", "is_active": True})

    def product_summary(self, product_id: str) -> dict:
        reviews = list(self._approved(product_id).sort("created_at", -1))
        ratings = [r["rating"] for r in reviews]
        summary = rating_summary(ratings)
        return {
            "total_reviews": summary["count"],
            "average_rating": summary["average"],
            "rating_distribution": rating_distribution(ratings),
            "reviews": [serialize_doc(r) for r in reviews[:10]],
        }

    def list_product_reviews(self, product_id: str, page: int = 1, limit: int = 10) -> dict:
        filt = {"product_id": str(product_id), "status": "approved", "visibility": "public", "is_active": True}
        return self._list(filt, page, limit)

    def list_user_reviews(self, user_id: str, status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
        filt = {"user_id": str(user_id), "is_active": True}
        if status:
            filt["status"] = status
        return self._list(filt, page, limit)

    def list_all_reviews(self, status: Optional[str] = None, visibility: Optional[str] = None,
                         page: int = 1, limit: int = 20) -> dict:
        filt = {"is_active": True}
        if status:
            filt["status"] = status
        if visibility:
            filt["visibility"] = visibility
        return self._list(filt, page, limit)

    def _list(self, filt: dict, page: int, limit: int) -> dict:
        skip = (page - 1) * limit
        found = list(self.collection.find(filt).sort("created_at", -1).skip(skip).limit(limit))
        total = self.collection.count_documents(filt)
        return {
            "reviews": [serialize_doc(r) for r in found],
            "pagination": paginate(total, page, limit, len(found)),
        }

    def statistics(self) -> dict:
        active = list(self.collection.find({"is_active": True}, {"status": 1, "rating": 1}))
        status_breakdown = {status: 0 for status in REVIEW_STATUSES}
        for review in active:
            status_breakdown[review["status"]] = status_breakdown.get(review["status"], 0) + 1
        return {
            "status_breakdown": status_breakdown,
            "rating_breakdown": rating_distribution(r["rating"] for r in active if r["status"] == "approved"),
            "total_reviews": len(active),
            "approved_reviews": status_breakdown["approved"],
            "pending_reviews": status_breakdown["pending"],
        }

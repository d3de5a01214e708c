"""Product catalog: derived prices, SKU generation and admin CRUD."""

import logging
import re
from typing import Optional

from database import create_document, serialize_doc, to_object_id
from errors import NotFoundError, ValidationError
from schemas import Product
from utils import random_code, round_money, utcnow

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "name", "description", "category", "price", "discount", "stock",
    "images", "variants", "tags", "is_featured",
}


def final_price(product: dict) -> float:
    discount = product.get("discount") or 0
    price = product.get("price") or 0
    return round_money(price * (1 - discount / 100))


def in_stock(product: dict) -> bool:
    return (product.get("stock") or 0) > 0


def primary_image(product: dict) -> Optional[str]:
    images = product.get("images") or []
    for img in images:
        if img.get("is_primary"):
            return img.get("url")
    return images[0].get("url") if images else None


def find_variant_option(product: dict, name: str, value: str) -> dict:
    """Look up a variant option on the product; unknown options are rejected."""
    for variant in product.get("variants") or []:
        if variant.get("name") != name:
            continue
        for option in variant.get("options") or []:
            if option.get("value") == value:
                return option
    raise ValidationError(f"Product {product.get('name')} has no variant {name}={value}", field="variant")


def generate_sku(category: str) -> str:
    return f"{category[:3].upper()}-{random_code(6)}"


def with_derived(product: dict) -> dict:
    doc = serialize_doc(product)
    doc["final_price"] = final_price(product)
    doc["in_stock"] = in_stock(product)
    doc["primary_image"] = primary_image(product)
    return doc


class ProductService:
    def __init__(self, db):
        self.db = db
        self.collection = db["product"]

    def create_product(self, product: Product, actor_id: Optional[str] = None) -> dict:
        data = product.model_dump()
        if not data.get("sku"):
            data["sku"] = generate_sku(data["category"])
        data["created_by"] = actor_id or data.get("created_by")
        pid = create_document(self.db, "product", data)
        logger.info(f"Product {pid} created ({data['sku']})")
        return self.get_product(pid)

    def get_product(self, product_id: str, include_inactive: bool = False) -> dict:
        filt = {"_id": to_object_id(product_id, "Product")}
        if not include_inactive:
            filt["is_active"] = True
        product = self.collection.find_one(filt)
        if not product:
            raise NotFoundError("Product", product_id)
        return product

    def list_products(self, category: Optional[str] = None, q: Optional[str] = None,
                      featured: Optional[bool] = None, limit: int = 100) -> list:
        filt = {"is_active": True}
        if category:
            filt["category"] = category
        if featured is not None:
            filt["is_featured"] = featured
        if q:
            pattern = re.escape(q)
            filt["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        return list(self.collection.find(filt).limit(limit))

    def update_product(self, product_id: str, fields: dict, actor_id: Optional[str] = None) -> dict:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields not updatable: {', '.join(sorted(unknown))}")
        if "discount" in fields and not 0 <= fields["discount"] <= 100:
            raise ValidationError("Discount must be between 0 and 100", field="discount")
        if "stock" in fields and fields["stock"] < 0:
            raise ValidationError("Stock must not be negative", field="stock")
        update = dict(fields)
        update["updated_at"] = utcnow()
        update["last_modified_by"] = actor_id
        res = self.collection.update_one(
            {"_id": to_object_id(product_id, "Product"), "is_active": True}, {"$set": update}
        )
        if res.matched_count == 0:
            raise NotFoundError("Product", product_id)
        return self.get_product(product_id)

    def deactivate_product(self, product_id: str) -> None:
        res = self.collection.update_one(
            {"_id": to_object_id(product_id, "Product")},
            {"$set": {"is_active": False, "updated_at": utcnow()}},
        )
        if res.matched_count == 0:
            raise NotFoundError("Product", product_id)
        logger.info(f"Product {product_id} deactivated")

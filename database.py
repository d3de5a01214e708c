"""
MongoDB access for the campus merchandise store.

Each collection is named after the lowercased schema class (Order -> "order").
The module-level ``db`` handle is built from DATABASE_URL / DATABASE_NAME and is
None when those aren't configured; services receive it explicitly.
"""
import logging
import os
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from errors import NotFoundError
from utils import utcnow

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def to_object_id(value, entity: str = "Document") -> ObjectId:
    """Parse an id string, treating malformed ids as missing documents."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(entity, str(value))


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [serialize_doc(d) for d in cursor]


def serialize_doc(doc):
    """Make a Mongo document JSON friendly (ObjectId -> str)."""
    if not doc:
        return doc
    doc = dict(doc)
    for k, v in doc.items():
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def ensure_indexes(database) -> None:
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    database["review"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["distribution"].create_index([("order_id", ASCENDING)])
    database["product"].create_index([("sku", ASCENDING)], unique=True, sparse=True)
    logger.info("Indexes ensured")

"""
MongoDB access for the Kalakriti backend.

Collections: users, products, orders, notifications. The collections are
created with $jsonSchema validators the first time the service starts, and
the unique indexes on users.email and orders.orderNumber back the
application-level uniqueness checks.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Request
from pymongo import ASCENDING, DESCENDING, TEXT, MongoClient
from pymongo.database import Database

from errors import ValidationError
from settings import Settings

logger = logging.getLogger(__name__)

USERS = "users"
PRODUCTS = "products"
ORDERS = "orders"
NOTIFICATIONS = "notifications"

VALIDATORS: Dict[str, Dict[str, Any]] = {
    USERS: {
        "$jsonSchema": {
            "bsonType": "object",
            "required": ["name", "email", "password", "role"],
            "properties": {
                "name": {"bsonType": "string", "description": "Name must be a string and is required"},
                "email": {"bsonType": "string", "description": "Email must be a string and is required"},
                "password": {"bsonType": "string", "description": "Password must be a string and is required"},
                "role": {"enum": ["artisan", "buyer"], "description": "Role must be either artisan or buyer"},
            },
        }
    },
    PRODUCTS: {
        "$jsonSchema": {
            "bsonType": "object",
            "required": ["name", "price", "artisan", "category"],
            "properties": {
                "name": {"bsonType": "string", "description": "must be a string and is required"},
                "price": {"bsonType": "number", "minimum": 0, "description": "must be a positive number and is required"},
                "stock": {"bsonType": "number", "minimum": 0, "description": "must be a positive number"},
            },
        }
    },
    ORDERS: {
        "$jsonSchema": {
            "bsonType": "object",
            "required": ["orderNumber", "buyer", "products", "totalAmount"],
            "properties": {
                "orderNumber": {"bsonType": "string", "description": "must be a string and is required"},
                "totalAmount": {"bsonType": "number", "minimum": 0, "description": "must be a positive number and is required"},
            },
        }
    },
    NOTIFICATIONS: {
        "$jsonSchema": {
            "bsonType": "object",
            "required": ["user", "type", "message"],
            "properties": {
                "type": {
                    "enum": ["order", "payment", "update", "promotion", "system"],
                    "description": "must be one of the defined types and is required",
                },
                "read": {"bsonType": "bool", "description": "must be a boolean"},
            },
        }
    },
}

INDEXES = {
    USERS: [
        ([("email", ASCENDING)], {"unique": True}),
        ([("role", ASCENDING)], {}),
        ([("wallet", ASCENDING)], {}),
        ([("status", ASCENDING)], {}),
        ([("createdAt", ASCENDING)], {}),
    ],
    PRODUCTS: [
        ([("name", TEXT), ("description", TEXT)], {}),
        ([("artisan", ASCENDING)], {}),
        ([("category", ASCENDING)], {}),
        ([("price", ASCENDING)], {}),
        ([("ratings.average", ASCENDING)], {}),
        ([("createdAt", DESCENDING)], {}),
    ],
    ORDERS: [
        ([("orderNumber", ASCENDING)], {"unique": True}),
        ([("buyer", ASCENDING)], {}),
        ([("status", ASCENDING)], {}),
        ([("createdAt", ASCENDING)], {}),
        ([("buyer", ASCENDING), ("status", ASCENDING)], {}),
    ],
    NOTIFICATIONS: [
        ([("user", ASCENDING)], {}),
        ([("type", ASCENDING)], {}),
        ([("read", ASCENDING)], {}),
        ([("createdAt", ASCENDING)], {}),
        ([("user", ASCENDING), ("read", ASCENDING)], {}),
    ],
}


def connect(settings: Settings) -> MongoClient:
    """Open a client and make sure the server answers before we serve traffic."""
    client = MongoClient(settings.mongodb_uri, serverSelectionTimeoutMS=10000, tz_aware=True)
    client.admin.command("ping")
    logger.info("MongoDB connected successfully")
    return client


def create_collections(db: Database) -> None:
    existing = set(db.list_collection_names())
    for name, validator in VALIDATORS.items():
        if name not in existing:
            logger.info("Creating %s collection...", name)
            db.create_collection(name, validator=validator)


def create_indexes(db: Database, text_indexes: bool = True) -> None:
    logger.info("Creating indexes...")
    for name, indexes in INDEXES.items():
        for keys, options in indexes:
            if not text_indexes and any(direction == TEXT for _, direction in keys):
                continue
            db[name].create_index(keys, **options)


def init_database(db: Database) -> None:
    create_collections(db)
    create_indexes(db)
    logger.info("Database initialization completed successfully")


# ---------------------- Document helpers ----------------------

def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Union[str, ObjectId, None], field: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value:
        raise ValidationError(f"{field} is required", field=field)
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {field}", field=field)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Turn a stored document into a JSON-ready dict.

    `_id` becomes `id`, every ObjectId (including nested references) becomes a
    string and the password hash is dropped.
    """
    if doc is None:
        return None
    out: Dict[str, Any] = {}
    for key, value in doc.items():
        if key == "password":
            continue
        if key == "_id":
            key = "id"
        out[key] = _serialize_value(value)
    return out


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return serialize(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Insert a document stamped with createdAt and return it with its _id."""
    doc = dict(data)
    doc.setdefault("createdAt", now_utc())
    result = db[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    newest_first: bool = True,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if newest_first:
        cursor = cursor.sort("createdAt", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_db(request: Request) -> Database:
    return request.app.state.db

"""
MongoDB access

One client per process, opened at import and reused by every request. pymongo
connects lazily and pools internally, so importing this module never blocks.
"""

import logging
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import config
from errors import ValidationError

logger = logging.getLogger(__name__)

client = MongoClient(config.DATABASE_URL)
db: Database = client[config.DATABASE_NAME]


def ensure_indexes(database: Database) -> None:
    """Create the indexes the API relies on. Safe to call repeatedly."""
    database["users"].create_index([("email", ASCENDING)], unique=True)
    database["applications"].create_index(
        [("applicantEmail", ASCENDING), ("scholarshipId", ASCENDING)],
        unique=True,
        name="unique_applicant_per_scholarship",
    )
    logger.info("Indexes ensured on %s", database.name)


def to_obj_id(id_str: Any, label: str = "id") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}")


def serialize(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize(v) for v in value]
    return value


def sanitize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = d.pop("_id")
    return serialize(d)


def insert_result(res) -> Dict[str, Any]:
    return {"acknowledged": res.acknowledged, "insertedId": str(res.inserted_id)}


def update_result(res) -> Dict[str, Any]:
    return {
        "acknowledged": res.acknowledged,
        "matchedCount": res.matched_count,
        "modifiedCount": res.modified_count,
    }


def delete_result(res) -> Dict[str, Any]:
    return {"acknowledged": res.acknowledged, "deletedCount": res.deleted_count}

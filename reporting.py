"""
Platform statistics for the analytics dashboard.
"""

import logging
import math
from numbers import Number
from typing import Any, Dict, List

from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from errors import DependencyError

logger = logging.getLogger(__name__)


def fee_value(value: Any) -> float:
    """Numeric fee or 0. Bad records must not break the total."""
    if isinstance(value, bool) or not isinstance(value, Number):
        return 0
    if not math.isfinite(value):
        return 0
    return value


def category_pipeline(scholarships: str) -> List[Dict[str, Any]]:
    return [
        {
            "$lookup": {
                "from": scholarships,
                "localField": "scholarshipId",
                "foreignField": "_id",
                "as": "scholarship",
            }
        },
        # applications pointing at a deleted scholarship drop out here
        {"$unwind": "$scholarship"},
        {"$match": {"scholarship.scholarshipCategory": {"$ne": None}}},
        {"$group": {"_id": "$scholarship.scholarshipCategory", "count": {"$sum": 1}}},
        {"$project": {"_id": 0, "category": "$_id", "count": 1}},
    ]


class PlatformStats:
    def __init__(self, users: Collection, scholarships: Collection, applications: Collection):
        self.users = users
        self.scholarships = scholarships
        self.applications = applications

    @classmethod
    def from_db(cls, db: Database) -> "PlatformStats":
        return cls(db["users"], db["scholarships"], db["applications"])

    def total_fees(self) -> float:
        # Type bracketing: only finite numbers fall inside (-inf, inf)
        rows = list(self.applications.aggregate([
            {"$match": {"applicationFee": {"$gt": float("-inf"), "$lt": float("inf")}}},
            {"$group": {"_id": None, "total": {"$sum": "$applicationFee"}}},
        ]))
        return fee_value(rows[0]["total"]) if rows else 0

    def applications_by_category(self) -> List[Dict[str, Any]]:
        rows = self.applications.aggregate(category_pipeline(self.scholarships.name))
        return [{"category": r["category"], "count": r["count"]} for r in rows]

    def compute(self) -> Dict[str, Any]:
        try:
            return {
                "totalUsers": self.users.estimated_document_count(),
                "totalScholarships": self.scholarships.estimated_document_count(),
                "totalFeesCollected": self.total_fees(),
                "applicationsByCategory": self.applications_by_category(),
            }
        except PyMongoError as e:
            logger.exception("Analytics aggregation failed")
            raise DependencyError("Failed to fetch analytics data.", details=str(e))

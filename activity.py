import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from database import ACTIVITIES, USERS, insert_document
from schemas import Activity

logger = logging.getLogger(__name__)


def log_activity(db, type: str, description: str, user_id, related_model: Optional[str] = None,
                 related_id=None, metadata: Optional[Dict[str, Any]] = None) -> None:
    """Append to the activity log. Failures are logged and never reach the caller."""
    try:
        activity = Activity(
            type=type,
            description=description,
            user=user_id,
            related_model=related_model,
            related_id=related_id,
            metadata=metadata or {},
        )
        insert_document(db, ACTIVITIES, activity)
    except (PyMongoError, ValidationError):
        logger.exception("Error logging activity %s", type)


def recent_activities(db, limit: int = 10, skip: int = 0) -> List[Dict[str, Any]]:
    activities = list(
        db[ACTIVITIES].find().sort("createdAt", -1).skip(skip).limit(limit)
    )
    user_ids = list({a["user"] for a in activities if a.get("user")})
    users = {
        u["_id"]: u
        for u in db[USERS].find({"_id": {"$in": user_ids}}, {"name": 1, "email": 1, "userId": 1, "role": 1})
    }
    for a in activities:
        a["user"] = users.get(a.get("user"), {"_id": a.get("user")})
    return activities

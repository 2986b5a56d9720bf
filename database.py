"""
MongoDB access for the college portal.

`db` is None when no DATABASE_URL is configured; callers report that as
"Database not available". Collection names are the lower-cased schema class
names.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL
from schemas import Activity, Course, Event, Notification, Placement, User

logger = logging.getLogger(__name__)


def collection_name(model_cls) -> str:
    return model_cls.__name__.lower()


USERS = collection_name(User)
COURSES = collection_name(Course)
EVENTS = collection_name(Event)
NOTIFICATIONS = collection_name(Notification)
PLACEMENTS = collection_name(Placement)
ACTIVITIES = collection_name(Activity)

db = None
if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def now_utc() -> datetime:
    return datetime.utcnow()


def ensure_indexes(database) -> None:
    """Create the unique indexes the application relies on."""
    database[USERS].create_index("email", unique=True)
    database[USERS].create_index("userId", unique=True)
    database[COURSES].create_index("code", unique=True)
    database[PLACEMENTS].create_index(
        [("studentId", ASCENDING), ("yearOfPlacement", ASCENDING)], unique=True
    )
    database[ACTIVITIES].create_index([("createdAt", -1)])
    logger.info("Indexes ensured on %s", database.name)


def to_document(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    now = now_utc()
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    return doc


def insert_document(database, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> ObjectId:
    result = database[collection].insert_one(to_document(data))
    return result.inserted_id


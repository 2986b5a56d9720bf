"""
Who may read what.

Notification audiences are described once in AUDIENCES; the Mongo query used
for listing and the predicate used for single-document access are both built
from it, so a notification a user can list is exactly one they can open.
Deactivated notifications are visible to admins only.
"""

from typing import Any, Dict, Optional

from database import NOTIFICATIONS

# role -> recipients values visible regardless of department
AUDIENCES = {
    "student": ("students", "all"),
    "faculty": ("faculty", "all"),
}


def notification_filter(user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Mongo filter of the notifications `user` may read; None means no access."""
    role = user.get("role")
    if role == "admin":
        return {}
    if role not in AUDIENCES:
        return None
    return {
        "isActive": {"$ne": False},
        "$or": [
            {"recipients": {"$in": list(AUDIENCES[role])}},
            {"recipients": "department", "department": user.get("department")},
        ],
    }


def can_view_notification(user: Dict[str, Any], notification: Dict[str, Any]) -> bool:
    role = user.get("role")
    if role == "admin":
        return True
    if role not in AUDIENCES or not notification.get("isActive", True):
        return False
    recipients = notification.get("recipients")
    if recipients in AUDIENCES[role]:
        return True
    return recipients == "department" and notification.get("department") == user.get("department")


def unread_filter(user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    visible = notification_filter(user)
    if visible is None:
        return None
    return {"$and": [visible, {"readBy": {"$ne": user["_id"]}}]}


def mark_read(db, user: Dict[str, Any], notification_id) -> bool:
    """Add the user to readBy. Returns False when it was already there."""
    result = db[NOTIFICATIONS].update_one(
        {"_id": notification_id}, {"$addToSet": {"readBy": user["_id"]}}
    )
    return result.modified_count > 0


def mark_all_read(db, user: Dict[str, Any]) -> int:
    """Mark every visible unread notification as read; returns how many changed."""
    query = unread_filter(user)
    if query is None:
        return 0
    result = db[NOTIFICATIONS].update_many(query, {"$addToSet": {"readBy": user["_id"]}})
    return result.modified_count


def unread_count(db, user: Dict[str, Any]) -> int:
    query = unread_filter(user)
    if query is None:
        return 0
    return db[NOTIFICATIONS].count_documents(query)


def course_filter(user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    role = user.get("role")
    if role == "admin":
        return {}
    if role == "faculty":
        return {"faculty": user["_id"]}
    if role == "student":
        return {"enrolledStudents": user["_id"]}
    return None


def can_view_course(user: Dict[str, Any], course: Dict[str, Any]) -> bool:
    role = user.get("role")
    if role == "admin":
        return True
    if role == "faculty":
        return course.get("faculty") == user["_id"]
    if role == "student":
        return user["_id"] in course.get("enrolledStudents", [])
    return False


def public_event_filter() -> Dict[str, Any]:
    return {"status": "approved", "isActive": True}


def event_filter(user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Events a user may browse: admins see all, faculty also see their own pending ones."""
    if user is None:
        return public_event_filter()
    role = user.get("role")
    if role == "admin":
        return {}
    if role == "faculty":
        return {"$or": [public_event_filter(), {"organizer": user["_id"]}]}
    return public_event_filter()


def can_view_event(user: Optional[Dict[str, Any]], event: Dict[str, Any]) -> bool:
    if event.get("status") == "approved" and event.get("isActive", True):
        return True
    if user is None:
        return False
    if user.get("role") == "admin":
        return True
    return user.get("role") == "faculty" and event.get("organizer") == user["_id"]

"""
Cleanup of everything that references a user who is being deleted.

The steps run in order and each one is attempted even if an earlier one
failed; failures are logged and reported, never raised. The user document is
removed last, regardless of the cleanup outcome.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from database import COURSES, EVENTS, NOTIFICATIONS, PLACEMENTS, USERS

logger = logging.getLogger(__name__)


@dataclass
class CascadeStep:
    name: str
    collection: str
    run: Callable[[Any, Dict[str, Any]], int]
    roles: Optional[Tuple[str, ...]] = None

    def applies_to(self, user: Dict[str, Any]) -> bool:
        return self.roles is None or user.get("role") in self.roles


@dataclass
class CascadeReport:
    completed: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def _unenroll(db, user):
    return db[COURSES].update_many(
        {"enrolledStudents": user["_id"]}, {"$pull": {"enrolledStudents": user["_id"]}}
    ).modified_count


def _delete_owned_courses(db, user):
    return db[COURSES].delete_many({"faculty": user["_id"]}).deleted_count


def _delete_organized_events(db, user):
    return db[EVENTS].delete_many({"organizer": user["_id"]}).deleted_count


def _unregister_events(db, user):
    return db[EVENTS].update_many(
        {"registeredStudents.student": user["_id"]},
        {"$pull": {"registeredStudents": {"student": user["_id"]}}},
    ).modified_count


def _delete_sent_notifications(db, user):
    return db[NOTIFICATIONS].delete_many({"sender": user["_id"]}).deleted_count


def _clear_read_receipts(db, user):
    return db[NOTIFICATIONS].update_many(
        {"readBy": user["_id"]}, {"$pull": {"readBy": user["_id"]}}
    ).modified_count


def _delete_added_placements(db, user):
    return db[PLACEMENTS].delete_many({"addedBy": user["_id"]}).deleted_count


USER_CASCADE = [
    CascadeStep("course_enrollments", COURSES, _unenroll),
    CascadeStep("owned_courses", COURSES, _delete_owned_courses, roles=("faculty",)),
    CascadeStep("organized_events", EVENTS, _delete_organized_events),
    CascadeStep("event_registrations", EVENTS, _unregister_events),
    CascadeStep("sent_notifications", NOTIFICATIONS, _delete_sent_notifications),
    CascadeStep("read_receipts", NOTIFICATIONS, _clear_read_receipts),
    CascadeStep("added_placements", PLACEMENTS, _delete_added_placements, roles=("admin",)),
]


def cleanup_user_data(db, user: Dict[str, Any], steps: Optional[List[CascadeStep]] = None) -> CascadeReport:
    report = CascadeReport()
    for step in steps if steps is not None else USER_CASCADE:
        if not step.applies_to(user):
            report.skipped.append(step.name)
            continue
        try:
            report.completed[step.name] = step.run(db, user)
        except Exception as exc:
            logger.exception("Cleanup step %s failed for user %s", step.name, user.get("userId"))
            report.failed[step.name] = str(exc)
    return report


def delete_user(db, user: Dict[str, Any], steps: Optional[List[CascadeStep]] = None) -> CascadeReport:
    report = cleanup_user_data(db, user, steps)
    db[USERS].delete_one({"_id": user["_id"]})
    if report.ok:
        logger.info("Deleted user %s with cleanup %s", user.get("userId"), report.completed)
    else:
        logger.error(
            "Deleted user %s but %d cleanup step(s) failed: %s",
            user.get("userId"), len(report.failed), ", ".join(report.failed),
        )
    return report

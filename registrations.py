"""
Event registration and capacity changes.

Checks are done against a fresh read for clear error messages, and the write
itself repeats them as a conditional single-document update: the student must
not already be listed and, for a capped event, the slot at index
``maxParticipants - 1`` must still be empty. Two requests racing for the last
seat cannot both match.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from database import EVENTS, now_utc
from schemas import Registration

logger = logging.getLogger(__name__)


class RegistrationError(Exception):
    pass


def is_registered(event: Dict[str, Any], student_id) -> bool:
    return any(r.get("student") == student_id for r in event.get("registeredStudents", []))


def _capacity_guard(max_participants: int) -> Dict[str, Any]:
    if max_participants <= 0:
        return {}
    return {f"registeredStudents.{max_participants - 1}": {"$exists": False}}


def register_student(db, event: Dict[str, Any], student: Dict[str, Any],
                     now: Optional[datetime] = None) -> None:
    now = now or now_utc()
    if event.get("status") != "approved" or not event.get("isActive", True):
        raise RegistrationError("Event is not approved for registration")
    if is_registered(event, student["_id"]):
        raise RegistrationError("You are already registered for this event")
    max_participants = event.get("maxParticipants", 0) or 0
    if max_participants > 0 and len(event.get("registeredStudents", [])) >= max_participants:
        raise RegistrationError("Event is full")
    if event["date"].date() < now.date():
        raise RegistrationError("Cannot register for past events")

    query = {
        "_id": event["_id"],
        "status": "approved",
        "maxParticipants": max_participants,
        "registeredStudents.student": {"$ne": student["_id"]},
        **_capacity_guard(max_participants),
    }
    registration = Registration(student=student["_id"], registered_at=now)
    result = db[EVENTS].update_one(
        query, {"$push": {"registeredStudents": registration.model_dump(by_alias=True)}}
    )
    if result.modified_count == 0:
        current = db[EVENTS].find_one({"_id": event["_id"]}) or {}
        if is_registered(current, student["_id"]):
            raise RegistrationError("You are already registered for this event")
        logger.info("Registration for event %s lost the race for the last seat", event["_id"])
        raise RegistrationError("Event is full")


def unregister_student(db, event: Dict[str, Any], student: Dict[str, Any]) -> None:
    result = db[EVENTS].update_one(
        {"_id": event["_id"]},
        {"$pull": {"registeredStudents": {"student": student["_id"]}}},
    )
    if result.modified_count == 0:
        raise RegistrationError("You are not registered for this event")


def update_capacity(db, event: Dict[str, Any], max_participants: int) -> None:
    if max_participants < 0:
        raise RegistrationError("maxParticipants cannot be negative")
    registered = len(event.get("registeredStudents", []))
    if max_participants > 0 and max_participants < registered:
        raise RegistrationError(
            f"Capacity cannot be lower than current registrations ({registered})"
        )
    # a guard on index N means the list holds at most N registrations at write time
    query = {"_id": event["_id"]}
    if max_participants > 0:
        query[f"registeredStudents.{max_participants}"] = {"$exists": False}
    result = db[EVENTS].update_one(
        query, {"$set": {"maxParticipants": max_participants, "updatedAt": now_utc()}}
    )
    if result.matched_count == 0:
        raise RegistrationError("Capacity cannot be lower than current registrations")

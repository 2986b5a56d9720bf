"""
User creation: role-prefixed userId generation, password hashing and
department auto-enrolment.

The generator only proposes ids; the unique index on ``userId`` decides. An
insert that collides on ``userId`` is retried with a fresh proposal.
"""

import logging
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from auth import hash_password
from database import COURSES, USERS, insert_document
from schemas import User

logger = logging.getLogger(__name__)

ROLE_PREFIXES = {"admin": "ADM", "faculty": "FAC", "student": "STU"}
MAX_ID_ATTEMPTS = 5


class EmailAlreadyRegistered(Exception):
    pass


class UserIdUnavailable(Exception):
    pass


def format_user_id(role: str, number: int) -> str:
    return f"{ROLE_PREFIXES[role]}{number:04d}"


def generate_user_id(db, role: str) -> str:
    if role not in ROLE_PREFIXES:
        raise ValueError(f"Unknown role: {role}")
    count = db[USERS].count_documents({"role": role})
    while True:
        candidate = format_user_id(role, count + 1)
        if db[USERS].find_one({"userId": candidate}, {"_id": 1}) is None:
            return candidate
        count += 1


def normalize_email(email: str) -> str:
    return email.strip().lower()


def create_user(db, name: str, email: str, password: str, role: str,
                department: Optional[str] = None, phone: Optional[str] = None,
                user_id: Optional[str] = None) -> Dict[str, Any]:
    """Persist a new user and return the stored document.

    Raises EmailAlreadyRegistered, UserIdUnavailable, or pydantic's
    ValidationError for an invalid shape (e.g. a student with no department).
    """
    email = normalize_email(email)
    if db[USERS].find_one({"email": email}, {"_id": 1}):
        raise EmailAlreadyRegistered(email)

    password_hash = hash_password(password)
    for attempt in range(MAX_ID_ATTEMPTS):
        candidate = user_id or generate_user_id(db, role)
        user = User(
            name=name.strip(),
            email=email,
            password=password_hash,
            role=role,
            department=department.strip() if department else None,
            user_id=candidate,
            phone=phone.strip() if phone else None,
        )
        try:
            inserted_id = insert_document(db, USERS, user)
        except DuplicateKeyError:
            if db[USERS].find_one({"email": email}, {"_id": 1}):
                raise EmailAlreadyRegistered(email)
            if user_id:
                raise UserIdUnavailable(user_id)
            logger.warning("userId %s taken at insert (attempt %d), retrying", candidate, attempt + 1)
            continue
        doc = db[USERS].find_one({"_id": inserted_id})
        if role == "student":
            enroll_student_in_department(db, doc)
        return doc
    raise UserIdUnavailable(f"no free {ROLE_PREFIXES[role]} id after {MAX_ID_ATTEMPTS} attempts")


def enroll_student_in_department(db, student: Dict[str, Any]) -> int:
    """Add a student to every active course of their department."""
    result = db[COURSES].update_many(
        {"department": student["department"], "isActive": True},
        {"$addToSet": {"enrolledStudents": student["_id"]}},
    )
    return result.modified_count


def active_department_students(db, department: str):
    return [
        s["_id"]
        for s in db[USERS].find(
            {"role": "student", "department": department, "isActive": True}, {"_id": 1}
        )
    ]

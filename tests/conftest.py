import itertools
import os
from datetime import timedelta

# must be set before config is imported
os.environ["DATABASE_URL"] = ""
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret")

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from auth import create_access_token
from database import COURSES, EVENTS, ensure_indexes, insert_document, now_utc
from schemas import Course, Event
from users import active_department_students, create_user


@pytest.fixture
def db():
    mongo = mongomock.MongoClient()["college_portal_test"]
    ensure_indexes(mongo)
    return mongo


@pytest.fixture
def client(db, monkeypatch):
    monkeypatch.setattr(database, "db", db)
    return TestClient(main.app)


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def _make(role="student", department="CS", password="secret123", **kwargs):
        n = next(counter)
        return create_user(
            db,
            kwargs.get("name", f"{role.title()} {n}"),
            kwargs.get("email", f"{role}{n}@college.edu"),
            password,
            role,
            department,
        )
    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}
    return _headers


@pytest.fixture
def make_course(db):
    counter = itertools.count(101)

    def _make(faculty, **kwargs):
        course = Course(
            title=kwargs.get("title", "Data Structures"),
            code=kwargs.get("code", f"CS{next(counter)}"),
            description="Core course",
            department=faculty["department"],
            faculty=faculty["_id"],
            semester=3,
            credits=4,
            enrolled_students=active_department_students(db, faculty["department"]),
        )
        return db[COURSES].find_one({"_id": insert_document(db, COURSES, course)})
    return _make


@pytest.fixture
def make_event(db):
    def _make(organizer, status="approved", max_participants=0, days_ahead=7, **kwargs):
        event = Event(
            title=kwargs.get("title", "Tech Fest"),
            description="Annual fest",
            date=now_utc() + timedelta(days=days_ahead),
            time="10:00",
            venue="Main Hall",
            organizer=organizer["_id"],
            department=organizer["department"],
            max_participants=max_participants,
            status=status,
        )
        return db[EVENTS].find_one({"_id": insert_document(db, EVENTS, event)})
    return _make

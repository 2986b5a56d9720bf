import mongomock
from fastapi.testclient import TestClient

import database
import main
from database import ACTIVITIES, USERS


def register(client, **overrides):
    body = {"name": "Asha Rao", "email": "asha@college.edu", "password": "secret123",
            "role": "student", "department": "CS", **overrides}
    return client.post("/auth/register", json=body)


def test_register_and_login(client, db):
    resp = register(client)
    assert resp.status_code == 201
    user = resp.json()["user"]
    assert user["userId"] == "STU0001"
    assert "password" not in user

    login = client.post("/auth/login", json={"email": "ASHA@college.edu", "password": "secret123"})
    assert login.status_code == 200
    token = login.json()["token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["user"]["email"] == "asha@college.edu"
    assert db[USERS].find_one({"email": "asha@college.edu"})["lastLogin"] is not None
    assert {a["type"] for a in db[ACTIVITIES].find()} == {"user_registered", "user_login"}


def test_register_rejects_duplicate_email(client):
    register(client)
    resp = register(client, name="Someone Else")
    assert resp.status_code == 400
    assert resp.json()["message"] == "User with this email already exists"


def test_register_cannot_create_admin(client):
    resp = register(client, role="admin")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Validation failed"


def test_bad_credentials(client):
    register(client)
    resp = client.post("/auth/login", json={"email": "asha@college.edu", "password": "wrong-pass"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid email or password"


def test_missing_and_invalid_tokens(client):
    assert client.get("/auth/me").json() == {"message": "No token, authorization denied"}
    bad = client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert bad.status_code == 401
    assert bad.json()["message"] == "Token is not valid"


def test_deactivated_user_is_locked_out(client, db, make_user, auth_headers):
    student = make_user("student")
    db[USERS].update_one({"_id": student["_id"]}, {"$set": {"isActive": False}})
    resp = client.get("/auth/me", headers=auth_headers(student))
    assert resp.status_code == 401
    assert resp.json()["message"] == "Account is deactivated"


def test_role_guard(client, make_user, auth_headers):
    faculty = make_user("faculty")
    resp = client.get("/admin/users", headers=auth_headers(faculty))
    assert resp.status_code == 403
    assert resp.json()["message"] == "Access denied"


def test_admin_creates_user_with_default_password(client, make_user, auth_headers):
    admin = make_user("admin", department=None)
    resp = client.post(
        "/admin/users",
        json={"name": "Ravi Kumar", "email": "ravi@college.edu", "role": "faculty", "department": "EE"},
        headers=auth_headers(admin),
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["user"]["userId"] == "FAC0001"
    assert body["defaultPassword"].startswith("FAC0001@")

    login = client.post("/auth/login", json={"email": "ravi@college.edu", "password": body["defaultPassword"]})
    assert login.status_code == 200


def test_admin_toggle_and_reset_password(client, make_user, auth_headers):
    admin = make_user("admin", department=None)
    student = make_user("student", email="stu@college.edu")

    toggled = client.patch(f"/admin/users/{student['_id']}/toggle-status", headers=auth_headers(admin))
    assert toggled.json()["isActive"] is False
    login = client.post("/auth/login", json={"email": "stu@college.edu", "password": "secret123"})
    assert login.status_code == 400

    client.patch(f"/admin/users/{student['_id']}/toggle-status", headers=auth_headers(admin))
    reset = client.post(f"/admin/users/{student['_id']}/reset-password", headers=auth_headers(admin)).json()
    login = client.post("/auth/login", json={"email": "stu@college.edu", "password": reset["newPassword"]})
    assert login.status_code == 200


def test_admin_user_search(client, make_user, auth_headers):
    admin = make_user("admin", department=None)
    make_user("student", name="Asha Rao")
    make_user("student", name="Bilal Khan")
    resp = client.get("/admin/users", params={"search": "asha", "role": "student"}, headers=auth_headers(admin))
    assert [u["name"] for u in resp.json()["users"]] == ["Asha Rao"]


def test_health_and_invalid_id(client, make_user, auth_headers):
    health = client.get("/health").json()
    assert health["status"] == "OK"
    assert health["database"] == "Connected"

    admin = make_user("admin", department=None)
    resp = client.get("/admin/courses/123", headers=auth_headers(admin))
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid id format"


def test_dashboard_and_activity_feed(client, make_user, auth_headers):
    admin = make_user("admin", department=None)
    register(client)
    stats = client.get("/admin/dashboard-stats", headers=auth_headers(admin)).json()
    assert stats["totalStudents"] == 1
    assert stats["recentActivities"][0]["type"] == "user_registered"
    feed = client.get("/admin/activities", headers=auth_headers(admin)).json()
    assert feed["total"] == 1
    assert feed["activities"][0]["user"]["name"] == "Asha Rao"


def test_update_rejects_blank_department_for_faculty(client, db, make_user, auth_headers):
    admin = make_user("admin", department=None)
    faculty = make_user("faculty", department="EE")
    url = f"/admin/users/{faculty['_id']}"

    empty = client.put(url, json={"department": ""}, headers=auth_headers(admin))
    assert empty.status_code == 400
    blank = client.put(url, json={"department": "   "}, headers=auth_headers(admin))
    assert blank.status_code == 400
    assert blank.json()["message"] == "Department is required for faculty and students"
    assert db[USERS].find_one({"_id": faculty["_id"]})["department"] == "EE"

    moved = client.put(url, json={"department": " CS "}, headers=auth_headers(admin))
    assert moved.json()["user"]["department"] == "CS"


def test_generated_id_collision_is_retried(client, db, make_user, auth_headers, monkeypatch):
    admin = make_user("admin", department=None)
    make_user("faculty")
    proposals = iter(["FAC0001", "FAC0002"])
    monkeypatch.setattr(main, "generate_user_id", lambda db, role: next(proposals))

    resp = client.post(
        "/admin/users",
        json={"name": "Ravi Kumar", "email": "ravi@college.edu", "role": "faculty", "department": "EE"},
        headers=auth_headers(admin),
    )

    assert resp.status_code == 201
    assert resp.json()["user"]["userId"] == "FAC0002"
    assert resp.json()["defaultPassword"].startswith("FAC0002@")
    assert db[USERS].count_documents({"role": "faculty"}) == 2


def test_user_search_is_literal(client, make_user, auth_headers):
    admin = make_user("admin", department=None)
    make_user("student", name="Asha (CS)")
    make_user("student", name="Asha Rao")
    resp = client.get("/admin/users", params={"search": "(cs"}, headers=auth_headers(admin))
    assert resp.status_code == 200
    assert [u["name"] for u in resp.json()["users"]] == ["Asha (CS)"]
    dotted = client.get("/admin/users", params={"search": "a.*rao"}, headers=auth_headers(admin))
    assert dotted.json()["users"] == []


def test_startup_creates_indexes(monkeypatch):
    fresh = mongomock.MongoClient()["college_portal_startup"]
    monkeypatch.setattr(database, "db", fresh)
    with TestClient(main.app) as client:
        assert client.get("/health").json()["database"] == "Connected"
    unique = {
        tuple(k for k, _ in spec["key"])
        for spec in fresh[USERS].index_information().values() if spec.get("unique")
    }
    assert {("email",), ("userId",)} <= unique

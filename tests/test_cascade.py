from cascade import USER_CASCADE, CascadeStep, delete_user
from database import COURSES, EVENTS, NOTIFICATIONS, PLACEMENTS, USERS, insert_document
from registrations import register_student
from schemas import Notification, Placement


def test_deleting_faculty_removes_owned_courses_and_events(db, make_user, make_course, make_event):
    faculty = make_user("faculty")
    other = make_user("faculty")
    make_course(faculty, code="CS201")
    make_course(faculty, code="CS202")
    kept = make_course(other, code="CS203")
    make_event(faculty)

    report = delete_user(db, faculty)

    assert report.ok
    assert report.completed["owned_courses"] == 2
    assert report.completed["organized_events"] == 1
    assert "added_placements" in report.skipped
    assert db[USERS].find_one({"_id": faculty["_id"]}) is None
    assert db[COURSES].count_documents({"faculty": faculty["_id"]}) == 0
    assert db[COURSES].find_one({"_id": kept["_id"]}) is not None
    assert db[EVENTS].count_documents({"organizer": faculty["_id"]}) == 0


def test_deleting_student_removes_every_reference(db, make_user, make_course, make_event):
    faculty = make_user("faculty")
    student = make_user("student")
    course = make_course(faculty)
    assert student["_id"] in course["enrolledStudents"]
    event = make_event(faculty)
    register_student(db, event, student)
    notification_id = insert_document(
        db, NOTIFICATIONS, Notification(title="t", message="m", sender=faculty["_id"], read_by=[student["_id"]])
    )

    report = delete_user(db, student)

    assert report.ok
    assert "owned_courses" in report.skipped
    assert student["_id"] not in db[COURSES].find_one({"_id": course["_id"]})["enrolledStudents"]
    assert db[EVENTS].find_one({"_id": event["_id"]})["registeredStudents"] == []
    assert db[NOTIFICATIONS].find_one({"_id": notification_id})["readBy"] == []


def test_deleting_admin_removes_sent_notifications_and_placements(db, make_user):
    admin = make_user("admin", department=None)
    student = make_user("student")
    insert_document(db, NOTIFICATIONS, Notification(title="t", message="m", sender=admin["_id"]))
    insert_document(db, PLACEMENTS, Placement(
        student_id=student["userId"], student_name=student["name"], company_name="Acme", package=6.5,
        year_of_placement=2024, department="CS", added_by=admin["_id"],
    ))

    report = delete_user(db, admin)

    assert report.completed["sent_notifications"] == 1
    assert report.completed["added_placements"] == 1
    assert db[NOTIFICATIONS].count_documents({}) == 0
    assert db[PLACEMENTS].count_documents({}) == 0


def test_failing_step_does_not_stop_the_rest(db, make_user, make_course):
    faculty = make_user("faculty")
    make_course(faculty)

    def explode(db, user):
        raise RuntimeError("collection unavailable")

    steps = [USER_CASCADE[0], CascadeStep("broken", COURSES, explode)] + USER_CASCADE[1:]
    report = delete_user(db, faculty, steps)

    assert not report.ok
    assert report.failed == {"broken": "collection unavailable"}
    assert report.completed["owned_courses"] == 1
    assert db[COURSES].count_documents({}) == 0
    assert db[USERS].find_one({"_id": faculty["_id"]}) is None


def test_delete_route_reports_cleanup(client, db, make_user, make_course, auth_headers):
    admin = make_user("admin", department=None)
    faculty = make_user("faculty")
    make_course(faculty)

    resp = client.delete(f"/admin/users/{faculty['_id']}", headers=auth_headers(admin))

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "User deleted successfully"
    assert body["cleanup"]["completed"]["owned_courses"] == 1
    assert body["cleanup"]["failed"] == {}


def test_admin_cannot_delete_self(client, make_user, auth_headers):
    admin = make_user("admin", department=None)
    resp = client.delete(f"/admin/users/{admin['_id']}", headers=auth_headers(admin))
    assert resp.status_code == 400

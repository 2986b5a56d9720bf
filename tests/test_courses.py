from datetime import timedelta

import pytest

from database import COURSES, now_utc
from main import content_disposition


def test_new_student_is_enrolled_in_department_courses(db, make_user, make_course):
    faculty = make_user("faculty", department="CS")
    cs_course = make_course(faculty)
    ee_course = make_course(make_user("faculty", department="EE"))

    student = make_user("student", department="CS")

    assert student["_id"] in db[COURSES].find_one({"_id": cs_course["_id"]})["enrolledStudents"]
    assert student["_id"] not in db[COURSES].find_one({"_id": ee_course["_id"]})["enrolledStudents"]


def test_new_course_enrolls_existing_students(client, db, make_user, auth_headers):
    faculty = make_user("faculty", department="CS")
    cs_students = [make_user("student", department="CS") for _ in range(2)]
    make_user("student", department="EE")

    resp = client.post(
        "/faculty/courses",
        json={"title": "Algorithms", "code": "cs301", "description": "Design", "semester": 5, "credits": 4},
        headers=auth_headers(faculty),
    )

    assert resp.status_code == 201
    course = resp.json()["course"]
    assert course["code"] == "CS301"
    assert {s["id"] for s in course["enrolledStudents"]} == {str(s["_id"]) for s in cs_students}


def test_duplicate_course_code(client, make_user, auth_headers):
    faculty = make_user("faculty")
    body = {"title": "Algorithms", "code": "CS301", "description": "Design", "semester": 5, "credits": 4}
    assert client.post("/faculty/courses", json=body, headers=auth_headers(faculty)).status_code == 201
    dup = client.post("/faculty/courses", json=body, headers=auth_headers(faculty))
    assert dup.status_code == 400
    assert dup.json()["message"] == "Course code already exists"


def test_course_visibility(client, make_user, make_course, auth_headers):
    cs_faculty = make_user("faculty", department="CS")
    ee_faculty = make_user("faculty", department="EE")
    student = make_user("student", department="CS")
    cs_course = make_course(cs_faculty)
    ee_course = make_course(ee_faculty)

    listed = client.get("/courses", headers=auth_headers(student)).json()
    assert [c["id"] for c in listed] == [str(cs_course["_id"])]
    assert "enrolledStudents" not in listed[0]
    assert client.get(f"/courses/{ee_course['_id']}", headers=auth_headers(student)).status_code == 404
    assert client.get(f"/courses/{ee_course['_id']}", headers=auth_headers(cs_faculty)).status_code == 404
    assert client.get("/courses/not-an-id", headers=auth_headers(student)).status_code == 400


@pytest.fixture
def course_with_assignment(client, make_user, make_course, auth_headers):
    faculty = make_user("faculty")
    student = make_user("student")
    course = make_course(faculty)
    resp = client.post(
        f"/faculty/courses/{course['_id']}/assignments",
        data={"title": "Lab 1", "description": "Linked lists",
              "dueDate": (now_utc() + timedelta(days=3)).isoformat(), "maxMarks": "20"},
        headers=auth_headers(faculty),
    )
    assert resp.status_code == 200
    return faculty, student, course, resp.json()["assignment"]["id"]


def test_submit_once_and_grade(client, db, course_with_assignment, auth_headers):
    faculty, student, course, assignment_id = course_with_assignment
    submit_url = f"/student/courses/{course['_id']}/assignments/{assignment_id}/submit"

    first = client.post(submit_url, data={"text": "my answer"}, headers=auth_headers(student))
    assert first.status_code == 200
    second = client.post(submit_url, data={"text": "again"}, headers=auth_headers(student))
    assert second.status_code == 400
    assert second.json()["message"] == "Assignment already submitted"

    submission = db[COURSES].find_one({"_id": course["_id"]})["assignments"][0]["submissions"][0]
    grade_url = (
        f"/faculty/courses/{course['_id']}/assignments/{assignment_id}"
        f"/submissions/{submission['_id']}/grade"
    )
    too_high = client.patch(grade_url, json={"marks": 25}, headers=auth_headers(faculty))
    assert too_high.status_code == 400
    ok = client.patch(grade_url, json={"marks": 18, "feedback": "Good"}, headers=auth_headers(faculty))
    assert ok.status_code == 200

    graded = db[COURSES].find_one({"_id": course["_id"]})["assignments"][0]["submissions"][0]
    assert (graded["marks"], graded["feedback"], graded["isGraded"]) == (18, "Good", True)

    mine = client.get(f"/student/courses/{course['_id']}", headers=auth_headers(student)).json()
    assert mine["assignments"][0]["mySubmission"]["marks"] == 18
    assert "submissions" not in mine["assignments"][0]


def test_empty_submission_rejected(client, course_with_assignment, auth_headers):
    _, student, course, assignment_id = course_with_assignment
    resp = client.post(
        f"/student/courses/{course['_id']}/assignments/{assignment_id}/submit",
        data={"text": "  "},
        headers=auth_headers(student),
    )
    assert resp.status_code == 400


def test_material_upload_and_download(client, make_user, make_course, auth_headers):
    faculty = make_user("faculty")
    student = make_user("student")
    course = make_course(faculty)
    resp = client.post(
        f"/faculty/courses/{course['_id']}/materials",
        data={"title": "Notes", "type": "document"},
        files={"file": ("notes.pdf", b"%PDF-1.4 notes", "application/pdf")},
        headers=auth_headers(faculty),
    )
    assert resp.status_code == 200
    material = resp.json()["material"]
    assert "data" not in material["file"]

    download = client.get(
        f"/courses/{course['_id']}/materials/{material['id']}/download", headers=auth_headers(student)
    )
    assert download.status_code == 200
    assert download.content == b"%PDF-1.4 notes"
    assert 'filename="notes.pdf"' in download.headers["content-disposition"]
    assert "filename*=UTF-8''notes.pdf" in download.headers["content-disposition"]


def test_disallowed_upload_type(client, make_user, make_course, auth_headers):
    faculty = make_user("faculty")
    course = make_course(faculty)
    resp = client.post(
        f"/faculty/courses/{course['_id']}/materials",
        data={"title": "Script", "type": "document"},
        files={"file": ("run.exe", b"MZ", "application/octet-stream")},
        headers=auth_headers(faculty),
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid file type"


def test_attendance_once_per_day_and_insights(client, make_user, make_course, auth_headers):
    faculty = make_user("faculty")
    student = make_user("student")
    course = make_course(faculty)
    url = f"/faculty/courses/{course['_id']}/attendance"
    body = {"date": "2024-03-01", "topic": "Trees",
            "attendance": [{"studentId": str(student["_id"]), "status": "present"}]}

    assert client.post(url, json=body, headers=auth_headers(faculty)).status_code == 200
    assert client.post(url, json=body, headers=auth_headers(faculty)).status_code == 400
    absent = {**body, "date": "2024-03-02",
              "attendance": [{"studentId": str(student["_id"]), "status": "absent"}]}
    assert client.post(url, json=absent, headers=auth_headers(faculty)).status_code == 200

    history = client.get("/student/attendance", headers=auth_headers(student)).json()
    assert [h["status"] for h in history] == ["absent", "present"]
    insights = client.get("/student/insights", headers=auth_headers(student)).json()
    assert insights["totalCourses"] == 1
    assert insights["attendancePercentage"] == 50

    export = client.get(f"{url}/download", headers=auth_headers(faculty))
    assert export.status_code == 200
    assert export.content[:2] == b"PK"


@pytest.mark.parametrize("filename,expected", [
    ("My Notes.pdf", "attachment; filename=\"My Notes.pdf\"; filename*=UTF-8''My%20Notes.pdf"),
    ("Résumé.pdf", "attachment; filename=\"Rsum.pdf\"; filename*=UTF-8''R%C3%A9sum%C3%A9.pdf"),
    ("课程.xlsx", "attachment; filename=\".xlsx\"; filename*=UTF-8''%E8%AF%BE%E7%A8%8B.xlsx"),
    ('a"b.pdf', "attachment; filename=\"ab.pdf\"; filename*=UTF-8''a%22b.pdf"),
])
def test_content_disposition_keeps_unicode_names(filename, expected):
    header = content_disposition(filename)
    assert header == expected
    header.encode("latin-1")

import logging
import os
import re
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, time as dt_time, timezone
from typing import Any, Callable, Dict, List, Literal, Optional
from urllib.parse import quote

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError
from pydantic.alias_generators import to_camel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import visibility
from activity import log_activity, recent_activities
from auth import create_access_token, get_current_user, get_optional_user, hash_password, require_roles, verify_password
from cascade import delete_user
from config import (
    ALLOWED_UPLOAD_EXTENSIONS, CORS_ORIGINS, ENVIRONMENT, LOG_LEVEL, MAX_UPLOAD_BYTES,
)
from database import (
    ACTIVITIES, COURSES, EVENTS, NOTIFICATIONS, PLACEMENTS, USERS, ensure_indexes, insert_document, now_utc,
)
from exports import (
    ATTENDANCE_COLUMNS, REGISTRATION_COLUMNS, XLSX_MEDIA_TYPE, attendance_rows, registration_rows, to_xlsx,
)
from placement_import import (
    RowError, SpreadsheetError, UnknownStudent, build_placement, import_placements, read_placement_rows,
    upsert_placement,
)
from registrations import RegistrationError, register_student, unregister_student, update_capacity
from schemas import (
    Assignment, AttendanceEntry, AttendanceRecord, Course, Event, FileBlob, Material, Notification, Submission,
)
from users import (
    MAX_ID_ATTEMPTS, EmailAlreadyRegistered, UserIdUnavailable, active_department_students, create_user,
    generate_user_id, normalize_email,
)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("college_portal")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    else:
        logger.warning("DATABASE_URL not set; API will answer 'Database not available'")
    yield


app = FastAPI(title="College Portal API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------- Helpers -------------------- #

def ensure_db():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return database.db


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id format")


def serialize_doc(value: Any) -> Any:
    """Make a Mongo document JSON-ready: ids as strings, ISO dates, no file bytes or password hashes."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "password" or isinstance(v, bytes):
                continue
            out["id" if k == "_id" else k] = serialize_doc(v)
        return out
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def serialize_list(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in docs]


USER_SUMMARY = {"name": 1, "email": 1, "userId": 1, "department": 1, "role": 1}


def _walk(node: Any, parts: List[str], fn: Callable[[Any], Any]) -> None:
    if isinstance(node, list):
        for item in node:
            _walk(item, parts, fn)
        return
    if not isinstance(node, dict) or parts[0] not in node:
        return
    if len(parts) > 1:
        _walk(node[parts[0]], parts[1:], fn)
    else:
        node[parts[0]] = fn(node[parts[0]])


def populate_users(db, docs: List[Dict[str, Any]], *paths: str) -> List[Dict[str, Any]]:
    """Replace user ObjectIds found at dotted `paths` with name/email/userId summaries."""
    ids = set()

    def collect(value):
        ids.update(value if isinstance(value, list) else [value])
        return value

    for path in paths:
        _walk(docs, path.split("."), collect)
    ids.discard(None)
    users = {u["_id"]: u for u in db[USERS].find({"_id": {"$in": list(ids)}}, USER_SUMMARY)}

    def replace(value):
        if isinstance(value, list):
            return [users.get(v, v) for v in value]
        return users.get(value, value)

    for path in paths:
        _walk(docs, path.split("."), replace)
    return docs


def find_sub(items: List[Dict[str, Any]], sub_id: str, label: str) -> Dict[str, Any]:
    target = oid(sub_id)
    for item in items or []:
        if item.get("_id") == target:
            return item
    raise HTTPException(status_code=404, detail=f"{label} not found")


def index_of(items: List[Dict[str, Any]], item: Dict[str, Any]) -> int:
    return next(i for i, candidate in enumerate(items) if candidate["_id"] == item["_id"])


async def read_upload(upload: Optional[UploadFile]) -> Optional[FileBlob]:
    if upload is None or not upload.filename:
        return None
    _, ext = os.path.splitext(upload.filename.lower())
    if ext not in ALLOWED_UPLOAD_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Invalid file type")
    content = await upload.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File upload error: file too large")
    return FileBlob(
        filename=upload.filename,
        data=content,
        content_type=upload.content_type or "application/octet-stream",
        size=len(content),
    )


def content_disposition(filename: str) -> str:
    # plain ASCII fallback plus the RFC 5987 form for non-ASCII names
    fallback = filename.encode("ascii", "ignore").decode().replace("\"", "").replace("\\", "") or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


def file_response(blob: Dict[str, Any]) -> Response:
    filename = blob.get("filename", "download")
    return Response(
        content=blob.get("data", b""),
        media_type=blob.get("contentType") or "application/octet-stream",
        headers={"Content-Disposition": content_disposition(filename)},
    )


def xlsx_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": content_disposition(filename)},
    )


def at_midnight(day: date) -> datetime:
    return datetime.combine(day, dt_time.min)


def naive_utc(value: datetime) -> datetime:
    # Mongo hands back naive UTC datetimes, so compare in that form
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def user_payload(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role"),
        "department": user.get("department"),
        "userId": user.get("userId"),
        "isActive": user.get("isActive", True),
        "createdAt": serialize_doc(user.get("createdAt")),
    }


class Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -------------------- Errors & Logging Middleware -------------------- #

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg")}
        for e in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    errors = [{"field": ".".join(str(p) for p in e.get("loc", ())), "message": e.get("msg")} for e in exc.errors()]
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=400, content={"message": "Duplicate entry"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"message": "Something went wrong!"}
    if ENVIRONMENT == "development":
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


@app.middleware("http")
async def request_log_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %s (%.1f ms)",
        request.method, request.url.path, response.status_code, (time.perf_counter() - start) * 1000,
    )
    return response


# -------------------- Meta endpoints -------------------- #

@app.get("/")
def read_root():
    return {"message": "College Portal Backend is running"}


@app.get("/health")
def health():
    response = {
        "status": "OK",
        "timestamp": now_utc().isoformat(),
        "database": "Not Available",
        "collections": [],
    }
    if database.db is not None:
        try:
            response["collections"] = database.db.list_collection_names()[:50]
            response["database"] = "Connected"
        except Exception as e:
            logger.warning("Health check could not list collections: %s", e)
            response["database"] = f"Connected but Error: {str(e)[:80]}"
    return response


# -------------------- Auth endpoints -------------------- #

class RegisterPayload(Payload):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["faculty", "student"]
    department: str = Field(..., min_length=1)


class LoginPayload(Payload):
    email: EmailStr
    password: str = Field(..., min_length=1)


@app.post("/auth/register", status_code=201)
def register_user(payload: RegisterPayload):
    db = ensure_db()
    try:
        user = create_user(db, payload.name, payload.email, payload.password, payload.role, payload.department)
    except EmailAlreadyRegistered:
        raise HTTPException(status_code=400, detail="User with this email already exists")
    except UserIdUnavailable:
        raise HTTPException(status_code=400, detail="User ID generation failed. Please try again.")
    log_activity(
        db, "user_registered", f"{user['name']} registered as {user['role']}", user["_id"], "User", user["_id"],
        {"role": user["role"], "department": user.get("department")},
    )
    return {
        "message": "User registered successfully",
        "token": create_access_token(user),
        "user": user_payload(user),
    }


@app.post("/auth/login")
def login(payload: LoginPayload):
    db = ensure_db()
    user = db[USERS].find_one({"email": normalize_email(payload.email)})
    if not user or not verify_password(payload.password, user.get("password", "")):
        raise HTTPException(status_code=400, detail="Invalid email or password")
    if not user.get("isActive", True):
        raise HTTPException(status_code=400, detail="Account is deactivated. Please contact administrator.")
    db[USERS].update_one({"_id": user["_id"]}, {"$set": {"lastLogin": now_utc()}})
    log_activity(db, "user_login", f"{user['name']} logged in", user["_id"], "User", user["_id"])
    return {
        "message": "Login successful",
        "token": create_access_token(user),
        "user": user_payload(user),
    }


@app.get("/auth/me")
def me(user=Depends(get_current_user)):
    return {"user": user_payload(user)}


@app.post("/auth/logout")
def logout(user=Depends(get_current_user)):
    # tokens are stateless; the client discards its copy
    return {"message": "Logged out successfully"}


# -------------------- Courses (all roles) -------------------- #

def student_course_view(course: Dict[str, Any], student_id: ObjectId) -> Dict[str, Any]:
    """Hide classmates' submissions and the roster from a student."""
    course = dict(course)
    course.pop("enrolledStudents", None)
    course["assignments"] = [
        {
            **{k: v for k, v in a.items() if k != "submissions"},
            "mySubmission": next((s for s in a.get("submissions", []) if s.get("student") == student_id), None),
        }
        for a in course.get("assignments", [])
    ]
    return course


def visible_course(db, user, course_id: str) -> Dict[str, Any]:
    query = visibility.course_filter(user)
    if query is None:
        raise HTTPException(status_code=403, detail="Access denied")
    course = db[COURSES].find_one({"_id": oid(course_id), **query})
    if not course:
        raise HTTPException(status_code=404, detail="Course not found or access denied")
    return course


@app.get("/courses")
def list_courses(user=Depends(get_current_user)):
    db = ensure_db()
    query = visibility.course_filter(user)
    if query is None:
        raise HTTPException(status_code=403, detail="Access denied")
    courses = list(db[COURSES].find(query).sort("createdAt", -1))
    if user["role"] == "student":
        courses = [student_course_view(c, user["_id"]) for c in courses]
        return serialize_list(populate_users(db, courses, "faculty"))
    return serialize_list(populate_users(db, courses, "faculty", "enrolledStudents"))


@app.get("/courses/{course_id}")
def get_course(course_id: str, user=Depends(get_current_user)):
    db = ensure_db()
    course = visible_course(db, user, course_id)
    if user["role"] == "student":
        return serialize_doc(populate_users(db, [student_course_view(course, user["_id"])], "faculty")[0])
    populate_users(db, [course], "faculty", "enrolledStudents", "assignments.submissions.student")
    return serialize_doc(course)


@app.get("/courses/{course_id}/materials/{material_id}/download")
def download_material(course_id: str, material_id: str, user=Depends(get_current_user)):
    db = ensure_db()
    course = visible_course(db, user, course_id)
    material = find_sub(course.get("materials"), material_id, "Material")
    if not material.get("file"):
        raise HTTPException(status_code=404, detail="Material not found")
    return file_response(material["file"])


@app.get("/courses/{course_id}/assignments/{assignment_id}/attachments/{attachment_id}/download")
def download_assignment_attachment(course_id: str, assignment_id: str, attachment_id: str,
                                   user=Depends(get_current_user)):
    db = ensure_db()
    course = visible_course(db, user, course_id)
    assignment = find_sub(course.get("assignments"), assignment_id, "Assignment")
    attachment = find_sub(assignment.get("attachments"), attachment_id, "Attachment")
    return file_response(attachment)


# -------------------- Faculty: courses -------------------- #

class CourseCreate(Payload):
    title: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    semester: int = Field(..., ge=1, le=12)
    credits: int = Field(..., ge=0)


class GradePayload(Payload):
    marks: int = Field(..., ge=0)
    feedback: Optional[str] = None


class AttendanceMark(Payload):
    student_id: str
    status: Literal["present", "absent", "late"]


class AttendancePayload(Payload):
    date: date
    topic: str = ""
    attendance: List[AttendanceMark]


def owned_course(db, user, course_id: str) -> Dict[str, Any]:
    course = db[COURSES].find_one({"_id": oid(course_id), "faculty": user["_id"]})
    if not course:
        raise HTTPException(status_code=404, detail="Course not found")
    return course


@app.post("/faculty/courses", status_code=201)
def create_course(payload: CourseCreate, user=Depends(require_roles("faculty"))):
    db = ensure_db()
    code = payload.code.strip().upper()
    if db[COURSES].find_one({"code": code}, {"_id": 1}):
        raise HTTPException(status_code=400, detail="Course code already exists")
    course = Course(
        title=payload.title.strip(),
        code=code,
        description=payload.description.strip(),
        department=user["department"],
        faculty=user["_id"],
        semester=payload.semester,
        credits=payload.credits,
        enrolled_students=active_department_students(db, user["department"]),
    )
    try:
        course_id = insert_document(db, COURSES, course)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Course code already exists")
    log_activity(
        db, "course_created", f"Course \"{course.title}\" created by {user['name']}", user["_id"], "Course",
        course_id, {"courseCode": code, "department": user["department"]},
    )
    doc = db[COURSES].find_one({"_id": course_id})
    populate_users(db, [doc], "faculty", "enrolledStudents")
    return {"message": "Course created successfully", "course": serialize_doc(doc)}


@app.get("/faculty/courses")
def faculty_courses(user=Depends(require_roles("faculty"))):
    db = ensure_db()
    courses = list(db[COURSES].find({"faculty": user["_id"]}).sort("createdAt", -1))
    return serialize_list(populate_users(db, courses, "enrolledStudents"))


@app.get("/faculty/courses/{course_id}/students")
def course_students(course_id: str, user=Depends(require_roles("faculty"))):
    db = ensure_db()
    course = owned_course(db, user, course_id)
    populate_users(db, [course], "enrolledStudents")
    return {
        "course": {"title": course["title"], "code": course["code"], "department": course["department"]},
        "students": serialize_list(course.get("enrolledStudents", [])),
    }


@app.post("/faculty/courses/{course_id}/materials")
async def add_material(
    course_id: str,
    title: str = Form(...),
    material_type: str = Form(..., alias="type"),
    description: Optional[str] = Form(None),
    url: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    user=Depends(require_roles("faculty")),
):
    db = ensure_db()
    course = owned_course(db, user, course_id)
    if material_type == "link" and not url:
        raise HTTPException(status_code=400, detail="A URL is required for link materials")
    material = Material(
        title=title.strip(),
        description=description,
        type=material_type,
        url=url if material_type == "link" else None,
        file=await read_upload(file),
    )
    doc = material.model_dump(by_alias=True)
    db[COURSES].update_one(
        {"_id": course["_id"]}, {"$push": {"materials": doc}, "$set": {"updatedAt": now_utc()}}
    )
    return {"message": "Material added successfully", "material": serialize_doc(doc)}


@app.post("/faculty/courses/{course_id}/assignments")
async def add_assignment(
    course_id: str,
    title: str = Form(...),
    description: str = Form(...),
    due_date: datetime = Form(..., alias="dueDate"),
    max_marks: int = Form(..., alias="maxMarks"),
    attachments: Optional[List[UploadFile]] = File(None),
    user=Depends(require_roles("faculty")),
):
    db = ensure_db()
    course = owned_course(db, user, course_id)
    uploads = [u for u in (attachments or []) if u.filename]
    if len(uploads) > 5:
        raise HTTPException(status_code=400, detail="At most 5 attachments are allowed")
    assignment = Assignment(
        title=title.strip(),
        description=description.strip(),
        due_date=naive_utc(due_date),
        max_marks=max_marks,
        attachments=[await read_upload(u) for u in uploads],
    )
    doc = assignment.model_dump(by_alias=True)
    db[COURSES].update_one(
        {"_id": course["_id"]}, {"$push": {"assignments": doc}, "$set": {"updatedAt": now_utc()}}
    )
    return {"message": "Assignment added successfully", "assignment": serialize_doc(doc)}


@app.patch("/faculty/courses/{course_id}/assignments/{assignment_id}/submissions/{submission_id}/grade")
def grade_submission(course_id: str, assignment_id: str, submission_id: str, payload: GradePayload,
                     user=Depends(require_roles("faculty"))):
    db = ensure_db()
    course = owned_course(db, user, course_id)
    assignment = find_sub(course.get("assignments"), assignment_id, "Assignment")
    submission = find_sub(assignment.get("submissions"), submission_id, "Submission")
    if payload.marks > assignment.get("maxMarks", 0):
        raise HTTPException(status_code=400, detail=f"Marks cannot exceed {assignment.get('maxMarks')}")
    i = index_of(course["assignments"], assignment)
    j = index_of(assignment["submissions"], submission)
    prefix = f"assignments.{i}.submissions.{j}"
    result = db[COURSES].update_one(
        {"_id": course["_id"], f"assignments.{i}._id": assignment["_id"], f"{prefix}._id": submission["_id"]},
        {"$set": {
            f"{prefix}.marks": payload.marks,
            f"{prefix}.feedback": payload.feedback,
            f"{prefix}.isGraded": True,
            "updatedAt": now_utc(),
        }},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=409, detail="Course changed while grading, please retry")
    return {"message": "Assignment graded successfully"}


@app.get("/faculty/assignments")
def assignments_for_grading(user=Depends(require_roles("faculty"))):
    db = ensure_db()
    courses = list(db[COURSES].find({"faculty": user["_id"]}, {"title": 1, "code": 1, "assignments": 1}))
    populate_users(db, courses, "assignments.submissions.student")
    result = []
    for course in courses:
        for assignment in course.get("assignments", []):
            submissions = assignment.get("submissions", [])
            graded = sum(1 for s in submissions if s.get("isGraded"))
            result.append({
                "courseId": course["_id"],
                "courseTitle": course["title"],
                "courseCode": course["code"],
                "assignmentId": assignment["_id"],
                "assignmentTitle": assignment["title"],
                "dueDate": assignment.get("dueDate"),
                "maxMarks": assignment.get("maxMarks"),
                "totalSubmissions": len(submissions),
                "gradedCount": graded,
                "ungradedCount": len(submissions) - graded,
                "submissions": submissions,
            })
    return serialize_list(result)


@app.get("/faculty/courses/{course_id}/assignments/{assignment_id}/submissions/{submission_id}/download")
def download_submission(course_id: str, assignment_id: str, submission_id: str,
                        user=Depends(require_roles("faculty"))):
    db = ensure_db()
    course = owned_course(db, user, course_id)
    assignment = find_sub(course.get("assignments"), assignment_id, "Assignment")
    submission = find_sub(assignment.get("submissions"), submission_id, "Submission")
    if not submission.get("files"):
        raise HTTPException(status_code=404, detail="Submission file not found")
    return file_response(submission["files"][0])


@app.post("/faculty/courses/{course_id}/attendance")
def mark_attendance(course_id: str, payload: AttendancePayload, user=Depends(require_roles("faculty"))):
    db = ensure_db()
    course = owned_course(db, user, course_id)
    if any(r["date"].date() == payload.date for r in course.get("attendance", [])):
        raise HTTPException(status_code=400, detail="Attendance for this date already exists")
    enrolled = set(course.get("enrolledStudents", []))
    entries = []
    for mark in payload.attendance:
        student_id = oid(mark.student_id)
        if student_id not in enrolled:
            raise HTTPException(status_code=400, detail=f"Student {mark.student_id} is not enrolled in this course")
        entries.append(AttendanceEntry(student=student_id, status=mark.status))
    record = AttendanceRecord(
        date=at_midnight(payload.date), topic=payload.topic, students=entries, marked_by=user["_id"]
    )
    db[COURSES].update_one(
        {"_id": course["_id"]},
        {"$push": {"attendance": record.model_dump(by_alias=True)}, "$set": {"updatedAt": now_utc()}},
    )
    return {"message": "Attendance marked successfully"}


@app.get("/faculty/courses/{course_id}/attendance")
def course_attendance(course_id: str, user=Depends(require_roles("faculty"))):
    db = ensure_db()
    course = owned_course(db, user, course_id)
    records = sorted(course.get("attendance", []), key=lambda r: r["date"], reverse=True)
    populate_users(db, records, "students.student", "markedBy")
    return {
        "course": {"title": course["title"], "code": course["code"]},
        "attendance": serialize_list(records),
    }


@app.get("/faculty/courses/{course_id}/attendance/download")
def download_attendance(course_id: str, user=Depends(require_roles("faculty"))):
    db = ensure_db()
    course = owned_course(db, user, course_id)
    ids = {e["student"] for r in course.get("attendance", []) for e in r.get("students", [])}
    students = {s["_id"]: s for s in db[USERS].find({"_id": {"$in": list(ids)}}, USER_SUMMARY)}
    content = to_xlsx(attendance_rows(course, students), "Attendance", ATTENDANCE_COLUMNS)
    return xlsx_response(content, f"{course['code']}_attendance.xlsx")


# -------------------- Events -------------------- #

def event_view(db, event: Dict[str, Any], user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Organisers and admins get the populated roster; others get ids and their own flag."""
    event = dict(event)
    event["registeredCount"] = len(event.get("registeredStudents", []))
    if user is not None and (user["role"] == "admin" or event.get("organizer") == user["_id"]):
        populate_users(db, [event], "organizer", "registeredStudents.student")
    else:
        if user is not None:
            event["isRegistered"] = any(
                r.get("student") == user["_id"] for r in event.get("registeredStudents", [])
            )
        populate_users(db, [event], "organizer")
    return serialize_doc(event)


def get_event_or_404(db, event_id: str) -> Dict[str, Any]:
    event = db[EVENTS].find_one({"_id": oid(event_id)})
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


@app.get("/events")
def list_events(user=Depends(get_optional_user)):
    db = ensure_db()
    events = db[EVENTS].find(visibility.event_filter(user)).sort("date", 1)
    return [event_view(db, e, user) for e in events]


@app.get("/events/{event_id}")
def get_event(event_id: str, user=Depends(get_optional_user)):
    db = ensure_db()
    event = get_event_or_404(db, event_id)
    if not visibility.can_view_event(user, event):
        raise HTTPException(status_code=404, detail="Event not found")
    return event_view(db, event, user)


@app.post("/faculty/events", status_code=201)
async def create_event(
    title: str = Form(...),
    description: str = Form(...),
    event_date: date = Form(..., alias="date"),
    event_time: str = Form(..., alias="time"),
    venue: str = Form(...),
    max_participants: int = Form(0, alias="maxParticipants", ge=0),
    image: Optional[UploadFile] = File(None),
    user=Depends(require_roles("faculty")),
):
    db = ensure_db()
    event = Event(
        title=title.strip(),
        description=description.strip(),
        date=at_midnight(event_date),
        time=event_time.strip(),
        venue=venue.strip(),
        max_participants=max_participants,
        organizer=user["_id"],
        department=user["department"],
        image=await read_upload(image),
    )
    event_id = insert_document(db, EVENTS, event)
    log_activity(
        db, "event_created", f"Event \"{event.title}\" created by {user['name']}", user["_id"], "Event", event_id,
        {"eventDate": event_date.isoformat(), "venue": event.venue},
    )
    return {
        "message": "Event created successfully and sent for approval",
        "event": event_view(db, db[EVENTS].find_one({"_id": event_id}), user),
    }


@app.get("/faculty/events")
def faculty_events(user=Depends(require_roles("faculty"))):
    db = ensure_db()
    events = db[EVENTS].find({"organizer": user["_id"]}).sort("createdAt", -1)
    return [event_view(db, e, user) for e in events]


@app.delete("/faculty/events/{event_id}")
def faculty_delete_event(event_id: str, user=Depends(require_roles("faculty"))):
    db = ensure_db()
    event = db[EVENTS].find_one({"_id": oid(event_id), "organizer": user["_id"]})
    if not event:
        raise HTTPException(status_code=404, detail="Event not found or you don't have permission to delete it")
    db[EVENTS].delete_one({"_id": event["_id"]})
    log_activity(
        db, "event_deleted", f"Event \"{event['title']}\" deleted by {user['name']}", user["_id"], "Event",
        event["_id"], {"eventTitle": event["title"]},
    )
    return {"message": "Event deleted successfully"}


@app.get("/faculty/events/{event_id}/registrations/download")
def download_registrations(event_id: str, user=Depends(require_roles("faculty", "admin"))):
    db = ensure_db()
    query = {"_id": oid(event_id)}
    if user["role"] == "faculty":
        query["organizer"] = user["_id"]
    event = db[EVENTS].find_one(query)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    ids = [r["student"] for r in event.get("registeredStudents", [])]
    students = {s["_id"]: s for s in db[USERS].find({"_id": {"$in": ids}}, USER_SUMMARY)}
    content = to_xlsx(registration_rows(event, students), "Registrations", REGISTRATION_COLUMNS)
    return xlsx_response(content, f"{event['title']}_registrations.xlsx")


@app.get("/events/{event_id}/image")
def event_image(event_id: str, user=Depends(get_optional_user)):
    db = ensure_db()
    event = get_event_or_404(db, event_id)
    if not visibility.can_view_event(user, event) or not event.get("image"):
        raise HTTPException(status_code=404, detail="Image not found")
    return file_response(event["image"])


# -------------------- Student endpoints -------------------- #

def enrolled_course(db, user, course_id: str) -> Dict[str, Any]:
    course = db[COURSES].find_one({"_id": oid(course_id), "enrolledStudents": user["_id"]})
    if not course:
        raise HTTPException(status_code=404, detail="Course not found or you're not enrolled")
    return course


@app.get("/student/courses")
def student_courses(user=Depends(require_roles("student"))):
    db = ensure_db()
    courses = [
        student_course_view(c, user["_id"])
        for c in db[COURSES].find({"enrolledStudents": user["_id"]}).sort("createdAt", -1)
    ]
    return serialize_list(populate_users(db, courses, "faculty"))


@app.get("/student/courses/{course_id}")
def student_course(course_id: str, user=Depends(require_roles("student"))):
    db = ensure_db()
    course = student_course_view(enrolled_course(db, user, course_id), user["_id"])
    return serialize_doc(populate_users(db, [course], "faculty")[0])


@app.post("/student/courses/{course_id}/assignments/{assignment_id}/submit")
async def submit_assignment(
    course_id: str,
    assignment_id: str,
    text: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    user=Depends(require_roles("student")),
):
    db = ensure_db()
    course = enrolled_course(db, user, course_id)
    assignment = find_sub(course.get("assignments"), assignment_id, "Assignment")
    if any(s.get("student") == user["_id"] for s in assignment.get("submissions", [])):
        raise HTTPException(status_code=400, detail="Assignment already submitted")
    if now_utc() > assignment["dueDate"]:
        raise HTTPException(status_code=400, detail="Assignment submission deadline has passed")
    blob = await read_upload(file)
    if blob is None and not (text and text.strip()):
        raise HTTPException(status_code=400, detail="Submission must include a file or text")
    submission = Submission(student=user["_id"], files=[blob] if blob else [], text=text)
    i = index_of(course["assignments"], assignment)
    result = db[COURSES].update_one(
        {
            "_id": course["_id"],
            f"assignments.{i}._id": assignment["_id"],
            f"assignments.{i}.submissions.student": {"$ne": user["_id"]},
        },
        {"$push": {f"assignments.{i}.submissions": submission.model_dump(by_alias=True)}},
    )
    if result.modified_count == 0:
        raise HTTPException(status_code=400, detail="Assignment already submitted")
    log_activity(
        db, "assignment_submitted", f"Assignment \"{assignment['title']}\" submitted by {user['name']}",
        user["_id"], "Course", course["_id"], {"assignmentId": str(assignment["_id"])},
    )
    return {"message": "Assignment submitted successfully"}


@app.get("/student/events")
def student_events(user=Depends(require_roles("student"))):
    db = ensure_db()
    events = db[EVENTS].find(visibility.public_event_filter()).sort("date", 1)
    return [event_view(db, e, user) for e in events]


@app.post("/student/events/{event_id}/register")
def register_for_event(event_id: str, user=Depends(require_roles("student"))):
    db = ensure_db()
    event = get_event_or_404(db, event_id)
    try:
        register_student(db, event, user)
    except RegistrationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    log_activity(
        db, "event_registered", f"Student {user['name']} registered for event \"{event['title']}\"",
        user["_id"], "Event", event["_id"], {"eventTitle": event["title"]},
    )
    return {"message": "Successfully registered for event"}


@app.delete("/student/events/{event_id}/register")
def unregister_from_event(event_id: str, user=Depends(require_roles("student"))):
    db = ensure_db()
    event = get_event_or_404(db, event_id)
    try:
        unregister_student(db, event, user)
    except RegistrationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    log_activity(
        db, "event_unregistered", f"Student {user['name']} left event \"{event['title']}\"",
        user["_id"], "Event", event["_id"],
    )
    return {"message": "Registration cancelled"}


def _own_attendance(course: Dict[str, Any], student_id: ObjectId):
    for record in course.get("attendance", []):
        for entry in record.get("students", []):
            if entry.get("student") == student_id:
                yield record, entry


@app.get("/student/attendance")
def student_attendance(user=Depends(require_roles("student"))):
    db = ensure_db()
    rows = []
    for course in db[COURSES].find({"enrolledStudents": user["_id"]}, {"title": 1, "code": 1, "attendance": 1}):
        for record, entry in _own_attendance(course, user["_id"]):
            rows.append({
                "courseTitle": course["title"],
                "courseCode": course["code"],
                "date": record["date"],
                "topic": record.get("topic", ""),
                "status": entry["status"],
            })
    rows.sort(key=lambda r: r["date"], reverse=True)
    return serialize_list(rows)


@app.get("/student/insights")
def student_insights(user=Depends(require_roles("student"))):
    db = ensure_db()
    courses = list(db[COURSES].find(
        {"enrolledStudents": user["_id"]}, {"title": 1, "code": 1, "assignments": 1, "attendance": 1}
    ))
    insights = {
        "totalCourses": len(courses),
        "totalAssignments": 0,
        "submittedAssignments": 0,
        "gradedAssignments": 0,
        "averageGrade": 0,
        "attendancePercentage": 0,
        "courseWiseData": [],
    }
    total_marks = 0
    total_records = 0
    total_present = 0
    for course in courses:
        data = {"courseTitle": course["title"], "courseCode": course["code"], "assignments": 0,
                "submitted": 0, "graded": 0, "averageGrade": 0, "attendancePercentage": 0}
        marks = 0
        for assignment in course.get("assignments", []):
            data["assignments"] += 1
            mine = next((s for s in assignment.get("submissions", []) if s.get("student") == user["_id"]), None)
            if mine:
                data["submitted"] += 1
                if mine.get("isGraded"):
                    data["graded"] += 1
                    marks += mine.get("marks", 0)
        if data["graded"]:
            data["averageGrade"] = marks / data["graded"]
        entries = [entry for _, entry in _own_attendance(course, user["_id"])]
        present = sum(1 for e in entries if e.get("status") == "present")
        if entries:
            data["attendancePercentage"] = present / len(entries) * 100

        insights["totalAssignments"] += data["assignments"]
        insights["submittedAssignments"] += data["submitted"]
        insights["gradedAssignments"] += data["graded"]
        total_marks += marks
        total_records += len(entries)
        total_present += present
        insights["courseWiseData"].append(data)

    if insights["gradedAssignments"]:
        insights["averageGrade"] = total_marks / insights["gradedAssignments"]
    if total_records:
        insights["attendancePercentage"] = total_present / total_records * 100
    return insights


@app.get("/student/placements")
def student_placements(year: Optional[int] = None, user=Depends(require_roles("student"))):
    db = ensure_db()
    query: Dict[str, Any] = {"department": user["department"]}
    if year:
        query["yearOfPlacement"] = year
    placements = db[PLACEMENTS].find(query).sort([("yearOfPlacement", -1), ("createdAt", -1)])
    return serialize_list(list(placements))


# -------------------- Notifications -------------------- #

def notification_view(db, notification: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    notification = dict(notification)
    read_by = notification.get("readBy", [])
    notification["isRead"] = user["_id"] in read_by
    if user["role"] == "admin":
        notification["readCount"] = len(read_by)
    else:
        notification.pop("readBy", None)
    populate_users(db, [notification], "sender")
    return serialize_doc(notification)


def readable_notification(db, user, notification_id: str) -> Dict[str, Any]:
    notification = db[NOTIFICATIONS].find_one({"_id": oid(notification_id)})
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    if not visibility.can_view_notification(user, notification):
        raise HTTPException(status_code=403, detail="Access denied")
    return notification


@app.get("/notifications")
def list_notifications(limit: int = Query(50, ge=1, le=200), user=Depends(get_current_user)):
    db = ensure_db()
    query = visibility.notification_filter(user)
    if query is None:
        raise HTTPException(status_code=403, detail="Access denied")
    docs = db[NOTIFICATIONS].find(query).sort("createdAt", -1).limit(limit)
    return [notification_view(db, n, user) for n in docs]


@app.get("/notifications/unread-count")
def notifications_unread_count(user=Depends(get_current_user)):
    db = ensure_db()
    return {"unreadCount": visibility.unread_count(db, user)}


@app.patch("/notifications/mark-all-read")
def notifications_mark_all_read(user=Depends(get_current_user)):
    db = ensure_db()
    updated = visibility.mark_all_read(db, user)
    return {"message": "All notifications marked as read", "updated": updated}


@app.get("/notifications/{notification_id}")
def get_notification(notification_id: str, user=Depends(get_current_user)):
    db = ensure_db()
    return notification_view(db, readable_notification(db, user, notification_id), user)


@app.patch("/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, user=Depends(get_current_user)):
    db = ensure_db()
    notification = readable_notification(db, user, notification_id)
    changed = visibility.mark_read(db, user, notification["_id"])
    return {"message": "Notification marked as read", "updated": changed}


@app.get("/notifications/{notification_id}/attachments/{attachment_id}/download")
def download_notification_attachment(notification_id: str, attachment_id: str, user=Depends(get_current_user)):
    db = ensure_db()
    notification = readable_notification(db, user, notification_id)
    return file_response(find_sub(notification.get("attachments"), attachment_id, "Attachment"))


# -------------------- Placements -------------------- #

class PlacementPayload(Payload):
    student_id: str = Field(..., min_length=1)
    student_name: Optional[str] = None
    company_name: str = Field(..., min_length=1)
    package: float = Field(..., gt=0, allow_inf_nan=False)
    year_of_placement: Optional[int] = None
    department: Optional[str] = None
    job_role: Optional[str] = None
    placement_type: Optional[Literal["campus", "off-campus"]] = None


class PlacementUpdate(Payload):
    student_name: Optional[str] = None
    company_name: Optional[str] = None
    package: Optional[float] = Field(None, gt=0, allow_inf_nan=False)
    department: Optional[str] = None
    job_role: Optional[str] = None
    placement_type: Optional[Literal["campus", "off-campus"]] = None


@app.get("/placements/stats")
def placement_stats(year: Optional[int] = None, department: Optional[str] = None, user=Depends(get_current_user)):
    db = ensure_db()
    match: Dict[str, Any] = {}
    if year:
        match["yearOfPlacement"] = year
    if department and department != "all":
        match["department"] = department
    yearly = db[PLACEMENTS].aggregate([
        {"$match": match},
        {"$group": {
            "_id": "$yearOfPlacement",
            "totalPlacements": {"$sum": 1},
            "averagePackage": {"$avg": "$package"},
            "highestPackage": {"$max": "$package"},
            "lowestPackage": {"$min": "$package"},
            "companies": {"$addToSet": "$companyName"},
        }},
        {"$sort": {"_id": -1}},
    ])
    by_department = db[PLACEMENTS].aggregate([
        {"$match": match},
        {"$group": {
            "_id": "$department",
            "totalPlacements": {"$sum": 1},
            "averagePackage": {"$avg": "$package"},
        }},
        {"$sort": {"totalPlacements": -1}},
    ])
    return {
        "yearlyStats": [{"year": s.pop("_id"), **s} for s in yearly],
        "departmentStats": [{"department": s.pop("_id"), **s} for s in by_department],
    }


@app.get("/placements")
def list_placements(
    year: Optional[int] = None,
    department: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    user=Depends(get_current_user),
):
    db = ensure_db()
    query: Dict[str, Any] = {}
    if year:
        query["yearOfPlacement"] = year
    if department and department != "all":
        query["department"] = department
    total = db[PLACEMENTS].count_documents(query)
    placements = (
        db[PLACEMENTS].find(query)
        .sort([("yearOfPlacement", -1), ("createdAt", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {
        "placements": serialize_list(list(placements)),
        "totalPages": (total + limit - 1) // limit,
        "currentPage": page,
        "total": total,
    }


@app.post("/admin/placements", status_code=201)
def add_placement(payload: PlacementPayload, user=Depends(require_roles("admin"))):
    db = ensure_db()
    fields = payload.model_dump(by_alias=True)
    if not fields.get("studentName"):
        student = db[USERS].find_one({"userId": payload.student_id.strip(), "role": "student"}, {"name": 1})
        if student:
            fields["studentName"] = student["name"]
    try:
        placement = build_placement(db, fields, user["_id"])
    except UnknownStudent:
        raise HTTPException(status_code=404, detail=f"Student with ID {payload.student_id} not found")
    except RowError as e:
        raise HTTPException(status_code=400, detail=str(e))
    outcome = upsert_placement(db, placement)
    doc = db[PLACEMENTS].find_one(
        {"studentId": placement.student_id, "yearOfPlacement": placement.year_of_placement}
    )
    log_activity(
        db, "placement_added" if outcome == "inserted" else "placement_updated",
        f"Placement {outcome} for {placement.student_name} at {placement.company_name}", user["_id"],
        "Placement", doc["_id"], {"studentId": placement.student_id, "year": placement.year_of_placement},
    )
    return {"message": f"Placement {outcome} successfully", "outcome": outcome, "placement": serialize_doc(doc)}


@app.put("/admin/placements/{placement_id}")
def update_placement(placement_id: str, payload: PlacementUpdate, user=Depends(require_roles("admin"))):
    db = ensure_db()
    changes = payload.model_dump(by_alias=True, exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    changes["updatedAt"] = now_utc()
    placement = db[PLACEMENTS].find_one_and_update(
        {"_id": oid(placement_id)}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if not placement:
        raise HTTPException(status_code=404, detail="Placement not found")
    log_activity(
        db, "placement_updated", f"Placement record updated for {placement['studentId']}", user["_id"],
        "Placement", placement["_id"],
    )
    return {"message": "Placement updated successfully", "placement": serialize_doc(placement)}


@app.delete("/admin/placements/{placement_id}")
def delete_placement(placement_id: str, user=Depends(require_roles("admin"))):
    db = ensure_db()
    placement = db[PLACEMENTS].find_one_and_delete({"_id": oid(placement_id)})
    if not placement:
        raise HTTPException(status_code=404, detail="Placement not found")
    log_activity(
        db, "placement_deleted", f"Placement record deleted for {placement['studentId']}", user["_id"],
        "Placement", placement["_id"],
    )
    return {"message": "Placement deleted successfully"}


@app.post("/admin/placements/upload")
async def upload_placements(file: UploadFile = File(...), user=Depends(require_roles("admin"))):
    db = ensure_db()
    if not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")
    _, ext = os.path.splitext(file.filename.lower())
    if ext not in (".xlsx", ".xls", ".csv"):
        raise HTTPException(status_code=400, detail="Upload an .xlsx, .xls or .csv file")
    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File upload error: file too large")
    try:
        rows = read_placement_rows(content, file.filename)
    except SpreadsheetError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not rows:
        raise HTTPException(status_code=400, detail="Spreadsheet is empty")
    result = import_placements(db, rows, user["_id"])
    log_activity(
        db, "placements_uploaded",
        f"Bulk placement upload: {result.inserted} inserted, {result.updated} updated, {result.failed} failed",
        user["_id"], "Placement", None, {"inserted": result.inserted, "updated": result.updated,
                                         "failed": result.failed},
    )
    return {"message": "Placement upload completed", "results": result.as_dict()}


@app.get("/admin/students/{student_id}")
def lookup_student(student_id: str, user=Depends(require_roles("admin"))):
    db = ensure_db()
    student = db[USERS].find_one({"userId": student_id.strip(), "role": "student"}, {"password": 0})
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    latest = db[PLACEMENTS].find_one({"studentId": student["userId"]}, sort=[("yearOfPlacement", -1)])
    data = serialize_doc(student)
    if latest:
        data["yearOfPlacement"] = latest["yearOfPlacement"]
    return data


# -------------------- Admin: users -------------------- #

class AdminUserCreate(Payload):
    name: str = Field(..., min_length=2)
    email: EmailStr
    role: Literal["admin", "faculty", "student"]
    department: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6)


class AdminUserUpdate(Payload):
    name: Optional[str] = Field(None, min_length=2)
    email: Optional[EmailStr] = None
    department: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    is_active: Optional[bool] = None


def get_user_or_404(db, user_id: str) -> Dict[str, Any]:
    user = db[USERS].find_one({"_id": oid(user_id)})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def default_password(user_id: str) -> str:
    return f"{user_id}@{now_utc().year}"


@app.get("/admin/users")
def list_users(
    role: Optional[str] = None,
    department: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=200),
    user=Depends(require_roles("admin")),
):
    db = ensure_db()
    query: Dict[str, Any] = {}
    if role and role != "all":
        query["role"] = role
    if department and department != "all":
        query["department"] = department
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}, {"userId": pattern}]
    total = db[USERS].count_documents(query)
    users = db[USERS].find(query, {"password": 0}).sort("createdAt", -1).skip((page - 1) * limit).limit(limit)
    return {
        "users": serialize_list(list(users)),
        "totalPages": (total + limit - 1) // limit,
        "currentPage": page,
        "total": total,
    }


@app.post("/admin/users", status_code=201)
def admin_create_user(payload: AdminUserCreate, user=Depends(require_roles("admin"))):
    db = ensure_db()
    password = payload.password
    created = None
    # the default password embeds the userId, so a collision needs a fresh id and password
    for attempt in range(1 if password else MAX_ID_ATTEMPTS):
        user_id = None
        if not payload.password:
            user_id = generate_user_id(db, payload.role)
            password = default_password(user_id)
        try:
            created = create_user(
                db, payload.name, payload.email, password, payload.role, payload.department, payload.phone,
                user_id=user_id,
            )
            break
        except EmailAlreadyRegistered:
            raise HTTPException(status_code=400, detail="User with this email already exists")
        except UserIdUnavailable:
            logger.warning("userId %s taken at insert (attempt %d), retrying", user_id, attempt + 1)
    if created is None:
        raise HTTPException(status_code=400, detail="User ID generation failed. Please try again.")
    log_activity(
        db, "user_created", f"User {created['name']} ({created['userId']}) created by admin", user["_id"], "User",
        created["_id"], {"role": created["role"], "department": created.get("department")},
    )
    response = {"message": "User created successfully", "user": user_payload(created)}
    if not payload.password:
        response["defaultPassword"] = password
    return response


@app.put("/admin/users/{user_id}")
def admin_update_user(user_id: str, payload: AdminUserUpdate, user=Depends(require_roles("admin"))):
    db = ensure_db()
    target = get_user_or_404(db, user_id)
    changes = payload.model_dump(by_alias=True, exclude_none=True)
    if "email" in changes:
        changes["email"] = normalize_email(changes["email"])
    if "department" in changes:
        changes["department"] = changes["department"].strip() or None
        if changes["department"] is None and target["role"] != "admin":
            raise HTTPException(status_code=400, detail="Department is required for faculty and students")
    if changes.get("isActive") is False and target["_id"] == user["_id"]:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    changes["updatedAt"] = now_utc()
    try:
        db[USERS].update_one({"_id": target["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already exists")
    status_changed = "isActive" in changes and changes["isActive"] != target.get("isActive", True)
    log_activity(
        db, "user_status_updated" if status_changed else "user_updated",
        f"User {target['name']} updated by admin", user["_id"], "User", target["_id"],
        {k: v for k, v in changes.items() if k != "updatedAt"},
    )
    updated = db[USERS].find_one({"_id": target["_id"]})
    return {"message": "User updated successfully", "user": user_payload(updated)}


@app.patch("/admin/users/{user_id}/toggle-status")
def admin_toggle_user(user_id: str, user=Depends(require_roles("admin"))):
    db = ensure_db()
    target = get_user_or_404(db, user_id)
    if target["_id"] == user["_id"]:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    is_active = not target.get("isActive", True)
    db[USERS].update_one({"_id": target["_id"]}, {"$set": {"isActive": is_active, "updatedAt": now_utc()}})
    log_activity(
        db, "user_status_updated",
        f"User {target['name']} {'activated' if is_active else 'deactivated'} by admin",
        user["_id"], "User", target["_id"], {"isActive": is_active},
    )
    return {"message": "User status updated", "isActive": is_active}


@app.delete("/admin/users/{user_id}")
def admin_delete_user(user_id: str, user=Depends(require_roles("admin"))):
    db = ensure_db()
    target = get_user_or_404(db, user_id)
    if target["_id"] == user["_id"]:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    report = delete_user(db, target)
    log_activity(
        db, "user_deleted", f"User {target['name']} deleted by admin", user["_id"], "User", target["_id"],
        {"role": target["role"], "department": target.get("department"), "cleanupFailed": list(report.failed)},
    )
    message = "User deleted successfully"
    if not report.ok:
        message = f"User deleted, but {len(report.failed)} related record group(s) could not be cleaned up"
    return {"message": message, "cleanup": report.as_dict()}


@app.post("/admin/users/{user_id}/reset-password")
def admin_reset_password(user_id: str, user=Depends(require_roles("admin"))):
    db = ensure_db()
    target = get_user_or_404(db, user_id)
    new_password = default_password(target["userId"])
    db[USERS].update_one(
        {"_id": target["_id"]}, {"$set": {"password": hash_password(new_password), "updatedAt": now_utc()}}
    )
    log_activity(
        db, "password_reset", f"Password reset for user {target['name']} by admin", user["_id"], "User",
        target["_id"],
    )
    return {"message": "Password reset successfully", "newPassword": new_password}


# -------------------- Admin: courses & events -------------------- #

class EventStatusPayload(Payload):
    status: Literal["approved", "rejected"]
    rejection_reason: Optional[str] = None


class CapacityPayload(Payload):
    max_participants: int


@app.get("/admin/courses")
def admin_courses(user=Depends(require_roles("admin"))):
    db = ensure_db()
    courses = list(db[COURSES].find().sort("createdAt", -1))
    return serialize_list(populate_users(db, courses, "faculty", "enrolledStudents"))


@app.get("/admin/courses/{course_id}")
def admin_course(course_id: str, user=Depends(require_roles("admin"))):
    db = ensure_db()
    course = db[COURSES].find_one({"_id": oid(course_id)})
    if not course:
        raise HTTPException(status_code=404, detail="Course not found")
    populate_users(
        db, [course], "faculty", "enrolledStudents", "assignments.submissions.student",
        "attendance.students.student", "attendance.markedBy",
    )
    return serialize_doc(course)


@app.get("/admin/events")
def admin_events(user=Depends(require_roles("admin"))):
    db = ensure_db()
    return [event_view(db, e, user) for e in db[EVENTS].find().sort("createdAt", -1)]


@app.get("/admin/pending-events")
def admin_pending_events(user=Depends(require_roles("admin"))):
    db = ensure_db()
    return [event_view(db, e, user) for e in db[EVENTS].find({"status": "pending"}).sort("createdAt", 1)]


@app.patch("/admin/events/{event_id}/status")
def admin_event_status(event_id: str, payload: EventStatusPayload, user=Depends(require_roles("admin"))):
    db = ensure_db()
    event = get_event_or_404(db, event_id)
    changes: Dict[str, Any] = {"status": payload.status, "updatedAt": now_utc()}
    if payload.status == "approved":
        changes.update({"approvedBy": user["_id"], "approvedAt": now_utc(), "rejectionReason": None})
    else:
        changes.update({"rejectionReason": payload.rejection_reason, "approvedBy": None, "approvedAt": None})
    db[EVENTS].update_one({"_id": event["_id"]}, {"$set": changes})
    log_activity(
        db, f"event_{payload.status}", f"Event \"{event['title']}\" {payload.status} by admin", user["_id"],
        "Event", event["_id"], {"status": payload.status, "rejectionReason": payload.rejection_reason},
    )
    return {
        "message": f"Event {payload.status} successfully",
        "event": event_view(db, db[EVENTS].find_one({"_id": event["_id"]}), user),
    }


@app.patch("/admin/events/{event_id}/capacity")
def admin_event_capacity(event_id: str, payload: CapacityPayload, user=Depends(require_roles("admin"))):
    db = ensure_db()
    event = get_event_or_404(db, event_id)
    try:
        update_capacity(db, event, payload.max_participants)
    except RegistrationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    log_activity(
        db, "event_capacity_updated", f"Capacity of \"{event['title']}\" set to {payload.max_participants}",
        user["_id"], "Event", event["_id"],
        {"from": event.get("maxParticipants", 0), "to": payload.max_participants},
    )
    return {
        "message": "Event capacity updated successfully",
        "event": event_view(db, db[EVENTS].find_one({"_id": event["_id"]}), user),
    }


@app.delete("/admin/events/{event_id}")
def admin_delete_event(event_id: str, user=Depends(require_roles("admin"))):
    db = ensure_db()
    event = db[EVENTS].find_one_and_delete({"_id": oid(event_id)})
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    log_activity(
        db, "event_deleted", f"Event \"{event['title']}\" deleted by admin", user["_id"], "Event", event["_id"]
    )
    return {"message": "Event deleted successfully"}


# -------------------- Admin: notifications -------------------- #

@app.post("/admin/broadcast", status_code=201)
async def broadcast(
    title: str = Form(...),
    message: str = Form(...),
    notification_type: str = Form("general", alias="type"),
    recipients: str = Form("all"),
    priority: str = Form("medium"),
    department: Optional[str] = Form(None),
    attachments: Optional[List[UploadFile]] = File(None),
    user=Depends(require_roles("admin")),
):
    db = ensure_db()
    notification = Notification(
        title=title.strip(),
        message=message.strip(),
        type=notification_type,
        sender=user["_id"],
        recipients=recipients,
        department=department.strip() if department else None,
        priority=priority,
        attachments=[await read_upload(u) for u in (attachments or []) if u.filename],
    )
    notification_id = insert_document(db, NOTIFICATIONS, notification)
    log_activity(
        db, "notification_broadcast", f"Notification \"{notification.title}\" broadcast to {notification.recipients}",
        user["_id"], "Notification", notification_id,
        {"recipients": notification.recipients, "department": notification.department},
    )
    doc = db[NOTIFICATIONS].find_one({"_id": notification_id})
    return {"message": "Notification broadcast successfully", "notification": notification_view(db, doc, user)}


@app.get("/admin/notifications")
def admin_notifications(user=Depends(require_roles("admin"))):
    db = ensure_db()
    return [notification_view(db, n, user) for n in db[NOTIFICATIONS].find().sort("createdAt", -1)]


class NotificationUpdate(Payload):
    title: Optional[str] = Field(None, min_length=1)
    message: Optional[str] = Field(None, min_length=1)
    type: Optional[str] = None
    recipients: Optional[str] = None
    department: Optional[str] = None
    priority: Optional[str] = None
    is_active: Optional[bool] = None


NOTIFICATION_EDITABLE = {"title", "message", "type", "recipients", "department", "priority", "is_active"}


@app.put("/admin/notifications/{notification_id}")
def admin_update_notification(notification_id: str, payload: NotificationUpdate,
                              user=Depends(require_roles("admin"))):
    db = ensure_db()
    notification = db[NOTIFICATIONS].find_one({"_id": oid(notification_id)})
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    changes = payload.model_dump(by_alias=True, exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    for key in ("title", "message", "department"):
        if key in changes:
            changes[key] = changes[key].strip()
    # audience rules are re-checked on the merged document
    merged = Notification.model_validate({**notification, **changes})
    updates = merged.model_dump(by_alias=True, include=NOTIFICATION_EDITABLE)
    updates["updatedAt"] = now_utc()
    db[NOTIFICATIONS].update_one({"_id": notification["_id"]}, {"$set": updates})
    log_activity(
        db, "notification_updated", f"Notification \"{merged.title}\" updated", user["_id"], "Notification",
        notification["_id"], changes,
    )
    doc = db[NOTIFICATIONS].find_one({"_id": notification["_id"]})
    return {"message": "Notification updated successfully", "notification": notification_view(db, doc, user)}


@app.delete("/admin/notifications/{notification_id}")
def admin_delete_notification(notification_id: str, user=Depends(require_roles("admin"))):
    db = ensure_db()
    notification = db[NOTIFICATIONS].find_one_and_delete({"_id": oid(notification_id)})
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    log_activity(
        db, "notification_deleted", f"Notification \"{notification['title']}\" deleted", user["_id"],
        "Notification", notification["_id"],
    )
    return {"message": "Notification deleted successfully"}


# -------------------- Admin: dashboard -------------------- #

@app.get("/admin/dashboard-stats")
def dashboard_stats(user=Depends(require_roles("admin"))):
    db = ensure_db()
    return {
        "totalUsers": db[USERS].count_documents({}),
        "totalStudents": db[USERS].count_documents({"role": "student", "isActive": True}),
        "totalFaculty": db[USERS].count_documents({"role": "faculty", "isActive": True}),
        "totalCourses": db[COURSES].count_documents({}),
        "totalEvents": db[EVENTS].count_documents({}),
        "pendingEvents": db[EVENTS].count_documents({"status": "pending"}),
        "totalPlacements": db[PLACEMENTS].count_documents({}),
        "totalNotifications": db[NOTIFICATIONS].count_documents({"isActive": True}),
        "recentActivities": serialize_list(recent_activities(db, limit=10)),
    }


@app.get("/admin/recent-activities")
def admin_recent_activities(limit: int = Query(10, ge=1, le=100), user=Depends(require_roles("admin"))):
    db = ensure_db()
    return serialize_list(recent_activities(db, limit=limit))


@app.get("/admin/activities")
def admin_activities(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=200),
                     user=Depends(require_roles("admin"))):
    db = ensure_db()
    total = db[ACTIVITIES].count_documents({})
    return {
        "activities": serialize_list(recent_activities(db, limit=limit, skip=(page - 1) * limit)),
        "totalPages": (total + limit - 1) // limit,
        "currentPage": page,
        "total": total,
    }


# -------------------- Run -------------------- #

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

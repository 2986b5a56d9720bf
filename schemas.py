"""
Database Schemas for the College Portal

Each Pydantic model below maps to a MongoDB collection (class name lowercased).
Attributes are snake_case in Python and stored camelCase in MongoDB, which is
also the shape the front-end reads. Sub-documents (files, materials,
assignments, submissions, attendance) live inside their parent document.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Role = Literal["admin", "faculty", "student"]
Recipients = Literal["all", "students", "faculty", "department", "student", "admin"]

ACTIVITY_TYPES = (
    "user_registered",
    "user_login",
    "user_created",
    "user_updated",
    "user_deleted",
    "user_status_updated",
    "password_reset",
    "course_created",
    "assignment_submitted",
    "event_created",
    "event_approved",
    "event_rejected",
    "event_status_updated",
    "event_capacity_updated",
    "event_registered",
    "event_unregistered",
    "event_deleted",
    "notification_sent",
    "notification_broadcast",
    "notification_updated",
    "notification_deleted",
    "placement_added",
    "placement_updated",
    "placement_deleted",
    "placements_uploaded",
)


class Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )


def _now() -> datetime:
    return datetime.utcnow()


# Stored files
class FileBlob(Document):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    filename: str
    data: bytes
    content_type: str = "application/octet-stream"
    size: int = 0


# Core identities
class User(Document):
    name: str
    email: str
    password: str = Field(..., description="bcrypt hash, never the plain password")
    role: Role
    department: Optional[str] = None
    user_id: str
    is_active: bool = True
    phone: Optional[str] = None
    profile_image: str = ""
    last_login: Optional[datetime] = None

    @model_validator(mode="after")
    def department_required_unless_admin(self):
        if self.role != "admin" and not self.department:
            raise ValueError("Department is required for faculty and students")
        return self


# Courses and their owned records
class Material(Document):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    title: str
    description: Optional[str] = None
    type: Literal["document", "video", "link"]
    file: Optional[FileBlob] = None
    url: Optional[str] = None
    uploaded_at: datetime = Field(default_factory=_now)


class Submission(Document):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    student: ObjectId
    submitted_at: datetime = Field(default_factory=_now)
    files: List[FileBlob] = []
    text: Optional[str] = None
    marks: int = 0
    feedback: Optional[str] = None
    is_graded: bool = False


class Assignment(Document):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    title: str
    description: str
    due_date: datetime
    max_marks: int = Field(..., gt=0)
    attachments: List[FileBlob] = []
    submissions: List[Submission] = []
    created_at: datetime = Field(default_factory=_now)


class AttendanceEntry(Document):
    student: ObjectId
    status: Literal["present", "absent", "late"] = "absent"
    marked_at: datetime = Field(default_factory=_now)


class AttendanceRecord(Document):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    date: datetime
    topic: str = ""
    students: List[AttendanceEntry] = []
    marked_by: ObjectId


class Course(Document):
    title: str
    code: str
    description: str
    department: str
    faculty: ObjectId
    semester: int = Field(..., ge=1, le=12)
    credits: int = Field(..., ge=0)
    enrolled_students: List[ObjectId] = []
    materials: List[Material] = []
    assignments: List[Assignment] = []
    attendance: List[AttendanceRecord] = []
    is_active: bool = True


# Events
class Registration(Document):
    student: ObjectId
    registered_at: datetime = Field(default_factory=_now)


class Event(Document):
    title: str
    description: str
    date: datetime
    time: str
    venue: str
    organizer: ObjectId
    department: str
    max_participants: int = Field(0, ge=0, description="0 means unlimited")
    registered_students: List[Registration] = []
    status: Literal["pending", "approved", "rejected"] = "pending"
    approved_by: Optional[ObjectId] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    image: Optional[FileBlob] = None
    is_active: bool = True


# Communications
class Notification(Document):
    title: str
    message: str
    type: Literal["general", "academic", "event", "placement", "alert"] = "general"
    sender: ObjectId
    recipients: Recipients = "all"
    department: Optional[str] = None
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    attachments: List[FileBlob] = []
    read_by: List[ObjectId] = []
    is_active: bool = True

    @model_validator(mode="after")
    def normalize_audience(self):
        if self.recipients == "student":
            self.recipients = "students"
        if self.recipients == "department":
            if not self.department:
                raise ValueError("Department is required when recipients is 'department'")
        else:
            self.department = None
        return self


# Placements
class Placement(Document):
    student_id: str = Field(..., description="Natural key: the student's userId")
    student_name: str
    company_name: str
    package: float = Field(..., gt=0, allow_inf_nan=False)
    year_of_placement: int
    department: str
    job_role: Optional[str] = None
    placement_type: Literal["campus", "off-campus"] = "campus"
    added_by: ObjectId


# Audit
class Activity(Document):
    type: Literal[ACTIVITY_TYPES]
    description: str
    user: ObjectId
    related_model: Optional[Literal["User", "Course", "Event", "Notification", "Placement"]] = None
    related_id: Optional[ObjectId] = None
    metadata: Dict[str, Any] = {}

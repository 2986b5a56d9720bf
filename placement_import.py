"""
Placement spreadsheet import.

Rows arrive with whatever headers the sheet author chose; FIELD_ALIASES maps
each canonical field to the headers accepted for it, tried in order. Each row
is validated and upserted on its own, keyed by (studentId, yearOfPlacement),
so a bad row is reported and the rest of the sheet still lands.
"""

import io
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import PLACEMENTS, USERS, insert_document, now_utc
from schemas import Placement

logger = logging.getLogger(__name__)

FIELD_ALIASES = {
    "studentId": ["StudentID", "studentId", "Student ID", "student_id", "StudentId"],
    "studentName": ["StudentName", "studentName", "Student Name", "student_name", "Name"],
    "companyName": ["CompanyName", "companyName", "Company Name", "company_name", "Company"],
    "package": ["Package", "package", "Package (LPA)", "packageAmount", "CTC"],
    "yearOfPlacement": ["YearOfPlacement", "yearOfPlacement", "Year of Placement", "Year", "year"],
    "department": ["Department", "department", "Dept"],
    "jobRole": ["JobRole", "jobRole", "Job Role", "Role", "Designation"],
    "placementType": ["PlacementType", "placementType", "Placement Type", "Type"],
}
REQUIRED_FIELDS = ("studentId", "studentName", "companyName", "package")
PLACEMENT_TYPES = ("campus", "off-campus")
MIN_YEAR = 2000


class SpreadsheetError(ValueError):
    pass


@dataclass
class ImportResult:
    inserted: int = 0
    updated: int = 0
    errors: List[str] = field(default_factory=list)
    invalid_students: List[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "successful": self.inserted + self.updated,
            "failed": self.failed,
            "errors": self.errors,
            "invalidStudents": self.invalid_students,
        }


class RowError(Exception):
    pass


class UnknownStudent(Exception):
    pass


def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _text(value: Any) -> str:
    # spreadsheet ids often come back as floats (1.0)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def resolve_field(row: Dict[str, Any], canonical: str) -> Optional[Any]:
    """First non-blank value among the accepted headers for `canonical`."""
    for header in FIELD_ALIASES[canonical]:
        if header in row and not _blank(row[header]):
            return row[header]
    return None


def normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {name: resolve_field(row, name) for name in FIELD_ALIASES}


def read_placement_rows(content: bytes, filename: str) -> List[Dict[str, Any]]:
    if not content:
        raise SpreadsheetError("Uploaded file is empty")
    try:
        if filename.lower().endswith(".csv"):
            df = pd.read_csv(io.BytesIO(content))
        else:
            df = pd.read_excel(io.BytesIO(content), engine="openpyxl")
    except Exception as exc:
        raise SpreadsheetError(f"Could not read spreadsheet: {exc}") from exc
    df.columns = [str(c).strip() for c in df.columns]
    return df.to_dict(orient="records")


def _parse_package(value: Any) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise RowError(f'Invalid package amount "{value}"')
    if not math.isfinite(amount) or amount <= 0:
        raise RowError(f'Invalid package amount "{value}"')
    return amount


def _parse_year(value: Any, current_year: int) -> int:
    if value is None:
        return current_year
    try:
        year = int(float(value))
    except (TypeError, ValueError):
        raise RowError(f'Invalid year "{value}"')
    if year < MIN_YEAR or year > current_year + 5:
        raise RowError(f'Invalid year "{value}"')
    return year


def _parse_type(value: Any) -> str:
    if value is None:
        return "campus"
    kind = _text(value).lower().replace(" ", "-")
    if kind not in PLACEMENT_TYPES:
        raise RowError(f'Invalid placement type "{value}"')
    return kind


def upsert_placement(db, placement: Placement) -> str:
    """Insert or update the placement for (studentId, yearOfPlacement); returns which."""
    key = {"studentId": placement.student_id, "yearOfPlacement": placement.year_of_placement}
    changes = placement.model_dump(by_alias=True, exclude={"added_by"})
    if db[PLACEMENTS].find_one(key, {"_id": 1}) is None:
        try:
            insert_document(db, PLACEMENTS, placement)
            return "inserted"
        except DuplicateKeyError:
            logger.info("Placement %s/%s inserted concurrently, updating instead", *key.values())
    changes["updatedAt"] = now_utc()
    db[PLACEMENTS].update_one(key, {"$set": changes})
    return "updated"


def build_placement(db, fields: Dict[str, Any], added_by, current_year: Optional[int] = None) -> Placement:
    """Validate canonical fields against the student record. Raises RowError."""
    current_year = current_year or datetime.utcnow().year
    missing = [name for name in REQUIRED_FIELDS if fields.get(name) is None]
    if missing:
        raise RowError(f"Missing required fields ({', '.join(missing)})")

    student_id = _text(fields["studentId"])
    student = db[USERS].find_one({"userId": student_id, "role": "student"})
    if student is None:
        raise UnknownStudent(student_id)

    department = fields.get("department")
    return Placement(
        student_id=student_id,
        student_name=_text(fields["studentName"]),
        company_name=_text(fields["companyName"]),
        package=_parse_package(fields["package"]),
        year_of_placement=_parse_year(fields.get("yearOfPlacement"), current_year),
        department=_text(department) if department is not None else student.get("department", ""),
        job_role=_text(fields["jobRole"]) if fields.get("jobRole") is not None else None,
        placement_type=_parse_type(fields.get("placementType")),
        added_by=added_by,
    )


def import_placements(db, rows: Iterable[Dict[str, Any]], added_by,
                      current_year: Optional[int] = None) -> ImportResult:
    result = ImportResult()
    for index, row in enumerate(rows):
        row_number = index + 2  # header is spreadsheet row 1
        if all(_blank(value) for value in row.values()):
            continue
        try:
            placement = build_placement(db, normalize_row(row), added_by, current_year)
            outcome = upsert_placement(db, placement)
        except (RowError, ValidationError) as exc:
            result.errors.append(f"Row {row_number}: {exc}")
            continue
        except UnknownStudent as exc:
            student_id = exc.args[0]
            result.invalid_students.append(student_id)
            result.errors.append(f"Row {row_number}: Student with ID {student_id} not found")
            continue
        except PyMongoError as exc:
            logger.exception("Placement row %d failed", row_number)
            result.errors.append(f"Row {row_number}: {exc}")
            continue
        if outcome == "inserted":
            result.inserted += 1
        else:
            result.updated += 1
    logger.info(
        "Placement import: %d inserted, %d updated, %d failed",
        result.inserted, result.updated, result.failed,
    )
    return result

import io
from typing import Any, Dict, List

import pandas as pd

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def to_xlsx(rows: List[Dict[str, Any]], sheet_name: str, columns: List[str]) -> bytes:
    df = pd.DataFrame(rows, columns=columns)
    output = io.BytesIO()
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name=sheet_name)
    return output.getvalue()


def attendance_rows(course: Dict[str, Any], students: Dict[Any, Dict[str, Any]]) -> List[Dict[str, Any]]:
    rows = []
    for record in sorted(course.get("attendance", []), key=lambda r: r["date"]):
        for entry in record.get("students", []):
            student = students.get(entry.get("student"), {})
            rows.append({
                "Date": record["date"].strftime("%Y-%m-%d"),
                "Topic": record.get("topic", ""),
                "StudentName": student.get("name", "Unknown"),
                "StudentID": student.get("userId", "Unknown"),
                "Status": entry.get("status"),
            })
    return rows


ATTENDANCE_COLUMNS = ["Date", "Topic", "StudentName", "StudentID", "Status"]


def registration_rows(event: Dict[str, Any], students: Dict[Any, Dict[str, Any]]) -> List[Dict[str, Any]]:
    rows = []
    for reg in event.get("registeredStudents", []):
        student = students.get(reg.get("student"), {})
        registered_at = reg.get("registeredAt")
        rows.append({
            "StudentName": student.get("name", "Unknown"),
            "StudentID": student.get("userId", "Unknown"),
            "Email": student.get("email", ""),
            "Department": student.get("department", ""),
            "RegisteredAt": registered_at.strftime("%Y-%m-%d %H:%M") if registered_at else "",
        })
    return rows


REGISTRATION_COLUMNS = ["StudentName", "StudentID", "Email", "Department", "RegisteredAt"]

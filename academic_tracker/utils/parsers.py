"""Roster file parsing.

Admins upload class rosters as CSV. The parser normalizes header names
and returns one dictionary per row with the keys used by
`RosterImportService`: `institutional_id`, `first_name`, `last_name`,
`middle_name`, `email`, `course_id`, `year_level_id`, `section` and
`department_course_id`.
"""

import csv
import io
import re
from typing import Dict, List, Optional

_HEADER_ALIASES = {
    "student_id": "institutional_id",
    "teacher_id": "institutional_id",
    "id": "institutional_id",
    "firstname": "first_name",
    "lastname": "last_name",
    "middlename": "middle_name",
    "email_address": "email",
    "course": "course_id",
    "year_level": "year_level_id",
    "department": "department_course_id",
}

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _normalize_header(name: str) -> str:
    key = re.sub(r"[\s\-]+", "_", (name or "").strip().lower())
    return _HEADER_ALIASES.get(key, key)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_roster_csv(b: bytes) -> List[Dict]:
    """Parse a roster CSV into normalized row dictionaries.

    A UTF-8 byte-order mark (Excel exports) is tolerated. Raises
    `ValueError` when the file is not valid UTF-8 or has no id column.
    """
    try:
        text = b.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValueError("roster must be UTF-8 encoded CSV")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        return []
    headers = [_normalize_header(h) for h in reader.fieldnames]
    if "institutional_id" not in headers:
        raise ValueError("roster is missing an id column (student_id, teacher_id or id)")
    out = []
    for raw in reader:
        row = {}
        for original, normalized in zip(reader.fieldnames, headers):
            row[normalized] = _clean(raw.get(original))
        if not any(row.values()):
            # blank line in the spreadsheet export
            continue
        out.append(row)
    return out


def validate_roster_row(row: Dict) -> None:
    """Raise `ValueError` describing the first problem with `row`."""
    ident = row.get("institutional_id")
    if not ident:
        raise ValueError("missing institutional id")
    if not row.get("first_name") or not row.get("last_name"):
        raise ValueError(f"missing name for {ident}")
    email = row.get("email")
    if not email:
        raise ValueError(f"Email is required for {ident}")
    if not EMAIL_RE.match(email):
        raise ValueError(f"Invalid email format for {ident}: {email}")

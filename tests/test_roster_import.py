import pytest

from academic_tracker import models
from academic_tracker.utils.parsers import parse_roster_csv, validate_roster_row

STUDENT = models.UserRole.STUDENT

ROSTER = (
    "\ufeffStudent ID,First Name,Last Name,Email,Course,Year Level,Section\n"
    "2024-0001,Juan,Dela Cruz,juan@example.com,BSIT,1,A\n"
    "2024-0002,Maria,Santos,maria@example.com,BSIT,1,B\n"
    ",,,,,,\n"
    "2024-0003,Pedro,,pedro@example.com,BSIT,1,A\n"
    "2024-0004,Ana,Reyes,not-an-email,BSIT,1,A\n"
    "2024-0001,Juan,Dela Cruz,juan@example.com,BSIT,1,A\n"
).encode("utf-8")


def test_parse_roster_normalizes_headers():
    rows = parse_roster_csv(ROSTER)
    assert len(rows) == 5
    first = rows[0]
    assert first["institutional_id"] == "2024-0001"
    assert first["first_name"] == "Juan"
    assert first["course_id"] == "BSIT"
    assert first["year_level_id"] == "1"
    assert first["section"] == "A"


def test_parse_roster_requires_id_column():
    with pytest.raises(ValueError, match="id column"):
        parse_roster_csv(b"name,email\nJuan,juan@example.com\n")
    with pytest.raises(ValueError, match="UTF-8"):
        parse_roster_csv(b"\xff\xfe\x00bad")
    assert parse_roster_csv(b"") == []


def test_validate_roster_row():
    with pytest.raises(ValueError, match="missing name"):
        validate_roster_row({"institutional_id": "1", "first_name": "A", "email": "a@b.co"})
    with pytest.raises(ValueError, match="Invalid email"):
        validate_roster_row({"institutional_id": "1", "first_name": "A", "last_name": "B", "email": "nope"})


def test_import_creates_skips_and_reports(container):
    result = container.roster_import_service.import_csv(ROSTER, STUDENT)
    assert result["created"] == 2
    assert result["skipped"] == 1
    assert [e["index"] for e in result["errors"]] == [2, 3]
    entry = container.pre_registrations.get("2024-0002", STUDENT)
    assert entry.email == "maria@example.com"
    assert entry.section == "B"
    assert not entry.is_registered

    again = container.roster_import_service.import_csv(ROSTER, STUDENT)
    assert again["created"] == 0
    assert again["skipped"] == 3


def test_dry_run_writes_nothing(container):
    result = container.roster_import_service.import_csv(ROSTER, STUDENT, dry_run=True)
    assert result["created"] == 2
    assert result["dry_run"] is True
    assert container.pre_registrations.list_by_role(STUDENT) == []


def test_existing_account_is_skipped(container, make_user):
    make_user(student_id="2024-0001")
    result = container.roster_import_service.import_csv(ROSTER, STUDENT)
    assert result["created"] == 1
    assert result["skipped"] == 2


def test_teacher_roster(container):
    roster = b"teacher_id,firstname,lastname,email,department\nT-001,Rosa,Lim,rosa@example.com,BSED\n"
    assert container.roster_import_service.import_csv(roster, models.UserRole.TEACHER)["created"] == 1
    entry = container.pre_registrations.get("T-001", models.UserRole.TEACHER)
    assert entry.department_course_id == "BSED"
    assert not container.pre_registrations.exists("T-001", STUDENT)


def test_admin_roster_is_rejected(container):
    with pytest.raises(ValueError):
        container.roster_import_service.import_csv(ROSTER, models.UserRole.ADMIN)

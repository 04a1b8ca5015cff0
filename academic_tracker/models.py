"""SQLModel data models.

Each table corresponds to one collection of the academic tracker's
document store. Ids are opaque strings so records keep the same shape
they have in the hosted document database; cross references are stored
as plain id fields rather than foreign keys.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps.

    SQLite stores no offset, so values are converted to UTC when bound
    and tagged as UTC when loaded. Naive input is taken to be UTC.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utc_column(nullable: bool = False) -> Column:
    return Column(UTCDateTime(timezone=True), nullable=nullable)


class UserRole(str, Enum):
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    ADMIN = "ADMIN"

    @classmethod
    def parse(cls, value: Optional[str]) -> "UserRole":
        """Map a stored role string to a role; unknown values are students."""
        try:
            return cls((value or "").upper())
        except ValueError:
            return cls.STUDENT


class Semester(str, Enum):
    FIRST_SEMESTER = "1st Semester"
    SECOND_SEMESTER = "2nd Semester"
    SUMMER_CLASS = "Summer Class"

    @classmethod
    def parse(cls, value: str) -> "Semester":
        for member in cls:
            if value in (member.value, member.name):
                return member
        raise ValueError(f"Invalid semester: {value}")


class SubjectType(str, Enum):
    """MAJOR subjects are only open to teachers of the same department."""
    MAJOR = "MAJOR"
    MINOR = "MINOR"


class ApplicationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class GradePeriod(str, Enum):
    PRELIM = "PRELIM"
    MIDTERM = "MIDTERM"
    FINAL = "FINAL"

    @property
    def weight(self) -> float:
        return _PERIOD_WEIGHTS[self]


_PERIOD_WEIGHTS = {
    GradePeriod.PRELIM: 0.30,
    GradePeriod.MIDTERM: 0.30,
    GradePeriod.FINAL: 0.40,
}


class GradeStatus(str, Enum):
    INCOMPLETE = "INCOMPLETE"
    FAILING = "FAILING"
    AT_RISK = "AT_RISK"
    PASSING = "PASSING"


class StudentApplicationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class AuditAction(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"


class User(SQLModel, table=True):
    """A signed-up account.

    `id` is the uid issued by the authentication client, so the profile
    row and the credential always share a key. Students carry
    `student_id`, teachers carry `teacher_id` and a department.
    """
    __tablename__ = "users"

    id: str = Field(primary_key=True)
    email: str = Field(index=True, unique=True)
    student_id: Optional[str] = Field(default=None, index=True)
    teacher_id: Optional[str] = Field(default=None, index=True)
    first_name: str = ""
    last_name: str = ""
    middle_name: Optional[str] = None
    role: str = Field(default=UserRole.STUDENT.value, index=True)
    active: bool = True
    course_id: Optional[str] = None
    year_level_id: Optional[str] = None
    section: Optional[str] = None
    department_course_id: Optional[str] = None
    account_source: str = "MANUAL"
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())
    last_login_at: Optional[datetime] = Field(default=None, sa_column=utc_column(nullable=True))

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Credential(SQLModel, table=True):
    """Email/password pair owned by the authentication client."""
    __tablename__ = "auth_credentials"

    uid: str = Field(default_factory=new_id, primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    disabled: bool = False
    password_changed_at: Optional[datetime] = Field(default=None, sa_column=utc_column(nullable=True))
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())


class AcademicPeriod(SQLModel, table=True):
    """A semester of an academic year. At most one row is current."""
    __tablename__ = "academic_periods"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = ""
    semester: str = Semester.FIRST_SEMESTER.value
    academic_year: str = ""
    start_date: Optional[datetime] = Field(default=None, sa_column=utc_column(nullable=True))
    end_date: Optional[datetime] = Field(default=None, sa_column=utc_column(nullable=True))
    is_current: bool = Field(default=False, index=True)
    created_by: str = ""
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())


class Subject(SQLModel, table=True):
    """A subject offered in one academic period."""
    __tablename__ = "subjects"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = ""
    code: str = Field(default="", index=True)
    description: str = ""
    teacher_id: Optional[str] = Field(default=None, index=True)
    teacher_name: Optional[str] = None
    credits: int = 3
    semester: str = Semester.FIRST_SEMESTER.value
    academic_year: str = ""
    academic_period_id: str = Field(default="", index=True)
    active: bool = True
    course_id: str = ""
    year_level_id: str = ""
    max_students: int = 30
    number_of_sections: int = 1
    sections: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    subject_type: str = SubjectType.MAJOR.value
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())


class TeacherApplication(SQLModel, table=True):
    """A teacher's request to be assigned to a subject."""
    __tablename__ = "teacher_applications"

    id: str = Field(default_factory=new_id, primary_key=True)
    teacher_id: str = Field(index=True)
    teacher_name: str = ""
    teacher_email: str = ""
    subject_id: str = Field(index=True)
    subject_name: str = ""
    subject_code: str = ""
    application_reason: str = ""
    status: str = Field(default=ApplicationStatus.PENDING.value, index=True)
    applied_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())
    reviewed_at: Optional[datetime] = Field(default=None, sa_column=utc_column(nullable=True))
    reviewed_by: Optional[str] = None
    admin_comments: Optional[str] = None


class Enrollment(SQLModel, table=True):
    """A student's enrollment in a subject. Unenrolling only clears `active`."""
    __tablename__ = "enrollments"

    id: str = Field(default_factory=new_id, primary_key=True)
    student_id: str = Field(index=True)
    student_name: str = ""
    subject_id: str = Field(index=True)
    subject_name: str = ""
    subject_code: str = ""
    semester: str = ""
    academic_year: str = ""
    enrolled_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())
    active: bool = True


class Grade(SQLModel, table=True):
    """A single score for one grading period.

    Grades saved by a teacher are locked; changing them afterwards
    needs an edit request that an admin unlocks.
    """
    __tablename__ = "grades"

    id: str = Field(default_factory=new_id, primary_key=True)
    student_id: str = Field(index=True)
    student_name: str = ""
    subject_id: str = Field(index=True)
    subject_name: str = ""
    teacher_id: str = Field(default="", index=True)
    grade_period: str = GradePeriod.PRELIM.value
    score: float = 0.0
    max_score: float = 100.0
    percentage: float = 0.0
    letter_grade: str = ""
    description: str = ""
    semester: str = ""
    academic_year: str = ""
    academic_period_id: str = ""
    locked: bool = False
    locked_at: Optional[datetime] = Field(default=None, sa_column=utc_column(nullable=True))
    locked_by: Optional[str] = None
    edit_requested: bool = Field(default=False, index=True)
    unlocked_by: Optional[str] = None
    unlocked_at: Optional[datetime] = Field(default=None, sa_column=utc_column(nullable=True))
    date_recorded: datetime = Field(default_factory=utcnow, sa_column=utc_column())


class GradeAggregate(SQLModel, table=True):
    """Per student and subject roll-up of the three grading periods."""
    __tablename__ = "grade_aggregates"

    id: str = Field(primary_key=True)
    student_id: str = Field(index=True)
    student_name: str = ""
    subject_id: str = Field(index=True)
    subject_name: str = ""
    teacher_id: str = ""
    prelim_grade: Optional[float] = None
    midterm_grade: Optional[float] = None
    final_grade: Optional[float] = None
    final_average: Optional[float] = None
    status: str = GradeStatus.INCOMPLETE.value
    letter_grade: str = ""
    semester: str = ""
    academic_year: str = ""
    academic_period_id: str = ""
    last_updated: datetime = Field(default_factory=utcnow, sa_column=utc_column())


class LoginAttempt(SQLModel, table=True):
    """Failed sign-in counter keyed by `<ROLE>:<institutional id>`."""
    __tablename__ = "login_attempts"

    id: str = Field(primary_key=True)
    attempts: int = 0
    last_attempt_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())
    locked_until: Optional[datetime] = Field(default=None, sa_column=utc_column(nullable=True))
    ip_address: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())


class PreRegisteredUser(SQLModel, table=True):
    """Roster entry imported by an admin, activated later by its owner."""
    __tablename__ = "pre_registered_users"

    id: str = Field(default_factory=new_id, primary_key=True)
    institutional_id: str = Field(index=True)
    role: str = UserRole.STUDENT.value
    first_name: str = ""
    last_name: str = ""
    middle_name: Optional[str] = None
    email: str = ""
    course_id: Optional[str] = None
    year_level_id: Optional[str] = None
    section: Optional[str] = None
    department_course_id: Optional[str] = None
    is_registered: bool = False
    registered_uid: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())


class Course(SQLModel, table=True):
    """A degree programme such as BSIT. Teachers belong to one as their department."""
    __tablename__ = "courses"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = ""
    code: str = Field(default="", index=True)
    description: str = ""
    duration: int = 4
    academic_period_id: str = ""
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())


class YearLevel(SQLModel, table=True):
    __tablename__ = "year_levels"

    id: str = Field(default_factory=new_id, primary_key=True)
    course_id: str = Field(index=True)
    name: str = ""
    level: int = 1
    description: str = ""
    has_summer_class: bool = False
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())


class StudentApplication(SQLModel, table=True):
    """A student's request to join a subject, reviewed by its teacher."""
    __tablename__ = "student_applications"

    id: str = Field(default_factory=new_id, primary_key=True)
    student_id: str = Field(index=True)
    student_name: str = ""
    student_email: str = ""
    subject_id: str = Field(index=True)
    subject_name: str = ""
    subject_code: str = ""
    course_id: str = ""
    year_level_id: str = ""
    application_reason: str = ""
    status: str = Field(default=StudentApplicationStatus.PENDING.value, index=True)
    applied_at: datetime = Field(default_factory=utcnow, sa_column=utc_column())
    reviewed_at: Optional[datetime] = Field(default=None, sa_column=utc_column(nullable=True))
    reviewed_by: Optional[str] = None
    teacher_comments: Optional[str] = None


class GradeAuditEntry(SQLModel, table=True):
    """One change to a grade: who did it and the score before and after."""
    __tablename__ = "audit_trail"

    id: str = Field(default_factory=new_id, primary_key=True)
    grade_id: str = Field(index=True)
    student_id: str = Field(default="", index=True)
    student_name: str = ""
    subject_id: str = Field(default="", index=True)
    subject_name: str = ""
    teacher_id: str = Field(default="", index=True)
    actor_id: str = ""
    action: str = AuditAction.CREATED.value
    old_value: Optional[float] = None
    new_value: Optional[float] = None
    old_letter_grade: Optional[str] = None
    new_letter_grade: Optional[str] = None
    grade_period: str = GradePeriod.PRELIM.value
    semester: str = ""
    academic_year: str = ""
    reason: str = ""
    timestamp: datetime = Field(default_factory=utcnow, sa_column=utc_column())

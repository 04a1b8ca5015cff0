"""Pydantic request/response schemas used by the API.

Schemas keep API input shapes stable and provide validation for
controller handlers and tests.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .models import GradePeriod, Semester, SubjectType, UserRole


class RegisterIn(BaseModel):
    """Manual sign-up payload."""
    email: str
    password: str
    first_name: str
    last_name: str
    role: UserRole = UserRole.STUDENT
    student_id: Optional[str] = None
    teacher_id: Optional[str] = None
    course_id: Optional[str] = None
    year_level_id: Optional[str] = None
    section: Optional[str] = None
    department_course_id: Optional[str] = None


class LoginIn(BaseModel):
    email: str
    password: str


class IdLoginIn(BaseModel):
    """Sign-in with a student or teacher id."""
    institutional_id: str
    password: str
    role: UserRole = UserRole.STUDENT


class ActivateIn(BaseModel):
    institutional_id: str
    password: str
    confirm_password: str
    role: UserRole = UserRole.STUDENT


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str
    user_id: str
    role: str


class PeriodIn(BaseModel):
    name: str = ""
    semester: Semester
    academic_year: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    make_current: bool = False


class SubjectIn(BaseModel):
    name: str
    code: str
    description: str = ""
    credits: int = 3
    course_id: str = ""
    year_level_id: str = ""
    number_of_sections: int = Field(default=1, ge=1, le=26)
    subject_type: SubjectType = SubjectType.MAJOR
    academic_period_id: Optional[str] = None
    max_students: int = 30


class ReviewIn(BaseModel):
    """Reviewer decision on an application."""
    comments: Optional[str] = None


class UserStatusIn(BaseModel):
    active: bool


class ApplicationIn(BaseModel):
    subject_id: str
    reason: str = ""


class EnrollIn(BaseModel):
    subject_id: str


class GradeIn(BaseModel):
    student_id: str
    subject_id: str
    grade_period: GradePeriod
    score: float
    max_score: float = 100.0
    description: str = ""


class GradeUpdateIn(BaseModel):
    score: float
    max_score: Optional[float] = None


class CourseIn(BaseModel):
    name: str
    code: str
    description: str = ""
    duration: int = Field(default=4, ge=1, le=6)


class RoleIn(BaseModel):
    role: UserRole


class DepartmentIn(BaseModel):
    """`None` clears the teacher's department."""
    department_course_id: Optional[str] = None

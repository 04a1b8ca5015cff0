"""Business logic services used by HTTP controllers.

Services coordinate repositories and hold the workflow rules: who may
apply for which subject, how an approval assigns a teacher, when a grade
can be recorded. They receive their repositories through the
constructor; the container decides which instances they share.

Validation problems raise `ValueError` (or a subclass from `errors`),
which controllers translate into HTTP errors.
"""

import json
import logging
from typing import Dict, List, Optional

from . import grading, models, repositories
from .errors import (
    AccountLockedError,
    InvalidCredentialsError,
    NotFoundError,
    PermissionDeniedError,
)
from .utils.parsers import parse_roster_csv, validate_roster_row

logger = logging.getLogger("academic_tracker.services")

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


def validate_password(password: str) -> List[str]:
    """Return the password policy violations for `password` (empty if it passes)."""
    errors = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if len(password) > PASSWORD_MAX_LENGTH:
        errors.append(f"Password must not exceed {PASSWORD_MAX_LENGTH} characters")
    if not any(c.isupper() for c in password):
        errors.append("Password must contain at least one uppercase letter (A-Z)")
    if not any(c.islower() for c in password):
        errors.append("Password must contain at least one lowercase letter (a-z)")
    if not any(c.isdigit() for c in password):
        errors.append("Password must contain at least one number (0-9)")
    return errors


class AuthService:
    """Sign-up, sign-in (by email or institutional id) and account activation."""
    def __init__(
        self,
        users: repositories.UserRepository,
        attempts: repositories.LoginAttemptRepository,
        pre_registrations: repositories.PreRegistrationRepository,
        school_domain: str,
    ):
        self.users = users
        self.attempts = attempts
        self.pre_registrations = pre_registrations
        self.school_domain = school_domain

    @property
    def auth(self):
        return self.users.auth

    def _token_payload(self, user: models.User) -> Dict:
        return {
            "access_token": self.auth.issue_token(user.id, user.role),
            "user_id": user.id,
            "role": user.role,
        }

    def sign_up(self, email: str, password: str, first_name: str, last_name: str,
                role: models.UserRole = models.UserRole.STUDENT, **profile) -> models.User:
        """Create a manual account.

        Institutional ids must be unique per role when supplied.
        """
        if len(password or "") < 6:
            raise ValueError("password must be at least 6 characters")
        if not first_name.strip() or not last_name.strip():
            raise ValueError("first and last name are required")
        student_id = profile.get("student_id")
        teacher_id = profile.get("teacher_id")
        if student_id and self.users.institutional_id_exists(student_id, models.UserRole.STUDENT):
            raise ValueError(f"student id already in use: {student_id}")
        if teacher_id and self.users.institutional_id_exists(teacher_id, models.UserRole.TEACHER):
            raise ValueError(f"teacher id already in use: {teacher_id}")
        user = self.users.create_user(email, password, first_name.strip(), last_name.strip(), role, **profile)
        logger.info("user_registered %s", json.dumps({"user_id": user.id, "role": user.role}))
        return user

    def sign_in(self, email: str, password: str) -> Dict:
        """Verify email credentials and return a token payload."""
        user = self.users.sign_in(email, password)
        self.users.touch_last_login(user.id)
        return self._token_payload(user)

    def id_to_email(self, institutional_id: str, role: models.UserRole) -> str:
        """Derive the login email for an institutional id.

        `2024-1234` (student) -> `s2024-1234@<domain>`,
        `T-2024-001` (teacher) -> `t-2024-001@<domain>`.
        """
        clean = institutional_id.strip().lower().replace(" ", "")
        if role == models.UserRole.STUDENT:
            return f"s{clean}@{self.school_domain}"
        return f"{clean}@{self.school_domain}"

    def _candidate_emails(self, institutional_id: str, role: models.UserRole) -> List[str]:
        emails = []
        user = self.users.get_by_institutional_id(institutional_id, role)
        if user and user.email:
            emails.append(user.email)
        else:
            entry = self.pre_registrations.get(institutional_id, role)
            if entry and entry.email:
                emails.append(entry.email.strip().lower())
        derived = self.id_to_email(institutional_id, role)
        if derived not in emails:
            emails.append(derived)
        return emails

    @staticmethod
    def attempt_key(institutional_id: str, role: models.UserRole) -> str:
        """Lockout counter key. A student and a teacher may share an id number."""
        return f"{role.value}:{institutional_id.strip()}"

    def sign_in_with_id(self, institutional_id: str, password: str, role: models.UserRole,
                        ip_address: Optional[str] = None) -> Dict:
        """Sign in with a student or teacher id.

        Locked ids are refused before any password check. The stored email
        is tried first, then the derived one. Each failure counts against
        the id within its role; success clears the counter.
        """
        key = institutional_id.strip()
        if not key:
            raise ValueError("institutional id is required")
        attempt_key = self.attempt_key(key, role)
        locked_until = self.attempts.locked_until(attempt_key)
        if locked_until:
            raise AccountLockedError(locked_until)
        user = None
        for email in self._candidate_emails(key, role):
            try:
                user = self.users.sign_in(email, password)
                break
            except (InvalidCredentialsError, NotFoundError):
                continue
        if user is None:
            remaining, locked_until = self.attempts.record_failure(attempt_key, ip_address)
            logger.warning("id_sign_in_failed %s", json.dumps({"id": key, "role": role.value, "remaining": remaining}))
            if locked_until:
                raise AccountLockedError(locked_until)
            raise InvalidCredentialsError(
                f"Invalid credentials. {remaining} attempt(s) remaining.", remaining_attempts=remaining
            )
        self.attempts.clear(attempt_key)
        self.users.touch_last_login(user.id)
        entry = self.pre_registrations.get(key, role)
        if entry and (not entry.is_registered or entry.registered_uid != user.id):
            self.pre_registrations.mark_registered(entry.id, user.id)
        return self._token_payload(user)

    def activate_account(self, institutional_id: str, password: str, confirm_password: str,
                         role: models.UserRole) -> models.User:
        """Turn a pre-registered roster entry into a real account."""
        if role == models.UserRole.ADMIN:
            raise ValueError("Invalid user type for account activation")
        if password != confirm_password:
            raise ValueError("Passwords do not match")
        problems = validate_password(password)
        if problems:
            raise ValueError("; ".join(problems))
        entry = self.pre_registrations.get(institutional_id.strip(), role)
        if not entry:
            raise NotFoundError(f"No pre-registration found for {institutional_id}")
        if entry.is_registered:
            raise ValueError("Account already activated. Please sign in with your credentials.")
        email = entry.email or self.id_to_email(entry.institutional_id, role)
        profile = {
            "middle_name": entry.middle_name,
            "course_id": entry.course_id,
            "year_level_id": entry.year_level_id,
            "section": entry.section,
            "department_course_id": entry.department_course_id,
            "account_source": "PRE_REGISTERED",
        }
        if role == models.UserRole.TEACHER:
            profile["teacher_id"] = entry.institutional_id
        else:
            profile["student_id"] = entry.institutional_id
        user = self.users.create_user(email, password, entry.first_name, entry.last_name, role, **profile)
        self.pre_registrations.mark_registered(entry.id, user.id)
        logger.info("account_activated %s", json.dumps({"user_id": user.id, "role": user.role}))
        return user

    def check_id_exists(self, institutional_id: str, role: models.UserRole) -> bool:
        return (
            self.users.institutional_id_exists(institutional_id, role)
            or self.pre_registrations.exists(institutional_id, role)
        )

    def change_password(self, user: models.User, current_password: str, new_password: str) -> None:
        problems = validate_password(new_password or "")
        if problems:
            raise ValueError("; ".join(problems))
        self.auth.change_password(user.id, current_password, new_password)

    def unlock(self, institutional_id: str, role: models.UserRole) -> bool:
        return self.attempts.unlock(self.attempt_key(institutional_id, role))


class AddSubjectService:
    """Admin flow for creating subjects in the active or a chosen period."""
    def __init__(self, subjects: repositories.SubjectRepository, periods: repositories.AcademicPeriodRepository,
                 courses: repositories.CourseRepository):
        self.subjects = subjects
        self.periods = periods
        self.courses = courses

    def add_subject(self, name: str, code: str, description: str, credits: int,
                    course_id: str, year_level_id: str, number_of_sections: int = 1,
                    subject_type: models.SubjectType = models.SubjectType.MAJOR,
                    academic_period_id: Optional[str] = None, max_students: int = 30) -> models.Subject:
        """Create a subject.

        The semester and academic year come from the selected period, or
        from the active period when none is selected.

        `course_id` must name an existing course and `year_level_id`, when
        given, one of its year levels.
        """
        if not name.strip() or not code.strip():
            raise ValueError("subject name and code are required")
        if credits <= 0:
            raise ValueError("credits must be positive")
        if max_students <= 0:
            raise ValueError("max_students must be positive")
        if academic_period_id:
            period = self.periods.get(academic_period_id)
            if not period:
                raise NotFoundError("Selected academic period not found. Please select a valid period.")
        else:
            period = self.periods.get_active()
            if not period:
                raise ValueError(
                    "No active academic period found. Please select an academic period or set an active period first."
                )
        self.courses.check_placement(course_id, year_level_id)
        subject = self.subjects.add_subject(
            name=name.strip(),
            code=code.strip().upper(),
            description=description,
            credits=credits,
            semester=period.semester,
            academic_year=period.academic_year,
            course_id=course_id,
            year_level_id=year_level_id,
            number_of_sections=number_of_sections,
            subject_type=subject_type,
            academic_period_id=period.id,
            max_students=max_students,
        )
        logger.info("subject_added %s", json.dumps({"subject_id": subject.id, "period_id": period.id}))
        return subject


class AdminSubjectsService:
    def __init__(self, subjects: repositories.SubjectRepository):
        self.subjects = subjects

    def list_subjects(self) -> List[models.Subject]:
        return self.subjects.list_current()

    def delete_subject(self, subject_id: str) -> List[models.Subject]:
        """Delete and return the refreshed listing."""
        self.subjects.delete(subject_id)
        return self.list_subjects()


class AdminApplicationsService:
    """Review of teacher applications. Approval assigns the teacher to the subject."""
    def __init__(self, applications: repositories.TeacherApplicationRepository,
                 subjects: repositories.SubjectRepository):
        self.applications = applications
        self.subjects = subjects

    def list_applications(self, status: Optional[models.ApplicationStatus] = None) -> List[models.TeacherApplication]:
        if status is None:
            return self.applications.list_all()
        return self.applications.list_by_status(status)

    def _pending(self, application_id: str) -> models.TeacherApplication:
        application = self.applications.get(application_id)
        if application.status != models.ApplicationStatus.PENDING.value:
            raise ValueError(f"application already {application.status.lower()}")
        return application

    def approve(self, application_id: str, reviewer_id: str, comments: Optional[str] = None) -> models.TeacherApplication:
        application = self._pending(application_id)
        subject = self.subjects.get(application.subject_id)
        if subject.teacher_id and subject.teacher_id != application.teacher_id:
            raise ValueError(f"subject {subject.code} is already assigned to {subject.teacher_name}")
        approved = self.applications.approve(application_id, reviewer_id, comments)
        self.subjects.assign_teacher(subject.id, application.teacher_id, application.teacher_name)
        logger.info("application_approved %s", json.dumps({
            "application_id": application_id, "subject_id": subject.id, "teacher_id": application.teacher_id,
        }))
        return approved

    def reject(self, application_id: str, reviewer_id: str, comments: Optional[str] = None) -> models.TeacherApplication:
        self._pending(application_id)
        rejected = self.applications.reject(application_id, reviewer_id, comments)
        logger.info("application_rejected %s", json.dumps({"application_id": application_id}))
        return rejected

    def remove_duplicates(self, keep_most_recent: bool = True) -> int:
        return self.applications.remove_duplicates(keep_most_recent)


class AdminUsersService:
    """Admin changes to accounts: activation, role and teacher department."""
    def __init__(self, users: repositories.UserRepository, courses: repositories.CourseRepository):
        self.users = users
        self.courses = courses

    def list_users(self, role: Optional[models.UserRole] = None) -> List[models.User]:
        if role is None:
            return self.users.list_all()
        return self.users.list_by_role(role)

    def _target(self, admin: models.User, user_id: str) -> models.User:
        if user_id == admin.id:
            raise ValueError("cannot change your own account")
        user = self.users.get(user_id)
        if not user:
            raise NotFoundError(f"user not found: {user_id}")
        return user

    def set_status(self, admin: models.User, user_id: str, active: bool) -> models.User:
        self._target(admin, user_id)
        return self.users.update_status(user_id, active)

    def change_role(self, admin: models.User, user_id: str, role: models.UserRole) -> models.User:
        self._target(admin, user_id)
        updated = self.users.update_role(user_id, role)
        logger.info("user_role_changed %s", json.dumps({"user_id": user_id, "role": role.value, "by": admin.id}))
        return updated

    def set_department(self, user_id: str, course_id: Optional[str]) -> models.User:
        """Attach a teacher to a course; `None` clears the department."""
        user = self.users.get(user_id)
        if not user:
            raise NotFoundError(f"user not found: {user_id}")
        if models.UserRole.parse(user.role) != models.UserRole.TEACHER:
            raise ValueError("only teachers have a department")
        if course_id:
            self.courses.get(course_id)
        return self.users.update_teacher_department(user_id, course_id or None)


class TeacherApplicationService:
    """Teacher side of the subject application workflow."""
    def __init__(self, applications: repositories.TeacherApplicationRepository,
                 subjects: repositories.SubjectRepository):
        self.applications = applications
        self.subjects = subjects

    def available_subjects(self, teacher: models.User) -> List[models.Subject]:
        return self.subjects.list_available_for_teacher(teacher)

    def assigned_subjects(self, teacher: models.User) -> List[models.Subject]:
        return self.subjects.list_by_teacher(teacher.id)

    def list_mine(self, teacher: models.User) -> List[models.TeacherApplication]:
        return self.applications.list_by_teacher(teacher.id)

    def apply(self, teacher: models.User, subject_id: str, reason: str = "") -> models.TeacherApplication:
        """File an application for an unassigned, visible subject.

        A teacher may reapply once earlier applications were rejected or
        withdrawn, never while one is pending or approved.
        """
        if models.UserRole.parse(teacher.role) != models.UserRole.TEACHER:
            raise PermissionDeniedError("only teachers can apply for subjects")
        subject = self.subjects.get(subject_id)
        if not subject.active:
            raise ValueError("subject is not active")
        if subject.teacher_id:
            raise ValueError("subject already has a teacher")
        if not self.subjects.is_visible_to(subject, teacher):
            raise PermissionDeniedError("major subjects are limited to teachers of the same department")
        if self.applications.has_active(teacher.id, subject.id):
            raise ValueError("you already have an active application for this subject")
        application = self.applications.create(models.TeacherApplication(
            teacher_id=teacher.id,
            teacher_name=teacher.full_name,
            teacher_email=teacher.email,
            subject_id=subject.id,
            subject_name=subject.name,
            subject_code=subject.code,
            application_reason=reason,
        ))
        logger.info("application_created %s", json.dumps({"application_id": application.id, "subject_id": subject.id}))
        return application

    def withdraw(self, teacher: models.User, application_id: str) -> models.TeacherApplication:
        application = self.applications.get(application_id)
        if application.teacher_id != teacher.id:
            raise PermissionDeniedError("not your application")
        if application.status != models.ApplicationStatus.PENDING.value:
            raise ValueError("only pending applications can be withdrawn")
        return self.applications.update_status(application_id, models.ApplicationStatus.WITHDRAWN)


class EnrollmentService:
    """Student enrollment into current subjects."""
    def __init__(self, enrollments: repositories.EnrollmentRepository, subjects: repositories.SubjectRepository):
        self.enrollments = enrollments
        self.subjects = subjects

    def available_subjects(self) -> List[models.Subject]:
        return self.subjects.list_current()

    def enroll(self, student: models.User, subject_id: str) -> models.Enrollment:
        if models.UserRole.parse(student.role) != models.UserRole.STUDENT:
            raise PermissionDeniedError("only students can enroll")
        subject = self.subjects.get(subject_id)
        if not subject.active:
            raise ValueError("subject is not active")
        if self.enrollments.is_enrolled(student.id, subject.id):
            raise ValueError(f"already enrolled in {subject.code}")
        if self.enrollments.count_active_for_subject(subject.id) >= subject.max_students:
            raise ValueError(f"{subject.code} is full")
        return self.enrollments.enroll(student, subject)

    def unenroll(self, student: models.User, subject_id: str) -> int:
        count = self.enrollments.unenroll(student.id, subject_id)
        if not count:
            raise NotFoundError("no active enrollment for this subject")
        return count

    def list_for_student(self, student: models.User) -> List[models.Enrollment]:
        return self.enrollments.list_by_student(student.id)


class StudentApplicationService:
    """Students apply to join a subject; the subject's teacher (or an admin) decides.

    Approval enrolls the student through `EnrollmentService`, so the same
    capacity and duplicate checks apply as for direct enrollment.
    """
    def __init__(self, applications: repositories.StudentApplicationRepository,
                 subjects: repositories.SubjectRepository, users: repositories.UserRepository,
                 enrollment_service: EnrollmentService):
        self.applications = applications
        self.subjects = subjects
        self.users = users
        self.enrollment_service = enrollment_service

    @property
    def enrollments(self) -> repositories.EnrollmentRepository:
        return self.enrollment_service.enrollments

    def apply(self, student: models.User, subject_id: str, reason: str = "") -> models.StudentApplication:
        if models.UserRole.parse(student.role) != models.UserRole.STUDENT:
            raise PermissionDeniedError("only students can apply for subjects")
        subject = self.subjects.get(subject_id)
        if not subject.active:
            raise ValueError("subject is not active")
        if self.enrollments.is_enrolled(student.id, subject.id):
            raise ValueError("You are already enrolled in this subject")
        if self.applications.has_pending(student.id, subject.id):
            raise ValueError("You already have a pending application for this subject")
        application = self.applications.create(models.StudentApplication(
            student_id=student.id,
            student_name=student.full_name,
            student_email=student.email,
            subject_id=subject.id,
            subject_name=subject.name,
            subject_code=subject.code,
            course_id=subject.course_id,
            year_level_id=subject.year_level_id,
            application_reason=reason,
        ))
        logger.info("student_application_created %s", json.dumps({
            "application_id": application.id, "subject_id": subject.id, "teacher_id": subject.teacher_id,
        }))
        return application

    def cancel(self, student: models.User, application_id: str) -> None:
        application = self.applications.get(application_id)
        if application.student_id != student.id:
            raise PermissionDeniedError("not your application")
        if application.status != models.StudentApplicationStatus.PENDING.value:
            raise ValueError("only pending applications can be cancelled")
        self.applications.delete(application_id)

    def list_mine(self, student: models.User) -> List[models.StudentApplication]:
        return self.applications.list_by_student(student.id)

    def list_for_teacher(self, teacher: models.User,
                         status: Optional[models.StudentApplicationStatus] = None) -> List[models.StudentApplication]:
        """Applications for the subjects `teacher` teaches in the active period."""
        subject_ids = [s.id for s in self.subjects.list_by_teacher(teacher.id)]
        return self.applications.list_for_subjects(subject_ids, status)

    def list_all(self, status: Optional[models.StudentApplicationStatus] = None) -> List[models.StudentApplication]:
        return self.applications.list_all(status)

    def _reviewable(self, reviewer: models.User, application_id: str):
        application = self.applications.get(application_id)
        subject = self.subjects.get(application.subject_id)
        if models.UserRole.parse(reviewer.role) != models.UserRole.ADMIN and subject.teacher_id != reviewer.id:
            raise PermissionDeniedError("only the subject's teacher can review this application")
        if application.status != models.StudentApplicationStatus.PENDING.value:
            raise ValueError(f"application already {application.status.lower()}")
        return application, subject

    def approve(self, reviewer: models.User, application_id: str,
                comments: Optional[str] = None) -> models.StudentApplication:
        """Approve and enroll the student, unless they are enrolled already."""
        application, subject = self._reviewable(reviewer, application_id)
        student = self.users.get(application.student_id)
        if not student:
            raise NotFoundError(f"student not found: {application.student_id}")
        if self.enrollments.is_enrolled(student.id, subject.id):
            logger.warning("student_application_already_enrolled %s", json.dumps({"application_id": application_id}))
        else:
            self.enrollment_service.enroll(student, subject.id)
        approved = self.applications.update_status(
            application_id, models.StudentApplicationStatus.APPROVED, reviewer.id, comments
        )
        logger.info("student_application_approved %s", json.dumps({
            "application_id": application_id, "subject_id": subject.id, "reviewer": reviewer.id,
        }))
        return approved

    def reject(self, reviewer: models.User, application_id: str,
               comments: Optional[str] = None) -> models.StudentApplication:
        self._reviewable(reviewer, application_id)
        return self.applications.update_status(
            application_id, models.StudentApplicationStatus.REJECTED, reviewer.id, comments
        )


class GradeService:
    """Grade entry for teachers, summaries for students, edit-request review for admins."""
    def __init__(self, grades: repositories.GradeRepository, subjects: repositories.SubjectRepository,
                 enrollments: repositories.EnrollmentRepository, users: repositories.UserRepository):
        self.grades = grades
        self.subjects = subjects
        self.enrollments = enrollments
        self.users = users

    def _owned_subject(self, teacher: models.User, subject_id: str) -> models.Subject:
        subject = self.subjects.get(subject_id)
        if models.UserRole.parse(teacher.role) != models.UserRole.ADMIN and subject.teacher_id != teacher.id:
            raise PermissionDeniedError("you are not assigned to this subject")
        return subject

    def record_grade(self, teacher: models.User, student_id: str, subject_id: str, grade_period: str,
                     score: float, max_score: float = 100.0, description: str = "") -> models.Grade:
        """Record one period's score for an enrolled student.

        Each period can only be recorded once; later changes go through
        `update_grade` and the edit-request workflow.
        """
        subject = self._owned_subject(teacher, subject_id)
        period = models.GradePeriod(grade_period)
        student = self.users.get(student_id)
        if not student:
            raise NotFoundError(f"student not found: {student_id}")
        if not self.enrollments.is_enrolled(student_id, subject_id):
            raise ValueError("student is not enrolled in this subject")
        if self.grades.find_for_period(student_id, subject_id, period):
            raise ValueError(f"{period.value} grade already recorded; request an edit instead")
        grade = models.Grade(
            student_id=student.id,
            student_name=student.full_name,
            subject_id=subject.id,
            subject_name=subject.name,
            teacher_id=teacher.id,
            grade_period=period.value,
            score=score,
            max_score=max_score,
            description=description,
            semester=subject.semester,
            academic_year=subject.academic_year,
            academic_period_id=subject.academic_period_id,
        )
        return self.grades.create(grade, teacher.id, models.UserRole.parse(teacher.role))

    def update_grade(self, teacher: models.User, grade_id: str, score: float,
                     max_score: Optional[float] = None) -> models.Grade:
        grade = self.grades.get(grade_id)
        self._owned_subject(teacher, grade.subject_id)
        return self.grades.update(grade_id, teacher.id, models.UserRole.parse(teacher.role),
                                  score=score, max_score=max_score)

    def request_edit(self, teacher: models.User, grade_id: str) -> models.Grade:
        grade = self.grades.get(grade_id)
        if grade.teacher_id != teacher.id:
            raise PermissionDeniedError("not your grade")
        return self.grades.request_edit(grade_id)

    def list_edit_requests(self) -> List[models.Grade]:
        return self.grades.list_edit_requests()

    def unlock(self, admin: models.User, grade_id: str) -> models.Grade:
        return self.grades.unlock_for_edit(grade_id, admin.id)

    def reject_edit(self, admin: models.User, grade_id: str) -> models.Grade:
        return self.grades.reject_edit_request(grade_id, admin.id)

    def delete_grade(self, admin: models.User, grade_id: str, reason: str = "") -> None:
        """Admin removal of a grade; the aggregate and the audit trail follow."""
        if models.UserRole.parse(admin.role) != models.UserRole.ADMIN:
            raise PermissionDeniedError("only admins can delete grades")
        self.grades.delete(grade_id, admin.id, reason)

    def grade_history(self, grade_id: str) -> List[models.GradeAuditEntry]:
        """Audit entries for one grade, oldest first. Deleted grades keep their history."""
        return self.grades.audit.list_for_grade(grade_id)

    def audit_entries(self, student_id: Optional[str] = None, subject_id: Optional[str] = None,
                      teacher_id: Optional[str] = None,
                      action: Optional[models.AuditAction] = None) -> List[models.GradeAuditEntry]:
        return self.grades.audit.list_entries(student_id, subject_id, teacher_id, action)

    def student_summary(self, student: models.User) -> Dict:
        """Grades and per-subject aggregates for the active period."""
        aggregates = self.grades.list_aggregates_by_student(student.id)
        return {
            "aggregates": aggregates,
            "grades": self.grades.list_by_student(student.id),
            "overall_average": grading.class_final_average(a.final_average for a in aggregates),
        }

    def subject_report(self, teacher: models.User, subject_id: str) -> Dict:
        subject = self._owned_subject(teacher, subject_id)
        aggregates = self.grades.list_aggregates_by_subject(subject.id)
        return {
            "subject_id": subject.id,
            "subject_code": subject.code,
            "enrolled": self.enrollments.count_active_for_subject(subject.id),
            "class_averages": self.grades.class_average_for_subject(subject.id),
            "class_final_average": grading.class_final_average(a.final_average for a in aggregates),
            "distribution": grading.grade_distribution(a.status for a in aggregates),
            "aggregates": aggregates,
        }


class RosterImportService:
    """Import pre-registered students or teachers from a CSV roster."""
    def __init__(self, pre_registrations: repositories.PreRegistrationRepository,
                 users: repositories.UserRepository):
        self.pre_registrations = pre_registrations
        self.users = users

    def import_csv(self, file_bytes: bytes, role: models.UserRole, dry_run: bool = False) -> Dict:
        """Parse and store roster rows.

        Returns `{created, skipped, errors}`. Rows whose id is already
        pre-registered or already owns an account are skipped, as are
        repeats within the same file. Invalid rows are reported by index
        and do not stop the import.
        """
        if role == models.UserRole.ADMIN:
            raise ValueError("admins cannot be imported from a roster")
        rows = parse_roster_csv(file_bytes)
        created = 0
        skipped = 0
        errors = []
        seen = set()
        for idx, row in enumerate(rows):
            try:
                validate_roster_row(row)
            except ValueError as e:
                errors.append({"index": idx, "error": str(e)})
                continue
            ident = row["institutional_id"]
            if (
                ident in seen
                or self.pre_registrations.exists(ident, role)
                or self.users.institutional_id_exists(ident, role)
            ):
                skipped += 1
                continue
            seen.add(ident)
            if not dry_run:
                self.pre_registrations.add(models.PreRegisteredUser(
                    institutional_id=ident,
                    role=role.value,
                    first_name=row["first_name"],
                    last_name=row["last_name"],
                    middle_name=row.get("middle_name"),
                    email=row["email"].lower(),
                    course_id=row.get("course_id"),
                    year_level_id=row.get("year_level_id"),
                    section=row.get("section"),
                    department_course_id=row.get("department_course_id"),
                ))
            created += 1
        logger.info("roster_imported %s", json.dumps({
            "role": role.value, "created": created, "skipped": skipped, "errors": len(errors), "dry_run": dry_run,
        }))
        return {"created": created, "skipped": skipped, "errors": errors, "dry_run": dry_run}

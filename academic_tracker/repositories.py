"""Repository classes encapsulating database operations.

Each repository is focused on a single collection (users, subjects,
applications, enrollments, grades, ...). Repositories hold the shared
engine rather than a session so the container can keep one instance
for the whole application; every operation opens its own short-lived
session and returns detached SQLModel objects.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlmodel import Session, select

from . import grading, models
from .errors import InvalidCredentialsError, NotFoundError, PermissionDeniedError

logger = logging.getLogger("academic_tracker.repositories")


class _Repository:
    def __init__(self, engine):
        self.engine = engine

    def _session(self) -> Session:
        # objects stay readable after commit once the session is closed
        return Session(self.engine, expire_on_commit=False)

    def _save(self, obj):
        with self._session() as session:
            session.add(obj)
            session.commit()
            session.refresh(obj)
            return obj


class UserRepository(_Repository):
    """Profiles in `users` plus the sign-up/sign-in calls that need the auth client."""
    def __init__(self, engine, auth):
        super().__init__(engine)
        self.auth = auth

    def create_user(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: models.UserRole,
        **profile,
    ) -> models.User:
        """Create the auth credential, then the profile row under the same uid.

        If writing the profile fails the credential is removed again so
        the email can be reused.
        """
        uid = self.auth.create_user(email, password)
        user = models.User(
            id=uid,
            email=email.strip().lower(),
            first_name=first_name,
            last_name=last_name,
            role=models.UserRole.parse(getattr(role, "value", role)).value,
            **profile,
        )
        try:
            return self._save(user)
        except Exception:
            self.auth.delete_user(uid)
            raise

    def sign_in(self, email: str, password: str) -> models.User:
        uid = self.auth.sign_in(email, password)
        user = self.get(uid)
        if not user:
            raise NotFoundError("User not found")
        if not user.active:
            raise InvalidCredentialsError("account is deactivated")
        return user

    def get(self, user_id: str) -> Optional[models.User]:
        with self._session() as session:
            return session.get(models.User, user_id)

    def get_by_email(self, email: str) -> Optional[models.User]:
        with self._session() as session:
            stmt = select(models.User).where(models.User.email == email.strip().lower())
            return session.exec(stmt).first()

    def get_by_institutional_id(self, institutional_id: str, role: models.UserRole) -> Optional[models.User]:
        """Look a user up by student id or teacher id depending on `role`."""
        column = models.User.teacher_id if role == models.UserRole.TEACHER else models.User.student_id
        with self._session() as session:
            return session.exec(select(models.User).where(column == institutional_id)).first()

    def institutional_id_exists(self, institutional_id: str, role: models.UserRole) -> bool:
        return self.get_by_institutional_id(institutional_id, role) is not None

    def list_all(self) -> List[models.User]:
        with self._session() as session:
            return session.exec(select(models.User).order_by(models.User.created_at)).all()

    def list_by_role(self, role: models.UserRole) -> List[models.User]:
        with self._session() as session:
            stmt = select(models.User).where(models.User.role == role.value)
            return session.exec(stmt).all()

    def _update(self, user_id: str, **changes) -> models.User:
        with self._session() as session:
            user = session.get(models.User, user_id)
            if not user:
                raise NotFoundError(f"user not found: {user_id}")
            for key, value in changes.items():
                setattr(user, key, value)
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def update_status(self, user_id: str, active: bool) -> models.User:
        user = self._update(user_id, active=active)
        self.auth.set_disabled(user_id, not active)
        return user

    def update_role(self, user_id: str, role: models.UserRole) -> models.User:
        return self._update(user_id, role=role.value)

    def update_teacher_department(self, user_id: str, department_course_id: Optional[str]) -> models.User:
        return self._update(user_id, department_course_id=department_course_id)

    def touch_last_login(self, user_id: str) -> models.User:
        return self._update(user_id, last_login_at=models.utcnow())


class LoginAttemptRepository(_Repository):
    """Failed sign-in counters with a lockout window.

    Attempts older than the reset window start counting from one again.
    Reaching `max_attempts` locks the id for `lockout`.
    """
    def __init__(self, engine, max_attempts: int = 5, lockout: timedelta = timedelta(minutes=30),
                 reset_after: timedelta = timedelta(minutes=15), clock: Callable = models.utcnow):
        super().__init__(engine)
        self.max_attempts = max_attempts
        self.lockout = lockout
        self.reset_after = reset_after
        self.clock = clock

    @classmethod
    def from_settings(cls, engine, settings) -> "LoginAttemptRepository":
        return cls(
            engine,
            max_attempts=settings.LOGIN_MAX_ATTEMPTS,
            lockout=timedelta(minutes=settings.LOGIN_LOCKOUT_MINUTES),
            reset_after=timedelta(minutes=settings.LOGIN_ATTEMPT_RESET_MINUTES),
        )

    def locked_until(self, key: str):
        """Return the lock expiry if `key` is locked, otherwise `None`.

        A stale record (outside the reset window and not locked) is
        deleted on the way.
        """
        now = self.clock()
        with self._session() as session:
            attempt = session.get(models.LoginAttempt, key)
            if not attempt:
                return None
            if attempt.locked_until and attempt.locked_until > now:
                return attempt.locked_until
            if now - attempt.last_attempt_at > self.reset_after:
                session.delete(attempt)
                session.commit()
            return None

    def record_failure(self, key: str, ip_address: Optional[str] = None) -> Tuple[int, Optional[datetime]]:
        """Count a failed attempt; returns `(remaining_attempts, locked_until)`."""
        now = self.clock()
        with self._session() as session:
            attempt = session.get(models.LoginAttempt, key)
            if attempt is None:
                attempt = models.LoginAttempt(id=key, attempts=0, last_attempt_at=now)
            if attempt.locked_until and attempt.locked_until > now:
                return 0, attempt.locked_until
            if attempt.attempts and now - attempt.last_attempt_at > self.reset_after:
                attempt.attempts = 0
            attempt.attempts += 1
            attempt.last_attempt_at = now
            attempt.ip_address = ip_address
            attempt.locked_until = now + self.lockout if attempt.attempts >= self.max_attempts else None
            session.add(attempt)
            session.commit()
            remaining = max(0, self.max_attempts - attempt.attempts)
            if attempt.locked_until:
                logger.warning("login_locked key=%s until=%s", key, attempt.locked_until.isoformat())
            return remaining, attempt.locked_until

    def clear(self, key: str) -> bool:
        with self._session() as session:
            attempt = session.get(models.LoginAttempt, key)
            if not attempt:
                return False
            session.delete(attempt)
            session.commit()
            return True

    def unlock(self, key: str) -> bool:
        """Admin override; same as clearing the counter."""
        return self.clear(key)


class PreRegistrationRepository(_Repository):
    """Roster entries waiting for account activation."""

    def add(self, entry: models.PreRegisteredUser) -> models.PreRegisteredUser:
        return self._save(entry)

    def get(self, institutional_id: str, role: models.UserRole) -> Optional[models.PreRegisteredUser]:
        with self._session() as session:
            stmt = select(models.PreRegisteredUser).where(
                models.PreRegisteredUser.institutional_id == institutional_id,
                models.PreRegisteredUser.role == role.value,
            )
            return session.exec(stmt).first()

    def exists(self, institutional_id: str, role: models.UserRole) -> bool:
        return self.get(institutional_id, role) is not None

    def mark_registered(self, entry_id: str, uid: str) -> models.PreRegisteredUser:
        with self._session() as session:
            entry = session.get(models.PreRegisteredUser, entry_id)
            if not entry:
                raise NotFoundError(f"pre-registration not found: {entry_id}")
            entry.is_registered = True
            entry.registered_uid = uid
            session.add(entry)
            session.commit()
            return entry

    def list_by_role(self, role: models.UserRole) -> List[models.PreRegisteredUser]:
        with self._session() as session:
            stmt = select(models.PreRegisteredUser).where(models.PreRegisteredUser.role == role.value)
            return session.exec(stmt).all()


@dataclass
class AcademicPeriodContext:
    period_id: str = ""
    academic_year: str = ""
    semester: str = ""
    is_active: bool = False


class AcademicPeriodRepository(_Repository):
    """Academic periods; exactly one may be flagged current."""

    def create(self, period: models.AcademicPeriod, make_current: bool = False) -> models.AcademicPeriod:
        period.semester = models.Semester.parse(period.semester).value
        period.is_current = False
        created = self._save(period)
        if make_current:
            created = self.set_active(created.id)
        return created

    def get(self, period_id: str) -> Optional[models.AcademicPeriod]:
        with self._session() as session:
            return session.get(models.AcademicPeriod, period_id)

    def get_active(self) -> Optional[models.AcademicPeriod]:
        with self._session() as session:
            stmt = select(models.AcademicPeriod).where(models.AcademicPeriod.is_current == True)  # noqa: E712
            return session.exec(stmt).first()

    def set_active(self, period_id: str) -> models.AcademicPeriod:
        """Flag `period_id` as current and clear the flag everywhere else."""
        with self._session() as session:
            target = session.get(models.AcademicPeriod, period_id)
            if not target:
                raise NotFoundError(f"academic period not found: {period_id}")
            current = select(models.AcademicPeriod).where(models.AcademicPeriod.is_current == True)  # noqa: E712
            for other in session.exec(current).all():
                other.is_current = False
                session.add(other)
            target.is_current = True
            session.add(target)
            session.commit()
            session.refresh(target)
            return target

    def list_all(self) -> List[models.AcademicPeriod]:
        with self._session() as session:
            stmt = select(models.AcademicPeriod).order_by(models.AcademicPeriod.created_at.desc())
            return session.exec(stmt).all()

    def context(self) -> AcademicPeriodContext:
        period = self.get_active()
        if not period:
            return AcademicPeriodContext()
        return AcademicPeriodContext(
            period_id=period.id,
            academic_year=period.academic_year,
            semester=period.semester,
            is_active=True,
        )


NO_ACTIVE_PERIOD = "No active academic period found. Please set an active academic period first."


def year_level_name(level: int) -> str:
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(level, "th")
    return f"{level}{suffix} Year"


class YearLevelRepository(_Repository):
    """Year levels of a course. Generated levels get the id `<course id>-<level>`."""

    @staticmethod
    def year_level_id(course_id: str, level: int) -> str:
        return f"{course_id}-{level}"

    def create(self, year_level: models.YearLevel) -> models.YearLevel:
        if year_level.level < 1:
            raise ValueError("year level must be 1 or higher")
        with self._session() as session:
            if session.get(models.YearLevel, year_level.id):
                raise ValueError(f"year level already exists: {year_level.id}")
        return self._save(year_level)

    def get(self, year_level_id: str) -> models.YearLevel:
        with self._session() as session:
            year_level = session.get(models.YearLevel, year_level_id)
        if not year_level or not year_level.active:
            raise NotFoundError(f"Year level not found: {year_level_id}")
        return year_level

    def list_by_course(self, course_id: str) -> List[models.YearLevel]:
        stmt = select(models.YearLevel).where(
            models.YearLevel.course_id == course_id,
            models.YearLevel.active == True,  # noqa: E712
        ).order_by(models.YearLevel.level)
        with self._session() as session:
            return session.exec(stmt).all()

    def delete_for_course(self, course_id: str) -> int:
        with self._session() as session:
            rows = session.exec(select(models.YearLevel).where(models.YearLevel.course_id == course_id)).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return len(rows)


class CourseRepository(_Repository):
    """Courses (degree programmes). Creating one also creates its year levels."""
    def __init__(self, engine, periods: AcademicPeriodRepository, year_levels: YearLevelRepository):
        super().__init__(engine)
        self.periods = periods
        self.year_levels = year_levels

    def create(self, course: models.Course) -> models.Course:
        """Store a course in the active period with one year level per year of `duration`.

        Every year but the last gets a summer class.
        """
        ctx = self.periods.context()
        if not ctx.is_active:
            raise ValueError("No active academic period found. Please create an academic period first.")
        if not course.name.strip() or not course.code.strip():
            raise ValueError("course name and code are required")
        if course.duration < 1:
            raise ValueError("course duration must be at least one year")
        course.code = course.code.strip().upper()
        if self.get_by_code(course.code):
            raise ValueError(f"course code already in use: {course.code}")
        course.academic_period_id = ctx.period_id
        created = self._save(course)
        for level in range(1, created.duration + 1):
            self.year_levels.create(models.YearLevel(
                id=self.year_levels.year_level_id(created.id, level),
                course_id=created.id,
                name=year_level_name(level),
                level=level,
                description=f"Year {level} of {created.name}",
                has_summer_class=level < created.duration,
            ))
        logger.info("course_created %s", json.dumps({"course_id": created.id, "code": created.code}))
        return created

    def get(self, course_id: str) -> models.Course:
        with self._session() as session:
            course = session.get(models.Course, course_id)
        if not course or not course.active:
            raise NotFoundError(f"Course not found: {course_id}")
        return course

    def get_by_code(self, code: str) -> Optional[models.Course]:
        stmt = select(models.Course).where(
            models.Course.code == code.strip().upper(),
            models.Course.active == True,  # noqa: E712
        )
        with self._session() as session:
            return session.exec(stmt).first()

    def list_all(self) -> List[models.Course]:
        stmt = select(models.Course).where(models.Course.active == True).order_by(models.Course.code)  # noqa: E712
        with self._session() as session:
            return session.exec(stmt).all()

    def delete(self, course_id: str) -> None:
        with self._session() as session:
            course = session.get(models.Course, course_id)
            if not course:
                raise NotFoundError(f"Course not found: {course_id}")
            session.delete(course)
            session.commit()
        self.year_levels.delete_for_course(course_id)

    def check_placement(self, course_id: str, year_level_id: Optional[str] = None) -> models.Course:
        """Return the course, making sure `year_level_id` (when given) belongs to it."""
        course = self.get(course_id)
        if year_level_id:
            year_level = self.year_levels.get(year_level_id)
            if year_level.course_id != course.id:
                raise ValueError(f"year level {year_level.name} does not belong to {course.code}")
        return course


class SubjectRepository(_Repository):
    """Subjects, scoped to the active academic period for listings."""
    def __init__(self, engine, periods: AcademicPeriodRepository):
        super().__init__(engine)
        self.periods = periods

    @staticmethod
    def generate_sections(code: str, number_of_sections: int) -> List[str]:
        """`IT101`, 3 -> `["IT101A", "IT101B", "IT101C"]`."""
        if number_of_sections < 1 or number_of_sections > 26:
            raise ValueError("number_of_sections must be between 1 and 26")
        return [f"{code}{chr(ord('A') + i)}" for i in range(number_of_sections)]

    def create(self, subject: models.Subject) -> models.Subject:
        """Create a subject in the active academic period."""
        ctx = self.periods.context()
        if not ctx.is_active:
            raise ValueError(NO_ACTIVE_PERIOD)
        subject.academic_period_id = ctx.period_id
        return self._save(subject)

    def create_for_period(self, subject: models.Subject, academic_period_id: str) -> models.Subject:
        subject.academic_period_id = academic_period_id
        return self._save(subject)

    def add_subject(
        self,
        name: str,
        code: str,
        description: str,
        credits: int,
        semester: str,
        academic_year: str,
        course_id: str,
        year_level_id: str,
        number_of_sections: int = 1,
        subject_type: models.SubjectType = models.SubjectType.MAJOR,
        academic_period_id: Optional[str] = None,
        max_students: int = 30,
    ) -> models.Subject:
        """Build a subject with generated sections and persist it.

        Without `academic_period_id` the subject goes into the active period.
        """
        subject = models.Subject(
            name=name,
            code=code,
            description=description,
            credits=credits,
            semester=models.Semester.parse(semester).value,
            academic_year=academic_year,
            course_id=course_id,
            year_level_id=year_level_id,
            number_of_sections=number_of_sections,
            sections=self.generate_sections(code, number_of_sections),
            subject_type=models.SubjectType(subject_type).value,
            max_students=max_students,
        )
        if academic_period_id:
            return self.create_for_period(subject, academic_period_id)
        return self.create(subject)

    def update(self, subject: models.Subject) -> models.Subject:
        with self._session() as session:
            merged = session.merge(subject)
            session.commit()
            session.refresh(merged)
            return merged

    def delete(self, subject_id: str) -> None:
        with self._session() as session:
            subject = session.get(models.Subject, subject_id)
            if not subject:
                raise NotFoundError(f"subject not found: {subject_id}")
            session.delete(subject)
            session.commit()

    def get(self, subject_id: str) -> models.Subject:
        with self._session() as session:
            subject = session.get(models.Subject, subject_id)
        if not subject:
            raise NotFoundError(f"Subject not found: {subject_id}")
        return subject

    def _current(self, ctx: AcademicPeriodContext, *conditions) -> List[models.Subject]:
        if not ctx.is_active:
            return []
        stmt = select(models.Subject).where(
            models.Subject.active == True,  # noqa: E712
            models.Subject.academic_period_id == ctx.period_id,
            models.Subject.semester == ctx.semester,
            *conditions,
        ).order_by(models.Subject.code)
        with self._session() as session:
            return session.exec(stmt).all()

    def list_current(self) -> List[models.Subject]:
        """Active subjects of the active period and semester."""
        return self._current(self.periods.context())

    def list_by_teacher(self, teacher_id: str) -> List[models.Subject]:
        return self._current(self.periods.context(), models.Subject.teacher_id == teacher_id)

    def list_available(self) -> List[models.Subject]:
        """Current subjects that no teacher has been assigned to."""
        return self._current(self.periods.context(), models.Subject.teacher_id == None)  # noqa: E711

    def list_available_for_teacher(self, teacher: models.User) -> List[models.Subject]:
        """Unassigned subjects visible to `teacher`.

        MINOR subjects are open to everyone; MAJOR subjects only to
        teachers whose department matches the subject's course.
        """
        return [s for s in self.list_available() if self.is_visible_to(s, teacher)]

    @staticmethod
    def is_visible_to(subject: models.Subject, teacher: models.User) -> bool:
        if subject.subject_type == models.SubjectType.MINOR.value:
            return True
        return bool(teacher.department_course_id) and teacher.department_course_id == subject.course_id

    def _set_teacher(self, subject_id: str, teacher_id: Optional[str], teacher_name: Optional[str]) -> models.Subject:
        with self._session() as session:
            subject = session.get(models.Subject, subject_id)
            if not subject:
                raise NotFoundError(f"Subject not found: {subject_id}")
            subject.teacher_id = teacher_id
            subject.teacher_name = teacher_name
            session.add(subject)
            session.commit()
            session.refresh(subject)
            return subject

    def assign_teacher(self, subject_id: str, teacher_id: str, teacher_name: str) -> models.Subject:
        return self._set_teacher(subject_id, teacher_id, teacher_name)

    def remove_teacher(self, subject_id: str) -> models.Subject:
        return self._set_teacher(subject_id, None, None)


class TeacherApplicationRepository(_Repository):
    """Teacher applications for subjects."""

    def create(self, application: models.TeacherApplication) -> models.TeacherApplication:
        return self._save(application)

    def get(self, application_id: str) -> models.TeacherApplication:
        with self._session() as session:
            application = session.get(models.TeacherApplication, application_id)
        if not application:
            raise NotFoundError(f"Application not found: {application_id}")
        return application

    def _list(self, *conditions) -> List[models.TeacherApplication]:
        stmt = select(models.TeacherApplication).where(*conditions).order_by(
            models.TeacherApplication.applied_at.desc()
        )
        with self._session() as session:
            return session.exec(stmt).all()

    def list_all(self) -> List[models.TeacherApplication]:
        """All applications, newest first."""
        return self._list()

    def list_by_status(self, status: models.ApplicationStatus) -> List[models.TeacherApplication]:
        return self._list(models.TeacherApplication.status == status.value)

    def list_by_teacher(self, teacher_id: str) -> List[models.TeacherApplication]:
        return self._list(models.TeacherApplication.teacher_id == teacher_id)

    def list_by_subject(self, subject_id: str) -> List[models.TeacherApplication]:
        return self._list(models.TeacherApplication.subject_id == subject_id)

    def update_status(self, application_id: str, status: models.ApplicationStatus,
                      reviewer_id: Optional[str] = None, comments: Optional[str] = None) -> models.TeacherApplication:
        with self._session() as session:
            application = session.get(models.TeacherApplication, application_id)
            if not application:
                raise NotFoundError(f"Application not found: {application_id}")
            application.status = status.value
            application.reviewed_at = models.utcnow()
            if reviewer_id is not None:
                application.reviewed_by = reviewer_id
            if comments is not None:
                application.admin_comments = comments
            session.add(application)
            session.commit()
            session.refresh(application)
            return application

    def approve(self, application_id: str, reviewer_id: str, comments: Optional[str] = None):
        return self.update_status(application_id, models.ApplicationStatus.APPROVED, reviewer_id, comments)

    def reject(self, application_id: str, reviewer_id: str, comments: Optional[str] = None):
        return self.update_status(application_id, models.ApplicationStatus.REJECTED, reviewer_id, comments)

    def cancel(self, application_id: str) -> None:
        """Hard-delete an application."""
        with self._session() as session:
            application = session.get(models.TeacherApplication, application_id)
            if not application:
                raise NotFoundError(f"Application not found: {application_id}")
            session.delete(application)
            session.commit()

    def has_pending(self, teacher_id: str, subject_id: str) -> bool:
        return any(
            a.status == models.ApplicationStatus.PENDING.value
            for a in self._for_pair(teacher_id, subject_id)
        )

    def has_active(self, teacher_id: str, subject_id: str) -> bool:
        """PENDING or APPROVED; a rejected or withdrawn teacher may reapply."""
        active = {models.ApplicationStatus.PENDING.value, models.ApplicationStatus.APPROVED.value}
        return any(a.status in active for a in self._for_pair(teacher_id, subject_id))

    def _for_pair(self, teacher_id: str, subject_id: str) -> List[models.TeacherApplication]:
        return self._list(
            models.TeacherApplication.teacher_id == teacher_id,
            models.TeacherApplication.subject_id == subject_id,
        )

    def find_duplicates(self) -> Dict[Tuple[str, str], List[models.TeacherApplication]]:
        """Group applications by (teacher, subject), keeping groups of two or more."""
        groups: Dict[Tuple[str, str], List[models.TeacherApplication]] = {}
        for application in self.list_all():
            groups.setdefault((application.teacher_id, application.subject_id), []).append(application)
        return {k: v for k, v in groups.items() if len(v) > 1}

    def remove_duplicates(self, keep_most_recent: bool = True) -> int:
        """Delete all but one application per (teacher, subject) pair."""
        deleted = 0
        groups = self.find_duplicates()
        with self._session() as session:
            for group in groups.values():
                ordered = sorted(group, key=lambda a: a.applied_at, reverse=keep_most_recent)
                for application in ordered[1:]:
                    row = session.get(models.TeacherApplication, application.id)
                    if row:
                        session.delete(row)
                        deleted += 1
            session.commit()
        if deleted:
            logger.info("applications_deduplicated deleted=%d", deleted)
        return deleted


class StudentApplicationRepository(_Repository):
    """Student applications to join a subject."""

    def create(self, application: models.StudentApplication) -> models.StudentApplication:
        return self._save(application)

    def get(self, application_id: str) -> models.StudentApplication:
        with self._session() as session:
            application = session.get(models.StudentApplication, application_id)
        if not application:
            raise NotFoundError(f"Application not found: {application_id}")
        return application

    def _list(self, *conditions) -> List[models.StudentApplication]:
        stmt = select(models.StudentApplication).where(*conditions).order_by(
            models.StudentApplication.applied_at.desc()
        )
        with self._session() as session:
            return session.exec(stmt).all()

    def list_all(self, status: Optional[models.StudentApplicationStatus] = None) -> List[models.StudentApplication]:
        if status is None:
            return self._list()
        return self._list(models.StudentApplication.status == status.value)

    def list_by_student(self, student_id: str) -> List[models.StudentApplication]:
        return self._list(models.StudentApplication.student_id == student_id)

    def list_for_subjects(self, subject_ids: List[str],
                          status: Optional[models.StudentApplicationStatus] = None) -> List[models.StudentApplication]:
        if not subject_ids:
            return []
        conditions = [models.StudentApplication.subject_id.in_(subject_ids)]
        if status is not None:
            conditions.append(models.StudentApplication.status == status.value)
        return self._list(*conditions)

    def has_pending(self, student_id: str, subject_id: str) -> bool:
        return bool(self._list(
            models.StudentApplication.student_id == student_id,
            models.StudentApplication.subject_id == subject_id,
            models.StudentApplication.status == models.StudentApplicationStatus.PENDING.value,
        ))

    def update_status(self, application_id: str, status: models.StudentApplicationStatus,
                      reviewer_id: str, comments: Optional[str] = None) -> models.StudentApplication:
        with self._session() as session:
            application = session.get(models.StudentApplication, application_id)
            if not application:
                raise NotFoundError(f"Application not found: {application_id}")
            application.status = status.value
            application.reviewed_at = models.utcnow()
            application.reviewed_by = reviewer_id
            if comments is not None:
                application.teacher_comments = comments
            session.add(application)
            session.commit()
            session.refresh(application)
            return application

    def delete(self, application_id: str) -> None:
        with self._session() as session:
            application = session.get(models.StudentApplication, application_id)
            if not application:
                raise NotFoundError(f"Application not found: {application_id}")
            session.delete(application)
            session.commit()


class EnrollmentRepository(_Repository):
    """Student enrollments; unenrolling is a soft delete."""

    def create(self, enrollment: models.Enrollment) -> models.Enrollment:
        return self._save(enrollment)

    def enroll(self, student: models.User, subject: models.Subject) -> models.Enrollment:
        return self.create(models.Enrollment(
            student_id=student.id,
            student_name=student.full_name,
            subject_id=subject.id,
            subject_name=subject.name,
            subject_code=subject.code,
            semester=subject.semester,
            academic_year=subject.academic_year,
        ))

    def _active(self, *conditions) -> List[models.Enrollment]:
        stmt = select(models.Enrollment).where(models.Enrollment.active == True, *conditions)  # noqa: E712
        with self._session() as session:
            return session.exec(stmt).all()

    def unenroll(self, student_id: str, subject_id: str) -> int:
        """Deactivate the student's active enrollments in the subject; returns the count."""
        with self._session() as session:
            stmt = select(models.Enrollment).where(
                models.Enrollment.student_id == student_id,
                models.Enrollment.subject_id == subject_id,
                models.Enrollment.active == True,  # noqa: E712
            )
            rows = session.exec(stmt).all()
            for row in rows:
                row.active = False
                session.add(row)
            session.commit()
            return len(rows)

    def is_enrolled(self, student_id: str, subject_id: str) -> bool:
        return bool(self._active(
            models.Enrollment.student_id == student_id,
            models.Enrollment.subject_id == subject_id,
        ))

    def list_by_student(self, student_id: str) -> List[models.Enrollment]:
        return self._active(models.Enrollment.student_id == student_id)

    def list_by_subject(self, subject_id: str) -> List[models.Enrollment]:
        return self._active(models.Enrollment.subject_id == subject_id)

    def list_all(self) -> List[models.Enrollment]:
        return self._active()

    def count_active_for_subject(self, subject_id: str) -> int:
        return len(self.list_by_subject(subject_id))


class AuditTrailRepository(_Repository):
    """Append-only history of grade changes."""

    def record(self, grade: models.Grade, action: models.AuditAction, actor_id: str,
               old_value: Optional[float] = None, old_letter_grade: Optional[str] = None,
               reason: str = "") -> models.GradeAuditEntry:
        deleted = action == models.AuditAction.DELETED
        entry = models.GradeAuditEntry(
            grade_id=grade.id,
            student_id=grade.student_id,
            student_name=grade.student_name,
            subject_id=grade.subject_id,
            subject_name=grade.subject_name,
            teacher_id=grade.teacher_id,
            actor_id=actor_id,
            action=action.value,
            old_value=grade.score if deleted else old_value,
            new_value=None if deleted else grade.score,
            old_letter_grade=grade.letter_grade if deleted else old_letter_grade,
            new_letter_grade=None if deleted else grade.letter_grade,
            grade_period=grade.grade_period,
            semester=grade.semester,
            academic_year=grade.academic_year,
            reason=reason,
        )
        return self._save(entry)

    def list_entries(self, student_id: Optional[str] = None, subject_id: Optional[str] = None,
                     teacher_id: Optional[str] = None,
                     action: Optional[models.AuditAction] = None) -> List[models.GradeAuditEntry]:
        """Entries matching every given filter, newest first."""
        conditions = []
        if student_id:
            conditions.append(models.GradeAuditEntry.student_id == student_id)
        if subject_id:
            conditions.append(models.GradeAuditEntry.subject_id == subject_id)
        if teacher_id:
            conditions.append(models.GradeAuditEntry.teacher_id == teacher_id)
        if action is not None:
            conditions.append(models.GradeAuditEntry.action == action.value)
        stmt = select(models.GradeAuditEntry).where(*conditions).order_by(models.GradeAuditEntry.timestamp.desc())
        with self._session() as session:
            return session.exec(stmt).all()

    def list_for_grade(self, grade_id: str) -> List[models.GradeAuditEntry]:
        stmt = select(models.GradeAuditEntry).where(
            models.GradeAuditEntry.grade_id == grade_id
        ).order_by(models.GradeAuditEntry.timestamp)
        with self._session() as session:
            return session.exec(stmt).all()


class GradeRepository(_Repository):
    """Grades, their per-subject aggregates and the lock/edit-request workflow."""
    def __init__(self, engine, periods: AcademicPeriodRepository, audit: AuditTrailRepository):
        super().__init__(engine)
        self.periods = periods
        self.audit = audit

    def create(self, grade: models.Grade, actor_id: str, actor_role: models.UserRole) -> models.Grade:
        """Validate, stamp and store a grade, then refresh the aggregate.

        A grade without an `academic_period_id` is tied to the active
        period. Grades written by anyone but an admin are locked
        immediately.
        """
        if not grade.academic_period_id:
            ctx = self.periods.context()
            if not ctx.is_active:
                raise ValueError(NO_ACTIVE_PERIOD)
            grade.academic_period_id = ctx.period_id
        result = grading.validate_grade(grade)
        if not result.is_valid:
            raise ValueError("Grade validation failed: " + ", ".join(result.errors))
        grade.percentage = grading.calculate_percentage(grade.score, grade.max_score)
        grade.letter_grade = grading.letter_grade(grade.percentage)
        if actor_role != models.UserRole.ADMIN:
            grade.locked = True
            grade.locked_at = models.utcnow()
            grade.locked_by = actor_id
        created = self._save(grade)
        logger.info("grade_created %s", json.dumps({"grade_id": created.id, "actor": actor_id, "score": created.score}))
        self.audit.record(created, models.AuditAction.CREATED, actor_id)
        self.recompute_aggregate(created.student_id, created.subject_id)
        return created

    def update(self, grade_id: str, actor_id: str, actor_role: models.UserRole,
               score: Optional[float] = None, max_score: Optional[float] = None,
               description: Optional[str] = None) -> models.Grade:
        """Change a score. Locked grades may only be changed by an admin.

        A non-admin edit of an unlocked grade locks it again.
        """
        with self._session() as session:
            grade = session.get(models.Grade, grade_id)
            if not grade:
                raise NotFoundError(f"grade not found: {grade_id}")
            if grade.locked and actor_role != models.UserRole.ADMIN:
                raise PermissionDeniedError("grade is locked; request an edit first")
            old_score, old_letter = grade.score, grade.letter_grade
            if score is not None:
                grade.score = score
            if max_score is not None:
                grade.max_score = max_score
            if description is not None:
                grade.description = description
            result = grading.validate_grade(grade)
            if not result.is_valid:
                raise ValueError("Grade validation failed: " + ", ".join(result.errors))
            grade.percentage = grading.calculate_percentage(grade.score, grade.max_score)
            grade.letter_grade = grading.letter_grade(grade.percentage)
            grade.edit_requested = False
            if actor_role != models.UserRole.ADMIN:
                grade.locked = True
                grade.locked_at = models.utcnow()
                grade.locked_by = actor_id
            session.add(grade)
            session.commit()
            session.refresh(grade)
        self.audit.record(grade, models.AuditAction.UPDATED, actor_id, old_value=old_score, old_letter_grade=old_letter)
        self.recompute_aggregate(grade.student_id, grade.subject_id)
        return grade

    def delete(self, grade_id: str, actor_id: str, reason: str = "") -> None:
        """Remove a grade and roll its aggregate back.

        Deleting the last grade of a student in a subject removes the
        aggregate as well.
        """
        with self._session() as session:
            grade = session.get(models.Grade, grade_id)
            if not grade:
                raise NotFoundError(f"grade not found: {grade_id}")
            session.delete(grade)
            session.commit()
        self.audit.record(grade, models.AuditAction.DELETED, actor_id, reason=reason)
        self.recompute_aggregate(grade.student_id, grade.subject_id,
                                 semester=grade.semester, academic_year=grade.academic_year)

    def get(self, grade_id: str) -> models.Grade:
        with self._session() as session:
            grade = session.get(models.Grade, grade_id)
        if not grade:
            raise NotFoundError(f"grade not found: {grade_id}")
        return grade

    def _list(self, *conditions) -> List[models.Grade]:
        stmt = select(models.Grade).where(*conditions).order_by(models.Grade.date_recorded.desc())
        with self._session() as session:
            return session.exec(stmt).all()

    def list_by_student(self, student_id: str) -> List[models.Grade]:
        return self._list(models.Grade.student_id == student_id)

    def list_by_subject(self, subject_id: str) -> List[models.Grade]:
        return self._list(models.Grade.subject_id == subject_id)

    def list_by_teacher(self, teacher_id: str) -> List[models.Grade]:
        return self._list(models.Grade.teacher_id == teacher_id)

    def list_by_student_and_subject(self, student_id: str, subject_id: str) -> List[models.Grade]:
        return self._list(models.Grade.student_id == student_id, models.Grade.subject_id == subject_id)

    def find_for_period(self, student_id: str, subject_id: str, period: models.GradePeriod) -> Optional[models.Grade]:
        grades = self._list(
            models.Grade.student_id == student_id,
            models.Grade.subject_id == subject_id,
            models.Grade.grade_period == period.value,
        )
        return grades[0] if grades else None

    @staticmethod
    def aggregate_id(student_id: str, subject_id: str, semester: str, academic_year: str) -> str:
        return f"{student_id}_{subject_id}_{semester}_{academic_year}"

    def recompute_aggregate(self, student_id: str, subject_id: str, semester: Optional[str] = None,
                            academic_year: Optional[str] = None) -> Optional[models.GradeAggregate]:
        """Rebuild the student's aggregate for a subject from the latest grade per period.

        With no grades left the aggregate for `semester`/`academic_year`
        is deleted and `None` returned.
        """
        grades = self.list_by_student_and_subject(student_id, subject_id)
        if not grades:
            if semester is not None and academic_year is not None:
                self._delete_aggregate(self.aggregate_id(student_id, subject_id, semester, academic_year))
            return None
        latest = {}
        for g in grades:  # newest first
            latest.setdefault(g.grade_period, g)
        prelim = latest.get(models.GradePeriod.PRELIM.value)
        midterm = latest.get(models.GradePeriod.MIDTERM.value)
        final = latest.get(models.GradePeriod.FINAL.value)
        scores = [g.score if g else None for g in (prelim, midterm, final)]
        average = grading.final_average(*scores)
        head = grades[0]
        aggregate = models.GradeAggregate(
            id=self.aggregate_id(student_id, subject_id, head.semester, head.academic_year),
            student_id=student_id,
            student_name=head.student_name,
            subject_id=subject_id,
            subject_name=head.subject_name,
            teacher_id=head.teacher_id,
            prelim_grade=scores[0],
            midterm_grade=scores[1],
            final_grade=scores[2],
            final_average=average,
            status=grading.grade_status(average).value,
            letter_grade=grading.letter_grade(average),
            semester=head.semester,
            academic_year=head.academic_year,
            academic_period_id=head.academic_period_id,
            last_updated=models.utcnow(),
        )
        with self._session() as session:
            merged = session.merge(aggregate)
            session.commit()
            session.refresh(merged)
            return merged

    def _delete_aggregate(self, aggregate_id: str) -> None:
        with self._session() as session:
            aggregate = session.get(models.GradeAggregate, aggregate_id)
            if aggregate:
                session.delete(aggregate)
                session.commit()

    def get_aggregate(self, student_id: str, subject_id: str, semester: str, academic_year: str):
        with self._session() as session:
            return session.get(models.GradeAggregate, self.aggregate_id(student_id, subject_id, semester, academic_year))

    def list_aggregates_by_student(self, student_id: str) -> List[models.GradeAggregate]:
        """Aggregates for the active period only; empty without an active period."""
        ctx = self.periods.context()
        if not ctx.is_active:
            return []
        stmt = select(models.GradeAggregate).where(
            models.GradeAggregate.student_id == student_id,
            models.GradeAggregate.academic_period_id == ctx.period_id,
        ).order_by(models.GradeAggregate.last_updated.desc())
        with self._session() as session:
            return session.exec(stmt).all()

    def list_aggregates_by_subject(self, subject_id: str) -> List[models.GradeAggregate]:
        stmt = select(models.GradeAggregate).where(
            models.GradeAggregate.subject_id == subject_id
        ).order_by(models.GradeAggregate.last_updated.desc())
        with self._session() as session:
            return session.exec(stmt).all()

    def class_average_for_subject(self, subject_id: str) -> Dict[str, Optional[float]]:
        grades = self.list_by_subject(subject_id)
        return {
            period.value: grading.class_average(g.score for g in grades if g.grade_period == period.value)
            for period in models.GradePeriod
        }

    def _patch(self, grade_id: str, **changes) -> models.Grade:
        with self._session() as session:
            grade = session.get(models.Grade, grade_id)
            if not grade:
                raise NotFoundError(f"grade not found: {grade_id}")
            for key, value in changes.items():
                setattr(grade, key, value)
            session.add(grade)
            session.commit()
            session.refresh(grade)
            return grade

    def request_edit(self, grade_id: str) -> models.Grade:
        grade = self.get(grade_id)
        if not grade.locked:
            raise ValueError("grade is not locked")
        if grade.edit_requested:
            raise ValueError("an edit request is already pending for this grade")
        return self._patch(grade_id, edit_requested=True)

    def unlock_for_edit(self, grade_id: str, admin_id: str) -> models.Grade:
        grade = self.get(grade_id)
        if not grade.edit_requested:
            raise ValueError("no edit request pending for this grade")
        return self._patch(grade_id, locked=False, edit_requested=False,
                           unlocked_by=admin_id, unlocked_at=models.utcnow())

    def reject_edit_request(self, grade_id: str, admin_id: str) -> models.Grade:
        grade = self.get(grade_id)
        if not grade.edit_requested:
            raise ValueError("no edit request pending for this grade")
        logger.info("grade_edit_rejected grade_id=%s admin=%s", grade_id, admin_id)
        return self._patch(grade_id, edit_requested=False)

    def list_edit_requests(self) -> List[models.Grade]:
        return self._list(models.Grade.edit_requested == True)  # noqa: E712

"""Application composition root.

`Container` assembles the object graph once per application: the
database engine and the auth client are handed in from outside, every
repository and service is built lazily on first access and then cached
for the lifetime of the container.

    container = Container(engine=engine, auth=auth_client).build()
    container.grade_service.record_grade(...)

`RequestScope` is the per-request layer on top of it. It carries the
authenticated principal, which the container cannot know about.
"""

import logging
import threading
from typing import Callable, Dict, Optional

from . import models, repositories, services
from .auth import AuthClient
from .config import Settings, settings as default_settings
from .database import build_engine, create_db_and_tables
from .errors import MissingDependencyError

logger = logging.getLogger("academic_tracker.container")


class Container:
    """Singleton-scoped provider of repositories and services.

    Every accessor goes through `_get`, which builds the instance under a
    lock the first time and returns the cached one afterwards, so
    concurrent first access still produces a single instance.
    """

    def __init__(self, engine=None, auth: Optional[AuthClient] = None, settings: Optional[Settings] = None):
        self.engine = engine
        self.auth = auth
        self.settings = settings or default_settings
        self._instances: Dict[str, object] = {}
        # reentrant: service factories resolve their repositories under the lock
        self._lock = threading.RLock()

    def _require(self, name: str):
        value = getattr(self, name)
        if value is None:
            raise MissingDependencyError(name, type(self).__name__)
        return value

    def build(self) -> "Container":
        """Check the external handles and return the container."""
        self._require("engine")
        self._require("auth")
        logger.info("container_built engine=%s", self.engine.url)
        return self

    def _get(self, name: str, factory: Callable[[], object]):
        instance = self._instances.get(name)
        if instance is not None:
            return instance
        with self._lock:
            instance = self._instances.get(name)
            if instance is None:
                instance = factory()
                self._instances[name] = instance
                logger.debug("dependency_created %s", name)
        return instance

    # repositories

    @property
    def users(self) -> repositories.UserRepository:
        return self._get("users", lambda: repositories.UserRepository(self._require("engine"), self._require("auth")))

    @property
    def login_attempts(self) -> repositories.LoginAttemptRepository:
        return self._get(
            "login_attempts",
            lambda: repositories.LoginAttemptRepository.from_settings(self._require("engine"), self.settings),
        )

    @property
    def pre_registrations(self) -> repositories.PreRegistrationRepository:
        return self._get("pre_registrations", lambda: repositories.PreRegistrationRepository(self._require("engine")))

    @property
    def periods(self) -> repositories.AcademicPeriodRepository:
        return self._get("periods", lambda: repositories.AcademicPeriodRepository(self._require("engine")))

    @property
    def year_levels(self) -> repositories.YearLevelRepository:
        return self._get("year_levels", lambda: repositories.YearLevelRepository(self._require("engine")))

    @property
    def courses(self) -> repositories.CourseRepository:
        return self._get(
            "courses",
            lambda: repositories.CourseRepository(self._require("engine"), self.periods, self.year_levels),
        )

    @property
    def subjects(self) -> repositories.SubjectRepository:
        return self._get("subjects", lambda: repositories.SubjectRepository(self._require("engine"), self.periods))

    @property
    def applications(self) -> repositories.TeacherApplicationRepository:
        return self._get("applications", lambda: repositories.TeacherApplicationRepository(self._require("engine")))

    @property
    def student_applications(self) -> repositories.StudentApplicationRepository:
        return self._get(
            "student_applications",
            lambda: repositories.StudentApplicationRepository(self._require("engine")),
        )

    @property
    def enrollments(self) -> repositories.EnrollmentRepository:
        return self._get("enrollments", lambda: repositories.EnrollmentRepository(self._require("engine")))

    @property
    def audit_trail(self) -> repositories.AuditTrailRepository:
        return self._get("audit_trail", lambda: repositories.AuditTrailRepository(self._require("engine")))

    @property
    def grades(self) -> repositories.GradeRepository:
        return self._get(
            "grades",
            lambda: repositories.GradeRepository(self._require("engine"), self.periods, self.audit_trail),
        )

    # services

    @property
    def auth_service(self) -> services.AuthService:
        return self._get("auth_service", lambda: services.AuthService(
            self.users, self.login_attempts, self.pre_registrations, self.settings.SCHOOL_DOMAIN,
        ))

    @property
    def add_subject_service(self) -> services.AddSubjectService:
        return self._get("add_subject_service", lambda: services.AddSubjectService(
            self.subjects, self.periods, self.courses,
        ))

    @property
    def admin_subjects_service(self) -> services.AdminSubjectsService:
        return self._get("admin_subjects_service", lambda: services.AdminSubjectsService(self.subjects))

    @property
    def admin_applications_service(self) -> services.AdminApplicationsService:
        return self._get(
            "admin_applications_service",
            lambda: services.AdminApplicationsService(self.applications, self.subjects),
        )

    @property
    def admin_users_service(self) -> services.AdminUsersService:
        return self._get("admin_users_service", lambda: services.AdminUsersService(self.users, self.courses))

    @property
    def teacher_application_service(self) -> services.TeacherApplicationService:
        return self._get(
            "teacher_application_service",
            lambda: services.TeacherApplicationService(self.applications, self.subjects),
        )

    @property
    def enrollment_service(self) -> services.EnrollmentService:
        return self._get("enrollment_service", lambda: services.EnrollmentService(self.enrollments, self.subjects))

    @property
    def student_application_service(self) -> services.StudentApplicationService:
        return self._get("student_application_service", lambda: services.StudentApplicationService(
            self.student_applications, self.subjects, self.users, self.enrollment_service,
        ))

    @property
    def grade_service(self) -> services.GradeService:
        return self._get("grade_service", lambda: services.GradeService(
            self.grades, self.subjects, self.enrollments, self.users,
        ))

    @property
    def roster_import_service(self) -> services.RosterImportService:
        return self._get(
            "roster_import_service",
            lambda: services.RosterImportService(self.pre_registrations, self.users),
        )

    def scope(self, principal: Optional[models.User]) -> "RequestScope":
        return RequestScope(self, principal).build()


class RequestScope:
    """Objects tied to one authenticated request."""

    def __init__(self, container: Container, principal: Optional[models.User] = None):
        self.container = container
        self.principal = principal

    def build(self) -> "RequestScope":
        if self.principal is None:
            raise MissingDependencyError("principal", type(self).__name__)
        return self

    @property
    def role(self) -> models.UserRole:
        return models.UserRole.parse(self.principal.role)

    def __getattr__(self, name):
        # everything else is shared with the application container
        if name == "container":
            raise AttributeError(name)
        return getattr(self.container, name)


def build_container(settings: Optional[Settings] = None, create_tables: bool = True) -> Container:
    """Create the engine and auth client from settings and wire a container."""
    settings = settings or default_settings
    engine = build_engine(settings.DATABASE_URL)
    if create_tables:
        create_db_and_tables(engine)
    auth = AuthClient.from_settings(engine, settings)
    return Container(engine=engine, auth=auth, settings=settings).build()


_default: Optional[Container] = None
_default_lock = threading.Lock()


def get_container() -> Container:
    """Application-wide container, created on first use."""
    global _default
    if _default is None:
        with _default_lock:
            if _default is None:
                _default = build_container()
    return _default

"""FastAPI application entrypoint and HTTP controllers.

Controllers are intentionally thin: they accept requests, pull the
services they need from the container (or the request scope) and
return JSON responses. Domain errors are translated to HTTP status
codes by the exception handlers registered below.

Endpoint groups:
- /auth/...     registration, sign-in by email or id, activation
- /admin/...    periods, courses, subjects, applications, users, rosters,
                grade edits and the grade audit trail
- /teacher/...  subject applications, student applications, grade entry,
                class reports
- /student/...  subject applications, enrollment and grades
"""

import json
import logging
import os
import time
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from . import models
from .config import settings
from .container import Container, RequestScope, get_container
from .deps import get_current_user, require_role
from .errors import (
    AccountLockedError,
    InvalidCredentialsError,
    NotFoundError,
    PermissionDeniedError,
)
from .schemas import (
    ActivateIn,
    ApplicationIn,
    ChangePasswordIn,
    CourseIn,
    DepartmentIn,
    EnrollIn,
    GradeIn,
    GradeUpdateIn,
    IdLoginIn,
    LoginIn,
    PeriodIn,
    RegisterIn,
    ReviewIn,
    RoleIn,
    SubjectIn,
    TokenOut,
    UserStatusIn,
)
from .utils.rate_limit import InMemoryRateLimiter

app = FastAPI(title="Smart Academic Tracker API")
logger = logging.getLogger("academic_tracker.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
_login_rate_limiter = InMemoryRateLimiter(
    max_requests=int(os.getenv("LOGIN_RATE_LIMIT_PER_MIN", "20")),
    window_seconds=int(os.getenv("LOGIN_RATE_LIMIT_WINDOW_SECONDS", "60")),
)

ADMIN = require_role(models.UserRole.ADMIN)
TEACHER = require_role(models.UserRole.TEACHER)
STUDENT = require_role(models.UserRole.STUDENT)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    context = {
        "request_id": req_id,
        "path": request.url.path,
        "method": request.method,
        "client": request.client.host if request.client else "unknown",
    }
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        context["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception("request_failed %s", json.dumps(context, ensure_ascii=True))
        raise
    response.headers["X-Request-ID"] = req_id
    context["status_code"] = response.status_code
    context["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info("request_done %s", json.dumps(context, ensure_ascii=True))
    return response


@app.exception_handler(AccountLockedError)
async def _locked(request: Request, exc: AccountLockedError):
    return JSONResponse(status_code=423, content={
        "detail": "Account temporarily locked due to too many failed attempts.",
        "locked_until": exc.locked_until.isoformat(),
    })


@app.exception_handler(InvalidCredentialsError)
async def _invalid_credentials(request: Request, exc: InvalidCredentialsError):
    content = {"detail": str(exc)}
    if exc.remaining_attempts is not None:
        content["remaining_attempts"] = exc.remaining_attempts
    return JSONResponse(status_code=401, content=content)


@app.exception_handler(PermissionDeniedError)
async def _permission_denied(request: Request, exc: PermissionDeniedError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def _bad_request(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def _enforce_login_rate_limit(request: Request) -> None:
    key = f"{request.client.host if request.client else 'unknown'}:{request.url.path}"
    allowed, retry_after = _login_rate_limiter.allow(key)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


# auth

@app.post("/auth/register", status_code=201)
def register(payload: RegisterIn, container: Container = Depends(get_container)):
    """Create a manual account. Admin accounts cannot be self-registered."""
    if payload.role == models.UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="admin accounts cannot be self-registered")
    profile = payload.model_dump(exclude={"email", "password", "first_name", "last_name", "role"}, exclude_none=True)
    user = container.auth_service.sign_up(
        payload.email, payload.password, payload.first_name, payload.last_name, payload.role, **profile
    )
    return {"id": user.id, "email": user.email, "role": user.role}


@app.post("/auth/login", response_model=TokenOut)
def login(payload: LoginIn, request: Request, container: Container = Depends(get_container)):
    _enforce_login_rate_limit(request)
    return container.auth_service.sign_in(payload.email, payload.password)


@app.post("/auth/login/id", response_model=TokenOut)
def login_with_id(payload: IdLoginIn, request: Request, container: Container = Depends(get_container)):
    """Sign in with a student or teacher id.

    Repeated failures lock the id (423); the 401 body carries the
    number of attempts left.
    """
    _enforce_login_rate_limit(request)
    return container.auth_service.sign_in_with_id(
        payload.institutional_id, payload.password, payload.role, ip_address=_client_ip(request)
    )


@app.post("/auth/activate", status_code=201)
def activate(payload: ActivateIn, container: Container = Depends(get_container)):
    user = container.auth_service.activate_account(
        payload.institutional_id, payload.password, payload.confirm_password, payload.role
    )
    return {"id": user.id, "email": user.email, "role": user.role}


@app.get("/auth/me")
def me(user: models.User = Depends(get_current_user)):
    return user


@app.post("/auth/password")
def change_password(payload: ChangePasswordIn, user: models.User = Depends(get_current_user),
                    container: Container = Depends(get_container)):
    container.auth_service.change_password(user, payload.current_password, payload.new_password)
    return {"status": "ok"}


@app.get("/auth/id-exists")
def id_exists(institutional_id: str, role: models.UserRole = models.UserRole.STUDENT,
              container: Container = Depends(get_container)):
    return {"exists": container.auth_service.check_id_exists(institutional_id, role)}


# admin

@app.post("/admin/periods", status_code=201)
def create_period(payload: PeriodIn, scope: RequestScope = Depends(ADMIN)):
    period = models.AcademicPeriod(
        name=payload.name or f"{payload.semester.value} {payload.academic_year}",
        semester=payload.semester.value,
        academic_year=payload.academic_year,
        start_date=payload.start_date,
        end_date=payload.end_date,
        created_by=scope.principal.id,
    )
    return scope.periods.create(period, make_current=payload.make_current)


@app.get("/admin/periods")
def list_periods(scope: RequestScope = Depends(ADMIN)):
    return scope.periods.list_all()


@app.post("/admin/periods/{period_id}/activate")
def activate_period(period_id: str, scope: RequestScope = Depends(ADMIN)):
    return scope.periods.set_active(period_id)


@app.post("/admin/subjects", status_code=201)
def add_subject(payload: SubjectIn, scope: RequestScope = Depends(ADMIN)):
    return scope.add_subject_service.add_subject(**payload.model_dump())


@app.get("/admin/subjects")
def list_subjects(scope: RequestScope = Depends(ADMIN)):
    return scope.admin_subjects_service.list_subjects()


@app.delete("/admin/subjects/{subject_id}")
def delete_subject(subject_id: str, scope: RequestScope = Depends(ADMIN)):
    return scope.admin_subjects_service.delete_subject(subject_id)


@app.get("/admin/applications")
def list_applications(status: Optional[models.ApplicationStatus] = None, scope: RequestScope = Depends(ADMIN)):
    return scope.admin_applications_service.list_applications(status)


@app.post("/admin/applications/dedupe")
def dedupe_applications(keep_most_recent: bool = True, scope: RequestScope = Depends(ADMIN)):
    return {"deleted": scope.admin_applications_service.remove_duplicates(keep_most_recent)}


@app.post("/admin/applications/{application_id}/approve")
def approve_application(application_id: str, payload: ReviewIn, scope: RequestScope = Depends(ADMIN)):
    return scope.admin_applications_service.approve(application_id, scope.principal.id, payload.comments)


@app.post("/admin/applications/{application_id}/reject")
def reject_application(application_id: str, payload: ReviewIn, scope: RequestScope = Depends(ADMIN)):
    return scope.admin_applications_service.reject(application_id, scope.principal.id, payload.comments)


@app.get("/admin/users")
def list_users(role: Optional[models.UserRole] = None, scope: RequestScope = Depends(ADMIN)):
    return scope.admin_users_service.list_users(role)


@app.post("/admin/users/{user_id}/status")
def set_user_status(user_id: str, payload: UserStatusIn, scope: RequestScope = Depends(ADMIN)):
    return scope.admin_users_service.set_status(scope.principal, user_id, payload.active)


@app.post("/admin/users/{user_id}/role")
def change_user_role(user_id: str, payload: RoleIn, scope: RequestScope = Depends(ADMIN)):
    return scope.admin_users_service.change_role(scope.principal, user_id, payload.role)


@app.post("/admin/users/{user_id}/department")
def set_teacher_department(user_id: str, payload: DepartmentIn, scope: RequestScope = Depends(ADMIN)):
    return scope.admin_users_service.set_department(user_id, payload.department_course_id)


@app.post("/admin/users/{user_id}/unlock")
def unlock_user(user_id: str, scope: RequestScope = Depends(ADMIN)):
    """Clear the failed sign-in counter for the user's institutional id."""
    user = scope.users.get(user_id)
    if not user:
        raise NotFoundError(f"user not found: {user_id}")
    role = models.UserRole.parse(user.role)
    institutional_id = user.teacher_id if role == models.UserRole.TEACHER else user.student_id
    if not institutional_id:
        raise HTTPException(status_code=400, detail="user has no institutional id")
    return {"unlocked": scope.auth_service.unlock(institutional_id, role)}


@app.post("/admin/courses", status_code=201)
def create_course(payload: CourseIn, scope: RequestScope = Depends(ADMIN)):
    """Create a course together with its year levels."""
    return scope.courses.create(models.Course(**payload.model_dump()))


@app.get("/admin/courses")
def list_courses(scope: RequestScope = Depends(ADMIN)):
    return scope.courses.list_all()


@app.get("/admin/courses/{course_id}/year-levels")
def list_year_levels(course_id: str, scope: RequestScope = Depends(ADMIN)):
    scope.courses.get(course_id)
    return scope.year_levels.list_by_course(course_id)


@app.delete("/admin/courses/{course_id}")
def delete_course(course_id: str, scope: RequestScope = Depends(ADMIN)):
    scope.courses.delete(course_id)
    return {"deleted": course_id}


@app.post("/admin/roster/import")
def import_roster(
    file: UploadFile = File(...),
    role: models.UserRole = Form(default=models.UserRole.STUDENT),
    dry_run: bool = Form(default=False),
    scope: RequestScope = Depends(ADMIN),
):
    """Upload a CSV roster of students or teachers for later activation."""
    if not file.filename:
        raise HTTPException(status_code=400, detail="no file")
    if not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="roster must be a .csv file")
    content = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="file too large")
    return scope.roster_import_service.import_csv(content, role, dry_run=dry_run)


@app.get("/admin/grades/edit-requests")
def list_edit_requests(scope: RequestScope = Depends(ADMIN)):
    return scope.grade_service.list_edit_requests()


@app.post("/admin/grades/edit-requests/{grade_id}/unlock")
def unlock_grade(grade_id: str, scope: RequestScope = Depends(ADMIN)):
    return scope.grade_service.unlock(scope.principal, grade_id)


@app.post("/admin/grades/edit-requests/{grade_id}/reject")
def reject_grade_edit(grade_id: str, scope: RequestScope = Depends(ADMIN)):
    return scope.grade_service.reject_edit(scope.principal, grade_id)


@app.delete("/admin/grades/{grade_id}")
def delete_grade(grade_id: str, reason: str = "", scope: RequestScope = Depends(ADMIN)):
    scope.grade_service.delete_grade(scope.principal, grade_id, reason)
    return {"deleted": grade_id}


@app.get("/admin/grades/{grade_id}/audit")
def grade_history(grade_id: str, scope: RequestScope = Depends(ADMIN)):
    return scope.grade_service.grade_history(grade_id)


@app.get("/admin/audit")
def audit_trail(
    student_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    teacher_id: Optional[str] = None,
    action: Optional[models.AuditAction] = None,
    scope: RequestScope = Depends(ADMIN),
):
    """Grade changes, newest first, filtered by any combination of the parameters."""
    return scope.grade_service.audit_entries(student_id, subject_id, teacher_id, action)


@app.get("/admin/student-applications")
def list_student_applications(status: Optional[models.StudentApplicationStatus] = None,
                              scope: RequestScope = Depends(ADMIN)):
    return scope.student_application_service.list_all(status)


# teacher

@app.get("/teacher/subjects/available")
def available_for_teacher(scope: RequestScope = Depends(TEACHER)):
    return scope.teacher_application_service.available_subjects(scope.principal)


@app.get("/teacher/subjects")
def my_subjects(scope: RequestScope = Depends(TEACHER)):
    return scope.teacher_application_service.assigned_subjects(scope.principal)


@app.post("/teacher/applications", status_code=201)
def apply_for_subject(payload: ApplicationIn, scope: RequestScope = Depends(TEACHER)):
    return scope.teacher_application_service.apply(scope.principal, payload.subject_id, payload.reason)


@app.get("/teacher/applications")
def my_applications(scope: RequestScope = Depends(TEACHER)):
    return scope.teacher_application_service.list_mine(scope.principal)


@app.post("/teacher/applications/{application_id}/withdraw")
def withdraw_application(application_id: str, scope: RequestScope = Depends(TEACHER)):
    return scope.teacher_application_service.withdraw(scope.principal, application_id)


@app.post("/teacher/grades", status_code=201)
def record_grade(payload: GradeIn, scope: RequestScope = Depends(TEACHER)):
    return scope.grade_service.record_grade(
        scope.principal,
        payload.student_id,
        payload.subject_id,
        payload.grade_period.value,
        payload.score,
        payload.max_score,
        payload.description,
    )


@app.put("/teacher/grades/{grade_id}")
def update_grade(grade_id: str, payload: GradeUpdateIn, scope: RequestScope = Depends(TEACHER)):
    return scope.grade_service.update_grade(scope.principal, grade_id, payload.score, payload.max_score)


@app.post("/teacher/grades/{grade_id}/request-edit")
def request_grade_edit(grade_id: str, scope: RequestScope = Depends(TEACHER)):
    return scope.grade_service.request_edit(scope.principal, grade_id)


@app.get("/teacher/subjects/{subject_id}/report")
def subject_report(subject_id: str, scope: RequestScope = Depends(TEACHER)):
    return scope.grade_service.subject_report(scope.principal, subject_id)


@app.get("/teacher/student-applications")
def student_applications_for_teacher(status: Optional[models.StudentApplicationStatus] = None,
                                     scope: RequestScope = Depends(TEACHER)):
    return scope.student_application_service.list_for_teacher(scope.principal, status)


@app.post("/teacher/student-applications/{application_id}/approve")
def approve_student_application(application_id: str, payload: ReviewIn, scope: RequestScope = Depends(TEACHER)):
    """Approve a student's application and enroll them in the subject."""
    return scope.student_application_service.approve(scope.principal, application_id, payload.comments)


@app.post("/teacher/student-applications/{application_id}/reject")
def reject_student_application(application_id: str, payload: ReviewIn, scope: RequestScope = Depends(TEACHER)):
    return scope.student_application_service.reject(scope.principal, application_id, payload.comments)


# student

@app.get("/student/subjects")
def student_subjects(scope: RequestScope = Depends(STUDENT)):
    return scope.enrollment_service.available_subjects()


@app.post("/student/enrollments", status_code=201)
def enroll(payload: EnrollIn, scope: RequestScope = Depends(STUDENT)):
    return scope.enrollment_service.enroll(scope.principal, payload.subject_id)


@app.delete("/student/enrollments/{subject_id}")
def unenroll(subject_id: str, scope: RequestScope = Depends(STUDENT)):
    return {"unenrolled": scope.enrollment_service.unenroll(scope.principal, subject_id)}


@app.get("/student/enrollments")
def my_enrollments(scope: RequestScope = Depends(STUDENT)):
    return scope.enrollment_service.list_for_student(scope.principal)


@app.get("/student/grades")
def my_grades(scope: RequestScope = Depends(STUDENT)):
    return scope.grade_service.student_summary(scope.principal)


@app.post("/student/applications", status_code=201)
def apply_to_subject(payload: ApplicationIn, scope: RequestScope = Depends(STUDENT)):
    return scope.student_application_service.apply(scope.principal, payload.subject_id, payload.reason)


@app.get("/student/applications")
def my_subject_applications(scope: RequestScope = Depends(STUDENT)):
    return scope.student_application_service.list_mine(scope.principal)


@app.delete("/student/applications/{application_id}")
def cancel_subject_application(application_id: str, scope: RequestScope = Depends(STUDENT)):
    scope.student_application_service.cancel(scope.principal, application_id)
    return {"cancelled": application_id}

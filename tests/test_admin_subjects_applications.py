import pytest

from academic_tracker import models
from academic_tracker.errors import NotFoundError, PermissionDeniedError

TEACHER = models.UserRole.TEACHER


def _add(container, code="IT101", subject_type=models.SubjectType.MAJOR, **kw):
    kw.setdefault("course_id", "BSIT")
    kw.setdefault("year_level_id", "BSIT-1")
    return container.add_subject_service.add_subject(
        name=f"Subject {code}", code=code, description="", credits=3, subject_type=subject_type, **kw,
    )


def test_add_subject_uses_active_period(container, active_period, catalog):
    subject = _add(container, code="it101", number_of_sections=2)
    assert subject.code == "IT101"
    assert subject.sections == ["IT101A", "IT101B"]
    assert subject.academic_period_id == active_period.id
    assert subject.semester == active_period.semester
    assert subject.academic_year == active_period.academic_year


def test_add_subject_for_selected_period(container, active_period, catalog):
    summer = container.periods.create(models.AcademicPeriod(semester="Summer Class", academic_year="2024-2025"))
    subject = _add(container, academic_period_id=summer.id)
    assert subject.academic_period_id == summer.id
    assert subject.semester == "Summer Class"
    # not part of the active period's listing
    assert container.admin_subjects_service.list_subjects() == []


def test_add_subject_period_errors(container):
    with pytest.raises(ValueError, match="No active academic period"):
        _add(container)
    with pytest.raises(NotFoundError, match="Selected academic period not found"):
        _add(container, academic_period_id="missing")


def test_add_subject_validation(container, active_period, catalog):
    with pytest.raises(ValueError):
        _add(container, code=" ")
    with pytest.raises(ValueError):
        _add(container, number_of_sections=27)


def test_delete_subject_returns_refreshed_list(container, active_period, catalog):
    keep = _add(container, code="IT101")
    drop = _add(container, code="IT102")
    remaining = container.admin_subjects_service.delete_subject(drop.id)
    assert [s.id for s in remaining] == [keep.id]


def test_apply_approve_assigns_teacher(container, active_period, catalog, make_user):
    teacher = make_user(TEACHER, department_course_id="BSIT")
    admin = make_user(models.UserRole.ADMIN)
    subject = _add(container)
    application = container.teacher_application_service.apply(teacher, subject.id, "I taught this before")
    assert application.status == "PENDING"
    assert application.subject_code == "IT101"

    approved = container.admin_applications_service.approve(application.id, admin.id, "welcome")
    assert approved.status == "APPROVED"
    assert approved.reviewed_by == admin.id
    assigned = container.subjects.get(subject.id)
    assert assigned.teacher_id == teacher.id
    assert assigned.teacher_name == teacher.full_name
    assert [s.id for s in container.teacher_application_service.assigned_subjects(teacher)] == [subject.id]
    assert container.teacher_application_service.available_subjects(teacher) == []

    with pytest.raises(ValueError, match="already approved"):
        container.admin_applications_service.reject(application.id, admin.id)


def test_second_approval_for_assigned_subject_fails(container, active_period, catalog, make_user):
    first = make_user(TEACHER, department_course_id="BSIT")
    second = make_user(TEACHER, department_course_id="BSIT")
    subject = _add(container)
    app1 = container.teacher_application_service.apply(first, subject.id)
    app2 = container.teacher_application_service.apply(second, subject.id)
    container.admin_applications_service.approve(app1.id, "admin")
    with pytest.raises(ValueError, match="already assigned"):
        container.admin_applications_service.approve(app2.id, "admin")
    pending = container.admin_applications_service.list_applications(models.ApplicationStatus.PENDING)
    assert [a.id for a in pending] == [app2.id]


def test_apply_rules(container, active_period, catalog, make_user):
    it_teacher = make_user(TEACHER, department_course_id="BSIT")
    ed_teacher = make_user(TEACHER, department_course_id="BSED")
    student = make_user()
    major = _add(container, code="IT101")
    minor = _add(container, code="GE101", subject_type=models.SubjectType.MINOR)
    svc = container.teacher_application_service

    with pytest.raises(PermissionDeniedError):
        svc.apply(student, major.id)
    with pytest.raises(PermissionDeniedError):
        svc.apply(ed_teacher, major.id)
    assert svc.apply(ed_teacher, minor.id).status == "PENDING"

    svc.apply(it_teacher, major.id)
    with pytest.raises(ValueError, match="active application"):
        svc.apply(it_teacher, major.id)
    with pytest.raises(NotFoundError):
        svc.apply(it_teacher, "missing")


def test_reapply_after_rejection_and_withdraw(container, active_period, catalog, make_user):
    teacher = make_user(TEACHER, department_course_id="BSIT")
    other = make_user(TEACHER, department_course_id="BSIT")
    subject = _add(container)
    svc = container.teacher_application_service
    first = svc.apply(teacher, subject.id)
    rejected = container.admin_applications_service.reject(first.id, "admin", "full")
    assert rejected.admin_comments == "full"

    second = svc.apply(teacher, subject.id)
    with pytest.raises(PermissionDeniedError):
        svc.withdraw(other, second.id)
    assert svc.withdraw(teacher, second.id).status == "WITHDRAWN"
    with pytest.raises(ValueError, match="only pending"):
        svc.withdraw(teacher, second.id)
    assert sorted(a.status for a in svc.list_mine(teacher)) == ["REJECTED", "WITHDRAWN"]


def test_remove_duplicate_applications(container):
    for _ in range(3):
        container.applications.create(models.TeacherApplication(teacher_id="t1", subject_id="s1"))
    assert container.admin_applications_service.remove_duplicates() == 2
    assert len(container.admin_applications_service.list_applications()) == 1


def test_course_creates_year_levels(container, active_period):
    course = container.courses.create(models.Course(name="Computer Science", code="bscs", duration=2))
    assert course.code == "BSCS"
    assert course.academic_period_id == active_period.id
    levels = container.year_levels.list_by_course(course.id)
    assert [(y.id, y.name, y.has_summer_class) for y in levels] == [
        (f"{course.id}-1", "1st Year", True),
        (f"{course.id}-2", "2nd Year", False),
    ]
    with pytest.raises(ValueError, match="already in use"):
        container.courses.create(models.Course(name="Again", code="BSCS"))

    container.courses.delete(course.id)
    assert container.year_levels.list_by_course(course.id) == []


def test_course_needs_active_period(container):
    with pytest.raises(ValueError, match="No active academic period"):
        container.courses.create(models.Course(name="Computer Science", code="BSCS"))


def test_subject_must_reference_catalog(container, active_period, catalog):
    with pytest.raises(NotFoundError, match="Course not found"):
        _add(container, course_id="BSMT", year_level_id="")
    with pytest.raises(NotFoundError, match="Year level not found"):
        _add(container, year_level_id="BSIT-9")
    with pytest.raises(ValueError, match="does not belong"):
        _add(container, year_level_id="BSED-1")
    # the year level is optional
    assert _add(container, year_level_id="").course_id == "BSIT"


def test_admin_sets_teacher_department_and_role(container, catalog, make_user):
    admin = make_user(models.UserRole.ADMIN)
    teacher = make_user(TEACHER)
    svc = container.admin_users_service
    assert svc.set_department(teacher.id, "BSED").department_course_id == "BSED"
    with pytest.raises(NotFoundError):
        svc.set_department(teacher.id, "BSMT")
    assert svc.set_department(teacher.id, None).department_course_id is None
    with pytest.raises(ValueError, match="only teachers"):
        svc.set_department(make_user().id, "BSIT")

    promoted = svc.change_role(admin, teacher.id, models.UserRole.ADMIN)
    assert promoted.role == "ADMIN"
    with pytest.raises(ValueError, match="your own account"):
        svc.change_role(admin, admin.id, TEACHER)
    with pytest.raises(NotFoundError):
        svc.change_role(admin, "missing", TEACHER)

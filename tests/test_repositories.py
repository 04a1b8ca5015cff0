from datetime import datetime, timedelta, timezone

import pytest

from academic_tracker import models
from academic_tracker.errors import InvalidCredentialsError, NotFoundError
from academic_tracker.repositories import LoginAttemptRepository, SubjectRepository

PASSWORD = "Passw0rd1"


def _subject(container, code="IT101", subject_type=models.SubjectType.MAJOR, course_id="BSIT", **kw):
    return container.subjects.add_subject(
        name=f"Subject {code}", code=code, description="", credits=3,
        semester=models.Semester.FIRST_SEMESTER.value, academic_year="2024-2025",
        course_id=course_id, year_level_id="1", subject_type=subject_type, **kw,
    )


def test_user_create_and_sign_in(container, make_user):
    user = make_user(email="Ana@Example.com", first_name="Ana", last_name="Cruz", student_id="2024-0001")
    assert user.email == "ana@example.com"
    assert user.full_name == "Ana Cruz"
    assert container.users.sign_in("ana@example.com", PASSWORD).id == user.id
    assert container.users.get_by_institutional_id("2024-0001", models.UserRole.STUDENT).id == user.id
    assert not container.users.institutional_id_exists("2024-0001", models.UserRole.TEACHER)
    with pytest.raises(InvalidCredentialsError):
        container.users.sign_in("ana@example.com", "wrong")


def test_duplicate_email_is_rejected(make_user):
    make_user(email="dup@example.com")
    with pytest.raises(ValueError):
        make_user(email="dup@example.com")


def test_deactivated_user_cannot_sign_in(container, make_user):
    user = make_user()
    container.users.update_status(user.id, False)
    with pytest.raises(InvalidCredentialsError):
        container.users.sign_in(user.email, PASSWORD)
    container.users.update_status(user.id, True)
    assert container.users.sign_in(user.email, PASSWORD).id == user.id


def test_unknown_role_defaults_to_student(container, make_user):
    user = make_user(role="registrar", email="registrar@example.com")
    assert user.role == models.UserRole.STUDENT.value
    assert [u.id for u in container.users.list_by_role(models.UserRole.STUDENT)] == [user.id]


def test_only_one_period_is_current(container):
    first = container.periods.create(models.AcademicPeriod(semester="1st Semester", academic_year="2024-2025"),
                                     make_current=True)
    second = container.periods.create(models.AcademicPeriod(semester="SECOND_SEMESTER", academic_year="2024-2025"))
    assert second.semester == "2nd Semester"
    assert container.periods.get_active().id == first.id
    container.periods.set_active(second.id)
    assert container.periods.get_active().id == second.id
    assert not container.periods.get(first.id).is_current
    with pytest.raises(NotFoundError):
        container.periods.set_active("missing")


def test_invalid_semester_is_rejected(container):
    with pytest.raises(ValueError, match="Invalid semester"):
        container.periods.create(models.AcademicPeriod(semester="Winter", academic_year="2024-2025"))


def test_generate_sections():
    assert SubjectRepository.generate_sections("IT101", 3) == ["IT101A", "IT101B", "IT101C"]
    with pytest.raises(ValueError):
        SubjectRepository.generate_sections("IT101", 0)


def test_subject_create_requires_active_period(container):
    with pytest.raises(ValueError, match="No active academic period"):
        _subject(container)


def test_current_subject_listing_and_teacher_visibility(container, active_period, make_user):
    major = _subject(container, "IT101", course_id="BSIT")
    minor = _subject(container, "GE101", subject_type=models.SubjectType.MINOR, course_id="BSED")
    assert major.academic_period_id == active_period.id
    assert [s.code for s in container.subjects.list_current()] == ["GE101", "IT101"]

    it_teacher = make_user(models.UserRole.TEACHER, department_course_id="BSIT")
    ed_teacher = make_user(models.UserRole.TEACHER, department_course_id="BSED")
    assert {s.id for s in container.subjects.list_available_for_teacher(it_teacher)} == {major.id, minor.id}
    assert [s.id for s in container.subjects.list_available_for_teacher(ed_teacher)] == [minor.id]

    container.subjects.assign_teacher(major.id, it_teacher.id, it_teacher.full_name)
    assert [s.id for s in container.subjects.list_by_teacher(it_teacher.id)] == [major.id]
    assert [s.id for s in container.subjects.list_available()] == [minor.id]
    container.subjects.remove_teacher(major.id)
    assert container.subjects.get(major.id).teacher_id is None


def test_subject_delete(container, active_period):
    subject = _subject(container)
    container.subjects.delete(subject.id)
    with pytest.raises(NotFoundError):
        container.subjects.get(subject.id)
    with pytest.raises(NotFoundError):
        container.subjects.delete(subject.id)


def test_application_duplicates_keep_most_recent(container):
    repo = container.applications
    older = repo.create(models.TeacherApplication(teacher_id="t1", subject_id="s1",
                                                  applied_at=datetime(2024, 1, 1)))
    newer = repo.create(models.TeacherApplication(teacher_id="t1", subject_id="s1",
                                                  applied_at=datetime(2024, 2, 1)))
    repo.create(models.TeacherApplication(teacher_id="t2", subject_id="s1"))
    assert list(repo.find_duplicates()) == [("t1", "s1")]
    assert repo.remove_duplicates() == 1
    remaining = [a.id for a in repo.list_by_teacher("t1")]
    assert remaining == [newer.id]
    with pytest.raises(NotFoundError):
        repo.get(older.id)


def test_application_active_states(container):
    repo = container.applications
    app = repo.create(models.TeacherApplication(teacher_id="t1", subject_id="s1"))
    assert repo.has_pending("t1", "s1") and repo.has_active("t1", "s1")
    repo.reject(app.id, "admin", "not this term")
    assert not repo.has_active("t1", "s1")
    reviewed = repo.get(app.id)
    assert reviewed.reviewed_by == "admin" and reviewed.admin_comments == "not this term"
    repo.cancel(app.id)
    assert repo.list_all() == []


def test_unenroll_is_soft(container, active_period, make_user):
    student = make_user()
    subject = _subject(container)
    container.enrollments.enroll(student, subject)
    assert container.enrollments.is_enrolled(student.id, subject.id)
    assert container.enrollments.unenroll(student.id, subject.id) == 1
    assert not container.enrollments.is_enrolled(student.id, subject.id)
    assert container.enrollments.unenroll(student.id, subject.id) == 0
    assert container.enrollments.count_active_for_subject(subject.id) == 0


class _Clock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 8, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def test_login_attempts_lock_after_max(container):
    clock = _Clock()
    repo = LoginAttemptRepository(container.engine, clock=clock)
    for expected in (4, 3, 2, 1):
        assert repo.record_failure("2024-0001") == (expected, None)
    remaining, locked_until = repo.record_failure("2024-0001")
    assert remaining == 0
    assert locked_until == clock.now + timedelta(minutes=30)
    assert repo.locked_until("2024-0001") == locked_until

    clock.now += timedelta(minutes=31)
    assert repo.locked_until("2024-0001") is None
    assert repo.record_failure("2024-0001") == (4, None)


def test_login_attempts_reset_window(container):
    clock = _Clock()
    repo = LoginAttemptRepository(container.engine, clock=clock)
    repo.record_failure("T-001")
    repo.record_failure("T-001")
    clock.now += timedelta(minutes=16)
    assert repo.record_failure("T-001") == (4, None)
    assert repo.unlock("T-001")
    assert not repo.clear("T-001")


def test_timestamps_come_back_as_utc(container, make_user):
    user = make_user()
    assert container.users.get(user.id).created_at.tzinfo is not None

    repo = container.applications
    naive = repo.create(models.TeacherApplication(teacher_id="t1", subject_id="s1",
                                                  applied_at=datetime(2024, 1, 1, 9, 30)))
    manila = timezone(timedelta(hours=8))
    offset = repo.create(models.TeacherApplication(teacher_id="t2", subject_id="s1",
                                                   applied_at=datetime(2024, 1, 1, 17, 30, tzinfo=manila)))
    assert repo.get(naive.id).applied_at == datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)
    stored = repo.get(offset.id).applied_at
    assert stored.utcoffset() == timedelta(0)
    assert stored == datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)

import pytest

from academic_tracker import models
from academic_tracker.errors import NotFoundError, PermissionDeniedError

TEACHER = models.UserRole.TEACHER


@pytest.fixture
def classroom(container, active_period, catalog, make_user):
    """A subject taught by one teacher with one enrolled student."""
    teacher = make_user(TEACHER, department_course_id="BSIT")
    student = make_user(first_name="Ana", last_name="Reyes", student_id="2024-0001")
    subject = container.add_subject_service.add_subject(
        name="Programming 1", code="IT101", description="", credits=3,
        course_id="BSIT", year_level_id="BSIT-1", max_students=2,
    )
    container.subjects.assign_teacher(subject.id, teacher.id, teacher.full_name)
    container.enrollment_service.enroll(student, subject.id)
    return teacher, student, subject


def test_enroll_checks(container, classroom, make_user):
    teacher, student, subject = classroom
    svc = container.enrollment_service
    with pytest.raises(ValueError, match="already enrolled"):
        svc.enroll(student, subject.id)
    with pytest.raises(PermissionDeniedError):
        svc.enroll(teacher, subject.id)
    svc.enroll(make_user(), subject.id)
    with pytest.raises(ValueError, match="full"):
        svc.enroll(make_user(), subject.id)
    enrollment = svc.list_for_student(student)[0]
    assert enrollment.subject_code == "IT101"
    assert enrollment.student_name == "Ana Reyes"


def test_unenroll(container, classroom):
    _, student, subject = classroom
    svc = container.enrollment_service
    assert svc.unenroll(student, subject.id) == 1
    assert svc.list_for_student(student) == []
    with pytest.raises(NotFoundError):
        svc.unenroll(student, subject.id)
    # a free seat again
    svc.enroll(student, subject.id)


def test_record_grade_locks_and_builds_aggregate(container, classroom):
    teacher, student, subject = classroom
    svc = container.grade_service
    grade = svc.record_grade(teacher, student.id, subject.id, "PRELIM", 45, max_score=50)
    assert grade.percentage == pytest.approx(90.0)
    assert grade.letter_grade == "A-"
    assert grade.locked and grade.locked_by == teacher.id
    assert grade.student_name == "Ana Reyes"

    summary = svc.student_summary(student)
    (aggregate,) = summary["aggregates"]
    assert aggregate.prelim_grade == 45
    assert aggregate.status == "INCOMPLETE"
    assert aggregate.letter_grade == "INC"
    assert summary["overall_average"] is None


def test_three_periods_give_final_average(container, classroom):
    teacher, student, subject = classroom
    svc = container.grade_service
    for period, score in (("PRELIM", 80), ("MIDTERM", 90), ("FINAL", 100)):
        svc.record_grade(teacher, student.id, subject.id, period, score)
    aggregate = svc.student_summary(student)["aggregates"][0]
    assert aggregate.final_average == pytest.approx(91.0)
    assert aggregate.status == "PASSING"
    assert aggregate.letter_grade == "A-"

    report = svc.subject_report(teacher, subject.id)
    assert report["enrolled"] == 1
    assert report["class_averages"] == {"PRELIM": 80, "MIDTERM": 90, "FINAL": 100}
    assert report["class_final_average"] == pytest.approx(91.0)
    assert report["distribution"]["PASSING"] == 1


def test_record_grade_rules(container, classroom, make_user):
    teacher, student, subject = classroom
    svc = container.grade_service
    outsider = make_user(TEACHER, department_course_id="BSIT")
    with pytest.raises(PermissionDeniedError):
        svc.record_grade(outsider, student.id, subject.id, "PRELIM", 80)
    with pytest.raises(ValueError, match="not enrolled"):
        svc.record_grade(teacher, make_user().id, subject.id, "PRELIM", 80)
    with pytest.raises(NotFoundError):
        svc.record_grade(teacher, "nobody", subject.id, "PRELIM", 80)
    with pytest.raises(ValueError, match="Grade validation failed"):
        svc.record_grade(teacher, student.id, subject.id, "PRELIM", 120)
    with pytest.raises(ValueError):
        svc.record_grade(teacher, student.id, subject.id, "QUARTER", 80)
    svc.record_grade(teacher, student.id, subject.id, "PRELIM", 80)
    with pytest.raises(ValueError, match="already recorded"):
        svc.record_grade(teacher, student.id, subject.id, "PRELIM", 85)


def test_edit_request_workflow(container, classroom, make_user):
    teacher, student, subject = classroom
    admin = make_user(models.UserRole.ADMIN)
    svc = container.grade_service
    grade = svc.record_grade(teacher, student.id, subject.id, "PRELIM", 70)
    with pytest.raises(PermissionDeniedError, match="locked"):
        svc.update_grade(teacher, grade.id, 75)

    svc.request_edit(teacher, grade.id)
    with pytest.raises(ValueError, match="already pending"):
        svc.request_edit(teacher, grade.id)
    assert [g.id for g in svc.list_edit_requests()] == [grade.id]

    unlocked = svc.unlock(admin, grade.id)
    assert not unlocked.locked and unlocked.unlocked_by == admin.id
    updated = svc.update_grade(teacher, grade.id, 75)
    assert updated.score == 75 and updated.locked
    assert svc.student_summary(student)["aggregates"][0].prelim_grade == 75


def test_reject_edit_request_keeps_grade_locked(container, classroom, make_user):
    teacher, student, subject = classroom
    admin = make_user(models.UserRole.ADMIN)
    svc = container.grade_service
    grade = svc.record_grade(teacher, student.id, subject.id, "MIDTERM", 70)
    svc.request_edit(teacher, grade.id)
    rejected = svc.reject_edit(admin, grade.id)
    assert rejected.locked and not rejected.edit_requested
    with pytest.raises(ValueError, match="no edit request"):
        svc.unlock(admin, grade.id)
    other = make_user(TEACHER)
    with pytest.raises(PermissionDeniedError):
        svc.request_edit(other, grade.id)


def test_admin_grades_are_not_locked(container, classroom, make_user):
    _, student, subject = classroom
    admin = make_user(models.UserRole.ADMIN)
    grade = container.grade_service.record_grade(admin, student.id, subject.id, "FINAL", 88)
    assert not grade.locked
    assert container.grade_service.update_grade(admin, grade.id, 90).score == 90


def test_deleting_last_grade_removes_aggregate(container, classroom, make_user):
    teacher, student, subject = classroom
    admin = make_user(models.UserRole.ADMIN)
    svc = container.grade_service
    grade = svc.record_grade(teacher, student.id, subject.id, "PRELIM", 88)
    assert len(svc.student_summary(student)["aggregates"]) == 1

    with pytest.raises(PermissionDeniedError):
        svc.delete_grade(teacher, grade.id)
    svc.delete_grade(admin, grade.id, "entered for the wrong student")
    assert svc.student_summary(student)["aggregates"] == []
    assert svc.subject_report(teacher, subject.id)["aggregates"] == []
    assert container.grades.get_aggregate(student.id, subject.id, subject.semester, subject.academic_year) is None
    with pytest.raises(NotFoundError):
        svc.delete_grade(admin, grade.id)


def test_deleting_one_grade_recomputes_aggregate(container, classroom, make_user):
    teacher, student, subject = classroom
    admin = make_user(models.UserRole.ADMIN)
    svc = container.grade_service
    svc.record_grade(teacher, student.id, subject.id, "PRELIM", 80)
    midterm = svc.record_grade(teacher, student.id, subject.id, "MIDTERM", 90)
    svc.delete_grade(admin, midterm.id)
    (aggregate,) = svc.student_summary(student)["aggregates"]
    assert aggregate.prelim_grade == 80
    assert aggregate.midterm_grade is None


def test_grade_in_non_active_period_keeps_subject_period(container, classroom, make_user):
    teacher, student, _ = classroom
    summer = container.periods.create(models.AcademicPeriod(semester="Summer Class", academic_year="2024-2025"))
    subject = container.add_subject_service.add_subject(
        name="Bridging", code="IT100", description="", credits=2,
        course_id="BSIT", year_level_id="BSIT-1", academic_period_id=summer.id,
    )
    container.subjects.assign_teacher(subject.id, teacher.id, teacher.full_name)
    container.enrollment_service.enroll(student, subject.id)

    grade = container.grade_service.record_grade(teacher, student.id, subject.id, "PRELIM", 75)
    assert grade.academic_period_id == summer.id
    assert grade.semester == "Summer Class"
    aggregate = container.grades.get_aggregate(student.id, subject.id, "Summer Class", "2024-2025")
    assert aggregate.academic_period_id == summer.id


def test_grade_changes_are_audited(container, classroom, make_user):
    teacher, student, subject = classroom
    admin = make_user(models.UserRole.ADMIN)
    svc = container.grade_service
    grade = svc.record_grade(teacher, student.id, subject.id, "PRELIM", 70)
    svc.request_edit(teacher, grade.id)
    svc.unlock(admin, grade.id)
    svc.update_grade(teacher, grade.id, 95)
    svc.delete_grade(admin, grade.id, "duplicate entry")

    history = svc.grade_history(grade.id)
    assert [e.action for e in history] == ["CREATED", "UPDATED", "DELETED"]
    created, updated, deleted = history
    assert (created.old_value, created.new_value, created.actor_id) == (None, 70, teacher.id)
    assert (updated.old_value, updated.new_value) == (70, 95)
    assert (updated.old_letter_grade, updated.new_letter_grade) == ("C-", "A")
    assert (deleted.old_value, deleted.new_value, deleted.actor_id) == (95, None, admin.id)
    assert deleted.reason == "duplicate entry"
    assert deleted.teacher_id == teacher.id

    updates = svc.audit_entries(teacher_id=teacher.id, action=models.AuditAction.UPDATED)
    assert [e.id for e in updates] == [updated.id]
    assert len(svc.audit_entries(student_id=student.id)) == 3
    assert svc.audit_entries(subject_id="other") == []


def test_student_application_approval_enrolls(container, classroom, make_user):
    teacher, _, subject = classroom
    applicant = make_user(first_name="Lea", last_name="Cruz")
    svc = container.student_application_service
    application = svc.apply(applicant, subject.id, "needed for my track")
    assert application.status == "PENDING"
    assert application.course_id == "BSIT"
    with pytest.raises(ValueError, match="pending application"):
        svc.apply(applicant, subject.id)
    assert [a.id for a in svc.list_for_teacher(teacher)] == [application.id]

    outsider = make_user(TEACHER)
    with pytest.raises(PermissionDeniedError):
        svc.approve(outsider, application.id)

    approved = svc.approve(teacher, application.id, "welcome")
    assert approved.status == "APPROVED"
    assert approved.reviewed_by == teacher.id
    assert approved.teacher_comments == "welcome"
    assert container.enrollments.is_enrolled(applicant.id, subject.id)
    with pytest.raises(ValueError, match="already approved"):
        svc.reject(teacher, application.id)
    with pytest.raises(ValueError, match="already enrolled"):
        svc.apply(applicant, subject.id)


def test_student_application_rules(container, classroom, make_user):
    teacher, student, subject = classroom
    admin = make_user(models.UserRole.ADMIN)
    svc = container.student_application_service
    with pytest.raises(ValueError, match="already enrolled"):
        svc.apply(student, subject.id)
    with pytest.raises(PermissionDeniedError):
        svc.apply(teacher, subject.id)

    first = make_user()
    second = make_user()
    rejected = svc.reject(admin, svc.apply(first, subject.id).id, "section is full")
    assert rejected.status == "REJECTED"
    assert not container.enrollments.is_enrolled(first.id, subject.id)
    # a rejected student may apply again
    again = svc.apply(first, subject.id)
    assert [a.status for a in svc.list_all(models.StudentApplicationStatus.PENDING)] == ["PENDING"]

    with pytest.raises(PermissionDeniedError):
        svc.cancel(second, again.id)
    svc.cancel(first, again.id)
    assert [a.id for a in svc.list_mine(first)] == [rejected.id]


def test_student_application_approval_respects_capacity(container, classroom, make_user):
    teacher, _, subject = classroom
    svc = container.student_application_service
    pending = [svc.apply(make_user(), subject.id) for _ in range(2)]
    svc.approve(teacher, pending[0].id)
    with pytest.raises(ValueError, match="full"):
        svc.approve(teacher, pending[1].id)
    assert container.student_applications.get(pending[1].id).status == "PENDING"

"""Grade arithmetic shared by the grade repository and services.

The final average uses the standard term weights: prelim 30%, midterm
30% and final 40%. Averages are only produced once all three periods
have a score; until then the student is `INCOMPLETE`.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .models import GradePeriod, GradeStatus

PASSING_THRESHOLD = 75.0
AT_RISK_THRESHOLD = 60.0

_LETTER_CUTOFFS = (
    (97, "A+"),
    (93, "A"),
    (90, "A-"),
    (87, "B+"),
    (83, "B"),
    (80, "B-"),
    (77, "C+"),
    (73, "C"),
    (70, "C-"),
    (67, "D+"),
    (65, "D"),
)


def calculate_percentage(score: float, max_score: float) -> float:
    if max_score <= 0:
        return 0.0
    return (score / max_score) * 100


def letter_grade(value: Optional[float]) -> str:
    """Map a 0-100 value to a letter; `None` means incomplete (`INC`)."""
    if value is None:
        return "INC"
    for cutoff, letter in _LETTER_CUTOFFS:
        if value >= cutoff:
            return letter
    return "F"


def final_average(prelim: Optional[float], midterm: Optional[float], final: Optional[float]) -> Optional[float]:
    if prelim is None or midterm is None or final is None:
        return None
    return (
        prelim * GradePeriod.PRELIM.weight
        + midterm * GradePeriod.MIDTERM.weight
        + final * GradePeriod.FINAL.weight
    )


def grade_status(average: Optional[float]) -> GradeStatus:
    if average is None:
        return GradeStatus.INCOMPLETE
    if average >= PASSING_THRESHOLD:
        return GradeStatus.PASSING
    if average >= AT_RISK_THRESHOLD:
        return GradeStatus.AT_RISK
    return GradeStatus.FAILING


def completion_percentage(prelim: Optional[float], midterm: Optional[float], final: Optional[float]) -> float:
    recorded = sum(1 for g in (prelim, midterm, final) if g is not None)
    return (recorded / 3.0) * 100


def class_average(scores: Iterable[float]) -> Optional[float]:
    values = list(scores)
    if not values:
        return None
    return sum(values) / len(values)


def class_final_average(averages: Iterable[Optional[float]]) -> Optional[float]:
    return class_average(a for a in averages if a is not None)


def grade_distribution(statuses: Iterable[str]) -> Dict[str, int]:
    """Count aggregates per status; every status is present in the result."""
    counts = Counter(statuses)
    return {s.value: counts.get(s.value, 0) for s in GradeStatus}


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_score(score: float, max_score: float, grade_period: Optional[str]) -> ValidationResult:
    """Check a raw score entry before it becomes a `Grade`."""
    result = ValidationResult()
    if score < 0:
        result.errors.append("Score cannot be negative")
    if score > max_score:
        result.errors.append("Score cannot exceed maximum score")
    if score > 100:
        result.errors.append("Score cannot exceed 100")
    if max_score <= 0:
        result.errors.append("Maximum score must be greater than 0")
    if max_score > 100:
        result.errors.append("Maximum score cannot exceed 100")
    if not grade_period:
        result.errors.append("Grade period is required")
    elif grade_period not in GradePeriod.__members__:
        result.errors.append(f"Unknown grade period: {grade_period}")
    if not result.errors:
        percentage = calculate_percentage(score, max_score)
        if percentage < 50:
            result.warnings.append("Grade is below passing threshold")
        elif percentage >= 90:
            result.warnings.append("Excellent performance!")
    return result


def validate_grade(grade) -> ValidationResult:
    """Validate a `Grade` row, including the identity fields."""
    result = validate_score(grade.score, grade.max_score, grade.grade_period)
    required = (
        ("student_id", "Student ID is required"),
        ("subject_id", "Subject ID is required"),
        ("teacher_id", "Teacher ID is required"),
        ("student_name", "Student name is required"),
        ("subject_name", "Subject name is required"),
    )
    for attr, message in required:
        if not (getattr(grade, attr) or "").strip():
            result.errors.append(message)
    return result

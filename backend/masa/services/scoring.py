"""
MASA scoring: total score, severity bucket, completion and score trend.

All functions are pure; they never touch storage.
"""
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Mapping, Optional, Sequence, Union

from ..models.areas import ASSESSMENT_AREAS, AREA_COUNT

GradeKey = Union[int, str]
Grades = Mapping[GradeKey, Optional[int]]

# Inclusive lower bounds of each severity bucket
NORMAL_MIN_SCORE = 178
MILD_MIN_SCORE = 168
MODERATE_MIN_SCORE = 139

# Minimum number of assessments before a trend is reported
TREND_MIN_POINTS = 3
# Half-average difference (points) that counts as a change
TREND_THRESHOLD = 5


class Severity(str, Enum):
    NORMAL = "normal"
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"

    @property
    def label(self) -> str:
        return SEVERITY_LABELS[self]


SEVERITY_LABELS = {
    Severity.NORMAL: "No abnormality",
    Severity.MILD: "Mild dysphagia",
    Severity.MODERATE: "Moderate dysphagia",
    Severity.SEVERE: "Severe dysphagia",
}


class Trend(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"
    INSUFFICIENT = "insufficient"


@dataclass(frozen=True)
class ScorePoint:
    date: date
    total_score: int
    severity: Severity


def _grade_for(grades: Grades, index: int) -> Optional[int]:
    # Stored JSON turns integer keys into strings; accept both, count once.
    value = grades.get(index)
    if value is None:
        value = grades.get(str(index))
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def total_score(grades: Optional[Grades]) -> int:
    """Sum of answered grades over the 24 areas; unknown indices are ignored."""
    if not grades:
        return 0
    total = 0
    for index in ASSESSMENT_AREAS:
        grade = _grade_for(grades, index)
        if grade is not None:
            total += grade
    return total


def completion_count(grades: Optional[Grades]) -> int:
    """Number of the 24 areas that have an answer."""
    if not grades:
        return 0
    return sum(1 for index in ASSESSMENT_AREAS if _grade_for(grades, index) is not None)


def completion_ratio(grades: Optional[Grades]) -> float:
    return completion_count(grades) / AREA_COUNT


def severity(score: int) -> Severity:
    if score >= NORMAL_MIN_SCORE:
        return Severity.NORMAL
    if score >= MILD_MIN_SCORE:
        return Severity.MILD
    if score >= MODERATE_MIN_SCORE:
        return Severity.MODERATE
    return Severity.SEVERE


def trend(scores: Sequence[float]) -> Trend:
    """
    Classify an ordered-by-date series of total scores.

    Two-window comparison: the series is split in half (the first half takes
    the extra element of an odd-length series) and the half averages are
    compared against a fixed threshold. This is deliberately not a
    regression; a fitted slope classifies short series (3-5 points)
    differently.
    """
    if len(scores) < TREND_MIN_POINTS:
        return Trend.INSUFFICIENT

    mid = (len(scores) + 1) // 2
    first_half = scores[:mid]
    second_half = scores[mid:]
    first_avg = sum(first_half) / len(first_half)
    second_avg = sum(second_half) / len(second_half)

    if second_avg > first_avg + TREND_THRESHOLD:
        return Trend.IMPROVING
    if second_avg < first_avg - TREND_THRESHOLD:
        return Trend.DECLINING
    return Trend.STABLE


def round_half_up(value: float) -> int:
    """Rounding for averages shown to clinicians (0.5 rounds up, not to even)."""
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def average_score(scores: Sequence[int]) -> Optional[int]:
    if not scores:
        return None
    return round_half_up(sum(scores) / len(scores))

"""
Assessment records.

``Assessment`` is the canonical linked form. ``LegacyAssessment`` is the shape
written before patients and assessments were split into separate records; it
has no patient reference and is resolved into ``Assessment`` at ingestion.
"""
from datetime import date
from typing import Annotated, Dict, Optional

from pydantic import AfterValidator, BeforeValidator, computed_field

from .areas import ASSESSMENT_AREAS
from .base import RecordModel, UtcDatetime
from ..services import scoring


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


def validate_grades(grades: Dict[int, Optional[int]]) -> Dict[int, Optional[int]]:
    for index, grade in grades.items():
        area = ASSESSMENT_AREAS.get(index)
        if area is None:
            raise ValueError(f"Unknown assessment area {index}")
        if grade is None:
            continue
        if grade < 0 or grade > area.max_grade:
            raise ValueError(
                f"Grade {grade} for area {index} ({area.title}) must be between 0 and {area.max_grade}"
            )
    return grades


OptionalDate = Annotated[Optional[date], BeforeValidator(_blank_to_none)]
OptionalId = Annotated[Optional[str], BeforeValidator(_blank_to_none)]
ValidGrades = Annotated[Dict[int, Optional[int]], AfterValidator(validate_grades)]


class PatientInfo(RecordModel):
    """Snapshot of patient display fields at assessment time."""
    name: str = ""
    date_of_birth: str = ""
    mrn: str = ""
    assessment_date: OptionalDate = None
    clinician: str = ""


class Assessment(RecordModel):
    id: str
    patient_id: str
    patient_info: PatientInfo
    # Stored grades are not re-validated; unknown areas are ignored by scoring
    selected_grades: Dict[int, Optional[int]] = {}
    notes: str = ""
    organization: Optional[str] = None
    created_by: Optional[str] = None
    saved_date: UtcDatetime

    @computed_field
    @property
    def total_score(self) -> int:
        return scoring.total_score(self.selected_grades)

    @computed_field
    @property
    def severity(self) -> scoring.Severity:
        return scoring.severity(self.total_score)

    @computed_field
    @property
    def completion(self) -> int:
        return scoring.completion_count(self.selected_grades)

    @property
    def effective_date(self) -> date:
        return self.patient_info.assessment_date or self.saved_date.date()


class LegacyAssessment(RecordModel):
    """Pre-split assessment: patient identified only by its snapshot."""
    legacy_id: str
    patient_info: PatientInfo
    selected_grades: Dict[int, Optional[int]] = {}
    notes: str = ""
    saved_date: UtcDatetime


class AssessmentCreate(RecordModel):
    # Without a patient_id the patient is resolved by (name, date of birth).
    patient_id: OptionalId = None
    patient_info: PatientInfo
    selected_grades: ValidGrades = {}
    notes: str = ""


class AssessmentUpdate(RecordModel):
    patient_info: Optional[PatientInfo] = None
    selected_grades: Optional[ValidGrades] = None
    notes: Optional[str] = None

from fastapi import APIRouter, Depends
from typing import List, Optional
from pydantic import ConfigDict
from datetime import date

from ..models.assessment import Assessment
from ..models.base import RecordModel
from ..models.patient import Patient
from ..services import scoring
from ..services.repository import Repository
from .deps import get_repository

router = APIRouter(prefix="/analytics", tags=["analytics"])


class PatientSummaryResponse(RecordModel):
    model_config = ConfigDict(from_attributes=True)

    patient: Patient
    assessments: List[Assessment]
    total_assessments: int
    latest_assessment: Optional[Assessment]
    average_score: Optional[int]


class ScorePointResponse(RecordModel):
    model_config = ConfigDict(from_attributes=True)

    date: date
    total_score: int
    severity: scoring.Severity


class SeverityHistoryResponse(ScorePointResponse):
    label: str


class PatientProgressResponse(RecordModel):
    model_config = ConfigDict(from_attributes=True)

    patient: Patient
    total_assessments: int
    first_assessment_date: Optional[date]
    last_assessment_date: Optional[date]
    average_score: Optional[int]
    trend: scoring.Trend
    series: List[ScorePointResponse]
    severity_history: List[SeverityHistoryResponse]


@router.get("/dashboard", response_model=List[PatientSummaryResponse])
async def get_dashboard(repo: Repository = Depends(get_repository)):
    """Every patient with its assessments, latest assessment and average score."""
    summaries = await repo.list_patients_with_assessments()
    return [PatientSummaryResponse.model_validate(s) for s in summaries]


@router.get("/patients/{patient_id}/progress", response_model=PatientProgressResponse)
async def get_patient_progress(patient_id: str, repo: Repository = Depends(get_repository)):
    """
    Score series ordered by assessment date with its trend.
    The trend needs at least three assessments; fewer report ``insufficient``.
    """
    progress = await repo.patient_progress(patient_id)
    return PatientProgressResponse.model_validate(progress)

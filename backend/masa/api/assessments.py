from fastapi import APIRouter, Depends, status
from typing import List, Optional

from ..models.assessment import Assessment, AssessmentCreate, AssessmentUpdate
from ..services.repository import Repository
from .deps import get_repository

router = APIRouter(prefix="/assessments", tags=["assessments"])


@router.post("/", response_model=Assessment, status_code=status.HTTP_201_CREATED)
async def create_assessment(
    assessment_in: AssessmentCreate,
    repo: Repository = Depends(get_repository),
):
    """
    Record a completed assessment. Without ``patientId`` the patient is
    matched by the snapshot's name and date of birth, or created from it.
    """
    return await repo.create_assessment(assessment_in)


@router.get("/", response_model=List[Assessment])
async def list_assessments(
    patient_id: Optional[str] = None,
    repo: Repository = Depends(get_repository),
):
    if patient_id:
        return await repo.get_assessments_for(patient_id)
    return await repo.list_assessments()


@router.get("/{assessment_id}", response_model=Assessment)
async def get_assessment(assessment_id: str, repo: Repository = Depends(get_repository)):
    return await repo.get_assessment(assessment_id)


@router.patch("/{assessment_id}", response_model=Assessment)
async def update_assessment(
    assessment_id: str,
    assessment_in: AssessmentUpdate,
    repo: Repository = Depends(get_repository),
):
    return await repo.update_assessment(assessment_id, assessment_in)


@router.delete("/{assessment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_assessment(assessment_id: str, repo: Repository = Depends(get_repository)):
    await repo.delete_assessment(assessment_id)

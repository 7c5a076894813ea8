from fastapi import APIRouter, Depends, status
from typing import List

from ..models.patient import Patient, PatientCreate, PatientUpdate
from ..services.repository import Repository
from .deps import get_repository

router = APIRouter(prefix="/patients", tags=["patients"])


@router.post("/", response_model=Patient, status_code=status.HTTP_201_CREATED)
async def create_patient(
    patient_in: PatientCreate,
    repo: Repository = Depends(get_repository),
):
    return await repo.create_patient(patient_in)


@router.get("/", response_model=List[Patient])
async def list_patients(repo: Repository = Depends(get_repository)):
    """Patients, most recently updated first."""
    return await repo.list_patients()


@router.get("/{patient_id}", response_model=Patient)
async def get_patient(patient_id: str, repo: Repository = Depends(get_repository)):
    return await repo.get_patient(patient_id)


@router.patch("/{patient_id}", response_model=Patient)
async def update_patient(
    patient_id: str,
    patient_in: PatientUpdate,
    repo: Repository = Depends(get_repository),
):
    return await repo.update_patient(patient_id, patient_in)


@router.delete("/{patient_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_patient(patient_id: str, repo: Repository = Depends(get_repository)):
    """Deletes the patient and every assessment recorded for them."""
    await repo.delete_patient(patient_id)

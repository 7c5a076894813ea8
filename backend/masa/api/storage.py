from fastapi import APIRouter, Depends
from typing import Dict, Optional
from pydantic import ConfigDict
from datetime import datetime

from ..models.base import RecordModel
from ..services.repository import Repository
from .deps import get_repository

router = APIRouter(prefix="/storage", tags=["storage"])


class StorageStatusResponse(RecordModel):
    model_config = ConfigDict(from_attributes=True)

    current_backend: str
    remote_configured: bool
    migration_status: str
    migration_completed: bool
    local_records: Dict[str, int]
    last_migration_error: Optional[str]


class MigrationResponse(RecordModel):
    model_config = ConfigDict(from_attributes=True)

    status: str
    attempts: int
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    patients_migrated: int
    assessments_migrated: int


@router.get("/status", response_model=StorageStatusResponse)
async def get_storage_status(repo: Repository = Depends(get_repository)):
    return StorageStatusResponse.model_validate(await repo.storage_status())


@router.post("/migrate", response_model=MigrationResponse)
async def migrate(repo: Repository = Depends(get_repository)):
    """Move local records to the remote store now. A completed migration is never repeated."""
    state = await repo.force_migration()
    return MigrationResponse(
        status=state.status.value,
        attempts=state.attempts,
        started_at=state.started_at,
        completed_at=state.completed_at,
        patients_migrated=state.patients_migrated,
        assessments_migrated=state.assessments_migrated,
    )

from enum import Enum
from typing import Optional

from .base import RecordModel, UtcDatetime, utcnow


class MigrationStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class MigrationState(RecordModel):
    """
    Lifecycle of the one-time local-to-remote migration.

    not_started -> in_progress -> completed, and in_progress -> not_started
    on failure so the migration can be retried.
    """
    status: MigrationStatus = MigrationStatus.NOT_STARTED
    started_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
    attempts: int = 0
    last_error: Optional[str] = None
    patients_migrated: int = 0
    assessments_migrated: int = 0

    @property
    def completed(self) -> bool:
        return self.status == MigrationStatus.COMPLETED

    def begin(self) -> None:
        if self.status != MigrationStatus.NOT_STARTED:
            raise ValueError(f"Cannot start migration from state {self.status.value}")
        self.status = MigrationStatus.IN_PROGRESS
        self.started_at = utcnow()
        self.attempts += 1
        self.last_error = None

    def complete(self, patients: int = 0, assessments: int = 0) -> None:
        if self.status != MigrationStatus.IN_PROGRESS:
            raise ValueError(f"Cannot complete migration from state {self.status.value}")
        self.status = MigrationStatus.COMPLETED
        self.completed_at = utcnow()
        self.patients_migrated = patients
        self.assessments_migrated = assessments

    def fail(self, error: str) -> None:
        self.status = MigrationStatus.NOT_STARTED
        self.last_error = error

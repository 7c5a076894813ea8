"""
One-time transfer of every local record to the remote store.

All records go to the remote backend in a single atomic commit. Local
entries are cleared only after that commit succeeds, so a failed migration
leaves the device exactly as it was and can be retried.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..core.errors import MigrationFailed, StoreError
from ..models.assessment import Assessment
from ..models.migration import MigrationState
from ..models.patient import Patient, natural_key
from .documents import AnyAssessment, assessment_to_document, patient_to_document
from .local_store import LocalStore, assessment_key, patient_key
from .remote_store import ASSESSMENTS_COLLECTION, PATIENTS_COLLECTION, RemoteStore, Write
from .store import patient_from_snapshot

logger = logging.getLogger(__name__)

# Upper bound on writes in one remote commit
MAX_BATCH_WRITES = 500


@dataclass
class MigrationBatch:
    writes: List[Write] = field(default_factory=list)
    migrated_keys: List[str] = field(default_factory=list)
    patient_ids: Dict[str, str] = field(default_factory=dict)  # local id -> remote id
    patients_created: int = 0
    assessments: int = 0


class MigrationOrchestrator:
    """Moves LocalStore contents into RemoteStore, at most once to completion."""

    def __init__(self, local: LocalStore, remote: RemoteStore):
        self.local = local
        self.remote = remote

    async def run(self, state: MigrationState) -> MigrationState:
        if state.completed:
            logger.info("Migration already completed; nothing to do")
            return state

        state.begin()
        self.local.save_migration_state(state)
        logger.info("Starting local-to-remote migration (attempt %d)", state.attempts)

        try:
            patients, assessments = self.local.read_documents()
            batch = await self.build_batch(patients, assessments)
            if len(batch.writes) > MAX_BATCH_WRITES:
                raise StoreError(
                    f"{len(batch.writes)} writes exceed the {MAX_BATCH_WRITES}-write commit limit"
                )
            await self.remote.commit(batch.writes)
        except Exception as exc:
            state.fail(str(exc))
            self.local.save_migration_state(state)
            logger.warning("Migration failed; local data left in place: %s", exc)
            raise MigrationFailed(f"Migration did not commit: {exc}") from exc

        state.complete(patients=batch.patients_created, assessments=batch.assessments)
        self.local.save_migration_state(state)
        logger.info(
            "Migration completed: %d patient(s), %d assessment(s)",
            batch.patients_created, batch.assessments,
        )

        # Completion is persisted first; a failure here can leave local copies but never re-migrates.
        try:
            self.local.clear_records(batch.migrated_keys)
        except Exception:
            logger.exception("Migrated records could not be cleared from local storage")
        return state

    async def build_batch(
        self, patients: List[Patient], assessments: List[AnyAssessment]
    ) -> MigrationBatch:
        batch = MigrationBatch()
        # natural key -> remote patient, for patients already in this batch
        batch_index: Dict[Tuple[str, str], Patient] = {}

        for patient in patients:
            remote_patient = self._adopt_patient(patient)
            batch.patient_ids[patient.id] = remote_patient.id
            batch_index.setdefault(remote_patient.natural_key, remote_patient)
            batch.writes.append(
                Write(
                    "create",
                    PATIENTS_COLLECTION,
                    remote_patient.id,
                    patient_to_document(remote_patient, self.remote.codec),
                )
            )
            batch.migrated_keys.append(patient_key(patient.id))
            batch.patients_created += 1

        for record in assessments:
            assessment_id = self.remote.new_assessment_id()
            remote_patient_id = None
            if isinstance(record, Assessment):
                local_id = record.id
                remote_patient_id = batch.patient_ids.get(record.patient_id)
                if remote_patient_id is None:
                    logger.warning(
                        "Local assessment %s references a missing patient; resolving by name and date of birth",
                        record.id,
                    )
            else:
                local_id = record.legacy_id

            if remote_patient_id is None:
                patient = await self._resolve_patient(record, batch, batch_index)
                remote_patient_id = patient.id

            migrated = self._adopt_assessment(record, assessment_id, remote_patient_id)
            batch.writes.append(
                Write(
                    "create",
                    ASSESSMENTS_COLLECTION,
                    migrated.id,
                    assessment_to_document(migrated, self.remote.codec),
                )
            )
            batch.migrated_keys.append(assessment_key(local_id))
            batch.assessments += 1

        return batch

    async def _resolve_patient(
        self,
        record: AnyAssessment,
        batch: MigrationBatch,
        batch_index: Dict[Tuple[str, str], Patient],
    ) -> Patient:
        info = record.patient_info
        key = natural_key(info.name, info.date_of_birth)
        if key[0]:
            existing: Optional[Patient] = batch_index.get(key)
            if existing is None:
                existing = await self.remote.find_patient_by_natural_key(*key)
            if existing is not None:
                return existing

        patient = self.remote.build_patient(patient_from_snapshot(info))
        if key[0]:
            batch_index[key] = patient
        batch.writes.append(
            Write("create", PATIENTS_COLLECTION, patient.id, patient_to_document(patient, self.remote.codec))
        )
        batch.patients_created += 1
        return patient

    def _adopt_patient(self, patient: Patient) -> Patient:
        return patient.model_copy(
            update={
                "id": self.remote.new_patient_id(),
                "organization": self.remote.user.organization,
                "created_by": self._creator(patient.created_by),
            }
        )

    def _adopt_assessment(self, record: AnyAssessment, assessment_id: str, patient_id: str) -> Assessment:
        return Assessment(
            id=assessment_id,
            patient_id=patient_id,
            patient_info=record.patient_info,
            selected_grades=record.selected_grades,
            notes=record.notes,
            organization=self.remote.user.organization,
            created_by=self._creator(getattr(record, "created_by", None)),
            saved_date=record.saved_date,
        )

    def _creator(self, created_by: Optional[str]) -> str:
        # Records written before sign-in carry the device placeholder
        local_uid = self.local.user.uid
        if not created_by or created_by == local_uid:
            return self.remote.user.uid
        return created_by

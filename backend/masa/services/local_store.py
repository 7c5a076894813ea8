"""
Device-local record storage.

Records live in a single key-value table (SQLite by default) under keys of the
form ``{typePrefix}{id}``; the value is the JSON-serialized document. Listing
is a prefix scan, and one unreadable entry never fails a whole listing.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from ..core.encryption import EncryptionCodec
from ..core.errors import ParseError, RecordNotFound
from ..core.security import AuthenticatedUser, LOCAL_USER
from ..models.assessment import Assessment, LegacyAssessment
from ..models.base import Base, SessionLocal, generate_uuid
from ..models.kv_entry import KeyValueEntry
from ..models.migration import MigrationState, MigrationStatus
from ..models.patient import Patient, natural_key
from .documents import (
    AnyAssessment,
    assessment_from_document,
    assessment_to_document,
    patient_from_document,
    patient_to_document,
)
from .store import (
    RECORD_ERRORS,
    RecordStore,
    index_by_natural_key,
    patient_from_snapshot,
    sort_assessments,
    sort_patients,
)

logger = logging.getLogger(__name__)

PATIENT_PREFIX = "masa-patient-"
ASSESSMENT_PREFIX = "masa-assessment-"
MIGRATION_STATE_KEY = "masa-meta-migration"


class LocalStore(RecordStore):
    """Patient and assessment CRUD over device-local key-value storage."""

    name = "local"

    def __init__(
        self,
        codec: EncryptionCodec,
        session_factory: sessionmaker = SessionLocal,
        user: AuthenticatedUser = LOCAL_USER,
    ):
        super().__init__(codec, user)
        self.session_factory = session_factory

    def create_tables(self) -> None:
        Base.metadata.create_all(bind=self.session_factory.kw["bind"])

    # ------------------------------------------------------------------
    # Raw key-value access
    # ------------------------------------------------------------------

    def _get_raw(self, key: str) -> Optional[str]:
        db = self.session_factory()
        try:
            entry = db.get(KeyValueEntry, key)
            return entry.value if entry else None
        finally:
            db.close()

    def _put_raw(self, key: str, document: Dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            db.merge(KeyValueEntry(key=key, value=json.dumps(document)))
            db.commit()
        finally:
            db.close()

    def _scan(self, prefix: str) -> List[Tuple[str, str]]:
        db = self.session_factory()
        try:
            return _scan_session(db, prefix)
        finally:
            db.close()

    @staticmethod
    def _load_json(key: str, raw: str) -> Any:
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise ParseError(key, f"invalid JSON: {exc}")

    def _decode_patient(self, key: str, raw: str) -> Patient:
        return patient_from_document(key[len(PATIENT_PREFIX):], self._load_json(key, raw), self.codec)

    def _decode_assessment(self, key: str, raw: str) -> AnyAssessment:
        return assessment_from_document(key[len(ASSESSMENT_PREFIX):], self._load_json(key, raw), self.codec)

    # ------------------------------------------------------------------
    # RecordStore primitives
    # ------------------------------------------------------------------

    async def probe(self) -> None:
        self._scan(MIGRATION_STATE_KEY)

    def new_patient_id(self) -> str:
        return generate_uuid()

    def new_assessment_id(self) -> str:
        return generate_uuid()

    async def list_patients(self) -> List[Patient]:
        patients = []
        for key, raw in self._scan(PATIENT_PREFIX):
            try:
                patients.append(self._decode_patient(key, raw))
            except RECORD_ERRORS as exc:
                logger.warning("Skipping unreadable local patient %s: %s", key, exc)
        return sort_patients(patients)

    async def get_patient(self, patient_id: str) -> Patient:
        key = PATIENT_PREFIX + patient_id
        raw = self._get_raw(key)
        if raw is None:
            raise RecordNotFound("Patient", patient_id)
        return self._decode_patient(key, raw)

    async def find_patient_by_natural_key(self, name: str, date_of_birth: str) -> Optional[Patient]:
        return index_by_natural_key(await self.list_patients()).get(natural_key(name, date_of_birth))

    async def _insert_patient(self, patient: Patient) -> None:
        self._put_raw(PATIENT_PREFIX + patient.id, patient_to_document(patient, self.codec))

    async def _replace_patient(self, patient: Patient) -> None:
        self._put_raw(PATIENT_PREFIX + patient.id, patient_to_document(patient, self.codec))

    async def delete_patient(self, patient_id: str) -> None:
        patient_key = PATIENT_PREFIX + patient_id
        db = self.session_factory()
        try:
            entry = db.get(KeyValueEntry, patient_key)
            if entry is None:
                raise RecordNotFound("Patient", patient_id)
            db.delete(entry)
            # patientId is stored in the clear, so no decryption is needed here
            for key, raw in _scan_session(db, ASSESSMENT_PREFIX):
                try:
                    owner = self._load_json(key, raw).get("patientId")
                except (ParseError, AttributeError):
                    continue
                if owner == patient_id:
                    db.query(KeyValueEntry).filter(KeyValueEntry.key == key).delete()
            db.commit()
        finally:
            db.close()

    async def list_all_assessments(self) -> List[AnyAssessment]:
        assessments = []
        for key, raw in self._scan(ASSESSMENT_PREFIX):
            try:
                assessments.append(self._decode_assessment(key, raw))
            except RECORD_ERRORS as exc:
                logger.warning("Skipping unreadable local assessment %s: %s", key, exc)
        return sort_assessments(assessments)

    async def get_assessments_for(self, patient_id: str) -> List[Assessment]:
        return [a for a in await self.list_assessments() if a.patient_id == patient_id]

    async def get_assessment(self, assessment_id: str) -> Assessment:
        key = ASSESSMENT_PREFIX + assessment_id
        raw = self._get_raw(key)
        if raw is None:
            raise RecordNotFound("Assessment", assessment_id)
        record = self._decode_assessment(key, raw)
        if isinstance(record, LegacyAssessment):
            raise RecordNotFound("Assessment", assessment_id)
        return record

    async def _insert_assessment(self, assessment: Assessment) -> None:
        self._put_raw(ASSESSMENT_PREFIX + assessment.id, assessment_to_document(assessment, self.codec))

    async def _replace_assessment(self, assessment: Assessment) -> None:
        self._put_raw(ASSESSMENT_PREFIX + assessment.id, assessment_to_document(assessment, self.codec))

    async def delete_assessment(self, assessment_id: str) -> None:
        db = self.session_factory()
        try:
            deleted = (
                db.query(KeyValueEntry)
                .filter(KeyValueEntry.key == ASSESSMENT_PREFIX + assessment_id)
                .delete()
            )
            if not deleted:
                raise RecordNotFound("Assessment", assessment_id)
            db.commit()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Legacy ingestion
    # ------------------------------------------------------------------

    async def ingest_legacy(self) -> int:
        """
        Rewrite unlinked legacy assessments in place as linked assessments,
        reusing the patient with the same (name, date of birth) or creating one
        from the snapshot. Returns the number of assessments linked.
        """
        legacy = await self.list_legacy_assessments()
        if not legacy:
            return 0

        known = index_by_natural_key(await self.list_patients())
        for record in legacy:
            key = natural_key(record.patient_info.name, record.patient_info.date_of_birth)
            patient = known.get(key) if key[0] else None
            if patient is None:
                patient = await self.create_patient(patient_from_snapshot(record.patient_info))
                known[patient.natural_key] = patient
            await self._replace_assessment(link_legacy(record, patient, record.legacy_id))

        logger.info("Linked %d legacy assessment(s) to patients", len(legacy))
        return len(legacy)

    # ------------------------------------------------------------------
    # Migration support
    # ------------------------------------------------------------------

    def load_migration_state(self) -> MigrationState:
        raw = self._get_raw(MIGRATION_STATE_KEY)
        if raw is None:
            return MigrationState()
        try:
            state = MigrationState.model_validate_json(raw)
        except ValueError as exc:
            logger.warning("Unreadable migration state, starting over: %s", exc)
            return MigrationState()
        if state.status == MigrationStatus.IN_PROGRESS:
            # The process stopped mid-migration; local data is still intact.
            logger.warning("Migration was interrupted; resetting state to not_started")
            state.fail("interrupted")
        return state

    def save_migration_state(self, state: MigrationState) -> None:
        self._put_raw(MIGRATION_STATE_KEY, state.model_dump(by_alias=True, mode="json"))

    def read_documents(self) -> Tuple[List[Patient], List[AnyAssessment]]:
        """Every readable record, for migration; unreadable entries are logged and left behind."""
        patients, assessments = [], []
        for key, raw in self._scan(PATIENT_PREFIX):
            try:
                patients.append(self._decode_patient(key, raw))
            except RECORD_ERRORS as exc:
                logger.warning("Local patient %s cannot be migrated: %s", key, exc)
        for key, raw in self._scan(ASSESSMENT_PREFIX):
            try:
                assessments.append(self._decode_assessment(key, raw))
            except RECORD_ERRORS as exc:
                logger.warning("Local assessment %s cannot be migrated: %s", key, exc)
        return patients, assessments

    def clear_records(self, keys: Optional[List[str]] = None) -> int:
        """Delete patient and assessment entries (all, or only ``keys``); meta entries stay."""
        db = self.session_factory()
        try:
            query = db.query(KeyValueEntry)
            if keys is not None:
                query = query.filter(KeyValueEntry.key.in_(keys))
            else:
                query = query.filter(
                    KeyValueEntry.key.startswith(PATIENT_PREFIX, autoescape=True)
                    | KeyValueEntry.key.startswith(ASSESSMENT_PREFIX, autoescape=True)
                )
            deleted = query.delete(synchronize_session=False)
            db.commit()
            return deleted
        finally:
            db.close()

    def count_records(self) -> Dict[str, int]:
        return {
            "patients": len(self._scan(PATIENT_PREFIX)),
            "assessments": len(self._scan(ASSESSMENT_PREFIX)),
        }


def patient_key(patient_id: str) -> str:
    return PATIENT_PREFIX + patient_id


def assessment_key(assessment_id: str) -> str:
    return ASSESSMENT_PREFIX + assessment_id


def link_legacy(record: LegacyAssessment, patient: Patient, assessment_id: str) -> Assessment:
    """Canonical linked form of a legacy assessment."""
    return Assessment(
        id=assessment_id,
        patient_id=patient.id,
        patient_info=record.patient_info,
        selected_grades=record.selected_grades,
        notes=record.notes,
        organization=patient.organization,
        created_by=patient.created_by,
        saved_date=record.saved_date,
    )


def _scan_session(db, prefix: str) -> List[Tuple[str, str]]:
    rows = (
        db.query(KeyValueEntry.key, KeyValueEntry.value)
        .filter(KeyValueEntry.key.startswith(prefix, autoescape=True))
        .all()
    )
    return [(row.key, row.value) for row in rows]

"""
Backend interface shared by the device-local and remote stores.

Subclasses supply storage primitives; record construction (ids, timestamps,
merge of partial updates, natural-key resolution) lives here so both
backends behave identically.
"""
import copy
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from ..core.encryption import DecryptionFailed, EncryptionCodec
from ..core.errors import ParseError
from ..core.security import AuthenticatedUser, LOCAL_USER
from ..models.assessment import (
    Assessment,
    AssessmentCreate,
    AssessmentUpdate,
    LegacyAssessment,
    PatientInfo,
)
from ..models.base import utcnow
from ..models.patient import Patient, PatientCreate, PatientUpdate, natural_key
from .documents import AnyAssessment

logger = logging.getLogger(__name__)

UNNAMED_PATIENT = "Unnamed patient"

# Errors that make a single stored record unreadable without failing a listing
RECORD_ERRORS = (ParseError, DecryptionFailed)


class RecordStore(ABC):
    """CRUD over patients and assessments for one backend."""

    name = "store"

    def __init__(self, codec: EncryptionCodec, user: AuthenticatedUser = LOCAL_USER):
        self.codec = codec
        self.user = user

    def with_user(self, user: AuthenticatedUser) -> "RecordStore":
        """Same backend and connections, scoped to another caller."""
        scoped = copy.copy(self)
        scoped.user = user
        return scoped

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def probe(self) -> None:
        """Raise ``BackendUnavailable`` if the backend cannot serve requests."""

    @abstractmethod
    def new_patient_id(self) -> str: ...

    @abstractmethod
    def new_assessment_id(self) -> str: ...

    @abstractmethod
    async def list_patients(self) -> List[Patient]: ...

    @abstractmethod
    async def get_patient(self, patient_id: str) -> Patient: ...

    @abstractmethod
    async def find_patient_by_natural_key(
        self, name: str, date_of_birth: str
    ) -> Optional[Patient]: ...

    @abstractmethod
    async def delete_patient(self, patient_id: str) -> None:
        """Delete the patient and all of its assessments atomically."""

    @abstractmethod
    async def list_all_assessments(self) -> List[AnyAssessment]:
        """Every readable stored assessment, legacy ones included, newest first."""

    @abstractmethod
    async def get_assessments_for(self, patient_id: str) -> List[Assessment]: ...

    @abstractmethod
    async def get_assessment(self, assessment_id: str) -> Assessment: ...

    @abstractmethod
    async def delete_assessment(self, assessment_id: str) -> None: ...

    @abstractmethod
    async def _insert_patient(self, patient: Patient) -> None: ...

    @abstractmethod
    async def _replace_patient(self, patient: Patient) -> None: ...

    @abstractmethod
    async def _insert_assessment(self, assessment: Assessment) -> None: ...

    @abstractmethod
    async def _replace_assessment(self, assessment: Assessment) -> None: ...

    # ------------------------------------------------------------------
    # Shared record logic
    # ------------------------------------------------------------------

    async def list_assessments(self) -> List[Assessment]:
        records = await self.list_all_assessments()
        linked = [a for a in records if isinstance(a, Assessment)]
        if len(linked) != len(records):
            logger.info(
                "%s holds %d unlinked legacy assessment(s); not listed until ingested",
                self.name, len(records) - len(linked),
            )
        return linked

    async def list_legacy_assessments(self) -> List[LegacyAssessment]:
        records = await self.list_all_assessments()
        return [a for a in records if isinstance(a, LegacyAssessment)]

    def build_patient(self, data: PatientCreate) -> Patient:
        now = utcnow()
        return Patient(
            id=self.new_patient_id(),
            name=data.name,
            date_of_birth=data.date_of_birth,
            mrn=data.mrn,
            organization=self.user.organization,
            created_by=self.user.uid,
            created_at=now,
            updated_at=now,
        )

    def build_assessment(self, data: AssessmentCreate, patient_id: str) -> Assessment:
        return Assessment(
            id=self.new_assessment_id(),
            patient_id=patient_id,
            patient_info=data.patient_info,
            selected_grades=data.selected_grades,
            notes=data.notes,
            organization=self.user.organization,
            created_by=self.user.uid,
            saved_date=utcnow(),
        )

    async def create_patient(self, data: PatientCreate) -> Patient:
        patient = self.build_patient(data)
        await self._insert_patient(patient)
        return patient

    async def update_patient(self, patient_id: str, delta: PatientUpdate) -> Patient:
        existing = await self.get_patient(patient_id)
        changes = delta.model_dump(exclude_unset=True, exclude_none=True)
        updated = existing.model_copy(update={**changes, "updated_at": utcnow()})
        await self._replace_patient(updated)
        return updated

    async def create_assessment(self, data: AssessmentCreate) -> Assessment:
        if data.patient_id:
            await self.get_patient(data.patient_id)
            patient_id = data.patient_id
        else:
            patient, _ = await self.resolve_patient(data.patient_info)
            patient_id = patient.id
        assessment = self.build_assessment(data, patient_id)
        await self._insert_assessment(assessment)
        return assessment

    async def update_assessment(self, assessment_id: str, delta: AssessmentUpdate) -> Assessment:
        existing = await self.get_assessment(assessment_id)
        changes = {
            field: getattr(delta, field)
            for field in delta.model_fields_set
            if getattr(delta, field) is not None
        }
        updated = existing.model_copy(update={**changes, "saved_date": utcnow()})
        await self._replace_assessment(updated)
        return updated

    async def resolve_patient(self, info: PatientInfo) -> Tuple[Patient, bool]:
        """
        Find the patient matching a snapshot's (name, date of birth), or create
        one from the snapshot. Returns the patient and whether it was created.
        """
        existing = await self.find_patient_by_natural_key(info.name, info.date_of_birth)
        if existing is not None:
            return existing, False
        patient = await self.create_patient(patient_from_snapshot(info))
        logger.info("Created patient %s from assessment snapshot", patient.id)
        return patient, True


def patient_from_snapshot(info: PatientInfo) -> PatientCreate:
    name, date_of_birth = natural_key(info.name, info.date_of_birth)
    return PatientCreate(name=name or UNNAMED_PATIENT, date_of_birth=date_of_birth, mrn=info.mrn)


def sort_patients(patients: List[Patient]) -> List[Patient]:
    return sorted(patients, key=lambda p: p.updated_at, reverse=True)


def sort_assessments(assessments: List[AnyAssessment]) -> List[AnyAssessment]:
    return sorted(assessments, key=lambda a: a.saved_date, reverse=True)


def index_by_natural_key(patients: List[Patient]) -> Dict[tuple, Patient]:
    index: Dict[tuple, Patient] = {}
    for patient in patients:
        index.setdefault(patient.natural_key, patient)
    return index

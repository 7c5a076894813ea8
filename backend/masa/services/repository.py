"""
Repository facade - the single persistence API used by the rest of the service.

The backend is chosen once, on first use: the remote store when it is
configured and answers a probe, otherwise device-local storage. Local data
is migrated to the remote store before any write is served there. The
choice then holds for the life of the process; errors from the chosen
backend reach the caller as they are, with no fallback to the other one.
"""
import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from ..core.config import settings
from ..core.encryption import EncryptionCodec, get_codec
from ..core.errors import BackendUnavailable, Conflict, InvalidRecord, MigrationFailed, StoreError
from ..core.security import AuthenticatedUser, LOCAL_USER
from ..models.assessment import Assessment, AssessmentCreate, AssessmentUpdate
from ..models.migration import MigrationState
from ..models.patient import Patient, PatientCreate, PatientUpdate
from .analytics import PatientProgress, PatientSummary, analytics_service
from .local_store import LocalStore
from .migration import MigrationOrchestrator
from .remote_store import RemoteStore
from .store import RecordStore

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class StorageStatus:
    current_backend: str  # "remote" or "local"
    remote_configured: bool
    migration_status: str
    migration_completed: bool
    local_records: Dict[str, int] = field(default_factory=dict)
    last_migration_error: Optional[str] = None


@dataclass
class _Selection:
    """Backend choice and migration state shared by every scoped copy."""
    backend: Optional[str] = None
    state: MigrationState = field(default_factory=MigrationState)


class Repository:
    def __init__(
        self,
        local: LocalStore,
        remote: Optional[RemoteStore] = None,
        user: AuthenticatedUser = LOCAL_USER,
    ):
        self.local = local
        self.remote = remote
        self.user = user
        # Migration holds this for its whole commit; every write takes it too.
        self._lock = asyncio.Lock()
        self._selection = _Selection()

    def scoped(self, user: AuthenticatedUser) -> "Repository":
        """Same backends, lock and selection; records attributed to ``user``."""
        scoped = copy.copy(self)
        scoped.user = user
        return scoped

    @property
    def initialized(self) -> bool:
        return self._selection.backend is not None

    @property
    def backend_name(self) -> Optional[str]:
        return self._selection.backend

    @property
    def migration_state(self) -> MigrationState:
        return self._selection.state

    @property
    def remote_configured(self) -> bool:
        return self.remote is not None and self.remote.configured

    # ------------------------------------------------------------------
    # Backend selection
    # ------------------------------------------------------------------

    async def initialize(self) -> str:
        """Select the backend (once) and bring its data into canonical form."""
        async with self._lock:
            if self._selection.backend is not None:
                return self._selection.backend

            self.local.create_tables()
            self._selection.state = self.local.load_migration_state()

            backend = "local"
            if await self._remote_reachable():
                try:
                    await self._migrate()
                    backend = "remote"
                except MigrationFailed as exc:
                    logger.error("Staying on local storage after failed migration: %s", exc)

            if backend == "local":
                await self.local.with_user(self.user).ingest_legacy()

            self._selection.backend = backend
            logger.info("Repository using %s storage", backend)
            return backend

    async def _remote_reachable(self) -> bool:
        if not self.remote_configured:
            logger.info("Remote store not configured; using local storage")
            return False
        try:
            await self.remote.probe()
        except StoreError as exc:
            logger.warning("Remote store unavailable, using local storage: %s", exc)
            return False
        return True

    async def _migrate(self) -> MigrationState:
        # Caller holds the lock.
        orchestrator = MigrationOrchestrator(self.local, self.remote.with_user(self.user))
        self._selection.state = await orchestrator.run(self._selection.state)
        return self._selection.state

    async def force_migration(self) -> MigrationState:
        """
        Run the local-to-remote migration now, on the remote backend only.
        Raises ``BackendUnavailable`` if no remote store is configured,
        ``Conflict`` if this process selected local storage (the backend never
        changes once chosen) and ``MigrationFailed`` if the batch does not commit.
        """
        if not self.remote_configured:
            raise BackendUnavailable("Remote store is not configured")
        await self.initialize()
        async with self._lock:
            if self._selection.backend != "remote":
                raise Conflict(
                    "Local storage is in use until restart; migration runs when the remote store is selected"
                )
            return await self._migrate()

    async def _store(self) -> RecordStore:
        backend = await self.initialize()
        store = self.remote if backend == "remote" else self.local
        return store.with_user(self.user)

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    async def list_patients(self) -> List[Patient]:
        return await (await self._store()).list_patients()

    async def get_patient(self, patient_id: str) -> Patient:
        return await (await self._store()).get_patient(patient_id)

    async def create_patient(self, data: Union[PatientCreate, Dict[str, Any]]) -> Patient:
        data = _coerce(PatientCreate, data)
        store = await self._store()
        async with self._lock:
            patient = await store.create_patient(data)
        logger.info("Created patient %s", patient.id)
        return patient

    async def update_patient(self, patient_id: str, delta: Union[PatientUpdate, Dict[str, Any]]) -> Patient:
        delta = _coerce(PatientUpdate, delta)
        store = await self._store()
        async with self._lock:
            return await store.update_patient(patient_id, delta)

    async def delete_patient(self, patient_id: str) -> None:
        """Delete the patient together with all of its assessments."""
        store = await self._store()
        async with self._lock:
            await store.delete_patient(patient_id)
        logger.info("Deleted patient %s and its assessments", patient_id)

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    async def list_assessments(self) -> List[Assessment]:
        return await (await self._store()).list_assessments()

    async def get_assessments_for(self, patient_id: str) -> List[Assessment]:
        return await (await self._store()).get_assessments_for(patient_id)

    async def get_assessment(self, assessment_id: str) -> Assessment:
        return await (await self._store()).get_assessment(assessment_id)

    async def create_assessment(self, data: Union[AssessmentCreate, Dict[str, Any]]) -> Assessment:
        data = _coerce(AssessmentCreate, data)
        store = await self._store()
        async with self._lock:
            assessment = await store.create_assessment(data)
        logger.info("Created assessment %s for patient %s", assessment.id, assessment.patient_id)
        return assessment

    async def update_assessment(
        self, assessment_id: str, delta: Union[AssessmentUpdate, Dict[str, Any]]
    ) -> Assessment:
        delta = _coerce(AssessmentUpdate, delta)
        store = await self._store()
        async with self._lock:
            return await store.update_assessment(assessment_id, delta)

    async def delete_assessment(self, assessment_id: str) -> None:
        store = await self._store()
        async with self._lock:
            await store.delete_assessment(assessment_id)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def list_patients_with_assessments(self) -> List[PatientSummary]:
        store = await self._store()
        patients = await store.list_patients()
        assessments = await store.list_assessments()
        return analytics_service.summarize_patients(patients, assessments)

    async def patient_progress(self, patient_id: str) -> PatientProgress:
        store = await self._store()
        patient = await store.get_patient(patient_id)
        assessments = await store.get_assessments_for(patient_id)
        return analytics_service.patient_progress(patient, assessments)

    async def storage_status(self) -> StorageStatus:
        backend = await self.initialize()
        state = self._selection.state
        return StorageStatus(
            current_backend=backend,
            remote_configured=self.remote_configured,
            migration_status=state.status.value,
            migration_completed=state.completed,
            local_records=self.local.count_records(),
            last_migration_error=state.last_error,
        )

    async def close(self) -> None:
        if self.remote is not None:
            await self.remote.aclose()


def _coerce(model: Type[ModelT], data: Union[ModelT, Dict[str, Any]]) -> ModelT:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise InvalidRecord(str(exc)) from exc


def build_repository(
    codec: Optional[EncryptionCodec] = None,
    local: Optional[LocalStore] = None,
    remote: Optional[RemoteStore] = None,
) -> Repository:
    """Repository wired from settings; the remote store is attached only when configured."""
    codec = codec or get_codec()
    local = local or LocalStore(codec)
    if remote is None and settings.remote_configured:
        remote = RemoteStore(codec)
    return Repository(local, remote)

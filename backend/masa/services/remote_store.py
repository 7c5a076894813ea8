"""
Remote multi-tenant document store client.

Speaks the Firestore-compatible REST API: single documents are read with
GET, queries go through ``:runQuery`` and every write goes through
``:commit``, which applies all of its writes atomically or none of them.
"""
import logging
import secrets
import string
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from ..core.config import settings
from ..core.encryption import EncryptionCodec
from ..core.errors import BackendUnavailable, Conflict, PermissionDenied, RecordNotFound, StoreError
from ..core.security import AuthenticatedUser, LOCAL_USER
from ..models.assessment import Assessment, LegacyAssessment
from ..models.patient import Patient
from .documents import (
    AnyAssessment,
    assessment_from_document,
    assessment_to_document,
    natural_key_fingerprint,
    patient_from_document,
    patient_to_document,
)
from .firestore_values import decode_fields, encode_fields, encode_value
from .store import RECORD_ERRORS, RecordStore

logger = logging.getLogger(__name__)

PATIENTS_COLLECTION = "patients"
ASSESSMENTS_COLLECTION = "assessments"

_ID_ALPHABET = string.ascii_letters + string.digits
_ID_LENGTH = 20


def generate_document_id() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_LENGTH))


@dataclass
class Write:
    """One write inside an atomic commit."""
    op: str  # "create", "update" or "delete"
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)


class RemoteStore(RecordStore):
    """Patient and assessment CRUD over the remote document collections."""

    name = "remote"

    def __init__(
        self,
        codec: EncryptionCodec,
        user: AuthenticatedUser = LOCAL_USER,
        project_id: Optional[str] = None,
        database: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(codec, user)
        self.project_id = project_id or settings.REMOTE_PROJECT_ID
        self.database = database or settings.REMOTE_DATABASE
        self.base_url = (base_url or settings.REMOTE_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.REMOTE_API_KEY
        self.auth_token = auth_token if auth_token is not None else settings.REMOTE_AUTH_TOKEN
        self.timeout = timeout if timeout is not None else settings.REMOTE_TIMEOUT

        headers = {}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        params = {"key": self.api_key} if self.api_key else None
        self._client = httpx.AsyncClient(
            timeout=self.timeout, headers=headers, params=params, transport=transport
        )

    @property
    def configured(self) -> bool:
        return bool(self.project_id)

    @property
    def database_path(self) -> str:
        return f"projects/{self.project_id}/databases/{self.database}/documents"

    @property
    def documents_url(self) -> str:
        return f"{self.base_url}/{self.database_path}"

    def document_name(self, collection: str, doc_id: str) -> str:
        return f"{self.database_path}/{collection}/{doc_id}"

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if not self.configured:
            raise BackendUnavailable("Remote store is not configured (REMOTE_PROJECT_ID unset)")
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise BackendUnavailable(f"Remote store timed out after {self.timeout}s") from exc
        except httpx.TransportError as exc:
            raise BackendUnavailable(f"Remote store unreachable: {exc}") from exc
        except httpx.DecodingError as exc:
            raise StoreError(f"Remote store sent an undecodable response: {exc}") from exc

        if resp.status_code in (401, 403):
            raise PermissionDenied(_error_message(resp))
        if resp.status_code == 429 or resp.status_code >= 500:
            raise BackendUnavailable(f"Remote store error {resp.status_code}: {_error_message(resp)}")
        return resp

    async def _get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        resp = await self._request("GET", f"{self.documents_url}/{collection}/{doc_id}")
        if resp.status_code == 404:
            return None
        _raise_for_status(resp)
        document = _json(resp)
        if not isinstance(document, dict):
            raise StoreError(f"Malformed remote document {collection}/{doc_id}")
        return decode_fields(document.get("fields", {}))

    async def run_query(
        self,
        collection: str,
        filters: Sequence[Tuple[str, Any]] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        """Equality filters joined with AND, newest first on ``order_by``."""
        query: Dict[str, Any] = {"from": [{"collectionId": collection}]}
        field_filters = [
            {
                "fieldFilter": {
                    "field": {"fieldPath": path},
                    "op": "EQUAL",
                    "value": encode_value(value),
                }
            }
            for path, value in filters
        ]
        if len(field_filters) == 1:
            query["where"] = field_filters[0]
        elif field_filters:
            query["where"] = {"compositeFilter": {"op": "AND", "filters": field_filters}}
        if order_by:
            query["orderBy"] = [{"field": {"fieldPath": order_by}, "direction": "DESCENDING"}]
        if limit:
            query["limit"] = limit

        resp = await self._request("POST", f"{self.documents_url}:runQuery", json={"structuredQuery": query})
        _raise_for_status(resp)
        items = _json(resp)
        if not isinstance(items, list):
            raise StoreError("Malformed query response from remote store")
        results = []
        for item in items:
            document = item.get("document") if isinstance(item, dict) else None
            if not document:
                continue
            if not isinstance(document, dict) or not isinstance(document.get("name"), str):
                raise StoreError("Remote query returned a document without a name")
            doc_id = document["name"].rsplit("/", 1)[-1]
            try:
                results.append((doc_id, decode_fields(document.get("fields", {}))))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping undecodable remote document %s: %s", doc_id, exc)
        return results

    async def commit(self, writes: Sequence[Write]) -> None:
        """Apply all writes atomically."""
        if not writes:
            return
        body = {"writes": [self._encode_write(w) for w in writes]}
        resp = await self._request("POST", f"{self.documents_url}:commit", json=body)
        if resp.status_code == 404:
            raise RecordNotFound("Document", _error_message(resp))
        _raise_for_status(resp)

    def _encode_write(self, write: Write) -> Dict[str, Any]:
        name = self.document_name(write.collection, write.doc_id)
        if write.op == "delete":
            return {"delete": name, "currentDocument": {"exists": True}}
        return {
            "update": {"name": name, "fields": encode_fields(write.data)},
            "currentDocument": {"exists": write.op == "update"},
        }

    async def _commit_one(self, write: Write, kind: str) -> None:
        try:
            await self.commit([write])
        except RecordNotFound:
            raise RecordNotFound(kind, write.doc_id)

    # ------------------------------------------------------------------
    # RecordStore primitives
    # ------------------------------------------------------------------

    async def probe(self) -> None:
        resp = await self._request(
            "GET", f"{self.documents_url}/{PATIENTS_COLLECTION}", params={"pageSize": 1}
        )
        _raise_for_status(resp)

    def new_patient_id(self) -> str:
        return generate_document_id()

    def new_assessment_id(self) -> str:
        return generate_document_id()

    def _scope(self) -> List[Tuple[str, Any]]:
        return [("organization", self.user.organization)]

    async def list_patients(self) -> List[Patient]:
        patients = []
        for doc_id, data in await self.run_query(PATIENTS_COLLECTION, self._scope(), order_by="updatedAt"):
            try:
                patients.append(patient_from_document(doc_id, data, self.codec))
            except RECORD_ERRORS as exc:
                logger.warning("Skipping unreadable remote patient %s: %s", doc_id, exc)
        return patients

    async def get_patient(self, patient_id: str) -> Patient:
        data = await self._get_document(PATIENTS_COLLECTION, patient_id)
        if data is None:
            raise RecordNotFound("Patient", patient_id)
        return patient_from_document(patient_id, data, self.codec)

    async def find_patient_by_natural_key(self, name: str, date_of_birth: str) -> Optional[Patient]:
        fingerprint = natural_key_fingerprint(self.codec, name, date_of_birth)
        matches = await self.run_query(
            PATIENTS_COLLECTION,
            self._scope() + [("naturalKey", fingerprint)],
            order_by="updatedAt",
            limit=1,
        )
        for doc_id, data in matches:
            return patient_from_document(doc_id, data, self.codec)
        return None

    async def _insert_patient(self, patient: Patient) -> None:
        await self._commit_one(
            Write("create", PATIENTS_COLLECTION, patient.id, patient_to_document(patient, self.codec)),
            "Patient",
        )

    async def _replace_patient(self, patient: Patient) -> None:
        await self._commit_one(
            Write("update", PATIENTS_COLLECTION, patient.id, patient_to_document(patient, self.codec)),
            "Patient",
        )

    async def delete_patient(self, patient_id: str) -> None:
        owned = await self.run_query(
            ASSESSMENTS_COLLECTION, self._scope() + [("patientId", patient_id)]
        )
        writes = [Write("delete", ASSESSMENTS_COLLECTION, doc_id) for doc_id, _ in owned]
        writes.append(Write("delete", PATIENTS_COLLECTION, patient_id))
        try:
            await self.commit(writes)
        except RecordNotFound:
            raise RecordNotFound("Patient", patient_id)

    async def list_all_assessments(self) -> List[AnyAssessment]:
        return await self._query_assessments(self._scope())

    async def get_assessments_for(self, patient_id: str) -> List[Assessment]:
        records = await self._query_assessments(self._scope() + [("patientId", patient_id)])
        return [a for a in records if isinstance(a, Assessment)]

    async def _query_assessments(self, filters: List[Tuple[str, Any]]) -> List[AnyAssessment]:
        assessments = []
        for doc_id, data in await self.run_query(ASSESSMENTS_COLLECTION, filters, order_by="savedDate"):
            try:
                assessments.append(assessment_from_document(doc_id, data, self.codec))
            except RECORD_ERRORS as exc:
                logger.warning("Skipping unreadable remote assessment %s: %s", doc_id, exc)
        return assessments

    async def get_assessment(self, assessment_id: str) -> Assessment:
        data = await self._get_document(ASSESSMENTS_COLLECTION, assessment_id)
        if data is None:
            raise RecordNotFound("Assessment", assessment_id)
        record = assessment_from_document(assessment_id, data, self.codec)
        if isinstance(record, LegacyAssessment):
            raise RecordNotFound("Assessment", assessment_id)
        return record

    async def _insert_assessment(self, assessment: Assessment) -> None:
        await self._commit_one(
            Write("create", ASSESSMENTS_COLLECTION, assessment.id, assessment_to_document(assessment, self.codec)),
            "Assessment",
        )

    async def _replace_assessment(self, assessment: Assessment) -> None:
        await self._commit_one(
            Write("update", ASSESSMENTS_COLLECTION, assessment.id, assessment_to_document(assessment, self.codec)),
            "Assessment",
        )

    async def delete_assessment(self, assessment_id: str) -> None:
        await self._commit_one(Write("delete", ASSESSMENTS_COLLECTION, assessment_id), "Assessment")


def _error_message(resp: httpx.Response) -> str:
    try:
        return resp.json().get("error", {}).get("message", resp.text)
    except (ValueError, AttributeError):
        return resp.text


def _json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise StoreError(f"Remote store sent a non-JSON response ({resp.status_code})") from exc


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code == 409:
        raise Conflict(_error_message(resp))
    if resp.status_code >= 400:
        raise StoreError(f"Remote store rejected request ({resp.status_code}): {_error_message(resp)}")

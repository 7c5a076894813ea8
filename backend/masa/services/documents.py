"""
Stored document shape shared by the local and remote backends.

PHI (patient name, date of birth, record number, assessment snapshot and
notes) is kept only inside ``encryptedData``. Patients also carry a keyed
``naturalKey`` fingerprint so they can be matched by (name, date of birth)
without decrypting every record. Plaintext shapes written by the earlier
browser-only version are still readable.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Union

from pydantic import ValidationError

from ..core.encryption import EncryptionCodec
from ..core.errors import ParseError
from ..models.assessment import Assessment, LegacyAssessment
from ..models.patient import Patient, natural_key

AnyAssessment = Union[Assessment, LegacyAssessment]


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC timestamp so string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def natural_key_fingerprint(codec: EncryptionCodec, name: str, date_of_birth: str) -> str:
    return codec.fingerprint(*natural_key(name, date_of_birth))


def _require_mapping(key: str, data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ParseError(key, f"expected an object, got {type(data).__name__}")
    return data


# ── patients ────────────────────────────────────────────────────────────────

def patient_to_document(patient: Patient, codec: EncryptionCodec) -> Dict[str, Any]:
    return {
        "organization": patient.organization,
        "createdBy": patient.created_by,
        "createdAt": format_timestamp(patient.created_at),
        "updatedAt": format_timestamp(patient.updated_at),
        "naturalKey": natural_key_fingerprint(codec, patient.name, patient.date_of_birth),
        "encryptedData": codec.encrypt(
            {"name": patient.name, "dateOfBirth": patient.date_of_birth, "mrn": patient.mrn}
        ),
    }


def patient_from_document(record_id: str, data: Any, codec: EncryptionCodec) -> Patient:
    data = _require_mapping(record_id, data)
    if "encryptedData" in data:
        phi = _require_mapping(record_id, codec.decrypt(data["encryptedData"]))
    else:
        phi = {k: data.get(k) for k in ("name", "dateOfBirth", "mrn") if k in data}
    try:
        return Patient.model_validate(
            {
                "id": record_id,
                "name": phi.get("name"),
                "dateOfBirth": phi.get("dateOfBirth") or "",
                "mrn": phi.get("mrn") or "",
                "organization": data.get("organization"),
                "createdBy": data.get("createdBy"),
                "createdAt": data.get("createdAt"),
                "updatedAt": data.get("updatedAt") or data.get("createdAt"),
            }
        )
    except ValidationError as exc:
        raise ParseError(record_id, f"invalid patient record: {exc.error_count()} error(s)")


# ── assessments ─────────────────────────────────────────────────────────────

def assessment_to_document(assessment: Assessment, codec: EncryptionCodec) -> Dict[str, Any]:
    return {
        "patientId": assessment.patient_id,
        "organization": assessment.organization,
        "createdBy": assessment.created_by,
        "savedDate": format_timestamp(assessment.saved_date),
        "selectedGrades": {str(k): v for k, v in assessment.selected_grades.items()},
        "totalScore": assessment.total_score,
        "severity": assessment.severity.value,
        "encryptedData": codec.encrypt(
            {
                "patientInfo": assessment.patient_info.model_dump(by_alias=True, mode="json"),
                "notes": assessment.notes,
            }
        ),
    }


def assessment_from_document(record_id: str, data: Any, codec: EncryptionCodec) -> AnyAssessment:
    """Decode a stored assessment; records without a patient link come back as legacy."""
    data = _require_mapping(record_id, data)
    if "encryptedData" in data:
        details = _require_mapping(record_id, codec.decrypt(data["encryptedData"]))
    else:
        details = data
    fields = {
        "patientInfo": details.get("patientInfo") or {},
        "selectedGrades": data.get("selectedGrades") or {},
        "notes": details.get("notes") or "",
        "savedDate": data.get("savedDate"),
    }
    try:
        if not data.get("patientId"):
            return LegacyAssessment.model_validate({"legacyId": record_id, **fields})
        return Assessment.model_validate(
            {
                "id": record_id,
                "patientId": data["patientId"],
                "organization": data.get("organization"),
                "createdBy": data.get("createdBy"),
                **fields,
            }
        )
    except ValidationError as exc:
        raise ParseError(record_id, f"invalid assessment record: {exc.error_count()} error(s)")

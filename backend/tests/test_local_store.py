import json
from datetime import datetime, timedelta, timezone

import pytest

from masa.core.errors import RecordNotFound
from masa.models.assessment import Assessment, AssessmentCreate, AssessmentUpdate, PatientInfo
from masa.models.kv_entry import KeyValueEntry
from masa.models.migration import MigrationState, MigrationStatus
from masa.models.patient import PatientCreate, PatientUpdate
from masa.services.local_store import ASSESSMENT_PREFIX, MIGRATION_STATE_KEY, PATIENT_PREFIX


def put_raw(session_factory, key, value):
    db = session_factory()
    try:
        db.merge(KeyValueEntry(key=key, value=value if isinstance(value, str) else json.dumps(value)))
        db.commit()
    finally:
        db.close()


def raw_value(session_factory, key):
    db = session_factory()
    try:
        entry = db.get(KeyValueEntry, key)
        return entry.value if entry else None
    finally:
        db.close()


def legacy_assessment(name, dob, saved, grades=None):
    return {
        "patientInfo": {"name": name, "dateOfBirth": dob, "mrn": "", "assessmentDate": "", "clinician": "Dr. A"},
        "selectedGrades": grades or {"1": 10, "2": 10},
        "notes": "legacy",
        "savedDate": saved,
    }


async def test_create_and_get_patient(local_store):
    patient = await local_store.create_patient(PatientCreate(name="Jane Doe", date_of_birth="1980-01-01"))
    assert patient.created_at == patient.updated_at
    fetched = await local_store.get_patient(patient.id)
    assert fetched.name == "Jane Doe"
    assert fetched.date_of_birth == "1980-01-01"


async def test_phi_is_encrypted_at_rest(local_store, session_factory):
    patient = await local_store.create_patient(PatientCreate(name="Jane Doe", date_of_birth="1980-01-01", mrn="MRN-9"))
    stored = raw_value(session_factory, PATIENT_PREFIX + patient.id)
    assert "Jane" not in stored
    assert "MRN-9" not in stored
    assert json.loads(stored)["encryptedData"].startswith("enc:")


async def test_update_patient_bumps_updated_at(local_store):
    patient = await local_store.create_patient(PatientCreate(name="Jane Doe"))
    updated = await local_store.update_patient(patient.id, PatientUpdate(mrn="MRN-1"))
    assert updated.id == patient.id
    assert updated.name == "Jane Doe"
    assert updated.mrn == "MRN-1"
    assert updated.created_at == patient.created_at
    assert updated.updated_at >= patient.updated_at


async def test_missing_records_raise_not_found(local_store):
    with pytest.raises(RecordNotFound):
        await local_store.get_patient("nope")
    with pytest.raises(RecordNotFound):
        await local_store.update_patient("nope", PatientUpdate(name="X"))
    with pytest.raises(RecordNotFound):
        await local_store.delete_patient("nope")
    with pytest.raises(RecordNotFound):
        await local_store.get_assessment("nope")
    with pytest.raises(RecordNotFound):
        await local_store.delete_assessment("nope")


async def test_patients_listed_most_recently_updated_first(local_store):
    first = await local_store.create_patient(PatientCreate(name="First"))
    second = await local_store.create_patient(PatientCreate(name="Second"))
    await local_store.update_patient(first.id, PatientUpdate(mrn="M"))
    names = [p.name for p in await local_store.list_patients()]
    assert names == ["First", "Second"]
    assert second.id in {p.id for p in await local_store.list_patients()}


async def test_corrupt_entry_is_skipped_not_fatal(local_store, session_factory):
    await local_store.create_patient(PatientCreate(name="Good"))
    put_raw(session_factory, PATIENT_PREFIX + "broken", "{not json")
    put_raw(session_factory, PATIENT_PREFIX + "tampered", {"encryptedData": "enc:garbage", "createdAt": "2024-01-01T00:00:00Z"})
    put_raw(session_factory, ASSESSMENT_PREFIX + "broken", "[1, 2")

    patients = await local_store.list_patients()
    assert [p.name for p in patients] == ["Good"]
    assert await local_store.list_assessments() == []


async def test_assessment_links_to_existing_patient_by_natural_key(local_store):
    patient = await local_store.create_patient(PatientCreate(name="Jane Doe", date_of_birth="1980-01-01"))
    assessment = await local_store.create_assessment(
        AssessmentCreate(
            patient_info=PatientInfo(name=" Jane Doe ", date_of_birth="1980-01-01"),
            selected_grades={1: 10},
        )
    )
    assert assessment.patient_id == patient.id
    assert len(await local_store.list_patients()) == 1


async def test_assessment_without_match_creates_patient(local_store):
    assessment = await local_store.create_assessment(
        AssessmentCreate(patient_info=PatientInfo(name="New Person", date_of_birth="1990-02-02", mrn="M-7"))
    )
    patient = await local_store.get_patient(assessment.patient_id)
    assert patient.name == "New Person"
    assert patient.mrn == "M-7"


async def test_assessment_for_unknown_patient_id_is_rejected(local_store):
    with pytest.raises(RecordNotFound):
        await local_store.create_assessment(
            AssessmentCreate(patient_id="missing", patient_info=PatientInfo(name="X"))
        )


async def test_update_assessment_merges_delta(local_store):
    created = await local_store.create_assessment(
        AssessmentCreate(patient_info=PatientInfo(name="Jane"), selected_grades={1: 10}, notes="first")
    )
    updated = await local_store.update_assessment(created.id, AssessmentUpdate(notes="second"))
    assert updated.notes == "second"
    assert updated.selected_grades == {1: 10}
    assert updated.total_score == 10
    assert (await local_store.get_assessment(created.id)).notes == "second"


async def test_delete_patient_cascades_to_its_assessments(local_store):
    jane = await local_store.create_patient(PatientCreate(name="Jane"))
    john = await local_store.create_patient(PatientCreate(name="John"))
    for patient in (jane, jane, john):
        await local_store.create_assessment(
            AssessmentCreate(patient_id=patient.id, patient_info=PatientInfo(name=patient.name))
        )

    await local_store.delete_patient(jane.id)

    remaining = await local_store.list_assessments()
    assert [a.patient_id for a in remaining] == [john.id]
    assert [p.id for p in await local_store.list_patients()] == [john.id]


async def test_assessments_listed_newest_first(local_store, session_factory):
    now = datetime.now(timezone.utc)
    patient = await local_store.create_patient(PatientCreate(name="Jane"))
    for offset, assessment_id in ((2, "old"), (0, "new"), (1, "mid")):
        await local_store._insert_assessment(
            Assessment(
                id=assessment_id,
                patient_id=patient.id,
                patient_info=PatientInfo(name="Jane"),
                saved_date=now - timedelta(days=offset),
            )
        )
    assert [a.id for a in await local_store.list_assessments()] == ["new", "mid", "old"]


async def test_legacy_assessments_are_not_listed_until_ingested(local_store, session_factory):
    put_raw(session_factory, ASSESSMENT_PREFIX + "legacy-1", legacy_assessment("Ann Lee", "1950-05-05", "2023-01-01T10:00:00.000Z"))
    assert await local_store.list_assessments() == []
    assert len(await local_store.list_legacy_assessments()) == 1


async def test_ingest_legacy_dedupes_by_natural_key(local_store, session_factory):
    put_raw(session_factory, ASSESSMENT_PREFIX + "legacy-1", legacy_assessment("Ann Lee", "1950-05-05", "2023-01-01T10:00:00.000Z"))
    put_raw(session_factory, ASSESSMENT_PREFIX + "legacy-2", legacy_assessment("Ann Lee", "1950-05-05", "2023-02-01T10:00:00.000Z"))
    put_raw(session_factory, ASSESSMENT_PREFIX + "legacy-3", legacy_assessment("Bob Ray", "1960-06-06", "2023-03-01T10:00:00.000Z"))

    linked = await local_store.ingest_legacy()

    assert linked == 3
    patients = await local_store.list_patients()
    assert sorted(p.name for p in patients) == ["Ann Lee", "Bob Ray"]
    ann = next(p for p in patients if p.name == "Ann Lee")
    assessments = await local_store.get_assessments_for(ann.id)
    assert sorted(a.id for a in assessments) == ["legacy-1", "legacy-2"]
    assert await local_store.list_legacy_assessments() == []
    # Second run finds nothing left to link
    assert await local_store.ingest_legacy() == 0


async def test_ingest_legacy_reuses_existing_patient(local_store, session_factory):
    ann = await local_store.create_patient(PatientCreate(name="Ann Lee", date_of_birth="1950-05-05"))
    put_raw(session_factory, ASSESSMENT_PREFIX + "legacy-1", legacy_assessment("Ann Lee", "1950-05-05", "2023-01-01T10:00:00.000Z"))
    await local_store.ingest_legacy()
    assert [p.id for p in await local_store.list_patients()] == [ann.id]
    assert (await local_store.get_assessment("legacy-1")).patient_id == ann.id


async def test_plaintext_legacy_patient_is_readable(local_store, session_factory):
    put_raw(
        session_factory,
        PATIENT_PREFIX + "old-1",
        {"name": "Old Timer", "dateOfBirth": "1940-01-01", "mrn": "", "createdAt": "2022-05-01T08:00:00.000Z"},
    )
    patient = await local_store.get_patient("old-1")
    assert patient.name == "Old Timer"
    assert patient.updated_at == patient.created_at


def test_migration_state_persists(local_store):
    assert local_store.load_migration_state().status == MigrationStatus.NOT_STARTED
    state = MigrationState()
    state.begin()
    state.complete(patients=2, assessments=3)
    local_store.save_migration_state(state)

    loaded = local_store.load_migration_state()
    assert loaded.completed
    assert loaded.patients_migrated == 2


def test_interrupted_migration_state_is_reset(local_store):
    state = MigrationState()
    state.begin()
    local_store.save_migration_state(state)

    loaded = local_store.load_migration_state()
    assert loaded.status == MigrationStatus.NOT_STARTED
    assert loaded.last_error == "interrupted"


async def test_clear_records_keeps_migration_state(local_store):
    await local_store.create_patient(PatientCreate(name="Jane"))
    local_store.save_migration_state(MigrationState())
    assert local_store.clear_records() == 1
    assert local_store.count_records() == {"patients": 0, "assessments": 0}
    assert local_store._get_raw(MIGRATION_STATE_KEY) is not None

import pytest
from fastapi.testclient import TestClient

import masa.main as main
from masa.services.repository import Repository

from conftest import CLINIC_USER, make_remote_store

HEADERS = {"X-User-Id": CLINIC_USER.uid, "X-Organization": CLINIC_USER.organization}


@pytest.fixture()
def client(monkeypatch, local_store):
    repo = Repository(local_store)
    monkeypatch.setattr(main, "build_repository", lambda: repo)
    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def remote_client(monkeypatch, codec, local_store, document_service):
    repo = Repository(local_store, make_remote_store(codec, document_service))
    monkeypatch.setattr(main, "build_repository", lambda: repo)
    with TestClient(main.app) as c:
        yield c


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["version"] == main.settings.VERSION


def test_requires_caller_identity(client):
    assert client.get("/api/v1/patients/").status_code == 401


def test_patient_crud(client):
    resp = client.post("/api/v1/patients/", json={"name": "Jane Doe", "dateOfBirth": "1980-01-01"}, headers=HEADERS)
    assert resp.status_code == 201
    patient = resp.json()
    assert patient["name"] == "Jane Doe"
    assert patient["createdBy"] == "clinician-1"

    resp = client.patch(f"/api/v1/patients/{patient['id']}", json={"mrn": "MRN-5"}, headers=HEADERS)
    assert resp.json()["mrn"] == "MRN-5"

    listed = client.get("/api/v1/patients/", headers=HEADERS).json()
    assert [p["id"] for p in listed] == [patient["id"]]

    assert client.delete(f"/api/v1/patients/{patient['id']}", headers=HEADERS).status_code == 204
    assert client.get(f"/api/v1/patients/{patient['id']}", headers=HEADERS).status_code == 404


def test_invalid_grades_are_rejected(client):
    resp = client.post(
        "/api/v1/assessments/",
        json={"patientInfo": {"name": "Jane"}, "selectedGrades": {"5": 9}},
        headers=HEADERS,
    )
    assert resp.status_code == 422


def test_assessment_flow_and_dashboard(client):
    resp = client.post(
        "/api/v1/assessments/",
        json={
            "patientInfo": {"name": "Jane Doe", "dateOfBirth": "1980-01-01", "assessmentDate": "2024-01-05"},
            "selectedGrades": {"1": 10, "2": 8, "3": None},
            "notes": "baseline",
        },
        headers=HEADERS,
    )
    assert resp.status_code == 201
    assessment = resp.json()
    assert assessment["totalScore"] == 18
    assert assessment["severity"] == "severe"
    assert assessment["completion"] == 2

    filtered = client.get("/api/v1/assessments/", params={"patient_id": assessment["patientId"]}, headers=HEADERS)
    assert [a["id"] for a in filtered.json()] == [assessment["id"]]

    dashboard = client.get("/api/v1/analytics/dashboard", headers=HEADERS).json()
    assert dashboard[0]["totalAssessments"] == 1
    assert dashboard[0]["averageScore"] == 18
    assert dashboard[0]["patient"]["name"] == "Jane Doe"

    progress = client.get(f"/api/v1/analytics/patients/{assessment['patientId']}/progress", headers=HEADERS).json()
    assert progress["trend"] == "insufficient"
    assert progress["severityHistory"][0]["label"] == "Severe dysphagia"


def test_unknown_assessment_is_404(client):
    assert client.get("/api/v1/assessments/missing", headers=HEADERS).status_code == 404


def test_storage_status_and_migrate_without_remote(client):
    status = client.get("/api/v1/storage/status", headers=HEADERS).json()
    assert status["currentBackend"] == "local"
    assert status["migrationCompleted"] is False
    assert client.post("/api/v1/storage/migrate", headers=HEADERS).status_code == 503


def test_migrate_on_local_session_is_409(remote_client, document_service):
    document_service.unavailable = True
    assert remote_client.get("/api/v1/storage/status", headers=HEADERS).json()["currentBackend"] == "local"
    document_service.unavailable = False
    assert remote_client.post("/api/v1/storage/migrate", headers=HEADERS).status_code == 409
    assert remote_client.get("/api/v1/storage/status", headers=HEADERS).json()["currentBackend"] == "local"


def test_remote_backend_unavailable_is_503(remote_client, document_service):
    assert remote_client.get("/api/v1/storage/status", headers=HEADERS).json()["currentBackend"] == "remote"
    document_service.unavailable = True
    assert remote_client.get("/api/v1/patients/", headers=HEADERS).status_code == 503


def test_remote_permission_denied_is_403(remote_client, document_service):
    remote_client.get("/api/v1/storage/status", headers=HEADERS)
    document_service.deny = True
    assert remote_client.get("/api/v1/patients/", headers=HEADERS).status_code == 403

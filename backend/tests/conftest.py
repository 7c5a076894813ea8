"""Shared fixtures: in-memory local storage and a fake remote document service."""
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from masa.core.encryption import EncryptionCodec
from masa.core.security import AuthenticatedUser
from masa.models.base import Base
import masa.models.kv_entry  # noqa: F401 - registers the kv_entries table
from masa.services.firestore_values import decode_fields, decode_value
from masa.services.local_store import LocalStore
from masa.services.remote_store import RemoteStore
from masa.services.repository import Repository

TEST_SECRET = "test-encryption-secret"
TEST_PROJECT = "test-project"
TEST_BASE_URL = "https://remote.test/v1"

CLINIC_USER = AuthenticatedUser(uid="clinician-1", organization="clinic-a")


class FakeDocumentService:
    """
    In-memory stand-in for the remote document REST API: single-document GET,
    collection listing, structured queries and atomic commits with preconditions.
    """

    def __init__(self):
        # collection -> document id -> encoded fields
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {"patients": {}, "assessments": {}}
        self.unavailable = False
        self.deny = False
        self.fail_commits = False
        # Answer queries with a 200 HTML page, as a captive portal does
        self.garble_queries = False
        self.commit_count = 0
        self.requests: List[httpx.Request] = []

    # ── inspection helpers ──────────────────────────────────────────────────

    def documents(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return {doc_id: decode_fields(fields) for doc_id, fields in self.collections[collection].items()}

    def count(self, collection: str) -> int:
        return len(self.collections[collection])

    # ── transport ───────────────────────────────────────────────────────────

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unavailable:
            raise httpx.ConnectError("connection refused", request=request)
        if self.deny:
            return _error(403, "PERMISSION_DENIED", "Missing or insufficient permissions.")

        _, _, rest = request.url.path.partition("/documents")
        if rest == ":runQuery" and self.garble_queries:
            return httpx.Response(200, text="<html>login</html>", headers={"content-type": "text/html"})
        if rest == ":runQuery":
            return self._run_query(json.loads(request.content))
        if rest == ":commit":
            return self._commit(json.loads(request.content))

        parts = [p for p in rest.split("/") if p]
        if request.method == "GET" and len(parts) == 1:
            docs = [self._document(parts[0], doc_id) for doc_id in self.collections.get(parts[0], {})]
            return httpx.Response(200, json={"documents": docs})
        if request.method == "GET" and len(parts) == 2:
            collection, doc_id = parts
            if doc_id not in self.collections.get(collection, {}):
                return _error(404, "NOT_FOUND", f"Document {collection}/{doc_id} not found")
            return httpx.Response(200, json=self._document(collection, doc_id))
        return _error(400, "INVALID_ARGUMENT", f"Unsupported request {request.method} {rest}")

    def _document(self, collection: str, doc_id: str) -> Dict[str, Any]:
        return {
            "name": f"projects/{TEST_PROJECT}/databases/(default)/documents/{collection}/{doc_id}",
            "fields": self.collections[collection][doc_id],
        }

    def _run_query(self, body: Dict[str, Any]) -> httpx.Response:
        query = body["structuredQuery"]
        collection = query["from"][0]["collectionId"]
        filters = _flatten_filters(query.get("where"))

        matches = []
        for doc_id, fields in self.collections.get(collection, {}).items():
            data = decode_fields(fields)
            if all(data.get(path) == value for path, value in filters):
                matches.append((doc_id, data))

        for order in reversed(query.get("orderBy", [])):
            path = order["field"]["fieldPath"]
            matches.sort(key=lambda m: m[1].get(path) or "", reverse=order.get("direction") == "DESCENDING")
        if query.get("limit"):
            matches = matches[: query["limit"]]

        if not matches:
            return httpx.Response(200, json=[{"readTime": "2024-01-01T00:00:00Z"}])
        return httpx.Response(200, json=[{"document": self._document(collection, doc_id)} for doc_id, _ in matches])

    def _commit(self, body: Dict[str, Any]) -> httpx.Response:
        if self.fail_commits:
            return _error(503, "UNAVAILABLE", "The service is currently unavailable.")

        staged = {name: dict(docs) for name, docs in self.collections.items()}
        for write in body.get("writes", []):
            if "delete" in write:
                collection, doc_id = _split_name(write["delete"])
                if doc_id not in staged.setdefault(collection, {}):
                    return _error(404, "NOT_FOUND", f"No document to delete: {doc_id}")
                del staged[collection][doc_id]
                continue

            collection, doc_id = _split_name(write["update"]["name"])
            exists = doc_id in staged.setdefault(collection, {})
            must_exist = write.get("currentDocument", {}).get("exists")
            if must_exist is False and exists:
                return _error(409, "ALREADY_EXISTS", f"Document already exists: {doc_id}")
            if must_exist is True and not exists:
                return _error(404, "NOT_FOUND", f"No document to update: {doc_id}")
            staged[collection][doc_id] = write["update"]["fields"]

        self.collections = staged
        self.commit_count += 1
        return httpx.Response(200, json={"commitTime": "2024-01-01T00:00:00Z"})


def _error(code: int, status: str, message: str) -> httpx.Response:
    return httpx.Response(code, json={"error": {"code": code, "message": message, "status": status}})


def _split_name(name: str) -> Tuple[str, str]:
    collection, doc_id = name.split("/documents/", 1)[1].split("/")
    return collection, doc_id


def _flatten_filters(where: Optional[Dict[str, Any]]) -> List[Tuple[str, Any]]:
    if not where:
        return []
    if "compositeFilter" in where:
        return [f for sub in where["compositeFilter"]["filters"] for f in _flatten_filters(sub)]
    field_filter = where["fieldFilter"]
    assert field_filter["op"] == "EQUAL"
    return [(field_filter["field"]["fieldPath"], decode_value(field_filter["value"]))]


# ── fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def codec():
    return EncryptionCodec(TEST_SECRET)


@pytest.fixture()
def session_factory():
    """Isolated in-memory SQLite database for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture()
def local_store(codec, session_factory):
    return LocalStore(codec, session_factory)


@pytest.fixture()
def document_service():
    return FakeDocumentService()


def make_remote_store(codec, service: FakeDocumentService, user=CLINIC_USER, **kwargs) -> RemoteStore:
    return RemoteStore(
        codec,
        user=user,
        project_id=TEST_PROJECT,
        base_url=TEST_BASE_URL,
        api_key="",
        auth_token="test-token",
        transport=httpx.MockTransport(service.handler),
        **kwargs,
    )


@pytest.fixture()
def remote_store(codec, document_service):
    return make_remote_store(codec, document_service)


@pytest.fixture()
def unconfigured_remote(codec, document_service):
    return RemoteStore(
        codec,
        project_id="",
        base_url=TEST_BASE_URL,
        transport=httpx.MockTransport(document_service.handler),
    )


@pytest.fixture()
def repository(local_store, remote_store):
    """Repository with a reachable remote store."""
    return Repository(local_store, remote_store, user=CLINIC_USER)


@pytest.fixture()
def local_repository(local_store):
    """Repository with no remote store configured."""
    return Repository(local_store, None, user=CLINIC_USER)

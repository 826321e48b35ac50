"""API integration tests for the Statement Import API."""

import time
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.core.context import build_context
from app.core.errors import USER_MESSAGES, ErrorCode, TransientStorageError
from app.core.settings import Settings
from main import create_app

HTTP_200_OK = 200
HTTP_202_ACCEPTED = 202
HTTP_400_BAD_REQUEST = 400
HTTP_404_NOT_FOUND = 404
HTTP_409_CONFLICT = 409
HTTP_503_SERVICE_UNAVAILABLE = 503


@pytest.fixture
def client(settings: Settings, tmp_path: Path) -> Iterator[TestClient]:
    """Client for an app whose worker pool runs jobs in the background against a SQLite file."""
    settings.database_url = f"sqlite:///{tmp_path / 'imports.db'}"
    settings.worker_concurrency = 1
    context = build_context(settings)
    with TestClient(create_app(context)) as test_client:
        yield test_client
    context.close()


def _upload(client: TestClient, content: bytes, name: str, mime: str) -> dict:
    files = {"file": (name, content, mime)}
    response = client.post("/imports", files=files, data={"user_id": "user-1"})
    if response.status_code != HTTP_202_ACCEPTED:
        msg = f"Expected status {HTTP_202_ACCEPTED}, got {response.status_code}: {response.text}"
        raise AssertionError(msg)
    return response.json()


def _wait(client: TestClient, job_id: str) -> dict:
    for _ in range(40):
        status_resp = client.get(f"/imports/{job_id}")
        if status_resp.status_code != HTTP_200_OK:
            msg = f"Expected status {HTTP_200_OK}, got {status_resp.status_code}"
            raise AssertionError(msg)
        job = status_resp.json()
        if job["status"] in ("REVIEW", "FAILED", "CANCELLED", "CONFIRMED"):
            return job
        time.sleep(0.25)
    msg = f"Job {job_id} did not finish, last status {job['status']}"
    raise AssertionError(msg)


def test_health(client: TestClient) -> None:
    """Test the /health endpoint returns status ok."""
    response = client.get("/health")
    if response.status_code != HTTP_200_OK:
        msg = f"Expected status {HTTP_200_OK}, got {response.status_code}"
        raise AssertionError(msg)
    if response.json() != {"status": "ok"}:
        msg = f"Expected response {{'status': 'ok'}}, got {response.json()}"
        raise AssertionError(msg)


def test_scalar_docs(client: TestClient) -> None:
    """Test the /scalar endpoint returns OpenAPI docs."""
    response = client.get("/scalar")
    if response.status_code != HTTP_200_OK:
        msg = f"Expected status {HTTP_200_OK}, got {response.status_code}"
        raise AssertionError(msg)
    if "openapi" not in response.text:
        msg = "Expected 'openapi' in response text"
        raise AssertionError(msg)


def test_import_lifecycle(client: TestClient, statement_pdf: bytes) -> None:
    """Upload a statement, poll it to REVIEW, confirm it, and refuse a second confirm."""
    job = _upload(client, statement_pdf, "extracto.pdf", "application/pdf")
    if job["status"] != "PENDING" or job["progress"] != 0:
        msg = f"Expected a fresh PENDING job, got {job['status']} ({job['progress']})"
        raise AssertionError(msg)

    job = _wait(client, job["id"])
    if job["status"] != "REVIEW":
        msg = f"Expected status 'REVIEW', got '{job['status']}' ({job['error_code']})"
        raise AssertionError(msg)
    if len(job["result"]["transactions"]) != 3 or job["result"]["accounts"][0]["currency"] != "COP":
        msg = f"Unexpected result: {job['result']}"
        raise AssertionError(msg)

    confirm = client.post(f"/imports/{job['id']}/confirm")
    if confirm.status_code != HTTP_200_OK or confirm.json() != {"accounts_created": 1, "transactions_created": 3}:
        msg = f"Unexpected confirm response: {confirm.status_code} {confirm.text}"
        raise AssertionError(msg)
    again = client.post(f"/imports/{job['id']}/confirm")
    if again.status_code != HTTP_409_CONFLICT:
        msg = f"Expected status {HTTP_409_CONFLICT}, got {again.status_code}"
        raise AssertionError(msg)
    cancel = client.post(f"/imports/{job['id']}/cancel")
    if cancel.status_code != HTTP_409_CONFLICT:
        msg = f"Expected status {HTTP_409_CONFLICT}, got {cancel.status_code}"
        raise AssertionError(msg)


def test_rejected_upload_and_unknown_job(client: TestClient) -> None:
    """Unsupported files are rejected and unknown jobs are 404."""
    files = {"file": ("notes.txt", b"hola", "text/plain")}
    response = client.post("/imports", files=files, data={"user_id": "user-1"})
    if response.status_code != HTTP_400_BAD_REQUEST:
        msg = f"Expected status {HTTP_400_BAD_REQUEST}, got {response.status_code}"
        raise AssertionError(msg)
    for method, path in [("get", "/imports/nope"), ("post", "/imports/nope/confirm"), ("post", "/imports/nope/cancel")]:
        response = getattr(client, method)(path)
        if response.status_code != HTTP_404_NOT_FOUND:
            msg = f"{method.upper()} {path}: expected {HTTP_404_NOT_FOUND}, got {response.status_code}"
            raise AssertionError(msg)


def test_storage_outage_on_upload(client: TestClient, statement_pdf: bytes, monkeypatch: pytest.MonkeyPatch) -> None:
    """An upload the blob store cannot take is a 503 with the service-unavailable message."""

    def unavailable(key: str, data: bytes, content_type: str | None = None) -> None:
        msg = f"storage down for {key} ({len(data)} bytes, {content_type})"
        raise TransientStorageError(msg)

    monkeypatch.setattr(client.app.state.context.file_service, "save_file", unavailable)
    files = {"file": ("extracto.pdf", statement_pdf, "application/pdf")}
    response = client.post("/imports", files=files, data={"user_id": "user-1"})
    if response.status_code != HTTP_503_SERVICE_UNAVAILABLE:
        msg = f"Expected status {HTTP_503_SERVICE_UNAVAILABLE}, got {response.status_code}"
        raise AssertionError(msg)
    if response.json() != {"detail": USER_MESSAGES[ErrorCode.SERVICE_UNAVAILABLE]}:
        msg = f"Unexpected body: {response.json()}"
        raise AssertionError(msg)

"""
HTTP tests for the import job endpoints with stub services.
"""
import pytest
from fastapi.testclient import TestClient

from app import api
from core.checkpoint import CheckpointStore
from services.import_service import BankImportService
from tests.helpers.stubs import StubClassifierService, StubExtractionService, numbered_statement


def other_expense(transaction):
    return ("DIGER_OUT", 0.8) if transaction.amount < 0 else ("DIGER_IN", 0.8)


@pytest.fixture
def pipeline(monkeypatch, tmp_path, settings, retry_policy):
    """Configures the stub pipeline; ``pause_after`` pauses every job after that many batches."""
    options = {"pause_after": None, "fail_batches": ()}

    def factory(on_progress):
        def observe(snapshot):
            on_progress(snapshot)
            if options["pause_after"] is not None and snapshot.completed >= options["pause_after"]:
                for job in api.jobs.values():
                    job["cancel_token"].cancel()

        return BankImportService(
            extraction_service=StubExtractionService(fail_batches=options["fail_batches"]),
            classifier_service=StubClassifierService(other_expense),
            settings=settings,
            retry_policy=retry_policy,
            on_progress=observe,
        )

    monkeypatch.setattr(api, "service_factory", factory)
    monkeypatch.setattr(api, "checkpoints", CheckpointStore(tmp_path / "checkpoints"))
    monkeypatch.setattr(api, "jobs", {})
    return options


@pytest.fixture
def client(pipeline):
    return TestClient(api.app)


def upload(client, name="march.csv", rows=25):
    return client.post("/imports", files={"file": (name, numbered_statement(rows).encode("utf-8"), "text/csv")})


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_import_completes(client):
    response = upload(client)
    assert response.status_code == 202
    job_id = response.json()["job_id"]

    status = client.get(f"/imports/{job_id}").json()
    assert status["status"] == "completed"
    assert status["result"]["total_transactions"] == 25
    assert status["result"]["total_batches"] == 3
    assert status["result"]["uncategorized"] == 0
    assert status["progress"]["completed"] == 3
    assert status["has_checkpoint"] is False

    download = client.get(f"/imports/{job_id}/download")
    assert download.status_code == 200
    assert download.content[:2] == b"PK"


def test_unsupported_file_type(client):
    response = client.post("/imports", files={"file": ("statement.pdf", b"%PDF", "application/pdf")})
    assert response.status_code == 400


def test_failed_import(client, pipeline):
    pipeline["fail_batches"] = (0, 1, 2)
    job_id = upload(client).json()["job_id"]

    status = client.get(f"/imports/{job_id}").json()
    assert status["status"] == "failed"
    assert "No transactions" in status["error"]
    assert client.get(f"/imports/{job_id}/download").status_code == 404


def test_pause_and_resume(client, pipeline):
    pipeline["pause_after"] = 2
    job_id = upload(client, rows=45).json()["job_id"]

    status = client.get(f"/imports/{job_id}").json()
    assert status["status"] == "paused"
    assert status["has_checkpoint"] is True
    assert status["progress"]["completed"] == 2

    pipeline["pause_after"] = None
    assert client.post(f"/imports/{job_id}/resume").status_code == 202

    status = client.get(f"/imports/{job_id}").json()
    assert status["status"] == "completed"
    assert status["result"]["total_transactions"] == 45
    assert status["has_checkpoint"] is False


def test_discard_checkpoint(client, pipeline):
    pipeline["pause_after"] = 0
    job_id = upload(client).json()["job_id"]

    assert client.delete(f"/imports/{job_id}/checkpoint").status_code == 200
    assert client.get(f"/imports/{job_id}").json()["status"] == "discarded"
    assert client.post(f"/imports/{job_id}/resume").status_code == 409
    assert client.delete(f"/imports/{job_id}/checkpoint").status_code == 404


def test_state_conflicts(client):
    job_id = upload(client).json()["job_id"]

    assert client.post(f"/imports/{job_id}/pause").status_code == 409
    assert client.post(f"/imports/{job_id}/resume").status_code == 409


def test_unknown_job(client):
    assert client.get("/imports/missing").status_code == 404
    assert client.post("/imports/missing/pause").status_code == 404

import os
from collections import deque

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_rhythm.db")

from apps.api import main as api_main
from apps.api.main import app
from apps.api.routes.diagnosis_runs import get_context_provider, get_llm_client
from apps.worker.runner import claim_run, enqueue_run
from packages.db.database import engine, get_session
from packages.db.models import Base, DiagnosisRun

client = TestClient(app)

STATIC_TOKEN = "t" * 32


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def scripted_dependencies(fake_llm, context_provider):
    llm = fake_llm()
    app.dependency_overrides[get_llm_client] = lambda: llm
    app.dependency_overrides[get_context_provider] = lambda: context_provider
    yield llm
    app.dependency_overrides.clear()


@pytest.fixture
def enforce_static_auth(monkeypatch):
    monkeypatch.setenv("HIPAA_ENFORCEMENT", "true")
    monkeypatch.setenv("API_INTERNAL_AUTH_MODE", "static")
    monkeypatch.setenv("API_INTERNAL_TOKEN", STATIC_TOKEN)


def _headers(org_id="org-1", role="clinician", user_id="u1") -> dict:
    return {
        "X-Internal-Token": STATIC_TOKEN,
        "X-User-Id": user_id,
        "X-Org-Id": org_id,
        "X-User-Role": role,
    }


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_rate_limit_is_per_client_across_run_urls(monkeypatch):
    monkeypatch.setattr(api_main, "rate_limit_enabled", True)
    monkeypatch.setattr(api_main, "rate_limit_rpm", 3)
    monkeypatch.setattr(api_main, "_rate_windows", {})

    statuses = [client.get(f"/diagnosis-runs/run-{i}").status_code for i in range(4)]

    assert statuses == [404, 404, 404, 429]
    assert len(api_main._rate_windows) == 1


def test_idle_rate_windows_are_swept(monkeypatch):
    monkeypatch.setattr(api_main, "_rate_windows", {"10.0.0.1": deque([0.0]), "10.0.0.2": deque([100.0])})
    api_main._sweep_idle_windows(120.0)
    assert list(api_main._rate_windows) == ["10.0.0.2"]


def test_create_run_returns_queued():
    response = client.post("/patients/patient-p/diagnosis-runs", json={"organization_id": "org-1"})
    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "queued"
    assert body["patient_id"] == "patient-p"
    assert body["retry_count"] == 0
    assert body["max_retries"] == 3
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_create_run_requires_organization():
    response = client.post("/patients/patient-p/diagnosis-runs", json={})
    assert response.status_code == 400


def test_create_run_validates_max_retries():
    response = client.post(
        "/patients/patient-p/diagnosis-runs",
        json={"organization_id": "org-1", "max_retries": 11},
    )
    assert response.status_code == 422


def test_list_runs_for_patient():
    enqueue_run("patient-p", "org-1")
    enqueue_run("patient-p", "org-1")
    enqueue_run("patient-q", "org-1")
    response = client.get("/patients/patient-p/diagnosis-runs")
    assert response.status_code == 200
    assert len(response.json()) == 2


def test_get_unknown_run_is_404():
    assert client.get("/diagnosis-runs/missing").status_code == 404
    assert client.get("/diagnosis-runs/missing/artifacts").status_code == 404
    assert client.post("/diagnosis-runs/missing/execute").status_code == 404


def test_execute_run_end_to_end():
    run_id = client.post("/patients/patient-p/diagnosis-runs", json={"organization_id": "org-1"}).json()["id"]

    response = client.post(f"/diagnosis-runs/{run_id}/execute")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "succeeded"
    assert body["requires_review"] is False
    artifact_id = body["artifact_id"]

    run = client.get(f"/diagnosis-runs/{run_id}").json()
    assert run["status"] == "succeeded"
    assert run["output_data"]["artifact_id"] == artifact_id
    assert run["completed_at"] is not None

    artifacts = client.get(f"/diagnosis-runs/{run_id}/artifacts").json()
    assert [a["id"] for a in artifacts] == [artifact_id]
    assert artifacts[0]["risk_level"] == "moderate"
    assert artifacts[0]["artifact_type"] == "diagnosis_json"

    again = client.post(f"/diagnosis-runs/{run_id}/execute")
    assert again.status_code == 409


def test_execute_running_run_is_conflict():
    run_id = enqueue_run("patient-p", "org-1")
    assert claim_run(run_id, worker_id="someone-else")
    assert client.post(f"/diagnosis-runs/{run_id}/execute").status_code == 409


def test_execute_failure_is_reported_in_body(scripted_dependencies):
    scripted_dependencies.diagnosis = '{"summary": "x", "findings": [], "recommendations": [], "confidence_score": 1.5}'
    run_id = enqueue_run("patient-p", "org-1")
    body = client.post(f"/diagnosis-runs/{run_id}/execute").json()
    assert body["status"] == "failed"
    assert body["error_code"] == "VALIDATION_ERROR"
    assert client.get(f"/diagnosis-runs/{run_id}/artifacts").json() == []


def test_worker_endpoint_with_empty_queue():
    response = client.post("/workers/diagnosis-runs/execute")
    assert response.status_code == 200
    assert response.json() == {"processed": False, "result": None}


def test_worker_endpoint_processes_oldest_run():
    run_id = enqueue_run("patient-p", "org-1")
    response = client.post("/workers/diagnosis-runs/execute")
    body = response.json()
    assert body["processed"] is True
    assert body["result"]["run_id"] == run_id
    assert body["result"]["status"] == "succeeded"


def test_worker_endpoint_disabled(monkeypatch):
    monkeypatch.setenv("DIAGNOSIS_WORKER_ENABLED", "false")
    enqueue_run("patient-p", "org-1")
    assert client.post("/workers/diagnosis-runs/execute").status_code == 403
    with get_session() as session:
        assert session.query(DiagnosisRun).filter_by(status="queued").count() == 1


def test_reconcile_endpoint_defaults_to_dry_run():
    with get_session() as session:
        session.add(DiagnosisRun(patient_id="patient-p", organization_id="org-1", status="failed"))

    response = client.post("/admin/diagnosis/reconcile", json={})
    assert response.status_code == 200
    body = response.json()
    assert body["dry_run"] is True
    assert body["actions"]["fixed_error_code"] == 1
    with get_session() as session:
        assert session.query(DiagnosisRun).one().error_code is None


def test_reconcile_endpoint_applies_fixes():
    with get_session() as session:
        session.add(DiagnosisRun(patient_id="patient-p", organization_id="org-1", status="failed"))

    body = client.post("/admin/diagnosis/reconcile", json={"dry_run": False}).json()
    assert body["actions"]["fixed_error_code"] == 1
    with get_session() as session:
        assert session.query(DiagnosisRun).one().error_code == "UNKNOWN_ERROR"


def test_reconcile_endpoint_rejects_oversized_limits():
    assert client.post("/admin/diagnosis/reconcile", json={"limit": 501}).status_code == 422
    assert client.post("/admin/diagnosis/reconcile", json={"max_ids": 201}).status_code == 422


class TestEnforcedAuth:
    def test_missing_token_is_401(self, enforce_static_auth):
        response = client.get("/patients/patient-p/diagnosis-runs")
        assert response.status_code == 401

    def test_create_uses_identity_organization(self, enforce_static_auth):
        response = client.post("/patients/patient-p/diagnosis-runs", json={}, headers=_headers())
        assert response.status_code == 202
        assert response.json()["organization_id"] == "org-1"

    def test_viewer_cannot_create_or_execute(self, enforce_static_auth):
        run_id = enqueue_run("patient-p", "org-1")
        headers = _headers(role="viewer")
        assert client.post("/patients/patient-p/diagnosis-runs", json={}, headers=headers).status_code == 403
        assert client.post(f"/diagnosis-runs/{run_id}/execute", headers=headers).status_code == 403
        assert client.post("/admin/diagnosis/reconcile", json={}, headers=headers).status_code == 403

    def test_cross_organization_access_is_403(self, enforce_static_auth):
        run_id = enqueue_run("patient-p", "org-1")
        headers = _headers(org_id="org-2")
        assert client.get(f"/diagnosis-runs/{run_id}", headers=headers).status_code == 403
        assert client.post(f"/diagnosis-runs/{run_id}/execute", headers=headers).status_code == 403
        assert client.get("/patients/patient-p/diagnosis-runs", headers=headers).json() == []

    def test_worker_role_may_drain_queue(self, enforce_static_auth):
        enqueue_run("patient-p", "org-1")
        response = client.post("/workers/diagnosis-runs/execute", headers=_headers(role="worker"))
        assert response.status_code == 200
        assert response.json()["processed"] is True

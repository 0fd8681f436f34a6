import threading
import time
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from roadwatch.core.types import Actor, Category, Role
from roadwatch.security.rate_limit import AdmissionGovernor, InMemoryCounterStore, RoleBudget
from roadwatch import server
from roadwatch.server import app
from roadwatch.service import ReportService
from roadwatch.storage.memory import InMemoryReportStore
from roadwatch.workflow.engine import LifecycleEngine
from tests.auth_helpers import jwt_headers


client = TestClient(app)

CITIZEN = jwt_headers(principal_id="c1", role="citizen")
NEIGHBOUR = jwt_headers(principal_id="c2", role="citizen")
ADMIN = jwt_headers(principal_id="a1", role="admin")
STAFF = jwt_headers(principal_id="s2", role="staff", specialization="pothole")


def _install_service(budget=1000):
    store = InMemoryReportStore()
    store.save_actor(Actor(id="s2", role=Role.STAFF, specialization=Category.POTHOLE))
    store.save_actor(Actor(id="s3", role=Role.STAFF, specialization=Category.LIGHTING))
    governor = AdmissionGovernor(
        budgets={role: RoleBudget(window_ms=900_000, max_requests=budget) for role in Role},
        store=InMemoryCounterStore(),
    )
    app.state.service = ReportService(
        store,
        governor=governor,
        engine=LifecycleEngine(store, max_revisions=5),
        owner_delete_pending=False,
    )
    return app.state.service


@pytest.fixture(autouse=True)
def _fresh_service():
    _install_service()
    yield
    app.state.service = None


def _create(headers=CITIZEN, **overrides):
    body = {
        "title": "Pothole outside school",
        "description": "Deep hole by the crossing, cars swerving",
        "category": "pothole",
        "address": "1 School Rd",
    }
    body.update(overrides)
    return client.post("/reports", json=body, headers=headers)


def test_health_endpoints_are_public():
    assert client.get("/").json()["status"] == "ok"
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["store"] == "memory"


def test_citizen_creates_report():
    resp = _create()
    assert resp.status_code == 201
    body = resp.json()
    assert body["state"] == "Pending"
    assert body["owner"] == "c1"
    assert body["assignee"] is None
    assert body["priority"] == 4
    assert body["allowed_triggers"] == ["assign"]


def test_create_requires_citizen_token():
    resp = _create(headers={})
    assert resp.status_code == 401
    assert resp.json()["detail"]["error_code"] == "AUTH_REQUIRED"

    resp = _create(headers=STAFF)
    assert resp.status_code == 403
    assert resp.json()["detail"]["error_code"] == "CREATE_FORBIDDEN"

    resp = _create(title="bad")
    assert resp.status_code == 422
    assert resp.json()["detail"]["error_code"] == "VALIDATION_ERROR"


def test_bad_credentials_are_rejected():
    resp = client.get("/reports", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["detail"]["error_code"] == "AUTH_JWT_INVALID"

    resp = client.get("/reports", headers={"Authorization": "Basic Zm9vOmJhcg=="})
    assert resp.status_code == 401
    assert resp.json()["detail"]["error_code"] == "AUTH_SCHEME_UNSUPPORTED"

    expired = jwt_headers(principal_id="c1", role="citizen", expires_in=-60)
    resp = client.get("/reports", headers=expired)
    assert resp.status_code == 401
    assert resp.json()["detail"]["error_code"] == "AUTH_JWT_EXPIRED"

    resp = client.get("/reports", headers=jwt_headers(principal_id="x", role="mayor"))
    assert resp.status_code == 401
    assert resp.json()["detail"]["error_code"] == "AUTH_JWT_ROLE"


def test_private_report_is_forbidden_to_other_citizens():
    report_id = _create(visibility="private").json()["id"]

    resp = client.get(f"/reports/{report_id}", headers=NEIGHBOUR)
    assert resp.status_code == 403
    assert resp.json()["detail"] == {"error_code": "VIEW_FORBIDDEN", "message": "not authorized to view"}

    assert client.get(f"/reports/{report_id}").status_code == 401
    assert client.get(f"/reports/{report_id}", headers=CITIZEN).status_code == 200
    assert client.get(f"/reports/{report_id}", headers=ADMIN).status_code == 200
    assert client.get("/reports", headers=NEIGHBOUR).json()["count"] == 0


def test_unknown_report_is_404():
    resp = client.get("/reports/does-not-exist", headers=ADMIN)
    assert resp.status_code == 404
    assert resp.json()["detail"]["error_code"] == "REPORT_NOT_FOUND"


def test_owner_patch_then_window_closes():
    report_id = _create().json()["id"]
    resp = client.patch(f"/reports/{report_id}", json={"severity": "critical"}, headers=CITIZEN)
    assert resp.status_code == 200
    assert resp.json()["priority"] == 5

    client.post(f"/reports/{report_id}/assign", json={"staff_id": "s2"}, headers=ADMIN)
    resp = client.patch(f"/reports/{report_id}", json={"title": "Changed my mind"}, headers=CITIZEN)
    assert resp.status_code == 403
    assert resp.json()["detail"]["error_code"] == "EDIT_WINDOW_CLOSED"


def test_full_workflow_over_http():
    report_id = _create().json()["id"]

    resp = client.get(f"/reports/{report_id}/qualified-staff", headers=ADMIN)
    assert [s["id"] for s in resp.json()["staff"]] == ["s2"]

    resp = client.post(f"/reports/{report_id}/assign", json={"staff_id": "s3"}, headers=ADMIN)
    assert resp.status_code == 422
    assert resp.json()["detail"]["error_code"] == "NO_QUALIFIED_STAFF"

    resp = client.post(f"/reports/{report_id}/assign", json={"staff_id": "s2", "notes": "asap"}, headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["state"] == "Assigned"

    assert client.post(f"/reports/{report_id}/start", headers=STAFF).json()["state"] == "InProgress"

    resp = client.post(f"/reports/{report_id}/progress", json={"progress": 150}, headers=STAFF)
    assert resp.json()["progress"] == 100
    resp = client.post(f"/reports/{report_id}/progress", json={"progress": "lots"}, headers=STAFF)
    assert resp.status_code == 422
    assert resp.json()["detail"]["error_code"] == "PROGRESS_INVALID"

    resp = client.post(f"/reports/{report_id}/submit", json={}, headers=STAFF)
    assert resp.json()["state"] == "PendingReview"
    assert client.get("/reports/pending-review", headers=ADMIN).json()["count"] == 1

    resp = client.post(f"/reports/{report_id}/approve", json={}, headers=STAFF)
    assert resp.status_code == 403

    resp = client.post(f"/reports/{report_id}/reject", json={"reason": "patch too thin"}, headers=ADMIN)
    assert resp.json()["state"] == "NeedsRevision"
    assert resp.json()["revision_count"] == 1

    client.post(f"/reports/{report_id}/resume", headers=STAFF)
    client.post(f"/reports/{report_id}/submit", json={"notes": "re-laid"}, headers=STAFF)
    resp = client.post(f"/reports/{report_id}/approve", json={"notes": "good"}, headers=ADMIN)
    body = resp.json()
    assert body["state"] == "Resolved"
    assert body["revision_count"] == 1
    assert body["review_outcome"] == {"approved": True, "reason": "good"}
    assert body["allowed_triggers"] == []

    resp = client.post(f"/reports/{report_id}/approve", json={}, headers=ADMIN)
    assert resp.status_code == 409
    assert resp.json()["detail"]["error_code"] == "INVALID_TRANSITION"

    resp = client.get(f"/reports/{report_id}/feedback-eligibility", headers=CITIZEN)
    assert resp.json()["eligible"] is True


def test_delete_is_admin_only():
    report_id = _create().json()["id"]
    resp = client.delete(f"/reports/{report_id}", headers=CITIZEN)
    assert resp.status_code == 403
    assert resp.json()["detail"]["error_code"] == "DELETE_FORBIDDEN"

    resp = client.delete(f"/reports/{report_id}", headers=ADMIN)
    assert resp.json() == {"deleted": True, "report_id": report_id}
    assert client.get(f"/reports/{report_id}", headers=ADMIN).status_code == 404


def test_throttled_requests_get_retry_after():
    _install_service(budget=2)
    assert client.get("/reports", headers=CITIZEN).status_code == 200
    assert client.get("/reports", headers=NEIGHBOUR).status_code == 200
    resp = client.get("/reports", headers=CITIZEN)
    assert resp.status_code == 429
    detail = resp.json()["detail"]
    assert detail["error_code"] == "RATE_LIMIT_ROLE"
    assert detail["role"] == "citizen"
    assert int(resp.headers["Retry-After"]) == detail["retry_after"]
    # Other roles keep their own budget.
    assert client.get("/reports", headers=ADMIN).status_code == 200


def test_ops_metrics_is_admin_only():
    _create()
    resp = client.get("/ops/metrics", headers=CITIZEN)
    assert resp.status_code == 403
    assert resp.json()["detail"]["error_code"] == "METRICS_FORBIDDEN"

    resp = client.get("/ops/metrics", headers=ADMIN)
    assert resp.status_code == 200
    body = resp.json()
    assert body["metrics"]["report.created"] == 1
    assert {b["role"] for b in body["admission_budgets"]} == {"admin", "citizen", "staff"}


def test_list_reports_pages_and_filters():
    for i in range(3):
        _create(title=f"Pothole number {i}", severity="high" if i else "low")
    _create(title="Flickering lamp", category="lighting", address="9 Oak Ave")

    body = client.get("/reports", params={"limit": 2}, headers=NEIGHBOUR).json()
    assert (body["count"], body["total"], body["page"], body["pages"], body["limit"]) == (2, 4, 1, 2, 2)
    second = client.get("/reports", params={"limit": 2, "page": 2}, headers=NEIGHBOUR).json()
    seen = {r["id"] for r in body["reports"]} | {r["id"] for r in second["reports"]}
    assert len(seen) == 4

    body = client.get("/reports", params={"search": "oak ave"}, headers=NEIGHBOUR).json()
    assert [r["title"] for r in body["reports"]] == ["Flickering lamp"]
    assert client.get("/reports", params={"severity": "high"}, headers=NEIGHBOUR).json()["total"] == 2

    resp = client.get("/reports", params={"limit": 500}, headers=NEIGHBOUR)
    assert resp.status_code == 422
    assert resp.json()["detail"]["error_code"] == "LIMIT_INVALID"


def test_report_stats_endpoint_is_admin_only():
    _create()
    _create(category="drainage", severity="low")

    resp = client.get("/reports/stats", headers=CITIZEN)
    assert resp.status_code == 403
    assert resp.json()["detail"]["error_code"] == "REVIEW_FORBIDDEN"
    assert client.get("/reports/stats").status_code == 401

    resp = client.get("/reports/stats", headers=ADMIN)
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["total"] == 2
    assert stats["by_state"]["Pending"] == 2
    assert stats["by_category"]["drainage"] == 1
    assert stats["by_severity"] == {"low": 1, "medium": 1, "high": 0, "critical": 0}
    assert stats["completion_rate"] == 0.0


def test_service_is_built_once_under_concurrent_requests(monkeypatch):
    app.state.service = None
    built = []

    def slow_build():
        time.sleep(0.05)
        service = _install_service()
        built.append(service)
        return service

    monkeypatch.setattr(server, "build_service", slow_build)
    request = SimpleNamespace(app=app)
    barrier = threading.Barrier(8)
    results = []
    results_lock = threading.Lock()

    def fetch():
        barrier.wait()
        service = server.get_service(request)
        with results_lock:
            results.append(service)

    threads = [threading.Thread(target=fetch) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(built) == 1
    assert len(results) == 8
    assert all(service is built[0] for service in results)

"""Tests for the HTTP API."""

import time
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from flowchart_ai.api.app import create_app
from flowchart_ai.containers import AppContainer
from flowchart_ai.domain.sessions import AnalysisRequest, SessionStatus
from flowchart_ai.services.sessions import SessionConfig
from tests.conftest import FakeGenerationClient, ManualClock

REQUIREMENT = "Users log in and then browse their order list"
ADMIN_HEADERS = {"X-Admin-Token": "admin-token"}


@pytest.fixture
def client(container: AppContainer) -> Iterator[TestClient]:
    app = create_app(container)
    with TestClient(app) as test_client:
        yield test_client


def _wait_for_terminal(client: TestClient, session_id: str) -> dict[str, object]:
    for _ in range(200):
        body = client.get(f"/api/v1/analysis/{session_id}").json()
        if body["status"] in {"completed", "failed", "timeout"}:
            return body
        time.sleep(0.01)
    raise AssertionError(f"Session {session_id} never finished")


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_and_poll_analysis(
    client: TestClient, generation_client: FakeGenerationClient
) -> None:
    response = client.post(
        "/api/v1/analysis",
        json={"requirement": REQUIREMENT, "product_type": "mobile"},
    )

    assert response.status_code == 200
    created = response.json()
    assert created["duplicate"] is False
    assert created["progress"]["percentage"] in {0, 10, 30, 70, 90, 100}

    body = _wait_for_terminal(client, created["session_id"])
    assert body["status"] == "completed"
    assert body["progress"]["percentage"] == 100
    assert body["result"]["diagram_source"].startswith("flowchart")
    assert "error" not in body
    assert "performance" not in body
    assert "mobile" in str(generation_client.calls[0]["prompt"])

    detailed = client.get(
        f"/api/v1/analysis/{created['session_id']}",
        params={"include_performance": "true"},
    ).json()
    assert "total" in detailed["performance"]


def test_duplicate_request_returns_same_session(client: TestClient) -> None:
    first = client.post("/api/v1/analysis", json={"requirement": REQUIREMENT}).json()
    second = client.post("/api/v1/analysis", json={"requirement": REQUIREMENT}).json()

    assert second["session_id"] == first["session_id"]
    assert second["duplicate"] is True


def test_create_analysis_rejects_short_requirement(client: TestClient) -> None:
    response = client.post("/api/v1/analysis", json={"requirement": "short"})

    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "requirement"


def test_create_analysis_when_store_is_full(
    client: TestClient, container: AppContainer
) -> None:
    container.session_store.config = SessionConfig(max_sessions=0)

    response = client.post("/api/v1/analysis", json={"requirement": REQUIREMENT})

    assert response.status_code == 503


def test_create_analysis_batch(client: TestClient) -> None:
    response = client.post(
        "/api/v1/analysis/batch",
        json={
            "requests": [
                {"requirement": REQUIREMENT},
                {"requirement": "short"},
            ]
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total_requests"] == 2
    assert body["successful_sessions"] == 1
    accepted, rejected = body["sessions"]
    assert rejected["error"]["field"] == "requirement"
    finished = _wait_for_terminal(client, accepted["session_id"])
    assert finished["status"] == "completed"


def test_create_analysis_batch_too_large(client: TestClient) -> None:
    response = client.post(
        "/api/v1/analysis/batch",
        json={"requests": [{"requirement": REQUIREMENT}] * 11},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "requests"


def test_upload_document_starts_analysis(client: TestClient) -> None:
    response = client.post(
        "/api/v1/analysis/upload",
        files={"file": ("login.md", b"# Login\n\n- " + REQUIREMENT.encode())},
        data={"product_type": "web"},
    )

    assert response.status_code == 200
    body = _wait_for_terminal(client, response.json()["session_id"])
    assert body["status"] == "completed"


def test_upload_rejects_unsupported_files(client: TestClient) -> None:
    response = client.post(
        "/api/v1/analysis/upload",
        files={"file": ("brief.docx", b"binary")},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "file"


def test_list_analyses(client: TestClient, container: AppContainer) -> None:
    session, _ = container.session_store.create_session(
        AnalysisRequest(requirement=REQUIREMENT)
    )

    body = client.get("/api/v1/analysis").json()

    assert [entry["id"] for entry in body["active_sessions"]] == [session.id]
    assert body["stats"]["total_sessions"] == 1


def test_unknown_session_is_not_found(client: TestClient) -> None:
    assert client.get("/api/v1/analysis/missing").status_code == 404
    assert client.delete("/api/v1/analysis/missing").status_code == 404


def test_cancel_pending_session(client: TestClient, container: AppContainer) -> None:
    session, _ = container.session_store.create_session(
        AnalysisRequest(requirement=REQUIREMENT)
    )

    response = client.delete(f"/api/v1/analysis/{session.id}")

    assert response.status_code == 200
    assert response.json() == {"session_id": session.id, "status": "failed"}
    body = client.get(f"/api/v1/analysis/{session.id}").json()
    assert body["error"]["kind"] == "user_cancelled"


def test_cancel_finished_session_conflicts(
    client: TestClient, container: AppContainer
) -> None:
    store = container.session_store
    session, _ = store.create_session(AnalysisRequest(requirement=REQUIREMENT))
    store.update_session(session.id, SessionStatus.COMPLETED, result={})

    response = client.delete(f"/api/v1/analysis/{session.id}")

    assert response.status_code == 409


def test_validate_flowchart(client: TestClient) -> None:
    valid = client.post(
        "/api/v1/flowchart/validate",
        json={"code": "flowchart TD\n A[Start] --> B[End]"},
    ).json()
    invalid = client.post(
        "/api/v1/flowchart/validate",
        json={"code": "flowchart TD\n A[Start --> B[End]"},
    ).json()

    assert valid["is_valid"] is True
    assert invalid["is_valid"] is False
    assert invalid["errors"][0]["kind"] == "MALFORMED_SYNTAX"


def test_optimize_flowchart(client: TestClient) -> None:
    response = client.post(
        "/api/v1/flowchart/optimize",
        json={"code": "flowchart TD\nsubgraph S\nA[a] --> B[b]\nend"},
    )

    body = response.json()
    assert body["code"] == (
        "flowchart TD\n    subgraph S\n        A[a] --> B[b]\n    end"
    )
    assert body["stats"]["node_count"] == 2


def test_render_flowchart(client: TestClient) -> None:
    payload = {"code": "flowchart TD\n A[Start] --> B[End]", "options": {}}

    first = client.post("/api/v1/flowchart/render", json=payload).json()
    second = client.post("/api/v1/flowchart/render", json=payload).json()

    assert first["success"] is True
    assert first["cached"] is False
    assert first["artifact"]["encoding"] == "json"
    assert second["cached"] is True


def test_render_flowchart_as_svg(client: TestClient) -> None:
    body = client.post(
        "/api/v1/flowchart/render",
        json={
            "code": "flowchart TD\n A[Start] --> B[End]",
            "options": {"format": "svg"},
        },
    ).json()

    assert body["artifact"]["encoding"] == "base64"
    assert body["artifact"]["media_type"] == "image/svg+xml"


def test_render_batch(client: TestClient) -> None:
    response = client.post(
        "/api/v1/flowchart/render/batch",
        json={
            "items": [
                "flowchart TD\n A[One] --> B[Two]",
                "flowchart TD\n A[Three --> B[Four]",
            ]
        },
    )

    body = response.json()
    assert body["counts"] == {"total": 2, "success": 1, "failed": 1, "cached": 0}


def test_render_batch_too_large(client: TestClient) -> None:
    response = client.post(
        "/api/v1/flowchart/render/batch",
        json={"items": ["flowchart TD\n A --> B"] * 21},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "items"


def test_validate_batch(client: TestClient) -> None:
    body = client.post(
        "/api/v1/flowchart/validate/batch",
        json={
            "items": [
                "flowchart TD\n A[One] --> B[Two]",
                "flowchart TD\n A[Three --> B[Four]",
            ]
        },
    ).json()

    assert [result["is_valid"] for result in body["results"]] == [True, False]
    assert body["stats"]["valid"] == 1
    assert body["stats"]["invalid"] == 1


def test_validate_batch_too_large(client: TestClient) -> None:
    response = client.post(
        "/api/v1/flowchart/validate/batch",
        json={"items": ["flowchart TD\n A[One] --> B[Two]"] * 11},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "items"


def test_repair_flowchart(client: TestClient) -> None:
    body = client.post(
        "/api/v1/flowchart/repair",
        json={
            "code": "flowchart TD\nA[Open cart] ===> B[Start checkout]"
            "\nB ---> C[Payment done]",
            "error_message": "Expecting LINK",
        },
    ).json()

    assert body["method"] == "error-based-repair"
    assert "===>" not in body["repaired_source"]
    assert body["changes"]["modified"] is True


def test_repair_requires_code(client: TestClient) -> None:
    response = client.post("/api/v1/flowchart/repair", json={"code": "  "})

    assert response.status_code == 400
    assert response.json()["detail"]["field"] == "code"


def test_admin_requires_token(client: TestClient) -> None:
    assert client.get("/admin/stats").status_code == 401
    assert (
        client.get("/admin/stats", headers={"X-Admin-Token": "wrong"}).status_code
        == 401
    )


def test_admin_stats_and_reset(client: TestClient) -> None:
    client.post(
        "/api/v1/flowchart/render",
        json={"code": "flowchart TD\n A[Start] --> B[End]"},
    )

    stats = client.get("/admin/stats", headers=ADMIN_HEADERS).json()
    assert stats["render"]["cache_size"] == 1
    assert set(stats) == {"sessions", "errors", "render"}

    reset = client.post("/admin/reset", headers=ADMIN_HEADERS).json()
    assert reset == {"status": "ok", "cleared_count": 1}
    after = client.get("/admin/stats", headers=ADMIN_HEADERS).json()
    assert after["render"]["cache_size"] == 0
    assert after["render"]["total_renders"] == 0


def test_admin_sweep_times_out_stale_sessions(
    client: TestClient, container: AppContainer, clock: ManualClock
) -> None:
    session, _ = container.session_store.create_session(
        AnalysisRequest(requirement=REQUIREMENT)
    )
    clock.advance(301)

    response = client.post("/admin/sweep", headers=ADMIN_HEADERS)

    assert response.json() == {"timed_out": 1, "purged": 0}
    assert session.status is SessionStatus.TIMEOUT

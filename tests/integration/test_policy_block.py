"""Integration test: policy denials end-to-end over HTTP and in the audit log."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml
from fastapi.testclient import TestClient

from runtime.manifest_loader import MANIFEST_ENV
from runtime.sources.registry import SOURCE_FACTORIES


def _manifest(tmp_path: Path, **source: Any) -> dict[str, Any]:
    return {
        "app": {"name": "test-blocked", "version": "0.1.0"},
        "sources": {"warehouse": {"kind": "bigquery", "project": "proj", **source}},
        "tools": {"run_sql": {"kind": "execute-sql", "source": "warehouse"}},
        "audit": {"path": str(tmp_path / "audit.jsonl")},
    }


@pytest.fixture()
def serve(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, make_source):
    """Start the app over a manifest whose sources are backed by *backend*."""
    clients: list[TestClient] = []

    def start(manifest: dict[str, Any], backend) -> TestClient:
        path = tmp_path / "sqlgate.yaml"
        path.write_text(yaml.safe_dump(manifest))
        monkeypatch.setenv(MANIFEST_ENV, str(path))
        monkeypatch.setitem(
            SOURCE_FACTORIES,
            "bigquery",
            lambda cfg: make_source(
                backend,
                project=cfg.project,
                write_mode=cfg.write_mode,
                allowed_datasets=cfg.allowed_datasets,
                max_rows=cfg.max_query_result_rows,
            ),
        )
        from runtime.app import app

        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield start
    for client in clients:
        client.__exit__(None, None, None)


class TestPolicyBlockE2E:
    def test_blocked_write_returns_403(self, serve, tmp_path: Path, make_backend, make_plan) -> None:
        backend = make_backend(plan=make_plan("DELETE", "proj.sales.orders"))
        client = serve(_manifest(tmp_path, writeMode="blocked"), backend)

        resp = client.post(
            "/v1/tools/run_sql/invoke",
            json={"params": {"sql": "DELETE FROM sales.orders WHERE true"}},
        )

        assert resp.status_code == 403
        body = resp.json()
        assert body["success"] is False
        assert body["error_kind"] == "policy_denied"
        assert body["error_detail"]["denial"] == "write_blocked"
        assert backend.executions == []

    def test_dataset_denial_cites_dataset(self, serve, tmp_path: Path, make_backend, make_plan) -> None:
        backend = make_backend(plan=make_plan("SELECT", "proj.A.t", "proj.B.u"))
        client = serve(_manifest(tmp_path, allowedDatasets=["A"]), backend)

        resp = client.post(
            "/v1/tools/run_sql/invoke",
            json={"params": {"sql": "SELECT * FROM A.t, B.u"}},
        )

        assert resp.status_code == 403
        assert resp.json()["error_detail"]["dataset"] == "proj.B"
        assert "proj.B" in resp.json()["error"]

    def test_policy_block_logged(self, serve, tmp_path: Path, make_backend, make_plan) -> None:
        backend = make_backend(plan=make_plan("INSERT", targets=["proj.sales.t"]))
        client = serve(_manifest(tmp_path, writeMode="blocked"), backend)

        client.post("/v1/tools/run_sql/invoke", json={"params": {"sql": "INSERT INTO sales.t VALUES (1)"}})

        resp = client.get("/v1/audit/logs", params={"event": "policy.block"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        entry = body["entries"][0]
        assert entry["tool"] == "run_sql"
        assert entry["transport"] == "http"
        assert entry["detail"]["rule"] == "write_mode.blocked"

        request_id = entry["request_id"]
        events = [e["event"] for e in client.get(f"/v1/audit/{request_id}").json()]
        assert events == ["tool.call", "policy.block"]

    def test_allowed_select_not_blocked(self, serve, tmp_path: Path, make_backend, make_plan) -> None:
        backend = make_backend(plan=make_plan("SELECT", "proj.A.t"))
        client = serve(_manifest(tmp_path, writeMode="blocked", allowedDatasets=["A"]), backend)

        resp = client.post("/v1/tools/run_sql/invoke", json={"params": {"sql": "SELECT * FROM A.t"}})

        assert resp.status_code == 200
        assert client.get("/v1/audit/logs", params={"event": "policy.block"}).json()["total"] == 0

from fastapi.testclient import TestClient

from slotkeeper.listeners import ListenerFactory
from slotkeeper.reconciler import Reconciler
from slotkeeper.store import default_document, write_config_atomic
from slotkeeper.webapp import create_app


class RecordingHost:
    def __init__(self) -> None:
        self.bound: dict[int, object] = {}

    async def start(self, port: int, app: object) -> int:
        self.bound[port] = app
        return port

    async def stop(self, handle: int) -> None:
        self.bound.pop(handle, None)


def _client(tmp_path, write: bool = True) -> tuple[TestClient, RecordingHost]:
    path = tmp_path / "slots.json"
    if write:
        doc = default_document()
        doc["slots"]["b"].update({"status": "deployed", "type": "nodejs"})
        write_config_atomic(path, doc)
    host = RecordingHost()
    reconciler = Reconciler(path, ListenerFactory(tmp_path / "placeholders"), host)
    return TestClient(create_app(reconciler, path)), host


def test_status_before_first_tick(tmp_path) -> None:
    client, _ = _client(tmp_path)

    body = client.get("/api/status").json()

    assert body["listeners"] == []
    assert body["last_tick"] is None
    assert body["tick_count"] == 0
    assert body["config_path"].endswith("slots.json")
    assert client.get("/health").json()["status"] == "healthy"


def test_reconcile_endpoint_runs_a_tick(tmp_path) -> None:
    client, host = _client(tmp_path)

    response = client.post("/api/reconcile")

    assert response.status_code == 202
    assert sorted(host.bound) == [3001, 3003, 3004, 3005]
    status = client.get("/api/status").json()
    assert [item["slot"] for item in status["listeners"]] == ["a", "c", "d", "e"]
    assert status["last_tick"]["started"] == [3001, 3003, 3004, 3005]
    assert len(client.get("/api/history").json()["items"]) == 1
    assert client.get("/health").json()["listeners"] == 4


def test_config_endpoint(tmp_path) -> None:
    client, _ = _client(tmp_path)
    assert client.get("/api/config").json()["slots"]["a"]["port"] == 3001

    missing, _ = _client(tmp_path / "empty", write=False)
    response = missing.get("/api/config")
    assert response.status_code == 404
    assert response.json()["ok"] is False


def test_config_endpoint_reports_corrupt_file(tmp_path) -> None:
    client, _ = _client(tmp_path)
    (tmp_path / "slots.json").write_text("{not json", encoding="utf-8")

    response = client.get("/api/config")

    assert response.status_code == 500
    assert response.json()["ok"] is False


def test_validate_endpoint(tmp_path) -> None:
    client, _ = _client(tmp_path)
    doc = default_document()

    assert client.post("/api/validate", json=doc).json() == {"ok": True, "errors": []}

    doc["slots"]["e"]["port"] = 3001
    body = client.post("/api/validate", json=doc).json()
    assert body["ok"] is False
    assert body["errors"] == ["[e] port 3001 already used by slot a"]

    bad = client.post(
        "/api/validate", content=b"{oops", headers={"Content-Type": "application/json"}
    )
    assert bad.status_code == 400

import pytest
from fastapi.testclient import TestClient

from chainload.app import RunHandle, app
from chainload.models import RunConfig
from chainload.scheduler import LoadScheduler, QueueListener
from tests.fakes import build


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_networks_are_listed_with_endpoints(client):
    networks = {n["name"]: n for n in client.get("/networks").json()}
    assert networks["sepolia"]["family"] == "evm"
    assert networks["xrpl_local"]["family"] == "xrpl"
    assert networks["sepolia"]["busy"] is False

    r = client.get("/networks/sepolia/endpoints")
    assert r.status_code == 200
    assert [e["rank"] for e in r.json()["endpoints"]] == [0, 1, 2]


def test_unknown_network_and_run(client):
    assert client.get("/networks/nope/endpoints").status_code == 404
    assert client.post("/runs", json={"network": "nope"}).status_code == 404
    assert client.get("/runs/99").status_code == 404
    assert client.post("/runs/99/cancel").status_code == 404


def test_invalid_run_parameters(client):
    r = client.post("/runs", json={"network": "sepolia", "concurrency": 0})
    assert r.status_code == 422


def test_compare_needs_completed_runs(client):
    r = client.get("/compare", params={"a": "sepolia", "b": "kasplex"})
    assert r.status_code == 404


def test_run_status_reports_live_latency_and_throughput():
    _, _, allocator, submitter = build()
    config = RunConfig(count=1)
    listener = QueueListener()
    sched = LoadScheduler("fakenet", submitter, allocator, ["0xa1"], lambda n: {}, config, listener=listener)
    handle = RunHandle(1, "fakenet", config, sched, listener)

    status = handle.status()

    assert status["state"] == "IDLE"
    assert status["avg_latency"] == 0.0
    assert status["throughput"] == 0.0

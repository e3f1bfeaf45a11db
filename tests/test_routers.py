"""HTTP tests against the FastAPI app with the container wired to test services."""

import httpx
import pytest
from dependency_injector import providers

from core.container import container
from main import app, shutdown_services, startup_services
from services.processors import GenerationProcessor

from conftest import FAST_POLL_CONFIGS, edge, node


@pytest.fixture
async def client(settings, provider):
    container.reset_singletons()
    container.settings.override(providers.Object(settings))
    container.generation_processor.override(providers.Singleton(
        GenerationProcessor,
        queue_manager=container.queue_manager,
        executions=container.executions,
        settings=container.settings,
        pricing=container.pricing,
        providers=providers.Object({"image": provider, "video": provider,
                                    "llm": provider, "processing": provider}),
        poll_configs=FAST_POLL_CONFIGS,
    ))
    await startup_services()

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

    await shutdown_services()
    container.generation_processor.reset_override()
    container.settings.reset_override()
    container.reset_singletons()


async def _save(client, nodes, edges):
    response = await client.post("/api/workflows", json={"name": "demo", "nodes": nodes, "edges": edges})
    assert response.status_code == 200
    return response.json()["id"]


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] is True
    assert body["queue"] == {"backend": "memory", "running": True}


async def test_save_and_fetch_workflow(client):
    workflow_id = await _save(client, [node("A", "imageGen", prompt="cat")], [])

    response = await client.get(f"/api/workflows/{workflow_id}")

    assert response.status_code == 200
    workflow = response.json()["workflow"]
    assert workflow["name"] == "demo"
    assert workflow["nodes"][0]["data"] == {"prompt": "cat"}


async def test_unknown_workflow_is_404(client):
    response = await client.get("/api/workflows/nope")

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Workflow nope not found"}


async def test_malformed_graph_is_400(client):
    response = await client.post("/api/workflows", json={
        "name": "bad", "nodes": [node("A", "imageGen")], "edges": [edge("A", "B")],
    })

    assert response.status_code == 400
    assert "unknown node" in response.json()["error"]


async def test_run_execution_end_to_end(client, provider):
    workflow_id = await _save(client, [node("P", "prompt", prompt="a fox"), node("I", "imageGen")],
                              [edge("P", "I")])

    started = await client.post("/api/executions", json={"workflow_id": workflow_id})
    assert started.status_code == 200
    body = started.json()
    assert body["jobId"] == f"workflow-{body['executionId']}"
    assert body["estimatedCost"]["total"] == pytest.approx(0.039)

    await container.queue_runtime().wait_until_idle(timeout=10)

    execution = (await client.get(f"/api/executions/{body['executionId']}")).json()["execution"]
    assert execution["status"] == "completed"
    assert execution["totalCost"] == pytest.approx(0.039)
    assert {r["nodeId"] for r in execution["nodeResults"]} == {"P", "I"}

    jobs = (await client.get(f"/api/executions/{body['executionId']}/jobs")).json()["jobs"]
    assert [j["nodeId"] for j in jobs] == ["root", "I"]
    assert all(j["status"] == "completed" for j in jobs)

    cancel = await client.post(f"/api/executions/{body['executionId']}/cancel")
    assert cancel.status_code == 400

    metrics = (await client.get("/api/queue/metrics")).json()["queues"]
    assert {m["name"] for m in metrics} >= {"workflow-orchestrator", "image-generation"}


async def test_execution_for_unknown_workflow_is_404(client):
    response = await client.post("/api/executions", json={"workflow_id": "nope"})

    assert response.status_code == 404


async def test_queue_stats_and_empty_dlq(client):
    stats = await client.get("/api/queue/stats")
    dlq = await client.get("/api/queue/dlq", params={"limit": 10})

    assert stats.json()["stats"]["inDlq"] == 0
    assert dlq.json() == {"success": True, "jobs": [], "total": 0, "limit": 10, "offset": 0}


async def test_dlq_retry_of_unknown_job_is_404(client):
    response = await client.post("/api/queue/dlq/missing/retry")

    assert response.status_code == 404
    assert response.json()["error"] == "Job missing not found in DLQ"


async def test_manual_recovery_sweep(client):
    response = await client.post("/api/queue/recover")

    assert response.json() == {"success": True, "recovered": 0}


async def test_job_status_and_unknown_job(client):
    workflow_id = await _save(client, [node("I", "imageGen")], [])
    body = (await client.post("/api/executions", json={"workflow_id": workflow_id})).json()
    await container.queue_runtime().wait_until_idle(timeout=10)

    status = await client.get(f"/api/queue/jobs/{body['jobId']}")
    missing = await client.get("/api/queue/jobs/nope")

    assert status.json()["status"] == "completed"
    assert missing.status_code == 404


async def test_recover_unknown_execution_is_404(client):
    response = await client.post("/api/executions/nope/recover")

    assert response.status_code == 404

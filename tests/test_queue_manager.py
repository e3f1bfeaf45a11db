"""Tests for the Queue Manager: routing, job ids, record writes and the DLQ flag."""

import pytest

from constants import (
    IMAGE_GENERATION_QUEUE,
    JOB_STATUS_ACTIVE,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    LLM_GENERATION_QUEUE,
    PROCESSING_QUEUE,
    VIDEO_GENERATION_QUEUE,
    WORKFLOW_ORCHESTRATOR_QUEUE,
)
from services.queue import JobNotFoundError, get_queue_for_node_type


@pytest.mark.parametrize("node_type, queue_name", [
    ("imageGen", IMAGE_GENERATION_QUEUE),
    ("videoGen", VIDEO_GENERATION_QUEUE),
    ("motionControl", VIDEO_GENERATION_QUEUE),
    ("llm", LLM_GENERATION_QUEUE),
    ("reframe", PROCESSING_QUEUE),
    ("lipSync", PROCESSING_QUEUE),
    ("textToSpeech", PROCESSING_QUEUE),
    ("workflowRef", WORKFLOW_ORCHESTRATOR_QUEUE),
])
def test_node_type_routing(node_type, queue_name):
    assert get_queue_for_node_type(node_type) == queue_name


def test_unknown_node_type_is_rejected():
    with pytest.raises(ValueError, match="No queue found for node type: mystery"):
        get_queue_for_node_type("mystery")


async def test_enqueue_workflow_creates_record_and_runtime_job(queue_manager, runtime):
    job_id = await queue_manager.enqueue_workflow("exec1", "wf1")

    assert job_id == "workflow-exec1"
    record = await queue_manager.get_job(job_id)
    assert record.queue_name == WORKFLOW_ORCHESTRATOR_QUEUE
    assert record.status == JOB_STATUS_PENDING
    assert record.data == {"executionId": "exec1", "workflowId": "wf1"}
    assert await runtime.get_job(WORKFLOW_ORCHESTRATOR_QUEUE, job_id) is not None


async def test_enqueue_node_payload_and_dependencies(queue_manager):
    root_id = await queue_manager.enqueue_node("exec1", "wf1", "A", "imageGen", {"prompt": "cat"})
    child_id = await queue_manager.enqueue_node("exec1", "wf1", "B", "videoGen", {}, ["A"])

    root = await queue_manager.get_job(root_id)
    child = await queue_manager.get_job(child_id)
    assert root_id == "exec1-A"
    assert "dependsOn" not in root.data
    assert root.data["nodeData"] == {"prompt": "cat"}
    assert child.data["dependsOn"] == ["A"]
    assert child.queue_name == VIDEO_GENERATION_QUEUE


async def test_reenqueue_gets_a_suffixed_job_id(queue_manager):
    first = await queue_manager.enqueue_node("exec1", "wf1", "A", "imageGen", {})
    second = await queue_manager.enqueue_node("exec1", "wf1", "A", "imageGen", {})

    assert first == "exec1-A"
    assert second.startswith("exec1-A-")
    assert len(second) == len(first) + 9
    assert len(await queue_manager.get_execution_jobs("exec1")) == 2


async def test_unknown_node_type_creates_no_record(queue_manager):
    with pytest.raises(ValueError):
        await queue_manager.enqueue_node("exec1", "wf1", "X", "mystery", {})
    assert await queue_manager.get_execution_jobs("exec1") == []


async def test_runtime_failure_marks_record_failed(queue_manager, runtime, monkeypatch):
    async def broken(*args, **kwargs):
        raise ConnectionError("queue unavailable")

    monkeypatch.setattr(runtime, "enqueue", broken)

    with pytest.raises(ConnectionError):
        await queue_manager.enqueue_workflow("exec1", "wf1")
    record = await queue_manager.get_job("workflow-exec1")
    assert record.status == JOB_STATUS_FAILED
    assert record.error == "queue unavailable"


async def test_update_job_status_sets_timestamps(queue_manager):
    job_id = await queue_manager.enqueue_node("exec1", "wf1", "A", "llm", {})

    await queue_manager.update_job_status(job_id, JOB_STATUS_ACTIVE)
    record = await queue_manager.get_job(job_id)
    assert record.processed_at is not None
    assert record.finished_at is None

    await queue_manager.update_job_status(job_id, JOB_STATUS_COMPLETED, result={"success": True})
    record = await queue_manager.get_job(job_id)
    assert record.finished_at is not None
    assert record.result == {"success": True}


async def test_update_job_status_validates_input(queue_manager):
    job_id = await queue_manager.enqueue_node("exec1", "wf1", "A", "llm", {})
    with pytest.raises(ValueError):
        await queue_manager.update_job_status(job_id, "exploded")
    with pytest.raises(JobNotFoundError):
        await queue_manager.update_job_status("missing", JOB_STATUS_ACTIVE)


async def test_job_logs_are_append_only(queue_manager):
    job_id = await queue_manager.enqueue_node("exec1", "wf1", "A", "llm", {})

    await queue_manager.add_job_log(job_id, "first")
    await queue_manager.add_job_log(job_id, "second", "warn")
    record = await queue_manager.get_job(job_id)

    assert [entry["message"] for entry in record.logs] == ["first", "second"]
    assert record.logs[1]["level"] == "warn"
    assert record.logs[0]["timestamp"] <= record.logs[1]["timestamp"]

    with pytest.raises(ValueError):
        await queue_manager.add_job_log(job_id, "loud", "critical")


async def test_move_to_dead_letter_queue_keeps_payload(queue_manager):
    job_id = await queue_manager.enqueue_node("exec1", "wf1", "A", "imageGen", {"prompt": "cat"})

    await queue_manager.move_to_dead_letter_queue(job_id, IMAGE_GENERATION_QUEUE, "boom")
    record = await queue_manager.get_job(job_id)

    assert record.moved_to_dlq is True
    assert record.status == JOB_STATUS_FAILED
    assert record.failed_reason == "boom"
    assert record.queue_name == IMAGE_GENERATION_QUEUE
    assert record.data["nodeData"] == {"prompt": "cat"}
    assert record.logs[-1]["message"] == f"Moved to DLQ from {IMAGE_GENERATION_QUEUE}: boom"


async def test_job_status_prefers_live_runtime_state(queue_manager):
    job_id = await queue_manager.enqueue_node("exec1", "wf1", "A", "imageGen", {})

    status = await queue_manager.get_job_status(job_id)

    assert status["status"] == "waiting"
    assert status["progress"] == 0


async def test_queue_metrics_cover_every_queue(queue_manager):
    await queue_manager.enqueue_node("exec1", "wf1", "A", "imageGen", {})

    metrics = {m["name"]: m for m in await queue_manager.get_queue_metrics()}

    assert set(metrics) == {
        WORKFLOW_ORCHESTRATOR_QUEUE, IMAGE_GENERATION_QUEUE, VIDEO_GENERATION_QUEUE,
        LLM_GENERATION_QUEUE, PROCESSING_QUEUE,
    }
    assert metrics[IMAGE_GENERATION_QUEUE]["waiting"] == 1

"""Tests for provider-backed node jobs and nested workflow references."""

import pytest

from constants import (
    EXECUTION_STATUS_CANCELLED,
    EXECUTION_STATUS_COMPLETED,
    EXECUTION_STATUS_FAILED,
    EXECUTION_STATUS_PENDING,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    NODE_STATUS_COMPLETE,
    NODE_STATUS_ERROR,
)
from services.processors import GenerationFailedError, NodeProcessor, register_processors
from services.processors.handlers import collect_inputs, shape_output
from services.queue import JobDeferredError, UnrecoverableJobError
from services.queue.manager import get_queue_for_node_type

from conftest import edge, node


async def _node_job(executions, queue_manager, runtime, node_type, node_data=None, depends_on=None,
                    execution=None, node_id="A"):
    execution = execution or await executions.create_execution("wf1")
    job_id = await queue_manager.enqueue_node(execution.id, "wf1", node_id, node_type,
                                              node_data or {}, depends_on)
    job = await runtime.get_job(get_queue_for_node_type(node_type), job_id)
    return execution, job


async def test_video_node_polls_until_succeeded(executions, queue_manager, runtime,
                                                generation_processor, provider):
    provider.statuses = ["processing", "succeeded"]
    execution, job = await _node_job(executions, queue_manager, runtime, "videoGen",
                                     {"prompt": "waves", "duration": 8})

    result = await generation_processor.handle(job)

    assert provider.total_polls == 2
    assert result["success"] is True
    assert result["predictionId"] == "pred-1"
    assert result["cost"] == pytest.approx(0.15 * 8)

    record = await queue_manager.get_job(job.id)
    assert record.status == JOB_STATUS_COMPLETED
    assert [entry["message"] for entry in record.logs] == [
        "Starting videoGen", "Created prediction: pred-1", "videoGen completed",
    ]
    node_result = (await executions.get_node_results(execution.id))["A"]
    assert node_result.status == NODE_STATUS_COMPLETE
    assert node_result.output == {"video": "https://cdn.test/out.bin"}
    assert node_result.cost == pytest.approx(1.2)
    assert job.progress == {"percent": 100, "message": "Completed"}


async def test_failure_goes_to_dlq_only_on_final_attempt(executions, queue_manager, runtime,
                                                         generation_processor, provider, monkeypatch):
    provider.statuses = ["failed"]
    provider.error = "NSFW content detected"
    dead_lettered = []
    original = queue_manager.move_to_dead_letter_queue

    async def spy(job_id, queue_name, error):
        dead_lettered.append(job_id)
        await original(job_id, queue_name, error)

    monkeypatch.setattr(queue_manager, "move_to_dead_letter_queue", spy)
    execution, job = await _node_job(executions, queue_manager, runtime, "imageGen", {"prompt": "x"})
    assert job.opts.attempts == 3

    with pytest.raises(GenerationFailedError):
        await generation_processor.handle(job)

    assert dead_lettered == []
    record = await queue_manager.get_job(job.id)
    assert record.status == JOB_STATUS_FAILED
    assert record.attempts_made == 1
    assert record.result["error"] == "NSFW content detected"
    assert record.logs[-1]["message"] == "Attempt 1/3 failed: NSFW content detected"
    assert (await executions.get_node_results(execution.id))["A"].status == NODE_STATUS_ERROR
    assert (await executions.find_execution(execution.id)).status == EXECUTION_STATUS_PENDING

    job.attempts_made = 2
    with pytest.raises(GenerationFailedError):
        await generation_processor.handle(job)

    assert dead_lettered == [job.id]
    record = await queue_manager.get_job(job.id)
    assert record.moved_to_dlq is True
    failed = await executions.find_execution(execution.id)
    assert failed.status == EXECUTION_STATUS_FAILED
    assert failed.error == "Node A failed: NSFW content detected"


async def test_provider_timeout_is_a_failure_result(executions, queue_manager, runtime,
                                                    generation_processor, provider):
    provider.statuses = ["processing"]
    _, job = await _node_job(executions, queue_manager, runtime, "imageGen")

    with pytest.raises(GenerationFailedError, match="Prediction timed out"):
        await generation_processor.handle(job)

    assert provider.total_polls == 60


async def test_retry_resumes_the_dispatched_prediction(executions, queue_manager, runtime,
                                                       generation_processor, provider):
    _, job = await _node_job(executions, queue_manager, runtime, "imageGen")
    # An earlier attempt dispatched and then crashed before reporting an outcome
    await queue_manager.update_job_status(job.id, "active", result={"predictionId": "pred-earlier"})

    result = await generation_processor.handle(job)

    assert provider.dispatched == []
    assert provider.poll_calls == {"pred-earlier": 1}
    assert result["predictionId"] == "pred-earlier"


async def test_dependency_not_ready_defers_the_job(executions, queue_manager, runtime,
                                                   generation_processor, provider):
    _, job = await _node_job(executions, queue_manager, runtime, "videoGen", depends_on=["img"])

    with pytest.raises(JobDeferredError):
        await generation_processor.handle(job)

    assert provider.dispatched == []
    record = await queue_manager.get_job(job.id)
    assert record.last_heartbeat is not None
    assert record.attempts_made == 0


async def test_dead_lettered_dependency_skips_the_node_and_fails_the_run(executions, queue_manager, runtime,
                                                                         generation_processor, provider):
    execution, upstream = await _node_job(executions, queue_manager, runtime, "imageGen", node_id="img")
    await executions.update_node_result(execution.id, "img", NODE_STATUS_ERROR, error="boom")
    await queue_manager.move_to_dead_letter_queue(upstream.id, upstream.queue_name, "boom")
    _, job = await _node_job(executions, queue_manager, runtime, "videoGen", depends_on=["img"],
                             execution=execution, node_id="vid")

    result = await generation_processor.handle(job)

    assert result == {"success": True, "skipped": True}
    assert provider.dispatched == []
    record = await queue_manager.get_job(job.id)
    assert record.moved_to_dlq is False
    assert record.status == JOB_STATUS_COMPLETED
    assert record.result == {"success": True, "skipped": True}
    assert record.logs[-1]["message"] == "Skipped - Dependency img of node vid failed"
    failed = await executions.find_execution(execution.id)
    assert failed.status == EXECUTION_STATUS_FAILED
    assert failed.error == "Dependency img of node vid failed"


async def test_errored_dependency_still_retrying_defers(executions, queue_manager, runtime,
                                                        generation_processor):
    execution, _ = await _node_job(executions, queue_manager, runtime, "imageGen", node_id="img")
    await executions.update_node_result(execution.id, "img", NODE_STATUS_ERROR, error="flaky")
    _, job = await _node_job(executions, queue_manager, runtime, "videoGen", depends_on=["img"],
                             execution=execution, node_id="vid")

    with pytest.raises(JobDeferredError):
        await generation_processor.handle(job)


async def test_cancelled_execution_skips_node(executions, queue_manager, runtime,
                                              generation_processor, provider):
    execution, job = await _node_job(executions, queue_manager, runtime, "imageGen")
    await executions.cancel_execution(execution.id)

    result = await generation_processor.handle(job)

    assert result == {"success": True, "skipped": True}
    assert provider.dispatched == []
    record = await queue_manager.get_job(job.id)
    assert record.logs[-1]["message"] == f"Skipped - execution already {EXECUTION_STATUS_CANCELLED}"
    assert await executions.get_node_results(execution.id) == {}


async def test_llm_output_and_token_cost(executions, queue_manager, runtime, generation_processor, provider):
    provider.output = ["Once ", "upon ", "a time"]
    provider.metrics = {"input_token_count": 100, "output_token_count": 50, "predict_time": 1.5}
    _, job = await _node_job(executions, queue_manager, runtime, "llm", {"prompt": "tell a story"})

    result = await generation_processor.handle(job)

    assert result["output"] == {"text": "Once upon a time"}
    assert result["metrics"] == {"inputTokens": 100, "outputTokens": 50, "predictTime": 1.5}
    assert result["cost"] == pytest.approx(150 * 0.0000095)
    assert provider.dispatched[0]["params"]["max_tokens"] == 1024


async def test_processing_node_infers_video_input(executions, queue_manager, runtime,
                                                  generation_processor, provider):
    execution, _ = await _node_job(executions, queue_manager, runtime, "videoGen", node_id="src")
    await executions.update_node_result(execution.id, "src", NODE_STATUS_COMPLETE,
                                        output={"video": "https://cdn.test/in.mp4"})
    _, job = await _node_job(executions, queue_manager, runtime, "reframe", {"aspectRatio": "9:16"},
                             depends_on=["src"], execution=execution, node_id="rf")

    result = await generation_processor.handle(job)

    call = provider.dispatched[0]
    assert call["model"] == "reframe-video"
    assert call["params"]["video"] == "https://cdn.test/in.mp4"
    assert result["output"] == {"video": "https://cdn.test/out.bin"}
    assert result["cost"] == pytest.approx(0.06 * 5)


async def test_motion_control_is_priced_as_its_own_model(executions, queue_manager, runtime,
                                                         generation_processor, provider):
    execution, job = await _node_job(executions, queue_manager, runtime, "motionControl",
                                     {"prompt": "dance", "duration": 8})

    result = await generation_processor.handle(job)

    assert provider.dispatched[0]["model"] == "kling-motion-control"
    assert result["cost"] == pytest.approx(0.3)
    assert (await executions.find_execution(execution.id)).total_cost == pytest.approx(0.3)


async def test_final_failure_still_dead_letters_when_a_status_write_fails(executions, queue_manager, runtime,
                                                                         generation_processor, provider,
                                                                         monkeypatch):
    provider.statuses = ["failed"]
    provider.error = "model crashed"
    original = queue_manager.update_job_status

    async def locked_on_failure(job_id, status, **kwargs):
        if status == JOB_STATUS_FAILED:
            raise RuntimeError("database is locked")
        await original(job_id, status, **kwargs)

    monkeypatch.setattr(queue_manager, "update_job_status", locked_on_failure)
    execution, job = await _node_job(executions, queue_manager, runtime, "imageGen")
    job.attempts_made = 2

    with pytest.raises(GenerationFailedError):
        await generation_processor.handle(job)

    record = await queue_manager.get_job(job.id)
    assert record.moved_to_dlq is True
    assert record.logs[-2]["message"] == "Attempt 3/3 failed: model crashed"
    assert (await executions.get_node_results(execution.id))["A"].status == NODE_STATUS_ERROR
    failed = await executions.find_execution(execution.id)
    assert failed.status == EXECUTION_STATUS_FAILED
    assert failed.error == "Node A failed: model crashed"


def test_node_processor_requires_execute(queue_manager, executions, settings):
    with pytest.raises(TypeError):
        NodeProcessor(queue_manager, executions, settings)


def test_collect_inputs_groups_by_kind():
    inputs = collect_inputs([
        {"prompt": "a cat"},
        {"image": ["u1", "u2"]},
        {"video": "v1", "text": "caption"},
        None,
    ])

    assert inputs.texts == ["a cat", "caption"]
    assert inputs.images == ["u1", "u2"]
    assert inputs.first("videos") == "v1"
    assert inputs.first("audios") is None


@pytest.mark.parametrize("kind, raw, expected", [
    ("image", ["u1", "u2"], {"image": "u1"}),
    ("video", "v1", {"video": "v1"}),
    ("video", {"output": "v2"}, {"video": "v2"}),
    ("text", ["a", "b"], {"text": "ab"}),
    ("text", None, {"text": ""}),
])
def test_shape_output(kind, raw, expected):
    assert shape_output(kind, raw) == expected


# =============================================================================
# workflowRef
# =============================================================================

async def test_workflow_ref_runs_child_and_maps_outputs(settings, workflows, runtime, executions,
                                                        workflow_processor, generation_processor,
                                                        provider):
    provider.output = "A story about dragons"
    child = await workflows.save_workflow("child", [
        node("in", "workflowInput", inputName="topic", required=True),
        node("story", "llm"),
        node("out", "workflowOutput", outputName="story"),
    ], [edge("in", "story"), edge("story", "out")])
    parent = await workflows.save_workflow("parent", [
        node("ref", "workflowRef", workflowId=child.id, inputMappings={"topic": "dragons"}),
    ], [])

    register_processors(runtime, workflow_processor, generation_processor, settings)
    await runtime.start()
    try:
        started = await workflows.start_execution(parent.id)
        await runtime.wait_until_idle(timeout=15)
    finally:
        await runtime.stop()

    execution = await executions.find_execution(started["executionId"])
    assert execution.status == EXECUTION_STATUS_COMPLETED
    assert len(execution.child_execution_ids) == 1

    ref_output = (await executions.get_node_results(execution.id))["ref"].output
    assert ref_output["outputMappings"] == {"story": "A story about dragons"}
    assert ref_output["childExecutionId"] == execution.child_execution_ids[0]

    child_execution = await executions.find_execution(execution.child_execution_ids[0])
    assert child_execution.status == EXECUTION_STATUS_COMPLETED
    assert child_execution.depth == 1
    assert child_execution.parent_node_id == "ref"
    assert provider.dispatched[0]["params"]["prompt"] == "dragons"


async def test_workflow_ref_missing_required_input(workflows, executions, queue_manager, runtime,
                                                   workflow_processor):
    child = await workflows.save_workflow("child", [
        node("in", "workflowInput", inputName="topic", required=True),
    ], [])
    execution, job = await _node_job(executions, queue_manager, runtime, "workflowRef",
                                     {"workflowId": child.id}, node_id="ref")

    with pytest.raises(UnrecoverableJobError, match='Required input "topic" not provided'):
        await workflow_processor.handle(job)

    parent = await executions.find_execution(execution.id)
    assert parent.status == EXECUTION_STATUS_FAILED
    child_execution = await executions.find_execution(parent.child_execution_ids[0])
    assert child_execution.status == EXECUTION_STATUS_FAILED


async def test_workflow_ref_depth_limit(settings, workflows, executions, queue_manager, runtime,
                                        workflow_processor):
    child = await workflows.save_workflow("child", [node("p", "prompt")], [])
    deep = await executions.create_execution("wf1", depth=settings.max_workflow_depth)
    _, job = await _node_job(executions, queue_manager, runtime, "workflowRef",
                             {"workflowId": child.id}, execution=deep, node_id="ref")

    with pytest.raises(UnrecoverableJobError, match="nesting depth"):
        await workflow_processor.handle(job)

    assert (await executions.find_execution(deep.id)).child_execution_ids == []

import json

import pytest

from render_orchestrator.domain.errors import WorkflowDefinitionError
from render_orchestrator.domain.retry import calculate_retry_delay, calculate_next_run
from render_orchestrator.domain.models import utcnow
from render_orchestrator.settings import Settings
from render_orchestrator.workflow.definition import build_default_definition, parse_definition, load_definition

def test_default_definition_values():
    definition = parse_definition(build_default_definition())

    assert definition.start_at == "TriggerRender"
    policy = definition.retry_policy_for("Worker.Throttled")
    assert policy.max_attempts == 3
    assert policy.interval_seconds == 10
    assert policy.backoff_rate == 2.0
    assert definition.retry_policy_for("Worker.Rejected") is None
    assert definition.wait.timeout_seconds == 24 * 60 * 60
    assert definition.wait.heartbeat_seconds is None
    assert definition.wait.on_signal == {"success": "Succeeded", "failure": "Failed", "timeout": "TimedOut"}
    assert definition.states["TimedOut"].job_status == "failed"

def test_canonical_serialization_is_reproducible():
    first = parse_definition(build_default_definition(heartbeat_seconds=60))
    # Same content, keys in a different order
    shuffled = json.loads(json.dumps(build_default_definition(heartbeat_seconds=60)))
    shuffled["States"] = dict(reversed(list(shuffled["States"].items())))
    second = parse_definition(shuffled)

    assert first.to_canonical_json() == second.to_canonical_json()
    assert first.digest == second.digest

def test_canonical_serialization_is_compact_and_sorted():
    data = build_default_definition()
    data["Comment"] = "compact"
    canonical = parse_definition(data).to_canonical_json()

    assert " " not in canonical
    assert canonical == json.dumps(json.loads(canonical), sort_keys=True, separators=(",", ":"))

def test_digest_changes_with_content():
    a = parse_definition(build_default_definition(max_attempts=3))
    b = parse_definition(build_default_definition(max_attempts=5))
    assert a.digest != b.digest

def test_missing_state_rejected():
    data = build_default_definition()
    del data["States"]["TimedOut"]
    with pytest.raises(WorkflowDefinitionError):
        parse_definition(data)

def test_unknown_target_rejected():
    data = build_default_definition()
    data["States"]["TriggerRender"]["Next"] = "Nowhere"
    with pytest.raises(WorkflowDefinitionError):
        parse_definition(data)

def test_wait_state_needs_timeout():
    data = build_default_definition()
    del data["States"]["WaitForCompletion"]["TimeoutSeconds"]
    with pytest.raises(WorkflowDefinitionError):
        parse_definition(data)

def test_load_definition_from_file(tmp_path):
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(build_default_definition(timeout_seconds=600)))

    definition = load_definition(Settings(_env_file=None, WORKFLOW_DEFINITION_PATH=str(path)))
    assert definition.wait.timeout_seconds == 600

def test_load_definition_unreadable(tmp_path):
    with pytest.raises(WorkflowDefinitionError):
        load_definition(Settings(_env_file=None, WORKFLOW_DEFINITION_PATH=str(tmp_path / "missing.json")))

def test_load_definition_from_settings():
    definition = load_definition(Settings(_env_file=None, TRIGGER_MAX_ATTEMPTS=4, RENDER_HEARTBEAT_SECONDS=30))
    assert definition.trigger.retry[0].max_attempts == 4
    assert definition.wait.heartbeat_seconds == 30

def test_retry_delay_backoff():
    assert calculate_retry_delay(1, interval_seconds=10, backoff_rate=2.0, jitter=False) == 10
    assert calculate_retry_delay(2, interval_seconds=10, backoff_rate=2.0, jitter=False) == 20
    assert calculate_retry_delay(3, interval_seconds=10, backoff_rate=2.0, jitter=False) == 40
    assert calculate_retry_delay(50, interval_seconds=10, backoff_rate=2.0, max_delay_seconds=300, jitter=False) == 300

def test_retry_delay_jitter_bounded():
    for _ in range(20):
        delay = calculate_retry_delay(2, interval_seconds=10, backoff_rate=2.0)
        assert 20 <= delay <= 22

def test_next_run_is_in_the_future():
    now = utcnow()
    assert (calculate_next_run(1, interval_seconds=10, jitter=False, now=now) - now).total_seconds() == 10

@pytest.mark.parametrize("state", ["Succeeded", "Failed", "TimedOut"])
def test_terminal_state_needs_job_status(state):
    data = build_default_definition()
    del data["States"][state]["JobStatus"]
    with pytest.raises(WorkflowDefinitionError):
        parse_definition(data)

    data["States"][state]["JobStatus"] = "exploded"
    with pytest.raises(WorkflowDefinitionError):
        parse_definition(data)

def test_wait_state_needs_on_signal():
    data = build_default_definition()
    del data["States"]["WaitForCompletion"]["OnSignal"]
    with pytest.raises(WorkflowDefinitionError):
        parse_definition(data)

@pytest.mark.parametrize("signal", ["success", "failure", "timeout"])
def test_wait_state_needs_every_signal(signal):
    data = build_default_definition()
    del data["States"]["WaitForCompletion"]["OnSignal"][signal]
    with pytest.raises(WorkflowDefinitionError):
        parse_definition(data)

def test_signals_and_catch_must_end_the_workflow():
    data = build_default_definition()
    data["States"]["WaitForCompletion"]["OnSignal"]["success"] = "TriggerRender"
    with pytest.raises(WorkflowDefinitionError):
        parse_definition(data)

    data = build_default_definition()
    data["States"]["TriggerRender"]["Catch"][0]["Next"] = "WaitForCompletion"
    with pytest.raises(WorkflowDefinitionError):
        parse_definition(data)

def test_invalid_definition_file_rejected_at_load(tmp_path):
    data = build_default_definition()
    del data["States"]["Succeeded"]["JobStatus"]
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(data))

    with pytest.raises(WorkflowDefinitionError):
        load_definition(Settings(_env_file=None, WORKFLOW_DEFINITION_PATH=str(path)))

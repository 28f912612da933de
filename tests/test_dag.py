import pytest

from secgate.dag import build_dag, entry_status, topo_levels, validate_workflow
from secgate.errors import WorkflowError
from secgate.model import Job, RunCondition, Status, Step


def _job(name, needs=(), condition=RunCondition.RUN_IF_ALL_SUCCEEDED, steps=None):
    return Job(name=name, steps=steps or [Step("noop", "true")], needs=list(needs), condition=condition)


def test_levels_group_independent_jobs():
    jobs = [
        _job("build"),
        _job("test", ["build"]),
        _job("sca", ["test"]),
        _job("sast", ["test"]),
        _job("gate", ["sca", "sast"], RunCondition.RUN_ALWAYS),
    ]
    assert validate_workflow(jobs) == [["build"], ["test"], ["sast", "sca"], ["gate"]]


def test_duplicate_job_names_rejected():
    with pytest.raises(WorkflowError, match="Duplicate job names"):
        build_dag([_job("a"), _job("a")])


def test_unknown_need_rejected():
    with pytest.raises(WorkflowError, match="needs missing job 'nope'"):
        build_dag([_job("a", ["nope"])])


def test_cycle_rejected():
    adj, indeg = build_dag([_job("a", ["c"]), _job("b", ["a"]), _job("c", ["b"])])
    with pytest.raises(WorkflowError, match="cycle"):
        topo_levels(adj, indeg)


def test_duplicate_step_ids_rejected():
    steps = [Step("one", "true", id="x"), Step("two", "true", id="x")]
    with pytest.raises(WorkflowError, match="duplicate step id 'x'"):
        validate_workflow([_job("a", steps=steps)])


def test_job_without_steps_rejected():
    with pytest.raises(WorkflowError, match="has no steps"):
        validate_workflow([Job(name="empty", steps=[])])


def test_entry_status_default_condition():
    job = _job("test", ["build"])
    assert entry_status(job, {"build": Status.SUCCESS}) is None
    assert entry_status(job, {"build": Status.FAILURE}) is Status.SKIPPED
    assert entry_status(job, {"build": Status.SKIPPED}) is Status.SKIPPED
    assert entry_status(job, {"build": Status.CANCELLED}) is Status.SKIPPED


def test_entry_status_always_runs_unless_aborted():
    job = _job("gate", ["a"], RunCondition.RUN_ALWAYS)
    assert entry_status(job, {"a": Status.FAILURE}) is None
    assert entry_status(job, {"a": Status.SKIPPED}, failed_fast=True) is None
    assert entry_status(job, {"a": Status.SUCCESS}, aborted=True) is Status.CANCELLED


def test_entry_status_any_failed():
    job = _job("notify", ["a", "b"], RunCondition.RUN_IF_ANY_FAILED)
    assert entry_status(job, {"a": Status.SUCCESS, "b": Status.FAILURE}) is None
    assert entry_status(job, {"a": Status.SUCCESS, "b": Status.SUCCESS}) is Status.SKIPPED


def test_entry_status_fail_fast_cancels():
    job = _job("test", ["build"])
    assert entry_status(job, {"build": Status.SUCCESS}, failed_fast=True) is Status.CANCELLED

"""Scheduler behaviour with a fake job executor (no processes are spawned)."""
import threading
import time

from secgate.dag import run_dag
from secgate.model import Job, RunCondition, Status, Step

SECURITY = ["security_sca", "security_dast", "security_sast", "security_secrets"]


def _job(name, needs=(), condition=RunCondition.RUN_IF_ALL_SUCCEEDED):
    return Job(name=name, steps=[Step("noop", "true")], needs=list(needs), condition=condition)


def _pipeline():
    return [
        _job("build"),
        _job("test", ["build"]),
        *[_job(name, ["test"]) for name in SECURITY],
        _job("security_gate", SECURITY, RunCondition.RUN_ALWAYS),
    ]


class Recorder:
    def __init__(self, outcomes=None, delays=None):
        self.outcomes = outcomes or {}
        self.delays = delays or {}
        self.started = []
        self.finished = []
        self.needs_seen = {}
        self._lock = threading.Lock()

    def __call__(self, job, needs):
        with self._lock:
            self.started.append(job.name)
            self.needs_seen[job.name] = dict(needs)
        time.sleep(self.delays.get(job.name, 0))
        with self._lock:
            self.finished.append(job.name)
        return self.outcomes.get(job.name, Status.SUCCESS)


def test_all_success_respects_dependencies():
    rec = Recorder()
    statuses = run_dag(_pipeline(), rec, max_workers=4)

    assert all(s is Status.SUCCESS for s in statuses.values())
    assert rec.started[0] == "build"
    assert rec.started[1] == "test"
    assert rec.started[-1] == "security_gate"
    for name in SECURITY:
        assert rec.finished.index(name) < rec.started.index("security_gate")


def test_build_failure_skips_downstream_but_gate_runs():
    rec = Recorder(outcomes={"build": Status.FAILURE})
    statuses = run_dag(_pipeline(), rec, max_workers=4)

    assert statuses["build"] is Status.FAILURE
    assert statuses["test"] is Status.SKIPPED
    for name in SECURITY:
        assert statuses[name] is Status.SKIPPED
    assert statuses["security_gate"] is Status.SUCCESS
    assert rec.needs_seen["security_gate"] == {name: Status.SKIPPED for name in SECURITY}


def test_one_scan_failing_does_not_cancel_siblings():
    rec = Recorder(outcomes={"security_sca": Status.FAILURE})
    statuses = run_dag(_pipeline(), rec, max_workers=4)

    assert statuses["security_sca"] is Status.FAILURE
    for name in ["security_dast", "security_sast", "security_secrets"]:
        assert statuses[name] is Status.SUCCESS
    assert rec.needs_seen["security_gate"]["security_sca"] is Status.FAILURE


def test_independent_jobs_run_concurrently():
    barrier = threading.Barrier(2, timeout=5)

    def run_fn(job, needs):
        barrier.wait()
        return Status.SUCCESS

    statuses = run_dag([_job("a"), _job("b")], run_fn, max_workers=2)
    assert statuses == {"a": Status.SUCCESS, "b": Status.SUCCESS}


def test_exception_in_job_counts_as_failure():
    def run_fn(job, needs):
        if job.name == "a":
            raise RuntimeError("boom")
        return Status.SUCCESS

    statuses = run_dag([_job("a"), _job("b", ["a"])], run_fn, max_workers=1)
    assert statuses == {"a": Status.FAILURE, "b": Status.SKIPPED}


def test_any_failed_condition():
    jobs = [_job("a"), _job("notify", ["a"], RunCondition.RUN_IF_ANY_FAILED)]

    ok = run_dag(jobs, Recorder(), max_workers=2)
    assert ok["notify"] is Status.SKIPPED

    failed = run_dag(jobs, Recorder(outcomes={"a": Status.FAILURE}), max_workers=2)
    assert failed["notify"] is Status.SUCCESS


def test_fail_fast_cancels_jobs_not_yet_started():
    jobs = [
        _job("a"),
        _job("b"),
        _job("c", ["b"]),
        _job("report", ["c"], RunCondition.RUN_ALWAYS),
    ]
    rec = Recorder(outcomes={"a": Status.FAILURE}, delays={"b": 0.3})
    statuses = run_dag(jobs, rec, max_workers=2, fail_fast=True)

    assert statuses["a"] is Status.FAILURE
    assert statuses["b"] is Status.SUCCESS
    assert statuses["c"] is Status.CANCELLED
    assert statuses["report"] is Status.SUCCESS
    assert "c" not in rec.started


def test_abort_cancels_everything_pending():
    abort = threading.Event()

    def run_fn(job, needs):
        abort.set()
        return Status.SUCCESS

    statuses = run_dag(_pipeline(), run_fn, max_workers=2, abort=abort)
    assert statuses["build"] is Status.SUCCESS
    for name in ["test", *SECURITY, "security_gate"]:
        assert statuses[name] is Status.CANCELLED


def test_every_job_reaches_a_terminal_status():
    rec = Recorder(outcomes={"test": Status.FAILURE})
    statuses = run_dag(_pipeline(), rec, max_workers=3)
    assert set(statuses) == {j.name for j in _pipeline()}
    assert all(s.terminal for s in statuses.values())

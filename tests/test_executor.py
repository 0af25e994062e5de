import time

from flowci.backends import LocalBackend
from flowci.errors import ProvisioningError
from flowci.model import (
    FAILED,
    REASON_EXIT_CODE,
    REASON_JOB_TIMEOUT,
    REASON_PROVISIONING,
    REASON_STALLED,
    REASON_TIMEOUT,
    SUCCESS,
    TriggerContext,
)
from flowci.orchestrator import Orchestrator
from flowci.storage import MemoryBlobStore
from flowci.ui.console import CaptureSink


def single_job(*steps: str) -> str:
    body = "\n".join(f"              {s}" for s in steps)
    return f"""
        jobs:
          work:
            docker: [{{image: x}}]
            environment:
              GREETING: hi
            steps:
{body}
        workflows:
          ci:
            jobs: [work]
    """


def run_single(make_orchestrator, *steps, branch="main", **overrides):
    orch, sink = make_orchestrator(single_job(*steps), **overrides)
    report = orch.run(TriggerContext(branch=branch, commit="abc123"))
    return report.job_run("ci", "work"), sink


def test_steps_run_in_order_and_share_the_project_dir(make_orchestrator):
    run, sink = run_single(
        make_orchestrator,
        "- run: echo one > f.txt",
        "- run: cat f.txt",
    )
    assert run.status == SUCCESS
    assert [s.status for s in run.steps] == [SUCCESS, SUCCESS]
    assert "one" in sink.text("ci/work")


def test_first_failure_stops_the_job(make_orchestrator):
    run, sink = run_single(
        make_orchestrator,
        "- run: {name: breaks, command: exit 4}",
        "- run: echo never",
    )
    assert run.status == FAILED
    assert run.reason == REASON_EXIT_CODE
    assert len(run.steps) == 1
    assert run.steps[0].exit_code == 4
    assert "never" not in sink.text("ci/work")


def test_allow_failure_keeps_going(make_orchestrator):
    run, sink = run_single(
        make_orchestrator,
        "- run: {command: exit 1, allow_failure: true}",
        "- run: echo after",
    )
    assert run.status == SUCCESS
    assert [s.status for s in run.steps] == [FAILED, SUCCESS]
    assert "after" in sink.text("ci/work")


def test_step_timeout(make_orchestrator):
    started = time.monotonic()
    run, _ = run_single(make_orchestrator, "- run: {command: sleep 30, timeout: 1}")
    assert run.status == FAILED
    assert run.reason == REASON_TIMEOUT
    assert time.monotonic() - started < 15


def test_quiet_step_is_stalled(make_orchestrator):
    run, sink = run_single(
        make_orchestrator,
        "- run: {command: echo start && sleep 30, no_output_timeout: 1}",
    )
    assert run.status == FAILED
    assert run.reason == REASON_STALLED
    assert "start" in sink.text("ci/work")


def test_job_timeout_bounds_every_step(make_orchestrator):
    run, _ = run_single(make_orchestrator, "- run: sleep 30", job_timeout=1)
    assert run.status == FAILED
    assert run.reason == REASON_JOB_TIMEOUT


def test_builtin_and_job_environment(make_orchestrator):
    run, sink = run_single(
        make_orchestrator,
        '- run: echo "$GREETING $FLOWCI_BRANCH $FLOWCI_SHA1 $FLOWCI_JOB $FLOWCI_WORKFLOW $CI"',
        branch="feature/env",
    )
    assert run.status == SUCCESS
    assert "hi feature/env abc123 work ci true" in sink.text("ci/work")


def test_pipeline_values_are_interpolated(make_orchestrator):
    run, sink = run_single(
        make_orchestrator,
        "- run: echo branch=<< pipeline.git.branch >> rev=<< pipeline.git.revision >>",
        branch="dev",
    )
    assert run.status == SUCCESS
    assert "branch=dev rev=abc123" in sink.text("ci/work")


def test_checkout_copies_the_source_tree(make_orchestrator, tmp_path):
    (tmp_path / "README").write_text("from the repo\n")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    orch, sink = make_orchestrator(single_job("- checkout", "- run: cat README && test ! -e .git"))
    report = orch.run(TriggerContext(branch="main", source_dir=str(tmp_path)))
    assert report.job_run("ci", "work").status == SUCCESS
    assert "from the repo" in sink.text("ci/work")


class FlakyBackend(LocalBackend):
    def __init__(self, failures: int):
        super().__init__(grace=1.0)
        self.failures = failures
        self.calls = 0

    def create(self, spec, rc):
        self.calls += 1
        if self.calls <= self.failures:
            raise ProvisioningError("executor", "capacity exhausted")
        return super().create(spec, rc)


def _orchestrator(load, settings, backend):
    sink = CaptureSink()
    pipeline = load(single_job("- run: echo provisioned"))
    return Orchestrator(pipeline, settings, backend=backend, store=MemoryBlobStore(), sink=sink), sink


def test_provisioning_is_retried(load, settings):
    backend = FlakyBackend(failures=2)
    orch, sink = _orchestrator(load, settings.with_overrides(provision_retries=2), backend)
    run = orch.run(TriggerContext(branch="main")).job_run("ci", "work")
    assert run.status == SUCCESS
    assert backend.calls == 3
    assert "retrying" in sink.text("ci/work")


def test_provisioning_gives_up(load, settings):
    backend = FlakyBackend(failures=5)
    orch, _ = _orchestrator(load, settings.with_overrides(provision_retries=1), backend)
    run = orch.run(TriggerContext(branch="main")).job_run("ci", "work")
    assert run.status == FAILED
    assert run.reason == REASON_PROVISIONING
    assert run.steps == []
    assert backend.calls == 2

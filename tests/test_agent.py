import textwrap

from flowci.agent.agent import Agent
from flowci.agent.executor import execute_lease
from flowci.agent.models import Lease
from flowci.settings import Settings

PIPELINE = textwrap.dedent(
    """
    parameters:
      greeting:
        type: string
        default: hello
    jobs:
      hello:
        docker: [{image: x}]
        steps:
          - run: echo "<< pipeline.parameters.greeting >> from $FLOWCI_BRANCH"
    workflows:
      ci:
        jobs: [hello]
    """
)


def lease(**overrides):
    data = {
        "invocation_id": "0b6f4c9e-lease",
        "pipeline": PIPELINE,
        "branch": "main",
        "commit": "",
        "parameters": {"greeting": "hi"},
        "repo_url": "",
        "lease_expires_at": "2030-01-01T00:00:00+00:00",
    }
    data.update(overrides)
    return Lease.from_dict(data)


def agent_settings(tmp_path):
    return Settings(quiet_period=0, provision_retries=0, cancel_grace=1.0, storage_root=str(tmp_path / "storage"))


def test_lease_ref_prefers_commit():
    assert lease().ref == "main"
    assert lease(commit="abc123").ref == "abc123"


def test_execute_lease_captures_logs_and_report(tmp_path):
    result = execute_lease(lease(), tmp_path / "work", agent_settings(tmp_path))

    assert result.status == "success"
    assert result.error is None
    assert result.report["invocation_id"] == "0b6f4c9e-lease"
    assert result.report["workflows"] == {"ci": "success"}
    assert "hi from main" in result.logs["ci/hello"]


def test_execute_lease_reports_definition_errors(tmp_path):
    result = execute_lease(lease(pipeline="jobs: {}\n"), tmp_path / "work", agent_settings(tmp_path))
    assert result.status == "failed"
    assert "no workflows" in result.error
    assert result.report == {}


class FakeClient:
    def __init__(self, leases):
        self.leases = list(leases)
        self.completed = []
        self.agent_id = "agent-1"
        self.base_url = "http://ci.invalid"

    def claim_lease(self):
        return self.leases.pop(0) if self.leases else None

    def complete_lease(self, invocation_id, status, details):
        self.completed.append((invocation_id, status, details))


def test_poll_once_runs_and_completes(tmp_path):
    agent = Agent("http://ci.invalid", "agent-1", poll_interval=0, settings=agent_settings(tmp_path))
    agent.work_dir = tmp_path / "work"
    agent.api_client = FakeClient([lease()])

    assert agent.poll_once() is True
    assert agent.poll_once() is False

    [(invocation_id, status, details)] = agent.api_client.completed
    assert (invocation_id, status) == ("0b6f4c9e-lease", "success")
    assert details["report"]["job_runs"][0]["status"] == "success"
    assert "ci/hello" in details["logs"]

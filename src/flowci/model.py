# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .predicate import Predicate

SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"

# failure / skip reasons reported per job run
REASON_EXIT_CODE = "exit code"
REASON_TIMEOUT = "timeout"
REASON_STALLED = "stalled"
REASON_JOB_TIMEOUT = "job timeout"
REASON_PROVISIONING = "provisioning"
REASON_WORKSPACE = "workspace"
REASON_ARTIFACT = "artifact"
REASON_CANCELLED = "cancelled"
REASON_UNMET_DEPENDENCY = "unmet dependency"
REASON_BRANCH_FILTER = "branch filter"
REASON_PARAMETER_GUARD = "parameter guard"
REASON_INTERNAL = "internal error"


@dataclass(frozen=True)
class Parameter:
    """A pipeline (or command) parameter supplied at trigger time."""
    name: str
    type: str  # "boolean" | "string"
    default: Any = None
    description: str = ""


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class RunStep:
    """Run a command line in the job's environment."""
    name: str
    command: str
    timeout: Optional[float] = None            # seconds, hard ceiling
    no_output_timeout: Optional[float] = None  # seconds without output -> stalled
    allow_failure: bool = False
    working_directory: Optional[str] = None


@dataclass(frozen=True)
class CheckoutStep:
    """Copy the trigger's source tree into the environment."""
    name: str = "Checkout code"
    path: Optional[str] = None


@dataclass(frozen=True)
class AttachWorkspaceStep:
    at: str
    name: str = "Attach workspace"


@dataclass(frozen=True)
class PersistWorkspaceStep:
    root: str
    paths: tuple[str, ...]
    name: str = "Persist to workspace"


@dataclass(frozen=True)
class StoreArtifactStep:
    path: str
    destination: Optional[str] = None
    name: str = "Store artifacts"


Step = Union[RunStep, CheckoutStep, AttachWorkspaceStep, PersistWorkspaceStep, StoreArtifactStep]


@dataclass(frozen=True)
class Command:
    """
    Named, reusable step group. Commands are macros: the loader expands them
    into each referencing job's step list, so nothing downstream sees them.
    """
    name: str
    steps: tuple[Any, ...]  # raw step documents, expanded per use site
    parameters: Dict[str, Parameter] = field(default_factory=dict)
    description: str = ""


# ---------------------------------------------------------------------
# Jobs / workflows
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutorSpec:
    kind: str  # "docker" | "machine"
    image: str = "default"
    resource_class: str = "medium"


@dataclass
class Job:
    """A CI job template: executor + ordered steps + environment."""
    name: str
    executor: ExecutorSpec
    steps: List[Step]
    environment: Dict[str, str] = field(default_factory=dict)
    description: str = ""

    @property
    def attaches_workspace(self) -> bool:
        return any(isinstance(s, AttachWorkspaceStep) for s in self.steps)

    @property
    def persists_workspace(self) -> bool:
        return any(isinstance(s, PersistWorkspaceStep) for s in self.steps)


@dataclass
class JobRef:
    """
    A job reference inside a workflow. Each reference becomes one job run.

    `name` is the run name (defaults to the job template name) and is what
    `requires` lists refer to.
    """
    job: str
    name: str = ""
    requires: List[str] = field(default_factory=list)
    branches_only: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = None
    when: Optional[Predicate] = None

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.job


@dataclass
class Workflow:
    name: str
    jobs: List[JobRef]
    when: Optional[Predicate] = None
    unless: Optional[Predicate] = None

    def ref(self, name: str) -> JobRef:
        for r in self.jobs:
            if r.name == name:
                return r
        raise KeyError(name)


@dataclass
class Pipeline:
    parameters: Dict[str, Parameter] = field(default_factory=dict)
    commands: Dict[str, Command] = field(default_factory=dict)
    jobs: Dict[str, Job] = field(default_factory=dict)
    workflows: Dict[str, Workflow] = field(default_factory=dict)
    version: str = "2.1"
    source: Optional[str] = None

    def workspace_producer(self, workflow: Workflow) -> Optional[str]:
        """Run name of the single job run persisting the workflow's workspace."""
        for r in workflow.jobs:
            if self.jobs[r.job].persists_workspace:
                return r.name
        return None


# ---------------------------------------------------------------------
# Trigger / results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerContext:
    branch: str
    commit: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    source_dir: Optional[str] = None


@dataclass
class StepResult:
    name: str
    status: str
    exit_code: Optional[int] = None
    reason: str = ""
    duration: float = 0.0


@dataclass
class Artifact:
    job_run: str
    name: str
    key: str
    size: int


@dataclass
class JobRunResult:
    workflow: str
    name: str
    job: str
    status: str
    reason: str = ""
    detail: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    steps: List[StepResult] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.workflow}/{self.name}"

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow,
            "name": self.name,
            "job": self.job,
            "status": self.status,
            "reason": self.reason,
            "detail": self.detail,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [
                {"name": s.name, "status": s.status, "exit_code": s.exit_code, "reason": s.reason}
                for s in self.steps
            ],
            "artifacts": [{"name": a.name, "key": a.key, "size": a.size} for a in self.artifacts],
        }


@dataclass
class InvocationReport:
    invocation_id: str
    status: str  # "running" | "success" | "failed"
    trigger: TriggerContext
    workflows: Dict[str, str] = field(default_factory=dict)
    job_runs: List[JobRunResult] = field(default_factory=list)
    order: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def job_run(self, workflow: str, name: str) -> JobRunResult:
        for r in self.job_runs:
            if r.workflow == workflow and r.name == name:
                return r
        raise KeyError(f"{workflow}/{name}")

    def statuses(self) -> Dict[str, str]:
        return {r.key: r.status for r in self.job_runs}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invocation_id": self.invocation_id,
            "status": self.status,
            "branch": self.trigger.branch,
            "commit": self.trigger.commit,
            "parameters": dict(self.trigger.parameters),
            "workflows": dict(self.workflows),
            "order": list(self.order),
            "job_runs": [r.to_dict() for r in self.job_runs],
            "error": self.error,
        }

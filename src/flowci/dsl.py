# src/flowci/dsl.py
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .model import (
    AttachWorkspaceStep,
    CheckoutStep,
    ExecutorSpec,
    Job,
    JobRef,
    Parameter,
    PersistWorkspaceStep,
    Pipeline,
    RunStep,
    Step,
    StoreArtifactStep,
    Workflow,
)
from .errors import DefinitionError
from .predicate import Predicate, parse_predicate
from .validation import validate_pipeline


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    timeout: float | None = None,
    no_output_timeout: float | None = None,
    allow_failure: bool = False,
) -> Step:
    """Create a shell step."""
    return RunStep(
        name=name,
        command=cmd,
        timeout=timeout,
        no_output_timeout=no_output_timeout,
        allow_failure=allow_failure,
        working_directory=cwd,
    )


def checkout(path: str | None = None) -> Step:
    return CheckoutStep(path=path)


def attach_workspace(at: str) -> Step:
    return AttachWorkspaceStep(at=at)


def persist_to_workspace(root: str, *paths: str) -> Step:
    if not paths:
        raise DefinitionError("persist_to_workspace", "Needs at least one path")
    return PersistWorkspaceStep(root=root, paths=tuple(paths))


def store_artifacts(path: str, destination: str | None = None) -> Step:
    return StoreArtifactStep(path=path, destination=destination)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    image: str | None = None,
    machine: bool = False,
    resource_class: str = "medium",
    env: Optional[Dict[str, str]] = None,
) -> Job:
    """
    Define a job template. Docker executor by default; machine=True asks
    for an exclusive machine instead.
    """
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise DefinitionError(f"jobs.{name}", "Job must have at least one step")

    if machine:
        executor = ExecutorSpec(kind="machine", image=image or "default", resource_class=resource_class)
    else:
        executor = ExecutorSpec(kind="docker", image=image or "python:3.12", resource_class=resource_class)

    return Job(
        name=name,
        executor=executor,
        steps=steps_final,
        # force values to str for env compatibility
        environment={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._executor = ExecutorSpec(kind="docker", image="python:3.12")

    def on_docker(self, image: str, resource_class: str = "medium"):
        self._executor = ExecutorSpec(kind="docker", image=image, resource_class=resource_class)
        return self

    def on_machine(self, image: str = "default", resource_class: str = "medium"):
        self._executor = ExecutorSpec(kind="machine", image=image, resource_class=resource_class)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **opts: Any):
        self._steps.append(sh(name, run, cwd=cwd, **opts))
        return self

    def add(self, *steps: Step):
        self._steps.extend(steps)
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def build(self) -> Job:
        if not self._steps:
            raise DefinitionError(f"jobs.{self.name}", "Job has no steps")
        return Job(name=self.name, executor=self._executor, steps=list(self._steps), environment=dict(self._env))


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------

JobLike = Union[Job, JobRef, str]


def ref(
    target: Union[Job, str],
    *,
    name: str | None = None,
    requires: Sequence[str] = (),
    only: Union[str, Sequence[str], None] = None,
    ignore: Union[str, Sequence[str], None] = None,
    when: Any = None,
) -> JobRef:
    """
    Reference a job inside a workflow. `when` takes the same forms as the
    YAML description (a "<< pipeline.parameters.x >>" string, or a
    {not|and|or|equal: ...} mapping) or an already-built Predicate.
    """
    job_name = target.name if isinstance(target, Job) else target

    def as_list(v):
        if v is None:
            return None
        return [v] if isinstance(v, str) else list(v)

    return JobRef(
        job=job_name,
        name=name or job_name,
        requires=list(requires),
        branches_only=as_list(only),
        branches_ignore=as_list(ignore),
        when=_predicate(when, f"{job_name}.when"),
    )


def _predicate(raw: Any, location: str) -> Optional[Predicate]:
    if raw is None or isinstance(raw, Predicate):
        return raw
    return parse_predicate(raw, location=location)


def workflow(name: str, *jobs: JobLike, when: Any = None, unless: Any = None) -> Workflow:
    refs = [j if isinstance(j, JobRef) else ref(j) for j in jobs]
    return Workflow(
        name=name,
        jobs=refs,
        when=_predicate(when, f"workflows.{name}.when"),
        unless=_predicate(unless, f"workflows.{name}.unless"),
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11", "3.12"]).refs(
            lambda v: ref(test, name=f"test-py{v}")
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def refs(self, builder: Callable[[Any], JobRef]) -> List[JobRef]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------

def boolean(name: str, default: bool | None = None, description: str = "") -> Parameter:
    return Parameter(name=name, type="boolean", default=default, description=description)


def string(name: str, default: str | None = None, description: str = "") -> Parameter:
    return Parameter(name=name, type="string", default=default, description=description)


def pipeline(
    *,
    jobs: Sequence[Job],
    workflows: Sequence[Workflow],
    parameters: Sequence[Parameter] = (),
) -> Pipeline:
    """
    Assemble and validate a pipeline.

    Users can write, in a flowci_pipeline.py:

        from flowci.dsl import job, sh, workflow, pipeline

        build = job("build", sh("Build", "make"))

        PIPELINE = pipeline(jobs=[build], workflows=[workflow("main", build)])
    """
    p = Pipeline(parameters={}, jobs={}, workflows={})
    for prm in parameters:
        if prm.name in p.parameters:
            raise DefinitionError(f"parameters.{prm.name}", "Duplicate parameter name")
        p.parameters[prm.name] = prm
    for j in jobs:
        if j.name in p.jobs:
            raise DefinitionError(f"jobs.{j.name}", "Duplicate job name")
        p.jobs[j.name] = j
    for wf in workflows:
        if wf.name in p.workflows:
            raise DefinitionError(f"workflows.{wf.name}", "Duplicate workflow name")
        p.workflows[wf.name] = wf
    validate_pipeline(p)
    return p

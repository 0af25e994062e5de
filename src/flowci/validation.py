# validation.py
from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Sequence

from .backends import EXECUTOR_KINDS, RESOURCE_CLASSES
from .dag import ancestors, workflow_order
from .errors import DefinitionError, TriggerError
from .model import (
    AttachWorkspaceStep,
    Parameter,
    Pipeline,
    RunStep,
    Workflow,
)
from .params import PARAMETER_TYPES, coerce_value
from .predicate import And, ExclusivityReport, Literal, Not, Predicate, check_exclusive

ANY_EXPR_RE = re.compile(r"<<\s*([^>]*?)\s*>>")


def _check_predicate(pred: Optional[Predicate], pipeline: Pipeline, location: str) -> None:
    if pred is None:
        return
    unknown = sorted(pred.parameters() - set(pipeline.parameters))
    if unknown:
        raise DefinitionError(location, f"Condition references undeclared parameter(s): {unknown}")


def _check_branch_patterns(patterns: Optional[Sequence[str]], location: str) -> None:
    for pat in patterns or []:
        if not isinstance(pat, str) or not pat:
            raise DefinitionError(location, f"Branch filter must be a non-empty string, got {pat!r}")
        if len(pat) > 1 and pat.startswith("/") and pat.endswith("/"):
            try:
                re.compile(pat[1:-1])
            except re.error as e:
                raise DefinitionError(location, f"Invalid branch regex {pat!r}: {e}") from None


def _check_command_text(text: str, pipeline: Pipeline, location: str) -> None:
    for expr in ANY_EXPR_RE.findall(text):
        m = re.fullmatch(r"pipeline\.parameters\.([A-Za-z_][\w-]*)", expr)
        if m:
            if m.group(1) not in pipeline.parameters:
                raise DefinitionError(location, f"Undeclared pipeline parameter: {m.group(1)!r}")
            continue
        if expr in ("pipeline.git.branch", "pipeline.git.revision", "pipeline.id"):
            continue
        raise DefinitionError(location, f"Unresolved expression: << {expr} >>")


def validate_workflow(pipeline: Pipeline, wf: Workflow) -> List[str]:
    """Validate one workflow; returns its deterministic job order."""
    loc = f"workflows.{wf.name}"
    if not wf.jobs:
        raise DefinitionError(loc, "Workflow has no jobs")

    _check_predicate(wf.when, pipeline, f"{loc}.when")
    _check_predicate(wf.unless, pipeline, f"{loc}.unless")

    for ref in wf.jobs:
        ref_loc = f"{loc}.jobs.{ref.name}"
        if ref.job not in pipeline.jobs:
            raise DefinitionError(
                ref_loc,
                f"Reference to undefined job '{ref.job}'. Known jobs: {sorted(pipeline.jobs)}",
            )
        _check_branch_patterns(ref.branches_only, f"{ref_loc}.filters.branches.only")
        _check_branch_patterns(ref.branches_ignore, f"{ref_loc}.filters.branches.ignore")
        _check_predicate(ref.when, pipeline, f"{ref_loc}.when")

    order = workflow_order(wf.jobs, location=loc)

    producers = [r.name for r in wf.jobs if pipeline.jobs[r.job].persists_workspace]
    if len(producers) > 1:
        raise DefinitionError(
            loc,
            f"Only one job run per workflow may persist the workspace, found: {producers}",
        )
    producer = producers[0] if producers else None

    for ref in wf.jobs:
        if not pipeline.jobs[ref.job].attaches_workspace:
            continue
        ref_loc = f"{loc}.jobs.{ref.name}"
        if producer is None:
            raise DefinitionError(ref_loc, "Attaches a workspace but no job in the workflow persists one")
        if producer == ref.name:
            raise DefinitionError(ref_loc, "A job cannot attach the workspace it persists")
        if producer not in ancestors(wf.jobs, ref.name):
            raise DefinitionError(
                ref_loc,
                f"Attaches the workspace persisted by '{producer}', which is not among its dependencies",
            )

    return order


def check_parameter(param: Parameter, location: str) -> None:
    if param.type not in PARAMETER_TYPES:
        raise DefinitionError(
            location,
            f"Unknown parameter type {param.type!r} (expected one of {list(PARAMETER_TYPES)})",
        )
    if param.default is not None:
        try:
            coerce_value(param, param.default, location=location)
        except TriggerError as e:
            raise DefinitionError(location, f"Default does not match type: {e.message}") from None


def validate_pipeline(pipeline: Pipeline) -> Dict[str, List[str]]:
    """
    Check every structural invariant of a pipeline. Raises DefinitionError
    (with the job/workflow location) on the first violation.

    Returns the deterministic job order of every workflow.
    """
    for name, param in pipeline.parameters.items():
        check_parameter(param, f"parameters.{name}")

    for name, job in pipeline.jobs.items():
        loc = f"jobs.{name}"
        if job.executor.kind not in EXECUTOR_KINDS:
            raise DefinitionError(f"{loc}.executor", f"Unknown executor kind {job.executor.kind!r}")
        if job.executor.resource_class not in RESOURCE_CLASSES:
            raise DefinitionError(
                f"{loc}.resource_class",
                f"Unknown resource class {job.executor.resource_class!r}. Known: {sorted(RESOURCE_CLASSES)}",
            )
        if not job.steps:
            raise DefinitionError(loc, "Job has no steps")
        for i, step in enumerate(job.steps):
            if isinstance(step, RunStep):
                _check_command_text(step.command, pipeline, f"{loc}.steps[{i}]")
            if isinstance(step, AttachWorkspaceStep) and i and not _only_setup_before(job.steps, i):
                raise DefinitionError(
                    f"{loc}.steps[{i}]",
                    "attach_workspace must come before any run step",
                )
        for key, value in job.environment.items():
            if not isinstance(value, str):
                raise DefinitionError(f"{loc}.environment.{key}", "Environment values must be strings")

    orders: Dict[str, List[str]] = {}
    for wf in pipeline.workflows.values():
        orders[wf.name] = validate_workflow(pipeline, wf)
    return orders


def _only_setup_before(steps: Sequence, index: int) -> bool:
    return not any(isinstance(s, RunStep) for s in steps[:index])


def check_workflows_exclusive(pipeline: Pipeline, names: Iterable[str]) -> ExclusivityReport:
    """
    Check that the given workflows' predicates are exhaustive and
    non-overlapping (exactly one of them runs for every parameter value).
    """
    preds: Dict[str, Predicate] = {}
    for name in names:
        wf = pipeline.workflows.get(name)
        if wf is None:
            raise DefinitionError(f"workflows.{name}", "No such workflow")
        pred: Predicate = wf.when if wf.when is not None else Literal(True)
        if wf.unless is not None:
            pred = And((pred, Not(wf.unless)))
        preds[name] = pred

    types = {n: p.type for n, p in pipeline.parameters.items()}
    return check_exclusive(preds, types)

# params.py
from __future__ import annotations

from typing import Any, Dict, List, Mapping

from .errors import TriggerError
from .model import Parameter, Pipeline, TriggerContext, Workflow
from .predicate import GIT_BRANCH, GIT_REVISION

PARAMETER_TYPES = ("boolean", "string")

_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


def coerce_value(param: Parameter, value: Any, *, coerce: bool = False, location: str = "parameters") -> Any:
    """
    Check `value` against the parameter type.

    With coerce=True, strings like "true"/"false" are accepted for boolean
    parameters (values typed on a command line are always strings).
    """
    if param.type == "boolean":
        if isinstance(value, bool):
            return value
        if coerce and isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
            return value.strip().lower() in _TRUE
        raise TriggerError(
            f"{location}.{param.name}",
            f"Parameter '{param.name}' expects a boolean, got {type(value).__name__}: {value!r}",
        )

    if param.type == "string":
        if isinstance(value, str):
            return value
        raise TriggerError(
            f"{location}.{param.name}",
            f"Parameter '{param.name}' expects a string, got {type(value).__name__}: {value!r}",
        )

    raise TriggerError(f"{location}.{param.name}", f"Unknown parameter type: {param.type!r}")


def resolve_parameters(
    declared: Mapping[str, Parameter],
    overrides: Mapping[str, Any] | None = None,
    *,
    coerce: bool = False,
) -> Dict[str, Any]:
    """
    Resolve trigger-time parameter values.

    Explicit override wins over the default. Unknown names and type
    mismatches raise TriggerError before anything is scheduled.
    """
    overrides = dict(overrides or {})

    unknown = sorted(set(overrides) - set(declared))
    if unknown:
        raise TriggerError(
            "parameters",
            f"Unknown parameter(s): {unknown}",
            declared=sorted(declared),
        )

    resolved: Dict[str, Any] = {}
    for name, param in declared.items():
        if name in overrides:
            resolved[name] = coerce_value(param, overrides[name], coerce=coerce)
        elif param.default is not None:
            resolved[name] = param.default
        else:
            raise TriggerError(
                f"parameters.{name}",
                f"Parameter '{name}' has no default and was not supplied",
            )
    return resolved


def predicate_values(params: Mapping[str, Any], trigger: TriggerContext) -> Dict[str, Any]:
    """Values visible to predicates: resolved parameters plus git facts."""
    values = dict(params)
    values[GIT_BRANCH] = trigger.branch
    values[GIT_REVISION] = trigger.commit
    return values


def is_eligible(workflow: Workflow, values: Mapping[str, Any]) -> bool:
    if workflow.when is not None and not workflow.when.evaluate(values):
        return False
    if workflow.unless is not None and workflow.unless.evaluate(values):
        return False
    return True


def eligible_workflows(
    pipeline: Pipeline,
    params: Mapping[str, Any],
    trigger: TriggerContext | None = None,
) -> List[Workflow]:
    """Workflows whose `when` holds (absent predicate = always), in declaration order."""
    values = predicate_values(params, trigger) if trigger is not None else dict(params)
    return [wf for wf in pipeline.workflows.values() if is_eligible(wf, values)]

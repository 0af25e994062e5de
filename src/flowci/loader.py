# loader.py
from __future__ import annotations

import re
import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

import yaml

from .errors import DefinitionError, TriggerError
from .model import (
    AttachWorkspaceStep,
    CheckoutStep,
    Command,
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
from .params import coerce_value
from .predicate import parse_predicate
from .validation import check_parameter, validate_pipeline

# ----------------------------------------------------------------------
# Pipeline description (YAML):
#
#   version: 2.1
#   parameters: {name: {type, default, description}}
#   commands:   {name: {description, parameters, steps}}
#   jobs:       {name: {docker|machine, resource_class, environment, steps}}
#   workflows:  {version, name: {when, unless, jobs: [name | {name: {...}}]}}
#
# Commands are expanded into each job's steps here; nothing after the
# loader ever sees a command reference.
# ----------------------------------------------------------------------

TOP_LEVEL_KEYS = {"version", "parameters", "commands", "jobs", "workflows"}
PARAMETER_KEYS = {"type", "default", "description"}
COMMAND_KEYS = {"description", "parameters", "steps"}
JOB_KEYS = {"docker", "machine", "resource_class", "environment", "steps", "description"}
WORKFLOW_KEYS = {"when", "unless", "jobs"}
JOB_REF_KEYS = {"name", "requires", "filters", "when"}
FILTER_KEYS = {"branches"}
BRANCH_FILTER_KEYS = {"only", "ignore"}
RUN_KEYS = {"name", "command", "no_output_timeout", "timeout", "allow_failure", "working_directory"}
BUILTIN_STEPS = {"run", "checkout", "attach_workspace", "persist_to_workspace", "store_artifacts"}

_DURATION_RE = re.compile(r"^(?:(\d+(?:\.\d+)?)h)?(?:(\d+(?:\.\d+)?)m)?(?:(\d+(?:\.\d+)?)s)?$")
_COMMAND_PARAM_RE = re.compile(r"<<\s*parameters\.([A-Za-z_][\w-]*)\s*>>")
_PIPELINE_EXPR_RE = re.compile(r"<<\s*(pipeline\.(?:parameters\.[A-Za-z_][\w-]*|git\.branch|git\.revision|id))\s*>>")


# ----------------------------------------------------------------------
# YAML
# ----------------------------------------------------------------------

class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            seen: Set[Any] = set()
            for key_node, _value_node in node.value:
                if key_node.tag == "tag:yaml.org,2002:merge":
                    continue
                key = self.construct_object(key_node, deep=deep)
                if key in seen:
                    raise DefinitionError(
                        f"line {key_node.start_mark.line + 1}",
                        f"Duplicate key {key!r}",
                    )
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


def parse_yaml(text: str, *, source: str = "<string>") -> Any:
    try:
        return yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        where = f"{source}:{mark.line + 1}" if mark is not None else source
        raise DefinitionError(where, f"Invalid YAML: {e}") from None


# ----------------------------------------------------------------------
# Small helpers
# ----------------------------------------------------------------------

def _expect_mapping(value: Any, location: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DefinitionError(location, f"Expected a mapping, got {type(value).__name__}")
    return value


def _expect_list(value: Any, location: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise DefinitionError(location, f"Expected a list, got {type(value).__name__}")
    return value


def _check_keys(doc: Mapping[str, Any], allowed: Set[str], location: str) -> None:
    unknown = sorted(str(k) for k in set(doc) - allowed)
    if unknown:
        raise DefinitionError(location, f"Unknown key(s): {unknown}. Allowed: {sorted(allowed)}")


def _string_list(value: Any, location: str) -> List[str]:
    if isinstance(value, str):
        return [value]
    items = _expect_list(value, location)
    for item in items:
        if not isinstance(item, str):
            raise DefinitionError(location, f"Expected strings, got {item!r}")
    return list(items)


def parse_duration(value: Any, location: str = "duration") -> float:
    """Seconds from 90, "90s", "30m", "1h30m"."""
    if isinstance(value, bool):
        raise DefinitionError(location, f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value <= 0:
            raise DefinitionError(location, f"Duration must be positive: {value!r}")
        return float(value)
    if isinstance(value, str):
        m = _DURATION_RE.match(value.strip())
        if m and any(m.groups()):
            h, mnt, s = (float(g) if g else 0.0 for g in m.groups())
            total = h * 3600 + mnt * 60 + s
            if total > 0:
                return total
    raise DefinitionError(location, f"Invalid duration: {value!r} (use e.g. 90, \"90s\", \"30m\", \"1h30m\")")


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def interpolate_pipeline(text: str, values: Mapping[str, Any]) -> str:
    """Replace << pipeline.parameters.x >> / << pipeline.git.branch >> / << pipeline.id >>."""

    def sub(m: re.Match) -> str:
        expr = m.group(1)
        key = expr[len("pipeline.parameters."):] if expr.startswith("pipeline.parameters.") else expr
        return _render(values.get(key))

    return _PIPELINE_EXPR_RE.sub(sub, text)


def _substitute(doc: Any, args: Mapping[str, Any], location: str) -> Any:
    """Deep-replace << parameters.x >> in a raw command step document."""
    if isinstance(doc, str):
        def sub(m: re.Match) -> str:
            name = m.group(1)
            if name not in args:
                raise DefinitionError(location, f"Unknown command parameter: {name!r}")
            return _render(args[name])

        # a value that is exactly one expression keeps its type (booleans)
        whole = _COMMAND_PARAM_RE.fullmatch(doc.strip())
        if whole and whole.group(1) in args:
            return args[whole.group(1)]
        return _COMMAND_PARAM_RE.sub(sub, doc)
    if isinstance(doc, list):
        return [_substitute(d, args, location) for d in doc]
    if isinstance(doc, dict):
        return {k: _substitute(v, args, location) for k, v in doc.items()}
    return doc


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

def parse_parameters(doc: Any, location: str = "parameters") -> Dict[str, Parameter]:
    out: Dict[str, Parameter] = {}
    for name, spec in _expect_mapping(doc, location).items():
        loc = f"{location}.{name}"
        spec = _expect_mapping(spec, loc)
        _check_keys(spec, PARAMETER_KEYS, loc)
        ptype = spec.get("type")
        if ptype not in ("boolean", "string"):
            raise DefinitionError(loc, f"Parameter type must be 'boolean' or 'string', got {ptype!r}")
        param = Parameter(
            name=str(name),
            type=ptype,
            default=spec.get("default"),
            description=str(spec.get("description") or ""),
        )
        check_parameter(param, loc)
        out[str(name)] = param
    return out


def parse_commands(doc: Any) -> Dict[str, Command]:
    out: Dict[str, Command] = {}
    for name, spec in _expect_mapping(doc, "commands").items():
        loc = f"commands.{name}"
        if name in BUILTIN_STEPS:
            raise DefinitionError(loc, f"'{name}' is a built-in step and cannot be redefined")
        spec = _expect_mapping(spec, loc)
        _check_keys(spec, COMMAND_KEYS, loc)
        steps = _expect_list(spec.get("steps"), f"{loc}.steps")
        if not steps:
            raise DefinitionError(loc, "Command has no steps")
        out[str(name)] = Command(
            name=str(name),
            steps=tuple(steps),
            parameters=parse_parameters(spec.get("parameters"), f"{loc}.parameters"),
            description=str(spec.get("description") or ""),
        )
    return out


def _parse_run(arg: Any, location: str) -> RunStep:
    if isinstance(arg, str):
        arg = {"command": arg}
    arg = _expect_mapping(arg, location)
    _check_keys(arg, RUN_KEYS, location)
    command = arg.get("command")
    if not isinstance(command, str) or not command.strip():
        raise DefinitionError(location, "run step needs a non-empty 'command'")
    name = arg.get("name") or command.strip().splitlines()[0]
    allow_failure = arg.get("allow_failure", False)
    if not isinstance(allow_failure, bool):
        raise DefinitionError(f"{location}.allow_failure", "Expected a boolean")
    return RunStep(
        name=str(name),
        command=command,
        timeout=parse_duration(arg["timeout"], f"{location}.timeout") if "timeout" in arg else None,
        no_output_timeout=(
            parse_duration(arg["no_output_timeout"], f"{location}.no_output_timeout")
            if "no_output_timeout" in arg
            else None
        ),
        allow_failure=allow_failure,
        working_directory=arg.get("working_directory"),
    )


def _parse_builtin(kind: str, arg: Any, location: str) -> Step:
    if kind == "run":
        return _parse_run(arg, location)
    if kind == "checkout":
        arg = _expect_mapping(arg, location)
        _check_keys(arg, {"path"}, location)
        return CheckoutStep(path=arg.get("path"))
    if kind == "attach_workspace":
        arg = _expect_mapping(arg, location)
        _check_keys(arg, {"at"}, location)
        if not arg.get("at"):
            raise DefinitionError(location, "attach_workspace needs 'at'")
        return AttachWorkspaceStep(at=str(arg["at"]))
    if kind == "persist_to_workspace":
        arg = _expect_mapping(arg, location)
        _check_keys(arg, {"root", "paths"}, location)
        if not arg.get("root"):
            raise DefinitionError(location, "persist_to_workspace needs 'root'")
        paths = _string_list(arg.get("paths"), f"{location}.paths")
        if not paths:
            raise DefinitionError(location, "persist_to_workspace needs at least one path")
        return PersistWorkspaceStep(root=str(arg["root"]), paths=tuple(paths))
    if kind == "store_artifacts":
        arg = _expect_mapping(arg, location)
        _check_keys(arg, {"path", "destination"}, location)
        if not arg.get("path"):
            raise DefinitionError(location, "store_artifacts needs 'path'")
        return StoreArtifactStep(path=str(arg["path"]), destination=arg.get("destination"))
    raise DefinitionError(location, f"Unknown step: {kind!r}")


def expand_steps(
    raw_steps: Sequence[Any],
    commands: Mapping[str, Command],
    location: str,
    *,
    _stack: Sequence[str] = (),
) -> List[Step]:
    """Turn raw step documents into concrete steps, inlining command references."""
    out: List[Step] = []
    for i, raw in enumerate(raw_steps):
        loc = f"{location}[{i}]"
        if isinstance(raw, str):
            kind, arg = raw, None
        elif isinstance(raw, dict) and len(raw) == 1:
            kind, arg = next(iter(raw.items()))
        else:
            raise DefinitionError(loc, f"A step must be a name or a single-key mapping, got {raw!r}")

        if kind in BUILTIN_STEPS:
            if kind == "run" and arg is None:
                raise DefinitionError(loc, "run step needs a command")
            out.append(_parse_builtin(kind, arg, loc))
            continue

        command = commands.get(kind)
        if command is None:
            raise DefinitionError(loc, f"Unknown step or command: {kind!r}")
        if kind in _stack:
            raise DefinitionError(loc, f"Commands invoke each other in a cycle: {list(_stack) + [kind]}")

        args = _expect_mapping(arg, loc)
        unknown = sorted(set(args) - set(command.parameters))
        if unknown:
            raise DefinitionError(loc, f"Unknown parameter(s) for command '{kind}': {unknown}")
        resolved: Dict[str, Any] = {}
        for pname, param in command.parameters.items():
            if pname in args:
                try:
                    resolved[pname] = coerce_value(param, args[pname], location=loc)
                except TriggerError as e:
                    raise DefinitionError(loc, e.message) from None
            elif param.default is not None:
                resolved[pname] = param.default
            else:
                raise DefinitionError(loc, f"Command '{kind}' requires parameter '{pname}'")

        body = _substitute(list(command.steps), resolved, f"commands.{kind}")
        out.extend(expand_steps(body, commands, f"commands.{kind}.steps", _stack=(*_stack, kind)))
    return out


def _parse_executor(spec: Mapping[str, Any], location: str) -> ExecutorSpec:
    resource_class = str(spec.get("resource_class") or "medium")
    has_docker = "docker" in spec
    has_machine = "machine" in spec
    if has_docker == has_machine:
        raise DefinitionError(location, "A job needs exactly one executor: 'docker' or 'machine'")

    if has_docker:
        images = spec["docker"]
        if isinstance(images, dict):
            images = [images]
        images = _expect_list(images, f"{location}.docker")
        if len(images) != 1:
            raise DefinitionError(f"{location}.docker", "Exactly one image is supported")
        img = _expect_mapping(images[0], f"{location}.docker[0]")
        _check_keys(img, {"image"}, f"{location}.docker[0]")
        if not img.get("image"):
            raise DefinitionError(f"{location}.docker[0]", "docker executor needs 'image'")
        return ExecutorSpec(kind="docker", image=str(img["image"]), resource_class=resource_class)

    machine = spec["machine"]
    if machine is True:
        machine = {}
    machine = _expect_mapping(machine, f"{location}.machine")
    _check_keys(machine, {"image"}, f"{location}.machine")
    return ExecutorSpec(kind="machine", image=str(machine.get("image") or "default"), resource_class=resource_class)


def parse_jobs(doc: Any, commands: Mapping[str, Command]) -> Dict[str, Job]:
    out: Dict[str, Job] = {}
    for name, spec in _expect_mapping(doc, "jobs").items():
        loc = f"jobs.{name}"
        spec = _expect_mapping(spec, loc)
        _check_keys(spec, JOB_KEYS, loc)
        env = _expect_mapping(spec.get("environment"), f"{loc}.environment")
        out[str(name)] = Job(
            name=str(name),
            executor=_parse_executor(spec, loc),
            steps=expand_steps(_expect_list(spec.get("steps"), f"{loc}.steps"), commands, f"{loc}.steps"),
            environment={str(k): v if isinstance(v, str) else _render(v) for k, v in env.items()},
            description=str(spec.get("description") or ""),
        )
    return out


def _parse_job_ref(entry: Any, location: str) -> JobRef:
    if isinstance(entry, str):
        return JobRef(job=entry)
    if not isinstance(entry, dict) or len(entry) != 1:
        raise DefinitionError(location, f"A workflow job must be a name or a single-key mapping, got {entry!r}")

    job, opts = next(iter(entry.items()))
    loc = f"{location}.{job}"
    opts = _expect_mapping(opts, loc)
    _check_keys(opts, JOB_REF_KEYS, loc)

    only = ignore = None
    filters = _expect_mapping(opts.get("filters"), f"{loc}.filters")
    _check_keys(filters, FILTER_KEYS, f"{loc}.filters")
    branches = _expect_mapping(filters.get("branches"), f"{loc}.filters.branches")
    _check_keys(branches, BRANCH_FILTER_KEYS, f"{loc}.filters.branches")
    if "only" in branches:
        only = _string_list(branches["only"], f"{loc}.filters.branches.only")
    if "ignore" in branches:
        ignore = _string_list(branches["ignore"], f"{loc}.filters.branches.ignore")

    return JobRef(
        job=str(job),
        name=str(opts.get("name") or job),
        requires=_string_list(opts.get("requires"), f"{loc}.requires"),
        branches_only=only,
        branches_ignore=ignore,
        when=parse_predicate(opts["when"], location=f"{loc}.when") if "when" in opts else None,
    )


def parse_workflows(doc: Any) -> Dict[str, Workflow]:
    out: Dict[str, Workflow] = {}
    for name, spec in _expect_mapping(doc, "workflows").items():
        if name == "version":
            continue
        loc = f"workflows.{name}"
        spec = _expect_mapping(spec, loc)
        _check_keys(spec, WORKFLOW_KEYS, loc)
        refs = [
            _parse_job_ref(entry, f"{loc}.jobs")
            for entry in _expect_list(spec.get("jobs"), f"{loc}.jobs")
        ]
        out[str(name)] = Workflow(
            name=str(name),
            jobs=refs,
            when=parse_predicate(spec["when"], location=f"{loc}.when") if "when" in spec else None,
            unless=parse_predicate(spec["unless"], location=f"{loc}.unless") if "unless" in spec else None,
        )
    return out


def parse_pipeline(doc: Any, *, source: Optional[str] = None) -> Pipeline:
    """Build and validate a Pipeline from a parsed description document."""
    doc = _expect_mapping(doc, source or "pipeline")
    _check_keys(doc, TOP_LEVEL_KEYS, "pipeline")

    commands = parse_commands(doc.get("commands"))
    pipeline = Pipeline(
        parameters=parse_parameters(doc.get("parameters")),
        commands=commands,
        jobs=parse_jobs(doc.get("jobs"), commands),
        workflows=parse_workflows(doc.get("workflows")),
        version=str(doc.get("version", "2.1")),
        source=source,
    )
    if not pipeline.workflows:
        raise DefinitionError("workflows", "Pipeline defines no workflows")
    validate_pipeline(pipeline)
    return pipeline


# ----------------------------------------------------------------------
# Loading from disk
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a description file.

    Supported:
      - *.yml / *.yaml  : declarative description
      - *.py            : defines pipeline() -> Pipeline or PIPELINE = Pipeline(...)
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    if p.suffix in (".yml", ".yaml"):
        doc = parse_yaml(p.read_text(encoding="utf-8"), source=str(p))
        return parse_pipeline(doc, source=str(p))

    if p.suffix == ".py":
        globals_dict = runpy.run_path(str(p), run_name=f"flowci_pipeline_{p.stem}")
        if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
            result = globals_dict["pipeline"]()
        elif "PIPELINE" in globals_dict:
            result = globals_dict["PIPELINE"]
        else:
            result = None
        if not isinstance(result, Pipeline):
            raise TypeError(
                "Pipeline file must define pipeline() -> Pipeline or PIPELINE = Pipeline. "
                "Build one with flowci.dsl.pipeline(...)."
            )
        result.source = str(p)
        validate_pipeline(result)
        return result

    raise ValueError(f"Pipeline must be a .yml, .yaml or .py file, got: {p.name}")

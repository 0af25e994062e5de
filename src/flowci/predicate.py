# predicate.py
from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from .errors import DefinitionError

# ---------------------------------------------------------------------
# Boolean predicate AST used by workflow `when` / `unless` and by
# per-reference parameter guards.
#
#   << pipeline.parameters.release_branch >>           -> ParamRef
#   {not: << pipeline.parameters.release_branch >>}    -> Not
#   {and: [...]} / {or: [...]}                         -> And / Or
#   {equal: [main, << pipeline.git.branch >>]}         -> Equal
#
# Values are evaluated against an immutable mapping; the pipeline's
# git facts are exposed under the "pipeline.git.*" names.
# ---------------------------------------------------------------------

_PARAM_RE = re.compile(r"^\s*<<\s*pipeline\.parameters\.([A-Za-z_][\w-]*)\s*>>\s*$")
_GIT_RE = re.compile(r"^\s*<<\s*pipeline\.git\.(branch|revision)\s*>>\s*$")

GIT_BRANCH = "pipeline.git.branch"
GIT_REVISION = "pipeline.git.revision"


class Predicate:
    def evaluate(self, values: Mapping[str, Any]) -> bool:
        return truthy(self.value(values))

    def value(self, values: Mapping[str, Any]) -> Any:
        raise NotImplementedError

    def parameters(self) -> Set[str]:
        return set()


@dataclass(frozen=True)
class Literal(Predicate):
    raw: Any

    def value(self, values: Mapping[str, Any]) -> Any:
        return self.raw


@dataclass(frozen=True)
class ParamRef(Predicate):
    name: str

    def value(self, values: Mapping[str, Any]) -> Any:
        return values.get(self.name)

    def parameters(self) -> Set[str]:
        if self.name.startswith("pipeline."):
            return set()
        return {self.name}


@dataclass(frozen=True)
class Not(Predicate):
    operand: Predicate

    def value(self, values: Mapping[str, Any]) -> Any:
        return not self.operand.evaluate(values)

    def parameters(self) -> Set[str]:
        return self.operand.parameters()


@dataclass(frozen=True)
class And(Predicate):
    operands: Tuple[Predicate, ...]

    def value(self, values: Mapping[str, Any]) -> Any:
        return all(p.evaluate(values) for p in self.operands)

    def parameters(self) -> Set[str]:
        return set().union(*(p.parameters() for p in self.operands))


@dataclass(frozen=True)
class Or(Predicate):
    operands: Tuple[Predicate, ...]

    def value(self, values: Mapping[str, Any]) -> Any:
        return any(p.evaluate(values) for p in self.operands)

    def parameters(self) -> Set[str]:
        return set().union(*(p.parameters() for p in self.operands))


@dataclass(frozen=True)
class Equal(Predicate):
    operands: Tuple[Predicate, ...]

    def value(self, values: Mapping[str, Any]) -> Any:
        vals = [p.value(values) for p in self.operands]
        return all(v == vals[0] for v in vals[1:])

    def parameters(self) -> Set[str]:
        return set().union(*(p.parameters() for p in self.operands))


def truthy(value: Any) -> bool:
    # Empty strings and missing values are false, like the hosted platform.
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    return bool(value)


def parse_predicate(raw: Any, *, location: str = "when") -> Predicate:
    """Parse the description form of a predicate into the AST."""
    if isinstance(raw, Predicate):
        return raw

    if isinstance(raw, str):
        m = _PARAM_RE.match(raw)
        if m:
            return ParamRef(m.group(1))
        m = _GIT_RE.match(raw)
        if m:
            return ParamRef(f"pipeline.git.{m.group(1)}")
        if "<<" in raw:
            raise DefinitionError(location, f"Unsupported expression: {raw!r}")
        return Literal(raw)

    if raw is None or isinstance(raw, (bool, int, float)):
        return Literal(raw)

    if isinstance(raw, dict):
        if len(raw) != 1:
            raise DefinitionError(
                location,
                f"A condition must have exactly one operator, got: {sorted(raw)}",
            )
        op, arg = next(iter(raw.items()))
        if op == "not":
            return Not(parse_predicate(arg, location=f"{location}.not"))
        if op in ("and", "or", "equal"):
            if not isinstance(arg, list) or not arg:
                raise DefinitionError(f"{location}.{op}", f"'{op}' expects a non-empty list")
            operands = tuple(
                parse_predicate(a, location=f"{location}.{op}[{i}]") for i, a in enumerate(arg)
            )
            if op == "and":
                return And(operands)
            if op == "or":
                return Or(operands)
            if len(operands) < 2:
                raise DefinitionError(f"{location}.equal", "'equal' expects at least two values")
            return Equal(operands)
        raise DefinitionError(location, f"Unknown condition operator: {op!r}")

    raise DefinitionError(location, f"Unsupported condition: {raw!r}")


# ---------------------------------------------------------------------
# Exhaustiveness / overlap check for mutually exclusive workflows
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ExclusivityReport:
    exhaustive: bool
    overlapping: bool
    uncovered: List[Dict[str, Any]]
    overlaps: List[Dict[str, Any]]

    @property
    def ok(self) -> bool:
        return self.exhaustive and not self.overlapping


def _literals_for(name: str, predicates: Iterable[Predicate]) -> List[Any]:
    out: List[Any] = []

    def walk(p: Predicate) -> None:
        if isinstance(p, Equal):
            if any(isinstance(o, ParamRef) and o.name == name for o in p.operands):
                for o in p.operands:
                    if isinstance(o, Literal) and o.raw not in out:
                        out.append(o.raw)
        for child in getattr(p, "operands", ()) or ():
            walk(child)
        if isinstance(p, Not):
            walk(p.operand)

    for pred in predicates:
        walk(pred)
    return out


def check_exclusive(
    predicates: Mapping[str, Predicate],
    parameter_types: Mapping[str, str],
) -> ExclusivityReport:
    """
    Enumerate every assignment of the parameters the predicates reference and
    check that exactly one predicate holds for each.

    Boolean parameters range over {True, False}. String parameters range over
    the literals they are compared against plus one value matching none.
    """
    preds = list(predicates.values())
    names = sorted(set().union(*(p.parameters() for p in preds))) if preds else []

    domains: List[Sequence[Any]] = []
    for name in names:
        if parameter_types.get(name) == "boolean":
            domains.append((True, False))
        else:
            domains.append(tuple(_literals_for(name, preds)) + ("\0unmatched",))

    uncovered: List[Dict[str, Any]] = []
    overlaps: List[Dict[str, Any]] = []
    for combo in itertools.product(*domains):
        values = dict(zip(names, combo))
        matched = [wf for wf, p in predicates.items() if p.evaluate(values)]
        if not matched:
            uncovered.append(values)
        elif len(matched) > 1:
            overlaps.append({**values, "_workflows": matched})

    return ExclusivityReport(
        exhaustive=not uncovered,
        overlapping=bool(overlaps),
        uncovered=uncovered,
        overlaps=overlaps,
    )

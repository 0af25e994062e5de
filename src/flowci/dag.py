# dag.py
from __future__ import annotations

import heapq
from typing import Dict, List, Sequence, Set, Tuple

from .errors import DefinitionError
from .model import JobRef


def build_dag(
    refs: Sequence[JobRef],
    *,
    location: str = "workflow",
) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from a workflow's job references.

    Requires:
      - ref.name: str (unique within the workflow)
      - ref.requires: names of refs that must reach a terminal state BEFORE this one
    """
    names = [r.name for r in refs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DefinitionError(location, f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for ref in refs:
        for dep in ref.requires:
            if dep not in name_set:
                raise DefinitionError(
                    f"{location}.jobs.{ref.name}",
                    f"Job '{ref.name}' requires missing job '{dep}'. Known jobs: {sorted(name_set)}",
                )
            # Edge dep -> ref.name (dep must finish before ref)
            if ref.name not in adj[dep]:
                adj[dep].add(ref.name)
                indeg[ref.name] += 1

    return adj, indeg


def topo_order(
    refs: Sequence[JobRef],
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    *,
    location: str = "workflow",
) -> List[str]:
    """
    Kahn's algorithm. Among refs whose dependencies are all placed, the one
    declared first goes first, so the order is reproducible run to run.
    """
    position = {r.name: i for i, r in enumerate(refs)}
    indeg = dict(indeg)  # copy (we mutate it)
    heap = [(position[n], n) for n, d in indeg.items() if d == 0]
    heapq.heapify(heap)

    order: List[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for child in adj.get(node, set()):
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, (position[child], child))

    if len(order) != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise DefinitionError(location, f"Job dependencies contain a cycle. Stuck jobs: {remaining}")

    return order


def ancestors(refs: Sequence[JobRef], name: str) -> Set[str]:
    """All refs reachable backwards from `name` through `requires`."""
    by_name = {r.name: r for r in refs}
    seen: Set[str] = set()
    stack = list(by_name[name].requires)
    while stack:
        n = stack.pop()
        if n in seen or n not in by_name:
            continue
        seen.add(n)
        stack.extend(by_name[n].requires)
    return seen


def workflow_order(refs: Sequence[JobRef], *, location: str = "workflow") -> List[str]:
    adj, indeg = build_dag(refs, location=location)
    return topo_order(refs, adj, indeg, location=location)

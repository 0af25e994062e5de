# scheduler.py
from __future__ import annotations

import heapq
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .dag import build_dag
from .executor import JobExecutor
from .model import (
    FAILED,
    REASON_BRANCH_FILTER,
    REASON_CANCELLED,
    REASON_INTERNAL,
    REASON_PARAMETER_GUARD,
    REASON_UNMET_DEPENDENCY,
    SKIPPED,
    SUCCESS,
    Job,
    JobRef,
    JobRunResult,
    Pipeline,
    TriggerContext,
    Workflow,
)
from .params import predicate_values
from .ui.console import EventSink, get_console


# ----------------------------------------------------------------------
# Branch filters
# ----------------------------------------------------------------------

def branch_matches(branch: str, pattern: str) -> bool:
    """`/regex/` must match the whole branch name; anything else is a glob."""
    if len(pattern) > 1 and pattern.startswith("/") and pattern.endswith("/"):
        return re.fullmatch(pattern[1:-1], branch) is not None
    return fnmatchcase(branch, pattern)


def branch_allowed(ref: JobRef, branch: str) -> bool:
    if ref.branches_only is not None and not any(branch_matches(branch, p) for p in ref.branches_only):
        return False
    if ref.branches_ignore and any(branch_matches(branch, p) for p in ref.branches_ignore):
        return False
    return True


# ----------------------------------------------------------------------
# Graph across every eligible workflow of one invocation
# ----------------------------------------------------------------------

@dataclass
class _Node:
    key: str  # "<workflow>/<run name>"
    position: int
    workflow: Workflow
    ref: JobRef
    job: Job
    pending: int = 0
    dependents: Set[str] = field(default_factory=set)


def _build_graph(pipeline: Pipeline, workflows: Sequence[Workflow]) -> Dict[str, _Node]:
    nodes: Dict[str, _Node] = {}
    position = 0
    for wf in workflows:
        adj, indeg = build_dag(wf.jobs, location=f"workflows.{wf.name}")
        for ref in wf.jobs:
            key = f"{wf.name}/{ref.name}"
            nodes[key] = _Node(
                key=key,
                position=position,
                workflow=wf,
                ref=ref,
                job=pipeline.jobs[ref.job],
                pending=indeg[ref.name],
                dependents={f"{wf.name}/{d}" for d in adj[ref.name]},
            )
            position += 1
    return nodes


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler:
    """
    Dispatches the job runs of all eligible workflows of one invocation.

    A job run becomes ready once every job run it requires is terminal
    (success, failed or skipped). Ready runs go out in declaration order,
    at most `max_concurrency` at a time across all workflows.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        executor: JobExecutor,
        *,
        max_concurrency: int,
        sink: Optional[EventSink] = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.pipeline = pipeline
        self.executor = executor
        self.max_concurrency = max_concurrency
        self.sink = sink if sink is not None else get_console()

    def _skip_reason(
        self,
        node: _Node,
        *,
        results: Mapping[str, JobRunResult],
        trigger: TriggerContext,
        values: Mapping[str, Any],
        cancel: threading.Event,
    ) -> Optional[str]:
        if cancel.is_set():
            return REASON_CANCELLED
        if not branch_allowed(node.ref, trigger.branch):
            return REASON_BRANCH_FILTER
        if node.ref.when is not None and not node.ref.when.evaluate(values):
            return REASON_PARAMETER_GUARD
        if node.job.attaches_workspace:
            producer = self.pipeline.workspace_producer(node.workflow)
            produced = results.get(f"{node.workflow.name}/{producer}")
            if produced is None or produced.status != SUCCESS:
                return REASON_UNMET_DEPENDENCY
        return None

    def run(
        self,
        *,
        invocation_id: str,
        workflows: Sequence[Workflow],
        trigger: TriggerContext,
        params: Mapping[str, Any],
        cancel: threading.Event,
        on_result: Optional[Callable[[JobRunResult], None]] = None,
    ) -> Tuple[List[JobRunResult], Dict[str, str], List[str]]:
        """
        Returns (job run results in completion order, workflow statuses,
        job run keys in the order they were started or skipped).
        """
        nodes = _build_graph(self.pipeline, workflows)
        values = predicate_values(params, trigger)

        ready: List[Tuple[int, str]] = [(n.position, k) for k, n in nodes.items() if n.pending == 0]
        heapq.heapify(ready)

        results: Dict[str, JobRunResult] = {}
        finished: List[JobRunResult] = []
        order: List[str] = []
        in_flight: Dict[Future, str] = {}

        def settle(key: str, result: JobRunResult) -> None:
            results[key] = result
            finished.append(result)
            if on_result is not None:
                on_result(result)
            # unlock dependents whatever the outcome
            for nxt in sorted(nodes[key].dependents):
                nodes[nxt].pending -= 1
                if nodes[nxt].pending == 0:
                    heapq.heappush(ready, (nodes[nxt].position, nxt))

        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="flowci-job") as pool:
            while ready or in_flight:
                # schedule everything currently ready, skips don't take a slot
                while ready and len(in_flight) < self.max_concurrency:
                    _, key = heapq.heappop(ready)
                    node = nodes[key]
                    order.append(key)

                    reason = self._skip_reason(
                        node, results=results, trigger=trigger, values=values, cancel=cancel
                    )
                    if reason is not None:
                        now = _now()
                        skipped = JobRunResult(
                            workflow=node.workflow.name,
                            name=node.ref.name,
                            job=node.job.name,
                            status=SKIPPED,
                            reason=reason,
                            started_at=now,
                            finished_at=now,
                        )
                        self.sink.job_status(key, SKIPPED, reason)
                        settle(key, skipped)
                        continue

                    fut = pool.submit(
                        self.executor.run,
                        invocation_id=invocation_id,
                        workflow=node.workflow.name,
                        ref=node.ref,
                        job=node.job,
                        trigger=trigger,
                        params=params,
                        cancel=cancel,
                    )
                    in_flight[fut] = key

                if not in_flight:
                    continue

                # wait for one completion, then loop to schedule newly-ready runs
                fut = next(as_completed(list(in_flight.keys())))
                key = in_flight.pop(fut)
                node = nodes[key]

                try:
                    result = fut.result()
                except Exception as e:  # noqa: BLE001
                    result = JobRunResult(
                        workflow=node.workflow.name,
                        name=node.ref.name,
                        job=node.job.name,
                        status=FAILED,
                        reason=REASON_INTERNAL,
                        detail=f"{type(e).__name__}: {e}",
                        finished_at=_now(),
                    )
                    self.sink.job_status(key, FAILED, REASON_INTERNAL)
                settle(key, result)

        return finished, workflow_statuses(workflows, results), order


def workflow_statuses(workflows: Sequence[Workflow], results: Mapping[str, JobRunResult]) -> Dict[str, str]:
    """A workflow fails if any of its job runs failed; skips don't count."""
    statuses: Dict[str, str] = {}
    for wf in workflows:
        runs = [results.get(f"{wf.name}/{r.name}") for r in wf.jobs]
        statuses[wf.name] = FAILED if any(r is not None and r.status == FAILED for r in runs) else SUCCESS
    return statuses


def plan(
    pipeline: Pipeline,
    workflows: Sequence[Workflow],
    trigger: TriggerContext,
    params: Mapping[str, Any],
) -> List[Tuple[str, Optional[str]]]:
    """
    Dry run: job run keys in dispatch order with a static skip reason
    (branch filter / parameter guard), or None when the run would start.
    Uses one slot, so this is the order a max_concurrency=1 run follows.
    """
    nodes = _build_graph(pipeline, workflows)
    values = predicate_values(params, trigger)
    ready: List[Tuple[int, str]] = [(n.position, k) for k, n in nodes.items() if n.pending == 0]
    heapq.heapify(ready)

    out: List[Tuple[str, Optional[str]]] = []
    while ready:
        _, key = heapq.heappop(ready)
        node = nodes[key]
        reason: Optional[str] = None
        if not branch_allowed(node.ref, trigger.branch):
            reason = REASON_BRANCH_FILTER
        elif node.ref.when is not None and not node.ref.when.evaluate(values):
            reason = REASON_PARAMETER_GUARD
        out.append((key, reason))
        for nxt in sorted(node.dependents):
            nodes[nxt].pending -= 1
            if nodes[nxt].pending == 0:
                heapq.heappush(ready, (nodes[nxt].position, nxt))
    return out

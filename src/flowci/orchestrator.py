# orchestrator.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .backends import Backend, make_backend
from .errors import StorageError
from .executor import JobExecutor
from .model import FAILED, SUCCESS, InvocationReport, JobRunResult, Pipeline, TriggerContext, Workflow
from .params import eligible_workflows, resolve_parameters
from .scheduler import Scheduler, plan
from .settings import Settings
from .storage import BlobStore, FileBlobStore
from .ui.console import EventSink, get_console
from .workspace import ArtifactStore, WorkspaceManager

RUNNING = "running"


@dataclass
class _Invocation:
    report: InvocationReport
    workflows: List[Workflow]
    params: Dict[str, Any]
    cancel: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None


class Orchestrator:
    """
    Turns triggers into invocations of one pipeline.

    trigger() resolves parameters and picks the eligible workflows up front
    (so bad overrides fail before anything runs), then hands the invocation
    to a background thread. wait()/report()/cancel() address it by id.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        settings: Optional[Settings] = None,
        *,
        backend: Optional[Backend] = None,
        store: Optional[BlobStore] = None,
        sink: Optional[EventSink] = None,
    ):
        self.pipeline = pipeline
        self.settings = settings if settings is not None else Settings.from_env()
        self.backend = backend if backend is not None else make_backend(
            self.settings.backend,
            machine_slots=self.settings.machine_slots,
            grace=self.settings.cancel_grace,
        )
        self.store = store if store is not None else FileBlobStore(self.settings.storage_root)
        self.sink = sink if sink is not None else get_console()

        self.workspaces = WorkspaceManager(self.store)
        self.artifacts = ArtifactStore(self.store)
        self.executor = JobExecutor(self.backend, self.workspaces, self.artifacts, self.settings, self.sink)
        self.scheduler = Scheduler(
            pipeline,
            self.executor,
            max_concurrency=self.settings.max_concurrency,
            sink=self.sink,
        )

        self._invocations: Dict[str, _Invocation] = {}
        self._lock = threading.Lock()

    # -----------------------------------------------------------------
    # Trigger / lifecycle
    # -----------------------------------------------------------------

    def resolve(self, context: TriggerContext, *, coerce: bool = False) -> Tuple[Dict[str, Any], List[Workflow]]:
        """Resolved parameter values and eligible workflows for a trigger."""
        params = resolve_parameters(self.pipeline.parameters, context.parameters, coerce=coerce)
        return params, eligible_workflows(self.pipeline, params, context)

    def trigger(
        self,
        context: TriggerContext,
        *,
        coerce: bool = False,
        invocation_id: Optional[str] = None,
    ) -> str:
        """
        Start an invocation and return its id immediately.

        Raises TriggerError (nothing is started) for undeclared or mistyped
        parameter overrides.
        """
        params, workflows = self.resolve(context, coerce=coerce)
        invocation_id = invocation_id or uuid.uuid4().hex

        with self._lock:
            if invocation_id in self._invocations:
                raise ValueError(f"Invocation already exists: {invocation_id}")
            report = InvocationReport(
                invocation_id=invocation_id,
                status=RUNNING,
                trigger=replace(context, parameters=dict(params)),
                workflows={wf.name: RUNNING for wf in workflows},
            )
            inv = _Invocation(report=report, workflows=workflows, params=params)
            self._invocations[invocation_id] = inv

        inv.thread = threading.Thread(
            target=self._execute,
            args=(inv,),
            name=f"flowci-invocation-{invocation_id[:8]}",
            daemon=True,
        )
        inv.thread.start()
        return invocation_id

    def _record(self, inv: _Invocation, result: JobRunResult) -> None:
        with self._lock:
            inv.report.job_runs.append(result)

    def _execute(self, inv: _Invocation) -> None:
        report = inv.report
        try:
            _results, statuses, order = self.scheduler.run(
                invocation_id=report.invocation_id,
                workflows=inv.workflows,
                trigger=report.trigger,
                params=inv.params,
                cancel=inv.cancel,
                on_result=lambda r: self._record(inv, r),
            )
            with self._lock:
                report.workflows = statuses
                report.order = order
                report.status = FAILED if FAILED in statuses.values() else SUCCESS
        except Exception as e:  # noqa: BLE001
            with self._lock:
                report.status = FAILED
                report.error = f"{type(e).__name__}: {e}"
            get_console().print_debug(f"invocation {report.invocation_id} crashed: {report.error}")
        finally:
            try:
                self.workspaces.discard(report.invocation_id)
            except StorageError as e:
                get_console().print_debug(f"could not discard workspaces: {e.message}")
            inv.done.set()

    def _get(self, invocation_id: str) -> _Invocation:
        with self._lock:
            inv = self._invocations.get(invocation_id)
        if inv is None:
            raise KeyError(f"Unknown invocation: {invocation_id}")
        return inv

    def wait(self, invocation_id: str, timeout: Optional[float] = None) -> InvocationReport:
        inv = self._get(invocation_id)
        if not inv.done.wait(timeout):
            raise TimeoutError(f"Invocation {invocation_id} still running after {timeout}s")
        return self.report(invocation_id)

    def report(self, invocation_id: str) -> InvocationReport:
        """Snapshot of the invocation; safe to call while it is running."""
        inv = self._get(invocation_id)
        with self._lock:
            r = inv.report
            return replace(r, workflows=dict(r.workflows), job_runs=list(r.job_runs), order=list(r.order))

    def cancel(self, invocation_id: str) -> None:
        """Stop dispatching; running job runs are signalled and torn down."""
        self._get(invocation_id).cancel.set()

    def run(self, context: TriggerContext, *, coerce: bool = False) -> InvocationReport:
        """Trigger and block until the invocation is finished."""
        return self.wait(self.trigger(context, coerce=coerce))

    # -----------------------------------------------------------------
    # Dry run / artifacts
    # -----------------------------------------------------------------

    def plan(self, context: TriggerContext, *, coerce: bool = False) -> Tuple[List[Workflow], List[Tuple[str, Optional[str]]]]:
        params, workflows = self.resolve(context, coerce=coerce)
        trigger = replace(context, parameters=dict(params))
        return workflows, plan(self.pipeline, workflows, trigger, params)

    def list_artifacts(self, invocation_id: str, job_run: Optional[str] = None) -> List[str]:
        return self.artifacts.list(invocation_id, job_run)

    def get_artifact(self, invocation_id: str, job_run: str, name: str) -> bytes:
        return self.artifacts.get(invocation_id, job_run, name)

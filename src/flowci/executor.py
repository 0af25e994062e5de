# executor.py
from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from . import archive
from .backends import Backend, Environment, ExecResult, resource_class
from .errors import ArtifactError, ProvisioningError, StepFailure, WorkspaceError
from .loader import interpolate_pipeline
from .model import (
    FAILED,
    REASON_ARTIFACT,
    REASON_CANCELLED,
    REASON_EXIT_CODE,
    REASON_INTERNAL,
    REASON_JOB_TIMEOUT,
    REASON_PROVISIONING,
    REASON_STALLED,
    REASON_TIMEOUT,
    REASON_WORKSPACE,
    SUCCESS,
    AttachWorkspaceStep,
    CheckoutStep,
    Job,
    JobRef,
    JobRunResult,
    PersistWorkspaceStep,
    RunStep,
    StepResult,
    StoreArtifactStep,
    TriggerContext,
)
from .params import predicate_values
from .settings import Settings
from .ui.console import EventSink, get_console
from .workspace import ArtifactStore, WorkspaceManager


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _JobAbort(Exception):
    """Ends a job run early with a reason; never escapes this module."""

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail


def builtin_environment(
    *,
    invocation_id: str,
    workflow: str,
    run_name: str,
    trigger: TriggerContext,
) -> Dict[str, str]:
    return {
        "CI": "true",
        "FLOWCI": "true",
        "FLOWCI_BRANCH": trigger.branch,
        "FLOWCI_SHA1": trigger.commit,
        "FLOWCI_JOB": run_name,
        "FLOWCI_WORKFLOW": workflow,
        "FLOWCI_PIPELINE_ID": invocation_id,
    }


class JobExecutor:
    """
    Runs one job run: provision an environment, run the steps strictly in
    order (first failure stops), always tear the environment down.
    """

    def __init__(
        self,
        backend: Backend,
        workspaces: WorkspaceManager,
        artifacts: ArtifactStore,
        settings: Settings,
        sink: Optional[EventSink] = None,
    ):
        self.backend = backend
        self.workspaces = workspaces
        self.artifacts = artifacts
        self.settings = settings
        self.sink = sink if sink is not None else get_console()

    # -----------------------------------------------------------------
    # Provisioning
    # -----------------------------------------------------------------

    def provision(self, job: Job, run_key: str, cancel: threading.Event) -> Environment:
        rc = resource_class(job.executor.resource_class)
        attempts = self.settings.provision_retries + 1
        last: Optional[ProvisioningError] = None

        for attempt in range(attempts):
            if cancel.is_set():
                raise _JobAbort(REASON_CANCELLED, "cancelled before an environment was available")
            try:
                return self.backend.create(job.executor, rc)
            except ProvisioningError as e:
                last = e
                if attempt + 1 < attempts:
                    delay = self.settings.provision_backoff * (2 ** attempt)
                    self.sink.step_output(
                        run_key,
                        "Spin up environment",
                        f"provisioning failed ({e.message}); retrying in {delay:.1f}s "
                        f"[{attempt + 1}/{attempts - 1}]",
                    )
                    # returns early on cancel; checked at the top of the loop
                    cancel.wait(delay)

        assert last is not None
        raise _JobAbort(REASON_PROVISIONING, f"{last.message} after {attempts} attempt(s)")

    # -----------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------

    def _run_command(
        self,
        env: Environment,
        step: RunStep,
        *,
        run_key: str,
        variables: Mapping[str, str],
        values: Mapping[str, Any],
        deadline: float,
        cancel: threading.Event,
    ) -> Tuple[StepResult, str]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise _JobAbort(REASON_JOB_TIMEOUT, f"job exceeded {self.settings.job_timeout:.0f}s")

        job_bound = step.timeout is None or step.timeout > remaining
        timeout = remaining if job_bound else step.timeout
        quiet = step.no_output_timeout
        if quiet is None and self.settings.quiet_period > 0:
            quiet = self.settings.quiet_period

        started = time.monotonic()
        res: ExecResult = env.exec(
            interpolate_pipeline(step.command, values),
            env=variables,
            cwd=step.working_directory,
            on_output=lambda line: self.sink.step_output(run_key, step.name, line),
            timeout=timeout,
            quiet_timeout=quiet,
            cancel=cancel,
        )
        duration = time.monotonic() - started

        if res.ok:
            return StepResult(step.name, SUCCESS, exit_code=0, duration=duration), ""

        if res.reason == "cancelled":
            raise _JobAbort(REASON_CANCELLED, f"cancelled during step '{step.name}'")
        if res.reason == "timeout":
            reason = REASON_JOB_TIMEOUT if job_bound else REASON_TIMEOUT
            detail = f"step '{step.name}' exceeded {timeout:.0f}s"
        elif res.reason == "stalled":
            reason = REASON_STALLED
            detail = f"step '{step.name}' produced no output for {quiet:.0f}s"
        else:
            reason = REASON_EXIT_CODE
            detail = f"step '{step.name}' failed (exit={res.exit_code}): {step.command.strip().splitlines()[0]}"

        return StepResult(step.name, FAILED, exit_code=res.exit_code, reason=reason, duration=duration), detail

    def _checkout(self, env: Environment, step: CheckoutStep, trigger: TriggerContext, run_key: str) -> None:
        if not trigger.source_dir:
            self.sink.step_output(run_key, step.name, "no source tree for this trigger; nothing to check out")
            return
        data = archive.pack(trigger.source_dir, ["."], excludes=archive.DEFAULT_EXCLUDES)
        env.put_archive(data, step.path or ".")

    # -----------------------------------------------------------------
    # Job run
    # -----------------------------------------------------------------

    def run(
        self,
        *,
        invocation_id: str,
        workflow: str,
        ref: JobRef,
        job: Job,
        trigger: TriggerContext,
        params: Mapping[str, Any],
        cancel: threading.Event,
    ) -> JobRunResult:
        result = JobRunResult(workflow=workflow, name=ref.name, job=job.name, status=FAILED)
        run_key = result.key
        result.started_at = _now()
        self.sink.job_status(run_key, "running")

        deadline = time.monotonic() + self.settings.job_timeout
        variables = dict(job.environment)
        variables.update(
            builtin_environment(
                invocation_id=invocation_id,
                workflow=workflow,
                run_name=ref.name,
                trigger=trigger,
            )
        )
        values = predicate_values(params, trigger)
        values["pipeline.id"] = invocation_id

        env: Optional[Environment] = None
        try:
            self.sink.step_started(run_key, "Spin up environment")
            env = self.provision(job, run_key, cancel)

            for step in job.steps:
                if cancel.is_set():
                    raise _JobAbort(REASON_CANCELLED, f"cancelled before step '{step.name}'")
                self.sink.step_started(run_key, step.name)
                started = time.monotonic()

                if isinstance(step, RunStep):
                    step_result, detail = self._run_command(
                        env,
                        step,
                        run_key=run_key,
                        variables=variables,
                        values=values,
                        deadline=deadline,
                        cancel=cancel,
                    )
                    result.steps.append(step_result)
                    if step_result.status == FAILED:
                        if step.allow_failure:
                            self.sink.step_output(run_key, step.name, f"{detail} (allowed to fail)")
                            continue
                        raise StepFailure(
                            job=run_key,
                            step=step.name,
                            cmd=step.command,
                            exit_code=step_result.exit_code,
                            reason=step_result.reason,
                            message=detail,
                        )
                    continue

                try:
                    if isinstance(step, CheckoutStep):
                        self._checkout(env, step, trigger, run_key)
                    elif isinstance(step, AttachWorkspaceStep):
                        names = self.workspaces.attach(
                            env, invocation_id=invocation_id, workflow=workflow, at=step.at
                        )
                        self.sink.step_output(run_key, step.name, f"restored {len(names)} path(s) at {step.at}")
                    elif isinstance(step, PersistWorkspaceStep):
                        self.workspaces.persist(
                            env,
                            invocation_id=invocation_id,
                            workflow=workflow,
                            root=step.root,
                            paths=step.paths,
                        )
                        self.sink.step_output(run_key, step.name, f"persisted {list(step.paths)} from {step.root}")
                    elif isinstance(step, StoreArtifactStep):
                        stored = self.artifacts.store_path(
                            env,
                            invocation_id=invocation_id,
                            job_run=run_key,
                            path=step.path,
                            destination=step.destination,
                        )
                        result.artifacts.extend(stored)
                        for a in stored:
                            self.sink.step_output(run_key, step.name, f"uploaded {a.name} ({a.size} bytes)")
                    else:
                        raise TypeError(f"Unknown step type: {type(step).__name__}")
                except WorkspaceError as e:
                    result.steps.append(StepResult(step.name, FAILED, reason=REASON_WORKSPACE))
                    raise _JobAbort(REASON_WORKSPACE, e.message) from e
                except ArtifactError as e:
                    result.steps.append(StepResult(step.name, FAILED, reason=REASON_ARTIFACT))
                    raise _JobAbort(REASON_ARTIFACT, e.message) from e
                except OSError as e:
                    result.steps.append(StepResult(step.name, FAILED, reason=REASON_INTERNAL))
                    raise _JobAbort(REASON_INTERNAL, f"step '{step.name}': {e}") from e

                result.steps.append(StepResult(step.name, SUCCESS, duration=time.monotonic() - started))

            result.status = SUCCESS

        except StepFailure as e:
            result.reason = e.reason
            result.detail = e.message
        except _JobAbort as e:
            result.reason = e.reason
            result.detail = e.detail
        except Exception as e:  # noqa: BLE001
            result.reason = REASON_INTERNAL
            result.detail = f"{type(e).__name__}: {e}"
            get_console().print_debug(f"{run_key} crashed: {result.detail}")
        finally:
            if env is not None:
                try:
                    env.destroy()
                except Exception as e:  # noqa: BLE001
                    get_console().print_debug(f"{run_key}: teardown failed: {e}")
            result.finished_at = _now()

        self.sink.job_status(run_key, result.status, result.reason)
        return result


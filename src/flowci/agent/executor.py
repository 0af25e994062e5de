# agent/executor.py
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from flowci.errors import CIError
from flowci.loader import parse_pipeline, parse_yaml
from flowci.model import FAILED, TriggerContext
from flowci.orchestrator import Orchestrator
from flowci.settings import Settings
from flowci.ui.console import CaptureSink, get_console

from .models import ExecutionResult, Lease


def _git(args: list[str], cwd: Optional[Path] = None) -> None:
    result = subprocess.run(["git", *args], cwd=cwd, check=False, capture_output=True, text=True)
    if result.returncode != 0:
        raise RuntimeError(f"git {args[0]} failed: {result.stderr.strip()}")


def _clone_or_update_repo(repo_url: str, ref: str, work_dir: Path) -> Path:
    """
    Clone or update a repository and check out `ref`.

    Raises:
        RuntimeError: If git operations fail
    """
    work_dir.mkdir(parents=True, exist_ok=True)

    # last URL segment names the checkout directory
    repo_name = repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    repo_path = work_dir / repo_name

    try:
        if repo_path.exists():
            _git(["fetch", "origin"], cwd=repo_path)
        else:
            _git(["clone", repo_url, str(repo_path)])
        _git(["checkout", ref], cwd=repo_path)
    except FileNotFoundError:
        raise RuntimeError("git command not found. Please install Git.") from None

    return repo_path


def execute_lease(
    lease: Lease,
    work_dir: Path,
    settings: Optional[Settings] = None,
) -> ExecutionResult:
    """
    Run a leased invocation to completion on this host.

    Output is echoed to the console and captured per job run so it can be
    shipped with the completion call.
    """
    capture = CaptureSink(forward=get_console())

    try:
        source_dir = None
        if lease.repo_url:
            source_dir = str(_clone_or_update_repo(lease.repo_url, lease.ref, work_dir))

        pipeline = parse_pipeline(parse_yaml(lease.pipeline, source="<lease>"), source=lease.invocation_id)
        orchestrator = Orchestrator(pipeline, settings, sink=capture)
        context = TriggerContext(
            branch=lease.branch,
            commit=lease.commit,
            parameters=lease.parameters,
            source_dir=source_dir,
        )
        report = orchestrator.wait(orchestrator.trigger(context, invocation_id=lease.invocation_id))
    except (CIError, RuntimeError, OSError) as e:
        return ExecutionResult(
            status=FAILED,
            logs={key: capture.text(key) for key in capture.logs},
            report={},
            error=str(e),
        )

    return ExecutionResult(
        status=report.status,
        logs={key: capture.text(key) for key in capture.logs},
        report=report.to_dict(),
        error=report.error,
    )

# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path
from typing import Dict, Optional, Tuple

import click

from flowci.errors import ArtifactError, DefinitionError, TriggerError
from flowci.git_facts.git import current_branch, get_remote_url, head_sha, is_dirty, repo_root
from flowci.loader import load_pipeline
from flowci.model import FAILED, Pipeline, TriggerContext
from flowci.orchestrator import Orchestrator
from flowci.params import eligible_workflows, resolve_parameters
from flowci.scheduler import plan as plan_runs
from flowci.settings import Settings
from flowci.ui.console import Console, get_console, set_console
from flowci.validation import check_workflows_exclusive

EXIT_FAILED = 1
EXIT_USAGE = 2

DEFAULT_PIPELINE_FILES = (
    "flowci_pipeline.yml",
    "flowci_pipeline.yaml",
    ".flowci/config.yml",
    "flowci_pipeline.py",
)


def find_pipeline_files() -> list[Path]:
    """Pipeline description files present in the current directory."""
    return [Path(name) for name in DEFAULT_PIPELINE_FILES if Path(name).exists()]


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover the pipeline file from argument or defaults.

    Raises:
        SystemExit: If no pipeline can be found or several candidates exist
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Specify an existing file:\n  flowci run --pipeline flowci_pipeline.yml",
            )
            sys.exit(EXIT_USAGE)
        return path

    found = find_pipeline_files()
    if not found:
        console.print_error(
            "No pipeline file found",
            "Could not find a pipeline description.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_PIPELINE_FILES)],
            suggestion="Create flowci_pipeline.yml or pass --pipeline.",
        )
        sys.exit(EXIT_USAGE)
    if len(found) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Please specify which one to use:",
            details=[f"  {f}" for f in found],
            suggestion=f"flowci run --pipeline {found[0]}",
        )
        sys.exit(EXIT_USAGE)
    return found[0]


def _load(pipeline_arg: str | None) -> Tuple[Path, Pipeline]:
    path = discover_pipeline(pipeline_arg)
    try:
        return path, load_pipeline(path)
    except DefinitionError as e:
        get_console().print_error(
            "Invalid pipeline",
            e.message,
            details=[f"at {e.location}", *(f"{k}={v}" for k, v in e.details.items())],
        )
        sys.exit(EXIT_USAGE)
    except (OSError, TypeError, ValueError) as e:
        get_console().print_error("Failed to load pipeline", f"Could not load {path}", details=[str(e)])
        sys.exit(EXIT_USAGE)


def _parse_params(pairs: Tuple[str, ...]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected NAME=VALUE, got {pair!r}", param_hint="--param")
        k, v = pair.split("=", 1)
        out[k.strip()] = v
    return out


def _git_default(fn, fallback: str) -> str:
    try:
        return fn() or fallback
    except (subprocess.CalledProcessError, FileNotFoundError):
        return fallback


def _trigger_context(branch: Optional[str], commit: Optional[str], params, source: Optional[str]) -> TriggerContext:
    return TriggerContext(
        branch=branch or _git_default(current_branch, "main"),
        commit=commit if commit is not None else _git_default(head_sha, ""),
        parameters=_parse_params(params),
        source_dir=source,
    )


def _settings(**overrides) -> Settings:
    try:
        return Settings.from_env().with_overrides(**overrides)
    except ValueError as e:
        get_console().print_error("Invalid configuration", str(e))
        sys.exit(EXIT_USAGE)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """flowci: workflow/job pipeline orchestrator."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


pipeline_option = click.option(
    "--pipeline",
    "pipeline_arg",
    default=None,
    help="Pipeline description (defaults to flowci_pipeline.yml if present)",
)


@cli.command()
@pipeline_option
@click.option(
    "--exclusive",
    default=None,
    help="Comma-separated workflows that must be mutually exclusive and exhaustive",
)
def validate(pipeline_arg, exclusive):
    """Load and validate a pipeline description."""
    console = get_console()
    path, pipeline = _load(pipeline_arg)
    console.print_info(
        f"{path}: OK ({len(pipeline.jobs)} job(s), {len(pipeline.workflows)} workflow(s), "
        f"{len(pipeline.parameters)} parameter(s))"
    )

    if exclusive:
        names = [n.strip() for n in exclusive.split(",") if n.strip()]
        try:
            report = check_workflows_exclusive(pipeline, names)
        except DefinitionError as e:
            console.print_error("Invalid workflow selection", e.message, details=[f"at {e.location}"])
            sys.exit(EXIT_USAGE)
        if not report.ok:
            details = []
            if report.overlaps:
                details.append(f"several workflows run for: {report.overlaps[0]}")
            if report.uncovered:
                details.append(f"no workflow runs for: {report.uncovered[0]}")
            console.print_error("Workflows are not mutually exclusive", ", ".join(names), details=details)
            sys.exit(EXIT_FAILED)
        console.print_info(f"Exactly one of {names} runs for every parameter value.")


@cli.command()
@pipeline_option
@click.option("--branch", default=None, help="Branch to plan for (defaults to the current git branch)")
@click.option("--param", "params", multiple=True, help="Parameter override NAME=VALUE (repeatable)")
def plan(pipeline_arg, branch, params):
    """Show eligible workflows and job run order without running anything."""
    console = get_console()
    _path, pipeline = _load(pipeline_arg)
    context = _trigger_context(branch, "", params, None)

    try:
        values = resolve_parameters(pipeline.parameters, context.parameters, coerce=True)
        workflows = eligible_workflows(pipeline, values, context)
        planned = plan_runs(pipeline, workflows, context, values)
    except TriggerError as e:
        console.print_error("Invalid trigger", e.message, details=[f"at {e.location}"])
        sys.exit(EXIT_USAGE)

    console.print_header(f"Plan for branch {context.branch}")
    skipped = [wf for wf in pipeline.workflows if wf not in {w.name for w in workflows}]
    for name in skipped:
        console.print_plan_job_skipped(name, "workflow not eligible")
    for key, reason in planned:
        if reason:
            console.print_plan_job_skipped(key, reason)
        else:
            console.print_plan_job(key, "will run")


@cli.command()
@pipeline_option
@click.option("--branch", default=None, help="Trigger branch (defaults to the current git branch)")
@click.option("--commit", default=None, help="Trigger revision (defaults to git HEAD)")
@click.option("--param", "params", multiple=True, help="Parameter override NAME=VALUE (repeatable)")
@click.option("--source", default=None, help="Source tree copied in by checkout steps (defaults to the git repository root)")
@click.option("--workers", default=None, type=int, help="Maximum concurrent job runs")
@click.option("--backend", type=click.Choice(["local", "docker"]), default=None, help="Executor backend")
@click.option("--storage-dir", default=None, help="Workspace/artifact storage directory")
@click.option("--report", "report_path", default=None, help="Write the JSON invocation report here")
@click.option("--quiet", is_flag=True, default=False, help="Do not echo step output")
@click.pass_context
def run(ctx, pipeline_arg, branch, commit, params, source, workers, backend, storage_dir, report_path, quiet):
    """Trigger a pipeline invocation and wait for it."""
    console = get_console()
    console.show_output = not quiet

    path, pipeline = _load(pipeline_arg)
    settings = _settings(max_concurrency=workers, backend=backend, storage_root=storage_dir)

    if source is None:
        try:
            source = str(repo_root())
            if is_dirty():
                console.print_info("Note: the working tree has uncommitted changes; checkout steps will see them.")
        except (subprocess.CalledProcessError, FileNotFoundError):
            source = "."

    try:
        orchestrator = Orchestrator(pipeline, settings)
        context = _trigger_context(branch, commit, params, str(Path(source).resolve()))
        invocation_id = orchestrator.trigger(context, coerce=True)
    except TriggerError as e:
        console.print_error("Invalid trigger", e.message, details=[f"at {e.location}"])
        sys.exit(EXIT_USAGE)
    except OSError as e:
        console.print_error("Could not prepare storage", str(e))
        sys.exit(EXIT_FAILED)

    console.print_run_started(
        invocation_id=invocation_id,
        pipeline=path.name,
        branch=context.branch,
        workflows=list(orchestrator.report(invocation_id).workflows),
    )

    try:
        report = orchestrator.wait(invocation_id)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, cancelling...")
        orchestrator.cancel(invocation_id)
        report = orchestrator.wait(invocation_id)
        console.print_results(report)
        sys.exit(130)

    console.print_results(report)
    if report.error:
        console.print_error("Invocation crashed", report.error)
    console.print_info(f"Artifacts: flowci artifacts list {invocation_id} --storage-dir {settings.storage_root}")

    if report_path:
        Path(report_path).write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")

    if report.status == FAILED:
        sys.exit(EXIT_FAILED)


@cli.group()
def artifacts():
    """Inspect artifacts of finished invocations."""


@artifacts.command("list")
@click.argument("invocation_id")
@click.option("--job", "job_run", default=None, help="Job run key WORKFLOW/NAME")
@click.option("--storage-dir", default=None, help="Workspace/artifact storage directory")
def artifacts_list(invocation_id, job_run, storage_dir):
    """List stored artifacts."""
    from flowci.storage import FileBlobStore
    from flowci.workspace import ArtifactStore

    settings = _settings(storage_root=storage_dir)
    names = ArtifactStore(FileBlobStore(settings.storage_root)).list(invocation_id, job_run)
    console = get_console()
    if not names:
        console.print_info("No artifacts.")
    for name in names:
        console.print_info(name)


@artifacts.command("get")
@click.argument("invocation_id")
@click.argument("job_run")
@click.argument("name")
@click.option("--output", "-o", default=None, help="Write to this file instead of stdout")
@click.option("--storage-dir", default=None, help="Workspace/artifact storage directory")
def artifacts_get(invocation_id, job_run, name, output, storage_dir):
    """Fetch one artifact, byte for byte."""
    from flowci.storage import FileBlobStore
    from flowci.workspace import ArtifactStore

    settings = _settings(storage_root=storage_dir)
    try:
        data = ArtifactStore(FileBlobStore(settings.storage_root)).get(invocation_id, job_run, name)
    except ArtifactError as e:
        get_console().print_error("Artifact not found", e.message, details=[f"job run {job_run}"])
        sys.exit(EXIT_FAILED)

    if output:
        Path(output).write_bytes(data)
    else:
        click.get_binary_stream("stdout").write(data)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option("--agent-id", default=None, help="Unique agent identifier (defaults to hostname)")
@click.option("--poll-interval", default=5, type=int, help="Polling interval in seconds when nothing is queued")
@click.pass_context
def agent(ctx, api, agent_id, poll_interval):
    """Run the agent loop: claim queued invocations and execute them."""
    import socket
    from flowci.agent.agent import run_agent

    console = get_console()
    if not agent_id:
        agent_id = socket.gethostname()

    try:
        run_agent(api, agent_id, poll_interval, _settings())
    except KeyboardInterrupt:
        console.print_info("\nAgent stopped by user")
        sys.exit(0)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@pipeline_option
@click.option("--repo", default=None, help="Repository URL (defaults to git remote origin URL)")
@click.option("--branch", default=None, help="Trigger branch (defaults to the current git branch)")
@click.option("--commit", default=None, help="Trigger revision (defaults to git HEAD)")
@click.option("--param", "params", multiple=True, help="Parameter override NAME=VALUE (repeatable)")
def submit(api, pipeline_arg, repo, branch, commit, params):
    """Queue a pipeline invocation on the control plane."""
    from flowci.agent.api_client import APIClient, APIError

    console = get_console()
    path, pipeline = _load(pipeline_arg)
    if path.suffix not in (".yml", ".yaml"):
        console.print_error(
            "Unsupported pipeline format",
            "Only YAML descriptions can be submitted to the control plane.",
        )
        sys.exit(EXIT_USAGE)

    if not repo:
        try:
            repo = get_remote_url("origin")
            console.print_debug(f"Using repository URL from git remote: {repo}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not get repository URL",
                "No --repo specified and could not get git remote URL.",
                suggestion="Please specify --repo explicitly:\n  flowci submit --api <url> --repo <repo_url>",
            )
            sys.exit(EXIT_USAGE)

    context = _trigger_context(branch, commit, params, None)
    try:
        # fail fast on bad overrides before anything is queued
        resolve_parameters(pipeline.parameters, context.parameters, coerce=True)
    except TriggerError as e:
        console.print_error("Invalid trigger", e.message, details=[f"at {e.location}"])
        sys.exit(EXIT_USAGE)

    payload = {
        "repo_url": repo,
        "branch": context.branch,
        "commit": context.commit,
        "parameters": context.parameters,
        "pipeline": path.read_text(encoding="utf-8"),
    }

    client = APIClient(api, agent_id="cli")
    try:
        result = client.submit(payload)
    except APIError as e:
        console.print_error(
            "API request failed",
            str(e),
            suggestion=f"Check the API at {client.base_url} and verify your request.",
        )
        sys.exit(EXIT_FAILED)

    console.print_info(f"\nSuccessfully submitted invocation to {client.base_url}")
    console.print_info(f"  Invocation ID: {result.get('invocation_id')}")
    console.print_info("\nMonitor progress by running agents or checking the API.")


if __name__ == "__main__":
    cli()

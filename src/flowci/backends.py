# backends.py
from __future__ import annotations

import os
import queue
import shutil
import signal
import subprocess
import tempfile
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from . import archive
from .errors import ProvisioningError
from .model import ExecutorSpec

# ---------------------------------------------------------------------
# Resource classes: opaque CPU/memory tiers looked up by name.
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ResourceClass:
    name: str
    cpus: float
    memory_mb: int


RESOURCE_CLASSES: Dict[str, ResourceClass] = {
    rc.name: rc
    for rc in (
        ResourceClass("small", 1, 2048),
        ResourceClass("medium", 2, 4096),
        ResourceClass("medium+", 3, 6144),
        ResourceClass("large", 4, 8192),
        ResourceClass("xlarge", 8, 16384),
        ResourceClass("2xlarge", 16, 32768),
        ResourceClass("2xlarge+", 20, 40960),
    )
}

EXECUTOR_KINDS = ("docker", "machine")

POLL_INTERVAL = 0.05
OUTPUT_TAIL_LINES = 200


def resource_class(name: str) -> ResourceClass:
    try:
        return RESOURCE_CLASSES[name]
    except KeyError:
        raise ProvisioningError(
            "resource_class",
            f"Unknown resource class: {name!r}",
            known=sorted(RESOURCE_CLASSES),
        ) from None


@dataclass
class ExecResult:
    exit_code: Optional[int]
    reason: str = ""     # "" | "timeout" | "stalled" | "cancelled"
    output: str = ""     # last OUTPUT_TAIL_LINES lines

    @property
    def ok(self) -> bool:
        return self.reason == "" and self.exit_code == 0


OutputFn = Callable[[str], None]


# ---------------------------------------------------------------------
# Process supervision
# ---------------------------------------------------------------------

def _signal_group(pid: int, sig: int) -> None:
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def _terminate(proc: subprocess.Popen, grace: float) -> None:
    """SIGTERM the process group, then SIGKILL whatever outlives the grace period."""
    _signal_group(proc.pid, signal.SIGTERM)
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        _signal_group(proc.pid, signal.SIGKILL)
        proc.wait()


def stream_process(
    argv: Sequence[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    on_output: Optional[OutputFn] = None,
    timeout: Optional[float] = None,
    quiet_timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    grace: float = 10.0,
) -> ExecResult:
    """
    Run argv in its own process group, streaming merged stdout/stderr line by
    line to on_output.

    Stops the process with reason:
      - "timeout"   when it runs longer than `timeout`
      - "stalled"   when it prints nothing for `quiet_timeout`
      - "cancelled" when `cancel` is set
    Any process left in the group is killed before returning.
    """
    proc = subprocess.Popen(
        list(argv),
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        start_new_session=True,
    )

    lines: "queue.Queue[Optional[str]]" = queue.Queue()

    def pump() -> None:
        assert proc.stdout is not None
        for raw in iter(proc.stdout.readline, b""):
            lines.put(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        lines.put(None)

    reader = threading.Thread(target=pump, name=f"flowci-pump-{proc.pid}", daemon=True)
    reader.start()

    tail: deque = deque(maxlen=OUTPUT_TAIL_LINES)

    def emit(line: str) -> None:
        tail.append(line)
        if on_output is not None:
            on_output(line)

    started = last_output = time.monotonic()
    reason = ""
    eof = False

    try:
        while True:
            try:
                item = lines.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                item = ""
                idle = True
            else:
                idle = False
                if item is None:
                    eof = True
                else:
                    last_output = time.monotonic()
                    emit(item)
                    continue

            if proc.poll() is not None and (eof or idle):
                break

            now = time.monotonic()
            if cancel is not None and cancel.is_set():
                reason = "cancelled"
            elif timeout is not None and now - started >= timeout:
                reason = "timeout"
            elif quiet_timeout is not None and now - last_output >= quiet_timeout:
                reason = "stalled"

            if reason:
                _terminate(proc, grace)
                break
    finally:
        # release anything the step left running in its group
        _signal_group(proc.pid, signal.SIGKILL)
        if proc.poll() is None:
            proc.wait()
        reader.join(timeout=1.0)
        while True:
            try:
                item = lines.get_nowait()
            except queue.Empty:
                break
            if item is not None:
                emit(item)
        if proc.stdout is not None:
            proc.stdout.close()

    return ExecResult(exit_code=proc.returncode, reason=reason, output="\n".join(tail))


# ---------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------

class Environment:
    """
    An isolated run environment for exactly one job run.

    `workdir` is the default working directory for steps (as seen from
    inside the environment).
    """
    workdir: str
    kind: str

    def exec(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: Optional[str] = None,
        on_output: Optional[OutputFn] = None,
        timeout: Optional[float] = None,
        quiet_timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ExecResult:
        raise NotImplementedError

    def put_archive(self, data: bytes, at: str) -> None:
        raise NotImplementedError

    def get_archive(self, root: str, paths: Sequence[str]) -> bytes:
        raise NotImplementedError

    def destroy(self) -> None:
        raise NotImplementedError


class Backend:
    def create(self, spec: ExecutorSpec, rc: ResourceClass) -> Environment:
        raise NotImplementedError


class LocalEnvironment(Environment):
    """
    Host environment rooted at a private temp directory.

    Relative paths resolve under the project directory, "~" under a private
    HOME; absolute paths are used as-is (machine semantics).
    """

    def __init__(
        self,
        kind: str,
        rc: ResourceClass,
        *,
        grace: float,
        on_destroy: Optional[Callable[[], None]] = None,
    ):
        self.kind = kind
        self.resource_class = rc
        self.grace = grace
        self.root = Path(tempfile.mkdtemp(prefix="flowci-"))
        self.home = self.root / "home"
        self.project = self.home / "project"
        self.project.mkdir(parents=True)
        self.workdir = str(self.project)
        self._on_destroy = on_destroy
        self._destroyed = False

    def resolve(self, path: Optional[str]) -> Path:
        if not path or path == ".":
            return self.project
        if path == "~" or path.startswith("~/"):
            return self.home / path[2:]
        p = Path(path)
        return p if p.is_absolute() else self.project / p

    def exec(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: Optional[str] = None,
        on_output: Optional[OutputFn] = None,
        timeout: Optional[float] = None,
        quiet_timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ExecResult:
        workdir = self.resolve(cwd)
        workdir.mkdir(parents=True, exist_ok=True)

        full_env = os.environ.copy()
        full_env["HOME"] = str(self.home)
        full_env.update(env)

        return stream_process(
            ["/bin/sh", "-ec", command],
            cwd=str(workdir),
            env=full_env,
            on_output=on_output,
            timeout=timeout,
            quiet_timeout=quiet_timeout,
            cancel=cancel,
            grace=self.grace,
        )

    def put_archive(self, data: bytes, at: str) -> None:
        archive.unpack(data, self.resolve(at))

    def get_archive(self, root: str, paths: Sequence[str]) -> bytes:
        root_p = self.resolve(root)
        if not root_p.is_dir():
            raise FileNotFoundError(f"Root directory not found: {root_p}")
        return archive.pack(root_p, paths)

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        try:
            shutil.rmtree(self.root, ignore_errors=True)
        finally:
            if self._on_destroy is not None:
                self._on_destroy()


class LocalBackend(Backend):
    """
    Runs every job on this host in a private directory.

    `machine` executors additionally hold one of `machine_slots` exclusive
    leases for the lifetime of the environment.
    """

    def __init__(self, *, machine_slots: int = 1, grace: float = 10.0, lease_timeout: Optional[float] = None):
        self.grace = grace
        self.lease_timeout = lease_timeout
        self._machines = threading.BoundedSemaphore(machine_slots)

    def create(self, spec: ExecutorSpec, rc: ResourceClass) -> Environment:
        if spec.kind == "machine":
            if not self._machines.acquire(timeout=self.lease_timeout):
                raise ProvisioningError(
                    "executor.machine",
                    "No machine available",
                    resource_class=rc.name,
                )
            try:
                return LocalEnvironment("machine", rc, grace=self.grace, on_destroy=self._machines.release)
            except OSError as e:
                self._machines.release()
                raise ProvisioningError("executor.machine", f"Could not prepare machine: {e}") from e

        try:
            return LocalEnvironment(spec.kind, rc, grace=self.grace)
        except OSError as e:
            raise ProvisioningError(f"executor.{spec.kind}", f"Could not prepare environment: {e}") from e


# ---------------------------------------------------------------------
# Docker
# ---------------------------------------------------------------------

CONTAINER_HOME = "/root"
CONTAINER_WORKDIR = "/root/project"

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
}


def _check_docker_available() -> None:
    """Check if Docker is available, raise helpful error if not."""
    try:
        subprocess.run(
            ["docker", "version", "--format", "{{.Server.Version}}"],
            capture_output=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise ProvisioningError(
            "executor.docker",
            "Docker is not available",
            hint=TOOL_HINTS["docker"],
        ) from None


class DockerEnvironment(Environment):
    kind = "docker"

    def __init__(self, container: str, rc: ResourceClass, *, grace: float):
        self.container = container
        self.resource_class = rc
        self.grace = grace
        self.workdir = CONTAINER_WORKDIR

    def _path(self, path: Optional[str]) -> str:
        if not path or path == ".":
            return CONTAINER_WORKDIR
        if path == "~" or path.startswith("~/"):
            return f"{CONTAINER_HOME}/{path[2:]}".rstrip("/")
        if path.startswith("/"):
            return path
        return f"{CONTAINER_WORKDIR}/{path}"

    def exec(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: Optional[str] = None,
        on_output: Optional[OutputFn] = None,
        timeout: Optional[float] = None,
        quiet_timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ExecResult:
        workdir = self._path(cwd)
        cmd = ["docker", "exec", "-w", workdir]
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend([self.container, "sh", "-ec", command])
        # `docker exec -w` needs the directory to exist before it starts
        subprocess.run(
            ["docker", "exec", self.container, "mkdir", "-p", workdir],
            capture_output=True,
        )

        result = stream_process(
            cmd,
            on_output=on_output,
            timeout=timeout,
            quiet_timeout=quiet_timeout,
            cancel=cancel,
            grace=self.grace,
        )
        if result.reason:
            # killing the docker client leaves the in-container processes
            # running; everything but PID 1 belongs to steps
            subprocess.run(
                ["docker", "exec", self.container, "sh", "-c", "kill -KILL -1 2>/dev/null || true"],
                capture_output=True,
            )
        return result

    def put_archive(self, data: bytes, at: str) -> None:
        dest = self._path(at)
        proc = subprocess.run(
            ["docker", "exec", "-i", self.container, "sh", "-c", f'mkdir -p "{dest}" && tar -xzf - -C "{dest}"'],
            input=data,
            capture_output=True,
        )
        if proc.returncode != 0:
            raise OSError(f"extract into {dest} failed: {proc.stderr.decode(errors='replace')}")

    def get_archive(self, root: str, paths: Sequence[str]) -> bytes:
        src = self._path(root)
        quoted = " ".join(f'"{p}"' if "*" not in p else p for p in paths)
        proc = subprocess.run(
            ["docker", "exec", self.container, "sh", "-c", f'cd "{src}" && tar -czf - {quoted}'],
            capture_output=True,
        )
        if proc.returncode != 0:
            raise FileNotFoundError(f"archive of {paths} under {src} failed: {proc.stderr.decode(errors='replace')}")
        return proc.stdout

    def destroy(self) -> None:
        subprocess.run(["docker", "rm", "-f", self.container], capture_output=True)


class DockerBackend(Backend):
    """
    Containers for `docker` executors; `machine` executors get an exclusive
    host lease from the local backend.
    """

    def __init__(self, *, machine_slots: int = 1, grace: float = 10.0):
        self.grace = grace
        self.local = LocalBackend(machine_slots=machine_slots, grace=grace)

    def create(self, spec: ExecutorSpec, rc: ResourceClass) -> Environment:
        if spec.kind == "machine":
            return self.local.create(spec, rc)

        _check_docker_available()
        name = f"flowci-{uuid.uuid4().hex[:12]}"
        cmd: List[str] = [
            "docker", "run", "-d",
            "--name", name,
            "--cpus", str(rc.cpus),
            "--memory", f"{rc.memory_mb}m",
            "--entrypoint", "/bin/sh",
            spec.image,
            "-c", f"mkdir -p {CONTAINER_WORKDIR} && tail -f /dev/null",
        ]
        proc = subprocess.run(cmd, capture_output=True, text=True)
        if proc.returncode != 0:
            subprocess.run(["docker", "rm", "-f", name], capture_output=True)
            raise ProvisioningError(
                "executor.docker",
                f"Could not start container from {spec.image}",
                stderr=proc.stderr.strip()[-2000:],
            )
        return DockerEnvironment(name, rc, grace=self.grace)


def make_backend(name: str, *, machine_slots: int = 1, grace: float = 10.0) -> Backend:
    if name == "docker":
        return DockerBackend(machine_slots=machine_slots, grace=grace)
    if name == "local":
        return LocalBackend(machine_slots=machine_slots, grace=grace)
    raise ValueError(f"Unknown backend: {name!r}")

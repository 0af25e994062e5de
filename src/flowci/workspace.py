# workspace.py
from __future__ import annotations

import io
import posixpath
import tarfile
from typing import List, Sequence

from .backends import Environment
from .errors import ArtifactError, StorageError, WorkspaceError
from .model import Artifact
from .storage import BlobStore


def workspace_key(invocation_id: str, workflow: str) -> str:
    return f"workspaces/{invocation_id}/{workflow}.tar.gz"


def artifact_prefix(invocation_id: str, job_run: str | None = None) -> str:
    if job_run is None:
        return f"artifacts/{invocation_id}/"
    return f"artifacts/{invocation_id}/{job_run}/"


class WorkspaceManager:
    """
    Workflow-scoped file snapshots handed from the producing job run to its
    dependents. One snapshot per (invocation, workflow); snapshots are
    dropped when the invocation finishes.
    """

    def __init__(self, store: BlobStore):
        self.store = store

    def persist(
        self,
        env: Environment,
        *,
        invocation_id: str,
        workflow: str,
        root: str,
        paths: Sequence[str],
    ) -> str:
        key = workspace_key(invocation_id, workflow)
        try:
            data = env.get_archive(root, paths)
        except (OSError, ValueError) as e:
            raise WorkspaceError(
                f"workflows.{workflow}",
                f"Could not snapshot {list(paths)} under {root}: {e}",
            ) from e
        try:
            self.store.put(key, data)
        except StorageError as e:
            raise WorkspaceError(f"workflows.{workflow}", f"Could not persist workspace: {e.message}") from e
        return key

    def exists(self, invocation_id: str, workflow: str) -> bool:
        return self.store.exists(workspace_key(invocation_id, workflow))

    def attach(self, env: Environment, *, invocation_id: str, workflow: str, at: str) -> List[str]:
        key = workspace_key(invocation_id, workflow)
        try:
            data = self.store.get(key)
        except StorageError:
            raise WorkspaceError(
                f"workflows.{workflow}",
                "No workspace was persisted for this workflow",
                key=key,
            ) from None
        try:
            env.put_archive(data, at)
        except (OSError, ValueError, tarfile.TarError) as e:
            raise WorkspaceError(f"workflows.{workflow}", f"Could not restore workspace at {at}: {e}") from e
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            return tar.getnames()

    def discard(self, invocation_id: str) -> None:
        self.store.delete_prefix(f"workspaces/{invocation_id}/")


class ArtifactStore:
    """
    Durable per-invocation outputs:
      artifacts/<invocation>/<job_run>/<destination>[/<relpath>]

    Retrievable after the invocation ends; retention is the storage
    backend's business.
    """

    def __init__(self, store: BlobStore):
        self.store = store

    def store_path(
        self,
        env: Environment,
        *,
        invocation_id: str,
        job_run: str,
        path: str,
        destination: str | None = None,
    ) -> List[Artifact]:
        norm = posixpath.normpath(path or ".")
        if norm in (".", "~"):
            # a whole directory: store its contents, not the directory itself
            parent, base = norm, ""
            dest = (destination or "").strip("/")
        else:
            parent, base = posixpath.split(norm)
            if not base:
                raise ArtifactError(job_run, f"Cannot store the filesystem root as an artifact: {path!r}")
            dest = (destination or base).strip("/")

        try:
            data = env.get_archive(parent or ".", [base or "."])
        except (OSError, ValueError) as e:
            raise ArtifactError(job_run, f"Could not read {path}: {e}") from e

        prefix = artifact_prefix(invocation_id, job_run)
        stored: List[Artifact] = []
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            for member in tar.getmembers():
                if not member.isfile():
                    continue
                rel = member.name
                if rel.startswith("./"):
                    rel = rel[2:]
                if base and (rel == base or rel.startswith(base + "/")):
                    rel = rel[len(base):].lstrip("/")
                name = "/".join(part for part in (dest, rel) if part)
                f = tar.extractfile(member)
                if f is None:
                    continue
                blob = f.read()
                try:
                    self.store.put(prefix + name, blob)
                except StorageError as e:
                    raise ArtifactError(job_run, f"Could not store artifact {name}: {e.message}") from e
                stored.append(Artifact(job_run=job_run, name=name, key=prefix + name, size=len(blob)))

        if not stored:
            raise ArtifactError(job_run, f"No files found at {path}")
        return stored

    def list(self, invocation_id: str, job_run: str | None = None) -> List[str]:
        prefix = artifact_prefix(invocation_id, job_run)
        return [k[len(prefix):] for k in self.store.list(prefix)]

    def get(self, invocation_id: str, job_run: str, name: str) -> bytes:
        key = artifact_prefix(invocation_id, job_run) + name
        try:
            return self.store.get(key)
        except StorageError as e:
            raise ArtifactError(job_run, f"Artifact not found: {name}", key=key) from e

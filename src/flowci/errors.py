# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the final invocation report (reason per job run)
      - debugging without full tracebacks
    """
    kind: str
    location: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.location:
            lines.append(f"at={self.location}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class DefinitionError(CIError):
    """Structural/schema violation in a pipeline description."""

    def __init__(self, location: str, message: str, **details):
        super().__init__(kind="definition_error", location=location, message=message, details=details)


class TriggerError(CIError):
    """Unresolvable or mistyped parameter override."""

    def __init__(self, location: str, message: str, **details):
        super().__init__(kind="trigger_error", location=location, message=message, details=details)


class ProvisioningError(CIError):
    def __init__(self, location: str, message: str, **details):
        super().__init__(kind="provisioning_error", location=location, message=message, details=details)


class WorkspaceError(CIError):
    def __init__(self, location: str, message: str, **details):
        super().__init__(kind="workspace_error", location=location, message=message, details=details)


class ArtifactError(CIError):
    def __init__(self, location: str, message: str, **details):
        super().__init__(kind="artifact_error", location=location, message=message, details=details)


class StorageError(CIError):
    """Raised by blob stores; callers translate it into workspace/artifact errors."""

    def __init__(self, location: str, message: str, **details):
        super().__init__(kind="storage_error", location=location, message=message, details=details)


@dataclass(eq=False)
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int | None
    reason: str = "exit code"
    message: str = ""

    def __str__(self) -> str:
        if self.message:
            return f"[{self.job}] {self.message}"
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"

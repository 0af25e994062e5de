# agent/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class Lease:
    """An invocation handed to this agent by the control plane (ClaimedInvocation response)."""
    invocation_id: str
    pipeline: str  # description document (YAML text)
    branch: str
    commit: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    repo_url: str = ""
    lease_expires_at: str = ""  # ISO format timestamp

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Lease:
        """Create Lease from API ClaimedInvocation response dictionary."""
        return cls(
            invocation_id=data["invocation_id"],
            pipeline=data["pipeline"],
            branch=data["branch"],
            commit=data.get("commit") or "",
            parameters=dict(data.get("parameters") or {}),
            repo_url=data.get("repo_url") or "",
            lease_expires_at=data.get("lease_expires_at") or "",
        )

    @property
    def ref(self) -> str:
        """What to check out: the commit when known, else the branch."""
        return self.commit or self.branch


@dataclass
class ExecutionResult:
    """Outcome of one leased invocation."""
    status: str  # "success" | "failed"
    logs: Dict[str, str]  # job run key -> captured output
    report: Dict[str, Any]
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API submission."""
        return {
            "logs": self.logs,
            "report": self.report,
            "error": self.error,
        }

# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional

DEFAULT_STORAGE_DIR = ".flowci/storage"


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    """
    Runtime knobs for one orchestrator. Durations are in seconds.

    Read from FLOWCI_* environment variables by from_env(); CLI options
    override individual fields through with_overrides().
    """
    max_concurrency: int = 4
    quiet_period: float = 600.0         # default no_output_timeout (10m)
    job_timeout: float = 5 * 60 * 60.0  # wall-clock ceiling per job run (5h)
    provision_retries: int = 3          # extra attempts after the first
    provision_backoff: float = 2.0      # first retry delay, doubled each attempt
    cancel_grace: float = 10.0          # SIGTERM -> SIGKILL delay
    storage_root: str = DEFAULT_STORAGE_DIR
    backend: str = "local"              # "local" | "docker"
    machine_slots: int = 1              # exclusive machine leases available

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        d = cls()
        return cls(
            max_concurrency=_env_int(env, "FLOWCI_MAX_CONCURRENCY", d.max_concurrency),
            quiet_period=_env_float(env, "FLOWCI_QUIET_PERIOD", d.quiet_period),
            job_timeout=_env_float(env, "FLOWCI_JOB_TIMEOUT", d.job_timeout),
            provision_retries=_env_int(env, "FLOWCI_PROVISION_RETRIES", d.provision_retries),
            provision_backoff=_env_float(env, "FLOWCI_PROVISION_BACKOFF", d.provision_backoff),
            cancel_grace=_env_float(env, "FLOWCI_CANCEL_GRACE", d.cancel_grace),
            storage_root=env.get("FLOWCI_STORAGE_ROOT") or d.storage_root,
            backend=env.get("FLOWCI_BACKEND") or d.backend,
            machine_slots=_env_int(env, "FLOWCI_MACHINE_SLOTS", d.machine_slots),
        ).validated()

    def with_overrides(self, **overrides) -> "Settings":
        """Apply non-None overrides (e.g. click options left unset stay as-is)."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise TypeError(f"Unknown settings: {unknown}")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None}).validated()

    def validated(self) -> "Settings":
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if self.machine_slots < 1:
            raise ValueError("machine_slots must be >= 1")
        if self.provision_retries < 0:
            raise ValueError("provision_retries must be >= 0")
        for name in ("quiet_period", "job_timeout", "provision_backoff", "cancel_grace"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.backend not in ("local", "docker"):
            raise ValueError(f"backend must be 'local' or 'docker', got {self.backend!r}")
        return self

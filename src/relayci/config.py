# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, List, Mapping, Optional

from .context import ISOLATION_DIRECTORY, ISOLATION_SHARED
from .scheduler import SKIPPED_NEEDS_PROPAGATE, SKIPPED_NEEDS_SATISFY, default_workers

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _choice(name: str, raw: str, choices: tuple) -> str:
    if raw not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}, got {raw!r}")
    return raw


@dataclass(frozen=True)
class EngineConfig:
    """
    Engine settings. Defaults, then RELAYCI_* environment variables, then
    command line options (``with_overrides``).
    """
    max_workers: int = field(default_factory=default_workers)
    cache_dir: str = ".relayci/cache"
    workspace_dir: str = ".relayci/work"
    fail_fast: bool = False
    skipped_needs: str = SKIPPED_NEEDS_PROPAGATE
    isolation: str = ISOLATION_SHARED
    keep_workspaces: bool = False
    pass_env: Optional[List[str]] = None   # None passes the whole host environment

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        cfg = cls()
        values: dict[str, Any] = {}

        if "RELAYCI_MAX_WORKERS" in env:
            workers = int(env["RELAYCI_MAX_WORKERS"])
            if workers < 1:
                raise ValueError("RELAYCI_MAX_WORKERS must be >= 1")
            values["max_workers"] = workers
        values["cache_dir"] = env.get("RELAYCI_CACHE_DIR", cfg.cache_dir)
        values["workspace_dir"] = env.get("RELAYCI_WORKSPACE_DIR", cfg.workspace_dir)
        if "RELAYCI_FAIL_FAST" in env:
            values["fail_fast"] = _bool("RELAYCI_FAIL_FAST", env["RELAYCI_FAIL_FAST"])
        if "RELAYCI_SKIPPED_NEEDS" in env:
            values["skipped_needs"] = _choice(
                "RELAYCI_SKIPPED_NEEDS",
                env["RELAYCI_SKIPPED_NEEDS"],
                (SKIPPED_NEEDS_PROPAGATE, SKIPPED_NEEDS_SATISFY),
            )
        if "RELAYCI_ISOLATION" in env:
            values["isolation"] = _choice(
                "RELAYCI_ISOLATION",
                env["RELAYCI_ISOLATION"],
                (ISOLATION_SHARED, ISOLATION_DIRECTORY),
            )
        if "RELAYCI_KEEP_WORKSPACES" in env:
            values["keep_workspaces"] = _bool("RELAYCI_KEEP_WORKSPACES", env["RELAYCI_KEEP_WORKSPACES"])
        if "RELAYCI_PASS_ENV" in env:
            values["pass_env"] = [n.strip() for n in env["RELAYCI_PASS_ENV"].split(",") if n.strip()]

        return replace(cfg, **values)

    def with_overrides(self, **overrides: Any) -> "EngineConfig":
        """Apply command line options; None means "not given"."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

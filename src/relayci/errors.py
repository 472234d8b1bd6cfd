# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


class RelayError(Exception):
    """Base class for every error raised by relayci."""


class ConfigurationError(RelayError):
    """
    The workflow definition cannot be executed.

    Raised before any job starts: cyclic needs, empty matrix product,
    unresolved needs reference, duplicate job names, malformed expressions.
    """

    def __init__(self, message: str, *, members: Optional[List[str]] = None):
        super().__init__(message)
        self.members = list(members or [])


@dataclass
class StepExecutionError(RelayError):
    """
    Structured step failure with enough context for:
      - clean CLI output
      - the run summary
      - debugging without full tracebacks
    """
    job: str
    step: str
    command: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.command}"


class CacheAccessError(RelayError):
    """Cache backend unreachable or entry corrupt. Always recovered as a miss."""


@dataclass
class JobTimeoutError(RelayError):
    job: str
    timeout: float

    def __str__(self) -> str:
        return f"[{self.job}] exceeded timeout of {self.timeout:g}s"


class CancellationSignal(RelayError):
    """The run was aborted from outside."""


class InvalidTransition(RuntimeError):
    """A job instance was asked to move between states the state machine forbids."""


@dataclass
class RunFailure(RelayError):
    """
    Aggregate failure of a run: every failed instance and every instance
    skipped because of one, never just the first error.
    """
    failed: List[str]
    skipped: Dict[str, List[str]] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{len(self.failed)} job(s) failed: {', '.join(self.failed)}"]
        for name, causes in self.skipped.items():
            lines.append(f"  {name} skipped because of: {', '.join(causes)}")
        return "\n".join(lines)

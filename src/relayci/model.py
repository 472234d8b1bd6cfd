# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import InvalidTransition


# A step/job condition is either an expression string (``"failure()"``,
# ``"matrix.os == 'linux'"``) or a predicate over the StepContext.
Condition = Union[str, Callable[["StepContext"], bool], None]


@dataclass(frozen=True)
class Step:
    """
    A single command (step) inside a CI job.

    A step with ``cache_key`` is a cache step:
      - without ``run`` it restores ``cache_paths`` at its position and saves
        them once the job succeeded (if the lookup missed)
      - with ``run`` the command is skipped on a hit and the paths are saved
        right after a successful run on a miss
    """
    name: str
    run: str = ""
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    if_: Condition = None
    continue_on_error: bool = False
    cache_key: str | None = None
    cache_paths: Tuple[str, ...] = ()
    timeout: float | None = None

    @property
    def is_cache_step(self) -> bool:
        return self.cache_key is not None


@dataclass(frozen=True)
class Container:
    image: str
    env: Dict[str, str] = field(default_factory=dict)
    volumes: Tuple[str, ...] = ()
    user: str | None = None


@dataclass
class Job:
    """
    A CI job template: steps + needs + matrix + isolation requirements.

    Expanded by the matrix expander into one JobInstance per combination.
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)

    # Parameter axes, axis order outer-to-inner
    matrix: Dict[str, List[Any]] = field(default_factory=dict)
    exclude: List[Dict[str, Any]] = field(default_factory=list)
    matrix_fail_fast: bool = False

    title: str | None = None                   # e.g. "Test on ${{ matrix.os }}"
    runs_on: str | None = None                 # runner kind / OS label
    container: Container | None = None
    env: Dict[str, str] = field(default_factory=dict)
    if_: Condition = None                      # default: success()
    timeout: float | None = None               # wall-clock seconds for the whole instance


@dataclass(frozen=True)
class Workflow:
    """Ordered job templates; immutable once loaded."""
    name: str
    jobs: Tuple[Job, ...]
    env: Dict[str, str] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ----------------------------------------------------------------------
# Instances
# ----------------------------------------------------------------------

def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


@dataclass(frozen=True)
class InstanceId:
    """Stable identity of a job instance: template name + matrix values."""
    template: str
    matrix: Tuple[Tuple[str, Any], ...] = ()

    def __hash__(self) -> int:
        # matrix values may be mappings or lists
        return hash((self.template, _freeze(self.matrix)))

    def __str__(self) -> str:
        if not self.matrix:
            return self.template
        values = ", ".join(str(v) for _, v in self.matrix)
        return f"{self.template} ({values})"

    @property
    def values(self) -> Dict[str, Any]:
        return dict(self.matrix)


class JobState(str, Enum):
    """
    Lifecycle of a job instance.

        PENDING -> BLOCKED -> RUNNABLE -> RUNNING -> SUCCEEDED
                         \\-> SKIPPED             \\-> FAILED
                                                   \\-> SKIPPED (abort)
    """
    PENDING = "pending"
    BLOCKED = "blocked"
    RUNNABLE = "runnable"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED})

_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.PENDING: frozenset({JobState.BLOCKED, JobState.RUNNABLE, JobState.SKIPPED}),
    JobState.BLOCKED: frozenset({JobState.RUNNABLE, JobState.SKIPPED}),
    JobState.RUNNABLE: frozenset({JobState.RUNNING, JobState.SKIPPED}),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED}),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.SKIPPED: frozenset(),
}


class StepOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class StepResult:
    name: str
    outcome: StepOutcome
    exit_code: Optional[int] = None
    output: str = ""
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    cache: Optional[str] = None     # "hit" | "miss" | "saved" | "exists" | "error"
    error: Optional[str] = None
    tolerated: bool = False         # failed but continue_on_error was set

    @property
    def conclusion(self) -> StepOutcome:
        """Outcome after continue-on-error: a tolerated failure concludes as success."""
        if self.outcome is StepOutcome.FAILURE and self.tolerated:
            return StepOutcome.SUCCESS
        return self.outcome


@dataclass
class JobInstance:
    """
    A concrete job: one template bound to one matrix combination.

    Identity is immutable; state and results are owned by the scheduler.
    """
    id: InstanceId
    template: Job
    index: int = 0                  # enumeration order within the template
    display_name: str = ""

    state: JobState = JobState.PENDING
    steps: List[StepResult] = field(default_factory=list)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    skipped_because: List[InstanceId] = field(default_factory=list)
    skip_reason: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = str(self.id)

    @property
    def name(self) -> str:
        return self.display_name

    @property
    def sort_key(self) -> Tuple[str, int]:
        return (self.id.template, self.index)

    @property
    def matrix(self) -> Dict[str, Any]:
        return self.id.values

    def transition(self, new: JobState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.id}: {self.state.value} -> {new.value}")
        self.state = new


@dataclass
class StepContext:
    """What a step (or job) condition can see."""
    job: str
    matrix: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    runner: Dict[str, str] = field(default_factory=dict)
    steps: Dict[str, StepResult] = field(default_factory=dict)
    needs: Dict[str, JobState] = field(default_factory=dict)
    job_failed: bool = False
    needs_satisfied: bool = True    # false when a needed job was skipped and skips propagate
    cancelled: bool = False
    workdir: Optional[str] = None

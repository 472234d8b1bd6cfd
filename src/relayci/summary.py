# summary.py
"""Run summary: what an external reporting layer renders after a run."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .errors import CancellationSignal, RunFailure
from .model import JobInstance, JobState, StepResult


@dataclass
class StepReport:
    name: str
    outcome: str
    conclusion: str
    exit_code: Optional[int]
    started_at: Optional[float]
    finished_at: Optional[float]
    cache: Optional[str] = None
    error: Optional[str] = None
    output: str = ""

    @classmethod
    def from_result(cls, res: StepResult) -> "StepReport":
        return cls(
            name=res.name,
            outcome=res.outcome.value,
            conclusion=res.conclusion.value,
            exit_code=res.exit_code,
            started_at=res.started_at,
            finished_at=res.finished_at,
            cache=res.cache,
            error=res.error,
            output=res.output,
        )


@dataclass
class InstanceReport:
    id: str
    name: str
    template: str
    matrix: Dict[str, Any]
    state: str
    started_at: Optional[float]
    finished_at: Optional[float]
    steps: List[StepReport] = field(default_factory=list)
    error: Optional[str] = None
    skipped_because: List[str] = field(default_factory=list)
    skip_reason: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    @classmethod
    def from_instance(cls, inst: JobInstance) -> "InstanceReport":
        return cls(
            id=str(inst.id),
            name=inst.display_name,
            template=inst.id.template,
            matrix=inst.matrix,
            state=inst.state.value,
            started_at=inst.started_at,
            finished_at=inst.finished_at,
            steps=[StepReport.from_result(s) for s in inst.steps],
            error=inst.error,
            skipped_because=[str(c) for c in inst.skipped_because],
            skip_reason=inst.skip_reason,
        )


@dataclass
class RunSummary:
    workflow: str
    started_at: float
    finished_at: float
    instances: List[InstanceReport]
    cancelled: bool = False

    @classmethod
    def from_instances(
        cls,
        workflow: str,
        instances: Iterable[JobInstance],
        *,
        started_at: float,
        finished_at: float,
        cancelled: bool = False,
    ) -> "RunSummary":
        return cls(
            workflow=workflow,
            started_at=started_at,
            finished_at=finished_at,
            instances=[InstanceReport.from_instance(i) for i in instances],
            cancelled=cancelled,
        )

    def _with_state(self, state: JobState) -> List[InstanceReport]:
        return [r for r in self.instances if r.state == state.value]

    @property
    def failed(self) -> List[InstanceReport]:
        return self._with_state(JobState.FAILED)

    @property
    def skipped(self) -> List[InstanceReport]:
        return self._with_state(JobState.SKIPPED)

    @property
    def succeeded(self) -> List[InstanceReport]:
        return self._with_state(JobState.SUCCEEDED)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def get(self, name: str) -> InstanceReport:
        for r in self.instances:
            if r.id == name or r.name == name:
                return r
        raise KeyError(name)

    def states(self) -> Dict[str, str]:
        """Instance id -> final state, in scheduling order."""
        return {r.id: r.state for r in self.instances}

    def attribution(self) -> Dict[str, List[str]]:
        """Skipped instance -> the failed instances (or "cancelled") that caused the skip."""
        out: Dict[str, List[str]] = {}
        for r in self.skipped:
            causes = list(r.skipped_because)
            if not causes:
                causes = [r.skip_reason or "skipped"]
            out[r.id] = causes
        return out

    def raise_for_status(self) -> None:
        """RunFailure when anything failed, CancellationSignal when the run was aborted."""
        if not self.ok:
            raise RunFailure(failed=[r.id for r in self.failed], skipped=self.attribution())
        if self.cancelled:
            raise CancellationSignal(f"run of {self.workflow!r} was cancelled; skipped: {', '.join(self.attribution())}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["ok"] = self.ok
        data["exit_code"] = self.exit_code
        for inst, report in zip(data["instances"], self.instances):
            inst["duration"] = report.duration
        return data

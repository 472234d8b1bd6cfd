# matrix.py
"""
Matrix expansion: Job template + parameter axes -> concrete JobInstances.

Pure functions only; nothing here touches scheduling state.
"""
from __future__ import annotations

import itertools
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from .errors import ConfigurationError
from .expressions import Scope, interpolate
from .model import InstanceId, Job, JobInstance, Workflow

Combination = Tuple[Tuple[str, Any], ...]


def combinations(axes: Mapping[str, Sequence[Any]]) -> List[Combination]:
    """
    Cartesian product of all axes.

    Order: axis order outer-to-inner, value order within each axis.
    """
    names = list(axes)
    for name in names:
        values = axes[name]
        if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
            raise ConfigurationError(f"Matrix axis {name!r} must be a list of values, got {values!r}")
        if len(values) == 0:
            raise ConfigurationError(f"Matrix axis {name!r} has no values (empty product)")
    return [tuple(zip(names, combo)) for combo in itertools.product(*(axes[n] for n in names))]


def _excluded(combo: Combination, rules: Iterable[Mapping[str, Any]]) -> bool:
    values = dict(combo)
    # exact equality on the subset of axes each rule names
    return any(all(values[axis] == v for axis, v in rule.items()) for rule in rules)


def expand(job: Job) -> List[JobInstance]:
    """
    Expand one template.

    A template without axes yields exactly one instance. Every exclude rule
    must name known axes; excluding every combination is an error.
    """
    axes = job.matrix or {}
    for rule in job.exclude:
        unknown = sorted(set(rule) - set(axes))
        if unknown or not rule:
            raise ConfigurationError(
                f"Job '{job.name}' exclude rule {dict(rule)!r} names unknown matrix axes {unknown}. "
                f"Known axes: {list(axes)}"
            )

    combos = combinations(axes) if axes else [()]
    kept = [c for c in combos if not _excluded(c, job.exclude)]
    if not kept:
        raise ConfigurationError(f"Job '{job.name}' matrix is empty after excludes")

    return [
        JobInstance(
            id=InstanceId(job.name, combo),
            template=job,
            index=i,
            display_name=_display_name(job, combo),
        )
        for i, combo in enumerate(kept)
    ]


def _display_name(job: Job, combo: Combination) -> str:
    if job.title:
        return interpolate(job.title, Scope({"matrix": dict(combo), "job": {"name": job.name}}))
    return str(InstanceId(job.name, combo))


def expand_workflow(workflow: Workflow | Sequence[Job]) -> List[JobInstance]:
    """Expand every template; result ordered by template name then enumeration order."""
    jobs = workflow.jobs if isinstance(workflow, Workflow) else list(workflow)
    instances: List[JobInstance] = []
    for job in jobs:
        instances.extend(expand(job))
    instances.sort(key=lambda inst: inst.sort_key)
    return instances


def by_template(instances: Iterable[JobInstance]) -> Dict[str, List[JobInstance]]:
    out: Dict[str, List[JobInstance]] = {}
    for inst in instances:
        out.setdefault(inst.id.template, []).append(inst)
    return out

# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import Condition, Container, Job, Step, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: Condition = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        if_=if_,
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def cache(
    name: str,
    key: str,
    *paths: str,
    run: str = "",
    cwd: str | None = None,
    if_: Condition = None,
) -> Step:
    """
    Create a cache step.

    Without ``run`` the paths are restored here and saved at the end of a
    successful job. With ``run`` the command only runs on a miss.

        cache("deps", "pip-${{ hashFiles('requirements.txt') }}", ".venv")
    """
    if not paths:
        raise ValueError(f"cache({name!r}) needs at least one path")
    return Step(name=name, run=run, cwd=cwd, if_=if_, cache_key=key, cache_paths=tuple(paths))


def container(
    image: str,
    *,
    env: Optional[Dict[str, str]] = None,
    volumes: Optional[List[str]] = None,
    user: str | None = None,
) -> Container:
    """Run every step of a job inside ``image`` (docker)."""
    return Container(
        image=image,
        env={k: str(v) for k, v in (env or {}).items()},
        volumes=tuple(volumes or ()),
        user=user,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Matrix axes for a job.

    Example:
        job("test", sh("pytest", "pytest -q"),
            matrix=matrix("py", ["3.11", "3.12"]).axis("os", ["linux", "macos"])
                                              .exclude(py="3.11", os="macos"))
    """
    def __init__(self, key: str | None = None, values: Iterable[Any] = ()):
        self.axes: Dict[str, List[Any]] = {}
        self.excludes: List[Dict[str, Any]] = []
        if key is not None:
            self.axes[key] = list(values)

    def axis(self, key: str, values: Iterable[Any]) -> "Matrix":
        self.axes[key] = list(values)
        return self

    def exclude(self, **combination: Any) -> "Matrix":
        self.excludes.append(dict(combination))
        return self


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


MatrixArg = Union[Matrix, Mapping[str, Sequence[Any]], None]


def _split_matrix(m: MatrixArg, exclude: Optional[List[Dict[str, Any]]]) -> tuple[Dict[str, List[Any]], List[Dict[str, Any]]]:
    excludes = [dict(e) for e in (exclude or [])]
    if m is None:
        return {}, excludes
    if isinstance(m, Matrix):
        return dict(m.axes), m.excludes + excludes
    return {k: list(v) for k, v in m.items()}, excludes


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    matrix: MatrixArg = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    matrix_fail_fast: bool = False,
    title: str | None = None,
    runs_on: str | None = None,
    container: Container | None = None,
    if_: Condition = None,
    timeout: float | None = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    axes, excludes = _split_matrix(matrix, exclude)
    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        matrix=axes,
        exclude=excludes,
        matrix_fail_fast=matrix_fail_fast,
        title=title,
        runs_on=runs_on,
        container=container,
        # force values to str for env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        if_=if_,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._matrix = Matrix()
        self._matrix_fail_fast = False
        self._title: str | None = None
        self._runs_on: str | None = None
        self._container: Container | None = None
        self._if: Condition = None
        self._timeout: float | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def define_cache(self, name: str, key: str, *paths: str, run: str = ""):
        self._steps.append(cache(name, key, *paths, run=run))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, key: str, values: Iterable[Any]):
        self._matrix.axis(key, values)
        return self

    def excluding(self, **combination: Any):
        self._matrix.exclude(**combination)
        return self

    def fail_fast(self, enabled: bool = True):
        self._matrix_fail_fast = enabled
        return self

    def titled(self, title: str):
        self._title = title
        return self

    def on(self, runs_on: str):
        self._runs_on = runs_on
        return self

    def in_container(self, image: str, **kwargs):
        self._container = container(image, **kwargs)
        return self

    def when(self, condition: Condition):
        self._if = condition
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            env=self._env,
            matrix=self._matrix,
            matrix_fail_fast=self._matrix_fail_fast,
            title=self._title,
            runs_on=self._runs_on,
            container=self._container,
            if_=self._if,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job, name: str = "workflow", env: Optional[Dict[str, str]] = None) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from relayci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return Workflow(name=name, jobs=tuple(jobs), env={k: str(v) for k, v in (env or {}).items()})


workflow = wf  # alias (avoid naming your function workflow if you use it)

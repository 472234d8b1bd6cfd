# document.py
"""
Workflow documents: the dict shape shared by YAML/JSON files, plus the
Python workflow files (``workflow()`` / ``JOBS``).

    name: ci
    env: {PYTHONUNBUFFERED: "1"}
    jobs:
      test:
        name: "Test ${{ matrix.py }}"
        needs: [lint]
        runs-on: linux
        strategy:
          fail-fast: false
          matrix:
            py: ["3.11", "3.12"]
            exclude: [{py: "3.11"}]
        steps:
          - name: deps
            cache:
              key: pip-${{ matrix.py }}-${{ hashFiles('requirements.txt') }}
              path: .venv
          - name: Pytest
            run: pytest -q
"""
from __future__ import annotations

import json
import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .model import Container, Job, Step, Workflow

log = logging.getLogger(__name__)

PYTHON_SUFFIXES = (".py",)
DOCUMENT_SUFFIXES = (".yml", ".yaml", ".json")


def _env_value(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return "" if v is None else str(v)


# -------------------- Schemas --------------------

class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class CacheSpec(_Schema):
    key: str
    path: Union[str, List[str]]

    def paths(self) -> List[str]:
        if isinstance(self.path, str):
            return [p.strip() for p in self.path.splitlines() if p.strip()]
        return [str(p) for p in self.path]


class StepSpec(_Schema):
    id: Optional[str] = None
    name: Optional[str] = None
    run: str = ""
    env: Dict[str, Any] = Field(default_factory=dict)
    if_: Union[str, bool, None] = Field(None, alias="if")
    continue_on_error: bool = Field(False, alias="continue-on-error")
    cache: Optional[CacheSpec] = None
    working_directory: Optional[str] = Field(None, alias="working-directory")
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes")


class ContainerSpec(_Schema):
    image: str
    env: Dict[str, Any] = Field(default_factory=dict)
    volumes: List[str] = Field(default_factory=list)
    user: Optional[str] = None


class StrategySpec(_Schema):
    matrix: Dict[str, Any] = Field(default_factory=dict)
    fail_fast: bool = Field(False, alias="fail-fast")

    @field_validator("matrix")
    @classmethod
    def _no_include(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if "include" in v:
            raise ValueError("matrix 'include' is not supported; list the values on an axis instead")
        return v


class JobSpec(_Schema):
    name: Optional[str] = None
    needs: Union[str, List[str]] = Field(default_factory=list)
    runs_on: Union[str, List[str], None] = Field(None, alias="runs-on")
    container: Union[str, ContainerSpec, None] = None
    env: Dict[str, Any] = Field(default_factory=dict)
    if_: Union[str, bool, None] = Field(None, alias="if")
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes")
    strategy: Optional[StrategySpec] = None
    steps: List[StepSpec] = Field(min_length=1)


class WorkflowSpec(BaseModel):
    # triggers and other top-level keys belong to whoever starts the run
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    env: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, JobSpec] = Field(min_length=1)


# -------------------- Conversion --------------------

def _condition(value: Union[str, bool, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def _step_name(spec: StepSpec, position: int) -> str:
    if spec.id:
        return spec.id
    if spec.name:
        return spec.name
    first_line = spec.run.strip().splitlines()[0] if spec.run.strip() else ""
    if first_line:
        return first_line[:60]
    return "cache" if spec.cache else f"step-{position}"


def _to_step(spec: StepSpec, position: int) -> Step:
    return Step(
        name=_step_name(spec, position),
        run=spec.run,
        cwd=spec.working_directory,
        env={k: _env_value(v) for k, v in spec.env.items()},
        if_=_condition(spec.if_),
        continue_on_error=spec.continue_on_error,
        cache_key=spec.cache.key if spec.cache else None,
        cache_paths=tuple(spec.cache.paths()) if spec.cache else (),
        timeout=spec.timeout_minutes * 60 if spec.timeout_minutes else None,
    )


def _to_container(spec: Union[str, ContainerSpec, None]) -> Optional[Container]:
    if spec is None:
        return None
    if isinstance(spec, str):
        return Container(image=spec)
    return Container(
        image=spec.image,
        env={k: _env_value(v) for k, v in spec.env.items()},
        volumes=tuple(spec.volumes),
        user=spec.user,
    )


def _to_job(key: str, spec: JobSpec) -> Job:
    strategy = spec.strategy or StrategySpec()
    axes = {k: v for k, v in strategy.matrix.items() if k != "exclude"}
    for axis, values in axes.items():
        if not isinstance(values, list):
            raise ConfigurationError(f"Job '{key}': matrix axis '{axis}' must be a list")
    exclude = strategy.matrix.get("exclude") or []
    if not isinstance(exclude, list) or not all(isinstance(e, dict) for e in exclude):
        raise ConfigurationError(f"Job '{key}': matrix exclude must be a list of mappings")

    needs = [spec.needs] if isinstance(spec.needs, str) else list(spec.needs)
    runs_on = ",".join(spec.runs_on) if isinstance(spec.runs_on, list) else spec.runs_on

    return Job(
        name=key,
        steps=[_to_step(s, i) for i, s in enumerate(spec.steps, start=1)],
        needs=needs,
        matrix=axes,
        exclude=[dict(e) for e in exclude],
        matrix_fail_fast=strategy.fail_fast,
        title=spec.name,
        runs_on=runs_on,
        container=_to_container(spec.container),
        env={k: _env_value(v) for k, v in spec.env.items()},
        if_=_condition(spec.if_),
        timeout=spec.timeout_minutes * 60 if spec.timeout_minutes else None,
    )


def workflow_from_dict(data: Any, *, default_name: str = "workflow") -> Workflow:
    """
    Coerce a workflow document into a Workflow.

    Only the shape is checked here; graph and matrix problems surface as
    ConfigurationError when the run is planned.
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"Workflow document must be a mapping, got {type(data).__name__}")
    # YAML 1.1 reads a bare `on:` key as True
    data = {k: v for k, v in data.items() if isinstance(k, str)}
    try:
        spec = WorkflowSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid workflow document:\n{e}") from e

    return Workflow(
        name=spec.name or default_name,
        jobs=tuple(_to_job(key, j) for key, j in spec.jobs.items()),
        env={k: _env_value(v) for k, v in spec.env.items()},
    )


# -------------------- Loading --------------------

def _coerce(value: Any, *, default_name: str) -> Workflow:
    if isinstance(value, Workflow):
        return value
    if isinstance(value, dict):
        return workflow_from_dict(value, default_name=default_name)
    if isinstance(value, (list, tuple)) and all(isinstance(j, Job) for j in value):
        return Workflow(name=default_name, jobs=tuple(value))
    raise TypeError(
        "Workflow must return/define a Workflow, a list of Job or a workflow document. "
        "Define workflow() -> wf(job(...), ...) or JOBS = wf(job(...), ...)."
    )


def _load_python(wf_path: Path) -> Workflow:
    module_name = f"relayci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    value = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            value = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e) and "given" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from relayci import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "JOBS" in globals_dict:
        value = globals_dict["JOBS"]

    return _coerce(value, default_name=wf_path.stem)


def _load_document(wf_path: Path) -> Workflow:
    text = wf_path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if wf_path.suffix == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not parse {wf_path.name}: {e}") from e
    return workflow_from_dict(data, default_name=wf_path.stem.lstrip("."))


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a file path.

    ``.py`` files must define either:
      - workflow() -> Workflow | List[Job]
      - JOBS = Workflow | [Job, ...]
    ``.yml`` / ``.yaml`` / ``.json`` files hold a workflow document.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix in PYTHON_SUFFIXES:
        workflow = _load_python(wf_path)
    elif wf_path.suffix in DOCUMENT_SUFFIXES:
        workflow = _load_document(wf_path)
    else:
        raise ValueError(f"Workflow must be a .py, .yml, .yaml or .json file, got: {wf_path.name}")
    log.debug("loaded workflow %r (%d jobs) from %s", workflow.name, len(workflow.jobs), wf_path)
    return workflow

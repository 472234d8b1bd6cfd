# context.py
from __future__ import annotations

import hashlib
import logging
import os
import platform
import re
import shutil
import threading
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .model import JobInstance
from .runtime import DockerRuntime, ExecResult, Runtime, SubprocessRuntime

log = logging.getLogger(__name__)

RuntimeFactory = Callable[[JobInstance, Path], Runtime]

ISOLATION_SHARED = "shared"        # every job runs in the source tree
ISOLATION_DIRECTORY = "directory"  # every job gets its own copy of the source tree

_COPY_IGNORE = shutil.ignore_patterns(".git", ".relayci", "__pycache__")

_OS_NAMES = {"Linux": "Linux", "Darwin": "macOS", "Windows": "Windows"}
_ARCH_NAMES = {"x86_64": "X64", "amd64": "X64", "aarch64": "ARM64", "arm64": "ARM64", "i386": "X86", "i686": "X86"}


def runner_info(runs_on: str | None = None) -> Dict[str, str]:
    """What ${{ runner.* }} resolves to on this host."""
    machine = platform.machine()
    return {
        "os": _OS_NAMES.get(platform.system(), platform.system()),
        "arch": _ARCH_NAMES.get(machine.lower(), machine),
        "name": runs_on or platform.node() or "local",
    }


def default_runtime_factory(instance: JobInstance, workdir: Path) -> Runtime:
    container = instance.template.container
    if container is not None:
        return DockerRuntime(container.image, workdir, volumes=container.volumes, user=container.user)
    return SubprocessRuntime()


def _slug(instance: JobInstance) -> str:
    base = re.sub(r"[^A-Za-z0-9_.-]+", "-", instance.display_name).strip("-") or "job"
    digest = hashlib.sha256(repr((instance.id.template, instance.id.matrix)).encode("utf-8")).hexdigest()[:8]
    return f"{base[:60]}-{digest}"


class ExecutionContext:
    """
    The isolated environment of exactly one job instance.

    Created at dispatch, closed when the instance is terminal. close() is
    idempotent and safe from any exit path.
    """

    def __init__(
        self,
        instance: JobInstance,
        workdir: Path,
        runtime: Runtime,
        env: Dict[str, str],
        *,
        owns_workdir: bool,
        keep_workdir: bool = False,
        on_close: Optional[Callable[["ExecutionContext"], None]] = None,
    ):
        self.instance = instance
        self.workdir = workdir
        self.runtime = runtime
        self.env = env
        self.runner = runner_info(instance.template.runs_on)
        self.owns_workdir = owns_workdir
        self.keep_workdir = keep_workdir
        self._on_close = on_close
        self._closed = False
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def step_env(self, overrides: Mapping[str, str] | None = None) -> Dict[str, str]:
        env = dict(self.env)
        env.update({k: str(v) for k, v in (overrides or {}).items()})
        return env

    def resolve(self, path: str | Path) -> Path:
        """Resolve a step cwd / cache path against this context's workdir."""
        p = Path(os.path.expanduser(str(path)))
        return p if p.is_absolute() else (self.workdir / p)

    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        if self._closed:
            raise RuntimeError(f"execution context for {self.instance.id} is closed")
        workdir = self.resolve(cwd or ".")
        if not workdir.exists():
            raise FileNotFoundError(f"[{self.instance.name}] working directory not found: {workdir}")
        return self.runtime.execute(command, self.step_env(env), workdir, timeout)

    def cancel(self) -> None:
        """Best-effort termination of whatever is running in this context."""
        self._cancelled.set()
        self.runtime.terminate()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.runtime.close()
        finally:
            if self.owns_workdir and not self.keep_workdir:
                shutil.rmtree(self.workdir, ignore_errors=True)
            if self._on_close is not None:
                self._on_close(self)
        log.debug("released context for %s", self.instance.id)

    def __enter__(self) -> "ExecutionContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class ExecutionContextManager:
    """
    Provisions one ExecutionContext per job instance and tears it down.

    Env precedence (later wins): host pass-through, CI variables, workflow
    env, job env, container env, secrets. Step env is layered on at run time.
    Container jobs get no host pass-through.
    """

    def __init__(
        self,
        source: str | Path = ".",
        *,
        workspace_root: str | Path = ".relayci/work",
        isolation: str = ISOLATION_SHARED,
        keep_workspaces: bool = False,
        base_env: Optional[Mapping[str, str]] = None,
        pass_env: Optional[List[str]] = None,
        workflow_env: Optional[Mapping[str, str]] = None,
        secrets: Optional[Mapping[str, str]] = None,
        runtime_factory: RuntimeFactory = default_runtime_factory,
    ):
        if isolation not in (ISOLATION_SHARED, ISOLATION_DIRECTORY):
            raise ValueError(f"Unknown isolation mode: {isolation!r}")
        self.source = Path(source).resolve()
        self.workspace_root = Path(workspace_root).resolve()
        self.isolation = isolation
        self.keep_workspaces = keep_workspaces
        host = dict(os.environ if base_env is None else base_env)
        if pass_env is not None:
            host = {k: v for k, v in host.items() if k in set(pass_env)}
        self.base_env = host
        self.workflow_env = dict(workflow_env or {})
        self.secrets = dict(secrets or {})
        self.runtime_factory = runtime_factory
        self._active: Dict[int, ExecutionContext] = {}
        self._lock = threading.Lock()

    def _provision_workdir(self, instance: JobInstance) -> tuple[Path, bool]:
        if self.isolation == ISOLATION_SHARED:
            return self.source, False
        workdir = self.workspace_root / _slug(instance)
        if workdir.exists():
            shutil.rmtree(workdir)
        workdir.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(self.source, workdir, ignore=_COPY_IGNORE, symlinks=True)
        return workdir, True

    def environment(self, instance: JobInstance, workdir: Path, job_env: Mapping[str, str]) -> Dict[str, str]:
        container = instance.template.container
        # a container keeps the image's own PATH/HOME: no host pass-through
        env = dict(self.base_env) if container is None else {}
        env.update(
            {
                "CI": "true",
                "RELAYCI": "true",
                "RELAYCI_JOB": instance.id.template,
                "RELAYCI_JOB_NAME": instance.display_name,
                "RELAYCI_WORKSPACE": str(workdir) if container is None else DockerRuntime.container_workdir,
            }
        )
        env.update(self.workflow_env)
        env.update({k: str(v) for k, v in job_env.items()})
        if container is not None:
            env.update({k: str(v) for k, v in container.env.items()})
        env.update(self.secrets)
        return env

    def acquire(self, instance: JobInstance, *, job_env: Mapping[str, str] | None = None) -> ExecutionContext:
        """
        Provision the context for ``instance``. ``job_env`` is the job's env
        after ${{ }} interpolation (the scheduler owns expression scope).
        """
        workdir, owns = self._provision_workdir(instance)
        try:
            runtime = self.runtime_factory(instance, workdir)
        except Exception:
            if owns and not self.keep_workspaces:
                shutil.rmtree(workdir, ignore_errors=True)
            raise
        ctx = ExecutionContext(
            instance,
            workdir,
            runtime,
            self.environment(instance, workdir, job_env or instance.template.env),
            owns_workdir=owns,
            keep_workdir=self.keep_workspaces,
            on_close=self._release,
        )
        with self._lock:
            self._active[id(ctx)] = ctx
        log.debug("acquired context for %s at %s", instance.id, workdir)
        return ctx

    def _release(self, ctx: ExecutionContext) -> None:
        with self._lock:
            self._active.pop(id(ctx), None)

    def active(self) -> List[ExecutionContext]:
        with self._lock:
            return list(self._active.values())

    def cancel_all(self) -> None:
        for ctx in self.active():
            ctx.cancel()

# runtime.py
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from .errors import ConfigurationError

log = logging.getLogger(__name__)

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
}

# Keep the tail only; the summary references it, the console prints it on failure.
OUTPUT_TAIL = 16_000


@dataclass
class ExecResult:
    exit_code: int
    output: str = ""
    timed_out: bool = False
    terminated: bool = False


class Runtime(Protocol):
    """
    The process/container collaborator: one instance per ExecutionContext.

    execute() blocks until the command exits; terminate() may be called from
    another thread and must make a running execute() return promptly.
    """

    def execute(
        self,
        command: str,
        env: Dict[str, str],
        workdir: Path,
        timeout: Optional[float] = None,
    ) -> ExecResult: ...

    def terminate(self) -> None: ...

    def close(self) -> None: ...


class SubprocessRuntime:
    """Runs each command through the local shell, in its own process group."""

    def __init__(self, *, shell: str | None = None, grace_period: float = 5.0):
        self.shell = shell
        self.grace_period = grace_period
        self._proc: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()
        self._terminated = False

    def execute(
        self,
        command: str,
        env: Dict[str, str],
        workdir: Path,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        if self.shell:
            return self._spawn([self.shell, "-c", command], env=env, cwd=workdir, timeout=timeout)
        return self._spawn(command, env=env, cwd=workdir, timeout=timeout, shell=True)

    def _spawn(
        self,
        args: List[str] | str,
        *,
        env: Dict[str, str],
        cwd: Path,
        timeout: Optional[float],
        shell: bool = False,
    ) -> ExecResult:
        with self._lock:
            if self._terminated:
                return ExecResult(exit_code=130, terminated=True)
            proc = subprocess.Popen(
                args,
                shell=shell,
                cwd=str(cwd),
                env=env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
            self._proc = proc

        timed_out = False
        try:
            out, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            self._kill(proc)
            out, _ = proc.communicate()
        finally:
            with self._lock:
                self._proc = None

        return ExecResult(
            exit_code=proc.returncode,
            output=(out or "")[-OUTPUT_TAIL:],
            timed_out=timed_out,
            terminated=self._terminated,
        )

    def _kill(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
            try:
                proc.wait(timeout=self.grace_period)
            except subprocess.TimeoutExpired:
                os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            # already gone
            return

    def terminate(self) -> None:
        with self._lock:
            self._terminated = True
            proc = self._proc
        if proc is not None:
            log.debug("terminating process group %s", proc.pid)
            self._kill(proc)

    def close(self) -> None:
        self.terminate()


class DockerRuntime(SubprocessRuntime):
    """
    Runs each command with ``docker run --rm`` in ``image``; ``mount`` (the
    job's working directory on the host) is mounted at /workspace.
    """

    container_workdir = "/workspace"

    def __init__(
        self,
        image: str,
        mount: Path,
        *,
        volumes: Sequence[str] = (),
        user: str | None = None,
        docker: str = "docker",
        grace_period: float = 5.0,
    ):
        super().__init__(grace_period=grace_period)
        self.image = image
        self.mount = Path(mount).resolve()
        self.volumes = list(volumes)
        self.user = user
        self.docker = docker

    def _check_docker_available(self) -> None:
        if shutil.which(self.docker) is None:
            raise ConfigurationError(
                f"Docker is not available ({self.docker!r} not on PATH). {TOOL_HINTS['docker']}"
            )

    def docker_argv(self, command: str, env: Dict[str, str], workdir: Path) -> List[str]:
        rel = Path(workdir).resolve().relative_to(self.mount).as_posix()
        container_cwd = self.container_workdir if rel == "." else f"{self.container_workdir}/{rel}"

        cmd = [self.docker, "run", "--rm", "-v", f"{self.mount}:{self.container_workdir}", "-w", container_cwd]
        for vol in self.volumes:
            cmd.extend(["-v", vol])
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        if self.user:
            cmd.extend(["--user", self.user])
        cmd.extend([self.image, "sh", "-c", command])
        return cmd

    def execute(
        self,
        command: str,
        env: Dict[str, str],
        workdir: Path,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        self._check_docker_available()
        argv = self.docker_argv(command, env, workdir)
        # the docker client only needs the host basics; the step env goes in via -e
        host_env = {k: v for k, v in os.environ.items() if k in ("PATH", "HOME", "DOCKER_HOST", "DOCKER_CONFIG")}
        return self._spawn(argv, env=host_env, cwd=self.mount, timeout=timeout)

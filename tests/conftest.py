# tests/conftest.py
"""
Shared fixtures: a scripted in-process runtime so scheduler tests never
spawn processes, plus helpers to build a Scheduler around it.

FakeRuntime commands:
    ok / anything else     exit 0, output echoes the command
    fail                   exit 1
    exit N                 exit N
    sleep S                wait S seconds (returns early on terminate)
    hang                   wait until terminated (or the timeout passes)
    hang-exit N            like hang, but exits N when terminated
    touch PATH             create PATH (relative to the workdir)
"""
from __future__ import annotations

import io
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from relayci.cache import CacheStore, MemoryBackend
from relayci.context import ExecutionContextManager
from relayci.runtime import ExecResult
from relayci.scheduler import Scheduler
from relayci.ui.console import Console


class Board:
    """Observations shared by every FakeRuntime of one test."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.calls: List[Dict] = []
        self.running = 0
        self.max_running = 0
        self.started = threading.Event()

    def enter(self, command: str, env: Dict[str, str], workdir: Path) -> None:
        with self.lock:
            self.calls.append({"command": command, "env": dict(env), "workdir": workdir})
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        self.started.set()

    def leave(self) -> None:
        with self.lock:
            self.running -= 1

    @property
    def commands(self) -> List[str]:
        with self.lock:
            return [c["command"] for c in self.calls]


class FakeRuntime:
    def __init__(self, board: Board):
        self.board = board
        self._terminated = threading.Event()
        self.closed = False

    def execute(self, command: str, env: Dict[str, str], workdir: Path, timeout: Optional[float] = None) -> ExecResult:
        if self._terminated.is_set():
            return ExecResult(exit_code=130, terminated=True)
        self.board.enter(command, env, workdir)
        try:
            return self._behave(command.strip(), workdir, timeout)
        finally:
            self.board.leave()

    def _behave(self, command: str, workdir: Path, timeout: Optional[float]) -> ExecResult:
        word, _, arg = command.partition(" ")
        if word == "fail":
            return ExecResult(exit_code=1, output="boom")
        if word == "exit":
            return ExecResult(exit_code=int(arg), output=f"exit {arg}")
        if word == "sleep":
            if self._terminated.wait(float(arg)):
                return ExecResult(exit_code=-15, terminated=True)
            return ExecResult(exit_code=0)
        if word in ("hang", "hang-exit"):
            if self._terminated.wait(timeout if timeout is not None else 10.0):
                return ExecResult(exit_code=int(arg) if arg else -15, terminated=True)
            return ExecResult(exit_code=-9, timed_out=True)
        if word == "touch":
            target = workdir / arg
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(arg, encoding="utf-8")
            return ExecResult(exit_code=0)
        return ExecResult(exit_code=0, output=command)

    def terminate(self) -> None:
        self._terminated.set()

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def board() -> Board:
    return Board()


@pytest.fixture
def console() -> Console:
    return Console(stream=io.StringIO())


@pytest.fixture
def contexts(tmp_path, board) -> ExecutionContextManager:
    source = tmp_path / "repo"
    source.mkdir()
    return ExecutionContextManager(
        source,
        workspace_root=tmp_path / "work",
        base_env={},
        runtime_factory=lambda instance, workdir: FakeRuntime(board),
    )


@pytest.fixture
def memory_cache() -> CacheStore:
    return CacheStore(MemoryBackend())


@pytest.fixture
def make_scheduler(contexts, console):
    def _make(workflow, **kwargs) -> Scheduler:
        kwargs.setdefault("contexts", contexts)
        kwargs.setdefault("console", console)
        kwargs.setdefault("max_workers", 4)
        return Scheduler(workflow, **kwargs)

    return _make

import sys
import threading
import time

import pytest

from relayci.context import ExecutionContextManager, default_runtime_factory, runner_info
from relayci.dsl import container, job, sh
from relayci.matrix import expand
from relayci.runtime import DockerRuntime, SubprocessRuntime

from conftest import Board, FakeRuntime


def _instance(**kwargs):
    return expand(job("build", sh("s", "ok"), **kwargs))[0]


@pytest.fixture
def source(tmp_path):
    src = tmp_path / "repo"
    (src / "pkg").mkdir(parents=True)
    (src / "pkg" / "mod.py").write_text("x = 1\n", encoding="utf-8")
    (src / ".git").mkdir()
    (src / ".git" / "HEAD").write_text("ref: main\n", encoding="utf-8")
    return src


def _manager(source, tmp_path, **kwargs):
    board = Board()
    kwargs.setdefault("runtime_factory", lambda instance, workdir: FakeRuntime(board))
    return ExecutionContextManager(source, workspace_root=tmp_path / "work", **kwargs)


def test_shared_isolation_runs_in_the_source_tree(source, tmp_path):
    mgr = _manager(source, tmp_path, base_env={})
    with mgr.acquire(_instance()) as ctx:
        assert ctx.workdir == source.resolve()
        assert ctx.resolve("pkg") == source.resolve() / "pkg"
    assert source.exists()


def test_directory_isolation_copies_and_cleans_up(source, tmp_path):
    mgr = _manager(source, tmp_path, isolation="directory", base_env={})
    a = mgr.acquire(_instance(matrix={"n": [1, 2]}))
    b = mgr.acquire(expand(job("build", sh("s", "ok"), matrix={"n": [1, 2]}))[1])

    assert a.workdir != b.workdir
    assert (a.workdir / "pkg" / "mod.py").read_text() == "x = 1\n"
    assert not (a.workdir / ".git").exists()

    (a.workdir / "pkg" / "mod.py").write_text("changed", encoding="utf-8")
    assert (b.workdir / "pkg" / "mod.py").read_text() == "x = 1\n"
    assert len(mgr.active()) == 2

    a.close()
    a.close()  # idempotent
    assert not a.workdir.exists()
    assert b.workdir.exists()
    b.close()
    assert mgr.active() == []


def test_keep_workspaces(source, tmp_path):
    mgr = _manager(source, tmp_path, isolation="directory", keep_workspaces=True, base_env={})
    ctx = mgr.acquire(_instance())
    ctx.close()
    assert ctx.workdir.exists()


def test_unknown_isolation_is_rejected(source, tmp_path):
    with pytest.raises(ValueError):
        _manager(source, tmp_path, isolation="vm")


def test_environment_precedence(source, tmp_path):
    mgr = _manager(
        source,
        tmp_path,
        base_env={"HOME": "/home/ci", "SHARED": "host"},
        workflow_env={"SHARED": "workflow", "WF": "1"},
        secrets={"TOKEN": "s3cret"},
    )
    inst = _instance(env={"SHARED": "job"})
    env = mgr.environment(inst, source, {"SHARED": "job"})
    assert env["HOME"] == "/home/ci"
    assert env["WF"] == "1"
    assert env["SHARED"] == "job"
    assert env["TOKEN"] == "s3cret"
    assert env["CI"] == "true"
    assert env["RELAYCI_JOB"] == "build"
    assert env["RELAYCI_WORKSPACE"] == str(source)


def test_container_jobs_only_get_declared_environment(source, tmp_path):
    mgr = ExecutionContextManager(
        source,
        workspace_root=tmp_path / "work",
        base_env={"PATH": "/usr/local/sbin:/usr/bin:/bin", "HOME": "/root"},
        workflow_env={"WF": "1"},
        secrets={"TOKEN": "s3cret"},
        runtime_factory=default_runtime_factory,
    )
    inst = _instance(env={"JOB": "1"}, container=container("amd64/rust", env={"CARGO_HOME": "/cache/cargo"}))
    with mgr.acquire(inst, job_env={"JOB": "1"}) as ctx:
        assert isinstance(ctx.runtime, DockerRuntime)
        assert "PATH" not in ctx.env
        assert "HOME" not in ctx.env
        assert ctx.env["RELAYCI_WORKSPACE"] == "/workspace"

        argv = ctx.runtime.docker_argv("cargo build", ctx.step_env({"STEP": "1"}), ctx.workdir)
        passed = [argv[i + 1] for i, a in enumerate(argv) if a == "-e"]
        assert not [p for p in passed if p.startswith(("PATH=", "HOME="))]
        for expected in ("CI=true", "WF=1", "JOB=1", "CARGO_HOME=/cache/cargo", "TOKEN=s3cret", "STEP=1"):
            assert expected in passed


def test_pass_env_filters_host_variables(source, tmp_path):
    mgr = _manager(source, tmp_path, base_env={"PATH": "/bin", "AWS_SECRET": "x"}, pass_env=["PATH"])
    env = mgr.environment(_instance(), source, {})
    assert env["PATH"] == "/bin"
    assert "AWS_SECRET" not in env


def test_step_env_overrides_context_env(source, tmp_path):
    mgr = _manager(source, tmp_path, base_env={"A": "1"})
    with mgr.acquire(_instance()) as ctx:
        assert ctx.step_env({"A": "2", "N": 3})["A"] == "2"
        assert ctx.step_env({"N": 3})["N"] == "3"
        assert ctx.env["A"] == "1"


def test_closed_context_refuses_to_run(source, tmp_path):
    mgr = _manager(source, tmp_path, base_env={})
    ctx = mgr.acquire(_instance())
    ctx.close()
    with pytest.raises(RuntimeError):
        ctx.run("ok")


def test_cancel_all_terminates_active_runtimes(source, tmp_path):
    mgr = _manager(source, tmp_path, base_env={})
    ctx = mgr.acquire(_instance())
    mgr.cancel_all()
    assert ctx.cancelled
    assert ctx.run("ok").terminated
    ctx.close()


def test_runner_info():
    info = runner_info("self-hosted")
    assert info["name"] == "self-hosted"
    assert set(info) == {"os", "arch", "name"}


# ---------------------------------------------------------------------
# Runtimes
# ---------------------------------------------------------------------

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")


@posix_only
def test_subprocess_runtime_captures_output_and_exit_code(tmp_path):
    rt = SubprocessRuntime()
    res = rt.execute("echo hello; echo oops >&2; exit 3", {"PATH": "/usr/bin:/bin"}, tmp_path)
    assert res.exit_code == 3
    assert "hello" in res.output
    assert "oops" in res.output
    assert not res.timed_out


@posix_only
def test_subprocess_runtime_uses_env_and_workdir(tmp_path):
    rt = SubprocessRuntime()
    res = rt.execute('echo "$GREETING"; pwd', {"PATH": "/usr/bin:/bin", "GREETING": "hi"}, tmp_path)
    assert res.exit_code == 0
    lines = res.output.splitlines()
    assert lines[0] == "hi"
    assert lines[1] == str(tmp_path.resolve()) or lines[1] == str(tmp_path)


@posix_only
def test_subprocess_runtime_timeout(tmp_path):
    rt = SubprocessRuntime(grace_period=1.0)
    start = time.monotonic()
    res = rt.execute("sleep 5", {"PATH": "/usr/bin:/bin"}, tmp_path, timeout=0.2)
    assert res.timed_out
    assert time.monotonic() - start < 4


@posix_only
def test_subprocess_runtime_terminate_from_another_thread(tmp_path):
    rt = SubprocessRuntime(grace_period=1.0)
    threading.Timer(0.2, rt.terminate).start()
    res = rt.execute("sleep 5", {"PATH": "/usr/bin:/bin"}, tmp_path)
    assert res.terminated
    assert res.exit_code != 0
    # once terminated, nothing new starts
    assert rt.execute("echo again", {"PATH": "/usr/bin:/bin"}, tmp_path).exit_code == 130


def test_docker_argv(tmp_path):
    rt = DockerRuntime("python:3.12", tmp_path, volumes=["cache:/root/.cache"], user="1000")
    argv = rt.docker_argv("pytest -q", {"CI": "true"}, tmp_path / "sub")
    assert argv[:3] == ["docker", "run", "--rm"]
    assert f"{tmp_path.resolve()}:/workspace" in argv
    assert argv[argv.index("-w") + 1] == "/workspace/sub"
    assert "CI=true" in argv
    assert argv[-4:] == ["python:3.12", "sh", "-c", "pytest -q"]

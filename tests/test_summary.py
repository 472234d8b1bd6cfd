import io
import json

from relayci.dsl import job, sh, wf
from relayci.ui.console import Console


def test_summary_serializes_to_json(make_scheduler):
    summary = make_scheduler(
        wf(
            job("a", sh("boom", "fail")),
            job("b", sh("s", "ok"), needs=["a"], matrix={"n": [1, 2]}),
            name="demo",
        )
    ).run()
    data = json.loads(json.dumps(summary.to_dict()))

    assert data["workflow"] == "demo"
    assert data["ok"] is False
    assert data["exit_code"] == 1
    assert [i["id"] for i in data["instances"]] == ["a", "b (1)", "b (2)"]
    a = data["instances"][0]
    assert a["steps"][0]["exit_code"] == 1
    assert a["steps"][0]["output"] == "boom"
    assert a["duration"] is not None
    assert data["instances"][1]["skipped_because"] == ["a"]
    assert data["instances"][1]["matrix"] == {"n": 1}


def test_successful_run_has_exit_code_zero(make_scheduler):
    summary = make_scheduler(wf(job("a", sh("s", "ok")))).run()
    assert summary.ok
    assert summary.exit_code == 0
    summary.raise_for_status()
    assert summary.states() == {"a": "succeeded"}


def test_console_prints_results_with_attribution(make_scheduler):
    stream = io.StringIO()
    make_scheduler(
        wf(
            job("a", sh("boom", "fail")),
            job("b", sh("s", "ok"), needs=["a"]),
        ),
        console=Console(stream=stream),
    ).run()
    out = stream.getvalue()
    assert "JOB STARTED: a" in out
    assert "STEP FAILED: boom" in out
    assert "JOB FAILED: a" in out
    assert "JOB SKIPPED: b (needs failed: a)" in out
    assert "b: SKIPPED <- a" in out
    assert "0 succeeded, 1 failed, 1 skipped" in out


def test_quiet_console_only_prints_results(make_scheduler):
    stream = io.StringIO()
    make_scheduler(wf(job("a", sh("s", "ok"))), console=Console(quiet=True, stream=stream)).run()
    out = stream.getvalue()
    assert "JOB STARTED" not in out
    assert "RESULTS" in out

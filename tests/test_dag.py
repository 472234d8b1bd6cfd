import pytest

from relayci.dag import build_graph
from relayci.dsl import job, sh
from relayci.errors import ConfigurationError, InvalidTransition
from relayci.matrix import expand_workflow
from relayci.model import InstanceId, JobState


def _graph(*jobs):
    return build_graph(expand_workflow(list(jobs)), templates=[j.name for j in jobs])


def test_cycle_is_rejected_with_members():
    with pytest.raises(ConfigurationError) as exc:
        _graph(
            job("a", sh("s", "ok"), needs=["c"]),
            job("b", sh("s", "ok"), needs=["a"]),
            job("c", sh("s", "ok"), needs=["b"]),
            job("d", sh("s", "ok")),
        )
    assert "cycle" in str(exc.value)
    assert sorted(exc.value.members) == ["a", "b", "c"]


def test_self_dependency_is_a_cycle():
    with pytest.raises(ConfigurationError) as exc:
        _graph(job("a", sh("s", "ok"), needs=["a"]))
    assert exc.value.members == ["a"]


def test_unknown_need_is_rejected():
    with pytest.raises(ConfigurationError, match="needs missing job 'build'"):
        _graph(job("test", sh("s", "ok"), needs=["build"]))


def test_duplicate_template_names_are_rejected():
    with pytest.raises(ConfigurationError, match="Duplicate job names"):
        _graph(job("a", sh("s", "ok")), job("a", sh("s", "other")))


def test_need_on_matrix_template_fans_out():
    g = _graph(
        job("test", sh("s", "ok"), matrix={"n": [1, 2, 3]}),
        job("deploy", sh("s", "ok"), needs=["test"]),
    )
    deploy = InstanceId("deploy", ())
    assert [d.id.template for d in g.dependencies_of(deploy)] == ["test"] * 3

    tests = [n.id for n in g.nodes if n.id.template == "test"]
    g.resolve_initial_states()
    assert deploy not in g.runnable_set(set(tests[:2]))
    assert deploy in g.runnable_set(set(tests))


def test_initial_states():
    g = _graph(job("a", sh("s", "ok")), job("b", sh("s", "ok"), needs=["a"]))
    g.resolve_initial_states()
    assert g[InstanceId("a")].state is JobState.RUNNABLE
    assert g[InstanceId("b")].state is JobState.BLOCKED


def test_runnable_set_excludes_started_instances():
    g = _graph(job("a", sh("s", "ok")), job("b", sh("s", "ok")))
    g.resolve_initial_states()
    g[InstanceId("a")].transition(JobState.RUNNING)
    assert g.runnable_set(set()) == {InstanceId("b")}


def test_levels_and_downstream():
    g = _graph(
        job("lint", sh("s", "ok")),
        job("test", sh("s", "ok"), needs=["lint"], matrix={"py": ["3.11", "3.12"]}),
        job("deploy", sh("s", "ok"), needs=["test"]),
    )
    levels = [[str(i) for i in level] for level in g.levels()]
    assert levels == [["lint"], ["test (3.11)", "test (3.12)"], ["deploy"]]
    assert [str(n.id) for n in g.downstream_of(InstanceId("lint"))] == ["deploy", "test (3.11)", "test (3.12)"]


def test_to_dict_lists_nodes_and_edges():
    g = _graph(job("a", sh("s", "ok")), job("b", sh("s", "ok"), needs=["a"]))
    data = g.to_dict()
    assert [n["template"] for n in data["nodes"]] == ["a", "b"]
    assert data["edges"] == [[0, 1]]


def test_terminal_states_never_transition():
    g = _graph(job("a", sh("s", "ok")))
    node = g[InstanceId("a")]
    node.transition(JobState.RUNNABLE)
    node.transition(JobState.RUNNING)
    node.transition(JobState.SUCCEEDED)
    with pytest.raises(InvalidTransition):
        node.transition(JobState.RUNNING)
    with pytest.raises(RuntimeError):
        node.transition(JobState.FAILED)


def test_blocked_cannot_skip_running():
    g = _graph(job("a", sh("s", "ok")), job("b", sh("s", "ok"), needs=["a"]))
    g.resolve_initial_states()
    with pytest.raises(InvalidTransition):
        g[InstanceId("b")].transition(JobState.RUNNING)

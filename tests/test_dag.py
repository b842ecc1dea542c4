# tests/test_dag.py
import pytest

from relayci.dag import build_stage_graph, execution_order, stage_levels, topo_levels
from relayci.dsl import job, pipeline, sh, stage
from relayci.errors import PipelineDefinitionError


def _stage(name, **kw):
    return stage(name, job(f"{name.lower()}-job", sh("noop", "true")), **kw)


def test_implicit_chaining_follows_document_order():
    p = pipeline("p", _stage("Build"), _stage("Test"), _stage("Deploy"))
    assert p.resolved_dependencies() == {"Build": [], "Test": ["Build"], "Deploy": ["Test"]}
    assert stage_levels(p) == [["Build"], ["Test"], ["Deploy"]]


def test_explicit_empty_depends_on_makes_parallel_roots():
    p = pipeline("p", _stage("B"), _stage("A", depends_on=[]), _stage("C", depends_on=["A", "B"]))
    assert stage_levels(p) == [["A", "B"], ["C"]]
    assert execution_order(p) == ["A", "B", "C"]


def test_levels_are_sorted_deterministically():
    adj, indeg = build_stage_graph({"z": [], "a": [], "m": ["z", "a"]})
    assert topo_levels(adj, indeg) == [["a", "z"], ["m"]]


def test_unknown_dependency():
    p = pipeline("p", _stage("Build", depends_on="Nope"))
    with pytest.raises(PipelineDefinitionError, match="missing stage 'Nope'"):
        stage_levels(p)


def test_self_dependency():
    with pytest.raises(PipelineDefinitionError, match="itself"):
        build_stage_graph({"A": ["A"]})


def test_cycle_detected():
    p = pipeline("p", _stage("A", depends_on="B"), _stage("B", depends_on="A"))
    with pytest.raises(PipelineDefinitionError, match="cycle"):
        stage_levels(p)


def test_duplicate_stage_names():
    p = pipeline("p", _stage("A"), _stage("A", depends_on=[]))
    with pytest.raises(PipelineDefinitionError, match="Duplicate"):
        stage_levels(p)

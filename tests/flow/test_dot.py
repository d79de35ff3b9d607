"""Tests for GraphViz DOT interchange."""

from __future__ import annotations

import pytest

from ruleflow.flow.dot import DotParseError, graph_to_dot, parse_dot_file, parse_dot_string
from ruleflow.flow.models import Branch, NodeKind, Position
from ruleflow.flow.simulator import FlowSimulator
from ruleflow.flow.validator import validate_flow

ADULT_CHECK_DOT = """\
digraph adult_check {
    start [shape=Mdiamond]
    age   [shape=parallelogram, variable="age", value="25", label="Age"]
    check [shape=diamond, condition="age >= 18", label="Is adult?"]
    adult [shape=Msquare, label="Adult"]
    minor [shape=Msquare, label="Minor"]
    start -> age -> check
    check -> adult [branch=true]
    check -> minor [label="false"]
}
"""


class TestParseDot:
    def test_shapes_map_to_kinds(self):
        graph = parse_dot_string(ADULT_CHECK_DOT)
        kinds = {n.id: n.kind for n in graph.nodes}
        assert kinds == {
            "start": NodeKind.START,
            "age": NodeKind.INPUT,
            "check": NodeKind.CONDITION,
            "adult": NodeKind.END,
            "minor": NodeKind.END,
        }
        assert graph.name == "adult_check"

    def test_payloads(self):
        graph = parse_dot_string(ADULT_CHECK_DOT)
        assert graph.node("age").payload.variable_name == "age"
        assert graph.node("age").payload.literal_value == "25"
        assert graph.node("check").payload.expression == "age >= 18"
        assert graph.node("start").label == "Start"

    def test_chained_edges_and_branches(self):
        graph = parse_dot_string(ADULT_CHECK_DOT)
        pairs = [(e.source, e.target, e.branch) for e in graph.edges]
        assert pairs == [
            ("start", "age", None),
            ("age", "check", None),
            ("check", "adult", Branch.TRUE),
            ("check", "minor", Branch.FALSE),
        ]

    def test_parsed_graph_validates_and_runs(self):
        graph = parse_dot_string(ADULT_CHECK_DOT)
        assert validate_flow(graph).is_valid
        assert FlowSimulator().simulate(graph).visited()[-1] == "adult"

    def test_type_overrides_shape(self):
        graph = parse_dot_string('digraph g { f [shape=box, type="end"] }')
        assert graph.node("f").kind == NodeKind.END

    def test_unknown_type(self):
        with pytest.raises(DotParseError, match="unknown type"):
            parse_dot_string('digraph g { f [type="loop"] }')

    def test_position(self):
        graph = parse_dot_string('digraph g { s [shape=Mdiamond, pos="10,20"] }')
        assert graph.node("s").position == Position(10, 20)

    def test_bad_position(self):
        with pytest.raises(DotParseError, match="pos"):
            parse_dot_string('digraph g { s [pos="left"] }')

    def test_node_defaults(self):
        graph = parse_dot_string("digraph g { node [shape=Msquare]; a; b }")
        assert [n.kind for n in graph.nodes] == [NodeKind.END, NodeKind.END]

    def test_file(self, tmp_path):
        path = tmp_path / "adult.dot"
        path.write_text(ADULT_CHECK_DOT)
        assert len(parse_dot_file(path).nodes) == 5


class TestGraphToDot:
    def test_round_trip(self, adult_check):
        restored = parse_dot_string(graph_to_dot(adult_check))
        assert restored.name == "adult check"
        assert restored.nodes == adult_check.nodes
        assert restored.edges == adult_check.edges

    def test_trace_highlighting(self, adult_check, pinned_settings):
        trace = FlowSimulator(settings=pinned_settings).simulate(adult_check)
        text = graph_to_dot(adult_check, trace)
        assert text.count("palegreen") == 4
        assert "salmon" not in text

    def test_failed_node_highlighted(self, adult_check, pinned_settings):
        graph = adult_check.replace_node("check", expression="nope > 1")
        trace = FlowSimulator(settings=pinned_settings).simulate(graph)
        assert "salmon" in graph_to_dot(graph, trace)

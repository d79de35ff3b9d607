"""Tests for flow validation."""

from __future__ import annotations

import pytest

from ruleflow.flow.models import Branch, Edge, EndData, Graph, GraphBuilder, Node, NodeKind
from ruleflow.flow.validator import (
    Issue,
    LintRule,
    Severity,
    ValidationException,
    ValidationResult,
    reachable_from_starts,
    validate_flow,
    validate_or_raise,
)


def _make_graph(with_false: bool = True) -> Graph:
    b = GraphBuilder("check")
    start = b.add_start(node_id="start")
    cond = b.add_condition("x > 1", label="Big?", node_id="cond")
    yes = b.add_end("Yes", node_id="yes")
    b.connect(start, cond)
    b.connect(cond, yes, Branch.TRUE)
    if with_false:
        no = b.add_end("No", node_id="no")
        b.connect(cond, no, Branch.FALSE)
    return b.build()


class TestStartAndEnd:
    def test_missing_start(self):
        b = GraphBuilder()
        b.add_end()
        result = validate_flow(b.build())
        assert not result.is_valid
        assert "missing_start" in result.kinds()

    def test_empty_graph(self):
        result = validate_flow(Graph())
        assert {"missing_start", "missing_end"} <= result.kinds()
        assert result.summary.reachable_count == 0

    def test_multiple_starts_is_warning(self):
        b = GraphBuilder()
        first = b.add_start()
        second = b.add_start()
        end = b.add_end()
        b.connect(first, end)
        b.connect(second, end)
        result = validate_flow(b.build())
        assert result.is_valid
        warning = next(w for w in result.warnings if w.kind == "multiple_starts")
        assert warning.node_ids == [first, second]

    def test_missing_end(self):
        b = GraphBuilder()
        b.add_start()
        result = validate_flow(b.build())
        assert {"missing_end", "disconnected_start"} <= {e.kind for e in result.errors}

    def test_orphaned_end(self, adult_check):
        graph = adult_check.with_node(
            Node(id="lonely", kind=NodeKind.END, payload=EndData(label="Adult"))
        )
        result = validate_flow(graph)
        orphan = next(e for e in result.errors if e.kind == "orphaned_end")
        assert orphan.node_id == "lonely"
        assert orphan.message == 'End node "Adult" is not connected from any other nodes'


class TestConnections:
    def test_connected_graph_is_valid(self, adult_check):
        result = validate_flow(adult_check)
        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []

    def test_orphaned_node(self, adult_check):
        graph = adult_check.without_edge("edge_check_minor").without_edge("edge_check_adult")
        result = validate_flow(graph)
        kinds = {e.kind for e in result.errors}
        assert "orphaned_node" in kinds
        assert "orphaned_end" in kinds

    def test_missing_false_path_is_warning(self):
        result = validate_flow(_make_graph(with_false=False))
        assert result.is_valid
        warning = next(w for w in result.warnings if w.kind == "missing_false_path")
        assert warning.severity == Severity.WARNING
        assert warning.message == 'Condition node "Big?" is missing FALSE path'

    def test_missing_both_paths(self):
        b = GraphBuilder()
        start = b.add_start()
        cond = b.add_condition("true")
        end = b.add_end()
        b.connect(start, cond)
        b.connect(cond, end)
        kinds = validate_flow(b.build()).kinds()
        assert {"missing_true_path", "missing_false_path"} <= kinds

    def test_dangling_edge(self, adult_check):
        graph = adult_check.with_edge(Edge(id="bad", source="adult", target="ghost"))
        issue = next(e for e in validate_flow(graph).errors if e.kind == "dangling_edge")
        assert issue.node_ids == ["ghost"]

    def test_duplicate_node_id(self, adult_check):
        graph = adult_check.with_node(adult_check.node("minor"))
        assert "duplicate_node_id" in {e.kind for e in validate_flow(graph).errors}


class TestReachability:
    def test_unreachable_node(self):
        graph = _make_graph()
        b = GraphBuilder()
        island = b.add_condition("y", label="Island", node_id="island")
        b.connect("island", "yes", Branch.TRUE, edge_id="i_yes")
        b.connect("island", "no", Branch.FALSE, edge_id="i_no")
        extra = b.build()
        graph = Graph(
            nodes=graph.nodes + extra.nodes,
            edges=graph.edges + extra.edges,
        )
        unreachable = [w for w in validate_flow(graph).warnings if w.kind == "unreachable_node"]
        assert [w.node_id for w in unreachable] == [island]
        assert unreachable[0].message == 'condition node "Island" is unreachable from Start node'

    def test_monotonic_under_edge_changes(self, adult_check):
        def unreachable(graph):
            return {
                w.node_id for w in validate_flow(graph).warnings if w.kind == "unreachable_node"
            }

        cut = adult_check.without_edge("edge_age_check")
        assert unreachable(cut) == {"check", "adult", "minor"}

        reconnected = cut.with_edge(Edge(id="again", source="age", target="check"))
        assert unreachable(reconnected) == set()

        isolated = adult_check.without_edge("edge_check_minor")
        assert "minor" in unreachable(isolated)

    def test_reachable_from_any_start(self):
        b = GraphBuilder()
        s1 = b.add_start()
        s2 = b.add_start()
        e1 = b.add_end()
        e2 = b.add_end()
        b.connect(s1, e1)
        b.connect(s2, e2)
        graph = b.build()
        assert reachable_from_starts(graph) == {s1, s2, e1, e2}
        assert "unreachable_node" not in validate_flow(graph).kinds()

    def test_summary(self, adult_check):
        summary = validate_flow(adult_check).summary
        assert summary.to_dict() == {
            "nodeCount": 5,
            "edgeCount": 4,
            "startCount": 1,
            "endCount": 2,
            "reachableCount": 5,
        }


class TestContentChecks:
    def test_invalid_expression(self, adult_check):
        graph = adult_check.replace_node("check", expression="age >=")
        warning = next(w for w in validate_flow(graph).warnings if w.kind == "invalid_expression")
        assert warning.node_id == "check"

    def test_invalid_function_body(self):
        b = GraphBuilder()
        start = b.add_start()
        fn = b.add_function("return (", label="Broken")
        end = b.add_end()
        b.connect(start, fn)
        b.connect(fn, end)
        kinds = validate_flow(b.build()).kinds()
        assert "invalid_function_body" in kinds

    def test_empty_variable_name(self, adult_check):
        graph = adult_check.replace_node("age", variable_name=" ")
        assert "empty_variable_name" in validate_flow(graph).kinds()


class TestResultSerialization:
    def test_to_dict_shape(self):
        result = validate_flow(_make_graph(with_false=False))
        data = result.to_dict()
        assert data["isValid"] is True
        assert data["errors"] == []
        assert data["warnings"][0] == {
            "kind": "missing_false_path",
            "message": 'Condition node "Big?" is missing FALSE path',
            "severity": "warning",
            "nodeId": "cond",
        }

    def test_round_trip(self):
        result = validate_flow(Graph())
        assert ValidationResult.from_dict(result.to_dict()) == result

    def test_issue_str(self):
        issue = Issue(kind="missing_end", message="Flow must have at least one End node")
        assert str(issue) == "[ERROR] [missing_end] Flow must have at least one End node"


class TestExtraRules:
    def test_custom_rule(self, adult_check):
        class NoMinors:
            name = "no_minors"

            def check(self, graph):
                return [
                    Issue(kind="no_minors", message="Minor end present", severity=Severity.WARNING)
                    for node in graph.nodes
                    if node.label == "Minor"
                ]

        rule = NoMinors()
        assert isinstance(rule, LintRule)
        result = validate_flow(adult_check, extra_rules=[rule])
        assert "no_minors" in result.kinds()
        assert "no_minors" not in validate_flow(adult_check).kinds()


class TestValidateOrRaise:
    def test_raises_on_errors(self):
        with pytest.raises(ValidationException) as excinfo:
            validate_or_raise(Graph())
        assert any(e.kind == "missing_start" for e in excinfo.value.errors)

    def test_returns_warnings(self):
        result = validate_or_raise(_make_graph(with_false=False))
        assert result.warnings

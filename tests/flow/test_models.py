"""Tests for the flow graph data models."""

from __future__ import annotations

import pytest

from ruleflow.flow.models import (
    Branch,
    Edge,
    EndData,
    Graph,
    GraphBuilder,
    GraphFormatError,
    IdSequence,
    InputData,
    Node,
    NodeKind,
    Position,
    StartData,
    coerce_value,
    parse_literal,
)


class TestLiterals:
    def test_integer(self):
        assert parse_literal("25") == 25
        assert isinstance(parse_literal("25"), int)

    def test_float(self):
        assert parse_literal("2.5") == 2.5
        assert parse_literal("-1e3") == -1000.0

    def test_text_unchanged(self):
        assert parse_literal("abc") == "abc"
        assert parse_literal("12abc") == "12abc"

    def test_input_parsed_value(self):
        assert InputData("age", "18").parsed_value == 18
        assert InputData("name", "Bob").parsed_value == "Bob"

    def test_coerce_booleans(self):
        assert coerce_value("true") is True
        assert coerce_value(" FALSE ") is False

    def test_coerce_passes_non_strings(self):
        assert coerce_value(3) == 3
        assert coerce_value(None) is None


class TestIdSequence:
    def test_shared_counter_across_prefixes(self):
        ids = IdSequence()
        assert ids.next("start") == "start_1"
        assert ids.next("end") == "end_2"

    def test_sequences_are_independent(self):
        first, second = IdSequence(), IdSequence()
        first.next("node")
        assert second.next("node") == "node_1"


class TestGraphBuilder:
    def test_generated_ids(self):
        b = GraphBuilder()
        start = b.add_start()
        cond = b.add_condition("x > 1")
        assert start == "start_1"
        assert cond == "condition_2"

    def test_default_edge_id(self):
        b = GraphBuilder()
        start = b.add_start()
        end = b.add_end()
        assert b.connect(start, end) == "edge_start_1_end_2"

    def test_branch_from_string(self):
        b = GraphBuilder()
        cond = b.add_condition("true")
        end = b.add_end()
        b.connect(cond, end, "true")
        graph = b.build()
        assert graph.edges[0].branch == Branch.TRUE

    def test_explicit_node_id_and_position(self):
        b = GraphBuilder()
        b.add_end("Done", node_id="done", position=Position(10, 20))
        node = b.build().node("done")
        assert node is not None
        assert node.position == Position(10, 20)
        assert node.label == "Done"


class TestGraphQueries:
    def test_node_lookup(self, adult_check):
        assert adult_check.node("check").kind == NodeKind.CONDITION
        assert adult_check.node("nope") is None

    def test_edges_from_by_branch(self, adult_check):
        true_edges = adult_check.edges_from("check", Branch.TRUE)
        assert [e.target for e in true_edges] == ["adult"]
        assert [e.target for e in adult_check.edges_from("check", "false")] == ["minor"]

    def test_edges_to(self, adult_check):
        assert [e.source for e in adult_check.edges_to("check")] == ["age"]

    def test_nodes_of_kind(self, adult_check):
        assert [n.id for n in adult_check.nodes_of_kind(NodeKind.END)] == ["adult", "minor"]


class TestCopyOnWrite:
    def test_replace_node_payload_field(self, adult_check):
        edited = adult_check.replace_node("age", literal_value="12")
        assert edited.node("age").payload.literal_value == "12"
        assert adult_check.node("age").payload.literal_value == "25"

    def test_without_node_drops_touching_edges(self, adult_check):
        edited = adult_check.without_node("check")
        assert edited.node("check") is None
        assert all("check" not in (e.source, e.target) for e in edited.edges)
        assert len(adult_check.edges) == 4

    def test_with_and_without_edge(self, adult_check):
        extra = Edge(id="e_extra", source="adult", target="minor")
        edited = adult_check.with_edge(extra)
        assert len(edited.edges) == 5
        assert len(edited.without_edge("e_extra").edges) == 4

    def test_collections_are_tuples(self):
        graph = Graph(nodes=[Node("a", NodeKind.START, StartData())], edges=[])
        assert isinstance(graph.nodes, tuple)
        assert isinstance(graph.edges, tuple)

    def test_origin_is_copied(self):
        origin = {"id": "x", "details": {"a": 1}}
        graph = Graph(origin=origin)
        origin["details"]["a"] = 2
        assert graph.origin["details"]["a"] == 1

    def test_origin_is_read_only(self):
        graph = Graph(origin={"id": "x"})
        with pytest.raises(TypeError):
            graph.origin["id"] = "y"
        assert graph.with_positions({}).origin is graph.origin

    def test_with_positions(self, adult_check):
        moved = adult_check.with_positions({"start": Position(5, 6)})
        assert moved.node("start").position == Position(5, 6)
        assert moved.node("age").position == adult_check.node("age").position


class TestGraphJson:
    def test_round_trip(self, adult_check):
        restored = Graph.from_dict(adult_check.to_dict(), name=adult_check.name)
        assert restored == adult_check

    def test_node_shape(self, adult_check):
        data = adult_check.to_dict()
        age = next(n for n in data["nodes"] if n["id"] == "age")
        assert age == {
            "id": "age",
            "type": "input",
            "position": {"x": 0.0, "y": 0.0},
            "data": {"label": "Age", "variable": "age", "value": "25"},
        }

    def test_branch_serialized_as_source_handle(self, adult_check):
        edges = adult_check.to_dict()["edges"]
        handles = {e["target"]: e.get("sourceHandle") for e in edges}
        assert handles == {"age": None, "check": None, "adult": "true", "minor": "false"}

    def test_unknown_node_type(self):
        with pytest.raises(GraphFormatError, match="Unknown node type"):
            Graph.from_dict({"nodes": [{"id": "a", "type": "loop"}], "edges": []})

    def test_missing_nodes_array(self):
        with pytest.raises(GraphFormatError):
            Graph.from_dict({"edges": []})

    def test_edge_missing_target(self):
        with pytest.raises(GraphFormatError, match="missing field"):
            Graph.from_dict({"nodes": [], "edges": [{"source": "a"}]})

    def test_edge_id_defaulted(self):
        graph = Graph.from_dict({"nodes": [], "edges": [{"source": "a", "target": "b"}]})
        assert graph.edges[0].id == "edge_a_b_0"

    def test_legacy_link_label(self):
        graph = Graph.from_dict(
            {
                "nodes": [
                    {"id": "e", "type": "end", "data": {"label": "TRUE: → Weekend_Rule"}}
                ],
                "edges": [],
            }
        )
        payload = graph.node("e").payload
        assert isinstance(payload, EndData)
        assert payload.link_target == "Weekend_Rule"

    def test_explicit_link_target_wins(self):
        graph = Graph.from_dict(
            {
                "nodes": [
                    {
                        "id": "e",
                        "type": "end",
                        "data": {"label": "TRUE: → Old", "linkTarget": "New"},
                    }
                ],
                "edges": [],
            }
        )
        assert graph.node("e").payload.link_target == "New"

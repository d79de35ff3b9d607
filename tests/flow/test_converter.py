"""Tests for rule-document import and export."""

from __future__ import annotations

import pytest

from ruleflow.flow.converter import (
    ConversionError,
    RuleShape,
    detect_shape,
    export_rule,
    export_rules,
    import_rule,
    import_rules,
    slugify,
)
from ruleflow.flow.models import Branch, Graph, GraphBuilder, NodeKind, Position
from ruleflow.flow.simulator import FlowSimulator
from ruleflow.flow.validator import validate_flow


class TestDetectShape:
    def test_shapes(self, endpoint_document, decision_document, evaluation_document):
        assert detect_shape(endpoint_document) == RuleShape.ENDPOINT
        assert detect_shape(decision_document) == RuleShape.DECISION
        assert detect_shape(evaluation_document) == RuleShape.EVALUATION

    @pytest.mark.parametrize("document", [{}, {"type": "menu"}, {"Evaluations": []}, [1]])
    def test_unknown(self, document):
        with pytest.raises(ConversionError, match="Unsupported workflow format"):
            detect_shape(document)


class TestEndpointImport:
    def test_structure(self, endpoint_document):
        graph = import_rule(endpoint_document)
        assert [n.id for n in graph.nodes] == ["start_1", "function_2", "end_3"]
        assert [(e.source, e.target) for e in graph.edges] == [
            ("start_1", "function_2"),
            ("function_2", "end_3"),
        ]
        assert graph.name == "Sales Queue"
        assert graph.node("start_1").payload.id_label == "Sales_Endpoint"
        assert graph.node("function_2").position == Position(200, 200)

    def test_function_body(self, endpoint_document):
        body = import_rule(endpoint_document).node("function_2").payload.body
        assert body == (
            "// Queue: Sales\n"
            "// Is Default: true\n"
            "\n"
            "return {\n"
            '  queueName: "Sales",\n'
            "  isDefault: true\n"
            "};"
        )

    def test_simulates_to_completion(self, endpoint_document):
        trace = FlowSimulator().simulate(import_rule(endpoint_document))
        assert trace.steps[-1].message == "Flow completed"
        assert trace.steps[-1].variables == {"queueName": "Sales", "isDefault": True}

    def test_valid(self, endpoint_document):
        assert validate_flow(import_rule(endpoint_document)).is_valid

    def test_missing_details(self):
        with pytest.raises(ConversionError, match="details"):
            import_rule({"id": "x", "type": "endpoint"})


class TestDecisionImport:
    def test_chain(self, decision_document):
        graph = import_rule(decision_document)
        assert [n.id for n in graph.nodes] == [
            "start_1",
            "condition_2",
            "end_true_3",
            "condition_4",
            "end_true_5",
            "end_false_6",
        ]
        assert [(e.source, e.target, e.branch) for e in graph.edges] == [
            ("start_1", "condition_2", None),
            ("condition_2", "end_true_3", Branch.TRUE),
            ("condition_2", "condition_4", Branch.FALSE),
            ("condition_4", "end_true_5", Branch.TRUE),
            ("condition_4", "end_false_6", Branch.FALSE),
        ]

    def test_labels_and_positions(self, decision_document):
        graph = import_rule(decision_document)
        assert graph.node("condition_4").payload.expression == "queue.QueueDepth('Sales') > 10"
        assert graph.node("condition_4").position == Position(200, 350)
        assert graph.node("end_true_5").label == "TRUE: Condition 2"
        assert graph.node("end_true_5").position == Position(400, 350)
        assert graph.node("end_false_6").label == "FALSE: All conditions failed"

    def test_valid(self, decision_document):
        result = validate_flow(import_rule(decision_document))
        assert result.is_valid
        assert result.warnings == []

    def test_falls_through_to_false_end(self, decision_document):
        graph = import_rule(decision_document)
        trace = FlowSimulator().simulate(graph, {"Tier": "silver"})
        assert trace.visited()[-1] == "end_false_6"

    def test_no_expressions(self):
        graph = import_rule({"id": "d", "type": "decision", "label": "Empty"})
        assert [n.kind for n in graph.nodes] == [NodeKind.START, NodeKind.END]
        assert graph.edges[0].branch is None


class TestEvaluationImport:
    def test_ordered_by_order(self, evaluation_document):
        graph = import_rule(evaluation_document)
        conditions = graph.nodes_of_kind(NodeKind.CONDITION)
        assert [c.label for c in conditions] == ["Main Menu (1)", "Main Menu (2)"]
        assert conditions[0].payload.expression == "session['lang'] == 'es'"

    def test_results(self, evaluation_document):
        graph = import_rule(evaluation_document)
        assert graph.node("end_true_3").label == "TRUE: Spanish"
        linked = graph.node("end_true_5")
        assert linked.label == "TRUE: → Weekend_Rule"
        assert linked.payload.link_target == "Weekend_Rule"
        assert linked.position == Position(450, 380)
        default = graph.node("end_default_6")
        assert default.label == "DEFAULT: General"
        assert default.position == Position(200, 560)

    def test_simulates_session_branch(self, evaluation_document, pinned_settings):
        graph = import_rule(evaluation_document)
        simulator = FlowSimulator(settings=pinned_settings)
        assert simulator.simulate(graph, {"lang": "es"}).visited()[-1] == "end_true_3"
        assert simulator.simulate(graph, {"lang": "en"}).visited()[-1] == "end_default_6"

    def test_missing_expression_defaults_true(self):
        graph = import_rule(
            {"Id": "R", "Name": "R", "Evaluations": [{"Order": 1, "Result": {}}]}
        )
        condition = graph.nodes_of_kind(NodeKind.CONDITION)[0]
        assert condition.payload.expression == "true"

    def test_default_decision_link(self):
        graph = import_rule(
            {
                "Id": "R",
                "Name": "R",
                "Evaluations": [],
                "DefaultResult": {"ResultValue": {"Decision": "Fallback"}},
            }
        )
        end = graph.nodes_of_kind(NodeKind.END)[0]
        assert end.label == "DEFAULT: → Fallback"
        assert end.payload.link_target == "Fallback"

    @pytest.mark.parametrize(
        "document",
        [
            {"Id": "R", "Name": "R", "Evaluations": [None]},
            {"Id": "R", "Name": "R", "Evaluations": "abc"},
            {"Id": "R", "Name": "R", "Evaluations": [{"Order": "1"}, {"Order": 2}]},
            {"Id": "R", "Name": "R", "Evaluations": [{"Order": 1, "Expression": 5}]},
            {"id": "d", "type": "decision", "details": "abc"},
            {"id": "d", "type": "decision", "details": {"expressions": "a > 1"}},
            {"id": "d", "type": "decision", "details": {"expressions": [None]}},
            {"id": "e", "type": "endpoint", "details": ["Sales"]},
        ],
    )
    def test_malformed_documents(self, document):
        with pytest.raises(ConversionError):
            import_rule(document)

    def test_queue_name_with_quotes_and_newline(self, pinned_settings):
        document = {
            "id": "VIP",
            "type": "endpoint",
            "label": "VIP",
            "details": {"queueName": 'VIP "Gold"\nTier', "isDefault": False},
        }
        graph = import_rule(document)
        trace = FlowSimulator(settings=pinned_settings).simulate(graph)
        assert not trace.has_errors
        assert trace.steps[-1].variables["queueName"] == 'VIP "Gold"\nTier'
        reloaded = Graph.from_dict(graph.to_dict(), name=graph.name)
        assert export_rule(reloaded) == document


class TestExport:
    def test_endpoint_round_trip(self, endpoint_document):
        assert export_rule(import_rule(endpoint_document)) == endpoint_document

    def test_round_trip_without_origin(self, endpoint_document):
        graph = import_rule(endpoint_document)
        reloaded = Graph.from_dict(graph.to_dict(), name=graph.name)
        assert reloaded.origin is None
        assert export_rule(reloaded) == endpoint_document

    def test_export_returns_copy(self, decision_document):
        graph = import_rule(decision_document)
        exported = export_rule(graph)
        exported["details"]["expressions"].clear()
        assert export_rule(graph) == decision_document

    def test_origin_survives_edits(self, evaluation_document):
        graph = import_rule(evaluation_document).replace_node("condition_2", label="Renamed")
        assert export_rule(graph) == evaluation_document

    def test_derived_decision(self):
        b = GraphBuilder("VIP Check!")
        start = b.add_start()
        cond = b.add_condition("${Tier} == 'gold'")
        cond2 = b.add_condition("")
        b.connect(start, cond)
        b.connect(cond, cond2, Branch.FALSE)
        assert export_rule(b.build()) == {
            "id": "VIP_Check",
            "type": "decision",
            "label": "VIP Check!",
            "details": {
                "expressions": ["${Tier} == 'gold'", "true"],
                "resultType": "endpoint",
            },
        }

    def test_derived_default(self):
        b = GraphBuilder()
        b.add_start()
        assert export_rule(b.build()) == {
            "id": "Exported_Workflow",
            "type": "endpoint",
            "label": "Exported Flow",
            "details": {"queueName": "DefaultQueue", "isDefault": False},
        }

    def test_export_rules_skips_empty(self, endpoint_document):
        graphs = [import_rule(endpoint_document), Graph(name="empty")]
        assert export_rules(graphs) == [endpoint_document]


class TestImportRules:
    def test_list(self, endpoint_document, decision_document):
        graphs = import_rules([endpoint_document, decision_document])
        assert [g.name for g in graphs] == ["Sales Queue", "Route VIP"]

    def test_ids_restart_per_document(self, endpoint_document):
        first, second = import_rules([endpoint_document, endpoint_document])
        assert [n.id for n in first.nodes] == [n.id for n in second.nodes]

    def test_bare_document(self, endpoint_document):
        assert len(import_rules(endpoint_document)) == 1

    def test_rejects_scalar(self):
        with pytest.raises(ConversionError):
            import_rules("nope")

    def test_one_bad_document_fails(self, endpoint_document):
        with pytest.raises(ConversionError):
            import_rules([endpoint_document, {"type": "other"}])


class TestSlugify:
    def test_slug(self):
        assert slugify("My  Rule (v2)") == "My_Rule_v2"
        assert slugify("!!!") == "Exported_Workflow"

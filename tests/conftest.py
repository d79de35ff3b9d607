"""Shared fixtures for flow engine tests."""

from __future__ import annotations

import datetime

import pytest
from dotenv import load_dotenv

from ruleflow.flow.models import Branch, Graph, GraphBuilder
from ruleflow.settings import EngineSettings

# Optional local overrides (RULEFLOW_* variables) from the project root
load_dotenv(".env.local")

REFERENCE_TIME = datetime.datetime(2024, 3, 15, 10, 30)  # a Friday


def build_adult_check(age: str = "25") -> Graph:
    """Start -> Input(age) -> Condition(age >= 18) -> Adult / Minor."""
    b = GraphBuilder("adult check")
    start = b.add_start(node_id="start")
    age_input = b.add_input("age", age, label="Age", node_id="age")
    check = b.add_condition("age >= 18", label="Is adult?", node_id="check")
    adult = b.add_end("Adult", node_id="adult")
    minor = b.add_end("Minor", node_id="minor")
    b.connect(start, age_input)
    b.connect(age_input, check)
    b.connect(check, adult, Branch.TRUE)
    b.connect(check, minor, Branch.FALSE)
    return b.build()


@pytest.fixture()
def adult_check() -> Graph:
    return build_adult_check()


@pytest.fixture()
def pinned_settings() -> EngineSettings:
    """Settings with the date/time helpers pinned to a fixed instant."""
    return EngineSettings(reference_time=REFERENCE_TIME)


@pytest.fixture()
def endpoint_document() -> dict:
    return {
        "id": "Sales_Endpoint",
        "type": "endpoint",
        "label": "Sales Queue",
        "details": {"queueName": "Sales", "isDefault": True},
    }


@pytest.fixture()
def decision_document() -> dict:
    return {
        "id": "Route_VIP",
        "type": "decision",
        "label": "Route VIP",
        "details": {
            "expressions": ["${Tier} == 'gold'", "queue.QueueDepth('Sales') > 10"],
            "resultType": "endpoint",
        },
    }


@pytest.fixture()
def evaluation_document() -> dict:
    return {
        "Id": "Main_Menu",
        "Name": "Main Menu",
        "Evaluations": [
            {
                "Order": 2,
                "Expression": "today.Equals('SAT', 'SUN')",
                "Result": {"ResultValue": {"Decision": {"Name": "Weekend_Rule"}}},
            },
            {
                "Order": 1,
                "Expression": "session['lang'] == 'es'",
                "Result": {"ResultValue": {"EndPoint": {"Qname": "Spanish"}}},
            },
        ],
        "DefaultResult": {"ResultValue": {"EndPoint": {"Qname": "General"}}},
    }

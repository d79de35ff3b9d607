"""Saved-flow files.

A saved flow is Graph JSON plus ``name``, ``createdAt`` (ISO-8601),
``version`` and, optionally, the validation result at save time and the
rule document the graph was imported from (``originalData``).
"""

from __future__ import annotations

import copy
import datetime
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ruleflow.flow.models import Graph, GraphFormatError
from ruleflow.flow.validator import ValidationResult, validate_flow

logger = logging.getLogger(__name__)

FLOW_FILE_VERSION = "1.0"


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@dataclass
class SavedFlow:
    """A named graph as written to disk.

    Attributes:
        name: Flow name; also used to build the file name.
        graph: The flow graph.
        created_at: ISO-8601 creation timestamp.
        version: File format version.
        validation: Validation result captured when the flow was saved.
    """

    name: str
    graph: Graph
    created_at: str = field(default_factory=_now_iso)
    version: str = FLOW_FILE_VERSION
    validation: ValidationResult | None = None

    @classmethod
    def from_graph(
        cls, graph: Graph, name: str | None = None, validate: bool = True
    ) -> SavedFlow:
        """Wrap *graph*, optionally capturing its current validation result."""
        return cls(
            name=name or graph.name or "Untitled flow",
            graph=graph,
            validation=validate_flow(graph) if validate else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, **self.graph.to_dict()}
        data["createdAt"] = self.created_at
        data["version"] = self.version
        if self.validation is not None:
            data["validation"] = self.validation.to_dict()
        if self.graph.origin is not None:
            data["originalData"] = copy.deepcopy(dict(self.graph.origin))
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SavedFlow:
        """Reconstruct a saved flow.

        Raises:
            GraphFormatError: If the embedded Graph JSON is malformed.
        """
        name = str(data.get("name", ""))
        graph = Graph.from_dict(data, name=name)
        origin = data.get("originalData")
        if origin is not None:
            if not isinstance(origin, dict):
                raise GraphFormatError("'originalData' must be an object")
            graph = Graph(nodes=graph.nodes, edges=graph.edges, name=graph.name, origin=origin)
        validation = data.get("validation")
        return cls(
            name=name,
            graph=graph,
            created_at=str(data.get("createdAt") or _now_iso()),
            version=str(data.get("version", FLOW_FILE_VERSION)),
            validation=ValidationResult.from_dict(validation) if validation else None,
        )

    def save_to_file(self, path: str | Path) -> None:
        """Write this flow to a JSON file, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False))

    @classmethod
    def load_from_file(cls, path: str | Path) -> SavedFlow:
        return cls.from_dict(json.loads(Path(path).read_text()))


def flow_file_name(name: str, created_at: str) -> str:
    """Return ``<slug>_<YYYY-MM-DD>.json`` for a flow."""
    slug = re.sub(r"[^a-z0-9]", "_", name, flags=re.IGNORECASE).lower()
    return f"{slug}_{created_at[:10]}.json"


def save_flow(flow: SavedFlow, directory: str | Path) -> Path:
    """Persist *flow* into *directory*.

    Returns:
        Path to the written file.
    """
    if flow.validation is not None and not flow.validation.is_valid:
        logger.warning(
            "Saving flow %r with %d validation error(s)",
            flow.name,
            len(flow.validation.errors),
        )
    path = Path(directory) / flow_file_name(flow.name, flow.created_at)
    flow.save_to_file(path)
    logger.info("Saved flow %r to %s", flow.name, path)
    return path


def is_saved_flow(data: Any) -> bool:
    """Return True if *data* looks like a saved-flow document."""
    return (
        isinstance(data, dict)
        and isinstance(data.get("nodes"), list)
        and ("createdAt" in data or "version" in data)
    )

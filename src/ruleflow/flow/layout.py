"""Presentation helpers: overlap detection and automatic layout.

Neither function affects validity or simulation.  Node sizes are
nominal per node kind, matching how the editor draws them.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

from ruleflow.flow.models import Graph, Node, NodeKind, Position

logger = logging.getLogger(__name__)

NODE_SIZES: dict[NodeKind, tuple[float, float]] = {
    NodeKind.START: (120, 50),
    NodeKind.END: (120, 50),
    NodeKind.INPUT: (150, 120),
    NodeKind.CONDITION: (150, 120),
    NodeKind.FUNCTION: (180, 160),
}
DEFAULT_SIZE = (120, 80)

LEVEL_HEIGHT = 200
NODE_SPACING = 200
ORIGIN = 100
MIN_X = 50
GRID_COLUMNS = 3
GRID_ROW_HEIGHT = 150


@dataclass(frozen=True)
class Overlap:
    first: str
    second: str
    message: str


def node_size(node: Node) -> tuple[float, float]:
    return NODE_SIZES.get(node.kind, DEFAULT_SIZE)


def detect_overlaps(graph: Graph, padding: float = 20) -> list[Overlap]:
    """Return every pair of nodes whose padded boxes intersect."""
    overlaps: list[Overlap] = []
    nodes = graph.nodes
    for i, a in enumerate(nodes):
        aw, ah = node_size(a)
        for b in nodes[i + 1:]:
            bw, bh = node_size(b)
            apart = (
                a.position.x + aw + padding < b.position.x
                or b.position.x + bw + padding < a.position.x
                or a.position.y + ah + padding < b.position.y
                or b.position.y + bh + padding < a.position.y
            )
            if not apart:
                overlaps.append(
                    Overlap(
                        first=a.id,
                        second=b.id,
                        message=f'Nodes "{a.label}" and "{b.label}" are overlapping',
                    )
                )
    return overlaps


def auto_layout(graph: Graph) -> Graph:
    """Return a copy of *graph* with nodes arranged in BFS levels.

    Nodes reachable from the first Start node are placed one level per
    BFS depth, each level centred on the start column.  Remaining nodes
    go into a grid below the last level.  A graph without a Start node
    is returned unchanged.
    """
    starts = graph.nodes_of_kind(NodeKind.START)
    if not starts:
        return graph

    known = graph.node_ids()
    levels: dict[int, list[str]] = {}
    visited: set[str] = set()
    queue: deque[tuple[str, int]] = deque([(starts[0].id, 0)])
    while queue:
        node_id, level = queue.popleft()
        if node_id in visited:
            continue
        visited.add(node_id)
        levels.setdefault(level, []).append(node_id)
        for edge in graph.edges_from(node_id):
            if edge.target in known and edge.target not in visited:
                queue.append((edge.target, level + 1))

    positions: dict[str, Position] = {}
    for level, node_ids in levels.items():
        y = ORIGIN + level * LEVEL_HEIGHT
        width = (len(node_ids) - 1) * NODE_SPACING
        start_x = max(MIN_X, ORIGIN - width / 2)
        for index, node_id in enumerate(node_ids):
            positions[node_id] = Position(start_x + index * NODE_SPACING, y)

    grid_top = ORIGIN + (max(levels) + 1) * LEVEL_HEIGHT
    leftovers = [n for n in graph.nodes if n.id not in visited]
    for index, node in enumerate(leftovers):
        positions[node.id] = Position(
            ORIGIN + (index % GRID_COLUMNS) * NODE_SPACING,
            grid_top + (index // GRID_COLUMNS) * GRID_ROW_HEIGHT,
        )

    logger.debug(
        "Laid out %d level(s) and %d unreachable node(s)", len(levels), len(leftovers)
    )
    return graph.with_positions(positions)

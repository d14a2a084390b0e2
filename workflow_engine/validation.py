"""
Graph parsing and validation.

Problems found here are reported as warnings: bad nodes and dangling edges
are dropped, and the run proceeds with whatever remains.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from shared.logger import get_logger
from workflow_engine.blocks import get_handler
from workflow_engine.blocks.control import DEFAULT_ROUTE, NO, YES
from workflow_engine.schema import BlockCategory, ConnectorType, Edge, Node

logger = get_logger(__name__)


@dataclass
class WorkflowGraph:
    """Parsed nodes and edges with adjacency in declaration order."""

    nodes: Dict[str, Node] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def outgoing(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def has_incoming(self, node_id: str) -> bool:
        return any(edge.target == node_id for edge in self.edges)

    def join_sources(self, node_id: str) -> Set[str]:
        return {edge.source for edge in self.edges if edge.target == node_id and edge.connector == ConnectorType.JOIN}

    def triggers(self) -> List[Node]:
        return [node for node in self.nodes.values() if is_trigger(node)]

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)


def is_trigger(node: Node) -> bool:
    handler = get_handler(node.label)
    if handler is not None:
        return handler.category == BlockCategory.TRIGGERS
    return node.category == BlockCategory.TRIGGERS.value


def _parse_nodes(raw_nodes: Iterable[Any], graph: WorkflowGraph) -> None:
    for index, raw in enumerate(raw_nodes):
        try:
            node = raw if isinstance(raw, Node) else Node.model_validate(raw)
        except PydanticValidationError as exc:
            graph.warn(f"Node #{index} is malformed and was skipped: {exc.errors()[0].get('msg')}")
            continue
        if node.id in graph.nodes:
            graph.warn(f"Duplicate node id '{node.id}'; keeping the first declaration")
            continue
        graph.nodes[node.id] = node


def _parse_edges(raw_edges: Iterable[Any], graph: WorkflowGraph) -> None:
    for index, raw in enumerate(raw_edges):
        try:
            edge = raw if isinstance(raw, Edge) else Edge.model_validate(raw)
        except PydanticValidationError as exc:
            graph.warn(f"Edge #{index} is malformed and was skipped: {exc.errors()[0].get('msg')}")
            continue
        missing = [end for end in (edge.source, edge.target) if end not in graph.nodes]
        if missing:
            graph.warn(f"Edge '{edge.id}' references unknown node(s) {', '.join(missing)} and was ignored")
            continue
        graph.edges.append(edge)


def _check_node(node: Node, graph: WorkflowGraph) -> None:
    handler = get_handler(node.label)
    if handler is None:
        graph.warn(f"Node '{node.id}' uses unknown block '{node.label}'")
        return

    outgoing = graph.outgoing(node.id)
    routes = {edge.route_label.lower() for edge in outgoing} | {edge.connector.value.lower() for edge in outgoing}

    if handler.routes == (YES, NO):
        for branch in (YES, NO):
            if branch not in routes:
                graph.warn(f"Condition '{node.id}' ({node.label}) has no '{branch}' branch connected")
    elif node.label == "switch":
        config = node.data.resolved_config()
        if config.get("defaultCase") is False:
            graph.warn(f"Switch '{node.id}' has defaultCase disabled; unmatched values still route to 'default'")
        elif DEFAULT_ROUTE not in routes:
            graph.warn(f"Switch '{node.id}' has no 'default' branch connected")

    if handler.category == BlockCategory.TRIGGERS and graph.has_incoming(node.id):
        graph.warn(f"Trigger '{node.id}' has incoming edges; triggers only start runs")

    if handler.routes:
        for edge in outgoing:
            if edge.connector in (ConnectorType.NEXT, ConnectorType.FORK) and not (edge.label or edge.sourceHandle):
                graph.warn(f"Edge '{edge.id}' leaves condition '{node.id}' without a route label and is never taken")


def build_graph(raw_nodes: Iterable[Any], raw_edges: Optional[Iterable[Any]] = None) -> WorkflowGraph:
    """Parse ``nodes``/``edges`` JSON and collect validation warnings."""
    graph = WorkflowGraph()
    _parse_nodes(raw_nodes or [], graph)
    _parse_edges(raw_edges or [], graph)
    for node in graph.nodes.values():
        _check_node(node, graph)
    if graph.nodes and not graph.triggers():
        graph.warn("Workflow has no trigger block; starting from the first unconnected node")
    return graph


def validate_workflow(raw_nodes: Iterable[Any], raw_edges: Optional[Iterable[Any]] = None) -> List[str]:
    """Return the warnings for a graph without running it."""
    return build_graph(raw_nodes, raw_edges).warnings

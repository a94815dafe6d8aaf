"""
Graph Model - immutable view of a flow's nodes and connections.

Usage:
    graph = FlowGraph.from_dict(flow.flow_data)
    graph.triggers()                       -> [FlowNode]
    graph.outgoing('check-status', 'true') -> [FlowConnection]
    graph.is_acyclic_from_triggers()       -> bool
"""

import logging
from collections import OrderedDict
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from flow_automation.flow_engine.errors import CycleDetected, GraphError
from flow_automation.flow_engine.nodes import CONDITION_HANDLES, FlowConnection, FlowNode

logger = logging.getLogger(__name__)


def structural_errors(nodes: Iterable[FlowNode], connections: Iterable[FlowConnection]) -> List[GraphError]:
    """
    Collect every structural problem instead of stopping at the first one.

    Checks duplicated node ids, connections to missing nodes and condition
    outputs without a true/false handle.
    """
    errors: List[GraphError] = []
    seen: Dict[str, FlowNode] = {}

    for node in nodes:
        if node.id in seen:
            errors.append(GraphError(f"Duplicated node id '{node.id}'", node_id=node.id))
        else:
            seen[node.id] = node

    for conn in connections:
        for end, node_id in (('source', conn.source), ('target', conn.target)):
            if node_id not in seen:
                errors.append(GraphError(
                    f"Connection '{conn.id}' references missing {end} node '{node_id}'",
                    node_id=node_id,
                    connection_id=conn.id,
                ))

        source = seen.get(conn.source)
        if source is not None and source.is_condition and conn.source_handle not in CONDITION_HANDLES:
            errors.append(GraphError(
                f"Condition node '{source.id}' output '{conn.id}' must use handle 'true' or 'false'",
                node_id=source.id,
                connection_id=conn.id,
            ))

    return errors


class FlowGraph:
    """
    Nodes and connections of one flow snapshot.

    Construction raises GraphError on the first structural problem; the
    instance never changes afterwards (edits return a new graph).
    """

    def __init__(self, nodes: Iterable[FlowNode], connections: Iterable[FlowConnection]):
        nodes = tuple(nodes)
        connections = tuple(connections)

        errors = structural_errors(nodes, connections)
        if errors:
            raise errors[0]

        self._nodes: Mapping[str, FlowNode] = MappingProxyType(OrderedDict((n.id, n) for n in nodes))
        self._connections: Tuple[FlowConnection, ...] = connections

        outgoing: Dict[str, List[FlowConnection]] = {n.id: [] for n in nodes}
        incoming: Dict[str, List[FlowConnection]] = {n.id: [] for n in nodes}
        for conn in connections:
            outgoing[conn.source].append(conn)
            incoming[conn.target].append(conn)
        self._outgoing = {k: tuple(v) for k, v in outgoing.items()}
        self._incoming = {k: tuple(v) for k, v in incoming.items()}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'FlowGraph':
        """Build a graph from the stored {"nodes": [...], "connections": [...]} mapping"""
        data = data or {}
        nodes = [FlowNode.from_dict(n) for n in data.get('nodes') or []]
        connections = [FlowConnection.from_dict(c) for c in data.get('connections') or data.get('edges') or []]
        return cls(nodes, connections)

    @property
    def nodes(self) -> Mapping[str, FlowNode]:
        return self._nodes

    @property
    def connections(self) -> Tuple[FlowConnection, ...]:
        return self._connections

    def node(self, node_id: str) -> FlowNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise GraphError(f"Node not found: {node_id}", node_id=node_id)

    def outgoing(self, node_id: str, handle: Optional[str] = None) -> List[FlowConnection]:
        """Outgoing connections of a node, optionally restricted to one output handle"""
        conns = self._outgoing.get(node_id, ())
        if handle is None:
            return list(conns)
        return [c for c in conns if c.source_handle == handle]

    def incoming(self, node_id: str) -> List[FlowConnection]:
        return list(self._incoming.get(node_id, ()))

    def triggers(self) -> List[FlowNode]:
        return [n for n in self._nodes.values() if n.is_trigger]

    def reachable_from_triggers(self) -> Set[str]:
        reached: Set[str] = set()
        stack = [n.id for n in self.triggers()]
        while stack:
            node_id = stack.pop()
            if node_id in reached:
                continue
            reached.add(node_id)
            stack.extend(c.target for c in self._outgoing.get(node_id, ()))
        return reached

    def find_cycle(self) -> Optional[List[str]]:
        """
        Depth-first search from every trigger keeping the nodes of the active
        path; returns the first cycle found as a node-id path, or None.
        """
        finished: Set[str] = set()

        for trigger in self.triggers():
            if trigger.id in finished:
                continue

            path: List[str] = [trigger.id]
            on_path: Set[str] = {trigger.id}
            iterators = [iter(self._outgoing.get(trigger.id, ()))]

            while iterators:
                conn = next(iterators[-1], None)
                if conn is None:
                    iterators.pop()
                    done = path.pop()
                    on_path.discard(done)
                    finished.add(done)
                    continue

                target = conn.target
                if target in on_path:
                    return path[path.index(target):] + [target]
                if target in finished:
                    continue

                path.append(target)
                on_path.add(target)
                iterators.append(iter(self._outgoing.get(target, ())))

        return None

    def is_acyclic_from_triggers(self) -> bool:
        return self.find_cycle() is None

    def check_acyclic(self):
        """Raise CycleDetected if any cycle is reachable from a trigger"""
        cycle = self.find_cycle()
        if cycle:
            raise CycleDetected(cycle)

    def with_node_config(self, node_id: str, new_config: Mapping[str, Any]) -> 'FlowGraph':
        """
        Return a new graph where node_id carries new_config.

        The receiver is left untouched.
        """
        if node_id not in self._nodes:
            raise GraphError(f"Node not found: {node_id}", node_id=node_id)

        nodes = []
        for node in self._nodes.values():
            if node.id == node_id:
                data = node.to_dict()
                data['config'] = dict(new_config)
                node = FlowNode.from_dict(data)
            nodes.append(node)

        return FlowGraph(nodes, self._connections)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nodes': [n.to_dict() for n in self._nodes.values()],
            'connections': [c.to_dict() for c in self._connections],
        }


def update_node_config(flow_data: Mapping[str, Any], node_id: str, new_config: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Pure edit of one node's configuration.

    Args:
        flow_data: Stored graph mapping {"nodes": [...], "connections": [...]}
        node_id: Node to edit
        new_config: Replacement configuration

    Returns:
        New graph mapping; flow_data is not modified
    """
    graph = FlowGraph.from_dict(flow_data).with_node_config(node_id, new_config)
    logger.debug(f"Updated config for node {node_id}")

    updated = {k: v for k, v in flow_data.items() if k != 'edges'}
    updated.update(graph.to_dict())
    return updated

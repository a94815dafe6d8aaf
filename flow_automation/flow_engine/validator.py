"""
Flow Validator - static checks run before activation and before every execution.

Errors block execution:
- no trigger node
- connections referencing missing nodes (and other structural problems)
- cycles reachable from a trigger
- invalid settings

Warnings do not:
- nodes with an empty configuration
- action/condition nodes unreachable from any trigger
- nodes whose effect has no registered executor
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from flow_automation.flow_engine.errors import GraphError
from flow_automation.flow_engine.graph import FlowGraph, structural_errors
from flow_automation.flow_engine.nodes import FlowConnection, FlowNode, FlowSettings, NodeType

logger = logging.getLogger(__name__)

# Node types the engine runs itself; every other type needs an executor
ENGINE_NODE_TYPES = {NodeType.TRIGGER, NodeType.CONDITION, NodeType.DELAY}


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'isValid': self.is_valid,
            'errors': self.errors,
            'warnings': self.warnings,
        }


def _issue(message: str, kind: str, node_id: Optional[str] = None, connection_id: Optional[str] = None) -> Dict[str, Any]:
    issue = {'message': message, 'kind': kind}
    if node_id:
        issue['nodeId'] = node_id
    if connection_id:
        issue['connectionId'] = connection_id
    return issue


class FlowValidator:
    """
    Pure validation of a flow definition.

    Usage:
        result = FlowValidator(registry).validate(flow)
        if not result.is_valid:
            raise ValidationError(result.errors)
    """

    def __init__(self, registry=None):
        """
        Args:
            registry: Optional EffectRegistry; enables missing-executor warnings
        """
        self.registry = registry

    def validate(self, flow) -> ValidationResult:
        """Validate a Flow record (uses flow.flow_data and flow.settings)"""
        return self.validate_definition(flow.flow_data or {}, flow.settings or {})

    def validate_definition(
        self,
        flow_data: Mapping[str, Any],
        settings: Optional[Mapping[str, Any]] = None,
    ) -> ValidationResult:
        errors: List[Dict[str, Any]] = []
        warnings: List[Dict[str, Any]] = []

        nodes: List[FlowNode] = []
        for raw in flow_data.get('nodes') or []:
            try:
                nodes.append(FlowNode.from_dict(raw))
            except GraphError as e:
                errors.append(_issue(e.message, e.kind, node_id=e.node_id or raw.get('id')))

        connections: List[FlowConnection] = []
        for raw in flow_data.get('connections') or flow_data.get('edges') or []:
            try:
                connections.append(FlowConnection.from_dict(raw))
            except GraphError as e:
                errors.append(_issue(e.message, e.kind, connection_id=e.connection_id))

        for e in structural_errors(nodes, connections):
            errors.append(_issue(e.message, e.kind, node_id=e.node_id, connection_id=e.connection_id))

        if not any(n.is_trigger for n in nodes):
            errors.append(_issue('Flow must have at least one trigger node', 'missing_trigger'))

        for node in nodes:
            if not node.raw_config:
                warnings.append(_issue(f"Node '{node.label or node.id}' is not configured", 'empty_config', node_id=node.id))

        if self.registry is not None:
            for node in nodes:
                if node.type not in ENGINE_NODE_TYPES and not self.registry.has(node.executor_key):
                    warnings.append(_issue(
                        f"No executor registered for '{node.executor_key}' (node '{node.id}')",
                        'missing_executor',
                        node_id=node.id,
                    ))

        if not errors:
            graph = FlowGraph(nodes, connections)
            cycle = graph.find_cycle()
            if cycle:
                errors.append(_issue(f"Cycle detected: {' -> '.join(cycle)}", 'cycle_detected', node_id=cycle[0]))

            reachable = graph.reachable_from_triggers()
            for node in nodes:
                if node.type in (NodeType.ACTION, NodeType.CONDITION) and node.id not in reachable:
                    warnings.append(_issue(
                        f"Node '{node.label or node.id}' is not reachable from any trigger",
                        'unreachable_node',
                        node_id=node.id,
                    ))

        try:
            FlowSettings.from_dict(settings)
        except (TypeError, ValueError) as e:
            errors.append(_issue(f"Invalid settings: {e}", 'invalid_settings'))

        result = ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
        logger.debug(f"Validation finished: {len(errors)} errors, {len(warnings)} warnings")
        return result

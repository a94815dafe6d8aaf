"""
Tests for the graph model
"""

import pytest

from flow_automation.flow_engine.errors import CycleDetected, GraphError
from flow_automation.flow_engine.graph import FlowGraph, update_node_config
from flow_automation.flow_engine.nodes import ActionConfig, ConditionConfig, DelayConfig, FlowNode, NodeType


def _graph(nodes, connections):
    return FlowGraph.from_dict({'nodes': nodes, 'connections': connections})


TRIGGER = {'id': 'start', 'type': 'trigger', 'subtype': 'webhook', 'config': {}}


class TestGraphConstruction:
    """Structural invariants checked when a graph is built"""

    def test_builds_adjacency(self):
        """Outgoing and incoming connections are indexed by node"""
        graph = _graph(
            [TRIGGER, {'id': 'send', 'type': 'action', 'subtype': 'send_message', 'config': {'to': 'x'}}],
            [{'id': 'c1', 'source': 'start', 'target': 'send'}],
        )

        assert [c.target for c in graph.outgoing('start')] == ['send']
        assert [c.source for c in graph.incoming('send')] == ['start']
        assert [n.id for n in graph.triggers()] == ['start']

    def test_missing_target_node(self):
        """Connection to an unknown node is a GraphError"""
        with pytest.raises(GraphError) as exc:
            _graph([TRIGGER], [{'id': 'c1', 'source': 'start', 'target': 'ghost'}])

        assert exc.value.connection_id == 'c1'
        assert 'ghost' in exc.value.message

    def test_duplicated_node_id(self):
        """Two nodes with the same id are rejected"""
        with pytest.raises(GraphError, match='Duplicated node id'):
            _graph([TRIGGER, dict(TRIGGER)], [])

    def test_condition_output_requires_handle(self):
        """Condition outputs must use the true/false handles"""
        nodes = [
            TRIGGER,
            {'id': 'check', 'type': 'condition', 'config': {'field': 'x', 'operator': 'eq', 'value': 1}},
            {'id': 'a', 'type': 'action', 'config': {}},
        ]
        connections = [
            {'id': 'c1', 'source': 'start', 'target': 'check'},
            {'id': 'c2', 'source': 'check', 'target': 'a'},
        ]

        with pytest.raises(GraphError, match="handle 'true' or 'false'"):
            _graph(nodes, connections)

    def test_unknown_node_type(self):
        """Node types outside the tagged set are rejected"""
        with pytest.raises(GraphError, match='Unknown node type'):
            _graph([{'id': 'x', 'type': 'loop', 'config': {}}], [])

    def test_edges_key_is_accepted(self):
        """Stored graphs using 'edges' instead of 'connections' load the same way"""
        graph = FlowGraph.from_dict({
            'nodes': [TRIGGER, {'id': 'a', 'type': 'action', 'config': {}}],
            'edges': [{'source': 'start', 'target': 'a'}],
        })

        assert graph.connections[0].id == 'start->a'


class TestTypedConfig:
    """Each node type parses into its own configuration type"""

    def test_action_flat_config_becomes_parameters(self):
        """Flat action config keys are treated as parameters"""
        node = FlowNode.from_dict({
            'id': 'send', 'type': 'action', 'subtype': 'send_message',
            'config': {'to': '+5511', 'message': 'hi', 'timeoutMs': 500},
        })

        assert isinstance(node.config, ActionConfig)
        assert node.config.parameters == {'to': '+5511', 'message': 'hi'}
        assert node.config.timeout_ms == 500
        assert node.executor_key == 'action.send_message'

    def test_condition_rule_group(self):
        """Editor-style rule lists carry their logical operator"""
        node = FlowNode.from_dict({
            'id': 'check', 'type': 'condition',
            'config': {'conditions': [
                {'field': 'a', 'operator': 'eq', 'value': 1},
                {'field': 'b', 'operator': 'gt', 'value': 2, 'logicalOperator': 'or'},
            ]},
        })

        assert isinstance(node.config, ConditionConfig)
        assert len(node.config.rules) == 2
        assert node.config.logical_operator == 'OR'

    def test_delay_units_and_cap(self):
        """Delay duration converts units and honours maxDelay"""
        node = FlowNode.from_dict({'id': 'wait', 'type': 'delay', 'config': {'duration': 3, 'unit': 'hours', 'maxDelay': 2}})

        assert isinstance(node.config, DelayConfig)
        assert node.config.seconds() == 7200

    def test_dynamic_delay_reads_input(self):
        """Dynamic delays take the duration from the node input"""
        node = FlowNode.from_dict({
            'id': 'wait', 'type': 'delay',
            'config': {'delayType': 'dynamic', 'dynamicField': 'wait_for', 'duration': 1, 'unit': 'minutes'},
        })

        assert node.config.seconds({'wait_for': 5}) == 300
        assert node.config.seconds({}) == 60

    def test_invalid_delay_unit(self):
        """Unknown delay units are a GraphError"""
        with pytest.raises(GraphError, match='Invalid delay unit'):
            FlowNode.from_dict({'id': 'wait', 'type': 'delay', 'config': {'duration': 1, 'unit': 'weeks'}})

    def test_node_type_tag(self):
        node = FlowNode.from_dict({'id': 'ai-1', 'type': 'ai', 'subtype': 'generate', 'config': {'prompt': 'hi'}})

        assert node.type == NodeType.AI
        assert node.executor_key == 'ai.generate'


class TestCycleDetection:
    """Acyclicity from trigger nodes"""

    def test_acyclic_graph(self):
        """A diamond is not a cycle"""
        graph = _graph(
            [TRIGGER] + [{'id': n, 'type': 'action', 'config': {}} for n in ('a', 'b', 'join')],
            [
                {'source': 'start', 'target': 'a'},
                {'source': 'start', 'target': 'b'},
                {'source': 'a', 'target': 'join'},
                {'source': 'b', 'target': 'join'},
            ],
        )

        assert graph.is_acyclic_from_triggers()
        graph.check_acyclic()

    def test_cycle_is_reported_with_path(self):
        """A path returning to one of its own nodes is a CycleDetected error"""
        graph = _graph(
            [TRIGGER] + [{'id': n, 'type': 'action', 'config': {}} for n in ('a', 'b')],
            [
                {'source': 'start', 'target': 'a'},
                {'source': 'a', 'target': 'b'},
                {'source': 'b', 'target': 'a'},
            ],
        )

        assert not graph.is_acyclic_from_triggers()
        with pytest.raises(CycleDetected) as exc:
            graph.check_acyclic()
        assert exc.value.path == ['a', 'b', 'a']

    def test_cycle_unreachable_from_triggers_is_ignored(self):
        """Only cycles reachable from a trigger matter"""
        graph = _graph(
            [TRIGGER] + [{'id': n, 'type': 'action', 'config': {}} for n in ('x', 'y')],
            [
                {'source': 'x', 'target': 'y'},
                {'source': 'y', 'target': 'x'},
            ],
        )

        assert graph.is_acyclic_from_triggers()


class TestNodeConfigEdit:
    """Pure node configuration edits"""

    def test_update_node_config_returns_new_mapping(self):
        """The stored mapping is left untouched"""
        flow_data = {
            'nodes': [TRIGGER, {'id': 'send', 'type': 'action', 'subtype': 'send_message', 'config': {'message': 'old'}}],
            'connections': [{'id': 'c1', 'source': 'start', 'target': 'send'}],
        }

        updated = update_node_config(flow_data, 'send', {'message': 'new'})

        assert flow_data['nodes'][1]['config'] == {'message': 'old'}
        send = next(n for n in updated['nodes'] if n['id'] == 'send')
        assert send['config'] == {'message': 'new'}
        assert updated['connections'][0]['target'] == 'send'

    def test_update_unknown_node(self):
        """Editing a node that does not exist is a GraphError"""
        with pytest.raises(GraphError, match='Node not found'):
            update_node_config({'nodes': [TRIGGER], 'connections': []}, 'ghost', {})

    def test_with_node_config_keeps_original_graph(self):
        graph = _graph([TRIGGER, {'id': 'a', 'type': 'action', 'config': {'x': 1}}], [])

        edited = graph.with_node_config('a', {'x': 2})

        assert graph.node('a').config.parameters == {'x': 1}
        assert edited.node('a').config.parameters == {'x': 2}

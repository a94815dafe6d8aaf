"""
Tests for FlowValidator
"""

import pytest

from flow_automation.effects import EffectRegistry
from flow_automation.flow_engine.validator import FlowValidator
from flow_automation.models import Flow


def _kinds(issues):
    return [i['kind'] for i in issues]


@pytest.fixture
def validator():
    return FlowValidator()


class TestValidatorErrors:
    """Execution-blocking problems"""

    def test_valid_flow(self, builder, validator):
        """Trigger -> action is valid"""
        builder.trigger('start').action('send', to='+5511', message='hi').connect('start', 'send')

        result = validator.validate_definition(builder.flow_data())

        assert result.is_valid
        assert result.errors == []

    def test_no_trigger(self, builder, validator):
        """A flow needs at least one trigger node"""
        builder.action('send', to='+5511', message='hi')

        result = validator.validate_definition(builder.flow_data())

        assert not result.is_valid
        assert 'missing_trigger' in _kinds(result.errors)

    def test_dangling_connection(self, builder, validator):
        """A connection to a missing node is an error naming the connection"""
        builder.trigger('start').connect('start', 'ghost')

        result = validator.validate_definition(builder.flow_data())

        assert not result.is_valid
        assert result.errors[0]['kind'] == 'graph_error'
        assert result.errors[0]['connectionId'] == 'start-out-ghost'

    def test_cycle(self, builder, validator):
        """Cycles reachable from a trigger block execution"""
        (builder.trigger('start')
         .action('a', to='x', message='y')
         .action('b', to='x', message='y')
         .connect('start', 'a').connect('a', 'b').connect('b', 'a'))

        result = validator.validate_definition(builder.flow_data())

        assert not result.is_valid
        assert 'cycle_detected' in _kinds(result.errors)

    def test_invalid_settings(self, builder, validator):
        """errorHandling must be stop or continue"""
        builder.trigger('start')

        result = validator.validate_definition(builder.flow_data(), {'errorHandling': 'retry'})

        assert not result.is_valid
        assert 'invalid_settings' in _kinds(result.errors)

    def test_negative_retry_attempts(self, builder, validator):
        builder.trigger('start')

        result = validator.validate_definition(builder.flow_data(), {'retryAttempts': -1})

        assert 'invalid_settings' in _kinds(result.errors)

    @pytest.mark.parametrize('config', [
        {'to': 'x', 'message': 'y', 'timeout': 'soon'},
        {'parameters': 'to=x'},
        {'parameters': [1, 2]},
    ])
    def test_malformed_node_config(self, builder, validator, config):
        """Bad config values are reported against the node"""
        builder.trigger('start').action('send', **config).connect('start', 'send')

        result = validator.validate_definition(builder.flow_data())

        assert not result.is_valid
        assert result.errors[0]['kind'] == 'graph_error'
        assert result.errors[0]['nodeId'] == 'send'

    def test_collects_several_errors(self, builder, validator):
        """All structural problems are reported, not only the first"""
        builder.action('a', to='x', message='y').connect('a', 'ghost1').connect('a', 'ghost2')

        result = validator.validate_definition(builder.flow_data())

        assert _kinds(result.errors).count('graph_error') == 2
        assert 'missing_trigger' in _kinds(result.errors)


class TestValidatorWarnings:
    """Non-blocking findings"""

    def test_empty_config(self, builder, validator):
        """Unconfigured nodes produce a warning"""
        builder.trigger('start').action('send').connect('start', 'send')

        result = validator.validate_definition(builder.flow_data())

        assert result.is_valid
        assert {'kind': 'empty_config', 'nodeId': 'send'}.items() <= result.warnings[-1].items()

    def test_unreachable_action(self, builder, validator):
        """Actions no trigger leads to produce a warning"""
        builder.trigger('start').action('orphan', to='x', message='y')

        result = validator.validate_definition(builder.flow_data())

        assert result.is_valid
        assert 'unreachable_node' in _kinds(result.warnings)

    def test_missing_executor(self, builder):
        """With a registry, nodes without an executor produce a warning"""
        builder.trigger('start').action('send', to='x', message='y').connect('start', 'send')

        result = FlowValidator(EffectRegistry()).validate_definition(builder.flow_data())

        assert result.is_valid
        assert 'missing_executor' in _kinds(result.warnings)

    def test_validate_flow_record(self, builder, validator):
        """validate() reads the flow's graph and settings"""
        builder.trigger('start')
        flow = Flow.create(name='f', flow_data=builder.flow_data(), settings={'timeoutMs': 0})

        result = validator.validate(flow)

        assert not result.is_valid
        assert result.to_dict()['isValid'] is False

"""
Tests for FlowService and flow statistics
"""

import asyncio

import pytest

from flow_automation.flow_engine.errors import FlowInUseError, StructuralError, ValidationError
from flow_automation.flow_engine.stats import get_flow_stats
from flow_automation.models import FlowExecution
from flow_automation.services import FlowService
from flow_automation.triggers import TriggerDispatcher


@pytest.fixture
def service(repository, engine, engine_config):
    return FlowService(repository, engine, TriggerDispatcher(repository, engine, config=engine_config))


def _graph(builder):
    builder.trigger('start').action('send', to='a', message='hi').connect('start', 'send')
    data = builder.flow_data()
    builder.nodes, builder.connections = [], []
    return data


class TestLifecycle:
    """create / activate / deactivate"""

    def test_created_inactive(self, service, builder):
        flow = service.create_flow('Welcome', _graph(builder), settings={'retryAttempts': 1})

        assert flow.is_active is False
        assert service.get_flow(flow.id).settings == {'retryAttempts': 1}

    def test_activate_valid_flow(self, service, builder):
        flow = service.create_flow('Welcome', _graph(builder))

        assert service.activate(flow.id).is_active is True
        assert service.deactivate(flow.id).is_active is False

    def test_activate_rejects_invalid_flow(self, service):
        flow = service.create_flow('Empty')

        with pytest.raises(ValidationError) as exc:
            service.activate(flow.id)

        assert 'missing_trigger' in [e['kind'] for e in exc.value.errors]
        assert service.get_flow(flow.id).is_active is False

    def test_missing_flow(self, service):
        with pytest.raises(StructuralError):
            service.get_flow('missing')


class TestGraphEdits:
    """update_graph / update_node_config"""

    def test_inactive_flow_accepts_incomplete_graph(self, service):
        flow = service.create_flow('Draft')

        result = service.update_graph(flow.id, {'nodes': [{'id': 'a', 'type': 'action', 'subtype': 'send_message'}],
                                               'connections': []})

        assert not result.is_valid
        assert service.get_flow(flow.id).flow_data['nodes'][0]['id'] == 'a'

    def test_active_flow_rejects_invalid_graph(self, service, builder):
        flow = service.create_flow('Live', _graph(builder))
        service.activate(flow.id)

        with pytest.raises(ValidationError):
            service.update_graph(flow.id, {'nodes': [], 'connections': []})

        assert len(service.get_flow(flow.id).flow_data['nodes']) == 2

    def test_update_node_config(self, service, builder):
        flow = service.create_flow('Live', _graph(builder))

        service.update_node_config(flow.id, 'send', {'to': 'b', 'message': 'bye'})

        send = next(n for n in service.get_flow(flow.id).flow_data['nodes'] if n['id'] == 'send')
        assert send['config'] == {'to': 'b', 'message': 'bye'}


class TestDelete:
    """delete"""

    def test_delete(self, service, builder, repository):
        flow = service.create_flow('Old', _graph(builder))

        assert service.delete(flow.id) is True
        assert repository.get_flow(flow.id) is None

    def test_refuses_with_pending_execution(self, service, builder, repository):
        flow = service.create_flow('Busy', _graph(builder))
        execution = repository.create_execution(FlowExecution.create(flow_id=flow.id, trigger_type='manual'))

        with pytest.raises(FlowInUseError) as exc:
            service.delete(flow.id)

        assert exc.value.execution_ids == [execution.id]

    @pytest.mark.asyncio
    async def test_refuses_while_running(self, service, real_sleep_engine, builder):
        service.executor = real_sleep_engine
        flow = (builder.trigger('start').delay('wait', 5)
                .connect('start', 'wait').save())

        execution = await real_sleep_engine.start(flow.id, 'manual', {})
        await asyncio.sleep(0.01)

        with pytest.raises(FlowInUseError):
            service.delete(flow.id)

        await real_sleep_engine.cancel(execution.id)
        assert service.delete(flow.id) is True


class TestTriggersAndStats:
    """register_trigger / stats"""

    def test_register_trigger(self, service, builder, repository):
        flow = service.create_flow('Hook', _graph(builder))

        trigger = service.register_trigger(flow.id, 'webhook', webhook_path='/hooks/welcome/')

        assert trigger.webhook_path == 'hooks/welcome'
        assert repository.find_trigger_by_path('hooks/welcome').id == trigger.id

    def test_register_trigger_needs_dispatcher(self, repository, builder):
        service = FlowService(repository)
        flow = service.create_flow('Hook', _graph(builder))

        with pytest.raises(RuntimeError):
            service.register_trigger(flow.id, 'webhook', webhook_path='x')

    @pytest.mark.asyncio
    async def test_stats(self, service, engine, builder, registry):
        async def fails(config, input_data, ctx):
            raise RuntimeError('boom')

        registry.register('action.fails', fails)
        ok = builder.trigger('start').action('send', to='a', message='b').connect('start', 'send').save(name='ok')
        await engine.execute(ok.id, 'manual', {})
        await engine.execute(ok.id, 'manual', {})

        bad = (builder.trigger('start').action('boom', subtype='fails', url='x').connect('start', 'boom')
               .save(name='bad', settings={'retryAttempts': 0}))
        await engine.execute(bad.id, 'manual', {})

        stats = service.stats(ok.id)
        assert stats['totalExecutions'] == 2
        assert stats['successfulExecutions'] == 2
        assert stats['successRate'] == 100
        assert stats['lastExecution'] is not None

        assert service.stats(bad.id)['failedExecutions'] == 1

    def test_stats_without_executions(self, repository):
        assert get_flow_stats(repository, 'flow-1') == {
            'totalExecutions': 0,
            'successfulExecutions': 0,
            'failedExecutions': 0,
            'avgDurationMs': 0,
            'successRate': 0,
            'lastExecution': None,
        }

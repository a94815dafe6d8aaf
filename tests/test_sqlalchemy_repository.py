"""
Tests for the SQLAlchemy repository and running the engine on it
"""

import pytest

from flow_automation import create_app
from flow_automation.config import TestConfig
from flow_automation.flow_engine.variable_resolver import VariableStore
from flow_automation.models import Flow, FlowExecution, FlowExecutionStep, FlowTrigger
from flow_automation.persistence import SQLAlchemyRepository


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        yield app


@pytest.fixture
def sql_repository(app):
    return SQLAlchemyRepository()


@pytest.fixture
def flow(sql_repository):
    return sql_repository.create_flow(Flow.create(name='Stored flow', is_active=True))


class TestFlowsAndTriggers:
    """Flow and trigger rows"""

    def test_roundtrip_flow(self, sql_repository, flow):
        stored = sql_repository.get_flow(flow.id)

        assert stored.name == 'Stored flow'
        assert stored.flow_data == {'nodes': [], 'connections': []}
        assert sql_repository.list_flows() == [stored]

    def test_delete_flow_removes_triggers(self, sql_repository, flow):
        trigger = sql_repository.create_trigger(FlowTrigger.create(flow.id, 'webhook', webhook_path='x'))

        assert sql_repository.delete_flow(flow.id) is True
        assert sql_repository.get_trigger(trigger.id) is None
        assert sql_repository.delete_flow(flow.id) is False

    def test_find_trigger_by_path(self, sql_repository, flow):
        trigger = sql_repository.create_trigger(FlowTrigger.create(flow.id, 'webhook', webhook_path='/orders/new'))

        assert sql_repository.find_trigger_by_path('orders/new/').id == trigger.id

    def test_list_triggers_filters(self, sql_repository, flow):
        sql_repository.create_trigger(FlowTrigger.create(flow.id, 'schedule', cron_expression='* * * * *'))
        sql_repository.create_trigger(FlowTrigger.create(flow.id, 'schedule', cron_expression='* * * * *', is_active=False))
        sql_repository.create_trigger(FlowTrigger.create(flow.id, 'webhook', webhook_path='y'))

        assert len(sql_repository.list_triggers('schedule')) == 2
        assert len(sql_repository.list_triggers('schedule', active_only=True)) == 1
        assert len(sql_repository.list_triggers(flow_id=flow.id)) == 3


class TestExecutionsAndSteps:
    """Execution and step rows"""

    def test_steps_are_listed_in_order(self, sql_repository, flow):
        execution = sql_repository.create_execution(FlowExecution.create(flow_id=flow.id, trigger_type='manual'))
        for order, node_id in [(2, 'b'), (1, 'a'), (3, 'c')]:
            sql_repository.create_step(FlowExecutionStep.create(execution_id=execution.id, node_id=node_id, step_order=order))

        assert [s.node_id for s in sql_repository.list_steps(execution.id)] == ['a', 'b', 'c']
        assert sql_repository.list_executions(flow.id) == [execution]


class TestVariables:
    """Variable upsert"""

    def test_upsert(self, sql_repository):
        sql_repository.upsert_variable('flow', 'flow-1', 'greeting', 'hi')
        variable = sql_repository.upsert_variable('flow', 'flow-1', 'greeting', {'text': 'hello'})

        assert variable.value == {'text': 'hello'}
        assert len(sql_repository.list_variables('flow', 'flow-1')) == 1

    def test_delete_variables(self, sql_repository):
        store = VariableStore(sql_repository)
        store.set('execution', 'a', 1, scope_id='exec-1')
        store.set('execution', 'b', 2, scope_id='exec-1')

        assert store.clear_execution('exec-1') == 2
        assert sql_repository.list_variables('execution', 'exec-1') == []


class TestEngineOnDatabase:
    """The engine persists through the SQLAlchemy repository"""

    @pytest.mark.asyncio
    async def test_execution_is_persisted(self, app, sql_repository):
        flows = app.extensions['flow_automation']['flows']
        executor = app.extensions['flow_automation']['executor']
        flow = flows.create_flow('Math', {
            'nodes': [
                {'id': 'start', 'type': 'trigger', 'subtype': 'manual', 'config': {}},
                {'id': 'total', 'type': 'data', 'subtype': 'transform',
                 'config': {'operation': 'math', 'expression': '{{trigger.price}} * {{trigger.qty}}'}},
            ],
            'connections': [{'id': 'c1', 'source': 'start', 'target': 'total'}],
        })

        execution = await executor.execute(flow.id, 'manual', {'price': 2.5, 'qty': 4})

        stored = sql_repository.get_execution(execution.id)
        assert stored.status == 'completed'
        assert stored.output_data == {'total': {'math_result': 10.0}}
        steps = sql_repository.list_steps(execution.id)
        assert [(s.node_id, s.step_order, s.status) for s in steps] == [
            ('start', 1, 'completed'),
            ('total', 2, 'completed'),
        ]
        assert sql_repository.get_flow(flow.id).success_count == 1

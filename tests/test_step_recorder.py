"""
Tests for the StepRecorder
"""

import pytest

from flow_automation.flow_engine.errors import NodeExecutionError, PersistenceError
from flow_automation.flow_engine.nodes import LoggingLevel
from flow_automation.flow_engine.step_recorder import StepRecorder
from flow_automation.flow_engine.variable_resolver import REDACTED


@pytest.fixture
def recorder(repository):
    return StepRecorder(repository, logging_level=LoggingLevel.ALL, secrets=['sk-secret'])


class TestStepLifecycle:
    """Begin / complete / fail"""

    def test_begin_and_complete(self, recorder, repository):
        step_id = recorder.begin_step('exec-1', 'send', 1, {'text': 'hi'}, node_type='action')
        recorder.complete_step(step_id, {'message_id': 'm1'})

        step = repository.get_step(step_id)
        assert step.status == 'completed'
        assert step.output_data == {'message_id': 'm1'}
        assert step.node_type == 'action'
        assert step.completed_at is not None
        assert step.duration_ms >= 0

    def test_fail_step_records_error_kind(self, recorder, repository):
        step_id = recorder.begin_step('exec-1', 'send', 1)
        recorder.fail_step(step_id, NodeExecutionError('provider down'), retry_count=2)

        step = repository.get_step(step_id)
        assert step.status == 'failed'
        assert step.retry_count == 2
        assert step.error_details == {'kind': 'node_error', 'message': 'provider down'}
        assert step.logs[-1]['level'] == 'error'

    def test_order_must_increase(self, recorder):
        """Step orders are strictly increasing per execution"""
        recorder.begin_step('exec-1', 'a', 1)
        recorder.begin_step('exec-1', 'b', 2)

        with pytest.raises(ValueError, match='not after'):
            recorder.begin_step('exec-1', 'c', 2)

    def test_orders_are_per_execution(self, recorder):
        recorder.begin_step('exec-1', 'a', 5)

        recorder.begin_step('exec-2', 'a', 1)

    def test_terminal_step_is_not_rewritten(self, recorder):
        step_id = recorder.begin_step('exec-1', 'a', 1)
        recorder.complete_step(step_id, {})

        with pytest.raises(ValueError, match='already completed'):
            recorder.fail_step(step_id, NodeExecutionError('late'))

    def test_skip_step(self, recorder, repository):
        step_id = recorder.skip_step('exec-1', 'branch-a', 3, "condition 'check' chose 'false'")

        step = repository.get_step(step_id)
        assert step.status == 'skipped'
        assert step.output_data == {'skipped': True, 'reason': "condition 'check' chose 'false'"}

    def test_cancel_step(self, recorder, repository):
        step_id = recorder.begin_step('exec-1', 'wait', 1)
        recorder.cancel_step(step_id)

        assert repository.get_step(step_id).status == 'cancelled'

    def test_unknown_step(self, recorder):
        with pytest.raises(PersistenceError):
            recorder.info('missing', 'hello')


class TestStepLogs:
    """Log entries, level filtering and redaction"""

    def test_log_entry_shape(self, recorder, repository):
        step_id = recorder.begin_step('exec-1', 'a', 1)
        recorder.info(step_id, 'Calling provider', {'attempt': 0})

        entry = repository.get_step(step_id).logs[0]
        assert set(entry) == {'timestamp', 'level', 'message', 'data'}
        assert entry['data'] == {'attempt': 0}

    @pytest.mark.parametrize('level,kept', [
        (LoggingLevel.NONE, []),
        (LoggingLevel.ERRORS, ['warn', 'error']),
        (LoggingLevel.ALL, ['info', 'warn', 'error']),
    ])
    def test_logging_level_filter(self, repository, level, kept):
        recorder = StepRecorder(repository, logging_level=level)
        step_id = recorder.begin_step('exec-1', 'a', 1)

        recorder.info(step_id, 'i')
        recorder.warn(step_id, 'w')
        recorder.error(step_id, 'e')

        assert [e['level'] for e in repository.get_step(step_id).logs] == kept

    def test_secrets_are_redacted(self, recorder, repository):
        """Secrets never appear verbatim in snapshots or logs"""
        step_id = recorder.begin_step('exec-1', 'call', 1, {'headers': {'Authorization': 'Bearer sk-secret'}})
        recorder.info(step_id, 'Using key sk-secret', {'key': 'sk-secret'})
        recorder.complete_step(step_id, {'echo': 'sk-secret'})

        step = repository.get_step(step_id)
        assert step.input_data['headers']['Authorization'] == f'Bearer {REDACTED}'
        assert step.logs[0]['message'] == f'Using key {REDACTED}'
        assert step.logs[0]['data'] == {'key': REDACTED}
        assert step.output_data == {'echo': REDACTED}

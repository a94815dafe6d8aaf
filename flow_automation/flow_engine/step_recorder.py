"""
Step Recorder - append/update-only audit trail of node outcomes.

Usage:
    recorder = StepRecorder(repository, logging_level=LoggingLevel.ALL, secrets=[...])
    step_id = recorder.begin_step(execution.id, 'send', order=2, input_data={...})
    recorder.info(step_id, 'Calling provider')
    recorder.complete_step(step_id, {'message_id': 'abc'})
"""
import logging
from typing import Any, Dict, Iterable, Optional

from flow_automation.flow_engine.errors import FlowEngineError, PersistenceError
from flow_automation.flow_engine.nodes import LoggingLevel
from flow_automation.flow_engine.variable_resolver import redact
from flow_automation.models import FlowExecutionStep, StepStatus
from flow_automation.utils import utcnow

logger = logging.getLogger(__name__)

TERMINAL_STEP_STATUSES = {
    StepStatus.COMPLETED.value,
    StepStatus.FAILED.value,
    StepStatus.SKIPPED.value,
    StepStatus.CANCELLED.value,
}

# Step log levels kept by each loggingLevel setting
KEPT_LEVELS = {
    LoggingLevel.NONE: set(),
    LoggingLevel.ERRORS: {'warn', 'error'},
    LoggingLevel.ALL: {'info', 'warn', 'error'},
}


class StepRecorder:
    """
    Writes FlowExecutionStep records for one execution.

    Orders must be strictly increasing per execution; steps are never
    reordered or deleted, and a terminal step is never rewritten.
    """

    def __init__(
        self,
        repository,
        logging_level: LoggingLevel = LoggingLevel.ALL,
        secrets: Optional[Iterable[Any]] = None,
        flow_id: Optional[str] = None,
    ):
        self.repository = repository
        self.logging_level = LoggingLevel(logging_level)
        self.secrets = list(secrets or [])
        self.flow_id = flow_id
        self._last_order: Dict[str, int] = {}

    def begin_step(
        self,
        execution_id: str,
        node_id: str,
        order: int,
        input_data: Optional[Dict[str, Any]] = None,
        node_type: Optional[str] = None,
    ) -> str:
        """Create a running step; returns its id"""
        self._claim_order(execution_id, order)
        step = FlowExecutionStep.create(
            execution_id=execution_id,
            node_id=node_id,
            step_order=order,
            input_data=self._redact(input_data or {}),
            status=StepStatus.RUNNING.value,
            flow_id=self.flow_id,
            node_type=node_type,
        )
        self.repository.create_step(step)
        return step.id

    def complete_step(self, step_id: str, output: Optional[Dict[str, Any]] = None, status: str = StepStatus.COMPLETED.value):
        step = self._open_step(step_id)
        step.output_data = self._redact(output or {})
        step.status = StepStatus(status).value
        self._finish(step)
        self.repository.update_step(step)

    def fail_step(self, step_id: str, error: Exception, retry_count: int = 0):
        step = self._open_step(step_id)
        details = error.to_details() if isinstance(error, FlowEngineError) else {'kind': 'node_error', 'message': str(error)}
        step.status = StepStatus.FAILED.value
        step.error_message = self._redact(str(error))
        step.error_details = self._redact(details)
        step.retry_count = retry_count
        self._append_log(step, 'error', str(error), details)
        self._finish(step)
        self.repository.update_step(step)

    def skip_step(
        self,
        execution_id: str,
        node_id: str,
        order: int,
        reason: str,
        node_type: Optional[str] = None,
    ) -> str:
        """Record a node that will never run in this execution"""
        self._claim_order(execution_id, order)
        step = FlowExecutionStep.create(
            execution_id=execution_id,
            node_id=node_id,
            step_order=order,
            status=StepStatus.SKIPPED.value,
            flow_id=self.flow_id,
            node_type=node_type,
        )
        step.output_data = {'skipped': True, 'reason': reason}
        self._append_log(step, 'info', f"Skipped: {reason}")
        self._finish(step)
        self.repository.create_step(step)
        return step.id

    def cancel_step(self, step_id: str, reason: str = 'execution cancelled'):
        step = self._open_step(step_id)
        step.status = StepStatus.CANCELLED.value
        step.error_message = reason
        self._append_log(step, 'warn', reason)
        self._finish(step)
        self.repository.update_step(step)

    def record_attempt(self, step_id: str, retry_count: int, error: Optional[Exception] = None):
        """Store the retry counter after a failed attempt that will be retried"""
        step = self._open_step(step_id)
        step.retry_count = retry_count
        if error is not None:
            self._append_log(step, 'warn', f"Attempt {retry_count} failed: {error}")
        self.repository.update_step(step)

    def info(self, step_id: str, message: str, data: Optional[Dict[str, Any]] = None):
        self.add_log(step_id, 'info', message, data)

    def warn(self, step_id: str, message: str, data: Optional[Dict[str, Any]] = None):
        self.add_log(step_id, 'warn', message, data)

    def error(self, step_id: str, message: str, data: Optional[Dict[str, Any]] = None):
        self.add_log(step_id, 'error', message, data)

    def add_log(self, step_id: str, level: str, message: str, data: Optional[Dict[str, Any]] = None):
        step = self._load(step_id)
        if self._append_log(step, level, message, data):
            self.repository.update_step(step)

    def _append_log(self, step: FlowExecutionStep, level: str, message: str, data: Optional[Dict[str, Any]] = None) -> bool:
        if level not in KEPT_LEVELS[self.logging_level]:
            return False
        entry = {
            'timestamp': utcnow().isoformat(),
            'level': level,
            'message': self._redact(message),
            'data': self._redact(data) if data is not None else None,
        }
        # New list so JSON column changes are detected
        step.logs = list(step.logs or []) + [entry]
        return True

    def _claim_order(self, execution_id: str, order: int):
        last = self._last_order.get(execution_id)
        if last is not None and order <= last:
            raise ValueError(f"Step order {order} is not after {last} for execution {execution_id}")
        self._last_order[execution_id] = order

    def _load(self, step_id: str) -> FlowExecutionStep:
        step = self.repository.get_step(step_id)
        if step is None:
            raise PersistenceError(f"Step not found: {step_id}")
        return step

    def _open_step(self, step_id: str) -> FlowExecutionStep:
        step = self._load(step_id)
        if step.status in TERMINAL_STEP_STATUSES:
            raise ValueError(f"Step {step_id} is already {step.status}")
        return step

    def _finish(self, step: FlowExecutionStep):
        step.completed_at = utcnow()
        if step.started_at:
            step.duration_ms = int((step.completed_at - step.started_at).total_seconds() * 1000)
        # secrets may have been added while the step ran
        step.input_data = self._redact(step.input_data or {})
        if step.logs:
            step.logs = self._redact(step.logs)

    def _redact(self, value: Any) -> Any:
        return redact(value, self.secrets)

"""
Execution models - one FlowExecution per triggering event, one
FlowExecutionStep per node visited.
"""
from enum import Enum
from typing import Any, Dict, Optional

from flow_automation.database import db
from flow_automation.utils import isoformat, new_id, utcnow


class ExecutionStatus(str, Enum):
    """
    Execution state machine:

    pending -> running -> completed
                       -> failed     (step failed under 'stop', timeout, fatal error)
                       -> cancelled  (explicit cancel only)
    """
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class StepStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    SKIPPED = 'skipped'
    CANCELLED = 'cancelled'


class FlowExecution(db.Model):
    __tablename__ = 'flow_executions'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    # Executions outlive their flow; retention is handled elsewhere
    flow_id = db.Column(db.String(36), db.ForeignKey('flows.id', ondelete='SET NULL'))
    trigger_id = db.Column(db.String(36))

    trigger_type = db.Column(db.String(50))
    input_data = db.Column(db.JSON)
    output_data = db.Column(db.JSON)

    # Graph the run was started with
    graph_snapshot = db.Column(db.JSON)

    status = db.Column(db.String(20), default=ExecutionStatus.PENDING.value, nullable=False)

    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    duration_ms = db.Column(db.Integer)

    error_message = db.Column(db.Text)
    # {kind, message, node_id?, fatal?}
    error_details = db.Column(db.JSON)

    __table_args__ = (
        db.Index('idx_flow_executions_flow_id', 'flow_id'),
        db.Index('idx_flow_executions_status', 'status'),
        db.Index('idx_flow_executions_created_at', 'created_at'),
    )

    @classmethod
    def create(
        cls,
        flow_id: str,
        trigger_type: str,
        input_data: Optional[Dict[str, Any]] = None,
        graph_snapshot: Optional[Dict[str, Any]] = None,
        trigger_id: Optional[str] = None,
    ) -> 'FlowExecution':
        return cls(
            id=new_id(),
            flow_id=flow_id,
            trigger_id=trigger_id,
            trigger_type=trigger_type,
            input_data=input_data or {},
            output_data={},
            graph_snapshot=graph_snapshot,
            status=ExecutionStatus.PENDING.value,
            created_at=utcnow(),
        )

    @property
    def is_terminal(self) -> bool:
        return ExecutionStatus(self.status).is_terminal

    def to_dict(self, steps=None):
        result = {
            'id': self.id,
            'flow_id': self.flow_id,
            'trigger_id': self.trigger_id,
            'trigger_type': self.trigger_type,
            'status': self.status,
            'input_data': self.input_data,
            'output_data': self.output_data,
            'started_at': isoformat(self.started_at),
            'completed_at': isoformat(self.completed_at),
            'duration_ms': self.duration_ms,
            'error_message': self.error_message,
            'error_details': self.error_details,
            'created_at': isoformat(self.created_at),
        }
        if steps is not None:
            result['steps'] = [s.to_dict() for s in steps]
        return result


class FlowExecutionStep(db.Model):
    """
    Audit record of one node within one execution.

    step_order is a strictly increasing sequence per execution, shared by
    every branch, so the steps replay in a single total order.
    """
    __tablename__ = 'flow_execution_steps'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    execution_id = db.Column(
        db.String(36),
        db.ForeignKey('flow_executions.id', ondelete='CASCADE'),
        nullable=False
    )
    flow_id = db.Column(db.String(36))
    node_id = db.Column(db.String(255), nullable=False)
    node_type = db.Column(db.String(50))
    step_order = db.Column(db.Integer, nullable=False)

    input_data = db.Column(db.JSON)
    output_data = db.Column(db.JSON)

    status = db.Column(db.String(20), default=StepStatus.PENDING.value, nullable=False)

    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    duration_ms = db.Column(db.Integer)

    error_message = db.Column(db.Text)
    error_details = db.Column(db.JSON)
    retry_count = db.Column(db.Integer, default=0, nullable=False)

    # [{timestamp, level, message, data}]
    logs = db.Column(db.JSON, default=list)

    __table_args__ = (
        db.UniqueConstraint('execution_id', 'step_order', name='uq_flow_execution_steps_order'),
        db.Index('idx_flow_execution_steps_execution', 'execution_id'),
    )

    @classmethod
    def create(
        cls,
        execution_id: str,
        node_id: str,
        step_order: int,
        input_data: Optional[Dict[str, Any]] = None,
        status: str = StepStatus.RUNNING.value,
        flow_id: Optional[str] = None,
        node_type: Optional[str] = None,
    ) -> 'FlowExecutionStep':
        now = utcnow()
        return cls(
            id=new_id(),
            execution_id=execution_id,
            flow_id=flow_id,
            node_id=node_id,
            node_type=node_type,
            step_order=step_order,
            input_data=input_data or {},
            output_data={},
            status=status,
            started_at=now,
            retry_count=0,
            logs=[],
            created_at=now,
        )

    def to_dict(self, include_data=True):
        result = {
            'id': self.id,
            'execution_id': self.execution_id,
            'node_id': self.node_id,
            'node_type': self.node_type,
            'step_order': self.step_order,
            'status': self.status,
            'started_at': isoformat(self.started_at),
            'completed_at': isoformat(self.completed_at),
            'duration_ms': self.duration_ms,
            'error_message': self.error_message,
            'error_details': self.error_details,
            'retry_count': self.retry_count,
        }

        if include_data:
            result['input_data'] = self.input_data
            result['output_data'] = self.output_data
            result['logs'] = self.logs

        return result

"""
In-memory repository, used by tests and single-process deployments.
"""
import threading
from typing import Any, Dict, List, Optional, Tuple

from flow_automation.models import (
    Flow,
    FlowExecution,
    FlowExecutionStep,
    FlowTrigger,
    FlowVariable,
)
from flow_automation.models.flow import infer_variable_type
from flow_automation.persistence.base import Repository
from flow_automation.utils import utcnow


class InMemoryRepository(Repository):
    """
    Dict-backed repository. A single lock makes every write atomic.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._flows: Dict[str, Flow] = {}
        self._executions: Dict[str, FlowExecution] = {}
        self._steps: Dict[str, FlowExecutionStep] = {}
        self._triggers: Dict[str, FlowTrigger] = {}
        self._variables: Dict[Tuple[str, Optional[str], str], FlowVariable] = {}

    # === Flows ===

    def create_flow(self, flow: Flow) -> Flow:
        with self._lock:
            self._flows[flow.id] = flow
        return flow

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        return self._flows.get(flow_id)

    def update_flow(self, flow: Flow) -> Flow:
        with self._lock:
            flow.updated_at = utcnow()
            self._flows[flow.id] = flow
        return flow

    def delete_flow(self, flow_id: str) -> bool:
        with self._lock:
            removed = self._flows.pop(flow_id, None)
            if removed is None:
                return False
            for trigger_id in [t.id for t in self._triggers.values() if t.flow_id == flow_id]:
                del self._triggers[trigger_id]
        return True

    def list_flows(self) -> List[Flow]:
        return list(self._flows.values())

    # === Executions ===

    def create_execution(self, execution: FlowExecution) -> FlowExecution:
        with self._lock:
            self._executions[execution.id] = execution
        return execution

    def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        return self._executions.get(execution_id)

    def update_execution(self, execution: FlowExecution) -> FlowExecution:
        with self._lock:
            self._executions[execution.id] = execution
        return execution

    def list_executions(self, flow_id: Optional[str] = None) -> List[FlowExecution]:
        executions = [e for e in self._executions.values() if flow_id is None or e.flow_id == flow_id]
        return sorted(executions, key=lambda e: e.created_at)

    # === Steps ===

    def create_step(self, step: FlowExecutionStep) -> FlowExecutionStep:
        with self._lock:
            self._steps[step.id] = step
        return step

    def get_step(self, step_id: str) -> Optional[FlowExecutionStep]:
        return self._steps.get(step_id)

    def update_step(self, step: FlowExecutionStep) -> FlowExecutionStep:
        with self._lock:
            self._steps[step.id] = step
        return step

    def list_steps(self, execution_id: str) -> List[FlowExecutionStep]:
        steps = [s for s in self._steps.values() if s.execution_id == execution_id]
        return sorted(steps, key=lambda s: s.step_order)

    # === Triggers ===

    def create_trigger(self, trigger: FlowTrigger) -> FlowTrigger:
        with self._lock:
            self._triggers[trigger.id] = trigger
        return trigger

    def get_trigger(self, trigger_id: str) -> Optional[FlowTrigger]:
        return self._triggers.get(trigger_id)

    def update_trigger(self, trigger: FlowTrigger) -> FlowTrigger:
        with self._lock:
            trigger.updated_at = utcnow()
            self._triggers[trigger.id] = trigger
        return trigger

    def list_triggers(
        self,
        trigger_type: Optional[str] = None,
        flow_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[FlowTrigger]:
        triggers = list(self._triggers.values())
        if trigger_type is not None:
            triggers = [t for t in triggers if t.trigger_type == trigger_type]
        if flow_id is not None:
            triggers = [t for t in triggers if t.flow_id == flow_id]
        if active_only:
            triggers = [t for t in triggers if t.is_active]
        return triggers

    def find_trigger_by_path(self, webhook_path: str) -> Optional[FlowTrigger]:
        path = webhook_path.strip('/')
        return next((t for t in self._triggers.values() if t.webhook_path == path), None)

    # === Variables ===

    def get_variable(self, scope: str, scope_id: Optional[str], name: str) -> Optional[FlowVariable]:
        return self._variables.get((scope, scope_id, name))

    def upsert_variable(
        self,
        scope: str,
        scope_id: Optional[str],
        name: str,
        value: Any,
        is_secret: bool = False,
    ) -> FlowVariable:
        key = (scope, scope_id, name)
        with self._lock:
            variable = self._variables.get(key)
            if variable is None:
                variable = FlowVariable.create(scope=scope, scope_id=scope_id, name=name, value=value, is_secret=is_secret)
                self._variables[key] = variable
            else:
                variable.value = value
                variable.variable_type = infer_variable_type(value)
                variable.is_secret = is_secret or variable.is_secret
                variable.updated_at = utcnow()
        return variable

    def list_variables(self, scope: str, scope_id: Optional[str] = None) -> List[FlowVariable]:
        return [v for (s, sid, _), v in self._variables.items() if s == scope and sid == scope_id]

    def delete_variables(self, scope: str, scope_id: Optional[str]) -> int:
        with self._lock:
            keys = [k for k in self._variables if k[0] == scope and k[1] == scope_id]
            for key in keys:
                del self._variables[key]
        return len(keys)

"""
Persistence contract used by the engine, the dispatcher and the services.

The engine itself only creates, reads and updates records by id; the list
queries serve the trigger dispatcher and the stats report. Every single-key
write must be atomic on its own; no operation spans several records.
"""
import abc
from typing import Any, List, Optional

from flow_automation.models import (
    Flow,
    FlowExecution,
    FlowExecutionStep,
    FlowTrigger,
    FlowVariable,
)


class Repository(abc.ABC):

    # === Flows ===

    @abc.abstractmethod
    def create_flow(self, flow: Flow) -> Flow:
        ...

    @abc.abstractmethod
    def get_flow(self, flow_id: str) -> Optional[Flow]:
        ...

    @abc.abstractmethod
    def update_flow(self, flow: Flow) -> Flow:
        ...

    @abc.abstractmethod
    def delete_flow(self, flow_id: str) -> bool:
        ...

    @abc.abstractmethod
    def list_flows(self) -> List[Flow]:
        ...

    # === Executions ===

    @abc.abstractmethod
    def create_execution(self, execution: FlowExecution) -> FlowExecution:
        ...

    @abc.abstractmethod
    def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        ...

    @abc.abstractmethod
    def update_execution(self, execution: FlowExecution) -> FlowExecution:
        ...

    @abc.abstractmethod
    def list_executions(self, flow_id: Optional[str] = None) -> List[FlowExecution]:
        """Executions ordered by creation time"""

    # === Steps ===

    @abc.abstractmethod
    def create_step(self, step: FlowExecutionStep) -> FlowExecutionStep:
        ...

    @abc.abstractmethod
    def get_step(self, step_id: str) -> Optional[FlowExecutionStep]:
        ...

    @abc.abstractmethod
    def update_step(self, step: FlowExecutionStep) -> FlowExecutionStep:
        ...

    @abc.abstractmethod
    def list_steps(self, execution_id: str) -> List[FlowExecutionStep]:
        """Steps of one execution ordered by step_order"""

    # === Triggers ===

    @abc.abstractmethod
    def create_trigger(self, trigger: FlowTrigger) -> FlowTrigger:
        ...

    @abc.abstractmethod
    def get_trigger(self, trigger_id: str) -> Optional[FlowTrigger]:
        ...

    @abc.abstractmethod
    def update_trigger(self, trigger: FlowTrigger) -> FlowTrigger:
        ...

    @abc.abstractmethod
    def list_triggers(
        self,
        trigger_type: Optional[str] = None,
        flow_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[FlowTrigger]:
        ...

    @abc.abstractmethod
    def find_trigger_by_path(self, webhook_path: str) -> Optional[FlowTrigger]:
        ...

    # === Variables ===

    @abc.abstractmethod
    def get_variable(self, scope: str, scope_id: Optional[str], name: str) -> Optional[FlowVariable]:
        ...

    @abc.abstractmethod
    def upsert_variable(
        self,
        scope: str,
        scope_id: Optional[str],
        name: str,
        value: Any,
        is_secret: bool = False,
    ) -> FlowVariable:
        """Insert or replace the value stored under (scope, scope_id, name)"""

    @abc.abstractmethod
    def list_variables(self, scope: str, scope_id: Optional[str] = None) -> List[FlowVariable]:
        ...

    @abc.abstractmethod
    def delete_variables(self, scope: str, scope_id: Optional[str]) -> int:
        """Delete every variable of one scope instance; returns how many were removed"""

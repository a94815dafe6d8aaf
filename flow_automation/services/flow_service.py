"""
Flow Service - flow lifecycle for the editor and API layers

Provides:
- create / activate / deactivate / delete
- graph and single-node configuration edits (re-validated when active)
- trigger registration and stats
"""

import logging
from typing import Any, Dict, Mapping, Optional

from flow_automation.flow_engine.errors import FlowInUseError, StructuralError, ValidationError
from flow_automation.flow_engine.graph import update_node_config
from flow_automation.flow_engine.stats import get_flow_stats
from flow_automation.flow_engine.validator import FlowValidator, ValidationResult
from flow_automation.models import ExecutionStatus, Flow, FlowTrigger

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value)


class FlowService:
    """
    Usage:
        service = FlowService(repository, executor, dispatcher)
        flow = service.create_flow('Welcome message', flow_data)
        service.activate(flow.id)
    """

    def __init__(self, repository, executor=None, dispatcher=None, validator: Optional[FlowValidator] = None):
        """
        Args:
            repository: Persistence
            executor: Optional FlowExecutor; its in-flight runs block deletion
            dispatcher: Optional TriggerDispatcher used by register_trigger
            validator: FlowValidator (the executor's when omitted)
        """
        self.repository = repository
        self.executor = executor
        self.dispatcher = dispatcher
        if validator is None:
            validator = executor.validator if executor is not None else FlowValidator()
        self.validator = validator

    def get_flow(self, flow_id: str) -> Flow:
        """
        Raises:
            StructuralError: flow does not exist
        """
        flow = self.repository.get_flow(flow_id)
        if flow is None:
            raise StructuralError(f"Flow not found: {flow_id}")
        return flow

    def create_flow(
        self,
        name: str,
        flow_data: Optional[Dict[str, Any]] = None,
        settings: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> Flow:
        """Create an inactive flow. The graph may still be incomplete."""
        flow = Flow.create(name=name, flow_data=flow_data, settings=settings, variables=variables, **kwargs)
        flow.is_active = False
        self.repository.create_flow(flow)
        logger.info(f"Created flow {flow.id} ({name})")
        return flow

    def validate(self, flow_id: str) -> ValidationResult:
        return self.validator.validate(self.get_flow(flow_id))

    def activate(self, flow_id: str) -> Flow:
        """
        Raises:
            ValidationError: the graph has blocking errors
        """
        flow = self.get_flow(flow_id)
        result = self.validator.validate(flow)
        if not result.is_valid:
            logger.warning(f"Flow {flow_id} cannot be activated: {result.errors}")
            raise ValidationError(result.errors)

        flow.is_active = True
        self.repository.update_flow(flow)
        logger.info(f"Activated flow {flow_id}")
        return flow

    def deactivate(self, flow_id: str) -> Flow:
        flow = self.get_flow(flow_id)
        flow.is_active = False
        self.repository.update_flow(flow)
        logger.info(f"Deactivated flow {flow_id}")
        return flow

    def update_graph(self, flow_id: str, flow_data: Mapping[str, Any]) -> ValidationResult:
        """
        Replace the flow's graph.

        Raises:
            ValidationError: the flow is active and the new graph is not valid
        """
        flow = self.get_flow(flow_id)
        return self._save_graph(flow, dict(flow_data))

    def update_node_config(self, flow_id: str, node_id: str, new_config: Mapping[str, Any]) -> ValidationResult:
        flow = self.get_flow(flow_id)
        return self._save_graph(flow, update_node_config(flow.flow_data or {}, node_id, new_config))

    def _save_graph(self, flow: Flow, flow_data: Dict[str, Any]) -> ValidationResult:
        result = self.validator.validate_definition(flow_data, flow.settings)
        if flow.is_active and not result.is_valid:
            raise ValidationError(result.errors)

        flow.flow_data = flow_data
        self.repository.update_flow(flow)
        return result

    def delete(self, flow_id: str) -> bool:
        """
        Raises:
            FlowInUseError: an execution of the flow is still in flight
        """
        self.get_flow(flow_id)

        in_flight = set()
        if self.executor is not None:
            in_flight.update(self.executor.active_executions(flow_id))
        in_flight.update(
            e.id for e in self.repository.list_executions(flow_id=flow_id)
            if e.status in IN_FLIGHT_STATUSES
        )
        if in_flight:
            raise FlowInUseError(flow_id, sorted(in_flight))

        deleted = self.repository.delete_flow(flow_id)
        logger.info(f"Deleted flow {flow_id}")
        return deleted

    def register_trigger(self, flow_id: str, trigger_type: str, **kwargs) -> FlowTrigger:
        """
        Example:
            service.register_trigger(flow.id, 'schedule', cron_expression='0 9 * * *', timezone='America/Sao_Paulo')
        """
        if self.dispatcher is None:
            raise RuntimeError('FlowService needs a dispatcher to register triggers')
        self.get_flow(flow_id)
        trigger = FlowTrigger.create(flow_id=flow_id, trigger_type=trigger_type, **kwargs)
        return self.dispatcher.register_trigger(trigger)

    def stats(self, flow_id: str) -> Dict[str, Any]:
        self.get_flow(flow_id)
        return get_flow_stats(self.repository, flow_id)

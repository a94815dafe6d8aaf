"""
Repository backed by the Flask-SQLAlchemy session.

Must be used inside an application context. Every write commits on its own;
a failed commit is rolled back and surfaced as PersistenceError.
"""
import logging
from typing import Any, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from flow_automation.database import db
from flow_automation.flow_engine.errors import PersistenceError
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

logger = logging.getLogger(__name__)


class SQLAlchemyRepository(Repository):

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def _save(self, record):
        try:
            self.session.add(record)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Failed to save {type(record).__name__} {getattr(record, 'id', '')}: {e}")
            raise PersistenceError(f"Could not save {type(record).__name__}: {e}") from e
        return record

    def _get(self, model, record_id: str):
        try:
            return self.session.get(model, record_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Could not load {model.__name__} {record_id}: {e}") from e

    def _all(self, query) -> list:
        try:
            return query.all()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Query failed: {e}") from e

    # === Flows ===

    def create_flow(self, flow: Flow) -> Flow:
        return self._save(flow)

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        return self._get(Flow, flow_id)

    def update_flow(self, flow: Flow) -> Flow:
        flow.updated_at = utcnow()
        return self._save(flow)

    def delete_flow(self, flow_id: str) -> bool:
        flow = self.get_flow(flow_id)
        if flow is None:
            return False
        try:
            FlowTrigger.query.filter_by(flow_id=flow_id).delete()
            self.session.delete(flow)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Could not delete flow {flow_id}: {e}") from e
        return True

    def list_flows(self) -> List[Flow]:
        return self._all(Flow.query.order_by(Flow.created_at))

    # === Executions ===

    def create_execution(self, execution: FlowExecution) -> FlowExecution:
        return self._save(execution)

    def get_execution(self, execution_id: str) -> Optional[FlowExecution]:
        return self._get(FlowExecution, execution_id)

    def update_execution(self, execution: FlowExecution) -> FlowExecution:
        return self._save(execution)

    def list_executions(self, flow_id: Optional[str] = None) -> List[FlowExecution]:
        query = FlowExecution.query
        if flow_id is not None:
            query = query.filter_by(flow_id=flow_id)
        return self._all(query.order_by(FlowExecution.created_at))

    # === Steps ===

    def create_step(self, step: FlowExecutionStep) -> FlowExecutionStep:
        return self._save(step)

    def get_step(self, step_id: str) -> Optional[FlowExecutionStep]:
        return self._get(FlowExecutionStep, step_id)

    def update_step(self, step: FlowExecutionStep) -> FlowExecutionStep:
        return self._save(step)

    def list_steps(self, execution_id: str) -> List[FlowExecutionStep]:
        query = FlowExecutionStep.query.filter_by(execution_id=execution_id)
        return self._all(query.order_by(FlowExecutionStep.step_order))

    # === Triggers ===

    def create_trigger(self, trigger: FlowTrigger) -> FlowTrigger:
        return self._save(trigger)

    def get_trigger(self, trigger_id: str) -> Optional[FlowTrigger]:
        return self._get(FlowTrigger, trigger_id)

    def update_trigger(self, trigger: FlowTrigger) -> FlowTrigger:
        trigger.updated_at = utcnow()
        return self._save(trigger)

    def list_triggers(
        self,
        trigger_type: Optional[str] = None,
        flow_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[FlowTrigger]:
        query = FlowTrigger.query
        if trigger_type is not None:
            query = query.filter_by(trigger_type=trigger_type)
        if flow_id is not None:
            query = query.filter_by(flow_id=flow_id)
        if active_only:
            query = query.filter_by(is_active=True)
        return self._all(query.order_by(FlowTrigger.created_at))

    def find_trigger_by_path(self, webhook_path: str) -> Optional[FlowTrigger]:
        try:
            return FlowTrigger.query.filter_by(webhook_path=webhook_path.strip('/')).first()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Query failed: {e}") from e

    # === Variables ===

    def get_variable(self, scope: str, scope_id: Optional[str], name: str) -> Optional[FlowVariable]:
        try:
            return FlowVariable.query.filter_by(scope=scope, scope_id=scope_id, name=name).first()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Query failed: {e}") from e

    def upsert_variable(
        self,
        scope: str,
        scope_id: Optional[str],
        name: str,
        value: Any,
        is_secret: bool = False,
    ) -> FlowVariable:
        variable = self.get_variable(scope, scope_id, name)
        if variable is None:
            variable = FlowVariable.create(scope=scope, scope_id=scope_id, name=name, value=value, is_secret=is_secret)
            try:
                return self._save(variable)
            except PersistenceError as e:
                # Lost an insert race: the row exists now, update it instead
                if not isinstance(e.__cause__, IntegrityError):
                    raise
                variable = self.get_variable(scope, scope_id, name)
                if variable is None:
                    raise

        variable.value = value
        variable.variable_type = infer_variable_type(value)
        variable.is_secret = is_secret or variable.is_secret
        variable.updated_at = utcnow()
        return self._save(variable)

    def list_variables(self, scope: str, scope_id: Optional[str] = None) -> List[FlowVariable]:
        return self._all(FlowVariable.query.filter_by(scope=scope, scope_id=scope_id))

    def delete_variables(self, scope: str, scope_id: Optional[str]) -> int:
        try:
            removed = FlowVariable.query.filter_by(scope=scope, scope_id=scope_id).delete()
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceError(f"Could not delete {scope} variables of {scope_id}: {e}") from e
        return removed

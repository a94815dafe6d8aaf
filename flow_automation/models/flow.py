"""
Flow models - flows, their triggers and scoped variables.
"""
from enum import Enum
from typing import Any, Dict, Optional

from flow_automation.database import db
from flow_automation.utils import isoformat, new_id, utcnow


class TriggerType(str, Enum):
    """Trigger kinds that can start an execution"""
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    EVENT = "event"
    MANUAL = "manual"


class VariableScope(str, Enum):
    """Visibility tier of a FlowVariable; lookup goes execution -> flow -> global"""
    GLOBAL = "global"
    FLOW = "flow"
    EXECUTION = "execution"


class FlowCategory(str, Enum):
    CUSTOMER_SERVICE = "customer_service"
    MARKETING = "marketing"
    SALES = "sales"
    OPERATIONS = "operations"
    HR = "hr"
    FINANCE = "finance"
    GENERAL = "general"


class Flow(db.Model):
    """
    Flow - user-defined automation graph.

    flow_data holds the graph: {"nodes": [...], "connections": [...]}.
    Executions copy it into their own snapshot, so editing or deleting a flow
    never changes a run already in flight.
    """
    __tablename__ = 'flows'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Identification
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    category = db.Column(db.String(50), default=FlowCategory.GENERAL.value)

    # Ownership
    user_id = db.Column(db.String(36))
    organization_id = db.Column(db.String(36))

    # Status
    is_active = db.Column(db.Boolean, default=False, nullable=False)

    # Definition
    flow_data = db.Column(db.JSON, nullable=False, default=dict)
    variables = db.Column(db.JSON, default=dict)
    settings = db.Column(db.JSON, default=dict)

    # Counters (updated after every terminal execution)
    execution_count = db.Column(db.Integer, default=0, nullable=False)
    success_count = db.Column(db.Integer, default=0, nullable=False)
    error_count = db.Column(db.Integer, default=0, nullable=False)
    last_executed_at = db.Column(db.DateTime)

    __table_args__ = (
        db.Index('idx_flows_organization_id', 'organization_id'),
        db.Index('idx_flows_is_active', 'is_active'),
    )

    @classmethod
    def create(
        cls,
        name: str,
        flow_data: Optional[Dict[str, Any]] = None,
        settings: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        category: str = FlowCategory.GENERAL.value,
        description: Optional[str] = None,
        is_active: bool = False,
        flow_id: Optional[str] = None,
    ) -> 'Flow':
        now = utcnow()
        return cls(
            id=flow_id or new_id(),
            name=name,
            description=description,
            category=category,
            user_id=user_id,
            organization_id=organization_id,
            is_active=is_active,
            flow_data=flow_data or {'nodes': [], 'connections': []},
            variables=variables or {},
            settings=settings or {},
            execution_count=0,
            success_count=0,
            error_count=0,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'category': self.category,
            'user_id': self.user_id,
            'organization_id': self.organization_id,
            'is_active': self.is_active,
            'flow_data': self.flow_data,
            'variables': self.variables,
            'settings': self.settings,
            'execution_count': self.execution_count,
            'success_count': self.success_count,
            'error_count': self.error_count,
            'last_executed_at': isoformat(self.last_executed_at),
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }


class FlowTrigger(db.Model):
    """
    Configured event source for a flow.

    config by trigger_type:
    - webhook: {"method": "POST"}; path/secret live in webhook_path/webhook_secret
    - schedule: cron_expression + timezone; next_run_at maintained by the dispatcher
    - event: {"eventName": "message_received", "channel": "whatsapp", "filter": {"from": "+55..."}}
    """
    __tablename__ = 'flow_triggers'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    flow_id = db.Column(db.String(36), db.ForeignKey('flows.id', ondelete='CASCADE'), nullable=False)
    # Trigger node this source feeds (optional; None seeds every trigger node)
    node_id = db.Column(db.String(255))

    trigger_type = db.Column(db.String(50), nullable=False)
    config = db.Column(db.JSON, default=dict)

    # Webhook
    webhook_path = db.Column(db.String(255), unique=True)
    webhook_secret = db.Column(db.String(255))

    # Schedule
    cron_expression = db.Column(db.String(100))
    timezone = db.Column(db.String(64), default='UTC')
    next_run_at = db.Column(db.DateTime)

    # State
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    trigger_count = db.Column(db.Integer, default=0, nullable=False)
    last_triggered_at = db.Column(db.DateTime)

    __table_args__ = (
        db.Index('idx_flow_triggers_flow_id', 'flow_id'),
        db.Index('idx_flow_triggers_type_active', 'trigger_type', 'is_active'),
    )

    @classmethod
    def create(
        cls,
        flow_id: str,
        trigger_type: str,
        config: Optional[Dict[str, Any]] = None,
        node_id: Optional[str] = None,
        webhook_path: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        cron_expression: Optional[str] = None,
        timezone: str = 'UTC',
        is_active: bool = True,
        trigger_id: Optional[str] = None,
    ) -> 'FlowTrigger':
        now = utcnow()
        return cls(
            id=trigger_id or new_id(),
            flow_id=flow_id,
            node_id=node_id,
            trigger_type=TriggerType(trigger_type).value,
            config=config or {},
            webhook_path=webhook_path.strip('/') if webhook_path else None,
            webhook_secret=webhook_secret,
            cron_expression=cron_expression,
            timezone=timezone or 'UTC',
            next_run_at=None,
            is_active=is_active,
            trigger_count=0,
            last_triggered_at=None,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self, include_secret: bool = False):
        result = {
            'id': self.id,
            'flow_id': self.flow_id,
            'node_id': self.node_id,
            'trigger_type': self.trigger_type,
            'config': self.config,
            'webhook_path': self.webhook_path,
            'has_webhook_secret': bool(self.webhook_secret),
            'cron_expression': self.cron_expression,
            'timezone': self.timezone,
            'next_run_at': isoformat(self.next_run_at),
            'is_active': self.is_active,
            'trigger_count': self.trigger_count,
            'last_triggered_at': isoformat(self.last_triggered_at),
            'created_at': isoformat(self.created_at),
        }
        if include_secret:
            result['webhook_secret'] = self.webhook_secret
        return result


class FlowVariable(db.Model):
    """
    Scoped variable.

    scope_id is None for global variables, the flow id for flow variables and
    the execution id for execution variables. (scope, scope_id, name) is unique.
    """
    __tablename__ = 'flow_variables'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    scope = db.Column(db.String(20), nullable=False)
    scope_id = db.Column(db.String(36))
    name = db.Column(db.String(255), nullable=False)
    value = db.Column(db.JSON)
    variable_type = db.Column(db.String(20), default='string')
    is_secret = db.Column(db.Boolean, default=False, nullable=False)
    is_readonly = db.Column(db.Boolean, default=False, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('scope', 'scope_id', 'name', name='uq_flow_variables_scope_name'),
    )

    @classmethod
    def create(
        cls,
        scope: str,
        name: str,
        value: Any,
        scope_id: Optional[str] = None,
        is_secret: bool = False,
        is_readonly: bool = False,
    ) -> 'FlowVariable':
        now = utcnow()
        return cls(
            id=new_id(),
            scope=VariableScope(scope).value,
            scope_id=scope_id,
            name=name,
            value=value,
            variable_type=infer_variable_type(value),
            is_secret=is_secret,
            is_readonly=is_readonly,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self):
        return {
            'id': self.id,
            'scope': self.scope,
            'scope_id': self.scope_id,
            'name': self.name,
            'value': '***REDACTED***' if self.is_secret else self.value,
            'variable_type': self.variable_type,
            'is_secret': self.is_secret,
            'is_readonly': self.is_readonly,
            'updated_at': isoformat(self.updated_at),
        }


def infer_variable_type(value: Any) -> str:
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, dict):
        return 'object'
    if isinstance(value, list):
        return 'array'
    return 'string'

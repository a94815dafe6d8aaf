"""
Node types for flow graphs.

Each node type carries its own configuration dataclass. The mapping
``NODE_CONFIG_TYPES`` is the single place where a type tag is tied to its
configuration shape.
"""
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from flow_automation.config import config_value
from flow_automation.flow_engine.errors import GraphError


class NodeType(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    DELAY = "delay"
    DATA = "data"
    AI = "ai"
    NOTIFICATION = "notification"


class ErrorHandling(str, Enum):
    STOP = "stop"
    CONTINUE = "continue"


class LoggingLevel(str, Enum):
    NONE = "none"
    ERRORS = "errors"
    ALL = "all"


CONDITION_HANDLES = ("true", "false")

DELAY_UNITS = {
    'seconds': 1,
    'minutes': 60,
    'hours': 3600,
    'days': 86400,
}


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first key present in data (accepts snake_case and camelCase)"""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(frozen=True)
class NodeConfig:
    """Base configuration; subclasses declare the typed fields"""

    def resolved(self, resolver) -> 'NodeConfig':
        """Return a copy with every {{template}} in the config resolved"""
        return replace(self, **{f.name: resolver.resolve(getattr(self, f.name)) for f in fields(self)})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TriggerConfig(NodeConfig):
    trigger_type: Optional[str] = None
    conditions: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TriggerConfig':
        return cls(
            trigger_type=_pick(data, 'trigger_type', 'triggerType'),
            conditions=dict(_pick(data, 'conditions', default={})),
        )


@dataclass(frozen=True)
class ActionConfig(NodeConfig):
    action_type: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    timeout_ms: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ActionConfig':
        known = {'action_type', 'actionType', 'parameters', 'timeout', 'timeout_ms', 'timeoutMs'}
        parameters = dict(_pick(data, 'parameters', default={}))
        # Flat configs (e.g. {"to": ..., "message": ...}) are treated as parameters
        parameters.update({k: v for k, v in data.items() if k not in known})
        timeout = _pick(data, 'timeout_ms', 'timeoutMs', 'timeout')
        return cls(
            action_type=_pick(data, 'action_type', 'actionType'),
            parameters=parameters,
            timeout_ms=int(timeout) if timeout is not None else None,
        )


@dataclass(frozen=True)
class ConditionRule:
    field: str
    operator: str = 'eq'
    value: Any = None


@dataclass(frozen=True)
class ConditionConfig(NodeConfig):
    """
    Single comparison (field/operator/value) or a rule group.

    Examples:
        {"field": "status", "operator": "eq", "value": "paid"}
        {"conditions": [{...}, {...}], "logicalOperator": "OR"}
    """
    rules: List[ConditionRule] = field(default_factory=list)
    logical_operator: str = 'AND'
    default_path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ConditionConfig':
        raw_rules = list(_pick(data, 'conditions', 'rules', default=[]))
        if 'field' in data:
            raw_rules.insert(0, {'field': data['field'], 'operator': data.get('operator', 'eq'), 'value': data.get('value')})

        rules = []
        for raw in raw_rules:
            if not isinstance(raw, Mapping) or 'field' not in raw:
                raise GraphError(f"Condition rule must define a field: {raw!r}")
            rules.append(ConditionRule(field=raw['field'], operator=raw.get('operator', 'eq'), value=raw.get('value')))

        logical = _pick(data, 'logical_operator', 'logicalOperator', default='AND')
        # Per-rule logicalOperator (editor format) applies to the whole group
        for raw in raw_rules:
            if isinstance(raw, Mapping) and raw.get('logicalOperator'):
                logical = raw['logicalOperator']

        default_path = _pick(data, 'default_path', 'defaultPath')
        if default_path is not None and default_path not in CONDITION_HANDLES:
            raise GraphError(f"Invalid condition defaultPath: {default_path}")

        return cls(rules=rules, logical_operator=str(logical).upper(), default_path=default_path)


@dataclass(frozen=True)
class DelayConfig(NodeConfig):
    delay_type: str = 'fixed'
    duration: float = 0
    unit: str = 'seconds'
    dynamic_field: Optional[str] = None
    max_delay: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'DelayConfig':
        unit = _pick(data, 'unit', default='seconds')
        if unit not in DELAY_UNITS:
            raise GraphError(f"Invalid delay unit: {unit}")
        try:
            duration = float(_pick(data, 'duration', 'duration_seconds', default=0))
            max_delay = _pick(data, 'max_delay', 'maxDelay')
            max_delay = float(max_delay) if max_delay is not None else None
        except (TypeError, ValueError):
            raise GraphError(f"Invalid delay duration: {data!r}")
        return cls(
            delay_type=_pick(data, 'delay_type', 'delayType', default='fixed'),
            duration=duration,
            unit=unit,
            dynamic_field=_pick(data, 'dynamic_field', 'dynamicField'),
            max_delay=max_delay,
        )

    def seconds(self, input_data: Optional[Mapping[str, Any]] = None) -> float:
        """Delay length in seconds, capped by max_delay (same unit)"""
        duration = self.duration
        if self.delay_type == 'dynamic' and self.dynamic_field and input_data:
            try:
                duration = float(input_data.get(self.dynamic_field, duration))
            except (TypeError, ValueError):
                pass
        if self.max_delay is not None:
            duration = min(duration, self.max_delay)
        return max(duration, 0) * DELAY_UNITS[self.unit]


@dataclass(frozen=True)
class DataConfig(NodeConfig):
    operation: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'DataConfig':
        parameters = {k: v for k, v in data.items() if k != 'operation'}
        return cls(operation=data.get('operation'), parameters=parameters)


@dataclass(frozen=True)
class AIConfig(NodeConfig):
    prompt: str = ''
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    output_format: str = 'text'
    context_variables: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'AIConfig':
        return cls(
            prompt=_pick(data, 'prompt', default=''),
            model=data.get('model'),
            max_tokens=_pick(data, 'max_tokens', 'maxTokens'),
            temperature=data.get('temperature'),
            output_format=_pick(data, 'output_format', 'outputFormat', default='text'),
            context_variables=list(_pick(data, 'context_variables', 'contextVariables', default=[])),
        )


@dataclass(frozen=True)
class NotificationConfig(NodeConfig):
    channel: Optional[str] = None
    title: Optional[str] = None
    message: str = ''
    recipients: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'NotificationConfig':
        recipients = _pick(data, 'recipients', default=[])
        if isinstance(recipients, str):
            recipients = [recipients]
        return cls(
            channel=data.get('channel'),
            title=data.get('title'),
            message=data.get('message', ''),
            recipients=list(recipients),
        )


NODE_CONFIG_TYPES = {
    NodeType.TRIGGER: TriggerConfig,
    NodeType.ACTION: ActionConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.DATA: DataConfig,
    NodeType.AI: AIConfig,
    NodeType.NOTIFICATION: NotificationConfig,
}


@dataclass(frozen=True)
class FlowNode:
    id: str
    type: NodeType
    config: NodeConfig
    subtype: Optional[str] = None
    raw_config: Mapping[str, Any] = field(default_factory=dict, compare=False)
    label: Optional[str] = None
    position: Optional[Mapping[str, Any]] = field(default=None, compare=False)

    @property
    def executor_key(self) -> str:
        """Dispatch-table key, e.g. 'action.send_message' or 'data.transform'"""
        return f"{self.type.value}.{self.subtype}" if self.subtype else self.type.value

    @property
    def is_trigger(self) -> bool:
        return self.type == NodeType.TRIGGER

    @property
    def is_condition(self) -> bool:
        return self.type == NodeType.CONDITION

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'FlowNode':
        node_id = data.get('id')
        if not node_id:
            raise GraphError(f"Node without id: {data!r}")

        try:
            node_type = NodeType(data.get('type'))
        except ValueError:
            raise GraphError(f"Unknown node type '{data.get('type')}'", node_id=node_id)

        try:
            raw_config = dict(data.get('config') or {})
            config = NODE_CONFIG_TYPES[node_type].from_dict(raw_config)
        except (TypeError, ValueError) as e:
            raise GraphError(f"Invalid configuration for node '{node_id}': {e}", node_id=node_id)

        return cls(
            id=str(node_id),
            type=node_type,
            subtype=data.get('subtype'),
            config=config,
            raw_config=MappingProxyType(raw_config),
            label=data.get('label'),
            position=data.get('position'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'subtype': self.subtype,
            'config': dict(self.raw_config),
            'label': self.label,
            'position': dict(self.position) if self.position else None,
        }


@dataclass(frozen=True)
class FlowConnection:
    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'FlowConnection':
        source = data.get('source')
        target = data.get('target')
        if not source or not target:
            raise GraphError(f"Connection must define source and target: {data!r}", connection_id=data.get('id'))
        return cls(
            id=str(data.get('id') or f"{source}->{target}"),
            source=str(source),
            target=str(target),
            source_handle=_pick(data, 'source_handle', 'sourceHandle'),
            target_handle=_pick(data, 'target_handle', 'targetHandle'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'source': self.source,
            'sourceHandle': self.source_handle,
            'target': self.target,
            'targetHandle': self.target_handle,
        }


@dataclass(frozen=True)
class FlowSettings:
    timeout_ms: int = 300000
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    error_handling: ErrorHandling = ErrorHandling.STOP
    logging_level: LoggingLevel = LoggingLevel.ALL
    max_concurrency: int = 4

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]], defaults: Optional['FlowSettings'] = None) -> 'FlowSettings':
        """
        Parse settings from a flow's settings mapping.

        Raises:
            ValueError: if a value is out of range or not one of the allowed options
        """
        base = defaults or cls()
        data = data or {}

        settings = cls(
            timeout_ms=int(_pick(data, 'timeout_ms', 'timeoutMs', 'timeout', default=base.timeout_ms)),
            retry_attempts=int(_pick(data, 'retry_attempts', 'retryAttempts', default=base.retry_attempts)),
            retry_delay_ms=int(_pick(data, 'retry_delay_ms', 'retryDelayMs', 'retryDelay', default=base.retry_delay_ms)),
            error_handling=ErrorHandling(_pick(data, 'error_handling', 'errorHandling', default=base.error_handling)),
            logging_level=LoggingLevel(_pick(data, 'logging_level', 'loggingLevel', 'logging', default=base.logging_level)),
            max_concurrency=int(_pick(data, 'max_concurrency', 'concurrency', default=base.max_concurrency)),
        )

        if settings.timeout_ms <= 0:
            raise ValueError(f"timeoutMs must be positive, got {settings.timeout_ms}")
        if settings.retry_attempts < 0:
            raise ValueError(f"retryAttempts must be >= 0, got {settings.retry_attempts}")
        if settings.retry_delay_ms < 0:
            raise ValueError(f"retryDelayMs must be >= 0, got {settings.retry_delay_ms}")
        if settings.max_concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {settings.max_concurrency}")

        return settings

    @classmethod
    def defaults_from_config(cls, config) -> 'FlowSettings':
        """Build default settings from a Config class or Flask config mapping"""
        return cls(
            timeout_ms=config_value(config, 'FLOW_DEFAULT_TIMEOUT_MS', 300000),
            retry_attempts=config_value(config, 'FLOW_DEFAULT_RETRY_ATTEMPTS', 3),
            retry_delay_ms=config_value(config, 'FLOW_DEFAULT_RETRY_DELAY_MS', 1000),
            max_concurrency=config_value(config, 'FLOW_MAX_CONCURRENCY', 4),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timeoutMs': self.timeout_ms,
            'retryAttempts': self.retry_attempts,
            'retryDelayMs': self.retry_delay_ms,
            'errorHandling': self.error_handling.value,
            'loggingLevel': self.logging_level.value,
            'concurrency': self.max_concurrency,
        }

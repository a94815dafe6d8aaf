"""
Flow engine exceptions.

Every error carries a stable ``kind`` string; it is stored in
``error_details['kind']`` on executions and steps so failures can be told
apart without parsing messages.
"""
from typing import Iterable, List, Optional


class FlowEngineError(Exception):
    """Base error for the flow engine"""
    kind = 'engine_error'

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_details(self) -> dict:
        return {'kind': self.kind, 'message': self.message}


# === Structural errors (raised before execution, never retried) ===

class StructuralError(FlowEngineError):
    """The flow definition itself cannot be executed"""
    kind = 'structural_error'


class GraphError(StructuralError):
    """Invalid node/connection structure"""
    kind = 'graph_error'

    def __init__(self, message: str, node_id: Optional[str] = None, connection_id: Optional[str] = None):
        self.node_id = node_id
        self.connection_id = connection_id
        super().__init__(message)


class CycleDetected(GraphError):
    """A directed path reachable from a trigger returns to one of its own nodes"""
    kind = 'cycle_detected'

    def __init__(self, path: List[str]):
        self.path = list(path)
        super().__init__(f"Cycle detected: {' -> '.join(self.path)}", node_id=self.path[0] if self.path else None)


class ValidationError(StructuralError):
    """Validation produced blocking errors"""
    kind = 'validation_error'

    def __init__(self, errors: Iterable[dict]):
        self.errors = list(errors)
        messages = '; '.join(e.get('message', '') for e in self.errors)
        super().__init__(f"Flow is not valid: {messages}")


# === Ingress errors (no execution is created) ===

class AuthError(FlowEngineError):
    kind = 'auth_error'


class InvalidSignature(AuthError):
    kind = 'invalid_signature'

    def __init__(self, trigger_id: str):
        self.trigger_id = trigger_id
        super().__init__(f"Invalid webhook signature for trigger {trigger_id}")


class TriggerDisabled(AuthError):
    kind = 'trigger_disabled'

    def __init__(self, trigger_id: str, reason: str = 'trigger is inactive'):
        self.trigger_id = trigger_id
        super().__init__(f"Trigger {trigger_id} rejected: {reason}")


class TriggerNotFound(FlowEngineError):
    kind = 'trigger_not_found'


# === Runtime errors ===

class NodeExecutionError(FlowEngineError):
    """Raised (or normalized) when an effect executor fails"""
    kind = 'node_error'

    def __init__(self, message: str, node_id: Optional[str] = None, retryable: bool = True):
        self.node_id = node_id
        self.retryable = retryable
        super().__init__(message)

    @classmethod
    def wrap(cls, error: FlowEngineError, node_id: Optional[str] = None) -> 'NodeExecutionError':
        """Non-retryable node failure that keeps the kind of an engine error raised inside a node"""
        wrapped = cls(error.message, node_id=node_id, retryable=False)
        wrapped.kind = error.kind
        return wrapped


class NodeTimeoutError(NodeExecutionError):
    kind = 'node_timeout'

    def __init__(self, node_id: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Node {node_id} timed out after {timeout_ms}ms", node_id=node_id)


class ExecutionTimeoutError(FlowEngineError):
    kind = 'execution_timeout'

    def __init__(self, execution_id: str, timeout_ms: int):
        self.execution_id = execution_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Execution {execution_id} exceeded {timeout_ms}ms")


class FatalError(FlowEngineError):
    """Aborts the current execution immediately"""
    kind = 'fatal_error'

    def to_details(self) -> dict:
        details = super().to_details()
        details['fatal'] = True
        return details


class PersistenceError(FatalError):
    kind = 'persistence_error'


# === Service errors ===

class VariableNotFound(FlowEngineError):
    kind = 'variable_not_found'

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Variable not found: {key}")


class FlowInUseError(FlowEngineError):
    kind = 'flow_in_use'

    def __init__(self, flow_id: str, execution_ids: Iterable[str]):
        self.flow_id = flow_id
        self.execution_ids = list(execution_ids)
        super().__init__(f"Flow {flow_id} has executions in flight: {', '.join(self.execution_ids)}")


class ConfigurationError(FlowEngineError):
    kind = 'configuration_error'

    def __init__(self, key: str, sources: Iterable[str]):
        self.key = key
        self.sources = list(sources)
        super().__init__(f"No value for '{key}' in sources: {', '.join(self.sources) or 'none'}")

"""
Effect executors - the external work a node performs.

The engine only knows the contract below; a dispatch table keyed by
'<type>.<subtype>' (e.g. 'action.send_message') maps each node to its
executor.
"""
import abc
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from flow_automation.flow_engine.errors import NodeExecutionError

logger = logging.getLogger(__name__)


@dataclass
class EffectContext:
    """
    Context provided to effect executors during execution
    """
    execution_id: str
    node_id: str
    flow_id: Optional[str] = None

    # Trigger payload of the execution
    trigger_output: Dict[str, Any] = field(default_factory=dict)

    # Outputs of completed ancestor nodes, by node id
    steps_output: Dict[str, Any] = field(default_factory=dict)

    # Variable values visible to the execution
    variables: Dict[str, Any] = field(default_factory=dict)

    # VariableStore, for executors that write variables
    variable_store: Any = None

    # 0 for the first attempt
    attempt: int = 0

    # (level, message, data) -> step log
    log: Optional[Callable[..., None]] = None

    def write_log(self, level: str, message: str, data: Optional[Dict[str, Any]] = None):
        if self.log is not None:
            self.log(level, message, data)


@dataclass
class EffectResult:
    """Result from executing an effect"""
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None  # {"message": "...", "retryable": bool}

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None) -> 'EffectResult':
        return cls(success=True, data=data or {})

    @classmethod
    def failed(cls, message: str, retryable: bool = True) -> 'EffectResult':
        return cls(success=False, error={'message': message, 'retryable': retryable})

    def raise_for_error(self, node_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Return the output data, or raise NodeExecutionError for a failed result.
        """
        if self.success:
            return self.data or {}
        error = self.error or {}
        raise NodeExecutionError(
            error.get('message') or 'Effect failed',
            node_id=node_id,
            retryable=error.get('retryable', True),
        )


# (config, resolved input, context) -> EffectResult or plain output dict
EffectHandler = Callable[[Any, Dict[str, Any], EffectContext], Awaitable[Union[EffectResult, Dict[str, Any]]]]


class EffectExecutor(abc.ABC):
    """
    Executor for one node type/subtype.

    Failures are reported by raising or by returning EffectResult(success=False);
    the engine handles timeouts and retries around the call.
    """

    @abc.abstractmethod
    async def execute(self, config: Any, input_data: Dict[str, Any], ctx: EffectContext) -> EffectResult:
        ...


class FunctionExecutor(EffectExecutor):
    """Adapts a plain async (or sync) function to the executor contract"""

    def __init__(self, handler: EffectHandler):
        self.handler = handler

    async def execute(self, config: Any, input_data: Dict[str, Any], ctx: EffectContext) -> EffectResult:
        result = self.handler(config, input_data, ctx)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, EffectResult):
            return result
        return EffectResult.ok(result)


class EffectRegistry:
    """
    Dispatch table: node executor key -> EffectExecutor.

    Usage:
        registry = EffectRegistry()
        registry.register('action.send_message', SendMessageExecutor(provider))
        registry.get(node.executor_key)
    """

    def __init__(self, executors: Optional[Dict[str, Union[EffectExecutor, EffectHandler]]] = None):
        self._executors: Dict[str, EffectExecutor] = {}
        for key, executor in (executors or {}).items():
            self.register(key, executor)

    def register(self, key: str, executor: Union[EffectExecutor, EffectHandler]) -> 'EffectRegistry':
        if not isinstance(executor, EffectExecutor):
            executor = FunctionExecutor(executor)
        self._executors[key] = executor
        logger.debug(f"Registered effect executor: {key}")
        return self

    def get(self, key: str) -> EffectExecutor:
        """
        Raises:
            NodeExecutionError: no executor for key (not retryable)
        """
        executor = self._executors.get(key)
        if executor is None:
            raise NodeExecutionError(f"No executor registered for '{key}'", retryable=False)
        return executor

    def has(self, key: str) -> bool:
        return key in self._executors

    def keys(self) -> List[str]:
        return sorted(self._executors)

"""
Variable Resolver - scoped variables and {{template}} references

Scoped variables (VariableStore):
- execution scope -> flow scope -> global scope, first match wins
- set() is an upsert per (scope, scope_id, name)
- execution-scope variables are dropped when the execution ends

Template references (VariableResolver):
- {{trigger.field}} - Access trigger payload
- {{nodeId.field}} - Access an ancestor node's output
- {{vars.name}} - Access a scoped variable
- Nested paths: {{trigger.deal.properties.name}}
- Array access: {{trigger.line_items[0].name}}
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from flow_automation.flow_engine.errors import VariableNotFound
from flow_automation.models import FlowVariable, VariableScope
from flow_automation.utils import get_path

logger = logging.getLogger(__name__)

REDACTED = '***REDACTED***'


class VariableStore:
    """
    Scoped variable access on top of the repository.

    Usage:
        store = VariableStore(repository)
        store.set('execution', 'order_id', 42, scope_id=execution.id)
        store.resolve('order_id', execution_id=execution.id, flow_id=flow.id)
    """

    def __init__(self, repository):
        self.repository = repository

    def set(
        self,
        scope: str,
        name: str,
        value: Any,
        scope_id: Optional[str] = None,
        is_secret: bool = False,
    ) -> FlowVariable:
        """
        Insert or replace a variable. Setting the same key twice leaves only
        the last value.

        Raises:
            ValueError: unknown scope, or a flow/execution scope without scope_id
        """
        scope = VariableScope(scope)
        if scope == VariableScope.GLOBAL:
            scope_id = None
        elif not scope_id:
            raise ValueError(f"scope_id is required for {scope.value} variables")

        variable = self.repository.upsert_variable(scope.value, scope_id, name, value, is_secret=is_secret)
        logger.debug(f"Set {scope.value} variable '{name}'")
        return variable

    def get(self, scope: str, name: str, scope_id: Optional[str] = None) -> Optional[FlowVariable]:
        scope = VariableScope(scope)
        return self.repository.get_variable(scope.value, None if scope == VariableScope.GLOBAL else scope_id, name)

    def lookup(
        self,
        name: str,
        execution_id: Optional[str] = None,
        flow_id: Optional[str] = None,
    ) -> Optional[FlowVariable]:
        """First variable named `name` in execution -> flow -> global order"""
        for scope, scope_id in self._chain(execution_id, flow_id):
            variable = self.repository.get_variable(scope.value, scope_id, name)
            if variable is not None:
                return variable
        return None

    def resolve(
        self,
        name: str,
        execution_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        flow_defaults: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """
        Resolve a variable value.

        flow_defaults is the flow's own variable map; it sits between the
        flow-scope records and the global scope.

        Raises:
            VariableNotFound: if no scope defines the variable
        """
        for scope, scope_id in self._chain(execution_id, flow_id):
            variable = self.repository.get_variable(scope.value, scope_id, name)
            if variable is not None:
                return variable.value
            if scope == VariableScope.FLOW and flow_defaults and name in flow_defaults:
                return flow_defaults[name]
        raise VariableNotFound(name)

    def visible(
        self,
        execution_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        flow_defaults: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Every variable value visible to an execution, narrower scopes overriding wider ones"""
        values: Dict[str, Any] = {}
        for variable in self.repository.list_variables(VariableScope.GLOBAL.value, None):
            values[variable.name] = variable.value
        values.update(flow_defaults or {})
        for scope, scope_id in ((VariableScope.FLOW, flow_id), (VariableScope.EXECUTION, execution_id)):
            if scope_id:
                for variable in self.repository.list_variables(scope.value, scope_id):
                    values[variable.name] = variable.value
        return values

    def secret_values(self, execution_id: Optional[str] = None, flow_id: Optional[str] = None) -> List[Any]:
        """Values of every secret variable visible to an execution"""
        secrets = []
        for scope, scope_id in self._chain(execution_id, flow_id):
            secrets.extend(v.value for v in self.repository.list_variables(scope.value, scope_id) if v.is_secret)
        return secrets

    def clear_execution(self, execution_id: str) -> int:
        removed = self.repository.delete_variables(VariableScope.EXECUTION.value, execution_id)
        if removed:
            logger.debug(f"Discarded {removed} execution variables of {execution_id}")
        return removed

    @staticmethod
    def _chain(execution_id: Optional[str], flow_id: Optional[str]):
        if execution_id:
            yield VariableScope.EXECUTION, execution_id
        if flow_id:
            yield VariableScope.FLOW, flow_id
        yield VariableScope.GLOBAL, None


def variable_source(store: VariableStore):
    """Global-scope variables as a source for resolve_integration_config()"""

    def lookup(key):
        variable = store.get(VariableScope.GLOBAL.value, key)
        return variable.value if variable is not None else None

    return 'global_variables', lookup


def redact(value: Any, secrets: Iterable[Any]) -> Any:
    """
    Replace every occurrence of a secret value with the redaction marker.

    Works recursively on dicts and lists; strings that embed a secret have
    only the secret part replaced.
    """
    secrets = [s for s in secrets if s not in (None, '')]
    if not secrets:
        return value
    return _redact(value, secrets)


def _redact(value: Any, secrets: List[Any]) -> Any:
    if isinstance(value, dict):
        return {k: _redact(v, secrets) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(v, secrets) for v in value]
    if isinstance(value, str):
        for secret in secrets:
            text = secret if isinstance(secret, str) else str(secret)
            if text and text in value:
                value = value.replace(text, REDACTED)
        return value
    if any(value == s and type(value) is type(s) for s in secrets):
        return REDACTED
    return value


class VariableResolver:
    """
    Resolves {{...}} references in node configuration.

    Examples:
        {{trigger.from}} -> "+5511999999999"
        {{trigger.order.items[0].sku}} -> "SKU-1"
        {{classify.ai_response}} -> "refund"
        {{vars.api_base}} -> "https://api.example.com"
    """

    VARIABLE_PATTERN = re.compile(r'\{\{([^}]+)\}\}')
    VARIABLES_SOURCE = 'vars'

    def __init__(self, trigger_output: Optional[Dict[str, Any]] = None,
                 steps_output: Optional[Dict[str, Any]] = None,
                 variables: Optional[Dict[str, Any]] = None):
        """
        Args:
            trigger_output: Trigger payload of the execution
            steps_output: Outputs of completed ancestor nodes, by node id
            variables: Scoped variable values visible to the execution
        """
        self.trigger_output = trigger_output or {}
        self.steps_output = steps_output or {}
        self.variables = variables or {}

    def resolve(self, value: Any) -> Any:
        """Resolve references in strings, recursing into dicts and lists"""
        if isinstance(value, str):
            return self._resolve_string(value)
        elif isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        elif isinstance(value, (list, tuple)):
            return [self.resolve(item) for item in value]
        else:
            return value

    def _resolve_string(self, text: str) -> Any:
        """
        A string made of one reference keeps the referenced value's type;
        references inside longer text are interpolated (missing -> '').

            "{{trigger.total}}" -> 99.9
            "Total: {{trigger.total}}" -> "Total: 99.9"
        """
        whole = self.VARIABLE_PATTERN.fullmatch(text)
        if whole:
            return self.resolve_path(whole.group(1).strip())

        def interpolate(match):
            value = self.resolve_path(match.group(1).strip())
            return '' if value is None else str(value)

        return self.VARIABLE_PATTERN.sub(interpolate, text)

    def resolve_path(self, path: str) -> Any:
        """
        "trigger.<path>", "vars.<name>" or "<nodeId>.<path>"; None when missing.
        """
        source_name, _, rest = path.partition('.')

        if source_name == 'trigger':
            source = self.trigger_output
        elif source_name == self.VARIABLES_SOURCE:
            source = self.variables
        elif source_name in self.steps_output:
            source = self.steps_output[source_name]
        else:
            logger.warning(f"Unknown source in path: {source_name} (available: {self.get_available_variables()})")
            return None

        if not rest:
            return source

        value = get_path(source, rest)
        if value is None:
            logger.debug(f"Path not found: {path}")
        return value

    def validate(self, value: Any) -> List[str]:
        """
        Returns:
            Referenced paths that resolve to nothing, in order of appearance
        """
        unresolved = []

        def walk(item):
            if isinstance(item, str):
                for match in self.VARIABLE_PATTERN.finditer(item):
                    path = match.group(1).strip()
                    if self.resolve_path(path) is None:
                        unresolved.append(path)
            elif isinstance(item, dict):
                for v in item.values():
                    walk(v)
            elif isinstance(item, (list, tuple)):
                for v in item:
                    walk(v)

        walk(value)
        return unresolved

    def add_step_output(self, node_id: str, output: Dict[str, Any]):
        self.steps_output[node_id] = output

    def get_available_variables(self) -> List[str]:
        return ['trigger', self.VARIABLES_SOURCE] + list(self.steps_output.keys())

"""
Data effects - transform payloads and write variables.

data.transform config:
    {"operation": "json", "transformation": {"pick": [...], "rename": {...}, "set": {...}}}
    {"operation": "text", "input_text": "{{trigger.name}}", "text_operation": "uppercase"}
    {"operation": "math", "expression": "{{trigger.price}} * 1.1"}

data.set_variable config:
    {"variable_name": "order_id", "variable_value": "{{trigger.id}}", "scope": "execution"}
"""
import ast
import logging
import math
import operator
from typing import Any, Dict

from flow_automation.effects.base import EffectContext, EffectResult
from flow_automation.flow_engine.nodes import DataConfig
from flow_automation.utils import get_path

logger = logging.getLogger(__name__)

TEXT_OPERATIONS = {
    'uppercase': str.upper,
    'lowercase': str.lower,
    'trim': str.strip,
    'capitalize': str.capitalize,
    'title': str.title,
}

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPERATORS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

# Bounds a**b so a single node cannot stall the worker
MAX_EXPONENT = 1000
MAX_RESULT_DIGITS = 1000


def evaluate_math(expression: str) -> float:
    """
    Evaluate an arithmetic expression (numbers, + - * / // % **, parentheses).

    Raises:
        ValueError: syntax error or anything besides arithmetic
    """
    try:
        tree = ast.parse(str(expression).strip(), mode='eval')
    except SyntaxError:
        raise ValueError(f"Invalid expression syntax: {expression}")
    return _eval_node(tree.body)


def _eval_node(node: ast.AST):
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value

    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
            raise ValueError(f"Exponent too large: {right}")
        if isinstance(node.op, ast.Pow) and abs(left) > 1 and right * math.log10(abs(left)) > MAX_RESULT_DIGITS:
            raise ValueError("Result too large")
        try:
            return _BINARY_OPERATORS[type(node.op)](left, right)
        except ZeroDivisionError:
            raise ValueError("Division by zero")
        except OverflowError:
            raise ValueError("Result too large")

    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_eval_node(node.operand))

    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


def apply_json_transformation(data: Any, transformation: Dict[str, Any]) -> Any:
    """
    Apply pick / rename / set to a mapping, in that order.

    - pick: {"pick": ["id", "customer.email"]} keeps the listed (dotted) paths
    - rename: {"rename": {"old": "new"}} renames top-level keys
    - set: {"set": {"source": "flow"}} adds constant keys
    """
    if not isinstance(data, dict):
        raise ValueError(f"JSON transformation expects an object, got {type(data).__name__}")

    result = dict(data)

    pick = transformation.get('pick')
    if pick:
        result = {path: get_path(data, path) for path in pick}

    for old, new in (transformation.get('rename') or {}).items():
        if old in result:
            result[new] = result.pop(old)

    result.update(transformation.get('set') or {})
    return result


async def transform_handler(config: DataConfig, input_data: Dict[str, Any], ctx: EffectContext) -> EffectResult:
    """
    data.transform - json, text or math operation on resolved parameters
    """
    params = config.parameters
    operation = config.operation or params.get('transform_type') or 'json'

    try:
        if operation == 'json':
            source = params.get('input_data', input_data)
            transformed = apply_json_transformation(source, params.get('transformation') or {})
            return EffectResult.ok({'transformed_data': transformed})

        if operation == 'text':
            text_operation = params.get('text_operation') or params.get('textOperation') or 'trim'
            func = TEXT_OPERATIONS.get(text_operation)
            if func is None:
                return EffectResult.failed(f"Unknown text operation: {text_operation}", retryable=False)
            text = params.get('input_text')
            text = '' if text is None else str(text)
            return EffectResult.ok({'transformed_text': func(text)})

        if operation == 'math':
            result = evaluate_math(params.get('expression', ''))
            return EffectResult.ok({'math_result': result})

    except ValueError as e:
        return EffectResult.failed(str(e), retryable=False)

    return EffectResult.failed(f"Unknown transform operation: {operation}", retryable=False)


async def set_variable_handler(config: DataConfig, input_data: Dict[str, Any], ctx: EffectContext) -> EffectResult:
    """
    data.set_variable - upsert an execution (default) or flow variable
    """
    params = config.parameters
    name = params.get('variable_name') or params.get('variableName') or params.get('name')
    if not name:
        return EffectResult.failed('variable_name is required', retryable=False)
    if ctx.variable_store is None:
        return EffectResult.failed('No variable store available', retryable=False)

    value = params.get('variable_value', params.get('variableValue', params.get('value')))
    scope = params.get('scope') or 'execution'
    if scope not in ('execution', 'flow'):
        return EffectResult.failed(f"Variables can only be set in execution or flow scope, got '{scope}'", retryable=False)

    scope_id = ctx.execution_id if scope == 'execution' else ctx.flow_id
    ctx.variable_store.set(scope, name, value, scope_id=scope_id, is_secret=bool(params.get('is_secret', False)))
    ctx.variables[name] = value
    ctx.write_log('info', f"Set {scope} variable '{name}'")

    return EffectResult.ok({
        'variable_set': name,
        'value': value,
        'scope': scope,
    })

"""
Flow Engine - graph model, validation and execution of automation flows

Import the executor from flow_automation.flow_engine.executor.
"""

from flow_automation.flow_engine.graph import FlowGraph, update_node_config
from flow_automation.flow_engine.step_recorder import StepRecorder
from flow_automation.flow_engine.validator import FlowValidator, ValidationResult
from flow_automation.flow_engine.variable_resolver import VariableResolver, VariableStore

__all__ = [
    'FlowGraph',
    'FlowValidator',
    'StepRecorder',
    'ValidationResult',
    'VariableResolver',
    'VariableStore',
    'update_node_config',
]

from .flow import Flow, FlowCategory, FlowTrigger, FlowVariable, TriggerType, VariableScope
from .execution import ExecutionStatus, FlowExecution, FlowExecutionStep, StepStatus

__all__ = [
    'Flow',
    'FlowCategory',
    'FlowTrigger',
    'FlowVariable',
    'TriggerType',
    'VariableScope',
    'ExecutionStatus',
    'FlowExecution',
    'FlowExecutionStep',
    'StepStatus',
]

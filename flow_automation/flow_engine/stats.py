"""
Flow statistics derived from the execution history (read-only).
"""
from typing import Any, Dict

from flow_automation.models import ExecutionStatus
from flow_automation.utils import isoformat


def get_flow_stats(repository, flow_id: str) -> Dict[str, Any]:
    """
    Returns:
        {totalExecutions, successfulExecutions, failedExecutions,
         avgDurationMs, successRate, lastExecution}
    """
    executions = repository.list_executions(flow_id=flow_id)

    total = len(executions)
    successful = sum(1 for e in executions if e.status == ExecutionStatus.COMPLETED.value)
    failed = sum(1 for e in executions if e.status == ExecutionStatus.FAILED.value)

    durations = [e.duration_ms for e in executions if e.duration_ms is not None]
    avg_duration = round(sum(durations) / len(durations), 2) if durations else 0

    last = max(executions, key=lambda e: e.created_at) if executions else None

    return {
        'totalExecutions': total,
        'successfulExecutions': successful,
        'failedExecutions': failed,
        'avgDurationMs': avg_duration,
        'successRate': round(successful / total * 100, 2) if total else 0,
        'lastExecution': isoformat(last.created_at) if last else None,
    }

"""
Cron evaluation for schedule triggers.

Cron expressions are evaluated in the trigger's timezone; next_run_at is
stored as naive UTC like every other timestamp.
"""
from datetime import datetime, timezone as dt_timezone
from typing import Optional

from croniter import croniter
from dateutil import tz

from flow_automation.flow_engine.errors import GraphError


def get_timezone(name: Optional[str]):
    """
    Raises:
        GraphError: unknown timezone name
    """
    zone = tz.gettz(name or 'UTC')
    if zone is None:
        raise GraphError(f"Unknown timezone: {name}")
    return zone


def validate_cron(expression: Optional[str]) -> str:
    """
    Raises:
        GraphError: missing or invalid cron expression
    """
    if not expression or not croniter.is_valid(expression):
        raise GraphError(f"Invalid cron expression: {expression!r}")
    return expression


def next_run_after(expression: str, after: datetime, timezone_name: Optional[str] = 'UTC') -> datetime:
    """
    First cron occurrence strictly after `after`.

    Args:
        expression: Cron expression, e.g. "0 9 * * *"
        after: Naive UTC timestamp
        timezone_name: IANA timezone the expression is written in

    Returns:
        Naive UTC timestamp
    """
    validate_cron(expression)
    zone = get_timezone(timezone_name)
    local_after = after.replace(tzinfo=dt_timezone.utc).astimezone(zone)
    local_next = croniter(expression, local_after).get_next(datetime)
    return local_next.astimezone(dt_timezone.utc).replace(tzinfo=None)

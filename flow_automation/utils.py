"""
Small helpers shared across the engine.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp (the form stored in DateTime columns)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def get_path(data: Any, path: str) -> Any:
    """
    Navigate a dotted path with optional list indexes.

    Examples:
        get_path({'deal': {'name': 'A'}}, 'deal.name') -> 'A'
        get_path({'items': [{'id': 1}]}, 'items[0].id') -> 1

    Returns:
        Value found, or None when any segment is missing
    """
    current = data
    for part in path.split('.'):
        if part == '':
            return None

        index = None
        if '[' in part and part.endswith(']'):
            part, index_str = part.split('[', 1)
            try:
                index = int(index_str.rstrip(']'))
            except ValueError:
                return None

        if part:
            if not isinstance(current, dict) or part not in current:
                return None
            current = current[part]

        if index is not None:
            if not isinstance(current, list) or not -len(current) <= index < len(current):
                return None
            current = current[index]

    return current

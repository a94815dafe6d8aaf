from flow_automation.triggers.clock import ScheduleClock
from flow_automation.triggers.dispatcher import TriggerDispatcher, event_matches
from flow_automation.triggers.event_bus import EventBus
from flow_automation.triggers.schedule import next_run_after
from flow_automation.triggers.signature import compute_signature, verify_signature

__all__ = [
    'EventBus',
    'ScheduleClock',
    'TriggerDispatcher',
    'compute_signature',
    'event_matches',
    'next_run_after',
    'verify_signature',
]

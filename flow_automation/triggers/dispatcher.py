"""
Trigger Dispatcher - turns external events into executions.

Entry points:
- handle_webhook(path, body, headers): HTTP ingress, HMAC-checked when a secret is set
- dispatch_due_schedules(now): fires due schedule triggers once each
- handle_event(event_name, payload): event-bus delivery matched by name/channel/filter
- test_trigger(trigger_id, data): manual firing

Every firing increments trigger_count/last_triggered_at before the
execution starts, whatever its outcome. Structural errors always propagate;
execution failures are reported through the returned execution's status.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from flow_automation.config import config_value
from flow_automation.flow_engine.errors import (
    GraphError,
    InvalidSignature,
    StructuralError,
    TriggerDisabled,
    TriggerNotFound,
)
from flow_automation.models import FlowExecution, FlowTrigger, TriggerType
from flow_automation.triggers.schedule import get_timezone, next_run_after, validate_cron
from flow_automation.triggers.signature import verify_signature
from flow_automation.utils import get_path, isoformat, utcnow

logger = logging.getLogger(__name__)


def event_matches(trigger: FlowTrigger, event_name: str, payload: Mapping[str, Any]) -> bool:
    """
    Match an event against an event trigger's config:
    {"eventName": "...", "channel": "...", "filter": {"dotted.path": value}}
    """
    config = trigger.config or {}
    expected = config.get('eventName') or config.get('event_name')
    if expected != event_name:
        return False

    channel = config.get('channel')
    if channel and payload.get('channel') != channel:
        return False

    for path, value in (config.get('filter') or {}).items():
        if get_path(payload, path) != value:
            return False

    return True


class TriggerDispatcher:
    """
    Usage:
        dispatcher = TriggerDispatcher(repository, executor, config=app.config)
        execution = await dispatcher.handle_webhook('orders/new', body, headers)
    """

    def __init__(self, repository, executor, event_bus=None, config=None, clock=None):
        """
        Args:
            repository: Persistence
            executor: FlowExecutor
            event_bus: Optional EventBus; event triggers are subscribed on it
            config: Config class or Flask config mapping
            clock: Callable returning naive UTC now (utcnow)
        """
        self.repository = repository
        self.executor = executor
        self.event_bus = event_bus
        self.clock = clock or utcnow
        self.signature_header = config_value(config, 'WEBHOOK_SIGNATURE_HEADER', 'X-Webhook-Signature')
        self._subscribed = set()

    # === Trigger management ===

    def register_trigger(self, trigger: FlowTrigger) -> FlowTrigger:
        """
        Validate and store a trigger. Schedule triggers get their first next_run_at.

        Raises:
            GraphError: invalid trigger configuration
            TriggerNotFound: the flow does not exist
        """
        if self.repository.get_flow(trigger.flow_id) is None:
            raise TriggerNotFound(f"Flow not found: {trigger.flow_id}")

        trigger_type = TriggerType(trigger.trigger_type)

        if trigger_type == TriggerType.WEBHOOK:
            if not trigger.webhook_path:
                raise GraphError('Webhook trigger requires a path')
            if self.repository.find_trigger_by_path(trigger.webhook_path) is not None:
                raise GraphError(f"Webhook path already in use: {trigger.webhook_path}")

        elif trigger_type == TriggerType.SCHEDULE:
            validate_cron(trigger.cron_expression)
            get_timezone(trigger.timezone)
            trigger.next_run_at = next_run_after(trigger.cron_expression, self.clock(), trigger.timezone)

        elif trigger_type == TriggerType.EVENT:
            event_name = (trigger.config or {}).get('eventName') or (trigger.config or {}).get('event_name')
            if not event_name:
                raise GraphError('Event trigger requires an eventName')
            self._subscribe(event_name)

        self.repository.create_trigger(trigger)
        logger.info(f"Registered {trigger.trigger_type} trigger {trigger.id} for flow {trigger.flow_id}")
        return trigger

    def attach(self, event_bus):
        """Subscribe to every event name used by an active event trigger"""
        self.event_bus = event_bus
        for trigger in self.repository.list_triggers(TriggerType.EVENT.value, active_only=True):
            event_name = (trigger.config or {}).get('eventName') or (trigger.config or {}).get('event_name')
            if event_name:
                self._subscribe(event_name)

    def _subscribe(self, event_name: str):
        if self.event_bus is None or event_name in self._subscribed:
            return
        self.event_bus.subscribe(event_name, self.handle_event)
        self._subscribed.add(event_name)

    # === Webhook ===

    async def handle_webhook(
        self,
        path: str,
        body: Union[bytes, str, None],
        headers: Optional[Mapping[str, str]] = None,
    ) -> FlowExecution:
        """
        Raises:
            TriggerNotFound: no webhook trigger for path
            TriggerDisabled: trigger or flow inactive
            InvalidSignature: secret set and signature missing or wrong
            ValueError: body is not valid JSON
            StructuralError: the flow is not executable
        """
        path = (path or '').strip('/')
        trigger = self.repository.find_trigger_by_path(path)
        if trigger is None or trigger.trigger_type != TriggerType.WEBHOOK.value:
            raise TriggerNotFound(f"No webhook trigger for path: {path}")

        if not trigger.is_active:
            logger.warning(f"Rejected webhook {path}: trigger {trigger.id} is inactive")
            raise TriggerDisabled(trigger.id)

        body = body or b''
        if trigger.webhook_secret:
            signature = _header(headers or {}, self.signature_header)
            if not verify_signature(body, trigger.webhook_secret, signature):
                logger.warning(f"Rejected webhook {path}: invalid signature")
                raise InvalidSignature(trigger.id)

        flow = self.repository.get_flow(trigger.flow_id)
        if flow is None:
            raise TriggerNotFound(f"Flow not found for trigger {trigger.id}")
        if not flow.is_active:
            logger.warning(f"Rejected webhook {path}: flow {flow.id} is inactive")
            raise TriggerDisabled(trigger.id, reason='flow is inactive')

        payload = _parse_body(body)
        return await self._fire(trigger, payload)

    # === Schedule ===

    async def dispatch_due_schedules(self, now=None) -> List[FlowExecution]:
        """
        Fire every active schedule trigger whose next_run_at has passed.

        A trigger fires at most once per call however many occurrences were
        missed; its next_run_at is recomputed from `now`.
        """
        now = now or self.clock()
        due = []

        for trigger in self.repository.list_triggers(TriggerType.SCHEDULE.value, active_only=True):
            if trigger.next_run_at is None:
                trigger.next_run_at = next_run_after(trigger.cron_expression, now, trigger.timezone)
                self.repository.update_trigger(trigger)
                continue
            if trigger.next_run_at > now:
                continue

            scheduled_at = trigger.next_run_at
            trigger.next_run_at = next_run_after(trigger.cron_expression, now, trigger.timezone)
            self.repository.update_trigger(trigger)

            flow = self.repository.get_flow(trigger.flow_id)
            if flow is None or not flow.is_active:
                logger.info(f"Schedule trigger {trigger.id} due but flow is inactive; skipping")
                continue

            payload = {
                'scheduled_at': isoformat(scheduled_at),
                'fired_at': isoformat(now),
                'cron': trigger.cron_expression,
                'timezone': trigger.timezone,
            }
            due.append((trigger, payload))

        if due:
            logger.info(f"Firing {len(due)} due schedule triggers")
        return await self._fire_all(due)

    # === Events ===

    async def handle_event(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> List[FlowExecution]:
        payload = payload or {}
        matched = []

        for trigger in self.repository.list_triggers(TriggerType.EVENT.value, active_only=True):
            if not event_matches(trigger, event_name, payload):
                continue
            flow = self.repository.get_flow(trigger.flow_id)
            if flow is None or not flow.is_active:
                continue
            matched.append((trigger, {'event': event_name, **payload}))

        logger.debug(f"Event {event_name} matched {len(matched)} triggers")
        return await self._fire_all(matched)

    # === Manual ===

    async def test_trigger(self, trigger_id: str, data: Optional[Dict[str, Any]] = None) -> FlowExecution:
        """
        Fire a trigger by hand with test data. The flow does not need to be active.
        """
        trigger = self.repository.get_trigger(trigger_id)
        if trigger is None:
            raise TriggerNotFound(f"Trigger not found: {trigger_id}")
        if self.repository.get_flow(trigger.flow_id) is None:
            raise TriggerNotFound(f"Flow not found for trigger {trigger_id}")
        return await self._fire(trigger, dict(data or {}))

    # === Firing ===

    async def _fire(self, trigger: FlowTrigger, payload: Dict[str, Any]) -> FlowExecution:
        trigger.trigger_count = (trigger.trigger_count or 0) + 1
        trigger.last_triggered_at = self.clock()
        self.repository.update_trigger(trigger)
        logger.info(f"Trigger {trigger.id} fired ({trigger.trigger_type}, count={trigger.trigger_count})")

        try:
            return await self.executor.execute(
                trigger.flow_id,
                trigger.trigger_type,
                payload,
                trigger_id=trigger.id,
                trigger_node_id=trigger.node_id,
            )
        except StructuralError as e:
            logger.error(f"Flow {trigger.flow_id} could not run for trigger {trigger.id}: {e}")
            raise

    async def _fire_all(self, fired) -> List[FlowExecution]:
        """Run several firings concurrently; the first structural error is re-raised after all finish"""
        results = await asyncio.gather(*(self._fire(t, p) for t, p in fired), return_exceptions=True)

        executions = []
        errors = []
        for result in results:
            if isinstance(result, BaseException):
                errors.append(result)
            else:
                executions.append(result)

        if errors:
            raise errors[0]
        return executions


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    return next((v for k, v in headers.items() if k.lower() == lowered), None)


def _parse_body(body: Union[bytes, str]) -> Dict[str, Any]:
    """
    Raises:
        ValueError: body is not valid JSON
    """
    if not body:
        return {}
    if isinstance(body, bytes):
        body = body.decode('utf-8')
    data = json.loads(body)
    if not isinstance(data, dict):
        return {'body': data}
    return data

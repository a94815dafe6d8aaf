"""
Pytest fixtures for flow engine tests
"""

import pytest
from typing import Any, Dict, List, Optional

from flow_automation.config import TestConfig
from flow_automation.effects import default_registry
from flow_automation.flow_engine.executor import FlowExecutor
from flow_automation.models import Flow
from flow_automation.persistence import InMemoryRepository


class EngineTestConfig(TestConfig):
    """Deterministic backoff for engine tests"""
    FLOW_RETRY_JITTER = 0
    FLOW_DEFAULT_RETRY_DELAY_MS = 0


class FlowBuilder:
    """
    Builds flow graphs for tests.

    Usage:
        flow = (builder.trigger('start')
                .action('send', to='+5511', message='{{trigger.text}}')
                .connect('start', 'send')
                .save())
    """

    def __init__(self, repository):
        self.repository = repository
        self.nodes: List[Dict[str, Any]] = []
        self.connections: List[Dict[str, Any]] = []

    def node(self, node_id: str, node_type: str, subtype: Optional[str] = None, **config) -> 'FlowBuilder':
        self.nodes.append({'id': node_id, 'type': node_type, 'subtype': subtype, 'config': config})
        return self

    def trigger(self, node_id: str = 'trigger', subtype: str = 'webhook', **config) -> 'FlowBuilder':
        return self.node(node_id, 'trigger', subtype, **config)

    def action(self, node_id: str, subtype: str = 'send_message', **config) -> 'FlowBuilder':
        return self.node(node_id, 'action', subtype, **config)

    def condition(self, node_id: str, field: str, operator: str = 'eq', value: Any = None, **config) -> 'FlowBuilder':
        return self.node(node_id, 'condition', None, field=field, operator=operator, value=value, **config)

    def delay(self, node_id: str, duration: float, unit: str = 'seconds', **config) -> 'FlowBuilder':
        return self.node(node_id, 'delay', None, duration=duration, unit=unit, **config)

    def connect(self, source: str, target: str, handle: Optional[str] = None) -> 'FlowBuilder':
        conn = {'id': f"{source}-{handle or 'out'}-{target}", 'source': source, 'target': target}
        if handle:
            conn['sourceHandle'] = handle
        self.connections.append(conn)
        return self

    def flow_data(self) -> Dict[str, Any]:
        return {'nodes': list(self.nodes), 'connections': list(self.connections)}

    def save(self, name: str = 'Test flow', settings: Optional[Dict[str, Any]] = None,
             variables: Optional[Dict[str, Any]] = None, is_active: bool = True) -> Flow:
        flow = Flow.create(
            name=name,
            flow_data=self.flow_data(),
            settings=settings or {},
            variables=variables or {},
            is_active=is_active,
        )
        self.repository.create_flow(flow)
        self.nodes, self.connections = [], []
        return flow


@pytest.fixture
def engine_config():
    return EngineTestConfig


@pytest.fixture
def repository():
    """Fresh in-memory repository"""
    return InMemoryRepository()


@pytest.fixture
def builder(repository):
    return FlowBuilder(repository)


@pytest.fixture
def sent_messages():
    """Parameters of every action.send_message call"""
    return []


@pytest.fixture
def registry(sent_messages):
    """Built-in executors plus a recording send_message"""
    async def send_message(config, input_data, ctx):
        sent_messages.append(dict(config.parameters))
        return {'message_id': f"msg-{len(sent_messages)}"}

    registry = default_registry()
    registry.register('action.send_message', send_message)
    return registry


@pytest.fixture
def sleeps():
    """Seconds passed to the engine's sleep (delays and retry backoff)"""
    return []


@pytest.fixture
def engine(repository, registry, sleeps):
    """Engine whose delays and backoff return immediately"""
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return FlowExecutor(repository, registry, config=EngineTestConfig, sleep=fake_sleep)


@pytest.fixture
def real_sleep_engine(repository, registry):
    """Engine using asyncio.sleep, for timeout and cancellation tests"""
    return FlowExecutor(repository, registry, config=EngineTestConfig)

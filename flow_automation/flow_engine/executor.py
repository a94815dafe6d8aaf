"""
Flow Executor - orchestrates one execution per triggering event

Responsibilities:
- Validate the flow and snapshot its graph
- Create the FlowExecution record and drive its state machine
- Walk the graph: ready nodes run as concurrent tasks, bounded per execution
- Retry failing effects with exponential backoff
- Apply errorHandling (stop / continue) once retries are exhausted
- Enforce node and execution timeouts, cancellation and fatal aborts
- Record one step per node through the StepRecorder
"""

import asyncio
import itertools
import logging
import random
from typing import Any, Dict, List, Optional, Set

from flow_automation.config import Config, config_value
from flow_automation.effects import EffectContext, EffectRegistry, default_registry
from flow_automation.flow_engine.branching import ConditionEvaluator
from flow_automation.flow_engine.errors import (
    ExecutionTimeoutError,
    FatalError,
    FlowEngineError,
    NodeExecutionError,
    NodeTimeoutError,
    StructuralError,
    ValidationError,
)
from flow_automation.flow_engine.graph import FlowGraph
from flow_automation.flow_engine.nodes import ActionConfig, ErrorHandling, FlowNode, FlowSettings, NodeType
from flow_automation.flow_engine.step_recorder import StepRecorder
from flow_automation.flow_engine.validator import FlowValidator
from flow_automation.flow_engine.variable_resolver import VariableResolver, VariableStore, redact
from flow_automation.models import ExecutionStatus, Flow, FlowExecution
from flow_automation.utils import utcnow

logger = logging.getLogger(__name__)

# Node states inside one run
PENDING = 'pending'
RUNNING = 'running'
DONE = 'done'

# Why in-flight work was aborted
ABORT_CANCELLED = 'cancelled'
ABORT_TIMEOUT = 'timeout'
ABORT_FATAL = 'fatal'


class ExecutionRun:
    """
    In-memory state of one execution while it runs.

    Every node runs at most once. A node becomes ready when all its incoming
    connections are resolved; it runs if at least one of them was taken and
    is recorded as skipped otherwise.
    """

    def __init__(
        self,
        engine: 'FlowExecutor',
        flow: Flow,
        graph: FlowGraph,
        settings: FlowSettings,
        execution: FlowExecution,
        payload: Dict[str, Any],
        trigger_node_id: Optional[str] = None,
    ):
        self.engine = engine
        self.repository = engine.repository
        self.flow = flow
        self.graph = graph
        self.settings = settings
        self.execution = execution
        self.payload = payload
        self.trigger_node_id = trigger_node_id

        self.recorder = StepRecorder(
            self.repository,
            logging_level=settings.logging_level,
            secrets=engine.variables.secret_values(execution.id, flow.id),
            flow_id=flow.id,
        )
        self.semaphore = asyncio.Semaphore(settings.max_concurrency)
        self._orders = itertools.count(1)

        self.node_state: Dict[str, str] = {node_id: PENDING for node_id in graph.nodes}
        self.step_orders: Dict[str, int] = {}
        self.step_ids: Dict[str, str] = {}
        self.outputs: Dict[str, Dict[str, Any]] = {}
        self.retry_counts: Dict[str, int] = {}
        # connection id -> True (taken) / False (not taken); missing = unresolved
        self.edge_state: Dict[str, bool] = {}
        self.edge_reason: Dict[str, str] = {}
        self.tasks: Dict[str, asyncio.Task] = {}

        self.stopping = False
        self.failure: Optional[FlowEngineError] = None
        self.fatal: Optional[FatalError] = None
        self.abort_reason: Optional[str] = None
        self.deadline: Optional[float] = None
        self.done = asyncio.Event()

    # === Lifecycle ===

    async def run(self) -> FlowExecution:
        loop = asyncio.get_running_loop()
        self.deadline = loop.time() + self.settings.timeout_ms / 1000

        try:
            await self._walk()
            return self._finish()
        except asyncio.CancelledError:
            self._abort(ABORT_CANCELLED)
            await self._drain()
            self._finish()
            raise
        finally:
            self.done.set()

    async def _walk(self):
        try:
            self._mark_running()
            self._seed_triggers()
            self._schedule_ready()
            await self._wait_for_tasks()
        except FatalError as e:
            logger.exception(f"Execution {self.execution.id} aborted: {e}")
            self._abort(ABORT_FATAL, e)
            await self._drain()

    def request_cancel(self):
        if self.abort_reason is None:
            logger.info(f"Cancel requested for execution {self.execution.id}")
            self._abort(ABORT_CANCELLED)

    def _mark_running(self):
        self.execution.status = ExecutionStatus.RUNNING.value
        self.execution.started_at = utcnow()
        self.repository.update_execution(self.execution)
        logger.info(f"Execution {self.execution.id} running (flow {self.flow.id})")

    async def _wait_for_tasks(self):
        loop = asyncio.get_running_loop()
        while self.tasks:
            timeout = None
            if self.abort_reason is None:
                timeout = max(self.deadline - loop.time(), 0)

            done, _ = await asyncio.wait(set(self.tasks.values()), timeout=timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
            if not done:
                logger.warning(f"Execution {self.execution.id} exceeded {self.settings.timeout_ms}ms")
                self._abort(ABORT_TIMEOUT)
                continue

            for task in done:
                self._collect(task)

    def _collect(self, task: asyncio.Task):
        node_id = next(k for k, v in self.tasks.items() if v is task)
        del self.tasks[node_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        if isinstance(error, FatalError):
            raise error
        logger.error(f"Unexpected error running node {node_id}", exc_info=error)
        raise FatalError(f"Unexpected error running node {node_id}: {error}")

    def _abort(self, reason: str, fatal: Optional[FatalError] = None):
        if self.abort_reason is None:
            self.abort_reason = reason
        if fatal is not None and self.fatal is None:
            self.fatal = fatal
        for task in self.tasks.values():
            task.cancel()

    async def _drain(self):
        while self.tasks:
            done, _ = await asyncio.wait(set(self.tasks.values()))
            for task in done:
                node_id = next(k for k, v in self.tasks.items() if v is task)
                del self.tasks[node_id]
                if not task.cancelled() and task.exception() is not None:
                    logger.error(f"Node {node_id} failed while aborting", exc_info=task.exception())

    def _finish(self) -> FlowExecution:
        execution = self.execution
        error: Optional[FlowEngineError] = None

        if self.abort_reason is not None:
            self._close_open_steps()

        if self.abort_reason == ABORT_CANCELLED and self.fatal is None:
            status = ExecutionStatus.CANCELLED
        elif self.fatal is not None:
            status, error = ExecutionStatus.FAILED, self.fatal
        elif self.abort_reason == ABORT_TIMEOUT:
            status, error = ExecutionStatus.FAILED, ExecutionTimeoutError(execution.id, self.settings.timeout_ms)
        elif self.stopping:
            status, error = ExecutionStatus.FAILED, self.failure
        else:
            status = ExecutionStatus.COMPLETED

        execution.status = status.value
        execution.completed_at = utcnow()
        if execution.started_at:
            execution.duration_ms = int((execution.completed_at - execution.started_at).total_seconds() * 1000)
        self._refresh_secrets()
        secrets = self.recorder.secrets
        execution.output_data = redact(self._leaf_outputs(), secrets)
        if error is not None:
            execution.error_message = redact(error.message, secrets)
            details = error.to_details()
            node_id = getattr(error, 'node_id', None)
            if node_id:
                details['node_id'] = node_id
            execution.error_details = redact(details, secrets)

        self.repository.update_execution(execution)
        self._update_flow_counters(status)
        self.engine.variables.clear_execution(execution.id)

        log = logger.info if status == ExecutionStatus.COMPLETED else logger.warning
        log(f"Execution {execution.id} {status.value} in {execution.duration_ms}ms"
            + (f": {execution.error_message}" if execution.error_message else ''))
        return execution

    def _update_flow_counters(self, status: ExecutionStatus):
        flow = self.repository.get_flow(self.flow.id)
        if flow is None:
            return
        flow.execution_count = (flow.execution_count or 0) + 1
        if status == ExecutionStatus.COMPLETED:
            flow.success_count = (flow.success_count or 0) + 1
        elif status == ExecutionStatus.FAILED:
            flow.error_count = (flow.error_count or 0) + 1
        flow.last_executed_at = self.execution.completed_at
        self.repository.update_flow(flow)

    def _leaf_outputs(self) -> Dict[str, Any]:
        return {
            node_id: output
            for node_id, output in self.outputs.items()
            if not self.graph.outgoing(node_id)
        }

    # === Scheduling ===

    def _seed_triggers(self):
        triggers = self.graph.triggers()
        trigger_type = self.execution.trigger_type

        seeds = [t for t in triggers if t.id == self.trigger_node_id]
        if not seeds:
            seeds = [t for t in triggers if trigger_type in (t.subtype, t.config.trigger_type)]
        if not seeds:
            seeds = triggers

        for trigger in triggers:
            if trigger not in seeds:
                self._skip(trigger, f"trigger '{trigger_type}' did not fire this node")

        for trigger in seeds:
            self._dispatch(trigger)

    def _schedule_ready(self):
        """Dispatch or skip every node whose incoming connections are all resolved"""
        changed = True
        while changed:
            changed = False
            if self.stopping or self.abort_reason is not None:
                return

            for node in self.graph.nodes.values():
                if self.node_state[node.id] != PENDING or node.is_trigger:
                    continue

                incoming = self.graph.incoming(node.id)
                if not incoming or any(c.id not in self.edge_state for c in incoming):
                    continue

                if any(self.edge_state[c.id] for c in incoming):
                    self._dispatch(node)
                else:
                    self._skip(node, self.edge_reason.get(incoming[0].id, 'no upstream branch was taken'))
                    changed = True

    def _dispatch(self, node: FlowNode):
        if self.abort_reason is not None:
            return
        self.node_state[node.id] = RUNNING
        self.tasks[node.id] = asyncio.ensure_future(self._run_node(node))

    def _skip(self, node: FlowNode, reason: str):
        self.node_state[node.id] = DONE
        order = self._next_order(node.id)
        self.step_ids[node.id] = self.recorder.skip_step(
            self.execution.id, node.id, order, reason, node_type=node.type.value
        )
        logger.info(f"Execution {self.execution.id}: skipped node {node.id} ({reason})")
        self._resolve_outgoing(node, taken=False, reason=f"upstream node '{node.id}' was skipped")

    def _resolve_outgoing(self, node: FlowNode, handle: Optional[str] = None, taken: bool = True,
                          reason: Optional[str] = None):
        for conn in self.graph.outgoing(node.id):
            if not taken:
                self.edge_state[conn.id] = False
                self.edge_reason[conn.id] = reason or f"upstream node '{node.id}' did not complete"
            elif node.is_condition:
                self.edge_state[conn.id] = conn.source_handle == handle
                if conn.source_handle != handle:
                    self.edge_reason[conn.id] = f"condition '{node.id}' chose '{handle}'"
            else:
                self.edge_state[conn.id] = True

    def _refresh_secrets(self):
        # a node may have stored a new secret variable since the last read
        self.recorder.secrets = self.engine.variables.secret_values(self.execution.id, self.flow.id)

    def _next_order(self, node_id: str) -> int:
        order = next(self._orders)
        self.step_orders[node_id] = order
        return order

    # === Node execution ===

    async def _run_node(self, node: FlowNode):
        variables = self.engine.variables.visible(self.execution.id, self.flow.id, self.flow.variables)
        self._refresh_secrets()
        input_data = self._node_input(node, variables)

        order = self._next_order(node.id)
        step_id = self.recorder.begin_step(self.execution.id, node.id, order, input_data, node_type=node.type.value)
        self.step_ids[node.id] = step_id

        handle = None
        try:
            resolver = VariableResolver(
                trigger_output=self.payload,
                steps_output=self._ancestor_outputs(node.id),
                variables=variables,
            )

            if node.type == NodeType.TRIGGER:
                output = dict(self.payload)

            elif node.type == NodeType.CONDITION:
                outcome = ConditionEvaluator(resolver, input_data).evaluate(node.config)
                output = outcome.to_dict()
                handle = outcome.handle
                self.recorder.info(step_id, f"Condition chose '{handle}'", {'usedDefault': outcome.used_default})

            elif node.type == NodeType.DELAY:
                seconds = node.config.resolved(resolver).seconds(input_data)
                self.recorder.info(step_id, f"Waiting {seconds}s")
                await self.engine.sleep(seconds)
                output = {'waited_for': seconds, 'completed_at': utcnow().isoformat()}

            else:
                output = await self._run_effect(node, step_id, input_data, resolver, variables)

        except NodeExecutionError as e:
            self._on_failure(node, step_id, e)
            return

        except (TypeError, ValueError) as e:
            self._on_failure(node, step_id, NodeExecutionError(str(e), node_id=node.id, retryable=False))
            return

        except FatalError as e:
            self._force_fail(step_id, e)
            self._abort(ABORT_FATAL, e)
            return

        except FlowEngineError as e:
            self._on_failure(node, step_id, NodeExecutionError.wrap(e, node_id=node.id))
            return

        except asyncio.CancelledError:
            self._record_abort(step_id)
            raise

        self._refresh_secrets()
        self.recorder.complete_step(step_id, output)
        self.outputs[node.id] = output
        self.node_state[node.id] = DONE
        self._resolve_outgoing(node, handle=handle)
        self._schedule_ready()

    async def _run_effect(self, node: FlowNode, step_id: str, input_data: Dict[str, Any],
                          resolver: VariableResolver, variables: Dict[str, Any]) -> Dict[str, Any]:
        """
        Call the node's effect, retrying up to settings.retry_attempts times.

        Raises:
            NodeExecutionError: retries exhausted or the error is not retryable
        """
        try:
            executor = self.engine.registry.get(node.executor_key)
        except NodeExecutionError as e:
            e.node_id = node.id
            raise

        retry_count = 0
        while True:
            self.retry_counts[node.id] = retry_count
            try:
                return await self._attempt(node, executor, step_id, input_data, resolver, variables, retry_count)
            except NodeExecutionError as e:
                e.node_id = e.node_id or node.id
                if not e.retryable or retry_count >= self.settings.retry_attempts:
                    raise

                retry_count += 1
                self.retry_counts[node.id] = retry_count
                self.recorder.record_attempt(step_id, retry_count, e)

                delay = self.engine.retry_delay(self.settings.retry_delay_ms, retry_count - 1)
                logger.warning(
                    f"Node {node.id} failed (attempt {retry_count}/{self.settings.retry_attempts + 1}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self.engine.sleep(delay)

    async def _attempt(self, node: FlowNode, executor, step_id: str, input_data: Dict[str, Any],
                       resolver: VariableResolver, variables: Dict[str, Any], retry_count: int) -> Dict[str, Any]:
        config = node.config.resolved(resolver)
        ctx = EffectContext(
            execution_id=self.execution.id,
            node_id=node.id,
            flow_id=self.flow.id,
            trigger_output=self.payload,
            steps_output=resolver.steps_output,
            variables=dict(variables),
            variable_store=self.engine.variables,
            attempt=retry_count,
            log=lambda level, message, data=None: self.recorder.add_log(step_id, level, message, data),
        )

        timeout_ms = self._remaining_ms()
        if isinstance(node.config, ActionConfig) and node.config.timeout_ms:
            timeout_ms = min(timeout_ms, node.config.timeout_ms)

        async with self.semaphore:
            try:
                result = await asyncio.wait_for(executor.execute(config, input_data, ctx), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                raise NodeTimeoutError(node.id, timeout_ms)
            except (NodeExecutionError, FatalError):
                raise
            except FlowEngineError as e:
                raise NodeExecutionError.wrap(e, node_id=node.id)
            except Exception as e:
                raise NodeExecutionError(f"{type(e).__name__}: {e}", node_id=node.id)

        return result.raise_for_error(node.id)

    def _on_failure(self, node: FlowNode, step_id: str, error: NodeExecutionError):
        self.recorder.fail_step(step_id, error, self.retry_counts.get(node.id, 0))
        self.node_state[node.id] = DONE

        if self.settings.error_handling == ErrorHandling.CONTINUE:
            logger.warning(f"Node {node.id} failed, continuing other branches: {error}")
            self._resolve_outgoing(node, taken=False, reason=f"upstream node '{node.id}' failed")
            self._schedule_ready()
        else:
            logger.warning(f"Node {node.id} failed, stopping execution {self.execution.id}: {error}")
            self.stopping = True
            if self.failure is None:
                self.failure = error

    def _force_fail(self, step_id: str, error: FlowEngineError):
        try:
            self.recorder.fail_step(step_id, error, 0)
        except (FlowEngineError, ValueError):
            logger.exception(f"Could not record failure of step {step_id}")

    def _close_open_steps(self):
        """No step may stay running once the execution is aborted"""
        for step_id in list(self.step_ids.values()):
            self._record_abort(step_id)

    def _record_abort(self, step_id: str):
        step = self.repository.get_step(step_id)
        if step is None or step.completed_at is not None:
            return
        try:
            if self.abort_reason == ABORT_TIMEOUT:
                self.recorder.fail_step(step_id, ExecutionTimeoutError(self.execution.id, self.settings.timeout_ms))
            elif self.abort_reason == ABORT_FATAL:
                self.recorder.fail_step(step_id, self.fatal or FatalError('execution aborted'))
            else:
                self.recorder.cancel_step(step_id)
        except (FlowEngineError, ValueError):
            logger.exception(f"Could not record abort of step {step_id}")

    # === Data flow ===

    def _node_input(self, node: FlowNode, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Trigger payload, then ancestor outputs in step order, then variables"""
        data = dict(self.payload)
        for output in self._ancestor_outputs(node.id).values():
            if isinstance(output, dict):
                data.update(output)
        data['variables'] = variables
        return data

    def _ancestor_outputs(self, node_id: str) -> Dict[str, Any]:
        ancestors = self.engine.ancestors(self.graph, node_id)
        completed = [a for a in ancestors if a in self.outputs]
        completed.sort(key=lambda a: self.step_orders.get(a, 0))
        return {a: self.outputs[a] for a in completed}

    def _remaining_ms(self) -> int:
        loop = asyncio.get_running_loop()
        return max(int((self.deadline - loop.time()) * 1000), 0)


class FlowExecutor:
    """
    Execution engine.

    Usage:
        executor = FlowExecutor(repository, registry)
        execution = await executor.execute(
            flow_id='uuid',
            trigger_type='webhook',
            input_data={'text': 'hi'},
        )
        execution.status  # 'completed'
    """

    def __init__(
        self,
        repository,
        registry: Optional[EffectRegistry] = None,
        config=None,
        variable_store: Optional[VariableStore] = None,
        sleep=None,
    ):
        """
        Args:
            repository: Persistence (InMemoryRepository, SQLAlchemyRepository)
            registry: Effect dispatch table (default_registry() when omitted)
            config: Config class or Flask config mapping with FLOW_* defaults
            variable_store: Scoped variables (built on repository when omitted)
            sleep: Coroutine used for delays and retry backoff (asyncio.sleep)
        """
        self.repository = repository
        self.registry = registry or default_registry()
        self.config = config or Config
        self.variables = variable_store or VariableStore(repository)
        self.validator = FlowValidator(self.registry)
        self.defaults = FlowSettings.defaults_from_config(self.config)
        self.max_retry_delay_ms = config_value(self.config, 'FLOW_MAX_RETRY_DELAY_MS', 60000)
        self.retry_jitter = config_value(self.config, 'FLOW_RETRY_JITTER', 0.1)
        self._sleep = sleep or asyncio.sleep
        self._runs: Dict[str, ExecutionRun] = {}
        self._run_tasks: Dict[str, asyncio.Task] = {}
        self._ancestors: Dict[int, Dict[str, Set[str]]] = {}

    async def execute(
        self,
        flow_id: str,
        trigger_type: str,
        input_data: Optional[Dict[str, Any]] = None,
        trigger_id: Optional[str] = None,
        trigger_node_id: Optional[str] = None,
    ) -> FlowExecution:
        """
        Run a flow to a terminal state.

        Returns:
            The FlowExecution record (completed, failed or cancelled)

        Raises:
            StructuralError: flow missing or not valid; no execution is created
        """
        execution = await self.start(flow_id, trigger_type, input_data, trigger_id, trigger_node_id)
        return await self.wait(execution.id)

    async def start(
        self,
        flow_id: str,
        trigger_type: str,
        input_data: Optional[Dict[str, Any]] = None,
        trigger_id: Optional[str] = None,
        trigger_node_id: Optional[str] = None,
    ) -> FlowExecution:
        """
        Validate, create the execution record and start running it in the background.

        Raises:
            StructuralError: flow missing or not valid; no execution is created
        """
        flow = self.repository.get_flow(flow_id)
        if flow is None:
            raise StructuralError(f"Flow not found: {flow_id}")

        result = self.validator.validate(flow)
        if not result.is_valid:
            logger.warning(f"Flow {flow_id} is not executable: {result.errors}")
            raise ValidationError(result.errors)

        settings = FlowSettings.from_dict(flow.settings, self.defaults)
        graph = FlowGraph.from_dict(flow.flow_data)
        payload = dict(input_data or {})

        execution = FlowExecution.create(
            flow_id=flow.id,
            trigger_type=trigger_type,
            input_data=redact(payload, self.variables.secret_values(None, flow.id)),
            graph_snapshot=graph.to_dict(),
            trigger_id=trigger_id,
        )
        self.repository.create_execution(execution)
        logger.info(f"Created execution {execution.id} for flow {flow.name} ({trigger_type})")

        run = ExecutionRun(self, flow, graph, settings, execution, payload, trigger_node_id)
        self._runs[execution.id] = run
        task = asyncio.ensure_future(run.run())
        self._run_tasks[execution.id] = task
        task.add_done_callback(lambda _: self._forget(execution.id))
        return execution

    async def wait(self, execution_id: str) -> FlowExecution:
        task = self._run_tasks.get(execution_id)
        if task is not None:
            return await task
        return self.repository.get_execution(execution_id)

    async def cancel(self, execution_id: str) -> bool:
        """
        Cancel an execution in flight. Completed steps are kept; running steps
        are recorded as cancelled.

        Returns:
            False if the execution is not running in this engine
        """
        run = self._runs.get(execution_id)
        if run is None:
            return False
        task = self._run_tasks.get(execution_id)
        run.request_cancel()
        if task is not None:
            await asyncio.wait([task])
        else:
            await run.done.wait()
        return True

    def get_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        """Execution record with its steps in step order"""
        execution = self.repository.get_execution(execution_id)
        if execution is None:
            return None
        return execution.to_dict(steps=self.repository.list_steps(execution_id))

    def active_executions(self, flow_id: Optional[str] = None) -> List[str]:
        return [
            execution_id for execution_id, run in self._runs.items()
            if flow_id is None or run.flow.id == flow_id
        ]

    def retry_delay(self, retry_delay_ms: int, retry_index: int) -> float:
        """Backoff in seconds: retry_delay_ms * 2^retry_index, capped, with +/- jitter"""
        delay_ms = min(retry_delay_ms * (2 ** retry_index), self.max_retry_delay_ms)
        if self.retry_jitter and delay_ms:
            delay_ms += delay_ms * random.uniform(-self.retry_jitter, self.retry_jitter)
        return max(delay_ms, 0) / 1000

    async def sleep(self, seconds: float):
        await self._sleep(seconds)

    def ancestors(self, graph: FlowGraph, node_id: str) -> Set[str]:
        """All nodes with a directed path to node_id (cached per graph)"""
        cache = self._ancestors.setdefault(id(graph), {})
        if node_id not in cache:
            seen: Set[str] = set()
            stack = [c.source for c in graph.incoming(node_id)]
            while stack:
                current = stack.pop()
                if current in seen:
                    continue
                seen.add(current)
                stack.extend(c.source for c in graph.incoming(current))
            cache[node_id] = seen
        return cache[node_id]

    def _forget(self, execution_id: str):
        run = self._runs.pop(execution_id, None)
        self._run_tasks.pop(execution_id, None)
        if run is not None:
            self._ancestors.pop(id(run.graph), None)

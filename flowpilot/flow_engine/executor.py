"""
Flow Executor - Main orchestrator for flow execution

Responsibilities:
- Snapshot the flow so edits during a run cannot leak in
- Walk the node list in order, honoring branch skips and loop bodies
- Dispatch each node to the StepProcessor
- Apply per-node failure policies
- Track node and flow state, build the ExecutionResult
- Log execution

Once a run has started execute_flow never raises: whatever happens, the
caller gets a complete ExecutionResult explaining where and why the run
stopped. Only a duplicate execution id is refused up front.
"""

import asyncio
import logging
import threading
import traceback
from typing import Any, Dict, List, Optional, Set, Union
from uuid import uuid4

from flowpilot.exceptions import (
    AuthenticationError,
    ConcurrentExecutionError,
    FlowExecutionError,
    FlowValidationError,
    LoopLimitError,
    TransportError,
)
from flowpilot.flow_engine.branching import BranchingHandler
from flowpilot.flow_engine.loop_handler import LoopHandler
from flowpilot.flow_engine.path_enumerator import enumerate_node_variables
from flowpilot.flow_engine.step_processor import StepOutcome, StepProcessor
from flowpilot.flow_engine.variable_resolver import VariableResolver
from flowpilot.models.execution import (
    ExecutionContext,
    ExecutionResult,
    ExecutionStatus,
    NodeResult,
    NodeStatus,
    utcnow,
)
from flowpilot.models.flow import Flow, LoopType, Node, NodeType, StopType, iter_nodes
from flowpilot.services.execution_logger import ExecutionLogger

logger = logging.getLogger(__name__)


class _RunState:
    """Mutable state of one execution. Owned by a single execute_flow call."""

    def __init__(self, execution_id: str, owner_id: Optional[str], cancel_event: threading.Event):
        self.execution_id = execution_id
        self.owner_id = owner_id
        self.cancel_event = cancel_event
        self.context = ExecutionContext()
        self.log = ExecutionLogger(execution_id)
        self.resolver = VariableResolver(self.context, self.log)
        self.results: Dict[str, NodeResult] = {}
        self.status = ExecutionStatus.RUNNING
        self.error: Optional[str] = None
        self.failed_count = 0

    @property
    def halted(self) -> bool:
        return self.status != ExecutionStatus.RUNNING

    def halt(self, status: ExecutionStatus, error: Optional[str] = None):
        if not self.halted:
            self.status = status
            self.error = error


class FlowExecutor:
    """
    Main executor for flows.

    Usage:
        executor = FlowExecutor(storage, token_service=token_service)
        result = await executor.execute_flow(flow, owner_id='user-1')
        result.status  # success | error | cancelled
    """

    def __init__(
        self,
        storage,
        token_service=None,
        authenticator=None,
        transport=None,
        http_timeout: float = 30,
        while_loop_limit: int = LoopHandler.MAX_ITERATIONS,
        max_delay_seconds: float = 3600,
        sleep=asyncio.sleep,
    ):
        """
        Args:
            storage: Storage collaborator (connectors, flows, last results)
            token_service: TokenRefreshService for OAuth2 connectors
            authenticator: ConnectorAuthenticator override
            transport: Optional httpx transport for outbound calls
            http_timeout: Default per-call timeout in seconds
            while_loop_limit: Iteration cap for while loops without maxIterations
            max_delay_seconds: Upper bound for delay nodes
            sleep: Coroutine used by delay nodes
        """
        self.storage = storage
        self.while_loop_limit = while_loop_limit
        self.step_processor = StepProcessor(
            storage,
            authenticator=authenticator,
            token_service=token_service,
            transport=transport,
            http_timeout=http_timeout,
            max_delay_seconds=max_delay_seconds,
            sleep=sleep,
        )

        self._cancel_events: Dict[str, threading.Event] = {}
        self._cancel_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, execution_id: str) -> bool:
        """
        Request cancellation of a running execution.

        Takes effect at the next node boundary; an in-flight HTTP call is not
        interrupted.

        Returns:
            False if no execution with that id is running
        """
        with self._cancel_lock:
            event = self._cancel_events.get(execution_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    def is_running(self, execution_id: str) -> bool:
        with self._cancel_lock:
            return execution_id in self._cancel_events

    # ------------------------------------------------------------------
    # Flow execution
    # ------------------------------------------------------------------

    async def execute_flow(
        self,
        flow: Union[Flow, Dict[str, Any]],
        owner_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Execute a flow.

        Args:
            flow: Flow instance or its wire-format dict
            owner_id: Owner whose connectors are used
            execution_id: Optional id (generated when omitted), used by cancel()

        Returns:
            ExecutionResult with per-node results and the full log

        Raises:
            ConcurrentExecutionError: If an execution with the same id is still running
        """
        execution_id = execution_id or str(uuid4())
        cancel_event = threading.Event()
        with self._cancel_lock:
            if execution_id in self._cancel_events:
                raise ConcurrentExecutionError(execution_id)
            self._cancel_events[execution_id] = cancel_event

        run = _RunState(execution_id, owner_id, cancel_event)
        result = ExecutionResult(
            execution_id=execution_id,
            status=ExecutionStatus.RUNNING,
            started_at=utcnow(),
        )

        try:
            if isinstance(flow, dict):
                flow = Flow.from_dict(flow)
            else:
                flow.validate()

            snapshot = flow.snapshot()
            result.flow_id = snapshot.id
            if owner_id is None:
                run.owner_id = snapshot.owner_id

            for node in iter_nodes(snapshot.nodes):
                run.results[node.id] = NodeResult(node_id=node.id, node_type=node.type.value)

            logger.info(f"Starting execution {execution_id} for flow: {snapshot.name}")
            run.log.info(f"Starting flow {snapshot.name} ({len(snapshot.nodes)} nodes)")

            await self._run_nodes(snapshot.nodes, run)
            run.halt(ExecutionStatus.SUCCESS)

        except FlowValidationError as e:
            run.log.error(f"Invalid flow: {e}", node_id=e.node_id)
            run.halt(ExecutionStatus.ERROR, str(e))

        except Exception as e:
            logger.error(f"Execution {execution_id} failed unexpectedly: {e}")
            logger.debug(traceback.format_exc())
            run.log.error(f"Flow execution failed: {e}")
            run.halt(ExecutionStatus.ERROR, str(e))

        finally:
            with self._cancel_lock:
                self._cancel_events.pop(execution_id, None)

        for node_result in run.results.values():
            if node_result.status in (NodeStatus.PENDING, NodeStatus.RUNNING):
                node_result.status = NodeStatus.SKIPPED

        if run.status == ExecutionStatus.SUCCESS:
            run.log.ok("Flow execution completed successfully")
        elif run.status == ExecutionStatus.CANCELLED:
            run.log.warn(f"Flow execution cancelled{f': {run.error}' if run.error else ''}")
        else:
            run.log.error(f"Flow execution stopped with error: {run.error}")

        result.status = run.status
        result.error = run.error
        result.per_node_results = run.results
        result.logs = run.log.entries
        result.finished_at = utcnow()

        logger.info(f"Execution {execution_id} finished: {result.status.value}")
        return result

    async def _run_nodes(self, nodes: List[Node], run: _RunState) -> bool:
        """
        Run a node list (the flow itself or one loop iteration).

        Returns:
            False when the run was halted (stopJob, abort, cancellation)
        """
        skipped: Set[str] = set()

        for index, node in enumerate(nodes):
            if run.cancel_event.is_set():
                run.log.warn("Cancellation requested, no further nodes will run", node_id=node.id)
                run.halt(ExecutionStatus.CANCELLED, "Execution cancelled")
                return False

            node_result = run.results[node.id]

            if node.id in skipped:
                node_result.status = NodeStatus.SKIPPED
                run.context.record(node.id, NodeStatus.SKIPPED, None)
                run.log.debug("Skipped: branch not taken", node_id=node.id)
                continue

            node_result.status = NodeStatus.RUNNING
            node_result.started_at = utcnow()
            node_result.finished_at = None
            node_result.error = None
            node_result.error_type = None
            run.log.info(f"Executing {node.type.value} node {node.label or node.id}", node_id=node.id)

            try:
                if node.type == NodeType.LOOP:
                    outcome = StepOutcome(result=await self._run_loop(node, run))
                else:
                    outcome = await self.step_processor.process(node, run.resolver, run.log, run.owner_id)

            except Exception as e:
                aborts = self._record_failure(node, node_result, e, run)
                if aborts:
                    return False
                if node.type == NodeType.IF_ELSE:
                    # A condition that could not be evaluated selects neither branch
                    skipped |= BranchingHandler(run.resolver).failed_node_ids(nodes, index, node.config)
                continue

            node_result.finished_at = utcnow()
            node_result.result = outcome.result

            if node.type == NodeType.LOOP and run.halted:
                # A stop inside the loop body ends the loop and the flow
                node_result.status = NodeStatus.FAILED if run.status == ExecutionStatus.ERROR else NodeStatus.SUCCEEDED
                node_result.error = run.error if run.status == ExecutionStatus.ERROR else None
                run.context.record(node.id, node_result.status, outcome.result)
                return False

            node_result.status = NodeStatus.SUCCEEDED
            run.context.record(node.id, NodeStatus.SUCCEEDED, outcome.result)
            self._save_last_result(node.id, outcome.result)

            if node.type == NodeType.HTTP:
                run.log.debug(
                    "Response variables available",
                    node_id=node.id,
                    data={'variables': enumerate_node_variables(node.id, outcome.result)},
                )
            run.log.ok(f"Node completed in {node_result.duration_ms}ms", node_id=node.id)

            if node.type == NodeType.IF_ELSE:
                skipped |= BranchingHandler(run.resolver).skipped_node_ids(
                    nodes, index, node.config, bool(outcome.result['outcome'])
                )

            if outcome.stop is not None:
                self._apply_stop(node, outcome, run)
                return False

        return True

    def _record_failure(self, node: Node, node_result: NodeResult, error: Exception, run: _RunState) -> bool:
        """
        Record a failed node and decide whether the flow stops.

        The log entry is written before the abort decision so aborted runs
        still carry the reason.

        Returns:
            True if the flow must abort
        """
        node_result.status = NodeStatus.FAILED
        node_result.finished_at = utcnow()
        node_result.error = str(error)
        node_result.error_type = type(error).__name__
        if isinstance(error, TransportError) and error.response is not None:
            node_result.result = error.response
        run.failed_count += 1
        run.context.record(node.id, NodeStatus.FAILED, node_result.result)

        data = {'errorType': node_result.error_type}
        if isinstance(error, AuthenticationError) and error.authorization_required:
            data['reason'] = AuthenticationError.AUTHORIZATION_REQUIRED
        if isinstance(error, TransportError) and error.status_code is not None:
            data['statusCode'] = error.status_code
        run.log.error(str(error), node_id=node.id, data=data)

        if not isinstance(error, FlowExecutionError):
            logger.error(f"Unexpected error in node {node.id}: {error}")
            logger.debug(traceback.format_exc())

        if isinstance(error, LoopLimitError):
            run.halt(ExecutionStatus.ERROR, f"Node {node.id} failed: {error}")
            return True

        if node.type == NodeType.HTTP and node.config.fail_on_error:
            run.halt(ExecutionStatus.ERROR, f"Node {node.id} failed: {error}")
            return True

        run.log.warn("Continuing after node failure", node_id=node.id)
        return False

    def _apply_stop(self, node: Node, outcome: StepOutcome, run: _RunState):
        if outcome.stop == StopType.SUCCESS:
            run.log.info("Flow stopped by stopJob", node_id=node.id)
            run.halt(ExecutionStatus.SUCCESS)
        elif outcome.stop == StopType.CANCEL:
            run.log.warn("Flow cancelled by stopJob", node_id=node.id)
            run.halt(ExecutionStatus.CANCELLED, outcome.message or "Cancelled by stopJob")
        else:
            message = outcome.message or "Flow stopped by stopJob"
            run.log.error(message, node_id=node.id)
            run.halt(ExecutionStatus.ERROR, message)

    def _save_last_result(self, node_id: str, result: Any):
        try:
            self.storage.save_last_result(node_id, result)
        except Exception as e:
            logger.warning(f"Could not save last result for node {node_id}: {e}")

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _run_loop(self, node: Node, run: _RunState) -> Dict[str, Any]:
        """
        Execute a loop node's body once per item, batch or while-iteration.

        Raises:
            LoopLimitError: When a while loop reaches its cap
        """
        config = node.config
        handler = LoopHandler(run.resolver, self.while_loop_limit)
        failures_before = run.failed_count
        iterations = 0

        if config.loop_type == LoopType.FOR_EACH:
            items = handler.get_loop_items(config, node.id)
            batch_size = handler.get_batch_size(config, node.id)
            if batch_size is None:
                scopes = [handler.create_item_scope(item, i) for i, item in enumerate(items)]
            else:
                scopes = [
                    handler.create_batch_scope(batch, i)
                    for i, batch in enumerate(handler.get_batches(items, batch_size))
                ]

            run.log.info(f"Starting loop over {len(items)} items in {len(scopes)} iterations", node_id=node.id)

            for scope in scopes:
                if not await self._run_iteration(config.nodes, scope, run):
                    break
                iterations += 1

            return handler.process_loop_results(
                iterations, run.failed_count - failures_before,
                itemCount=len(items), batchSize=batch_size,
            )

        start_time = utcnow()
        limit = handler.get_iteration_limit(config)
        run.log.info(f"Starting while loop (limit {limit} iterations)", node_id=node.id)

        while True:
            # The condition sees the scope of the iteration it is about to start
            run.context.push_loop(handler.create_while_scope(iterations, start_time))
            try:
                keep_going = handler.should_continue(config, iterations, node.id)
            finally:
                run.context.pop_loop()

            if not keep_going:
                break
            if run.cancel_event.is_set():
                run.halt(ExecutionStatus.CANCELLED, "Execution cancelled")
                break
            if not await self._run_iteration(config.nodes, handler.create_while_scope(iterations, start_time), run):
                break
            iterations += 1
            # Yield so cancellation and other tasks get a chance on empty bodies
            await asyncio.sleep(0)

        return handler.process_loop_results(iterations, run.failed_count - failures_before)

    async def _run_iteration(self, nodes: List[Node], scope: Dict[str, Any], run: _RunState) -> bool:
        run.context.push_loop(scope)
        try:
            return await self._run_nodes(nodes, run)
        finally:
            run.context.pop_loop()

    # ------------------------------------------------------------------
    # Node test
    # ------------------------------------------------------------------

    async def test_node(self, node: Union[Node, Dict[str, Any]], owner_id: Optional[str] = None) -> NodeResult:
        """
        Run one HTTP node in isolation (authentication + call + result).

        Uses the same fail-closed authentication as a full run. Never raises.
        """
        execution_logger = ExecutionLogger(f"test-{uuid4()}")

        try:
            if isinstance(node, dict):
                node = Node.from_dict(node)
        except FlowValidationError as e:
            return NodeResult(
                node_id=str(node.get('id')) if isinstance(node, dict) else 'unknown',
                node_type=str(node.get('type')) if isinstance(node, dict) else 'unknown',
                status=NodeStatus.FAILED,
                error=str(e),
                error_type=type(e).__name__,
            )

        node_result = NodeResult(node_id=node.id, node_type=node.type.value, started_at=utcnow())

        if node.type != NodeType.HTTP:
            node_result.status = NodeStatus.FAILED
            node_result.error = f"Only http nodes can be tested, got {node.type.value}"
            node_result.error_type = FlowValidationError.__name__
            node_result.finished_at = utcnow()
            return node_result

        resolver = VariableResolver(ExecutionContext(), execution_logger)
        node_result.status = NodeStatus.RUNNING
        try:
            outcome = await self.step_processor.process_http(node, resolver, execution_logger, owner_id)
        except Exception as e:
            node_result.status = NodeStatus.FAILED
            node_result.error = str(e)
            node_result.error_type = type(e).__name__
            if isinstance(e, TransportError) and e.response is not None:
                node_result.result = e.response
            if not isinstance(e, FlowExecutionError):
                logger.error(f"Unexpected error testing node {node.id}: {e}")
                logger.debug(traceback.format_exc())
        else:
            node_result.status = NodeStatus.SUCCEEDED
            node_result.result = outcome.result
            self._save_last_result(node.id, outcome.result)

        node_result.finished_at = utcnow()
        return node_result

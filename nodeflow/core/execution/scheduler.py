"""
Scheduler
Drives one scope of a workflow graph: readiness, dispatch under the shared
concurrency budget, conditional branch pruning, loops and failure isolation
"""
import asyncio
import time
from concurrent.futures import Executor
from typing import Awaitable, Dict, Any, List, Optional, Set, Tuple

from ..config import Config
from ..types import NodeID, PortID
from .errors import (
    SchedulerInvariantViolated, NodeExecutionError, ExecutorError,
    UpstreamFailed, LoopBounded, IterationFailed
)
from .graph import Graph, LoopInfo
from .node_base import BaseNode, ExecutionContext, CancellationToken
from .node_run import NodeRun, NodeState, SkipReason
from .nodes.condition import ConditionNode
from .nodes.loop import LoopNode
from .propagator import Binding, ValuePropagator
from .recorder import ExecutionRecorder
from .retry import RetryPolicy
from ...utils.logger import get_logger

logger = get_logger(__name__)


class ConcurrencyBudget:
    """
    Number of executors allowed in flight, shared by every scheduler of an execution

    Loop nodes do not hold a slot while their iterations run; the body
    executors do.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self.in_use = 0
        self._waiters: List[asyncio.Future] = []

    def try_acquire(self) -> bool:
        if self.in_use >= self.limit:
            return False
        self.in_use += 1
        return True

    def release(self) -> None:
        self.in_use -= 1
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def released(self) -> asyncio.Future:
        """Future resolved at the next release (waiters are woken in registration order)"""
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        return waiter


class ExecutionControl:
    """State shared by the top-level scheduler and every iteration scheduler"""

    def __init__(
        self,
        graph: Graph,
        recorder: ExecutionRecorder,
        services: Any = None,
        workflow_input: Any = None,
        has_input: bool = False,
        concurrency: int = 1,
        deadline: Optional[float] = None,
        cancellation: Optional[CancellationToken] = None,
        retry_policy: Optional[RetryPolicy] = None,
        executor: Optional[Executor] = None
    ):
        self.graph = graph
        self.recorder = recorder
        self.propagator = ValuePropagator(graph)
        self.services = services
        self.workflow_input = workflow_input
        self.has_input = has_input
        self.budget = ConcurrencyBudget(concurrency)
        self.deadline = deadline
        self.cancellation = cancellation
        self.retry_policy = retry_policy or RetryPolicy()
        self.executor = executor
        self.interrupted: Optional[SkipReason] = None

        limits = [node.props.max_iterations for node in graph.nodes.values() if isinstance(node, LoopNode)]
        self.ready_limit = max([Config.DEFAULT_MAX_ITERATIONS] + limits) * 2

    def check_interrupt(self) -> Optional[SkipReason]:
        """Latch cancellation or deadline expiry (whichever is seen first)"""
        if self.interrupted is None:
            if self.cancellation is not None and self.cancellation.is_cancelled:
                self.interrupted = SkipReason.CANCELLED
            elif self.deadline is not None and time.monotonic() >= self.deadline:
                self.interrupted = SkipReason.TIMED_OUT
        return self.interrupted

    def wait_timeout(self) -> Optional[float]:
        timeouts = []
        if self.deadline is not None:
            timeouts.append(max(0.0, self.deadline - time.monotonic()))
        if self.cancellation is not None:
            timeouts.append(Config.CANCEL_POLL_INTERVAL)
        return min(timeouts) if timeouts else None

    def context_for(self, node_id: NodeID) -> ExecutionContext:
        return ExecutionContext(
            services=self.services,
            workflow_input=self.workflow_input,
            has_input=self.has_input,
            deadline=self.deadline,
            cancellation=self.cancellation,
            retry_policy=self.retry_policy,
            node_id=node_id,
            executor=self.executor,
        )


class Scheduler:
    """
    Runs the nodes of one scope to completion

    A scope is the set of top-level nodes, or the nodes owned by a loop for a
    single iteration. Nested loops get a child Scheduler per iteration that
    shares the ExecutionControl (budget, deadline, recorder) of its parent.
    """

    def __init__(
        self,
        control: ExecutionControl,
        loop_id: Optional[NodeID] = None,
        bindings: Optional[Dict[Tuple[NodeID, PortID], Binding]] = None,
        iteration: Tuple[int, ...] = (),
        depth: int = 0
    ):
        self.control = control
        self.graph = control.graph
        self.loop_id = loop_id
        self.scope = self.graph.scope_of(loop_id)
        self.bindings: Dict[Tuple[NodeID, PortID], Binding] = dict(bindings or {})
        self.iteration = iteration
        self.depth = depth

        self.runs: Dict[NodeID, NodeRun] = {}
        self.decisions: Dict[NodeID, bool] = {}
        # Values of designated output nodes produced in this scope (lists for loop bodies)
        self.sink_values: Dict[NodeID, Any] = {}
        self.iteration_result: Any = None
        self.has_iteration_result = False

        self._order: List[NodeID] = sorted(self.scope, key=self.graph.order_key)
        self._tasks: Dict[asyncio.Future, NodeID] = {}
        self._contexts: Dict[NodeID, ExecutionContext] = {}
        # Executors holding a concurrency slot
        self._holding: Set[NodeID] = set()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """
        Execute the scope until no node can make progress

        Raises:
            SchedulerInvariantViolated: On an impossible state transition
        """
        self._setup()
        try:
            while True:
                if self.control.check_interrupt():
                    await self._interrupt()
                    break
                self._promote()
                blocked = self._dispatch()
                if not self._tasks and not blocked:
                    if self._promotable():
                        continue
                    break
                for task in await self._wait(blocked):
                    node_id = self._tasks.pop(task)
                    self._complete(node_id, task)
        except asyncio.CancelledError:
            await self._interrupt()
            self._finalize()
            raise
        except SchedulerInvariantViolated:
            for task in self._tasks:
                task.cancel()
            raise
        self._finalize()

    async def _wait(self, blocked: bool) -> List[asyncio.Future]:
        waiters: Set[asyncio.Future] = set(self._tasks)
        budget_waiter = self.control.budget.released() if blocked else None
        if budget_waiter is not None:
            waiters.add(budget_waiter)

        done, _ = await asyncio.wait(
            waiters,
            timeout=self.control.wait_timeout(),
            return_when=asyncio.FIRST_COMPLETED
        )
        if budget_waiter is not None:
            if not budget_waiter.done():
                budget_waiter.cancel()
            done.discard(budget_waiter)
        return sorted(done, key=lambda task: self.graph.order_key(self._tasks[task]))

    def _now(self) -> float:
        return self.control.recorder.now()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _setup(self) -> None:
        graph = self.graph
        bound: List[Tuple[NodeRun, PortID, Binding]] = []

        for node_id in self._order:
            node = graph.nodes[node_id]
            run = NodeRun(node_id, node.node_type, iteration=self.iteration)
            for port, edge in graph.inbound[node_id].items():
                if graph.is_back_edge(edge):
                    continue
                run.pending_inputs.add(port)
                # Values from enclosing scopes (and item/index) arrive as bindings
                binding = None if edge.source in self.scope else self.bindings.get((node_id, port))
                if binding is not None:
                    bound.append((run, port, binding))
            info = graph.loops.get(node_id)
            if info is not None:
                run.pending_inputs.update(key for key in info.external_inputs if key not in self.bindings)
            self.runs[node_id] = run

        dead = [self.runs[node_id] for node_id in self._order if node_id in graph.dead]
        for run in dead:
            self._skip(run, SkipReason.UNREACHABLE, cascade=False)
        for run in dead:
            self._cascade(run)

        for run, port, binding in bound:
            if run.state.terminal:
                continue
            if binding.error is not None:
                self._fail(run, binding.error)
            else:
                self.control.propagator.deliver(run, port, binding)

        for node_id in self._order:
            run = self.runs[node_id]
            if isinstance(graph.nodes[node_id], ConditionNode) and not run.state.terminal \
                    and "condition" not in run.pending_inputs:
                self._decide(run)

    # ------------------------------------------------------------------
    # Readiness and dispatch
    # ------------------------------------------------------------------

    def _gated(self, node_id: NodeID) -> bool:
        """True while a condition this node exclusively feeds is undecided"""
        for cond_id, _port in self.graph.gates.get(node_id, ()):
            if cond_id in self.runs and cond_id not in self.decisions:
                return True
        return False

    def _promotable(self) -> bool:
        return any(
            run.state == NodeState.PENDING and not run.pending_inputs and not self._gated(node_id)
            for node_id, run in self.runs.items()
        )

    def _promote(self) -> None:
        for node_id in self._order:
            run = self.runs[node_id]
            if run.state == NodeState.PENDING and not run.pending_inputs and not self._gated(node_id):
                run.mark_ready(self.control.ready_limit)

    def _dispatch(self) -> bool:
        """
        Start Ready nodes in (rank, id) order

        Returns:
            True if a node is still waiting for a concurrency slot
        """
        budget = self.control.budget
        for node_id in self._order:
            run = self.runs[node_id]
            if run.state != NodeState.READY:
                continue
            if self.control.check_interrupt():
                return False
            node = self.graph.nodes[node_id]

            if isinstance(node, ConditionNode):
                self._decide(run)
                selected = node.selected_port(self.decisions[node_id])
                if selected in run.failed_ports:
                    self._fail(run, UpstreamFailed(f"selected input {selected} was not produced"))
                    continue

            info = self.graph.loops.get(node_id)
            if info is not None and info.has_body:
                run.start(self._now())
                task = asyncio.ensure_future(self._run_loop(run, node, info))
                self._tasks[task] = node_id
                continue

            if not budget.try_acquire():
                return True
            context = self.control.context_for(node_id)
            self._contexts[node_id] = context
            run.start(self._now())
            logger.debug(f"Executing node {node_id} ({run.node_type}) iteration={list(self.iteration)}")
            if isinstance(node, ConditionNode):
                work = self._select(node, self.decisions[node_id], dict(run.input_values))
            else:
                work = node.execute(dict(run.input_values), context)
            self._holding.add(node_id)
            task = asyncio.ensure_future(self._execute(node_id, work))
            self._tasks[task] = node_id
        return False

    async def _execute(self, node_id: NodeID, work: Awaitable[Dict[PortID, Any]]) -> Any:
        try:
            return await work
        finally:
            self._release(node_id)

    def _release(self, node_id: NodeID) -> None:
        if node_id in self._holding:
            self._holding.discard(node_id)
            self.control.budget.release()

    async def _select(self, node: ConditionNode, decision: bool, inputs: Dict[PortID, Any]) -> Dict[PortID, Any]:
        # The branch was fixed when the condition arrived (or failed under errorAsFalse)
        return node.select(decision, inputs)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _complete(self, node_id: NodeID, task: asyncio.Future) -> None:
        run = self.runs[node_id]
        self._release(node_id)
        context = self._contexts.pop(node_id, None)
        if context is not None:
            run.attempts = list(context.attempts)

        if task.cancelled():
            run.finish(NodeState.CANCELLED, self._now())
            self.control.recorder.record(run)
            return

        exc = task.exception()
        if exc is not None:
            if isinstance(exc, SchedulerInvariantViolated):
                raise exc
            if isinstance(exc, NodeExecutionError):
                logger.warning(f"Node {node_id} ({run.node_type}) failed: {exc}")
                self._fail(run, exc)
            else:
                logger.error(f"Error executing node {node_id} ({run.node_type}): {exc}", exc_info=exc)
                self._fail(run, ExecutorError(f"{type(exc).__name__}: {exc}"))
            return

        outputs = task.result()
        info = self.graph.loops.get(node_id)
        if info is not None and info.has_body:
            outputs, sinks = outputs
            self.sink_values.update(sinks)
        if not isinstance(outputs, dict):
            self._fail(run, ExecutorError(f"executor returned {type(outputs).__name__}, expected a dict"))
            return
        run.output_values = outputs
        self._succeed(run)

    def _sink_value(self, node: BaseNode, run: NodeRun) -> Any:
        if node.is_output:
            return node.result_value(run.input_values)
        for port in node.output_ports:
            if port in run.output_values:
                return run.output_values[port]
        return None

    def _succeed(self, run: NodeRun) -> None:
        run.finish(NodeState.SUCCEEDED, self._now())
        self.control.recorder.record(run)

        node = self.graph.nodes[run.node_id]
        if run.node_id in self.graph.output_nodes:
            self.sink_values[run.node_id] = self._sink_value(node, run)

        outcome = self.control.propagator.propagate(run, self.runs, self.bindings, self.loop_id)
        if outcome.has_iteration_result:
            self.iteration_result = outcome.iteration_result
            self.has_iteration_result = True
        for target_id, error in outcome.failed:
            target = self.runs[target_id]
            if not target.state.terminal:
                self._fail(target, error)
        for target_id, port in outcome.delivered:
            target = self.runs[target_id]
            if port == "condition" and isinstance(self.graph.nodes[target_id], ConditionNode) \
                    and not target.state.terminal:
                self._decide(target)

    def _fail(self, run: NodeRun, error: BaseException) -> None:
        run.finish(NodeState.FAILED, self._now(), error=error)
        self.control.recorder.record(run)
        self._cascade(run)

    def _skip(self, run: NodeRun, reason: SkipReason, cascade: bool = True) -> None:
        run.finish(NodeState.SKIPPED, self._now(), skip_reason=reason)
        self.control.recorder.record(run)
        if cascade:
            self._cascade(run)

    def _cascade(self, run: NodeRun) -> None:
        """Consumers of a node that did not succeed will never get its outputs"""
        dead_branch = run.skip_reason == SkipReason.DEAD_BRANCH
        reason = SkipReason.DEAD_BRANCH if dead_branch else SkipReason.UPSTREAM_FAILED

        for edge in self.graph.outbound[run.node_id]:
            if edge.target in self.runs:
                target = self.runs[edge.target]
                if target.state.terminal or target.state == NodeState.RUNNING \
                        or edge.target_port in target.dropped_ports:
                    continue
                node = self.graph.nodes[edge.target]
                if isinstance(node, ConditionNode) and not dead_branch:
                    self._branch_failed(target, node, edge.target_port, run)
                else:
                    self._skip(target, reason)
            elif edge.target == self.loop_id and self.graph.is_back_edge(edge):
                continue
            else:
                loop_id = self.graph.enclosing_loop(edge.target, self.loop_id)
                target = self.runs.get(loop_id) if loop_id is not None else None
                if target is not None and target.state in (NodeState.PENDING, NodeState.READY):
                    self._skip(target, reason)

    def _branch_failed(self, run: NodeRun, node: ConditionNode, port: PortID, source: NodeRun) -> None:
        if node.props.error_as_false:
            run.pending_inputs.discard(port)
            run.dropped_ports.add(port)
            run.failed_ports.add(port)
            if port == "condition":
                self._decide(run)
            return
        self._fail(run, UpstreamFailed(f"input {port} not produced: node {source.node_id} {source.state.value}"))

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def _decide(self, run: NodeRun) -> None:
        """Fix a condition's branch and prune the nodes feeding only the other one"""
        if run.node_id in self.decisions:
            return
        node: ConditionNode = self.graph.nodes[run.node_id]
        decision = False if "condition" in run.failed_ports else node.decide(run.input_values)
        self.decisions[run.node_id] = decision

        pruned_port = node.selected_port(not decision)
        exclusive = self.graph.exclusive.get((run.node_id, pruned_port))
        logger.debug(f"Condition {run.node_id} decided {decision}, pruning {pruned_port}")
        if not exclusive:
            return
        run.pending_inputs.discard(pruned_port)
        run.dropped_ports.add(pruned_port)
        for node_id in sorted(exclusive, key=self.graph.order_key, reverse=True):
            target = self.runs.get(node_id)
            if target is not None and not target.state.terminal:
                self._skip(target, SkipReason.DEAD_BRANCH)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _run_loop(self, run: NodeRun, node: LoopNode, info: LoopInfo) -> Tuple[Dict[str, Any], Dict[NodeID, Any]]:
        depth = self.depth + 1
        if depth > Config.MAX_LOOP_DEPTH:
            raise LoopBounded(f"loop nesting exceeds {Config.MAX_LOOP_DEPTH} levels")

        items = node.collection(run.input_values)
        count = node.planned_iterations(run.input_values)
        seeds = [edge for edge in self.graph.outbound[run.node_id] if edge.source_port in LoopNode.ITERATION_OUTPUTS]
        logger.debug(f"Loop {run.node_id}: {count} iteration(s) over {len(items)} item(s), parallel={node.props.parallel}")

        async def iterate(index: int) -> "Scheduler":
            bindings = dict(self.bindings)
            for edge in seeds:
                value = items[index] if edge.source_port == "item" else index
                bindings[(edge.target, edge.target_port)] = self.control.propagator.convert(edge, value)
            child = Scheduler(self.control, run.node_id, bindings, self.iteration + (index,), depth)
            await child.run()
            return child

        children: List[Scheduler] = []
        if node.props.parallel:
            children = list(await asyncio.gather(*(iterate(index) for index in range(count))))
        else:
            for index in range(count):
                child = await iterate(index)
                children.append(child)
                if child.failed_run() is not None or self.control.interrupted:
                    break

        if self.control.interrupted:
            raise asyncio.CancelledError()
        for index, child in enumerate(children):
            failed = child.failed_run()
            if failed is not None:
                raise IterationFailed(f"iteration {index}: node {failed.node_id} failed: {failed.error}")

        body_outputs = [node_id for node_id in info.scope if self.graph.nodes[node_id].is_output]
        collected = []
        for index, child in enumerate(children):
            if info.back_edges:
                collected.append(child.iteration_result)
            elif len(body_outputs) == 1:
                collected.append(child.sink_values.get(body_outputs[0]))
            else:
                collected.append(items[index])

        outputs = node.finish(collected, len(items))
        sinks = {
            sink_id: [child.sink_values.get(sink_id) for child in children]
            for sink_id in self.graph.output_nodes if sink_id in info.body
        }
        return outputs, sinks

    def failed_run(self) -> Optional[NodeRun]:
        for node_id in self._order:
            run = self.runs.get(node_id)
            if run is not None and run.state == NodeState.FAILED:
                return run
        return None

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def _interrupt(self) -> None:
        """Cancel everything in flight; executors that finish anyway keep their outcome"""
        tasks = list(self._tasks)
        if not tasks:
            return
        reason = self.control.interrupted.value if self.control.interrupted else "Cancelled"
        logger.warning(f"Execution interrupted ({reason}), cancelling {len(tasks)} running node(s)")
        for task in tasks:
            task.cancel()
        await asyncio.wait(tasks, timeout=Config.CANCEL_GRACE_PERIOD)

        for task in sorted(tasks, key=lambda t: self.graph.order_key(self._tasks[t])):
            node_id = self._tasks.pop(task)
            if task.done():
                self._complete(node_id, task)
            else:
                run = self.runs[node_id]
                self._contexts.pop(node_id, None)
                run.finish(NodeState.CANCELLED, self._now())
                self.control.recorder.record(run)

    def _finalize(self) -> None:
        """Whatever could not run is Skipped"""
        reason = self.control.interrupted or SkipReason.UPSTREAM_FAILED
        for node_id in self._order:
            run = self.runs[node_id]
            if not run.state.terminal:
                self._skip(run, reason, cascade=False)

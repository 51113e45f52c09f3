"""
Execution Engine for nodeflow
Executes node-based workflow graphs with bounded concurrency
"""
import asyncio
import json
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..config import Config
from ..services import SimulatedServices
from ..types import LogEntry, WorkflowDefinition
from .errors import GraphInvalid, GraphCyclic, SchedulerInvariantViolated
from .graph import Graph, parse_graph
from .node_base import BaseNode, CancellationToken
from .node_registry import NODE_REGISTRY
from .node_run import SkipReason
from .recorder import ExecutionRecorder, make_serializable
from .retry import RetryPolicy
from .scheduler import ExecutionControl, Scheduler
from ...utils.logger import get_logger

logger = get_logger(__name__)


class ExecutionStatus(str, Enum):
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    TIMED_OUT = "TimedOut"


class ExecutionOptions(BaseModel):
    """Per-execution knobs (deadlineMs is accepted as stored by the platform)"""
    model_config = ConfigDict(populate_by_name=True)

    concurrency: int = Field(default_factory=lambda: Config.DEFAULT_CONCURRENCY, ge=1)
    deadline_ms: Optional[float] = Field(default_factory=lambda: Config.DEFAULT_DEADLINE_MS, alias="deadlineMs")
    verbose: bool = False

    @field_validator("deadline_ms")
    @classmethod
    def _positive_deadline(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("deadlineMs must be positive")
        return v


@dataclass
class ExecutionResult:
    """Outcome of one execution"""
    status: ExecutionStatus
    output: Any = None
    log: List[LogEntry] = field(default_factory=list)
    elapsed_ms: float = 0.0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    input: Any = None
    started_at: Optional[float] = None  # epoch milliseconds

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    def to_record(self, workflow_id: Any, started_at: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Execution record as persisted by the platform

        Args:
            workflow_id: Id of the workflow that was executed
            started_at: Start time (default: the result's own start time)

        Returns:
            JSON-serializable dict with camelCase keys
        """
        if started_at is None:
            started_ms = self.started_at if self.started_at is not None else time.time() * 1000.0
            started_at = datetime.fromtimestamp(started_ms / 1000.0, tz=timezone.utc)
        completed_at = datetime.fromtimestamp(started_at.timestamp() + self.elapsed_ms / 1000.0, tz=timezone.utc)
        return {
            "workflowId": workflow_id,
            "status": self.status.value,
            "startedAt": started_at.isoformat(),
            "completedAt": completed_at.isoformat(),
            "input": make_serializable(self.input),
            "output": make_serializable(self.output),
            "errorMessage": self.error,
            "executionLog": make_serializable(self.log),
            "executionTimeMs": int(round(self.elapsed_ms)),
        }


def decode_input(value: Any) -> Tuple[Any, bool]:
    """
    Normalize the top-level input

    Returns:
        (value, has_input); text that is not valid JSON is kept as a raw string
    """
    if value is None:
        return None, False
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        try:
            return json.loads(value), True
        except ValueError:
            return value, True
    return value, True


class ExecutionEngine:
    """
    Executes JSON workflow graphs

    Features:
    - Static validation (types, ports, properties, cycles modulo loop back-edges)
    - Concurrent dispatch of independent nodes, bounded per execution
    - Conditional branch pruning and loop iteration
    - Per-node failure isolation with an ordered execution trace

    Holds no state between calls; one engine can serve many executions.
    """

    def __init__(
        self,
        registry: Optional[Dict[str, Type[BaseNode]]] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        """
        Initialize execution engine

        Args:
            registry: Node type registry (default: NODE_REGISTRY)
            retry_policy: Retry settings for external nodes (default: from Config)
        """
        self.registry = NODE_REGISTRY if registry is None else registry
        self.retry_policy = retry_policy

    def validate(self, definition: Union[str, bytes, WorkflowDefinition, Dict[str, Any]]) -> Graph:
        """
        Parse and validate a definition without running it

        Raises:
            GraphInvalid: If the definition is malformed
            GraphCyclic: If the graph has a cycle outside loop back-edges
        """
        return parse_graph(definition, self.registry)

    def execute(
        self,
        definition: Union[str, bytes, WorkflowDefinition, Dict[str, Any]],
        input: Any = None,
        options: Optional[Union[ExecutionOptions, Dict[str, Any]]] = None,
        services: Any = None,
        cancellation: Optional[CancellationToken] = None
    ) -> ExecutionResult:
        """
        Execute a workflow graph (blocking, runs its own event loop)

        Args:
            definition: Workflow JSON (text or decoded)
            input: Top-level input (JSON text, raw text, or a decoded value); None for no input
            options: ExecutionOptions or a dict of them
            services: Adapter handle for external nodes (default: SimulatedServices)
            cancellation: Token that cancels the execution when fired

        Returns:
            ExecutionResult
        """
        return asyncio.run(self.execute_async(definition, input, options, services, cancellation))

    async def execute_async(
        self,
        definition: Union[str, bytes, WorkflowDefinition, Dict[str, Any]],
        input: Any = None,
        options: Optional[Union[ExecutionOptions, Dict[str, Any]]] = None,
        services: Any = None,
        cancellation: Optional[CancellationToken] = None
    ) -> ExecutionResult:
        """Same as execute(), awaitable from a running event loop"""
        if options is None:
            options = ExecutionOptions()
        elif isinstance(options, dict):
            options = ExecutionOptions(**options)

        recorder = ExecutionRecorder(verbose=options.verbose)
        start = time.perf_counter()
        workflow_input, has_input = decode_input(input)

        try:
            graph = self.validate(definition)
        except (GraphInvalid, GraphCyclic) as e:
            logger.error(f"Workflow rejected: {e}")
            return ExecutionResult(
                status=ExecutionStatus.FAILED,
                elapsed_ms=round((time.perf_counter() - start) * 1000, 3),
                error=str(e),
                error_kind=e.kind,
                input=workflow_input,
                started_at=recorder.started_at,
            )

        logger.info(f"Executing workflow: {graph.name or graph.id} ({len(graph.nodes)} nodes, concurrency={options.concurrency})")

        deadline = None
        if options.deadline_ms is not None:
            deadline = time.monotonic() + options.deadline_ms / 1000.0

        # Blocking adapter calls still running after an interrupt are abandoned, not joined
        executor = ThreadPoolExecutor(max_workers=options.concurrency, thread_name_prefix="nodeflow-adapter")

        control = ExecutionControl(
            graph,
            recorder,
            services=services if services is not None else SimulatedServices(),
            workflow_input=workflow_input,
            has_input=has_input,
            concurrency=options.concurrency,
            deadline=deadline,
            cancellation=cancellation,
            retry_policy=self.retry_policy,
            executor=executor,
        )
        scheduler = Scheduler(control)

        try:
            await scheduler.run()
        except SchedulerInvariantViolated as e:
            logger.error(f"Execution aborted: {e}", exc_info=True)
            return ExecutionResult(
                status=ExecutionStatus.FAILED,
                log=recorder.entries,
                elapsed_ms=round((time.perf_counter() - start) * 1000, 3),
                error=str(e),
                error_kind=e.kind,
                input=workflow_input,
                started_at=recorder.started_at,
            )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        result = self._build_result(graph, scheduler, control, recorder)
        result.elapsed_ms = round((time.perf_counter() - start) * 1000, 3)
        result.input = workflow_input
        logger.info(f"Workflow {graph.id} finished: {result.status.value} in {result.elapsed_ms:.1f}ms")
        return result

    def _build_result(
        self,
        graph: Graph,
        scheduler: Scheduler,
        control: ExecutionControl,
        recorder: ExecutionRecorder
    ) -> ExecutionResult:
        designated = graph.output_nodes
        values = scheduler.sink_values
        produced = all(node_id in values for node_id in designated)

        output: Any = None
        if len(designated) == 1:
            output = values.get(designated[0])
        elif designated:
            output = {node_id: values[node_id] for node_id in designated if node_id in values}

        result = ExecutionResult(
            status=ExecutionStatus.COMPLETED,
            output=output,
            log=recorder.entries,
            started_at=recorder.started_at,
        )
        if produced:
            return result

        if control.interrupted is not None:
            if control.interrupted == SkipReason.TIMED_OUT:
                result.status = ExecutionStatus.TIMED_OUT
                result.error = "Execution deadline exceeded"
            else:
                result.status = ExecutionStatus.CANCELLED
                result.error = "Execution cancelled"
            result.error_kind = result.status.value
            return result

        result.status = ExecutionStatus.FAILED
        failure = recorder.first_failure()
        if failure is not None:
            result.error = f"Node {failure['nodeId']} ({failure['type']}) failed: {failure.get('error')}"
            result.error_kind = failure.get("errorKind")
        else:
            missing = [node_id for node_id in designated if node_id not in values]
            result.error = f"Output node(s) {missing} did not produce a value"
            result.error_kind = "UpstreamFailed"
        return result

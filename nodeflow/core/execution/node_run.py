"""
Per-execution runtime state of a node
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Hashable, List, Optional, Set, Tuple

from ..types import NodeID, PortID, AttemptRecord
from .errors import SchedulerInvariantViolated


class NodeState(str, Enum):
    PENDING = "Pending"
    READY = "Ready"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    CANCELLED = "Cancelled"

    @property
    def terminal(self) -> bool:
        return self in (NodeState.SUCCEEDED, NodeState.FAILED, NodeState.SKIPPED, NodeState.CANCELLED)


class SkipReason(str, Enum):
    DEAD_BRANCH = "DeadBranch"
    UPSTREAM_FAILED = "UpstreamFailed"
    UNREACHABLE = "Unreachable"
    CANCELLED = "Cancelled"
    TIMED_OUT = "TimedOut"


@dataclass
class NodeRun:
    """
    Runtime state of one node for one execution (or one loop iteration)

    Only the scheduler that owns the run mutates it.
    """
    node_id: NodeID
    node_type: str
    iteration: Tuple[int, ...] = ()
    state: NodeState = NodeState.PENDING
    # Input ports still awaited; loops also await ("node", "port") keys of body bindings
    pending_inputs: Set[Hashable] = field(default_factory=set)
    input_values: Dict[PortID, Any] = field(default_factory=dict)
    output_values: Dict[PortID, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None
    skip_reason: Optional[SkipReason] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    attempts: List[AttemptRecord] = field(default_factory=list)
    coercions: List[str] = field(default_factory=list)
    ready_count: int = 0
    # Branch ports no longer awaited (pruned, or failed under errorAsFalse)
    dropped_ports: Set[PortID] = field(default_factory=set)
    # Ports whose producer failed (errorAsFalse conditions only)
    failed_ports: Set[PortID] = field(default_factory=set)

    def mark_ready(self, limit: int) -> None:
        if self.state != NodeState.PENDING:
            raise SchedulerInvariantViolated(f"Node {self.node_id} promoted to Ready from {self.state.value}")
        self.ready_count += 1
        if self.ready_count > limit:
            raise SchedulerInvariantViolated(
                f"Node {self.node_id} became Ready {self.ready_count} times (limit {limit})"
            )
        self.state = NodeState.READY

    def start(self, now: float) -> None:
        if self.state != NodeState.READY:
            raise SchedulerInvariantViolated(f"Node {self.node_id} started from {self.state.value}")
        self.state = NodeState.RUNNING
        self.started_at = now

    def finish(
        self,
        state: NodeState,
        now: float,
        error: Optional[BaseException] = None,
        skip_reason: Optional[SkipReason] = None
    ) -> None:
        """
        Apply the single terminal transition of this run

        Raises:
            SchedulerInvariantViolated: If the run already reached a terminal state
        """
        if self.state.terminal:
            raise SchedulerInvariantViolated(
                f"Node {self.node_id} already {self.state.value}, cannot become {state.value}"
            )
        if not state.terminal:
            raise SchedulerInvariantViolated(f"{state.value} is not a terminal state")
        self.state = state
        self.finished_at = now
        if self.started_at is None:
            self.started_at = now
        self.error = error
        self.skip_reason = skip_reason

    @property
    def elapsed_ms(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return round(self.finished_at - self.started_at, 3)

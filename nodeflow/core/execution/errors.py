"""
Error taxonomy for the execution engine

Static errors (GraphInvalid, GraphCyclic) reject a definition before anything
runs. NodeExecutionError subclasses fail a single node and never the whole
execution by themselves. SchedulerInvariantViolated aborts the execution.
"""
from typing import List, Optional


class NodeflowError(Exception):
    """Base class for all engine errors"""

    kind = "NodeflowError"


class GraphInvalid(NodeflowError, ValueError):
    """Raised when a workflow definition fails static validation"""

    kind = "GraphInvalid"

    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems: List[str] = list(problems)
        super().__init__("; ".join(self.problems))


class GraphCyclic(NodeflowError, ValueError):
    """Raised when a cycle is detected in the workflow graph (loop back-edges excluded)"""

    kind = "GraphCyclic"

    def __init__(self, message: str, nodes: Optional[List[str]] = None):
        self.nodes = nodes or []
        super().__init__(message)


class SchedulerInvariantViolated(NodeflowError, RuntimeError):
    """Raised when the scheduler reaches a state a validated graph cannot produce"""

    kind = "SchedulerInvariantViolated"


class NodeExecutionError(NodeflowError):
    """Base class for failures local to one node"""

    kind = "NodeExecutionError"


class CoercionFailed(NodeExecutionError):
    """A value could not be converted to the consuming port's type"""

    kind = "CoercionFailed"


class ExternalFailure(NodeExecutionError):
    """An external service kept failing transiently until retries ran out"""

    kind = "ExternalFailure"


class ExternalRejected(NodeExecutionError):
    """An external service refused the request (not retryable)"""

    kind = "ExternalRejected"


class LoopBounded(NodeExecutionError):
    """A loop exceeded maxIterations or the nesting limit"""

    kind = "LoopBounded"


class IterationFailed(NodeExecutionError):
    """A node inside a loop body failed during one of the iterations"""

    kind = "IterationFailed"


class UpstreamFailed(NodeExecutionError):
    """A required input will never arrive because its producer did not succeed"""

    kind = "UpstreamFailed"


class ExecutorError(NodeExecutionError):
    """Unexpected exception raised by an executor"""

    kind = "ExecutorError"


def error_kind(exc: BaseException) -> str:
    """Taxonomy name of an exception (class name for foreign exceptions)"""
    return getattr(exc, "kind", type(exc).__name__)

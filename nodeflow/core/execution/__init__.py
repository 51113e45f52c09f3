"""
Execution Engine for nodeflow
Provides node-based workflow execution with bounded concurrency
"""
from .engine import ExecutionEngine, ExecutionOptions, ExecutionResult, ExecutionStatus
from .errors import (
    NodeflowError, GraphInvalid, GraphCyclic, SchedulerInvariantViolated,
    NodeExecutionError, CoercionFailed, ExternalFailure, ExternalRejected,
    LoopBounded, IterationFailed, UpstreamFailed, ExecutorError,
)
from .graph import Graph, parse_graph
from .node_base import BaseNode, ExecutionContext, CancellationToken
from .node_registry import NODE_REGISTRY, register_node, get_node_class
from .retry import RetryPolicy

__all__ = [
    'ExecutionEngine',
    'ExecutionOptions',
    'ExecutionResult',
    'ExecutionStatus',
    'NodeflowError',
    'GraphInvalid',
    'GraphCyclic',
    'SchedulerInvariantViolated',
    'NodeExecutionError',
    'CoercionFailed',
    'ExternalFailure',
    'ExternalRejected',
    'LoopBounded',
    'IterationFailed',
    'UpstreamFailed',
    'ExecutorError',
    'Graph',
    'parse_graph',
    'BaseNode',
    'ExecutionContext',
    'CancellationToken',
    'NODE_REGISTRY',
    'register_node',
    'get_node_class',
    'RetryPolicy',
]

"""
Type definitions for nodeflow

This module provides:
- Type aliases for common types
- TypedDict for the workflow JSON and the execution log
"""
from typing import TypedDict, TypeAlias, Optional, Dict, Any, List, Literal
from typing_extensions import NotRequired


# ============================================================================
# Type Aliases
# ============================================================================

NodeID: TypeAlias = str
PortID: TypeAlias = str
PortType: TypeAlias = Literal["string", "number", "boolean", "object", "array", "file", "any"]

PORT_TYPES = ("string", "number", "boolean", "object", "array", "file", "any")


# ============================================================================
# Workflow Definition (JSON consumed by the engine)
# ============================================================================

class PortRef(TypedDict):
    """One end of an edge"""
    node: NodeID
    port: PortID


# Directed connection from an output port to an input port ("from" is a keyword)
EdgeData = TypedDict("EdgeData", {"from": PortRef, "to": PortRef})


class NodeData(TypedDict):
    """A single node in the workflow JSON"""
    id: NodeID
    type: str  # e.g. "ai-text", "logic-loop", "data-output"
    properties: NotRequired[Dict[str, Any]]
    position: NotRequired[Dict[str, float]]  # editor only, ignored by the engine


class WorkflowDefinition(TypedDict):
    """Complete workflow graph as persisted by the editor"""
    nodes: List[NodeData]
    edges: List[EdgeData]
    id: NotRequired[str]
    name: NotRequired[str]


# ============================================================================
# Execution trace
# ============================================================================

class AttemptRecord(TypedDict):
    """One executor attempt (external nodes retry)"""
    attempt: int
    startedAt: float
    elapsedMs: float
    error: NotRequired[str]
    transient: NotRequired[bool]


class LogEntry(TypedDict):
    """One terminal NodeRun transition"""
    nodeId: NodeID
    type: str
    state: str
    startedAt: Optional[float]
    finishedAt: Optional[float]
    elapsedMs: float
    inputsDigest: str
    outputsDigest: NotRequired[str]
    error: NotRequired[str]
    errorKind: NotRequired[str]
    skipReason: NotRequired[str]
    iteration: List[int]
    attempts: List[AttemptRecord]
    coercions: List[str]
    inputs: NotRequired[Dict[str, Any]]
    outputs: NotRequired[Dict[str, Any]]

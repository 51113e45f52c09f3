"""
Base node class for execution engine
"""
import asyncio
import functools
import inspect
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Type

from pydantic import BaseModel, ConfigDict

from ..types import NodeID, NodeData, PortID, PortType, AttemptRecord
from .retry import RetryPolicy


@dataclass(frozen=True)
class PortSpec:
    """Declared input or output slot of a node type"""
    id: PortID
    type: PortType = "any"
    name: str = ""


class NodeProperties(BaseModel):
    """
    Base schema for node properties

    Subclasses declare typed fields (snake_case, camelCase alias as stored in
    the workflow JSON) and validators. Unknown keys are kept so that editor-only
    settings survive a round trip.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class CancellationToken:
    """Thread-safe cancellation signal that can be fired from outside the event loop"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class ExecutionContext:
    """Context passed to nodes during execution"""
    services: Any = None  # Adapter handle (see nodeflow.core.services.ServicesProtocol)
    workflow_input: Any = None  # Top-level input of the execution
    has_input: bool = False  # False when the caller supplied no input at all
    deadline: Optional[float] = None  # time.monotonic() value, None for no deadline
    cancellation: Optional[CancellationToken] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    node_id: NodeID = ""
    attempts: List[AttemptRecord] = field(default_factory=list)  # Filled by external nodes
    executor: Optional[Executor] = None  # Runs blocking adapter methods; owned by the engine

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (None if unbounded)"""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def record_attempt(self, record: AttemptRecord) -> None:
        self.attempts.append(record)

    async def call_service(self, method_name: str, *args: Any, **kwargs: Any) -> Any:
        """
        Invoke an adapter method, awaiting coroutines and offloading blocking calls

        Blocking methods run on the execution's executor, so an interrupted
        execution can return without joining them.

        Args:
            method_name: Name of the ServicesProtocol method
            *args: Positional arguments for the method
            **kwargs: Keyword arguments for the method

        Returns:
            Whatever the adapter returns
        """
        if self.services is None:
            raise RuntimeError(f"No services handle configured (needed for {method_name})")
        method = getattr(self.services, method_name)
        if inspect.iscoroutinefunction(method):
            result = await method(*args, **kwargs)
        elif self.executor is not None:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(self.executor, functools.partial(method, *args, **kwargs))
        else:
            result = await asyncio.to_thread(method, *args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


class BaseNode(ABC):
    """
    Base class for all execution nodes

    Each node:
    - Has a unique ID and a type tag
    - Declares typed input and output ports
    - Validates and normalizes its properties at graph load time
    - Executes when all connected inputs have arrived

    Node instances are built once per execution and never hold run state:
    loop bodies execute the same instance once per iteration.
    """

    INPUTS: List[PortSpec] = []
    OUTPUTS: List[PortSpec] = []
    Properties: Type[NodeProperties] = NodeProperties

    # True for the node type whose received value is the execution's output
    is_output: bool = False

    def __init__(self, node_id: NodeID, node_data: NodeData):
        """
        Initialize node

        Args:
            node_id: Unique node identifier
            node_data: Node data from workflow JSON

        Raises:
            pydantic.ValidationError: If the properties do not satisfy the node type's schema
        """
        self.node_id = node_id
        self.node_data = node_data
        self.node_type = node_data.get('type', '')
        self.props = self.Properties.model_validate(node_data.get('properties') or {})
        self.properties: Dict[str, Any] = self.props.model_dump(by_alias=True)
        self.input_ports: Dict[PortID, PortSpec] = {p.id: p for p in self.declare_inputs(self.props)}
        self.output_ports: Dict[PortID, PortSpec] = {p.id: p for p in self.declare_outputs(self.props)}

    @classmethod
    def declare_inputs(cls, props: NodeProperties) -> List[PortSpec]:
        """Input ports for the given properties (fixed per type unless overridden)"""
        return list(cls.INPUTS)

    @classmethod
    def declare_outputs(cls, props: NodeProperties) -> List[PortSpec]:
        """Output ports for the given properties (fixed per type unless overridden)"""
        return list(cls.OUTPUTS)

    @abstractmethod
    async def execute(self, inputs: Dict[PortID, Any], context: ExecutionContext) -> Dict[PortID, Any]:
        """
        Execute the node

        Args:
            inputs: Values delivered to the connected input ports (already coerced)
            context: Execution context with services, deadline and cancellation

        Returns:
            Dictionary of output values (keys match output port ids)
        """
        pass

    def get_input_value(self, input_name: str, inputs: Dict[PortID, Any], default: Any = None) -> Any:
        """
        Get input value, falling back to the property of the same name

        Args:
            input_name: Name of the input port
            inputs: Values delivered through connections
            default: Default value if neither is set

        Returns:
            Resolved input value
        """
        if input_name in inputs:
            return inputs[input_name]
        value = self.properties.get(input_name)
        return default if value is None else value

    def result_value(self, inputs: Dict[PortID, Any]) -> Any:
        """Value contributed to the execution output (output nodes only)"""
        return None

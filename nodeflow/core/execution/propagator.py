"""
Value propagator
Routes a finished node's outputs along its outbound edges
"""
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple

from ..types import NodeID, PortID
from .errors import CoercionFailed
from .graph import Edge, Graph
from .node_run import NodeRun, NodeState
from .port_types import coerce


@dataclass
class Binding:
    """Value entering a nested loop body from an enclosing scope"""
    value: Any = None
    note: Optional[str] = None
    error: Optional[CoercionFailed] = None


@dataclass
class Propagation:
    """What one propagate() call changed"""
    delivered: List[Tuple[NodeID, PortID]] = field(default_factory=list)
    failed: List[Tuple[NodeID, CoercionFailed]] = field(default_factory=list)
    iteration_result: Any = None
    has_iteration_result: bool = False


class ValuePropagator:
    """
    Delivers values into the NodeRuns of one scope

    Edges leave the scope in two ways: back into the scope's own loop (the
    per-iteration result) or into the body of a nested loop, where the value
    is kept as a Binding until that loop starts its iterations.
    """

    def __init__(self, graph: Graph):
        self.graph = graph

    def convert(self, edge: Edge, value: Any) -> Binding:
        try:
            converted, note = coerce(value, edge.source_type, edge.target_type)
        except CoercionFailed as e:
            return Binding(error=CoercionFailed(f"{edge}: {e}"))
        return Binding(converted, note)

    def deliver(self, run: NodeRun, port: PortID, binding: Binding) -> None:
        """Write a converted value into an input slot"""
        run.input_values[port] = binding.value
        run.pending_inputs.discard(port)
        if binding.note:
            run.coercions.append(f"{port}: {binding.note}")

    def propagate(
        self,
        source: NodeRun,
        runs: Dict[NodeID, NodeRun],
        bindings: Dict[Tuple[NodeID, PortID], Binding],
        scope_loop: Optional[NodeID] = None
    ) -> Propagation:
        """
        Route the outputs of a Succeeded run

        Args:
            source: The run that just succeeded
            runs: NodeRuns of the current scope
            bindings: Bindings of the current scope (written for nested loop bodies)
            scope_loop: Loop whose iteration this scope is (None at top level)

        Returns:
            Propagation describing delivered ports, consumers that failed
            coercion, and the iteration result if this run fed the loop's body port
        """
        outcome = Propagation()
        for edge in self.graph.outbound[source.node_id]:
            if edge.source_port not in source.output_values:
                continue
            value = source.output_values[edge.source_port]

            if edge.target in runs:
                target = runs[edge.target]
                if target.state != NodeState.PENDING or edge.target_port in target.dropped_ports:
                    continue
                binding = self.convert(edge, value)
                if binding.error is not None:
                    outcome.failed.append((edge.target, binding.error))
                    continue
                self.deliver(target, edge.target_port, binding)
                outcome.delivered.append((edge.target, edge.target_port))

            elif edge.target == scope_loop and self.graph.is_back_edge(edge):
                outcome.iteration_result = value
                outcome.has_iteration_result = True

            else:
                loop_id = self.graph.enclosing_loop(edge.target, scope_loop)
                if loop_id is None or loop_id not in runs:
                    continue
                key = (edge.target, edge.target_port)
                bindings[key] = self.convert(edge, value)
                runs[loop_id].pending_inputs.discard(key)
                outcome.delivered.append((loop_id, edge.target_port))
        return outcome

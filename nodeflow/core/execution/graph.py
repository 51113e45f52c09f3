"""
Graph model and parser
Builds an immutable, validated Graph from the workflow JSON
"""
import json
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Set, Tuple, FrozenSet, Type, Union

from pydantic import ValidationError

from ..types import NodeID, PortID, WorkflowDefinition
from .errors import GraphInvalid, GraphCyclic
from .node_base import BaseNode
from .node_registry import NODE_REGISTRY, get_node_class
from .nodes.condition import ConditionNode
from .nodes.loop import LoopNode
from .port_types import is_compatible
from ...utils.logger import get_logger

logger = get_logger(__name__)

PortKey = Tuple[NodeID, PortID]


@dataclass(frozen=True)
class Edge:
    """Directed connection from an output port to an input port"""
    source: NodeID
    source_port: PortID
    target: NodeID
    target_port: PortID
    source_type: str = "any"
    target_type: str = "any"

    def __str__(self) -> str:
        return f"{self.source}.{self.source_port} -> {self.target}.{self.target_port}"


@dataclass(frozen=True)
class LoopInfo:
    """Static structure of one logic-loop node"""
    node_id: NodeID
    body: FrozenSet[NodeID]  # every node downstream of item/index
    scope: FrozenSet[NodeID]  # body nodes whose innermost loop is this one
    back_edges: Tuple[Edge, ...]  # edges into the loop's body input ports
    external_inputs: Tuple[PortKey, ...]  # body inputs fed from outside the body
    depth: int  # 1 for a top-level loop

    @property
    def has_body(self) -> bool:
        return bool(self.body) or bool(self.back_edges)


@dataclass
class Graph:
    """
    Validated workflow graph

    Holds node instances (static data only) and the derived structure the
    scheduler needs. Never mutated after parse_graph() returns.
    """
    id: str
    name: str
    nodes: Dict[NodeID, BaseNode]
    edges: List[Edge]
    inbound: Dict[NodeID, Dict[PortID, Edge]] = field(default_factory=dict)
    outbound: Dict[NodeID, List[Edge]] = field(default_factory=dict)
    rank: Dict[NodeID, int] = field(default_factory=dict)
    loops: Dict[NodeID, LoopInfo] = field(default_factory=dict)
    owner: Dict[NodeID, Optional[NodeID]] = field(default_factory=dict)
    top_scope: FrozenSet[NodeID] = frozenset()
    sources: List[NodeID] = field(default_factory=list)
    dead: FrozenSet[NodeID] = frozenset()
    output_nodes: List[NodeID] = field(default_factory=list)
    # (condition id, branch port) -> nodes whose every path leads into that port
    exclusive: Dict[PortKey, FrozenSet[NodeID]] = field(default_factory=dict)
    # node id -> branch ports it is exclusive to
    gates: Dict[NodeID, List[PortKey]] = field(default_factory=dict)

    def is_back_edge(self, edge: Edge) -> bool:
        node = self.nodes.get(edge.target)
        return isinstance(node, LoopNode) and edge.target_port in LoopNode.BODY_INPUTS

    def scope_of(self, loop_id: Optional[NodeID]) -> FrozenSet[NodeID]:
        """Nodes driven directly by the top level (None) or by one iteration of a loop"""
        if loop_id is None:
            return self.top_scope
        return self.loops[loop_id].scope

    def enclosing_loop(self, node_id: NodeID, scope_loop: Optional[NodeID]) -> Optional[NodeID]:
        """Loop of the given scope whose body contains node_id (None if node_id is not nested there)"""
        loop_id = self.owner.get(node_id)
        while loop_id is not None and self.owner.get(loop_id) != scope_loop:
            loop_id = self.owner.get(loop_id)
        return loop_id

    def order_key(self, node_id: NodeID) -> Tuple[int, str]:
        """Dispatch order: topological rank, then node id"""
        return (self.rank.get(node_id, 0), node_id)


def _decode(definition: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(definition, (bytes, bytearray)):
        definition = definition.decode("utf-8")
    if isinstance(definition, str):
        try:
            definition = json.loads(definition)
        except ValueError as e:
            raise GraphInvalid(f"Workflow definition is not valid JSON: {e}")
    if not isinstance(definition, dict):
        raise GraphInvalid("Workflow definition must be a JSON object")
    return definition


def _format_validation_error(node_id: str, node_type: str, error: ValidationError) -> List[str]:
    problems = []
    for err in error.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "properties"
        message = err.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        problems.append(f"Node '{node_id}' ({node_type}): {location}: {message}")
    return problems


def _build_nodes(raw_nodes: Any, registry: Dict[str, Type[BaseNode]], problems: List[str]) -> Dict[NodeID, BaseNode]:
    nodes: Dict[NodeID, BaseNode] = {}
    if not isinstance(raw_nodes, list) or not raw_nodes:
        problems.append("Workflow has no nodes")
        return nodes

    for index, node_data in enumerate(raw_nodes):
        if not isinstance(node_data, dict):
            problems.append(f"Node #{index} is not an object")
            continue
        node_id = node_data.get("id")
        node_type = node_data.get("type")
        if not isinstance(node_id, str) or not node_id:
            problems.append(f"Node #{index} has no id")
            continue
        if node_id in nodes:
            problems.append(f"Duplicate node id: {node_id}")
            continue
        if not node_type:
            problems.append(f"Node {node_id} has no type")
            continue
        node_class = get_node_class(node_type, registry)
        if node_class is None:
            problems.append(f"Unknown node type: {node_type} (node {node_id})")
            continue
        properties = node_data.get("properties")
        if properties is not None and not isinstance(properties, dict):
            problems.append(f"Node '{node_id}' ({node_type}): properties must be an object")
            continue
        try:
            nodes[node_id] = node_class(node_id, node_data)
        except ValidationError as e:
            problems.extend(_format_validation_error(node_id, node_type, e))
    return nodes


def _port_ref(raw: Any) -> Optional[Tuple[str, str]]:
    if not isinstance(raw, dict):
        return None
    node, port = raw.get("node"), raw.get("port")
    if not isinstance(node, str) or not isinstance(port, str):
        return None
    return node, port


def _build_edges(raw_edges: Any, nodes: Dict[NodeID, BaseNode], known_ids: Set[str], problems: List[str]) -> List[Edge]:
    edges: List[Edge] = []
    if raw_edges is None:
        return edges
    if not isinstance(raw_edges, list):
        problems.append("Workflow edges must be a list")
        return edges

    seen_targets: Dict[PortKey, Edge] = {}
    for index, raw in enumerate(raw_edges):
        src = _port_ref(raw.get("from")) if isinstance(raw, dict) else None
        dst = _port_ref(raw.get("to")) if isinstance(raw, dict) else None
        if src is None or dst is None:
            problems.append(f"Edge #{index} must have from/to with node and port")
            continue

        (source, source_port), (target, target_port) = src, dst
        label = f"{source}.{source_port} -> {target}.{target_port}"
        if source not in known_ids:
            problems.append(f"Edge {label} references missing node {source}")
            continue
        if target not in known_ids:
            problems.append(f"Edge {label} references missing node {target}")
            continue
        if source not in nodes or target not in nodes:
            # Node itself was rejected, already reported
            continue

        out_spec = nodes[source].output_ports.get(source_port)
        in_spec = nodes[target].input_ports.get(target_port)
        if out_spec is None:
            problems.append(f"Edge {label} references missing output port {source_port} on {source}")
            continue
        if in_spec is None:
            problems.append(f"Edge {label} references missing input port {target_port} on {target}")
            continue
        if (target, target_port) in seen_targets:
            problems.append(f"Input port {target}.{target_port} receives more than one edge")
            continue
        if not is_compatible(out_spec.type, in_spec.type):
            problems.append(f"Edge {label} connects incompatible types {out_spec.type} -> {in_spec.type}")
            continue

        edge = Edge(source, source_port, target, target_port, out_spec.type, in_spec.type)
        seen_targets[(target, target_port)] = edge
        edges.append(edge)
    return edges


def _topological_order(graph: Graph) -> List[NodeID]:
    """
    Kahn's algorithm over all edges except loop back-edges

    Raises:
        GraphCyclic: If some nodes can never reach in-degree zero
    """
    in_degree: Dict[NodeID, int] = {node_id: 0 for node_id in graph.nodes}
    successors: Dict[NodeID, List[NodeID]] = {node_id: [] for node_id in graph.nodes}
    for edge in graph.edges:
        if graph.is_back_edge(edge):
            continue
        in_degree[edge.target] += 1
        successors[edge.source].append(edge.target)

    queue = deque(sorted(node_id for node_id, degree in in_degree.items() if degree == 0))
    order: List[NodeID] = []
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for target in successors[node_id]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                queue.append(target)

    if len(order) != len(graph.nodes):
        placed = set(order)
        cycle_nodes = sorted(node_id for node_id in graph.nodes if node_id not in placed)
        raise GraphCyclic(
            f"Cycle detected in workflow graph: {len(order)}/{len(graph.nodes)} nodes in execution order. "
            f"Nodes involved in cycle: {cycle_nodes}",
            cycle_nodes
        )
    return order


def _compute_ranks(graph: Graph, order: List[NodeID]) -> None:
    rank = {node_id: 0 for node_id in graph.nodes}
    for node_id in order:
        for edge in graph.outbound[node_id]:
            if graph.is_back_edge(edge):
                continue
            rank[edge.target] = max(rank[edge.target], rank[node_id] + 1)
    graph.rank = rank


def _downstream(graph: Graph, start: NodeID) -> Set[NodeID]:
    """Nodes reachable from start without following back-edges"""
    seen: Set[NodeID] = set()
    queue = deque(edge.target for edge in graph.outbound[start] if not graph.is_back_edge(edge))
    while queue:
        node_id = queue.popleft()
        if node_id in seen:
            continue
        seen.add(node_id)
        queue.extend(edge.target for edge in graph.outbound[node_id] if not graph.is_back_edge(edge))
    return seen


def _analyze_loops(graph: Graph, problems: List[str]) -> None:
    bodies: Dict[NodeID, Set[NodeID]] = {}
    for loop_id, node in graph.nodes.items():
        if not isinstance(node, LoopNode):
            continue
        body: Set[NodeID] = set()
        queue = deque(
            edge.target for edge in graph.outbound[loop_id]
            if edge.source_port in LoopNode.ITERATION_OUTPUTS
        )
        while queue:
            node_id = queue.popleft()
            if node_id == loop_id or node_id in body:
                continue
            body.add(node_id)
            for edge in graph.outbound[node_id]:
                if not graph.is_back_edge(edge):
                    queue.append(edge.target)
        bodies[loop_id] = body

    for loop_id, body in bodies.items():
        for edge in graph.inbound[loop_id].values():
            if graph.is_back_edge(edge) and edge.source not in body:
                problems.append(f"Loop {loop_id}: body port {edge.target_port} must be fed from the loop body (got {edge.source})")
        for edge in graph.outbound[loop_id]:
            if edge.source_port not in LoopNode.ITERATION_OUTPUTS and edge.target in body:
                problems.append(f"Loop {loop_id}: body node {edge.target} cannot consume {edge.source_port}")
        after = _downstream(graph, loop_id) - body
        for edge in graph.edges:
            if edge.target in body and edge.source in after:
                problems.append(
                    f"Loop {loop_id}: body node {edge.target} reads {edge.source}, "
                    f"which only runs after the loop finishes"
                )

    containing: Dict[NodeID, List[NodeID]] = {}
    for loop_id, body in bodies.items():
        for node_id in body:
            containing.setdefault(node_id, []).append(loop_id)

    owner: Dict[NodeID, Optional[NodeID]] = {node_id: None for node_id in graph.nodes}
    for node_id, loops in containing.items():
        innermost = None
        for candidate in loops:
            if all(other == candidate or candidate in bodies[other] for other in loops):
                innermost = candidate
        if innermost is None:
            problems.append(f"Node {node_id} belongs to the bodies of loops {sorted(loops)} that are not nested")
            continue
        owner[node_id] = innermost

    if problems:
        return

    graph.owner = owner
    for loop_id, body in bodies.items():
        scope = frozenset(node_id for node_id in body if owner[node_id] == loop_id)
        back_edges = tuple(edge for edge in graph.inbound[loop_id].values() if graph.is_back_edge(edge))
        external = tuple(sorted(
            (edge.target, edge.target_port)
            for edge in graph.edges
            if edge.target in body and edge.source not in body and edge.source != loop_id
        ))
        depth, parent = 1, owner[loop_id]
        while parent is not None:
            depth, parent = depth + 1, owner[parent]
        graph.loops[loop_id] = LoopInfo(loop_id, frozenset(body), scope, back_edges, external, depth)
    graph.top_scope = frozenset(node_id for node_id in graph.nodes if owner[node_id] is None)


def _compute_reachability(graph: Graph) -> None:
    # A loop fed only through its body ports still starts from its collection property
    graph.sources = sorted(
        node_id for node_id in graph.nodes
        if all(graph.is_back_edge(edge) for edge in graph.inbound[node_id].values())
    )
    reached: Set[NodeID] = set()
    queue = deque(graph.sources)
    while queue:
        node_id = queue.popleft()
        if node_id in reached:
            continue
        reached.add(node_id)
        queue.extend(edge.target for edge in graph.outbound[node_id])
    dead = frozenset(node_id for node_id in graph.nodes if node_id not in reached)
    for node_id in sorted(dead):
        logger.warning(f"Node {node_id} is not reachable from any source and will be skipped")
    graph.dead = dead


def _designate_outputs(graph: Graph) -> None:
    outputs = [node_id for node_id, node in graph.nodes.items() if node.is_output]
    if not outputs:
        outputs = [node_id for node_id in graph.nodes if not graph.outbound[node_id]]
    graph.output_nodes = sorted(outputs, key=graph.order_key)


def _compute_branch_exclusive(graph: Graph) -> None:
    """
    For every condition branch port, find the upstream nodes (same scope)
    whose every outbound edge leads into that port or into another such node
    """
    for cond_id, node in graph.nodes.items():
        if not isinstance(node, ConditionNode):
            continue
        scope = graph.scope_of(graph.owner.get(cond_id))
        for port in ConditionNode.BRANCH_PORTS:
            edge = graph.inbound[cond_id].get(port)
            if edge is None or edge.source not in scope:
                continue

            ancestors: Set[NodeID] = set()
            queue = deque([edge.source])
            while queue:
                node_id = queue.popleft()
                if node_id in ancestors or node_id not in scope:
                    continue
                ancestors.add(node_id)
                queue.extend(e.source for e in graph.inbound[node_id].values())

            exclusive: Set[NodeID] = set()
            changed = True
            while changed:
                changed = False
                for node_id in sorted(ancestors - exclusive, key=graph.order_key, reverse=True):
                    outs = graph.outbound[node_id]
                    if outs and all(
                        (e.target == cond_id and e.target_port == port) or e.target in exclusive
                        for e in outs
                    ):
                        exclusive.add(node_id)
                        changed = True

            if edge.source in exclusive:
                graph.exclusive[(cond_id, port)] = frozenset(exclusive)
                for node_id in exclusive:
                    graph.gates.setdefault(node_id, []).append((cond_id, port))


def parse_graph(
    definition: Union[str, bytes, WorkflowDefinition, Dict[str, Any]],
    registry: Optional[Dict[str, Type[BaseNode]]] = None
) -> Graph:
    """
    Parse and validate a workflow definition

    Args:
        definition: Workflow JSON (text or decoded) with "nodes" and "edges"
        registry: Node type registry (default: NODE_REGISTRY)

    Returns:
        Validated Graph

    Raises:
        GraphInvalid: Unknown types, duplicate ids, bad edges or ports,
                      incompatible port types, invalid properties, bad loop wiring
        GraphCyclic: If the graph minus loop back-edges has a cycle
    """
    registry = NODE_REGISTRY if registry is None else registry
    data = _decode(definition)

    problems: List[str] = []
    raw_nodes = data.get("nodes")
    nodes = _build_nodes(raw_nodes, registry, problems)
    known_ids = {n.get("id") for n in raw_nodes or [] if isinstance(n, dict)} if isinstance(raw_nodes, list) else set()
    edges = _build_edges(data.get("edges", []), nodes, known_ids, problems)
    if problems:
        raise GraphInvalid(problems)

    graph = Graph(
        id=str(data.get("id", "unknown")),
        name=str(data.get("name", "")),
        nodes=nodes,
        edges=edges,
        inbound={node_id: {} for node_id in nodes},
        outbound={node_id: [] for node_id in nodes},
    )
    for edge in edges:
        graph.inbound[edge.target][edge.target_port] = edge
        graph.outbound[edge.source].append(edge)

    order = _topological_order(graph)
    _compute_ranks(graph, order)

    _analyze_loops(graph, problems)
    if problems:
        raise GraphInvalid(problems)

    _compute_reachability(graph)
    _designate_outputs(graph)
    _compute_branch_exclusive(graph)

    logger.debug(f"Parsed workflow {graph.id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges, {len(graph.loops)} loops")
    return graph

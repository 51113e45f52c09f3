"""
Adapter registry
Maps the "type" tag of a workflow node to its executor class
"""
from typing import Dict, Type, Optional

from .node_base import BaseNode
from .port_types import is_port_type

NODE_REGISTRY: Dict[str, Type[BaseNode]] = {}


def register_node(node_type: str, node_class: Type[BaseNode], replace: bool = False) -> None:
    """
    Register an executor for a node type

    Args:
        node_type: Type tag as stored in the workflow JSON (e.g., "ai-text")
        node_class: BaseNode subclass implementing the type
        replace: Allow overriding an existing registration

    Raises:
        TypeError: If node_class is not a BaseNode subclass
        ValueError: If the tag is already taken and replace is False, or a
                    declared port has an unknown type
    """
    if not (isinstance(node_class, type) and issubclass(node_class, BaseNode)):
        raise TypeError(f"{node_class!r} is not a BaseNode subclass")
    for port in list(node_class.INPUTS) + list(node_class.OUTPUTS):
        if not is_port_type(port.type):
            raise ValueError(f"{node_class.__name__} declares port {port.id} with unknown type '{port.type}'")
    current = NODE_REGISTRY.get(node_type)
    if current is not None and current is not node_class and not replace:
        raise ValueError(f"Node type '{node_type}' is already registered to {current.__name__}")
    NODE_REGISTRY[node_type] = node_class


def get_node_class(node_type: str, registry: Optional[Dict[str, Type[BaseNode]]] = None) -> Optional[Type[BaseNode]]:
    """Executor class for a type tag, or None (looks in NODE_REGISTRY unless a registry is given)"""
    return (NODE_REGISTRY if registry is None else registry).get(node_type)


def _builtin_nodes() -> Dict[str, Type[BaseNode]]:
    from .nodes import ai, automation, condition, data, loop, merge

    return {
        "ai-text": ai.AiTextNode,
        "ai-image": ai.AiImageNode,
        "ai-speech": ai.AiSpeechNode,
        "ai-translate": ai.AiTranslateNode,
        "ai-sentiment": ai.AiSentimentNode,
        "automation-email": automation.EmailNode,
        "automation-slack": automation.SlackNode,
        "automation-zapier": automation.ZapierNode,
        "automation-powerautomate": automation.PowerAutomateNode,
        "logic-condition": condition.ConditionNode,
        "logic-loop": loop.LoopNode,
        "logic-merge": merge.MergeNode,
        "data-input": data.DataInputNode,
        "data-output": data.DataOutputNode,
        "data-transform": data.DataTransformNode,
    }


for _node_type, _node_class in _builtin_nodes().items():
    register_node(_node_type, _node_class)

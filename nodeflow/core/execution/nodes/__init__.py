"""
Node implementations for execution engine
"""
from .ai import AiTextNode, AiImageNode, AiSpeechNode, AiTranslateNode, AiSentimentNode
from .automation import EmailNode, SlackNode, ZapierNode, PowerAutomateNode
from .condition import ConditionNode
from .loop import LoopNode
from .merge import MergeNode
from .data import DataInputNode, DataOutputNode, DataTransformNode

__all__ = [
    'AiTextNode',
    'AiImageNode',
    'AiSpeechNode',
    'AiTranslateNode',
    'AiSentimentNode',
    'EmailNode',
    'SlackNode',
    'ZapierNode',
    'PowerAutomateNode',
    'ConditionNode',
    'LoopNode',
    'MergeNode',
    'DataInputNode',
    'DataOutputNode',
    'DataTransformNode',
]

"""
AI Nodes
Text generation, image analysis, speech to text, translation and sentiment,
all delegated to the injected AI adapter
"""
from typing import Dict, Any, List

from pydantic import Field, field_validator

from ..node_base import ExecutionContext, NodeProperties, PortSpec
from .external import ExternalServiceNode, as_bytes


class AiTextProperties(NodeProperties):
    model: str = "gpt-3.5-turbo"
    max_tokens: int = Field(150, alias="maxTokens")
    temperature: float = 0.7

    @field_validator("model")
    @classmethod
    def _model_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Model is required")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _max_tokens_range(cls, v: int) -> int:
        if v < 1 or v > 4096:
            raise ValueError("Max tokens must be between 1 and 4096")
        return v

    @field_validator("temperature")
    @classmethod
    def _temperature_range(cls, v: float) -> float:
        if v < 0 or v > 2:
            raise ValueError("Temperature must be between 0 and 2")
        return v


class AiTextNode(ExternalServiceNode):
    """
    Generates text from a prompt

    Inputs:
        prompt: Prompt text (falls back to the "prompt" property)

    Outputs:
        text: Generated text

    Properties:
        model, maxTokens (1-4096), temperature (0-2)
    """

    INPUTS = [PortSpec("prompt", "string", "Prompt")]
    OUTPUTS = [PortSpec("text", "string", "Generated Text")]
    Properties = AiTextProperties

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        prompt = self.get_input_value('prompt', inputs, '')
        text = await self.call_with_retry(
            context, 'process_text',
            str(prompt), self.props.model, self.props.max_tokens, self.props.temperature
        )
        return {'text': text}


class AiImageProperties(NodeProperties):
    provider: str = "azure"
    features: List[str] = Field(default_factory=lambda: ["description", "tags", "objects"])

    @field_validator("provider")
    @classmethod
    def _provider_required(cls, v: str) -> str:
        if not v:
            raise ValueError("Provider is required")
        return v

    @field_validator("features")
    @classmethod
    def _features_required(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("At least one analysis feature must be selected")
        return v


class AiImageNode(ExternalServiceNode):
    """Analyzes an image (computer vision)"""

    INPUTS = [PortSpec("image", "file", "Image")]
    OUTPUTS = [PortSpec("analysis", "object", "Analysis Result")]
    Properties = AiImageProperties

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        data = as_bytes(self.get_input_value('image', inputs))
        analysis = await self.call_with_retry(
            context, 'analyze_image', data, self.props.provider, list(self.props.features)
        )
        return {'analysis': analysis}


class AiSpeechProperties(NodeProperties):
    language: str = "en-US"
    provider: str = "azure"


class AiSpeechNode(ExternalServiceNode):
    """Transcribes an audio file"""

    INPUTS = [PortSpec("audio", "file", "Audio File")]
    OUTPUTS = [PortSpec("text", "string", "Transcribed Text")]
    Properties = AiSpeechProperties

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        data = as_bytes(self.get_input_value('audio', inputs))
        text = await self.call_with_retry(
            context, 'transcribe', data, self.props.language, self.props.provider
        )
        return {'text': text}


class AiTranslateProperties(NodeProperties):
    target_language: str = Field("es", alias="targetLanguage")
    provider: str = "google"

    @field_validator("target_language")
    @classmethod
    def _target_required(cls, v: str) -> str:
        if not v:
            raise ValueError("Target language is required")
        return v


class AiTranslateNode(ExternalServiceNode):
    """Translates text into the target language"""

    INPUTS = [PortSpec("text", "string", "Input Text")]
    OUTPUTS = [PortSpec("translated", "string", "Translated Text")]
    Properties = AiTranslateProperties

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        text = self.get_input_value('text', inputs, '')
        translated = await self.call_with_retry(
            context, 'translate', str(text), self.props.target_language, self.props.provider
        )
        return {'translated': translated}


class AiSentimentProperties(NodeProperties):
    provider: str = "azure"
    include_opinions: bool = Field(True, alias="includeOpinions")


class AiSentimentNode(ExternalServiceNode):
    """Scores the sentiment of a text"""

    INPUTS = [PortSpec("text", "string", "Input Text")]
    OUTPUTS = [PortSpec("sentiment", "object", "Sentiment Score")]
    Properties = AiSentimentProperties

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        text = self.get_input_value('text', inputs, '')
        sentiment = await self.call_with_retry(context, 'sentiment', str(text), self.props.provider)
        return {'sentiment': sentiment}

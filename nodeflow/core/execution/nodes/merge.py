"""
Merge Node
Combines several data streams into one value
"""
from typing import Dict, Any, List, Literal

from pydantic import Field, field_validator

from ..node_base import BaseNode, ExecutionContext, NodeProperties, PortSpec


class MergeProperties(NodeProperties):
    merge_strategy: Literal["concat", "overlay", "zip"] = Field("concat", alias="mergeStrategy")
    input_count: int = Field(2, alias="inputCount")

    @field_validator("input_count")
    @classmethod
    def _input_count_range(cls, v: int) -> int:
        if v < 2 or v > 16:
            raise ValueError("inputCount must be between 2 and 16")
        return v


class MergeNode(BaseNode):
    """
    Merge inputs input1..inputN (N = inputCount) in port order

    Strategies:
        concat: flatten array inputs, append other values
        overlay: shallow-merge objects, later inputs win
        zip: pair array inputs element-wise (shortest wins)
    """

    OUTPUTS = [PortSpec("merged", "any", "Merged Result")]
    Properties = MergeProperties

    @classmethod
    def declare_inputs(cls, props: MergeProperties) -> List[PortSpec]:
        return [PortSpec(f"input{i}", "any", f"Input {i}") for i in range(1, props.input_count + 1)]

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        values = [inputs[port] for port in self.input_ports if port in inputs]
        strategy = self.props.merge_strategy

        if strategy == "overlay":
            merged: Dict[str, Any] = {}
            for value in values:
                if value is None:
                    continue
                if not isinstance(value, dict):
                    raise ValueError(f"overlay merge expects objects, got {type(value).__name__}")
                merged.update(value)
            return {'merged': merged}

        if strategy == "zip":
            columns = [v if isinstance(v, list) else [v] for v in values]
            return {'merged': [list(row) for row in zip(*columns)]}

        combined: List[Any] = []
        for value in values:
            if isinstance(value, list):
                combined.extend(value)
            elif value is not None:
                combined.append(value)
        return {'merged': combined}

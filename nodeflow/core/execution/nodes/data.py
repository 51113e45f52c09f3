"""
Data & I/O Nodes
Manual input, output display and data transformation
"""
from typing import Dict, Any, Optional, Literal

from pydantic import Field, field_validator, model_validator

from ..node_base import BaseNode, ExecutionContext, NodeProperties, PortSpec
from ..port_types import coerce
from ....utils.json_path import compile_path, extract, render_template


class DataInputProperties(NodeProperties):
    input_type: str = Field("text", alias="inputType")
    default_value: Any = Field("", alias="defaultValue")
    path: str = "$"

    @field_validator("path")
    @classmethod
    def _valid_path(cls, v: str) -> str:
        if v and v.strip() != "$":
            compile_path(v.strip())
        return v


class DataInputNode(BaseNode):
    """
    Entry point for workflow input

    Outputs:
        value: The execution's top-level input narrowed by the "path" JSONPath,
               or defaultValue when the execution received no input
    """

    INPUTS = []
    OUTPUTS = [PortSpec("value", "any", "Input Value")]
    Properties = DataInputProperties

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        if not context.has_input:
            return {'value': self.props.default_value}
        return {'value': extract(context.workflow_input, self.props.path)}


class DataOutputProperties(NodeProperties):
    format: str = "json"
    show_timestamp: bool = Field(True, alias="showTimestamp")


class DataOutputNode(BaseNode):
    """
    Final output node

    Inputs:
        data: Value that becomes the execution's output
    """

    INPUTS = [PortSpec("data", "any", "Data to Display")]
    OUTPUTS = []
    Properties = DataOutputProperties
    is_output = True

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        return {}

    def result_value(self, inputs: Dict[str, Any]) -> Any:
        return self.get_input_value('data', inputs)


class DataTransformProperties(NodeProperties):
    transformation: Literal["identity", "jsonPath", "template", "math"] = "identity"
    json_path: str = Field("$", alias="jsonPath")
    template: Optional[str] = None
    operation: Optional[Literal["add", "subtract", "multiply", "divide"]] = None
    operand: Optional[float] = None

    @model_validator(mode="after")
    def _check_transformation(self):
        if self.transformation == "jsonPath":
            compile_path(self.json_path or "$")
        elif self.transformation == "template" and self.template is None:
            raise ValueError("template transformation requires a template")
        elif self.transformation == "math" and (self.operation is None or self.operand is None):
            raise ValueError("math transformation requires operation and operand")
        return self


def _apply_math(value: Any, operation: str, operand: float) -> Any:
    if isinstance(value, list):
        return [_apply_math(v, operation, operand) for v in value]
    if isinstance(value, bool) or value is None:
        raise ValueError(f"math transformation expects numbers, got {value!r}")
    number, _ = coerce(value, "any", "number")
    if not isinstance(number, (int, float)):
        raise ValueError(f"math transformation expects numbers, got {value!r}")
    if operation == "add":
        result = number + operand
    elif operation == "subtract":
        result = number - operand
    elif operation == "multiply":
        result = number * operand
    else:
        result = number / operand
    if isinstance(result, float) and result.is_integer() and isinstance(number, int) and operation != "divide":
        return int(result)
    return result


class DataTransformNode(BaseNode):
    """
    Transform data

    Inputs:
        input: Value to transform

    Outputs:
        output: Transformed value

    Properties:
        transformation: identity | jsonPath | template | math
        jsonPath: Expression for jsonPath (one match -> value, several -> list, none -> null)
        template: Text with {{path}} tokens for template
        operation, operand: Arithmetic for math (element-wise over arrays)
    """

    INPUTS = [PortSpec("input", "any", "Input Data")]
    OUTPUTS = [PortSpec("output", "any", "Transformed Data")]
    Properties = DataTransformProperties

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        value = self.get_input_value('input', inputs)
        transformation = self.props.transformation

        if transformation == "jsonPath":
            return {'output': extract(value, self.props.json_path)}
        if transformation == "template":
            return {'output': render_template(self.props.template, value)}
        if transformation == "math":
            return {'output': _apply_math(value, self.props.operation, self.props.operand)}
        return {'output': value}

"""
Condition Node
Selects one of two values based on a boolean condition
"""
from typing import Dict, Any, Optional, Literal

from pydantic import Field

from ..node_base import BaseNode, ExecutionContext, NodeProperties, PortSpec

_FALSY_STRINGS = {"", "false", "0", "no", "off", "null", "none"}


def truthy(value: Any) -> bool:
    """Boolean reading of a condition value ("false"/"0"/"no" strings are false)"""
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)


class ConditionProperties(NodeProperties):
    error_as_false: bool = Field(False, alias="errorAsFalse")
    operator: Optional[Literal["truthy", "equals", "notEquals", "greaterThan", "lessThan", "contains"]] = None
    compare_value: Any = Field(None, alias="compareValue")


class ConditionNode(BaseNode):
    """
    Conditional branching

    Inputs:
        condition: Value deciding the branch (falls back to the "condition" property)
        trueValue: Emitted when the condition holds
        falseValue: Emitted otherwise

    Outputs:
        result: The selected value

    Properties:
        operator: Optional comparison applied to the condition value against
                  compareValue (truthy, equals, notEquals, greaterThan, lessThan, contains)
        errorAsFalse: Read a failed condition upstream as false instead of failing

    The scheduler reads decide() as soon as the condition is known to prune the
    branch that will not be selected.
    """

    INPUTS = [
        PortSpec("condition", "boolean", "Condition"),
        PortSpec("trueValue", "any", "True Value"),
        PortSpec("falseValue", "any", "False Value"),
    ]
    OUTPUTS = [PortSpec("result", "any", "Result")]
    Properties = ConditionProperties

    BRANCH_PORTS = ("trueValue", "falseValue")

    def evaluate(self, value: Any) -> bool:
        """Apply the configured operator to a condition value"""
        operator = self.props.operator or "truthy"
        compare = self.props.compare_value

        if operator == "truthy":
            return truthy(value)
        if operator == "equals":
            return value == compare
        if operator == "notEquals":
            return value != compare
        if operator == "contains":
            try:
                return compare in value
            except TypeError:
                return False
        try:
            left, right = float(value), float(compare)
        except (TypeError, ValueError):
            return False
        if operator == "greaterThan":
            return left > right
        return left < right

    def decide(self, inputs: Dict[str, Any]) -> bool:
        return self.evaluate(self.get_input_value('condition', inputs, False))

    @staticmethod
    def selected_port(decision: bool) -> str:
        return "trueValue" if decision else "falseValue"

    def select(self, decision: bool, inputs: Dict[str, Any]) -> Dict[str, Any]:
        return {'result': self.get_input_value(self.selected_port(decision), inputs)}

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        return self.select(self.decide(inputs), inputs)

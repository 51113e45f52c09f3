"""
Loop Node
Iterates a body subgraph over the elements of a collection
"""
from typing import Dict, Any, List

from pydantic import Field, field_validator

from ...config import Config
from ..errors import LoopBounded
from ..node_base import BaseNode, ExecutionContext, NodeProperties, PortSpec


class LoopProperties(NodeProperties):
    max_iterations: int = Field(default_factory=lambda: Config.DEFAULT_MAX_ITERATIONS, alias="maxIterations")
    parallel: bool = False

    @field_validator("max_iterations")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("maxIterations must be at least 1")
        return v


class LoopNode(BaseNode):
    """
    Loop over a collection

    Inputs:
        collection: Array to iterate
        result: Body port; the value fed back here is collected once per iteration

    Outputs:
        item: Current element (feeds the body)
        index: Current index (feeds the body)
        results: Collected per-iteration values, emitted after the last iteration

    Properties:
        maxIterations: Upper bound on iterations (default 100); larger collections fail
        parallel: Allow iterations to run concurrently

    The body (everything downstream of item/index) is driven by the scheduler;
    execute() only runs for loops without a body.
    """

    INPUTS = [
        PortSpec("collection", "array", "Collection"),
        PortSpec("result", "any", "Iteration Result"),
    ]
    OUTPUTS = [
        PortSpec("item", "any", "Current Item"),
        PortSpec("index", "number", "Index"),
        PortSpec("results", "array", "Collected Results"),
    ]
    Properties = LoopProperties

    BODY_INPUTS = ("result",)
    ITERATION_OUTPUTS = ("item", "index")

    def collection(self, inputs: Dict[str, Any]) -> List[Any]:
        value = self.get_input_value('collection', inputs, [])
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        return [value]

    def planned_iterations(self, inputs: Dict[str, Any]) -> int:
        return min(len(self.collection(inputs)), self.props.max_iterations)

    def finish(self, collected: List[Any], total: int) -> Dict[str, Any]:
        """
        Build the loop outputs once iterations are done

        Raises:
            LoopBounded: If the collection had more elements than maxIterations
        """
        if total > self.props.max_iterations:
            raise LoopBounded(
                f"collection has {total} elements, maxIterations is {self.props.max_iterations}"
            )
        return {'results': collected}

    async def execute(self, inputs: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        items = self.collection(inputs)
        return self.finish(items[:self.props.max_iterations], len(items))

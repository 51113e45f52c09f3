"""
API routes for nodeflow
"""
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from fastapi import APIRouter, HTTPException, Depends, Request
from pydantic import BaseModel, Field

from ..core.execution import ExecutionEngine, ExecutionOptions, GraphInvalid, GraphCyclic
from ..utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


# Request models
class ExecuteRequest(BaseModel):
    """Request model for a workflow execution"""
    workflow: Dict[str, Any] = Field(..., description="Workflow graph definition (nodes and edges)")
    input: Optional[Any] = Field(
        default=None,
        description="Top-level input (JSON value, or text that is parsed as JSON when possible)"
    )
    options: Optional[ExecutionOptions] = Field(
        default=None,
        description="concurrency, deadlineMs and verbose"
    )


class ValidateRequest(BaseModel):
    """Request model for static validation"""
    workflow: Dict[str, Any] = Field(..., description="Workflow graph definition (nodes and edges)")


def get_engine(request: Request) -> ExecutionEngine:
    """Get ExecutionEngine from app state (injected by FastAPI)"""
    return request.app.state.engine


def get_services(request: Request) -> Any:
    """Get the service adapters from app state"""
    return request.app.state.services


@router.post("/workflows/{workflow_id}/execute")
async def execute_workflow(
    workflow_id: str,
    request: ExecuteRequest,
    engine: ExecutionEngine = Depends(get_engine),
    services: Any = Depends(get_services)
):
    """Execute a workflow and return its execution record"""
    started_at = datetime.now(timezone.utc)
    try:
        result = await engine.execute_async(
            request.workflow,
            input=request.input,
            options=request.options,
            services=services
        )
    except Exception as e:
        logger.error(f"Execution of workflow {workflow_id} crashed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return result.to_record(workflow_id, started_at)


@router.post("/validate")
async def validate_workflow(request: ValidateRequest, engine: ExecutionEngine = Depends(get_engine)):
    """Validate a workflow without running it"""
    try:
        graph = engine.validate(request.workflow)
    except (GraphInvalid, GraphCyclic) as e:
        problems = e.problems if isinstance(e, GraphInvalid) else [str(e)]
        raise HTTPException(
            status_code=422,
            detail={"valid": False, "errorKind": e.kind, "problems": problems}
        )
    return {
        "valid": True,
        "nodes": len(graph.nodes),
        "edges": len(graph.edges),
        "outputs": graph.output_nodes,
        "loops": sorted(graph.loops),
        "unreachable": sorted(graph.dead),
    }

"""
Flows API routes
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from ...core.exceptions import FlowDefinitionError
from ...flow.validator import FlowValidator
from ..dependencies import Engine, get_engine

router = APIRouter(prefix="/flows", tags=["flows"])


def _summary(flow) -> Dict[str, Any]:
    return {
        "slug": flow.slug,
        "name": flow.name,
        "description": flow.description,
        "version": flow.version,
        "initialStage": flow.config.initial_stage,
        "stages": list(flow.stages.keys()),
    }


@router.post("/validate")
async def validate_flow(flow: Dict[str, Any], engine: Engine = Depends(get_engine)):
    """Validate a flow document without registering it"""
    is_valid, issues = FlowValidator.validate(flow, engine.flows.tool_names)
    return {
        "valid": is_valid,
        "errors": [i.to_dict() for i in issues if i.is_error],
        "warnings": [i.to_dict() for i in issues if not i.is_error],
    }


@router.get("")
async def list_flows(engine: Engine = Depends(get_engine)):
    """List registered flows - returns array directly"""
    return [_summary(flow) for flow in engine.flows.list()]


@router.post("", status_code=201)
async def register_flow(flow: Dict[str, Any], engine: Engine = Depends(get_engine)):
    """Validate and register a flow document"""
    try:
        registered = engine.flows.register(flow)
    except FlowDefinitionError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})
    return _summary(registered)


@router.get("/{slug}")
async def get_flow(slug: str, engine: Engine = Depends(get_engine)):
    """Get a flow definition"""
    flow = engine.flows.get(slug)
    if not flow:
        raise HTTPException(status_code=404, detail="Flow not found")
    return flow.model_dump(by_alias=True, exclude_none=True)

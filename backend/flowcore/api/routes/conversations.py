"""
Conversations API routes
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ...flow.context import public_user_data
from ...flow.transitions import StageTransitionEngine
from ..dependencies import Engine, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


class ConversationCreate(BaseModel):
    model_config = {"populate_by_name": True}

    user_id: str = Field(alias="userId")
    flow_slug: Optional[str] = Field(default=None, alias="flowSlug")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


class MessageCreate(BaseModel):
    message: str = Field(min_length=1)


@router.post("", status_code=201)
async def create_conversation(body: ConversationCreate, engine: Engine = Depends(get_engine)):
    """Start a conversation on a flow (the default flow when none is given)"""
    if body.flow_slug:
        flow = engine.flows.get(body.flow_slug)
    else:
        flow = engine.flows.default_flow()
    if not flow:
        raise HTTPException(status_code=404, detail="Flow not found")

    session = engine.sessions.create(
        user_id=body.user_id,
        flow_slug=flow.slug,
        initial_stage=StageTransitionEngine.initial_stage(flow),
        conversation_id=body.conversation_id,
    )
    return session.to_dict()


@router.post("/{conversation_id}/messages")
async def send_message(conversation_id: str, body: MessageCreate, engine: Engine = Depends(get_engine)):
    """Run one turn of the conversation"""
    session = engine.sessions.get(conversation_id)
    if not session:
        raise HTTPException(status_code=404, detail="Conversation not found")

    try:
        result = await engine.executor.process_message(session, body.message)
    except Exception as e:
        logger.exception(f"Turn failed for conversation {conversation_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to process message")

    engine.sessions.save(session)
    return result.to_dict()


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, engine: Engine = Depends(get_engine)):
    """Get a conversation with the user data collected on its flow"""
    session = engine.sessions.get(conversation_id)
    if not session:
        raise HTTPException(status_code=404, detail="Conversation not found")

    user_data = await engine.user_data_store.get_user_data(session.user_id, session.flow_slug)
    return {
        "session": session.to_dict(),
        "userData": public_user_data(user_data),
    }

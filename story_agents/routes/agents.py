"""Agent endpoints: spawn, converse, read history, evict."""

from fastapi import APIRouter, Depends, HTTPException

from story_agents.errors import AgentError
from story_agents.pipeline import TurnPipeline
from story_agents.registry import HISTORY_DEFAULT_LIMIT, AgentStore

from .common import get_pipeline, get_store, http_error
from .models import MessageBody, SpawnBody

router = APIRouter()


@router.post("/agents", status_code=201)
async def spawn_agent(body: SpawnBody, store: AgentStore = Depends(get_store)):
    """Spawn an agent for a story character."""
    try:
        agent = await store.spawn(body.story_id, body.character_id)
    except AgentError as e:
        raise http_error(e) from e
    return {
        "agent_id": agent.id,
        "story_id": agent.story_id,
        "character_id": agent.character_id,
        "character_name": agent.character_name,
    }


@router.post("/agents/{agent_id}/messages")
async def send_message(
    agent_id: str,
    body: MessageBody,
    pipeline: TurnPipeline = Depends(get_pipeline),
):
    """Run one player message through the agent and return its reply."""
    try:
        return await pipeline.send_message(
            agent_id,
            body.message,
            presented_evidence_ids=body.presented_evidence_ids,
            location_id=body.location_id,
        )
    except AgentError as e:
        raise http_error(e) from e


@router.get("/agents/{agent_id}/history")
async def conversation_history(
    agent_id: str,
    limit: int = HISTORY_DEFAULT_LIMIT,
    offset: int = 0,
    store: AgentStore = Depends(get_store),
):
    """Paginated player-visible conversation."""
    try:
        return await store.history(agent_id, limit=limit, offset=offset)
    except AgentError as e:
        raise http_error(e) from e


@router.delete("/agents/{agent_id}")
async def evict_agent(agent_id: str, store: AgentStore = Depends(get_store)):
    """Drop an agent from memory. Its conversation stays on disk."""
    if not store.evict(agent_id):
        raise HTTPException(404, "Agent not loaded")
    return {"ok": True}

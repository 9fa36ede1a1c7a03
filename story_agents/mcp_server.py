"""FastMCP server exposing agent conversations as MCP tools.

Tools:
  - spawn_agent(story_id, character_id)       — create an agent, return its ID
  - send_message(agent_id, message, ...)      — one turn, returns reply + reveals
  - conversation_history(agent_id, ...)       — paginated player-visible history

The engine is set with set_engine() (tests), or built from the environment
when run as __main__.

Usage:
    python -m story_agents.mcp_server
"""

from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from story_agents.config import build_detector, build_generator, load_settings
from story_agents.errors import AgentError
from story_agents.pipeline import TurnPipeline
from story_agents.registry import HISTORY_DEFAULT_LIMIT, AgentStore
from story_agents.storage import Storage

mcp = FastMCP("story-agents")

_store: AgentStore | None = None
_pipeline: TurnPipeline | None = None


def set_engine(store: AgentStore, pipeline: TurnPipeline) -> None:
    """Replace the engine the tools talk to."""
    global _store, _pipeline
    _store = store
    _pipeline = pipeline


def _engine() -> tuple[AgentStore, TurnPipeline]:
    if _store is None or _pipeline is None:
        raise RuntimeError("MCP server engine not configured; call set_engine() first")
    return _store, _pipeline


@mcp.tool()
async def spawn_agent(story_id: str, character_id: str) -> dict:
    """Spawn a conversational agent for a character of a story."""
    store, _ = _engine()
    try:
        agent = await store.spawn(story_id, character_id)
    except AgentError as e:
        return {"error": str(e)}
    return {"agent_id": agent.id, "character_name": agent.character_name}


@mcp.tool()
async def send_message(
    agent_id: str,
    message: str,
    presented_evidence_ids: list[str] | None = None,
    location_id: str | None = None,
) -> dict:
    """Send the investigator's message to an agent. Returns the reply and what was revealed."""
    _, pipeline = _engine()
    try:
        result = await pipeline.send_message(
            agent_id, message,
            presented_evidence_ids=presented_evidence_ids,
            location_id=location_id,
        )
    except AgentError as e:
        return {"error": str(e)}
    return result.model_dump()


@mcp.tool()
async def conversation_history(
    agent_id: str, limit: int = HISTORY_DEFAULT_LIMIT, offset: int = 0
) -> dict:
    """Read an agent's conversation as the player saw it."""
    store, _ = _engine()
    try:
        page = await store.history(agent_id, limit=limit, offset=offset)
    except AgentError as e:
        return {"error": str(e)}
    return page.model_dump(mode="json")


if __name__ == "__main__":
    settings = load_settings()
    store = AgentStore(Storage(settings.data_dir), persist_timeout=settings.persist_timeout)
    generator = build_generator(settings)
    set_engine(store, TurnPipeline(store, generator, build_detector(settings, generator)))
    mcp.run()

"""Story catalogue endpoints."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException

from story_agents.models import Story
from story_agents.registry import AgentStore

from .common import get_store

router = APIRouter()


@router.get("/stories")
async def list_stories(store: AgentStore = Depends(get_store)):
    """List stories as id/title pairs."""
    stories = await asyncio.to_thread(store.storage.list_stories)
    return [{"id": s.id, "title": s.title} for s in stories]


@router.post("/stories", status_code=201)
async def create_story(body: Story, store: AgentStore = Depends(get_store)):
    """Store a story document, replacing one with the same ID."""
    try:
        return await asyncio.to_thread(store.storage.save_story, body)
    except ValueError as e:
        raise HTTPException(400, str(e)) from e


@router.get("/stories/{story_id}")
async def get_story(story_id: str, store: AgentStore = Depends(get_store)):
    """Get a full story document."""
    story = await asyncio.to_thread(store.storage.get_story, story_id)
    if not story:
        raise HTTPException(404, "Story not found")
    return story

"""Pydantic request bodies for API endpoints."""

from pydantic import BaseModel, Field


class SpawnBody(BaseModel):
    story_id: str
    character_id: str


class MessageBody(BaseModel):
    message: str = ""
    presented_evidence_ids: list[str] = Field(default_factory=list)
    location_id: str | None = None

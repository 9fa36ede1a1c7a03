"""Core domain models.

Story documents are read-only inputs; Agent and Turn carry the live
conversation. Pydantic is used for validation and serialisation at every data
boundary (storage files, HTTP bodies, generator output).
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, PrivateAttr, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Story data (external, read-only)
# ---------------------------------------------------------------------------

class Evidence(BaseModel):
    id: str
    title: str
    description: str = ""
    visual_description: str = ""
    image_url: str = ""


class Location(BaseModel):
    id: str
    location_name: str
    visual_description: str = ""
    character_ids_in_location: list[str] = Field(default_factory=list)
    image_url: str = ""


class Character(BaseModel):
    id: str
    name: str
    appearance_description: str = ""
    personality_profile: str = ""
    knowledge_base: str = ""
    holds_evidence: list[Evidence] = Field(default_factory=list)
    knows_location_ids: list[str] = Field(default_factory=list)
    image_url: str = ""


class Story(BaseModel):
    """A story document: the cast, the places and the full narrative."""

    id: str
    title: str
    full_story: str = ""
    starting_location_ids: list[str] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)

    def character(self, character_id: str) -> Character | None:
        for char in self.characters:
            if char.id == character_id:
                return char
        return None

    def location(self, location_id: str) -> Location | None:
        for loc in self.locations:
            if loc.id == location_id:
                return loc
        return None

    def evidence(self, evidence_ids: list[str]) -> list[Evidence]:
        """Evidence items with the given IDs, searched across every character."""
        wanted = set(evidence_ids)
        return [
            ev
            for char in self.characters
            for ev in char.holds_evidence
            if ev.id in wanted
        ]


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Role(str, Enum):
    INSTRUCTION = "instruction"
    USER = "user"
    CHARACTER = "character"


class Turn(BaseModel):
    """One message in an agent's conversation."""

    role: Role
    index: int
    full_text: str
    client_text: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    revealed_evidence_ids: list[str] = Field(default_factory=list)
    revealed_location_ids: list[str] = Field(default_factory=list)


class AgentRecord(BaseModel):
    """Static fields of an agent as stored in the durable log's side record."""

    id: str = ""
    story_id: str
    character_id: str
    character_name: str = ""
    personality: str = ""
    held_evidence_ids: list[str] = Field(default_factory=list)
    known_location_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class Agent(BaseModel):
    """A live character instance.

    `history` is owned by the agent: callers get copies through
    `turns()`, never the list itself. The revealed sets only grow and are
    always subsets of the capability sets (see `record_reveals`).
    """

    id: str
    story_id: str
    character_id: str
    character_name: str = ""
    personality: str = ""
    held_evidence_ids: frozenset[str] = frozenset()
    known_location_ids: frozenset[str] = frozenset()
    revealed_evidence_ids: set[str] = Field(default_factory=set)
    revealed_location_ids: set[str] = Field(default_factory=set)
    history: list[Turn] = Field(default_factory=list)
    reconstructed_from_store: bool = False

    _lock: asyncio.Lock = PrivateAttr(default_factory=asyncio.Lock)

    @property
    def lock(self) -> asyncio.Lock:
        """Per-agent serialization point for turn processing."""
        return self._lock

    @property
    def next_index(self) -> int:
        return self.history[-1].index + 1 if self.history else 0

    def turns(self) -> list[Turn]:
        return [t.model_copy(deep=True) for t in self.history]

    def append_turn(
        self,
        role: Role,
        full_text: str,
        client_text: str = "",
        revealed_evidence_ids: list[str] | None = None,
        revealed_location_ids: list[str] | None = None,
    ) -> Turn:
        turn = Turn(
            role=role,
            index=self.next_index,
            full_text=full_text,
            client_text=client_text,
            revealed_evidence_ids=list(revealed_evidence_ids or []),
            revealed_location_ids=list(revealed_location_ids or []),
        )
        self.history.append(turn)
        return turn

    def record_reveals(self, evidence_ids: list[str], location_ids: list[str]) -> None:
        """Union validated IDs into the revealed sets; unknown IDs are ignored."""
        self.revealed_evidence_ids.update(i for i in evidence_ids if i in self.held_evidence_ids)
        self.revealed_location_ids.update(i for i in location_ids if i in self.known_location_ids)

    def to_record(self) -> AgentRecord:
        return AgentRecord(
            id=self.id,
            story_id=self.story_id,
            character_id=self.character_id,
            character_name=self.character_name,
            personality=self.personality,
            held_evidence_ids=sorted(self.held_evidence_ids),
            known_location_ids=sorted(self.known_location_ids),
        )


class TurnResult(BaseModel):
    """What the caller gets back from one message."""

    reply: str
    revealed_evidence_ids: list[str] = Field(default_factory=list)
    revealed_location_ids: list[str] = Field(default_factory=list)


class CharacterReply(BaseModel):
    """Structured shape the generator is asked to produce."""

    reply: str
    revealed_evidences: list[str] = Field(default_factory=list)
    revealed_locations: list[str] = Field(default_factory=list)

    @field_validator("revealed_evidences", "revealed_locations", mode="before")
    @classmethod
    def _null_as_empty(cls, value: object) -> object:
        return [] if value is None else value


class HistoryMessage(BaseModel):
    role: Role
    content: str
    timestamp: datetime
    revealed_evidence_ids: list[str] = Field(default_factory=list)
    revealed_location_ids: list[str] = Field(default_factory=list)


class HistoryPage(BaseModel):
    agent_id: str
    messages: list[HistoryMessage]
    total: int
    has_more: bool

"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM — reads and writes go through plain helper
methods that load and dump JSON. The engine treats it as an ordered
append log of turns per agent plus a side record of each agent's static
fields, and as the read-only story catalogue.

Directory layout:

    {base}/
      stories/
        {story_id}.json       ← Story document
      agents/
        {agent_id}.json       ← AgentRecord (static fields)
        {agent_id}/
          turns.json          ← Turn log, ordered by index

Writers may run on worker threads (see AgentStore.persist_turn); every
read-modify-write goes through one lock.
"""

from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from story_agents.models import AgentRecord, Evidence, Location, Story, Turn


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._stories_root = base_path / "stories"
        self._agents_root = base_path / "agents"
        self._stories_root.mkdir(parents=True, exist_ok=True)
        self._agents_root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _story_file(self, story_id: str) -> Path:
        return self._stories_root / f"{story_id}.json"

    def _agent_file(self, agent_id: str) -> Path:
        return self._agents_root / f"{agent_id}.json"

    def _turns_file(self, agent_id: str) -> Path:
        return self._agents_root / agent_id / "turns.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(path)

    @staticmethod
    def _valid_id(value: str) -> bool:
        return bool(value) and "/" not in value and "\\" not in value and value not in (".", "..")

    # ------------------------------------------------------------------
    # Stories (read-only to the engine)
    # ------------------------------------------------------------------

    def save_story(self, story: Story) -> Story:
        if not self._valid_id(story.id):
            raise ValueError(f"Invalid story id {story.id!r}")
        with self._lock:
            self._story_file(story.id).write_text(story.model_dump_json(indent=2))
        return story

    def get_story(self, story_id: str) -> Story | None:
        if not self._valid_id(story_id):
            return None
        path = self._story_file(story_id)
        if not path.exists():
            return None
        return Story.model_validate_json(path.read_text())

    def list_stories(self) -> list[Story]:
        return [
            Story.model_validate_json(p.read_text())
            for p in sorted(self._stories_root.glob("*.json"))
        ]

    def get_location(self, story_id: str, location_id: str) -> Location | None:
        story = self.get_story(story_id)
        return story.location(location_id) if story else None

    def get_evidence(self, story_id: str, evidence_ids: list[str]) -> list[Evidence]:
        story = self.get_story(story_id)
        return story.evidence(evidence_ids) if story else []

    # ------------------------------------------------------------------
    # Agents (side record)
    # ------------------------------------------------------------------

    def create_agent(self, record: AgentRecord) -> str:
        """Store a new agent record and return its ID (generated when empty)."""
        if not record.id:
            record = record.model_copy(update={"id": uuid.uuid4().hex})
        if not self._valid_id(record.id):
            raise ValueError(f"Invalid agent id {record.id!r}")
        with self._lock:
            self._write_json(self._agent_file(record.id), record.model_dump(mode="json"))
        return record.id

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        if not self._valid_id(agent_id):
            return None
        path = self._agent_file(agent_id)
        if not path.exists():
            return None
        return AgentRecord.model_validate(self._read_json(path))

    def list_agent_ids(self) -> list[str]:
        return sorted(p.stem for p in self._agents_root.glob("*.json"))

    # ------------------------------------------------------------------
    # Turns (append-only log, ordered by index)
    # ------------------------------------------------------------------

    def list_turns(self, agent_id: str) -> list[Turn]:
        if not self._valid_id(agent_id):
            return []
        path = self._turns_file(agent_id)
        if not path.exists():
            return []
        turns = [Turn.model_validate(t) for t in self._read_json(path)]
        return sorted(turns, key=lambda t: t.index)

    def append_turn(self, agent_id: str, turn: Turn) -> bool:
        """Add a turn to the log, replacing any stored turn with the same index.

        Turns with no text are never written. Returns whether anything was stored.
        """
        if not turn.full_text.strip() and not turn.client_text.strip():
            return False
        with self._lock:
            turns = {t.index: t for t in self.list_turns(agent_id)}
            turns[turn.index] = turn
            self._dump_turns(agent_id, turns.values())
        return True

    def replace_turns(self, agent_id: str, turns: list[Turn]) -> None:
        """Rewrite an agent's whole log (used after reconstruction renumbering)."""
        with self._lock:
            self._dump_turns(agent_id, [t for t in turns if t.full_text.strip()])

    def update_turn_text(self, agent_id: str, index: int, full_text: str) -> bool:
        with self._lock:
            turns = self.list_turns(agent_id)
            for i, t in enumerate(turns):
                if t.index == index:
                    turns[i] = t.model_copy(update={"full_text": full_text})
                    self._dump_turns(agent_id, turns)
                    return True
        return False

    def get_turn_page(self, agent_id: str, limit: int, offset: int) -> tuple[list[Turn], int]:
        """One page of the log plus the total number of stored turns."""
        turns = self.list_turns(agent_id)
        return turns[offset:offset + limit], len(turns)

    def last_activity(self, agent_id: str) -> datetime | None:
        turns = self.list_turns(agent_id)
        return max((t.timestamp for t in turns), default=None)

    def _dump_turns(self, agent_id: str, turns: Any) -> None:
        ordered = sorted(turns, key=lambda t: t.index)
        self._write_json(self._turns_file(agent_id), [t.model_dump(mode="json") for t in ordered])

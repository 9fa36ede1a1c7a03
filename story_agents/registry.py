"""Agent store — the registry of live agents.

An explicit object created at process start and injected into the
pipeline and the HTTP/MCP layers; there is no module-level registry.

The map of live agents is guarded by one lock held for map access only.
Loading from disk happens outside it, so two concurrent misses for the
same ID may both reconstruct; the first registration wins and both callers
get that instance, which keeps the per-agent lock meaningful.

Durable writes are fire-and-forget: each runs as its own asyncio task on a
worker thread with a few retries, chained after the previous write for the
same agent. A write that overruns the persist timeout is logged, and the
next write for that agent still waits for its thread to finish. Failures
are logged and never reach the caller or roll back in-memory state.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from story_agents.capability import CapabilityModel
from story_agents.errors import AgentError, InvalidAgentState, NotFound
from story_agents.history import Reconstruction, reconstruct_history
from story_agents.models import (
    Agent,
    HistoryMessage,
    HistoryPage,
    Role,
    Turn,
)
from story_agents.prompts import PromptError, build_instruction, extract_client_text
from story_agents.storage import Storage

logger = logging.getLogger(__name__)

WRITE_ATTEMPTS = 3
WRITE_BACKOFF = 0.1
PRELOAD_LIMIT = 50
HISTORY_DEFAULT_LIMIT = 50
HISTORY_MAX_LIMIT = 100


class AgentStore:
    def __init__(self, storage: Storage, persist_timeout: float = 5.0) -> None:
        self._storage = storage
        self._persist_timeout = persist_timeout
        self._agents: dict[str, Agent] = {}
        self._lock = threading.Lock()
        self._pending: set[asyncio.Task] = set()
        self._tails: dict[str, asyncio.Task] = {}

    @property
    def storage(self) -> Storage:
        return self._storage

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get(self, agent_id: str) -> Agent | None:
        """In-memory lookup only."""
        with self._lock:
            return self._agents.get(agent_id)

    def register(self, agent: Agent) -> Agent:
        """Register an agent unless one with the same ID is already live; return the live one."""
        with self._lock:
            return self._agents.setdefault(agent.id, agent)

    def evict(self, agent_id: str) -> bool:
        """Drop an agent from memory. Its durable log is untouched."""
        with self._lock:
            return self._agents.pop(agent_id, None) is not None

    def live_ids(self) -> list[str]:
        with self._lock:
            return list(self._agents)

    async def get_or_load(self, agent_id: str) -> Agent:
        agent = self.get(agent_id)
        if agent is not None:
            return agent

        logger.info("Agent %s not in memory, loading from storage", agent_id)
        await self.flush(agent_id)
        loaded, rebuilt = await asyncio.to_thread(self._reconstruct, agent_id)
        live = self.register(loaded)
        if live is not loaded or not rebuilt.needs_rewrite:
            return live
        if rebuilt.instruction_refreshed:
            self._schedule(
                agent_id, f"refreshed instruction of {agent_id}",
                self._storage.update_turn_text, agent_id, 0, loaded.history[0].full_text,
            )
        else:
            self._schedule(
                agent_id, f"rebuilt history of {agent_id}",
                self._storage.replace_turns, agent_id, loaded.turns(),
            )
        return live

    def _reconstruct(self, agent_id: str) -> tuple[Agent, Reconstruction]:
        try:
            record = self._storage.get_agent(agent_id)
        except (ValidationError, ValueError) as e:
            raise InvalidAgentState(f"Agent {agent_id} record is corrupt: {e}") from e
        if record is None:
            raise NotFound(f"Agent {agent_id} not found")
        if not record.story_id:
            raise InvalidAgentState(f"Agent {agent_id} has no story reference")

        try:
            stored = self._storage.list_turns(agent_id)
        except (ValidationError, ValueError) as e:
            logger.warning("Failed to decode turn log for agent %s: %s", agent_id, e)
            stored = []
        story = self._storage.get_story(record.story_id)
        rebuilt = reconstruct_history(record, stored, story)

        agent = Agent(
            id=record.id,
            story_id=record.story_id,
            character_id=record.character_id,
            character_name=record.character_name,
            personality=record.personality,
            held_evidence_ids=frozenset(record.held_evidence_ids),
            known_location_ids=frozenset(record.known_location_ids),
            revealed_evidence_ids=rebuilt.revealed_evidence_ids,
            revealed_location_ids=rebuilt.revealed_location_ids,
            history=rebuilt.history,
            reconstructed_from_store=True,
        )
        logger.info(
            "Loaded agent %s (%s) with %d turns", record.character_name, agent_id, len(agent.history)
        )
        return agent, rebuilt

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def spawn(self, story_id: str, character_id: str) -> Agent:
        """Create an agent for a story character with a single instruction turn."""
        story = await asyncio.to_thread(self._storage.get_story, story_id)
        if story is None:
            raise NotFound(f"Story {story_id} not found")
        character = story.character(character_id)
        if character is None:
            raise NotFound(f"Character {character_id} not found in story {story_id}")

        capability = CapabilityModel.for_character(character)
        try:
            instruction = build_instruction(character, story)
        except PromptError as e:
            raise InvalidAgentState(f"Cannot build instruction for {character_id}: {e}") from e

        agent = Agent(
            id="",
            story_id=story_id,
            character_id=character.id,
            character_name=character.name,
            personality=character.personality_profile,
            held_evidence_ids=capability.held_evidence_ids,
            known_location_ids=capability.known_location_ids,
        )
        agent.id = await asyncio.to_thread(self._storage.create_agent, agent.to_record())
        turn = agent.append_turn(Role.INSTRUCTION, instruction)
        self.register(agent)
        self.persist_turn(agent.id, turn)
        logger.info("Spawned agent %s for %s in story %s", agent.id, character.name, story_id)
        return agent

    # ------------------------------------------------------------------
    # History view
    # ------------------------------------------------------------------

    async def history(
        self,
        agent_id: str,
        limit: int = HISTORY_DEFAULT_LIMIT,
        offset: int = 0,
        include_full: bool = False,
    ) -> HistoryPage:
        """Paginated conversation as stored in the durable log."""
        if limit <= 0 or limit > HISTORY_MAX_LIMIT:
            limit = HISTORY_DEFAULT_LIMIT
        offset = max(offset, 0)

        await self.flush(agent_id)
        record = await asyncio.to_thread(self._storage.get_agent, agent_id)
        if record is None and self.get(agent_id) is None:
            raise NotFound(f"Agent {agent_id} not found")

        turns, total = await asyncio.to_thread(self._storage.get_turn_page, agent_id, limit, offset)
        messages: list[HistoryMessage] = []
        for turn in turns:
            if include_full:
                content = turn.full_text
            else:
                content = turn.client_text or extract_client_text(turn.full_text, turn.role)
            if turn.role is Role.INSTRUCTION and not include_full:
                content = ""
            if not content:
                continue
            messages.append(HistoryMessage(
                role=turn.role,
                content=content,
                timestamp=turn.timestamp,
                revealed_evidence_ids=turn.revealed_evidence_ids,
                revealed_location_ids=turn.revealed_location_ids,
            ))
        return HistoryPage(
            agent_id=agent_id,
            messages=messages,
            total=total,
            has_more=offset + limit < total,
        )

    # ------------------------------------------------------------------
    # Preload
    # ------------------------------------------------------------------

    async def preload_recent(self, hours: float, limit: int = PRELOAD_LIMIT) -> int:
        """Reconstruct agents with a stored turn newer than `hours` ago. Best effort."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)

        def _recent() -> list[str]:
            active: list[tuple[datetime, str]] = []
            for agent_id in self._storage.list_agent_ids():
                last = self._storage.last_activity(agent_id)
                if last is not None and last >= cutoff:
                    active.append((last, agent_id))
            active.sort(reverse=True)
            return [agent_id for _, agent_id in active[:limit]]

        loaded = 0
        for agent_id in await asyncio.to_thread(_recent):
            try:
                await self.get_or_load(agent_id)
                loaded += 1
            except AgentError as e:
                logger.warning("Preload skipped agent %s: %s", agent_id, e)
        logger.info("Preloaded %d agents active within %s hours", loaded, hours)
        return loaded

    # ------------------------------------------------------------------
    # Fire-and-forget persistence
    # ------------------------------------------------------------------

    def persist_turn(self, agent_id: str, turn: Turn) -> asyncio.Task:
        snapshot = turn.model_copy(deep=True)
        return self._schedule(
            agent_id, f"{turn.role.value} turn {turn.index} of {agent_id}",
            self._storage.append_turn, agent_id, snapshot,
        )

    def _schedule(self, agent_id: str, label: str, fn: Callable[..., Any], *args: Any) -> asyncio.Task:
        # Writes for one agent run in scheduling order; a log rewrite must not
        # land after a newer append.
        previous = self._tails.get(agent_id)
        task = asyncio.create_task(self._write(label, previous, fn, *args))
        self._tails[agent_id] = task
        self._pending.add(task)
        task.add_done_callback(lambda t: self._done(agent_id, t))
        return task

    def _done(self, agent_id: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if self._tails.get(agent_id) is task:
            del self._tails[agent_id]

    async def _write(
        self, label: str, previous: asyncio.Task | None, fn: Callable[..., Any], *args: Any
    ) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        # A write already on its worker thread cannot be cancelled, so this task
        # (the next write's `previous`) only finishes once the thread has.
        work = asyncio.ensure_future(self._with_retries(fn, *args))
        done, _ = await asyncio.wait({work}, timeout=self._persist_timeout)
        if not done:
            logger.warning(
                "Persisting %s is taking longer than %ss", label, self._persist_timeout
            )
            await asyncio.wait({work})
        if work.exception() is not None:
            logger.warning("Failed to persist %s: %s", label, work.exception())

    async def _with_retries(self, fn: Callable[..., Any], *args: Any) -> Any:
        for attempt in range(1, WRITE_ATTEMPTS + 1):
            try:
                return await asyncio.to_thread(fn, *args)
            except OSError:
                if attempt == WRITE_ATTEMPTS:
                    raise
                await asyncio.sleep(WRITE_BACKOFF * attempt)

    async def flush(self, agent_id: str) -> None:
        """Wait for the scheduled writes of one agent, so reads see them."""
        tail = self._tails.get(agent_id)
        if tail is not None:
            await asyncio.wait({tail})

    async def drain(self) -> None:
        """Wait for every scheduled write to finish (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

"""Turn pipeline: runs one player message end-to-end.

Turn flow (one state per step, RETRYING only reachable from PARSING):
  AUGMENTING  Prefix the location marker, append the evidence block, reject
              blank input, append the user turn and schedule its write.
  GENERATING  Call the generator with the full history, structured output
              requested. Transport failures surface as Unavailable.
  PARSING     Decode {"reply", "revealed_evidences", "revealed_locations"}.
  RETRYING    One more call with a clarification turn restating the shape;
              if that fails too, use the personality-keyed fallback line.
  VALIDATING  Filter evidence against what the character holds; take the
              revealed locations from the detector, never from the
              generator's self-report.
  PERSISTING  Append the character turn, grow the revealed sets, schedule
              the write.

Turns for one agent are serialized on the agent's lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum

from pydantic import ValidationError

from story_agents.capability import validate_reveals
from story_agents.detector import HeuristicLocationDetector, LocationRevealDetector
from story_agents.errors import (
    EmptyInput,
    GeneratorOutputMalformed,
    InvalidAgentState,
    Unavailable,
)
from story_agents.llm import Generator, LLMError
from story_agents.models import Agent, CharacterReply, Role, Story, Turn, TurnResult
from story_agents.prompts import (
    EMPTY_REPLY_APOLOGY,
    FORMAT_CLARIFICATION,
    FORMAT_REMINDER,
    evidence_block,
    fallback_reply,
    location_marker,
)
from story_agents.registry import AgentStore

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    AUGMENTING = "augmenting"
    GENERATING = "generating"
    PARSING = "parsing"
    RETRYING = "retrying"
    VALIDATING = "validating"
    PERSISTING = "persisting"
    DONE = "done"


@dataclass
class _TurnContext:
    message: str
    presented_evidence_ids: list[str]
    location_id: str | None
    story: Story | None = None
    raw_output: str = ""
    reply: CharacterReply | None = None
    fell_back: bool = False
    reply_text: str = ""
    evidence_ids: list[str] = field(default_factory=list)
    location_ids: list[str] = field(default_factory=list)
    trace: list[TurnState] = field(default_factory=list)


def parse_reply(text: str) -> CharacterReply:
    """Decode the structured reply, tolerating markdown fences around the JSON."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [line for line in lines[1:] if not line.strip().startswith("```")]
        cleaned = "\n".join(lines)
    try:
        return CharacterReply.model_validate_json(cleaned)
    except (ValidationError, json.JSONDecodeError) as e:
        raise GeneratorOutputMalformed(f"Unparsable character reply: {e}") from e


class TurnPipeline:
    def __init__(
        self,
        store: AgentStore,
        generator: Generator,
        detector: LocationRevealDetector | None = None,
    ) -> None:
        self._store = store
        self._storage = store.storage
        self._generator = generator
        self._detector = detector or HeuristicLocationDetector()
        self._steps = {
            TurnState.AUGMENTING: self._augment,
            TurnState.GENERATING: self._generate,
            TurnState.PARSING: self._parse,
            TurnState.RETRYING: self._retry,
            TurnState.VALIDATING: self._validate,
            TurnState.PERSISTING: self._persist,
        }
        self.last_trace: list[TurnState] = []

    async def send_message(
        self,
        agent_id: str,
        message: str,
        presented_evidence_ids: list[str] | None = None,
        location_id: str | None = None,
    ) -> TurnResult:
        agent = await self._store.get_or_load(agent_id)
        if not agent.story_id:
            logger.error("Agent %s has an empty story reference", agent_id)
            raise InvalidAgentState(f"Agent {agent_id} configuration invalid")

        ctx = _TurnContext(
            message=message or "",
            presented_evidence_ids=list(presented_evidence_ids or []),
            location_id=location_id or None,
        )
        async with agent.lock:
            state = TurnState.AUGMENTING
            try:
                while state is not TurnState.DONE:
                    ctx.trace.append(state)
                    state = await self._steps[state](agent, ctx)
            finally:
                self.last_trace = ctx.trace
        ctx.trace.append(TurnState.DONE)

        return TurnResult(
            reply=ctx.reply_text,
            revealed_evidence_ids=ctx.evidence_ids,
            revealed_location_ids=ctx.location_ids,
        )

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _augment(self, agent: Agent, ctx: _TurnContext) -> TurnState:
        story = await asyncio.to_thread(self._storage.get_story, agent.story_id)
        if story is None:
            raise InvalidAgentState(f"Story {agent.story_id} of agent {agent.id} not found")
        ctx.story = story

        text = ctx.message
        if ctx.location_id:
            location = await asyncio.to_thread(
                self._storage.get_location, agent.story_id, ctx.location_id
            )
            if location is None:
                logger.warning(
                    "Location %s not in story %s; sending message without it",
                    ctx.location_id, story.id,
                )
            else:
                text = f"{location_marker(location)}\n\n{text}"

        presented = []
        if ctx.presented_evidence_ids:
            presented = await asyncio.to_thread(
                self._storage.get_evidence, agent.story_id, ctx.presented_evidence_ids
            )
        if presented:
            text = f"{text}\n\n{evidence_block(presented)}"
            logger.info(
                "Presenting %d evidence items to %s, message length %d",
                len(presented), agent.character_name, len(text),
            )

        if not ctx.message.strip() and not presented:
            raise EmptyInput("Message cannot be empty")

        turn = agent.append_turn(Role.USER, text, client_text=ctx.message.strip())
        self._store.persist_turn(agent.id, turn)
        return TurnState.GENERATING

    async def _generate(self, agent: Agent, ctx: _TurnContext) -> TurnState:
        turns = self._outgoing(agent)
        logger.debug("Calling generator for %s with %d turns", agent.character_name, len(turns))
        try:
            ctx.raw_output = await self._generator("character", turns, structured=True)
        except LLMError as e:
            logger.error("Generator failed for agent %s: %s", agent.id, e)
            raise Unavailable(str(e)) from e
        return TurnState.PARSING

    async def _parse(self, agent: Agent, ctx: _TurnContext) -> TurnState:
        try:
            ctx.reply = parse_reply(ctx.raw_output)
        except GeneratorOutputMalformed as e:
            logger.warning("Reply from %s did not parse: %s", agent.character_name, e)
            return TurnState.RETRYING
        return TurnState.VALIDATING

    async def _retry(self, agent: Agent, ctx: _TurnContext) -> TurnState:
        turns = self._outgoing(agent)
        turns.append(Turn(role=Role.USER, index=agent.next_index, full_text=FORMAT_CLARIFICATION))
        try:
            ctx.raw_output = await self._generator("character_retry", turns, structured=True)
            ctx.reply = parse_reply(ctx.raw_output)
        except (LLMError, GeneratorOutputMalformed) as e:
            logger.warning("Retry failed for %s, using fallback reply: %s", agent.character_name, e)
            ctx.reply = CharacterReply(reply=fallback_reply(agent.personality))
            ctx.fell_back = True
        return TurnState.VALIDATING

    async def _validate(self, agent: Agent, ctx: _TurnContext) -> TurnState:
        assert ctx.reply is not None and ctx.story is not None

        ctx.evidence_ids = validate_reveals(ctx.reply.revealed_evidences, agent.held_evidence_ids)
        dropped = len(ctx.reply.revealed_evidences) - len(ctx.evidence_ids)
        if dropped:
            logger.warning(
                "Filtered %d evidence reveals %s could not make", dropped, agent.character_name
            )

        ctx.reply_text = ctx.reply.reply.strip()
        if not ctx.reply_text:
            logger.warning("Empty reply from %s, using default message", agent.character_name)
            ctx.reply_text = EMPTY_REPLY_APOLOGY

        if not ctx.fell_back:
            candidates = [loc for loc in ctx.story.locations if loc.id in agent.known_location_ids]
            detected = await self._detector.detect(ctx.reply_text, candidates)
            ctx.location_ids = validate_reveals(detected, agent.known_location_ids)
            if ctx.location_ids != ctx.reply.revealed_locations:
                logger.info(
                    "%s self-reported locations %s, detector found %s",
                    agent.character_name, ctx.reply.revealed_locations, ctx.location_ids,
                )
        return TurnState.PERSISTING

    async def _persist(self, agent: Agent, ctx: _TurnContext) -> TurnState:
        turn = agent.append_turn(
            Role.CHARACTER,
            ctx.reply_text,
            client_text=ctx.reply_text,
            revealed_evidence_ids=ctx.evidence_ids,
            revealed_location_ids=ctx.location_ids,
        )
        agent.record_reveals(ctx.evidence_ids, ctx.location_ids)
        self._store.persist_turn(agent.id, turn)
        return TurnState.DONE

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _outgoing(self, agent: Agent) -> list[Turn]:
        """History as sent to the generator: no empty turns, plus a format
        reminder on the last turn for agents rebuilt from storage."""
        turns = [t for t in agent.turns() if t.full_text.strip()]
        if agent.reconstructed_from_store and turns and turns[-1].role is Role.USER:
            last = turns[-1]
            turns[-1] = last.model_copy(update={"full_text": f"{last.full_text}\n\n{FORMAT_REMINDER}"})
        return turns

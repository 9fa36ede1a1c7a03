"""History reconstruction after a cache miss or a process restart.

Rebuilds an agent's ordered turn list from the durable log:
  1. Drop turns with empty text (generators reject them).
  2. Make sure index 0 is an instruction turn. A recognisable stored one is
     kept, with its text refreshed from current story data when that data
     is available and the stored text is stale. A missing or unrecognisable
     one is replaced by a freshly rendered instruction, or by a minimal
     continuation instruction when the story can't be resolved.
  3. Renumber so indices run 0..n-1 without gaps.
  4. Rebuild the revealed sets from the character turns' reveal fields,
     restricted to the capability sets.

`needs_rewrite` tells the caller the durable log no longer matches the
rebuilt history and should be written back. When `instruction_refreshed`
is also set, only the instruction text at index 0 differs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from story_agents.capability import validate_reveals
from story_agents.models import AgentRecord, Role, Story, Turn
from story_agents.prompts import (
    CONTINUATION_INSTRUCTION,
    PromptError,
    build_instruction,
    is_instruction_text,
)

logger = logging.getLogger(__name__)


@dataclass
class Reconstruction:
    history: list[Turn]
    revealed_evidence_ids: set[str]
    revealed_location_ids: set[str]
    needs_rewrite: bool
    instruction_refreshed: bool = False


def fresh_instruction(record: AgentRecord, story: Story | None) -> str | None:
    """Render the instruction turn from current story data, or None if unavailable."""
    if story is None:
        return None
    character = story.character(record.character_id)
    if character is None:
        logger.warning(
            "Character %s not found in story %s; cannot regenerate instruction",
            record.character_id, record.story_id,
        )
        return None
    try:
        return build_instruction(character, story)
    except PromptError as e:
        logger.warning("Instruction template failed for %s: %s", record.character_id, e)
        return None


def _is_instruction(turn: Turn) -> bool:
    if turn.index != 0:
        return False
    return turn.role is Role.INSTRUCTION or is_instruction_text(turn.full_text)


def reconstruct_history(
    record: AgentRecord, stored: list[Turn], story: Story | None
) -> Reconstruction:
    kept: list[Turn] = []
    for turn in sorted(stored, key=lambda t: t.index):
        if not turn.full_text.strip():
            logger.info(
                "Skipping empty %s turn %d for agent %s", turn.role.value, turn.index, record.id
            )
            continue
        kept.append(turn)

    structural = len(kept) != len(stored)
    refreshed = False
    regenerated = fresh_instruction(record, story)

    if kept and _is_instruction(kept[0]):
        instruction = kept.pop(0)
        if instruction.role is not Role.INSTRUCTION or instruction.client_text:
            instruction = instruction.model_copy(update={"role": Role.INSTRUCTION, "client_text": ""})
            structural = True
        if regenerated is not None and regenerated != instruction.full_text:
            logger.info("Refreshing stale instruction turn for agent %s", record.id)
            instruction = instruction.model_copy(update={"full_text": regenerated})
            refreshed = True
    else:
        logger.info(
            "Agent %s has no stored instruction turn; synthesizing %s",
            record.id, "a fresh one" if regenerated else "a continuation instruction",
        )
        instruction = Turn(
            role=Role.INSTRUCTION,
            index=0,
            full_text=regenerated or CONTINUATION_INSTRUCTION,
        )
        structural = True

    history: list[Turn] = []
    for position, turn in enumerate([instruction, *kept]):
        if turn.index != position:
            turn = turn.model_copy(update={"index": position})
            structural = True
        history.append(turn)

    evidence: set[str] = set()
    locations: set[str] = set()
    for turn in history:
        if turn.role is Role.CHARACTER:
            evidence.update(validate_reveals(turn.revealed_evidence_ids, record.held_evidence_ids))
            locations.update(validate_reveals(turn.revealed_location_ids, record.known_location_ids))

    return Reconstruction(
        history=history,
        revealed_evidence_ids=evidence,
        revealed_location_ids=locations,
        needs_rewrite=structural or refreshed,
        instruction_refreshed=refreshed and not structural,
    )

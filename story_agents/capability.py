"""Capability model and reveal validation.

The capability model is the ground truth of what a character may give away:
evidence it holds and locations it can grant access to. `validate_reveals`
is the only place generator output is checked against it; prompt wording
that asks the generator to self-report correctly is advisory.
"""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict

from story_agents.models import Agent, Character


class CapabilityModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    held_evidence_ids: frozenset[str] = frozenset()
    known_location_ids: frozenset[str] = frozenset()

    @classmethod
    def for_character(cls, character: Character) -> CapabilityModel:
        return cls(
            held_evidence_ids=frozenset(ev.id for ev in character.holds_evidence),
            known_location_ids=frozenset(character.knows_location_ids),
        )

    @classmethod
    def for_agent(cls, agent: Agent) -> CapabilityModel:
        return cls(
            held_evidence_ids=agent.held_evidence_ids,
            known_location_ids=agent.known_location_ids,
        )

    def holds(self, evidence_id: str) -> bool:
        return evidence_id in self.held_evidence_ids

    def knows(self, location_id: str) -> bool:
        return location_id in self.known_location_ids


def validate_reveals(candidates: Iterable[str] | None, allowed: Iterable[str]) -> list[str]:
    """Keep the candidates that are in `allowed`, first occurrence order, no repeats.

    Mismatches are expected generator noise and are dropped without error.
    """
    allowed_set = set(allowed)
    validated: list[str] = []
    seen: set[str] = set()
    for item in candidates or []:
        if item in allowed_set and item not in seen:
            validated.append(item)
            seen.add(item)
    return validated

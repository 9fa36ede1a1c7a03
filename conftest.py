import json
from collections.abc import Sequence

import pytest

from story_agents.models import Character, Evidence, Location, Story, Turn
from story_agents.registry import AgentStore
from story_agents.storage import Storage


class StubGenerator:
    """Deterministic generator stand-in for tests.

    Provide a dict mapping stage name → list of responses (in call order).
    A response that is an Exception instance is raised instead of returned.
    Raises if a stage is called more times than responses were provided.
    """

    def __init__(self, responses: dict[str, list]) -> None:
        self._queues: dict[str, list] = {k: list(v) for k, v in responses.items()}
        self.calls: list[tuple[str, list[Turn], bool]] = []

    async def __call__(self, stage: str, turns: Sequence[Turn], structured: bool = False) -> str:
        self.calls.append((stage, list(turns), structured))
        queue = self._queues.get(stage)
        if not queue:
            raise AssertionError(
                f"StubGenerator: unexpected call to stage={stage!r} "
                f"(no responses queued). calls so far: {[c[0] for c in self.calls]}"
            )
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed — catches missing generator calls."""
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubGenerator: unused responses remain: {leftover}")


def reply_json(reply: str, evidences: list[str] | None = None, locations: list[str] | None = None) -> str:
    return json.dumps({
        "reply": reply,
        "revealed_evidences": evidences or [],
        "revealed_locations": locations or [],
    })


@pytest.fixture
def stub_generator():
    """Factory fixture: `stub_generator({"character": [...]})`."""
    return StubGenerator


@pytest.fixture
def reply():
    """Factory fixture building a structured character reply as JSON text."""
    return reply_json


@pytest.fixture
def story() -> Story:
    return Story(
        id="story_1",
        title="The Missing Chemist",
        full_story="A chemist vanished from the research ship. The engineer saw more than he admits.",
        starting_location_ids=["loc_3"],
        locations=[
            Location(id="loc_1", location_name="Secret Lab", visual_description="Humming freezers."),
            Location(id="loc_2", location_name="Captain's Office", visual_description="Charts and brass."),
            Location(id="loc_3", location_name="Engine Room", visual_description="Hot and loud."),
        ],
        characters=[
            Character(
                id="char_1",
                name="Mateo",
                appearance_description="Wiry, greasy overalls.",
                personality_profile="Nervous and anxious",
                knowledge_base="Saw the chemist carry a cooler to the lab.",
                holds_evidence=[
                    Evidence(id="ev_1", title="Keycard", description="The chemist's keycard.",
                             visual_description="Cracked white plastic."),
                ],
                knows_location_ids=["loc_1", "loc_3"],
            ),
            Character(
                id="char_2",
                name="Captain Hale",
                personality_profile="Arrogant and proud",
                knowledge_base="Took money to carry an unregistered sample.",
                holds_evidence=[
                    Evidence(id="ev_2", title="Manifest", description="One line blacked out.",
                             visual_description="Coffee-stained paper.",
                             image_url="https://example.com/manifest.png"),
                ],
                knows_location_ids=["loc_2"],
            ),
        ],
    )


@pytest.fixture
def storage(tmp_path, story) -> Storage:
    s = Storage(tmp_path / "data")
    s.save_story(story)
    return s


@pytest.fixture
def store(storage) -> AgentStore:
    return AgentStore(storage, persist_timeout=2.0)

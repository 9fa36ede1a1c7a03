"""Tests for the turn pipeline.

Scenarios run against a real JSON store in tmp_path, with a StubGenerator
standing in for the language model.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from story_agents.errors import (
    EmptyInput,
    GeneratorOutputMalformed,
    InvalidAgentState,
    NotFound,
    Unavailable,
)
from story_agents.llm import HttpGenerator, LLMError
from story_agents.models import Role
from story_agents.pipeline import TurnPipeline, TurnState, parse_reply
from story_agents.prompts import EMPTY_REPLY_APOLOGY, FORMAT_CLARIFICATION, FORMAT_REMINDER
from story_agents.registry import AgentStore


async def _spawn(store, character_id="char_1"):
    agent = await store.spawn("story_1", character_id)
    await store.drain()
    return agent


# ── parse_reply ────────────────────────────────────────────


def test_parse_reply_plain():
    parsed = parse_reply('{"reply": "No.", "revealed_evidences": ["ev_1"]}')
    assert parsed.reply == "No."
    assert parsed.revealed_evidences == ["ev_1"]
    assert parsed.revealed_locations == []


def test_parse_reply_fenced():
    assert parse_reply('```json\n{"reply": "Fine."}\n```').reply == "Fine."


@pytest.mark.parametrize("text", ["I refuse.", '{"revealed_evidences": []}', "[]", ""])
def test_parse_reply_malformed(text):
    with pytest.raises(GeneratorOutputMalformed):
        parse_reply(text)


# ── Happy path ─────────────────────────────────────────────


async def test_unheld_evidence_filtered(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [reply("Take it. [hands over keycard]", ["ev_1", "ev_99"])]})
    pipeline = TurnPipeline(store, gen)

    result = await pipeline.send_message(agent.id, "Give me the keycard.")
    await store.drain()

    assert result.reply == "Take it. [hands over keycard]"
    assert result.revealed_evidence_ids == ["ev_1"]
    assert result.revealed_location_ids == []
    assert agent.revealed_evidence_ids == {"ev_1"}

    stored = store.storage.list_turns(agent.id)
    assert [t.index for t in stored] == [0, 1, 2]
    assert [t.role for t in stored] == [Role.INSTRUCTION, Role.USER, Role.CHARACTER]
    assert stored[2].revealed_evidence_ids == ["ev_1"]
    assert stored[1].client_text == "Give me the keycard."
    gen.assert_exhausted()


async def test_generator_gets_full_history_structured(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [reply("Hm."), reply("Maybe.")]})
    pipeline = TurnPipeline(store, gen)

    await pipeline.send_message(agent.id, "Hello")
    await pipeline.send_message(agent.id, "Where were you?")

    stage, turns, structured = gen.calls[1]
    assert stage == "character"
    assert structured is True
    assert [t.role for t in turns] == [Role.INSTRUCTION, Role.USER, Role.CHARACTER, Role.USER]
    assert turns[-1].full_text == "Where were you?"
    assert pipeline.last_trace == [
        TurnState.AUGMENTING, TurnState.GENERATING, TurnState.PARSING,
        TurnState.VALIDATING, TurnState.PERSISTING, TurnState.DONE,
    ]


# ── Location detection ─────────────────────────────────────


async def test_detector_grants_location_not_self_reported(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [reply("Fine. Meet me at the secret lab tonight.")]})

    result = await TurnPipeline(store, gen).send_message(agent.id, "Where can we talk?")

    assert result.revealed_location_ids == ["loc_1"]
    assert agent.revealed_location_ids == {"loc_1"}


async def test_self_reported_mention_is_not_a_reveal(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [
        reply("I heard about the engine room, but I don't know where it is.", locations=["loc_3"]),
    ]})

    result = await TurnPipeline(store, gen).send_message(agent.id, "Engine room?")

    assert result.revealed_location_ids == []
    assert agent.revealed_location_ids == set()


async def test_unknown_location_never_revealed(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [reply("Meet me at the captain's office tonight.", locations=["loc_2"])]})

    result = await TurnPipeline(store, gen).send_message(agent.id, "Where?")

    assert result.revealed_location_ids == []


# ── Retry and fallback ─────────────────────────────────────


async def test_retry_recovers(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({
        "character": ["I won't answer in JSON."],
        "character_retry": [reply("Alright, alright.")],
    })
    pipeline = TurnPipeline(store, gen)

    result = await pipeline.send_message(agent.id, "Talk.")

    assert result.reply == "Alright, alright."
    retry_turns = gen.calls[1][1]
    assert retry_turns[-1].full_text == FORMAT_CLARIFICATION
    assert all(t.full_text != FORMAT_CLARIFICATION for t in agent.history)
    assert TurnState.RETRYING in pipeline.last_trace
    gen.assert_exhausted()


async def test_nervous_fallback_after_two_bad_outputs(store, stub_generator):
    agent = await _spawn(store)
    gen = stub_generator({
        "character": ["uh... the lab?"],
        "character_retry": ["{broken json"],
    })

    result = await TurnPipeline(store, gen).send_message(agent.id, "Tell me about the lab.")
    await store.drain()

    expected = "I-I'm sorry, I'm having trouble understanding... Could you repeat that?"
    assert result.reply == expected
    assert result.revealed_evidence_ids == []
    assert result.revealed_location_ids == []
    stored = store.storage.list_turns(agent.id)
    assert stored[-1].role is Role.CHARACTER
    assert stored[-1].full_text == expected
    assert [t.index for t in stored] == [0, 1, 2]


async def test_retry_transport_failure_falls_back(store, stub_generator):
    agent = await _spawn(store, "char_2")
    gen = stub_generator({
        "character": ["not json"],
        "character_retry": [LLMError("down")],
    })

    result = await TurnPipeline(store, gen).send_message(agent.id, "Speak.")

    assert result.reply == "Speak clearly. I don't have time for your mumbling."


async def test_blank_reply_gets_apology(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [reply("   ")]})

    result = await TurnPipeline(store, gen).send_message(agent.id, "Hello?")

    assert result.reply == EMPTY_REPLY_APOLOGY
    assert agent.history[-1].full_text == EMPTY_REPLY_APOLOGY


# ── Errors ─────────────────────────────────────────────────


async def test_blank_message_rejected(store, stub_generator):
    agent = await _spawn(store)
    gen = stub_generator({})

    with pytest.raises(EmptyInput):
        await TurnPipeline(store, gen).send_message(agent.id, "   ")

    assert gen.calls == []
    assert len(agent.history) == 1


async def test_location_marker_alone_is_blank(store, stub_generator):
    agent = await _spawn(store)
    with pytest.raises(EmptyInput):
        await TurnPipeline(store, stub_generator({})).send_message(agent.id, "", location_id="loc_3")


async def test_evidence_only_message_allowed(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [reply("Where did you get that?")]})

    await TurnPipeline(store, gen).send_message(agent.id, "", presented_evidence_ids=["ev_2"])

    user_turn = agent.history[1]
    assert "EVIDENCE: Manifest" in user_turn.full_text
    assert user_turn.client_text == ""


async def test_generator_failure_is_unavailable(store, stub_generator):
    agent = await _spawn(store)
    gen = stub_generator({"character": [LLMError("Cannot connect")]})

    with pytest.raises(Unavailable):
        await TurnPipeline(store, gen).send_message(agent.id, "Hello")

    assert [t.role for t in agent.history] == [Role.INSTRUCTION, Role.USER]


async def test_dropped_connection_is_unavailable(store):
    agent = await _spawn(store)
    pipeline = TurnPipeline(store, HttpGenerator("http://localhost:8080"))

    with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadError("conn reset"))):
        with pytest.raises(Unavailable):
            await pipeline.send_message(agent.id, "Hello")

    assert agent.history[-1].role is Role.USER


async def test_unknown_agent(store, stub_generator):
    with pytest.raises(NotFound):
        await TurnPipeline(store, stub_generator({})).send_message("missing", "Hello")


async def test_story_gone_is_invalid_state(store, stub_generator):
    agent = await _spawn(store)
    (store.storage.base_path / "stories" / "story_1.json").unlink()

    with pytest.raises(InvalidAgentState):
        await TurnPipeline(store, stub_generator({})).send_message(agent.id, "Hello")


# ── Augmentation ───────────────────────────────────────────


async def test_location_and_evidence_augment_user_turn(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [reply("That's not mine.")]})

    await TurnPipeline(store, gen).send_message(
        agent.id, "Explain this.", presented_evidence_ids=["ev_2"], location_id="loc_3",
    )

    sent = gen.calls[0][1][-1].full_text
    assert sent.startswith("[CURRENT LOCATION: Engine Room - Hot and loud.]\n\nExplain this.")
    assert "[USER IS PRESENTING THE FOLLOWING EVIDENCE TO YOU]:" in sent
    assert "EVIDENCE: Manifest" in sent
    assert "Image: https://example.com/manifest.png" in sent
    assert agent.history[1].client_text == "Explain this."


async def test_augmentation_reads_through_story_provider(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [reply("Hm.")]})
    storage = store.storage

    with patch.object(storage, "get_location", wraps=storage.get_location) as get_location, \
            patch.object(storage, "get_evidence", wraps=storage.get_evidence) as get_evidence:
        await TurnPipeline(store, gen).send_message(
            agent.id, "Look.", presented_evidence_ids=["ev_2"], location_id="loc_3",
        )

    get_location.assert_called_once_with("story_1", "loc_3")
    get_evidence.assert_called_once_with("story_1", ["ev_2"])


async def test_unknown_location_id_sends_plain_message(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [reply("Okay.")]})

    await TurnPipeline(store, gen).send_message(agent.id, "Hi", location_id="loc_404")

    assert gen.calls[0][1][-1].full_text == "Hi"


# ── Reconstruction and concurrency ─────────────────────────


async def test_indices_contiguous_across_restart(store, storage, stub_generator, reply):
    agent = await _spawn(store)
    await TurnPipeline(store, stub_generator({"character": [reply("Hello.")]})).send_message(
        agent.id, "First question"
    )
    await store.drain()

    restarted = AgentStore(storage)
    gen = stub_generator({"character": [reply("Again?")]})
    await TurnPipeline(restarted, gen).send_message(agent.id, "Second question")
    await restarted.drain()

    stored = storage.list_turns(agent.id)
    assert [t.index for t in stored] == [0, 1, 2, 3, 4]
    assert stored[3].full_text == "Second question"

    sent = gen.calls[0][1]
    assert sent[-1].full_text.endswith(FORMAT_REMINDER)
    assert FORMAT_REMINDER not in stored[3].full_text


async def test_reveals_survive_restart(store, storage, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [reply("Take it.", ["ev_1"])]})
    await TurnPipeline(store, gen).send_message(agent.id, "Hand it over.")
    await store.drain()

    loaded = await AgentStore(storage).get_or_load(agent.id)
    assert loaded.revealed_evidence_ids == {"ev_1"}


async def test_concurrent_messages_are_serialized(store, stub_generator, reply):
    agent = await _spawn(store)
    gen = stub_generator({"character": [reply("One."), reply("Two.")]})
    pipeline = TurnPipeline(store, gen)

    await asyncio.gather(
        pipeline.send_message(agent.id, "First"),
        pipeline.send_message(agent.id, "Second"),
    )
    await store.drain()

    roles = [t.role for t in agent.history]
    assert roles == [Role.INSTRUCTION, Role.USER, Role.CHARACTER, Role.USER, Role.CHARACTER]
    assert [t.index for t in agent.history] == [0, 1, 2, 3, 4]
    assert [t.index for t in store.storage.list_turns(agent.id)] == [0, 1, 2, 3, 4]

"""Location-reveal detection.

Decides from dialogue text alone which locations a character is actively
granting access to, as opposed to merely mentioning. The generator's own
`revealed_locations` list is never consulted.

Two strategies share the `LocationRevealDetector` protocol:

    HeuristicLocationDetector  — phrase/proximity rules, no network.
    ClassifierLocationDetector — asks the generator a narrowly scoped
                                 question, then filters its answer against
                                 the candidate locations.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from typing import Protocol

from story_agents.capability import validate_reveals
from story_agents.llm import Generator, LLMError
from story_agents.models import Location, Role, Turn
from story_agents.prompts import PromptError, build_classifier_prompt

logger = logging.getLogger(__name__)


class LocationRevealDetector(Protocol):
    async def detect(self, dialogue: str, locations: Sequence[Location]) -> list[str]: ...


# ---------------------------------------------------------------------------
# Heuristic rules
# ---------------------------------------------------------------------------

GRANTING_PHRASES = (
    "meet me at", "meet me in", "find me at", "find me in",
    "see you at", "see you in",
    "take you to", "bring you to", "lead you to", "walk you to",
    "show you the way to", "come with me to",
    "you can go to", "you should go to", "we can go to", "let's go to",
    "you can head to", "you should head to", "we can head to",
    "get you into", "get you in", "let you into", "let you in",
    "here's the key to", "here is the key to", "here's a key to",
    "password for", "password to",
    "code for", "code to", "combination to", "clearance for", "clearance to",
    "is open to you", "open to you", "expecting you",
    "i have access to", "arranged access to",
    "give you access to", "grant you access to", "got you access to",
    "way into", "way in to",
    "how to get to", "how to get into", "how to find", "directions to",
    "coordinates", "address of", "address for",
)

DENIAL_PHRASES = (
    "can't tell you", "cannot tell you", "won't tell you", "not telling you",
    "don't know where", "no idea where", "not allowed", "can't get you in",
    "don't have clearance", "don't have access", "can't take you",
    "off limits", "off-limits",
)

_NEGATION_RE = re.compile(
    r"\b(?:not|never|no|can't|cannot|won't|don't|doesn't|didn't|couldn't|"
    r"wouldn't|shouldn't|isn't|aren't|wasn't|nobody)\b"
)

ACTION_MARKER_RE = re.compile(
    r"\[[^\]]*\b(?:hands?|gives?|passes|slides|shows?|draws?|sketches|"
    r"unlocks?|writes?|points?|marks?)\b[^\]]*\]"
)

_MEETING_RE = re.compile(
    r"\b(?:meet|meeting|see you|join me|rendezvous|find me|wait for you|waiting for you)\b"
)

_TIME_RE = re.compile(
    r"\b(?:tonight|tomorrow|today|midnight|noon|dawn|dusk|sunrise|sunset|"
    r"morning|evening|afternoon|later|after dark|o'clock|"
    r"at \d{1,2}(?::\d{2})?\s*(?:am|pm)?)\b"
)

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|;\s*|\n+")

PHRASE_WINDOW = 30
ACTION_WINDOW = 60
DENIAL_WINDOW = 25
MEETING_WINDOW = 40
NEGATION_LOOKBACK = 20


def normalize(text: str) -> str:
    return text.lower().replace("’", "'").replace("‘", "'")


def _spans(text: str, needle: str) -> list[tuple[int, int]]:
    pattern = r"(?<!\w)" + re.escape(needle) + r"(?!\w)"
    return [(m.start(), m.end()) for m in re.finditer(pattern, text)]


def _gap(a: tuple[int, int], b: tuple[int, int]) -> int:
    """Characters between two spans; 0 when they touch or overlap."""
    if a[1] <= b[0]:
        return b[0] - a[1]
    if b[1] <= a[0]:
        return a[0] - b[1]
    return 0


def within_proximity(text: str, first: str, second: str, max_distance: int) -> bool:
    """True if some occurrence of `first` and `second` are at most max_distance apart."""
    first_spans = _spans(text, first)
    second_spans = _spans(text, second)
    return any(
        _gap(a, b) <= max_distance for a in first_spans for b in second_spans
    )


def _negated(text: str, start: int) -> bool:
    """A negation word earlier in the same clause, e.g. "don't have access to"."""
    clause = re.split(r"[,;:]", text[max(0, start - NEGATION_LOOKBACK):start])[-1]
    return bool(_NEGATION_RE.search(clause))


def _name_variants(location: Location) -> list[str]:
    name = normalize(location.location_name).strip()
    variants = [name]
    if name.startswith("the ") and len(name) > 4:
        variants.append(name[4:])
    return variants


def _name_spans(sentence: str, location: Location) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    for variant in _name_variants(location):
        pattern = r"(?<![\w])" + re.escape(variant) + r"(?![\w])"
        spans.extend((m.start(), m.end()) for m in re.finditer(pattern, sentence))
    return spans


def _sentence_reveals(sentence: str, location: Location) -> bool:
    if sentence.rstrip().endswith("?"):
        return False
    names = _name_spans(sentence, location)
    if not names:
        return False

    for phrase in DENIAL_PHRASES:
        for span in _spans(sentence, phrase):
            if any(_gap(span, n) <= DENIAL_WINDOW for n in names):
                return False

    for phrase in GRANTING_PHRASES:
        for span in _spans(sentence, phrase):
            if _negated(sentence, span[0]):
                continue
            if any(_gap(span, n) <= PHRASE_WINDOW for n in names):
                return True

    for m in ACTION_MARKER_RE.finditer(sentence):
        if any(_gap((m.start(), m.end()), n) <= ACTION_WINDOW for n in names):
            return True

    if not _TIME_RE.search(sentence):
        return False
    for m in _MEETING_RE.finditer(sentence):
        if _negated(sentence, m.start()):
            continue
        if any(_gap((m.start(), m.end()), n) <= MEETING_WINDOW for n in names):
            return True

    return False


def split_sentences(text: str) -> list[str]:
    return [s for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]


class HeuristicLocationDetector:
    """Rule-based detector: granting phrase, action marker or timed meeting near the name.

    Sentences ending in a question mark never reveal anything.
    """

    def scan(self, dialogue: str, locations: Sequence[Location]) -> list[str]:
        sentences = split_sentences(normalize(dialogue))
        revealed = [
            loc.id for loc in locations
            if any(_sentence_reveals(s, loc) for s in sentences)
        ]
        return validate_reveals(revealed, (loc.id for loc in locations))

    async def detect(self, dialogue: str, locations: Sequence[Location]) -> list[str]:
        return self.scan(dialogue, locations)


# ---------------------------------------------------------------------------
# Generator-backed classifier
# ---------------------------------------------------------------------------

class ClassifierLocationDetector:
    """Delegates the grant-vs-mention decision to the generator.

    The generator is asked for a JSON object carrying `revealed_locations`.
    The answer is re-validated against the candidate list; any failure
    (transport, template, unparsable output) yields no reveals.
    """

    def __init__(self, generator: Generator) -> None:
        self._generator = generator

    async def detect(self, dialogue: str, locations: Sequence[Location]) -> list[str]:
        if not locations or not dialogue.strip():
            return []
        try:
            prompt = build_classifier_prompt(dialogue, list(locations))
            text = await self._generator(
                "location_detector",
                [Turn(role=Role.USER, index=0, full_text=prompt)],
                structured=True,
            )
        except (LLMError, PromptError) as e:
            logger.warning("Location classifier failed: %s", e)
            return []

        try:
            data = json.loads(_strip_fences(text))
        except json.JSONDecodeError:
            logger.warning("Location classifier returned invalid JSON: %r", text)
            return []
        # Backends in JSON-object mode answer {"revealed_locations": [...]};
        # a bare array is accepted too.
        ids = data.get("revealed_locations") if isinstance(data, dict) else data
        if not isinstance(ids, list):
            logger.warning("Location classifier returned %r, expected a list of IDs", data)
            return []

        allowed = [loc.id for loc in locations]
        filtered = validate_reveals([i for i in ids if isinstance(i, str)], allowed)
        dropped = [i for i in ids if i not in filtered]
        if dropped:
            logger.warning("Location classifier returned unknown IDs: %s", dropped)
        return filtered


def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [line for line in lines[1:] if not line.strip().startswith("```")]
        cleaned = "\n".join(lines)
    return cleaned

"""Handlebars prompt rendering and the text markers injected into turns."""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

import pybars

from story_agents.models import Character, Evidence, Location, Role, Story

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return compiled(context)
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Character instruction turn ───────────────────────────

INSTRUCTION_TEMPLATE = """You are {{{name}}}.

APPEARANCE: {{{appearance}}}

PERSONALITY: {{{personality}}}

YOUR KNOWLEDGE AND BACKGROUND:
{{{knowledge}}}
{{#if evidence}}

Evidence you possess:
{{#each evidence}}
- {{{title}}}: {{{description}}}
  (Visual: {{{visual_description}}})
{{#if image_url}}
  (Image: {{{image_url}}})
{{/if}}
{{/each}}
{{/if}}
{{#if locations}}

Locations you are familiar with:
{{#each locations}}
- {{{location_name}}}: {{{visual_description}}}
{{/each}}
{{/if}}

IMPORTANT DISTINCTION - MENTIONING vs REVEALING:
- You can MENTION any location or evidence you know about from the story
- You can only REVEAL (grant access/give) items from your specific lists
- When you mention items you can't reveal, explain why, e.g. "I know where the lab is, but I don't have clearance"
- NEVER pretend to have access or items you don't actually possess

LOCATION AWARENESS:
- Pay attention to [CURRENT LOCATION: ...] tags in messages
- Keep any promise you made about discussing something at a specific location

INTERROGATION PSYCHOLOGY:
- You start with {{cooperation}} willingness to cooperate
- Be defensive or evasive in your first response to any investigator
- Specific, informed questions and presented evidence make you more willing to share

PERSONALITY-SPECIFIC BEHAVIORS:
{{#each behaviors}}
- {{{this}}}
{{/each}}

Stay in character and respond as your character would.

JSON RESPONSE FORMAT:
You must ALWAYS respond in the following JSON format:
{
  "reply": "Your character's spoken dialogue with [actions] in brackets",
  "revealed_evidences": ["IDs of evidence you are handing over"],
  "revealed_locations": ["IDs of locations you are granting access to"]
}
If not revealing anything, use empty arrays []."""

STORY_CONTEXT_HEADER = "[STORY CONTEXT FOR REFERENCE]:"

CONTINUATION_INSTRUCTION = (
    "[Note: This agent was loaded from database without its original briefing.] "
    "You are a character in an ongoing investigation. "
    "Continue the conversation naturally based on your character as shown in the "
    "messages so far. Stay in character and respond as your character would. "
    'Always respond in JSON: {"reply": "...", "revealed_evidences": [], '
    '"revealed_locations": []}'
)

_COOPERATION_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("HIGH", ("naive", "trusting", "innocent child", "eager to please")),
    ("MEDIUM", ("helpful", "friendly", "honest", "open")),
]

_BEHAVIORS: list[tuple[tuple[str, ...], list[str]]] = [
    (("nervous", "anxious", "worried"), [
        "Start evasive and scattered, jumping between topics when stressed",
        "Become more talkative when reassured",
        "Accidentally reveal more when trying to prove your innocence",
    ]),
    (("arrogant", "confident", "proud"), [
        "Dismiss generic questions as beneath you",
        "Reveal information to prove how clever or important you are",
    ]),
    (("protective", "loyal", "caring"), [
        "Refuse to share information that could harm loved ones",
        "Become more cooperative when the safety of others is assured",
    ]),
    (("professional", "composed", "calm"), [
        "Maintain professional distance and require proper questioning",
        "Give measured, careful responses that reveal minimal information",
    ]),
    (("guilty", "deceptive", "criminal"), [
        "Have rehearsed answers ready for obvious questions",
        "Steer the conversation away from dangerous topics",
    ]),
]

_DEFAULT_BEHAVIORS = [
    "Respond naturally according to your personality",
    "Share information based on trust and the quality of questions",
]


def cooperation_level(personality: str) -> str:
    lowered = personality.lower()
    for level, keywords in _COOPERATION_KEYWORDS:
        if any(k in lowered for k in keywords):
            return level
    return "LOW"


def personality_behaviors(personality: str) -> list[str]:
    lowered = personality.lower()
    behaviors: list[str] = []
    for keywords, lines in _BEHAVIORS:
        if any(k in lowered for k in keywords):
            behaviors.extend(lines)
    return behaviors or list(_DEFAULT_BEHAVIORS)


def build_instruction(character: Character, story: Story) -> str:
    """Render the instruction turn for a character, followed by the story context."""
    known = [loc for loc_id in character.knows_location_ids
             if (loc := story.location(loc_id)) is not None]
    ctx = {
        "name": character.name,
        "appearance": character.appearance_description,
        "personality": character.personality_profile,
        "knowledge": character.knowledge_base,
        "evidence": [ev.model_dump() for ev in character.holds_evidence],
        "locations": [loc.model_dump() for loc in known],
        "cooperation": cooperation_level(character.personality_profile),
        "behaviors": personality_behaviors(character.personality_profile),
    }
    prompt = render_prompt(INSTRUCTION_TEMPLATE, ctx)
    return f"{prompt}\n\n{STORY_CONTEXT_HEADER}\n{story.full_story}"


# ── Retry clarification & fallbacks ──────────────────────

FORMAT_CLARIFICATION = """Please respond in valid JSON format:
{
  "reply": "your spoken dialogue with [actions] in brackets",
  "revealed_evidences": ["evidence IDs you're giving"],
  "revealed_locations": ["location IDs you're granting access to"]
}"""

FORMAT_REMINDER = (
    "[Reminder: answer in character, as a single JSON object with the keys "
    '"reply", "revealed_evidences" and "revealed_locations".]'
)

EMPTY_REPLY_APOLOGY = (
    "I apologize, but I couldn't formulate a proper response. "
    "Could you please rephrase your question?"
)

_FALLBACKS: list[tuple[str, str]] = [
    ("nervous", "I-I'm sorry, I'm having trouble understanding... Could you repeat that?"),
    ("arrogant", "Speak clearly. I don't have time for your mumbling."),
    ("professional", "I apologize, could you please rephrase your question?"),
]

_NEUTRAL_FALLBACK = "I'm having trouble understanding. Could you rephrase that?"


def fallback_reply(personality: str) -> str:
    """Deterministic in-character line used when the generator output is unusable."""
    lowered = personality.lower()
    for keyword, line in _FALLBACKS:
        if keyword in lowered:
            return line
    return _NEUTRAL_FALLBACK


# ── User turn augmentation ───────────────────────────────

_EVIDENCE_HEADER = "[USER IS PRESENTING THE FOLLOWING EVIDENCE TO YOU]:"
_RULE = "=" * 40
_SEPARATOR = "-" * 40


def location_marker(location: Location) -> str:
    return f"[CURRENT LOCATION: {location.location_name} - {location.visual_description}]"


def evidence_block(items: list[Evidence]) -> str:
    lines = [_RULE, _EVIDENCE_HEADER, _RULE]
    for ev in items:
        lines.append(f"EVIDENCE: {ev.title}")
        lines.append(f"Description: {ev.description}")
        lines.append(f"Visual: {ev.visual_description}")
        if ev.image_url:
            lines.append(f"Image: {ev.image_url}")
        lines.append(_SEPARATOR)
    return "\n".join(lines)


# ── Client-safe text ─────────────────────────────────────

_LOCATION_MARKER_RE = re.compile(r"\[CURRENT LOCATION:[^\]]*\]\s*")
_EVIDENCE_BLOCK_RE = re.compile(
    r"\n*(?:=+\n)?\[USER IS PRESENTING THE FOLLOWING EVIDENCE TO YOU\]:[\s\S]*$"
)

_INSTRUCTION_INDICATORS = (
    "You are",
    "PERSONALITY:",
    "Your personality is",
    "JSON RESPONSE FORMAT",
    "Continue the conversation naturally based on your character",
    "[Note: This agent was loaded from database",
    "Stay in character and respond as your character would",
)


def is_instruction_text(text: str) -> bool:
    """Two or more briefing indicators mark a text as an instruction turn."""
    return sum(1 for marker in _INSTRUCTION_INDICATORS if marker in text) >= 2


def extract_client_text(full_text: str, role: Role) -> str:
    """Strip injected context so the text is safe to show a player."""
    if role is Role.INSTRUCTION:
        return ""
    if role is Role.CHARACTER:
        return "" if is_instruction_text(full_text) else full_text
    content = _LOCATION_MARKER_RE.sub("", full_text)
    content = _EVIDENCE_BLOCK_RE.sub("", content)
    return content.strip()


# ── Location classifier ──────────────────────────────────

CLASSIFIER_TEMPLATE = """You are a location reveal detector. Analyze the character dialogue below and identify which locations the character is ACTIVELY REVEALING or GRANTING ACCESS TO.

Available locations and their IDs:
{{#each locations}}
- {{{location_name}}} (ID: {{{id}}})
{{/each}}

Character's dialogue:
"{{{dialogue}}}"

A location is revealed when the character gives directions, grants access or permission, hands over keys, codes or passwords, schedules a meeting there, or sends its coordinates.
Simply mentioning a location is NOT revealing it. Refusing or denying access is NOT revealing it.

Respond ONLY with a JSON object whose "revealed_locations" field lists location IDs drawn from the list above, e.g. {"revealed_locations": ["loc_1", "loc_3"]} or {"revealed_locations": []}."""


def build_classifier_prompt(dialogue: str, locations: list[Location]) -> str:
    return render_prompt(
        CLASSIFIER_TEMPLATE,
        {"dialogue": dialogue, "locations": [loc.model_dump() for loc in locations]},
    )

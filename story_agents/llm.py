"""Generator clients — HTTP connection to a language-model backend.

The engine injects a generator callable matching the protocol:

    async def __call__(self, stage: str, turns: Sequence[Turn],
                       structured: bool = False) -> str: ...

`stage` identifies which part of the engine is calling ("character",
"character_retry", "location_detector"). `turns` is the ordered
conversation; callers never pass a turn with empty text. `structured`
asks the backend for a JSON object; callers must still cope with non-JSON
text coming back.

Two implementations are provided:

    HttpGenerator — real HTTP client, supports OpenAI-compatible chat
                    backends and KoboldCpp. Selected by provider_format.
    EchoGenerator — echoes the last turn back. Useful for smoke-testing the
                    wiring without a running model.

Tests use StubGenerator (defined in the test helpers) instead.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Literal, Protocol

import httpx

from story_agents.models import Role, Turn

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol: every generator implementation must match this signature
# ---------------------------------------------------------------------------

class Generator(Protocol):
    async def __call__(
        self, stage: str, turns: Sequence[Turn], structured: bool = False
    ) -> str: ...


# ---------------------------------------------------------------------------
# HttpGenerator: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["openai", "koboldcpp"]

_CHAT_ROLES = {
    Role.INSTRUCTION: "system",
    Role.USER: "user",
    Role.CHARACTER: "assistant",
}

_PROMPT_LABELS = {
    Role.INSTRUCTION: "",
    Role.USER: "Investigator: ",
    Role.CHARACTER: "Character: ",
}


class HttpGenerator:
    """Async HTTP client for chat/completion backends.

    Supported formats:
      "openai"     — POST /v1/chat/completions  {"model", "messages", ...}
                     Response: {"choices": [{"message": {"content": "..."}}]}
      "koboldcpp"  — POST /api/v1/generate      {"prompt": ...}
                     Response: {"results": [{"text": "..."}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:8080".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "openai".
        model:           Model identifier, used only by the openai format.
        timeout:         HTTP timeout in seconds. Defaults to 60.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "openai",
        model: str = "",
        timeout: float = 60.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, turns: Sequence[Turn], structured: bool) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            url = f"{self._base_url}/v1/chat/completions"
            body: dict = {
                "messages": [
                    {"role": _CHAT_ROLES[t.role], "content": t.full_text} for t in turns
                ],
            }
            if self._model:
                body["model"] = self._model
            if structured:
                body["response_format"] = {"type": "json_object"}
            return url, body

        # koboldcpp: one flat prompt, the model continues as the character
        url = f"{self._base_url}/api/v1/generate"
        return url, {"prompt": flatten_turns(turns)}

    def _parse_response(self, data: dict) -> str:
        """Extract the generated text from the response body."""
        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "message" not in choices[0]:
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["message"].get("content") or ""

        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    async def __call__(
        self, stage: str, turns: Sequence[Turn], structured: bool = False
    ) -> str:
        url, body = self._build_request(turns, structured)
        logger.debug("generator call stage=%s url=%s turns=%d", stage, url, len(turns))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to generator backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"Generator backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"Generator backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"Generator request to {self._base_url} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError(f"Generator backend at {self._base_url} returned non-JSON body") from e
        text = self._parse_response(data)
        logger.debug("generator response stage=%s len=%d", stage, len(text))
        return text


def flatten_turns(turns: Sequence[Turn]) -> str:
    """Render a turn list as one completion prompt ending on the character's cue."""
    parts = [f"{_PROMPT_LABELS[t.role]}{t.full_text}" for t in turns]
    parts.append(_PROMPT_LABELS[Role.CHARACTER].rstrip())
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# EchoGenerator: no network; output is never valid structured JSON
# ---------------------------------------------------------------------------

class EchoGenerator:
    """Returns the last turn's text as-is.

    Lets you verify the wiring (augmentation, retry, fallback, storage writes)
    end-to-end without a running model. Structured requests will fail to
    parse and exercise the retry/fallback path.
    """

    async def __call__(
        self, stage: str, turns: Sequence[Turn], structured: bool = False
    ) -> str:
        logger.debug("EchoGenerator stage=%s turns=%d", stage, len(turns))
        return turns[-1].full_text if turns else ""


# ---------------------------------------------------------------------------
# LLMError: raised by HttpGenerator for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the generator backend cannot be reached or returns an error."""

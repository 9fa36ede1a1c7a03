"""Errors surfaced by the engine to its callers.

The HTTP layer maps each class to a status code; MCP tools return the
message. `GeneratorOutputMalformed` never leaves the turn pipeline.
"""


class AgentError(Exception):
    """Base class for caller-visible engine failures."""


class NotFound(AgentError):
    """Unknown agent, story or character ID."""


class BadInput(AgentError):
    """Empty or malformed request."""


class EmptyInput(BadInput):
    """The outgoing user turn is blank after trimming."""


class InvalidAgentState(AgentError):
    """A stored agent record is unusable, e.g. it lost its story reference."""


class Unavailable(AgentError):
    """The generator or the store could not be reached."""


class GeneratorOutputMalformed(ValueError):
    """Generator output did not match the structured reply shape."""

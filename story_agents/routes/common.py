"""Shared helpers for the endpoint modules."""

from fastapi import HTTPException, Request

from story_agents.errors import (
    AgentError,
    BadInput,
    InvalidAgentState,
    NotFound,
    Unavailable,
)
from story_agents.pipeline import TurnPipeline
from story_agents.registry import AgentStore

_STATUS: list[tuple[type[AgentError], int]] = [
    (NotFound, 404),
    (BadInput, 400),
    (InvalidAgentState, 500),
    (Unavailable, 502),
]


def http_error(e: AgentError) -> HTTPException:
    """Translate an engine error into the HTTP status the API reports."""
    for cls, status in _STATUS:
        if isinstance(e, cls):
            return HTTPException(status, str(e))
    return HTTPException(500, str(e))


def get_store(request: Request) -> AgentStore:
    return request.app.state.store


def get_pipeline(request: Request) -> TurnPipeline:
    return request.app.state.pipeline

"""FastAPI API endpoints under /api.

Endpoint groups: stories (catalogue) and agents (spawn, messages, history,
eviction). Engine objects live on `app.state` and are set up by
`create_app()`.
"""

from fastapi import APIRouter

from .agents import router as agents_router
from .stories import router as stories_router

router = APIRouter()
router.include_router(stories_router)
router.include_router(agents_router)

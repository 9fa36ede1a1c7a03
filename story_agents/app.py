import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from story_agents.config import Settings, build_detector, build_generator, load_settings
from story_agents.llm import Generator
from story_agents.pipeline import TurnPipeline
from story_agents.registry import AgentStore
from story_agents.routes import router
from story_agents.storage import Storage

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, generator: Generator | None = None) -> FastAPI:
    """Wire storage, agent store and pipeline into a FastAPI app.

    `generator` overrides the one built from settings (tests pass a stub).
    """
    settings = settings or load_settings()
    storage = Storage(settings.data_dir)
    store = AgentStore(storage, persist_timeout=settings.persist_timeout)
    generator = generator or build_generator(settings)
    pipeline = TurnPipeline(store, generator, build_detector(settings, generator))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.preload_hours > 0:
            await store.preload_recent(settings.preload_hours)
        yield
        await store.drain()
        logger.info("Pending writes flushed, shutting down")

    app = FastAPI(title="Story Agents", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.pipeline = pipeline
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()

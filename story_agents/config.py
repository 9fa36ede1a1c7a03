"""Runtime configuration.

Values come from the environment, with a `.env` file at the project root
loaded first. Nothing here is global: `create_app()` and the MCP server
build their own Settings via `load_settings()`.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel

from story_agents.detector import (
    ClassifierLocationDetector,
    HeuristicLocationDetector,
    LocationRevealDetector,
)
from story_agents.llm import EchoGenerator, Generator, HttpGenerator

logger = logging.getLogger(__name__)

ROOT = Path(__file__).parent.parent
DEFAULT_DATA_DIR = ROOT / "data"


class Settings(BaseModel):
    data_dir: Path = DEFAULT_DATA_DIR
    generator_url: str = ""
    generator_api_key: str = ""
    generator_format: Literal["openai", "koboldcpp"] = "openai"
    generator_model: str = ""
    generator_timeout: float = 60.0
    persist_timeout: float = 5.0
    location_detector: Literal["heuristic", "classifier"] = "heuristic"
    preload_hours: float = 0.0
    host: str = "0.0.0.0"
    port: int = 13013


def load_settings(env_file: Path | None = None) -> Settings:
    """Build Settings from `.env` plus the process environment."""
    load_dotenv(env_file or ROOT / ".env")
    return Settings(
        data_dir=Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR))),
        generator_url=os.getenv("GENERATOR_URL", ""),
        generator_api_key=os.getenv("GENERATOR_API_KEY", ""),
        generator_format=os.getenv("GENERATOR_FORMAT", "openai"),
        generator_model=os.getenv("GENERATOR_MODEL", ""),
        generator_timeout=os.getenv("GENERATOR_TIMEOUT", "60"),
        persist_timeout=os.getenv("PERSIST_TIMEOUT", "5"),
        location_detector=os.getenv("LOCATION_DETECTOR", "heuristic"),
        preload_hours=os.getenv("PRELOAD_HOURS", "0"),
        host=os.getenv("HOST", "0.0.0.0"),
        port=os.getenv("PORT", "13013"),
    )


def build_generator(settings: Settings) -> Generator:
    if not settings.generator_url:
        logger.warning("GENERATOR_URL is not set; replies will echo the player's message")
        return EchoGenerator()
    return HttpGenerator(
        settings.generator_url,
        api_key=settings.generator_api_key,
        provider_format=settings.generator_format,
        model=settings.generator_model,
        timeout=settings.generator_timeout,
    )


def build_detector(settings: Settings, generator: Generator) -> LocationRevealDetector:
    if settings.location_detector == "classifier":
        return ClassifierLocationDetector(generator)
    return HeuristicLocationDetector()

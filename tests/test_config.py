"""Tests for settings and component wiring."""

import os
from pathlib import Path

from story_agents.config import Settings, build_detector, build_generator, load_settings
from story_agents.detector import ClassifierLocationDetector, HeuristicLocationDetector
from story_agents.llm import EchoGenerator, HttpGenerator


def test_load_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "d"))
    monkeypatch.setenv("GENERATOR_URL", "http://localhost:5001")
    monkeypatch.setenv("GENERATOR_FORMAT", "koboldcpp")
    monkeypatch.setenv("PERSIST_TIMEOUT", "2.5")
    monkeypatch.setenv("LOCATION_DETECTOR", "classifier")
    monkeypatch.setenv("PORT", "9000")

    settings = load_settings(tmp_path / "missing.env")

    assert settings.data_dir == Path(tmp_path / "d")
    assert settings.generator_format == "koboldcpp"
    assert settings.persist_timeout == 2.5
    assert settings.location_detector == "classifier"
    assert settings.port == 9000


def test_env_file_is_read(monkeypatch, tmp_path):
    monkeypatch.delenv("GENERATOR_MODEL", raising=False)
    env = tmp_path / ".env"
    env.write_text("GENERATOR_MODEL=tiny-model\n")
    try:
        assert load_settings(env).generator_model == "tiny-model"
    finally:
        os.environ.pop("GENERATOR_MODEL", None)


def test_no_url_uses_echo_generator():
    assert isinstance(build_generator(Settings()), EchoGenerator)


def test_url_builds_http_generator():
    gen = build_generator(Settings(generator_url="http://localhost:8080"))
    assert isinstance(gen, HttpGenerator)


def test_detector_choice():
    gen = EchoGenerator()
    assert isinstance(build_detector(Settings(), gen), HeuristicLocationDetector)
    assert isinstance(
        build_detector(Settings(location_detector="classifier"), gen), ClassifierLocationDetector
    )

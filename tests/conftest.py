"""Shared test fixtures for GM Forge tests."""

import json

import pytest

import openai_bridge
from document_store import DocumentStore


# ---------------------------------------------------------------------------
# Sample data constants
# ---------------------------------------------------------------------------

SHEET_REPLY = (
    "The innkeeper slides a parchment across the bar.\n\n"
    "[File: sheet.md]\n"
    "```markdown\n"
    "Hello\n"
    "```\n\n"
    "What do you do?"
)

PLAIN_REPLY = "Rain hammers the shutters. A cloaked figure waits by the fire. What do you do?"

TWO_FILE_REPLY = (
    "Your notes are updated.\n"
    "[File: character_sheet.md]\n"
    "```\n"
    "# Aria\n"
    "Level 3 rogue\n"
    "```\n"
    "And the map key:\n"
    "[File: map_key.md]\n"
    "```md\n"
    "A. Gatehouse\n"
    "```\n"
)

BROKEN_MARKER_REPLY = "You find a torn page. [File: torn.md] but the ink is smudged."

SAMPLE_CONFIG = {
    "chat": {"model": "gpt-test"},
    "speech": {"model": "tts-test", "voice": "fable"},
    "image": {"enabled": True, "model": "image-test", "size": "1024x1024"},
    "transcription": {"model": "whisper-test"},
    "trace": {"enabled": True, "retention_days": 14},
}

FAKE_AUDIO_URI = "data:audio/mp3;base64,SUQzBAAAAAAA"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    """Point openai_bridge at a temporary forge_config.json."""
    path = tmp_path / "forge_config.json"
    path.write_text(json.dumps(SAMPLE_CONFIG), encoding="utf-8")
    monkeypatch.setattr(openai_bridge, "CONFIG_PATH", str(path))
    monkeypatch.setattr(openai_bridge, "_config_cache", None)
    monkeypatch.setattr(openai_bridge, "_config_mtime", 0)
    return path


@pytest.fixture
def store(tmp_path):
    return DocumentStore(str(tmp_path / "documents.json"))


class FakePlayer:
    """Records play() calls; the test fires playback completion itself."""

    def __init__(self):
        self.played: list[str] = []

    def play(self, data_uri: str):
        self.played.append(data_uri)

    def stop(self):
        pass


@pytest.fixture
def player():
    return FakePlayer()

"""Tests for settings and persona loading."""

import os
from pathlib import Path

import pytest

from magpie.config import PersonaConfig, Settings

REQUIRED = {"DISCORD_TOKEN": "token", "OPENAI_API_KEY": "key"}


class TestSettings:
    def test_missing_required(self):
        with pytest.raises(SystemExit, match="DISCORD_TOKEN"):
            Settings.from_env({"OPENAI_API_KEY": "key"})

    def test_defaults(self):
        settings = Settings.from_env(REQUIRED)
        assert settings.model == "gpt-5.1"
        assert settings.embedding_dimensions == 768
        assert settings.memory_backend == "sqlite"
        assert settings.memory_db == Path("mem") / "memory.db"
        assert settings.entities_dir == Path("mem") / "entities"
        assert settings.guild_id is None

    def test_overrides(self):
        settings = Settings.from_env(
            {
                **REQUIRED,
                "MEM_DIR": "/data",
                "MEMORY_BACKEND": "Memory",
                "MAIN_CHANNEL_ID": " 42 ",
                "WAKE_WORD": "Pie",
                "DISCORD_GUILD_ID": "7",
                "LOG_LEVEL": "debug",
            }
        )
        assert settings.memory_db == Path("/data/memory.db")
        assert settings.memory_backend == "memory"
        assert settings.main_channel_id == "42"
        assert settings.wake_word == "pie"
        assert settings.guild_id == 7
        assert settings.log_level == "DEBUG"

    def test_unknown_backend_falls_back(self):
        assert Settings.from_env({**REQUIRED, "MEMORY_BACKEND": "redis"}).memory_backend == "sqlite"


class TestPersona:
    def test_default_persona_loads(self):
        prompt = PersonaConfig().get_prompt()
        assert "magpie" in prompt

    def test_override_replaces_sections(self, tmp_path):
        override = tmp_path / "persona.yaml"
        override.write_text("tone:\n  - you are a grumpy crow.\n", encoding="utf-8")
        prompt = PersonaConfig(override_path=override).get_prompt()
        assert prompt.splitlines()[0] == "you are a grumpy crow."
        assert "never invent facts" in prompt

    def test_hot_reload(self, tmp_path):
        override = tmp_path / "persona.yaml"
        override.write_text("tone: first\n", encoding="utf-8")
        persona = PersonaConfig(override_path=override)
        assert persona.get_prompt().startswith("first")
        override.write_text("tone: second\n", encoding="utf-8")
        stat = override.stat()
        os.utime(override, (stat.st_atime, stat.st_mtime + 5))
        assert persona.get_prompt().startswith("second")

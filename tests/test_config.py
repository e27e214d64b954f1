"""Tests for Settings validation and the frozen per-task snapshots."""

import pytest
from pydantic import ValidationError

from conduit.auth import CODEX_ACCESS_TOKEN, OAUTH_ACCESS_TOKEN, OAUTH_REFRESH_TOKEN
from conduit.config import Settings
from conduit.main import seed_store


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("CONDUIT_API_KEY", "ANTHROPIC_API_KEY", "CONDUIT_MODEL", "CONDUIT_MAX_STEPS"):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.max_steps == 50
        assert settings.compaction_threshold == 170_000
        assert settings.auth_method == "api_key"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("CONDUIT_MODEL", "gpt-4o")
        monkeypatch.setenv("CONDUIT_MAX_STEPS", "0")
        monkeypatch.setenv("CONDUIT_NATIVE_HOST_COMMAND", '["node", "host.js"]')
        settings = Settings(_env_file=None)
        assert settings.model == "gpt-4o"
        assert settings.max_steps == 0
        assert settings.llm_config().native_host_command == ("node", "host.js")

    def test_anthropic_api_key_alias(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-from-env")
        assert Settings(_env_file=None).api_key == "sk-ant-from-env"

    def test_invalid_max_tokens(self):
        with pytest.raises(ValidationError, match="max_tokens"):
            Settings(_env_file=None, max_tokens=0)

    def test_negative_max_steps(self):
        with pytest.raises(ValidationError, match="max_steps"):
            Settings(_env_file=None, max_steps=-1)

    def test_threshold_must_exceed_overhead(self):
        with pytest.raises(ValidationError, match="compaction_threshold"):
            Settings(_env_file=None, compaction_threshold=6_000)


class TestSnapshots:
    def test_snapshots_are_frozen(self):
        settings = Settings(_env_file=None)
        llm = settings.llm_config()
        agent = settings.agent_config()
        with pytest.raises(ValidationError):
            llm.model = "other"
        with pytest.raises(ValidationError):
            agent.max_steps = 1

    def test_snapshot_unaffected_by_later_settings_change(self):
        settings = Settings(_env_file=None, model="claude-a")
        llm = settings.llm_config()
        settings.model = "claude-b"
        assert llm.model == "claude-a"
        assert settings.llm_config().model == "claude-b"


class TestSeedStore:
    @pytest.mark.asyncio
    async def test_oauth_seeds(self, monkeypatch):
        monkeypatch.setenv("CONDUIT_API_KEY", "sk-ant-oat01-x")
        settings = Settings(
            _env_file=None, auth_method="oauth", oauth_refresh_token="rt"
        )
        store = seed_store(settings)
        assert await store.get(OAUTH_ACCESS_TOKEN) == "sk-ant-oat01-x"
        assert await store.get(OAUTH_REFRESH_TOKEN) == "rt"
        assert await store.get(CODEX_ACCESS_TOKEN) is None

    @pytest.mark.asyncio
    async def test_api_key_not_stored_as_oauth_token(self, monkeypatch):
        monkeypatch.setenv("CONDUIT_API_KEY", "sk-ant-api-x")
        store = seed_store(Settings(_env_file=None))
        assert await store.get(OAUTH_ACCESS_TOKEN) is None

"""Settings via pydantic-settings with CONDUIT_ env prefix.

Settings is the mutable, process-wide source. Each task takes a frozen
snapshot (LLMConfig + AgentConfig) at start and threads it through the
gateway and runner, so a settings reload never changes a running task.
"""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

AuthMethod = Literal["api_key", "oauth", "codex_oauth"]


class LLMConfig(BaseModel):
    """Immutable endpoint/model/credential snapshot for one task."""

    model_config = ConfigDict(frozen=True)

    api_base_url: str = "https://api.anthropic.com/v1/messages"
    provider: str | None = None  # explicit adapter name overrides URL detection
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 10000
    api_key: str = ""
    auth_method: AuthMethod = "api_key"
    user_id: str = "conduit"

    request_timeout: float = 120.0  # tool-enabled calls
    simple_timeout: float = 60.0  # summarization and other non-tool calls
    connect_timeout: float = 10.0

    oauth_token_url: str = "https://console.anthropic.com/v1/oauth/token"
    oauth_client_id: str = ""

    use_native_host: bool = False
    native_host_command: tuple[str, ...] = ()


class AgentConfig(BaseModel):
    """Immutable loop and compaction tuning for one task.

    The token constants are heuristics calibrated for ~200K-context
    Claude models; recalibrate before relying on them elsewhere.
    """

    model_config = ConfigDict(frozen=True)

    max_steps: int = 50  # 0 = unbounded
    system_prompt: str = ""
    compaction_threshold: int = 170_000
    overhead_tokens: int = 6_500  # system prompt + tool schemas + API overhead
    image_token_estimate: int = 1_600
    chars_per_token: float = 3.2
    preserved_image_messages: int = 3
    summary_max_tokens: int = 8_000
    log_context_above: int = 100_000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CONDUIT_", env_file=".env", extra="ignore"
    )

    # Endpoint
    api_base_url: str = "https://api.anthropic.com/v1/messages"
    provider: str | None = None
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 10000

    # Credentials -- unprefixed ANTHROPIC_API_KEY accepted for convenience
    api_key: str = Field(
        "", validation_alias=AliasChoices("CONDUIT_API_KEY", "ANTHROPIC_API_KEY")
    )
    auth_method: AuthMethod = "api_key"
    oauth_token_url: str = "https://console.anthropic.com/v1/oauth/token"
    oauth_client_id: str = ""
    # Seeds for the secret store at startup
    oauth_refresh_token: str = ""
    codex_access_token: str = ""
    codex_account_id: str = ""

    # Timeouts (seconds)
    request_timeout: float = 120.0
    simple_timeout: float = 60.0
    connect_timeout: float = 10.0

    # Native-host proxy
    use_native_host: bool = False
    native_host_command: list[str] = Field(default_factory=list)

    # Agent loop
    max_steps: int = 50
    system_prompt: str = ""

    # Compaction
    compaction_threshold: int = 170_000
    overhead_tokens: int = 6_500
    image_token_estimate: int = 1_600
    chars_per_token: float = 3.2
    preserved_image_messages: int = 3
    summary_max_tokens: int = 8_000

    # Logging
    log_level: str = "info"
    log_sink_capacity: int = 200

    @model_validator(mode="after")
    def _validate_limits(self) -> Settings:
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.max_steps < 0:
            raise ValueError("max_steps must be >= 0 (0 = unbounded)")
        if self.chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        if self.compaction_threshold <= self.overhead_tokens:
            raise ValueError(
                f"compaction_threshold ({self.compaction_threshold}) must be > "
                f"overhead_tokens ({self.overhead_tokens})"
            )
        return self

    def llm_config(self) -> LLMConfig:
        """Snapshot the endpoint configuration for one task."""
        return LLMConfig(
            api_base_url=self.api_base_url,
            provider=self.provider,
            model=self.model,
            max_tokens=self.max_tokens,
            api_key=self.api_key,
            auth_method=self.auth_method,
            request_timeout=self.request_timeout,
            simple_timeout=self.simple_timeout,
            connect_timeout=self.connect_timeout,
            oauth_token_url=self.oauth_token_url,
            oauth_client_id=self.oauth_client_id,
            use_native_host=self.use_native_host,
            native_host_command=tuple(self.native_host_command),
        )

    def agent_config(self) -> AgentConfig:
        """Snapshot loop and compaction tuning for one task."""
        return AgentConfig(
            max_steps=self.max_steps,
            system_prompt=self.system_prompt,
            compaction_threshold=self.compaction_threshold,
            overhead_tokens=self.overhead_tokens,
            image_token_estimate=self.image_token_estimate,
            chars_per_token=self.chars_per_token,
            preserved_image_messages=self.preserved_image_messages,
            summary_max_tokens=self.summary_max_tokens,
        )

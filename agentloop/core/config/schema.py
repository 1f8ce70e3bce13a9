"""AgentLoop configuration schema: YAML + Pydantic + env override."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class ProviderConfig(BaseModel):
    """Single LLM provider."""

    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """LLM providers (LiteLLM multi-provider)."""

    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    deepseek: ProviderConfig = Field(default_factory=ProviderConfig)
    groq: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)


class NewMessageMode(str, Enum):
    """When messages queued during a run reach the model."""

    INJECT_AFTER_TOOL_CALL = "inject_after_tool_call"
    WAIT_FOR_COMPLETION = "wait_for_completion"


class AgentConfig(BaseModel):
    """Main agent loop (agent.*)."""

    name: str = "AgentLoop"
    instructions: str = "You are a helpful AI assistant."
    model: str = "openai/gpt-4o"
    temperature: float = 0.7
    summarize_model: str = ""  # empty → falls back to agent.model
    summarize_max_tokens: int = 4096
    summarize_keep_tokens: int = 1024
    summarize_system_note: str | None = None
    tool_output_max_chars: int = 500_000
    recursion_limit: int = 2500
    new_message_mode: NewMessageMode = NewMessageMode.INJECT_AFTER_TOOL_CALL


class GuardConfig(BaseModel):
    """Tool usage guard (guard.*)."""

    enabled: bool = True
    max_injections: int = 2
    restriction_message: str = (
        "Do not produce a final answer directly. Before finishing, call a tool. "
        "If no tool is needed, call the 'finish' tool."
    )


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings: env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        AGENTLOOP_AGENT__MODEL=openai/gpt-4o
        AGENTLOOP_AGENT__SUMMARIZE_MAX_TOKENS=8192
        AGENTLOOP_PROVIDERS__ANTHROPIC__API_KEY=sk-...
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTLOOP_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    agent: AgentConfig = Field(default_factory=AgentConfig)
    guard: GuardConfig = Field(default_factory=GuardConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)

    # ── Computed properties ─────────────────────────────────

    @property
    def summarize_model(self) -> str:
        """Model used for history folding."""
        return self.agent.summarize_model or self.agent.model

    # ── Provider helpers ────────────────────────────────────

    def get_api_key(self, model: str | None = None) -> str | None:
        """Get API key for model name. Falls back to first available."""
        model_name = (model or self.agent.model).lower()

        keyword_map: dict[str, ProviderConfig] = {
            "anthropic": self.providers.anthropic,
            "claude": self.providers.anthropic,
            "openai": self.providers.openai,
            "gpt": self.providers.openai,
            "openrouter": self.providers.openrouter,
            "deepseek": self.providers.deepseek,
            "groq": self.providers.groq,
            "gemini": self.providers.gemini,
        }
        for keyword, provider in keyword_map.items():
            if keyword in model_name and provider.api_key:
                return provider.api_key

        # Fallback: first key found
        for name in ProvidersConfig.model_fields:
            p = getattr(self.providers, name)
            if isinstance(p, ProviderConfig) and p.api_key:
                return p.api_key
        return None

    def get_api_base(self, model: str | None = None) -> str | None:
        """Get API base URL for model name."""
        model_name = (model or self.agent.model).lower()
        if "openrouter" in model_name:
            return self.providers.openrouter.api_base or "https://openrouter.ai/api/v1"
        for name in ProvidersConfig.model_fields:
            p = getattr(self.providers, name)
            if isinstance(p, ProviderConfig) and name in model_name and p.api_base:
                return p.api_base
        return None

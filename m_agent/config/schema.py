"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from m_agent.agent.tools.approval import DEFAULT_DANGEROUS_PATTERNS
from m_agent.utils.helpers import get_data_path

DEFAULT_MODEL = "anthropic/claude-opus-4-5"
REASONING_EFFORTS = ("none", "low", "medium", "high", "xhigh")


def _default_home() -> str:
    """Default data home under the active data directory."""
    return str(get_data_path())


def _default_workspace() -> str:
    return str(get_data_path() / "workspace")


class AgentDefaults(BaseModel):
    """Default agent configuration."""
    home: str = Field(default_factory=_default_home)  # Session storage root
    workspace: str = Field(default_factory=_default_workspace)  # Tool working directory
    workspace_id: str | None = None  # Active workspace partition for conversations
    model: str = DEFAULT_MODEL
    reasoning_effort: str = "medium"  # none|low|medium|high|xhigh
    max_tokens: int = 8192
    temperature: float = 0.7
    max_steps: int = 1000
    fallback_models: list[str] = Field(default_factory=list)


class AgentsConfig(BaseModel):
    """Agent configuration."""
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)


class ProviderConfig(BaseModel):
    """LLM provider configuration."""
    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    """Configuration for LLM providers."""
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)


class ExecToolConfig(BaseModel):
    """Shell exec tool configuration."""
    timeout: int = 60
    sandbox_enabled: bool = True


class ApprovalConfig(BaseModel):
    """Defaults for per-turn approval switches (requests may override)."""
    require_unsandboxed_approval: bool = True
    require_dangerous_command_approval: bool = True
    dangerous_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_DANGEROUS_PATTERNS))


class ToolServerConfig(BaseModel):
    """External tool server (JSON-RPC over HTTP)."""
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = 30.0
    disabled: bool = False


class PluginsConfig(BaseModel):
    """Plugin loading policy."""
    enabled: bool = True
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class ToolsConfig(BaseModel):
    """Tools configuration."""
    exec: ExecToolConfig = Field(default_factory=ExecToolConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    restrict_to_workspace: bool = False  # If true, restrict file tools to the workspace directory
    policy: dict[str, str] = Field(default_factory=dict)  # tool_name -> allow|ask|deny
    risky_tools: list[str] = Field(default_factory=lambda: ["exec", "delete_file"])
    approval_mode: str = "off"  # off|confirm
    servers: dict[str, ToolServerConfig] = Field(default_factory=dict)
    plugins: PluginsConfig = Field(default_factory=PluginsConfig)


class Config(BaseSettings):
    """Root configuration for m-agent."""
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)

    @property
    def home_path(self) -> Path:
        return Path(self.agents.defaults.home).expanduser()

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.agents.defaults.workspace).expanduser()

    def model_chain(self, model: str | None = None) -> list[str]:
        """Primary model followed by unique fallbacks."""
        primary = (model or self.agents.defaults.model).strip()
        chain = [primary]
        seen = {primary.lower()}
        for raw in self.agents.defaults.fallback_models:
            candidate = (raw or "").strip()
            if candidate and candidate.lower() not in seen:
                seen.add(candidate.lower())
                chain.append(candidate)
        return chain

    def reasoning_effort(self, override: str | None = None) -> str | None:
        """Normalized reasoning effort; None when disabled."""
        value = (override or self.agents.defaults.reasoning_effort or "medium").strip().lower()
        if value not in REASONING_EFFORTS:
            value = "medium"
        return None if value == "none" else value

    model_config = SettingsConfigDict(
        env_prefix="M_AGENT_",
        env_nested_delimiter="__",
    )

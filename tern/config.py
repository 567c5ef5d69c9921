"""Settings via pydantic-settings with TERN_ env prefix.

Provider credentials use validation_alias to read the same unprefixed env
vars the vendor SDKs use (ANTHROPIC_API_KEY, OPENAI_API_KEY, ...), so an
existing shell environment works without renaming anything.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TERN_", env_file=".env")

    log_level: str = "info"

    # Anthropic -- auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    anthropic_base_url: str = "https://api.anthropic.com"

    # OpenAI and OpenAI-compatible local servers (LM Studio, Ollama)
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    openai_base_url: str = Field("", validation_alias="OPENAI_BASE_URL")
    openai_local_model: str = "local-model"

    # Azure OpenAI
    azure_openai_api_key: str = Field("", validation_alias="AZURE_OPENAI_API_KEY")
    azure_openai_resource: str = Field("", validation_alias="AZURE_OPENAI_RESOURCE")
    azure_openai_deployment: str = Field("", validation_alias="AZURE_OPENAI_DEPLOYMENT")
    azure_openai_api_version: str = "2024-02-15-preview"

    # Qwen (DashScope or a local vLLM endpoint)
    dashscope_api_key: str = Field("", validation_alias="DASHSCOPE_API_KEY")
    qwen_base_url: str = Field("", validation_alias="QWEN_BASE_URL")
    qwen_region: Literal["intl", "cn"] = "intl"
    qwen_tool_format: Literal["openai", "hermes", "native"] = "hermes"
    qwen_model: str = "qwen-max"
    qwen_thinking: bool = False
    qwen_thinking_budget: int = 0  # 0 = no explicit budget

    # LLM
    model: str = ""  # empty = provider default
    max_tokens: int = 4096
    temperature: float | None = None
    system_prompt: str = ""  # empty = built-in prompt
    stream: bool = False

    # HTTP
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Provider retry policy
    retry_max_attempts: int = 3
    retry_initial_delay: float = 0.1  # seconds
    retry_max_delay: float = 30.0  # seconds
    retry_multiplier: float = 2.0
    retry_jitter: float = 0.1  # fraction of the computed delay

    # Agent loop
    max_iterations: int = 20  # provider round-trips per user turn
    loop_streak: int = 3  # identical turns tolerated before the guard vetoes
    loop_history: int = 15  # signature sets kept per session
    approval_timeout: float = 300.0  # seconds
    auto_approve: bool = False
    tool_timeout: int = 30  # seconds
    parallel_tools: bool = True

    # Workspace + storage
    workspace_dir: str = Field(default_factory=lambda: str(Path.cwd()))
    data_dir: str = Field(default_factory=lambda: str(Path.home() / ".tern"))
    db_path: str = ""  # empty = <data_dir>/tern.db
    persistence_enabled: bool = True

    # Tools
    bash_max_timeout: int = 300
    http_max_chars: int = 10000

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.loop_streak < 1:
            raise ValueError("loop_streak must be >= 1")
        if self.loop_history < 2:
            raise ValueError("loop_history must be >= 2 to compare consecutive turns")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        if not 0.0 <= self.retry_jitter <= 1.0:
            raise ValueError("retry_jitter must be within [0, 1]")
        if self.qwen_thinking_budget and not self.qwen_thinking:
            raise ValueError("qwen_thinking_budget requires qwen_thinking=true")
        return self

    @property
    def db_url(self) -> str:
        path = self.db_path or str(Path(self.data_dir) / "tern.db")
        if path == ":memory:":
            return "sqlite+aiosqlite:///:memory:"
        return f"sqlite+aiosqlite:///{path}"

    @property
    def plan_cache_dir(self) -> Path:
        return Path(self.data_dir) / "plans"

"""Configuration management for the arena."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

BACKEND_CLAUDE_CLI = "claude-cli"
BACKEND_AZURE_OPENAI = "azure-openai"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_sessions_dir() -> Path:
    pai_dir = os.getenv("PAI_DIR") or str(Path.home() / ".claude")
    return Path(pai_dir) / "MEMORY" / "arena" / "sessions"


@dataclass(frozen=True)
class AzureOpenAIConfig:
    """Azure OpenAI service configuration."""

    api_key: str
    endpoint: str
    api_version: str = "2024-02-15-preview"
    deployment_name: str = "gpt-4"
    max_concurrent: int = 50


@dataclass(frozen=True)
class AgentProcessConfig:
    """How agent subprocesses are launched."""

    binary: str = "claude"
    timeout_seconds: float = 600.0
    dangerous_mode: bool = True
    output_format: str = "text"


@dataclass(frozen=True)
class Config:
    """Arena configuration loaded from environment variables."""

    sessions_dir: Path = field(default_factory=_default_sessions_dir)
    agent: AgentProcessConfig = field(default_factory=AgentProcessConfig)
    backend: str = BACKEND_CLAUDE_CLI
    default_budget: int = 1000
    port: int = 3850
    log_level: str = "INFO"
    azure_openai: Optional[AzureOpenAIConfig] = None
    consult_models: Tuple[str, ...] = ()
    consult_timeout_seconds: float = 30.0
    environment: str = "development"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        azure_key = os.getenv("AZURE_OPENAI_KEY")
        azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")

        azure_config = None
        if azure_key and azure_endpoint:
            azure_config = AzureOpenAIConfig(
                api_key=azure_key,
                endpoint=azure_endpoint,
                api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview"),
                deployment_name=os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4"),
                max_concurrent=int(os.getenv("AZURE_OPENAI_MAX_CONCURRENT", "50")),
            )

        sessions_dir = os.getenv("ARENA_HOME")
        return cls(
            sessions_dir=Path(sessions_dir).expanduser() if sessions_dir else _default_sessions_dir(),
            agent=AgentProcessConfig(
                binary=os.getenv("ARENA_CLAUDE_BIN", "claude"),
                timeout_seconds=float(os.getenv("ARENA_AGENT_TIMEOUT", "600")),
                dangerous_mode=_env_flag("ARENA_DANGEROUS_MODE", True),
            ),
            backend=os.getenv("ARENA_BACKEND", BACKEND_CLAUDE_CLI),
            default_budget=int(os.getenv("ARENA_DEFAULT_BUDGET", "1000")),
            port=int(os.getenv("ARENA_PORT", "3850")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            azure_openai=azure_config,
            consult_models=tuple(
                name.strip() for name in os.getenv("ARENA_CONSULT_MODELS", "").split(",") if name.strip()
            ),
            consult_timeout_seconds=float(os.getenv("ARENA_CONSULT_TIMEOUT", "30")),
            environment=os.getenv("ENVIRONMENT", "development"),
        )


# Global config instance
config = Config.from_env()

"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path("~/.agent-fleet")


class AgentsConfig(BaseModel):
    """Scheduling configuration."""
    # auto: high priority -> process backend, everything else -> API backend
    backend_mode: Literal["auto", "process_only", "api_only"] = "auto"
    max_concurrent: int = 0  # 0 = unlimited
    max_retries: int = 1  # 0 = retries disabled
    retry_base_delay_ms: int = 30_000

    @field_validator("max_concurrent", "max_retries")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must be >= 0, got {v}")
        return v

    @field_validator("retry_base_delay_ms")
    @classmethod
    def validate_base_delay(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"retry_base_delay_ms must be > 0, got {v}")
        return v


class ProcessBackendConfig(BaseModel):
    """Agent CLI subprocess settings."""
    executable: str = "claude"
    allowed_tools: List[str] = Field(default_factory=lambda: [
        "Read", "Write", "Edit", "Bash", "Glob", "Grep", "WebFetch",
    ])
    timeout: float = 600  # 10 minutes wall clock per session
    kill_grace_period: float = 5  # SIGTERM -> SIGKILL escalation window

    @field_validator("timeout", "kill_grace_period")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be > 0, got {v}")
        return v


class ApiBackendConfig(BaseModel):
    """Hosted chat-completions tool loop settings (via litellm)."""
    model: str = "gpt-4o"
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    max_turns: int = 20
    timeout: float = 600
    command_timeout: float = 60  # Per run_command tool call
    max_tokens: int = 4096

    @field_validator("api_base")
    @classmethod
    def validate_api_base(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(
                f"api_base must start with http:// or https://, got '{v}'"
            )
        return v

    @field_validator("max_turns")
    @classmethod
    def validate_max_turns(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_turns must be >= 1, got {v}")
        return v


class SessionsConfig(BaseModel):
    """Where session state is persisted."""
    # Shared, write-only projection for other processes
    snapshot_path: Path = Field(default=DEFAULT_HOME / "sessions.json")
    # This process's own durable sessions + queue, loaded once at startup
    state_path: Optional[Path] = Field(default=DEFAULT_HOME / "state.json")

    @field_validator("snapshot_path", "state_path")
    @classmethod
    def expand_user(cls, v: Optional[Path]) -> Optional[Path]:
        return Path(v).expanduser() if v is not None else None


class FleetConfig(BaseSettings):
    """Main agent-fleet configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_FLEET_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    process_backend: ProcessBackendConfig = Field(default_factory=ProcessBackendConfig)
    api_backend: ApiBackendConfig = Field(default_factory=ApiBackendConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    logs_dir: Path = Field(default=DEFAULT_HOME / "logs")
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        normalized = v.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "log_level must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("logs_dir")
    @classmethod
    def expand_logs_dir(cls, v: Path) -> Path:
        return Path(v).expanduser()

    def with_overrides(self, **agent_overrides: Any) -> "FleetConfig":
        """Return a copy with non-None scheduling overrides applied (CLI flags)."""
        updates = {k: v for k, v in agent_overrides.items() if v is not None}
        if not updates:
            return self
        agents = AgentsConfig(**{**self.agents.model_dump(), **updates})
        return self.model_copy(update={"agents": agents})


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> FleetConfig:
    """Internal loader for fleet config (no caching)."""
    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    data = _expand_env_vars(data)
    return FleetConfig(**data)


def load_config(config_path: Path = Path("agent-fleet.yaml")) -> FleetConfig:
    """Load fleet configuration from YAML file.

    Uses mtime-based caching: returns the cached config if the file hasn't changed.
    """
    if not config_path.exists():
        logger.debug(f"Config file not found: {config_path}. Using default configuration.")
        return FleetConfig()

    resolved = config_path.resolve()
    result = _get_cached_or_load(resolved, _load_config_from_file)
    return result if result is not None else FleetConfig()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ${VAR} values from the environment.

    Args:
        data: Config data to process
        _path: Internal tracking for warnings (e.g., "api_backend.api_key")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used, which may cause errors."
            )
            return data
        return value
    return data

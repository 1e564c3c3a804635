"""Engine configuration: service endpoints, limits, and declared tools.

Configuration file location priority:
1. Explicit path passed to SettingsLoader
2. BLOCKFLOW_CONFIG environment variable
3. Standard location: ~/.blockflow/config.yml
4. Built-in defaults (if no config file found)

Environment overrides (applied after the file, clamped to valid ranges):
- BLOCKFLOW_CODE_EXECUTION_URL
- BLOCKFLOW_TOOL_SERVICE_URL
- BLOCKFLOW_FUNCTION_TIMEOUT_MS (1-900000)
- BLOCKFLOW_MAX_WORKFLOW_DEPTH (1-100)
- BLOCKFLOW_WORKFLOW_PATHS (comma-separated directories)

Example config file:
```yaml
code_execution_url: "http://localhost:3000/api/function/execute"
tool_service_url: "http://localhost:3000/api"
function_timeout_ms: 5000
max_workflow_depth: 10
parallel_continue_on_error: false

tools:
  - id: http_request
    name: HTTP Request
    params:
      url: {type: string, required: true}
      method: {type: string, default: GET}
```
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .registries import ToolConfig

logger = logging.getLogger(__name__)

DEFAULT_FUNCTION_TIMEOUT_MS = 5000
DEFAULT_MAX_WORKFLOW_DEPTH = 10


class EngineSettings(BaseModel):
    """Validated engine settings."""

    code_execution_url: str | None = Field(
        default=None, description="Endpoint of the sandboxed code-execution service"
    )
    tool_service_url: str | None = Field(
        default=None, description="Base URL of the tool-execution service"
    )
    service_timeout: float = Field(
        default=30.0, gt=0, le=3600, description="HTTP timeout for tool calls in seconds"
    )
    function_timeout_ms: int = Field(
        default=DEFAULT_FUNCTION_TIMEOUT_MS,
        ge=1,
        le=900_000,
        description="Default function block timeout in milliseconds",
    )
    max_workflow_depth: int = Field(
        default=DEFAULT_MAX_WORKFLOW_DEPTH,
        ge=1,
        le=100,
        description="Maximum child-workflow nesting depth",
    )
    max_loop_iterations: int = Field(
        default=1000, ge=1, le=100_000, description="Upper bound on iterations of one loop"
    )
    max_parallel_branches: int = Field(
        default=20, ge=1, le=1000, description="Branches of one parallel block run at once"
    )
    parallel_continue_on_error: bool = Field(
        default=False,
        description="Default for parallels without continue_on_error: keep other branches",
    )
    workflow_paths: list[str] = Field(
        default_factory=list, description="Directories holding workflows for child calls"
    )
    tools: list[ToolConfig] = Field(default_factory=list, description="Declared tools")

    model_config = {"extra": "forbid"}

    @field_validator("tools")
    @classmethod
    def validate_unique_tools(cls, tools: list[ToolConfig]) -> list[ToolConfig]:
        """Reject duplicate tool ids."""
        seen: set[str] = set()
        for tool in tools:
            if tool.id in seen:
                raise ValueError(f"Duplicate tool id in config: {tool.id}")
            seen.add(tool.id)
        return tools


def _clamped_int_env(name: str, default: int, low: int, high: int) -> int:
    """Read an integer env var, clamped to [low, high]; invalid values fall back."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(low, min(high, int(raw)))
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


class SettingsLoader:
    """
    Locates, loads, and caches EngineSettings.

    Example:
        loader = SettingsLoader()
        settings = loader.load()
        settings.max_workflow_depth  # 10 unless configured
    """

    def __init__(self, config_path: str | Path | None = None):
        """
        Initialize loader.

        Args:
            config_path: Explicit config file path (highest priority)
        """
        self._explicit_path = Path(config_path).expanduser() if config_path else None
        self._settings: EngineSettings | None = None

    def get_config_path(self) -> Path | None:
        """
        Resolve the config file location.

        Returns:
            Path to an existing config file, or None to use built-in defaults
        """
        # Priority 1: Explicit path
        if self._explicit_path is not None:
            if self._explicit_path.exists():
                return self._explicit_path
            logger.warning(f"Explicit config path does not exist: {self._explicit_path}")
            return None

        # Priority 2: Environment variable
        env_path_str = os.getenv("BLOCKFLOW_CONFIG")
        if env_path_str:
            env_path = Path(env_path_str).expanduser()
            if env_path.exists():
                return env_path
            logger.warning(f"BLOCKFLOW_CONFIG path does not exist: {env_path}")
            return None

        # Priority 3: Standard location
        standard_path = Path.home() / ".blockflow" / "config.yml"
        if standard_path.exists():
            return standard_path

        return None

    def load(self) -> EngineSettings:
        """
        Load settings from file (if any) and apply environment overrides.

        The result is cached; call once during startup.

        Returns:
            Validated EngineSettings

        Raises:
            ValueError: If the config file is invalid or fails validation
        """
        if self._settings is not None:
            return self._settings

        raw: dict[str, Any] = {}
        config_path = self.get_config_path()

        if config_path is None:
            logger.info("No config file found, using built-in defaults")
        else:
            logger.info(f"Loading config from: {config_path}")
            try:
                with open(config_path, encoding="utf-8") as f:
                    loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Failed to parse config {config_path}: {e}") from e

            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                raise ValueError(f"Config file {config_path} must contain a YAML mapping")
            raw = loaded

        raw = self._apply_env_overrides(raw)

        try:
            settings = EngineSettings(**raw)
        except ValueError as e:
            raise ValueError(f"Invalid engine configuration: {e}") from e

        logger.info(
            f"Engine settings: {len(settings.tools)} tools, "
            f"max depth {settings.max_workflow_depth}, "
            f"function timeout {settings.function_timeout_ms}ms"
        )
        self._settings = settings
        return settings

    @staticmethod
    def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
        """Overlay BLOCKFLOW_* environment variables on file values."""
        merged = dict(raw)

        for key, env_name in (
            ("code_execution_url", "BLOCKFLOW_CODE_EXECUTION_URL"),
            ("tool_service_url", "BLOCKFLOW_TOOL_SERVICE_URL"),
        ):
            value = os.getenv(env_name)
            if value:
                merged[key] = value

        if os.getenv("BLOCKFLOW_FUNCTION_TIMEOUT_MS") is not None:
            merged["function_timeout_ms"] = _clamped_int_env(
                "BLOCKFLOW_FUNCTION_TIMEOUT_MS", DEFAULT_FUNCTION_TIMEOUT_MS, 1, 900_000
            )
        if os.getenv("BLOCKFLOW_MAX_WORKFLOW_DEPTH") is not None:
            merged["max_workflow_depth"] = _clamped_int_env(
                "BLOCKFLOW_MAX_WORKFLOW_DEPTH", DEFAULT_MAX_WORKFLOW_DEPTH, 1, 100
            )

        paths = os.getenv("BLOCKFLOW_WORKFLOW_PATHS", "")
        if paths.strip():
            extra = [p.strip() for p in paths.split(",") if p.strip()]
            merged["workflow_paths"] = [*merged.get("workflow_paths", []), *extra]

        return merged

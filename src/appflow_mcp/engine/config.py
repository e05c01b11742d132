"""Configuration for the generation backend, apps and workflows.

Configuration file location priority:
1. Explicit path passed to ConfigLoader
2. APPFLOW_CONFIG environment variable
3. Standard location: ~/.appflow/config.yml
4. Built-in defaults (if no config file found)

Example config file:
```yaml
version: "1.0"

backend:
  base_url: "http://localhost:11434"
  timeout: 30
  max_retries: 3
  retry_delay: 1.0

node:
  max_retries: 3
  retry_delay: 3.0

prompts:
  - name: code_assistant
    description: Helps with coding questions
    prompt_template: "You are a coding assistant. User question: {user_input}"

apps:
  - app_name: Code Helper
    model: deepseek-coder:6.7b
    prompt: code_assistant
    default_temperature: 0.7
    max_tokens: 1024
    use_system_prompt: true
    system_prompt: You are a professional coding assistant.

workflows:
  - id: review
    name: Review then polish
    nodes:
      - {id: n1, app_name: Code Helper, position: 0}
      - {id: n2, app_name: Writing Helper, position: 1}
```

The APPFLOW_BACKEND_URL environment variable overrides backend.base_url.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .models import AppConfig, ModelConfig, ModelParameters, Prompt, Workflow
from .ollama_client import DEFAULT_BASE_URL, OllamaClient

logger = logging.getLogger(__name__)

# ===========================================================================
# Configuration Models
# ===========================================================================


class BackendConfig(BaseModel):
    """Generation backend connection and transport retry policy."""

    base_url: str = Field(default=DEFAULT_BASE_URL, description="Backend root URL")
    timeout: float = Field(default=30.0, gt=0, le=1800, description="Per-request deadline (s)")
    probe_timeout: float = Field(default=5.0, gt=0, le=60, description="Availability probe (s)")
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries after first attempt")
    retry_delay: float = Field(
        default=1.0, ge=0.0, le=60.0, description="Initial retry delay (s), doubles per retry"
    )

    def create_client(self) -> OllamaClient:
        """Build an OllamaClient from these settings."""
        return OllamaClient(
            base_url=self.base_url,
            timeout=self.timeout,
            probe_timeout=self.probe_timeout,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
        )


class NodeRetryConfig(BaseModel):
    """Node-level retry policy (whole node re-executed with a fixed delay)."""

    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay: float = Field(default=3.0, ge=0.0, le=300.0)


class AppflowConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(default="1.0", description="Configuration schema version")
    backend: BackendConfig = Field(default_factory=BackendConfig)
    node: NodeRetryConfig = Field(default_factory=NodeRetryConfig)
    models: list[ModelConfig] = Field(default_factory=list)
    prompts: list[Prompt] = Field(default_factory=list)
    apps: list[AppConfig] = Field(default_factory=list)
    workflows: list[Workflow] = Field(default_factory=list)
    history_limit: int | None = Field(
        default=None, ge=1, description="Maximum history entries kept per workflow"
    )

    @field_validator("apps")
    @classmethod
    def validate_unique_app_names(cls, v: list[AppConfig]) -> list[AppConfig]:
        names = [app.app_name for app in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate app names: {', '.join(duplicates)}")
        return v

    @field_validator("workflows")
    @classmethod
    def validate_unique_workflow_ids(cls, v: list[Workflow]) -> list[Workflow]:
        ids = [workflow.id for workflow in v]
        duplicates = sorted({wid for wid in ids if ids.count(wid) > 1})
        if duplicates:
            raise ValueError(f"Duplicate workflow ids: {', '.join(duplicates)}")
        return v

    def validate_references(self) -> None:
        """
        Check cross references after the model is constructed.

        Apps must reference existing prompts. Workflow nodes referencing
        unknown apps only produce a warning: resolving them fails at run time.

        Raises:
            ValueError: If an app references a non-existent prompt
        """
        prompt_names = {prompt.name for prompt in self.prompts}
        for app in self.apps:
            if app.prompt not in prompt_names:
                available = ", ".join(sorted(prompt_names)) or "none"
                raise ValueError(
                    f"App '{app.app_name}' references unknown prompt '{app.prompt}'. "
                    f"Available prompts: {available}"
                )

        app_names = {app.app_name for app in self.apps}
        for workflow in self.workflows:
            for node in workflow.nodes:
                if node.app_name not in app_names:
                    logger.warning(
                        f"Workflow '{workflow.id}' node '{node.id}' references unknown app "
                        f"'{node.app_name}'; the node will fail when executed"
                    )


def default_config() -> AppflowConfig:
    """Built-in defaults used when no config file exists."""
    return AppflowConfig(
        models=[
            ModelConfig(name="deepseek-coder:6.7b", parameters=ModelParameters()),
            ModelConfig(name="codellama:7b", parameters=ModelParameters()),
            ModelConfig(name="llama2:7b", parameters=ModelParameters()),
        ],
        prompts=[
            Prompt(
                name="code_assistant",
                description="Helps with coding questions",
                prompt_template="You are a coding assistant. User question: {user_input}",
                system_prompt=(
                    "You are a helpful coding assistant that provides clear and concise answers."
                ),
            ),
            Prompt(
                name="writing_assistant",
                description="Helps with writing and editing",
                prompt_template=(
                    "You are a writing assistant. Please help with the following: {user_input}"
                ),
                system_prompt=(
                    "You are a professional writing assistant focused on clarity and style."
                ),
            ),
        ],
        apps=[
            AppConfig(
                app_name="Code Helper",
                model="deepseek-coder:6.7b",
                prompt="code_assistant",
                default_temperature=0.7,
                max_tokens=1024,
                use_system_prompt=True,
                system_prompt="You are a professional coding assistant.",
            ),
            AppConfig(
                app_name="Writing Helper",
                model="llama2:7b",
                prompt="writing_assistant",
                default_temperature=0.8,
                max_tokens=2048,
                use_system_prompt=True,
                system_prompt="You are a professional writing assistant.",
            ),
        ],
    )


# ===========================================================================
# Configuration Loader
# ===========================================================================


class ConfigLoader:
    """
    Loader for appflow configuration from YAML.

    Usage:
        ```python
        loader = ConfigLoader()
        config = loader.load_config()
        client = config.backend.create_client()
        ```

    The loaded config is cached; call load_config() once during startup.
    """

    def __init__(self, config_path: str | Path | None = None):
        """
        Initialize config loader with optional explicit path.

        Args:
            config_path: Explicit path to config file (optional).
                If not provided, uses environment variable or standard location.
        """
        self._config: AppflowConfig | None = None
        self._explicit_path = Path(config_path) if config_path else None

    def get_config_path(self) -> Path | None:
        """
        Determine config file path using priority order.

        Returns:
            Path to config file, or None if no file exists
        """
        if self._explicit_path:
            if self._explicit_path.exists():
                return self._explicit_path
            logger.warning(f"Explicit config path does not exist: {self._explicit_path}")
            return None

        env_path_str = os.getenv("APPFLOW_CONFIG")
        if env_path_str:
            env_path = Path(env_path_str).expanduser()
            if env_path.exists():
                return env_path
            logger.warning(f"APPFLOW_CONFIG path does not exist: {env_path}")
            return None

        standard_path = Path.home() / ".appflow" / "config.yml"
        if standard_path.exists():
            return standard_path

        return None

    def load_config(self) -> AppflowConfig:
        """
        Load and validate configuration.

        Returns:
            Validated AppflowConfig (built-in defaults if no file found)

        Raises:
            ValueError: If the config file is invalid or fails validation
        """
        if self._config is not None:
            return self._config

        config_path = self.get_config_path()

        if config_path is None:
            logger.info("No config file found. Using built-in default apps and prompts.")
            config = default_config()
        else:
            logger.info(f"Loading config from: {config_path}")
            config = self._load_file(config_path)

        backend_url = os.getenv("APPFLOW_BACKEND_URL")
        if backend_url:
            config.backend.base_url = backend_url

        logger.info(
            f"Loaded config: {len(config.apps)} apps, {len(config.prompts)} prompts, "
            f"{len(config.workflows)} workflows, backend={config.backend.base_url}"
        )
        self._config = config
        return config

    @staticmethod
    def _load_file(config_path: Path) -> AppflowConfig:
        try:
            with open(config_path, encoding="utf-8") as f:
                raw_config: Any = yaml.safe_load(f)

            if raw_config is None:
                raw_config = {}
            if not isinstance(raw_config, dict):
                raise ValueError("Config file must contain a YAML dictionary")

            config = AppflowConfig(**raw_config)
            config.validate_references()
            return config

        except (yaml.YAMLError, ValueError) as e:
            raise ValueError(f"Failed to load config from {config_path}: {e}") from e


__all__ = [
    "BackendConfig",
    "NodeRetryConfig",
    "AppflowConfig",
    "ConfigLoader",
    "default_config",
]

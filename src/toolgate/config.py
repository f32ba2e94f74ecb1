"""
Toolgate Configuration

Workspace policy loaded from two optional JSON files:

    ~/.toolgate/config.json              user defaults
    <project>/.toolgate/config.json      project overrides

Project values override user values key by key; nested sections
(e.g. ``tools``) are merged one level deep. A missing file is not an
error. Malformed JSON or a value that fails validation raises
ConfigError naming the offending file.

Environment overrides:
    TOOLGATE_MODEL      model id for the Claude client
    TOOLGATE_LOG_LEVEL  read by toolgate.logging
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from toolgate.exceptions import ConfigError
from toolgate.logging import get_logger
from toolgate.safety.paths import AllowedDirectorySet

logger = get_logger("toolgate.config")

CONFIG_DIR_NAME = ".toolgate"
CONFIG_FILE_NAME = "config.json"


class DynamicToolsConfig(BaseModel):
    enabled: bool = True
    max_tools: int = Field(default=10, ge=0)


class BashConfig(BaseModel):
    timeout_seconds: float = Field(default=90.0, gt=0)


class ToolsConfig(BaseModel):
    dynamic_tools: DynamicToolsConfig = Field(default_factory=DynamicToolsConfig)
    bash: BashConfig = Field(default_factory=BashConfig)
    max_output_bytes: int = Field(default=1_000_000, ge=1024, le=16_777_216)


class WorkspaceConfig(BaseModel):
    """Everything the core needs from the config collaborator."""

    working_dir: str = Field(default_factory=os.getcwd)
    allowed_dirs: list[str] = Field(default_factory=list)
    read_only_files: list[str] = Field(default_factory=list)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    auto_accept: bool = False
    model: str = ""
    max_turns: int = Field(default=25, ge=1)

    def allowed_directory_set(self) -> AllowedDirectorySet:
        """Immutable sandbox roots; the working directory when none are configured."""
        roots = self.allowed_dirs or [self.working_dir]
        return AllowedDirectorySet(roots, working_dir=self.working_dir)


def user_config_path() -> Path:
    return Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def project_config_path(working_dir: str | os.PathLike[str]) -> Path:
    return Path(working_dir) / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def read_config_file(path: Path) -> dict[str, Any]:
    """Parsed JSON object from `path`, or {} when the file does not exist."""
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(str(path), f"invalid JSON at line {e.lineno}: {e.msg}") from e
    except OSError as e:
        raise ConfigError(str(path), str(e)) from e
    if not isinstance(data, dict):
        raise ConfigError(str(path), "top-level value must be a JSON object")
    return data


def merge_config(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Shallow merge per section: dict values are merged one level deep."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(
    working_dir: str | os.PathLike[str] | None = None,
    *,
    user_path: Path | None = None,
    project_path: Path | None = None,
) -> WorkspaceConfig:
    """Load and validate the workspace configuration.

    Raises:
        ConfigError: a config file is malformed or fails validation.
    """
    workdir = os.path.abspath(os.fspath(working_dir)) if working_dir is not None else os.getcwd()
    user_file = user_path or user_config_path()
    project_file = project_path or project_config_path(workdir)

    user_data = read_config_file(user_file)
    project_data = read_config_file(project_file)
    merged = merge_config(user_data, project_data)
    merged["working_dir"] = workdir

    env_model = os.environ.get("TOOLGATE_MODEL")
    if env_model:
        merged["model"] = env_model

    try:
        config = WorkspaceConfig.model_validate(merged)
    except ValidationError as e:
        source = project_file if project_data else user_file
        first = e.errors(include_url=False)[0]
        loc = ".".join(str(p) for p in first["loc"])
        raise ConfigError(str(source), f"{loc}: {first['msg']}") from e

    logger.debug(
        "Configuration loaded",
        extra={"reason": f"user={bool(user_data)} project={bool(project_data)}"},
    )
    return config

"""Configuration for the change tracking engine."""

import json
import os
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ValidationError

HOME_ENV_VAR = "PAGE_CHANGES_HOME"
CONFIG_FILE_NAME = "config.json"


class ChangesConfig(BaseModel):
    """Locations and limits used by the store, baseline and service."""

    home: Path
    retention_days: int = 30
    max_file_size: int = 1_000_000
    read_retry_attempts: int = 4
    read_retry_backoff: float = 0.08
    context_lines: int = 4

    @property
    def pages_dir(self) -> Path:
        """Root of the tracked page tree."""
        return self.home / "pages"

    @property
    def changes_dir(self) -> Path:
        """Root of the persisted change sets."""
        return self.home / "changes"

    @property
    def debug_log(self) -> Path:
        return self.home / "debug.log"


def default_home() -> Path:
    """Resolve the base directory from the environment."""
    env_home = os.environ.get(HOME_ENV_VAR)
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".page-changes"


def load_config(home: Optional[Union[str, Path]] = None) -> ChangesConfig:
    """Load configuration, applying overrides from <home>/config.json if present."""
    home_path = Path(home).expanduser() if home else default_home()
    overrides = {}

    config_file = home_path / CONFIG_FILE_NAME
    if config_file.exists():
        try:
            overrides = json.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Could not read {config_file}: {e}") from e
        if not isinstance(overrides, dict):
            raise ValueError(f"{config_file} must contain a JSON object")
        overrides.pop("home", None)

    try:
        return ChangesConfig(home=home_path, **overrides)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration in {config_file}: {e}") from e

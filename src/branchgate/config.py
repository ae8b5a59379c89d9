"""
Application configuration.

Values are layered, later sources winning:
    1. config/default.yaml
    2. config/config.yaml (local overrides, not committed)
    3. BRANCHGATE_* environment variables (a .env file is loaded by the entry points)
"""

import os
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from branchgate.errors import ConfigError

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_DIR / "config"
DATA_DIR = Path(os.getenv("BRANCHGATE_DATA_DIR", str(PROJECT_DIR / ".branchgate")))

ENV_PREFIX = "BRANCHGATE_"
CONFIG_FILES = ("default.yaml", "config.yaml")


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


class Config(BaseModel):
    """Runtime settings for the session service."""

    model_config = ConfigDict(validate_assignment=True, extra="ignore")

    # Policy table (YAML); None uses the built-in table
    policy_file: Optional[str] = None

    # Persistence
    store_backend: Literal["memory", "file"] = "memory"
    store_path: str = str(DATA_DIR / "store")
    namespace: Optional[str] = None

    # Upper bound for the terminal write before falling back to reconciliation
    termination_timeout_ms: int = Field(default=2000, gt=0)
    # Upper bound for every other store read or write
    store_timeout_ms: int = Field(default=2000, gt=0)

    # Identifier entropy, in bytes
    session_id_bytes: int = Field(default=16, ge=16)
    session_token_bytes: int = Field(default=32, ge=16)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def load(
        cls,
        config_dir: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "Config":
        """Build a Config from YAML files and environment variables."""
        config_dir = Path(config_dir) if config_dir else CONFIG_DIR
        env = os.environ if env is None else env

        values: Dict[str, Any] = {}
        for name in CONFIG_FILES:
            values.update(_read_yaml(config_dir / name))

        for field_name in cls.model_fields:
            raw = env.get(f"{ENV_PREFIX}{field_name.upper()}")
            if raw is None:
                continue
            values[field_name] = raw if raw != "" else None

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def reload(self, config_dir: Optional[Path] = None) -> None:
        """Re-read every source and update this instance in place."""
        fresh = Config.load(config_dir)
        for field_name in type(self).model_fields:
            setattr(self, field_name, getattr(fresh, field_name))


CONFIG = Config.load()

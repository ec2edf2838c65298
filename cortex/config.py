"""
Configuration - everything the engine needs, resolved up front.

The engine never prompts and never reads environment variables itself.
Callers build a Config (directly, or with load_config) and pass it in.

Resolution order for load_config (later wins):
1. Defaults below
2. <project>/.cortex/config.json
3. Environment (CORTEX_* variables, OPENAI_API_KEY), after loading .env
"""

import os
import json
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from cortex.errors import ConfigError
from cortex.log import set_level


CONFIG_DIR = ".cortex"
CONFIG_FILE = "config.json"
DB_FILE = "cortex.db"

DEFAULT_PROVIDER = "openai"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_DIMENSIONS = 1536

# env var -> Config field
ENV_OVERRIDES = {
    "CORTEX_DATA_DIR": "data_dir",
    "CORTEX_DB_PATH": "db_path",
    "CORTEX_EMBEDDING_PROVIDER": "embedding_provider",
    "CORTEX_EMBEDDING_MODEL": "embedding_model",
    "CORTEX_EMBEDDING_DIMENSIONS": "embedding_dimensions",
    "CORTEX_REQUEST_TIMEOUT": "request_timeout",
    "CORTEX_DEFAULT_PROJECT": "default_project",
    "CORTEX_LOG_LEVEL": "log_level",
    "OPENAI_API_KEY": "openai_api_key",
}


@dataclass
class Config:
    """Resolved runtime configuration."""
    data_dir: str = CONFIG_DIR
    db_path: Optional[str] = None          # default: <data_dir>/cortex.db
    embedding_provider: str = DEFAULT_PROVIDER   # "openai" or "sentence-transformers"
    openai_api_key: Optional[str] = None
    embedding_model: Optional[str] = None  # provider default when unset
    embedding_dimensions: int = DEFAULT_DIMENSIONS
    request_timeout: float = 30.0          # seconds, embedding round-trip only
    default_project: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self):
        try:
            self.embedding_dimensions = int(self.embedding_dimensions)
            self.request_timeout = float(self.request_timeout)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid numeric setting: {e}") from e
        if self.embedding_dimensions <= 0:
            raise ConfigError("embedding_dimensions must be positive")
        self.embedding_provider = (self.embedding_provider or DEFAULT_PROVIDER).lower()

    @property
    def database_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path)
        return Path(self.data_dir) / DB_FILE

    @property
    def vector_dir(self) -> Path:
        """ChromaDB lives next to the SQLite file."""
        return self.database_path.parent / "chromadb"

    def apply_logging(self) -> None:
        """Set every cortex logger to log_level. Call once per process."""
        set_level(self.log_level)

    def to_dict(self, redact: bool = True) -> dict:
        data = asdict(self)
        if redact and data.get("openai_api_key"):
            data["openai_api_key"] = "***"
        return data

    def save(self, path: Optional[Path] = None) -> Path:
        """Write this config as JSON (secrets included - it's a local file)."""
        path = Path(path) if path else Path(self.data_dir) / CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(redact=False), f, indent=2)
        return path


def load_config(
    project_dir: Optional[Path] = None,
    env: Optional[dict] = None,
) -> Config:
    """Build a Config for a project directory.

    Args:
        project_dir: Directory holding .cortex/ (default: current directory)
        env: Environment mapping to read (default: os.environ after load_dotenv)

    Raises:
        ConfigError: config.json exists but can't be parsed, or holds
                     unknown keys / bad values.
    """
    project_dir = Path(project_dir) if project_dir else Path.cwd()
    data_dir = project_dir / CONFIG_DIR

    if env is None:
        load_dotenv(project_dir / ".env")
        env = os.environ

    values = {"data_dir": str(data_dir)}

    config_path = data_dir / CONFIG_FILE
    if config_path.exists():
        try:
            with open(config_path) as f:
                file_values = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"invalid config {config_path}: {e}") from e
        if not isinstance(file_values, dict):
            raise ConfigError(f"invalid config {config_path}: expected an object")
        known = {f.name for f in fields(Config)}
        unknown = set(file_values) - known
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")
        values.update({k: v for k, v in file_values.items() if v is not None})

    for var, name in ENV_OVERRIDES.items():
        if env.get(var):
            values[name] = env[var]

    return Config(**values)

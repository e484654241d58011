"""
Configuration Management for AgenticHQ.

WHAT THIS FILE DOES:
-------------------
Loads configuration from YAML files with sensible defaults. Covers where
plans are stored, how progress is streamed, how the built-in tools reach
GitHub / Gmail / the document folder, and the log level.

CONFIG FILE LOCATION:
--------------------
Default: ~/.agentichq/config.yaml (or ./agentichq.yaml, ./agentichq.yml)

CONFIG FORMAT:
-------------
```yaml
storage:
  backend: "json"              # "json" or "memory"
  directory: "~/.agentichq/plans"

progress:
  queue_size: 256
  watch_timeout_seconds: 30

tools:
  github:
    api_url: "https://api.github.com"
    token_env: "GITHUB_TOKEN"
    timeout_seconds: 30
  gmail:
    smtp_host: "smtp.gmail.com"
    smtp_port: 587
    email_env: "GMAIL_EMAIL"
    app_password_env: "GMAIL_APP_PASSWORD"
  files:
    base: "~/.agentichq/documents"

logging:
  level: "INFO"
```

Secrets never go in this file. Each integration names the environment
variable that holds its credential.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


STORAGE_BACKENDS = ("json", "memory")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# =============================================================================
# CONFIGURATION DATA CLASSES
# =============================================================================

@dataclass
class StorageConfig:
    """Where plans and step executions are kept."""
    backend: str = "json"
    directory: str = "~/.agentichq/plans"

    @property
    def base_path(self) -> Path:
        """Get storage directory, expanding ~ if present."""
        return Path(self.directory).expanduser()


@dataclass
class ProgressConfig:
    """Progress channel settings."""
    queue_size: int = 256
    watch_timeout_seconds: float = 30.0


@dataclass
class GitHubConfig:
    """GitHub REST API access."""
    api_url: str = "https://api.github.com"
    token_env: str = "GITHUB_TOKEN"
    timeout_seconds: float = 30.0

    def get_token(self) -> Optional[str]:
        """Get the token from its environment variable."""
        return os.environ.get(self.token_env) if self.token_env else None


@dataclass
class GmailConfig:
    """SMTP settings for sending mail through Gmail."""
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    email_env: str = "GMAIL_EMAIL"
    app_password_env: str = "GMAIL_APP_PASSWORD"

    def get_credentials(self) -> tuple[Optional[str], Optional[str]]:
        """(sender address, app password) from the environment."""
        return os.environ.get(self.email_env), os.environ.get(self.app_password_env)


@dataclass
class FilesConfig:
    """Document folder used by FileCreator."""
    base: str = "~/.agentichq/documents"

    @property
    def base_path(self) -> Path:
        """Get base path, expanding ~ if present."""
        return Path(self.base).expanduser()


@dataclass
class ToolsConfig:
    """Settings for the built-in tool providers."""
    github: GitHubConfig = field(default_factory=GitHubConfig)
    gmail: GmailConfig = field(default_factory=GmailConfig)
    files: FilesConfig = field(default_factory=FilesConfig)


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class Config:
    """
    Complete configuration for AgenticHQ.

    This is the main configuration object that holds all settings.
    It can be loaded from a YAML file or created with defaults.
    """
    storage: StorageConfig = field(default_factory=StorageConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> dict:
        """Plain dict in the YAML layout."""
        return {
            "storage": {
                "backend": self.storage.backend,
                "directory": self.storage.directory,
            },
            "progress": {
                "queue_size": self.progress.queue_size,
                "watch_timeout_seconds": self.progress.watch_timeout_seconds,
            },
            "tools": {
                "github": {
                    "api_url": self.tools.github.api_url,
                    "token_env": self.tools.github.token_env,
                    "timeout_seconds": self.tools.github.timeout_seconds,
                },
                "gmail": {
                    "smtp_host": self.tools.gmail.smtp_host,
                    "smtp_port": self.tools.gmail.smtp_port,
                    "email_env": self.tools.gmail.email_env,
                    "app_password_env": self.tools.gmail.app_password_env,
                },
                "files": {
                    "base": self.tools.files.base,
                },
            },
            "logging": {
                "level": self.logging.level,
            },
        }


# =============================================================================
# DEFAULT CONFIGURATION
# =============================================================================

def get_default_config() -> Config:
    """
    Get the default configuration.

    Works out of the box; the GitHub and Gmail tools only need their
    environment variables set.
    """
    return Config()


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

def _section(data: dict, name: str) -> dict:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    return value


def _parse_config(data: dict) -> Config:
    """Parse a complete configuration from dict."""
    config = get_default_config()

    # Parse storage
    if "storage" in data:
        storage_data = _section(data, "storage")
        backend = storage_data.get("backend", "json")
        if backend not in STORAGE_BACKENDS:
            raise ValueError(
                f"Unknown storage backend '{backend}'. Expected one of {list(STORAGE_BACKENDS)}"
            )
        config.storage = StorageConfig(
            backend=backend,
            directory=storage_data.get("directory", "~/.agentichq/plans"),
        )

    # Parse progress
    if "progress" in data:
        progress_data = _section(data, "progress")
        config.progress = ProgressConfig(
            queue_size=int(progress_data.get("queue_size", 256)),
            watch_timeout_seconds=float(progress_data.get("watch_timeout_seconds", 30)),
        )

    # Parse tools
    if "tools" in data:
        tools_data = _section(data, "tools")
        github_data = _section(tools_data, "github")
        gmail_data = _section(tools_data, "gmail")
        files_data = _section(tools_data, "files")
        config.tools = ToolsConfig(
            github=GitHubConfig(
                api_url=github_data.get("api_url", "https://api.github.com").rstrip("/"),
                token_env=github_data.get("token_env", "GITHUB_TOKEN"),
                timeout_seconds=float(github_data.get("timeout_seconds", 30)),
            ),
            gmail=GmailConfig(
                smtp_host=gmail_data.get("smtp_host", "smtp.gmail.com"),
                smtp_port=int(gmail_data.get("smtp_port", 587)),
                email_env=gmail_data.get("email_env", "GMAIL_EMAIL"),
                app_password_env=gmail_data.get("app_password_env", "GMAIL_APP_PASSWORD"),
            ),
            files=FilesConfig(
                base=files_data.get("base", "~/.agentichq/documents"),
            ),
        )

    # Parse logging
    if "logging" in data:
        level = str(_section(data, "logging").get("level", "INFO")).upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level '{level}'. Expected one of {list(LOG_LEVELS)}")
        config.logging = LoggingConfig(level=level)

    return config


def _default_paths() -> list[Path]:
    return [
        Path.home() / ".agentichq" / "config.yaml",
        Path("./agentichq.yaml"),
        Path("./agentichq.yml"),
    ]


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to config file. If None, tries default locations:
              1. ~/.agentichq/config.yaml
              2. ./agentichq.yaml
              3. ./agentichq.yml
              4. Falls back to defaults

    Returns:
        Loaded configuration (or defaults if file not found)
    """
    # Try provided path
    if path:
        path = Path(path).expanduser()
        if path.exists():
            return load_config_from_file(path)
        raise FileNotFoundError(f"Config file not found: {path}")

    for default_path in _default_paths():
        if default_path.exists():
            return load_config_from_file(default_path)

    # Return defaults
    return get_default_config()


def load_config_from_file(path: Path) -> Config:
    """
    Load configuration from a specific file.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If a section has an unusable value
    """
    path = Path(path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")

    return _parse_config(data)


def save_config(config: Config, path: Path) -> None:
    """
    Save configuration to a YAML file.

    Args:
        config: Configuration to save
        path: Output path
    """
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

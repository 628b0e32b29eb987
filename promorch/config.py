"""
Configuration management for promorch.

Loads and validates $PROMORCH_HOME/config.yaml. An optional env_file is
loaded into the process environment (API tokens are read from there, never
from the YAML file itself).

Also validates the parameters of a promotion trigger: missing required
fields are rejected synchronously, before any project record is created.
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from promorch.errors import ConfigError


STORE_BACKENDS = ("memory", "file", "sqlite")
LOG_FORMATS = ("structured", "pretty")

# Trigger parameters that must be present and non-empty
REQUIRED_TRIGGER_PARAMS = (
    "rootFolder",
    "gbRootFolder",
    "experienceName",
    "projectExcelPath",
    "adminPageUri",
)


def get_promorch_home() -> Path:
    """Return the promorch home directory ($PROMORCH_HOME or ~/.config/promorch)."""
    env_home = os.environ.get("PROMORCH_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.config/promorch").expanduser()


@dataclass
class PromorchConfig:
    """Runtime configuration.

    Attributes:
        store_backend: Record store implementation (memory, file, sqlite)
        store_path: Directory (file) or database path (sqlite)
        chunk_size: Work items per batch
        poll_interval_seconds: Delay between bulk job status polls
        max_poll_attempts: Poll budget per bulk job
        max_submit_retries: Retries of a bulk job submission on transient errors
        submit_retry_delay_seconds: Fixed delay between submission retries
        item_retry_attempts: Attempts per collaborator call on transient errors
        item_retry_delay_seconds: Delay between those attempts
        claim_timeout_seconds: Reclaim in-progress batches older than this (None disables)
        dispatch_workers: Thread pool size for fire-and-forget dispatch
        bulk_api_base: Base URL of the bulk preview/publish admin API
        owner/repo/branch: Content repository coordinates
        admin_api_key_env: Name of the env var holding the admin API token
        content_base_url: Base URL used to fetch page content for discovery
        copy_root: Root directory for the filesystem copy client
        staging_root: Staging prefix for transformed artifacts
        enable_preview: Regexes of repos allowed to bulk preview
    """
    store_backend: str = "file"
    store_path: str = "~/.local/share/promorch/store"
    chunk_size: int = 200
    poll_interval_seconds: float = 30.0
    max_poll_attempts: int = 30
    max_submit_retries: int = 5
    submit_retry_delay_seconds: float = 5.0
    item_retry_attempts: int = 3
    item_retry_delay_seconds: float = 1.0
    claim_timeout_seconds: Optional[float] = None
    dispatch_workers: int = 8
    bulk_api_base: str = "https://admin.hlx.page"
    owner: str = ""
    repo: str = ""
    branch: str = "main"
    admin_api_key_env: str = "PROMORCH_ADMIN_API_KEY"
    content_base_url: str = ""
    copy_root: str = "~/.local/share/promorch/content"
    staging_root: str = "/.promorch-staging"
    enable_preview: list[str] = field(default_factory=list)
    log_level: str = "INFO"
    log_format: str = "structured"
    log_file: str = "~/.local/share/promorch/logs/promorch-{date}.log"
    env_file: Optional[str] = None

    @property
    def admin_api_key(self) -> Optional[str]:
        """Admin API token from the environment, if set."""
        return os.environ.get(self.admin_api_key_env) or None

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigError: On the first invalid value
        """
        if self.store_backend not in STORE_BACKENDS:
            raise ConfigError(
                f"store_backend must be one of {STORE_BACKENDS}, got: {self.store_backend}"
            )
        if self.chunk_size < 1:
            raise ConfigError(f"chunk_size must be >= 1, got: {self.chunk_size}")
        if self.poll_interval_seconds < 0:
            raise ConfigError("poll_interval_seconds must be >= 0")
        if self.max_poll_attempts < 1:
            raise ConfigError("max_poll_attempts must be >= 1")
        if self.max_submit_retries < 0:
            raise ConfigError("max_submit_retries must be >= 0")
        if self.item_retry_attempts < 1:
            raise ConfigError("item_retry_attempts must be >= 1")
        if self.claim_timeout_seconds is not None and self.claim_timeout_seconds <= 0:
            raise ConfigError("claim_timeout_seconds must be > 0 when set")
        if self.dispatch_workers < 1:
            raise ConfigError("dispatch_workers must be >= 1")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(config_path: Optional[Path] = None) -> PromorchConfig:
    """
    Load promorch configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $PROMORCH_HOME/config.yaml

    Returns:
        Validated PromorchConfig

    Raises:
        FileNotFoundError: If the config file is missing
        ConfigError: If the file is malformed or a value is invalid
    """
    if config_path is None:
        config_path = get_promorch_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"promorch config.yaml not found at {config_path}. Run 'promorch init'."
        )

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    known = set(PromorchConfig.__dataclass_fields__)
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

    config = PromorchConfig(**data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path)

    config.validate()
    return config


def validate_trigger_params(params: dict[str, Any]) -> None:
    """
    Validate the parameters of a promotion trigger.

    Either an explicit non-empty ``sourcePaths`` list or a ``draftsOnly`` flag
    must be given in addition to the required fields.

    Raises:
        ConfigError: Listing every missing parameter
    """
    missing = [name for name in REQUIRED_TRIGGER_PARAMS if not params.get(name)]
    source_paths = params.get("sourcePaths")
    if not source_paths and params.get("draftsOnly") in (None, ""):
        missing.append("sourcePaths")
    if source_paths is not None and not isinstance(source_paths, list):
        raise ConfigError("sourcePaths must be a list of paths")
    if missing:
        raise ConfigError(
            "Required data is not available to proceed with promotion: "
            + ", ".join(missing)
        )

"""
Configuration for replicawatch.

Sources, lowest to highest priority:
    1. Built-in defaults
    2. YAML config file (``--config`` or ``REPLICAWATCH_CONFIG``)
    3. Environment variables

Example config.yaml:

    instance:
      id: node1
      location: node1.cluster.local
    couchdb:
      url: http://localhost:5984
      user: admin
      password: secret
      database: zombieauth
    replication_monitor:
      url: http://replication-monitor:8080
      timeout: 5
    intervals:
      health_check: 30
      reconcile: 30
    tracked_kinds: [account, client]
    isolation:
      failure_threshold: 1
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigurationError
from .records import RecordKind

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "REPLICAWATCH_CONFIG"

# env var -> (yaml section, yaml key)
ENV_KEYS = {
    "INSTANCE_ID": ("instance", "id"),
    "INSTANCE_LOCATION": ("instance", "location"),
    "COUCHDB_URL": ("couchdb", "url"),
    "COUCHDB_USER": ("couchdb", "user"),
    "COUCHDB_PASSWORD": ("couchdb", "password"),
    "COUCHDB_DATABASE": ("couchdb", "database"),
    "REPLICATION_MONITOR_URL": ("replication_monitor", "url"),
    "STATUS_TIMEOUT": ("replication_monitor", "timeout"),
    "HEALTH_CHECK_INTERVAL": ("intervals", "health_check"),
    "RECONCILE_INTERVAL": ("intervals", "reconcile"),
    "TRACKED_KINDS": (None, "tracked_kinds"),
    "ISOLATION_FAILURE_THRESHOLD": ("isolation", "failure_threshold"),
}


@dataclass
class Settings:
    """
    Resolved runtime settings.

    Attributes:
        instance_id: Identifier of the local instance
        instance_location: Hostname or label of the local instance
        couchdb_url: Base URL of the local CouchDB node
        couchdb_user: CouchDB username
        couchdb_password: CouchDB password
        couchdb_database: Database holding the identity records
        replication_monitor_url: Base URL of the replication-status feed
        status_timeout: Seconds before a status or store call gives up
        health_check_interval: Seconds between health checks
        reconcile_interval: Seconds between sync-status sweeps
        tracked_kinds: Record kinds the reconciler sweeps
        isolation_failure_threshold: Unhealthy cycles before a window opens
    """
    instance_id: str = "default"
    instance_location: str = "unknown"
    couchdb_url: str = "http://localhost:5984"
    couchdb_user: Optional[str] = None
    couchdb_password: Optional[str] = None
    couchdb_database: str = "zombieauth"
    replication_monitor_url: str = "http://replication-monitor:8080"
    status_timeout: float = 5.0
    health_check_interval: float = 30.0
    reconcile_interval: float = 30.0
    tracked_kinds: List[RecordKind] = field(
        default_factory=lambda: [RecordKind.ACCOUNT, RecordKind.CLIENT]
    )
    isolation_failure_threshold: int = 1

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigurationError: If any value is out of range
        """
        if not self.instance_id:
            raise ConfigurationError("instance id must not be empty")
        for name in ("status_timeout", "health_check_interval", "reconcile_interval"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        if self.isolation_failure_threshold < 1:
            raise ConfigurationError(
                f"isolation failure_threshold must be >= 1, got {self.isolation_failure_threshold}"
            )
        if not self.tracked_kinds:
            raise ConfigurationError("tracked_kinds must name at least one record kind")

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        """Convert to dictionary, hiding the password by default."""
        return {
            "instance_id": self.instance_id,
            "instance_location": self.instance_location,
            "couchdb_url": self.couchdb_url,
            "couchdb_user": self.couchdb_user,
            "couchdb_password": "***" if (redact and self.couchdb_password) else self.couchdb_password,
            "couchdb_database": self.couchdb_database,
            "replication_monitor_url": self.replication_monitor_url,
            "status_timeout": self.status_timeout,
            "health_check_interval": self.health_check_interval,
            "reconcile_interval": self.reconcile_interval,
            "tracked_kinds": [k.value for k in self.tracked_kinds],
            "isolation_failure_threshold": self.isolation_failure_threshold,
        }


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def _merge_env(data: Dict[str, Any], environ: Mapping[str, str]) -> None:
    for env_name, (section, key) in ENV_KEYS.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        if section is None:
            data[key] = value
        else:
            if data.get(section) is None:
                data[section] = {}
            if not isinstance(data[section], dict):
                raise ConfigurationError(f"Config section '{section}' must be a mapping")
            data[section][key] = value


def _number(value: Any, name: str, cast=float):
    try:
        return cast(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from e


def _kinds(value: Any) -> List[RecordKind]:
    if isinstance(value, str):
        items = [part for part in value.split(",") if part.strip()]
    elif isinstance(value, list):
        items = value
    else:
        raise ConfigurationError(f"tracked_kinds must be a list or comma-separated string, got {value!r}")
    try:
        return [RecordKind.from_string(str(item)) for item in items]
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """
    Load settings from defaults, an optional YAML file, and the environment.

    Args:
        config_path: Explicit YAML file. Falls back to $REPLICAWATCH_CONFIG.
        environ: Environment mapping (default: os.environ)

    Returns:
        Validated Settings

    Raises:
        ConfigurationError: If the file is unreadable or a value is invalid
    """
    environ = os.environ if environ is None else environ

    if config_path is None and environ.get(CONFIG_ENV_VAR):
        config_path = Path(environ[CONFIG_ENV_VAR])

    data: Dict[str, Any] = _read_yaml(Path(config_path)) if config_path else {}
    _merge_env(data, environ)

    instance = data.get("instance") or {}
    couchdb = data.get("couchdb") or {}
    monitor = data.get("replication_monitor") or {}
    intervals = data.get("intervals") or {}
    isolation = data.get("isolation") or {}

    defaults = Settings()
    settings = Settings(
        instance_id=str(instance.get("id", defaults.instance_id)),
        instance_location=str(instance.get("location", defaults.instance_location)),
        couchdb_url=str(couchdb.get("url", defaults.couchdb_url)).rstrip("/"),
        couchdb_user=couchdb.get("user", defaults.couchdb_user),
        couchdb_password=couchdb.get("password", defaults.couchdb_password),
        couchdb_database=str(couchdb.get("database", defaults.couchdb_database)),
        replication_monitor_url=str(monitor.get("url", defaults.replication_monitor_url)).rstrip("/"),
        status_timeout=_number(monitor.get("timeout", defaults.status_timeout), "status timeout"),
        health_check_interval=_number(
            intervals.get("health_check", defaults.health_check_interval), "health_check interval"
        ),
        reconcile_interval=_number(
            intervals.get("reconcile", defaults.reconcile_interval), "reconcile interval"
        ),
        tracked_kinds=_kinds(data["tracked_kinds"]) if "tracked_kinds" in data else defaults.tracked_kinds,
        isolation_failure_threshold=_number(
            isolation.get("failure_threshold", defaults.isolation_failure_threshold),
            "isolation failure_threshold",
            cast=int,
        ),
    )
    settings.validate()

    logger.debug(f"Loaded settings for instance {settings.instance_id} (config file: {config_path})")
    return settings

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any
import os

import yaml

from .errors import ConfigurationError

SUPPORTED_RUNTIMES = ("compose", "kubernetes")


def _env_path(name: str, default: str) -> Path:
    return Path(os.getenv(name, default)).expanduser()


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        return int(raw_value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer, got {raw_value!r}") from error


def _env_float(name: str, default: float) -> float:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        return float(raw_value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be a number, got {raw_value!r}") from error


@dataclass(frozen=True)
class AppConfig:
    runtime: str = field(default_factory=lambda: _env_str("NSM_RUNTIME", "compose"))
    project_dir: Path = field(default_factory=lambda: _env_path("NSM_PROJECT_DIR", "/opt/n8n"))
    data_dir: Path = field(default_factory=lambda: _env_path("NSM_DATA_DIR", "/opt/n8n/data"))
    env_file: Path = field(default_factory=lambda: _env_path("NSM_ENV_FILE", "/opt/n8n/.env"))
    backup_dir: Path = field(default_factory=lambda: _env_path("NSM_BACKUP_DIR", "/opt/n8n-backups"))
    metadata_db_path: Path = field(
        default_factory=lambda: _env_path("NSM_METADATA_DB_PATH", "/var/lib/nerdy-stack-manager/operations.db")
    )
    compose_command: str = field(default_factory=lambda: _env_str("NSM_COMPOSE_COMMAND", "docker compose"))
    app_service: str = field(default_factory=lambda: _env_str("NSM_APP_SERVICE", "n8n"))
    database_service: str = field(default_factory=lambda: _env_str("NSM_DATABASE_SERVICE", "postgres"))
    database_user: str = field(default_factory=lambda: _env_str("NSM_DATABASE_USER", "n8n"))
    database_name: str = field(default_factory=lambda: _env_str("NSM_DATABASE_NAME", "n8n"))
    health_url: str = field(default_factory=lambda: _env_str("NSM_HEALTH_URL", "http://localhost:5678/healthz"))
    endpoint_timeout_seconds: float = field(default_factory=lambda: _env_float("NSM_ENDPOINT_TIMEOUT_SECONDS", 5.0))
    database_probe_timeout_seconds: int = field(
        default_factory=lambda: _env_int("NSM_DATABASE_PROBE_TIMEOUT_SECONDS", 5)
    )
    database_ready_attempts: int = field(default_factory=lambda: _env_int("NSM_DATABASE_READY_ATTEMPTS", 10))
    database_ready_interval_seconds: float = field(
        default_factory=lambda: _env_float("NSM_DATABASE_READY_INTERVAL_SECONDS", 2.0)
    )
    disk_threshold_percent: int = field(default_factory=lambda: _env_int("NSM_DISK_THRESHOLD_PERCENT", 80))
    disk_path: Path | None = field(
        default_factory=lambda: Path(os.environ["NSM_DISK_PATH"]) if os.getenv("NSM_DISK_PATH") else None
    )
    kube_namespace: str = field(default_factory=lambda: _env_str("NSM_KUBE_NAMESPACE", "n8n"))
    kube_app_workload: str = field(default_factory=lambda: _env_str("NSM_KUBE_APP_WORKLOAD", "deployment/n8n"))
    kube_database_workload: str = field(
        default_factory=lambda: _env_str("NSM_KUBE_DATABASE_WORKLOAD", "statefulset/postgres")
    )
    kubeconfig_path: str | None = field(default_factory=lambda: os.getenv("NSM_KUBECONFIG") or None)
    kube_context: str | None = field(default_factory=lambda: os.getenv("NSM_KUBE_CONTEXT") or None)
    kube_in_cluster: bool = field(
        default_factory=lambda: os.getenv("NSM_KUBE_IN_CLUSTER", "").strip().lower() in {"1", "true", "yes", "on"}
    )

    @property
    def storage_path(self) -> Path:
        """Path whose filesystem utilization the disk check reports."""
        if self.disk_path is not None:
            return self.disk_path
        # On kubernetes the only application storage the controller sees is the mounted volume.
        return self.data_dir if self.runtime == "kubernetes" else self.project_dir


_PATH_FIELDS = {"project_dir", "data_dir", "env_file", "backup_dir", "metadata_db_path", "disk_path"}
_INT_FIELDS = {"database_probe_timeout_seconds", "database_ready_attempts", "disk_threshold_percent"}
_FLOAT_FIELDS = {"endpoint_timeout_seconds", "database_ready_interval_seconds"}
_BOOL_FIELDS = {"kube_in_cluster"}


def load_config(config_file: Path | None = None) -> AppConfig:
    base_config = AppConfig()
    if config_file is None:
        configured_path = os.getenv("NSM_CONFIG_FILE", "").strip()
        if not configured_path:
            return validate_config(base_config)
        config_file = Path(configured_path)

    config_file = config_file.expanduser()
    try:
        parsed = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    except OSError as error:
        raise ConfigurationError(f"Unable to read config file {config_file}: {error}") from error
    except yaml.YAMLError as error:
        raise ConfigurationError(
            f"Config file {config_file} must be valid YAML: {error.__class__.__name__}."
        ) from error

    if parsed is None:
        return validate_config(base_config)
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"Config file {config_file} must be a YAML mapping.")

    return validate_config(_apply_overrides(base_config, parsed, source=str(config_file)))


def _apply_overrides(config: AppConfig, overrides: dict[str, Any], *, source: str) -> AppConfig:
    known_fields = {item.name for item in fields(AppConfig)}
    unknown_keys = sorted(str(key) for key in overrides if key not in known_fields)
    if unknown_keys:
        raise ConfigurationError(
            f"{source} contains unknown setting(s): {', '.join(unknown_keys)}",
            details={"allowed": sorted(known_fields)},
        )

    coerced: dict[str, Any] = {}
    errors: list[str] = []
    for key, value in overrides.items():
        try:
            coerced[key] = _coerce(key, value)
        except (TypeError, ValueError):
            errors.append(f"{key}: invalid value {value!r}")
    if errors:
        raise ConfigurationError(f"{source} contains invalid values", details={"errors": errors})

    return replace(config, **coerced)


def _coerce(key: str, value: Any) -> Any:
    if value is None:
        if key in _PATH_FIELDS and key != "disk_path":
            raise ValueError(key)
        return None
    if key in _PATH_FIELDS:
        return Path(str(value)).expanduser()
    if key in _INT_FIELDS:
        if isinstance(value, bool):
            raise TypeError(key)
        return int(value)
    if key in _FLOAT_FIELDS:
        if isinstance(value, bool):
            raise TypeError(key)
        return float(value)
    if key in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise TypeError(key)
        return value
    return str(value)


def validate_config(config: AppConfig) -> AppConfig:
    errors: list[str] = []
    if config.runtime not in SUPPORTED_RUNTIMES:
        errors.append(f"runtime must be one of {', '.join(SUPPORTED_RUNTIMES)}, got {config.runtime!r}")
    if config.endpoint_timeout_seconds <= 0:
        errors.append("endpoint_timeout_seconds must be positive")
    if config.database_probe_timeout_seconds <= 0:
        errors.append("database_probe_timeout_seconds must be positive")
    if config.database_ready_attempts <= 0:
        errors.append("database_ready_attempts must be positive")
    if config.database_ready_interval_seconds < 0:
        errors.append("database_ready_interval_seconds must be >= 0")
    if not 1 <= config.disk_threshold_percent <= 100:
        errors.append("disk_threshold_percent must be between 1 and 100")
    if not config.compose_command.strip():
        errors.append("compose_command must not be empty")
    for name in ("app_service", "database_service", "database_user", "database_name"):
        if not getattr(config, name).strip():
            errors.append(f"{name} must not be empty")

    if errors:
        raise ConfigurationError("Configuration validation failed", details={"errors": errors})
    return config


def ensure_directories(config: AppConfig) -> None:
    config.backup_dir.mkdir(parents=True, exist_ok=True)
    config.metadata_db_path.parent.mkdir(parents=True, exist_ok=True)

"""
Configuration management for the database upgrade orchestrator.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/dbupgrade/config.yml or --config path)
3. Environment variables (DBUPGRADE_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

Environment variables let an external automation agent drive an unattended
run without a config file, e.g. ``DBUPGRADE_UPGRADE__RESTART=true``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, get_origin

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from dbupgrade.workflow.version import parse_semantic_version

DEFAULT_CONFIG_PATH = Path("/etc/dbupgrade/config.yml")
DEFAULT_ENV_PREFIX = "DBUPGRADE_"


def _as_list(value: Any) -> Any:
    """Wrap a scalar in a list so single env values fill list fields."""
    if isinstance(value, str):
        return [value]
    return value


# =============================================================================
# Upgrade Configuration
# =============================================================================


class UpgradeConfig(BaseModel):
    """Settings for the installation being upgraded.

    Attributes:
        install_path: Root directory of the database engine installation.
        version_binary: Path of the version-bearing binary, relative to
            install_path.
        target_version: Version the installation must reach or exceed.
        restart: Reboot after a successful install.
        skip_if_unused: Abort when no backup workload depends on the engine.
        restore_on_abort: Re-enable workloads and restart services when the
            workflow aborts after having paused them.
        artifact_url: Download URL of the installer.
        artifact_sha256: Expected SHA-256 digest of the installer.
        staging_dir: Directory the installer is downloaded to.
        installer_args: Unattended installer arguments.
    """

    model_config = ConfigDict(coerce_numbers_to_str=True)

    install_path: str = Field(
        default="/opt/PostgreSQL/15",
        description="Root directory of the database engine installation",
    )
    version_binary: str = Field(
        default="bin/postgres",
        description="Version-bearing binary, relative to install_path",
    )
    target_version: str = Field(
        default="15.12.0",
        description="Version the installation must reach or exceed",
    )
    restart: bool = Field(
        default=False,
        description="Reboot after a successful install",
    )
    skip_if_unused: bool = Field(
        default=False,
        description="Abort when no enabled, recently active workload exists",
    )
    restore_on_abort: bool = Field(
        default=True,
        description="Restore paused workloads and services when the workflow aborts",
    )
    artifact_url: str = Field(
        default="",
        description="Download URL of the installer artifact",
    )
    artifact_sha256: str = Field(
        default="",
        description="Expected SHA-256 digest of the installer artifact (hex)",
    )
    artifact_name: str | None = Field(
        default=None,
        description="File name for the downloaded artifact (defaults to the URL basename)",
    )
    staging_dir: str = Field(
        default="/var/tmp/dbupgrade",
        description="Staging directory for the downloaded artifact",
    )
    installer_args: list[str] = Field(
        default_factory=lambda: [
            "--mode",
            "unattended",
            "--unattendedmodeui",
            "none",
            "--disable-components",
            "stackbuilder",
        ],
        description="Non-interactive installer arguments",
    )
    installer_working_dir: str | None = Field(
        default=None,
        description="Working directory for the installer (defaults to staging_dir)",
    )
    download_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Per-transport download timeout; unbounded when unset",
    )
    installer_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Installer wait timeout; unbounded when unset",
    )

    @field_validator("target_version")
    @classmethod
    def validate_target_version(cls, v: str) -> str:
        """Validate the target version is a semantic version."""
        parse_semantic_version(v)
        return v

    @field_validator("artifact_sha256")
    @classmethod
    def validate_artifact_sha256(cls, v: str) -> str:
        """Normalize the digest to lowercase hex."""
        v = v.strip().lower()
        if v and (len(v) != 64 or any(c not in "0123456789abcdef" for c in v)):
            raise ValueError("artifact_sha256 must be 64 hexadecimal characters")
        return v

    @field_validator("installer_args", mode="before")
    @classmethod
    def validate_installer_args(cls, v: Any) -> Any:
        """Split a single string of arguments on whitespace."""
        if isinstance(v, str):
            return v.split()
        return v

    @property
    def binary_path(self) -> Path:
        """Absolute path of the version-bearing binary."""
        return Path(self.install_path) / self.version_binary


# =============================================================================
# Backup Application Configuration
# =============================================================================


class BackupApiConfig(BaseModel):
    """Backup application REST API settings.

    Attributes:
        base_url: API root, e.g. "https://127.0.0.1:9419/api/v1".
        token: Bearer token for the API.
        verify_tls: Verify the server certificate.
        timeout_seconds: Per-request timeout.
    """

    model_config = ConfigDict(coerce_numbers_to_str=True)

    base_url: str = Field(
        default="https://127.0.0.1:9419/api/v1",
        description="Backup application API root",
    )
    token: str | None = Field(
        default=None,
        description="Bearer token for the backup application API",
    )
    verify_tls: bool = Field(
        default=True,
        description="Verify the API server certificate",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout in seconds",
    )


class WorkloadsConfig(BaseModel):
    """Candidate workload selection.

    Attributes:
        recency_days: Only workloads with a restore point newer than this
            many days are paused. 0 disables the recency filter.
    """

    recency_days: int = Field(
        default=14,
        ge=0,
        description="Restore point recency window in days (0 disables the filter)",
    )


# =============================================================================
# Service and Process Configuration
# =============================================================================


class ServicesConfig(BaseModel):
    """Dependent application service shutdown settings.

    Attributes:
        service_patterns: fnmatch patterns for the application's services.
        process_patterns: fnmatch patterns for processes killed on escalation.
        settle_seconds: First wait after a kill escalation.
        backoff_factor: Multiplier applied to the wait after each poll.
        max_backoff_seconds: Upper bound of a single wait.
        stop_timeout_seconds: Deadline for all services to be down.
    """

    service_patterns: list[str] = Field(
        default_factory=lambda: ["veeam*"],
        description="Service name patterns of the dependent application",
    )
    process_patterns: list[str] = Field(
        default_factory=lambda: ["veeam*"],
        description="Process name patterns killed when services will not stop",
    )
    settle_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Initial wait after killing processes",
    )
    backoff_factor: float = Field(
        default=2.0,
        ge=1.0,
        description="Exponential backoff factor between polls",
    )
    max_backoff_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Maximum single wait between polls",
    )
    stop_timeout_seconds: float = Field(
        default=120.0,
        ge=0,
        description="Deadline for services to stop after escalation",
    )

    @field_validator("service_patterns", "process_patterns", mode="before")
    @classmethod
    def validate_patterns(cls, v: Any) -> Any:
        """Accept a single pattern string."""
        return _as_list(v)


class InstallerConfig(BaseModel):
    """Installer launch settings.

    Attributes:
        interfering_processes: fnmatch patterns of GUI/admin processes
            terminated before the installer starts.
        settle_seconds: Wait after terminating them.
    """

    interfering_processes: list[str] = Field(
        default_factory=lambda: ["pgadmin*", "veeam*console*"],
        description="GUI/admin process patterns terminated before install",
    )
    settle_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Wait after terminating interfering processes",
    )

    @field_validator("interfering_processes", mode="before")
    @classmethod
    def validate_interfering_processes(cls, v: Any) -> Any:
        """Accept a single pattern string."""
        return _as_list(v)


# =============================================================================
# Continuation Configuration
# =============================================================================


class ContinuationConfig(BaseModel):
    """Cross-reboot continuation settings.

    Attributes:
        unit_name: Fixed well-known systemd unit name.
        unit_dir: Directory the unit file is written to.
        grace_seconds: Wait at boot before re-enabling workloads.
        countdown_seconds: Operator countdown before rebooting.
        python_executable: Interpreter used by the unit's ExecStart.
        environment_file: File holding the run's effective settings for the
            boot-time resume.
    """

    unit_name: str = Field(
        default="dbupgrade-continuation.service",
        description="Fixed well-known name of the continuation unit",
    )
    unit_dir: str = Field(
        default="/etc/systemd/system",
        description="Directory the continuation unit is written to",
    )
    grace_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Wait at boot before re-enabling workloads",
    )
    countdown_seconds: int = Field(
        default=15,
        ge=0,
        description="Cancellable countdown before reboot",
    )
    python_executable: str | None = Field(
        default=None,
        description="Interpreter for the continuation (defaults to the running one)",
    )
    environment_file: str | None = Field(
        default=None,
        description="Settings file read by the unit (defaults to <unit_dir>/<unit stem>.env)",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        file_path: Append-only log file path.
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Use JSON for stdout records.
    """

    file_path: str = Field(
        default="/var/log/dbupgrade/upgrade.log",
        description="Append-only log file path",
    )
    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=False,
        description="Emit JSON records on stdout",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        # Normalize 'warn' to 'warning'
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        upgrade: Installation and artifact settings.
        backup_api: Backup application API settings.
        workloads: Candidate workload selection.
        services: Dependent service shutdown settings.
        installer: Installer launch settings.
        continuation: Cross-reboot continuation settings.
        logging: Logging configuration.
    """

    upgrade: UpgradeConfig = Field(default_factory=UpgradeConfig)
    backup_api: BackupApiConfig = Field(default_factory=BackupApiConfig)
    workloads: WorkloadsConfig = Field(default_factory=WorkloadsConfig)
    services: ServicesConfig = Field(default_factory=ServicesConfig)
    installer: InstallerConfig = Field(default_factory=InstallerConfig)
    continuation: ContinuationConfig = Field(default_factory=ContinuationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    _source_path: str | None = PrivateAttr(default=None)

    @property
    def source_path(self) -> str | None:
        """YAML file this configuration was loaded from, if any."""
        return self._source_path

    def continuation_environment(
        self, prefix: str = DEFAULT_ENV_PREFIX
    ) -> dict[str, str]:
        """
        Effective settings the boot-time resume needs, as environment variables.

        Covers the sections ``resume`` reads: the backup API, workload
        selection, the continuation unit itself and logging. Unset values
        are omitted so the defaults apply.
        """
        environment: dict[str, str] = {}
        for section in _CONTINUATION_SECTIONS:
            values = getattr(self, section).model_dump(mode="json")
            for name, value in values.items():
                if value is None:
                    continue
                if isinstance(value, bool):
                    value = "true" if value else "false"
                elif isinstance(value, list):
                    value = ",".join(value)
                environment[f"{prefix}{section.upper()}__{name.upper()}"] = str(value)
        return environment


_CONTINUATION_SECTIONS = ("backup_api", "workloads", "continuation", "logging")


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _field_annotation(model: type[BaseModel] | None, name: str) -> Any:
    """Resolved annotation of a model field, or None if unknown."""
    if model is None or name not in model.model_fields:
        return None
    return model.model_fields[name].annotation


def _parse_env_value(value: str, annotation: Any = None) -> Any:
    """
    Parse an environment variable value for a field of the given type.

    Only list fields are split on commas. Everything else stays a string and
    pydantic coerces it to the field type, so "15.10" or "0123" survive
    unchanged for string fields while "true" and "60" still become bool and
    number for typed fields.

    Args:
        value: String value from environment variable.
        annotation: Annotation of the target field, if known.

    Returns:
        A list of strings for list fields, otherwise the string itself.
    """
    if get_origin(annotation) is list:
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def _load_env_config(
    prefix: str = DEFAULT_ENV_PREFIX,
    model: type[BaseModel] | None = None,
) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, e.g.
    ``DBUPGRADE_UPGRADE__TARGET_VERSION=15.12.0``.

    Args:
        prefix: Environment variable prefix.
        model: Root model used to look up field types (AppConfig by default).

    Returns:
        Dictionary with configuration values.
    """
    root = model or AppConfig
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        section: type[BaseModel] | None = root
        for part in parts[:-1]:
            current = current.setdefault(part, {})
            annotation = _field_annotation(section, part)
            is_model = isinstance(annotation, type) and issubclass(annotation, BaseModel)
            section = annotation if is_model else None

        current[parts[-1]] = _parse_env_value(value, _field_annotation(section, parts[-1]))

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Nested dictionary built from command-line flags.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(overrides={"upgrade": {"restart": True}})
        >>> config.upgrade.restart
        True
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    config = AppConfig(**config_dict)
    if config_path is not None:
        config._source_path = str(config_path.resolve())
    return config

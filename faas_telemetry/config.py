"""Configuration management for faas-telemetry.

Configuration is read once at process start and never per request. It
covers the direct-ingestion endpoint and token, the static identity
attached to spans, the counter emitted on every invocation and the
behaviour of the instrumentation on failure.

Configuration Precedence (highest to lowest):
    1. Explicit overrides passed to TelemetryConfig.load()
    2. Environment variables (FAAS_TELEMETRY_*)
    3. Configuration file (JSON or YAML)
    4. Default values

Example:
    >>> from faas_telemetry.config import TelemetryConfig
    >>> config = TelemetryConfig.load()
    >>> config.operation
    'my-function.Execute'
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Self

import yaml

from faas_telemetry.exceptions import ConfigurationError, InvalidConfigValueError, MissingConfigError
from faas_telemetry.sender import MetricUnit, is_valid_metric_name


# =============================================================================
# Constants
# =============================================================================

DEFAULT_ENV_PREFIX = "FAAS_TELEMETRY"
CONFIG_FILE_NAMES = (
    "faas_telemetry.json",
    "faas_telemetry.yaml",
    "faas_telemetry.yml",
    ".faas_telemetry.json",
)
DEFAULT_COUNTER_NAME = "azure.function.execution.deltacounter"
DEFAULT_TIMEOUT_SECONDS = 5.0
MASK_VALUE = "***MASKED***"


# =============================================================================
# Environment Variable Utilities
# =============================================================================


class EnvReader:
    """Reads environment variables with prefix support and typed accessors.

    Example:
        >>> reader = EnvReader(prefix="FAAS_TELEMETRY")
        >>> timeout = reader.get_float("TIMEOUT", default=5.0)
        >>> strict = reader.get_bool("STRICT", default=False)
    """

    def __init__(self, prefix: str = DEFAULT_ENV_PREFIX) -> None:
        self.prefix = prefix

    def _make_key(self, name: str) -> str:
        if self.prefix:
            return f"{self.prefix}_{name}"
        return name

    def get(self, name: str, default: str | None = None) -> str | None:
        """Get a string environment variable."""
        return os.environ.get(self._make_key(name), default)

    def get_required(self, name: str) -> str:
        """Get a required string environment variable.

        Raises:
            MissingConfigError: If variable is not set.
        """
        key = self._make_key(name)
        value = os.environ.get(key)
        if value is None:
            raise MissingConfigError(key)
        return value

    def get_int(self, name: str, default: int | None = None) -> int | None:
        """Get an integer environment variable.

        Raises:
            InvalidConfigValueError: If value cannot be parsed as int.
        """
        value = self.get(name)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid integer value for {self._make_key(name)}",
                config_key=self._make_key(name),
                value=value,
                expected="integer",
                cause=e,
            ) from e

    def get_float(self, name: str, default: float | None = None) -> float | None:
        """Get a float environment variable.

        Raises:
            InvalidConfigValueError: If value cannot be parsed as float.
        """
        value = self.get(name)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid float value for {self._make_key(name)}",
                config_key=self._make_key(name),
                value=value,
                expected="float",
                cause=e,
            ) from e

    def get_bool(self, name: str, default: bool | None = None) -> bool | None:
        """Get a boolean environment variable.

        Truthy values: "1", "true", "yes", "on" (case-insensitive)
        Falsy values: "0", "false", "no", "off" (case-insensitive)

        Raises:
            InvalidConfigValueError: If value cannot be parsed as bool.
        """
        value = self.get(name)
        if value is None:
            return default
        lower_value = value.lower()
        if lower_value in ("1", "true", "yes", "on"):
            return True
        if lower_value in ("0", "false", "no", "off"):
            return False
        raise InvalidConfigValueError(
            f"Invalid boolean value for {self._make_key(name)}",
            config_key=self._make_key(name),
            value=value,
            expected="boolean (1/0, true/false, yes/no, on/off)",
        )

    def get_list(
        self,
        name: str,
        separator: str = ",",
        default: list[str] | None = None,
    ) -> list[str] | None:
        """Get a list environment variable (comma-separated by default)."""
        value = self.get(name)
        if value is None:
            return default
        if not value.strip():
            return []
        return [item.strip() for item in value.split(separator)]

    def get_tags(self, name: str, default: dict[str, str] | None = None) -> dict[str, str] | None:
        """Get key=value pairs, e.g. ``FunctionApp=app1,Cloud=Azure``.

        Order is preserved. A repeated key is rejected since tag keys must
        be unique within a point.

        Raises:
            InvalidConfigValueError: On a malformed pair or a duplicate key.
        """
        items = self.get_list(name)
        if items is None:
            return default

        tags: dict[str, str] = {}
        for item in items:
            key, sep, value = item.partition("=")
            key = key.strip()
            if not sep or not key:
                raise InvalidConfigValueError(
                    f"Invalid tag pair for {self._make_key(name)}: {item!r}",
                    config_key=self._make_key(name),
                    value=item,
                    expected="key=value",
                )
            if key in tags:
                raise InvalidConfigValueError(
                    f"Duplicate tag key for {self._make_key(name)}: {key!r}",
                    config_key=self._make_key(name),
                    value=item,
                    expected="unique tag keys",
                )
            tags[key] = value.strip()
        return tags


# =============================================================================
# File Configuration Utilities
# =============================================================================


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML configuration: {path}",
            details={"path": str(path)},
            cause=e,
        ) from e


def _load_json(path: Path) -> dict[str, Any]:
    try:
        with path.open() as f:
            data = json.load(f)
            return data if isinstance(data, dict) else {}
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Failed to parse JSON configuration: {path}",
            details={"path": str(path)},
            cause=e,
        ) from e


def load_config_file(path: Path) -> dict[str, Any]:
    """Load configuration from a JSON or YAML file.

    Raises:
        ConfigurationError: If the file is missing, unsupported or malformed.
    """
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {path}",
            details={"path": str(path)},
        )

    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return _load_yaml(path)
    if suffix == ".json":
        return _load_json(path)
    raise ConfigurationError(
        f"Unsupported configuration file format: {suffix}",
        details={"path": str(path), "suffix": suffix},
    )


def find_config_file(start_dir: Path | None = None, max_depth: int = 5) -> Path | None:
    """Search CONFIG_FILE_NAMES from start_dir (default: cwd) upwards."""
    current = start_dir or Path.cwd()
    for _ in range(max_depth):
        for name in CONFIG_FILE_NAMES:
            config_path = current / name
            if config_path.is_file():
                return config_path
        parent = current.parent
        if parent == current:
            break
        current = parent
    return None


# =============================================================================
# Main Configuration Class
# =============================================================================


@dataclass(frozen=True, slots=True)
class TelemetryConfig:
    """Process-wide configuration for the instrumentation layer.

    Attributes:
        endpoint_url: Direct-ingestion base URL of the observability platform.
        api_token: API token for direct ingestion.
        source: Source reported with every point and span (the function name).
        application: Application name attached to every span.
        service: Service name attached to every span.
        cluster: Cluster name attached to every span.
        shard: Shard name attached to every span.
        metric_tags: Static tags attached to the invocation counter.
        counter_name: Name of the delta counter incremented per invocation.
        counter_unit: Unit of the delta counter.
        operation_name: Span operation name ("<source>.Execute" when empty).
        timeout_seconds: Upper bound for one delivery to the endpoint.
        batch_size: Buffered lines that trigger an automatic delivery.
        header_prefix: Prefix for trace propagation header names.
        console_reporter: Also print finished spans to stdout.
        tracing_enabled: Whether invocations produce spans at all.
        strict: Re-raise programmer errors instead of logging them.
        log_level: Logging level.
        log_format: "text" or "json".
    """

    endpoint_url: str = ""
    api_token: str = ""
    source: str = "faas-function"
    application: str = "faas-application"
    service: str = "faas-function"
    cluster: str = "none"
    shard: str = "none"
    metric_tags: dict[str, str] = field(default_factory=dict)
    counter_name: str = DEFAULT_COUNTER_NAME
    counter_unit: str = MetricUnit.CALLS.value
    operation_name: str = ""
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    batch_size: int = 10_000
    header_prefix: str = ""
    console_reporter: bool = False
    tracing_enabled: bool = True
    strict: bool = False
    log_level: str = "INFO"
    log_format: str = "text"

    @property
    def operation(self) -> str:
        """Operation name used for the per-invocation span."""
        return self.operation_name or f"{self.source}.Execute"

    @property
    def unit(self) -> MetricUnit:
        """Counter unit as an enum member."""
        return MetricUnit(self.counter_unit)

    @property
    def has_endpoint(self) -> bool:
        """Whether a direct-ingestion endpoint is configured."""
        return bool(self.endpoint_url)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization (the token is masked)."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["metric_tags"] = dict(self.metric_tags)
        if self.api_token:
            data["api_token"] = MASK_VALUE
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create a TelemetryConfig from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if "metric_tags" in values:
            values["metric_tags"] = {str(k): str(v) for k, v in dict(values["metric_tags"]).items()}
        return cls(**values)

    @classmethod
    def from_env(cls, prefix: str = DEFAULT_ENV_PREFIX) -> Self:
        """Create configuration from environment variables only.

        Environment Variables:
            {PREFIX}_ENDPOINT_URL, {PREFIX}_API_TOKEN, {PREFIX}_SOURCE,
            {PREFIX}_APPLICATION, {PREFIX}_SERVICE, {PREFIX}_CLUSTER,
            {PREFIX}_SHARD, {PREFIX}_METRIC_TAGS (k=v,k=v),
            {PREFIX}_COUNTER_NAME, {PREFIX}_COUNTER_UNIT,
            {PREFIX}_OPERATION_NAME, {PREFIX}_TIMEOUT (float seconds),
            {PREFIX}_BATCH_SIZE, {PREFIX}_HEADER_PREFIX,
            {PREFIX}_CONSOLE_REPORTER, {PREFIX}_TRACING_ENABLED,
            {PREFIX}_STRICT, {PREFIX}_LOG_LEVEL, {PREFIX}_LOG_FORMAT
        """
        return cls.from_dict(_env_overrides(prefix))

    @classmethod
    def from_file(cls, path: Path | str) -> Self:
        """Create configuration from a JSON or YAML file."""
        return cls.from_dict(load_config_file(Path(path)))

    @classmethod
    def load(
        cls,
        config_file: Path | str | None = None,
        env_prefix: str = DEFAULT_ENV_PREFIX,
        search_config: bool = True,
        **overrides: Any,
    ) -> Self:
        """Load configuration with file discovery, env variables and overrides.

        Args:
            config_file: Explicit config file path.
            env_prefix: Environment variable prefix.
            search_config: Whether to search for a config file when none is given.
            **overrides: Explicit values that win over everything else.

        Returns:
            Merged TelemetryConfig instance.
        """
        merged: dict[str, Any] = {}

        file_path: Path | None = None
        if config_file:
            file_path = Path(config_file)
        elif search_config:
            file_path = find_config_file()
        if file_path is not None:
            merged.update(load_config_file(file_path))

        env = _env_overrides(env_prefix)
        if "metric_tags" in env and "metric_tags" in merged:
            env["metric_tags"] = {**merged["metric_tags"], **env["metric_tags"]}
        merged.update(env)
        merged.update(overrides)
        return cls.from_dict(merged)

    def with_endpoint(self, endpoint_url: str, api_token: str) -> TelemetryConfig:
        """Create a config pointing at another endpoint."""
        return replace(self, endpoint_url=endpoint_url, api_token=api_token)

    def with_identity(
        self,
        application: str,
        service: str,
        cluster: str = "none",
        shard: str = "none",
    ) -> TelemetryConfig:
        """Create a config with another span identity."""
        return replace(
            self,
            application=application,
            service=service,
            cluster=cluster,
            shard=shard,
        )

    def with_metric_tags(self, **tags: str) -> TelemetryConfig:
        """Create a config with additional counter tags."""
        return replace(self, metric_tags={**self.metric_tags, **tags})

    def with_strict(self, strict: bool) -> TelemetryConfig:
        """Create a config with strict mode switched on or off."""
        return replace(self, strict=strict)


def _env_overrides(prefix: str) -> dict[str, Any]:
    """Collect only the settings actually present in the environment."""
    env = EnvReader(prefix)
    readers: dict[str, Any] = {
        "endpoint_url": lambda: env.get("ENDPOINT_URL"),
        "api_token": lambda: env.get("API_TOKEN"),
        "source": lambda: env.get("SOURCE"),
        "application": lambda: env.get("APPLICATION"),
        "service": lambda: env.get("SERVICE"),
        "cluster": lambda: env.get("CLUSTER"),
        "shard": lambda: env.get("SHARD"),
        "metric_tags": lambda: env.get_tags("METRIC_TAGS"),
        "counter_name": lambda: env.get("COUNTER_NAME"),
        "counter_unit": lambda: env.get("COUNTER_UNIT"),
        "operation_name": lambda: env.get("OPERATION_NAME"),
        "timeout_seconds": lambda: env.get_float("TIMEOUT"),
        "batch_size": lambda: env.get_int("BATCH_SIZE"),
        "header_prefix": lambda: env.get("HEADER_PREFIX"),
        "console_reporter": lambda: env.get_bool("CONSOLE_REPORTER"),
        "tracing_enabled": lambda: env.get_bool("TRACING_ENABLED"),
        "strict": lambda: env.get_bool("STRICT"),
        "log_level": lambda: env.get("LOG_LEVEL"),
        "log_format": lambda: env.get("LOG_FORMAT"),
    }
    overrides: dict[str, Any] = {}
    for key, read in readers.items():
        value = read()
        if value is not None:
            overrides[key] = value
    return overrides


# =============================================================================
# Validation Utilities
# =============================================================================


def validate_config(config: TelemetryConfig) -> list[str]:
    """Validate configuration and return a list of issues (empty if valid)."""
    issues: list[str] = []

    if config.endpoint_url:
        if not config.endpoint_url.startswith(("http://", "https://")):
            issues.append(f"Invalid endpoint_url: {config.endpoint_url}. Must be an http(s) URL.")
        if not config.api_token:
            issues.append("api_token is required when endpoint_url is set.")

    if not config.source:
        issues.append("source must not be empty.")
    if not config.application or not config.service:
        issues.append("application and service must not be empty.")

    if not is_valid_metric_name(config.counter_name):
        issues.append(f"Invalid counter_name: {config.counter_name}. Must be a dotted identifier.")

    valid_units = {unit.value for unit in MetricUnit}
    if config.counter_unit not in valid_units:
        issues.append(
            f"Invalid counter_unit: {config.counter_unit}. "
            f"Must be one of: {', '.join(sorted(u for u in valid_units if u))}"
        )

    if config.timeout_seconds <= 0:
        issues.append(f"Invalid timeout_seconds: {config.timeout_seconds}. Must be positive.")
    if config.batch_size < 1:
        issues.append(f"Invalid batch_size: {config.batch_size}. Must be at least 1.")

    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if config.log_level.upper() not in valid_log_levels:
        issues.append(
            f"Invalid log_level: {config.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )
    if config.log_format not in ("text", "json"):
        issues.append(f"Invalid log_format: {config.log_format}. Must be 'text' or 'json'.")

    return issues


def require_valid_config(config: TelemetryConfig) -> None:
    """Validate configuration and raise if invalid.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    issues = validate_config(config)
    if issues:
        raise ConfigurationError(
            "Invalid configuration",
            details={"issues": issues},
        )

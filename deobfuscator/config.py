"""Runtime configuration of the deobfuscator."""

import dataclasses
import json
import os
from typing import Any, Dict, Mapping, Optional

import yaml

from deobfuscator.exceptions import DeobfuscationError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("console", "json")


class ConfigError(DeobfuscationError):
    """Raised when a configuration source holds an invalid value."""


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclasses.dataclass
class DeobfuscatorConfig:
    max_iterations: int = 20
    disable_constants_folder_extra_instrs: bool = False
    inline_instance_methods: bool = False
    log_level: str = "INFO"
    log_format: str = "console"

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ConfigError(f"max_iterations must be positive, got {self.max_iterations}")
        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"Unknown log level: {self.log_level}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"Unknown log format: {self.log_format}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeobfuscatorConfig":
        known = {field.name for field in dataclasses.fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**dict(data))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DeobfuscatorConfig":
        """
        Build a configuration from ``DEOB_*`` environment variables.

        Recognised variables: DEOB_MAX_ITERATIONS, DEOB_DISABLE_EXTRA_INSTRS,
        DEOB_INLINE_INSTANCE_METHODS, DEOB_LOG_LEVEL, DEOB_LOG_FORMAT.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        try:
            if "DEOB_MAX_ITERATIONS" in environ:
                values["max_iterations"] = int(environ["DEOB_MAX_ITERATIONS"])
        except ValueError as e:
            raise ConfigError(f"Invalid DEOB_MAX_ITERATIONS: {e}") from e
        if "DEOB_DISABLE_EXTRA_INSTRS" in environ:
            values["disable_constants_folder_extra_instrs"] = _env_bool(
                environ["DEOB_DISABLE_EXTRA_INSTRS"]
            )
        if "DEOB_INLINE_INSTANCE_METHODS" in environ:
            values["inline_instance_methods"] = _env_bool(
                environ["DEOB_INLINE_INSTANCE_METHODS"]
            )
        if "DEOB_LOG_LEVEL" in environ:
            values["log_level"] = environ["DEOB_LOG_LEVEL"]
        if "DEOB_LOG_FORMAT" in environ:
            values["log_format"] = environ["DEOB_LOG_FORMAT"]
        return cls(**values)

    def merged(self, **overrides) -> "DeobfuscatorConfig":
        """Copy of this configuration with the non-None overrides applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return dataclasses.replace(self, **changes)


def load_config(path: str) -> DeobfuscatorConfig:
    """Load a configuration file. ``.json`` files are read as JSON, anything else as YAML."""
    try:
        with open(path, "r") as f:
            if path.endswith(".json"):
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Can't read configuration {path}: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must be a mapping")
    return DeobfuscatorConfig.from_dict(data)

"""Configuration management utilities for offCpu."""

import re

import yaml

from .script import TUNING_DEFAULTS


class ConfigError(Exception):
    """Raised when there's an issue with the configuration file."""
    pass


DEFAULT_CONFIG = {
    "tracer": "stap",
    "min_version": "2.1",
    "defaults": dict(TUNING_DEFAULTS),
}

ALLOWED_FIELDS = set(DEFAULT_CONFIG)

MACRO_NAME_REGEX = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def parse_version(version):
    """Parse a "MAJOR.MINOR" string into a tuple of ints."""
    match = re.match(r"^\s*(\d+)\.(\d+)", str(version))
    if not match:
        raise ConfigError(f"Invalid version '{version}', expected MAJOR.MINOR")
    return int(match.group(1)), int(match.group(2))


def load_config(filepath):
    """Load, validate and merge a configuration file over the defaults.

    Args:
        filepath: Path to the YAML configuration file

    Returns:
        The merged configuration dictionary

    Raises:
        ConfigError: If the file is missing or invalid
    """
    try:
        with open(filepath, 'r') as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {filepath}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse YAML: {e}")

    if config is None:
        config = {}

    validate_config(config, filepath)
    return merge_config(config)


def validate_config(config, filepath="<config>"):
    """Validate the fields and types of a configuration dictionary.

    Args:
        config: The configuration dictionary to validate
        filepath: Path to the config (for error messages)

    Raises:
        ConfigError: If the config is invalid
    """
    if not isinstance(config, dict):
        raise ConfigError(f"Config '{filepath}' must be a mapping")

    unknown = sorted(set(config) - ALLOWED_FIELDS)
    if unknown:
        raise ConfigError(f"Config '{filepath}' has unknown field(s): {', '.join(unknown)}")

    if "tracer" in config:
        if not isinstance(config["tracer"], str) or not config["tracer"].strip():
            raise ConfigError(f"Config '{filepath}': 'tracer' must be a non-empty string")

    if "min_version" in config:
        # an unquoted 2.10 is read by YAML as the float 2.1
        if not isinstance(config["min_version"], str):
            raise ConfigError(
                f"Config '{filepath}': 'min_version' must be a quoted string, e.g. '2.1'"
            )
        parse_version(config["min_version"])

    defaults = config.get("defaults", {})
    if defaults is None:
        defaults = {}
    if not isinstance(defaults, dict):
        raise ConfigError(f"Config '{filepath}': 'defaults' must be a dictionary")

    for name, value in defaults.items():
        if not isinstance(name, str) or not MACRO_NAME_REGEX.match(name):
            raise ConfigError(f"Config '{filepath}': invalid macro name '{name}'")
        # bool is an int subclass but -DNAME=True is never what was meant
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, str))):
            raise ConfigError(
                f"Config '{filepath}': 'defaults.{name}' must be an integer, a string or null"
            )


def merge_config(config):
    """Merge a validated config over DEFAULT_CONFIG.

    Entries under 'defaults' are merged per macro; the others replace the default.
    """
    merged = {
        "tracer": config.get("tracer", DEFAULT_CONFIG["tracer"]),
        "min_version": str(config.get("min_version", DEFAULT_CONFIG["min_version"])),
        "defaults": dict(DEFAULT_CONFIG["defaults"]),
    }
    merged["defaults"].update(config.get("defaults") or {})
    return merged

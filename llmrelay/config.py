"""Configuration loading and validation"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_BYTES = 50 * 1024 * 1024


class ServeConfig(BaseModel):
    """Server configuration"""

    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    cors_origin: Optional[str] = "*"


class LoggingConfig(BaseModel):
    """Session log settings"""

    log_dir: str = "logs"
    level: str = "INFO"
    max_body_log_bytes: int = 1024 * 1024  # cap on accumulated stream body per record


class ProfileConfig(BaseModel):
    """Upstream connection parameters for one (profile, version) pair.

    Empty strings are accepted here on purpose; a present-but-unusable entry
    is reported by ProfileRegistry.validate as a server-side misconfiguration.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    base_url: str = Field(default="", alias="baseUrl")
    api_key: str = Field(default="", alias="apiKey")
    description: Optional[str] = None


class Config(BaseModel):
    """Main configuration"""

    serve: ServeConfig = ServeConfig()
    logging: LoggingConfig = LoggingConfig()
    profiles_dir: Optional[str] = None
    profiles: Dict[str, Dict[str, ProfileConfig]] = Field(default_factory=dict)


def substitute_env_vars(value: Any) -> Any:
    """Recursively substitute environment variables in configuration values

    Supports ${VAR_NAME} syntax for environment variable substitution
    """
    if isinstance(value, str):
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)

        for var_name in matches:
            env_value = os.getenv(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)

        return value
    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute_env_vars(item) for item in value]
    else:
        return value


def _is_profile_file(path: Path) -> bool:
    name = path.name
    return (
        name.endswith(".json")
        and not name.endswith("-conf.json")
        and ".example" not in name
    )


def load_profile_files(profiles_dir: str) -> Dict[str, Dict[str, Any]]:
    """Load ``<profile>.json`` files whose top-level keys are versions.

    Files that fail to parse are logged and skipped so one broken profile
    does not take the others down.
    """
    directory = Path(profiles_dir).expanduser()
    if not directory.is_dir():
        logger.warning("Profiles directory not found: %s", directory)
        return {}

    profiles: Dict[str, Dict[str, Any]] = {}
    for path in sorted(directory.iterdir()):
        if not path.is_file() or not _is_profile_file(path):
            continue
        profile = path.stem
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Failed to load configuration for profile %s: %s", profile, e)
            continue
        if not isinstance(data, dict):
            logger.error(
                "Failed to load configuration for profile %s: expected an object of versions",
                profile,
            )
            continue
        profiles[profile] = data
        logger.info("Loaded configuration for profile: %s", profile)

    logger.info("Loaded %d configuration profiles from %s", len(profiles), directory)
    return profiles


def _merge_profiles(
    file_profiles: Dict[str, Dict[str, Any]], yaml_profiles: Dict[str, Dict[str, Any]]
) -> Dict[str, Dict[str, Any]]:
    """Merge profile maps; YAML entries win for the same (profile, version)."""
    merged: Dict[str, Dict[str, Any]] = {
        profile: dict(versions) for profile, versions in file_profiles.items()
    }
    for profile, versions in yaml_profiles.items():
        merged.setdefault(profile, {}).update(versions or {})
    return merged


def load_config(
    config_path: str = "config.yaml", env_file: Optional[str] = None
) -> Config:
    """Load and validate configuration from YAML file

    Args:
        config_path: Path to YAML configuration file
        env_file: Optional path to dotenv file

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If configuration is invalid
    """
    if env_file:
        env_path = os.path.expanduser(env_file)
        if not os.path.exists(env_path):
            raise FileNotFoundError(f"Environment file not found: {env_file}")
        load_dotenv(dotenv_path=env_path)
    else:
        # Prefer searching from current working directory for local runs.
        cwd_env_file = find_dotenv(usecwd=True)
        if cwd_env_file:
            load_dotenv(dotenv_path=cwd_env_file)
        else:
            load_dotenv()

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        raw_config = yaml.safe_load(f) or {}

    config_data = substitute_env_vars(raw_config)
    if not isinstance(config_data, dict):
        raise ValueError("Invalid configuration: top level must be a mapping")

    profiles_dir = config_data.get("profiles_dir")
    if profiles_dir:
        # Relative directories are resolved against the config file location.
        profiles_path = Path(profiles_dir).expanduser()
        if not profiles_path.is_absolute():
            profiles_path = Path(config_path).resolve().parent / profiles_path
        file_profiles = substitute_env_vars(load_profile_files(str(profiles_path)))
        config_data["profiles"] = _merge_profiles(
            file_profiles, config_data.get("profiles") or {}
        )

    try:
        config = Config(**config_data)
    except Exception as e:
        raise ValueError(f"Invalid configuration: {e}")

    return config

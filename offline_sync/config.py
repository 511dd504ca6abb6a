# offline_sync/config.py
# Description: Configuration management for the offline sync engine.
#
# Imports
import copy
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional
#
# Third-Party Imports
import toml
from loguru import logger
#
# Local Imports
#
#######################################################################################################################
#
# Functions:

# --- Constants ---
# Client ID for the local database of this application instance
DEFAULT_CLIENT_ID = "offline_sync_local_instance_v1"

# --- Path to the configuration file ---
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "offline_sync" / "config.toml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "general": {"log_level": "INFO"},
    "logging": {
        "log_filename": "offline_sync.log",  # written next to the database
        "file_log_level": "DEBUG",
        "log_max_bytes": 10 * 1024 * 1024,  # 10 MB
        "log_backup_count": 5,
    },
    "database": {
        "path": str(Path.home() / ".local" / "share" / "offline_sync" / "records.db"),
        "client_id": DEFAULT_CLIENT_ID,
    },
    "server": {
        "url": "http://localhost:3000",
        "token": "",
        "resource_path": "/records",
        "list_key": "records",
        "timeout": 30.0,
    },
    "sync": {
        "remote_timeout": 30.0,
        "reconcile_on_reconnect": True,
    },
}

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "OFFLINE_SYNC_SERVER_URL": ("server", "url"),
    "OFFLINE_SYNC_API_TOKEN": ("server", "token"),
    "OFFLINE_SYNC_DB_PATH": ("database", "path"),
    "OFFLINE_SYNC_LOG_LEVEL": ("general", "log_level"),
}


def deep_merge_dicts(base: Dict, update: Dict) -> Dict:
    """Recursively merges update_dict into base_dict."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _get_typed_value(data_dict: Dict, key: str, default: Any, target_type: type = str) -> Any:
    """Helper to get value from dict and cast to type, with logging for type errors."""
    value = data_dict.get(key, default)
    if value is default and default is not None:
        return value
    if value is None:
        return None

    try:
        if target_type == bool:
            if isinstance(value, bool):
                return value
            return str(value).lower() in ['true', '1', 't', 'y', 'yes']
        if target_type == Path:
            return Path(value).expanduser() if value else default
        return target_type(value)
    except (ValueError, TypeError) as e:
        logger.warning(f"Config key '{key}' has value '{value}' which could not be converted to {target_type}. "
                       f"Using default: '{default}'. Error: {e}")
        return default


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            config.setdefault(section, {})[key] = value
            logger.debug(f"Config [{section}].{key} overridden by ${env_var}.")
    return config


# --- Primary Configuration Loading Logic ---
_CONFIG_CACHE: Optional[Dict[str, Any]] = None


def load_settings(config_path: Optional[Path] = None, force_reload: bool = False) -> Dict[str, Any]:
    """
    Loads settings from the TOML config file, merged over DEFAULT_CONFIG, with
    environment overrides applied last.

    If the file doesn't exist it is created with the default values. A file that
    cannot be parsed is logged and the defaults are used. Only the default path
    is cached; an explicit `config_path` is always read fresh.
    """
    global _CONFIG_CACHE
    use_cache = config_path is None
    if use_cache and _CONFIG_CACHE is not None and not force_reload:
        return _CONFIG_CACHE

    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    loaded_config = copy.deepcopy(DEFAULT_CONFIG)

    if not path.exists():
        logger.info(f"Config file not found at {path}. Creating it with default values.")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                toml.dump(DEFAULT_CONFIG, f)
            logger.info(f"Created default config file at {path}")
        except OSError as e:
            logger.error(f"Could not create default config file {path}: {e}. Using internal defaults.")
    else:
        logger.info(f"Attempting to load config from: {path}")
        try:
            with open(path, "rb") as f:
                user_config = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config)
            logger.info(f"Loaded configuration from: {path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML from {path}: {e}. Using default values.")
        except OSError as e:
            logger.error(f"Could not read config file {path}: {e}. Using default values.")

    _apply_env_overrides(loaded_config)
    if use_cache:
        _CONFIG_CACHE = loaded_config
    return loaded_config


def get_setting(section: str, key: str, default: Any = None, config: Optional[Dict[str, Any]] = None) -> Any:
    """Helper to get a specific setting from the loaded configuration."""
    config = config if config is not None else load_settings()
    section_data = config.get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


def database_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    section = config.get("database", {})
    defaults = DEFAULT_CONFIG["database"]
    raw_path = section.get("path", defaults["path"])
    return {
        "path": raw_path if raw_path == ":memory:" else _get_typed_value(section, "path", Path(defaults["path"]), Path),
        "client_id": _get_typed_value(section, "client_id", defaults["client_id"], str) or DEFAULT_CLIENT_ID,
    }


def server_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    section = config.get("server", {})
    defaults = DEFAULT_CONFIG["server"]
    return {
        "base_url": _get_typed_value(section, "url", defaults["url"], str),
        "token": _get_typed_value(section, "token", None, str) or None,
        "resource_path": _get_typed_value(section, "resource_path", defaults["resource_path"], str),
        "list_key": _get_typed_value(section, "list_key", defaults["list_key"], str),
        "timeout": _get_typed_value(section, "timeout", defaults["timeout"], float),
    }


def sync_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    section = config.get("sync", {})
    defaults = DEFAULT_CONFIG["sync"]
    return {
        "remote_timeout": _get_typed_value(section, "remote_timeout", defaults["remote_timeout"], float),
        "reconcile_on_reconnect": _get_typed_value(section, "reconcile_on_reconnect",
                                                   defaults["reconcile_on_reconnect"], bool),
    }

#
# End of offline_sync/config.py
#######################################################################################################################

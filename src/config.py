"""
config.py - Configuration Management for the Fairdrop Client

Loads, saves and validates config/fairdrop.toml. Missing sections or keys
fall back to the defaults declared on the dataclasses in fairdrop_types.

Functions:
    load_config(config_path)             -> FairdropConfig or None
    save_config(config, path)            -> bool
    get_config_value(config, key)        -> value
    set_config_value(config, key, val)   -> None
    validate_config(config)              -> ValidationResult
    get_default_config_path()            -> str
    create_default_config_file(path)     -> bool
    print_config_summary(config)         -> None
"""

import os
from typing import Any, Dict, Optional

# Python 3.11+ has tomllib built-in, earlier versions need tomli
try:
    import tomllib
except ImportError:
    import tomli as tomllib

import tomli_w

from fairdrop_types import (
    FairdropConfig,
    PathsConfig,
    StorageConfig,
    InboxConfig,
    SubscriberConfig,
    ResolverConfig,
    LoggingConfig,
    ValidationResult,
)


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_CONFIG_FILENAME = "config/fairdrop.toml"

VALID_LOG_LEVELS = ("debug", "info", "warning", "error")


# ============================================================================
# LOAD CONFIG
# ============================================================================

def load_config(config_path: str) -> Optional[FairdropConfig]:
    """
    Load configuration from a TOML file.

    Args:
        config_path: Path to fairdrop.toml

    Returns:
        FairdropConfig if the file was read and parsed, None otherwise
    """
    if not os.path.isfile(config_path):
        print(f"Error: Config file not found: {config_path}")
        return None

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        print(f"Error: Invalid TOML syntax in {config_path}: {e}")
        return None
    except OSError as e:
        print(f"Error: Could not read {config_path}: {e}")
        return None

    return config_from_dict(data)


def config_from_dict(data: Dict[str, Any]) -> FairdropConfig:
    """Build a FairdropConfig from parsed TOML data."""
    config = FairdropConfig()

    if "paths" in data:
        p = data["paths"]
        config.paths = PathsConfig(
            db_path=p.get("db_path", config.paths.db_path),
            log_path=p.get("log_path", config.paths.log_path),
            download_path=p.get("download_path", config.paths.download_path),
        )

    if "storage" in data:
        s = data["storage"]
        config.storage = StorageConfig(
            bee_url=s.get("bee_url", config.storage.bee_url),
            gateway_urls=list(s.get("gateway_urls", config.storage.gateway_urls)),
            stamp_id=s.get("stamp_id") or None,
            timeout_sec=s.get("timeout_sec", config.storage.timeout_sec),
        )

    if "inbox" in data:
        i = data["inbox"]
        config.inbox = InboxConfig(
            batch_size=i.get("batch_size", config.inbox.batch_size),
            max_scan=i.get("max_scan", config.inbox.max_scan),
            max_empty_batches=i.get("max_empty_batches", config.inbox.max_empty_batches),
        )

    if "subscriber" in data:
        sb = data["subscriber"]
        defaults = SubscriberConfig()
        config.subscriber = SubscriberConfig(
            auto_reconnect=sb.get("auto_reconnect", defaults.auto_reconnect),
            reconnect_delay_ms=sb.get("reconnect_delay_ms", defaults.reconnect_delay_ms),
            backoff_multiplier=float(sb.get("backoff_multiplier", defaults.backoff_multiplier)),
            max_reconnect_delay_ms=sb.get("max_reconnect_delay_ms", defaults.max_reconnect_delay_ms),
            max_reconnect_attempts=sb.get("max_reconnect_attempts", defaults.max_reconnect_attempts),
            resume_from_last_index=sb.get("resume_from_last_index", defaults.resume_from_last_index),
            queue_size=sb.get("queue_size", defaults.queue_size),
        )

    if "resolver" in data:
        r = data["resolver"]
        config.resolver = ResolverConfig(
            ens_domain=r.get("ens_domain", config.resolver.ens_domain),
        )

    if "logging" in data:
        lg = data["logging"]
        config.logging = LoggingConfig(
            level=lg.get("level", config.logging.level),
            max_size_mb=lg.get("max_size_mb", config.logging.max_size_mb),
            backup_count=lg.get("backup_count", config.logging.backup_count),
            console=lg.get("console", config.logging.console),
        )

    return config


# ============================================================================
# SAVE CONFIG
# ============================================================================

def save_config(config: FairdropConfig, path: str) -> bool:
    """
    Save configuration to a TOML file, creating the parent directory.

    Returns:
        True if written, False on I/O error
    """
    data = _config_to_dict(config)

    try:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "wb") as f:
            tomli_w.dump(data, f)
        return True
    except OSError as e:
        print(f"Error: Could not write to {path}: {e}")
        return False


def _config_to_dict(config: FairdropConfig) -> dict:
    """Convert FairdropConfig to a TOML-serializable dictionary."""
    storage = {
        "bee_url": config.storage.bee_url,
        "gateway_urls": list(config.storage.gateway_urls),
        "timeout_sec": config.storage.timeout_sec,
    }
    # TOML has no null
    if config.storage.stamp_id:
        storage["stamp_id"] = config.storage.stamp_id

    return {
        "paths": {
            "db_path": config.paths.db_path,
            "log_path": config.paths.log_path,
            "download_path": config.paths.download_path,
        },
        "storage": storage,
        "inbox": {
            "batch_size": config.inbox.batch_size,
            "max_scan": config.inbox.max_scan,
            "max_empty_batches": config.inbox.max_empty_batches,
        },
        "subscriber": {
            "auto_reconnect": config.subscriber.auto_reconnect,
            "reconnect_delay_ms": config.subscriber.reconnect_delay_ms,
            "backoff_multiplier": config.subscriber.backoff_multiplier,
            "max_reconnect_delay_ms": config.subscriber.max_reconnect_delay_ms,
            "max_reconnect_attempts": config.subscriber.max_reconnect_attempts,
            "resume_from_last_index": config.subscriber.resume_from_last_index,
            "queue_size": config.subscriber.queue_size,
        },
        "resolver": {
            "ens_domain": config.resolver.ens_domain,
        },
        "logging": {
            "level": config.logging.level,
            "max_size_mb": config.logging.max_size_mb,
            "backup_count": config.logging.backup_count,
            "console": config.logging.console,
        },
    }


# ============================================================================
# GET / SET CONFIG VALUE
# ============================================================================

def get_config_value(config: FairdropConfig, key: str) -> Any:
    """
    Get a configuration value by dot-notation key.

    Examples:
        get_config_value(config, "paths.db_path")                  -> "Data/fairdrop.db"
        get_config_value(config, "subscriber.reconnect_delay_ms")  -> 5000
    """
    current: Any = config
    for part in key.split("."):
        if not hasattr(current, part):
            return None
        current = getattr(current, part)
    return current


def set_config_value(config: FairdropConfig, key: str, value: Any) -> None:
    """Set a configuration value by dot-notation key; unknown keys are ignored."""
    parts = key.split(".")
    current: Any = config
    for part in parts[:-1]:
        if not hasattr(current, part):
            return
        current = getattr(current, part)

    if hasattr(current, parts[-1]):
        setattr(current, parts[-1], value)


# ============================================================================
# VALIDATE CONFIG
# ============================================================================

def validate_config(config: FairdropConfig) -> ValidationResult:
    """
    Validate a configuration for completeness and sane ranges.

    Returns:
        ValidationResult with is_valid and lists of errors/warnings
    """
    result = ValidationResult()

    # --- Paths ---
    if not config.paths.db_path:
        result.add_error("paths.db_path is required")
    if not config.paths.log_path:
        result.add_error("paths.log_path is required")

    # --- Storage ---
    if not config.storage.bee_url:
        result.add_error("storage.bee_url is required")
    elif not config.storage.bee_url.startswith(("http://", "https://")):
        result.add_error("storage.bee_url must start with http:// or https://")

    if not config.storage.stamp_id:
        result.add_warning("storage.stamp_id is not set - uploads will fail")
    elif len(config.storage.stamp_id) != 64:
        result.add_error("storage.stamp_id must be a 64 character hex batch id")

    if config.storage.timeout_sec < 1:
        result.add_error("storage.timeout_sec must be at least 1")

    # --- Inbox polling ---
    if config.inbox.batch_size < 1:
        result.add_error("inbox.batch_size must be at least 1")
    if config.inbox.max_scan < 1:
        result.add_error("inbox.max_scan must be at least 1")
    if config.inbox.max_empty_batches < 1:
        result.add_error("inbox.max_empty_batches must be at least 1")

    # --- Subscriber ---
    sub = config.subscriber
    if sub.reconnect_delay_ms < 0:
        result.add_error("subscriber.reconnect_delay_ms cannot be negative")
    elif sub.reconnect_delay_ms < 1000:
        result.add_warning("subscriber.reconnect_delay_ms is very low (< 1000ms)")
    if sub.backoff_multiplier < 1.0:
        result.add_error("subscriber.backoff_multiplier must be >= 1.0")
    if sub.max_reconnect_delay_ms < sub.reconnect_delay_ms:
        result.add_warning("subscriber.max_reconnect_delay_ms is below reconnect_delay_ms")
    if sub.max_reconnect_attempts < 0:
        result.add_error("subscriber.max_reconnect_attempts cannot be negative (0 = unlimited)")
    if sub.queue_size < 1:
        result.add_error("subscriber.queue_size must be at least 1")

    # --- Resolver ---
    if "." not in config.resolver.ens_domain:
        result.add_error("resolver.ens_domain must be a dotted ENS name")

    # --- Logging ---
    if config.logging.level.lower() not in VALID_LOG_LEVELS:
        result.add_error(f"logging.level must be one of {VALID_LOG_LEVELS}")
    if config.logging.max_size_mb < 1:
        result.add_error("logging.max_size_mb must be at least 1")
    if config.logging.backup_count < 0:
        result.add_error("logging.backup_count cannot be negative")

    return result


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def get_default_config_path() -> str:
    """Look for config/fairdrop.toml in the current, then the parent directory."""
    if os.path.isfile(DEFAULT_CONFIG_FILENAME):
        return DEFAULT_CONFIG_FILENAME

    parent_path = os.path.join("..", DEFAULT_CONFIG_FILENAME)
    if os.path.isfile(parent_path):
        return parent_path

    return DEFAULT_CONFIG_FILENAME


def create_default_config_file(path: str = DEFAULT_CONFIG_FILENAME) -> bool:
    """Write a fairdrop.toml holding every default value."""
    return save_config(FairdropConfig(), path)


def print_config_summary(config: FairdropConfig) -> None:
    print("=" * 60)
    print("Fairdrop Client Configuration Summary")
    print("=" * 60)
    print(f"Database:     {config.paths.db_path}")
    print(f"Log file:     {config.paths.log_path}")
    print(f"Bee node:     {config.storage.bee_url}")
    print(f"Gateways:     {len(config.storage.gateway_urls)}")
    print(f"Stamp:        {config.storage.stamp_id or '(none)'}")
    print(f"Poll:         batch={config.inbox.batch_size} max_scan={config.inbox.max_scan}")
    print(f"Reconnect:    {'on' if config.subscriber.auto_reconnect else 'off'} "
          f"every {config.subscriber.reconnect_delay_ms}ms")
    print(f"ENS domain:   {config.resolver.ens_domain}")
    print(f"Log level:    {config.logging.level}")
    print("=" * 60)

"""Configuration management for MD Viewer Edge."""

import copy
from typing import Any, List, Tuple

# Default configuration schema
DEFAULT_CONFIG = {
    "server": {"host": "127.0.0.1", "port": 8787, "request_timeout": 30, "cors_origin": "*"},
    "security": {"require_secure_key": False, "log_security_events": True},
    "rate_limit": {
        "window_seconds": 60,
        "max_requests": 10,
        "database_path": ":memory:",
        "fail_open": False,
        "storage_retries": 3,
        "trust_proxy_headers": True,
        "eviction_interval_seconds": 60,
    },
    "cache": {
        "database_path": ":memory:",
        "prefix": "mdviewer",
        "version": "v3.2",
        "origin": "http://localhost:3000",
        "static_assets": [
            "/",
            "/editor",
            "/files",
            "/search",
            "/settings",
            "/favicon.svg",
            "/manifest.json",
            "/offline.html",
        ],
        "offline_page": None,
        "max_cache_response_size": 10485760,  # 10MB
        "compression_threshold": 1024,
        "fetch_timeout": 30,
    },
    "update": {"check_interval_seconds": 300, "reload_fallback_seconds": 0.5},
    "connection": {"api_url": None, "probe_timeout": 3, "check_interval_seconds": 30},
    "logging": {
        "level": "INFO",
        "parent_logger": None,
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "date_format": "%Y-%m-%d %H:%M:%S",
        "enable_console": True,
        "enable_file": False,
        "file_path": None,
        "max_file_size": 10485760,  # 10MB
        "backup_count": 5,
    },
    "callbacks": {},
}


def _copy_value(value: Any) -> Any:
    if callable(value):
        return value
    if isinstance(value, dict):
        return deep_merge(value, {})
    return copy.deepcopy(value)


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge two dictionaries. Callables are shared, not copied."""
    result = {k: _copy_value(v) for k, v in base.items()}
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = deep_merge(result[k], v)
        else:
            result[k] = _copy_value(v)
    return result


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class ConfigurationValidator:
    """Validates configuration and provides error reporting."""

    @staticmethod
    def validate_config(config: dict) -> Tuple[bool, List[str]]:
        errors = []
        if not isinstance(config, dict):
            errors.append("Config must be a dictionary.")
            return False, errors

        # Validate server
        server = config.get("server", {})
        if not isinstance(server.get("host", None), str):
            errors.append("server.host must be a string.")
        if not _is_int(server.get("port", None)) or not 0 <= server.get("port") <= 65535:
            errors.append("server.port must be an integer between 0 and 65535.")
        if not _is_int(server.get("request_timeout", None)):
            errors.append("server.request_timeout must be an integer.")
        if not isinstance(server.get("cors_origin", None), str):
            errors.append("server.cors_origin must be a string.")

        # Validate security
        security = config.get("security", {})
        if not isinstance(security.get("require_secure_key", None), bool):
            errors.append("security.require_secure_key must be a boolean.")
        if not isinstance(security.get("log_security_events", None), bool):
            errors.append("security.log_security_events must be a boolean.")
        if security.get("secure_key") is not None and not isinstance(security.get("secure_key"), str):
            errors.append("security.secure_key must be a string or None.")

        # Validate rate limiting
        rate_limit = config.get("rate_limit", {})
        if not _is_number(rate_limit.get("window_seconds", None)) or rate_limit.get("window_seconds") <= 0:
            errors.append("rate_limit.window_seconds must be a positive number.")
        if not _is_int(rate_limit.get("max_requests", None)) or rate_limit.get("max_requests") < 1:
            errors.append("rate_limit.max_requests must be a positive integer.")
        if not isinstance(rate_limit.get("database_path", None), str):
            errors.append("rate_limit.database_path must be a string.")
        if not isinstance(rate_limit.get("fail_open", None), bool):
            errors.append("rate_limit.fail_open must be a boolean.")
        if not _is_int(rate_limit.get("storage_retries", None)) or rate_limit.get("storage_retries") < 1:
            errors.append("rate_limit.storage_retries must be a positive integer.")
        if not isinstance(rate_limit.get("trust_proxy_headers", None), bool):
            errors.append("rate_limit.trust_proxy_headers must be a boolean.")
        eviction_interval = rate_limit.get("eviction_interval_seconds", None)
        if not _is_number(eviction_interval) or eviction_interval <= 0:
            errors.append("rate_limit.eviction_interval_seconds must be a positive number.")

        # Validate cache
        cache = config.get("cache", {})
        if not isinstance(cache.get("database_path", None), str):
            errors.append("cache.database_path must be a string.")
        prefix = cache.get("prefix", None)
        if not isinstance(prefix, str) or not prefix or "-" in prefix:
            errors.append("cache.prefix must be a non-empty string without '-'.")
        if not isinstance(cache.get("version", None), str) or not cache.get("version"):
            errors.append("cache.version must be a non-empty string.")
        if not isinstance(cache.get("origin", None), str) or "://" not in cache.get("origin", ""):
            errors.append("cache.origin must be an absolute origin such as https://example.com.")
        assets = cache.get("static_assets", None)
        if not isinstance(assets, list) or not all(isinstance(a, str) and a.startswith("/") for a in assets):
            errors.append("cache.static_assets must be a list of absolute paths.")
        if cache.get("offline_page") is not None and not isinstance(cache.get("offline_page"), str):
            errors.append("cache.offline_page must be a string or None.")
        if not _is_int(cache.get("max_cache_response_size", None)):
            errors.append("cache.max_cache_response_size must be an integer.")
        if not _is_int(cache.get("compression_threshold", None)):
            errors.append("cache.compression_threshold must be an integer.")
        if not _is_number(cache.get("fetch_timeout", None)):
            errors.append("cache.fetch_timeout must be a number.")

        # Validate update checks
        update = config.get("update", {})
        if not _is_number(update.get("check_interval_seconds", None)) or update.get("check_interval_seconds") <= 0:
            errors.append("update.check_interval_seconds must be a positive number.")
        if not _is_number(update.get("reload_fallback_seconds", None)) or update.get("reload_fallback_seconds") < 0:
            errors.append("update.reload_fallback_seconds must be a non-negative number.")

        # Validate connection probing
        connection = config.get("connection", {})
        if connection.get("api_url") is not None and not isinstance(connection.get("api_url"), str):
            errors.append("connection.api_url must be a string or None.")
        if not _is_number(connection.get("probe_timeout", None)) or connection.get("probe_timeout") <= 0:
            errors.append("connection.probe_timeout must be a positive number.")
        if (
            not _is_number(connection.get("check_interval_seconds", None))
            or connection.get("check_interval_seconds") <= 0
        ):
            errors.append("connection.check_interval_seconds must be a positive number.")

        # Validate logging
        logging_cfg = config.get("logging", {})
        if not isinstance(logging_cfg.get("level", None), str):
            errors.append("logging.level must be a string.")
        if logging_cfg.get("parent_logger") is not None and not isinstance(logging_cfg.get("parent_logger"), str):
            errors.append("logging.parent_logger must be a string or None.")
        if not isinstance(logging_cfg.get("format", None), str):
            errors.append("logging.format must be a string.")
        if not isinstance(logging_cfg.get("date_format", None), str):
            errors.append("logging.date_format must be a string.")
        if not isinstance(logging_cfg.get("enable_console", None), bool):
            errors.append("logging.enable_console must be a boolean.")
        if not isinstance(logging_cfg.get("enable_file", None), bool):
            errors.append("logging.enable_file must be a boolean.")
        if logging_cfg.get("file_path") is not None and not isinstance(logging_cfg.get("file_path"), str):
            errors.append("logging.file_path must be a string or None.")
        if not _is_int(logging_cfg.get("max_file_size", None)):
            errors.append("logging.max_file_size must be an integer.")
        if not _is_int(logging_cfg.get("backup_count", None)):
            errors.append("logging.backup_count must be an integer.")

        callbacks = config.get("callbacks", {})
        if not isinstance(callbacks, dict):
            errors.append("callbacks must be a dictionary.")
        else:
            for name, func in callbacks.items():
                if not callable(func):
                    errors.append(f"callbacks.{name} must be callable.")

        return len(errors) == 0, errors

    @staticmethod
    def merge_with_defaults(user_config: dict) -> dict:
        return deep_merge(DEFAULT_CONFIG, user_config)


class ConfigurationManager:
    """Manages configuration, validation, merging, and runtime updates."""

    def __init__(self, user_config: dict = None):
        if user_config is None:
            user_config = {}
        self._config = self.load_config(user_config)

    def load_config(self, user_config: dict) -> dict:
        merged = ConfigurationValidator.merge_with_defaults(user_config)
        valid, errors = ConfigurationValidator.validate_config(merged)
        if not valid:
            raise ValueError(f"Invalid configuration: {errors}")
        return merged

    @property
    def config(self) -> dict:
        return self._config

    def update(self, key_path: str, value: Any) -> None:
        """Update a config value at a dotted key path (e.g., 'rate_limit.max_requests')."""
        candidate = copy.deepcopy(self._config)
        keys = key_path.split(".")
        d = candidate
        for k in keys[:-1]:
            if k not in d or not isinstance(d[k], dict):
                d[k] = {}
            d = d[k]
        d[keys[-1]] = value
        valid, errors = ConfigurationValidator.validate_config(candidate)
        if not valid:
            raise ValueError(f"Invalid configuration after update: {errors}")
        self._config = candidate

    def reload(self, new_config: dict) -> None:
        self._config = self.load_config(new_config)

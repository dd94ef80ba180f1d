"""Logger utility for MD Viewer Edge.

One parent logger per process carries the handlers; every component asks for a
child logger by short name (``get_logger("throttling.manager")``) and inherits
level and handlers from the parent configured through the ``logging`` section
of the configuration.
"""

import logging
import logging.handlers
import sys
from typing import Any, Dict, Optional

DEFAULT_PARENT_LOGGER = "mdviewer_edge"

DEFAULT_LOGGING_CONFIG: Dict[str, Any] = {
    "level": "INFO",
    "parent_logger": None,
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "date_format": "%Y-%m-%d %H:%M:%S",
    "enable_console": True,
    "enable_file": False,
    "file_path": None,
    "max_file_size": 10485760,  # 10MB
    "backup_count": 5,
}


class ColorFormatter(logging.Formatter):
    """Formatter that wraps each console record in the colour of its level."""

    COLORS = {
        "DEBUG": "\033[94m",  # Blue
        "INFO": "\033[92m",  # Green
        "WARNING": "\033[93m",  # Yellow
        "ERROR": "\033[91m",  # Red
        "CRITICAL": "\033[95m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelname, self.RESET)
        msg = super().format(record)
        return f"{color}{msg}{self.RESET}"


class LoggerManager:
    """Owns the parent logger and hands out child loggers."""

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._configured = False
        self._config: Optional[Dict[str, Any]] = None

    @property
    def parent_name(self) -> str:
        return (self._config or {}).get("parent_logger") or DEFAULT_PARENT_LOGGER

    def configure(self, config: Dict[str, Any]) -> None:
        """Apply a logging configuration section.

        Missing keys fall back to ``DEFAULT_LOGGING_CONFIG`` so a partial
        section such as ``{"level": "DEBUG"}`` is enough.
        """
        merged = dict(DEFAULT_LOGGING_CONFIG)
        merged.update(config or {})
        self._config = merged
        self._configured = True
        self._configure_parent_logger()

    def _configure_parent_logger(self) -> None:
        if not self._config:
            return

        parent_logger = logging.getLogger(self.parent_name)

        # Handlers are rebuilt on every configure call
        for handler in list(parent_logger.handlers):
            parent_logger.removeHandler(handler)
            handler.close()

        level = getattr(logging, str(self._config.get("level", "INFO")).upper(), logging.INFO)
        parent_logger.setLevel(level)

        log_format = self._config["format"]
        date_format = self._config["date_format"]

        if self._config.get("enable_console", True):
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(ColorFormatter(log_format, date_format))
            parent_logger.addHandler(console_handler)

        if self._config.get("enable_file", False) and self._config.get("file_path"):
            file_handler = logging.handlers.RotatingFileHandler(
                self._config["file_path"],
                maxBytes=self._config.get("max_file_size", 10485760),
                backupCount=self._config.get("backup_count", 5),
            )
            file_handler.setFormatter(logging.Formatter(log_format, date_format))
            parent_logger.addHandler(file_handler)

        parent_logger.propagate = False

    def get_logger(self, name: str) -> logging.Logger:
        """Return the child logger ``<parent>.<name>``, configuring defaults on first use."""
        if not self._configured:
            self.configure({})

        full_name = f"{self.parent_name}.{name}"
        if full_name not in self._loggers:
            self._loggers[full_name] = logging.getLogger(full_name)
        return self._loggers[full_name]

    def set_level(self, level: str) -> None:
        if not self._configured:
            self.configure({"level": level})
            return
        self._config["level"] = level
        logging.getLogger(self.parent_name).setLevel(getattr(logging, level.upper(), logging.INFO))


# Global logger manager instance
_logger_manager = LoggerManager()


def configure_logging(config: Dict[str, Any]) -> None:
    """Configure the package logging from the ``logging`` config section."""
    _logger_manager.configure(config)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a component.

    Example:
        logger = get_logger("cache.strategy")
        logger.info("Serving %s from cache", url)
    """
    return _logger_manager.get_logger(name)


def set_log_level(level: str) -> None:
    """Change the level of the parent logger (DEBUG, INFO, WARNING, ERROR, CRITICAL)."""
    _logger_manager.set_level(level)

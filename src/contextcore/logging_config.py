# src/contextcore/logging_config.py
"""
Logging setup for ContextCore and the agent hosts that embed it.

Library modules never configure handlers themselves; each obtains
``logging.getLogger(__name__)`` and leaves routing to the host process.
Hosts that want a ready-made setup call :func:`configure_logging` once
at startup.

Supported features:
- Console output gated by :class:`DisplayFilter` (quiet by default)
- File output, either one timestamped file per run or a single rotating file
- Per-component level overrides (``contextcore.context.dag`` etc.)
- Configuration from a dict or from the ``[logging]`` table of a TOML file

Records logged with ``extra={"display": True}`` (see :func:`log_display`)
reach the console even when console output is disabled, so maintenance
outcomes such as "Compacted 55 entries into sum_ab12" stay visible while
per-entry accounting stays in the log file.

Usage:
    from contextcore.logging_config import configure_logging, log_display

    configure_logging(app_name="agent-session")

    logger = logging.getLogger("contextcore.engine")
    log_display(logger, logging.INFO, "Context health restored to %d", score)
"""

import logging
import os
import sys
import tomllib
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

# ---------------------------------------------------------------------------
# Default logging configuration
# ---------------------------------------------------------------------------

DEFAULT_LOGGING_CONFIG: dict[str, Any] = {
    "console_enabled": False,
    "console_level": "WARNING",
    "console_format": "%(levelname)s - %(message)s",
    "file_enabled": True,
    "file_level": "DEBUG",
    "file_directory": "~/.local/share/contextcore/logs",
    "file_mode": "per_run",
    "file_name_pattern": "{app}_{timestamp:%Y%m%d_%H%M%S}.log",
    "file_single_name": "{app}.log",
    "file_format": "%(asctime)s [%(levelname)-8s] %(name)-32s - %(message)s (%(filename)s:%(lineno)d)",
    "rotation_max_bytes": 10 * 1024 * 1024,  # 10 MB
    "rotation_backup_count": 5,
    "display_min_level": "INFO",
    "components": {
        "contextcore": "INFO",
        "contextcore.context": "INFO",
        "contextcore.operators": "INFO",
        "asyncio": "WARNING",
    },
}


def _resolve_level(value: str | int, fallback: int) -> int:
    """Translate a level name or number into a logging level."""
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).upper())
    return level if isinstance(level, int) else fallback


# ---------------------------------------------------------------------------
# DisplayFilter
# ---------------------------------------------------------------------------


class DisplayFilter(logging.Filter):
    """Decides which records reach the console handler.

    With the console globally enabled every record passes and the
    handler's own level does the filtering. Otherwise only records
    carrying ``display=True`` pass, and only at or above
    ``display_min_level``.
    """

    def __init__(
        self,
        console_globally_enabled: bool = False,
        display_min_level: int = logging.INFO,
    ) -> None:
        super().__init__()
        self.console_globally_enabled = console_globally_enabled
        self.display_min_level = display_min_level

    def filter(self, record: logging.LogRecord) -> bool:
        if self.console_globally_enabled:
            return True
        if getattr(record, "display", False):
            return record.levelno >= self.display_min_level
        return False


# ---------------------------------------------------------------------------
# UnifiedLoggingManager
# ---------------------------------------------------------------------------


class UnifiedLoggingManager:
    """
    Process-wide owner of the root logger's handlers.

    Logging is configured at most once unless ``force_reconfigure`` is
    passed; the level setters adjust the live handlers afterwards.
    """

    _instance: Optional["UnifiedLoggingManager"] = None
    _configured: bool = False
    _log_file_path: Path | None = None
    _console_handler: logging.Handler | None = None
    _file_handler: logging.Handler | None = None
    _display_filter: DisplayFilter | None = None

    def __new__(cls) -> "UnifiedLoggingManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @classmethod
    def get_instance(cls) -> "UnifiedLoggingManager":
        """Get the singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def is_configured(cls) -> bool:
        """Check if logging has been configured."""
        return cls._configured

    @classmethod
    def get_log_file_path(cls) -> Path | None:
        """Get the current log file path."""
        return cls._log_file_path

    def configure(
        self,
        app_name: str = "contextcore",
        config: dict[str, Any] | None = None,
        config_file_path: str | Path | None = None,
        force_reconfigure: bool = False,
    ) -> Path:
        """
        Install console and file handlers on the root logger.

        Args:
            app_name: Name used in the log file name.
            config: Logging section as a dict; merged over the defaults.
            config_file_path: TOML file whose ``[logging]`` table is used
                when ``config`` is not given.
            force_reconfigure: Replace an existing configuration.

        Returns:
            Path to the log file, or ``/dev/null`` when file logging is off.
        """
        if self._configured and not force_reconfigure:
            return self._log_file_path or Path("/dev/null")

        log_config = self._load_config(config, config_file_path)

        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
            handler.close()
        root_logger.setLevel(logging.DEBUG)

        console_globally_enabled = bool(log_config.get("console_enabled", False))
        self._display_filter = DisplayFilter(
            console_globally_enabled=console_globally_enabled,
            display_min_level=_resolve_level(log_config.get("display_min_level", "INFO"), logging.INFO),
        )

        try:
            self._console_handler = self._create_console_handler(log_config)
            if not console_globally_enabled:
                # The filter is the only gate while the console is "off".
                self._console_handler.setLevel(logging.DEBUG)
            self._console_handler.addFilter(self._display_filter)
            root_logger.addHandler(self._console_handler)
        except (OSError, ValueError):
            self._console_handler = None

        self._file_handler = None
        self._log_file_path = None
        if log_config.get("file_enabled", True):
            self._file_handler, self._log_file_path = self._create_file_handler(log_config, app_name)
            if self._file_handler:
                root_logger.addHandler(self._file_handler)

        components = log_config.get("components", DEFAULT_LOGGING_CONFIG["components"])
        for component_name, level_str in components.items():
            level = logging.getLevelName(str(level_str).upper())
            if isinstance(level, int):
                logging.getLogger(component_name).setLevel(level)

        UnifiedLoggingManager._configured = True
        UnifiedLoggingManager._log_file_path = self._log_file_path

        if self._log_file_path:
            logging.getLogger("contextcore.logging_config").debug(
                "Logging configured. Log file: %s", self._log_file_path
            )

        return self._log_file_path or Path("/dev/null")

    def _load_config(
        self, config: dict[str, Any] | None, config_file_path: str | Path | None
    ) -> dict[str, Any]:
        """Merge the explicit dict or the TOML ``[logging]`` table over the defaults."""
        if config is not None:
            return {**DEFAULT_LOGGING_CONFIG, **config}

        if config_file_path is not None:
            path = Path(config_file_path).expanduser()
            try:
                with open(path, "rb") as f:
                    section = tomllib.load(f).get("logging", {})
            except (OSError, tomllib.TOMLDecodeError) as exc:
                sys.stderr.write(f"Warning: Cannot read logging config {path}: {exc}\n")
                section = {}
            if section:
                return {**DEFAULT_LOGGING_CONFIG, **section}

        return DEFAULT_LOGGING_CONFIG.copy()

    def _create_console_handler(self, config: dict[str, Any]) -> logging.Handler:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(_resolve_level(config.get("console_level", "WARNING"), logging.WARNING))
        fmt = config.get("console_format", DEFAULT_LOGGING_CONFIG["console_format"])
        handler.setFormatter(logging.Formatter(fmt))
        return handler

    def _create_file_handler(
        self, config: dict[str, Any], app_name: str
    ) -> tuple[logging.Handler | None, Path | None]:
        """Create the file handler.

        ``file_mode="single"`` writes to one :class:`RotatingFileHandler`
        file; any other value writes a fresh timestamped file per run.
        """
        dir_str = config.get("file_directory", DEFAULT_LOGGING_CONFIG["file_directory"])
        log_dir = Path(os.path.expanduser(dir_str))

        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log directory {log_dir}: {e}\n")
            return None, None

        if config.get("file_mode", "per_run") == "single":
            try:
                filename = config.get("file_single_name", "{app}.log").format(app=app_name)
            except (KeyError, ValueError):
                filename = f"{app_name}.log"
            log_file_path = log_dir / filename
            try:
                handler: logging.Handler = RotatingFileHandler(
                    log_file_path,
                    maxBytes=config.get("rotation_max_bytes", 10 * 1024 * 1024),
                    backupCount=config.get("rotation_backup_count", 5),
                    encoding="utf-8",
                )
            except OSError as e:
                sys.stderr.write(f"Warning: Cannot create log file {log_file_path}: {e}\n")
                return None, None
        else:
            pattern = config.get("file_name_pattern", DEFAULT_LOGGING_CONFIG["file_name_pattern"])
            timestamp = datetime.now()
            try:
                filename = pattern.format(app=app_name, timestamp=timestamp)
            except (KeyError, ValueError):
                filename = f"{app_name}_{timestamp.strftime('%Y%m%d_%H%M%S')}.log"
            log_file_path = log_dir / filename
            try:
                handler = logging.FileHandler(log_file_path, encoding="utf-8")
            except OSError as e:
                sys.stderr.write(f"Warning: Cannot create log file {log_file_path}: {e}\n")
                return None, None

        handler.setLevel(_resolve_level(config.get("file_level", "DEBUG"), logging.DEBUG))
        fmt = config.get("file_format", DEFAULT_LOGGING_CONFIG["file_format"])
        handler.setFormatter(logging.Formatter(fmt))
        return handler, log_file_path

    def set_console_level(self, level: str | int) -> None:
        """Change the console handler's level at runtime."""
        if self._console_handler is not None:
            self._console_handler.setLevel(_resolve_level(level, self._console_handler.level))

    def set_file_level(self, level: str | int) -> None:
        """Change the file handler's level at runtime."""
        if self._file_handler is not None:
            self._file_handler.setLevel(_resolve_level(level, self._file_handler.level))

    def set_component_level(self, component: str, level: str | int) -> None:
        """Change one component logger's level at runtime."""
        logger = logging.getLogger(component)
        logger.setLevel(_resolve_level(level, logger.level))

    def disable_console(self) -> None:
        """Remove the console handler; even ``display=True`` records stop showing."""
        if self._console_handler:
            logging.getLogger().removeHandler(self._console_handler)
            self._console_handler = None
            self._display_filter = None

    def enable_console(self, level: str = "WARNING") -> None:
        """Install a console handler that passes every record at or above ``level``."""
        if self._display_filter is not None and self._display_filter.console_globally_enabled:
            return

        if self._console_handler is not None:
            logging.getLogger().removeHandler(self._console_handler)

        self._console_handler = self._create_console_handler(
            {"console_level": level, "console_format": DEFAULT_LOGGING_CONFIG["console_format"]}
        )
        self._display_filter = DisplayFilter(console_globally_enabled=True, display_min_level=logging.DEBUG)
        self._console_handler.addFilter(self._display_filter)
        logging.getLogger().addHandler(self._console_handler)


# ---------------------------------------------------------------------------
# Public module-level functions
# ---------------------------------------------------------------------------


def configure_logging(
    app_name: str = "contextcore",
    config: dict[str, Any] | None = None,
    config_file_path: str | Path | None = None,
    force_reconfigure: bool = False,
) -> Path:
    """
    Configure logging for the host application.

    Example:
        configure_logging(
            app_name="agent-session",
            config={"console_enabled": True, "console_level": "INFO"},
        )
    """
    return UnifiedLoggingManager.get_instance().configure(
        app_name=app_name,
        config=config,
        config_file_path=config_file_path,
        force_reconfigure=force_reconfigure,
    )


def log_display(
    logger: logging.Logger,
    level: int,
    msg: str,
    *args: Any,
    **kwargs: Any,
) -> None:
    """Log a record that also reaches the console in quiet mode.

    The caller's ``extra`` mapping is merged, not replaced.
    """
    extra = kwargs.pop("extra", None) or {}
    extra["display"] = True
    kwargs["extra"] = extra
    logger.log(level, msg, *args, **kwargs)


def get_log_file_path() -> Path | None:
    """Get the current log file path."""
    return UnifiedLoggingManager.get_log_file_path()


def set_console_level(level: str | int) -> None:
    UnifiedLoggingManager.get_instance().set_console_level(level)


def set_file_level(level: str | int) -> None:
    UnifiedLoggingManager.get_instance().set_file_level(level)


def set_component_level(component: str, level: str | int) -> None:
    UnifiedLoggingManager.get_instance().set_component_level(component, level)


def disable_console_logging() -> None:
    UnifiedLoggingManager.get_instance().disable_console()


def enable_console_logging(level: str = "WARNING") -> None:
    UnifiedLoggingManager.get_instance().enable_console(level)

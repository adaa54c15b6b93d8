"""Logging setup for NetGuard.

Every module logs through a child of the ``netguard`` logger. The service
entry point calls ``setup_logging`` once; library use without it falls
back to ``logging.basicConfig``.

Usage:
    from config.logging_config import setup_logging, get_logger

    setup_logging(data_dir=Path.home() / ".netguard")

    logger = get_logger(__name__)
    logger.info("Discovery pass started")
    logger.exception("Scan failed")
"""
import logging
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from config.constants import STORAGE


ROOT_LOGGER_NAME = 'netguard'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_loggers: dict = {}
_initialized: bool = False


class ConsoleFormatter(logging.Formatter):
    """Colors the level name when stderr is a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors:
            return super().format(record)
        # Copy so the file handler never sees escape codes
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{self.LEVEL_COLORS.get(record.levelno, '')}{record.levelname}{self.RESET}"
        return super().format(colored)


def _file_handler(data_dir: Path) -> logging.Handler:
    data_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        data_dir / STORAGE.LOG_FILE,
        maxBytes=STORAGE.LOG_MAX_BYTES,
        backupCount=STORAGE.LOG_BACKUP_COUNT,
        encoding='utf-8'
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _console_handler(debug: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    # Without debug the console only carries problems; the file keeps the rest
    handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    handler.setFormatter(ConsoleFormatter())
    return handler


def setup_logging(
    data_dir: Optional[Path] = None,
    debug: bool = False,
    console_output: bool = True,
    log_to_file: bool = True
) -> logging.Logger:
    """Attach the rotating file and stderr handlers to the ``netguard`` logger.

    Calling it again replaces the handlers from the previous call.

    Args:
        data_dir: Directory for netguard.log. Defaults to ~/.netguard/
        debug: Log at DEBUG instead of INFO, and echo DEBUG to stderr.
        console_output: Also log to stderr.
        log_to_file: Write netguard.log with size-based rotation.

    Returns:
        The ``netguard`` logger.
    """
    global _initialized

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    root_logger.handlers.clear()

    handlers: List[logging.Handler] = []
    if log_to_file:
        handlers.append(_file_handler(data_dir or Path.home() / STORAGE.DATA_DIR_NAME))
    if console_output:
        handlers.append(_console_handler(debug))
    for handler in handlers:
        root_logger.addHandler(handler)

    root_logger.info(
        f"Logging initialized - level={'DEBUG' if debug else 'INFO'}, "
        f"file={log_to_file}, console={console_output}"
    )
    _initialized = True
    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Child of the ``netguard`` logger named after the last two parts of ``name``.

    ``get_logger("discovery.identity")`` returns ``netguard.discovery.identity``.
    """
    short_name = '.'.join(name.split('.')[-2:])

    if short_name not in _loggers:
        if not _initialized:
            logging.basicConfig(level=logging.INFO)
        _loggers[short_name] = logging.getLogger(f'{ROOT_LOGGER_NAME}.{short_name}')

    return _loggers[short_name]


def log_command_result(logger: logging.Logger, command: list, returncode: int,
                       duration_ms: float) -> None:
    """Log an OS command's exit code and timing.

    Only the executable is logged. Connect commands carry the Wi-Fi
    password in their arguments.
    """
    level = logging.DEBUG if returncode == 0 else logging.INFO
    logger.log(level, f"Command {command[0]} ({len(command) - 1} args) -> rc={returncode}, {duration_ms:.1f}ms")


class LogContext:
    """Times a block and logs its start and end.

    ``duration_ms`` stays readable after the block, which is how discovery
    reports fill in their own duration.

    Example:
        >>> with LogContext(logger, "Device discovery") as ctx:
        ...     probe_set.run_all(context)
        >>> ctx.duration_ms
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.DEBUG):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.duration_ms: float = 0.0
        self._started: float = 0.0

    def __enter__(self) -> 'LogContext':
        self._started = time.monotonic()
        self.logger.log(self.level, f"{self.operation} starting...")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.duration_ms = (time.monotonic() - self._started) * 1000
        if exc_type:
            self.logger.error(f"{self.operation} failed after {self.duration_ms:.0f}ms: {exc_val}")
        else:
            self.logger.log(self.level, f"{self.operation} completed in {self.duration_ms:.0f}ms")
        return False

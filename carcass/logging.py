"""
Loguru configuration for carcass.

This module provides the logging setup shared by every component:
- console output on stderr at the configured level
- optional rotating log file
- module-bound loggers and structured context binding
- timing of long running operations
"""

import functools
import sys
import time
from typing import Any, Callable, List

from loguru import logger

from .config import Config

# Console format used in debug mode
CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> | "
    "<level>{message}</level>"
)

# Plain format for normal runs and log files
PRODUCTION_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS ZZ} | "
    "{level: <8} | "
    "{extra[name]} | "
    "{message}"
)


class LoggingManager:
    """Logging system manager."""

    def __init__(self, config: Config):
        """
        Initialize the logging manager.

        Args:
            config: carcass configuration
        """
        self.config = config
        self._handler_ids: List[int] = []

    def setup_logging(self) -> None:
        """Replace loguru's default handler with the configured ones."""
        logger.remove()
        logger.configure(extra={"name": "carcass"})

        self._add_console_handler()
        self._add_file_handler()

    def _add_console_handler(self) -> None:
        is_debug = self.config.logging.level == "DEBUG"

        handler_id = logger.add(
            sys.stderr,
            format=CONSOLE_FORMAT if is_debug else PRODUCTION_FORMAT,
            level=self.config.logging.level,
            colorize=True,
            backtrace=is_debug,
            diagnose=is_debug,
            catch=True,
        )
        self._handler_ids.append(handler_id)

    def _add_file_handler(self) -> None:
        if not self.config.logging.file:
            return

        handler_id = logger.add(
            self.config.logging.file,
            format=PRODUCTION_FORMAT,
            level=self.config.logging.level,
            rotation=self.config.logging.rotation,
            retention=self.config.logging.retention,
            compression="zip",
            backtrace=False,
            diagnose=False,
            catch=True,
        )
        self._handler_ids.append(handler_id)

    def cleanup(self) -> None:
        """Remove the handlers added by this manager."""
        for handler_id in self._handler_ids:
            try:
                logger.remove(handler_id)
            except ValueError:
                # already removed
                pass
        self._handler_ids.clear()


def get_logger(name: str) -> Any:
    """
    Get a logger bound to a module name.

    Args:
        name: module name, usually __name__

    Returns:
        loguru logger with the name bound in its extra dict
    """
    return logger.bind(name=name)


def configure_logging(config: Config) -> LoggingManager:
    """
    Configure logging for the whole process.

    Args:
        config: carcass configuration

    Returns:
        the logging manager, to clean up handlers
    """
    logging_manager = LoggingManager(config)
    logging_manager.setup_logging()
    return logging_manager


class LogContext:
    """Context manager binding structured data to log records."""

    def __init__(self, **context_data):
        self.context_data = context_data
        self.bound_logger = None

    def __enter__(self):
        self.bound_logger = logger.bind(**self.context_data)
        return self.bound_logger

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.bound_logger = None


def log_performance(threshold_ms: float = 1000.0, level: str = "DEBUG"):
    """
    Decorator logging the execution time of a function.

    Args:
        threshold_ms: above this duration the timing is logged at INFO
        level: log level used below the threshold
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            func_logger = get_logger(func.__module__)
            start_time = time.perf_counter()

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration_ms = (time.perf_counter() - start_time) * 1000
                func_logger.error(
                    "{}() failed after {:.2f}ms with {}: {}",
                    func.__name__,
                    duration_ms,
                    type(e).__name__,
                    str(e)
                )
                raise

            duration_ms = (time.perf_counter() - start_time) * 1000
            func_logger.log(
                "INFO" if duration_ms > threshold_ms else level,
                "{}() took {:.2f}ms",
                func.__name__,
                duration_ms
            )
            return result

        return wrapper
    return decorator

"""Logging configuration for hostcraft.

Provides configurable logging with:
- File-based logging with rotation
- Console output on stderr (stdout stays clean for plans and JSON)
- Performance timing decorators for probe and apply phases

Environment Variables:
    HOSTCRAFT_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: WARNING)
    HOSTCRAFT_LOG_FILE: Path to log file (default: ~/.hostcraft/hostcraft.log)
    HOSTCRAFT_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    HOSTCRAFT_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from hostcraft.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup

    @timed("probe")
    async def probe(self, desired):
        ...

    async with timed_section("apply", host_id="workstation", actions=12):
        ...
"""
import asyncio
import functools
import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable, Any

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("hostcraft.perf")
main_logger = logging.getLogger("hostcraft")

MAIN_FORMAT = logging.Formatter(
    "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-7s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

PERF_FORMAT = logging.Formatter(
    "%(asctime)s.%(msecs)03d | PERF | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)


def get_log_level(default: str = "WARNING") -> int:
    """Get log level from environment."""
    level_str = os.environ.get("HOSTCRAFT_LOG_LEVEL", default).upper()
    return getattr(logging, level_str, logging.WARNING)


def get_log_file() -> Optional[Path]:
    """Get log file path from environment. An empty value disables the file."""
    default_path = Path.home() / ".hostcraft" / "hostcraft.log"
    path_str = os.environ.get("HOSTCRAFT_LOG_FILE", str(default_path))
    return Path(path_str).expanduser() if path_str else None


def setup_logging(level: Optional[int] = None, log_file: Optional[Path] = None) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler on stderr (respects HOSTCRAFT_LOG_LEVEL)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance logger for timing metrics

    Calling it again replaces the handlers rather than stacking them.

    Args:
        level: Console level override (e.g. from -v flags)
        log_file: Log file override
    """
    log_level = level if level is not None else get_log_level()
    log_file = log_file if log_file is not None else get_log_file()
    max_size_mb = int(os.environ.get("HOSTCRAFT_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("HOSTCRAFT_LOG_BACKUPS", "5"))

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(MAIN_FORMAT)

    handlers: list[logging.Handler] = [console_handler]
    file_error: Optional[OSError] = None
    perf_handlers: list[logging.Handler] = []

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=max_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8"
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(MAIN_FORMAT)
            handlers.append(file_handler)

            perf_log_file = log_file.parent / "hostcraft-perf.log"
            perf_handler = RotatingFileHandler(
                perf_log_file,
                maxBytes=max_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8"
            )
            perf_handler.setLevel(logging.DEBUG)
            perf_handler.setFormatter(PERF_FORMAT)
            perf_handlers.append(perf_handler)
        except OSError as e:
            # Read-only home directories still get console logging
            file_error = e

    root_logger = logging.getLogger("hostcraft")
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.handlers.clear()
    for handler in handlers:
        root_logger.addHandler(handler)

    # Perf records go to their own file and are not duplicated in the main log
    perf_logger.setLevel(logging.DEBUG)
    perf_logger.propagate = False
    perf_logger.handlers.clear()
    perf_logger.addHandler(console_handler)
    for handler in perf_handlers:
        perf_logger.addHandler(handler)

    if file_error is not None:
        root_logger.warning(f"File logging disabled: {file_error}")
    root_logger.debug(
        f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}"
    )


def _perf_line(operation: str, host_id: Optional[str], elapsed: float, status: str) -> str:
    return f"{operation:20s} | {host_id or 'N/A':15s} | {elapsed:8.2f}ms | {status}"


def timed(operation: str, host_id: Optional[str] = None):
    """Decorator to log execution time of sync/async functions.

    Args:
        operation: Name of the operation (e.g., "connect", "probe", "apply")
        host_id: Optional host identifier (can also be inferred from self.host_id)
    """
    def decorator(func: Callable) -> Callable:
        def _host(args) -> Optional[str]:
            if host_id is None and args and hasattr(args[0], "host_id"):
                return args[0].host_id
            return host_id

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                elapsed = (time.perf_counter() - start) * 1000  # ms
                perf_logger.info(_perf_line(operation, _host(args), elapsed, "OK"))
                return result
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_perf_line(operation, _host(args), elapsed, f"FAIL: {e}"))
                raise

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.info(_perf_line(operation, _host(args), elapsed, "OK"))
                return result
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_perf_line(operation, _host(args), elapsed, f"FAIL: {e}"))
                raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, host_id: Optional[str] = None, **extra):
    """Async context manager for timing code sections.

    Args:
        operation: Name of the operation
        host_id: Host identifier
        **extra: Additional context to log

    Usage:
        async with timed_section("probe", host_id="workstation", kinds=4):
            await prober.probe(desired)
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""

    try:
        yield
        elapsed = (time.perf_counter() - start) * 1000
        msg = _perf_line(operation, host_id, elapsed, "OK")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.info(msg)
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        msg = _perf_line(operation, host_id, elapsed, f"FAIL: {e}")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.warning(msg)
        raise

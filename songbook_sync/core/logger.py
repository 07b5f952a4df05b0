"""
Logging configuration for songbook-sync.

This module sets up the logging system with multiple outputs:
    - Console: Real-time status with tqdm-compatible formatting
    - sync_full.log: Complete log of all events (DEBUG and above)
    - sync_errors.log: Only ERROR and CRITICAL level messages
    - degraded_reads.log: Reads that were served from a fallback tier
      (stale cache, bundled snapshot, or nothing at all)

The library itself never configures handlers. Embedding applications (and
the songbook CLI) call setup_logging() once; until then every module logger
is silent.

Usage:
    from songbook_sync.core.logger import setup_logging, get_logger

    setup_logging(log_dir)  # Call once at startup
    logger = get_logger(__name__)  # Get logger for each module

    logger.info("Collection cached")
    log_degraded_read(logger, "get_all_songs", "snapshot", "offline", 10)
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO

from tqdm import tqdm


# Log format for file output (detailed with timestamp)
FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log format for console output (compact, tqdm-friendly)
CONSOLE_LOG_FORMAT = "%(levelname)s: %(message)s"


class Colors:
    """ANSI color codes for terminal output."""
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    BOLD = "\033[1m"


class ColoredConsoleFormatter(logging.Formatter):
    """
    Formatter that colors the level name on console output.

    Colors:
        - DEBUG: Blue
        - INFO: Green
        - WARNING: Yellow
        - ERROR: Red
        - CRITICAL: Bold Red
    """

    LEVEL_COLORS = {
        logging.DEBUG: Colors.BLUE,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        colored_levelname = f"{color}{record.levelname}{Colors.RESET}"
        return f"{colored_levelname}: {record.getMessage()}"


class TqdmLoggingHandler(logging.Handler):
    """
    Logging handler that writes to the console without breaking tqdm bars.

    The CLI shows a progress bar while walking pages; plain stderr
    writes would tear it. tqdm.write() prints above any active bar.
    """

    def __init__(self, stream: TextIO = sys.stderr) -> None:
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            tqdm.write(msg, file=self.stream)
        except Exception:
            self.handleError(record)


class DegradedReadHandler(logging.Handler):
    """
    Handler that records every read served from a fallback tier.

    Listens for log records carrying the 'degraded_operation' extra field
    and writes one line per record to degraded_reads.log:

        2026-10-19 10:31:02 | get_all_songs | snapshot | offline | 10 songs

    The handler looks for these extra fields:
        - 'degraded_operation': Public operation that degraded
        - 'degraded_source': Tier that finally answered
        - 'degraded_reason': Why the preferred tier was skipped
        - 'degraded_song_count': Number of songs returned

    Records without 'degraded_operation' are ignored.

    Attributes:
        report_path: Path to the degraded_reads.log file.
        report_file: Open file handle (set by open()).
    """

    def __init__(self, report_path: Path) -> None:
        super().__init__()
        self.report_path = report_path
        self.report_file: TextIO | None = None

    def open(self) -> None:
        """
        Open the report file for writing.

        Called by setup_logging() after the handler is created.
        """
        self.report_file = open(self.report_path, "w", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        if not hasattr(record, "degraded_operation"):
            return

        if self.report_file is None:
            return

        try:
            timestamp = datetime.fromtimestamp(record.created).strftime(FILE_DATE_FORMAT)
            operation = getattr(record, "degraded_operation", "unknown")
            source = getattr(record, "degraded_source", "unknown")
            reason = getattr(record, "degraded_reason", "")
            count = getattr(record, "degraded_song_count", 0)

            self.report_file.write(
                f"{timestamp} | {operation} | {source} | {reason} | {count} songs\n"
            )
            self.report_file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        """
        Close the report file handle.

        Safe to call multiple times.
        """
        if self.report_file is not None:
            try:
                self.report_file.close()
            except OSError:
                pass
            self.report_file = None
        super().close()


class ErrorOnlyFilter(logging.Filter):
    """
    Filter that only allows ERROR and CRITICAL level records.

    Used by the error log file handler to exclude DEBUG, INFO, and WARNING.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


def setup_logging(log_dir: Path | None = None, verbose: bool = False) -> None:
    """
    Configure the logging system for the application.

    This function should be called ONCE at application startup, after
    the configuration is loaded but before the engine is started.

    Args:
        log_dir: Directory where log files will be created. When None,
                 only the console handler is installed.
        verbose: If True, the console shows DEBUG records too.

    Behavior:
        1. Configure root logger level to DEBUG and drop existing handlers
        2. Create console handler (TqdmLoggingHandler)
           - Level: INFO, or DEBUG when verbose
           - Format: Compact, colored
        3. If log_dir is given, create it and add:
           - sync_full_{timestamp}.log (DEBUG)
           - sync_errors_{timestamp}.log (ERROR+ via ErrorOnlyFilter)
           - degraded_reads_{timestamp}.log (DegradedReadHandler)

    Thread Safety:
        This function is NOT thread-safe. Call it once from the main
        thread before starting the event loop.

    See Also:
        log_degraded_read(): Helper to log with correct extra fields
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = TqdmLoggingHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(ColoredConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_dir is None:
        return

    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")

    full_handler = logging.FileHandler(
        log_dir / f"sync_full_{timestamp}.log", mode="w", encoding="utf-8"
    )
    full_handler.setLevel(logging.DEBUG)
    full_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    root_logger.addHandler(full_handler)

    error_handler = logging.FileHandler(
        log_dir / f"sync_errors_{timestamp}.log", mode="w", encoding="utf-8"
    )
    error_handler.setLevel(logging.DEBUG)  # Filter handles the level restriction
    error_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    error_handler.addFilter(ErrorOnlyFilter())
    root_logger.addHandler(error_handler)

    degraded_handler = DegradedReadHandler(log_dir / f"degraded_reads_{timestamp}.log")
    degraded_handler.open()
    root_logger.addHandler(degraded_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: The logger name, typically __name__ of the calling module.
              This creates a hierarchy like 'songbook_sync.cache.migration'.

    Returns:
        logging.Logger: A logger instance configured by setup_logging().
    """
    return logging.getLogger(name)


def format_source_message(operation: str, source: str, count: int) -> str:
    """
    Format a colored one-line summary of where a read was served from.

    Args:
        operation: Public operation name.
        source: Data source value (e.g. "remote", "snapshot").
        count: Number of songs returned.

    Returns:
        Colored message string.
    """
    color = Colors.GREEN if source in ("remote", "cache") else Colors.YELLOW
    if count == 0:
        color = Colors.RED
    return f"{operation}: {count} songs from {color}{source}{Colors.RESET}"


def log_degraded_read(
    logger: logging.Logger,
    operation: str,
    source: str,
    reason: str,
    song_count: int
) -> None:
    """
    Log a read that was answered by a fallback tier.

    Attaches the extra fields DegradedReadHandler writes to
    degraded_reads.log.

    Args:
        logger: The logger to use for the message.
        operation: Public operation that degraded (e.g. "get_all_songs").
        source: Tier that finally answered ("stale_cache", "snapshot", "none").
        reason: Why the preferred tier was skipped.
        song_count: Number of songs returned to the caller.

    Example:
        log_degraded_read(
            logger,
            operation="get_songs_for_collection",
            source="stale_cache",
            reason="remote timeout after 8s",
            song_count=42
        )
    """
    logger.warning(
        f"{operation} degraded to {source} ({reason}), {song_count} songs",
        extra={
            "degraded_operation": operation,
            "degraded_source": source,
            "degraded_reason": reason,
            "degraded_song_count": song_count,
        }
    )


def shutdown_logging() -> None:
    """
    Flush, close and remove all root handlers.

    Typically called in a finally block at CLI exit.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        try:
            handler.flush()
            handler.close()
        except OSError:
            pass
        root_logger.removeHandler(handler)

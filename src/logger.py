"""
logger.py - Logging Module for the Fairdrop Client

Thread-safe, buffered file logging with gzip archive rotation. Every module
logs through a LoggerHandle and a short context name; a None handle is
accepted everywhere and discards the entry, so library code can log
unconditionally.

Log Format:
    [2026-10-19 16:30:45.123] INFO  | InboxPoller  | Poll found 2 message(s)
    [2026-10-19 16:30:45.456] ERROR | Envelope     | Decrypt failed | REASON: tag mismatch

Functions:
    init_logger(log_path, ...)            -> LoggerHandle or None
    parse_log_level(name)                 -> LogLevel
    log_debug(handle, context, message)   -> None
    log_info(handle, context, message)    -> None
    log_warning(handle, context, message) -> None
    log_error(handle, context, message, reason=None) -> None
    flush_log(handle)                     -> None
    close_logger(handle)                  -> None
"""

import gzip
import os
import shutil
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Optional, TextIO


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB
DEFAULT_MAX_ARCHIVES = 5
DEFAULT_BUFFER_SIZE = 8192
CONTEXT_WIDTH = 12


class LogLevel(IntEnum):
    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3


LEVEL_NAMES = {
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO ",
    LogLevel.WARNING: "WARN ",
    LogLevel.ERROR: "ERROR",
}

_LEVEL_ALIASES = {
    "debug": LogLevel.DEBUG,
    "info": LogLevel.INFO,
    "warn": LogLevel.WARNING,
    "warning": LogLevel.WARNING,
    "error": LogLevel.ERROR,
}


# ============================================================================
# LOGGER HANDLE
# ============================================================================

@dataclass
class LoggerHandle:
    """
    Logger state shared by every module of one client instance.

    Entries are buffered in memory and written once the buffer passes
    buffer_size, on flush_log(), or immediately for ERROR entries.
    console_level mirrors entries at or above that level to stderr
    (None disables mirroring).
    """
    path: str
    file: Optional[TextIO] = None
    buffer: bytearray = field(default_factory=bytearray)
    buffer_size: int = DEFAULT_BUFFER_SIZE
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    max_archives: int = DEFAULT_MAX_ARCHIVES
    mutex: threading.Lock = field(default_factory=threading.Lock)
    min_level: LogLevel = LogLevel.DEBUG
    console_level: Optional[LogLevel] = None


# ============================================================================
# INTERNAL HELPERS
# ============================================================================

def _format_timestamp() -> str:
    now = datetime.now()
    return now.strftime("%Y-%m-%d %H:%M:%S.") + f"{now.microsecond // 1000:03d}"


def _format_context(context: str) -> str:
    """Pad or truncate the context to exactly CONTEXT_WIDTH characters."""
    if len(context) > CONTEXT_WIDTH:
        return context[:CONTEXT_WIDTH]
    return context.ljust(CONTEXT_WIDTH)


def _write_log_entry(
    handle: Optional[LoggerHandle],
    level: LogLevel,
    context: str,
    message: str,
    reason: Optional[str] = None
) -> None:
    if handle is None or handle.file is None:
        return

    mirror = handle.console_level is not None and level >= handle.console_level
    if level < handle.min_level and not mirror:
        return

    level_str = LEVEL_NAMES.get(level, "?????")
    if reason and level == LogLevel.ERROR:
        entry = f"[{_format_timestamp()}] {level_str} | {_format_context(context)} | {message} | REASON: {reason}\n"
    else:
        entry = f"[{_format_timestamp()}] {level_str} | {_format_context(context)} | {message}\n"

    if mirror:
        sys.stderr.write(entry)

    if level < handle.min_level:
        return

    with handle.mutex:
        handle.buffer.extend(entry.encode("utf-8"))
        if level == LogLevel.ERROR or len(handle.buffer) >= handle.buffer_size:
            _flush_buffer(handle)


def _flush_buffer(handle: LoggerHandle) -> None:
    """Write the buffer to disk. Caller holds handle.mutex."""
    if handle.file is None or not handle.buffer:
        return

    try:
        handle.file.write(handle.buffer.decode("utf-8"))
        handle.file.flush()
        handle.buffer.clear()
        _check_rotation(handle)
    except OSError as e:
        print(f"Logger write error: {e}", file=sys.stderr)


def _check_rotation(handle: LoggerHandle) -> None:
    try:
        if os.path.getsize(handle.path) >= handle.max_file_size:
            _rotate_logs(handle)
    except OSError:
        pass  # not created yet


def _rotate_logs(handle: LoggerHandle) -> None:
    """
    Rotate fairdrop.mlog -> fairdrop.mlog.1.gz -> fairdrop.mlog.2.gz ...
    Caller holds handle.mutex.
    """
    try:
        if handle.file:
            handle.file.close()
            handle.file = None

        oldest = f"{handle.path}.{handle.max_archives}.gz"
        if os.path.exists(oldest):
            os.remove(oldest)

        for i in range(handle.max_archives - 1, 0, -1):
            src = f"{handle.path}.{i}.gz"
            if os.path.exists(src):
                os.replace(src, f"{handle.path}.{i + 1}.gz")

        if os.path.exists(handle.path):
            with open(handle.path, "rb") as f_in, gzip.open(f"{handle.path}.1.gz", "wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
            os.remove(handle.path)
    except OSError as e:
        print(f"Logger rotation error: {e}", file=sys.stderr)
    finally:
        try:
            handle.file = open(handle.path, "a", encoding="utf-8")
        except OSError:
            handle.file = None


# ============================================================================
# PUBLIC API
# ============================================================================

def parse_log_level(name: Optional[str], default: LogLevel = LogLevel.INFO) -> LogLevel:
    """Map a config string such as "debug" or "warning" to a LogLevel."""
    if not name:
        return default
    return _LEVEL_ALIASES.get(name.strip().lower(), default)


def init_logger(
    log_path: str,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    max_archives: int = DEFAULT_MAX_ARCHIVES,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
    min_level: LogLevel = LogLevel.DEBUG,
    console_level: Optional[LogLevel] = None
) -> Optional[LoggerHandle]:
    """
    Open (or create) the log file and return a handle.

    Args:
        log_path: Path to the log file (e.g., "Data/fairdrop.mlog")
        max_file_size: Size in bytes that triggers rotation
        max_archives: Number of gzip archives to keep
        buffer_size: Bytes buffered before a write
        min_level: Lowest level written to the file
        console_level: Lowest level mirrored to stderr, None for no mirroring

    Returns:
        LoggerHandle, or None if the file cannot be opened
    """
    try:
        parent_dir = os.path.dirname(log_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        file_handle = open(log_path, "a", encoding="utf-8")
        file_handle.write(f"=== Logger initialized: {_format_timestamp()} ===\n")
        file_handle.flush()
    except OSError as e:
        print(f"Failed to initialize logger: {e}", file=sys.stderr)
        return None

    return LoggerHandle(
        path=log_path,
        file=file_handle,
        buffer_size=buffer_size,
        max_file_size=max_file_size,
        max_archives=max_archives,
        min_level=min_level,
        console_level=console_level,
    )


def log_debug(handle: Optional[LoggerHandle], context: str, message: str) -> None:
    _write_log_entry(handle, LogLevel.DEBUG, context, message)


def log_info(handle: Optional[LoggerHandle], context: str, message: str) -> None:
    _write_log_entry(handle, LogLevel.INFO, context, message)


def log_warning(handle: Optional[LoggerHandle], context: str, message: str) -> None:
    _write_log_entry(handle, LogLevel.WARNING, context, message)


def log_error(
    handle: Optional[LoggerHandle],
    context: str,
    message: str,
    reason: Optional[str] = None
) -> None:
    """
    Log an error, flushed to disk immediately.

    Example:
        log_error(handle, "Envelope", "Decrypt failed", "tag mismatch")
        # [..] ERROR | Envelope     | Decrypt failed | REASON: tag mismatch
    """
    _write_log_entry(handle, LogLevel.ERROR, context, message, reason)


def flush_log(handle: Optional[LoggerHandle]) -> None:
    if handle is None:
        return
    with handle.mutex:
        _flush_buffer(handle)


def close_logger(handle: Optional[LoggerHandle]) -> None:
    """Flush, write the session end marker and close the file."""
    if handle is None:
        return

    with handle.mutex:
        _flush_buffer(handle)
        if handle.file:
            try:
                handle.file.write(f"=== Logger closed: {_format_timestamp()} ===\n")
                handle.file.flush()
                handle.file.close()
            except OSError:
                pass
        handle.file = None

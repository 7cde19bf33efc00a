"""
Centralized logger configuration for the SRV resolver.

Provides:
- InterceptHandler: bridges stdlib logging (dnspython, uvicorn) to loguru
- LoguruCompat: formatting-friendly wrapper around the loguru logger
- configure_logging(app_name): sets up sinks and returns a bound app logger
"""
from __future__ import annotations

import os
import sys
import socket
import logging
from pathlib import Path

from loguru import logger


class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        # forward to loguru, preserve exception info if present
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


class LoguruCompat:
    """Accepts both `{}`-style and `%`-style calls, the way stdlib callers write them."""

    def __init__(self, lg):
        self._lg = lg

    def _format_msg(self, *args, **kwargs) -> str:
        if not args:
            return str(kwargs) if kwargs else ""

        fmt = args[0]
        rest = args[1:]
        if not isinstance(fmt, str):
            return " ".join(map(str, args))

        if ("{" in fmt and "}" in fmt) or kwargs:
            try:
                return fmt.format(*rest, **kwargs)
            except (IndexError, KeyError, ValueError):
                pass
        if "%" in fmt and rest:
            try:
                return fmt % rest
            except (TypeError, ValueError):
                pass
        if rest:
            return fmt + " " + " ".join(map(str, rest))
        return fmt

    def _log(self, level: str, *args, **kwargs) -> None:
        # depth=2 so records point at the caller, not this wrapper
        self._lg.opt(depth=2).log(level, self._format_msg(*args, **kwargs))

    def bind(self, **fields) -> "LoguruCompat":
        return LoguruCompat(self._lg.bind(**fields))

    def debug(self, *args, **kwargs):
        self._log("DEBUG", *args, **kwargs)

    def info(self, *args, **kwargs):
        self._log("INFO", *args, **kwargs)

    def warning(self, *args, **kwargs):
        self._log("WARNING", *args, **kwargs)

    def error(self, *args, **kwargs):
        self._log("ERROR", *args, **kwargs)

    def critical(self, *args, **kwargs):
        self._log("CRITICAL", *args, **kwargs)

    def exception(self, *args, **kwargs):
        msg = self._format_msg(*args, **kwargs) if (args or kwargs) else "exception"
        self._lg.opt(depth=1, exception=True).error(msg)

    def getChild(self, name: str) -> "LoguruCompat":
        return LoguruCompat(self._lg.bind(module=name))


def _server_tag() -> str:
    tag = os.getenv("SRV_SERVER_TAG") or os.getenv("HOSTNAME") or socket.gethostname()
    # Sanitize tag for filesystem safety
    return "".join(ch for ch in tag if ch.isalnum() or ch in ("-", "_")) or "server"


def configure_logging(app_name: str = "srv_app") -> LoguruCompat:
    """
    Configure loguru sinks and stdlib logging interception.
    Returns a bound `LoguruCompat` logger for the application.

    The file sink is only added when SRV_APP_LOG_FILE or SRV_APP_LOG_DIR is set.
    """
    logger.remove()
    logger.configure(extra={"module": "-"})
    log_level = os.getenv("SRV_APP_LOG_LEVEL", "INFO").upper()
    logger.add(sys.stderr, level=log_level, format="<green>{time}</green> <level>{message}</level>")

    log_file = os.getenv("SRV_APP_LOG_FILE")
    log_dir = os.getenv("SRV_APP_LOG_DIR")
    if not log_file and log_dir:
        log_file = str(Path(log_dir) / f"{app_name}.{_server_tag()}.log")
    if log_file:
        rotation = os.getenv("SRV_APP_LOG_ROTATION", "10 MB")
        retention = os.getenv("SRV_APP_LOG_RETENTION", "7 days")
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            logger.add(
                log_file,
                level=log_level,
                enqueue=True,
                backtrace=True,
                diagnose=False,
                rotation=rotation,
                retention=retention,
                format="{time} | {level} | {extra[module]} | {message}",
            )
            logger.info("File logging enabled: {} (rotation={} retention={})", log_file, rotation, retention)
        except OSError as e:
            # If file sink cannot be created, continue with stderr only
            logger.warning("File logging disabled, cannot open {}: {}", log_file, e)

    # Bridge stdlib logging through loguru
    logging.root.handlers = [InterceptHandler()]
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))

    global _APP_LOGGER
    _APP_LOGGER = LoguruCompat(logger.bind(app=app_name))
    return _APP_LOGGER


_APP_LOGGER: LoguruCompat | None = None


def get_app_logger(app_name: str = "srv_app") -> LoguruCompat:
    """Return the configured application logger if available; otherwise bind a lightweight one."""
    if _APP_LOGGER is not None:
        return _APP_LOGGER
    return LoguruCompat(logger.bind(app=app_name))


def get_child_logger(name: str, app_name: str = "srv_app") -> LoguruCompat:
    """Convenience: return a child logger bound with module/name."""
    return get_app_logger(app_name).getChild(name)


__all__ = [
    "InterceptHandler",
    "LoguruCompat",
    "configure_logging",
    "get_app_logger",
    "get_child_logger",
]

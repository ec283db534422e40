"""
Console Logging

Readable terminal output for the session engine: one line per record with
a short timestamp, a level badge, the logger name and, when the record
belongs to a session, its id. Structured details passed as `data` are
printed indented under the message.
"""

import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional

RESET = "\033[0m"
DIM = "\033[90m"
BOLD = "\033[1m"

# level -> (badge, color)
LEVEL_STYLES = {
    "DEBUG": ("🔍", "\033[36m"),
    "INFO": ("ℹ️", "\033[32m"),
    "WARNING": ("⚠️", "\033[33m"),
    "ERROR": ("❌", "\033[31m"),
    "CRITICAL": ("🚨", "\033[35m"),
}

QUIET_LOGGERS = ("asyncio", "httpx", "httpcore", "hpack")


class ColoredFormatter(logging.Formatter):
    """`[HH:MM:SS.mmm] badge LEVEL name [session] | message`; colors only on a TTY."""

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{RESET}" if self.use_colors else text

    def format(self, record: logging.LogRecord) -> str:
        badge, color = LEVEL_STYLES.get(record.levelname, ("•", RESET))
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        session_id = getattr(record, "session_id", None)

        parts = [
            self._paint(f"[{clock}]", DIM),
            badge,
            self._paint(f"{record.levelname:8s}", color),
            self._paint(record.name, BOLD),
        ]
        if session_id:
            parts.append(self._paint(f"[{session_id}]", DIM))
        line = " ".join(parts) + f" | {record.getMessage()}"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def render_data(data: Any, indent: int = 2) -> str:
    """Indented key/value rendering; long lists are cut after three items."""
    pad = " " * indent
    if isinstance(data, dict):
        rows = [f"{pad}{key}: {render_data(value, indent + 2)}" for key, value in data.items()]
        return "{\n" + "\n".join(rows) + "\n" + " " * (indent - 2) + "}"
    if isinstance(data, list):
        head = ", ".join(render_data(item, indent + 2) for item in data[:3])
        more = f", ... ({len(data)} items total)" if len(data) > 3 else ""
        return f"[{head}{more}]"
    return str(data)


class StructuredLogger:
    """
    Wraps a stdlib logger. Messages may carry a `data` dict, and a logger
    bound to a session stamps its id on every record.
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None, session_id: Optional[str] = None):
        self.name = name
        self.logger = logger or logging.getLogger(name)
        self.session_id = session_id

    def bind(self, session_id: Optional[str]) -> "StructuredLogger":
        return StructuredLogger(self.name, self.logger, session_id)

    def _log(self, level: int, message: str, data: Optional[Dict[str, Any]] = None, exc_info=None):
        if data:
            message = f"{message}\n{render_data(data)}"
        extra = {"session_id": self.session_id} if self.session_id else None
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._log(logging.DEBUG, message, data)

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._log(logging.INFO, message, data)

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._log(logging.WARNING, message, data)

    def error(self, message: str, error: Optional[Exception] = None, data: Optional[Dict[str, Any]] = None):
        if error is not None:
            message = f"{message} Error: {type(error).__name__}: {error}"
        self._log(logging.ERROR, message, data, exc_info=error)

    def success(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._log(logging.INFO, f"✅ {message}", data)


def setup_logging(level: Any = logging.INFO, use_colors: bool = True) -> logging.Logger:
    """
    Route all logging to stdout through ColoredFormatter.

    `level` may be a logging constant or a name such as "DEBUG" (as read
    from LOG_LEVEL).
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(ColoredFormatter(use_colors=use_colors))

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.setLevel(level)
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root


def get_logger(name: str, session_id: Optional[str] = None) -> StructuredLogger:
    return StructuredLogger(name, logging.getLogger(name), session_id)

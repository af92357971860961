"""
Logging setup for the API.

Modules log a short snake_case event name and put the details in
``extra={...}``. Only the fields listed below are rendered; anything else
passed through ``extra`` is ignored by both formatters.
"""
import json
import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

# set by the request middleware, read by every log line in that request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

ACCESS_FIELDS = ("method", "path", "status", "duration_ms", "client", "user_agent")
EVENT_FIELDS = (
    "day",
    "pair_id",
    "user_id",
    "image_id",
    "mode",
    "attempt",
    "applied",
    "outcome",
    "kind",
    "current_streak",
    "perfect_streak",
    "ws_count",
    "url",
    "errors",
    "error",
)


def _collect(record: logging.LogRecord, names) -> Dict[str, Any]:
    found = {}
    for name in names:
        value = getattr(record, name, None)
        if value is not None:
            found[name] = value
    return found


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        doc: Dict[str, Any] = {
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        request_id = request_id_ctx.get()
        if request_id:
            doc["request_id"] = request_id
        doc.update(_collect(record, ACCESS_FIELDS + EVENT_FIELDS))
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Single-line output for a terminal, optionally with ANSI colors."""

    LEVEL_COLORS = {
        "DEBUG": "36",
        "INFO": "32",
        "WARNING": "33",
        "ERROR": "31",
        "CRITICAL": "1;31",
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _paint(self, text: str, code: str) -> str:
        if self.use_color and code:
            return f"\033[{code}m{text}\033[0m"
        return text

    @staticmethod
    def _status_code_color(status: int) -> str:
        if status >= 500:
            return "31"
        if status >= 400:
            return "33"
        return "32" if status < 300 else "36"

    def _access(self, fields: Dict[str, Any]) -> List[str]:
        out = []
        if "method" in fields or "path" in fields:
            out.append(self._paint(f"{fields.get('method', '-')} {fields.get('path', '-')}", "1"))
        status = fields.get("status")
        if isinstance(status, int):
            out.append(self._paint(str(status), self._status_code_color(status)))
        if "duration_ms" in fields:
            out.append(self._paint(f"{fields['duration_ms']}ms", "90"))
        return out

    def format(self, record: logging.LogRecord) -> str:
        head = [
            self.formatTime(record, datefmt="%H:%M:%S"),
            self._paint(f"{record.levelname:<7}", self.LEVEL_COLORS.get(record.levelname, "")),
            self._paint(record.name, "34"),
        ]
        request_id = request_id_ctx.get()
        if request_id:
            head.append(self._paint(request_id[:8], "35"))

        body = self._access(_collect(record, ACCESS_FIELDS))
        message = record.getMessage()
        if message:
            body.append(message)
        events = _collect(record, EVENT_FIELDS)
        if events:
            body.append(self._paint("[" + " ".join(f"{k}={v}" for k, v in events.items()) + "]", "90"))

        line = " ".join(head) + " | " + " ".join(body)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _stdout_is_tty() -> bool:
    try:
        return sys.stdout.isatty()
    except (AttributeError, ValueError):
        return False


def _pick_formatter() -> logging.Formatter:
    # LOG_FORMAT=json|pretty wins; otherwise pretty only on a terminal
    mode = os.getenv("LOG_FORMAT", "").lower()
    pretty = mode == "pretty" or (mode == "" and _stdout_is_tty())
    if not pretty:
        return JsonFormatter()
    colors = os.getenv("LOG_COLOR", "1").lower() not in ("0", "false", "no")
    return ColorFormatter(use_color=colors)


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Route root and uvicorn logging through one stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_pick_formatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv = logging.getLogger(name)
        uv.handlers = [handler]
        uv.propagate = False
        uv.setLevel(level)
    return root


def get_logger(name: str = "artalyze") -> logging.Logger:
    return logging.getLogger(name)

# chatbridge/infra/logging_config.py
import logging
import sys
import json
from datetime import datetime, timezone

# Record attribute → console label; identifiers are masked on the console only
_CONTEXT_LABELS = {
    "conversation_id": "conv",
    "room_id": "room",
    "session_id": "session",
    "request_id": "req",
}

# Structured extras emitted by middleware and workers
_EXTRA_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "error_type",
    "client_ip",
    "key_masked",
    "retry_after",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers in production"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        for name in (*_CONTEXT_LABELS, *_EXTRA_FIELDS):
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def mask_identifier(value: str) -> str:
    """Mask visitor / room identifiers for console output."""
    if len(value) > 6:
        return value[:4] + "****" + value[-2:]
    return value


class ConsoleFormatter(logging.Formatter):
    """Coloured single-line output for local development"""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, self.RESET)
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S")

        context = " ".join(
            f"{label}={mask_identifier(str(getattr(record, name)))}"
            for name, label in _CONTEXT_LABELS.items()
            if getattr(record, name, None) is not None
        )
        if context:
            context = f" [{context}]"

        line = f"{color}{stamp} {record.levelname:<8}{self.RESET} {record.name}{context} | {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure the root logger once per process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: JSON lines instead of the coloured console format
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)

    # Chatty third-party loggers
    for name, lib_level in (
        ("uvicorn.access", logging.WARNING),
        ("uvicorn.error", logging.INFO),
        ("aiohttp.access", logging.WARNING),
        ("google", logging.WARNING),
    ):
        logging.getLogger(name).setLevel(lib_level)

    logging.getLogger(__name__).info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """Logger wrapper that stamps conversation identifiers on every record"""

    def __init__(
            self,
            logger: logging.Logger,
            conversation_id: str | None = None,
            room_id: str | None = None,
            session_id: str | None = None,
            request_id: str | None = None,
    ):
        self.logger = logger
        fields = {
            "conversation_id": conversation_id,
            "room_id": room_id,
            "session_id": session_id,
            "request_id": request_id,
        }
        self.context = {k: v for k, v in fields.items() if v is not None}

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra = {**kwargs.pop("extra", {}), **self.context}
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._log(logging.CRITICAL, msg, *args, **kwargs)

import json
import logging
import re
import sys
from logging.handlers import QueueHandler, QueueListener
from queue import Queue
from typing import Any, Dict, Optional
from orderflow.config.admin_config import admin_config
from orderflow.common.constants import request_id_ctx

ENV = getattr(admin_config, "ENV", "dev").lower()

SENSITIVE_KEYS = (
    "password", "secret", "token", "authorization", "client_secret",
    "access_token", "card_number", "cvv", "approval_token",
)

# attributes every LogRecord carries; anything else came in through `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}


def redact_text(msg: str) -> str:
    """Best-effort masking of credentials that slipped into a message string."""
    out = msg
    for key in SENSITIVE_KEYS:
        out = re.sub(rf'("{key}"\s*:\s*")[^"]+(")', r'\1[REDACTED]\2', out, flags=re.IGNORECASE)
        out = re.sub(rf'({key}\s*[=:]\s*)[\w\-\./+]+', r'\1[REDACTED]', out, flags=re.IGNORECASE)
    return out


def _mask_id(value: Any) -> str:
    val = str(value)
    if len(val) > 12:
        return val[:8] + "..." + val[-4:]
    return val[:8] + "..."


class JSONFormatter(logging.Formatter):
    """One JSON object per line, used outside dev."""

    masked_fields = ("customer_email", "customer_phone")

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_text(record.getMessage()),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "env": ENV,
            "service": admin_config.SERVICE_NAME,
        }

        rid = request_id_ctx.get()
        if rid:
            log_data["request_id"] = rid

        for k, v in record.__dict__.items():
            if k in _RECORD_ATTRS or k.startswith("_"):
                continue
            log_data[k] = _mask_id(v) if k in self.masked_fields else v

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class RedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            record.msg = redact_text(record.getMessage())
            record.args = ()
        except (TypeError, ValueError):
            # malformed %-args; keep the record as is rather than dropping it
            pass
        return True


_queue_listener: Optional[QueueListener] = None


def setup_logging(level: Optional[int] = None) -> logging.Logger:
    """Install a queue based, non-blocking root handler. Call once at startup."""
    global _queue_listener

    if _queue_listener is not None:
        return logging.getLogger("orderflow.app")

    if level is None:
        level = logging.INFO if ENV in ("prod", "staging") else logging.DEBUG

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    q: Queue = Queue(-1)

    console_handler = logging.StreamHandler(sys.stdout)
    if ENV != "dev":
        console_handler.setFormatter(JSONFormatter())
        console_handler.addFilter(RedactionFilter())
    else:
        console_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)8s] %(name)s:%(funcName)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))

    root.setLevel(level)
    root.addHandler(QueueHandler(q))

    _queue_listener = QueueListener(q, console_handler, respect_handler_level=True)
    _queue_listener.start()

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING if ENV != "dev" else logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logging.getLogger("orderflow.app")


def shutdown_logging() -> None:
    global _queue_listener
    if _queue_listener is not None:
        _queue_listener.stop()
        _queue_listener = None


class ContextLogger:
    """Thin wrapper that stamps the current request id onto every record."""

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra = dict(kwargs.pop("extra", None) or {})
        rid = request_id_ctx.get()
        if rid:
            extra.setdefault("request_id", rid)
        kwargs["extra"] = extra
        kwargs.setdefault("stacklevel", 3)
        self._logger.log(level, msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, msg, *args, **kwargs)


def get_logger(name: str = "orderflow.app") -> ContextLogger:
    return ContextLogger(name)

import contextvars
import logging
import os
import sys
import threading
from logging.handlers import RotatingFileHandler

_LOCK = threading.Lock()
_CONFIGURED = False

# 현재 요청 번호. 미들웨어가 설정하며 요청 밖에서는 "-".
_REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar("reel_request_id", default="-")

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [req=%(request_id)s] %(message)s"


class RequestContextFilter(logging.Filter):
    """Stamp every record with the request id of the task that emitted it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = _REQUEST_ID.get()
        return True


def set_request_id(value: str) -> contextvars.Token:
    return _REQUEST_ID.set(str(value or "-"))


def reset_request_id(token: contextvars.Token) -> None:
    _REQUEST_ID.reset(token)


def current_request_id() -> str:
    return _REQUEST_ID.get()


def _parse_level(value: str) -> int:
    raw = str(value or "").strip().upper()
    if not raw:
        return logging.INFO
    level = logging.getLevelName(raw)
    if isinstance(level, int):
        return level
    return logging.INFO


def _parse_int(value: str, default: int, minimum: int) -> int:
    try:
        parsed = int(str(value or "").strip())
    except ValueError:
        return default
    return max(parsed, minimum)


def _attach_filter(handler: logging.Handler) -> None:
    if not any(isinstance(f, RequestContextFilter) for f in handler.filters):
        handler.addFilter(RequestContextFilter())


def configure_logging() -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    with _LOCK:
        if _CONFIGURED:
            return

        level = _parse_level(os.getenv("APP_LOG_LEVEL", "INFO"))
        fmt = os.getenv("APP_LOG_FORMAT", _DEFAULT_FORMAT)
        datefmt = os.getenv("APP_LOG_DATEFMT", "%Y-%m-%d %H:%M:%S")
        formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)

        root = logging.getLogger()
        root.setLevel(level)

        if not root.handlers:
            stream_handler = logging.StreamHandler(sys.stdout)
            stream_handler.setFormatter(formatter)
            _attach_filter(stream_handler)
            root.addHandler(stream_handler)
        else:
            # uvicorn / pytest가 먼저 붙인 핸들러에도 request_id를 보장한다.
            for handler in root.handlers:
                handler.setLevel(level)
                _attach_filter(handler)
                if handler.formatter is None:
                    handler.setFormatter(formatter)

        file_path = str(os.getenv("APP_LOG_FILE", "")).strip()
        if file_path:
            max_bytes = _parse_int(os.getenv("APP_LOG_MAX_BYTES", "10485760"), 10 * 1024 * 1024, 1024)
            backup_count = _parse_int(os.getenv("APP_LOG_BACKUP_COUNT", "5"), 5, 1)
            directory = os.path.dirname(file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            has_same_file_handler = any(
                isinstance(handler, RotatingFileHandler)
                and getattr(handler, "baseFilename", "") == os.path.abspath(file_path)
                for handler in root.handlers
            )
            if not has_same_file_handler:
                file_handler = RotatingFileHandler(
                    file_path,
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
                file_handler.setLevel(level)
                file_handler.setFormatter(formatter)
                _attach_filter(file_handler)
                root.addHandler(file_handler)

        _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)

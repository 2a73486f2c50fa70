import logging
from contextvars import ContextVar
from pathlib import Path

from giftsync.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"

request_id_var: ContextVar[str] = ContextVar("giftsync_request_id", default="-")


class RequestIdFilter(logging.Filter):
    """Stamps every record with the id of the HTTP request being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


def _tagged(handler: logging.Handler) -> logging.Handler:
    if not any(isinstance(existing, RequestIdFilter) for existing in handler.filters):
        handler.addFilter(RequestIdFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def configure_logging(level: str | None = None, log_file: str | None = None) -> logging.Logger:
    level_name = (level or settings.log_level or "INFO").upper()
    resolved_level = getattr(logging, level_name, logging.INFO)
    target = settings.log_file if log_file is None else log_file

    root = logging.getLogger()
    if not root.handlers:
        root.addHandler(_tagged(logging.StreamHandler()))
    if target:
        log_path = Path(target).resolve()
        if not any(getattr(handler, "baseFilename", None) == str(log_path) for handler in root.handlers):
            log_path.parent.mkdir(parents=True, exist_ok=True)
            root.addHandler(_tagged(logging.FileHandler(log_path, encoding="utf-8")))
    root.setLevel(resolved_level)

    logger = logging.getLogger("giftsync")
    logger.setLevel(resolved_level)
    return logger

"""
Logging structuré JSON du moteur d'intelligence.

Deux canaux, une seule sortie JSON sur stdout:
- StructuredLogger (stdlib) pour les jobs, le pool et l'orchestration des batchs
- loguru pour les services de scoring, sérialisé en JSON par setup_logging()

Champs de contexte reconnus: trace_id (run de batch ou requête HTTP),
buyer_id / product_id / seller_id (entité traitée), job_id (job RQ),
duration_ms, error_type. Le reste part dans "extra".
"""
import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Optional

from loguru import logger as loguru_logger

_trace_id: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)

CONTEXT_FIELDS = ("buyer_id", "product_id", "seller_id", "job_id", "duration_ms", "error_type")

NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "rq.worker": logging.INFO,
    "rq_scheduler": logging.INFO,
}


def get_trace_id() -> Optional[str]:
    return _trace_id.get()


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Fixe le trace_id du contexte courant (nouveau si absent)."""
    trace_id = trace_id or uuid.uuid4().hex[:8]
    _trace_id.set(trace_id)
    return trace_id


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if get_trace_id():
            payload["trace_id"] = get_trace_id()

        payload.update({key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)})

        extra = getattr(record, "extra_data", None)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Façade sur logging.Logger: les champs connus deviennent des attributs
    du record, les autres kwargs sont regroupés sous "extra".
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, message: str, exc_info: bool = False, **fields):
        record_extra: Dict[str, Any] = {}
        extra_data: Dict[str, Any] = {}

        for key, value in fields.items():
            if value is None:
                continue
            if key == "duration_ms":
                record_extra[key] = round(value, 2)
            elif key in CONTEXT_FIELDS:
                record_extra[key] = value
            else:
                extra_data[key] = value

        if extra_data:
            record_extra["extra_data"] = extra_data
        self._logger.log(level, message, exc_info=exc_info, extra=record_extra)

    def debug(self, message: str, **fields):
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields):
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields):
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, exc_info: bool = True, **fields):
        self._log(logging.ERROR, message, exc_info=exc_info, **fields)

    # Batchs de scoring

    def batch_start(self, job: str, total: int, job_id: Optional[str] = None):
        self.info(f"{job} started", job_id=job_id, total=total)

    def batch_done(self, job: str, duration_ms: float, job_id: Optional[str] = None, **counts):
        self.info(f"{job} completed", duration_ms=duration_ms, job_id=job_id, **counts)

    def item_error(self, job: str, error: Exception, **entity):
        """Un item en échec est loggé avec son entité, le batch continue."""
        self.error(f"{job} item failed: {error}", exc_info=False, error_type=type(error).__name__, **entity)


def _with_trace_id(record):
    trace_id = get_trace_id()
    if trace_id:
        record["extra"]["trace_id"] = trace_id


def setup_logging(level: str = "INFO"):
    """Route stdlib et loguru vers stdout en JSON, au niveau demandé."""
    level = level.upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    loguru_logger.remove()
    loguru_logger.configure(patcher=_with_trace_id)
    loguru_logger.add(sys.stdout, level=level, serialize=True)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


def timed(logger: StructuredLogger):
    """
    Log la durée de la fonction décorée (debug si succès, error sinon).

    Usage:
        @timed(batch_logger)
        def generate_matches_for_product(...):
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            failed: Optional[Exception] = None
            try:
                return func(*args, **kwargs)
            except Exception as e:
                failed = e
                raise
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                if failed is None:
                    logger.debug(f"{func.__name__} completed", duration_ms=duration_ms)
                else:
                    logger.error(
                        f"{func.__name__} failed",
                        exc_info=False,
                        duration_ms=duration_ms,
                        error_type=type(failed).__name__,
                    )
        return wrapper
    return decorator

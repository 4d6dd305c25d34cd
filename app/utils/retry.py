"""
Retry avec backoff exponentiel et jitter pour les appels sortants
(webhook d'alertes). Les erreurs réseau httpx, les 5xx/429 et les
IntelligenceError retryable sont retentées, le reste remonte tout de suite.
"""
import random
import time
from typing import Callable, Type, Tuple, Optional, TypeVar

import httpx

from app.core.logging import get_logger
from app.core.exceptions import is_retryable

logger = get_logger(__name__)

T = TypeVar("T")

NETWORK_ERRORS = (httpx.TimeoutException, httpx.NetworkError)
RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _should_retry(e: Exception, retry_on: Optional[Tuple[Type[Exception], ...]]) -> bool:
    if retry_on is not None:
        return isinstance(e, retry_on)
    if isinstance(e, NETWORK_ERRORS):
        return True
    if isinstance(e, httpx.HTTPStatusError):
        return e.response.status_code in RETRYABLE_STATUS
    return is_retryable(e)


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """Délai exponentiel plafonné, jitter de +/-30%."""
    delay = min(max_delay, base_delay * (2 ** attempt))
    return delay * random.uniform(0.7, 1.3)


def with_retry(
    fn: Callable[[], T],
    retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
    source: Optional[str] = None,
) -> T:
    """
    Appelle fn() jusqu'à retries + 1 fois.

    retry_on restreint les exceptions retentées (par défaut: voir _should_retry).
    source identifie l'appelant dans les logs. La dernière exception est relancée.
    """
    attempts = retries + 1
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:
            attempt += 1
            if attempt >= attempts or not _should_retry(e, retry_on):
                logger.warning(
                    f"{source or 'call'} gave up after {attempt} attempt(s)",
                    source=source,
                    error_type=type(e).__name__,
                    attempt=attempt,
                    max_attempts=attempts,
                )
                raise

            delay = _backoff(attempt - 1, base_delay, max_delay)
            logger.info(
                f"{source or 'call'} failed, retrying in {delay:.2f}s ({attempt}/{attempts})",
                source=source,
                error_type=type(e).__name__,
                attempt=attempt,
                delay_s=round(delay, 2),
            )
            time.sleep(delay)

"""
Pool borné pour les batchs de scoring.

Chaque item produit exactement un PoolOutcome (valeur, erreur ou timeout):
un item lent ou en échec ne bloque ni n'interrompt le batch.
"""
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from app.core.config import BATCH_MAX_WORKERS, BATCH_ITEM_TIMEOUT_SECONDS
from app.core.exceptions import BatchItemTimeoutError

T = TypeVar("T")


@dataclass
class PoolOutcome:
    item: Any
    value: Any = None
    error: Optional[Exception] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, BatchItemTimeoutError)


def _run_one(fn: Callable[[T], Any], item: T) -> PoolOutcome:
    start = time.perf_counter()
    try:
        value = fn(item)
        return PoolOutcome(item=item, value=value, duration_ms=(time.perf_counter() - start) * 1000)
    except Exception as e:
        return PoolOutcome(item=item, error=e, duration_ms=(time.perf_counter() - start) * 1000)


def _timeout_outcome(item, item_timeout: float) -> PoolOutcome:
    return PoolOutcome(item=item, error=BatchItemTimeoutError(item, item_timeout), duration_ms=item_timeout * 1000)


def run_bounded(
    fn: Callable[[T], Any],
    items: Iterable[T],
    max_workers: Optional[int] = None,
    item_timeout: Optional[float] = None,
) -> List[PoolOutcome]:
    """
    Applique fn à chaque item, au plus max_workers items en cours à la fois.

    Les résultats sont renvoyés dans l'ordre des items. Avec max_workers <= 1
    tout s'exécute inline (pas de timeout applicable).

    Le délai d'un item court à partir de son démarrage: un item encore en
    file n'est jamais compté en timeout. Un item en timeout est abandonné
    (son thread finit seul) et libère sa place pour le suivant.
    """
    items = list(items)
    max_workers = BATCH_MAX_WORKERS if max_workers is None else max_workers
    item_timeout = BATCH_ITEM_TIMEOUT_SECONDS if item_timeout is None else item_timeout

    if max_workers <= 1 or len(items) <= 1:
        return [_run_one(fn, item) for item in items]

    # Un thread par item au pire: les threads abandonnés ne bloquent pas les suivants
    executor = ThreadPoolExecutor(max_workers=len(items))
    outcomes: List[Optional[PoolOutcome]] = [None] * len(items)
    waiting = deque(range(len(items)))
    running: Dict[Future, Tuple[int, float]] = {}
    try:
        while waiting or running:
            while waiting and len(running) < max_workers:
                index = waiting.popleft()
                running[executor.submit(_run_one, fn, items[index])] = (index, time.perf_counter())

            next_deadline = min(started for _, started in running.values()) + item_timeout
            done, _ = wait(
                list(running),
                timeout=max(0.0, next_deadline - time.perf_counter()),
                return_when=FIRST_COMPLETED,
            )
            for future in done:
                index, _ = running.pop(future)
                outcomes[index] = future.result()

            now = time.perf_counter()
            for future, (index, started) in list(running.items()):
                if now - started >= item_timeout:
                    del running[future]
                    outcomes[index] = _timeout_outcome(items[index], item_timeout)
        return outcomes
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

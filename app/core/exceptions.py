"""
Exceptions du moteur d'intelligence.

Seules les erreurs de frontière (orchestration, transitions invalides,
double saisie d'outcome) remontent à l'appelant. Les erreurs par item
de batch sont loggées et comptées.
"""
from typing import Optional


class IntelligenceError(Exception):
    """Erreur de base du moteur."""

    retryable: bool = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class EntityNotFoundError(IntelligenceError):
    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class OutcomeAlreadyRecordedError(IntelligenceError):
    def __init__(self, transaction_id: int):
        super().__init__(f"Outcome already recorded for transaction {transaction_id}")
        self.transaction_id = transaction_id


class InvalidMatchTransitionError(IntelligenceError):
    def __init__(self, match_id: int, current: str, target: str):
        super().__init__(f"Match {match_id}: cannot go from {current} to {target}")
        self.match_id = match_id
        self.current = current
        self.target = target


class BatchItemTimeoutError(IntelligenceError):
    retryable = True

    def __init__(self, item, timeout_s: float):
        super().__init__(f"Item {item} exceeded {timeout_s}s")
        self.item = item
        self.timeout_s = timeout_s


def is_retryable(error: Exception) -> bool:
    """Indique si une erreur mérite un nouvel essai."""
    if isinstance(error, IntelligenceError):
        return error.retryable
    return isinstance(error, (TimeoutError, ConnectionError))

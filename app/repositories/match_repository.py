from dataclasses import dataclass
from typing import Optional, List, Protocol
from sqlalchemy.orm import Session

from app.core.config import MATCH_NOTIFY_THRESHOLD
from app.core.exceptions import InvalidMatchTransitionError, EntityNotFoundError
from app.models.match import (
    Match,
    MATCH_PENDING,
    MATCH_VIEWED,
    MATCH_CONVERTED,
    MATCH_REJECTED,
    TERMINAL_STATUSES,
)


class ScoredMatch(Protocol):
    score: float
    breakdown: dict
    insights: list
    no_signal: list
    weights_version: str


@dataclass
class UpsertOutcome:
    match: Match
    created: bool
    should_notify: bool


# Transitions autorisées: cible -> statuts de départ
ALLOWED_TRANSITIONS = {
    MATCH_VIEWED: (MATCH_PENDING,),
    MATCH_CONVERTED: (MATCH_PENDING, MATCH_VIEWED),
    MATCH_REJECTED: (MATCH_PENDING, MATCH_VIEWED),
}


class MatchRepository:
    """
    Repository pour la persistance des matches.
    Upsert basé sur la clé logique (buyer_id, product_id).
    """

    def __init__(self, session: Session):
        self.session = session

    def get(self, match_id: int) -> Optional[Match]:
        return self.session.get(Match, match_id)

    def get_for_pair(self, buyer_id: int, product_id: int) -> Optional[Match]:
        return self.session.query(Match).filter(
            Match.buyer_id == buyer_id,
            Match.product_id == product_id,
        ).first()

    def upsert(self, buyer_id: int, product_id: int, result: ScoredMatch) -> UpsertOutcome:
        """
        Insert ou update un match.

        - Score, breakdown et insights toujours rafraîchis
        - viewed repasse à pending, converted/rejected ne bougent pas
        - Notification si nouveau match >= seuil, ou passage sous -> au-dessus du seuil
        """
        existing = self.get_for_pair(buyer_id, product_id)

        if existing:
            previous_score = existing.score
            existing.score = result.score
            existing.breakdown = result.breakdown
            existing.insights = result.insights
            existing.no_signal = result.no_signal
            existing.weights_version = result.weights_version
            if existing.status == MATCH_VIEWED:
                existing.status = MATCH_PENDING

            crossed = previous_score < MATCH_NOTIFY_THRESHOLD <= result.score
            self.session.flush()
            return UpsertOutcome(
                match=existing,
                created=False,
                should_notify=crossed and existing.status not in TERMINAL_STATUSES,
            )

        match = Match(
            buyer_id=buyer_id,
            product_id=product_id,
            score=result.score,
            breakdown=result.breakdown,
            insights=result.insights,
            no_signal=result.no_signal,
            weights_version=result.weights_version,
            status=MATCH_PENDING,
        )
        self.session.add(match)
        self.session.flush()
        return UpsertOutcome(match=match, created=True, should_notify=result.score >= MATCH_NOTIFY_THRESHOLD)

    def list_for_buyer(self, buyer_id: int, status: Optional[str] = None, limit: int = 50) -> List[Match]:
        query = self.session.query(Match).filter(Match.buyer_id == buyer_id)
        if status:
            query = query.filter(Match.status == status)
        return query.order_by(Match.score.desc(), Match.id.asc()).limit(limit).all()

    def _transition(self, match: Match, target: str) -> Match:
        if match.status not in ALLOWED_TRANSITIONS[target]:
            raise InvalidMatchTransitionError(match.id, match.status, target)
        match.status = target
        self.session.flush()
        return match

    def _require(self, match_id: int) -> Match:
        match = self.get(match_id)
        if not match:
            raise EntityNotFoundError("Match", match_id)
        return match

    def mark_viewed(self, match_id: int) -> Match:
        return self._transition(self._require(match_id), MATCH_VIEWED)

    def mark_converted(self, match_id: int) -> Match:
        return self._transition(self._require(match_id), MATCH_CONVERTED)

    def dismiss(self, match_id: int) -> Match:
        return self._transition(self._require(match_id), MATCH_REJECTED)

    def convert_for_bid(self, buyer_id: int, product_id: int) -> Optional[Match]:
        """Un bid convertit le match de l'acheteur sur ce produit (s'il est encore ouvert)."""
        match = self.get_for_pair(buyer_id, product_id)
        if not match or match.status not in ALLOWED_TRANSITIONS[MATCH_CONVERTED]:
            return None
        return self._transition(match, MATCH_CONVERTED)

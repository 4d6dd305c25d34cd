"""
Router Matches - Matches de l'acheteur connecté.
Endpoints: /v1/matches/*
"""
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.exceptions import InvalidMatchTransitionError
from app.db.deps import get_db, get_current_user
from app.models.match import Match, MATCH_PENDING
from app.models.user import User
from app.repositories.match_repository import MatchRepository

router = APIRouter(prefix="/v1/matches", tags=["matches"])


class MatchResponse(BaseModel):
    id: int
    product_id: int
    score: float
    breakdown: Optional[dict] = None
    insights: Optional[list] = None
    no_signal: Optional[list] = None
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


def _own_match(repo: MatchRepository, match_id: int, user: User) -> Match:
    match = repo.get(match_id)
    if not match or match.buyer_id != user.id:
        raise HTTPException(status_code=404, detail="Match not found")
    return match


@router.get("", response_model=List[MatchResponse])
def list_matches(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return MatchRepository(db).list_for_buyer(current_user.id, status=status, limit=limit)


@router.get("/{match_id}", response_model=MatchResponse)
def view_match(match_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Ouvrir un match pending le passe en viewed."""
    repo = MatchRepository(db)
    match = _own_match(repo, match_id, current_user)
    if match.status == MATCH_PENDING:
        repo.mark_viewed(match.id)
        db.commit()
    return match


@router.post("/{match_id}/dismiss", response_model=MatchResponse)
def dismiss_match(match_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    repo = MatchRepository(db)
    match = _own_match(repo, match_id, current_user)
    try:
        repo.dismiss(match.id)
    except InvalidMatchTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    db.commit()
    return match

"""
Dépendances FastAPI: session DB et utilisateur courant.

Le JWT est émis par le service d'auth (claim "sub" = email), on ne fait que
le vérifier. Cookie access_token d'abord, puis header Authorization.
"""
from typing import Generator, Optional

from fastapi import Depends, HTTPException, Request
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from app.core.config import JWT_SECRET, JWT_ALGO
from app.db.session import SessionLocal
from app.models.user import User


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _token_from(request: Request) -> Optional[str]:
    token = request.cookies.get("access_token")
    if token:
        return token
    scheme, _, credentials = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials
    return None


def _email_from(token: str) -> str:
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    email = claims.get("sub")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token")
    return email


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    token = _token_from(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user = db.query(User).filter(User.email == _email_from(token)).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_admin_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return current_user

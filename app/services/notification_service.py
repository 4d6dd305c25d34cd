"""
Service Notifications - Fire-and-forget vers les acheteurs/vendeurs.

Une notification ne doit jamais faire échouer l'opération de scoring
qui la déclenche: toutes les erreurs sont loggées puis avalées ici.
"""
from typing import Dict, Optional

import httpx
from loguru import logger
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import DISCORD_ALERTS_WEBHOOK_URL
from app.models.user import User, Notification
from app.utils.retry import with_retry

MATCH_SUGGESTION = "MATCH_SUGGESTION"
PREDICTION_DUE = "PREDICTION_DUE"
CHURN_ALERT = "CHURN_ALERT"
SYSTEM_ANNOUNCEMENT = "SYSTEM_ANNOUNCEMENT"

DEFAULT_NOTIFICATION_PREFS: Dict[str, bool] = {
    "BID_RECEIVED": True,
    "BID_ACCEPTED": True,
    "BID_REJECTED": True,
    "BID_OUTCOME": True,
    "PRODUCT_NEW": True,
    "PRODUCT_PRICE": True,
    "PRODUCT_STOCK": False,
    MATCH_SUGGESTION: True,
    PREDICTION_DUE: True,
    CHURN_ALERT: False,
    SYSTEM_ANNOUNCEMENT: True,
}

# Couleurs d'embed Discord par type
EMBED_COLORS = {
    MATCH_SUGGESTION: 0x22c55e,  # Vert
    PREDICTION_DUE: 0xf59e0b,    # Orange
    CHURN_ALERT: 0xef4444,       # Rouge
}


def get_effective_prefs(session: Session, user_id: int) -> Dict[str, bool]:
    """Préférences par défaut surchargées par celles de l'utilisateur."""
    user = session.get(User, user_id)
    overrides = (user.notification_prefs if user else None) or {}
    return {**DEFAULT_NOTIFICATION_PREFS, **overrides}


def _push_discord(notification: Notification, client: Optional[httpx.Client] = None) -> bool:
    """Copie la notification sur le webhook d'alertes, si configuré."""
    if not DISCORD_ALERTS_WEBHOOK_URL:
        return False

    embed = {
        "title": notification.title[:80],
        "description": (notification.body or "")[:300],
        "color": EMBED_COLORS.get(notification.type, 0x6b7280),
        "footer": {"text": f"{notification.type} | user {notification.user_id}"},
    }

    owns_client = client is None
    client = client or httpx.Client(timeout=10)
    try:
        def _post():
            response = client.post(DISCORD_ALERTS_WEBHOOK_URL, json={"embeds": [embed]})
            response.raise_for_status()
            return response

        with_retry(_post, retries=2, source="discord")
        return True
    finally:
        if owns_client:
            client.close()


def create_notification(
    session: Session,
    user_id: int,
    type: str,
    title: str,
    body: str,
    data: Optional[Dict] = None,
) -> Optional[Notification]:
    """
    Crée une notification (dans un savepoint) si les préférences l'autorisent.
    SYSTEM_ANNOUNCEMENT passe toujours. Ne lève jamais.
    """
    try:
        if type != SYSTEM_ANNOUNCEMENT:
            prefs = get_effective_prefs(session, user_id)
            if not prefs.get(type, False):
                logger.debug(f"Notification {type} muted by prefs for user {user_id}")
                return None

        notification = Notification(user_id=user_id, type=type, title=title, body=body, data=data)
        with session.begin_nested():
            session.add(notification)
    except Exception as e:
        logger.error(f"Failed to create {type} notification for user {user_id}: {e}")
        return None

    try:
        _push_discord(notification)
    except Exception as e:
        logger.warning(f"Discord push failed for {type} notification (user {user_id}): {e}")

    return notification


def get_unread_count(session: Session, user_id: int) -> int:
    return (
        session.query(func.count(Notification.id))
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .scalar()
    ) or 0

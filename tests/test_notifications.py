import httpx

from app.models import Notification
from app.services import notification_service
from app.services.notification_service import (
    create_notification,
    get_effective_prefs,
    get_unread_count,
    _push_discord,
)


def test_default_prefs(db, factory):
    user = factory.user()
    prefs = get_effective_prefs(db, user.id)

    assert prefs["MATCH_SUGGESTION"] is True
    assert prefs["CHURN_ALERT"] is False


def test_user_override(db, factory):
    user = factory.user(notification_prefs={"MATCH_SUGGESTION": False, "CHURN_ALERT": True})

    assert create_notification(db, user.id, "MATCH_SUGGESTION", "t", "b") is None
    assert create_notification(db, user.id, "CHURN_ALERT", "t", "b") is not None


def test_disabled_by_default_type_is_muted(db, factory):
    user = factory.user()
    assert create_notification(db, user.id, "PRODUCT_STOCK", "t", "b") is None


def test_system_announcement_ignores_prefs(db, factory):
    user = factory.user(notification_prefs={"SYSTEM_ANNOUNCEMENT": False})

    notification = create_notification(db, user.id, "SYSTEM_ANNOUNCEMENT", "Maintenance", "Tonight")
    db.commit()

    assert notification is not None
    assert get_unread_count(db, user.id) == 1


def test_unknown_type_is_muted(db, factory):
    user = factory.user()
    assert create_notification(db, user.id, "SOMETHING_ELSE", "t", "b") is None
    assert db.query(Notification).count() == 0


def test_discord_push_skipped_without_webhook(db, factory):
    user = factory.user()
    notification = Notification(user_id=user.id, type="MATCH_SUGGESTION", title="t", body="b")
    assert _push_discord(notification) is False


def test_discord_push_posts_embed(db, factory, monkeypatch):
    monkeypatch.setattr(notification_service, "DISCORD_ALERTS_WEBHOOK_URL", "https://discord.test/api/webhooks/1/x")
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    notification = Notification(user_id=7, type="PREDICTION_DUE", title="Reorder soon", body="Flower")

    assert _push_discord(notification, client=client) is True
    assert len(seen) == 1
    assert b"Reorder soon" in seen[0].content


def test_discord_failure_never_breaks_notification(db, factory, monkeypatch):
    monkeypatch.setattr(notification_service, "DISCORD_ALERTS_WEBHOOK_URL", "https://discord.test/api/webhooks/1/x")

    def broken(notification, client=None):
        raise httpx.ConnectError("down")

    monkeypatch.setattr(notification_service, "_push_discord", broken)
    user = factory.user()

    assert create_notification(db, user.id, "MATCH_SUGGESTION", "t", "b") is not None

from __future__ import annotations

from portal.services.notifications import NotificationDispatcher
from tests.conftest import ADMIN_IDS, OWNER_ID, notifications_for


def test_notify_persists_unread_notification(app):
    notification = app.notifier.notify(
        OWNER_ID,
        "payment_approved",
        "Pagamento Aprovado",
        "Seu pagamento foi aprovado.",
        metadata={"payment_id": "pay_1"},
    )

    assert notification is not None
    stored = notifications_for(app, OWNER_ID)
    assert len(stored) == 1
    assert stored[0].read is False
    assert stored[0].metadata_json == {"payment_id": "pay_1"}


def test_notify_admins_reaches_every_admin(app):
    delivered = app.notifier.notify_admins("new_project", "Novo Projeto", "Um novo projeto foi criado.")

    assert delivered == len(ADMIN_IDS)
    assert notifications_for(app, OWNER_ID) == []
    for admin_id in ADMIN_IDS:
        assert len(notifications_for(app, admin_id, "new_project")) == 1


def test_notify_failure_is_swallowed():
    def broken_session():
        raise RuntimeError("database unavailable")

    dispatcher = NotificationDispatcher(broken_session)

    assert dispatcher.notify_admins("new_project", "Novo Projeto", "msg") == 0


class _FailingSession:
    def add(self, _obj):
        raise RuntimeError("insert failed")

    def rollback(self):
        return None

    def close(self):
        return None


def test_notify_insert_failure_returns_none():
    dispatcher = NotificationDispatcher(lambda: _FailingSession())

    assert dispatcher.notify(OWNER_ID, "payment_approved", "t", "m") is None

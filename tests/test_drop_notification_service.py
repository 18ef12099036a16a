from datetime import timedelta

import pytest

from storefront.exceptions import DropEndedError, NotFoundError, ValidationError
from storefront.models import DropNotification
from storefront.services.drop_notification_service import DropNotificationService


@pytest.fixture
def notifications(db_session, clock):
    return DropNotificationService(db_session, clock=clock)


def test_subscribe_upserts_on_email_and_product(notifications, db_session, make_product):
    product = make_product()

    first, created = notifications.subscribe("fan@example.com", product.productID)
    second, created_again = notifications.subscribe("fan@example.com", product.productID, source="instagram")

    assert created is True
    assert created_again is False
    assert first.notificationID == second.notificationID
    assert second.source == "instagram"
    assert db_session.query(DropNotification).count() == 1


def test_subscribe_defaults_source(notifications, make_product):
    product = make_product()
    notification, _ = notifications.subscribe("fan@example.com", product.productID)
    assert notification.source == "homepage"


def test_subscribe_rejections(notifications, make_product, clock):
    regular = make_product(limited=False)
    ended = make_product(release=clock.now - timedelta(days=3), end=clock.now - timedelta(days=1))

    with pytest.raises(NotFoundError):
        notifications.subscribe("fan@example.com", 999999)
    with pytest.raises(ValidationError):
        notifications.subscribe("fan@example.com", regular.productID)
    with pytest.raises(DropEndedError):
        notifications.subscribe("fan@example.com", ended.productID)


def test_upcoming_drop_accepts_sign_ups(notifications, make_product, clock):
    product = make_product(release=clock.now + timedelta(days=1), end=clock.now + timedelta(days=2))
    _, created = notifications.subscribe("early@example.com", product.productID)
    assert created is True


def test_stats_and_dispatch(notifications, make_product, outbox):
    product = make_product()
    notifications.subscribe("a@example.com", product.productID)
    notifications.subscribe("b@example.com", product.productID)

    assert notifications.get_stats(product.productID) == {"total": 2, "notified": 0, "pending": 2}

    result = notifications.dispatch_live_notifications(product.productID, "https://shop.example/drop")

    assert result["sent"] == 2
    assert result["failed"] == []
    assert result["stats"] == {"total": 2, "notified": 2, "pending": 0}
    assert {msg["To"] for msg in outbox.messages} == {"a@example.com", "b@example.com"}

    again = notifications.dispatch_live_notifications(product.productID)
    assert again["sent"] == 0


def test_dispatch_keeps_failed_rows_pending(notifications, make_product, outbox):
    import smtplib

    product = make_product()
    notifications.subscribe("a@example.com", product.productID)
    outbox.fail_with = smtplib.SMTPServerDisconnected("gone")

    result = notifications.dispatch_live_notifications(product.productID)

    assert result["sent"] == 0
    assert result["failed"][0]["email"] == "a@example.com"
    assert result["stats"]["pending"] == 1


def test_dispatch_requires_live_drop(notifications, make_product, clock):
    product = make_product(release=clock.now + timedelta(days=1), end=clock.now + timedelta(days=2))
    with pytest.raises(ValidationError):
        notifications.dispatch_live_notifications(product.productID)

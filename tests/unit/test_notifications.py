"""Unit tests for email rendering, outbox dispatch and low-stock alerts."""
import threading
import time
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from src.keydispatch import models, schemas
from src.keydispatch.services import get_or_create_settings
from src.keydispatch.services.notifications import (
    SendGridEmailSender,
    EmailDeliveryError,
    build_license_email,
    check_inventory_alert,
    claim_email,
    dispatch_pending_emails,
    queue_email,
)

NOW = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def alert_settings(db, shop):
    settings = get_or_create_settings(db, shop.id)
    settings.notification_email = "owner@example.com"
    settings.low_stock_threshold = 5
    db.commit()
    return settings


class TestInventoryAlert:
    """Tests for check_inventory_alert and its 24 hour cooldown."""

    def test_alert_sent_at_threshold(self, db, product, add_keys, alert_settings, sender):
        add_keys(product, [f"K{i}" for i in range(5)])

        assert check_inventory_alert(db, product.id, sender, now=NOW) is True

        assert len(sender.sent) == 1
        assert sender.sent[0].subject == "Low Inventory Alert: Pro License"
        assert sender.sent[0].to == "owner@example.com"
        alert = db.query(models.InventoryAlert).one()
        assert (alert.available_count, alert.threshold, alert.alert_sent_at) == (5, 5, NOW)

    def test_no_alert_above_threshold(self, db, product, add_keys, alert_settings, sender):
        add_keys(product, [f"K{i}" for i in range(6)])

        assert check_inventory_alert(db, product.id, sender, now=NOW) is False
        assert sender.sent == []

    def test_cooldown_suppresses_second_alert(self, db, product, add_keys, alert_settings, sender):
        add_keys(product, ["K1"])

        assert check_inventory_alert(db, product.id, sender, now=NOW) is True
        assert check_inventory_alert(db, product.id, sender, now=NOW + timedelta(hours=23)) is False
        assert check_inventory_alert(db, product.id, sender, now=NOW + timedelta(hours=25)) is True

        assert db.query(models.InventoryAlert).count() == 2
        assert len(sender.sent) == 2

    def test_falls_back_to_admin_address(self, db, shop, product, sender, monkeypatch):
        monkeypatch.setenv("ADMIN_NOTIFICATION_EMAIL", "ops@example.com")

        assert check_inventory_alert(db, product.id, sender, now=NOW) is True
        assert sender.sent[0].to == "ops@example.com"

    def test_no_target_skips_without_recording(self, db, shop, product, sender):
        assert check_inventory_alert(db, product.id, sender, now=NOW) is False
        assert db.query(models.InventoryAlert).count() == 0

    def test_failed_send_is_not_recorded(self, db, product, alert_settings, sender):
        sender.fail = True

        assert check_inventory_alert(db, product.id, sender, now=NOW) is False
        assert db.query(models.InventoryAlert).count() == 0

    def test_unknown_product(self, db, sender):
        assert check_inventory_alert(db, 999, sender, now=NOW) is False


class TestLicenseEmail:
    """Tests for the rendered license email."""

    def test_keys_are_numbered(self):
        message = build_license_email(
            to="jon@example.com",
            order_number="1001",
            product_name="Pro License",
            license_keys=["AAAA", "BBBB"],
            first_name="Jon",
        )

        assert message.subject == "Your license for Pro License - Order #1001"
        assert "Hi Jon," in message.text
        assert "1. AAAA" in message.text
        assert "2. BBBB" in message.text
        assert "1. AAAA" in message.html

    def test_html_escapes_keys(self):
        message = build_license_email("jon@example.com", "1001", "Pro", ["<b>KEY</b>"])

        assert "&lt;b&gt;KEY&lt;/b&gt;" in message.html

    def test_missing_first_name_greets_customer(self):
        message = build_license_email("jon@example.com", "1001", "Pro", ["AAAA"])

        assert "Hi Customer," in message.text

    def test_custom_sender_identity(self, db, shop):
        settings = get_or_create_settings(db, shop.id)
        settings.custom_sender_email = "store@example.com"
        settings.custom_sender_name = "My Store"
        settings.notification_email = "owner@example.com"
        settings.bcc_notification_email = True

        message = build_license_email("jon@example.com", "1001", "Pro", ["AAAA"], settings=settings)

        assert message.from_email == "store@example.com"
        assert message.from_name == "My Store"
        assert message.reply_to == "store@example.com"
        assert message.bcc == "owner@example.com"


class TestSendGridEmailSender:
    """Tests for the SendGrid adapter with the API client mocked out."""

    def _message(self, **overrides):
        data = dict(to="jon@example.com", subject="Hi", text="t", html="<p>t</p>", from_email="mail@keydispatch.app")
        data.update(overrides)
        return schemas.OutboundEmail(**data)

    def test_unconfigured_sender_raises(self, monkeypatch):
        monkeypatch.delenv("SENDGRID_API_KEY", raising=False)
        sender = SendGridEmailSender()

        with pytest.raises(EmailDeliveryError, match="not configured"):
            sender.send(self._message())

    def test_accepted_response(self):
        sender = SendGridEmailSender(api_key="SG.test")
        sender.client = MagicMock()
        sender.client.send.return_value = MagicMock(status_code=202)

        sender.send(self._message())

        assert sender.client.send.call_count == 1

    def test_server_errors_retried_then_raised(self):
        sender = SendGridEmailSender(api_key="SG.test", retries=3)
        sender.client = MagicMock()
        sender.client.send.return_value = MagicMock(status_code=503)

        with pytest.raises(EmailDeliveryError, match="503"):
            sender.send(self._message())
        assert sender.client.send.call_count == 3

    def test_client_errors_not_retried(self):
        sender = SendGridEmailSender(api_key="SG.test", retries=3)
        sender.client = MagicMock()
        sender.client.send.return_value = MagicMock(status_code=400)

        with pytest.raises(EmailDeliveryError):
            sender.send(self._message())
        assert sender.client.send.call_count == 1

    def test_mail_carries_reply_to_and_bcc(self):
        sender = SendGridEmailSender(api_key="SG.test")

        mail = sender.build_mail(self._message(reply_to="store@example.com", bcc="owner@example.com"))
        body = mail.get()

        assert body["reply_to"]["email"] == "store@example.com"
        assert body["personalizations"][0]["bcc"] == [{"email": "owner@example.com"}]


def _queued_order(session, shop_id, product_id, log_count, remote_id="500"):
    order = models.Order(
        shop_id=shop_id, shopify_order_id=remote_id, order_number=remote_id, customer_email="buyer@example.com"
    )
    session.add(order)
    session.flush()
    item = models.OrderItem(order_id=order.id, product_id=product_id, quantity=log_count, licenses_allocated=0)
    session.add(item)
    session.flush()
    for n in range(log_count):
        queue_email(session, order, item, [f"K{n}"])
    session.commit()
    return order.id


class ReentrantSender:
    """Starts a second dispatcher from inside its first send."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.sent = []

    def send(self, message):
        self.sent.append(message)
        if len(self.sent) == 1:
            other = self.session_factory()
            try:
                dispatch_pending_emails(other, self)
            finally:
                other.close()


class SlowSender:
    def __init__(self):
        self.sent = []

    def send(self, message):
        time.sleep(0.01)
        self.sent.append(message)


class TestDispatchPendingEmails:
    """Outbox rows are claimed before sending so each goes out once."""

    def test_dispatcher_started_during_a_send_skips_claimed_row(self, session_factory, db, shop, product):
        get_or_create_settings(db, shop.id)
        order_id = _queued_order(db, shop.id, product.id, 1)
        sender = ReentrantSender(session_factory)

        counts = dispatch_pending_emails(db, sender, order_id=order_id)

        assert counts == {"sent": 1, "failed": 0}
        assert len(sender.sent) == 1
        db.expire_all()
        assert db.query(models.EmailLog).one().email_status == models.EmailStatus.SENT

    def test_claim_only_succeeds_once(self, db, shop, product):
        _queued_order(db, shop.id, product.id, 1)
        log_id = db.query(models.EmailLog.id).scalar()

        assert claim_email(db, log_id) is True
        assert claim_email(db, log_id) is False
        assert db.get(models.EmailLog, log_id, populate_existing=True).email_status == models.EmailStatus.SENDING

    def test_failed_send_marks_row_failed(self, db, shop, product, sender):
        get_or_create_settings(db, shop.id)
        order_id = _queued_order(db, shop.id, product.id, 1)
        sender.fail = True

        counts = dispatch_pending_emails(db, sender, order_id=order_id)

        assert counts == {"sent": 0, "failed": 1}
        log = db.query(models.EmailLog).one()
        assert log.email_status == models.EmailStatus.FAILED
        assert log.error_message == "SendGrid returned 503"

    def test_concurrent_dispatchers_send_each_row_once(self, file_session_factory, seed_file_shop):
        shop_id, product_id = seed_file_shop([])
        setup = file_session_factory()
        order_id = _queued_order(setup, shop_id, product_id, 4)
        setup.close()
        sender = SlowSender()
        errors = []

        def dispatch():
            session = file_session_factory()
            try:
                dispatch_pending_emails(session, sender, order_id=order_id)
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=dispatch) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        keys = ["K0", "K1", "K2", "K3"]
        assert sorted(k for m in sender.sent for k in keys if k in m.text) == keys
        assert len(sender.sent) == 4
        check = file_session_factory()
        statuses = [log.email_status for log in check.query(models.EmailLog).all()]
        assert statuses == [models.EmailStatus.SENT] * 4
        check.close()

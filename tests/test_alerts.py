import smtplib

from bluegreen import alerts, db
from bluegreen.settings import Settings

SMTP_CFG = dict(
    enable_email=True,
    smtp_host="smtp.example.com",
    smtp_port=587,
    smtp_user="ops",
    smtp_password="pw",
    email_from="bg@example.com",
    email_to="oncall@example.com",
)


def test_disabled_by_default():
    assert alerts.send_email("x", "y", Settings(enable_email=False)) is False


def test_incomplete_smtp_config_is_skipped():
    assert alerts.send_email("x", "y", Settings(enable_email=True, smtp_user=None)) is False


def test_sends_through_smtp(monkeypatch):
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout=None):
            sent.append(("connect", host, port))

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self):
            sent.append(("starttls",))

        def login(self, user, password):
            sent.append(("login", user))

        def sendmail(self, from_addr, to_addrs, msg):
            sent.append(("sendmail", from_addr, tuple(to_addrs)))

    monkeypatch.setattr(alerts.smtplib, "SMTP", FakeSMTP)

    assert alerts.send_email("CUTOVER FAILED", "details", Settings(**SMTP_CFG)) is True
    assert sent[0] == ("connect", "smtp.example.com", 587)
    assert sent[-1] == ("sendmail", "bg@example.com", ("oncall@example.com",))


def test_delivery_failure_is_logged(monkeypatch):
    def refuse(*args, **kwargs):
        raise smtplib.SMTPConnectError(421, b"busy")

    monkeypatch.setattr(alerts.smtplib, "SMTP", refuse)

    assert alerts.send_email("CUTOVER FAILED", "details", Settings(**SMTP_CFG)) is False
    event = db.latest_events(limit=1)[0]
    assert event["level"] == "ERROR"
    assert "CUTOVER FAILED" in event["message"]

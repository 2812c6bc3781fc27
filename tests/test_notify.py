import smtplib

from obtrader.config import EmailConfig
from obtrader.notify import EmailNotifier, LogNotifier, render_body


def test_log_notifier_records_payloads():
    notifier = LogNotifier()
    assert notifier.notify("cooldown", {"reason": "max_drawdown"}) is True
    assert notifier.sent == [("cooldown", {"reason": "max_drawdown"})]


def test_email_subject_and_body():
    notifier = EmailNotifier(EmailConfig(enabled=True, sender="bot@example.com", recipient="ops@example.com"))
    msg = notifier.build_message(
        "close", {"side": "LONG", "symbol": "BTCUSDT", "exit_reason": "HTF_TARGET_1d", "pnl": 210.0}
    )
    assert msg["Subject"] == "[OB Bot] Position closed: LONG BTCUSDT (HTF_TARGET_1d)"
    assert msg["To"] == "ops@example.com"
    assert "pnl: 210.0" in render_body("close", {"pnl": 210.0})


def test_disabled_email_sends_nothing():
    assert EmailNotifier(EmailConfig()).notify("entry", {}) is False


def test_smtp_failure_is_reported_not_raised(monkeypatch):
    def _refuse(*args, **kwargs):
        raise smtplib.SMTPConnectError(421, "unavailable")

    monkeypatch.setattr(smtplib, "SMTP", _refuse)
    notifier = EmailNotifier(EmailConfig(enabled=True, recipient="ops@example.com"))
    assert notifier.notify("entry", {"action": "opened", "side": "LONG", "symbol": "BTCUSDT"}) is False

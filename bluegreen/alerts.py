from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from . import db
from .settings import Settings, settings as default_settings


def send_email(subject: str, body: str, cfg: Settings | None = None) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - BG_ENABLE_EMAIL=true
      - BG_SMTP_HOST / BG_SMTP_PORT
      - BG_SMTP_USER / BG_SMTP_PASSWORD
      - BG_EMAIL_FROM / BG_EMAIL_TO
    """
    cfg = cfg or default_settings
    if not cfg.enable_email:
        return False
    if not all(
        [
            cfg.smtp_host,
            cfg.smtp_port,
            cfg.smtp_user,
            cfg.smtp_password,
            cfg.email_from,
            cfg.email_to,
        ]
    ):
        return False

    msg = MIMEMultipart()
    msg["From"] = cfg.email_from
    msg["To"] = cfg.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    try:
        with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(cfg.smtp_user, cfg.smtp_password)
            server.sendmail(cfg.email_from, [cfg.email_to], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as e:
        # An alert that cannot be delivered must still leave a trace.
        db.log_event("ERROR", f"Alert '{subject}' not delivered: {type(e).__name__}: {e}")
        return False

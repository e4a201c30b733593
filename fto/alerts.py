from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from . import db
from .errors import FleetError
from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - FTO_ENABLE_EMAIL=true
      - FTO_SMTP_HOST / FTO_SMTP_PORT
      - FTO_SMTP_USER / FTO_SMTP_PASSWORD
      - FTO_EMAIL_FROM / FTO_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        db.log_event("WARN", f"Alert e-mail not sent: {type(e).__name__}: {e}")
        return False


def report(err: FleetError, level: str = "ERROR") -> None:
    """Surface an error to the operator: events table plus optional e-mail."""
    ctx = err.context()
    db.log_event(level, f"{ctx['error']}: {err}", service_name=err.service, version=err.version, host=err.host)
    subject = f"[fto] {ctx['error']}" + (f": {err.service}" if err.service else "")
    body = "\n".join(f"{k}: {v}" for k, v in ctx.items() if v is not None)
    send_email(subject, body)

import smtplib
from email.message import EmailMessage
from typing import Optional

from .config import settings
from .logging_utils import json_log


class MailError(RuntimeError):
    pass


def send_email(to: str, subject: str, *, text: str, html: Optional[str] = None, timeout: int = 20) -> None:
    if not settings.smtp_enabled:
        raise MailError("SMTP not configured")
    msg = EmailMessage()
    msg["From"] = settings.smtp_from
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=timeout) as smtp:
            if settings.smtp_starttls:
                smtp.starttls()
            if settings.smtp_user:
                smtp.login(settings.smtp_user, settings.smtp_password or "")
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as ex:
        json_log("error", "mail.send_failed", to=to, subject=subject, error=str(ex))
        raise MailError(str(ex)) from ex
    json_log("info", "mail.sent", to=to, subject=subject)

from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import List, Optional, Union

from fastapi import HTTPException
from starlette.concurrency import run_in_threadpool

from marketplace.config import Settings
from marketplace.utils.logger import get_logger

logger = get_logger("mail")


class MailDeliveryError(RuntimeError):
    pass


class MailService:
    """Transactional mail over SMTP.

    Without MAIL_USER configured the message is only logged (dev mode) and the
    send is reported as accepted.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        # strip surrounding quotes copied from .env files
        self._password = (settings.MAIL_PASS or "").strip('"')
        self.default_from = settings.MAIL_FROM or settings.MAIL_USER or ""
        if not settings.MAIL_USER or not self._password:
            logger.warning("MAIL_USER or MAIL_PASS not set. Mail is logged, not sent.")

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.MAIL_HOST and self.settings.MAIL_USER and self._password)

    @staticmethod
    def _redact(address: str) -> str:
        if "@" not in address:
            return "redacted"
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(self, sender: str, recipients: List[str], subject: str, text, html) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = ", ".join(recipients)
        domain = sender.split("@", 1)[1] if "@" in sender else "localhost"
        msg["Message-ID"] = make_msgid(domain=domain)
        if text:
            msg.attach(MIMEText(text, "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))
        return msg

    def _deliver(self, sender: str, recipients: List[str], msg: MIMEMultipart) -> dict:
        context = ssl.create_default_context()
        host, port = self.settings.MAIL_HOST, self.settings.MAIL_PORT
        if self.settings.MAIL_USE_SSL:
            server = smtplib.SMTP_SSL(host, port, context=context, timeout=30)
        else:
            server = smtplib.SMTP(host, port, timeout=30)
        with server:
            if not self.settings.MAIL_USE_SSL:
                server.starttls(context=context)
            server.login(self.settings.MAIL_USER, self._password)
            refused = server.sendmail(sender, recipients, msg.as_string())
        return refused

    async def send_mail(
        self,
        to: Union[str, List[str]],
        subject: str,
        text: Optional[str] = None,
        html: Optional[str] = None,
        from_address: Optional[str] = None,
    ) -> dict:
        """Send one message to one or many recipients.

        Returns ``{"messageId", "accepted", "rejected"}``. Raises 400 when neither
        text nor html is given and MailDeliveryError when the SMTP exchange fails.
        """
        if not text and not html:
            raise HTTPException(status_code=400, detail="Either text or html must be provided")

        recipients = [to] if isinstance(to, str) else list(to)
        sender = from_address or self.default_from
        msg = self._build_message(sender, recipients, subject, text, html)

        if not self.is_configured:
            logger.info(
                f"[MAIL dev] to={[self._redact(r) for r in recipients]} subject={subject!r} "
                f"body={(text or html or '')[:200]!r}"
            )
            return {"messageId": msg["Message-ID"], "accepted": recipients, "rejected": []}

        try:
            refused = await run_in_threadpool(self._deliver, sender, recipients, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {[self._redact(r) for r in recipients]}: {e}", exc_info=True)
            raise MailDeliveryError("Failed to send email") from e

        rejected = list(refused.keys())
        accepted = [r for r in recipients if r not in refused]
        logger.info(f"Email sent: {msg['Message-ID']}")
        return {"messageId": msg["Message-ID"], "accepted": accepted, "rejected": rejected}

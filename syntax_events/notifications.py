import logging
import smtplib
from abc import ABC, abstractmethod
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate
from html import escape
from typing import Optional

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a confirmation could not be handed to the mail provider."""


class Notifier(ABC):
    @abstractmethod
    def send_registration(self, ticket, event_date: datetime, qr_url: Optional[str]) -> None:
        """Send the confirmation for ``ticket``; raise NotificationError on failure.

        ``ticket.ticket_code`` is the idempotency key for the send.
        """
        ...


def message_id_for(code: str, domain: str) -> str:
    return f"<ticket-{code}@{domain}>"


def _format_date(value: datetime) -> str:
    """datetime(2026, 4, 19) → 'Sunday, 19 April 2026'."""
    return f"{value:%A}, {value.day} {value:%B %Y}"


def build_email_html(ticket, event_date: datetime, qr_url: Optional[str]) -> str:
    event_name = escape(ticket.event_name)
    qr_img_html = (
        f'<img src="{escape(qr_url)}" alt="Entry QR Code" '
        'width="200" height="200" style="display:block;margin:0 auto;" />'
        if qr_url
        else '<p style="text-align:center;color:#888;font-size:13px;">'
             "QR code unavailable. Show your ticket code at the entrance.</p>"
    )

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Registration Confirmed — {event_name}</title>
</head>
<body style="margin:0;padding:0;background:#f0eef8;font-family:'Segoe UI',Helvetica,Arial,sans-serif;">
  <table width="100%" cellpadding="0" cellspacing="0" style="background:#f0eef8;padding:40px 16px;">
    <tr><td align="center">
      <table width="560" cellpadding="0" cellspacing="0"
             style="background:#ffffff;border-radius:14px;overflow:hidden;max-width:560px;width:100%;border:1px solid #ddd8f0;">

        <!-- ── Header ── -->
        <tr>
          <td style="background:linear-gradient(135deg,#2d1b69 0%,#7c3aed 100%);padding:36px 40px;text-align:center;">
            <p style="color:#e9d8ff;font-size:11px;letter-spacing:3px;text-transform:uppercase;margin:0 0 10px;">
              Registration Confirmed
            </p>
            <h1 style="color:#ffffff;font-size:26px;margin:0;font-weight:700;line-height:1.3;">
              {event_name}
            </h1>
          </td>
        </tr>

        <!-- ── Greeting ── -->
        <tr>
          <td style="padding:30px 40px 12px;">
            <p style="color:#1a1035;font-size:16px;margin:0 0 8px;">
              Hello, <strong>{escape(ticket.full_name)}</strong>
            </p>
            <p style="color:#444466;font-size:14px;margin:0;line-height:1.6;">
              Your spot is reserved. Show the QR code below at the entrance to check in.
            </p>
          </td>
        </tr>

        <!-- ── Ticket details ── -->
        <tr>
          <td style="padding:16px 40px 24px;">
            <table width="100%" cellpadding="7" cellspacing="0"
                   style="background:#f7f4ff;border-radius:10px;border:1px solid #d4c8f5;">
              <tr>
                <td style="color:#6b5b9e;font-size:11px;text-transform:uppercase;width:38%;">Date</td>
                <td style="color:#1a1035;font-size:14px;font-weight:700;">{_format_date(event_date)}</td>
              </tr>
              <tr>
                <td style="color:#6b5b9e;font-size:11px;text-transform:uppercase;">Ticket Code</td>
                <td style="color:#5b3fb5;font-size:12px;font-family:'Courier New',monospace;word-break:break-all;">
                  {escape(ticket.ticket_code)}
                </td>
              </tr>
            </table>
          </td>
        </tr>

        <!-- ── QR Code ── -->
        <tr>
          <td style="padding:0 40px 28px;text-align:center;">
            {qr_img_html}
          </td>
        </tr>

        <!-- ── Footer ── -->
        <tr>
          <td style="background:#f7f4ff;border-top:1px solid #ddd8f0;padding:20px 40px;text-align:center;">
            <p style="color:#6b5b9e;font-size:12px;margin:0;line-height:1.5;">
              This is an automated confirmation — please do not reply to this email.
            </p>
          </td>
        </tr>

      </table>
    </td></tr>
  </table>
</body>
</html>"""


class SmtpNotifier(Notifier):
    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        sender: str = "",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "SmtpNotifier":
        return cls(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_pass,
            settings.sender,
            timeout=settings.side_effect_timeout,
        )

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    def build_message(self, ticket, event_date, qr_url) -> MIMEMultipart:
        domain = self.sender.rpartition("@")[2] or "localhost"
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"Registration Confirmed — {ticket.event_name}"
        msg["From"] = self.sender
        msg["To"] = ticket.email
        msg["Date"] = formatdate(localtime=False)
        # Providers that dedup on Message-ID drop repeated sends for one ticket
        msg["Message-ID"] = message_id_for(ticket.ticket_code, domain)
        msg.attach(MIMEText(build_email_html(ticket, event_date, qr_url), "html", "utf-8"))
        return msg

    def send_registration(self, ticket, event_date, qr_url):
        if not self.configured:
            raise NotificationError("Email not configured (SMTP_USER/SMTP_PASS not set)")

        msg = self.build_message(ticket, event_date, qr_url)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.ehlo()
                server.starttls()
                server.login(self.user, self.password)
                server.sendmail(self.sender, [ticket.email], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(str(exc)) from exc

        logger.info("Confirmation email sent → %s (ticket %s)", ticket.email, ticket.ticket_code)

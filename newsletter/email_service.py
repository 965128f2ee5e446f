import html as html_lib
import re
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Dict, List, Optional

import certifi
import requests

from .core.config import Settings
from .core.logging_config import get_logger
from .schemas import BatchSendResult, EmailMessage, SendResult

logger = get_logger(__name__)

# Resend batch API accepts at most 100 emails per request
RESEND_MAX_BATCH_SIZE = 100


class EmailSendError(Exception):
    """Raised when a single email could not be handed to the provider"""


class EmailSender:
    """
    Email-sending collaborator used by the delivery engine.

    send_email raises EmailSendError on failure; send_batch_emails never
    raises and reports one SendResult per message instead.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.timeout = settings.email_send_timeout_seconds

    def format_from(self, from_name: Optional[str] = None) -> str:
        return formataddr((from_name or self.settings.sender_name, self.settings.sender_email))

    def send_email(self, to: str, subject: str, html: str, from_name: Optional[str] = None) -> Dict[str, str]:
        raise NotImplementedError

    def send_batch_emails(self, messages: List[EmailMessage]) -> BatchSendResult:
        """Send messages one by one; each call is bounded by the sender timeout"""
        results = []
        for message in messages:
            try:
                sent = self.send_email(message.to, message.subject, message.html, message.from_name)
                results.append(SendResult(to=message.to, success=True, id=sent.get("id")))
            except EmailSendError as e:
                logger.warning(f"Failed to send email to {message.to}: {e}")
                results.append(SendResult(to=message.to, success=False, error=str(e)))

        return _summarize(results)


def _summarize(results: List[SendResult]) -> BatchSendResult:
    sent = sum(1 for r in results if r.success)
    failed = len(results) - sent
    error = None
    if failed:
        first_error = next(r.error for r in results if not r.success)
        error = f"{failed} of {len(results)} emails failed: {first_error}"
    return BatchSendResult(success=failed == 0, sent=sent, results=results, error=error)


class ResendEmailSender(EmailSender):
    """Sends through the Resend HTTP API"""

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.resend_api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, to: str, subject: str, html: str, from_name: Optional[str]) -> Dict[str, str]:
        return {
            "from": self.format_from(from_name),
            "to": to,
            "subject": subject,
            "html": html,
        }

    @staticmethod
    def _error_message(response: requests.Response, default: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"{default} (HTTP {response.status_code})"
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get("message") or default
        if isinstance(body, dict) and body.get("message"):
            return body["message"]
        return f"{default} (HTTP {response.status_code})"

    def send_email(self, to: str, subject: str, html: str, from_name: Optional[str] = None) -> Dict[str, str]:
        try:
            response = requests.post(
                f"{self.settings.resend_api_url}/emails",
                headers=self._headers(),
                json=self._payload(to, subject, html, from_name),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise EmailSendError(f"Email sending error: {e}") from e

        if not response.ok:
            raise EmailSendError(self._error_message(response, "Failed to send email"))

        return {"id": response.json().get("id")}

    def send_batch_emails(self, messages: List[EmailMessage]) -> BatchSendResult:
        results: List[SendResult] = []
        batch_error = None

        for start in range(0, len(messages), RESEND_MAX_BATCH_SIZE):
            batch = messages[start:start + RESEND_MAX_BATCH_SIZE]

            if batch_error:
                # An earlier batch failed; leave the rest for a retry
                results.extend(SendResult(to=m.to, success=False, error=batch_error) for m in batch)
                continue

            try:
                response = requests.post(
                    f"{self.settings.resend_api_url}/emails/batch",
                    headers=self._headers(),
                    json=[self._payload(m.to, m.subject, m.html, m.from_name) for m in batch],
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                batch_error = f"Batch email sending error: {e}"
            else:
                if response.ok:
                    try:
                        data = response.json().get("data") or []
                    except ValueError:
                        # Accepted but unreadable; the emails are out, only their ids are lost
                        logger.warning(f"Resend batch starting at {start} returned a non-JSON body")
                        data = []
                    for index, message in enumerate(batch):
                        provider_id = data[index].get("id") if index < len(data) else None
                        results.append(SendResult(to=message.to, success=True, id=provider_id))
                    continue
                batch_error = self._error_message(response, "Batch send failed")

            logger.error(f"Resend batch starting at {start} failed: {batch_error}")
            results.extend(SendResult(to=m.to, success=False, error=batch_error) for m in batch)

        return _summarize(results)


class SmtpEmailSender(EmailSender):
    """Sends over SMTP, trying STARTTLS first and direct SSL second"""

    def create_ssl_context(self) -> ssl.SSLContext:
        """Create SSL context with proper certificate handling"""
        context = ssl.create_default_context()
        try:
            context.load_verify_locations(certifi.where())
        except (OSError, ssl.SSLError) as e:
            logger.warning(f"Failed to load certifi bundle: {e}")

        # If SSL verification is disabled, allow unverified connections
        if not self.settings.verify_ssl:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            logger.warning("SSL certificate verification is disabled")

        return context

    def build_message(self, to: str, subject: str, html: str, from_name: Optional[str] = None) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.format_from(from_name)
        message["To"] = to
        message["Message-ID"] = make_msgid(domain=self.settings.sender_email.split("@")[-1])

        message.attach(MIMEText(html_to_text(html), "plain"))
        message.attach(MIMEText(html, "html"))
        return message

    def send_email(self, to: str, subject: str, html: str, from_name: Optional[str] = None) -> Dict[str, str]:
        message = self.build_message(to, subject, html, from_name)
        context = self.create_ssl_context()
        last_error = None

        # Try STARTTLS first
        try:
            with smtplib.SMTP(self.settings.smtp_server, self.settings.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.settings.smtp_username:
                    server.login(self.settings.smtp_username, self.settings.smtp_password)
                server.send_message(message)
                logger.info(f"Email sent via STARTTLS to {to}")
                return {"id": message["Message-ID"]}
        except (smtplib.SMTPException, OSError) as e:
            last_error = e
            logger.warning(f"STARTTLS attempt failed: {e}")

        # Try direct SSL if STARTTLS failed
        try:
            with smtplib.SMTP_SSL(self.settings.smtp_server, 465, context=context, timeout=self.timeout) as server:
                if self.settings.smtp_username:
                    server.login(self.settings.smtp_username, self.settings.smtp_password)
                server.send_message(message)
                logger.info(f"Email sent via SSL to {to}")
                return {"id": message["Message-ID"]}
        except (smtplib.SMTPException, OSError) as e:
            last_error = e
            logger.warning(f"SSL attempt failed: {e}")

        raise EmailSendError(f"Failed to send email to {to}: {last_error}")


def get_email_sender(settings: Settings) -> EmailSender:
    """Pick the sender implementation configured by EMAIL_PROVIDER"""
    if settings.email_provider == "smtp":
        return SmtpEmailSender(settings)
    if settings.email_provider == "resend":
        return ResendEmailSender(settings)
    raise ValueError(f"Unsupported email provider: {settings.email_provider}")


def html_to_text(html_content: str) -> str:
    """Convert HTML to plain text"""
    if not html_content:
        return ""

    text = re.sub(r"<[^>]+>", "", html_content)
    text = html_lib.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def personalize_content(content: str, recipient_data: dict) -> str:
    """Replace placeholders like {{name}} and {{email}} with recipient data"""
    if not content or not recipient_data:
        return content

    for key, value in recipient_data.items():
        placeholder = f"{{{{{key}}}}}"
        content = content.replace(placeholder, "" if value is None else str(value))

    return content


def build_newsletter_email(content: str, unsubscribe_url: str, site_url: str, site_name: str) -> str:
    """Wrap campaign content in the newsletter layout with an unsubscribe footer"""
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1e1e1e; max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="text-align: center; margin-bottom: 32px;">
    <h1 style="color: #1e1e1e; font-size: 24px; margin: 0;">{html_lib.escape(site_name)}</h1>
  </div>
  <div style="margin-bottom: 32px;">
    {content}
  </div>
  <hr style="border: none; border-top: 1px solid #e5e5e5; margin: 32px 0;">
  <p style="color: #a3a3a3; font-size: 12px; text-align: center;">
    <a href="{site_url}" style="color: #7c3aed;">{html_lib.escape(site_name)}</a><br>
    <a href="{unsubscribe_url}" style="color: #a3a3a3;">Unsubscribe</a> from future emails.
  </p>
</body>
</html>"""

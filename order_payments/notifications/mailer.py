"""
Email notifications over SMTP.

smtplib is blocking, so each send runs in the default executor. With no
SMTP host configured messages are only logged.
"""
import asyncio
import smtplib
from decimal import Decimal
from email.mime.text import MIMEText
from typing import Tuple

import structlog
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from order_payments.notifications.base import (
    DeliveryError,
    format_amount,
    method_label,
    order_number,
)

logger = structlog.get_logger(__name__)


class TransientEmailError(DeliveryError):
    """SMTP connection problem; worth retrying."""

    pass


class EmailConfig(BaseModel):
    host: str = ""
    port: int = 587
    user: str = ""
    password: str = ""
    use_tls: bool = True
    timeout_seconds: float = 10.0
    sender: str = "noreply@localhost"
    frontend_url: str = "http://localhost:3000"

    @property
    def simulated(self) -> bool:
        return not self.host


class EmailSender:
    """Sends HTML mail through one SMTP relay."""

    def __init__(self, config: EmailConfig):
        self.config = config

    async def send(self, to_email: str, subject: str, html_body: str) -> bool:
        """
        Send one message.

        Returns:
            bool: False when running without an SMTP host

        Raises:
            DeliveryError: If the relay refused the message
        """
        if self.config.simulated:
            logger.info("email_simulated", to=to_email, subject=subject)
            return False

        await self._send_with_retry(to_email, subject, html_body)
        logger.info("email_sent", to=to_email, subject=subject)
        return True

    @retry(
        retry=retry_if_exception_type(TransientEmailError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _send_with_retry(self, to_email: str, subject: str, html_body: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._send_sync, to_email, subject, html_body)

    def _send_sync(self, to_email: str, subject: str, html_body: str) -> None:
        msg = MIMEText(html_body, "html", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.config.sender
        msg["To"] = to_email

        try:
            with smtplib.SMTP(
                self.config.host, self.config.port, timeout=self.config.timeout_seconds
            ) as server:
                server.ehlo()
                if self.config.use_tls:
                    server.starttls()
                    server.ehlo()
                if self.config.user:
                    server.login(self.config.user, self.config.password)
                server.sendmail(self.config.sender, [to_email], msg.as_string())
        except (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError, OSError) as e:
            logger.warning("email_relay_unavailable", to=to_email, error=repr(e))
            raise TransientEmailError(f"SMTP relay unavailable: {e}", recipient=to_email) from e
        except smtplib.SMTPException as e:
            logger.error("email_send_failed", to=to_email, error=repr(e))
            raise DeliveryError(f"SMTP send failed: {e}", recipient=to_email) from e


def payment_receipt(
    order_id: str, total: Decimal, currency: str, payment_method: str, frontend_url: str
) -> Tuple[str, str]:
    """Subject and body of the payment receipt."""
    number = order_number(order_id)
    subject = f"Payment Received - {number}"
    body = (
        f"<h2>Thank you for your payment</h2>"
        f"<p>We received {currency} {format_amount(total)} for order <b>{number}</b> "
        f"via {method_label(payment_method)}.</p>"
        f"<p>Your order will be processed shortly. "
        f'<a href="{frontend_url}/orders/{order_id}">View your order</a></p>'
    )
    return subject, body


def delivery_confirmation(order_id: str, frontend_url: str) -> Tuple[str, str]:
    """Subject and body of the delivery confirmation."""
    number = order_number(order_id)
    subject = f"Order Delivered - {number}"
    body = (
        f"<h2>Your order has been delivered</h2>"
        f"<p>Order <b>{number}</b> was delivered. We hope to serve you again soon.</p>"
        f'<p><a href="{frontend_url}/orders/{order_id}/review">Leave a review</a></p>'
    )
    return subject, body


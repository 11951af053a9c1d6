"""Alert rendering and SMTP delivery.

Renders budget alerts and daily summaries as plain-text emails and hands
them to a notification transport. The transport only reports success or
failure; retry and dedup decisions belong to the dispatcher.
"""

import logging
import smtplib
import ssl
import textwrap
from dataclasses import dataclass
from decimal import Decimal
from email.message import EmailMessage
from typing import Protocol

from spendwatch.core.errors import DeliveryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str


class NotificationTransport(Protocol):
    """Delivers a rendered message to one recipient."""

    def deliver(self, recipient: str, subject: str, body: str) -> bool:
        """Return True once the message was accepted for delivery."""
        ...


def format_money(amount: Decimal, currency: str) -> str:
    return f"{currency} {amount:,.2f}"


def render_threshold_alert(
    name: str,
    *,
    spend: Decimal,
    limit: Decimal,
    remaining: Decimal,
    percentage_used: float,
    days_left: int,
    currency: str,
) -> RenderedMessage:
    """Warning that spend crossed the alert threshold."""
    subject = f"Budget Alert: {percentage_used:.0f}% of monthly limit used"
    body = textwrap.dedent(
        f"""
        Hello {name},

        Spending this month has reached {percentage_used:.1f}% of the budget.

          Monthly limit:    {format_money(limit, currency)}
          Current spending: {format_money(spend, currency)}
          Remaining:        {format_money(remaining, currency)}
          Days left:        {days_left}

        Review running resources to stay within the budget.
        """
    ).strip()
    return RenderedMessage(subject=subject, body=body)


def render_over_budget_alert(
    name: str,
    *,
    spend: Decimal,
    limit: Decimal,
    overage: Decimal,
    currency: str,
) -> RenderedMessage:
    """Notice that spend reached or passed the monthly limit."""
    subject = "URGENT: Monthly budget exceeded"
    body = textwrap.dedent(
        f"""
        Hello {name},

        Spending this month has exceeded the budget.

          Monthly limit:    {format_money(limit, currency)}
          Current spending: {format_money(spend, currency)}
          Over budget by:   {format_money(overage, currency)}

        Costs will keep accruing until resources are stopped.
        """
    ).strip()
    return RenderedMessage(subject=subject, body=body)


def render_daily_summary(
    name: str,
    *,
    day: str,
    day_total: Decimal,
    period_total: Decimal,
    average_daily: Decimal,
    top_services: list[tuple[str, Decimal]],
    currency: str,
) -> RenderedMessage:
    """Daily cost digest for a subject."""
    lines = [
        f"Hello {name},",
        "",
        f"Cost summary for {day}:",
        "",
        f"  Yesterday:          {format_money(day_total, currency)}",
        f"  Month to date:      {format_money(period_total, currency)}",
        f"  Average per day:    {format_money(average_daily, currency)}",
    ]
    if top_services:
        lines += ["", "Top services this month:"]
        lines += [
            f"  {service}: {format_money(total, currency)}" for service, total in top_services
        ]
    return RenderedMessage(subject=f"Daily Cost Summary - {day}", body="\n".join(lines))


class SmtpTransport:
    """Sends plain-text email over SMTP with STARTTLS.

    An unconfigured transport (no host or sender) refuses every message with
    a warning instead of raising, so a deployment without email still runs.
    """

    def __init__(
        self,
        host: str | None,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        sender: str | None = None,
        timeout: float = 20.0,
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = timeout
        self.use_tls = use_tls

    @classmethod
    def from_settings(cls, settings) -> "SmtpTransport":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            sender=settings.smtp_sender,
            timeout=settings.smtp_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.sender)

    def deliver(self, recipient: str, subject: str, body: str) -> bool:
        """Send one message.

        Returns:
            True on success, False if the transport is not configured.

        Raises:
            DeliveryError: If the SMTP exchange failed.
        """
        if not self.configured:
            logger.warning("SMTP not configured; dropping message '%s' to %s", subject, recipient)
            return False

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = recipient
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls(context=ssl.create_default_context())
                if self.user and self.password:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP delivery to {recipient} failed: {e}") from e

        logger.info("Sent '%s' to %s", subject, recipient)
        return True

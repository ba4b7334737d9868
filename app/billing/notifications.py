"""
Customer communications for dunning.

Emails are rendered from plain-text templates under
templates/billing/email/ and sent through Django's mail backend. In-app
notifications are only recorded on the DunningAttempt row; delivering them
is the client's job.

Usage:
    from billing.notifications import DunningNotifier

    sent, error = DunningNotifier.send_payment_failed(campaign, attempt_number=2)
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

if TYPE_CHECKING:
    from billing.models import DunningCampaign

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
}


def format_amount(amount_cents: int, currency: str) -> str:
    """
    Format an amount in the smallest currency unit for humans.

    Examples:
        format_amount(1000, "USD") -> "$10.00"
        format_amount(1000, "JPY") -> "10.00 JPY"
    """
    code = (currency or "").upper()
    value = f"{Decimal(amount_cents) / 100:,.2f}"
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{symbol}{value}"
    return f"{value} {code}".strip()


class DunningNotifier:
    """Sends dunning emails. Returns (sent, error) instead of raising."""

    @staticmethod
    def _context(campaign: DunningCampaign, **extra) -> dict:
        subscription = campaign.subscription
        context = {
            "customer_name": subscription.customer.name or subscription.customer.email,
            "product_name": subscription.product.name,
            "amount": format_amount(campaign.original_amount_cents, campaign.currency),
            "attempt_number": campaign.current_attempt,
            "max_attempts": campaign.configuration.max_retry_attempts,
            "next_retry_at": campaign.next_retry_at,
            "failure_reason": campaign.original_failure_reason,
        }
        context.update(extra)
        return context

    @classmethod
    def _send(cls, campaign: DunningCampaign, subject: str, template_name: str, context: dict) -> tuple[bool, str]:
        recipient = campaign.subscription.customer.email
        if not recipient:
            return False, "customer has no email address"

        body = render_to_string(f"billing/email/{template_name}.txt", context)
        email = EmailMultiAlternatives(
            subject=subject,
            body=body,
            from_email=settings.DEFAULT_FROM_EMAIL,
            to=[recipient],
        )
        try:
            email.send(fail_silently=False)
        except Exception as e:
            logger.error(
                "Failed to send dunning email",
                extra={"campaign_id": str(campaign.id), "template": template_name, "error": str(e)},
            )
            return False, str(e)

        logger.info(
            "Dunning email sent",
            extra={"campaign_id": str(campaign.id), "template": template_name},
        )
        return True, ""

    @classmethod
    def send_payment_failed(cls, campaign: DunningCampaign, attempt_number: int) -> tuple[bool, str]:
        context = cls._context(campaign, attempt_number=attempt_number)
        return cls._send(campaign, f"Payment failed for {context['product_name']}", "payment_failed", context)

    @classmethod
    def send_pre_dunning_reminder(cls, campaign: DunningCampaign) -> tuple[bool, str]:
        context = cls._context(campaign)
        return cls._send(
            campaign,
            f"Upcoming payment retry for {context['product_name']}",
            "pre_dunning_reminder",
            context,
        )

    @classmethod
    def send_final_notice(cls, campaign: DunningCampaign, final_action: str) -> tuple[bool, str]:
        context = cls._context(campaign, final_action=final_action)
        return cls._send(campaign, f"Action required: {context['product_name']}", "final_notice", context)

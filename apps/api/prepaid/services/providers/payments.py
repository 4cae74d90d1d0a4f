from __future__ import annotations

import json
import logging

import stripe

from prepaid.core.config import Settings
from prepaid.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def parse_stripe_event(payload: bytes, sig_header: str | None, settings: Settings):
    """Return a verified Stripe event.

    Without a configured webhook secret the payload is parsed unverified,
    which is only meant for local development.
    """
    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key

    if settings.stripe_webhook_secret:
        if not sig_header:
            raise ValidationError("Missing Stripe-Signature header")
        try:
            return stripe.Webhook.construct_event(payload, sig_header, settings.stripe_webhook_secret)
        except ValueError:
            raise ValidationError("Invalid payload")
        except stripe.SignatureVerificationError:
            raise ValidationError("Invalid signature")

    logger.warning("STRIPE_WEBHOOK_SECRET not set, accepting unverified webhook payload")
    try:
        data = json.loads(payload.decode("utf-8"))
    except ValueError:
        raise ValidationError("Invalid payload")
    return event_from_payload(data)


def event_from_payload(data: dict):
    """Rebuild an event from a stored body that was verified when it first arrived."""
    if not isinstance(data, dict) or not data.get("type"):
        raise ValidationError("Invalid payload")
    return stripe.Event.construct_from(data, stripe.api_key)

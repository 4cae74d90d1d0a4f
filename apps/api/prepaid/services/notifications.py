from __future__ import annotations

import logging
from decimal import Decimal
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send_refund_notice(self, customer_email: str | None, order_id: str, amount: Decimal,
                                 currency: str, reason: str) -> None:
        ...


class LoggingNotifier:
    """Default notifier; records the dispatch instead of calling an email gateway."""

    async def send_refund_notice(self, customer_email: str | None, order_id: str, amount: Decimal,
                                 currency: str, reason: str) -> None:
        if not customer_email:
            logger.info("Refund notice skipped for order=%s: no recipient email", order_id)
            return
        logger.info("Refund notice order=%s amount=%s %s reason=%s", order_id, amount, currency, reason)

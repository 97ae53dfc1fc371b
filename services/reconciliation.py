"""
Reconciliation engine
Folds validated payment notifications into the authoritative order state
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, Inexact
from typing import Callable, Optional

from crypto_config import crypto_config
from order_store import OrderStore, expire, utc_now, validate_order_record
from payment_errors import ConcurrentUpdateConflict, Expired, OrderIntegrityError, OrderNotFound
from payment_models import (
    AMOUNT_CONTEXT, OrderStatus, PaymentNotification, PaymentOrder, ReconciliationResult, WebhookOutcome,
    amount_fits
)

logger = logging.getLogger(__name__)


@dataclass
class Transition:
    """Result of the pure fold: the order to write (None for no change) and the outcome"""
    outcome: WebhookOutcome
    detail: str
    order: Optional[PaymentOrder] = None
    applied_amount: Decimal = Decimal('0')


def apply_notification(order: PaymentOrder, notification: PaymentNotification,
                       now: datetime, testnet: bool = True) -> Transition:
    """
    Compute the effect of one notification on an order without touching storage

    Raises:
        OrderIntegrityError: the stored order violates lifecycle invariants
        Expired: a novel payment arrived after the order's deadline
    """
    validate_order_record(order)

    tx_hash = notification.transaction_hash
    if tx_hash in order.seen_transaction_hashes:
        return Transition(WebhookOutcome.DUPLICATE, f"transaction {tx_hash} already applied")

    if order.is_terminal:
        return Transition(
            WebhookOutcome.REJECTED,
            f"order is {order.status.value}; transaction {tx_hash} needs manual reconciliation"
        )

    if notification.address != order.payment_address:
        return Transition(WebhookOutcome.REJECTED, "address does not match order")
    if notification.currency.upper() != order.currency.upper():
        return Transition(
            WebhookOutcome.REJECTED,
            f"currency {notification.currency} does not match order currency {order.currency}"
        )
    if not crypto_config.same_chain(order.network, notification.network, testnet):
        return Transition(
            WebhookOutcome.REJECTED,
            f"network {notification.network} does not match order network {order.network}"
        )

    if not amount_fits(notification.amount):
        return Transition(
            WebhookOutcome.REJECTED,
            f"amount {notification.amount} exceeds supported precision"
        )

    if now > order.expires_at:
        raise Expired(f"Order {order.order_number} expired before payment was applied",
                      detail=order.expires_at.isoformat())

    try:
        received = AMOUNT_CONTEXT.add(order.received_amount, notification.amount)
    except Inexact:
        received = None
    if received is None or not amount_fits(received):
        return Transition(
            WebhookOutcome.REJECTED,
            f"received total for transaction {tx_hash} cannot be stored exactly"
        )
    paid = received >= order.expected_amount
    updated = replace(
        order,
        received_amount=received,
        seen_transaction_hashes=order.seen_transaction_hashes | {tx_hash},
        transaction_hash=tx_hash,
        status=OrderStatus.PAID if paid else OrderStatus.UNDERPAID,
        confirmed_at=now if paid else None,
        updated_at=now
    )
    if paid:
        detail = f"paid: received {received} of {order.expected_amount} {order.currency}"
    else:
        detail = f"underpaid: received {received} of {order.expected_amount} {order.currency}"
    return Transition(WebhookOutcome.ACCEPTED, detail, updated, notification.amount)


class ReconciliationEngine:
    """Applies notifications to orders with optimistic per-order serialization"""

    def __init__(
        self,
        order_store: OrderStore,
        testnet: bool = True,
        max_retries: int = 5,
        retry_backoff: float = 0.01,
        clock: Callable[[], datetime] = utc_now
    ):
        self.order_store = order_store
        self.testnet = testnet
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self._clock = clock

    async def reconcile(self, order_id: str, notification: PaymentNotification) -> ReconciliationResult:
        """
        Fold one notification into the order, retrying when another writer wins the race

        Business outcomes (accepted, duplicate, rejected) are returned as data.

        Raises:
            OrderNotFound: the order disappeared
            ConcurrentUpdateConflict: retries exhausted
        """
        for attempt in range(1, self.max_retries + 1):
            order = await self.order_store.get(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")

            now = self._clock()
            try:
                transition = apply_notification(order, notification, now, self.testnet)
            except Expired as e:
                transition = Transition(WebhookOutcome.REJECTED, e.message, expire(order, now))
            except OrderIntegrityError as e:
                reason = e.detail or e.message
                logger.error(f"❌ Order {order.order_number} failed integrity check: {reason}")
                failed = await self.order_store.mark_failed(order.id, reason, now)
                return ReconciliationResult(WebhookOutcome.ERROR, f"order integrity: {reason}", failed or order)

            if transition.order is None:
                return ReconciliationResult(transition.outcome, transition.detail, order)

            try:
                stored = await self.order_store.compare_and_swap(transition.order, order.version)
            except ConcurrentUpdateConflict as e:
                logger.debug(f"🔄 Order {order.order_number} CAS conflict ({attempt}/{self.max_retries}): {e.detail}")
                await asyncio.sleep(self.retry_backoff * attempt)
                continue

            self._log_transition(order, stored)
            return ReconciliationResult(transition.outcome, transition.detail, stored, transition.applied_amount)

        raise ConcurrentUpdateConflict(
            f"Order {order_id} update abandoned after {self.max_retries} conflicting attempts"
        )

    def _log_transition(self, before: PaymentOrder, after: PaymentOrder) -> None:
        if after.status == OrderStatus.PAID:
            logger.info(f"✅ Order {after.order_number} PAID ({after.received_amount} {after.currency})")
        elif after.status == OrderStatus.UNDERPAID:
            logger.info(f"⚠️ Order {after.order_number} UNDERPAID ({after.received_amount}/{after.expected_amount} {after.currency})")
        elif after.status == OrderStatus.EXPIRED:
            logger.info(f"⏰ Order {after.order_number} expired on late notification")
        else:
            logger.info(f"🔧 Order {after.order_number} {before.status.value} -> {after.status.value}")

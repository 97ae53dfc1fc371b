"""
Webhook ingestion for provider payment notifications
Authenticates, resolves, validates and hands notifications to the reconciliation engine
"""

import hmac
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Tuple, Union

from crypto_config import crypto_config
from order_store import OrderStore, utc_now
from payment_errors import AuthenticationFailed, MalformedPayload, OrderNotFound
from payment_models import (
    AMOUNT_SCALE, IngestionResult, PaymentNotification, PaymentOrder, WebhookLogEntry, WebhookOutcome,
    amount_fits
)
from services.reconciliation import ReconciliationEngine
from webhook_log import WebhookLog

logger = logging.getLogger(__name__)

# Provider field aliases, first present wins
TX_HASH_FIELDS = ('txHash', 'txId', 'transactionHash')
NETWORK_FIELDS = ('network', 'chain')
CORRELATION_FIELDS = ('orderId', 'reference')

MAX_LOGGED_PAYLOAD = 16384


def _reject_constant(name: str):
    raise ValueError(f"non-finite number {name} not allowed")


def parse_body(raw_body: Union[bytes, str]) -> Dict[str, Any]:
    """
    Decode a webhook body with exact decimal numbers

    Raises:
        MalformedPayload: body is not a JSON object
    """
    try:
        text = raw_body.decode('utf-8') if isinstance(raw_body, bytes) else raw_body
        data = json.loads(text, parse_float=Decimal, parse_constant=_reject_constant)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayload("Body is not valid JSON", detail=str(e)) from e
    if not isinstance(data, dict):
        raise MalformedPayload("Body must be a JSON object")
    return data


def _first(data: Dict[str, Any], fields: Tuple[str, ...]) -> Any:
    for name in fields:
        value = data.get(name)
        if value is not None and value != '':
            return value
    return None


def parse_amount(value: Any, decimals: int = AMOUNT_SCALE) -> Decimal:
    """
    Exact positive decimal from a JSON number or numeric string

    Raises:
        MalformedPayload: not a positive number, or more precise than `decimals` places
            or the amount column allows
    """
    if isinstance(value, bool) or value is None:
        raise MalformedPayload("amount is missing or not a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise MalformedPayload(f"amount {value!r} is not a decimal number") from e
    if not amount.is_finite() or amount <= 0:
        raise MalformedPayload(f"amount {value!r} must be a positive finite number")
    if not amount_fits(amount, decimals):
        raise MalformedPayload(f"amount {value!r} exceeds supported precision",
                               detail=f"at most {min(decimals, AMOUNT_SCALE)} decimal places")
    return amount


def parse_notification(data: Dict[str, Any]) -> PaymentNotification:
    """
    Validate the notification shape

    Raises:
        MalformedPayload: a required field is missing or invalid
    """
    currency = data.get('currency')
    address = data.get('address')
    tx_hash = _first(data, TX_HASH_FIELDS)
    network = _first(data, NETWORK_FIELDS)

    missing = [
        name for name, value in (
            ('currency', currency), ('address', address),
            ('txHash', tx_hash), ('network', network)
        )
        if not isinstance(value, str) or not value.strip()
    ]
    if missing:
        raise MalformedPayload(f"missing or invalid field(s): {', '.join(missing)}")
    if 'amount' not in data:
        raise MalformedPayload("missing or invalid field(s): amount")

    currency = currency.strip().upper()
    decimals = crypto_config.get_decimals(currency)
    return PaymentNotification(
        currency=currency,
        address=address.strip(),
        amount=parse_amount(data['amount'], AMOUNT_SCALE if decimals is None else decimals),
        transaction_hash=tx_hash.strip(),
        network=network.strip().lower()
    )


class WebhookIngestor:
    """Turns one inbound webhook delivery into a typed IngestionResult"""

    def __init__(
        self,
        webhook_token: str,
        order_store: OrderStore,
        engine: ReconciliationEngine,
        webhook_log: WebhookLog,
        testnet: bool = True,
        clock: Callable = utc_now
    ):
        if not webhook_token:
            raise ValueError("webhook_token must not be empty")
        self._webhook_token = webhook_token.encode('utf-8')
        self.order_store = order_store
        self.engine = engine
        self.webhook_log = webhook_log
        self.testnet = testnet
        self._clock = clock

    def authenticate(self, token: Optional[str]) -> None:
        """
        Constant-time shared secret comparison

        Raises:
            AuthenticationFailed: token missing or wrong
        """
        if not token or not hmac.compare_digest(token.encode('utf-8'), self._webhook_token):
            raise AuthenticationFailed("Invalid webhook token")

    async def resolve_order(self, correlation_id: Optional[str], data: Optional[Dict[str, Any]]) -> PaymentOrder:
        """
        Find the order by correlation id, falling back to (address, network) from the body

        Raises:
            OrderNotFound: neither lookup matched
        """
        data = data or {}
        correlation_id = correlation_id or _first(data, CORRELATION_FIELDS)
        if correlation_id:
            order = await self.order_store.get(str(correlation_id))
            if order:
                return order
            raise OrderNotFound(f"No order with id {correlation_id}")

        address = data.get('address')
        network = _first(data, NETWORK_FIELDS)
        if isinstance(address, str) and isinstance(network, str):
            chain = crypto_config.resolve_chain(network, self.testnet)
            if chain:
                order = await self.order_store.find_by_address(address.strip(), chain)
                if order:
                    return order
        raise OrderNotFound("No order matches the notification address and network")

    async def ingest(self, token: Optional[str], correlation_id: Optional[str],
                     raw_body: Union[bytes, str]) -> IngestionResult:
        """
        Process one webhook delivery

        Returns 401 on bad token (nothing logged to the audit trail), 400 for
        unresolvable or malformed notifications, 200 for every business outcome
        and 500 only when the engine failed and the provider should retry.
        """
        try:
            self.authenticate(token)
        except AuthenticationFailed as e:
            logger.warning(f"🔒 Webhook rejected: {e.message}")
            return IngestionResult(401, None, e.message)

        raw_text = raw_body.decode('utf-8', errors='replace') if isinstance(raw_body, bytes) else raw_body

        data: Optional[Dict[str, Any]] = None
        parse_error: Optional[MalformedPayload] = None
        try:
            data = parse_body(raw_body)
        except MalformedPayload as e:
            parse_error = e

        try:
            order = await self.resolve_order(correlation_id, data)
        except OrderNotFound as e:
            if parse_error and not correlation_id:
                return await self._finish(raw_text, None, 400, WebhookOutcome.REJECTED, f"malformed: {parse_error.message}")
            logger.warning(f"⚠️ Webhook for unknown order: {e.message}")
            return await self._finish(raw_text, None, 400, WebhookOutcome.REJECTED, f"unresolved: {e.message}")
        except Exception as e:
            logger.error(f"❌ Order lookup failed during webhook ingestion: {e}")
            return await self._finish(raw_text, None, 500, WebhookOutcome.ERROR, f"lookup failed: {e}")

        try:
            if parse_error:
                raise parse_error
            notification = parse_notification(data or {})
        except MalformedPayload as e:
            logger.warning(f"⚠️ Malformed webhook for order {order.order_number}: {e.message}")
            return await self._finish(raw_text, order.id, 400, WebhookOutcome.REJECTED, f"malformed: {e.message}")

        try:
            result = await self.engine.reconcile(order.id, notification)
        except Exception as e:
            logger.error(f"❌ Reconciliation failed for order {order.order_number}: {e}")
            return await self._finish(raw_text, order.id, 500, WebhookOutcome.ERROR, f"engine error: {e}")

        status_code = 500 if result.outcome == WebhookOutcome.ERROR else 200
        if result.outcome == WebhookOutcome.DUPLICATE:
            logger.info(f"🔁 Duplicate notification {notification.transaction_hash} for order {order.order_number}")
        elif result.outcome == WebhookOutcome.REJECTED:
            logger.warning(f"⚠️ Notification rejected for order {order.order_number}: {result.detail}")
        return await self._finish(raw_text, order.id, status_code, result.outcome, result.detail)

    async def _finish(self, raw_text: str, order_id: Optional[str], status_code: int,
                      outcome: WebhookOutcome, detail: str) -> IngestionResult:
        entry = WebhookLogEntry(
            raw_payload=raw_text[:MAX_LOGGED_PAYLOAD],
            received_at=self._clock(),
            outcome=outcome,
            detail=detail,
            order_id=order_id
        )
        try:
            await self.webhook_log.append(entry)
        except Exception as e:
            logger.error(f"❌ Could not write webhook log entry ({outcome.value}): {e}")
            return IngestionResult(500, outcome, f"{detail}; audit log unavailable", order_id)
        return IngestionResult(status_code, outcome, detail, order_id)

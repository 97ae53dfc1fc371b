"""
Payment order store and lifecycle state machine
Every mutation is a compare-and-swap on the order's version counter
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import psycopg2

from database import execute_query, execute_returning
from payment_errors import ConcurrentUpdateConflict, OrderIntegrityError, OrderNotFound
from payment_models import OPEN_STATUSES, OrderStatus, PaymentOrder, ProductSelection

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_order_number(year: int, sequence: int) -> str:
    """Human order number, e.g. ORD-2026-000042"""
    return f"ORD-{year}-{sequence:06d}"


def validate_order_record(order: PaymentOrder) -> None:
    """
    Check a stored order against the lifecycle invariants

    Raises:
        OrderIntegrityError: when the record cannot have been produced by legal transitions
    """
    problems = []
    if order.expected_amount <= 0:
        problems.append("expected amount is not positive")
    if order.received_amount < 0:
        problems.append("received amount is negative")
    if order.status == OrderStatus.PENDING and order.received_amount != 0:
        problems.append("pending order has received funds")
    if order.status == OrderStatus.UNDERPAID and not (0 < order.received_amount < order.expected_amount):
        problems.append("underpaid order outside (0, expected)")
    if order.status == OrderStatus.PAID and order.received_amount < order.expected_amount:
        problems.append("paid order below expected amount")
    if order.received_amount > 0 and not order.seen_transaction_hashes:
        problems.append("received funds without any transaction hash")
    if order.transaction_hash and order.transaction_hash not in order.seen_transaction_hashes:
        problems.append("last transaction hash was never recorded")
    if not order.payment_address:
        problems.append("missing payment address")
    if problems:
        raise OrderIntegrityError(f"Order {order.id} violates invariants", detail='; '.join(problems))


def expire(order: PaymentOrder, now: datetime) -> PaymentOrder:
    """PENDING | UNDERPAID -> EXPIRED"""
    if order.status not in OPEN_STATUSES:
        raise OrderIntegrityError(f"Order {order.id} cannot expire from {order.status.value}")
    return replace(order, status=OrderStatus.EXPIRED, updated_at=now)


def fail(order: PaymentOrder, reason: str, now: datetime) -> PaymentOrder:
    """non-terminal -> FAILED"""
    if order.is_terminal:
        raise OrderIntegrityError(f"Order {order.id} cannot fail from {order.status.value}")
    return replace(order, status=OrderStatus.FAILED, failure_reason=reason, updated_at=now)


class OrderStore(ABC):
    """Authoritative storage for payment orders"""

    @abstractmethod
    async def create(self, order: PaymentOrder) -> PaymentOrder:
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[PaymentOrder]:
        pass

    @abstractmethod
    async def find_by_address(self, address: str, network: str) -> Optional[PaymentOrder]:
        pass

    @abstractmethod
    async def compare_and_swap(self, order: PaymentOrder, expected_version: int) -> PaymentOrder:
        """
        Replace the stored order when its version still equals expected_version

        Returns:
            PaymentOrder: the stored record with its version incremented

        Raises:
            ConcurrentUpdateConflict: another writer got there first
            OrderNotFound: no such order
            OrderIntegrityError: the stored order is terminal
        """

    @abstractmethod
    async def expire_overdue(self, now: datetime) -> List[PaymentOrder]:
        """Expire every open order whose expires_at is before now; returns the expired orders"""

    @abstractmethod
    async def mark_failed(self, order_id: str, reason: str, now: Optional[datetime] = None) -> Optional[PaymentOrder]:
        """Move a non-terminal order to FAILED; returns None when it was already terminal"""

    @abstractmethod
    async def next_order_number(self, now: Optional[datetime] = None) -> str:
        pass

    @abstractmethod
    async def is_address_assigned(self, address: str) -> bool:
        pass


class InMemoryOrderStore(OrderStore):
    """Single-process order store for development and tests"""

    def __init__(self):
        self._orders: Dict[str, PaymentOrder] = {}
        self._sequence = 0

    async def create(self, order: PaymentOrder) -> PaymentOrder:
        if order.id in self._orders:
            raise OrderIntegrityError(f"Order {order.id} already exists")
        for existing in self._orders.values():
            if existing.payment_address == order.payment_address and existing.network == order.network:
                raise OrderIntegrityError(f"Address already bound to order {existing.id}")
            if existing.order_number == order.order_number:
                raise OrderIntegrityError(f"Order number {order.order_number} already used")
        stored = replace(order, version=0)
        self._orders[order.id] = stored
        return replace(stored)

    async def get(self, order_id: str) -> Optional[PaymentOrder]:
        order = self._orders.get(order_id)
        return replace(order) if order else None

    async def find_by_address(self, address: str, network: str) -> Optional[PaymentOrder]:
        for order in self._orders.values():
            if order.payment_address == address and order.network == network:
                return replace(order)
        return None

    async def compare_and_swap(self, order: PaymentOrder, expected_version: int) -> PaymentOrder:
        current = self._orders.get(order.id)
        if current is None:
            raise OrderNotFound(f"Order {order.id} not found")
        if current.version != expected_version:
            raise ConcurrentUpdateConflict(
                f"Order {order.id} changed concurrently",
                detail=f"expected version {expected_version}, found {current.version}"
            )
        if current.is_terminal:
            raise OrderIntegrityError(f"Order {order.id} is terminal ({current.status.value}) and immutable")
        if order.payment_address != current.payment_address:
            raise OrderIntegrityError(f"Order {order.id} payment address is immutable")
        stored = replace(order, version=expected_version + 1)
        self._orders[order.id] = stored
        return replace(stored)

    async def expire_overdue(self, now: datetime) -> List[PaymentOrder]:
        expired = []
        for order_id, order in list(self._orders.items()):
            if order.status in OPEN_STATUSES and order.expires_at < now:
                stored = replace(expire(order, now), version=order.version + 1)
                self._orders[order_id] = stored
                expired.append(replace(stored))
        return expired

    async def mark_failed(self, order_id: str, reason: str, now: Optional[datetime] = None) -> Optional[PaymentOrder]:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        if order.is_terminal:
            return None
        stored = replace(fail(order, reason, now or utc_now()), version=order.version + 1)
        self._orders[order_id] = stored
        return replace(stored)

    async def next_order_number(self, now: Optional[datetime] = None) -> str:
        self._sequence += 1
        return format_order_number((now or utc_now()).year, self._sequence)

    async def is_address_assigned(self, address: str) -> bool:
        return any(order.payment_address == address for order in self._orders.values())


ORDER_COLUMNS = """
    id, server_id, user_id, product_selection, order_number, payment_address,
    currency, network, expected_amount, received_amount, seen_transaction_hashes,
    status, transaction_hash, subscription_id, key_handle, fiat_amount,
    fiat_currency, exchange_rate, failure_reason, version, created_at,
    expires_at, confirmed_at, updated_at
"""


def _row_to_order(row: Dict) -> PaymentOrder:
    selection = row.get('product_selection') or []
    if isinstance(selection, str):
        selection = json.loads(selection)
    return PaymentOrder(
        id=row['id'],
        server_id=row['server_id'],
        user_id=row['user_id'],
        product_selection=[
            ProductSelection(product_id=str(item['productId']), quantity=int(item['quantity']))
            for item in selection
        ],
        order_number=row['order_number'],
        payment_address=row['payment_address'],
        currency=row['currency'],
        network=row['network'],
        expected_amount=Decimal(row['expected_amount']),
        received_amount=Decimal(row['received_amount']),
        seen_transaction_hashes=frozenset(row.get('seen_transaction_hashes') or []),
        status=OrderStatus(row['status']),
        transaction_hash=row.get('transaction_hash'),
        subscription_id=row.get('subscription_id'),
        key_handle=row.get('key_handle'),
        fiat_amount=Decimal(row['fiat_amount']) if row.get('fiat_amount') is not None else None,
        fiat_currency=row.get('fiat_currency'),
        exchange_rate=Decimal(row['exchange_rate']) if row.get('exchange_rate') is not None else None,
        failure_reason=row.get('failure_reason'),
        version=int(row['version']),
        created_at=row['created_at'],
        expires_at=row['expires_at'],
        confirmed_at=row.get('confirmed_at'),
        updated_at=row.get('updated_at')
    )


class PostgresOrderStore(OrderStore):
    """PostgreSQL-backed order store (payment_orders table)"""

    async def create(self, order: PaymentOrder) -> PaymentOrder:
        try:
            row = await execute_returning(
                f"""
                INSERT INTO payment_orders ({ORDER_COLUMNS})
                VALUES (%s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                        %s, %s, %s, %s, 0, %s, %s, %s, %s)
                RETURNING {ORDER_COLUMNS}
                """,
                (
                    order.id, order.server_id, order.user_id,
                    json.dumps([item.to_dict() for item in order.product_selection]),
                    order.order_number, order.payment_address, order.currency, order.network,
                    order.expected_amount, order.received_amount,
                    sorted(order.seen_transaction_hashes), order.status.value,
                    order.transaction_hash, order.subscription_id, order.key_handle,
                    order.fiat_amount, order.fiat_currency, order.exchange_rate,
                    order.failure_reason, order.created_at, order.expires_at,
                    order.confirmed_at, order.updated_at
                )
            )
        except psycopg2.IntegrityError as e:
            raise OrderIntegrityError(f"Order {order.id} conflicts with an existing order", detail=str(e)) from e
        if row is None:
            raise OrderIntegrityError(f"Order {order.id} insert returned no row")
        logger.info(f"✅ Order {order.order_number} persisted ({order.id})")
        return _row_to_order(row)

    async def get(self, order_id: str) -> Optional[PaymentOrder]:
        rows = await execute_query(f"SELECT {ORDER_COLUMNS} FROM payment_orders WHERE id = %s", (order_id,))
        return _row_to_order(rows[0]) if rows else None

    async def find_by_address(self, address: str, network: str) -> Optional[PaymentOrder]:
        rows = await execute_query(
            f"SELECT {ORDER_COLUMNS} FROM payment_orders WHERE payment_address = %s AND network = %s",
            (address, network)
        )
        return _row_to_order(rows[0]) if rows else None

    async def compare_and_swap(self, order: PaymentOrder, expected_version: int) -> PaymentOrder:
        row = await execute_returning(
            f"""
            UPDATE payment_orders
            SET status = %s, received_amount = %s, seen_transaction_hashes = %s,
                transaction_hash = %s, confirmed_at = %s, updated_at = %s,
                failure_reason = %s, subscription_id = %s, version = version + 1
            WHERE id = %s AND version = %s AND status IN ('pending', 'underpaid')
              AND payment_address = %s
            RETURNING {ORDER_COLUMNS}
            """,
            (
                order.status.value, order.received_amount, sorted(order.seen_transaction_hashes),
                order.transaction_hash, order.confirmed_at, order.updated_at,
                order.failure_reason, order.subscription_id,
                order.id, expected_version, order.payment_address
            )
        )
        if row is not None:
            return _row_to_order(row)

        current = await self.get(order.id)
        if current is None:
            raise OrderNotFound(f"Order {order.id} not found")
        if current.version != expected_version:
            raise ConcurrentUpdateConflict(
                f"Order {order.id} changed concurrently",
                detail=f"expected version {expected_version}, found {current.version}"
            )
        if current.is_terminal:
            raise OrderIntegrityError(f"Order {order.id} is terminal ({current.status.value}) and immutable")
        raise OrderIntegrityError(f"Order {order.id} payment address is immutable")

    async def expire_overdue(self, now: datetime) -> List[PaymentOrder]:
        rows = await execute_query(
            f"""
            UPDATE payment_orders
            SET status = 'expired', updated_at = %s, version = version + 1
            WHERE status IN ('pending', 'underpaid') AND expires_at < %s
            RETURNING {ORDER_COLUMNS}
            """,
            (now, now)
        )
        return [_row_to_order(row) for row in rows]

    async def mark_failed(self, order_id: str, reason: str, now: Optional[datetime] = None) -> Optional[PaymentOrder]:
        row = await execute_returning(
            f"""
            UPDATE payment_orders
            SET status = 'failed', failure_reason = %s, updated_at = %s, version = version + 1
            WHERE id = %s AND status IN ('pending', 'underpaid')
            RETURNING {ORDER_COLUMNS}
            """,
            (reason, now or utc_now(), order_id)
        )
        if row is not None:
            return _row_to_order(row)
        if await self.get(order_id) is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return None

    async def next_order_number(self, now: Optional[datetime] = None) -> str:
        rows = await execute_query("SELECT nextval('payment_order_number_seq') AS seq")
        return format_order_number((now or utc_now()).year, int(rows[0]['seq']))

    async def is_address_assigned(self, address: str) -> bool:
        rows = await execute_query(
            "SELECT 1 AS assigned FROM payment_orders WHERE payment_address = %s LIMIT 1",
            (address,)
        )
        return bool(rows)

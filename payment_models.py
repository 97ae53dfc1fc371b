"""
Data model for payment orders, provider subscriptions and the webhook audit log
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Context, Decimal, Inexact, InvalidOperation, Overflow
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class OrderStatus(Enum):
    """Payment order lifecycle states"""
    PENDING = "pending"
    UNDERPAID = "underpaid"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.EXPIRED, OrderStatus.FAILED})
OPEN_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.UNDERPAID})

# Amount columns are NUMERIC(AMOUNT_DIGITS, AMOUNT_SCALE)
AMOUNT_DIGITS = 36
AMOUNT_SCALE = 18

# Amount arithmetic never rounds: an inexact result raises decimal.Inexact
AMOUNT_CONTEXT = Context(prec=AMOUNT_DIGITS * 2, traps=[Inexact, InvalidOperation, Overflow])


def amount_fits(amount: Decimal, decimals: int = AMOUNT_SCALE) -> bool:
    """True when the amount is stored without rounding and has at most `decimals` places"""
    if not amount.is_finite():
        return False
    _, digits, exponent = amount.as_tuple()
    # Trailing zeros after the point carry no value
    while exponent < 0 and len(digits) > 1 and digits[-1] == 0:
        digits = digits[:-1]
        exponent += 1
    places = max(0, -exponent)
    integer_digits = max(0, len(digits) + exponent)
    return places <= min(decimals, AMOUNT_SCALE) and integer_digits <= AMOUNT_DIGITS - AMOUNT_SCALE


class WebhookOutcome(Enum):
    """Processing outcome recorded for every ingestion attempt"""
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass(frozen=True)
class ProductSelection:
    product_id: str
    quantity: int

    def to_dict(self) -> Dict[str, Any]:
        return {'productId': self.product_id, 'quantity': self.quantity}


@dataclass
class PaymentOrder:
    """Authoritative record of a crypto payment order"""
    id: str
    server_id: str
    user_id: str
    product_selection: List[ProductSelection]
    order_number: str
    payment_address: str
    currency: str
    network: str
    expected_amount: Decimal
    created_at: datetime
    expires_at: datetime
    received_amount: Decimal = Decimal('0')
    seen_transaction_hashes: FrozenSet[str] = field(default_factory=frozenset)
    status: OrderStatus = OrderStatus.PENDING
    transaction_hash: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    subscription_id: Optional[str] = None
    key_handle: Optional[str] = field(default=None, repr=False)
    fiat_amount: Optional[Decimal] = None
    fiat_currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    failure_reason: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def finalized_at(self) -> Optional[datetime]:
        """When the order reached its terminal state, None while still open"""
        if not self.is_terminal:
            return None
        return self.confirmed_at or self.updated_at

    def to_snapshot(self) -> Dict[str, Any]:
        """Status-query view of the order (amounts as decimal strings)"""
        return {
            'orderId': self.id,
            'orderNumber': self.order_number,
            'status': self.status.value,
            'receivedAmount': str(self.received_amount),
            'expectedAmount': str(self.expected_amount),
            'currency': self.currency,
            'network': self.network,
            'paymentAddress': self.payment_address,
            'transactionHash': self.transaction_hash,
            'expiresAt': self.expires_at.isoformat(),
            'confirmedAt': self.confirmed_at.isoformat() if self.confirmed_at else None
        }


@dataclass(frozen=True)
class PaymentNotification:
    """Validated inbound payment notification"""
    currency: str
    address: str
    amount: Decimal
    transaction_hash: str
    network: str


@dataclass
class Subscription:
    """Provider-side notification subscription bound to an order's address"""
    provider_subscription_id: str
    address: str
    network: str
    callback_url: str = field(repr=False)
    correlation_token: str
    created_at: datetime
    released_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.address, self.network, self.callback_url)


@dataclass
class WebhookLogEntry:
    """Append-only audit record of one inbound notification"""
    raw_payload: str
    received_at: datetime
    outcome: WebhookOutcome
    detail: str
    order_id: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'orderId': self.order_id,
            'rawPayload': self.raw_payload,
            'receivedAt': self.received_at.isoformat(),
            'outcome': self.outcome.value,
            'detail': self.detail
        }


@dataclass
class ReconciliationResult:
    """Typed result of folding one notification into an order"""
    outcome: WebhookOutcome
    detail: str
    order: Optional[PaymentOrder] = None
    applied_amount: Decimal = Decimal('0')

    @property
    def order_id(self) -> Optional[str]:
        return self.order.id if self.order else None


@dataclass(frozen=True)
class AllocatedAddress:
    address: str
    key_handle: str = field(repr=False)


@dataclass
class IngestionResult:
    """What the webhook endpoint reports back to the provider"""
    status_code: int
    outcome: Optional[WebhookOutcome]
    detail: str
    order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.outcome.value if self.outcome else 'unauthorized',
            'detail': self.detail,
            'orderId': self.order_id
        }

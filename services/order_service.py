"""
Payment order creation and status queries
"""

import logging
import uuid
import httpx
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from urllib.parse import urlencode

from crypto_config import crypto_config
from order_store import OrderStore, utc_now
from payment_errors import OrderNotFound, OrderValidationError, PriceUnavailable, UnsupportedCurrency
from payment_models import PaymentOrder, ProductSelection
from services.address_allocator import AddressAllocator
from services.exchange_rates import CryptoPriceService
from services.product_catalog import ProductCatalog
from services.subscription_manager import SubscriptionManager

logger = logging.getLogger(__name__)

MAX_LINE_ITEMS = 50


def build_callback_url(webhook_url: str, webhook_token: str, order_id: str) -> str:
    """Webhook URL carrying the shared secret and the correlation token"""
    separator = '&' if '?' in webhook_url else '?'
    return f"{webhook_url}{separator}{urlencode({'token': webhook_token, 'orderId': order_id})}"


def parse_product_selection(raw: Any) -> List[ProductSelection]:
    """
    Normalize the requested line items

    Raises:
        OrderValidationError: empty selection, bad product id or non-positive quantity
    """
    if not isinstance(raw, (list, tuple)) or not raw:
        raise OrderValidationError("productSelection must be a non-empty list")
    if len(raw) > MAX_LINE_ITEMS:
        raise OrderValidationError(f"productSelection is limited to {MAX_LINE_ITEMS} items")

    selection = []
    for item in raw:
        if isinstance(item, ProductSelection):
            product_id, quantity = item.product_id, item.quantity
        elif isinstance(item, dict):
            product_id, quantity = item.get('productId'), item.get('quantity', 1)
        else:
            raise OrderValidationError("productSelection items must be objects")
        if not isinstance(product_id, (str, int)) or isinstance(product_id, bool) or str(product_id).strip() == '':
            raise OrderValidationError("productId is required for every item")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise OrderValidationError(f"quantity for product {product_id} must be a positive integer")
        selection.append(ProductSelection(product_id=str(product_id).strip(), quantity=quantity))
    return selection


class OrderService:
    """Creates payment orders and answers status queries"""

    def __init__(
        self,
        order_store: OrderStore,
        catalog: ProductCatalog,
        price_service: CryptoPriceService,
        allocator: AddressAllocator,
        subscription_manager: SubscriptionManager,
        webhook_url: str,
        webhook_token: str,
        testnet: bool = True,
        order_ttl_seconds: int = 1800,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4())
    ):
        self.order_store = order_store
        self.catalog = catalog
        self.price_service = price_service
        self.allocator = allocator
        self.subscription_manager = subscription_manager
        self.webhook_url = webhook_url
        self._webhook_token = webhook_token
        self.testnet = testnet
        self.order_ttl = timedelta(seconds=order_ttl_seconds)
        self._clock = clock
        self._new_id = id_factory

    async def create_order(
        self,
        server_id: str,
        user_id: str,
        product_selection: Sequence[Union[Dict[str, Any], ProductSelection]],
        payment_method: Dict[str, Any]
    ) -> PaymentOrder:
        """
        Price, allocate, subscribe and persist a new PENDING order

        Either every step succeeds and the order is stored, or nothing is stored
        and any subscription registered along the way is torn down.

        Raises:
            OrderValidationError: bad input (UnsupportedCurrency for unknown pairs)
            PriceUnavailable: the total could not be converted to the payment currency
            AllocationFailed: no deposit address could be obtained
            SubscriptionConflict: the notification subscription could not be ensured
        """
        if not isinstance(server_id, str) or not server_id.strip():
            raise OrderValidationError("serverId is required")
        if not isinstance(user_id, str) or not user_id.strip():
            raise OrderValidationError("userId is required")
        selection = parse_product_selection(product_selection)
        currency, network = self._validate_payment_method(payment_method)

        fiat_total, fiat_currency = await self._price_selection(server_id, selection)
        if fiat_currency == currency:
            expected_amount, exchange_rate = fiat_total, None
        else:
            expected_amount, exchange_rate = await self.price_service.convert_fiat(fiat_total, fiat_currency, currency)

        now = self._clock()
        order_id = self._new_id()
        order_number = await self.order_store.next_order_number(now)
        chain = crypto_config.resolve_chain(network, self.testnet)

        allocated = await self.allocator.allocate(currency, network)
        callback_url = build_callback_url(self.webhook_url, self._webhook_token, order_id)
        subscription_id = await self.subscription_manager.ensure_subscription(
            allocated.address, chain, callback_url, order_id
        )

        order = PaymentOrder(
            id=order_id,
            server_id=server_id.strip(),
            user_id=user_id.strip(),
            product_selection=selection,
            order_number=order_number,
            payment_address=allocated.address,
            currency=currency,
            network=chain,
            expected_amount=expected_amount,
            created_at=now,
            expires_at=now + self.order_ttl,
            updated_at=now,
            subscription_id=subscription_id,
            key_handle=allocated.key_handle,
            fiat_amount=fiat_total,
            fiat_currency=fiat_currency,
            exchange_rate=exchange_rate
        )

        try:
            stored = await self.order_store.create(order)
        except Exception as e:
            logger.error(f"❌ Persisting order {order_number} failed, releasing subscription: {e}")
            await self.subscription_manager.teardown(subscription_id)
            raise

        logger.info(
            f"✅ Order {stored.order_number} created: {stored.expected_amount} {currency} on {chain} "
            f"(server {stored.server_id}, user {stored.user_id})"
        )
        return stored

    def _validate_payment_method(self, payment_method: Any):
        if not isinstance(payment_method, dict):
            raise OrderValidationError("paymentMethod is required")
        method_type = str(payment_method.get('type', '')).strip().lower()
        if method_type != 'crypto':
            raise OrderValidationError(f"paymentMethod type '{method_type or 'missing'}' is not supported; only crypto")
        currency = str(payment_method.get('currency') or '').strip().upper()
        network = str(payment_method.get('network') or '').strip().lower()
        if not currency or not network:
            raise OrderValidationError("paymentMethod currency and network are required")
        if not crypto_config.is_supported(currency, network):
            raise UnsupportedCurrency(f"{currency} on {network} is not supported")
        chain = crypto_config.resolve_chain(network, self.testnet)
        if '-' in network and network != chain:
            raise UnsupportedCurrency(f"{network} is not available in this environment")
        return currency, network

    async def _price_selection(self, server_id: str, selection: List[ProductSelection]):
        total = Decimal('0')
        currency: Optional[str] = None
        for item in selection:
            try:
                product = await self.catalog.get_product(server_id, item.product_id)
            except httpx.HTTPError as e:
                logger.warning(f"⚠️ Product catalog unavailable: {e}")
                raise PriceUnavailable("Product catalog is unavailable", detail=str(e)) from e
            if product is None:
                raise OrderValidationError(f"Product not found: {item.product_id}")
            if product.stock_quantity is not None and product.stock_quantity < item.quantity:
                raise OrderValidationError(f"Insufficient stock for product: {product.name or product.product_id}")
            if currency is not None and product.currency != currency:
                raise OrderValidationError("All products in one order must share a price currency")
            currency = product.currency
            total += product.unit_price * item.quantity
        if total <= 0:
            raise OrderValidationError("Order total must be positive")
        return total, currency

    async def get_order_status(self, order_id: str) -> Dict[str, Any]:
        """
        Snapshot of the order for status queries

        Raises:
            OrderNotFound: unknown order id
        """
        order = await self.order_store.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order.to_snapshot()

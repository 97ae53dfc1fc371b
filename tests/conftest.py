"""
Shared test fixtures and configuration for the payment reconciliation test suite
Provides in-memory stores, a controllable clock and a stubbed Tatum API
"""

import os
import json
import pytest
import httpx
import factory
from factory.faker import Faker
from factory.declarations import Sequence, LazyAttribute
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List
import logging

# Configure test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

# Test environment configuration
test_env_vars = {
    'TATUM_API_KEY': 'test-api-key',
    'TATUM_WEBHOOK_TOKEN': 'test-webhook-token',
    'APP_ENV': 'development',
    'PUBLIC_WEBHOOK_DOMAIN': 'pay.example.test'
}
for key, value in test_env_vars.items():
    os.environ[key] = str(value)
os.environ.pop('DATABASE_URL', None)

from order_store import InMemoryOrderStore
from payment_models import PaymentNotification, PaymentOrder, ProductSelection
from performance_cache import SimpleCache
from services.reconciliation import ReconciliationEngine
from services.tatum import TatumClient
from services.webhook_ingestor import WebhookIngestor
from subscription_store import InMemorySubscriptionStore
from webhook_log import InMemoryWebhookLog

WEBHOOK_TOKEN = 'test-webhook-token'
BASE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
TATUM_V3 = 'https://tatum.test/v3'
TATUM_V4 = 'https://tatum.test/v4'


class FixedClock:
    """Controllable clock returning timezone-aware UTC datetimes"""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class TatumStub:
    """In-process stand-in for the Tatum v3/v4 APIs, served through httpx.MockTransport"""

    def __init__(self):
        self.subscriptions: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.address_failures = 0
        self.address_failure_status = 503
        self.create_failures = 0
        self.create_failure_status = 500
        self.delete_failures = 0
        self.list_failures = 0
        self.fixed_addresses: List[str] = []
        self._next_subscription = 1

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def calls(self, method: str, path_fragment: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and path_fragment in r.url.path]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == 'GET' and '/address/' in path:
            if self.address_failures > 0:
                self.address_failures -= 1
                return httpx.Response(self.address_failure_status, json={'message': 'unavailable'})
            if self.fixed_addresses:
                return httpx.Response(200, json={'address': self.fixed_addresses.pop(0)})
            index = int(path.rsplit('/', 1)[-1])
            return httpx.Response(200, json={'address': f"0x{index:040x}"})

        if path.endswith('/subscription') and request.method == 'GET':
            if self.list_failures > 0:
                self.list_failures -= 1
                return httpx.Response(502, json={'message': 'bad gateway'})
            page = int(request.url.params.get('page', 0))
            size = int(request.url.params.get('pageSize', 50))
            return httpx.Response(200, json=self.subscriptions[page * size:(page + 1) * size])

        if path.endswith('/subscription') and request.method == 'POST':
            if self.create_failures > 0:
                self.create_failures -= 1
                return httpx.Response(self.create_failure_status, json={'message': 'failed'})
            body = json.loads(request.content)
            subscription_id = f"sub-{self._next_subscription}"
            self._next_subscription += 1
            self.subscriptions.append({'id': subscription_id, 'type': body['type'], 'attr': body['attr']})
            return httpx.Response(200, json={'id': subscription_id})

        if '/subscription/' in path and request.method == 'DELETE':
            if self.delete_failures > 0:
                self.delete_failures -= 1
                return httpx.Response(500, json={'message': 'failed'})
            subscription_id = path.rsplit('/', 1)[-1]
            before = len(self.subscriptions)
            self.subscriptions = [s for s in self.subscriptions if s['id'] != subscription_id]
            return httpx.Response(204) if len(self.subscriptions) < before else httpx.Response(404)

        return httpx.Response(404, json={'message': f'unknown route {path}'})


# Test data factories
class PaymentOrderFactory(factory.Factory):  # type: ignore[misc]
    """Factory for creating PENDING payment order fields"""
    class Meta:  # type: ignore[misc]
        model = dict

    id = Faker('uuid4')
    server_id = Faker('uuid4')
    user_id = Faker('uuid4')
    product_selection = LazyAttribute(lambda o: [ProductSelection(product_id='prod-1', quantity=1)])
    order_number = Sequence(lambda n: f"ORD-2026-{n + 1:06d}")
    payment_address = Sequence(lambda n: f"0x{n + 1:040x}")
    currency = 'ETH'
    network = 'ethereum-sepolia'
    expected_amount = Decimal('0.5')
    created_at = BASE_TIME
    expires_at = LazyAttribute(lambda o: o.created_at + timedelta(minutes=30))
    updated_at = BASE_TIME


class NotificationPayloadFactory(factory.Factory):  # type: ignore[misc]
    """Factory for creating Tatum INCOMING_NATIVE_TX webhook payloads"""
    class Meta:  # type: ignore[misc]
        model = dict

    currency = 'ETH'
    address = '0x' + '0' * 39 + '1'
    amount = '0.5'
    txId = Sequence(lambda n: f"0x{n + 1:064x}")
    chain = 'ethereum-sepolia'
    subscriptionType = 'INCOMING_NATIVE_TX'


def build_order(**overrides) -> PaymentOrder:
    fields = PaymentOrderFactory(**overrides)
    return PaymentOrder(**fields)


def notification_for(order: PaymentOrder, amount: str, tx_hash: str, **overrides) -> PaymentNotification:
    fields = {
        'currency': order.currency,
        'address': order.payment_address,
        'amount': Decimal(amount),
        'transaction_hash': tx_hash,
        'network': order.network
    }
    fields.update(overrides)
    return PaymentNotification(**fields)


def payload_for(order: PaymentOrder, amount: str = '0.5', **overrides) -> Dict[str, Any]:
    fields = {'address': order.payment_address, 'currency': order.currency,
              'chain': order.network, 'amount': amount}
    fields.update(overrides)
    return NotificationPayloadFactory(**fields)


@pytest.fixture
def clock():
    """Controllable clock starting at BASE_TIME"""
    return FixedClock()


@pytest.fixture
def order_store():
    return InMemoryOrderStore()


@pytest.fixture
def subscription_store():
    return InMemorySubscriptionStore()


@pytest.fixture
def webhook_log():
    return InMemoryWebhookLog()


@pytest.fixture
def cache():
    return SimpleCache(default_ttl=300)


@pytest.fixture
def tatum_stub():
    return TatumStub()


@pytest.fixture
def tatum_client(tatum_stub):
    return TatumClient(
        api_key='test-api-key',
        api_base=TATUM_V3,
        notification_base=TATUM_V4,
        timeout=5.0,
        transport=tatum_stub.transport()
    )


@pytest.fixture
async def pending_order(order_store):
    """A freshly persisted PENDING order expecting 0.5 ETH"""
    return await order_store.create(build_order())


@pytest.fixture
def engine(order_store, clock):
    return ReconciliationEngine(order_store, testnet=True, max_retries=5, retry_backoff=0, clock=clock)


@pytest.fixture
def ingestor(order_store, engine, webhook_log, clock):
    return WebhookIngestor(
        webhook_token=WEBHOOK_TOKEN,
        order_store=order_store,
        engine=engine,
        webhook_log=webhook_log,
        testnet=True,
        clock=clock
    )

"""
Notification subscription management
Binds an order's deposit address to the webhook callback exactly once per (address, network, callback_url)
"""

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from order_store import OrderStore, utc_now
from payment_errors import SubscriptionConflict
from payment_models import Subscription
from performance_cache import KeyValueStore
from services.tatum import SUBSCRIPTION_PAGE_SIZE, SUBSCRIPTION_TYPE, TatumApiError, TatumClient, call_with_retry
from subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

# Upper bound on subscription listing pages walked per lookup
MAX_SUBSCRIPTION_PAGES = 200


def subscription_cache_key(address: str, network: str, callback_url: str) -> str:
    # Callback URLs carry the webhook secret; only a digest goes into the key
    url_digest = hashlib.sha256(callback_url.encode('utf-8')).hexdigest()[:32]
    return f"subscription:{network}:{address}:{url_digest}"


class SubscriptionManager:
    """Ensures and tears down provider-side notification subscriptions"""

    def __init__(
        self,
        client: TatumClient,
        store: SubscriptionStore,
        cache: KeyValueStore,
        order_store: OrderStore,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        cache_ttl: int = 3600,
        retention_seconds: int = 3600,
        address_reuse_enabled: bool = False,
        clock: Callable[[], datetime] = utc_now
    ):
        self.client = client
        self.store = store
        self.cache = cache
        self.order_store = order_store
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.cache_ttl = cache_ttl
        self.retention_seconds = retention_seconds
        self.address_reuse_enabled = address_reuse_enabled
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    async def ensure_subscription(self, address: str, network: str, callback_url: str, correlation_token: str) -> str:
        """
        Return the provider subscription id for the tuple, registering it only if none exists

        Args:
            address: deposit address to watch
            network: provider chain id (e.g. 'ethereum-sepolia')
            callback_url: webhook URL including token and orderId query parameters
            correlation_token: order id the subscription reports for

        Raises:
            SubscriptionConflict: provider could not be reached or refused the registration
        """
        key = subscription_cache_key(address, network, callback_url)
        async with self._tuple_lock(key):
            cached = self.cache.get(key)
            if cached:
                logger.debug(f"💾 Subscription cache HIT for {address} on {network}")
                return cached

            record = await self.store.find(address, network, callback_url)
            if record:
                self.cache.set(key, record.provider_subscription_id, self.cache_ttl)
                return record.provider_subscription_id

            async def _find_or_create():
                existing_id = await self._find_remote(address, network, callback_url)
                if existing_id:
                    logger.info(f"♻️ Reusing existing subscription {existing_id} for {address} on {network}")
                    return existing_id
                created_id = await self.client.create_subscription(address, network, callback_url)
                logger.info(f"✅ Subscription {created_id} registered for {address} on {network}")
                return created_id

            try:
                subscription_id = await call_with_retry(
                    _find_or_create, 'subscription registration', self.max_attempts, self.backoff_base
                )
            except TatumApiError as e:
                raise SubscriptionConflict(
                    f"Could not ensure notification subscription for {address} on {network}",
                    detail=str(e)
                ) from e

            record = await self.store.save(Subscription(
                provider_subscription_id=subscription_id,
                address=address,
                network=network,
                callback_url=callback_url,
                correlation_token=correlation_token,
                created_at=self._clock()
            ))
            self.cache.set(key, record.provider_subscription_id, self.cache_ttl)
            return record.provider_subscription_id

    @asynccontextmanager
    async def _tuple_lock(self, key: str):
        """Serialize work on one subscription tuple; the lock is dropped once nobody holds or awaits it"""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[key] -= 1
            if not self._lock_holders[key]:
                del self._lock_holders[key]
                del self._locks[key]

    async def _find_remote(self, address: str, network: str, callback_url: str) -> Optional[str]:
        """Walk every page of the provider's subscriptions looking for an exact match"""
        for page in range(MAX_SUBSCRIPTION_PAGES):
            items = await self.client.list_subscriptions(page=page, page_size=SUBSCRIPTION_PAGE_SIZE)
            for item in items:
                attr = item.get('attr') or {}
                if (item.get('type') == SUBSCRIPTION_TYPE
                        and attr.get('address') == address
                        and attr.get('chain') == network
                        and attr.get('url') == callback_url):
                    return str(item.get('id'))
            if len(items) < SUBSCRIPTION_PAGE_SIZE:
                return None
        logger.warning(f"⚠️ Subscription listing exceeded {MAX_SUBSCRIPTION_PAGES} pages")
        return None

    async def teardown(self, subscription_id: str) -> bool:
        """
        Delete the provider subscription and stamp released_at

        Failures are logged and reported as False, never raised.
        """
        try:
            try:
                await self.client.delete_subscription(subscription_id)
            except TatumApiError as e:
                if e.status_code != 404:
                    raise
                logger.info(f"🔍 Subscription {subscription_id} already gone at provider")

            record = await self.store.get(subscription_id)
            released = await self.store.mark_released(subscription_id, self._clock())
            if record:
                self.cache.delete(subscription_cache_key(record.address, record.network, record.callback_url))
            if released:
                logger.info(f"🗑️ Subscription {subscription_id} released")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to tear down subscription {subscription_id}: {e}")
            return False

    async def release_terminal_subscriptions(self, now: Optional[datetime] = None) -> int:
        """
        Tear down subscriptions whose order finished more than the retention window ago

        Only runs when address reuse is disabled. Subscriptions whose order was never
        persisted are released once they are older than the retention window.

        Returns:
            int: number of subscriptions released
        """
        if self.address_reuse_enabled:
            return 0

        now = now or self._clock()
        cutoff = now - timedelta(seconds=self.retention_seconds)
        released = 0
        for subscription in await self.store.list_active():
            order = await self.order_store.get(subscription.correlation_token)
            if order is None:
                due = subscription.created_at <= cutoff
            else:
                finished = order.finalized_at()
                due = finished is not None and finished <= cutoff
            if due and await self.teardown(subscription.provider_subscription_id):
                released += 1
        if released:
            logger.info(f"🧹 Released {released} subscription(s) for finished orders")
        return released

"""
Storage for provider notification subscriptions
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from database import execute_query, execute_returning, execute_update
from payment_models import Subscription

logger = logging.getLogger(__name__)


class SubscriptionStore(ABC):
    """Records of subscriptions registered with the notification provider"""

    @abstractmethod
    async def save(self, subscription: Subscription) -> Subscription:
        """Insert, or return the existing record for the same (address, network, callback_url)"""

    @abstractmethod
    async def get(self, provider_subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def find(self, address: str, network: str, callback_url: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def list_active(self) -> List[Subscription]:
        """Subscriptions not yet released"""

    @abstractmethod
    async def mark_released(self, provider_subscription_id: str, released_at: datetime) -> bool:
        """Stamp released_at once; returns False if already released or unknown"""


class InMemorySubscriptionStore(SubscriptionStore):

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}

    async def save(self, subscription: Subscription) -> Subscription:
        existing = await self.find(subscription.address, subscription.network, subscription.callback_url)
        if existing:
            return existing
        self._subscriptions[subscription.provider_subscription_id] = replace(subscription)
        return replace(subscription)

    async def get(self, provider_subscription_id: str) -> Optional[Subscription]:
        subscription = self._subscriptions.get(provider_subscription_id)
        return replace(subscription) if subscription else None

    async def find(self, address: str, network: str, callback_url: str) -> Optional[Subscription]:
        for subscription in self._subscriptions.values():
            if subscription.key == (address, network, callback_url) and subscription.released_at is None:
                return replace(subscription)
        return None

    async def list_active(self) -> List[Subscription]:
        return [replace(s) for s in self._subscriptions.values() if s.released_at is None]

    async def mark_released(self, provider_subscription_id: str, released_at: datetime) -> bool:
        subscription = self._subscriptions.get(provider_subscription_id)
        if subscription is None or subscription.released_at is not None:
            return False
        subscription.released_at = released_at
        return True


SUBSCRIPTION_COLUMNS = """
    provider_subscription_id, address, network, callback_url,
    correlation_token, created_at, released_at
"""


def _row_to_subscription(row: Dict) -> Subscription:
    return Subscription(
        provider_subscription_id=row['provider_subscription_id'],
        address=row['address'],
        network=row['network'],
        callback_url=row['callback_url'],
        correlation_token=row['correlation_token'],
        created_at=row['created_at'],
        released_at=row.get('released_at')
    )


class PostgresSubscriptionStore(SubscriptionStore):
    """PostgreSQL-backed subscription records (payment_subscriptions table)"""

    async def save(self, subscription: Subscription) -> Subscription:
        row = await execute_returning(
            f"""
            INSERT INTO payment_subscriptions ({SUBSCRIPTION_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING {SUBSCRIPTION_COLUMNS}
            """,
            (
                subscription.provider_subscription_id, subscription.address, subscription.network,
                subscription.callback_url, subscription.correlation_token,
                subscription.created_at, subscription.released_at
            )
        )
        if row is not None:
            return _row_to_subscription(row)
        existing = await self.find(subscription.address, subscription.network, subscription.callback_url)
        return existing or await self.get(subscription.provider_subscription_id) or subscription

    async def get(self, provider_subscription_id: str) -> Optional[Subscription]:
        rows = await execute_query(
            f"SELECT {SUBSCRIPTION_COLUMNS} FROM payment_subscriptions WHERE provider_subscription_id = %s",
            (provider_subscription_id,)
        )
        return _row_to_subscription(rows[0]) if rows else None

    async def find(self, address: str, network: str, callback_url: str) -> Optional[Subscription]:
        rows = await execute_query(
            f"""
            SELECT {SUBSCRIPTION_COLUMNS} FROM payment_subscriptions
            WHERE address = %s AND network = %s AND callback_url = %s AND released_at IS NULL
            """,
            (address, network, callback_url)
        )
        return _row_to_subscription(rows[0]) if rows else None

    async def list_active(self) -> List[Subscription]:
        rows = await execute_query(
            f"SELECT {SUBSCRIPTION_COLUMNS} FROM payment_subscriptions WHERE released_at IS NULL ORDER BY created_at"
        )
        return [_row_to_subscription(row) for row in rows]

    async def mark_released(self, provider_subscription_id: str, released_at: datetime) -> bool:
        updated = await execute_update(
            """
            UPDATE payment_subscriptions SET released_at = %s
            WHERE provider_subscription_id = %s AND released_at IS NULL
            """,
            (released_at, provider_subscription_id)
        )
        return updated > 0

"""
Tatum API client for address derivation and notification subscriptions
"""

import asyncio
import logging
import httpx
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

SUBSCRIPTION_TYPE = 'INCOMING_NATIVE_TX'
SUBSCRIPTION_PAGE_SIZE = 50


class TatumApiError(Exception):
    """Non-success response (or transport failure) from the Tatum API"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        # Transport failures, throttling and server errors are worth another attempt
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    description: str,
    max_attempts: int = 3,
    backoff_base: float = 0.5
) -> T:
    """
    Run an async provider call with bounded retry and exponential backoff

    Args:
        operation: zero-argument coroutine factory
        description: operation name for log messages
        max_attempts: total attempts including the first
        backoff_base: delay before the second attempt, doubled each time

    Raises:
        TatumApiError: last error once attempts are exhausted, or immediately when not retryable
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except TatumApiError as e:
            if not e.retryable or attempt == max_attempts:
                logger.error(f"❌ Tatum {description} failed after {attempt} attempt(s): {e}")
                raise
            delay = backoff_base * (2 ** (attempt - 1))
            logger.warning(f"🔄 Tatum {description} attempt {attempt}/{max_attempts} failed: {e} - retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
    raise TatumApiError(f"{description}: no attempts made")


class TatumClient:
    """Thin async client over the Tatum v3 (wallet) and v4 (notification) APIs"""

    def __init__(
        self,
        api_key: str,
        api_base: str = 'https://api.tatum.io/v3',
        notification_base: str = 'https://api.tatum.io/v4',
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key
        self.api_base = api_base.rstrip('/')
        self.notification_base = notification_base.rstrip('/')
        self.timeout = timeout
        self._transport = transport
        logger.info("🔧 Tatum client initialized")

    async def _request(self, method: str, url: str, json_body: Optional[Dict] = None) -> Any:
        headers = {'x-api-key': self.api_key, 'Accept': 'application/json'}
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
                response = await client.request(method, url, headers=headers, json=json_body)
        except httpx.HTTPError as e:
            raise TatumApiError(f"{method} {url.split('?')[0]} transport error: {e}") from e

        if response.status_code >= 400:
            raise TatumApiError(
                f"{method} {url.split('?')[0]} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TatumApiError(f"{method} {url.split('?')[0]} returned invalid JSON", response.status_code) from e

    async def derive_address(self, endpoint: str, xpub: str, index: int) -> str:
        """
        Derive a deposit address from an extended public key

        Args:
            endpoint: chain path segment (e.g. 'ethereum')
            xpub: extended public key for the chain
            index: derivation index

        Returns:
            str: derived address
        """
        data = await self._request('GET', f"{self.api_base}/{endpoint}/address/{xpub}/{index}")
        address = (data or {}).get('address') if isinstance(data, dict) else None
        if not address:
            raise TatumApiError(f"address derivation for {endpoint} returned no address", status_code=502)
        return str(address)

    async def list_subscriptions(self, page: int = 0, page_size: int = SUBSCRIPTION_PAGE_SIZE) -> List[Dict]:
        """List one page of notification subscriptions"""
        data = await self._request('GET', f"{self.notification_base}/subscription?pageSize={page_size}&page={page}")
        if isinstance(data, dict):
            data = data.get('data', [])
        return [item for item in (data or []) if isinstance(item, dict)]

    async def create_subscription(self, address: str, chain: str, url: str) -> str:
        """Register an incoming native transfer subscription; returns the provider id"""
        payload = {
            'type': SUBSCRIPTION_TYPE,
            'attr': {'address': address, 'chain': chain, 'url': url}
        }
        data = await self._request('POST', f"{self.notification_base}/subscription", json_body=payload)
        subscription_id = (data or {}).get('id') if isinstance(data, dict) else None
        if not subscription_id:
            raise TatumApiError("subscription creation returned no id", status_code=502)
        return str(subscription_id)

    async def delete_subscription(self, subscription_id: str) -> None:
        """Cancel a notification subscription"""
        await self._request('DELETE', f"{self.notification_base}/subscription/{subscription_id}")

"""
Crypto price service
Converts fiat order totals into the payment currency using the OKX public ticker
"""

import logging
import httpx
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple

from payment_errors import PriceUnavailable
from performance_cache import KeyValueStore

logger = logging.getLogger(__name__)

CRYPTO_AMOUNT_QUANTUM = Decimal('0.00000001')

# Fiat currencies priced through the USDT quote
USD_EQUIVALENTS = {'USD', 'USDT'}


class CryptoPriceService:
    """
    Spot price lookup with short-lived caching
    Never falls back to hardcoded rates: a missing quote fails order pricing
    """

    def __init__(
        self,
        cache: KeyValueStore,
        api_base: str = 'https://www.okx.com/api/v5',
        cache_ttl: int = 60,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.cache = cache
        self.api_base = api_base.rstrip('/')
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._transport = transport
        self._api_success_count = 0
        self._api_failure_count = 0
        self._cache_hit_count = 0

    async def get_price(self, currency: str, quote: str = 'USDT') -> Decimal:
        """
        Get last traded price of currency in quote

        Args:
            currency: crypto ticker (e.g. 'ETH')
            quote: quote ticker

        Returns:
            Decimal price

        Raises:
            PriceUnavailable: ticker could not be fetched or parsed
        """
        instrument = f"{currency.upper()}-{quote.upper()}"
        cache_key = f"price:{instrument}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            self._cache_hit_count += 1
            logger.debug(f"💾 Cache HIT: {instrument} = {cached}")
            return cached

        price = await self._fetch_ticker(instrument)
        self.cache.set(cache_key, price, self.cache_ttl)
        return price

    async def _fetch_ticker(self, instrument: str) -> Decimal:
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
                response = await client.get(f"{self.api_base}/market/ticker", params={'instId': instrument})
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._api_failure_count += 1
            logger.warning(f"⚠️ Price API failed for {instrument}: {e}")
            raise PriceUnavailable(f"Price for {instrument} is unavailable", detail=str(e)) from e

        try:
            price = Decimal(str(data['data'][0]['last']))
        except (KeyError, IndexError, TypeError, InvalidOperation) as e:
            self._api_failure_count += 1
            logger.warning(f"⚠️ Unexpected price API response for {instrument}: {data}")
            raise PriceUnavailable(f"Price for {instrument} is unavailable", detail="unexpected response") from e

        if not price.is_finite() or price <= 0:
            self._api_failure_count += 1
            raise PriceUnavailable(f"Price for {instrument} is not positive", detail=str(price))

        self._api_success_count += 1
        logger.info(f"✅ Price API: {instrument} = {price}")
        return price

    async def convert_fiat(self, fiat_amount: Decimal, fiat_currency: str, currency: str) -> Tuple[Decimal, Decimal]:
        """
        Convert a fiat total to the crypto amount the customer must send

        Returns:
            (crypto amount quantized to 8 places ROUND_HALF_UP, price used)
        """
        if fiat_currency.upper() not in USD_EQUIVALENTS:
            raise PriceUnavailable(f"Cannot price {fiat_currency} totals in {currency}")
        if currency.upper() in USD_EQUIVALENTS:
            return fiat_amount.quantize(CRYPTO_AMOUNT_QUANTUM, rounding=ROUND_HALF_UP), Decimal('1')

        price = await self.get_price(currency)
        amount = (fiat_amount / price).quantize(CRYPTO_AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)
        if amount <= 0:
            raise PriceUnavailable(f"{fiat_amount} {fiat_currency} rounds to zero {currency}")
        return amount, price

    def get_stats(self) -> Dict[str, Any]:
        """Get price service statistics"""
        return {
            'api_success_count': self._api_success_count,
            'api_failure_count': self._api_failure_count,
            'cache_hit_count': self._cache_hit_count,
            'cache_ttl_seconds': self.cache_ttl
        }

"""
Deposit address allocation for payment orders
Addresses are derived from a per-network extended public key at a random index
"""

import asyncio
import logging
import secrets
from typing import Callable, Dict, Optional

from crypto_config import crypto_config
from order_store import OrderStore
from payment_errors import AllocationFailed, UnsupportedCurrency
from payment_models import AllocatedAddress
from services.tatum import TatumApiError, TatumClient

logger = logging.getLogger(__name__)

# Non-hardened BIP32 index range
MAX_DERIVATION_INDEX = 2 ** 31


def random_derivation_index() -> int:
    return secrets.randbelow(MAX_DERIVATION_INDEX)


class AddressAllocator:
    """Obtains a fresh, unassigned deposit address from the custody provider"""

    def __init__(
        self,
        client: TatumClient,
        order_store: OrderStore,
        xpubs: Dict[str, str],
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        index_source: Optional[Callable[[], int]] = None
    ):
        self.client = client
        self.order_store = order_store
        self.xpubs = {name.lower(): value for name, value in xpubs.items()}
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self._next_index = index_source or random_derivation_index

    async def allocate(self, currency: str, network: str) -> AllocatedAddress:
        """
        Allocate a deposit address for the currency on the network

        Raises:
            UnsupportedCurrency: pair not in the supported enumeration
            AllocationFailed: provider unavailable, misconfigured or out of attempts
        """
        if not crypto_config.is_supported(currency, network):
            raise UnsupportedCurrency(f"{currency} on {network} is not supported")

        entry = crypto_config.get_network(network)
        xpub = self.xpubs.get(entry['network'])
        if not xpub:
            logger.error(f"❌ No extended public key configured for {entry['network']}")
            raise AllocationFailed(f"Address derivation is not configured for {entry['network']}")

        last_error = "no attempts made"
        for attempt in range(1, self.max_attempts + 1):
            index = self._next_index()
            try:
                address = await self.client.derive_address(entry['endpoint'], xpub, index)
            except TatumApiError as e:
                last_error = str(e)
                if not e.retryable:
                    logger.error(f"❌ Address derivation rejected for {entry['network']}: {e}")
                    break
                if attempt < self.max_attempts:
                    delay = self.backoff_base * (2 ** (attempt - 1))
                    logger.warning(f"🔄 Address derivation attempt {attempt}/{self.max_attempts} failed: {e}")
                    await asyncio.sleep(delay)
                continue

            if await self.order_store.is_address_assigned(address):
                last_error = "derived address already assigned"
                logger.warning(f"⚠️ Derived {entry['network']} address already assigned, drawing another index")
                continue

            logger.info(f"✅ Allocated {currency.upper()} address on {entry['network']}: {address}")
            return AllocatedAddress(address=address, key_handle=f"{entry['network']}:{index}")

        raise AllocationFailed(f"Could not allocate a {currency.upper()} address", detail=last_error)

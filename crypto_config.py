"""
Supported cryptocurrency / network configuration for payment orders
Single source of truth for which (currency, network) pairs can receive payments
"""

import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

class CryptoConfig:
    """Supported currency and network enumeration"""

    # Native-coin networks only: subscriptions are INCOMING_NATIVE_TX
    SUPPORTED_NETWORKS: List[Dict] = [
        {
            'network': 'ethereum',
            'currency': 'ETH',
            'decimals': 18,
            'name': 'Ethereum',
            'endpoint': 'ethereum',
            'mainnet': 'ethereum-mainnet',
            'testnet': 'ethereum-sepolia',
            'confirmations': 12
        },
        {
            'network': 'bitcoin',
            'currency': 'BTC',
            'decimals': 8,
            'name': 'Bitcoin',
            'endpoint': 'bitcoin',
            'mainnet': 'bitcoin-mainnet',
            'testnet': 'bitcoin-testnet',
            'confirmations': 6
        },
        {
            'network': 'polygon',
            'currency': 'MATIC',
            'decimals': 18,
            'name': 'Polygon',
            'endpoint': 'polygon',
            'mainnet': 'polygon-mainnet',
            'testnet': 'polygon-amoy',
            'confirmations': 20
        },
        {
            'network': 'bsc',
            'currency': 'BNB',
            'decimals': 18,
            'name': 'Binance Smart Chain',
            'endpoint': 'bsc',
            'mainnet': 'bsc-mainnet',
            'testnet': 'bsc-testnet',
            'confirmations': 15
        },
        {
            'network': 'litecoin',
            'currency': 'LTC',
            'decimals': 8,
            'name': 'Litecoin',
            'endpoint': 'litecoin',
            'mainnet': 'litecoin-mainnet',
            'testnet': 'litecoin-testnet',
            'confirmations': 6
        },
        {
            'network': 'dogecoin',
            'currency': 'DOGE',
            'decimals': 8,
            'name': 'Dogecoin',
            'endpoint': 'dogecoin',
            'mainnet': 'dogecoin-mainnet',
            'testnet': 'dogecoin-testnet',
            'confirmations': 6
        },
        {
            'network': 'tron',
            'currency': 'TRX',
            'decimals': 6,
            'name': 'Tron',
            'endpoint': 'tron',
            'mainnet': 'tron-mainnet',
            'testnet': 'tron-shasta',
            'confirmations': 20
        }
    ]

    @classmethod
    def get_network(cls, network: str) -> Dict:
        """
        Get network info by short name or by full chain id

        Accepts 'ethereum' as well as 'ethereum-mainnet' / 'ethereum-sepolia'.
        Returns an empty dict for unknown networks.
        """
        key = (network or '').strip().lower()
        for entry in cls.SUPPORTED_NETWORKS:
            if key in (entry['network'], entry['mainnet'], entry['testnet']):
                return entry.copy()
        return {}

    @classmethod
    def is_supported(cls, currency: str, network: str) -> bool:
        """Check if the currency can be paid on the network"""
        entry = cls.get_network(network)
        return bool(entry) and entry['currency'] == (currency or '').strip().upper()

    @classmethod
    def get_decimals(cls, currency: str) -> Optional[int]:
        """Smallest unit of the currency as a number of decimal places, None if unknown"""
        code = (currency or '').strip().upper()
        for entry in cls.SUPPORTED_NETWORKS:
            if entry['currency'] == code:
                return entry['decimals']
        return None

    @classmethod
    def resolve_chain(cls, network: str, testnet: bool) -> Optional[str]:
        """Resolve a network name to the provider chain id for the active environment"""
        entry = cls.get_network(network)
        if not entry:
            return None
        return entry['testnet'] if testnet else entry['mainnet']

    @classmethod
    def same_chain(cls, left: str, right: str, testnet: bool) -> bool:
        """Compare two network spellings after resolving both to chain ids"""
        left_chain = cls.resolve_chain(left, testnet) if left else None
        right_chain = cls.resolve_chain(right, testnet) if right else None
        if left_chain is None or right_chain is None:
            return False
        # A payload carrying the full chain id must match exactly
        for original, resolved in ((left, left_chain), (right, right_chain)):
            if '-' in original and original.strip().lower() != resolved:
                return False
        return left_chain == right_chain

# Create global instance
crypto_config = CryptoConfig()

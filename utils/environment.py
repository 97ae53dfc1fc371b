"""Environment configuration for the payment reconciliation service"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from payment_errors import ConfigurationError

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer", detail=raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number", detail=raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class Settings:
    """Runtime settings resolved once at startup"""
    tatum_api_key: str = field(repr=False)
    webhook_token: str = field(repr=False)
    tatum_api_base: str = 'https://api.tatum.io/v3'
    tatum_notification_base: str = 'https://api.tatum.io/v4'
    xpubs: Dict[str, str] = field(default_factory=dict, repr=False)
    testnet: bool = True
    webhook_domain: str = 'localhost:5000'
    order_ttl_seconds: int = 1800
    expiry_sweep_interval: int = 60
    address_reuse_enabled: bool = False
    subscription_retention_seconds: int = 3600
    provider_timeout_seconds: float = 10.0
    provider_max_attempts: int = 3
    provider_backoff_base: float = 0.5
    cas_max_retries: int = 5
    database_url: Optional[str] = field(default=None, repr=False)
    port: int = 5000
    service_api_token: Optional[str] = field(default=None, repr=False)
    price_api_base: str = 'https://www.okx.com/api/v5'
    price_cache_ttl: int = 60
    product_catalog_url: Optional[str] = None


def is_production_environment() -> bool:
    """
    Check if we're running in production

    Returns:
        bool: True if in production, False if in development
    """
    return os.getenv('APP_ENV', 'development').strip().lower() == 'production'


def get_webhook_domain() -> str:
    """
    Get the public domain the provider should deliver webhooks to

    Returns:
        str: The domain to use for webhooks
    """
    domain = os.getenv('PUBLIC_WEBHOOK_DOMAIN')
    if not domain:
        logger.warning("⚠️ No public webhook domain configured, using localhost fallback")
        domain = 'localhost:5000'
    return domain.strip().rstrip('/')


def get_webhook_url(endpoint: str, domain: Optional[str] = None) -> str:
    """
    Get the complete webhook URL for a specific endpoint

    Args:
        endpoint: The endpoint path (e.g., 'tatum')
        domain: Public domain, read from the environment when omitted

    Returns:
        str: Complete webhook URL
    """
    domain = domain or get_webhook_domain()
    protocol = 'http' if domain.startswith('localhost') else 'https'
    return f"{protocol}://{domain}/webhook/{endpoint}"


def _load_xpubs() -> Dict[str, str]:
    prefix = 'TATUM_XPUB_'
    return {
        name[len(prefix):].lower(): value.strip()
        for name, value in os.environ.items()
        if name.startswith(prefix) and value.strip()
    }


def load_settings() -> Settings:
    """
    Read and validate settings from the environment

    Raises:
        ConfigurationError: when a required credential is missing or a value is malformed
    """
    api_key = (os.getenv('TATUM_API_KEY') or '').strip()
    if not api_key:
        raise ConfigurationError("TATUM_API_KEY is not set")

    webhook_token = (os.getenv('TATUM_WEBHOOK_TOKEN') or '').strip()
    if not webhook_token:
        raise ConfigurationError("TATUM_WEBHOOK_TOKEN is not set")

    settings = Settings(
        tatum_api_key=api_key,
        webhook_token=webhook_token,
        tatum_api_base=os.getenv('TATUM_API_BASE', 'https://api.tatum.io/v3').rstrip('/'),
        tatum_notification_base=os.getenv('TATUM_NOTIF_BASE', 'https://api.tatum.io/v4').rstrip('/'),
        xpubs=_load_xpubs(),
        testnet=not is_production_environment(),
        webhook_domain=get_webhook_domain(),
        order_ttl_seconds=_env_int('ORDER_TTL_SECONDS', 1800),
        expiry_sweep_interval=_env_int('EXPIRY_SWEEP_INTERVAL', 60),
        address_reuse_enabled=_env_bool('ADDRESS_REUSE_ENABLED', False),
        subscription_retention_seconds=_env_int('SUBSCRIPTION_RETENTION_SECONDS', 3600),
        provider_timeout_seconds=_env_float('PROVIDER_TIMEOUT_SECONDS', 10.0),
        provider_max_attempts=_env_int('PROVIDER_MAX_ATTEMPTS', 3),
        provider_backoff_base=_env_float('PROVIDER_BACKOFF_BASE', 0.5),
        cas_max_retries=_env_int('ORDER_CAS_MAX_RETRIES', 5),
        database_url=os.getenv('DATABASE_URL') or None,
        port=_env_int('PORT', 5000),
        service_api_token=os.getenv('SERVICE_API_TOKEN') or None,
        price_api_base=os.getenv('OKX_API_BASE', 'https://www.okx.com/api/v5').rstrip('/'),
        price_cache_ttl=_env_int('PRICE_CACHE_TTL', 60),
        product_catalog_url=os.getenv('PRODUCT_CATALOG_URL') or None
    )

    if settings.order_ttl_seconds <= 0:
        raise ConfigurationError("ORDER_TTL_SECONDS must be positive")
    if settings.provider_max_attempts < 1:
        raise ConfigurationError("PROVIDER_MAX_ATTEMPTS must be at least 1")
    if settings.cas_max_retries < 1:
        raise ConfigurationError("ORDER_CAS_MAX_RETRIES must be at least 1")

    mode = 'testnet' if settings.testnet else 'mainnet'
    logger.info(f"🔧 Settings loaded ({mode}, webhook domain {settings.webhook_domain})")
    if not settings.xpubs:
        logger.warning("⚠️ No TATUM_XPUB_<NETWORK> configured - address allocation will fail")
    return settings

#!/usr/bin/env python3
"""
Payment reconciliation service - single event loop entry point
Runs the aiohttp server and the expiry sweeper in one asyncio loop
"""

import asyncio
import logging
import signal
import sys

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)

# Prevent httpx from logging request URLs (webhook callbacks carry the shared secret)
logging.getLogger("httpx").setLevel(logging.WARNING)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from database import close_connection_pool, configure_database, init_database
from order_store import InMemoryOrderStore, PostgresOrderStore
from payment_errors import ConfigurationError
from performance_cache import SimpleCache
from services.address_allocator import AddressAllocator
from services.exchange_rates import CryptoPriceService
from services.expiry_sweeper import ExpirySweeper
from services.order_service import OrderService
from services.product_catalog import HttpProductCatalog, StaticProductCatalog
from services.reconciliation import ReconciliationEngine
from services.subscription_manager import SubscriptionManager
from services.tatum import TatumClient
from services.webhook_ingestor import WebhookIngestor
from subscription_store import InMemorySubscriptionStore, PostgresSubscriptionStore
from utils.environment import Settings, get_webhook_url, load_settings
from webhook_handler import ServiceContext, start_webhook_server, stop_webhook_server
from webhook_log import InMemoryWebhookLog, PostgresWebhookLog

# Global shutdown flag
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    shutdown_requested = True
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")


def build_context(settings: Settings) -> ServiceContext:
    """Wire stores, provider clients and services from settings"""
    if settings.database_url:
        order_store = PostgresOrderStore()
        subscription_store = PostgresSubscriptionStore()
        webhook_log = PostgresWebhookLog()
    else:
        logger.warning("⚠️ DATABASE_URL not set - using in-memory stores (single instance, not durable)")
        order_store = InMemoryOrderStore()
        subscription_store = InMemorySubscriptionStore()
        webhook_log = InMemoryWebhookLog()

    cache = SimpleCache(default_ttl=300)
    tatum = TatumClient(
        api_key=settings.tatum_api_key,
        api_base=settings.tatum_api_base,
        notification_base=settings.tatum_notification_base,
        timeout=settings.provider_timeout_seconds
    )
    allocator = AddressAllocator(
        client=tatum,
        order_store=order_store,
        xpubs=settings.xpubs,
        max_attempts=settings.provider_max_attempts,
        backoff_base=settings.provider_backoff_base
    )
    subscription_manager = SubscriptionManager(
        client=tatum,
        store=subscription_store,
        cache=cache,
        order_store=order_store,
        max_attempts=settings.provider_max_attempts,
        backoff_base=settings.provider_backoff_base,
        retention_seconds=settings.subscription_retention_seconds,
        address_reuse_enabled=settings.address_reuse_enabled
    )
    price_service = CryptoPriceService(
        cache=cache,
        api_base=settings.price_api_base,
        cache_ttl=settings.price_cache_ttl,
        timeout=settings.provider_timeout_seconds
    )
    if settings.product_catalog_url:
        catalog = HttpProductCatalog(settings.product_catalog_url, timeout=settings.provider_timeout_seconds)
    else:
        logger.warning("⚠️ PRODUCT_CATALOG_URL not set - catalog is empty and every order will be rejected")
        catalog = StaticProductCatalog()

    engine = ReconciliationEngine(order_store, testnet=settings.testnet, max_retries=settings.cas_max_retries)
    order_service = OrderService(
        order_store=order_store,
        catalog=catalog,
        price_service=price_service,
        allocator=allocator,
        subscription_manager=subscription_manager,
        webhook_url=get_webhook_url('tatum', settings.webhook_domain),
        webhook_token=settings.webhook_token,
        testnet=settings.testnet,
        order_ttl_seconds=settings.order_ttl_seconds
    )
    ingestor = WebhookIngestor(
        webhook_token=settings.webhook_token,
        order_store=order_store,
        engine=engine,
        webhook_log=webhook_log,
        testnet=settings.testnet
    )
    sweeper = ExpirySweeper(order_store, subscription_manager, interval_seconds=settings.expiry_sweep_interval)
    return ServiceContext(
        order_service=order_service,
        ingestor=ingestor,
        webhook_log=webhook_log,
        sweeper=sweeper,
        service_api_token=settings.service_api_token,
        database_enabled=bool(settings.database_url)
    )


async def main_loop(settings: Settings) -> bool:
    """Run until a shutdown signal arrives"""
    runner = None
    context = None
    try:
        if settings.database_url:
            logger.info("🔄 Initializing database...")
            configure_database(settings.database_url)
            await init_database()

        context = build_context(settings)
        context.sweeper.start()
        runner = await start_webhook_server(context, port=settings.port)

        logger.info("✅ Payment reconciliation service ready")
        while not shutdown_requested:
            await asyncio.sleep(1)
        return True

    except Exception as e:
        logger.error(f"💥 Service failure: {e}")
        return False

    finally:
        try:
            if context and context.sweeper:
                await context.sweeper.stop()
            await stop_webhook_server(runner)
            if settings.database_url:
                close_connection_pool()
            logger.info("✅ Cleanup completed")
        except Exception as cleanup_error:
            logger.warning(f"⚠️ Cleanup error: {cleanup_error}")


def main():
    """Main entry point"""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        settings = load_settings()
    except ConfigurationError as e:
        logger.error(f"❌ Configuration error: {e.message}")
        sys.exit(2)

    logger.info("🚀 Starting payment reconciliation service...")
    result = asyncio.run(main_loop(settings))
    logger.info("✅ Service stopped normally" if result else "⚠️ Service stopped with error")
    if not result:
        sys.exit(1)


if __name__ == '__main__':
    main()

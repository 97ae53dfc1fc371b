"""
HTTP surface for payment orders
Order creation and status API, the Tatum webhook endpoint and the webhook audit listing
"""

import hmac
import json
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional
from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from database import check_database_health
from payment_errors import (
    AllocationFailed, OrderNotFound, OrderValidationError, PaymentError,
    PriceUnavailable, SubscriptionConflict
)
from payment_models import WebhookOutcome
from services.expiry_sweeper import ExpirySweeper
from services.order_service import OrderService
from services.webhook_ingestor import WebhookIngestor
from webhook_log import DEFAULT_PAGE_SIZE, WebhookLog

logger = logging.getLogger(__name__)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


@dataclass
class ServiceContext:
    """Collaborators the HTTP handlers delegate to"""
    order_service: OrderService
    ingestor: WebhookIngestor
    webhook_log: WebhookLog
    sweeper: Optional[ExpirySweeper] = None
    service_api_token: Optional[str] = None
    database_enabled: bool = False


CONTEXT_KEY = web.AppKey('payment_context', ServiceContext)


def _error_response(message: str, status: int, code: Optional[str] = None) -> Response:
    body: Dict[str, Any] = {'error': message}
    if code:
        body['code'] = code
    return web.json_response(body, status=status)


def _service_token_valid(request: Request, expected: Optional[str]) -> bool:
    if not expected:
        return True
    provided = request.headers.get('X-Service-Token', '')
    return hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8'))


def _decimal_default(value: Any) -> str:
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def _json_dumps(data: Any) -> str:
    return json.dumps(data, default=_decimal_default)


# aiohttp handlers

async def health_handler(request: Request) -> Response:
    """Liveness check"""
    context = request.app[CONTEXT_KEY]
    checks: Dict[str, Any] = {
        'expiry_sweeper': 'running' if context.sweeper and context.sweeper.running else 'stopped'
    }
    healthy = True
    if context.database_enabled:
        database_ok = await check_database_health()
        checks['database'] = 'ok' if database_ok else 'unavailable'
        healthy = database_ok

    response_data = {
        'status': 'healthy' if healthy else 'degraded',
        'service': 'payment_reconciliation',
        'timestamp': time.time(),
        'checks': checks
    }
    return web.json_response(response_data, status=200 if healthy else 503)


async def create_order_handler(request: Request) -> Response:
    """POST /api/orders"""
    context = request.app[CONTEXT_KEY]
    if not _service_token_valid(request, context.service_api_token):
        logger.warning("🔒 Order creation rejected: invalid service token")
        return _error_response('Unauthorized', 401)

    try:
        payload = json.loads(await request.text(), parse_float=Decimal)
    except ValueError:
        return _error_response('Request body must be valid JSON', 400, OrderValidationError.code)
    if not isinstance(payload, dict):
        return _error_response('Request body must be a JSON object', 400, OrderValidationError.code)

    try:
        order = await context.order_service.create_order(
            server_id=payload.get('serverId'),
            user_id=payload.get('userId'),
            product_selection=payload.get('productSelection'),
            payment_method=payload.get('paymentMethod')
        )
    except OrderValidationError as e:
        return _error_response(e.message, 400, e.code)
    except PriceUnavailable as e:
        logger.warning(f"⚠️ Order pricing unavailable: {e.message}")
        return _error_response(e.message, 503, e.code)
    except (AllocationFailed, SubscriptionConflict) as e:
        logger.error(f"❌ Order creation failed at provider: {e.message} ({e.detail})")
        return _error_response(e.message, 502, e.code)
    except PaymentError as e:
        logger.error(f"❌ Order creation failed: {e.message}")
        return _error_response('Order could not be created', 500, e.code)
    except Exception as e:
        logger.error(f"❌ Unexpected error creating order: {e}")
        return _error_response('Internal server error', 500)

    return web.json_response({
        'orderId': order.id,
        'orderNumber': order.order_number,
        'paymentAddress': order.payment_address,
        'expectedAmount': str(order.expected_amount),
        'currency': order.currency,
        'network': order.network,
        'expiresAt': order.expires_at.isoformat()
    }, status=201)


async def order_status_handler(request: Request) -> Response:
    """GET /api/orders/{orderId}"""
    context = request.app[CONTEXT_KEY]
    if not _service_token_valid(request, context.service_api_token):
        return _error_response('Unauthorized', 401)

    order_id = request.match_info['orderId']
    try:
        snapshot = await context.order_service.get_order_status(order_id)
    except OrderNotFound as e:
        return _error_response(e.message, 404, e.code)
    except Exception as e:
        logger.error(f"❌ Error loading order {order_id}: {e}")
        return _error_response('Internal server error', 500)
    return web.json_response(snapshot, dumps=_json_dumps)


async def tatum_webhook_handler(request: Request) -> Response:
    """POST /webhook/tatum?token=...&orderId=..."""
    context = request.app[CONTEXT_KEY]
    try:
        raw_body = await request.read()
        result = await context.ingestor.ingest(
            token=request.query.get('token'),
            correlation_id=request.query.get('orderId'),
            raw_body=raw_body
        )
    except Exception as e:
        logger.error(f"❌ Error handling Tatum webhook: {e}")
        return _error_response('Internal server error', 500)
    return web.json_response(result.to_dict(), status=result.status_code)


async def webhook_logs_handler(request: Request) -> Response:
    """GET /api/webhooks/logs?orderId&outcome&limit&offset"""
    context = request.app[CONTEXT_KEY]
    if not _service_token_valid(request, context.service_api_token):
        return _error_response('Unauthorized', 401)

    outcome = None
    raw_outcome = request.query.get('outcome')
    if raw_outcome:
        try:
            outcome = WebhookOutcome(raw_outcome.strip().lower())
        except ValueError:
            return _error_response(f"Unknown outcome '{raw_outcome}'", 400)
    try:
        limit = int(request.query.get('limit', DEFAULT_PAGE_SIZE))
        offset = int(request.query.get('offset', 0))
    except ValueError:
        return _error_response('limit and offset must be integers', 400)

    entries = await context.webhook_log.list_entries(
        order_id=request.query.get('orderId') or None,
        outcome=outcome,
        limit=limit,
        offset=offset
    )
    return web.json_response({
        'entries': [entry.to_dict() for entry in entries],
        'limit': limit,
        'offset': offset
    })


def create_app(context: ServiceContext) -> web.Application:
    """Build the aiohttp application with all routes"""
    app = web.Application()
    app[CONTEXT_KEY] = context

    app.router.add_get('/health', health_handler)
    app.router.add_post('/api/orders', create_order_handler)
    app.router.add_get('/api/orders/{orderId}', order_status_handler)
    app.router.add_post('/webhook/tatum', tatum_webhook_handler)
    app.router.add_get('/api/webhooks/logs', webhook_logs_handler)
    return app


async def start_webhook_server(context: ServiceContext, port: int = 5000) -> web.AppRunner:
    """Start the aiohttp server in the running event loop"""
    try:
        runner = web.AppRunner(create_app(context))
        await runner.setup()

        site = web.TCPSite(runner, '0.0.0.0', port)
        await site.start()

        logger.info(f"✅ Webhook server started on IPv4 http://0.0.0.0:{port}")
        logger.info("🔗 Endpoints: /health, /api/orders, /webhook/tatum, /api/webhooks/logs")
        return runner

    except Exception as e:
        logger.error(f"❌ Failed to start webhook server: {e}")
        raise


async def stop_webhook_server(runner: Optional[web.AppRunner]) -> None:
    """Stop the server and cleanup"""
    if runner:
        await runner.cleanup()
    logger.info("✅ Webhook server stopped")

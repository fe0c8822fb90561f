"""
Webhook server for payment events and operator actions
aiohttp routes that feed the order fulfillment orchestrator
"""

import json
import logging
import hmac
import time
from typing import Any, Dict, Optional

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from services.order_orchestrator import OrderNotFoundError, OrderOrchestrator

logger = logging.getLogger(__name__)

ORCHESTRATOR_KEY = web.AppKey('orchestrator', OrderOrchestrator)
ADMIN_TOKEN_KEY = web.AppKey('admin_token', str)
DATABASE_KEY = web.AppKey('database', object)

PAYMENT_EVENTS = {
    'payment.succeeded': 'handle_payment_success',
    'payment.failed': 'handle_payment_failure',
    'payment.refunded': 'handle_payment_refund',
}

# Global webhook server runner
_webhook_server: Optional[web.AppRunner] = None


def _parse_order_id(raw: Any) -> Optional[int]:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def verify_admin_token(request: Request) -> bool:
    """Bearer token check for operator routes"""
    expected_token = request.app[ADMIN_TOKEN_KEY]
    if not expected_token:
        logger.error("🛡️ ADMIN AUTH FAILURE: ADMIN_API_TOKEN not configured")
        return False

    header = request.headers.get('Authorization', '')
    scheme, _, received_token = header.partition(' ')
    if scheme.lower() != 'bearer' or not received_token:
        logger.warning("🛡️ ADMIN AUTH FAILURE: Missing bearer token")
        return False

    if not hmac.compare_digest(received_token.strip(), expected_token):
        logger.warning("🛡️ ADMIN AUTH FAILURE: Token mismatch")
        return False
    return True


async def health_handler(request: Request) -> Response:
    response_data: Dict[str, Any] = {
        'status': 'healthy',
        'service': 'hostsblue_fulfillment',
        'timestamp': time.time(),
    }
    database = request.app.get(DATABASE_KEY)
    if database is not None:
        try:
            response_data['database'] = 'ok' if await database.ping() else 'degraded'
        except Exception as e:
            logger.warning(f"⚠️ Health check database ping failed: {e}")
            response_data['database'] = 'unavailable'
        if response_data['database'] != 'ok':
            response_data['status'] = 'degraded'

    status_code = 200 if response_data['status'] == 'healthy' else 503
    return web.json_response(response_data, status=status_code)


async def payment_webhook_handler(request: Request) -> Response:
    """Route a payment gateway event into the matching saga entry point"""
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("⚠️ Payment webhook with malformed JSON body")
        return web.json_response({'error': 'Invalid JSON'}, status=400)

    if not isinstance(payload, dict):
        return web.json_response({'error': 'Invalid payload'}, status=400)

    event_type = payload.get('type')
    handler_name = PAYMENT_EVENTS.get(event_type)
    if handler_name is None:
        logger.warning(f"⚠️ Unsupported payment event type: {event_type!r}")
        return web.json_response({'error': f'Unsupported event type: {event_type}'}, status=400)

    order_id = _parse_order_id(payload.get('order_id'))
    if order_id is None:
        return web.json_response({'error': 'order_id is required'}, status=400)

    data = payload.get('data') or {}
    logger.info(f"📦 Payment webhook received: {event_type} for order {order_id}")

    orchestrator = request.app[ORCHESTRATOR_KEY]
    try:
        result = await getattr(orchestrator, handler_name)(order_id, data)
    except OrderNotFoundError as e:
        logger.warning(f"⚠️ {e}")
        return web.json_response({'error': str(e)}, status=404)
    except Exception as e:
        logger.error(f"❌ Error handling {event_type} for order {order_id}: {e}")
        return web.json_response({'error': 'Internal server error'}, status=500)

    return web.json_response({'status': 'success', 'result': result})


async def retry_order_handler(request: Request) -> Response:
    if not verify_admin_token(request):
        return web.json_response({'error': 'Unauthorized'}, status=401)

    order_id = _parse_order_id(request.match_info.get('order_id'))
    if order_id is None:
        return web.json_response({'error': 'Invalid order id'}, status=400)

    logger.info(f"🔄 Operator retry requested for order {order_id}")
    try:
        result = await request.app[ORCHESTRATOR_KEY].retry_failed_items(order_id)
    except OrderNotFoundError as e:
        return web.json_response({'error': str(e)}, status=404)
    except Exception as e:
        logger.error(f"❌ Retry failed for order {order_id}: {e}")
        return web.json_response({'error': 'Internal server error'}, status=500)

    return web.json_response({'status': 'success', 'result': result})


def create_app(orchestrator: OrderOrchestrator, admin_token: str = '', database=None) -> web.Application:
    app = web.Application()
    app[ORCHESTRATOR_KEY] = orchestrator
    app[ADMIN_TOKEN_KEY] = admin_token or ''
    if database is not None:
        app[DATABASE_KEY] = database

    app.router.add_get('/health', health_handler)
    app.router.add_post('/webhook/payments', payment_webhook_handler)
    app.router.add_post('/admin/orders/{order_id}/retry', retry_order_handler)
    return app


async def start_webhook_server(app: web.Application, port: int = 8000) -> web.AppRunner:
    """Start the aiohttp webhook server in the running event loop"""
    global _webhook_server

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, '0.0.0.0', port)
    await site.start()
    _webhook_server = runner

    logger.info(f"✅ Webhook server started on http://0.0.0.0:{port}")
    logger.info("🔗 Routes: POST /webhook/payments, POST /admin/orders/{id}/retry, GET /health")
    return runner


async def stop_webhook_server():
    global _webhook_server
    if _webhook_server:
        await _webhook_server.cleanup()
        _webhook_server = None
    logger.info("✅ Webhook server stopped")

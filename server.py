#!/usr/bin/env python3
"""
Fulfillment service entry point
Wires providers, the orchestrator and the webhook server into one event loop
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

# Keep credentials in request URLs out of the logs
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from database import FulfillmentDatabase, close_connection_pool, get_connection_pool, init_database
from services.email_service import EmailService
from services.opensrs import OpenSRSService
from services.opensrs_email import OpenSRSEmailService
from services.opensrs_ssl import OpenSRSSSLService
from services.order_orchestrator import OrderOrchestrator
from services.wpmudev import WPMUDevService
from services.xcp_transport import TRUST_SERVICE_TIMEOUT_SECONDS, create_xcp_transport
from utils.credential_vault import get_credential_vault
from utils.environment import FulfillmentSettings
from webhook_handler import create_app, start_webhook_server, stop_webhook_server


def build_orchestrator(settings: FulfillmentSettings, database=None) -> OrderOrchestrator:
    """Construct every provider client from configuration"""
    vault = get_credential_vault(settings)
    registrar = OpenSRSService(create_xcp_transport(settings, label='OPENSRS'))
    ssl = OpenSRSSSLService(
        create_xcp_transport(settings, label='OPENSRS_SSL', timeout=TRUST_SERVICE_TIMEOUT_SECONDS),
        vault
    )

    return OrderOrchestrator(
        database=database or FulfillmentDatabase(settings.database_url or None),
        registrar=registrar,
        hosting=WPMUDevService.from_settings(settings, vault),
        email_hosting=OpenSRSEmailService.from_settings(settings),
        ssl=ssl,
        mailer=EmailService.from_settings(settings),
        vault=vault,
        settings=settings,
    )


async def close_providers(orchestrator: OrderOrchestrator) -> None:
    for client in (orchestrator.registrar.transport, orchestrator.ssl.transport,
                   orchestrator.hosting, orchestrator.email_hosting):
        await client.close()


async def run_service(settings: FulfillmentSettings) -> bool:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, stop_event.set)

    database = FulfillmentDatabase(settings.database_url or None)
    logger.info("🔄 Initializing database schema...")
    get_connection_pool(settings.database_url or None)
    await init_database()

    orchestrator = build_orchestrator(settings, database)
    app = create_app(orchestrator, settings.admin_api_token, database)
    await start_webhook_server(app, settings.webhook_port)

    try:
        await stop_event.wait()
        logger.info("🛑 Shutdown signal received, initiating graceful shutdown...")
    finally:
        await stop_webhook_server()
        await orchestrator.drain_notifications()
        await close_providers(orchestrator)
        close_connection_pool()
        logger.info("✅ Cleanup completed")
    return True


def main():
    logger.info("🚀 Starting HostsBlue fulfillment service...")
    settings = FulfillmentSettings.from_env()
    try:
        result = asyncio.run(run_service(settings))
        logger.info("✅ Service stopped normally" if result else "⚠️ Service stopped with error")
        return result
    except Exception as e:
        logger.error(f"💥 Critical service failure: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()

"""Environment detection and settings for the fulfillment services"""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_OPENSRS_API_URL = 'https://horizon.opensrs.net:55443'
DEFAULT_WPMUDEV_API_URL = 'https://premium.wpmudev.org/api'
DEFAULT_OPENSRS_EMAIL_API_URL = 'https://admin.a.hostedemail.com/api'

MAX_ITEM_RETRIES = 3


def is_production_environment() -> bool:
    """
    Check if we're running in production

    Returns:
        bool: True if APP_ENV is production
    """
    return os.getenv('APP_ENV', '').lower() == 'production'


def is_test_mode() -> bool:
    """TEST_MODE=1 forces every provider client into mock mode"""
    return os.getenv('TEST_MODE') == '1'


def _env_flag(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes')


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid {name} value {raw!r}, using {default}")
        return default


@dataclass
class FulfillmentSettings:
    """Process-wide settings, read once from the environment"""
    database_url: str = ''
    test_mode: bool = False
    production: bool = False

    opensrs_api_url: str = DEFAULT_OPENSRS_API_URL
    opensrs_username: str = ''
    opensrs_api_key: str = ''
    nameservers: List[str] = field(default_factory=lambda: ['ns1.hostsblue.com', 'ns2.hostsblue.com'])

    wpmudev_api_url: str = DEFAULT_WPMUDEV_API_URL
    wpmudev_api_key: str = ''

    email_api_url: str = DEFAULT_OPENSRS_EMAIL_API_URL
    email_api_user: str = ''
    email_api_password: str = ''

    credential_key: Optional[str] = None
    credential_dev_fallback: bool = False

    resend_api_key: str = ''
    resend_from_email: str = 'HostsBlue <noreply@hostsblue.com>'
    client_url: str = 'http://localhost:5173'

    payment_gateway: str = 'swipesblue'
    retry_backoff_base: float = 1.0
    max_item_retries: int = MAX_ITEM_RETRIES

    webhook_port: int = 8000
    admin_api_token: str = ''

    @classmethod
    def from_env(cls) -> 'FulfillmentSettings':
        settings = cls(
            database_url=os.getenv('DATABASE_URL', ''),
            test_mode=is_test_mode(),
            production=is_production_environment(),
            opensrs_api_url=os.getenv('OPENSRS_API_URL', DEFAULT_OPENSRS_API_URL),
            opensrs_username=os.getenv('OPENSRS_USERNAME', ''),
            opensrs_api_key=os.getenv('OPENSRS_API_KEY', ''),
            nameservers=[
                os.getenv('HOSTSBLUE_NS1', 'ns1.hostsblue.com'),
                os.getenv('HOSTSBLUE_NS2', 'ns2.hostsblue.com'),
            ],
            wpmudev_api_url=os.getenv('WPMUDEV_API_URL', DEFAULT_WPMUDEV_API_URL),
            wpmudev_api_key=os.getenv('WPMUDEV_API_KEY', ''),
            email_api_url=os.getenv('OPENSRS_EMAIL_API_URL', DEFAULT_OPENSRS_EMAIL_API_URL),
            email_api_user=os.getenv('OPENSRS_EMAIL_USER', ''),
            email_api_password=os.getenv('OPENSRS_EMAIL_PASSWORD', ''),
            credential_key=os.getenv('CREDENTIAL_ENCRYPTION_KEY') or None,
            credential_dev_fallback=_env_flag('CREDENTIAL_DEV_FALLBACK'),
            resend_api_key=os.getenv('RESEND_API_KEY', ''),
            resend_from_email=os.getenv('RESEND_FROM_EMAIL', 'HostsBlue <noreply@hostsblue.com>'),
            client_url=os.getenv('CLIENT_URL', 'http://localhost:5173'),
            payment_gateway=os.getenv('PAYMENT_GATEWAY_NAME', 'swipesblue'),
            retry_backoff_base=_env_float('RETRY_BACKOFF_BASE_SECONDS', 1.0),
            webhook_port=int(os.getenv('WEBHOOK_PORT', '8000')),
            admin_api_token=os.getenv('ADMIN_API_TOKEN', ''),
        )

        logger.info(
            f"🔧 Fulfillment settings loaded: production={settings.production}, "
            f"test_mode={settings.test_mode}, opensrs_user_set={bool(settings.opensrs_username)}, "
            f"wpmudev_key_set={bool(settings.wpmudev_api_key)}, "
            f"vault_key_set={bool(settings.credential_key)}"
        )
        return settings

"""
WPMU DEV hosting API client
Provisions managed WordPress sites; bearer-token auth, 15s timeout
"""

import logging
import random
import re
import secrets
import time
from typing import Any, Dict, List, Optional

from performance_monitor import monitor_performance
from services.rest_client import JsonApiClient

logger = logging.getLogger(__name__)

WPMUDEV_TIMEOUT_SECONDS = 15.0
PLACEHOLDER_KEYS = {'', 'test', 'your_wpmudev_api_key'}


def generate_admin_username(email: str) -> str:
    base = re.sub(r'[^a-zA-Z0-9]', '', email.split('@')[0])
    return f"{base}_{secrets.token_hex(3)}"


def generate_password() -> str:
    return secrets.token_urlsafe(24)


class WPMUDevService(JsonApiClient):
    """Hosting provisioning client"""

    def __init__(self, api_url: str, api_key: str, vault, mock: Optional[bool] = None, http_transport=None):
        if mock is None:
            mock = (api_key or '').strip() in PLACEHOLDER_KEYS
        super().__init__(
            base_url=api_url,
            label='WPMUDEV',
            timeout=WPMUDEV_TIMEOUT_SECONDS,
            headers={'Authorization': f'Bearer {api_key}'},
            mock=mock,
            http_transport=http_transport
        )
        self.vault = vault

    @classmethod
    def from_settings(cls, settings, vault) -> 'WPMUDevService':
        return cls(settings.wpmudev_api_url, settings.wpmudev_api_key, vault,
                   mock=settings.test_mode or settings.wpmudev_api_key in PLACEHOLDER_KEYS)

    async def get_plans(self) -> List[Dict[str, Any]]:
        response = await self.request('GET', '/hosting/v1/plans')
        return response.get('plans') or []

    @monitor_performance("wpmudev")
    async def provision_site(
        self,
        site_name: str,
        domain: str,
        plan_id: str,
        admin_email: str,
        admin_username: Optional[str] = None,
        admin_password: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Create a WordPress site. The admin password is generated when not
        supplied and only the vault-encrypted form is returned.
        """
        password = admin_password or generate_password()
        payload = {
            'name': site_name,
            'domain': domain,
            'plan_id': plan_id,
            'admin_email': admin_email,
            'admin_username': admin_username or generate_admin_username(admin_email),
            'admin_password': password,
            **(options or {}),
        }

        logger.info(f"🖥️ Provisioning WordPress site for {domain or site_name} on plan {plan_id}")
        response = await self.request('POST', '/hosting/v1/sites', payload)
        sftp = response.get('sftp') or {}

        return {
            'success': True,
            'site_id': response.get('id'),
            'blog_id': response.get('blog_id'),
            'hosting_id': response.get('hosting_id'),
            'domain': response.get('domain'),
            'sftp': {
                'host': sftp.get('host'),
                'username': sftp.get('username'),
                'port': sftp.get('port') or 22,
            },
            'wp_admin': {
                'url': f"https://{response.get('domain')}/wp-admin",
                'username': payload['admin_username'],
                'encrypted_password': self.vault.encrypt(password),
            },
            'temp_url': response.get('temp_url'),
        }

    async def get_site(self, site_id: str) -> Dict[str, Any]:
        response = await self.request('GET', f'/hosting/v1/sites/{site_id}')
        return {
            'id': response.get('id'),
            'blog_id': response.get('blog_id'),
            'name': response.get('name'),
            'domain': response.get('domain'),
            'status': response.get('status'),
            'plan': response.get('plan'),
            'created_at': response.get('created_at'),
            'sftp': response.get('sftp'),
        }

    async def delete_site(self, site_id: str) -> Dict[str, Any]:
        await self.request('DELETE', f'/hosting/v1/sites/{site_id}')
        return {'success': True, 'message': 'Site deleted successfully'}

    def mock_response(self, method: str, path: str, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        stamp = int(time.time() * 1000)
        site_id = f"mock-site-{stamp}"
        blog_id = random.randint(1, 999999)

        if path == '/hosting/v1/plans':
            return {'plans': [
                {'id': 'starter', 'name': 'Starter', 'price': 999, 'storage': 5, 'bandwidth': 25000},
                {'id': 'pro', 'name': 'Pro', 'price': 2499, 'storage': 20, 'bandwidth': 100000},
            ]}

        if path.endswith('/sites') and method == 'POST':
            return {
                'id': site_id,
                'blog_id': blog_id,
                'hosting_id': f"mock-hosting-{stamp}",
                'name': (body or {}).get('name'),
                'domain': (body or {}).get('domain') or f"{site_id}.temp.hostsblue.com",
                'status': 'provisioning',
                'temp_url': f"https://{site_id}.temp.hostsblue.com",
                'sftp': {'host': 'sftp.hostsblue.com', 'username': f"user_{blog_id}", 'port': 22},
            }

        if '/sites/' in path and method == 'GET':
            return {
                'id': path.rsplit('/', 1)[-1],
                'blog_id': blog_id,
                'name': 'My WordPress Site',
                'domain': 'example.com',
                'status': 'active',
                'plan': {'id': 'pro', 'name': 'Pro'},
                'sftp': {'host': 'sftp.hostsblue.com', 'username': f"user_{blog_id}", 'port': 22},
            }

        return {'success': True}

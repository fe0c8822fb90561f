"""
OpenSRS hosted email REST client
Mail domains and mailboxes; HTTP Basic auth, 10s timeout
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from performance_monitor import monitor_performance
from services.rest_client import JsonApiClient

logger = logging.getLogger(__name__)

EMAIL_TIMEOUT_SECONDS = 10.0
PLACEHOLDER_USERS = {'', 'test', 'your_email_reseller_user'}


class OpenSRSEmailService(JsonApiClient):
    """Hosted email provisioning client"""

    def __init__(self, api_url: str, username: str, password: str,
                 mock: Optional[bool] = None, http_transport=None):
        if mock is None:
            mock = (username or '').strip() in PLACEHOLDER_USERS
        super().__init__(
            base_url=api_url,
            label='OPENSRS_EMAIL',
            timeout=EMAIL_TIMEOUT_SECONDS,
            auth=httpx.BasicAuth(username, password),
            mock=mock,
            http_transport=http_transport
        )

    @classmethod
    def from_settings(cls, settings) -> 'OpenSRSEmailService':
        return cls(settings.email_api_url, settings.email_api_user, settings.email_api_password,
                   mock=settings.test_mode or settings.email_api_user in PLACEHOLDER_USERS)

    @monitor_performance("opensrs_email")
    async def create_mail_domain(self, domain: str) -> Dict[str, Any]:
        logger.info(f"📧 Creating mail domain {domain}")
        return await self.request('POST', f'/domains/{domain}', {'domain': domain})

    async def delete_mail_domain(self, domain: str) -> Dict[str, Any]:
        return await self.request('DELETE', f'/domains/{domain}')

    async def get_mail_domain(self, domain: str) -> Dict[str, Any]:
        return await self.request('GET', f'/domains/{domain}')

    @monitor_performance("opensrs_email")
    async def create_mailbox(
        self,
        domain: str,
        username: str,
        password: str,
        quota_mb: Optional[int] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        forward_to: Optional[str] = None
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'password': password}
        if quota_mb:
            payload['quota'] = quota_mb
        if first_name:
            payload['first_name'] = first_name
        if last_name:
            payload['last_name'] = last_name
        if forward_to:
            payload['forward'] = forward_to

        logger.info(f"📧 Creating mailbox {username}@{domain}")
        return await self.request('POST', f'/domains/{domain}/mailboxes/{username}', payload)

    async def delete_mailbox(self, domain: str, username: str) -> Dict[str, Any]:
        return await self.request('DELETE', f'/domains/{domain}/mailboxes/{username}')

    async def get_mailbox(self, domain: str, username: str) -> Dict[str, Any]:
        return await self.request('GET', f'/domains/{domain}/mailboxes/{username}')

    async def list_mailboxes(self, domain: str) -> List[Dict[str, Any]]:
        response = await self.request('GET', f'/domains/{domain}/mailboxes')
        return response.get('mailboxes') or response.get('users') or []

    def mock_response(self, method: str, path: str, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        parts = path.strip('/').split('/')
        now = datetime.now(timezone.utc).isoformat()

        # /domains/{domain}
        if len(parts) == 2 and parts[0] == 'domains':
            if method == 'POST':
                return {'domain': parts[1], 'status': 'active', 'created_at': now}
            if method == 'GET':
                return {'domain': parts[1], 'status': 'active', 'num_mailboxes': 0, 'created_at': now}
            return {'success': True}

        # /domains/{domain}/mailboxes/{user}
        if len(parts) == 4 and parts[2] == 'mailboxes':
            domain, username = parts[1], parts[3]
            if method in ('POST', 'GET'):
                return {
                    'email': f"{username}@{domain}",
                    'username': username,
                    'domain': domain,
                    'status': 'active',
                    'quota': (body or {}).get('quota') or 5120,
                    'created_at': now,
                }
            return {'success': True}

        if len(parts) == 3 and parts[2] == 'mailboxes' and method == 'GET':
            domain = parts[1]
            return {'mailboxes': [
                {'email': f"admin@{domain}", 'username': 'admin', 'status': 'active', 'quota': 10240},
            ]}

        return {'success': True}

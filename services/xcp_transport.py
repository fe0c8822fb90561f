"""
XCP transports for the OpenSRS reseller API

Clients (registrar, trust service) never decide whether they talk to the real
API. They receive a transport object:
- LiveXcpTransport: signs the envelope and POSTs it over HTTPS with httpx
- MockXcpTransport: deterministic in-process responses for development/tests,
  still serialized and decoded through the wire codec
"""

import asyncio
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from services.provider_errors import IntegrationError, http_status_error, transport_error
from services.xcp_codec import (
    build_request_envelope, build_response_envelope, parse_request, parse_response, sign
)

logger = logging.getLogger(__name__)

DOMAIN_TIMEOUT_SECONDS = 10.0
TRUST_SERVICE_TIMEOUT_SECONDS = 15.0

PLACEHOLDER_CREDENTIALS = {'', 'test', 'your_opensrs_api_key'}

# Second-level names that are always taken under .com in mock mode
COMMON_COM_WORDS = frozenset({
    'google', 'amazon', 'facebook', 'apple', 'microsoft', 'twitter', 'instagram',
    'youtube', 'netflix', 'linkedin', 'reddit', 'wikipedia', 'yahoo', 'ebay',
    'paypal', 'uber', 'airbnb', 'spotify', 'slack', 'zoom', 'shopify',
    'wordpress', 'github', 'stackoverflow', 'medium', 'stripe', 'twilio',
    'hotel', 'hotels', 'travel', 'flights', 'cars', 'insurance', 'bank',
    'mail', 'email', 'cloud', 'web', 'host', 'hosting', 'domain', 'domains',
    'shop', 'store', 'buy', 'sell', 'pay', 'money', 'crypto', 'bitcoin',
})

MOCK_NAMESERVERS = ['ns1.hostsblue.com', 'ns2.hostsblue.com']

MOCK_SSL_PRODUCTS = [
    {'id': 'sectigo-dv', 'name': 'Sectigo PositiveSSL', 'type': 'dv', 'provider': 'sectigo',
     'validation_level': 'dv', 'max_domains': 1, 'pricing': {'1': 4999, '2': 8999, '3': 12999}},
    {'id': 'sectigo-wildcard', 'name': 'Sectigo Wildcard SSL', 'type': 'wildcard', 'provider': 'sectigo',
     'validation_level': 'dv', 'max_domains': 1, 'pricing': {'1': 14999, '2': 27999, '3': 39999}},
    {'id': 'sectigo-ov', 'name': 'Sectigo InstantSSL', 'type': 'ov', 'provider': 'sectigo',
     'validation_level': 'ov', 'max_domains': 1, 'pricing': {'1': 9999, '2': 17999, '3': 25999}},
    {'id': 'sectigo-ev', 'name': 'Sectigo EV SSL', 'type': 'ev', 'provider': 'sectigo',
     'validation_level': 'ev', 'max_domains': 1, 'pricing': {'1': 19999, '2': 35999, '3': 49999}},
    {'id': 'sectigo-san', 'name': 'Sectigo Multi-Domain SSL', 'type': 'san', 'provider': 'sectigo',
     'validation_level': 'dv', 'max_domains': 100, 'pricing': {'1': 7999, '2': 14999, '3': 21999}},
]


def is_placeholder_credential(api_key: Optional[str]) -> bool:
    return (api_key or '').strip() in PLACEHOLDER_CREDENTIALS


class XcpTransport:
    """Strategy interface: send one XCP call, return the decoded response map"""

    async def send(self, action: str, object_name: str, attributes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LiveXcpTransport(XcpTransport):
    """Signed HTTPS transport against the real API"""

    def __init__(
        self,
        api_url: str,
        username: str,
        api_key: str,
        timeout: float = DOMAIN_TIMEOUT_SECONDS,
        label: str = 'OPENSRS',
        http_transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = api_url
        self.username = username
        self.api_key = api_key
        self.timeout = timeout
        self.label = label
        self._http_transport = http_transport
        self._client: Optional[httpx.AsyncClient] = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
                keepalive_expiry=30.0
            )
            self._client = httpx.AsyncClient(
                limits=limits,
                timeout=httpx.Timeout(self.timeout),
                transport=self._http_transport
            )
        return self._client

    async def send(self, action: str, object_name: str, attributes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = build_request_envelope(action, object_name, attributes or {})
        payload = body.encode('utf-8')
        headers = {
            'Content-Type': 'text/xml',
            'X-Username': self.username,
            'X-Signature': sign(body, self.api_key),
            'Content-Length': str(len(payload)),
        }

        client = self._ensure_client()
        try:
            response = await client.post(self.api_url, content=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"⏰ {self.label} {action} {object_name} timed out after {self.timeout}s")
            raise transport_error(
                f"{self.label} API request timed out",
                f"{self.label}_TIMEOUT",
                details={'action': action, 'object': object_name}
            ) from e
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ {self.label} {action} {object_name} network failure: {e}")
            raise transport_error(
                f"{self.label} API request failed: {e}",
                f"{self.label}_NETWORK_ERROR",
                details={'original_error': str(e)}
            ) from e

        if response.status_code >= 400:
            logger.error(f"❌ {self.label} {action} {object_name} returned HTTP {response.status_code}")
            raise http_status_error(self.label, response.status_code, response.text)

        return parse_response(response.text)

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MockXcpTransport(XcpTransport):
    """
    Deterministic stand-in for the API.

    The request is encoded exactly as the live transport would encode it and
    decoded again into `requests`. The synthetic response is serialized into
    an envelope and decoded with the same parser, so every mock call
    exercises the codec end to end.
    """

    def __init__(self, clock: Callable[[], datetime] = _utc_now,
                 nameservers: Optional[List[str]] = None):
        self.clock = clock
        self.nameservers = list(nameservers or MOCK_NAMESERVERS)
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.requests: List[Dict[str, Any]] = []
        self._sequence = 0

    def _next_id(self, prefix: str) -> str:
        self._sequence += 1
        stamp = int(self.clock().timestamp() * 1000)
        return f"{prefix}-{stamp}-{self._sequence}"

    def _years_ahead(self, years: int = 1) -> str:
        return (self.clock() + timedelta(days=365 * years)).isoformat()

    async def send(self, action: str, object_name: str, attributes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        attributes = dict(attributes or {})
        self.calls.append((action, object_name, attributes))
        # Keep what the API would have received: every scalar arrives as text
        self.requests.append(parse_request(build_request_envelope(action, object_name, attributes)))
        logger.debug(f"🧪 OpenSRS mock {action} {object_name}")

        if object_name == 'TRUST_SERVICE':
            payload = self._trust_service_response(action, attributes)
        else:
            payload = self._domain_response(action, attributes)

        # Yield like a real network call would
        await asyncio.sleep(0)
        return parse_response(build_response_envelope(payload))

    def _domain_response(self, action: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        if action == 'LOOKUP':
            domain = str(attributes.get('domain') or '')
            labels = domain.split('.')
            sld = labels[0]
            tld = '.' + ('.'.join(labels[1:]) or 'com')

            if sld.startswith('taken'):
                available = False
            elif sld.startswith('test'):
                available = True
            else:
                available = not (tld == '.com' and sld in COMMON_COM_WORDS)

            return {
                'is_success': '1',
                'response_code': '210' if available else '211',
                'response_text': 'Domain available' if available else 'Domain taken',
                'attributes': {'status': 'available' if available else 'taken'},
            }

        if action == 'SW_REGISTER':
            mock_id = self._next_id('mock')
            is_transfer = attributes.get('reg_type') == 'transfer'
            result: Dict[str, Any] = {
                'id': mock_id,
                'order_id': mock_id,
                'registration_expiration_date': self._years_ahead(1),
            }
            if is_transfer:
                result['transfer_status'] = 'pending'
            return {
                'is_success': '1',
                'response_code': '200',
                'response_text': 'Transfer initiated' if is_transfer else 'Domain registered successfully',
                'attributes': result,
            }

        if action == 'RENEW':
            mock_id = self._next_id('mock-order')
            return {
                'is_success': '1',
                'response_code': '200',
                'response_text': 'Domain renewed',
                'attributes': {
                    'id': mock_id,
                    'order_id': mock_id,
                    'registration_expiration_date': self._years_ahead(int(attributes.get('period') or 1)),
                },
            }

        if action == 'GET':
            if attributes.get('type') == 'domain_auth_info':
                return {
                    'is_success': '1',
                    'response_code': '200',
                    'attributes': {'domain_auth_info': f"MOCK-{secrets.token_hex(4).upper()}"},
                }
            expiry = self._years_ahead(1)
            return {
                'is_success': '1',
                'response_code': '200',
                'attributes': {
                    'domain': attributes.get('domain'),
                    'status': 'active',
                    'expiredate': expiry,
                    'registration_expiration_date': expiry,
                    'nameserver_list': self.nameservers,
                    'whois_privacy_state': 'disable',
                    'lock_state': '1',
                },
            }

        if action == 'ADVANCED_UPDATE_NAMESERVERS':
            return {'is_success': '1', 'response_code': '200',
                    'attributes': {'nameserver_list': attributes.get('assign_ns') or []}}

        if action == 'MODIFY':
            return {'is_success': '1', 'response_code': '200',
                    'response_text': 'Domain modified successfully', 'attributes': {}}

        if action == 'SET_DNS_ZONE':
            return {'is_success': '1', 'response_code': '200',
                    'attributes': {'records': attributes.get('records') or {}}}

        if action == 'GET_DNS_ZONE':
            return {
                'is_success': '1',
                'response_code': '200',
                'attributes': {
                    'records': {
                        'A': [
                            {'subdomain': '@', 'ip_address': '192.0.2.1', 'ttl': 3600},
                            {'subdomain': 'www', 'ip_address': '192.0.2.1', 'ttl': 3600},
                        ],
                        'MX': [
                            {'subdomain': '@', 'ip_address': 'mail.hostsblue.com', 'priority': 10, 'ttl': 3600},
                        ],
                    },
                },
            }

        return {'is_success': '1', 'response_code': '200', 'attributes': {}}

    def _trust_service_response(self, action: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        if action == 'SW_REGISTER':
            mock_id = self._next_id('mock-ssl')
            return {'is_success': '1', 'response_code': '200',
                    'attributes': {'id': mock_id, 'order_id': mock_id, 'status': 'pending_validation'}}

        if action == 'GET':
            request_type = attributes.get('type')
            if request_type == 'products':
                return {'is_success': '1', 'response_code': '200', 'attributes': {'products': MOCK_SSL_PRODUCTS}}
            if request_type == 'dcv_status':
                return {'is_success': '1', 'response_code': '200',
                        'attributes': {'dcv_method': 'email', 'dcv_status': 'pending'}}
            if request_type == 'list':
                return {'is_success': '1', 'response_code': '200', 'attributes': {'certificates': []}}
            return {
                'is_success': '1',
                'response_code': '200',
                'attributes': {
                    'status': 'issued',
                    'certificate_pem': '-----BEGIN CERTIFICATE-----\nMOCK_CERT_DATA\n-----END CERTIFICATE-----',
                    'intermediate_pem': '-----BEGIN CERTIFICATE-----\nMOCK_INTERMEDIATE\n-----END CERTIFICATE-----',
                    'expires_at': self._years_ahead(1),
                },
            }

        if action == 'CANCEL':
            return {'is_success': '1', 'response_code': '200', 'attributes': {'status': 'cancelled'}}
        if action == 'REISSUE':
            return {'is_success': '1', 'response_code': '200',
                    'attributes': {'id': attributes.get('order_id'), 'status': 'pending_validation'}}
        if action == 'REVOKE':
            return {'is_success': '1', 'response_code': '200', 'attributes': {'status': 'revoked'}}
        if action == 'RESEND_APPROVER_EMAIL':
            return {'is_success': '1', 'response_code': '200', 'response_text': 'DCV email resent'}

        return {'is_success': '1', 'response_code': '200', 'attributes': {}}


def create_xcp_transport(settings, label: str = 'OPENSRS',
                         timeout: float = DOMAIN_TIMEOUT_SECONDS) -> XcpTransport:
    """Pick the live or mock transport from configuration"""
    if settings.test_mode:
        logger.info(f"🔒 TEST_MODE active - using mock {label} transport")
        return MockXcpTransport(nameservers=settings.nameservers)

    if is_placeholder_credential(settings.opensrs_api_key):
        logger.warning(f"⚠️ {label} credentials not configured - using mock transport")
        return MockXcpTransport(nameservers=settings.nameservers)

    logger.info(f"✅ {label} live transport configured for {settings.opensrs_api_url} "
                f"(user set: {bool(settings.opensrs_username)}, timeout {timeout}s)")
    return LiveXcpTransport(
        api_url=settings.opensrs_api_url,
        username=settings.opensrs_username,
        api_key=settings.opensrs_api_key,
        timeout=timeout,
        label=label
    )

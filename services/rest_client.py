"""
JSON/HTTPS client base for the REST provisioning providers

Shares the error contract of the XCP clients:
- <LABEL>_HTTP_<status>  (retryable when status >= 500)
- <LABEL>_TIMEOUT / <LABEL>_NETWORK_ERROR  (retryable)
- <LABEL>_PARSE_ERROR  (malformed JSON, not retryable)
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import httpx

from services.provider_errors import http_status_error, parse_error, transport_error

logger = logging.getLogger(__name__)


class JsonApiClient:
    """Base for hosting / email REST clients; subclasses supply mock_response()"""

    def __init__(
        self,
        base_url: str,
        label: str,
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[httpx.Auth] = None,
        mock: bool = False,
        http_transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.label = label
        self.timeout = timeout
        self.mock = mock
        self._headers = {'Content-Type': 'application/json', 'Accept': 'application/json', **(headers or {})}
        self._auth = auth
        self._http_transport = http_transport
        self._client: Optional[httpx.AsyncClient] = None

        if mock:
            logger.warning(f"⚠️ {label} credentials not configured - using mock mode")

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                auth=self._auth,
                timeout=httpx.Timeout(self.timeout),
                transport=self._http_transport
            )
        return self._client

    def mock_response(self, method: str, path: str, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {'success': True}

    async def request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if self.mock:
            logger.debug(f"🧪 {self.label} mock {method} {path}")
            await asyncio.sleep(0)
            return self.mock_response(method, path, body)

        client = self._ensure_client()
        try:
            response = await client.request(method, path, json=body)
        except httpx.TimeoutException as e:
            logger.warning(f"⏰ {self.label} {method} {path} timed out after {self.timeout}s")
            raise transport_error(f"{self.label} API request timed out", f"{self.label}_TIMEOUT") from e
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ {self.label} {method} {path} network failure: {e}")
            raise transport_error(
                f"{self.label} API request failed: {e}",
                f"{self.label}_NETWORK_ERROR",
                details={'original_error': str(e)}
            ) from e

        if response.status_code >= 400:
            logger.error(f"❌ {self.label} {method} {path} returned HTTP {response.status_code}")
            raise http_status_error(self.label, response.status_code, response.text)

        if not response.content:
            return {}
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise parse_error(
                f"{self.label} API returned malformed JSON",
                f"{self.label}_PARSE_ERROR",
                details={'body': response.text[:500]}
            ) from e

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

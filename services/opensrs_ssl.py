"""
OpenSRS trust service (SSL certificate) client
Same XCP transport and credentials as the registrar, object TRUST_SERVICE
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from performance_monitor import monitor_performance
from services.csr_builder import generate_csr
from services.xcp_transport import XcpTransport

logger = logging.getLogger(__name__)

TRUST_OBJECT = 'TRUST_SERVICE'


@dataclass
class SSLContact:
    first_name: str
    last_name: str
    email: str
    phone: str
    organization: Optional[str] = None
    title: Optional[str] = None

    def to_xcp(self, include_org: bool = True) -> Dict[str, str]:
        contact = {
            'first_name': self.first_name,
            'last_name': self.last_name,
            'email': self.email,
            'phone': self.phone,
        }
        if include_org and self.organization:
            contact['org_name'] = self.organization
        if include_org and self.title:
            contact['title'] = self.title
        return contact


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class OpenSRSSSLService:
    """Certificate ordering and lifecycle over the XCP transport"""

    def __init__(self, transport: XcpTransport, vault):
        self.transport = transport
        self.vault = vault

    async def _request(self, action: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        return await self.transport.send(action, TRUST_OBJECT, attributes)

    @monitor_performance("opensrs_ssl")
    async def order_certificate(
        self,
        product_type: str,
        provider: str,
        domain: str,
        period: int,
        csr: str,
        approver_email: str,
        admin: SSLContact,
        tech: Optional[SSLContact] = None,
        organization: Optional[Dict[str, str]] = None
    ) -> Dict[str, str]:
        attributes: Dict[str, Any] = {
            'product_type': product_type,
            'provider': provider,
            'domain': domain,
            'period': period,
            'csr': csr,
            'approver_email': approver_email,
            'contact_set': {'admin': admin.to_xcp()},
        }
        if tech:
            attributes['contact_set']['tech'] = tech.to_xcp(include_org=False)
        if organization:
            attributes['organization'] = {
                'name': organization.get('name'),
                'address': organization.get('address'),
                'city': organization.get('city'),
                'state': organization.get('state'),
                'postal_code': organization.get('postal_code'),
                'country': organization.get('country'),
                'phone': organization.get('phone'),
            }

        logger.info(f"🔐 Ordering {product_type} certificate for {domain} ({period}y)")
        response = await self._request('SW_REGISTER', attributes)
        attrs = response.get('attributes') or {}
        return {
            'order_id': attrs.get('id') or attrs.get('order_id') or '',
            'status': attrs.get('status') or 'pending_validation',
        }

    async def get_certificate(self, order_id: str) -> Dict[str, Any]:
        response = await self._request('GET', {'order_id': order_id})
        attrs = response.get('attributes') or {}
        return {
            'status': attrs.get('status') or 'unknown',
            'certificate': attrs.get('certificate_pem') or attrs.get('cert'),
            'intermediate_ca': attrs.get('intermediate_pem') or attrs.get('ca_bundle'),
            'root_ca': attrs.get('root_pem'),
            'expires_at': attrs.get('expires_at'),
        }

    async def list_certificates(self) -> List[Any]:
        response = await self._request('GET', {'type': 'list'})
        return (response.get('attributes') or {}).get('certificates') or []

    async def cancel_certificate(self, order_id: str) -> Dict[str, Any]:
        response = await self._request('CANCEL', {'order_id': order_id})
        return {'success': True, 'status': (response.get('attributes') or {}).get('status') or 'cancelled'}

    async def reissue_certificate(self, order_id: str, csr: str) -> Dict[str, Any]:
        response = await self._request('REISSUE', {'order_id': order_id, 'csr': csr})
        attrs = response.get('attributes') or {}
        return {'order_id': attrs.get('id') or order_id, 'status': attrs.get('status') or 'pending_validation'}

    async def revoke_certificate(self, order_id: str, reason: str) -> Dict[str, Any]:
        response = await self._request('REVOKE', {'order_id': order_id, 'reason': reason})
        return {'success': True, 'status': (response.get('attributes') or {}).get('status') or 'revoked'}

    async def get_products(self) -> List[Dict[str, Any]]:
        response = await self._request('GET', {'type': 'products'})
        products = (response.get('attributes') or {}).get('products')
        if not isinstance(products, list):
            return []

        catalog = []
        for product in products:
            pricing = product.get('pricing') or {}
            catalog.append({
                'id': product.get('id') or product.get('product_id'),
                'name': product.get('name') or product.get('product_name'),
                'type': product.get('type') or product.get('product_type'),
                'provider': product.get('provider') or product.get('vendor'),
                'validation_level': product.get('validation_level') or product.get('type'),
                'max_domains': _to_int(product.get('max_domains'), 1) or 1,
                'pricing': {
                    'years1': _to_int(pricing.get('1') or product.get('price_1yr')),
                    'years2': _to_int(pricing.get('2') or product.get('price_2yr')),
                    'years3': _to_int(pricing.get('3') or product.get('price_3yr')),
                },
            })
        return catalog

    async def resend_dcv_email(self, order_id: str) -> Dict[str, Any]:
        response = await self._request('RESEND_APPROVER_EMAIL', {'order_id': order_id})
        return {'success': True, 'message': response.get('response_text') or 'DCV email resent'}

    async def get_dcv_status(self, order_id: str) -> Dict[str, str]:
        response = await self._request('GET', {'order_id': order_id, 'type': 'dcv_status'})
        attrs = response.get('attributes') or {}
        return {'method': attrs.get('dcv_method') or 'email', 'status': attrs.get('dcv_status') or 'pending'}

    def generate_csr(self, domain: str, organization: Optional[str] = None, city: Optional[str] = None,
                     state: Optional[str] = None, country: Optional[str] = 'US') -> Dict[str, str]:
        return generate_csr(domain, self.vault, organization, city, state, country)

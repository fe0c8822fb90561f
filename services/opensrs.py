"""
OpenSRS domain registrar client
Availability, registration, transfer, renewal, nameserver, lock, privacy and DNS operations

All calls go through an injected XcpTransport, so the same client serves the
live API and the deterministic mock. Errors from the codec/transport
(IntegrationError) propagate unchanged for callers to classify.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import idna

from performance_monitor import monitor_performance
from services.provider_errors import IntegrationError, validation_error
from services.xcp_transport import XcpTransport

logger = logging.getLogger(__name__)

DOMAIN_OBJECT = 'DOMAIN'
AVAILABLE_CODE = '210'
DEFAULT_DNS_TTL = 3600

_SCHEME_PREFIX = re.compile(r'^(https?://)?(www\.)?')


@dataclass
class ContactData:
    """Registrant / admin / tech / billing contact"""
    first_name: str
    last_name: str
    email: str
    phone: str
    address1: str
    city: str
    state: str
    postal_code: str
    country: str = 'US'
    organization: Optional[str] = None
    fax: Optional[str] = None
    address2: Optional[str] = None

    def to_xcp(self) -> Dict[str, str]:
        contact = {
            'first_name': self.first_name,
            'last_name': self.last_name,
            'email': self.email,
            'phone': self.phone,
            'address1': self.address1,
            'city': self.city,
            'state': self.state,
            'postal_code': self.postal_code,
            'country': self.country,
        }
        if self.organization:
            contact['org_name'] = self.organization
        if self.fax:
            contact['fax'] = self.fax
        if self.address2:
            contact['address2'] = self.address2
        return contact

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'ContactData':
        """Build from a domain_contacts / customers row"""
        return cls(
            first_name=row.get('first_name') or '',
            last_name=row.get('last_name') or '',
            email=row.get('email') or '',
            phone=row.get('phone') or '',
            address1=row.get('address1') or '',
            city=row.get('city') or '',
            state=row.get('state') or '',
            postal_code=row.get('postal_code') or '',
            country=row.get('country_code') or row.get('country') or 'US',
            organization=row.get('organization') or row.get('company_name'),
            fax=row.get('fax'),
            address2=row.get('address2'),
        )


@dataclass
class DomainContacts:
    owner: ContactData
    admin: Optional[ContactData] = None
    tech: Optional[ContactData] = None
    billing: Optional[ContactData] = None

    def to_contact_set(self) -> Dict[str, Dict[str, str]]:
        return {
            'owner': self.owner.to_xcp(),
            'admin': (self.admin or self.owner).to_xcp(),
            'tech': (self.tech or self.owner).to_xcp(),
            'billing': (self.billing or self.owner).to_xcp(),
        }


@dataclass
class DomainRegistration:
    domain: str
    period: int
    contacts: DomainContacts
    nameservers: List[str] = field(default_factory=list)
    privacy: bool = False


@dataclass
class DomainAvailability:
    domain: str
    tld: str
    available: bool
    reason: Optional[str] = None


def clean_domain_label(name: str) -> str:
    """Lowercase, drop scheme and www., keep the first label; IDN labels become punycode"""
    label = _SCHEME_PREFIX.sub('', name.strip().lower()).split('.')[0]
    if label.isascii():
        return label
    try:
        return idna.encode(label, uts46=True).decode('ascii')
    except (idna.core.IDNAError, UnicodeError) as e:
        raise validation_error(f"Invalid internationalized domain name: {name}", 'INVALID_DOMAIN') from e


def _normalize_tld(tld: str) -> str:
    tld = tld.strip().lower()
    return tld if tld.startswith('.') else f'.{tld}'


def _to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class OpenSRSService:
    """Registrar client over the XCP wire protocol"""

    def __init__(self, transport: XcpTransport):
        self.transport = transport

    async def _request(self, action: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        return await self.transport.send(action, DOMAIN_OBJECT, attributes)

    @monitor_performance("opensrs")
    async def check_availability(self, name: str, tlds: Optional[List[str]] = None) -> List[DomainAvailability]:
        """
        Look up one name across several TLDs in parallel.

        A failed lookup for one candidate is reported as unavailable with
        reason 'lookup_failed' and does not affect the other candidates.
        """
        label = clean_domain_label(name)
        candidates = [_normalize_tld(t) for t in (tlds or [])] or ['.com']

        async def lookup(tld: str) -> DomainAvailability:
            full_domain = f"{label}{tld}"
            try:
                response = await self._request('LOOKUP', {'domain': full_domain})
            except IntegrationError as e:
                logger.warning(f"⚠️ Availability lookup failed for {full_domain}: {e.code}")
                return DomainAvailability(full_domain, tld, False, reason='lookup_failed')
            return DomainAvailability(full_domain, tld, response.get('response_code') == AVAILABLE_CODE)

        return list(await asyncio.gather(*(lookup(tld) for tld in candidates)))

    @monitor_performance("opensrs")
    async def register_domain(self, registration: DomainRegistration) -> Dict[str, Any]:
        nameservers = [ns for ns in registration.nameservers if ns]
        if not nameservers:
            raise validation_error(
                f"Nameservers are required to register {registration.domain}",
                'NAMESERVERS_REQUIRED'
            )

        attributes: Dict[str, Any] = {
            'domain': registration.domain,
            'period': registration.period,
            'contact_set': registration.contacts.to_contact_set(),
            'custom_nameservers': 1,
            'nameserver_list': {
                str(i): {'name': ns, 'sortorder': i + 1} for i, ns in enumerate(nameservers)
            },
            'reg_type': 'new',
            'handle': 'process',
        }
        if registration.privacy:
            attributes['f_whois_privacy'] = 1

        logger.info(f"🌐 Registering {registration.domain} for {registration.period} year(s)")
        response = await self._request('SW_REGISTER', attributes)
        attrs = response.get('attributes') or {}

        return {
            'success': True,
            'order_id': attrs.get('id') or attrs.get('order_id'),
            'domain_id': attrs.get('id'),
            'expiry_date': attrs.get('registration_expiration_date'),
            'message': response.get('response_text') or 'Domain registered successfully',
        }

    @monitor_performance("opensrs")
    async def transfer_domain(self, domain: str, auth_code: str, contacts: DomainContacts) -> Dict[str, Any]:
        logger.info(f"🔄 Initiating transfer of {domain}")
        response = await self._request('SW_REGISTER', {
            'domain': domain,
            'auth_info': auth_code,
            'reg_type': 'transfer',
            'contact_set': contacts.to_contact_set(),
            'handle': 'process',
            'period': 1,
        })
        attrs = response.get('attributes') or {}
        return {
            'success': True,
            'transfer_id': attrs.get('id') or attrs.get('order_id'),
            'status': attrs.get('transfer_status') or 'pending',
            'message': response.get('response_text') or 'Transfer initiated',
        }

    @monitor_performance("opensrs")
    async def renew_domain(self, domain: str, years: int) -> Dict[str, Any]:
        current_year = datetime.now(timezone.utc).year
        try:
            info = await self.get_domain_info(domain)
            if info.get('expiry_date'):
                current_year = datetime.fromisoformat(str(info['expiry_date']).replace('Z', '+00:00')).year
        except (IntegrationError, ValueError) as e:
            logger.warning(f"⚠️ Could not read current expiry for {domain}, using {current_year}: {e}")

        response = await self._request('RENEW', {
            'domain': domain,
            'period': years,
            'handle': 'process',
            'currentexpirationyear': current_year,
        })
        attrs = response.get('attributes') or {}
        return {
            'success': True,
            'order_id': attrs.get('id') or attrs.get('order_id'),
            'new_expiry_date': attrs.get('registration_expiration_date'),
        }

    async def get_domain_info(self, domain: str) -> Dict[str, Any]:
        response = await self._request('GET', {'domain': domain, 'type': 'all_info'})
        attrs = response.get('attributes') or {}
        return {
            'domain': attrs.get('domain') or domain,
            'status': attrs.get('status'),
            'expiry_date': attrs.get('expiredate') or attrs.get('registration_expiration_date'),
            'nameservers': attrs.get('nameserver_list'),
            'contacts': attrs.get('contact_set'),
            'privacy': attrs.get('whois_privacy_state') == 'enable',
            'locked': attrs.get('lock_state') == '1',
        }

    async def update_nameservers(self, domain: str, nameservers: List[str]) -> Dict[str, Any]:
        await self._request('ADVANCED_UPDATE_NAMESERVERS', {
            'domain': domain,
            'op_type': 'assign',
            'assign_ns': list(nameservers),
        })
        return {'success': True, 'nameservers': list(nameservers)}

    async def get_epp_code(self, domain: str) -> str:
        response = await self._request('GET', {'domain': domain, 'type': 'domain_auth_info'})
        return (response.get('attributes') or {}).get('domain_auth_info') or ''

    async def set_transfer_lock(self, domain: str, locked: bool) -> Dict[str, Any]:
        await self._request('MODIFY', {'domain': domain, 'data': {'lock_state': 1 if locked else 0}})
        return {'success': True, 'locked': locked}

    @monitor_performance("opensrs")
    async def set_privacy(self, domain: str, enabled: bool) -> Dict[str, Any]:
        await self._request('MODIFY', {
            'domain': domain,
            'data': {'whois_privacy_state': 'enable' if enabled else 'disable'},
        })
        return {'success': True, 'privacy': enabled}

    async def update_dns_records(self, domain: str, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Replace the zone; records are grouped by upper-cased type"""
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for record in records:
            entry: Dict[str, Any] = {
                'subdomain': record.get('name'),
                'ip_address': record.get('content'),
            }
            if record.get('ttl'):
                entry['ttl'] = record['ttl']
            if record.get('priority') is not None:
                entry['priority'] = record['priority']
            grouped.setdefault(str(record['type']).upper(), []).append(entry)

        response = await self._request('SET_DNS_ZONE', {'domain': domain, 'records': grouped})
        return {'success': True, 'records': (response.get('attributes') or {}).get('records') or records}

    async def get_dns_records(self, domain: str) -> List[Dict[str, Any]]:
        response = await self._request('GET_DNS_ZONE', {'domain': domain})
        zone = (response.get('attributes') or {}).get('records') or {}

        flattened = []
        for record_type, entries in zone.items():
            if not isinstance(entries, list):
                continue
            for entry in entries:
                flattened.append({
                    'type': record_type,
                    'name': entry.get('subdomain') or entry.get('name') or '@',
                    'content': entry.get('ip_address') or entry.get('address') or entry.get('content') or '',
                    'ttl': _to_int(entry.get('ttl'), DEFAULT_DNS_TTL) or DEFAULT_DNS_TTL,
                    'priority': _to_int(entry.get('priority')),
                })
        return flattened

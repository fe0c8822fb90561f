"""
PKCS#10 certificate signing request builder

The DER structure is assembled by hand from primitive encoders; the
cryptography package is used only for RSA key generation, SubjectPublicKeyInfo
export and the raw SHA256withRSA signature.

CertificationRequest ::= SEQUENCE {
    certificationRequestInfo  SEQUENCE { version INTEGER(0), subject Name,
                                         subjectPKInfo, attributes [0] },
    signatureAlgorithm        AlgorithmIdentifier,
    signature                 BIT STRING }
"""

import base64
import logging
from typing import Dict, List, Optional, Tuple

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from services.provider_errors import validation_error

logger = logging.getLogger(__name__)

OID_COMMON_NAME = '2.5.4.3'
OID_ORGANIZATION = '2.5.4.10'
OID_LOCALITY = '2.5.4.7'
OID_STATE = '2.5.4.8'
OID_COUNTRY = '2.5.4.6'
OID_SHA256_WITH_RSA = '1.2.840.113549.1.1.11'

TAG_INTEGER = 0x02
TAG_BIT_STRING = 0x03
TAG_NULL = 0x05
TAG_OID = 0x06
TAG_UTF8_STRING = 0x0C
TAG_PRINTABLE_STRING = 0x13
TAG_SEQUENCE = 0x30
TAG_SET = 0x31


def der_length(length: int) -> bytes:
    """Short form below 128, long form (0x80 | byte count, big-endian) otherwise"""
    if length < 0:
        raise ValueError('DER length cannot be negative')
    if length < 0x80:
        return bytes([length])
    body = length.to_bytes((length.bit_length() + 7) // 8, 'big')
    return bytes([0x80 | len(body)]) + body


def der_tag(tag: int, content: bytes) -> bytes:
    return bytes([tag]) + der_length(len(content)) + content


def der_sequence(*parts: bytes) -> bytes:
    return der_tag(TAG_SEQUENCE, b''.join(parts))


def der_set(*parts: bytes) -> bytes:
    return der_tag(TAG_SET, b''.join(parts))


def der_integer(value: int) -> bytes:
    if value < 0:
        raise ValueError('Only non-negative integers are supported')
    body = value.to_bytes(max(1, (value.bit_length() + 7) // 8), 'big')
    # Leading zero keeps the value positive when the high bit is set
    if body[0] & 0x80:
        body = b'\x00' + body
    return der_tag(TAG_INTEGER, body)


def _base128(value: int) -> bytes:
    chunks = [value & 0x7F]
    value >>= 7
    while value:
        chunks.append(0x80 | (value & 0x7F))
        value >>= 7
    return bytes(reversed(chunks))


def der_oid(dotted: str) -> bytes:
    arcs = [int(a) for a in dotted.split('.')]
    if len(arcs) < 2:
        raise ValueError(f'Invalid OID: {dotted}')
    body = bytes([40 * arcs[0] + arcs[1]]) + b''.join(_base128(arc) for arc in arcs[2:])
    return der_tag(TAG_OID, body)


def der_utf8_string(text: str) -> bytes:
    return der_tag(TAG_UTF8_STRING, text.encode('utf-8'))


def der_printable_string(text: str) -> bytes:
    return der_tag(TAG_PRINTABLE_STRING, text.encode('ascii'))


def der_bit_string(data: bytes) -> bytes:
    return der_tag(TAG_BIT_STRING, b'\x00' + data)


def der_null() -> bytes:
    return bytes([TAG_NULL, 0x00])


def der_context(number: int, content: bytes = b'') -> bytes:
    """Constructed context-specific tag ([0] for CSR attributes)"""
    return der_tag(0xA0 | number, content)


def build_subject(domain: str, organization: Optional[str] = None, city: Optional[str] = None,
                  state: Optional[str] = None, country: Optional[str] = None) -> bytes:
    """X.501 Name: one single-attribute RDN per present field"""
    attributes: List[Tuple[str, bytes]] = [(OID_COMMON_NAME, der_utf8_string(domain))]
    if organization:
        attributes.append((OID_ORGANIZATION, der_utf8_string(organization)))
    if city:
        attributes.append((OID_LOCALITY, der_utf8_string(city)))
    if state:
        attributes.append((OID_STATE, der_utf8_string(state)))
    if country:
        if len(country) != 2:
            raise validation_error(f"Country must be a 2-letter code, got {country!r}", 'INVALID_CSR_SUBJECT')
        attributes.append((OID_COUNTRY, der_printable_string(country.upper())))

    rdns = [der_set(der_sequence(der_oid(oid), value)) for oid, value in attributes]
    return der_sequence(*rdns)


def build_csr_der(private_key: rsa.RSAPrivateKey, subject_der: bytes) -> bytes:
    spki = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    request_info = der_sequence(der_integer(0), subject_der, spki, der_context(0))
    signature = private_key.sign(request_info, padding.PKCS1v15(), hashes.SHA256())
    algorithm = der_sequence(der_oid(OID_SHA256_WITH_RSA), der_null())
    return der_sequence(request_info, algorithm, der_bit_string(signature))


def to_pem(der: bytes, label: str = 'CERTIFICATE REQUEST') -> str:
    encoded = base64.b64encode(der).decode('ascii')
    lines = [encoded[i:i + 64] for i in range(0, len(encoded), 64)]
    return '\n'.join([f'-----BEGIN {label}-----', *lines, f'-----END {label}-----'])


def generate_csr(domain: str, vault, organization: Optional[str] = None, city: Optional[str] = None,
                 state: Optional[str] = None, country: Optional[str] = 'US',
                 key_size: int = 2048) -> Dict[str, str]:
    """
    Generate an RSA key pair and a CSR for ``domain``.

    Returns {'csr': PEM, 'private_key': vault ciphertext}. The PKCS#8 PEM
    private key is encrypted before it leaves this function.
    """
    if not domain:
        raise validation_error('Domain is required to generate a CSR', 'INVALID_CSR_SUBJECT')

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    subject = build_subject(domain, organization, city, state, country)
    csr_pem = to_pem(build_csr_der(private_key, subject))

    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode('ascii')

    logger.info(f"🔐 Generated {key_size}-bit CSR for {domain}")
    return {'csr': csr_pem, 'private_key': vault.encrypt(key_pem)}

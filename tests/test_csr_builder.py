"""
CSR builder tests
DER primitives and full PKCS#10 requests verified with the cryptography parser
"""

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from services.csr_builder import (
    build_subject, der_integer, der_length, der_null, der_oid, der_printable_string,
    der_sequence, der_utf8_string, generate_csr, to_pem
)
from services.opensrs_ssl import OpenSRSSSLService
from services.provider_errors import ErrorKind, IntegrationError
from services.xcp_transport import MockXcpTransport


class TestDerPrimitives:
    """Tag/length encoders"""

    @pytest.mark.parametrize('length,expected', [
        (0, b'\x00'),
        (127, b'\x7f'),
        (128, b'\x81\x80'),
        (255, b'\x81\xff'),
        (256, b'\x82\x01\x00'),
        (65536, b'\x83\x01\x00\x00'),
    ])
    def test_length_short_and_long_form(self, length, expected):
        assert der_length(length) == expected

    def test_integer_keeps_positive_sign(self):
        assert der_integer(0) == b'\x02\x01\x00'
        assert der_integer(127) == b'\x02\x01\x7f'
        assert der_integer(128) == b'\x02\x02\x00\x80'

    def test_oid_encoding(self):
        assert der_oid('2.5.4.3') == b'\x06\x03\x55\x04\x03'
        assert der_oid('1.2.840.113549.1.1.11') == bytes.fromhex('06092a864886f70d01010b')

    def test_strings_null_and_sequence(self):
        assert der_utf8_string('é') == b'\x0c\x02\xc3\xa9'
        assert der_printable_string('US') == b'\x13\x02US'
        assert der_null() == b'\x05\x00'
        assert der_sequence(der_null(), der_null()) == b'\x30\x04\x05\x00\x05\x00'

    def test_long_content_uses_long_form_length(self):
        encoded = der_utf8_string('a' * 200)
        assert encoded[:3] == b'\x0c\x81\xc8'
        assert len(encoded) == 203

    def test_pem_wraps_at_64_characters(self):
        pem = to_pem(b'\x00' * 100)
        lines = pem.split('\n')
        assert lines[0] == '-----BEGIN CERTIFICATE REQUEST-----'
        assert lines[-1] == '-----END CERTIFICATE REQUEST-----'
        assert all(len(line) <= 64 for line in lines[1:-1])
        assert len(lines[1]) == 64

    def test_subject_rejects_bad_country(self):
        with pytest.raises(IntegrationError) as exc_info:
            build_subject('example.com', country='USA')
        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert exc_info.value.code == 'INVALID_CSR_SUBJECT'


class TestGenerateCsr:
    """Full CSR generation"""

    def test_csr_parses_and_signature_verifies(self, vault):
        result = generate_csr('shop.example.com', vault, organization='Example & Co',
                              city='Austin', state='TX', country='us', key_size=2048)

        csr = x509.load_pem_x509_csr(result['csr'].encode('ascii'))
        assert csr.is_signature_valid
        subject = csr.subject
        assert subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == 'shop.example.com'
        assert subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value == 'Example & Co'
        assert subject.get_attributes_for_oid(NameOID.LOCALITY_NAME)[0].value == 'Austin'
        assert subject.get_attributes_for_oid(NameOID.STATE_OR_PROVINCE_NAME)[0].value == 'TX'
        assert subject.get_attributes_for_oid(NameOID.COUNTRY_NAME)[0].value == 'US'
        assert csr.public_key().key_size == 2048

    def test_private_key_is_only_returned_encrypted(self, vault):
        result = generate_csr('example.com', vault)

        assert 'PRIVATE KEY' not in result['private_key']
        assert result['private_key'].count(':') == 2

        key_pem = vault.decrypt(result['private_key'])
        private_key = serialization.load_pem_private_key(key_pem.encode('ascii'), password=None)
        csr = x509.load_pem_x509_csr(result['csr'].encode('ascii'))
        assert private_key.public_key().public_numbers() == csr.public_key().public_numbers()

    def test_optional_subject_fields_are_omitted(self, vault):
        result = generate_csr('bare.example', vault, country=None)
        csr = x509.load_pem_x509_csr(result['csr'].encode('ascii'))
        assert len(list(csr.subject)) == 1

    def test_domain_is_required(self, vault):
        with pytest.raises(IntegrationError):
            generate_csr('', vault)


@pytest.mark.asyncio
class TestCertificateClient:
    """Trust-service operations over the mock transport"""

    async def test_order_certificate(self, vault):
        from services.opensrs_ssl import SSLContact

        transport = MockXcpTransport()
        service = OpenSRSSSLService(transport, vault)
        order = await service.order_certificate(
            product_type='dv', provider='sectigo', domain='example.com', period=1,
            csr='-----BEGIN CERTIFICATE REQUEST-----', approver_email='admin@example.com',
            admin=SSLContact('Ada', 'Lovelace', 'ada@example.com', '+1.555', organization='Engines'),
            tech=SSLContact('Grace', 'Hopper', 'grace@example.com', '+1.556', organization='Navy'),
        )

        assert order['order_id'].startswith('mock-ssl-')
        assert order['status'] == 'pending_validation'
        action, object_name, attributes = transport.calls[-1]
        assert (action, object_name) == ('SW_REGISTER', 'TRUST_SERVICE')
        assert attributes['contact_set']['admin']['org_name'] == 'Engines'
        assert 'org_name' not in attributes['contact_set']['tech']

    async def test_products_are_typed(self, vault):
        products = await OpenSRSSSLService(MockXcpTransport(), vault).get_products()

        assert len(products) == 5
        san = [p for p in products if p['type'] == 'san'][0]
        assert san['max_domains'] == 100
        assert san['pricing'] == {'years1': 7999, 'years2': 14999, 'years3': 21999}

    async def test_lifecycle_operations(self, vault):
        service = OpenSRSSSLService(MockXcpTransport(), vault)

        certificate = await service.get_certificate('mock-ssl-1')
        assert certificate['status'] == 'issued'
        assert certificate['certificate'].startswith('-----BEGIN CERTIFICATE-----')
        assert await service.get_dcv_status('mock-ssl-1') == {'method': 'email', 'status': 'pending'}
        assert (await service.cancel_certificate('mock-ssl-1'))['status'] == 'cancelled'
        assert (await service.revoke_certificate('mock-ssl-1', 'keyCompromise'))['status'] == 'revoked'
        assert (await service.reissue_certificate('mock-ssl-1', 'csr'))['order_id'] == 'mock-ssl-1'
        assert (await service.resend_dcv_email('mock-ssl-1'))['success'] is True
        assert await service.list_certificates() == []

"""
Credential vault: AES-256-GCM encryption of generated secrets before persistence

Stored format: iv_hex:tag_hex:ciphertext_hex (12-byte IV, 16-byte tag).
Key: CREDENTIAL_ENCRYPTION_KEY, 64 hex characters.
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from services.provider_errors import configuration_error, validation_error
from utils.environment import FulfillmentSettings

logger = logging.getLogger(__name__)

IV_BYTES = 12
TAG_BYTES = 16


class CredentialVault:
    """Encrypts passwords and private keys; plaintext never reaches the database"""

    def __init__(self, key_hex: Optional[str] = None, dev_fallback: bool = False, production: bool = False):
        self._aesgcm: Optional[AESGCM] = None
        self.dev_fallback = False

        if key_hex:
            try:
                key = bytes.fromhex(key_hex.strip())
            except ValueError:
                key = b''
            if len(key) != 32:
                raise configuration_error(
                    'CREDENTIAL_ENCRYPTION_KEY must be 32 bytes (64 hex characters)',
                    'ENCRYPTION_CONFIG_ERROR'
                )
            self._aesgcm = AESGCM(key)
        elif dev_fallback:
            if production:
                raise configuration_error(
                    'CREDENTIAL_DEV_FALLBACK is not allowed in production',
                    'ENCRYPTION_CONFIG_ERROR'
                )
            self.dev_fallback = True
            logger.warning("⚠️ Credential vault running in development fallback mode (base64, NOT encrypted)")
        else:
            raise configuration_error(
                'CREDENTIAL_ENCRYPTION_KEY is not set',
                'ENCRYPTION_CONFIG_ERROR'
            )

    @classmethod
    def from_settings(cls, settings: FulfillmentSettings) -> 'CredentialVault':
        return cls(settings.credential_key, settings.credential_dev_fallback, settings.production)

    def encrypt(self, plaintext: str) -> str:
        if self._aesgcm is None:
            logger.warning("⚠️ Storing credential without encryption (development fallback)")
            return base64.b64encode(plaintext.encode('utf-8')).decode('ascii')

        iv = os.urandom(IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode('utf-8'), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, stored: str) -> str:
        if self._aesgcm is None:
            logger.warning("⚠️ Reading credential without encryption (development fallback)")
            try:
                return base64.b64decode(stored.encode('ascii'), validate=True).decode('utf-8')
            except (binascii.Error, UnicodeError) as e:
                raise validation_error('Invalid encoded credential', 'DECRYPTION_ERROR') from e

        parts = stored.split(':')
        if len(parts) != 3:
            raise validation_error('Invalid encrypted credential format', 'DECRYPTION_ERROR')

        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise validation_error('Invalid encrypted credential format', 'DECRYPTION_ERROR') from e
        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise validation_error('Invalid encrypted credential format', 'DECRYPTION_ERROR')

        try:
            return self._aesgcm.decrypt(iv, ciphertext + tag, None).decode('utf-8')
        except InvalidTag as e:
            raise validation_error('Credential failed authentication', 'DECRYPTION_ERROR') from e


_vault: Optional[CredentialVault] = None


def get_credential_vault(settings: Optional[FulfillmentSettings] = None) -> CredentialVault:
    """Get or create the process-wide vault"""
    global _vault
    if _vault is None:
        _vault = CredentialVault.from_settings(settings or FulfillmentSettings.from_env())
        logger.info("✅ Credential vault initialized")
    return _vault

"""
Shared error contract for every third-party integration

All provider clients (registrar, certificates, hosting, email hosting) raise
IntegrationError. Callers branch on ``kind`` and ``retryable`` rather than on
exception subclasses, so a saga step can decide whether a failure is worth
another attempt without knowing which provider produced it.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Failure taxonomy shared by all provider clients"""
    TRANSPORT = "transport"
    APPLICATION = "application"
    PARSE = "parse"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"


class IntegrationError(Exception):
    """Failure raised by a provider client or by pre-flight validation"""

    def __init__(
        self,
        message: str,
        code: str,
        kind: ErrorKind,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.kind = kind
        self.retryable = retryable
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'code': self.code,
            'kind': self.kind.value,
            'retryable': self.retryable,
            'details': self.details,
        }

    def __repr__(self) -> str:
        return f"IntegrationError(code={self.code!r}, kind={self.kind.value}, retryable={self.retryable})"


def transport_error(message: str, code: str, retryable: bool = True,
                    details: Optional[Dict[str, Any]] = None) -> IntegrationError:
    return IntegrationError(message, code, ErrorKind.TRANSPORT, retryable, details)


def application_error(message: str, code: str, retryable: bool = False,
                      details: Optional[Dict[str, Any]] = None) -> IntegrationError:
    return IntegrationError(message, code, ErrorKind.APPLICATION, retryable, details)


def parse_error(message: str, code: str, details: Optional[Dict[str, Any]] = None) -> IntegrationError:
    return IntegrationError(message, code, ErrorKind.PARSE, False, details)


def validation_error(message: str, code: str = 'VALIDATION_ERROR',
                     details: Optional[Dict[str, Any]] = None) -> IntegrationError:
    return IntegrationError(message, code, ErrorKind.VALIDATION, False, details)


def configuration_error(message: str, code: str = 'CONFIGURATION_ERROR',
                        details: Optional[Dict[str, Any]] = None) -> IntegrationError:
    return IntegrationError(message, code, ErrorKind.CONFIGURATION, False, details)


def http_status_error(label: str, status: int, body: str = '') -> IntegrationError:
    """Map an HTTP status from a provider to the shared error contract"""
    return transport_error(
        f"{label} HTTP error: {status}",
        f"{label.upper()}_HTTP_{status}",
        retryable=status >= 500,
        details={'status': status, 'body': body[:500]}
    )


def describe_failure(error: BaseException) -> Dict[str, Any]:
    """Audit-friendly summary of any exception raised by a saga step"""
    if isinstance(error, IntegrationError):
        return {'error': error.message, 'code': error.code, 'retryable': error.retryable}
    return {'error': str(error) or error.__class__.__name__, 'code': 'UNEXPECTED_ERROR', 'retryable': False}

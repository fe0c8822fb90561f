"""
XCP wire codec for the OpenSRS reseller API

Pure encode / sign / decode helpers. No I/O happens here: the transports in
services/xcp_transport.py own the network, this module owns the bytes.

Envelope grammar:
- OPS_envelope -> header(version 0.9) -> body -> data_block -> value
- value is one of: dt_assoc (ordered keyed map), dt_array (indexed list), text
- every nested value lives inside <item key="...">...</item>
"""

import hashlib
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from services.provider_errors import application_error, parse_error

logger = logging.getLogger(__name__)

XcpValue = Union[str, Dict[str, Any], List[Any]]

ENVELOPE_VERSION = '0.9'
PARSE_ERROR_CODE = 'OPENSRS_PARSE_ERROR'

_ESCAPES = (
    ('&', '&amp;'),
    ('<', '&lt;'),
    ('>', '&gt;'),
    ('"', '&quot;'),
    ("'", '&apos;'),
)

_ITEM_OPEN = re.compile(r'<item\s+key=(["\'])(.*?)\1\s*>')


def escape_xml(text: str) -> str:
    for raw, entity in _ESCAPES:
        text = text.replace(raw, entity)
    return text


def unescape_xml(text: str) -> str:
    # &amp; last so "&amp;lt;" decodes to "&lt;" and not "<"
    for raw, entity in reversed(_ESCAPES):
        text = text.replace(entity, raw)
    return text


def encode_value(value: Any) -> str:
    """Encode a Python value as XCP markup (dicts, lists and scalars)"""
    if value is None:
        return ''
    # bool is an int subclass, so it must be checked first
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return escape_xml(value)
    if isinstance(value, (list, tuple)):
        items = ''.join(f'<item key="{i}">{encode_value(v)}</item>' for i, v in enumerate(value))
        return f'<dt_array>{items}</dt_array>'
    if isinstance(value, Mapping):
        items = ''.join(
            f'<item key="{escape_xml(str(k))}">{encode_value(v)}</item>' for k, v in value.items()
        )
        return f'<dt_assoc>{items}</dt_assoc>'
    return escape_xml(str(value))


def _wrap_envelope(block: str) -> str:
    return '\n'.join([
        "<?xml version='1.0' encoding='UTF-8' standalone='no'?>",
        "<!DOCTYPE OPS_envelope SYSTEM 'ops.dtd'>",
        '<OPS_envelope>',
        f'<header><version>{ENVELOPE_VERSION}</version></header>',
        '<body>',
        '<data_block>',
        block,
        '</data_block>',
        '</body>',
        '</OPS_envelope>',
    ])


def build_request_envelope(action: str, object_name: str, attributes: Optional[Mapping[str, Any]] = None) -> str:
    """Build the signed-request body for one XCP call"""
    block = '\n'.join([
        '<dt_assoc>',
        '<item key="protocol">XCP</item>',
        f'<item key="action">{escape_xml(action)}</item>',
        f'<item key="object">{escape_xml(object_name)}</item>',
        f'<item key="attributes">{encode_value(dict(attributes or {}))}</item>',
        '</dt_assoc>',
    ])
    return _wrap_envelope(block)


def build_response_envelope(payload: Mapping[str, Any]) -> str:
    """Wrap a response map in the same envelope the API replies with"""
    return _wrap_envelope(encode_value(dict(payload)))


def sign(body: str, secret: str) -> str:
    """md5(md5(body + secret) + secret), hex encoded, as the API requires"""
    first_pass = hashlib.md5((body + secret).encode('utf-8')).hexdigest()
    return hashlib.md5((first_pass + secret).encode('utf-8')).hexdigest()


class XcpParser:
    """
    Cursor-based recursive descent parser for XCP values.

    The cursor is an explicit offset into the source text. Whitespace between
    tags is skipped; scalar text is unescaped and stripped.
    """

    def __init__(self, text: str, pos: int = 0):
        self.text = text
        self.pos = pos

    def _fail(self, reason: str):
        raise parse_error(
            f"Invalid XCP response: {reason}",
            PARSE_ERROR_CODE,
            details={'position': self.pos}
        )

    def _skip_ws(self) -> None:
        text = self.text
        while self.pos < len(text) and text[self.pos].isspace():
            self.pos += 1

    def _consume(self, token: str) -> bool:
        if self.text.startswith(token, self.pos):
            self.pos += len(token)
            return True
        return False

    def at_container(self) -> bool:
        self._skip_ws()
        return self.text.startswith('<dt_assoc>', self.pos) or self.text.startswith('<dt_array>', self.pos)

    def parse_value(self) -> XcpValue:
        self._skip_ws()
        if self._consume('<dt_assoc>'):
            return dict(self._parse_items('</dt_assoc>'))
        if self._consume('<dt_array>'):
            return [value for _, value in self._parse_items('</dt_array>')]
        self._fail('expected dt_assoc or dt_array')

    def _parse_items(self, closing: str) -> List[Tuple[str, XcpValue]]:
        items: List[Tuple[str, XcpValue]] = []
        while True:
            self._skip_ws()
            if self.pos >= len(self.text):
                self._fail(f'missing {closing}')
            if self._consume(closing):
                return items

            match = _ITEM_OPEN.match(self.text, self.pos)
            if not match:
                self._fail(f'expected <item> or {closing}')
            key = unescape_xml(match.group(2))
            self.pos = match.end()

            if self.at_container():
                value = self.parse_value()
                self._skip_ws()
                if not self._consume('</item>'):
                    self._fail(f'missing </item> for key {key!r}')
            else:
                end = self.text.find('</item>', self.pos)
                if end == -1:
                    self._fail(f'missing </item> for key {key!r}')
                value = unescape_xml(self.text[self.pos:end].strip())
                self.pos = end + len('</item>')

            items.append((key, value))


def decode_value(fragment: str) -> XcpValue:
    """Decode a standalone dt_assoc / dt_array fragment"""
    parser = XcpParser(fragment)
    value = parser.parse_value()
    return value


def _decode_data_block(text: str, kind: str) -> Dict[str, Any]:
    start = text.find('<data_block>')
    if start == -1:
        raise parse_error(f'Invalid XCP {kind}: no data_block found', PARSE_ERROR_CODE)

    parser = XcpParser(text, start + len('<data_block>'))
    parsed = parser.parse_value()
    if not isinstance(parsed, dict):
        raise parse_error(f'Invalid XCP {kind}: could not parse data', PARSE_ERROR_CODE)
    return parsed


def parse_request(text: str) -> Dict[str, Any]:
    """Decode a request envelope back into its protocol/action/object/attributes map"""
    return _decode_data_block(text, 'request')


def parse_response(text: str) -> Dict[str, Any]:
    """
    Decode a response envelope into a dict.

    Raises a parse error for malformed envelopes and an application error when
    the API reports is_success=0.
    """
    parsed = _decode_data_block(text, 'response')

    if parsed.get('is_success') == '0':
        code = parsed.get('response_code') or 'UNKNOWN'
        response_text = parsed.get('response_text') or 'Unknown error'
        try:
            retryable = int(code) >= 500
        except ValueError:
            retryable = False
        raise application_error(
            f"OpenSRS API error ({code}): {response_text}",
            f"OPENSRS_API_{code}",
            retryable=retryable,
            details={'response_code': code, 'response_text': response_text}
        )

    return parsed

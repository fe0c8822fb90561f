"""
Transactional email via the Resend HTTP API
Sending is best-effort: failures are logged and never raised to the caller
"""

import html
import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = 'https://api.resend.com/emails'
RESEND_TIMEOUT_SECONDS = 10.0


def _money(cents: int) -> str:
    return f"${(cents or 0) / 100:.2f}"


def _layout(heading: str, body: str) -> str:
    return (
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;">'
        f'<h2 style="margin:0 0 16px;">{html.escape(heading)}</h2>{body}'
        '<p style="margin-top:24px;color:#6b7280;font-size:12px;">HostsBlue</p></div>'
    )


class EmailService:
    """Customer notifications for order outcomes"""

    def __init__(self, api_key: str = '', from_email: str = 'HostsBlue <noreply@hostsblue.com>',
                 client_url: str = 'http://localhost:5173',
                 http_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.from_email = from_email
        self.client_url = client_url.rstrip('/')
        self._http_transport = http_transport
        if not api_key:
            logger.warning("⚠️ RESEND_API_KEY not set - customer emails will be skipped")

    @classmethod
    def from_settings(cls, settings) -> 'EmailService':
        return cls(settings.resend_api_key, settings.resend_from_email, settings.client_url)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, subject: str, body_html: str) -> bool:
        if not self.configured:
            logger.info(f"📭 Email not configured - skipping '{subject}' to {to}")
            return False

        try:
            async with httpx.AsyncClient(timeout=RESEND_TIMEOUT_SECONDS, transport=self._http_transport) as client:
                response = await client.post(
                    RESEND_API_URL,
                    headers={'Authorization': f'Bearer {self.api_key}'},
                    json={'from': self.from_email, 'to': [to], 'subject': subject, 'html': body_html}
                )
        except httpx.HTTPError as e:
            logger.error(f"❌ Failed to send '{subject}' to {to}: {e}")
            return False

        if response.status_code >= 400:
            logger.error(f"❌ Resend rejected '{subject}' to {to}: HTTP {response.status_code}")
            return False

        logger.info(f"📧 Sent '{subject}' to {to}")
        return True

    async def send_order_confirmation(self, to: str, customer_name: str, order_number: str,
                                      items: List[Dict[str, Any]], total: int, currency: str) -> bool:
        rows = ''.join(
            f"<tr><td>{html.escape(str(item.get('description') or ''))}</td>"
            f"<td style=\"text-align:right;\">{_money(item.get('total_price') or 0)}</td></tr>"
            for item in items
        )
        body = (
            f"<p>Hi {html.escape(customer_name)}, your order <strong>{html.escape(order_number)}</strong> "
            f"has been processed successfully.</p>"
            f"<table width=\"100%\">{rows}<tr><td><strong>Total</strong></td>"
            f"<td style=\"text-align:right;\"><strong>{_money(total)} {html.escape(currency)}</strong></td></tr></table>"
            f"<p><a href=\"{self.client_url}/dashboard/orders\">View Order</a></p>"
        )
        return await self.send(to, f"Order Confirmation - {order_number}", _layout('Order Confirmed', body))

    async def send_payment_failed(self, to: str, customer_name: str, order_number: str,
                                  amount: int, currency: str, reason: str) -> bool:
        body = (
            f"<p>Hi {html.escape(customer_name)}, the payment of <strong>{_money(amount)} {html.escape(currency)}"
            f"</strong> for order <strong>{html.escape(order_number)}</strong> was not successful.</p>"
            f"<p>Reason: {html.escape(reason)}</p>"
            f"<p><a href=\"{self.client_url}/dashboard/orders\">Retry Payment</a></p>"
        )
        return await self.send(to, f"Payment Failed - {order_number}", _layout('Payment Failed', body))

"""
Order Fulfillment Orchestrator - turns a paid order into provisioned services

Architecture:
- One unit of work per saga invocation (status changes, item updates, audit rows)
- Item state machine: pending → processing → completed | failed (failed → processing on retry)
- Order state machine: pending_payment → processing → completed | partial_failure | failed | refunded
- Items are fanned out concurrently on payment success; one item's failure never
  aborts its siblings or the order-level transition
- Retries are sequential with exponential backoff
- Customer emails and operator alerts are fire-and-forget

The unit of work stays open across the provider calls. Provisioned resources
are not compensated automatically; refunds do not cancel services.
"""

import asyncio
import logging
import math
import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from admin_alerts import send_error_alert
from services.opensrs import ContactData, DomainContacts, DomainRegistration
from services.opensrs_ssl import SSLContact
from services.provider_errors import describe_failure, validation_error, application_error
from utils.environment import FulfillmentSettings

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    REFUNDED = "refunded"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ORDER_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: {OrderStatus.PROCESSING, OrderStatus.FAILED, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.PARTIAL_FAILURE,
                             OrderStatus.FAILED, OrderStatus.REFUNDED},
    OrderStatus.PARTIAL_FAILURE: {OrderStatus.PROCESSING, OrderStatus.COMPLETED, OrderStatus.REFUNDED},
    OrderStatus.FAILED: {OrderStatus.PROCESSING, OrderStatus.PARTIAL_FAILURE,
                         OrderStatus.COMPLETED, OrderStatus.REFUNDED},
    OrderStatus.COMPLETED: {OrderStatus.REFUNDED},
    OrderStatus.REFUNDED: set(),
}

# Only orders whose payment went through and that still have failed work may be retried
RETRYABLE_ORDER_STATUSES = {OrderStatus.FAILED, OrderStatus.PARTIAL_FAILURE}

# Customer fields a registrar contact cannot do without, with the wording used in errors
REQUIRED_CONTACT_FIELDS = (
    ('first_name', 'first name'),
    ('last_name', 'last name'),
    ('phone', 'phone number'),
    ('address1', 'address'),
    ('city', 'city'),
    ('state', 'state/province'),
    ('postal_code', 'postal code'),
)


class OrderNotFoundError(Exception):
    """Raised when a saga entry point is called for an unknown order"""
    pass


def can_transition(current: str, target: OrderStatus) -> bool:
    try:
        return target in ORDER_TRANSITIONS[OrderStatus(current)]
    except ValueError:
        return False


def term_years(item: Dict[str, Any]) -> int:
    return max(1, math.ceil((item.get('term_months') or 12) / 12))


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"⚠️ Unparseable provider timestamp: {value!r}")
        return None


def _domain_name(config: Dict[str, Any]) -> str:
    return config.get('domain_name') or f"{config.get('domain') or ''}{config.get('tld') or ''}"


class OrderOrchestrator:
    """
    Coordinates fulfillment of paid orders across the registrar, hosting,
    email hosting and certificate providers.

    ``database`` must expose ``unit_of_work()``, an async context manager
    yielding a store (see database.PostgresFulfillmentStore for the operations).
    """

    def __init__(
        self,
        database,
        registrar,
        hosting,
        email_hosting,
        ssl,
        mailer,
        vault,
        settings: Optional[FulfillmentSettings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        alerts: Callable[..., Awaitable[Any]] = send_error_alert,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.database = database
        self.registrar = registrar
        self.hosting = hosting
        self.email_hosting = email_hosting
        self.ssl = ssl
        self.mailer = mailer
        self.vault = vault
        self.settings = settings or FulfillmentSettings()
        self.sleep = sleep
        self.alerts = alerts
        self.clock = clock
        self._background: Set[asyncio.Task] = set()

        self._handlers = {
            'domain_registration': self._register_domain,
            'domain_transfer': self._transfer_domain,
            'domain_renewal': self._renew_domain,
            'hosting_plan': self._provision_hosting,
            'privacy_protection': self._enable_privacy,
            'email_service': self._provision_email,
            'ssl_certificate': self._order_ssl,
        }

    # ====================================================================
    # PAYMENT EVENTS
    # ====================================================================

    async def handle_payment_success(self, order_id: int, payment_data: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"🎯 ORCHESTRATOR: Processing payment success for order {order_id}")
        payment_id = payment_data.get('payment_id') or payment_data.get('id')

        async with self.database.unit_of_work() as store:
            order = await store.get_order(order_id)
            if not order:
                raise OrderNotFoundError(f"Order {order_id} not found")

            if order['status'] == OrderStatus.COMPLETED.value:
                logger.info(f"✅ ORCHESTRATOR: Order {order_id} already completed - nothing to do")
                return {'order_id': order_id, 'status': order['status'], 'already_processed': True}

            if not can_transition(order['status'], OrderStatus.PROCESSING):
                logger.warning(f"🚫 ORCHESTRATOR: Order {order_id} is {order['status']} - ignoring payment success")
                return {'order_id': order_id, 'status': order['status'], 'already_processed': True}

            now = self.clock()
            await store.update_order(
                order_id,
                status=OrderStatus.PROCESSING.value,
                payment_status='completed',
                paid_at=now,
                payment_reference=payment_id,
            )
            order['status'] = OrderStatus.PROCESSING.value
            await store.insert_payment({
                'order_id': order_id,
                'customer_id': order['customer_id'],
                'amount': order['total'],
                'currency': order['currency'],
                'status': 'completed',
                'gateway': self.settings.payment_gateway,
                'gateway_transaction_id': payment_id,
                'gateway_response': payment_data,
                'processed_at': now,
            })

            customer = order['customer']
            pending = [item for item in order['items'] if self._is_processable(item)]
            results = await asyncio.gather(
                *(self._process_item(store, item, customer) for item in pending),
                return_exceptions=True
            )
            failures = [(item, result) for item, result in zip(pending, results)
                        if isinstance(result, BaseException)]

            final_status = self._settle_status(order['items'])
            if final_status == OrderStatus.COMPLETED:
                await store.update_order(order_id, status=final_status.value, completed_at=self.clock())
            else:
                await store.update_order(order_id, status=final_status.value)

            for item, error in failures:
                await store.insert_audit_log({
                    'customer_id': order['customer_id'],
                    'action': 'order_item.failed',
                    'entity_type': 'order_item',
                    'entity_id': str(item['id']),
                    'description': f"Order item {item['id']} failed to provision",
                    'metadata': {'order_id': order_id, 'item_type': item.get('item_type'), **describe_failure(error)},
                })

            await store.insert_audit_log({
                'customer_id': order['customer_id'],
                'action': 'order.payment_success',
                'entity_type': 'order',
                'entity_id': str(order_id),
                'description': 'Payment received and order processed',
                'metadata': {'amount': order['total'], 'payment_id': payment_id, 'failures': len(failures)},
            })

        # Notifications only go out once the unit of work has committed
        if final_status == OrderStatus.COMPLETED:
            self._spawn(self._send_confirmation(order), f"confirmation for order {order_id}")
        if failures:
            logger.error(f"❌ ORCHESTRATOR: {len(failures)}/{len(order['items'])} items failed for order {order_id}")
            self._spawn(
                self.alerts(
                    "OrderOrchestrator",
                    f"Order {order_id} ended {final_status.value}: {len(failures)} item(s) failed",
                    "payment_processing",
                    {'order_id': order_id,
                     'failed_items': [str(item['id']) for item, _ in failures]}
                ),
                f"operator alert for order {order_id}"
            )

        logger.info(f"✅ ORCHESTRATOR: Order {order_id} finished as {final_status.value}")
        return {
            'order_id': order_id,
            'status': final_status.value,
            'processed': len(pending),
            'failures': [describe_failure(error) | {'item_id': item['id']} for item, error in failures],
        }

    async def handle_payment_failure(self, order_id: int, payment_data: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"💳 ORCHESTRATOR: Processing payment failure for order {order_id}")
        reason = payment_data.get('failure_message') or 'Payment declined'

        async with self.database.unit_of_work() as store:
            order = await store.get_order(order_id)
            if not order:
                raise OrderNotFoundError(f"Order {order_id} not found")

            if not can_transition(order['status'], OrderStatus.FAILED):
                logger.warning(f"⚠️ ORCHESTRATOR: Ignoring payment failure for order {order_id} in status {order['status']}")
                return {'order_id': order_id, 'status': order['status'], 'ignored': True}

            now = self.clock()
            await store.update_order(order_id, status=OrderStatus.FAILED.value, payment_status='failed')
            await store.insert_payment({
                'order_id': order_id,
                'customer_id': order['customer_id'],
                'amount': order['total'],
                'currency': order['currency'],
                'status': 'failed',
                'gateway': self.settings.payment_gateway,
                'gateway_transaction_id': payment_data.get('payment_id') or payment_data.get('id'),
                'gateway_response': payment_data,
                'failed_at': now,
                'failure_reason': reason,
            })
            await store.insert_audit_log({
                'customer_id': order['customer_id'],
                'action': 'order.payment_failed',
                'entity_type': 'order',
                'entity_id': str(order_id),
                'description': 'Payment failed',
                'metadata': {'reason': reason},
            })

        self._spawn(self._send_payment_failed(order, reason), f"payment-failed email for order {order_id}")
        return {'order_id': order_id, 'status': OrderStatus.FAILED.value}

    async def handle_payment_refund(self, order_id: int, refund_data: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"↩️ ORCHESTRATOR: Processing refund for order {order_id}")

        async with self.database.unit_of_work() as store:
            order = await store.get_order(order_id)
            if not order:
                raise OrderNotFoundError(f"Order {order_id} not found")

            if not can_transition(order['status'], OrderStatus.REFUNDED):
                logger.warning(f"⚠️ ORCHESTRATOR: Order {order_id} already {order['status']} - ignoring refund")
                return {'order_id': order_id, 'status': order['status'], 'ignored': True}

            amount = refund_data.get('amount', order['total'])
            reason = refund_data.get('reason')
            await store.update_order(order_id, status=OrderStatus.REFUNDED.value)
            await store.refund_payments(order_id, amount, reason, self.clock())
            # Provisioned services are left in place; cancellation is a separate process
            await store.insert_audit_log({
                'customer_id': order['customer_id'],
                'action': 'order.refunded',
                'entity_type': 'order',
                'entity_id': str(order_id),
                'description': 'Order refunded',
                'metadata': {'amount': amount, 'reason': reason},
            })

        return {'order_id': order_id, 'status': OrderStatus.REFUNDED.value}

    async def retry_failed_items(self, order_id: int) -> Dict[str, Any]:
        """Retry failed items one at a time, backing off 2**retry_count units between attempts"""
        max_retries = self.settings.max_item_retries

        async with self.database.unit_of_work() as store:
            order = await store.get_order(order_id)
            if not order:
                raise OrderNotFoundError(f"Order {order_id} not found")

            if order['status'] not in {status.value for status in RETRYABLE_ORDER_STATUSES}:
                logger.warning(f"🚫 ORCHESTRATOR: Order {order_id} is {order['status']} - refusing to retry items")
                return {'order_id': order_id, 'status': order['status'], 'retried': 0, 'recovered': 0,
                        'ignored': True}

            candidates = [item for item in order['items']
                          if item['status'] == ItemStatus.FAILED.value
                          and (item.get('retry_count') or 0) < max_retries]
            if not candidates:
                logger.info(f"🔄 ORCHESTRATOR: No retryable items for order {order_id}")
                return {'order_id': order_id, 'status': order['status'], 'retried': 0, 'recovered': 0}

            logger.info(f"🔄 ORCHESTRATOR: Retrying {len(candidates)} item(s) for order {order_id}")
            recovered = 0
            for index, item in enumerate(candidates):
                if index > 0:
                    delay = self.settings.retry_backoff_base * (2 ** (item.get('retry_count') or 0))
                    logger.info(f"⏳ ORCHESTRATOR: Waiting {delay:.1f}s before retrying item {item['id']}")
                    await self.sleep(delay)
                try:
                    await self._process_item(store, item, order['customer'])
                    recovered += 1
                except Exception as e:
                    logger.warning(f"⚠️ ORCHESTRATOR: Retry failed for item {item['id']}: {e}")

            refreshed = await store.get_order(order_id)
            final_status = self._settle_status(refreshed['items'])
            promoted = False
            if final_status.value != refreshed['status'] and can_transition(refreshed['status'], final_status):
                if final_status == OrderStatus.COMPLETED:
                    await store.update_order(order_id, status=final_status.value, completed_at=self.clock())
                    promoted = True
                else:
                    await store.update_order(order_id, status=final_status.value)
            else:
                final_status = OrderStatus(refreshed['status'])

            await store.insert_audit_log({
                'customer_id': order['customer_id'],
                'action': 'order.retry',
                'entity_type': 'order',
                'entity_id': str(order_id),
                'description': f"Retried {len(candidates)} failed item(s)",
                'metadata': {'retried': len(candidates), 'recovered': recovered, 'status': final_status.value},
            })

        if promoted:
            self._spawn(self._send_confirmation(refreshed), f"confirmation for order {order_id}")
        return {'order_id': order_id, 'status': final_status.value,
                'retried': len(candidates), 'recovered': recovered}

    # ====================================================================
    # ITEM PROCESSING
    # ====================================================================

    def _is_processable(self, item: Dict[str, Any]) -> bool:
        if item['status'] == ItemStatus.COMPLETED.value:
            return False
        if item['status'] == ItemStatus.FAILED.value:
            return (item.get('retry_count') or 0) < self.settings.max_item_retries
        return True

    @staticmethod
    def _settle_status(items: List[Dict[str, Any]]) -> OrderStatus:
        statuses = [item['status'] for item in items]
        if all(s == ItemStatus.COMPLETED.value for s in statuses):
            return OrderStatus.COMPLETED
        if all(s == ItemStatus.FAILED.value for s in statuses):
            return OrderStatus.FAILED
        return OrderStatus.PARTIAL_FAILURE

    async def _process_item(self, store, item: Dict[str, Any], customer: Dict[str, Any]) -> Dict[str, Any]:
        item_type = item.get('item_type')
        logger.info(f"📦 ORCHESTRATOR: Processing item {item['id']} ({item_type})")
        await store.update_order_item(item['id'], status=ItemStatus.PROCESSING.value)
        item['status'] = ItemStatus.PROCESSING.value

        try:
            handler = self._handlers.get(item_type)
            if handler is None:
                raise validation_error(f"Unknown item type: {item_type}", 'UNKNOWN_ITEM_TYPE')
            result = await handler(store, item, customer) or {}
        except Exception as e:
            retry_count = min((item.get('retry_count') or 0) + 1, self.settings.max_item_retries)
            message = str(e) or e.__class__.__name__
            logger.error(f"❌ ORCHESTRATOR: Item {item['id']} ({item_type}) failed: {message}")
            await store.update_order_item(
                item['id'],
                status=ItemStatus.FAILED.value,
                error_message=message,
                retry_count=retry_count,
            )
            item.update(status=ItemStatus.FAILED.value, error_message=message, retry_count=retry_count)
            raise

        fulfilled_at = self.clock()
        external_reference = result.get('external_id')
        await store.update_order_item(
            item['id'],
            status=ItemStatus.COMPLETED.value,
            fulfilled_at=fulfilled_at,
            external_reference=external_reference,
            error_message=None,
        )
        item.update(status=ItemStatus.COMPLETED.value, fulfilled_at=fulfilled_at,
                    external_reference=external_reference, error_message=None)
        logger.info(f"✅ ORCHESTRATOR: Item {item['id']} ({item_type}) completed")
        return result

    # ====================================================================
    # ITEM HANDLERS
    # ====================================================================

    @staticmethod
    def _require_contact_fields(source: Dict[str, Any]) -> None:
        for field_name, label in REQUIRED_CONTACT_FIELDS:
            if not (source.get(field_name) or '').strip():
                raise validation_error(
                    f"Customer profile incomplete: {label} is required for domain registration",
                    'PROFILE_INCOMPLETE',
                    details={'field': field_name}
                )

    async def _register_domain(self, store, item, customer) -> Dict[str, Any]:
        config = item.get('configuration') or {}
        domain_name = _domain_name(config)
        if not domain_name or '.' not in domain_name:
            raise validation_error(f"Invalid domain in order item {item['id']}", 'INVALID_DOMAIN')

        contact = await store.find_domain_contact(customer['id'])
        self._require_contact_fields(contact or customer)
        if contact is None:
            contact = await store.create_domain_contact({
                'customer_id': customer['id'],
                'contact_type': 'owner',
                'first_name': customer['first_name'],
                'last_name': customer['last_name'],
                'company_name': customer.get('company_name'),
                'email': customer['email'],
                'phone': customer['phone'],
                'address1': customer['address1'],
                'address2': customer.get('address2'),
                'city': customer['city'],
                'state': customer['state'],
                'postal_code': customer['postal_code'],
                'country_code': customer.get('country_code') or 'US',
            })

        years = term_years(item)
        privacy = bool(config.get('privacy'))
        nameservers = list(self.settings.nameservers)
        registration = await self.registrar.register_domain(DomainRegistration(
            domain=domain_name,
            period=years,
            contacts=DomainContacts(owner=ContactData.from_row(contact)),
            nameservers=nameservers,
            privacy=privacy,
        ))

        now = self.clock()
        expiry = _parse_timestamp(registration.get('expiry_date')) or now + timedelta(days=365 * years)
        domain = await store.insert_domain({
            'customer_id': customer['id'],
            'domain_name': domain_name,
            'tld': config.get('tld') or '.' + domain_name.split('.', 1)[1],
            'status': 'active',
            'registration_date': now,
            'expiry_date': expiry,
            'registration_period_years': years,
            'auto_renew': True,
            'privacy_enabled': privacy,
            'transfer_lock': True,
            'owner_contact_id': contact['id'],
            'nameservers': nameservers,
            'registrar_order_id': registration.get('order_id'),
            'registrar_domain_id': registration.get('domain_id'),
        })
        await store.update_order_item(item['id'], domain_id=domain['id'])
        item['domain_id'] = domain['id']
        return {'external_id': registration.get('domain_id'), 'domain_id': domain['id']}

    async def _transfer_domain(self, store, item, customer) -> Dict[str, Any]:
        config = item.get('configuration') or {}
        domain_name = _domain_name(config)

        contact = await store.find_domain_contact(customer['id'])
        if contact is None:
            raise validation_error('Domain contact required for transfer', 'CONTACT_REQUIRED')
        auth_code = config.get('auth_code')
        if not auth_code:
            raise validation_error(f"Auth code required to transfer {domain_name}", 'AUTH_CODE_REQUIRED')

        transfer = await self.registrar.transfer_domain(
            domain_name, auth_code, DomainContacts(owner=ContactData.from_row(contact))
        )

        domain = await store.insert_domain({
            'customer_id': customer['id'],
            'domain_name': domain_name,
            'tld': config.get('tld') or '.' + domain_name.split('.', 1)[-1],
            'status': 'pending_transfer',
            'is_transfer': True,
            'transfer_auth_code': self.vault.encrypt(auth_code),
            'transfer_status': transfer.get('status'),
            'auto_renew': True,
            'owner_contact_id': contact['id'],
            'registrar_order_id': transfer.get('transfer_id'),
        })
        await store.update_order_item(item['id'], domain_id=domain['id'])
        item['domain_id'] = domain['id']
        return {'external_id': transfer.get('transfer_id'), 'domain_id': domain['id']}

    async def _renew_domain(self, store, item, customer) -> Dict[str, Any]:
        config = item.get('configuration') or {}
        domain_name = _domain_name(config)
        renewal = await self.registrar.renew_domain(domain_name, term_years(item))

        if config.get('domain_id'):
            fields: Dict[str, Any] = {'status': 'active'}
            new_expiry = _parse_timestamp(renewal.get('new_expiry_date'))
            if new_expiry:
                fields['expiry_date'] = new_expiry
            await store.update_domain(config['domain_id'], **fields)
        return {'external_id': renewal.get('order_id')}

    async def _enable_privacy(self, store, item, customer) -> Dict[str, Any]:
        config = item.get('configuration') or {}
        domain_name = _domain_name(config)
        if not domain_name:
            raise validation_error(f"Privacy item {item['id']} has no domain", 'INVALID_DOMAIN')

        await self.registrar.set_privacy(domain_name, True)
        if config.get('domain_id'):
            await store.update_domain(config['domain_id'], privacy_enabled=True)
        return {'external_id': domain_name}

    async def _provision_hosting(self, store, item, customer) -> Dict[str, Any]:
        config = item.get('configuration') or {}
        plan = await store.get_hosting_plan(config.get('plan_id'))
        if not plan:
            raise application_error('Hosting plan not found', 'HOSTING_PLAN_NOT_FOUND',
                                    details={'plan_id': config.get('plan_id')})

        now = self.clock()
        months = item.get('term_months') or 12
        site_name = config.get('site_name') or f"{customer.get('first_name') or 'My'}'s Site"
        account = await store.insert_hosting_account({
            'customer_id': customer['id'],
            'plan_id': plan['id'],
            'site_name': site_name,
            'primary_domain': config.get('domain'),
            'status': 'provisioning',
            'billing_cycle': 'yearly' if months >= 12 else 'monthly',
            'subscription_start_date': now,
            'subscription_end_date': now + timedelta(days=30 * months),
            'auto_renew': True,
        })

        site = await self.hosting.provision_site(
            site_name=site_name,
            domain=config.get('domain') or f"site-{account['id']}.temp.hostsblue.com",
            plan_id=plan.get('wpmudev_plan_id') or plan.get('slug'),
            admin_email=customer['email'],
            options={'ssl': True, **(config.get('options') or {})},
        )

        await store.update_hosting_account(
            account['id'],
            status='active',
            wpmudev_site_id=site.get('site_id'),
            wpmudev_blog_id=site.get('blog_id'),
            wpmudev_hosting_id=site.get('hosting_id'),
            wp_admin_username=site['wp_admin']['username'],
            wp_admin_password_encrypted=site['wp_admin']['encrypted_password'],
            sftp_username=site['sftp'].get('username'),
            sftp_host=site['sftp'].get('host'),
            primary_domain=site.get('domain'),
        )
        await store.update_order_item(item['id'], hosting_account_id=account['id'])
        item['hosting_account_id'] = account['id']
        return {'external_id': site.get('site_id'), 'hosting_account_id': account['id']}

    async def _provision_email(self, store, item, customer) -> Dict[str, Any]:
        config = item.get('configuration') or {}
        domain = config.get('domain')
        if not domain:
            raise validation_error(f"Email item {item['id']} has no domain", 'INVALID_DOMAIN')
        username = config.get('username') or 'admin'
        password = secrets.token_urlsafe(16)

        await self.email_hosting.create_mail_domain(domain)
        mailbox = await self.email_hosting.create_mailbox(
            domain, username, password,
            quota_mb=config.get('storage_quota_mb'),
            first_name=customer.get('first_name'),
            last_name=customer.get('last_name'),
        )

        address = mailbox.get('email') or f"{username}@{domain}"
        account = await store.insert_email_account({
            'customer_id': customer['id'],
            'domain_id': config.get('domain_id'),
            'email': f"{username}@{domain}",
            'mail_domain': domain,
            'username': username,
            'status': 'active',
            'provider_mailbox_id': address,
            'password_encrypted': self.vault.encrypt(password),
            'subscription_end_date': self.clock() + timedelta(days=30 * (item.get('term_months') or 12)),
        })
        return {'external_id': address, 'email_account_id': account['id']}

    async def _order_ssl(self, store, item, customer) -> Dict[str, Any]:
        config = item.get('configuration') or {}
        domain = config.get('domain')
        if not domain:
            raise validation_error(f"Certificate item {item['id']} has no domain", 'INVALID_DOMAIN')

        csr = config.get('csr')
        private_key_encrypted = config.get('private_key_encrypted')
        if not csr:
            generated = await asyncio.to_thread(
                self.ssl.generate_csr, domain,
                customer.get('company_name'), customer.get('city'),
                customer.get('state'), customer.get('country_code') or 'US'
            )
            csr, private_key_encrypted = generated['csr'], generated['private_key']

        product_type = config.get('product_type') or 'dv'
        provider = config.get('provider') or 'sectigo'
        years = config.get('term_years') or term_years(item)
        approver_email = config.get('approver_email') or customer['email']

        certificate = await self.ssl.order_certificate(
            product_type=product_type,
            provider=provider,
            domain=domain,
            period=years,
            csr=csr,
            approver_email=approver_email,
            admin=SSLContact(
                first_name=customer.get('first_name') or '',
                last_name=customer.get('last_name') or '',
                email=customer['email'],
                phone=customer.get('phone') or '',
            ),
        )

        record = await store.insert_ssl_certificate({
            'customer_id': customer['id'],
            'domain_id': config.get('domain_id'),
            'domain_name': domain,
            'product_type': product_type,
            'provider': provider,
            'status': 'pending',
            'provider_order_id': certificate['order_id'],
            'csr_pem': csr,
            'private_key_encrypted': private_key_encrypted,
            'approver_email': approver_email,
            'dcv_method': 'email',
            'dcv_status': 'pending',
            'term_years': years,
            'total_price': item.get('total_price'),
        })
        return {'external_id': certificate['order_id'], 'ssl_certificate_id': record['id']}

    # ====================================================================
    # NOTIFICATIONS
    # ====================================================================

    def _spawn(self, coro: Awaitable[Any], label: str) -> None:
        task = asyncio.ensure_future(self._run_quietly(coro, label))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    async def _run_quietly(coro: Awaitable[Any], label: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(f"❌ Background {label} failed: {e}")

    async def drain_notifications(self) -> None:
        """Wait for outstanding fire-and-forget tasks"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @staticmethod
    def _customer_name(customer: Dict[str, Any]) -> str:
        name = ' '.join(p for p in (customer.get('first_name'), customer.get('last_name')) if p)
        return name or 'Customer'

    async def _send_confirmation(self, order: Dict[str, Any]) -> None:
        customer = order.get('customer') or {}
        if not customer.get('email'):
            return
        await self.mailer.send_order_confirmation(
            customer['email'],
            self._customer_name(customer),
            order.get('order_number') or str(order['id']),
            order.get('items') or [],
            order['total'],
            order['currency'],
        )

    async def _send_payment_failed(self, order: Dict[str, Any], reason: str) -> None:
        customer = order.get('customer') or {}
        if not customer.get('email'):
            return
        await self.mailer.send_payment_failed(
            customer['email'],
            self._customer_name(customer),
            order.get('order_number') or str(order['id']),
            order['total'],
            order['currency'],
            reason,
        )

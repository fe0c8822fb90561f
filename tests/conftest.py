"""
Shared test fixtures for the fulfillment test suite
In-memory persistence, provider clients in mock mode and data factories
"""

import copy
import os
import pytest
import factory
from contextlib import asynccontextmanager
from factory.faker import Faker
from factory.declarations import LazyFunction, Sequence
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock
import logging

# Test environment configuration
test_env_vars = {
    'TEST_MODE': '1',  # Prevent live credential usage during tests
    'ADMIN_ALERTS_ENABLED': 'false',
    'CREDENTIAL_ENCRYPTION_KEY': '00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff',
}
for key, value in test_env_vars.items():
    os.environ[key] = value

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

from services.opensrs import OpenSRSService
from services.opensrs_email import OpenSRSEmailService
from services.opensrs_ssl import OpenSRSSSLService
from services.order_orchestrator import OrderOrchestrator
from services.wpmudev import WPMUDevService
from services.xcp_transport import MockXcpTransport
from utils.credential_vault import CredentialVault
from utils.environment import FulfillmentSettings

TEST_VAULT_KEY = test_env_vars['CREDENTIAL_ENCRYPTION_KEY']

TABLES = (
    'customers', 'orders', 'order_items', 'payments', 'audit_logs', 'domain_contacts',
    'domains', 'hosting_plans', 'hosting_accounts', 'email_accounts', 'ssl_certificates',
)

# ====================================================================
# IN-MEMORY PERSISTENCE
# ====================================================================

class InMemoryFulfillmentStore:
    """Same operations as database.PostgresFulfillmentStore, backed by dicts"""

    def __init__(self, tables: Dict[str, Dict[int, Dict[str, Any]]], fail_on: Optional[str] = None):
        self.tables = tables
        self.fail_on = fail_on

    def _check(self, operation: str):
        if operation == self.fail_on:
            raise RuntimeError(f"simulated storage failure in {operation}")

    def _insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = self.tables[table]
        record = {**copy.deepcopy(row), 'id': max(rows, default=0) + 1}
        rows[record['id']] = record
        return dict(record)

    def _update(self, table: str, row_id: int, fields: Dict[str, Any]) -> int:
        row = self.tables[table].get(row_id)
        if row is None:
            return 0
        row.update(copy.deepcopy(fields))
        return 1

    async def get_order(self, order_id):
        order = self.tables['orders'].get(order_id)
        if order is None:
            return None
        result = copy.deepcopy(order)
        result['items'] = [copy.deepcopy(item) for _, item in sorted(self.tables['order_items'].items())
                           if item['order_id'] == order_id]
        result['customer'] = copy.deepcopy(self.tables['customers'].get(order['customer_id']) or {})
        return result

    async def update_order(self, order_id, **fields):
        self._check('update_order')
        return self._update('orders', order_id, fields)

    async def update_order_item(self, item_id, **fields):
        self._check('update_order_item')
        return self._update('order_items', item_id, fields)

    async def insert_payment(self, payment):
        self._check('insert_payment')
        return self._insert('payments', payment)

    async def refund_payments(self, order_id, amount, reason, refunded_at):
        updated = 0
        for payment in self.tables['payments'].values():
            if payment['order_id'] == order_id and payment['status'] == 'completed':
                payment.update(refunded_amount=amount, refund_reason=reason, refunded_at=refunded_at)
                updated += 1
        return updated

    async def insert_audit_log(self, entry):
        self._check('insert_audit_log')
        return self._insert('audit_logs', entry)

    async def find_domain_contact(self, customer_id):
        for _, contact in sorted(self.tables['domain_contacts'].items()):
            if contact['customer_id'] == customer_id:
                return dict(contact)
        return None

    async def create_domain_contact(self, contact):
        return self._insert('domain_contacts', contact)

    async def insert_domain(self, domain):
        return self._insert('domains', domain)

    async def update_domain(self, domain_id, **fields):
        return self._update('domains', domain_id, fields)

    async def get_hosting_plan(self, plan_id):
        for plan in self.tables['hosting_plans'].values():
            if str(plan['id']) == str(plan_id) or plan.get('slug') == plan_id:
                return dict(plan)
        return None

    async def insert_hosting_account(self, account):
        return self._insert('hosting_accounts', account)

    async def update_hosting_account(self, account_id, **fields):
        return self._update('hosting_accounts', account_id, fields)

    async def insert_email_account(self, account):
        return self._insert('email_accounts', account)

    async def insert_ssl_certificate(self, certificate):
        return self._insert('ssl_certificates', certificate)


class InMemoryDatabase:
    """Unit of work with snapshot rollback"""

    def __init__(self):
        self.tables: Dict[str, Dict[int, Dict[str, Any]]] = {name: {} for name in TABLES}
        self.commits = 0
        self.rollbacks = 0
        self.fail_on: Optional[str] = None

    @asynccontextmanager
    async def unit_of_work(self):
        snapshot = copy.deepcopy(self.tables)
        try:
            yield InMemoryFulfillmentStore(self.tables, self.fail_on)
        except BaseException:
            self.tables.clear()
            self.tables.update(snapshot)
            self.rollbacks += 1
            raise
        self.commits += 1

    def seed(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = self.tables[table]
        record = dict(row)
        record.setdefault('id', max(rows, default=0) + 1)
        rows[record['id']] = record
        return record

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return [row for _, row in sorted(self.tables[table].items())]

    def row(self, table: str, row_id: int) -> Dict[str, Any]:
        return self.tables[table][row_id]

    async def ping(self) -> bool:
        return True


class SleepRecorder:
    """Stands in for asyncio.sleep and records requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)

# ====================================================================
# DATA FACTORIES
# ====================================================================

class CustomerFactory(factory.Factory):  # type: ignore[misc]
    """Customer with a complete registrant profile"""
    class Meta:  # type: ignore[misc]
        model = dict

    email = Sequence(lambda n: f"customer{n}@example.com")
    first_name = Faker('first_name')
    last_name = Faker('last_name')
    company_name = None
    phone = '+1.5555550100'
    address1 = Faker('street_address')
    address2 = None
    city = Faker('city')
    state = 'CA'
    postal_code = '94105'
    country_code = 'US'


class OrderFactory(factory.Factory):  # type: ignore[misc]
    class Meta:  # type: ignore[misc]
        model = dict

    order_number = Sequence(lambda n: f"HB-{1000 + n}")
    status = 'pending_payment'
    payment_status = 'pending'
    payment_reference = None
    total = 2999
    currency = 'USD'
    paid_at = None
    completed_at = None


class OrderItemFactory(factory.Factory):  # type: ignore[misc]
    class Meta:  # type: ignore[misc]
        model = dict

    item_type = 'domain_registration'
    description = Faker('sentence', nb_words=3)
    term_months = 12
    total_price = 1299
    configuration = LazyFunction(lambda: {'domain': 'testsite', 'tld': '.com'})
    status = 'pending'
    error_message = None
    retry_count = 0
    external_reference = None
    domain_id = None
    hosting_account_id = None
    fulfilled_at = None


class HostingPlanFactory(factory.Factory):  # type: ignore[misc]
    class Meta:  # type: ignore[misc]
        model = dict

    slug = Sequence(lambda n: f"starter-{n}")
    name = 'Starter'
    wpmudev_plan_id = 'starter'

# ====================================================================
# FIXTURES
# ====================================================================

@pytest.fixture
def settings():
    return FulfillmentSettings(test_mode=True, retry_backoff_base=1.0)


@pytest.fixture
def vault():
    return CredentialVault(TEST_VAULT_KEY)


@pytest.fixture
def memory_db():
    return InMemoryDatabase()


@pytest.fixture
def mock_transport():
    return MockXcpTransport()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def mailer():
    mock_mailer = AsyncMock()
    mock_mailer.send_order_confirmation = AsyncMock(return_value=True)
    mock_mailer.send_payment_failed = AsyncMock(return_value=True)
    return mock_mailer


@pytest.fixture
def alerts():
    return AsyncMock(return_value=True)


@pytest.fixture
def orchestrator(memory_db, mock_transport, vault, settings, mailer, alerts, sleep_recorder):
    """Orchestrator over the in-memory store with every provider in mock mode"""
    return OrderOrchestrator(
        database=memory_db,
        registrar=OpenSRSService(mock_transport),
        hosting=WPMUDevService(settings.wpmudev_api_url, '', vault, mock=True),
        email_hosting=OpenSRSEmailService(settings.email_api_url, '', '', mock=True),
        ssl=OpenSRSSSLService(mock_transport, vault),
        mailer=mailer,
        vault=vault,
        settings=settings,
        sleep=sleep_recorder,
        alerts=alerts,
    )


@pytest.fixture
def seed_order(memory_db):
    """Insert a customer, an order and its items; returns the order id"""

    def _seed(items: List[Dict[str, Any]], customer: Optional[Dict[str, Any]] = None, **order_fields) -> int:
        customer_row = memory_db.seed('customers', customer or CustomerFactory())
        order = memory_db.seed('orders', OrderFactory(customer_id=customer_row['id'], **order_fields))
        for item in items:
            memory_db.seed('order_items', {**OrderItemFactory(), **item, 'order_id': order['id']})
        return order['id']

    return _seed


@pytest.fixture
def hosting_plan(memory_db):
    return memory_db.seed('hosting_plans', HostingPlanFactory())

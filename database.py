"""
PostgreSQL persistence for order fulfillment
Raw SQL over a psycopg2 connection pool; blocking calls run in worker threads
"""

import os
import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import Optional, Dict, List, Any

import psycopg2
import psycopg2.pool
from psycopg2 import sql
from psycopg2.extras import RealDictCursor, Json

logger = logging.getLogger(__name__)

# Connection pool shared by the process
_connection_pool = None
_pool_lock = threading.Lock()

# Columns stored as JSONB; dict/list values bound to them are wrapped in Json()
JSON_COLUMNS = {'configuration', 'gateway_response', 'metadata', 'nameservers'}


def get_connection_pool(dsn: Optional[str] = None, minconn: int = 2, maxconn: int = 20):
    """Get or create the database connection pool"""
    global _connection_pool
    with _pool_lock:
        if _connection_pool is None:
            database_url = dsn or os.getenv('DATABASE_URL')
            if not database_url:
                raise ValueError("DATABASE_URL environment variable not found")

            _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=minconn,
                maxconn=maxconn,
                dsn=database_url,
                cursor_factory=RealDictCursor,
                connect_timeout=5,
                keepalives_idle=600,
                keepalives_interval=30,
                keepalives_count=3,
                sslmode='prefer'
            )
            logger.info(f"✅ Connection pool created ({minconn}-{maxconn} connections)")
    return _connection_pool


def get_connection():
    pool = get_connection_pool()
    return pool.getconn()


def return_connection(conn, is_broken=False):
    """Return a connection to the pool, closing it when broken"""
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except (psycopg2.Error, ValueError) as e:
        logger.warning(f"⚠️ Could not return connection to pool: {e}")
        conn.close()


def close_connection_pool():
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("🔌 Connection pool closed")


async def execute_query(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a SELECT query and return results using the connection pool"""

    def _execute() -> List[Dict]:
        conn = get_connection()
        broken = False
        try:
            conn.autocommit = True
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                results = cursor.fetchall()
                return [dict(row) for row in results] if results else []
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            logger.error(f"💥 Database connection failed during query: {e}")
            raise
        finally:
            return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)


def _adapt(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None:
        return Json(value)
    return value


# ============================================================================
# SCHEMA
# ============================================================================

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS customers (
        id SERIAL PRIMARY KEY,
        email VARCHAR(255) UNIQUE NOT NULL,
        first_name VARCHAR(100),
        last_name VARCHAR(100),
        company_name VARCHAR(255),
        phone VARCHAR(50),
        address1 VARCHAR(255),
        address2 VARCHAR(255),
        city VARCHAR(100),
        state VARCHAR(100),
        postal_code VARCHAR(20),
        country_code VARCHAR(2) DEFAULT 'US',
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL REFERENCES customers(id),
        order_number VARCHAR(50) UNIQUE NOT NULL,
        status VARCHAR(30) NOT NULL DEFAULT 'pending_payment',
        payment_status VARCHAR(30) DEFAULT 'pending',
        payment_reference VARCHAR(255),
        total INTEGER NOT NULL DEFAULT 0,
        currency VARCHAR(3) NOT NULL DEFAULT 'USD',
        paid_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS domain_contacts (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL REFERENCES customers(id),
        contact_type VARCHAR(20) DEFAULT 'owner',
        first_name VARCHAR(100) NOT NULL,
        last_name VARCHAR(100) NOT NULL,
        company_name VARCHAR(255),
        email VARCHAR(255) NOT NULL,
        phone VARCHAR(50) NOT NULL,
        address1 VARCHAR(255) NOT NULL,
        address2 VARCHAR(255),
        city VARCHAR(100) NOT NULL,
        state VARCHAR(100) NOT NULL,
        postal_code VARCHAR(20) NOT NULL,
        country_code VARCHAR(2) NOT NULL DEFAULT 'US',
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS domains (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL REFERENCES customers(id),
        domain_name VARCHAR(255) NOT NULL,
        tld VARCHAR(50),
        status VARCHAR(30) NOT NULL,
        registration_date TIMESTAMPTZ,
        expiry_date TIMESTAMPTZ,
        registration_period_years INTEGER DEFAULT 1,
        auto_renew BOOLEAN DEFAULT TRUE,
        privacy_enabled BOOLEAN DEFAULT FALSE,
        transfer_lock BOOLEAN DEFAULT TRUE,
        owner_contact_id INTEGER REFERENCES domain_contacts(id),
        nameservers JSONB,
        registrar_order_id VARCHAR(255),
        registrar_domain_id VARCHAR(255),
        is_transfer BOOLEAN DEFAULT FALSE,
        transfer_auth_code TEXT,
        transfer_status VARCHAR(50),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hosting_plans (
        id SERIAL PRIMARY KEY,
        slug VARCHAR(50) UNIQUE NOT NULL,
        name VARCHAR(100) NOT NULL,
        wpmudev_plan_id VARCHAR(100)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hosting_accounts (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL REFERENCES customers(id),
        plan_id INTEGER REFERENCES hosting_plans(id),
        site_name VARCHAR(255),
        primary_domain VARCHAR(255),
        status VARCHAR(30) NOT NULL,
        billing_cycle VARCHAR(20),
        subscription_start_date TIMESTAMPTZ,
        subscription_end_date TIMESTAMPTZ,
        auto_renew BOOLEAN DEFAULT TRUE,
        wpmudev_site_id VARCHAR(255),
        wpmudev_blog_id VARCHAR(255),
        wpmudev_hosting_id VARCHAR(255),
        wp_admin_username VARCHAR(255),
        wp_admin_password_encrypted TEXT,
        sftp_username VARCHAR(255),
        sftp_host VARCHAR(255),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id SERIAL PRIMARY KEY,
        order_id INTEGER NOT NULL REFERENCES orders(id),
        item_type VARCHAR(50) NOT NULL,
        description TEXT,
        term_months INTEGER DEFAULT 12,
        total_price INTEGER DEFAULT 0,
        configuration JSONB DEFAULT '{}'::jsonb,
        status VARCHAR(30) NOT NULL DEFAULT 'pending',
        error_message TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        external_reference VARCHAR(255),
        domain_id INTEGER REFERENCES domains(id),
        hosting_account_id INTEGER REFERENCES hosting_accounts(id),
        fulfilled_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_accounts (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL REFERENCES customers(id),
        domain_id INTEGER REFERENCES domains(id),
        email VARCHAR(255) NOT NULL,
        mail_domain VARCHAR(255) NOT NULL,
        username VARCHAR(100) NOT NULL,
        status VARCHAR(30) NOT NULL,
        provider_mailbox_id VARCHAR(255),
        password_encrypted TEXT,
        subscription_end_date TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ssl_certificates (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL REFERENCES customers(id),
        domain_id INTEGER REFERENCES domains(id),
        domain_name VARCHAR(255) NOT NULL,
        product_type VARCHAR(50),
        provider VARCHAR(50),
        status VARCHAR(30) NOT NULL,
        provider_order_id VARCHAR(255),
        csr_pem TEXT,
        private_key_encrypted TEXT,
        approver_email VARCHAR(255),
        dcv_method VARCHAR(20),
        dcv_status VARCHAR(30),
        term_years INTEGER DEFAULT 1,
        total_price INTEGER,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id SERIAL PRIMARY KEY,
        order_id INTEGER NOT NULL REFERENCES orders(id),
        customer_id INTEGER NOT NULL REFERENCES customers(id),
        amount INTEGER NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'USD',
        status VARCHAR(30) NOT NULL,
        gateway VARCHAR(50),
        gateway_transaction_id VARCHAR(255),
        gateway_response JSONB,
        processed_at TIMESTAMPTZ,
        failed_at TIMESTAMPTZ,
        failure_reason TEXT,
        refunded_amount INTEGER,
        refund_reason TEXT,
        refunded_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id SERIAL PRIMARY KEY,
        customer_id INTEGER REFERENCES customers(id),
        action VARCHAR(100) NOT NULL,
        entity_type VARCHAR(50),
        entity_id VARCHAR(100),
        description TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_order_items_order_id ON order_items(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_payments_order_id ON payments(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_domain_contacts_customer_id ON domain_contacts(customer_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_entity ON audit_logs(entity_type, entity_id)",
]


async def init_database():
    """Initialize database tables if they don't exist"""
    def _init():
        conn = get_connection()
        try:
            conn.autocommit = False
            with conn.cursor() as cursor:
                for statement in SCHEMA_STATEMENTS:
                    cursor.execute(statement)
            conn.commit()
            logger.info(f"✅ Database schema ready ({len(SCHEMA_STATEMENTS)} statements)")
        except psycopg2.Error:
            conn.rollback()
            raise
        finally:
            return_connection(conn)

    await asyncio.to_thread(_init)


# ============================================================================
# FULFILLMENT STORE
# ============================================================================

class PostgresFulfillmentStore:
    """
    Fulfillment operations on one open transaction.

    Every statement goes through the same connection, so calls are
    serialized with an asyncio.Lock even when items are processed concurrently.
    """

    def __init__(self, conn):
        self.conn = conn
        self._lock = asyncio.Lock()

    async def _run(self, query, params=None, fetch: str = 'none'):
        def _execute():
            with self.conn.cursor() as cursor:
                cursor.execute(query, params)
                if fetch == 'one':
                    row = cursor.fetchone()
                    return dict(row) if row else None
                if fetch == 'all':
                    return [dict(row) for row in cursor.fetchall()]
                return cursor.rowcount

        async with self._lock:
            return await asyncio.to_thread(_execute)

    async def _insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        columns = list(row)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(', ').join(map(sql.Identifier, columns)),
            sql.SQL(', ').join(sql.Placeholder() * len(columns))
        )
        return await self._run(query, tuple(_adapt(c, row[c]) for c in columns), fetch='one')

    async def _update(self, table: str, row_id: int, fields: Dict[str, Any], touch: bool = False) -> int:
        if not fields:
            return 0
        assignments = [sql.SQL("{} = %s").format(sql.Identifier(column)) for column in fields]
        if touch:
            assignments.append(sql.SQL("updated_at = NOW()"))
        query = sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
            sql.Identifier(table), sql.SQL(', ').join(assignments)
        )
        params = tuple(_adapt(c, v) for c, v in fields.items()) + (row_id,)
        return await self._run(query, params)

    # Orders and items

    async def get_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        order = await self._run("SELECT * FROM orders WHERE id = %s", (order_id,), fetch='one')
        if not order:
            return None
        order['items'] = await self._run(
            "SELECT * FROM order_items WHERE order_id = %s ORDER BY id", (order_id,), fetch='all'
        )
        order['customer'] = await self._run(
            "SELECT * FROM customers WHERE id = %s", (order['customer_id'],), fetch='one'
        ) or {}
        return order

    async def update_order(self, order_id: int, **fields) -> int:
        return await self._update('orders', order_id, fields, touch=True)

    async def update_order_item(self, item_id: int, **fields) -> int:
        return await self._update('order_items', item_id, fields)

    # Payments and audit trail

    async def insert_payment(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert('payments', payment)

    async def refund_payments(self, order_id: int, amount: int, reason: Optional[str], refunded_at) -> int:
        return await self._run(
            """
            UPDATE payments
               SET refunded_amount = %s, refund_reason = %s, refunded_at = %s
             WHERE order_id = %s AND status = 'completed'
            """,
            (amount, reason, refunded_at, order_id)
        )

    async def insert_audit_log(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert('audit_logs', entry)

    # Domains

    async def find_domain_contact(self, customer_id: int) -> Optional[Dict[str, Any]]:
        return await self._run(
            "SELECT * FROM domain_contacts WHERE customer_id = %s ORDER BY id LIMIT 1",
            (customer_id,), fetch='one'
        )

    async def create_domain_contact(self, contact: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert('domain_contacts', contact)

    async def insert_domain(self, domain: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert('domains', domain)

    async def update_domain(self, domain_id: int, **fields) -> int:
        return await self._update('domains', domain_id, fields, touch=True)

    # Hosting, email, certificates

    async def get_hosting_plan(self, plan_id) -> Optional[Dict[str, Any]]:
        if plan_id is None:
            return None
        return await self._run(
            "SELECT * FROM hosting_plans WHERE id::text = %s OR slug = %s",
            (str(plan_id), str(plan_id)), fetch='one'
        )

    async def insert_hosting_account(self, account: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert('hosting_accounts', account)

    async def update_hosting_account(self, account_id: int, **fields) -> int:
        return await self._update('hosting_accounts', account_id, fields, touch=True)

    async def insert_email_account(self, account: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert('email_accounts', account)

    async def insert_ssl_certificate(self, certificate: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert('ssl_certificates', certificate)


class FulfillmentDatabase:
    """Hands out one transaction per saga invocation"""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn

    def _acquire(self):
        conn = get_connection_pool(self.dsn).getconn()
        conn.autocommit = False
        return conn

    @asynccontextmanager
    async def unit_of_work(self):
        conn = await asyncio.to_thread(self._acquire)
        broken = False
        try:
            yield PostgresFulfillmentStore(conn)
            await asyncio.to_thread(conn.commit)
        except BaseException as e:
            broken = isinstance(e, (psycopg2.OperationalError, psycopg2.InterfaceError))
            logger.warning(f"🔄 Rolling back unit of work: {e.__class__.__name__}: {e}")
            if not broken:
                await asyncio.to_thread(conn.rollback)
            raise
        finally:
            return_connection(conn, is_broken=broken)

    async def ping(self) -> bool:
        get_connection_pool(self.dsn)
        rows = await execute_query("SELECT 1 AS ok")
        return bool(rows and rows[0].get('ok') == 1)

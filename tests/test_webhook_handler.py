"""
Webhook server tests
Payment event routing, operator retry authentication and health reporting
"""

import pytest
from aiohttp import test_utils
from unittest.mock import AsyncMock, MagicMock

from webhook_handler import create_app

ADMIN_TOKEN = 'operator-secret'


@pytest.fixture
async def client(orchestrator, memory_db):
    app = create_app(orchestrator, ADMIN_TOKEN, memory_db)
    async with test_utils.TestClient(test_utils.TestServer(app)) as test_client:
        yield test_client


@pytest.mark.asyncio
class TestPaymentWebhook:
    """POST /webhook/payments"""

    async def test_succeeded_event_runs_saga(self, client, seed_order, memory_db, orchestrator):
        order_id = seed_order([{'item_type': 'domain_registration'}])

        response = await client.post('/webhook/payments', json={
            'type': 'payment.succeeded', 'order_id': str(order_id), 'data': {'payment_id': 'pay_1'},
        })
        body = await response.json()
        await orchestrator.drain_notifications()

        assert response.status == 200
        assert body['status'] == 'success'
        assert body['result']['status'] == 'completed'
        assert memory_db.row('orders', order_id)['status'] == 'completed'

    async def test_failed_event(self, client, seed_order, memory_db, orchestrator):
        order_id = seed_order([{'item_type': 'domain_registration'}])

        response = await client.post('/webhook/payments', json={
            'type': 'payment.failed', 'order_id': order_id, 'data': {'failure_message': 'Insufficient funds'},
        })
        await orchestrator.drain_notifications()

        assert response.status == 200
        assert memory_db.row('orders', order_id)['status'] == 'failed'

    async def test_refunded_event(self, client, seed_order, memory_db):
        order_id = seed_order([], status='completed')

        response = await client.post('/webhook/payments', json={'type': 'payment.refunded', 'order_id': order_id})

        assert response.status == 200
        assert memory_db.row('orders', order_id)['status'] == 'refunded'

    async def test_malformed_json(self, client):
        response = await client.post('/webhook/payments', data=b'{not json',
                                     headers={'Content-Type': 'application/json'})
        assert response.status == 400
        assert (await response.json())['error'] == 'Invalid JSON'

    @pytest.mark.parametrize('payload', [
        [1, 2, 3],
        {'type': 'payment.disputed', 'order_id': 1},
        {'type': 'payment.succeeded'},
        {'type': 'payment.succeeded', 'order_id': 'abc'},
    ])
    async def test_rejected_payloads(self, client, payload):
        response = await client.post('/webhook/payments', json=payload)
        assert response.status == 400

    async def test_unknown_order_is_404(self, client):
        response = await client.post('/webhook/payments', json={'type': 'payment.succeeded', 'order_id': 999})
        assert response.status == 404

    async def test_unexpected_error_is_500(self):
        orchestrator = MagicMock()
        orchestrator.handle_payment_success = AsyncMock(side_effect=RuntimeError('db gone'))
        app = create_app(orchestrator, ADMIN_TOKEN)

        async with test_utils.TestClient(test_utils.TestServer(app)) as test_client:
            response = await test_client.post('/webhook/payments',
                                              json={'type': 'payment.succeeded', 'order_id': 1})
            body = await response.json()

        assert response.status == 500
        assert body == {'error': 'Internal server error'}


@pytest.mark.asyncio
class TestOperatorRetry:
    """POST /admin/orders/{id}/retry"""

    async def test_requires_bearer_token(self, client):
        missing = await client.post('/admin/orders/1/retry')
        wrong = await client.post('/admin/orders/1/retry', headers={'Authorization': 'Bearer nope'})
        basic = await client.post('/admin/orders/1/retry', headers={'Authorization': f'Basic {ADMIN_TOKEN}'})

        assert [missing.status, wrong.status, basic.status] == [401, 401, 401]

    async def test_unconfigured_token_rejects_everything(self, orchestrator):
        app = create_app(orchestrator)

        async with test_utils.TestClient(test_utils.TestServer(app)) as test_client:
            response = await test_client.post('/admin/orders/1/retry', headers={'Authorization': 'Bearer '})

        assert response.status == 401

    async def test_retry_runs(self, client, seed_order, memory_db, orchestrator):
        order_id = seed_order([{'item_type': 'domain_registration', 'status': 'failed', 'retry_count': 1}],
                              status='failed')

        response = await client.post(f'/admin/orders/{order_id}/retry',
                                     headers={'Authorization': f'Bearer {ADMIN_TOKEN}'})
        body = await response.json()
        await orchestrator.drain_notifications()

        assert response.status == 200
        assert body['result']['recovered'] == 1
        assert memory_db.row('orders', order_id)['status'] == 'completed'

    async def test_bad_and_unknown_ids(self, client):
        headers = {'Authorization': f'Bearer {ADMIN_TOKEN}'}

        assert (await client.post('/admin/orders/abc/retry', headers=headers)).status == 400
        assert (await client.post('/admin/orders/4242/retry', headers=headers)).status == 404

    async def test_retry_error_is_500(self):
        orchestrator = MagicMock()
        orchestrator.retry_failed_items = AsyncMock(side_effect=RuntimeError('boom'))
        app = create_app(orchestrator, ADMIN_TOKEN)

        async with test_utils.TestClient(test_utils.TestServer(app)) as test_client:
            response = await test_client.post('/admin/orders/5/retry',
                                              headers={'Authorization': f'Bearer {ADMIN_TOKEN}'})

        assert response.status == 500


@pytest.mark.asyncio
class TestHealth:

    async def test_healthy(self, client):
        response = await client.get('/health')
        body = await response.json()

        assert response.status == 200
        assert body['status'] == 'healthy'
        assert body['database'] == 'ok'

    async def test_database_down_is_503(self, orchestrator):
        database = MagicMock()
        database.ping = AsyncMock(side_effect=ConnectionError('refused'))
        app = create_app(orchestrator, ADMIN_TOKEN, database)

        async with test_utils.TestClient(test_utils.TestServer(app)) as test_client:
            response = await test_client.get('/health')
            body = await response.json()

        assert response.status == 503
        assert body['status'] == 'degraded'
        assert body['database'] == 'unavailable'

    async def test_without_database(self, orchestrator):
        async with test_utils.TestClient(test_utils.TestServer(create_app(orchestrator))) as test_client:
            response = await test_client.get('/health')
            body = await response.json()

        assert response.status == 200
        assert 'database' not in body

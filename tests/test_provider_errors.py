"""
Error contract and operation timing tests
"""

import pytest

from performance_monitor import get_performance_stats, monitor_performance, reset_performance_stats
from services.provider_errors import (
    ErrorKind, IntegrationError, application_error, describe_failure, http_status_error,
    transport_error, validation_error
)


class TestErrorContract:

    @pytest.mark.parametrize('status,retryable', [(500, True), (502, True), (429, False), (400, False)])
    def test_http_status_error(self, status, retryable):
        error = http_status_error('wpmudev', status, 'x' * 1000)
        assert error.code == f'WPMUDEV_HTTP_{status}'
        assert error.kind == ErrorKind.TRANSPORT
        assert error.retryable is retryable
        assert len(error.details['body']) == 500

    def test_defaults_per_kind(self):
        assert transport_error('t', 'T').retryable is True
        assert application_error('a', 'A').retryable is False
        assert validation_error('v').code == 'VALIDATION_ERROR'

    def test_to_dict(self):
        error = application_error('Rejected', 'OPENSRS_API_485', details={'response_code': '485'})
        assert error.to_dict() == {
            'message': 'Rejected', 'code': 'OPENSRS_API_485', 'kind': 'application',
            'retryable': False, 'details': {'response_code': '485'},
        }

    def test_describe_failure(self):
        assert describe_failure(transport_error('Timed out', 'OPENSRS_TIMEOUT')) == {
            'error': 'Timed out', 'code': 'OPENSRS_TIMEOUT', 'retryable': True,
        }
        assert describe_failure(KeyError()) == {
            'error': 'KeyError', 'code': 'UNEXPECTED_ERROR', 'retryable': False,
        }


@pytest.mark.asyncio
class TestOperationTiming:

    async def test_records_calls_and_failures(self):
        reset_performance_stats()

        @monitor_performance("sample")
        async def flaky(fail: bool):
            if fail:
                raise IntegrationError('nope', 'X', ErrorKind.APPLICATION)
            return 'ok'

        assert await flaky(False) == 'ok'
        with pytest.raises(IntegrationError):
            await flaky(True)

        stats = get_performance_stats()['sample.flaky']
        assert stats['calls'] == 2
        assert stats['failures'] == 1
        assert stats['max_ms'] >= stats['avg_ms'] >= 0

    async def test_sync_functions_are_timed(self):
        reset_performance_stats()

        @monitor_performance("sample")
        def compute(x):
            return x * 2

        assert compute(21) == 42
        assert get_performance_stats()['sample.compute']['calls'] == 1

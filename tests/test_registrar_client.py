"""
Registrar HTTP client tests
Requests are served by httpx.MockTransport, no network access
"""

import json
from decimal import Decimal

import httpx
import pytest

from errors import RetryableRegistrarError, TerminalRegistrarError
from services.registrar_client import (
    TRANSFER_CONFIRMED, TRANSFER_PENDING, TRANSFER_REJECTED, HttpRegistrarClient,
)


def make_client(handler):
    return HttpRegistrarClient('https://registrar.test', 'key', 'secret',
                               transport=httpx.MockTransport(handler))


class TestRegistrarRequests:

    async def test_register_sends_credentials_and_returns_order(self):
        seen = {}

        def handler(request):
            seen['auth'] = request.headers['Authorization']
            seen['path'] = request.url.path
            seen['body'] = json.loads(request.content)
            return httpx.Response(200, json={'orderId': 771234, 'total': 11990000})

        client = make_client(handler)
        order_id = await client.register('example.com', 2)
        await client.close()

        assert order_id == '771234'
        assert seen['auth'] == 'sso-key key:secret'
        assert seen['path'] == '/v1/domains/purchase'
        assert seen['body']['domain'] == 'example.com'
        assert seen['body']['period'] == 2

    async def test_availability_price_converted_from_micros(self):
        def handler(request):
            assert request.url.params['domain'] == 'example.com'
            return httpx.Response(200, json={'available': True, 'price': 11990000, 'currency': 'USD'})

        result = await make_client(handler).check_availability('example.com')

        assert result == {'domain': 'example.com', 'available': True,
                          'price': Decimal('11.99'), 'currency': 'USD'}

    async def test_dns_records_mapped_to_registrar_format(self):
        seen = {}

        def handler(request):
            seen['method'] = request.method
            seen['body'] = json.loads(request.content)
            return httpx.Response(200)

        await make_client(handler).update_dns('example.com', [
            {'type': 'A', 'name': '@', 'value': '203.0.113.10'},
            {'type': 'MX', 'name': '@', 'value': 'mail.example.com', 'ttl': 600, 'priority': 10},
        ])

        assert seen['method'] == 'PUT'
        assert seen['body'] == [
            {'type': 'A', 'name': '@', 'data': '203.0.113.10', 'ttl': 3600},
            {'type': 'MX', 'name': '@', 'data': 'mail.example.com', 'ttl': 600, 'priority': 10},
        ]

    @pytest.mark.parametrize('status_code, body, expected', [
        (404, None, TRANSFER_PENDING),
        (200, {'status': 'PENDING_TRANSFER'}, TRANSFER_PENDING),
        (200, {'status': 'ACTIVE'}, TRANSFER_CONFIRMED),
        (200, {'status': 'TRANSFER_REJECTED'}, TRANSFER_REJECTED),
        (200, {'status': 'cancelled'}, TRANSFER_REJECTED),
    ])
    async def test_transfer_status_mapping(self, status_code, body, expected):
        def handler(request):
            return httpx.Response(status_code, json=body) if body else httpx.Response(status_code)

        assert await make_client(handler).get_transfer_status('moving.com', 'xfer-1') == expected


class TestRegistrarErrorMapping:

    async def test_rate_limit_is_retryable_with_retry_after(self):
        def handler(request):
            return httpx.Response(429, headers={'Retry-After': '7'}, json={'code': 'TOO_MANY_REQUESTS'})

        with pytest.raises(RetryableRegistrarError) as exc_info:
            await make_client(handler).renew('example.com', 1)
        assert exc_info.value.code == 'rate_limited'
        assert exc_info.value.retry_after == 7.0

    async def test_rate_limit_retry_after_from_body(self):
        def handler(request):
            return httpx.Response(429, json={'code': 'TOO_MANY_REQUESTS', 'retryAfterSec': 30})

        with pytest.raises(RetryableRegistrarError) as exc_info:
            await make_client(handler).renew('example.com', 1)
        assert exc_info.value.retry_after == 30.0

    @pytest.mark.parametrize('status_code', [500, 502, 503, 504])
    async def test_server_errors_are_retryable(self, status_code):
        def handler(request):
            return httpx.Response(status_code, text='upstream unavailable')

        with pytest.raises(RetryableRegistrarError):
            await make_client(handler).register('example.com', 1)

    async def test_business_rejection_is_terminal(self):
        def handler(request):
            return httpx.Response(422, json={'code': 'UNAVAILABLE_DOMAIN', 'message': 'Domain is not available'})

        with pytest.raises(TerminalRegistrarError) as exc_info:
            await make_client(handler).register('taken.com', 1)
        assert exc_info.value.code == 'UNAVAILABLE_DOMAIN'
        assert 'Domain is not available' in str(exc_info.value)

    async def test_unmanaged_zone(self):
        def handler(request):
            return httpx.Response(404, json={'code': 'NOT_FOUND', 'message': 'Zone not found'})

        with pytest.raises(TerminalRegistrarError) as exc_info:
            await make_client(handler).update_dns('elsewhere.com', [{'type': 'A', 'name': '@', 'value': '1.2.3.4'}])
        assert exc_info.value.code == 'zone_unmanaged'

    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout('read timed out', request=request)

        with pytest.raises(RetryableRegistrarError) as exc_info:
            await make_client(handler).register('example.com', 1)
        assert exc_info.value.code == 'timeout'

    async def test_connection_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError('connection refused', request=request)

        with pytest.raises(RetryableRegistrarError) as exc_info:
            await make_client(handler).register('example.com', 1)
        assert exc_info.value.code == 'network'

    async def test_non_json_error_body(self):
        def handler(request):
            return httpx.Response(403, text='<html>Forbidden</html>')

        with pytest.raises(TerminalRegistrarError) as exc_info:
            await make_client(handler).cancel_order('example.com', 'order-1')
        assert exc_info.value.code == 'http_403'

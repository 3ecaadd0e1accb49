"""
Registrar API integration
Abstract registrar interface plus an httpx client for a GoDaddy-style REST API.
Transport failures, 429 and 5xx map to RetryableRegistrarError; business
rejections map to TerminalRegistrarError.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from errors import RetryableRegistrarError, TerminalRegistrarError

logger = logging.getLogger(__name__)

TRANSFER_PENDING = 'pending'
TRANSFER_CONFIRMED = 'confirmed'
TRANSFER_REJECTED = 'rejected'

# GoDaddy reports prices in micro-units of the currency
_PRICE_MICROS = Decimal(1_000_000)

_CONFIRMED_STATUSES = {'ACTIVE'}
_REJECTED_STATUSES = {'CANCELLED', 'TRANSFER_REJECTED', 'TRANSFER_FAILED', 'CANCELLED_TRANSFER'}


class RegistrarClient(ABC):
    """Operations the lifecycle workers need from a registrar"""

    @abstractmethod
    async def check_availability(self, domain_name: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def register(self, domain_name: str, term_years: int,
                       contact: Optional[Dict[str, Any]] = None) -> str:
        """Purchase the domain and return the registrar order id"""

    @abstractmethod
    async def renew(self, domain_name: str, term_years: int) -> str:
        """Renew the domain and return the registrar order id"""

    @abstractmethod
    async def update_dns(self, domain_name: str, records: List[Dict[str, Any]]) -> None:
        """Replace the zone's record set"""

    @abstractmethod
    async def initiate_transfer(self, domain_name: str, auth_code: str) -> str:
        """Start an inbound transfer and return the transfer id"""

    @abstractmethod
    async def get_transfer_status(self, domain_name: str, transfer_id: str) -> str:
        """One of 'pending', 'confirmed' or 'rejected'"""

    @abstractmethod
    async def cancel_order(self, domain_name: str, order_id: str) -> None:
        """Cancel (refund) a purchase made by register"""

    async def close(self) -> None:
        pass


class HttpRegistrarClient(RegistrarClient):
    """GoDaddy-style REST client"""

    def __init__(self, base_url: str, api_key: str, api_secret: str, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if not api_key or not api_secret:
            logger.warning("⚠️ Registrar API credentials not configured")

    def _init_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=30.0)
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                limits=limits,
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                headers={
                    'Authorization': f'sso-key {self.api_key}:{self.api_secret}',
                    'Accept': 'application/json',
                    'User-Agent': 'DomainBay-Worker/1.0',
                },
                transport=self._transport,
            )
            logger.info(f"🚀 Initialized registrar HTTP client for {self.base_url}")
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            logger.info("🔌 Registrar HTTP client closed")

    async def _request(self, method: str, path: str, operation: str,
                       not_found_code: Optional[str] = None, allow_not_found: bool = False,
                       **kwargs) -> httpx.Response:
        """Send one request and translate failures into the registrar error taxonomy"""
        client = self._init_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"⏱️ Registrar {operation} timed out: {e}")
            raise RetryableRegistrarError(f"Registrar {operation} timed out", code='timeout')
        except httpx.TransportError as e:
            logger.warning(f"🌐 Registrar {operation} network error: {e}")
            raise RetryableRegistrarError(f"Registrar {operation} network error: {e}", code='network')

        if response.is_success or (allow_not_found and response.status_code == 404):
            return response

        body = self._error_body(response)
        code = body.get('code')
        message = body.get('message') or response.text[:200]

        if response.status_code == 429:
            retry_after = self._retry_after(response, body)
            logger.warning(f"🚦 Registrar {operation} throttled (retry after {retry_after}s)")
            raise RetryableRegistrarError(f"Registrar rate limited {operation}", code='rate_limited',
                                          retry_after=retry_after)
        if response.status_code >= 500:
            logger.warning(f"⚠️ Registrar {operation} failed with HTTP {response.status_code}: {message}")
            raise RetryableRegistrarError(f"Registrar {operation} HTTP {response.status_code}: {message}",
                                          code=code or 'server_error')
        if response.status_code == 404 and not_found_code:
            code = not_found_code

        logger.error(f"❌ Registrar rejected {operation}: HTTP {response.status_code} {code} - {message}")
        raise TerminalRegistrarError(f"Registrar rejected {operation}: {message}",
                                     code=code or f'http_{response.status_code}')

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _retry_after(response: httpx.Response, body: Dict[str, Any]) -> Optional[float]:
        raw = response.headers.get('Retry-After', body.get('retryAfterSec'))
        if raw is None:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None

    async def check_availability(self, domain_name: str) -> Dict[str, Any]:
        response = await self._request('GET', '/v1/domains/available', 'availability check',
                                       params={'domain': domain_name, 'checkType': 'FAST'})
        data = response.json()
        result: Dict[str, Any] = {'domain': domain_name, 'available': bool(data.get('available'))}
        if data.get('price') is not None:
            result['price'] = Decimal(data['price']) / _PRICE_MICROS
            result['currency'] = data.get('currency', 'USD')
        return result

    async def register(self, domain_name: str, term_years: int,
                       contact: Optional[Dict[str, Any]] = None) -> str:
        body: Dict[str, Any] = {'domain': domain_name, 'period': term_years, 'privacy': False, 'renewAuto': False}
        if contact:
            body['contactRegistrant'] = contact
            body['contactAdmin'] = contact
            body['contactTech'] = contact
            body['contactBilling'] = contact
        response = await self._request('POST', '/v1/domains/purchase', 'registration', json=body)
        order_id = str(response.json()['orderId'])
        logger.info(f"✅ Registrar purchase for {domain_name}: order {order_id}")
        return order_id

    async def renew(self, domain_name: str, term_years: int) -> str:
        response = await self._request('POST', f'/v1/domains/{domain_name}/renew', 'renewal',
                                       json={'period': term_years})
        order_id = str(response.json()['orderId'])
        logger.info(f"✅ Registrar renewal for {domain_name}: order {order_id}")
        return order_id

    async def update_dns(self, domain_name: str, records: List[Dict[str, Any]]) -> None:
        body = []
        for record in records:
            entry: Dict[str, Any] = {
                'type': record['type'],
                'name': record['name'],
                'data': record['value'],
                'ttl': record.get('ttl', 3600),
            }
            if 'priority' in record:
                entry['priority'] = record['priority']
            body.append(entry)
        await self._request('PUT', f'/v1/domains/{domain_name}/records', 'DNS update',
                            not_found_code='zone_unmanaged', json=body)
        logger.info(f"✅ Registrar DNS updated for {domain_name} ({len(body)} records)")

    async def initiate_transfer(self, domain_name: str, auth_code: str) -> str:
        response = await self._request('POST', f'/v1/domains/{domain_name}/transfer', 'transfer',
                                       json={'authCode': auth_code, 'period': 1, 'privacy': False})
        transfer_id = str(response.json()['orderId'])
        logger.info(f"✅ Registrar transfer initiated for {domain_name}: {transfer_id}")
        return transfer_id

    async def get_transfer_status(self, domain_name: str, transfer_id: str) -> str:
        response = await self._request('GET', f'/v1/domains/{domain_name}', 'transfer status',
                                       allow_not_found=True)
        # Domain not visible in the account yet
        if response.status_code == 404:
            return TRANSFER_PENDING

        status = str(response.json().get('status', '')).upper()
        if status in _CONFIRMED_STATUSES:
            return TRANSFER_CONFIRMED
        if status in _REJECTED_STATUSES:
            return TRANSFER_REJECTED
        return TRANSFER_PENDING

    async def cancel_order(self, domain_name: str, order_id: str) -> None:
        await self._request('DELETE', f'/v1/domains/{domain_name}', 'order cancellation')
        logger.info(f"↩️ Registrar order {order_id} for {domain_name} cancelled")

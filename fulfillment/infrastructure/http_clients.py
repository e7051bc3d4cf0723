import httpx
import logging
from decimal import Decimal
from typing import Optional
import asyncio

from fulfillment.domain.models import (
    Item, TransferResult, RefundResult, BalanceResult, DeliveryRequest, DeliveryResult,
)
from fulfillment.domain.exceptions import CatalogServiceError, LedgerServiceError, DeliveryServiceError
from fulfillment.application.interfaces import (
    CatalogService, LedgerService, DeliveryService, NotificationsService, WebhookSender,
)

logger = logging.getLogger(__name__)


class HTTPCatalogClient(CatalogService):
    def __init__(self, base_url: str, api_token: str):
        self._base_url = base_url
        self._api_token = api_token

    async def get_item(self, item_id: str) -> Optional[Item]:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self._base_url}/api/catalog/items/{item_id}",
                    headers={"X-API-Key": self._api_token},
                    timeout=10.0
                )

                if response.status_code == 200:
                    return Item(**response.json())
                elif response.status_code == 404:
                    return None
                else:
                    raise CatalogServiceError(f"Catalog service error: {response.status_code}")

        except httpx.RequestError as e:
            logger.error(f"Catalog service connection error: {e}")
            raise CatalogServiceError(f"Catalog service unavailable: {str(e)}")


class HTTPLedgerClient(LedgerService):
    """Ledger API client. Transport errors and 5xx answers are retried with a fixed delay."""

    def __init__(self, base_url: str, api_token: str, max_attempts: int = 3, retry_delay: float = 1.0):
        self._base_url = base_url
        self._api_token = api_token
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    async def _request(self, method: str, path: str, json: dict = None) -> dict:
        last_error = None
        for attempt in range(self._max_attempts):
            try:
                async with httpx.AsyncClient() as client:
                    response = await client.request(
                        method,
                        f"{self._base_url}{path}",
                        json=json,
                        headers={"X-API-Key": self._api_token},
                        timeout=10.0
                    )
                if response.is_success:
                    return response.json()
                if response.status_code < 500:
                    # a client error does not get better with retries
                    raise LedgerServiceError(f"Ledger rejected {path}: {response.status_code} {response.text}")
                last_error = f"status {response.status_code}"
            except httpx.RequestError as e:
                last_error = str(e)

            logger.warning(f"Ledger call {path} failed (attempt {attempt + 1}/{self._max_attempts}): {last_error}")
            if attempt < self._max_attempts - 1:
                await asyncio.sleep(self._retry_delay)

        raise LedgerServiceError(f"Ledger unavailable after {self._max_attempts} attempts: {last_error}")

    async def transfer(self, from_account: str, to_account: str, amount: Decimal, transaction_ref: str) -> TransferResult:
        data = await self._request("POST", "/api/ledger/transfer", {
            "from_account": from_account,
            "to_account": to_account,
            "amount": str(amount),
            "transaction_ref": transaction_ref
        })
        return TransferResult(**data)

    async def refund(self, transaction_id: str, reason: str) -> RefundResult:
        data = await self._request("POST", "/api/ledger/refund", {
            "transaction_id": transaction_id,
            "reason": reason
        })
        return RefundResult(**data)

    async def get_balance(self, account_number: str) -> BalanceResult:
        data = await self._request("GET", f"/api/ledger/balance/{account_number}")
        return BalanceResult(**data)


class HTTPDeliveryClient(DeliveryService):
    def __init__(self, base_url: str, api_token: str):
        self._base_url = base_url
        self._api_token = api_token

    async def create_delivery(self, request: DeliveryRequest) -> DeliveryResult:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self._base_url}/api/deliveries",
                    json=request.model_dump(),
                    headers={"X-API-Key": self._api_token},
                    timeout=10.0
                )
        except httpx.RequestError as e:
            logger.error(f"Delivery service connection error: {e}")
            raise DeliveryServiceError(f"Delivery service unavailable: {str(e)}")

        if response.status_code >= 500:
            raise DeliveryServiceError(f"Delivery service error: {response.status_code}")
        return DeliveryResult(**response.json())

    async def cancel_delivery(self, delivery_id: str) -> bool:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self._base_url}/api/deliveries/{delivery_id}/cancel",
                    headers={"X-API-Key": self._api_token},
                    timeout=10.0
                )
        except httpx.RequestError as e:
            raise DeliveryServiceError(f"Delivery service unavailable: {str(e)}")

        if response.status_code == 200:
            return True
        if response.status_code in (404, 409):
            logger.warning(f"Delivery {delivery_id} not cancelled: {response.text}")
            return False
        raise DeliveryServiceError(f"Delivery service error: {response.status_code}")


class HTTPNotificationsClient(NotificationsService):
    def __init__(self, base_url: str, api_token: str, max_retries: int = 10, retry_delay: float = 1.0):
        self._base_url = base_url
        self._api_token = api_token
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    async def send(self, message: str, reference_id: str, idempotency_key: str, user_id: str) -> bool:
        """Customer notification with retries"""
        for attempt in range(self._max_retries):
            try:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        f"{self._base_url}/api/notifications",
                        json={
                            "message": message,
                            "reference_id": reference_id,
                            "idempotency_key": idempotency_key,
                            "user_id": user_id
                        },
                        headers={"X-API-Key": self._api_token},
                        timeout=10.0
                    )

                    if response.status_code == 201:
                        logger.info(f"Notification sent (attempt {attempt + 1})")
                        return True
                    else:
                        logger.warning(f"Notification returned status {response.status_code}")

            except Exception as e:
                logger.warning(f"Notification failed (attempt {attempt + 1}/{self._max_retries}): {e}")

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_delay)

        logger.error(f"Notification not sent after {self._max_retries} attempts")
        return False


class HTTPWebhookClient(WebhookSender):
    """Single POST; raises on transport errors and non-2xx answers"""

    def __init__(self, timeout: float = 5.0):
        self._timeout = timeout

    async def post(self, url: str, payload: dict) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.post(url, json=payload, timeout=self._timeout)
            response.raise_for_status()

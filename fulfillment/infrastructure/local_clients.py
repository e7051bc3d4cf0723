"""In-process collaborators for single-process deployments and tests"""
import logging
from decimal import Decimal

from fulfillment.domain.models import TransferResult, RefundResult, BalanceResult, DeliveryRequest, DeliveryResult
from fulfillment.domain.exceptions import DeliveryCancellationError, DeliveryNotFoundError
from fulfillment.application.interfaces import LedgerService, DeliveryService, NotificationsService
from fulfillment.application.transfer_funds import TransferFundsUseCase
from fulfillment.application.refund_transfer import RefundTransferUseCase
from fulfillment.application.get_balance import GetBalanceUseCase
from fulfillment.application.deliveries import CreateDeliveryUseCase, CancelDeliveryUseCase

logger = logging.getLogger(__name__)


class LocalLedgerClient(LedgerService):
    def __init__(self, unit_of_work):
        self._transfer = TransferFundsUseCase(unit_of_work)
        self._refund = RefundTransferUseCase(unit_of_work)
        self._balance = GetBalanceUseCase(unit_of_work)

    async def transfer(self, from_account: str, to_account: str, amount: Decimal, transaction_ref: str) -> TransferResult:
        return await self._transfer(from_account, to_account, amount, transaction_ref)

    async def refund(self, transaction_id: str, reason: str) -> RefundResult:
        return await self._refund(transaction_id, reason)

    async def get_balance(self, account_number: str) -> BalanceResult:
        return await self._balance(account_number)


class LocalDeliveryClient(DeliveryService):
    def __init__(self, unit_of_work):
        self._create = CreateDeliveryUseCase(unit_of_work)
        self._cancel = CancelDeliveryUseCase(unit_of_work)

    async def create_delivery(self, request: DeliveryRequest) -> DeliveryResult:
        return await self._create(request)

    async def cancel_delivery(self, delivery_id: str) -> bool:
        try:
            await self._cancel(delivery_id)
            return True
        except (DeliveryCancellationError, DeliveryNotFoundError) as e:
            logger.warning(f"Delivery {delivery_id} not cancelled: {e}")
            return False


class LoggingNotificationsClient(NotificationsService):
    """Used when no notifications service is configured"""

    async def send(self, message: str, reference_id: str, idempotency_key: str, user_id: str) -> bool:
        logger.info(f"Notification for user {user_id} about {reference_id}: {message}")
        return True

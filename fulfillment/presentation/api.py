from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config import settings
from fulfillment.database import get_db
from fulfillment.domain.models import BalanceResult, DeliveryRequest, DeliveryResult, HoldResult, RefundResult, TransferResult
from fulfillment.presentation import wiring
from fulfillment.presentation.schemas import (
    CreateOrderRequest, CancelOrderRequest, OrderResponse, TransferRequest, RefundRequest, OpenAccountRequest,
    AccountResponse, HoldRequest, UnholdRequest, UnholdResponse, RestockRequest, DeliveryResponse,
    DeliveryWebhookRequest, ErrorResponse,
)
from fulfillment.application.create_order import CreateOrderUseCase, CreateOrderDTO
from fulfillment.application.get_order import GetOrderUseCase
from fulfillment.application.cancel_order import CancelOrderUseCase
from fulfillment.application.transfer_funds import TransferFundsUseCase, OpenAccountUseCase
from fulfillment.application.refund_transfer import RefundTransferUseCase
from fulfillment.application.get_balance import GetBalanceUseCase
from fulfillment.application.reservations import HoldStockUseCase, UnholdStockUseCase, RestockUseCase
from fulfillment.application.deliveries import CreateDeliveryUseCase, GetDeliveryUseCase, CancelDeliveryUseCase
from fulfillment.application.process_inbox import ReceiveDeliveryUpdateUseCase
from fulfillment.domain.exceptions import (
    ItemNotFoundError, InsufficientStockError, InvalidAmountError, OrderNotFoundError, DeliveryNotFoundError,
    OrderCancellationError, DeliveryCancellationError, StaleVersionError,
    CatalogServiceError, LedgerServiceError, DeliveryServiceError,
)
from fulfillment.infrastructure.unit_of_work import UnitOfWork

router = APIRouter()


def _uow(db: AsyncSession) -> UnitOfWork:
    return UnitOfWork(lambda: db)


# Use case factories
def get_create_order_use_case(db: AsyncSession = Depends(get_db)):
    return CreateOrderUseCase(
        _uow(db), wiring.catalog_client(), wiring.notifications_client(),
        stock_attempts=settings.STOCK_HOLD_ATTEMPTS, stock_retry_delay=settings.STOCK_RETRY_DELAY
    )


def get_get_order_use_case(db: AsyncSession = Depends(get_db)):
    return GetOrderUseCase(_uow(db))


def get_cancel_order_use_case(db: AsyncSession = Depends(get_db)):
    return wiring.cancel_order_use_case(_uow(db))


def get_transfer_use_case(db: AsyncSession = Depends(get_db)):
    return TransferFundsUseCase(_uow(db))


def get_refund_use_case(db: AsyncSession = Depends(get_db)):
    return RefundTransferUseCase(_uow(db))


def get_balance_use_case(db: AsyncSession = Depends(get_db)):
    return GetBalanceUseCase(_uow(db))


def get_open_account_use_case(db: AsyncSession = Depends(get_db)):
    return OpenAccountUseCase(_uow(db))


def get_hold_use_case(db: AsyncSession = Depends(get_db)):
    return HoldStockUseCase(_uow(db), settings.STOCK_HOLD_ATTEMPTS, settings.STOCK_RETRY_DELAY)


def get_unhold_use_case(db: AsyncSession = Depends(get_db)):
    return UnholdStockUseCase(_uow(db), settings.STOCK_HOLD_ATTEMPTS, settings.STOCK_RETRY_DELAY)


def get_restock_use_case(db: AsyncSession = Depends(get_db)):
    return RestockUseCase(_uow(db))


def get_create_delivery_use_case(db: AsyncSession = Depends(get_db)):
    return CreateDeliveryUseCase(_uow(db))


def get_get_delivery_use_case(db: AsyncSession = Depends(get_db)):
    return GetDeliveryUseCase(_uow(db))


def get_cancel_delivery_use_case(db: AsyncSession = Depends(get_db)):
    return CancelDeliveryUseCase(_uow(db))


def get_receive_delivery_update_use_case(db: AsyncSession = Depends(get_db)):
    return ReceiveDeliveryUpdateUseCase(_uow(db))


# Store
@router.post(
    "/orders",
    response_model=OrderResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    status_code=status.HTTP_201_CREATED
)
async def create_order(
    request: CreateOrderRequest,
    use_case: CreateOrderUseCase = Depends(get_create_order_use_case)
):
    """Place an order and hold its stock"""
    try:
        order = await use_case(CreateOrderDTO(**request.model_dump()))
        return OrderResponse.from_domain(order)
    except (ItemNotFoundError, InvalidAmountError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (InsufficientStockError, StaleVersionError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except CatalogServiceError as e:
        raise HTTPException(status_code=503, detail=f"Service unavailable: {str(e)}")


@router.get(
    "/orders/{order_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}}
)
async def get_order(
    order_id: str,
    use_case: GetOrderUseCase = Depends(get_get_order_use_case)
):
    try:
        order = await use_case(order_id)
        return OrderResponse.from_domain(order)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")


@router.post(
    "/orders/{order_id}/cancel",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}}
)
async def cancel_order(
    order_id: str,
    request: CancelOrderRequest = CancelOrderRequest(),
    use_case: CancelOrderUseCase = Depends(get_cancel_order_use_case)
):
    """Cancel an order, refunding and releasing stock as needed"""
    try:
        order = await use_case(order_id, request.reason)
        return OrderResponse.from_domain(order)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except OrderCancellationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (LedgerServiceError, DeliveryServiceError) as e:
        raise HTTPException(status_code=503, detail=f"Service unavailable: {str(e)}")


@router.post("/delivery-webhook")
async def delivery_webhook(
    request: DeliveryWebhookRequest,
    use_case: ReceiveDeliveryUpdateUseCase = Depends(get_receive_delivery_update_use_case)
):
    """Carrier status callback; applied asynchronously by the inbox worker"""
    stored = await use_case(request.delivery_id, request.order_id, request.status)
    return {"status": "ok", "duplicate": not stored}


# Ledger
@router.post("/ledger/transfer", response_model=TransferResult)
async def transfer(
    request: TransferRequest,
    use_case: TransferFundsUseCase = Depends(get_transfer_use_case)
):
    return await use_case(request.from_account, request.to_account, request.amount, request.transaction_ref)


@router.post("/ledger/refund", response_model=RefundResult)
async def refund(
    request: RefundRequest,
    use_case: RefundTransferUseCase = Depends(get_refund_use_case)
):
    return await use_case(request.transaction_id, request.reason)


@router.get("/ledger/balance/{account_number}", response_model=BalanceResult)
async def get_balance(
    account_number: str,
    use_case: GetBalanceUseCase = Depends(get_balance_use_case)
):
    return await use_case(account_number)


@router.post("/ledger/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def open_account(
    request: OpenAccountRequest,
    use_case: OpenAccountUseCase = Depends(get_open_account_use_case)
):
    try:
        account = await use_case(request.owner, request.initial_balance, request.account_number)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return AccountResponse(**account.model_dump())


# Warehouse
@router.post(
    "/warehouse/hold",
    response_model=HoldResult,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}
)
async def hold(
    request: HoldRequest,
    use_case: HoldStockUseCase = Depends(get_hold_use_case)
):
    try:
        return await use_case(request.product_id, request.quantity, request.order_id)
    except InvalidAmountError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (InsufficientStockError, StaleVersionError) as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/warehouse/unhold", response_model=UnholdResponse, responses={409: {"model": ErrorResponse}})
async def unhold(
    request: UnholdRequest,
    use_case: UnholdStockUseCase = Depends(get_unhold_use_case)
):
    try:
        return UnholdResponse(released=await use_case(request.reservation_ids))
    except StaleVersionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/warehouse/restock", status_code=status.HTTP_204_NO_CONTENT)
async def restock(
    request: RestockRequest,
    use_case: RestockUseCase = Depends(get_restock_use_case)
):
    try:
        await use_case(request.warehouse_id, request.product_id, request.quantity)
    except InvalidAmountError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StaleVersionError as e:
        raise HTTPException(status_code=409, detail=str(e))


# Carrier
@router.post("/deliveries", response_model=DeliveryResult, status_code=status.HTTP_201_CREATED)
async def create_delivery(
    request: DeliveryRequest,
    use_case: CreateDeliveryUseCase = Depends(get_create_delivery_use_case)
):
    result = await use_case(request)
    if not result.success:
        return JSONResponse(status_code=400, content=result.model_dump())
    return result


@router.get("/deliveries/{delivery_id}", response_model=DeliveryResponse, responses={404: {"model": ErrorResponse}})
async def get_delivery(
    delivery_id: str,
    use_case: GetDeliveryUseCase = Depends(get_get_delivery_use_case)
):
    try:
        return DeliveryResponse.from_domain(await use_case(delivery_id))
    except DeliveryNotFoundError:
        raise HTTPException(status_code=404, detail="Delivery not found")


@router.post(
    "/deliveries/{delivery_id}/cancel",
    response_model=DeliveryResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}
)
async def cancel_delivery(
    delivery_id: str,
    use_case: CancelDeliveryUseCase = Depends(get_cancel_delivery_use_case)
):
    try:
        return DeliveryResponse.from_domain(await use_case(delivery_id))
    except DeliveryNotFoundError:
        raise HTTPException(status_code=404, detail="Delivery not found")
    except (DeliveryCancellationError, StaleVersionError) as e:
        raise HTTPException(status_code=409, detail=str(e))

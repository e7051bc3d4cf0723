"""Multi-warehouse stock reservation.

The module level functions work inside an open unit of work so callers can
combine a hold with their own writes in one transaction. The use case classes
wrap them in their own transaction with a bounded retry on version conflicts.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import List

from fulfillment.domain.models import (
    HoldResult, InventoryTransaction, InventoryTransactionType, WarehouseAllocation, WarehouseStock,
)
from fulfillment.domain.exceptions import InsufficientStockError, InvalidAmountError, StockConflictError

logger = logging.getLogger(__name__)

ROW_UPDATE_ATTEMPTS = 5


def _audit(type: InventoryTransactionType, product_id: str, warehouse_id: str, quantity: int,
           order_id=None, reservation_id=None) -> InventoryTransaction:
    return InventoryTransaction(
        id=str(uuid.uuid4()),
        product_id=product_id,
        warehouse_id=warehouse_id,
        quantity=quantity,
        type=type,
        order_id=order_id,
        reservation_id=reservation_id,
        created_at=datetime.now(timezone.utc)
    )


async def hold_stock(uow, product_id: str, quantity: int, order_id: str) -> HoldResult:
    """Greedy hold across warehouses, largest stock first.

    Raises InsufficientStockError before writing anything when the total is
    short, and StockConflictError when a concurrent writer bumped a version;
    the caller must then roll the whole transaction back.
    """
    if quantity <= 0:
        raise InvalidAmountError("Quantity must be positive")

    candidates = await uow.stock.get_candidates(product_id)
    available = sum(stock.quantity for stock in candidates)
    if available < quantity:
        raise InsufficientStockError(available, quantity)

    allocations: List[WarehouseAllocation] = []
    reservation_ids: List[str] = []
    remaining = quantity
    for stock in candidates:
        if remaining == 0:
            break
        take = min(stock.quantity, remaining)
        if not await uow.stock.compare_and_set_quantity(stock.id, stock.version, stock.quantity - take):
            raise StockConflictError(f"Stock of {product_id} in {stock.warehouse_id} changed concurrently")

        hold = _audit(InventoryTransactionType.HOLD, product_id, stock.warehouse_id, take, order_id=order_id)
        await uow.stock.add_audit(hold)
        allocations.append(WarehouseAllocation(warehouse_id=stock.warehouse_id, quantity=take))
        reservation_ids.append(hold.id)
        remaining -= take

    logger.info(f"Held {quantity} of {product_id} for order {order_id}: {[(a.warehouse_id, a.quantity) for a in allocations]}")
    return HoldResult(allocations=allocations, reservation_ids=reservation_ids)


async def _add_to_stock(uow, warehouse_id: str, product_id: str, quantity: int) -> None:
    for _ in range(ROW_UPDATE_ATTEMPTS):
        stock = await uow.stock.get_stock(warehouse_id, product_id)
        if stock is None:
            await uow.stock.create_stock(WarehouseStock(
                id=str(uuid.uuid4()),
                warehouse_id=warehouse_id,
                product_id=product_id,
                quantity=quantity,
                version=0
            ))
            return
        if await uow.stock.compare_and_set_quantity(stock.id, stock.version, stock.quantity + quantity):
            return
    raise StockConflictError(f"Could not update stock of {product_id} in {warehouse_id}")


async def unhold_stock(uow, reservation_ids: List[str]) -> int:
    """Returns held units to their warehouses. Unknown and already released ids are skipped."""
    holds = {
        row.id: row for row in await uow.stock.get_audit(list(reservation_ids))
        if row.type == InventoryTransactionType.HOLD
    }
    released = await uow.stock.get_answered(list(holds), InventoryTransactionType.UNHOLD)

    units = 0
    for reservation_id in reservation_ids:
        hold = holds.get(reservation_id)
        if hold is None:
            logger.warning(f"Reservation {reservation_id} not found, skipping")
            continue
        if reservation_id in released:
            logger.info(f"Reservation {reservation_id} already released, skipping")
            continue

        await _add_to_stock(uow, hold.warehouse_id, hold.product_id, hold.quantity)
        await uow.stock.add_audit(_audit(
            InventoryTransactionType.UNHOLD, hold.product_id, hold.warehouse_id, hold.quantity,
            order_id=hold.order_id, reservation_id=hold.id
        ))
        released.add(reservation_id)
        units += hold.quantity

    return units


async def confirm_stock(uow, reservation_ids: List[str]) -> int:
    """Records the held units as shipped out (one OUT row per reservation)"""
    holds = [
        row for row in await uow.stock.get_audit(list(reservation_ids))
        if row.type == InventoryTransactionType.HOLD
    ]
    ids = [hold.id for hold in holds]
    done = await uow.stock.get_answered(ids, InventoryTransactionType.OUT)
    done |= await uow.stock.get_answered(ids, InventoryTransactionType.UNHOLD)

    confirmed = 0
    for hold in holds:
        if hold.id in done:
            continue
        await uow.stock.add_audit(_audit(
            InventoryTransactionType.OUT, hold.product_id, hold.warehouse_id, hold.quantity,
            order_id=hold.order_id, reservation_id=hold.id
        ))
        confirmed += 1
    return confirmed


async def restock(uow, warehouse_id: str, product_id: str, quantity: int) -> None:
    if quantity <= 0:
        raise InvalidAmountError("Quantity must be positive")
    await _add_to_stock(uow, warehouse_id, product_id, quantity)
    await uow.stock.add_audit(_audit(InventoryTransactionType.IN, product_id, warehouse_id, quantity))


async def retry_on_conflict(operation, attempts: int, delay: float):
    """Runs `operation()` again on StockConflictError, up to `attempts` times"""
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except StockConflictError as e:
            if attempt == attempts:
                logger.error(f"Stock conflict persisted after {attempts} attempts: {e}")
                raise
            logger.warning(f"Stock conflict (attempt {attempt}/{attempts}): {e}")
            await asyncio.sleep(delay)


class HoldStockUseCase:
    def __init__(self, unit_of_work, max_attempts: int = 3, retry_delay: float = 0.1):
        self._uow = unit_of_work
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    async def __call__(self, product_id: str, quantity: int, order_id: str) -> HoldResult:
        async def attempt():
            async with self._uow() as uow:
                result = await hold_stock(uow, product_id, quantity, order_id)
                await uow.commit()
                return result

        return await retry_on_conflict(attempt, self._max_attempts, self._retry_delay)


class UnholdStockUseCase:
    def __init__(self, unit_of_work, max_attempts: int = 3, retry_delay: float = 0.1):
        self._uow = unit_of_work
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    async def __call__(self, reservation_ids: List[str]) -> int:
        async def attempt():
            async with self._uow() as uow:
                units = await unhold_stock(uow, reservation_ids)
                await uow.commit()
                return units

        return await retry_on_conflict(attempt, self._max_attempts, self._retry_delay)


class RestockUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, warehouse_id: str, product_id: str, quantity: int) -> None:
        async with self._uow() as uow:
            await restock(uow, warehouse_id, product_id, quantity)
            await uow.commit()
        logger.info(f"Restocked {quantity} of {product_id} in {warehouse_id}")

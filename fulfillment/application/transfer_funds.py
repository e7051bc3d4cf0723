import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from sqlalchemy.exc import IntegrityError

from fulfillment.domain.models import (
    LedgerAccount, LedgerTransaction, LedgerTransactionType, LedgerTransactionStatus, TransferResult,
)

logger = logging.getLogger(__name__)


def replay_transfer(existing: LedgerTransaction) -> TransferResult:
    """Outcome of a transfer that was already recorded under the same reference"""
    if existing.status == LedgerTransactionStatus.SUCCESS:
        return TransferResult(
            success=True,
            transaction_id=existing.id,
            message="Transaction already processed successfully"
        )
    return TransferResult(
        success=False,
        transaction_id=existing.id,
        message=existing.error_message or "Transaction failed"
    )


class TransferFundsUseCase:
    """Idempotent transfer keyed by the caller's transaction reference.

    Every attempt leaves exactly one row under its reference: SUCCESS when the
    money moved, FAILED with the reason otherwise. A repeated call returns the
    stored outcome without touching balances.
    """

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, from_account: str, to_account: str, amount: Decimal, transaction_ref: str) -> TransferResult:
        amount = Decimal(amount)
        async with self._uow() as uow:
            existing = await uow.ledger.get_transaction_by_ref(transaction_ref)
            if existing:
                logger.info(f"Transfer {transaction_ref} already recorded as {existing.status.value}")
                return replay_transfer(existing)

            error = await self._validate(uow, from_account, to_account, amount)
            if error is None:
                if await uow.ledger.debit(from_account, amount):
                    await uow.ledger.credit(to_account, amount)
                else:
                    error = "Insufficient balance"

            now = datetime.now(timezone.utc)
            transaction = LedgerTransaction(
                id=str(uuid.uuid4()),
                from_account=from_account,
                to_account=to_account,
                amount=amount,
                type=LedgerTransactionType.TRANSFER,
                status=LedgerTransactionStatus.FAILED if error else LedgerTransactionStatus.SUCCESS,
                transaction_ref=transaction_ref,
                error_message=error,
                created_at=now,
                completed_at=now
            )
            try:
                await uow.ledger.add_transaction(transaction)
                await uow.commit()
            except IntegrityError:
                # a concurrent call with the same reference won the insert
                await uow.rollback()
                winner = await uow.ledger.get_transaction_by_ref(transaction_ref)
                if winner is None:
                    raise
                logger.info(f"Transfer {transaction_ref} resolved by a concurrent request")
                return replay_transfer(winner)

        if error:
            logger.warning(f"Transfer {transaction_ref} failed: {error}")
            return TransferResult(success=False, transaction_id=transaction.id, message=error)

        logger.info(f"Transferred {amount} from {from_account} to {to_account} ({transaction_ref})")
        return TransferResult(success=True, transaction_id=transaction.id, message="Transfer completed")

    async def _validate(self, uow, from_account: str, to_account: str, amount: Decimal) -> Optional[str]:
        if amount <= 0:
            return "Amount must be positive"
        if from_account == to_account:
            return "Source and destination accounts must differ"
        source = await uow.ledger.get_account(from_account)
        if source is None:
            return f"Account {from_account} not found"
        if await uow.ledger.get_account(to_account) is None:
            return f"Account {to_account} not found"
        if source.balance < amount:
            return "Insufficient balance"
        return None


class OpenAccountUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, owner: str, initial_balance: Decimal = Decimal("0"),
                       account_number: Optional[str] = None) -> LedgerAccount:
        if Decimal(initial_balance) < 0:
            raise ValueError("Initial balance cannot be negative")
        account = LedgerAccount(
            account_number=account_number or f"ACC-{uuid.uuid4().hex[:12].upper()}",
            owner=owner,
            balance=Decimal(initial_balance)
        )
        async with self._uow() as uow:
            await uow.ledger.create_account(account)
            await uow.commit()
        logger.info(f"Opened ledger account {account.account_number} for {owner}")
        return account

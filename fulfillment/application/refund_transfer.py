import logging
import uuid
from datetime import datetime, timezone
from sqlalchemy.exc import IntegrityError

from fulfillment.domain.models import (
    LedgerTransaction, LedgerTransactionType, LedgerTransactionStatus, RefundResult,
)

logger = logging.getLogger(__name__)


def refund_reference(transaction_ref: str) -> str:
    return f"REFUND-{transaction_ref}"


class RefundTransferUseCase:
    """Reverses a successful transfer under the derived reference REFUND-<ref>.

    Failed refunds are stored without a reference so the derived key stays free
    for the next attempt.
    """

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, transaction_id: str, reason: str) -> RefundResult:
        async with self._uow() as uow:
            original = await uow.ledger.get_transaction(transaction_id)
            if original is None:
                return RefundResult(success=False, message=f"Transaction {transaction_id} not found")
            if original.type != LedgerTransactionType.TRANSFER or original.status != LedgerTransactionStatus.SUCCESS:
                return RefundResult(success=False, message="Only successful transfers can be refunded")

            ref = refund_reference(original.transaction_ref)
            existing = await uow.ledger.get_transaction_by_ref(ref)
            if existing and existing.status == LedgerTransactionStatus.SUCCESS:
                return RefundResult(
                    success=True,
                    refund_transaction_id=existing.id,
                    message="Refund already processed"
                )

            # money goes back the way it came
            source, destination = original.to_account, original.from_account
            error = None
            if await uow.ledger.get_account(source) is None or await uow.ledger.get_account(destination) is None:
                error = "Refund accounts not found"
            elif await uow.ledger.debit(source, original.amount):
                await uow.ledger.credit(destination, original.amount)
            else:
                error = f"Insufficient balance on {source} for refund"

            now = datetime.now(timezone.utc)
            refund = LedgerTransaction(
                id=str(uuid.uuid4()),
                from_account=source,
                to_account=destination,
                amount=original.amount,
                type=LedgerTransactionType.REFUND,
                status=LedgerTransactionStatus.FAILED if error else LedgerTransactionStatus.SUCCESS,
                transaction_ref=None if error else ref,
                original_transaction_id=original.id,
                error_message=error,
                reason=reason,
                created_at=now,
                completed_at=now
            )
            try:
                await uow.ledger.add_transaction(refund)
                await uow.commit()
            except IntegrityError:
                await uow.rollback()
                winner = await uow.ledger.get_transaction_by_ref(ref)
                if winner is None:
                    raise
                return RefundResult(success=True, refund_transaction_id=winner.id, message="Refund already processed")

        if error:
            logger.warning(f"Refund of {transaction_id} failed: {error}")
            return RefundResult(success=False, refund_transaction_id=refund.id, message=error)

        logger.info(f"Refunded transaction {transaction_id} ({reason})")
        return RefundResult(success=True, refund_transaction_id=refund.id, message="Refund completed")

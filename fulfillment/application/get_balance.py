from fulfillment.domain.models import BalanceResult


class GetBalanceUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, account_number: str) -> BalanceResult:
        async with self._uow() as uow:
            account = await uow.ledger.get_account(account_number)

        if account is None:
            return BalanceResult(success=False, account_number=account_number, message="Account not found")
        return BalanceResult(
            success=True,
            account_number=account_number,
            balance=account.balance,
            message="OK"
        )

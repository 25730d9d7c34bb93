"""
ChartOfAccountsService -- creates and maintains the chart of accounts.

Seeding is idempotent: accounts that already exist are left untouched, so
the same rate table can be applied on every start-up.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_config.schema import RateTable
from ledger_kernel.domain.dtos import AccountInfo
from ledger_kernel.exceptions import AccountNotFoundError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.account import Account, AccountStatus, AccountType

logger = get_logger("services.chart")


class ChartOfAccountsService:
    def __init__(self, session: Session):
        self._session = session

    def seed(self, rate_table: RateTable, actor_id: str = "system") -> list[AccountInfo]:
        """Create every account of the rate table's chart that is missing."""
        existing = {
            a.code: a for a in self._session.execute(select(Account)).scalars()
        }
        created = []
        for definition in rate_table.chart:
            if definition.code in existing:
                continue
            account_type = AccountType(definition.account_type)
            account = Account(
                code=definition.code,
                name=definition.name,
                account_type=account_type.value,
                normal_balance=account_type.normal_balance.value,
                balance=0,
                status=AccountStatus.ACTIVE.value,
                description=definition.description,
                created_by_id=actor_id,
            )
            self._session.add(account)
            created.append(account)
        self._session.flush()

        logger.info(
            "chart_of_accounts_seeded",
            extra={
                "rate_table_version": rate_table.version,
                "created_count": len(created),
                "existing_count": len(existing),
            },
        )
        return [a.to_dto() for a in created]

    def deactivate(self, code: str, actor_id: str = "system") -> AccountInfo:
        """Stop new postings to an account.  Its history and balance stay."""
        return self._set_status(code, AccountStatus.INACTIVE, actor_id)

    def activate(self, code: str, actor_id: str = "system") -> AccountInfo:
        return self._set_status(code, AccountStatus.ACTIVE, actor_id)

    def _set_status(self, code: str, status: AccountStatus, actor_id: str) -> AccountInfo:
        account = self._session.execute(
            select(Account).where(Account.code == code)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(code)
        account.status = status.value
        account.updated_by_id = actor_id
        self._session.flush()
        logger.info(
            "account_status_changed",
            extra={"account_code": code, "status": status.value},
        )
        return account.to_dto()

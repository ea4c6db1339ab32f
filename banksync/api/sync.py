"""Synchronization of accounts and transactions from the aggregator."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal

from banksync.api import AccountDetails, AggregatorClient, AggregatorError, Balance, BankTransaction
from banksync.config import SyncConfig
from banksync.db.models import (
    Account,
    CategorizationRule,
    LinkStatus,
    SyncLog,
    SyncStatus,
    Transaction,
)
from banksync.db.repository import Repository
from banksync.rules import CategoryResolver

log = logging.getLogger('banksync.sync')


@dataclass
class AccountSyncError:
    """An account that could not be synced this run."""

    external_account_id: str
    message: str


@dataclass
class SyncSummary:
    """What one sync run changed."""

    new_accounts: int = 0
    new_transactions: int = 0
    updated_accounts: int = 0
    errors: list[AccountSyncError] = field(default_factory=list)

    @property
    def has_new_data(self) -> bool:
        return self.new_accounts > 0 or self.new_transactions > 0


@dataclass
class SyncState:
    """Last sync outcome for a user and whether another sync is due."""

    last_sync: datetime | None
    status: SyncStatus | None
    needs_sync: bool


class Reconciler:
    """Pulls linked accounts from the aggregator into local storage.

    Accounts are upserted by external account ID and transactions by external
    transaction ID, so running it twice with no new upstream data changes
    nothing. A failure on one account is recorded and the rest continue.
    """

    def __init__(
        self,
        gateway: AggregatorClient,
        repo: Repository,
        resolver: CategoryResolver | None = None,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._gateway = gateway
        self._repo = repo
        self._resolver = resolver or CategoryResolver()
        self._config = config or SyncConfig()
        self._clock = clock

    async def sync(self, user_id: str) -> SyncSummary:
        """Sync every account of the user's linked links."""
        sync_log = await self._repo.record_sync_log(user_id, SyncStatus.IN_PROGRESS)
        summary = SyncSummary()
        try:
            account_ids = await self._linked_account_ids(user_id)
            rules = await self._repo.get_categorization_rules(user_id)
            log.info(f'Syncing {len(account_ids)} accounts for user {user_id}')
            for account_id in account_ids:
                try:
                    await self._sync_account(user_id, account_id, rules, summary)
                except AggregatorError as e:
                    log.error(f'Failed to sync account {account_id}: {e}')
                    summary.errors.append(AccountSyncError(account_id, str(e)))
        except Exception as e:
            await self._repo.update_sync_log(sync_log.id, SyncStatus.ERROR, str(e))
            raise
        await self._finish(sync_log, account_ids, summary)
        return summary

    async def status(self, user_id: str) -> SyncState:
        """Report the last sync and whether a new one is needed."""
        last = await self._repo.get_last_sync_log(user_id)
        if last is None:
            return SyncState(last_sync=None, status=None, needs_sync=True)
        stale_after = timedelta(hours=self._config.stale_after_hours)
        needs_sync = last.status is SyncStatus.ERROR or self._clock() - last.started_at > stale_after
        return SyncState(last_sync=last.started_at, status=last.status, needs_sync=needs_sync)

    async def _linked_account_ids(self, user_id: str) -> list[str]:
        """Aggregator account IDs of the user's linked links, de-duplicated in order."""
        links = await self._repo.get_links_for_user(user_id, [LinkStatus.LINKED])
        account_ids = []
        for link in links:
            for account_id in link.accounts:
                if account_id not in account_ids:
                    account_ids.append(account_id)
        return account_ids

    async def _sync_account(
        self,
        user_id: str,
        external_account_id: str,
        rules: list[CategorizationRule],
        summary: SyncSummary,
    ) -> None:
        """Fetch one account completely, then write it."""
        existing = await self._repo.get_account_by_external_id(external_account_id)
        today = self._clock().date()
        date_from = self._window_start(existing, today)

        details = await self._gateway.get_account_details(external_account_id)
        balances = await self._gateway.get_account_balances(external_account_id)
        bank_txns = await self._gateway.get_account_transactions(
            external_account_id, date_from, today
        )
        log.info(
            f'Account {external_account_id}: {len(bank_txns)} transactions since {date_from}'
        )

        account = self._to_account(user_id, details, balances)
        result = await self._repo.upsert_accounts(user_id, [account])
        saved = result.rows[0]
        if result.inserted:
            summary.new_accounts += 1
        else:
            summary.updated_accounts += 1

        txns = [self._to_transaction(saved, t) for t in bank_txns]
        txn_result = await self._repo.upsert_transactions(saved.id, txns)
        summary.new_transactions += len(txn_result.inserted)
        for txn in txn_result.inserted:
            category = self._resolver.resolve(txn, rules)
            await self._repo.set_auto_category(txn.id, category)

    def _window_start(self, existing: Account | None, today: date) -> date:
        """Start of the fetch window: overlap with the last sync, or the full lookback."""
        if existing is not None:
            return existing.last_updated.date() - timedelta(days=self._config.overlap_days)
        return today - timedelta(days=self._config.lookback_days)

    def _to_account(self, user_id: str, details: AccountDetails, balances: list[Balance]) -> Account:
        """Convert fetched account data to an Account row."""
        balance = balances[0] if balances else None
        currency = details.currency or (balance.currency if balance else None)
        return Account(
            id=None,
            user_id=user_id,
            external_account_id=details.id,
            name=details.display_name,
            iban=details.iban,
            currency=currency or self._config.default_currency,
            balance=balance.amount if balance else Decimal('0'),
            last_updated=self._clock(),
        )

    def _to_transaction(self, account: Account, txn: BankTransaction) -> Transaction:
        """Convert a bank transaction to a Transaction row."""
        return Transaction(
            id=None,
            account_id=account.id,
            external_transaction_id=txn.transaction_id,
            date=txn.booking_date,
            amount=txn.amount,
            currency=txn.currency or account.currency,
            description=txn.description,
            creditor_name=txn.creditor_name,
            debtor_name=txn.debtor_name,
        )

    async def _finish(self, sync_log: SyncLog, account_ids: list[str], summary: SyncSummary) -> None:
        """Close the sync log: an error only when every account failed."""
        if account_ids and len(summary.errors) == len(account_ids):
            message = '; '.join(f'{e.external_account_id}: {e.message}' for e in summary.errors)
            await self._repo.update_sync_log(sync_log.id, SyncStatus.ERROR, message)
            log.error(f'Sync failed for all {len(account_ids)} accounts')
            return
        await self._repo.update_sync_log(sync_log.id, SyncStatus.SUCCESS)
        log.info(
            f'Sync finished: {summary.new_accounts} new accounts, '
            f'{summary.new_transactions} new transactions, {len(summary.errors)} errors'
        )

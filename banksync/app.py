"""Application facade for bank linking, syncing and categorization."""

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from banksync.api import AggregatorClient, Institution
from banksync.api.backoff import BackoffExecutor
from banksync.api.link import LinkStateMachine, ResumePolicy, ResumeResult
from banksync.api.sync import AccountSyncError, Reconciler, SyncState, SyncSummary
from banksync.auth import CredentialStore, FileCredentialStore, TokenManager
from banksync.config import Config, load_config
from banksync.db.models import (
    Account,
    CategorizationRule,
    CategorySource,
    CategoryUpdate,
    Link,
    MatchType,
    Transaction,
)
from banksync.db.repository import Repository
from banksync.rules import CategoryResolver, RulesEngine, create_rule

log = logging.getLogger('banksync.app')

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(config: Config) -> None:
    """Set up root logging from config; HTTP client chatter is kept at WARNING."""
    logging.basicConfig(
        filename=str(config.logging.file) if config.logging.file else None,
        level=getattr(logging, config.logging.level, logging.INFO),
        format=LOG_FORMAT,
    )
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


class BankSyncApp:
    """Entry point for a host application.

    Use as an async context manager; it owns the database connection and
    the aggregator HTTP client for its lifetime.
    """

    def __init__(
        self,
        config: Config | None = None,
        credential_store: CredentialStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._config = config or load_config()
        self._credential_store = credential_store or FileCredentialStore(
            self._config.credentials.cache_path, self._config.security
        )
        self._sleep = sleep
        self._clock = clock
        self._resolver = CategoryResolver()
        self._repository: Repository | None = None
        self._gateway: AggregatorClient | None = None
        self._reconciler: Reconciler | None = None
        self._links: LinkStateMachine | None = None

    @property
    def config(self) -> Config:
        """Get application configuration."""
        return self._config

    @property
    def repository(self) -> Repository | None:
        """Get the database repository."""
        return self._repository

    async def __aenter__(self) -> "BankSyncApp":
        """Connect the database and open the aggregator client."""
        sync_config = self._config.sync
        self._repository = Repository(self._config.database.path, clock=self._clock)
        await self._repository.connect()
        tokens = TokenManager(self._config.aggregator, self._credential_store, clock=self._clock)
        backoff = BackoffExecutor(
            max_attempts=sync_config.max_attempts,
            base_delay=sync_config.base_delay,
            sleep=self._sleep,
        )
        self._gateway = AggregatorClient(self._config.aggregator, tokens, backoff)
        await self._gateway.__aenter__()
        self._reconciler = Reconciler(
            self._gateway, self._repository, self._resolver, sync_config, clock=self._clock
        )
        self._links = LinkStateMachine(
            self._gateway,
            self._repository,
            self._reconciler.sync,
            institutions=self._config.institutions,
            redirect_url=self._config.aggregator.redirect_url,
            language=self._config.aggregator.language,
            reference_prefix=sync_config.reference_prefix,
            policy=ResumePolicy(
                initial_delay=sync_config.link_initial_delay,
                retry_delay=sync_config.link_retry_delay,
            ),
            sleep=self._sleep,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close the aggregator client and the database."""
        if self._gateway:
            await self._gateway.__aexit__(exc_type, exc_val, exc_tb)
            self._gateway = None
        if self._repository:
            await self._repository.close()
            self._repository = None

    # Linking

    async def start_link(self, user_id: str, institution_id: str, reference: str | None = None) -> Link:
        """Create a bank link; send the user to ``link.redirect_url``."""
        return await self._links.start(user_id, institution_id, reference)

    async def on_app_foreground_after_link(self, user_id: str) -> ResumeResult:
        """Handle the app regaining focus after the user was sent to their bank."""
        return await self._links.resume(user_id)

    async def on_link_callback(self, reference: str, error: str | None = None) -> ResumeResult:
        """Handle the bank redirecting back with the link reference."""
        return await self._links.handle_callback(reference, error)

    async def find_link(self, reference: str, user_id: str | None = None) -> Link | None:
        """Find a link by the reference chosen when it was started."""
        return await self._links.find_link(reference, user_id)

    async def list_institutions(self, country: str | None = None) -> list[Institution]:
        """List the banks available for linking."""
        return await self._gateway.list_institutions(country)

    # Sync

    async def sync(self, user_id: str) -> SyncSummary:
        """Sync a user's accounts, first advancing any links still awaiting the bank."""
        _, failures = await self._links.refresh_pending(user_id)
        summary = await self._reconciler.sync(user_id)
        for failure in failures:
            summary.errors.append(AccountSyncError(failure.link.link_id, str(failure)))
        return summary

    async def get_sync_status(self, user_id: str) -> SyncState:
        """Report the last sync and whether a new one is due."""
        return await self._reconciler.status(user_id)

    async def get_accounts(self, user_id: str) -> list[Account]:
        return await self._repository.get_accounts_for_user(user_id)

    async def get_transactions(self, user_id: str) -> list[Transaction]:
        return await self._repository.get_transactions_for_user(user_id)

    # Categorization

    async def resolve_category(self, transaction_id: int) -> str:
        """Suggest a category for a stored transaction without saving it."""
        txn = await self._repository.get_transaction_by_id(transaction_id)
        if txn is None:
            raise LookupError(f"Transaction {transaction_id} not found")
        owner = await self._repository.get_transaction_owner(transaction_id)
        rules = await self._repository.get_categorization_rules(owner)
        return self._resolver.resolve(txn, rules)

    async def update_transaction_category(
        self,
        transaction_id: int,
        user_id: str,
        category: str,
        reason: CategorySource = CategorySource.MANUAL,
    ) -> CategoryUpdate:
        """Override a transaction's category, recording the change."""
        return await self._repository.update_transaction_category(
            transaction_id, user_id, category, reason
        )

    async def bulk_update_categories(
        self, transaction_ids: list[int], user_id: str, category: str
    ) -> list[CategoryUpdate]:
        """Override the category of several transactions at once.

        Every transaction is checked for ownership before any is changed.
        """
        for transaction_id in transaction_ids:
            if await self._repository.get_transaction_owner(transaction_id) != user_id:
                raise LookupError(f"Transaction {transaction_id} not found for user {user_id}")
        return [
            await self._repository.update_transaction_category(
                transaction_id, user_id, category, CategorySource.BULK
            )
            for transaction_id in transaction_ids
        ]

    async def apply_rules(self, user_id: str) -> int:
        """Apply the user's rules to transactions without a user category."""
        engine = RulesEngine(await self._repository.get_categorization_rules(user_id))
        if not engine.rules:
            return 0
        applied = 0
        for txn in await self._repository.get_transactions_for_user(
            user_id, without_user_category=True
        ):
            match = engine.find_match(txn)
            if match is None:
                continue
            await self._repository.update_transaction_category(
                txn.id, user_id, match.category, CategorySource.RULE
            )
            applied += 1
        log.info(f'Applied rules to {applied} transactions for user {user_id}')
        return applied

    async def get_category_updates(self, user_id: str, limit: int = 100) -> list[CategoryUpdate]:
        return await self._repository.get_category_updates(user_id, limit)

    # Rules

    async def list_rules(self, user_id: str) -> list[CategorizationRule]:
        """Get the user's rules in evaluation order."""
        return await self._repository.get_categorization_rules(user_id)

    async def add_rule(
        self,
        user_id: str,
        keyword: str,
        category: str,
        match_type: MatchType = MatchType.CONTAINS,
        priority: int = 0,
    ) -> CategorizationRule:
        """Create a categorization rule."""
        rule = create_rule(user_id, keyword, category, match_type, priority)
        return await self._repository.save_rule(rule)

    async def update_rule(
        self,
        rule_id: int,
        user_id: str,
        keyword: str | None = None,
        category: str | None = None,
        match_type: MatchType | None = None,
        priority: int | None = None,
    ) -> CategorizationRule:
        """Change any of a rule's keyword, category, match type or priority."""
        rule = await self._owned_rule(rule_id, user_id)
        changes = {
            name: value
            for name, value in (
                ("keyword", keyword),
                ("category", category),
                ("match_type", match_type),
                ("priority", priority),
            )
            if value is not None
        }
        return await self._repository.save_rule(dataclasses.replace(rule, **changes))

    async def delete_rule(self, rule_id: int, user_id: str) -> None:
        """Delete one of the user's rules."""
        await self._owned_rule(rule_id, user_id)
        await self._repository.delete_rule(rule_id)

    async def _owned_rule(self, rule_id: int, user_id: str) -> CategorizationRule:
        rule = await self._repository.get_rule_by_id(rule_id)
        if rule is None or rule.user_id != user_id:
            raise LookupError(f"Rule {rule_id} not found for user {user_id}")
        return rule

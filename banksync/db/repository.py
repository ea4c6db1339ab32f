"""Data access layer for SQLite database."""

import json
import logging
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import aiosqlite

from banksync.db.migrations import SCHEMA_VERSION, get_migration_sql
from banksync.db.models import (
    Account,
    CategorizationRule,
    CategorySource,
    CategoryUpdate,
    Link,
    LinkStatus,
    MatchType,
    SyncLog,
    SyncStatus,
    Transaction,
    UpsertResult,
)

log = logging.getLogger('banksync.db')

# SQLite caps bound parameters per statement.
_IN_CHUNK_SIZE = 500


class StorageConflict(Exception):
    """Raised when a write would move a row to another owner or reuse a unique key."""

    pass


class Repository:
    """Async repository for database operations."""

    def __init__(self, db_path: Path, clock: Callable[[], datetime] = datetime.now):
        self._db_path = db_path
        self._clock = clock
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Connect to the database and run migrations."""
        self._connection = await aiosqlite.connect(self._db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _run_migrations(self) -> None:
        """Run pending database migrations."""
        current_version = await self._get_schema_version()
        if current_version < SCHEMA_VERSION:
            log.info(f'Migrating database from version {current_version} to {SCHEMA_VERSION}')
            for sql in get_migration_sql(current_version, SCHEMA_VERSION):
                await self._connection.executescript(sql)
            await self._connection.commit()

    async def _get_schema_version(self) -> int:
        """Get current schema version from database."""
        try:
            cursor = await self._connection.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            row = await cursor.fetchone()
            return row["version"] if row else 0
        except aiosqlite.OperationalError:
            return 0

    # Link operations

    async def save_link(self, link: Link) -> Link:
        """Insert a new link or update an existing one by ID.

        A new link whose reference is already stored raises StorageConflict;
        existing rows are never rewritten through an insert.
        """
        now = self._clock().isoformat()
        accounts = json.dumps(link.accounts)
        if link.id is not None:
            await self._connection.execute(
                """UPDATE links SET link_id=?, status=?, accounts=?, redirect_url=?,
                   updated_at=? WHERE id=?""",
                (link.link_id, link.status.value, accounts, link.redirect_url, now, link.id),
            )
            await self._connection.commit()
            return await self.get_link_by_pk(link.id)
        try:
            cursor = await self._connection.execute(
                """INSERT INTO links (link_id, user_id, institution_id, reference,
                   status, accounts, redirect_url, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    link.link_id,
                    link.user_id,
                    link.institution_id,
                    link.reference,
                    link.status.value,
                    accounts,
                    link.redirect_url,
                    link.created_at.isoformat(),
                    now,
                ),
            )
            await self._connection.commit()
        except aiosqlite.IntegrityError as e:
            await self._connection.rollback()
            raise StorageConflict(f"Link reference {link.reference} is already in use") from e
        return await self.get_link_by_pk(cursor.lastrowid)

    async def update_link_status(
        self, link_pk: int, status: LinkStatus, accounts: list[str] | None = None
    ) -> Link | None:
        """Update a link's status and, when given, its aggregator account IDs."""
        now = self._clock().isoformat()
        if accounts is None:
            await self._connection.execute(
                "UPDATE links SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, now, link_pk),
            )
        else:
            await self._connection.execute(
                "UPDATE links SET status = ?, accounts = ?, updated_at = ? WHERE id = ?",
                (status.value, json.dumps(accounts), now, link_pk),
            )
        await self._connection.commit()
        return await self.get_link_by_pk(link_pk)

    async def get_link_by_pk(self, link_pk: int) -> Link | None:
        """Get link by local primary key."""
        cursor = await self._connection.execute("SELECT * FROM links WHERE id = ?", (link_pk,))
        row = await cursor.fetchone()
        return self._row_to_link(row) if row else None

    async def get_link_by_link_id(self, link_id: str) -> Link | None:
        """Get link by the aggregator's requisition ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM links WHERE link_id = ?", (link_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_link(row) if row else None

    async def get_link_by_reference(self, reference: str) -> Link | None:
        """Get link by its idempotent reference."""
        cursor = await self._connection.execute(
            "SELECT * FROM links WHERE reference = ?", (reference,)
        )
        row = await cursor.fetchone()
        return self._row_to_link(row) if row else None

    async def get_links_for_user(
        self, user_id: str, statuses: list[LinkStatus] | None = None
    ) -> list[Link]:
        """Get a user's links, newest first, optionally filtered by status."""
        query = "SELECT * FROM links WHERE user_id = ?"
        params: list = [user_id]
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        query += " ORDER BY created_at DESC, id DESC"
        cursor = await self._connection.execute(query, params)
        rows = await cursor.fetchall()
        return [self._row_to_link(row) for row in rows]

    def _row_to_link(self, row: aiosqlite.Row) -> Link:
        """Convert database row to Link object."""
        return Link(
            id=row["id"],
            link_id=row["link_id"],
            user_id=row["user_id"],
            institution_id=row["institution_id"],
            reference=row["reference"],
            status=LinkStatus(row["status"]),
            accounts=json.loads(row["accounts"]),
            redirect_url=row["redirect_url"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # Account operations

    async def upsert_accounts(self, user_id: str, accounts: list[Account]) -> UpsertResult[Account]:
        """Create or update accounts keyed by external account ID."""
        result: UpsertResult[Account] = UpsertResult()
        new_ids = set()
        try:
            for account in accounts:
                existing = await self.get_account_by_external_id(account.external_account_id)
                if existing is not None and existing.user_id != user_id:
                    raise StorageConflict(
                        f"Account {account.external_account_id} belongs to another user"
                    )
                if existing is None:
                    new_ids.add(account.external_account_id)
                await self._connection.execute(
                    """INSERT INTO accounts (user_id, external_account_id, name, iban,
                       currency, balance, last_updated)
                       VALUES (?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(external_account_id) DO UPDATE SET
                       name=excluded.name, iban=excluded.iban, currency=excluded.currency,
                       balance=excluded.balance, last_updated=excluded.last_updated""",
                    (
                        user_id,
                        account.external_account_id,
                        account.name,
                        account.iban,
                        account.currency,
                        str(account.balance),
                        account.last_updated.isoformat(),
                    ),
                )
            await self._connection.commit()
        except Exception:
            await self._connection.rollback()
            raise
        for account in accounts:
            saved = await self.get_account_by_external_id(account.external_account_id)
            result.rows.append(saved)
            if account.external_account_id in new_ids:
                result.inserted.append(saved)
        return result

    async def get_account_by_id(self, account_id: int) -> Account | None:
        """Get account by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_account(row) if row else None

    async def get_account_by_external_id(self, external_account_id: str) -> Account | None:
        """Get account by aggregator account ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM accounts WHERE external_account_id = ?", (external_account_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_account(row) if row else None

    async def get_accounts_for_user(self, user_id: str) -> list[Account]:
        """Get all accounts for a user."""
        cursor = await self._connection.execute(
            "SELECT * FROM accounts WHERE user_id = ? ORDER BY id", (user_id,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_account(row) for row in rows]

    def _row_to_account(self, row: aiosqlite.Row) -> Account:
        """Convert database row to Account object."""
        return Account(
            id=row["id"],
            user_id=row["user_id"],
            external_account_id=row["external_account_id"],
            name=row["name"],
            iban=row["iban"],
            currency=row["currency"],
            balance=Decimal(row["balance"]),
            last_updated=datetime.fromisoformat(row["last_updated"]),
        )

    # Transaction operations

    async def upsert_transactions(
        self, account_id: int, transactions: list[Transaction]
    ) -> UpsertResult[Transaction]:
        """Create or update transactions keyed by external transaction ID.

        Only the fetched fields are overwritten on conflict. ``category``,
        ``user_category`` and ``category_source`` are never touched here.
        """
        by_external_id = {t.external_transaction_id: t for t in transactions}
        existing = await self._existing_transaction_ids(list(by_external_id))
        now = self._clock().isoformat()
        try:
            for txn in by_external_id.values():
                await self._connection.execute(
                    """INSERT INTO transactions (account_id, external_transaction_id, date,
                       amount, currency, description, creditor_name, debtor_name,
                       created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(external_transaction_id) DO UPDATE SET
                       date=excluded.date, amount=excluded.amount,
                       currency=excluded.currency, description=excluded.description,
                       creditor_name=excluded.creditor_name,
                       debtor_name=excluded.debtor_name""",
                    (
                        account_id,
                        txn.external_transaction_id,
                        txn.date.isoformat(),
                        str(txn.amount),
                        txn.currency,
                        txn.description,
                        txn.creditor_name,
                        txn.debtor_name,
                        now,
                    ),
                )
            await self._connection.commit()
        except Exception:
            await self._connection.rollback()
            raise
        result: UpsertResult[Transaction] = UpsertResult()
        for external_id in by_external_id:
            saved = await self.get_transaction_by_external_id(external_id)
            result.rows.append(saved)
            if external_id not in existing:
                result.inserted.append(saved)
        return result

    async def _existing_transaction_ids(self, external_ids: list[str]) -> set[str]:
        """Return which of the given external IDs are already stored."""
        found = set()
        for start in range(0, len(external_ids), _IN_CHUNK_SIZE):
            chunk = external_ids[start:start + _IN_CHUNK_SIZE]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = await self._connection.execute(
                "SELECT external_transaction_id FROM transactions "
                f"WHERE external_transaction_id IN ({placeholders})",
                chunk,
            )
            rows = await cursor.fetchall()
            found.update(row["external_transaction_id"] for row in rows)
        return found

    async def get_transaction_by_id(self, txn_id: int) -> Transaction | None:
        """Get transaction by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_transaction(row) if row else None

    async def get_transaction_by_external_id(self, external_id: str) -> Transaction | None:
        """Get transaction by aggregator transaction ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM transactions WHERE external_transaction_id = ?", (external_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_transaction(row) if row else None

    async def get_transactions_for_user(
        self, user_id: str, without_user_category: bool = False
    ) -> list[Transaction]:
        """Get a user's transactions, newest first."""
        query = (
            "SELECT t.* FROM transactions t JOIN accounts a ON a.id = t.account_id "
            "WHERE a.user_id = ?"
        )
        if without_user_category:
            query += " AND t.user_category IS NULL"
        query += " ORDER BY t.date DESC, t.id DESC"
        cursor = await self._connection.execute(query, (user_id,))
        rows = await cursor.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    async def get_transaction_owner(self, txn_id: int) -> str | None:
        """Get the user ID owning a transaction through its account."""
        cursor = await self._connection.execute(
            "SELECT a.user_id FROM transactions t JOIN accounts a ON a.id = t.account_id "
            "WHERE t.id = ?",
            (txn_id,),
        )
        row = await cursor.fetchone()
        return row["user_id"] if row else None

    async def set_auto_category(self, txn_id: int, category: str) -> bool:
        """Write the detected category once. Returns False if one was already set."""
        cursor = await self._connection.execute(
            "UPDATE transactions SET category = ?, category_source = ? "
            "WHERE id = ? AND category IS NULL",
            (category, CategorySource.AUTO.value, txn_id),
        )
        await self._connection.commit()
        return cursor.rowcount == 1

    async def update_transaction_category(
        self,
        txn_id: int,
        user_id: str,
        new_category: str,
        reason: CategorySource = CategorySource.MANUAL,
    ) -> CategoryUpdate:
        """Set a transaction's user category and append the audit record."""
        txn = await self.get_transaction_by_id(txn_id)
        owner = await self.get_transaction_owner(txn_id)
        if txn is None or owner != user_id:
            raise LookupError(f"Transaction {txn_id} not found for user {user_id}")
        update = CategoryUpdate(
            id=None,
            transaction_id=txn_id,
            user_id=user_id,
            old_category=txn.user_category or txn.category,
            new_category=new_category,
            update_reason=reason,
            created_at=self._clock(),
        )
        try:
            await self._connection.execute(
                "UPDATE transactions SET user_category = ?, category_source = ? WHERE id = ?",
                (new_category, reason.value, txn_id),
            )
            cursor = await self._connection.execute(
                """INSERT INTO category_updates (transaction_id, user_id, old_category,
                   new_category, update_reason, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    txn_id,
                    user_id,
                    update.old_category,
                    new_category,
                    reason.value,
                    update.created_at.isoformat(),
                ),
            )
            await self._connection.commit()
        except Exception:
            await self._connection.rollback()
            raise
        update.id = cursor.lastrowid
        return update

    async def get_category_updates(self, user_id: str, limit: int = 100) -> list[CategoryUpdate]:
        """Get the user's category audit trail, newest first."""
        cursor = await self._connection.execute(
            "SELECT * FROM category_updates WHERE user_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (user_id, limit),
        )
        rows = await cursor.fetchall()
        return [
            CategoryUpdate(
                id=row["id"],
                transaction_id=row["transaction_id"],
                user_id=row["user_id"],
                old_category=row["old_category"],
                new_category=row["new_category"],
                update_reason=CategorySource(row["update_reason"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def _row_to_transaction(self, row: aiosqlite.Row) -> Transaction:
        """Convert database row to Transaction object."""
        source = row["category_source"]
        return Transaction(
            id=row["id"],
            account_id=row["account_id"],
            external_transaction_id=row["external_transaction_id"],
            date=date.fromisoformat(row["date"]),
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            description=row["description"],
            creditor_name=row["creditor_name"],
            debtor_name=row["debtor_name"],
            category=row["category"],
            user_category=row["user_category"],
            category_source=CategorySource(source) if source else None,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # Categorization rule operations

    async def save_rule(self, rule: CategorizationRule) -> CategorizationRule:
        """Save or update a categorization rule."""
        if rule.id is None:
            cursor = await self._connection.execute(
                """INSERT INTO categorization_rules (user_id, keyword, category,
                   match_type, priority, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    rule.user_id,
                    rule.keyword,
                    rule.category,
                    rule.match_type.value,
                    rule.priority,
                    rule.created_at.isoformat(),
                    rule.updated_at.isoformat(),
                ),
            )
            await self._connection.commit()
            rule_id = cursor.lastrowid
        else:
            await self._connection.execute(
                """UPDATE categorization_rules SET keyword=?, category=?, match_type=?,
                   priority=?, updated_at=? WHERE id=?""",
                (
                    rule.keyword,
                    rule.category,
                    rule.match_type.value,
                    rule.priority,
                    self._clock().isoformat(),
                    rule.id,
                ),
            )
            await self._connection.commit()
            rule_id = rule.id
        return await self.get_rule_by_id(rule_id)

    async def get_rule_by_id(self, rule_id: int) -> CategorizationRule | None:
        """Get rule by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM categorization_rules WHERE id = ?", (rule_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_rule(row) if row else None

    async def get_categorization_rules(self, user_id: str) -> list[CategorizationRule]:
        """Get a user's rules in evaluation order."""
        cursor = await self._connection.execute(
            "SELECT * FROM categorization_rules WHERE user_id = ? "
            "ORDER BY priority DESC, created_at ASC, id ASC",
            (user_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_rule(row) for row in rows]

    async def delete_rule(self, rule_id: int) -> None:
        """Delete a rule."""
        await self._connection.execute(
            "DELETE FROM categorization_rules WHERE id = ?", (rule_id,)
        )
        await self._connection.commit()

    def _row_to_rule(self, row: aiosqlite.Row) -> CategorizationRule:
        """Convert database row to CategorizationRule object."""
        return CategorizationRule(
            id=row["id"],
            user_id=row["user_id"],
            keyword=row["keyword"],
            category=row["category"],
            match_type=MatchType(row["match_type"]),
            priority=row["priority"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # Sync log operations

    async def record_sync_log(
        self, user_id: str, status: SyncStatus, error_message: str | None = None
    ) -> SyncLog:
        """Insert a sync log record."""
        started_at = self._clock()
        finished_at = None if status is SyncStatus.IN_PROGRESS else started_at
        cursor = await self._connection.execute(
            """INSERT INTO sync_logs (user_id, status, started_at, finished_at, error_message)
               VALUES (?, ?, ?, ?, ?)""",
            (
                user_id,
                status.value,
                started_at.isoformat(),
                finished_at.isoformat() if finished_at else None,
                error_message,
            ),
        )
        await self._connection.commit()
        return await self.get_sync_log_by_id(cursor.lastrowid)

    async def update_sync_log(
        self, log_id: int, status: SyncStatus, error_message: str | None = None
    ) -> SyncLog | None:
        """Move a sync log to its final status."""
        await self._connection.execute(
            "UPDATE sync_logs SET status = ?, error_message = ?, finished_at = ? WHERE id = ?",
            (status.value, error_message, self._clock().isoformat(), log_id),
        )
        await self._connection.commit()
        return await self.get_sync_log_by_id(log_id)

    async def get_sync_log_by_id(self, log_id: int) -> SyncLog | None:
        """Get sync log by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM sync_logs WHERE id = ?", (log_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_sync_log(row) if row else None

    async def get_last_sync_log(self, user_id: str) -> SyncLog | None:
        """Get the most recent sync log for a user."""
        cursor = await self._connection.execute(
            "SELECT * FROM sync_logs WHERE user_id = ? ORDER BY started_at DESC, id DESC LIMIT 1",
            (user_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_sync_log(row) if row else None

    def _row_to_sync_log(self, row: aiosqlite.Row) -> SyncLog:
        """Convert database row to SyncLog object."""
        finished_at = row["finished_at"]
        return SyncLog(
            id=row["id"],
            user_id=row["user_id"],
            status=SyncStatus(row["status"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=datetime.fromisoformat(finished_at) if finished_at else None,
            error_message=row["error_message"],
        )

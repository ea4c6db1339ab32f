"""Database schema migrations."""

SCHEMA_VERSION = 2

MIGRATIONS = {
    1: """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS links (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            link_id TEXT NOT NULL UNIQUE,
            user_id TEXT NOT NULL,
            institution_id TEXT NOT NULL,
            reference TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL DEFAULT 'created',
            accounts TEXT NOT NULL DEFAULT '[]',
            redirect_url TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_links_user_status
            ON links(user_id, status);

        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            external_account_id TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            iban TEXT,
            currency TEXT NOT NULL,
            balance TEXT NOT NULL,
            last_updated TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_accounts_user
            ON accounts(user_id);

        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            external_transaction_id TEXT NOT NULL UNIQUE,
            date TEXT NOT NULL,
            amount TEXT NOT NULL,
            currency TEXT NOT NULL,
            description TEXT NOT NULL,
            creditor_name TEXT,
            debtor_name TEXT,
            category TEXT,
            user_category TEXT,
            category_source TEXT,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_transactions_account
            ON transactions(account_id);
        CREATE INDEX IF NOT EXISTS idx_transactions_date
            ON transactions(date);

        CREATE TABLE IF NOT EXISTS sync_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            status TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            error_message TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_sync_logs_user
            ON sync_logs(user_id, started_at DESC);

        INSERT INTO schema_version (version) VALUES (1);
    """,
    2: """
        CREATE TABLE IF NOT EXISTS categorization_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            keyword TEXT NOT NULL,
            category TEXT NOT NULL,
            match_type TEXT NOT NULL DEFAULT 'contains',
            priority INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_rules_user_priority
            ON categorization_rules(user_id, priority DESC, created_at ASC);

        CREATE TABLE IF NOT EXISTS category_updates (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            transaction_id INTEGER NOT NULL REFERENCES transactions(id) ON DELETE CASCADE,
            user_id TEXT NOT NULL,
            old_category TEXT,
            new_category TEXT NOT NULL,
            update_reason TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_category_updates_user
            ON category_updates(user_id, created_at DESC);

        UPDATE schema_version SET version = 2;
    """,
}


def get_migration_sql(from_version: int, to_version: int) -> list[str]:
    """Get list of migration SQL statements to run."""
    statements = []
    for version in range(from_version + 1, to_version + 1):
        if version in MIGRATIONS:
            statements.append(MIGRATIONS[version])
    return statements

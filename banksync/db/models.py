"""Database models and schema definitions."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Generic, TypeVar

UNCATEGORIZED = "Uncategorized"

T = TypeVar("T")


class LinkStatus(Enum):
    """Local status of a bank link (requisition)."""

    CREATED = "created"
    AWAITING_AUTHENTICATION = "awaiting_authentication"
    LINKED = "linked"
    EXPIRED = "expired"
    ERROR = "error"

    @property
    def is_pending(self) -> bool:
        """Check if the link is still waiting on the user's bank authentication."""
        return self in (LinkStatus.CREATED, LinkStatus.AWAITING_AUTHENTICATION)

    @property
    def is_terminal(self) -> bool:
        """Check if the link reached a state that is never polled again."""
        return self in (LinkStatus.EXPIRED, LinkStatus.ERROR)


class MatchType(Enum):
    """Type of keyword matching for categorization rules."""

    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    EXACT = "exact"


class CategorySource(Enum):
    """Where a transaction's category came from."""

    AUTO = "auto"
    MANUAL = "manual"
    RULE = "rule"
    BULK = "bulk"


class SyncStatus(Enum):
    """Status of a sync attempt."""

    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class Link:
    """Bank connection request for one user and one institution."""

    id: int | None
    link_id: str
    user_id: str
    institution_id: str
    reference: str
    status: LinkStatus = LinkStatus.CREATED
    accounts: list[str] = field(default_factory=list)
    redirect_url: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class Account:
    """Bank account synced from the aggregator."""

    id: int | None
    user_id: str
    external_account_id: str
    name: str
    iban: str | None
    currency: str
    balance: Decimal
    last_updated: datetime = field(default_factory=datetime.now)


@dataclass
class Transaction:
    """Booked bank transaction."""

    id: int | None
    account_id: int | None
    external_transaction_id: str
    date: date
    amount: Decimal
    currency: str
    description: str
    creditor_name: str | None = None
    debtor_name: str | None = None
    category: str | None = None
    user_category: str | None = None
    category_source: CategorySource | None = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def effective_category(self) -> str:
        """Category shown to the user: override, then detected, then fallback."""
        return self.user_category or self.category or UNCATEGORIZED


@dataclass
class CategorizationRule:
    """User-defined keyword rule for auto-categorization."""

    id: int | None
    user_id: str
    keyword: str
    category: str
    match_type: MatchType = MatchType.CONTAINS
    priority: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class CategoryUpdate:
    """Audit record of an explicit category change."""

    id: int | None
    transaction_id: int
    user_id: str
    old_category: str | None
    new_category: str
    update_reason: CategorySource
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class SyncLog:
    """One sync attempt for a user."""

    id: int | None
    user_id: str
    status: SyncStatus
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    error_message: str | None = None


@dataclass
class UpsertResult(Generic[T]):
    """Rows written by a batch upsert, and which of them were new."""

    rows: list[T] = field(default_factory=list)
    inserted: list[T] = field(default_factory=list)

"""Open-banking aggregator API client module."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import TypeVar

import httpx

from banksync.api.backoff import BackoffExecutor
from banksync.auth import TokenManager
from banksync.config import AggregatorConfig

log = logging.getLogger('banksync.api')

T = TypeVar("T")


class AggregatorError(Exception):
    """Exception raised for aggregator API errors."""

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class RateLimited(AggregatorError):
    """The aggregator answered 429; retried by the backoff executor."""

    pass


class UpstreamError(AggregatorError):
    """Non-retryable aggregator failure: any other non-2xx or a transport error."""

    pass


@dataclass
class Requisition:
    """Aggregator-side bank link."""

    id: str
    status: str
    institution_id: str
    reference: str
    accounts: list[str]
    link: str | None
    redirect: str | None = None
    created: datetime | None = None


@dataclass
class Institution:
    """Bank supported by the aggregator."""

    id: str
    name: str
    bic: str | None
    transaction_total_days: int
    countries: list[str] = field(default_factory=list)
    logo: str | None = None


@dataclass
class AccountDetails:
    """Account metadata."""

    id: str
    iban: str | None
    name: str | None
    currency: str | None
    owner_name: str | None
    product: str | None
    cash_account_type: str | None

    @property
    def display_name(self) -> str:
        """Best available human name for the account."""
        return self.name or self.product or "Account"


@dataclass
class Balance:
    """One balance figure reported for an account."""

    amount: Decimal
    currency: str
    balance_type: str | None
    reference_date: date | None


@dataclass
class BankTransaction:
    """Booked transaction as reported by the bank."""

    transaction_id: str
    booking_date: date
    amount: Decimal
    currency: str
    description: str
    creditor_name: str | None
    debtor_name: str | None
    merchant_category_code: str | None = None
    bank_transaction_code: str | None = None


class AggregatorClient:
    """Async client for the aggregator's bank account data API.

    Every call fetches the bearer token from the token manager and runs
    through the backoff executor, so only 429 responses are retried. A 401
    is terminal for the call; the token manager's expiry tracking is what
    keeps it from happening.
    """

    def __init__(
        self,
        config: AggregatorConfig,
        tokens: TokenManager,
        backoff: BackoffExecutor | None = None,
    ):
        self._config = config
        self._tokens = tokens
        self._backoff = backoff or BackoffExecutor()
        self._base_url = config.base_url.rstrip("/") + "/"
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "AggregatorClient":
        """Enter async context."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Accept": "application/json"},
            timeout=self._config.request_timeout,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, endpoint: str, **kwargs) -> dict:
        """Send an authenticated request with rate-limit backoff."""
        if self._client is None:
            raise RuntimeError("AggregatorClient must be used as an async context manager")
        token = await self._tokens.get_valid_token()
        headers = {"Authorization": f"Bearer {token}"}

        async def call() -> dict:
            return await self._send(method, endpoint, headers, **kwargs)

        return await self._backoff.execute(call)

    async def _send(self, method: str, endpoint: str, headers: dict, **kwargs) -> dict:
        """Send one request and translate failures into aggregator errors."""
        try:
            response = await self._client.request(method, endpoint, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise UpstreamError(f"{method} {endpoint} failed: {e!r}") from e
        if response.status_code == 429:
            raise RateLimited(f"{method} {endpoint} rate limited", status_code=429)
        if response.is_error:
            detail = self._error_detail(response)
            log.error(f'Aggregator error {response.status_code} for {method} {endpoint}: {detail}')
            raise UpstreamError(
                f"{method} {endpoint} returned {response.status_code}",
                status_code=response.status_code,
                detail=detail,
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                f"{method} {endpoint} returned a body that is not JSON",
                status_code=response.status_code,
            ) from e

    def _error_detail(self, response: httpx.Response) -> str:
        """Extract the aggregator's error detail, if the body has one."""
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("summary") or body)
        return str(body)

    def _parse(self, endpoint: str, parse: Callable[[], T]) -> T:
        """Run a response parser, reporting malformed payloads as upstream errors."""
        try:
            return parse()
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise UpstreamError(f"Malformed response from {endpoint}: {e!r}") from e

    async def create_link(
        self,
        institution_id: str,
        redirect_url: str,
        reference: str,
        language: str | None = None,
    ) -> Requisition:
        """Create a requisition the user completes at their bank."""
        payload = {
            "redirect": redirect_url,
            "institution_id": institution_id,
            "reference": reference,
            "user_language": language or self._config.language,
        }
        log.info(f'Creating link for institution {institution_id} with reference {reference}')
        data = await self._request("POST", "requisitions/", json=payload)
        return self._parse("requisitions/", lambda: self._parse_requisition(data))

    async def get_link(self, link_id: str) -> Requisition:
        """Fetch a requisition's current status and accounts."""
        endpoint = f"requisitions/{link_id}/"
        data = await self._request("GET", endpoint)
        return self._parse(endpoint, lambda: self._parse_requisition(data))

    async def list_links(self) -> list[Requisition]:
        """Fetch every requisition of this installation, following pagination."""
        links = []
        endpoint: str | None = "requisitions/"
        while endpoint:
            data = await self._request("GET", endpoint)
            links.extend(
                self._parse(
                    endpoint,
                    lambda: [self._parse_requisition(r) for r in data.get("results", [])],
                )
            )
            endpoint = data.get("next")
        return links

    async def find_link_by_reference(self, reference: str) -> Requisition | None:
        """Find a requisition by the reference chosen when it was created.

        Linear scan over all requisitions; link counts per install are small.
        """
        for requisition in await self.list_links():
            if requisition.reference == reference:
                return requisition
        return None

    async def list_institutions(self, country: str | None = None) -> list[Institution]:
        """Fetch the banks available in a country."""
        data = await self._request(
            "GET", "institutions/", params={"country": country or self._config.country}
        )
        return self._parse("institutions/", lambda: [self._parse_institution(i) for i in data])

    async def get_account_details(self, account_id: str) -> AccountDetails:
        """Fetch account metadata."""
        endpoint = f"accounts/{account_id}/details/"
        data = await self._request("GET", endpoint)
        return self._parse(
            endpoint, lambda: self._parse_account_details(account_id, data.get("account", {}))
        )

    async def get_account_balances(self, account_id: str) -> list[Balance]:
        """Fetch an account's balances."""
        endpoint = f"accounts/{account_id}/balances/"
        data = await self._request("GET", endpoint)
        return self._parse(
            endpoint, lambda: [self._parse_balance(b) for b in data.get("balances", [])]
        )

    async def get_account_transactions(
        self,
        account_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[BankTransaction]:
        """Fetch booked transactions for an account in a date range.

        A malformed transaction fails the whole fetch with UpstreamError, so
        the account is reported and retried on the next sync.
        """
        params = {}
        if date_from:
            params["date_from"] = date_from.isoformat()
        if date_to:
            params["date_to"] = date_to.isoformat()
        endpoint = f"accounts/{account_id}/transactions/"
        data = await self._request("GET", endpoint, params=params)
        return self._parse(endpoint, lambda: self._parse_booked(account_id, data))

    def _parse_booked(self, account_id: str, data: dict) -> list[BankTransaction]:
        """Parse the booked transactions, skipping ones without id or date."""
        transactions = []
        for raw in data.get("transactions", {}).get("booked", []):
            txn = self._parse_transaction(raw)
            if txn is None:
                log.warning(f'Skipping transaction without id or date on account {account_id}')
                continue
            transactions.append(txn)
        return transactions

    def _parse_requisition(self, data: dict) -> Requisition:
        """Parse requisition data from API response."""
        created = data.get("created")
        return Requisition(
            id=data["id"],
            status=data.get("status", ""),
            institution_id=data.get("institution_id", ""),
            reference=data.get("reference", ""),
            accounts=list(data.get("accounts") or []),
            link=data.get("link"),
            redirect=data.get("redirect"),
            created=_parse_datetime(created) if created else None,
        )

    def _parse_institution(self, data: dict) -> Institution:
        """Parse institution data from API response."""
        return Institution(
            id=data["id"],
            name=data.get("name", data["id"]),
            bic=data.get("bic"),
            transaction_total_days=int(data.get("transaction_total_days") or 90),
            countries=list(data.get("countries") or []),
            logo=data.get("logo"),
        )

    def _parse_account_details(self, account_id: str, data: dict) -> AccountDetails:
        """Parse account details from API response."""
        return AccountDetails(
            id=account_id,
            iban=data.get("iban"),
            name=data.get("name"),
            currency=data.get("currency"),
            owner_name=data.get("ownerName"),
            product=data.get("product"),
            cash_account_type=data.get("cashAccountType"),
        )

    def _parse_balance(self, data: dict) -> Balance:
        """Parse one balance entry from API response."""
        amount = data.get("balanceAmount", {})
        reference_date = data.get("referenceDate")
        return Balance(
            amount=_parse_amount(amount.get("amount")),
            currency=amount.get("currency", ""),
            balance_type=data.get("balanceType"),
            reference_date=date.fromisoformat(reference_date) if reference_date else None,
        )

    def _parse_transaction(self, data: dict) -> BankTransaction | None:
        """Parse a booked transaction; None when it cannot be identified or dated."""
        transaction_id = data.get("transactionId") or data.get("internalTransactionId")
        booking_date = data.get("bookingDate") or data.get("valueDate")
        if not transaction_id or not booking_date:
            return None
        amount = data.get("transactionAmount", {})
        return BankTransaction(
            transaction_id=transaction_id,
            booking_date=date.fromisoformat(booking_date[:10]),
            amount=_parse_amount(amount.get("amount")),
            currency=amount.get("currency", ""),
            description=_describe(data),
            creditor_name=data.get("creditorName"),
            debtor_name=data.get("debtorName"),
            merchant_category_code=data.get("merchantCategoryCode"),
            bank_transaction_code=data.get("proprietaryBankTransactionCode"),
        )


def _parse_amount(value) -> Decimal:
    """Parse an amount string, treating garbage as zero."""
    try:
        return Decimal(str(value)) if value is not None else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def _parse_datetime(value: str) -> datetime:
    """Parse an ISO timestamp, accepting a trailing Z."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _describe(data: dict) -> str:
    """Pick the most descriptive text the bank gave for a transaction."""
    unstructured = data.get("remittanceInformationUnstructured")
    if unstructured:
        return unstructured
    lines = data.get("remittanceInformationUnstructuredArray") or []
    if lines:
        return " ".join(lines)
    return data.get("creditorName") or data.get("debtorName") or "Transaction"

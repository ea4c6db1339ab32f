"""Bank link lifecycle: create, wait for bank authentication, resume and sync."""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from banksync.api import AggregatorClient, AggregatorError
from banksync.api.sync import SyncSummary
from banksync.config import DEFAULT_REDIRECT_URL
from banksync.db.models import Link, LinkStatus
from banksync.db.repository import Repository

log = logging.getLogger('banksync.link')

# Aggregator requisition status codes; anything unlisted is still in progress.
AGGREGATOR_STATUSES = {
    'LN': LinkStatus.LINKED,
    'EX': LinkStatus.EXPIRED,
    'RJ': LinkStatus.ERROR,
    'SU': LinkStatus.ERROR,
}


class LinkFailure(Exception):
    """Base for problems with one link; carries the link concerned."""

    def __init__(self, message: str, link: Link):
        super().__init__(message)
        self.link = link


class LinkExpired(LinkFailure):
    """The user did not finish bank authentication in time."""

    pass


class LinkError(LinkFailure):
    """The bank or the user rejected the link."""

    pass


class LinkUnavailable(LinkFailure):
    """The aggregator could not report a pending link's status.

    Not terminal: the link stays pending and is checked again next time.
    """

    pass


class ResumeAction(Enum):
    WAIT = 'wait'
    SYNC = 'sync'
    SETTLE = 'settle'


class ResumeOutcome(Enum):
    """Result of returning to the app after a bank redirect."""

    NO_PENDING_LINK = 'no_pending_link'
    PENDING = 'pending'
    LINKED = 'linked'
    LINKED_AWAITING_DATA = 'linked_awaiting_data'


@dataclass(frozen=True)
class ResumeStep:
    action: ResumeAction
    delay: float = 0.0
    outcome: ResumeOutcome | None = None


@dataclass(frozen=True)
class ResumePolicy:
    """Two sync attempts after a bank redirect, each preceded by a delay.

    Banks often need a moment before a fresh link returns data, so the first
    sync waits ``initial_delay`` and, if it found nothing, a second one waits
    ``retry_delay``. No data after the second attempt is still a success.
    """

    initial_delay: float = 2.0
    retry_delay: float = 5.0
    max_syncs: int = 2

    def next_step(self, attempts: int, found_data: bool, waited: float) -> ResumeStep:
        """Decide what to do given sync attempts so far and time waited since the last one."""
        if attempts >= 1 and found_data:
            return ResumeStep(ResumeAction.SETTLE, outcome=ResumeOutcome.LINKED)
        if attempts >= self.max_syncs:
            return ResumeStep(ResumeAction.SETTLE, outcome=ResumeOutcome.LINKED_AWAITING_DATA)
        delay = self.initial_delay if attempts == 0 else self.retry_delay
        if waited < delay:
            return ResumeStep(ResumeAction.WAIT, delay=delay - waited)
        return ResumeStep(ResumeAction.SYNC)


@dataclass
class ResumeResult:
    outcome: ResumeOutcome
    summary: SyncSummary | None = None
    links: list[Link] = field(default_factory=list)
    failures: list[LinkFailure] = field(default_factory=list)


def map_aggregator_status(code: str) -> LinkStatus:
    """Translate an aggregator requisition status code to a local link status."""
    return AGGREGATOR_STATUSES.get(code, LinkStatus.AWAITING_AUTHENTICATION)


class LinkStateMachine:
    """Drives bank links from creation to linked accounts.

    The reference, not the aggregator's link id, is what a client keeps across
    restarts. Return from the bank is an event delivered to :meth:`resume` or
    :meth:`handle_callback`; it may come late or never, so pending links are
    only ever advanced by polling the aggregator.
    """

    def __init__(
        self,
        gateway: AggregatorClient,
        repo: Repository,
        sync: Callable[[str], Awaitable[SyncSummary]],
        institutions: dict[str, str] | None = None,
        redirect_url: str = DEFAULT_REDIRECT_URL,
        language: str | None = None,
        reference_prefix: str = 'banksync',
        policy: ResumePolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._gateway = gateway
        self._repo = repo
        self._sync = sync
        self._institutions = dict(institutions or {})
        self._redirect_url = redirect_url
        self._language = language
        self._reference_prefix = reference_prefix
        self._policy = policy or ResumePolicy()
        self._sleep = sleep

    def resolve_institution(self, institution: str) -> str:
        """Map an institution key to the aggregator's institution ID."""
        if not self._institutions:
            return institution
        if institution in self._institutions:
            return self._institutions[institution]
        if institution in self._institutions.values():
            return institution
        raise ValueError(f'Unknown institution: {institution}')

    def new_reference(self) -> str:
        """Generate a reference unique to one link attempt."""
        return f'{self._reference_prefix}-{uuid.uuid4().hex}'

    async def start(self, user_id: str, institution_id: str, reference: str | None = None) -> Link:
        """Create a link and mark it as waiting for the user's bank authentication.

        Starting again with the reference of the user's live link returns that
        link. A reference held by another user or by an ended link is refused.
        """
        if reference is not None:
            existing = await self._repo.get_link_by_reference(reference)
            if existing is not None:
                if existing.user_id != user_id:
                    raise ValueError(f'Reference {reference} belongs to another user')
                if existing.status.is_terminal:
                    raise ValueError(
                        f'Reference {reference} belongs to a link that has ended, use a new one'
                    )
                log.info(f'Link {reference} already exists, reusing it')
                return existing
        aggregator_id = self.resolve_institution(institution_id)
        reference = reference or self.new_reference()
        requisition = await self._gateway.create_link(
            aggregator_id, self._redirect_url, reference, self._language
        )
        link = await self._repo.save_link(
            Link(
                id=None,
                link_id=requisition.id,
                user_id=user_id,
                institution_id=aggregator_id,
                reference=reference,
                status=LinkStatus.CREATED,
                redirect_url=requisition.link,
            )
        )
        # The return signal is the only trigger we get, so record it before the redirect.
        link = await self._repo.update_link_status(link.id, LinkStatus.AWAITING_AUTHENTICATION)
        log.info(f'Link {link.link_id} created for user {user_id} at {aggregator_id}')
        return link

    async def find_link(self, reference: str, user_id: str | None = None) -> Link | None:
        """Look a link up by reference, locally first, then at the aggregator.

        A link found only at the aggregator is stored for ``user_id`` when given.
        """
        link = await self._repo.get_link_by_reference(reference)
        if link is not None:
            return link
        requisition = await self._gateway.find_link_by_reference(reference)
        if requisition is None:
            return None
        log.info(f'Recovered link {requisition.id} for reference {reference} from aggregator')
        link = Link(
            id=None,
            link_id=requisition.id,
            user_id=user_id or '',
            institution_id=requisition.institution_id,
            reference=requisition.reference,
            status=map_aggregator_status(requisition.status),
            accounts=requisition.accounts,
            redirect_url=requisition.link,
        )
        if user_id is None:
            return link
        return await self._repo.save_link(link)

    async def refresh(self, link: Link) -> Link:
        """Poll the aggregator for a link's status and persist any change.

        Raises LinkExpired or LinkError for links that ended without being linked.
        """
        if link.status.is_terminal:
            raise self._failure(link)
        requisition = await self._gateway.get_link(link.link_id)
        status = map_aggregator_status(requisition.status)
        accounts = requisition.accounts if status is LinkStatus.LINKED else None
        if status is not link.status or (accounts is not None and accounts != link.accounts):
            log.info(f'Link {link.link_id} is now {status.value}')
            link = await self._repo.update_link_status(link.id, status, accounts)
        if link.status.is_terminal:
            raise self._failure(link)
        return link

    async def resume(self, user_id: str) -> ResumeResult:
        """Handle the user returning to the app after the bank redirect."""
        pending = await self._repo.get_links_for_user(
            user_id, [LinkStatus.CREATED, LinkStatus.AWAITING_AUTHENTICATION]
        )
        if not pending:
            return ResumeResult(ResumeOutcome.NO_PENDING_LINK)
        return await self._continue(user_id, pending)

    async def handle_callback(self, reference: str, error: str | None = None) -> ResumeResult:
        """Handle an explicit return from the bank carrying the link reference."""
        link = await self.find_link(reference)
        if link is None or link.id is None:
            raise LookupError(f'No link with reference {reference}')
        if error:
            if link.status.is_terminal:
                raise self._failure(link)
            if link.status is LinkStatus.LINKED:
                log.warning(f'Ignoring error {error!r} for link {link.link_id}, already linked')
            else:
                link = await self._repo.update_link_status(link.id, LinkStatus.ERROR)
                raise LinkError(
                    f'Bank authentication failed for link {link.link_id}: {error}', link
                )
        if link.status is LinkStatus.LINKED:
            return await self._settle(link.user_id, [link])
        return await self._continue(link.user_id, [link])

    async def refresh_pending(self, user_id: str) -> tuple[list[Link], list[LinkFailure]]:
        """Refresh every pending link of a user, collecting per-link failures."""
        links = await self._repo.get_links_for_user(
            user_id, [LinkStatus.CREATED, LinkStatus.AWAITING_AUTHENTICATION]
        )
        return await self._refresh_all(links)

    async def _refresh_all(self, links: list[Link]) -> tuple[list[Link], list[LinkFailure]]:
        refreshed, failures = [], []
        for link in links:
            try:
                refreshed.append(await self.refresh(link))
            except (LinkExpired, LinkError) as e:
                log.warning(str(e))
                failures.append(e)
            except AggregatorError as e:
                log.warning(f'Could not check link {link.link_id}, leaving it pending: {e}')
                failure = LinkUnavailable(f'Link {link.link_id} status unavailable: {e}', link)
                failure.__cause__ = e
                failures.append(failure)
        return refreshed, failures

    async def _continue(self, user_id: str, links: list[Link]) -> ResumeResult:
        """Refresh the given pending links and sync if any became linked."""
        refreshed, failures = await self._refresh_all(links)
        linked = [link for link in refreshed if link.status is LinkStatus.LINKED]
        if linked:
            return await self._settle(user_id, linked, failures)
        ended = [f for f in failures if not isinstance(f, LinkUnavailable)]
        if ended:
            raise ended[0]
        return ResumeResult(ResumeOutcome.PENDING, links=refreshed, failures=failures)

    async def _settle(
        self, user_id: str, linked: list[Link], failures: list[LinkFailure] | None = None
    ) -> ResumeResult:
        """Run syncs per the resume policy until data arrives or attempts run out."""
        attempts = 0
        waited = 0.0
        summary = None
        while True:
            found_data = summary is not None and summary.has_new_data
            step = self._policy.next_step(attempts, found_data, waited)
            if step.action is ResumeAction.WAIT:
                await self._sleep(step.delay)
                waited += step.delay
            elif step.action is ResumeAction.SYNC:
                summary = await self._sync(user_id)
                attempts += 1
                waited = 0.0
            else:
                log.info(f'Resume for user {user_id} settled as {step.outcome.value}')
                return ResumeResult(
                    step.outcome, summary=summary, links=linked, failures=list(failures or [])
                )

    def _failure(self, link: Link) -> Exception:
        if link.status is LinkStatus.EXPIRED:
            return LinkExpired(f'Link {link.link_id} expired before authentication', link)
        return LinkError(f'Link {link.link_id} was rejected or suspended', link)

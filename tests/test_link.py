"""Tests for the bank link state machine."""

from unittest.mock import AsyncMock

import pytest

from banksync.api import Requisition, UpstreamError
from banksync.api.link import (
    LinkError,
    LinkExpired,
    LinkStateMachine,
    LinkUnavailable,
    ResumeAction,
    ResumeOutcome,
    ResumePolicy,
    map_aggregator_status,
)
from banksync.api.sync import SyncSummary
from banksync.db.models import Link, LinkStatus

INSTITUTIONS = {"danske": "DANSKEBANK_DABADKKK"}


def make_requisition(
    id: str = "req-1",
    status: str = "CR",
    reference: str = "link-42",
    accounts: list[str] | None = None,
) -> Requisition:
    """Create a test requisition."""
    return Requisition(
        id=id,
        status=status,
        institution_id="DANSKEBANK_DABADKKK",
        reference=reference,
        accounts=accounts or [],
        link=f"https://ob.gocardless.com/psd2/start/{id}",
    )


def make_machine(repository, gateway=None, sync=None, sleep=None) -> LinkStateMachine:
    """Create a state machine over a mocked gateway."""
    return LinkStateMachine(
        gateway or AsyncMock(),
        repository,
        sync or AsyncMock(return_value=SyncSummary()),
        institutions=INSTITUTIONS,
        redirect_url="http://localhost:3000/api/bank/callback",
        language="DA",
        sleep=sleep or AsyncMock(),
    )


async def save_pending_link(repository, user_id: str = "user-1", link_id: str = "req-1", reference: str = "link-42") -> Link:
    """Store a link awaiting bank authentication."""
    return await repository.save_link(
        Link(
            id=None,
            link_id=link_id,
            user_id=user_id,
            institution_id="DANSKEBANK_DABADKKK",
            reference=reference,
            status=LinkStatus.AWAITING_AUTHENTICATION,
        )
    )


class TestResumePolicy:
    """Tests for the post-redirect resume policy."""

    def test_waits_before_first_sync(self):
        """Test the first step waits the initial delay."""
        step = ResumePolicy().next_step(attempts=0, found_data=False, waited=0.0)
        assert step.action is ResumeAction.WAIT
        assert step.delay == 2.0

    def test_syncs_after_initial_delay(self):
        """Test a sync follows the initial wait."""
        step = ResumePolicy().next_step(attempts=0, found_data=False, waited=2.0)
        assert step.action is ResumeAction.SYNC

    def test_partial_wait_finishes_remaining_delay(self):
        """Test only the remaining delay is waited."""
        step = ResumePolicy().next_step(attempts=1, found_data=False, waited=3.0)
        assert step.action is ResumeAction.WAIT
        assert step.delay == 2.0

    def test_settles_linked_when_data_found(self):
        """Test data from the first sync settles as linked."""
        step = ResumePolicy().next_step(attempts=1, found_data=True, waited=0.0)
        assert step.action is ResumeAction.SETTLE
        assert step.outcome is ResumeOutcome.LINKED

    def test_retries_once_without_data(self):
        """Test no data after the first sync waits the retry delay."""
        step = ResumePolicy().next_step(attempts=1, found_data=False, waited=0.0)
        assert step.action is ResumeAction.WAIT
        assert step.delay == 5.0

    def test_settles_awaiting_data_after_second_sync(self):
        """Test no data after two syncs is a degraded success."""
        step = ResumePolicy().next_step(attempts=2, found_data=False, waited=0.0)
        assert step.action is ResumeAction.SETTLE
        assert step.outcome is ResumeOutcome.LINKED_AWAITING_DATA

    def test_zero_initial_delay_syncs_immediately(self):
        """Test an initial delay of zero starts with a sync."""
        step = ResumePolicy(initial_delay=0).next_step(attempts=0, found_data=False, waited=0.0)
        assert step.action is ResumeAction.SYNC


class TestMapAggregatorStatus:
    """Tests for aggregator status mapping."""

    @pytest.mark.parametrize(
        "code,expected",
        [
            ("LN", LinkStatus.LINKED),
            ("EX", LinkStatus.EXPIRED),
            ("RJ", LinkStatus.ERROR),
            ("SU", LinkStatus.ERROR),
            ("CR", LinkStatus.AWAITING_AUTHENTICATION),
            ("GA", LinkStatus.AWAITING_AUTHENTICATION),
            ("UA", LinkStatus.AWAITING_AUTHENTICATION),
        ],
    )
    def test_mapping(self, code, expected):
        """Test each aggregator code maps to the local status."""
        assert map_aggregator_status(code) is expected


class TestStart:
    """Tests for starting a link."""

    async def test_start_creates_awaiting_link(self, repository):
        """Test start persists a link awaiting authentication."""
        gateway = AsyncMock()
        gateway.create_link.return_value = make_requisition()
        machine = make_machine(repository, gateway)
        link = await machine.start("user-1", "danske")
        assert link.status is LinkStatus.AWAITING_AUTHENTICATION
        assert link.link_id == "req-1"
        assert link.institution_id == "DANSKEBANK_DABADKKK"
        assert link.redirect_url == "https://ob.gocardless.com/psd2/start/req-1"
        assert link.reference.startswith("banksync-")
        gateway.create_link.assert_awaited_once_with(
            "DANSKEBANK_DABADKKK", "http://localhost:3000/api/bank/callback", link.reference, "DA"
        )
        stored = await repository.get_link_by_reference(link.reference)
        assert stored.status is LinkStatus.AWAITING_AUTHENTICATION

    async def test_start_accepts_aggregator_id(self, repository):
        """Test an aggregator institution ID is accepted directly."""
        gateway = AsyncMock()
        gateway.create_link.return_value = make_requisition()
        machine = make_machine(repository, gateway)
        link = await machine.start("user-1", "DANSKEBANK_DABADKKK")
        assert link.institution_id == "DANSKEBANK_DABADKKK"

    async def test_start_unknown_institution(self, repository):
        """Test an unmapped institution is rejected before any call."""
        gateway = AsyncMock()
        machine = make_machine(repository, gateway)
        with pytest.raises(ValueError, match="Unknown institution"):
            await machine.start("user-1", "mystery-bank")
        gateway.create_link.assert_not_awaited()

    async def test_start_with_existing_reference_reuses_link(self, repository):
        """Test starting twice with one reference returns the same link."""
        gateway = AsyncMock()
        gateway.create_link.return_value = make_requisition()
        machine = make_machine(repository, gateway)
        first = await machine.start("user-1", "danske", reference="link-42")
        second = await machine.start("user-1", "danske", reference="link-42")
        assert second.id == first.id
        assert gateway.create_link.await_count == 1

    async def test_start_with_other_users_reference_refused(self, repository):
        """Test a reference held by another user is neither reused nor taken over."""
        owned = await save_pending_link(repository, user_id="user-a")
        gateway = AsyncMock()
        machine = make_machine(repository, gateway)
        with pytest.raises(ValueError, match="another user"):
            await machine.start("user-b", "danske", reference="link-42")
        gateway.create_link.assert_not_awaited()
        stored = await repository.get_link_by_reference("link-42")
        assert stored.id == owned.id
        assert stored.user_id == "user-a"
        assert await repository.get_links_for_user("user-b") == []

    async def test_start_with_ended_reference_refused(self, repository):
        """Test an expired link keeps its row when its reference is used again."""
        old = await save_pending_link(repository, link_id="req-old")
        await repository.update_link_status(old.id, LinkStatus.EXPIRED)
        gateway = AsyncMock()
        gateway.create_link.return_value = make_requisition(id="req-new")
        machine = make_machine(repository, gateway)
        with pytest.raises(ValueError, match="ended"):
            await machine.start("user-1", "danske", reference="link-42")
        gateway.create_link.assert_not_awaited()
        stored = await repository.get_link_by_pk(old.id)
        assert stored.link_id == "req-old"
        assert stored.status is LinkStatus.EXPIRED

    async def test_empty_mapping_passes_through(self, repository):
        """Test institutions are passed through when no mapping is configured."""
        gateway = AsyncMock()
        gateway.create_link.return_value = make_requisition()
        machine = LinkStateMachine(gateway, repository, AsyncMock())
        assert machine.resolve_institution("ANY_BANK") == "ANY_BANK"


class TestFindLink:
    """Tests for finding links by reference."""

    async def test_find_local_link(self, repository):
        """Test a stored link is found without calling the aggregator."""
        saved = await save_pending_link(repository)
        gateway = AsyncMock()
        machine = make_machine(repository, gateway)
        found = await machine.find_link("link-42")
        assert found.id == saved.id
        gateway.find_link_by_reference.assert_not_awaited()

    async def test_find_link_after_restart(self, repository):
        """Test a link lost locally is recovered from the aggregator with the same ID."""
        gateway = AsyncMock()
        gateway.find_link_by_reference.return_value = make_requisition(id="req-7")
        machine = make_machine(repository, gateway)
        found = await machine.find_link("link-42", user_id="user-1")
        assert found.link_id == "req-7"
        assert found.id is not None
        again = await machine.find_link("link-42")
        assert again.link_id == "req-7"
        assert gateway.find_link_by_reference.await_count == 1
        gateway.create_link.assert_not_awaited()

    async def test_find_link_without_user_not_persisted(self, repository):
        """Test a recovered link is not stored without an owner."""
        gateway = AsyncMock()
        gateway.find_link_by_reference.return_value = make_requisition(id="req-7")
        machine = make_machine(repository, gateway)
        found = await machine.find_link("link-42")
        assert found.link_id == "req-7"
        assert found.id is None
        assert await repository.get_link_by_reference("link-42") is None

    async def test_find_missing_link(self, repository):
        """Test None when no link has the reference."""
        gateway = AsyncMock()
        gateway.find_link_by_reference.return_value = None
        machine = make_machine(repository, gateway)
        assert await machine.find_link("nope") is None


class TestRefresh:
    """Tests for refreshing link status."""

    async def test_refresh_linked_stores_accounts(self, repository):
        """Test a linked requisition stores its accounts."""
        link = await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.return_value = make_requisition(status="LN", accounts=["acc-1"])
        machine = make_machine(repository, gateway)
        refreshed = await machine.refresh(link)
        assert refreshed.status is LinkStatus.LINKED
        assert refreshed.accounts == ["acc-1"]

    async def test_refresh_still_pending(self, repository):
        """Test an unfinished requisition stays awaiting authentication."""
        link = await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.return_value = make_requisition(status="UA")
        machine = make_machine(repository, gateway)
        refreshed = await machine.refresh(link)
        assert refreshed.status is LinkStatus.AWAITING_AUTHENTICATION

    async def test_refresh_expired(self, repository):
        """Test an expired requisition is persisted and raised."""
        link = await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.return_value = make_requisition(status="EX")
        machine = make_machine(repository, gateway)
        with pytest.raises(LinkExpired) as exc_info:
            await machine.refresh(link)
        assert exc_info.value.link.status is LinkStatus.EXPIRED
        stored = await repository.get_link_by_pk(link.id)
        assert stored.status is LinkStatus.EXPIRED

    async def test_refresh_rejected(self, repository):
        """Test a rejected requisition becomes an error."""
        link = await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.return_value = make_requisition(status="RJ")
        machine = make_machine(repository, gateway)
        with pytest.raises(LinkError):
            await machine.refresh(link)

    async def test_terminal_link_not_polled(self, repository):
        """Test terminal links raise without calling the aggregator."""
        link = await save_pending_link(repository)
        link = await repository.update_link_status(link.id, LinkStatus.EXPIRED)
        gateway = AsyncMock()
        machine = make_machine(repository, gateway)
        with pytest.raises(LinkExpired):
            await machine.refresh(link)
        gateway.get_link.assert_not_awaited()


class TestResume:
    """Tests for resuming after the bank redirect."""

    async def test_no_pending_link(self, repository):
        """Test resume without pending links does nothing."""
        sync = AsyncMock()
        machine = make_machine(repository, sync=sync)
        result = await machine.resume("user-1")
        assert result.outcome is ResumeOutcome.NO_PENDING_LINK
        sync.assert_not_awaited()

    async def test_still_pending(self, repository):
        """Test resume before the user finished at the bank."""
        await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.return_value = make_requisition(status="UA")
        sync = AsyncMock()
        machine = make_machine(repository, gateway, sync=sync)
        result = await machine.resume("user-1")
        assert result.outcome is ResumeOutcome.PENDING
        sync.assert_not_awaited()

    async def test_linked_with_data_on_first_sync(self, repository):
        """Test data on the first sync settles as linked after one wait."""
        await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.return_value = make_requisition(status="LN", accounts=["acc-1"])
        sync = AsyncMock(return_value=SyncSummary(new_accounts=1, new_transactions=12))
        sleep = AsyncMock()
        machine = make_machine(repository, gateway, sync=sync, sleep=sleep)
        result = await machine.resume("user-1")
        assert result.outcome is ResumeOutcome.LINKED
        assert result.summary.new_transactions == 12
        assert sync.await_count == 1
        assert [call.args[0] for call in sleep.await_args_list] == [2.0]

    async def test_linked_with_data_on_retry(self, repository):
        """Test an empty first sync is retried after the retry delay."""
        await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.return_value = make_requisition(status="LN", accounts=["acc-1"])
        sync = AsyncMock(side_effect=[SyncSummary(), SyncSummary(new_transactions=3)])
        sleep = AsyncMock()
        machine = make_machine(repository, gateway, sync=sync, sleep=sleep)
        result = await machine.resume("user-1")
        assert result.outcome is ResumeOutcome.LINKED
        assert sync.await_count == 2
        assert [call.args[0] for call in sleep.await_args_list] == [2.0, 5.0]

    async def test_linked_awaiting_data(self, repository):
        """Test two empty syncs settle as a degraded success."""
        await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.return_value = make_requisition(status="LN", accounts=["acc-1"])
        sync = AsyncMock(return_value=SyncSummary())
        machine = make_machine(repository, gateway, sync=sync)
        result = await machine.resume("user-1")
        assert result.outcome is ResumeOutcome.LINKED_AWAITING_DATA
        assert sync.await_count == 2

    async def test_all_links_failed_raises(self, repository):
        """Test resume raises when the only pending link expired."""
        await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.return_value = make_requisition(status="EX")
        machine = make_machine(repository, gateway)
        with pytest.raises(LinkExpired):
            await machine.resume("user-1")

    async def test_one_link_failed_other_linked(self, repository):
        """Test a failed link does not stop another from syncing."""
        await save_pending_link(repository, link_id="req-1", reference="link-1")
        await save_pending_link(repository, link_id="req-2", reference="link-2")
        gateway = AsyncMock()
        gateway.get_link.side_effect = lambda link_id: (
            make_requisition(id="req-1", status="RJ", reference="link-1")
            if link_id == "req-1"
            else make_requisition(id="req-2", status="LN", reference="link-2", accounts=["acc-2"])
        )
        sync = AsyncMock(return_value=SyncSummary(new_accounts=1))
        machine = make_machine(repository, gateway, sync=sync)
        result = await machine.resume("user-1")
        assert result.outcome is ResumeOutcome.LINKED
        assert [link.link_id for link in result.links] == ["req-2"]
        assert len(result.failures) == 1
        assert isinstance(result.failures[0], LinkError)
        assert result.failures[0].link.link_id == "req-1"


    async def test_unreachable_link_does_not_block_others(self, repository):
        """Test a status check failing upstream leaves that link pending and syncs the rest."""
        gone = await save_pending_link(repository, link_id="req-gone", reference="link-1")
        await save_pending_link(repository, link_id="req-2", reference="link-2")

        def get_link(link_id):
            if link_id == "req-gone":
                raise UpstreamError("GET requisitions/req-gone/ returned 404", status_code=404)
            return make_requisition(id="req-2", status="LN", reference="link-2", accounts=["acc-2"])

        gateway = AsyncMock()
        gateway.get_link.side_effect = get_link
        sync = AsyncMock(return_value=SyncSummary(new_accounts=1))
        machine = make_machine(repository, gateway, sync=sync)
        result = await machine.resume("user-1")
        assert result.outcome is ResumeOutcome.LINKED
        assert len(result.failures) == 1
        assert isinstance(result.failures[0], LinkUnavailable)
        assert result.failures[0].link.link_id == "req-gone"
        stored = await repository.get_link_by_pk(gone.id)
        assert stored.status is LinkStatus.AWAITING_AUTHENTICATION

    async def test_only_link_unreachable_stays_pending(self, repository):
        """Test an upstream error on the only pending link reports pending, not a crash."""
        await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.side_effect = UpstreamError("boom", status_code=500)
        sync = AsyncMock()
        machine = make_machine(repository, gateway, sync=sync)
        result = await machine.resume("user-1")
        assert result.outcome is ResumeOutcome.PENDING
        assert isinstance(result.failures[0], LinkUnavailable)
        sync.assert_not_awaited()

    async def test_refresh_pending_collects_unreachable(self, repository):
        """Test refresh_pending reports upstream errors instead of raising."""
        await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.side_effect = UpstreamError("boom", status_code=500)
        machine = make_machine(repository, gateway)
        links, failures = await machine.refresh_pending("user-1")
        assert links == []
        assert isinstance(failures[0].__cause__, UpstreamError)


class TestHandleCallback:
    """Tests for the bank redirect callback."""

    async def test_error_callback_for_linked_link_ignored(self, repository):
        """Test a late error flag does not retire a working link."""
        link = await save_pending_link(repository)
        await repository.update_link_status(link.id, LinkStatus.LINKED, ["acc-1"])
        sync = AsyncMock(return_value=SyncSummary(new_transactions=1))
        machine = make_machine(repository, sync=sync)
        result = await machine.handle_callback("link-42", error="access_denied")
        assert result.outcome is ResumeOutcome.LINKED
        stored = await repository.get_link_by_pk(link.id)
        assert stored.status is LinkStatus.LINKED
        assert stored.accounts == ["acc-1"]

    async def test_error_callback_for_expired_link(self, repository):
        """Test an error flag for an ended link raises its failure unchanged."""
        link = await save_pending_link(repository)
        await repository.update_link_status(link.id, LinkStatus.EXPIRED)
        machine = make_machine(repository)
        with pytest.raises(LinkExpired):
            await machine.handle_callback("link-42", error="access_denied")
        stored = await repository.get_link_by_pk(link.id)
        assert stored.status is LinkStatus.EXPIRED

    async def test_callback_links_and_syncs(self, repository):
        """Test a successful callback refreshes and syncs the link's user."""
        await save_pending_link(repository)
        gateway = AsyncMock()
        gateway.get_link.return_value = make_requisition(status="LN", accounts=["acc-1"])
        sync = AsyncMock(return_value=SyncSummary(new_transactions=1))
        machine = make_machine(repository, gateway, sync=sync)
        result = await machine.handle_callback("link-42")
        assert result.outcome is ResumeOutcome.LINKED
        sync.assert_awaited_with("user-1")

    async def test_callback_error_marks_link(self, repository):
        """Test an error flag marks the link as failed."""
        link = await save_pending_link(repository)
        machine = make_machine(repository)
        with pytest.raises(LinkError, match="access_denied"):
            await machine.handle_callback("link-42", error="access_denied")
        stored = await repository.get_link_by_pk(link.id)
        assert stored.status is LinkStatus.ERROR

    async def test_callback_unknown_reference(self, repository):
        """Test a callback for an unknown reference."""
        gateway = AsyncMock()
        gateway.find_link_by_reference.return_value = None
        machine = make_machine(repository, gateway)
        with pytest.raises(LookupError):
            await machine.handle_callback("nope")

    async def test_callback_for_already_linked(self, repository):
        """Test a late callback for a linked link still syncs."""
        link = await save_pending_link(repository)
        await repository.update_link_status(link.id, LinkStatus.LINKED, ["acc-1"])
        gateway = AsyncMock()
        sync = AsyncMock(return_value=SyncSummary(new_transactions=1))
        machine = make_machine(repository, gateway, sync=sync)
        result = await machine.handle_callback("link-42")
        assert result.outcome is ResumeOutcome.LINKED
        gateway.get_link.assert_not_awaited()

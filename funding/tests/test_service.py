"""
Unit Tests for the Funding Service

Tests cover:
1. Contribution flow and exact decimal accounting
2. Deadline boundary (inclusive)
3. Withdrawal flow (at most once)
4. Refund request and approval flow (deducted exactly once)
5. Derived project status
6. Concurrent contributions (no lost updates)
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import text

from funding.errors import (
    AlreadyWithdrawnError,
    DeadlinePassedError,
    ForbiddenError,
    GoalAlreadyMetError,
    GoalNotMetError,
    InvalidAmountError,
    InvalidInputError,
    ProjectInactiveError,
    ProjectNotFoundError,
    RefundAlreadyApprovedError,
    RefundNotFoundError,
    StateConflictError,
)
from funding.models import CreateProjectRequest, ProjectStatus, TransactionType

from .conftest import BACKER_ID, CREATOR_ID, OTHER_ID


def current_amount(service, project_id) -> Decimal:
    return Decimal(service.store.get_project(project_id).current_amount)


class TestProjectCreation:
    """Tests for project creation."""

    def test_create_project_starts_empty(self, make_project):
        project = make_project(goal="2.50", category="art")

        assert project.current_amount == "0"
        assert project.goal_amount == "2.50"
        assert project.category.value == "art"
        assert project.is_active and not project.withdrawn

    def test_past_deadline_rejected_at_creation(self, service, clock):
        request = CreateProjectRequest(
            title="Late", description="Too late",
            goal_amount="1", deadline=clock() - timedelta(seconds=1),
        )
        with pytest.raises(InvalidInputError):
            service.create_project(CREATOR_ID, request)

    @pytest.mark.parametrize("goal", ["0", "-5", "lots"])
    def test_invalid_goal_rejected(self, make_project, goal):
        with pytest.raises(InvalidAmountError):
            make_project(goal=goal)


class TestContributionFlow:
    """Tests for the contribution flow."""

    def test_contribution_updates_amount(self, service, make_project):
        """Test a demo contribution is recorded and added."""
        project = make_project(goal="10")

        tx = service.record_contribution(project.id, BACKER_ID, None, "0.25", "demo")

        assert tx.amount == "0.25"
        assert tx.transaction_type == TransactionType.DEMO
        assert tx.donor_id == BACKER_ID
        assert current_amount(service, project.id) == Decimal("0.25")

    def test_amount_is_exact_decimal_sum(self, service, make_project):
        """Test the running total is the exact decimal sum."""
        project = make_project(goal="100")
        amounts = ["0.1", "0.2", "0.3", "0.00000001", "12.345678901234567"]

        for amount in amounts:
            service.record_contribution(project.id, BACKER_ID, None, amount, "demo")

        expected = sum((Decimal(a) for a in amounts), Decimal("0"))
        assert current_amount(service, project.id) == expected

    def test_real_contribution_keeps_hash_demo_drops_it(self, service, make_project):
        project = make_project(goal="10")

        real = service.record_contribution(project.id, None, "0xwallet", "1", "real", "0xhash")
        demo = service.record_contribution(project.id, BACKER_ID, None, "1", "demo", "0xignored")

        assert real.transaction_hash == "0xhash"
        assert real.donor_id is None
        assert real.donor_wallet_address == "0xwallet"
        assert demo.transaction_hash is None

    @pytest.mark.parametrize("amount", ["-1", "abc", "0"])
    def test_invalid_amounts_rejected(self, service, make_project, amount):
        project = make_project()

        with pytest.raises(InvalidAmountError):
            service.record_contribution(project.id, BACKER_ID, None, amount, "demo")

        assert service.list_transactions(project.id) == []

    def test_invalid_transaction_type_rejected(self, service, make_project):
        project = make_project()

        with pytest.raises(InvalidInputError):
            service.record_contribution(project.id, BACKER_ID, None, "0.1", "crypto")

    def test_unknown_project(self, service):
        with pytest.raises(ProjectNotFoundError):
            service.record_contribution(404, BACKER_ID, None, "1", "demo")

    def test_unknown_projects_create_no_locks(self, service):
        """Test that made-up project ids never allocate a project lock."""
        for project_id in range(100000, 100050):
            with pytest.raises(ProjectNotFoundError):
                service.record_contribution(project_id, BACKER_ID, None, "1", "demo")
            with pytest.raises(ProjectNotFoundError):
                service.withdraw(project_id, CREATOR_ID)

        assert service.locks._locks == {}

    @pytest.mark.parametrize("field", ["wallet", "hash"])
    def test_oversized_references_rejected(self, service, make_project, field):
        project = make_project()
        wallet, tx_hash = ("0x" + "a" * 300, None) if field == "wallet" else (None, "0x" + "b" * 300)

        with pytest.raises(InvalidInputError):
            service.record_contribution(project.id, None, wallet, "0.1", "real", tx_hash)

        assert service.list_transactions(project.id) == []

    def test_inactive_project_rejected(self, service, make_project, engine):
        project = make_project()
        with engine.begin() as conn:
            conn.execute(text("UPDATE projects SET is_active = 0 WHERE id = :id"), {"id": project.id})

        with pytest.raises(ProjectInactiveError):
            service.record_contribution(project.id, BACKER_ID, None, "0.1", "demo")

    def test_goal_met_blocks_further_funding(self, service, make_project):
        """Test that a funded project accepts no more contributions."""
        project = make_project(goal="1")
        service.record_contribution(project.id, BACKER_ID, None, "1", "demo")

        with pytest.raises(GoalAlreadyMetError):
            service.record_contribution(project.id, OTHER_ID, None, "0.5", "demo")

        assert current_amount(service, project.id) == Decimal("1")

    def test_single_contribution_may_overshoot_goal(self, service, make_project):
        project = make_project(goal="1")

        service.record_contribution(project.id, BACKER_ID, None, "1.5", "demo")

        assert current_amount(service, project.id) == Decimal("1.5")


class TestDeadlineBoundary:
    """Tests for the inclusive deadline."""

    def test_accepted_exactly_at_deadline(self, service, make_project, clock):
        """Test a contribution at the exact deadline is accepted."""
        project = make_project(hours=1)
        clock.set(project.deadline)

        service.record_contribution(project.id, BACKER_ID, None, "0.1", "demo")

        assert current_amount(service, project.id) == Decimal("0.1")

    def test_rejected_just_after_deadline(self, service, make_project, clock):
        """Test a contribution one microsecond late is rejected."""
        project = make_project(hours=1)
        clock.set(project.deadline + timedelta(microseconds=1))

        with pytest.raises(DeadlinePassedError):
            service.record_contribution(project.id, BACKER_ID, None, "0.1", "demo")

        assert service.list_transactions(project.id) == []

    def test_deadline_passed_is_a_state_conflict(self, service, make_project, clock):
        project = make_project(hours=1)
        clock.advance(hours=2)

        with pytest.raises(StateConflictError):
            service.record_contribution(project.id, BACKER_ID, None, "0.1", "demo")


class TestWithdrawFlow:
    """Tests for the withdraw flow."""

    def test_end_to_end_fund_and_withdraw(self, service, make_project):
        """Test funding to the goal, then withdrawing exactly once."""
        project = make_project(goal="1.0", hours=1)

        service.record_contribution(project.id, BACKER_ID, None, "0.6", "demo")
        service.record_contribution(project.id, OTHER_ID, None, "0.4", "demo")
        funded = service.store.get_project(project.id)

        assert funded.current_amount == "1.0"
        assert service.can_withdraw(funded)
        assert service.project_status(funded) == ProjectStatus.GOAL_MET

        withdrawn = service.withdraw(project.id, CREATOR_ID)
        assert withdrawn.withdrawn is True
        assert service.project_status(withdrawn) == ProjectStatus.WITHDRAWN

        with pytest.raises(AlreadyWithdrawnError):
            service.withdraw(project.id, CREATOR_ID)

        after = service.store.get_project(project.id)
        assert after.withdrawn is True
        assert after.current_amount == "1.0"

    def test_only_creator_may_withdraw(self, service, make_project):
        """Test that withdrawing as a backer fails."""
        project = make_project(goal="1")
        service.record_contribution(project.id, BACKER_ID, None, "1", "demo")

        with pytest.raises(ForbiddenError):
            service.withdraw(project.id, BACKER_ID)

        assert service.store.get_project(project.id).withdrawn is False

    def test_goal_not_met(self, service, make_project):
        project = make_project(goal="1")
        service.record_contribution(project.id, BACKER_ID, None, "0.5", "demo")

        with pytest.raises(GoalNotMetError):
            service.withdraw(project.id, CREATOR_ID)

    def test_withdraw_exactly_at_deadline(self, service, make_project, clock):
        """Test that withdrawal is still allowed at the exact deadline."""
        project = make_project(goal="1")
        service.record_contribution(project.id, BACKER_ID, None, "1", "demo")
        clock.set(project.deadline)

        assert service.can_withdraw(service.store.get_project(project.id))
        withdrawn = service.withdraw(project.id, CREATOR_ID)

        assert withdrawn.withdrawn is True

    def test_withdraw_after_deadline_rejected(self, service, make_project, clock):
        project = make_project(goal="1")
        service.record_contribution(project.id, BACKER_ID, None, "1", "demo")
        clock.advance(hours=2)

        with pytest.raises(DeadlinePassedError):
            service.withdraw(project.id, CREATOR_ID)

        assert service.project_status(service.store.get_project(project.id)) == ProjectStatus.EXPIRED_FUNDED

    def test_withdraw_unknown_project(self, service):
        with pytest.raises(ProjectNotFoundError):
            service.withdraw(999, CREATOR_ID)

    def test_concurrent_withdrawals_succeed_once(self, service, make_project):
        project = make_project(goal="1")
        service.record_contribution(project.id, BACKER_ID, None, "1", "demo")

        def attempt(_):
            try:
                service.withdraw(project.id, CREATOR_ID)
                return "ok"
            except AlreadyWithdrawnError:
                return "already"

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(8)))

        assert results.count("ok") == 1
        assert results.count("already") == 7


class TestRefundFlow:
    """Tests for the refund request and approval flow."""

    def test_refund_deducted_only_after_approval(self, service, make_project):
        """Test the amount is unchanged until the creator approves."""
        project = make_project(goal="1")
        tx = service.record_contribution(project.id, BACKER_ID, None, "0.5", "demo")

        refund = service.request_refund(project.id, BACKER_ID, tx.id, "0.5")

        assert refund.approved is False
        assert refund.creator_id == CREATOR_ID
        assert current_amount(service, project.id) == Decimal("0.5")

        approved = service.process_refund(refund.id, CREATOR_ID, True)

        assert approved.approved is True
        assert service.store.get_project(project.id).current_amount == "0"

    def test_approving_twice_deducts_once(self, service, make_project):
        """Test that re-approving a refund does not deduct again."""
        project = make_project(goal="10")
        service.record_contribution(project.id, BACKER_ID, None, "3", "demo")
        refund = service.request_refund(project.id, BACKER_ID, None, "1")

        service.process_refund(refund.id, CREATOR_ID, True)
        service.process_refund(refund.id, CREATOR_ID, True)

        assert current_amount(service, project.id) == Decimal("2")

    def test_concurrent_approvals_deduct_once(self, service, make_project):
        project = make_project(goal="10")
        service.record_contribution(project.id, BACKER_ID, None, "3", "demo")
        refund = service.request_refund(project.id, BACKER_ID, None, "1")

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(lambda _: service.process_refund(refund.id, CREATOR_ID, True), range(6)))

        assert current_amount(service, project.id) == Decimal("2")

    def test_deduction_clamped_at_zero(self, service, make_project):
        """Test a refund larger than the balance leaves zero."""
        project = make_project(goal="10")
        service.record_contribution(project.id, BACKER_ID, None, "0.5", "demo")
        refund = service.request_refund(project.id, BACKER_ID, None, "2")

        service.process_refund(refund.id, CREATOR_ID, True)

        assert service.store.get_project(project.id).current_amount == "0"

    def test_rejection_is_repeatable_noop(self, service, make_project):
        project = make_project(goal="10")
        service.record_contribution(project.id, BACKER_ID, None, "1", "demo")
        refund = service.request_refund(project.id, BACKER_ID, None, "1")

        service.process_refund(refund.id, CREATOR_ID, False)
        rejected = service.process_refund(refund.id, CREATOR_ID, False)

        assert rejected.approved is False
        assert current_amount(service, project.id) == Decimal("1")

    def test_cannot_reject_after_approval(self, service, make_project):
        """Test that an approved refund cannot be rejected."""
        project = make_project(goal="10")
        service.record_contribution(project.id, BACKER_ID, None, "1", "demo")
        refund = service.request_refund(project.id, BACKER_ID, None, "1")
        service.process_refund(refund.id, CREATOR_ID, True)

        with pytest.raises(RefundAlreadyApprovedError):
            service.process_refund(refund.id, CREATOR_ID, False)

        assert service.store.get_refund_request(refund.id).approved is True

    def test_only_creator_may_process(self, service, make_project):
        project = make_project(goal="10")
        service.record_contribution(project.id, BACKER_ID, None, "1", "demo")
        refund = service.request_refund(project.id, BACKER_ID, None, "1")

        with pytest.raises(ForbiddenError):
            service.process_refund(refund.id, BACKER_ID, True)

        assert current_amount(service, project.id) == Decimal("1")
        assert service.store.get_refund_request(refund.id).approved is False

    def test_unknown_refund(self, service):
        with pytest.raises(RefundNotFoundError):
            service.process_refund(42, CREATOR_ID, True)

    def test_refund_request_validation(self, service, make_project):
        project = make_project(goal="10")
        other = make_project(goal="10", title="Other")
        tx = service.record_contribution(other.id, BACKER_ID, None, "1", "demo")

        with pytest.raises(ProjectNotFoundError):
            service.request_refund(999, BACKER_ID, None, "1")
        with pytest.raises(InvalidAmountError):
            service.request_refund(project.id, BACKER_ID, None, "0")
        with pytest.raises(InvalidInputError):
            service.request_refund(project.id, BACKER_ID, tx.id, "1")

    def test_accounting_matches_contributions_minus_refunds(self, service, make_project):
        project = make_project(goal="100")
        for amount in ["1.1", "2.2", "3.3"]:
            service.record_contribution(project.id, BACKER_ID, None, amount, "demo")
        first = service.request_refund(project.id, BACKER_ID, None, "2.2")
        second = service.request_refund(project.id, BACKER_ID, None, "0.05")
        service.request_refund(project.id, BACKER_ID, None, "50")

        service.process_refund(first.id, CREATOR_ID, True)
        service.process_refund(second.id, CREATOR_ID, True)

        assert current_amount(service, project.id) == Decimal("4.35")
        # Contribution records are never rewritten
        assert len(service.list_transactions(project.id)) == 3


class TestProjectStatus:
    """Tests for derived project state."""

    def test_underfunded_after_deadline_needs_refund(self, service, make_project, clock):
        project = make_project(goal="1")
        service.record_contribution(project.id, BACKER_ID, None, "0.2", "demo")
        clock.advance(hours=1, seconds=1)
        project = service.store.get_project(project.id)

        assert service.project_status(project) == ProjectStatus.EXPIRED_UNDERFUNDED
        assert service.needs_refund(project)
        assert not service.can_withdraw(project)

    def test_empty_expired_project_needs_no_refund(self, service, make_project, clock):
        project = make_project(goal="1")
        clock.advance(days=1)

        assert not service.needs_refund(project)

    def test_my_projects_carry_derived_flags(self, service, make_project):
        funded = make_project(goal="1", title="Funded")
        make_project(goal="1", title="Open")
        service.record_contribution(funded.id, BACKER_ID, None, "1", "demo")

        projects = {p.title: p for p in service.list_my_projects(CREATOR_ID)}

        assert projects["Funded"].status == ProjectStatus.GOAL_MET
        assert projects["Funded"].can_withdraw_funds is True
        assert projects["Funded"].backers_count == 1
        assert projects["Open"].status == ProjectStatus.OPEN
        assert projects["Open"].can_withdraw_funds is False
        assert projects["Open"].needs_refund_processing is False


class TestConcurrency:
    """Tests for concurrent settlement on one project."""

    def test_concurrent_contributions_lose_no_updates(self, service, make_project):
        """Test N parallel contributions of a sum to N*a."""
        project = make_project(goal="1000")
        workers, amount = 25, "0.1"

        def contribute(i):
            donor = BACKER_ID if i % 2 else OTHER_ID
            return service.record_contribution(project.id, donor, None, amount, "demo")

        with ThreadPoolExecutor(max_workers=10) as pool:
            transactions = list(pool.map(contribute, range(workers)))

        assert len({t.id for t in transactions}) == workers
        assert current_amount(service, project.id) == workers * Decimal(amount)
        assert len(service.list_transactions(project.id)) == workers

    def test_contributions_race_goal_cap(self, service, make_project):
        project = make_project(goal="1")

        def contribute(_):
            try:
                service.record_contribution(project.id, BACKER_ID, None, "0.5", "demo")
                return True
            except GoalAlreadyMetError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            accepted = sum(pool.map(contribute, range(8)))

        assert accepted == 2
        assert current_amount(service, project.id) == Decimal("1.0")

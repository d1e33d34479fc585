import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional, Union

from .errors import (
    AlreadyWithdrawnError,
    DeadlinePassedError,
    ForbiddenError,
    GoalAlreadyMetError,
    GoalNotMetError,
    InvalidInputError,
    ProjectInactiveError,
    ProjectNotFoundError,
    RefundAlreadyApprovedError,
    RefundNotFoundError,
)
from .models import (
    CreateProjectRequest,
    Project,
    ProjectStatus,
    ProjectWithCreator,
    ProjectWithStats,
    RefundRequest,
    Transaction,
    TransactionType,
)
from .money import add_amounts, format_amount, parse_amount, subtract_clamped
from .storage import LedgerStore
from .timeutils import coerce_timestamp, utcnow

logger = logging.getLogger(__name__)

# Width of the wallet address and transaction hash columns.
MAX_REFERENCE_LENGTH = 255


class ProjectLocks:
    """One mutex per project id, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    @contextmanager
    def hold(self, project_id: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(project_id, threading.Lock())
        with lock:
            yield


class FundingService:
    """
    Funding lifecycle for crowdfunding projects.

    The only component allowed to change a project's current amount, its
    withdrawn flag, or a refund request's approved flag. Every one of those
    changes runs under the project's lock inside a single store transaction.
    """

    def __init__(
        self,
        store: LedgerStore,
        clock: Callable[[], datetime] = utcnow,
        locks: Optional[ProjectLocks] = None,
    ):
        self.store = store
        self.clock = clock
        self.locks = locks or ProjectLocks()

    def now(self) -> datetime:
        return coerce_timestamp(self.clock())

    def _require_project(self, project_id: int) -> Project:
        # Checked before a lock is created for the id.
        project = self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return project

    @contextmanager
    def _settling(self, project_id: int) -> Iterator[LedgerStore]:
        with self.locks.hold(project_id):
            with self.store.atomic(project_id) as store:
                yield store

    # --- Projects ---

    def create_project(self, creator_id: str, request: CreateProjectRequest) -> Project:
        goal = parse_amount(request.goal_amount)
        deadline = coerce_timestamp(request.deadline)
        if deadline <= self.now():
            raise InvalidInputError("Deadline must be in the future")

        project = self.store.create_project({
            "creator_id": creator_id,
            "title": request.title,
            "description": request.description,
            "category": request.category.value,
            "goal_amount": format_amount(goal),
            "deadline": deadline,
            "image_url": request.image_url,
        })
        logger.info("Project %s created by %s with goal %s", project.id, creator_id, project.goal_amount)
        return project

    def list_projects(self) -> list[Project]:
        return self.store.list_active_projects()

    def get_project(self, project_id: int) -> ProjectWithCreator:
        project = self.store.get_project_with_creator(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return project

    def list_my_projects(self, creator_id: str) -> list[ProjectWithStats]:
        now = self.now()
        projects = self.store.list_projects_by_creator(creator_id)
        for project in projects:
            project.status = project.status_at(now)
            project.can_withdraw_funds = project.can_withdraw(now)
            project.needs_refund_processing = project.needs_refund(now)
        return projects

    def list_transactions(self, project_id: int) -> list[Transaction]:
        return self.store.list_transactions_by_project(project_id)

    # --- Derived state ---

    def project_status(self, project: Project) -> ProjectStatus:
        return project.status_at(self.now())

    def can_withdraw(self, project: Project) -> bool:
        return project.can_withdraw(self.now())

    def needs_refund(self, project: Project) -> bool:
        return project.needs_refund(self.now())

    # --- Contributions ---

    def record_contribution(
        self,
        project_id: int,
        donor_id: Optional[str],
        wallet_address: Optional[str],
        amount: Union[str, int],
        transaction_type: Union[str, TransactionType],
        transaction_hash: Optional[str] = None,
    ) -> Transaction:
        value = parse_amount(amount)
        try:
            tx_type = TransactionType(transaction_type)
        except ValueError:
            raise InvalidInputError(f"Invalid transaction type: {transaction_type!r}")
        for label, reference in (("Wallet address", wallet_address), ("Transaction hash", transaction_hash)):
            if reference and len(reference) > MAX_REFERENCE_LENGTH:
                raise InvalidInputError(f"{label} exceeds {MAX_REFERENCE_LENGTH} characters")

        self._require_project(project_id)
        with self._settling(project_id) as store:
            project = store.get_project(project_id)
            if project is None:
                raise ProjectNotFoundError(f"Project {project_id} not found")
            if project.is_expired(self.now()):
                raise DeadlinePassedError("Project deadline has passed")
            if not project.is_active:
                raise ProjectInactiveError("Project is not active")
            if project.is_goal_met():
                raise GoalAlreadyMetError("Funding goal has been reached. No more transactions accepted.")

            transaction = store.create_transaction({
                "project_id": project_id,
                "donor_id": donor_id,
                "donor_wallet_address": wallet_address or None,
                "amount": format_amount(value),
                "transaction_type": tx_type.value,
                "transaction_hash": (transaction_hash or None) if tx_type == TransactionType.REAL else None,
            })
            current = parse_amount(project.current_amount, allow_zero=True)
            new_amount = format_amount(add_amounts(current, value))
            store.set_project_amount(project_id, new_amount)

        logger.info(
            "Recorded %s contribution %s of %s to project %s (now %s)",
            tx_type.value, transaction.id, transaction.amount, project_id, new_amount,
        )
        return transaction

    # --- Withdrawal ---

    def withdraw(self, project_id: int, caller_id: str) -> Project:
        self._require_project(project_id)
        with self._settling(project_id) as store:
            project = store.get_project(project_id)
            if project is None:
                raise ProjectNotFoundError(f"Project {project_id} not found")
            if project.creator_id != caller_id:
                raise ForbiddenError("Only the project creator can withdraw funds")
            if project.withdrawn:
                raise AlreadyWithdrawnError("Funds already withdrawn")
            if not project.is_goal_met():
                raise GoalNotMetError("Funding goal not met")
            if project.is_expired(self.now()):
                raise DeadlinePassedError("Cannot withdraw after deadline")
            if not project.is_active:
                raise ProjectInactiveError("Project is not active")

            store.set_project_withdrawn(project_id)
            project = store.get_project(project_id)

        logger.info("Project %s withdrawn by %s (%s)", project_id, caller_id, project.current_amount)
        return project

    # --- Refunds ---

    def request_refund(
        self,
        project_id: int,
        donor_id: str,
        transaction_id: Optional[int],
        amount: Union[str, int],
    ) -> RefundRequest:
        value = parse_amount(amount)
        project = self._require_project(project_id)

        if transaction_id is not None:
            transaction = self.store.get_transaction(transaction_id)
            if transaction is None or transaction.project_id != project_id:
                raise InvalidInputError(
                    f"Transaction {transaction_id} does not belong to project {project_id}"
                )

        refund = self.store.create_refund_request({
            "project_id": project_id,
            "donor_id": donor_id,
            "transaction_id": transaction_id,
            "amount": format_amount(value),
            "creator_id": project.creator_id,
        })
        logger.info("Refund request %s of %s opened on project %s by %s", refund.id, refund.amount, project_id, donor_id)
        return refund

    def list_refund_requests(self, creator_id: str) -> list[RefundRequest]:
        return self.store.list_refund_requests_by_creator(creator_id)

    def process_refund(self, refund_id: int, approver_id: str, approved: bool) -> RefundRequest:
        refund = self.store.get_refund_request(refund_id)
        if refund is None:
            raise RefundNotFoundError(f"Refund request {refund_id} not found")
        if refund.creator_id != approver_id:
            raise ForbiddenError("Only the project creator can process refund requests")

        with self._settling(refund.project_id) as store:
            # Re-read under the lock so a concurrent approval is seen.
            refund = store.get_refund_request(refund_id)

            if not approved:
                if refund.approved:
                    raise RefundAlreadyApprovedError("Refund request already approved")
                store.set_refund_approved(refund_id, False)
                logger.info("Refund request %s rejected by %s", refund_id, approver_id)
                return store.get_refund_request(refund_id)

            if not refund.approved:
                project = store.get_project(refund.project_id)
                if project is not None:
                    current = parse_amount(project.current_amount, allow_zero=True)
                    deduction = parse_amount(refund.amount, allow_zero=True)
                    new_amount = format_amount(subtract_clamped(current, deduction))
                    store.set_project_amount(project.id, new_amount)
                    logger.info(
                        "Refund request %s approved: project %s reduced by %s to %s",
                        refund_id, project.id, refund.amount, new_amount,
                    )
            else:
                logger.info("Refund request %s already approved; no deduction", refund_id)

            store.set_refund_approved(refund_id, True)
            return store.get_refund_request(refund_id)

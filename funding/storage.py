from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .db import ProjectRecord, RefundRequestRecord, TransactionRecord, UserRecord
from .models import (
    Creator,
    Project,
    ProjectWithCreator,
    ProjectWithStats,
    RefundRequest,
    Transaction,
    UpsertUser,
    User,
)
from .timeutils import utcnow


class LedgerStore(ABC):
    """
    Persistence port for users, projects, transactions and refund requests.

    Amounts go in and come out as decimal strings; implementations never do
    arithmetic on them.
    """

    @abstractmethod
    def atomic(self, project_id: Optional[int] = None) -> Iterator["LedgerStore"]:
        """Context manager yielding a store whose calls share one transaction."""

    # Users
    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[User]:
        pass

    @abstractmethod
    def upsert_user(self, data: UpsertUser) -> User:
        pass

    # Projects
    @abstractmethod
    def list_active_projects(self) -> list[Project]:
        pass

    @abstractmethod
    def get_project(self, project_id: int) -> Optional[Project]:
        pass

    @abstractmethod
    def get_project_with_creator(self, project_id: int) -> Optional[ProjectWithCreator]:
        pass

    @abstractmethod
    def list_projects_by_creator(self, creator_id: str) -> list[ProjectWithStats]:
        pass

    @abstractmethod
    def create_project(self, data: dict) -> Project:
        pass

    @abstractmethod
    def set_project_amount(self, project_id: int, amount: str) -> None:
        pass

    @abstractmethod
    def set_project_withdrawn(self, project_id: int) -> None:
        pass

    # Transactions
    @abstractmethod
    def create_transaction(self, data: dict) -> Transaction:
        pass

    @abstractmethod
    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        pass

    @abstractmethod
    def list_transactions_by_project(self, project_id: int) -> list[Transaction]:
        pass

    # Refund requests
    @abstractmethod
    def create_refund_request(self, data: dict) -> RefundRequest:
        pass

    @abstractmethod
    def get_refund_request(self, refund_id: int) -> Optional[RefundRequest]:
        pass

    @abstractmethod
    def list_refund_requests_by_creator(self, creator_id: str) -> list[RefundRequest]:
        pass

    @abstractmethod
    def set_refund_approved(self, refund_id: int, approved: bool) -> None:
        pass


class SqlLedgerStore(LedgerStore):
    def __init__(self, session_factory: sessionmaker, session: Optional[Session] = None):
        self.session_factory = session_factory
        self._session = session

    @contextmanager
    def atomic(self, project_id: Optional[int] = None) -> Iterator["SqlLedgerStore"]:
        if self._session is not None:
            yield self
            return

        session = self.session_factory()
        try:
            if project_id is not None:
                # Row lock on dialects that support it; a no-op on SQLite.
                session.execute(
                    select(ProjectRecord.id).where(ProjectRecord.id == project_id).with_for_update()
                )
            yield SqlLedgerStore(self.session_factory, session)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _scope(self) -> Iterator[Session]:
        if self._session is not None:
            yield self._session
            self._session.flush()
            return

        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Users

    def get_user(self, user_id: str) -> Optional[User]:
        with self._scope() as session:
            record = session.get(UserRecord, user_id)
            return User.model_validate(record) if record else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._scope() as session:
            record = session.scalars(select(UserRecord).where(UserRecord.email == email)).first()
            return User.model_validate(record) if record else None

    def upsert_user(self, data: UpsertUser) -> User:
        values = data.model_dump(exclude_unset=True)
        with self._scope() as session:
            record = session.get(UserRecord, data.id)
            if record is None and data.email:
                # An identity provider may hand out a new id for a known email.
                record = session.scalars(
                    select(UserRecord).where(UserRecord.email == data.email)
                ).first()
                if record is not None:
                    values.pop("id", None)

            now = utcnow()
            if record is None:
                record = UserRecord(**values, created_at=now, updated_at=now)
                session.add(record)
            else:
                for field, value in values.items():
                    setattr(record, field, value)
                record.updated_at = now
            session.flush()
            return User.model_validate(record)

    # Projects

    def list_active_projects(self) -> list[Project]:
        with self._scope() as session:
            records = session.scalars(
                select(ProjectRecord)
                .where(ProjectRecord.is_active.is_(True))
                .order_by(ProjectRecord.created_at.desc(), ProjectRecord.id.desc())
            ).all()
            return [Project.model_validate(r) for r in records]

    def get_project(self, project_id: int) -> Optional[Project]:
        with self._scope() as session:
            record = session.get(ProjectRecord, project_id)
            return Project.model_validate(record) if record else None

    def get_project_with_creator(self, project_id: int) -> Optional[ProjectWithCreator]:
        with self._scope() as session:
            row = session.execute(
                select(ProjectRecord, UserRecord)
                .outerjoin(UserRecord, ProjectRecord.creator_id == UserRecord.id)
                .where(ProjectRecord.id == project_id)
            ).first()
            if row is None:
                return None
            project, creator = row
            result = ProjectWithCreator.model_validate(project)
            if creator is not None:
                result.creator = Creator.model_validate(creator)
            return result

    def list_projects_by_creator(self, creator_id: str) -> list[ProjectWithStats]:
        with self._scope() as session:
            records = session.scalars(
                select(ProjectRecord)
                .where(ProjectRecord.creator_id == creator_id)
                .order_by(ProjectRecord.created_at.desc(), ProjectRecord.id.desc())
            ).all()
            results = []
            for record in records:
                transactions = self._transactions_for(session, record.id)
                backers = {t.backer_key() for t in transactions if t.backer_key()}
                stats = ProjectWithStats.model_validate(record)
                stats.transactions = transactions
                stats.backers_count = len(backers)
                results.append(stats)
            return results

    def create_project(self, data: dict) -> Project:
        values = dict(data)
        values.update(current_amount="0", is_active=True, withdrawn=False)
        values.pop("id", None)
        values.setdefault("created_at", utcnow())
        with self._scope() as session:
            record = ProjectRecord(**values)
            session.add(record)
            session.flush()
            return Project.model_validate(record)

    def set_project_amount(self, project_id: int, amount: str) -> None:
        with self._scope() as session:
            record = session.get(ProjectRecord, project_id)
            if record is not None:
                record.current_amount = amount

    def set_project_withdrawn(self, project_id: int) -> None:
        with self._scope() as session:
            record = session.get(ProjectRecord, project_id)
            if record is not None:
                record.withdrawn = True

    # Transactions

    def create_transaction(self, data: dict) -> Transaction:
        values = dict(data)
        values.pop("id", None)
        values.setdefault("created_at", utcnow())
        with self._scope() as session:
            record = TransactionRecord(**values)
            session.add(record)
            session.flush()
            return Transaction.model_validate(record)

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        with self._scope() as session:
            record = session.get(TransactionRecord, transaction_id)
            return Transaction.model_validate(record) if record else None

    def list_transactions_by_project(self, project_id: int) -> list[Transaction]:
        with self._scope() as session:
            return self._transactions_for(session, project_id)

    def _transactions_for(self, session: Session, project_id: int) -> list[Transaction]:
        records = session.scalars(
            select(TransactionRecord)
            .where(TransactionRecord.project_id == project_id)
            .order_by(TransactionRecord.created_at.desc(), TransactionRecord.id.desc())
        ).all()
        return [Transaction.model_validate(r) for r in records]

    # Refund requests

    def create_refund_request(self, data: dict) -> RefundRequest:
        values = dict(data)
        values.pop("id", None)
        values["approved"] = False
        values.setdefault("created_at", utcnow())
        with self._scope() as session:
            record = RefundRequestRecord(**values)
            session.add(record)
            session.flush()
            return RefundRequest.model_validate(record)

    def get_refund_request(self, refund_id: int) -> Optional[RefundRequest]:
        with self._scope() as session:
            record = session.get(RefundRequestRecord, refund_id)
            return RefundRequest.model_validate(record) if record else None

    def list_refund_requests_by_creator(self, creator_id: str) -> list[RefundRequest]:
        with self._scope() as session:
            records = session.scalars(
                select(RefundRequestRecord)
                .where(RefundRequestRecord.creator_id == creator_id)
                .order_by(RefundRequestRecord.created_at.desc(), RefundRequestRecord.id.desc())
            ).all()
            return [RefundRequest.model_validate(r) for r in records]

    def set_refund_approved(self, refund_id: int, approved: bool) -> None:
        with self._scope() as session:
            record = session.get(RefundRequestRecord, refund_id)
            if record is not None:
                record.approved = approved

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    false,
    inspect,
    text,
    true,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .timeutils import utcnow

logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC and hands back aware UTC datetimes on every dialect."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class SessionRecord(Base):
    __tablename__ = "sessions"
    __table_args__ = (Index("IDX_session_expire", "expire"),)

    sid: Mapped[str] = mapped_column(String(128), primary_key=True)
    sess: Mapped[str] = mapped_column(Text, nullable=False)
    expire: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class UserRecord(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    profile_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=utcnow)


class ProjectRecord(Base):
    __tablename__ = "projects"
    __table_args__ = (Index("ix_projects_creator_id", "creator_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    creator_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="other", server_default="other")
    goal_amount: Mapped[str] = mapped_column(String(100), nullable=False)
    current_amount: Mapped[str] = mapped_column(String(100), nullable=False, default="0", server_default="0")
    deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    withdrawn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=utcnow)


class TransactionRecord(Base):
    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_project_id", "project_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False)
    donor_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id"), nullable=True)
    donor_wallet_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[str] = mapped_column(String(100), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False, default="demo", server_default="demo")
    transaction_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=utcnow)


class RefundRequestRecord(Base):
    __tablename__ = "refund_requests"
    __table_args__ = (Index("ix_refund_requests_creator_id", "creator_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False)
    donor_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    transaction_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"), nullable=True)
    amount: Mapped[str] = mapped_column(String(100), nullable=False, server_default="0")
    creator_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, default=utcnow)


def create_db_engine(url: str, echo: bool = False) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, echo=echo, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> list[str]:
    """
    Create missing tables and add missing columns to existing ones.

    Safe to run repeatedly. Only additive changes are applied: a column is
    added when it is nullable or carries a server default. Returns the list
    of ``table.column`` names that were added.
    """
    Base.metadata.create_all(bind=engine, checkfirst=True)
    added = _add_missing_columns(engine)
    if added:
        logger.info("Applied additive migrations: %s", ", ".join(added))
    return added


def _add_missing_columns(engine: Engine) -> list[str]:
    inspector = inspect(engine)
    added = []
    with engine.begin() as conn:
        for table in Base.metadata.sorted_tables:
            existing = {col["name"] for col in inspector.get_columns(table.name)}
            for column in table.columns:
                if column.name in existing:
                    continue
                if not column.nullable and column.server_default is None:
                    logger.warning(
                        "Cannot add NOT NULL column %s.%s without a server default",
                        table.name, column.name,
                    )
                    continue
                ddl = f"ALTER TABLE {table.name} ADD COLUMN {_column_ddl(column, engine)}"
                conn.execute(text(ddl))
                added.append(f"{table.name}.{column.name}")
    return added


def _column_ddl(column, engine: Engine) -> str:
    ddl = f"{column.name} {column.type.compile(dialect=engine.dialect)}"
    if column.server_default is not None:
        default = column.server_default.arg
        if isinstance(default, str):
            ddl += f" DEFAULT '{default}'"
        else:
            ddl += f" DEFAULT {default.compile(dialect=engine.dialect)}"
    if not column.nullable:
        ddl += " NOT NULL"
    return ddl

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from .money import is_goal_met, parse_amount
from .timeutils import coerce_timestamp, isoformat_utc


class ProjectCategory(str, Enum):
    TECH = "tech"
    ART = "art"
    SOCIAL = "social"
    ENVIRONMENT = "environment"
    OTHER = "other"


class TransactionType(str, Enum):
    REAL = "real"
    DEMO = "demo"


class ProjectStatus(str, Enum):
    OPEN = "OPEN"
    GOAL_MET = "GOAL_MET"
    EXPIRED_UNDERFUNDED = "EXPIRED_UNDERFUNDED"
    EXPIRED_FUNDED = "EXPIRED_FUNDED"
    WITHDRAWN = "WITHDRAWN"
    INACTIVE = "INACTIVE"


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _amount_string(value: Any) -> Any:
    # Integers are accepted and stringified; floats would already have lost precision.
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError("must be a decimal string, not a float")
    if isinstance(value, int):
        return str(value)
    return value


# --- Requests ---

class CreateProjectRequest(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    category: ProjectCategory = ProjectCategory.OTHER
    goal_amount: str = Field(..., min_length=1, description="Decimal string, e.g. '1.5'")
    deadline: datetime
    image_url: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "title": "Solar water pump",
            "description": "Irrigation for a community garden",
            "category": "environment",
            "goalAmount": "2.5",
            "deadline": "2030-01-01T00:00:00Z"
        }
    })

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, value: Any) -> Any:
        return value or ProjectCategory.OTHER

    @field_validator("goal_amount", mode="before")
    @classmethod
    def stringify_goal(cls, value: Any) -> Any:
        return _amount_string(value)

    @field_validator("deadline", mode="before")
    @classmethod
    def normalize_deadline(cls, value: Any) -> datetime:
        return coerce_timestamp(value)


class FundProjectRequest(CamelModel):
    amount: str = Field(..., min_length=1)
    transaction_type: TransactionType
    transaction_hash: Optional[str] = Field(default=None, max_length=255)
    donor_wallet_address: Optional[str] = Field(default=None, max_length=255)

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": "0.25", "transactionType": "demo"}
    })

    @field_validator("amount", mode="before")
    @classmethod
    def stringify_amount(cls, value: Any) -> Any:
        return _amount_string(value)


class CreateRefundRequest(CamelModel):
    project_id: int
    transaction_id: Optional[int] = None
    amount: str = Field(..., min_length=1)

    @field_validator("amount", mode="before")
    @classmethod
    def stringify_amount(cls, value: Any) -> Any:
        return _amount_string(value)


class ProcessRefundRequest(CamelModel):
    approved: bool


class UpsertUser(BaseModel):
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    password_hash: Optional[str] = None


# --- Records ---

class TimestampedModel(CamelModel):
    @field_serializer("created_at", "updated_at", "deadline", check_fields=False)
    def serialize_timestamp(self, value: Optional[datetime]) -> Optional[str]:
        return isoformat_utc(value) if value is not None else None


class User(TimestampedModel):
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    password_hash: Optional[str] = Field(default=None, exclude=True)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Creator(CamelModel):
    id: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None


class Project(TimestampedModel):
    id: int
    creator_id: str
    title: str
    description: str
    category: ProjectCategory = ProjectCategory.OTHER
    goal_amount: str
    current_amount: str = "0"
    deadline: datetime
    image_url: Optional[str] = None
    is_active: bool = True
    withdrawn: bool = False
    created_at: Optional[datetime] = None

    def is_goal_met(self) -> bool:
        return is_goal_met(self.current_amount, self.goal_amount)

    def is_expired(self, now: datetime) -> bool:
        # Inclusive deadline: the project is still open at the exact instant.
        return coerce_timestamp(now) > coerce_timestamp(self.deadline)

    def status_at(self, now: datetime) -> ProjectStatus:
        if self.withdrawn:
            return ProjectStatus.WITHDRAWN
        if not self.is_active:
            return ProjectStatus.INACTIVE
        if self.is_expired(now):
            return ProjectStatus.EXPIRED_FUNDED if self.is_goal_met() else ProjectStatus.EXPIRED_UNDERFUNDED
        return ProjectStatus.GOAL_MET if self.is_goal_met() else ProjectStatus.OPEN

    def can_withdraw(self, now: datetime) -> bool:
        return (
            not self.withdrawn
            and self.is_active
            and self.is_goal_met()
            and not self.is_expired(now)
        )

    def needs_refund(self, now: datetime) -> bool:
        return (
            self.is_expired(now)
            and not self.is_goal_met()
            and parse_amount(self.current_amount, allow_zero=True) > 0
        )


class ProjectWithCreator(Project):
    creator: Creator = Field(default_factory=Creator)


class Transaction(TimestampedModel):
    id: int
    project_id: int
    donor_id: Optional[str] = None
    donor_wallet_address: Optional[str] = None
    amount: str
    transaction_type: TransactionType
    transaction_hash: Optional[str] = None
    created_at: Optional[datetime] = None

    def backer_key(self) -> Optional[str]:
        return self.donor_id or self.donor_wallet_address


class ProjectWithStats(Project):
    transactions: list[Transaction] = Field(default_factory=list)
    backers_count: int = 0
    status: Optional[ProjectStatus] = None
    can_withdraw_funds: Optional[bool] = Field(default=None, alias="canWithdraw")
    needs_refund_processing: Optional[bool] = Field(default=None, alias="needsRefund")


class RefundRequest(TimestampedModel):
    id: int
    project_id: int
    donor_id: str
    transaction_id: Optional[int] = None
    amount: str
    creator_id: str
    approved: bool = False
    created_at: Optional[datetime] = None


# --- Responses ---

class MessageResponse(BaseModel):
    message: str


class UserResponse(BaseModel):
    user: User

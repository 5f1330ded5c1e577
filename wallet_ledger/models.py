from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CampaignStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    BANNED = "banned"
    FAILED = "failed"


class CampaignAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    BAN = "ban"
    COMPLETE = "complete"


class WorkStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TransactionType(str, Enum):
    ADD_MONEY = "add_money"
    WITHDRAWAL = "withdrawal"
    EARNING = "earning"
    CAMPAIGN_SPEND = "campaign_spend"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class MoneyRequestType(str, Enum):
    ADD_MONEY = "add_money"
    WITHDRAWAL = "withdrawal"

    @property
    def store_path(self) -> str:
        if self is MoneyRequestType.ADD_MONEY:
            return "adminRequests/addMoney"
        return "adminRequests/withdrawals"


class StoreModel(BaseModel):
    """Documents are stored with camelCase keys and read back through aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
    )

    @classmethod
    def from_store(cls, data: dict, **extra: Any):
        return cls.model_validate({**data, **extra})

    def to_store(self, *, exclude: Optional[set] = None) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, exclude=exclude, mode="python")


BALANCE_FIELDS = ("earned_balance", "added_balance", "pending_add_money", "total_withdrawn")


class WalletBalance(StoreModel):
    earned_balance: Decimal = Decimal("0")
    added_balance: Decimal = Decimal("0")
    pending_add_money: Decimal = Decimal("0")
    total_withdrawn: Decimal = Decimal("0")

    def clamped(self) -> "WalletBalance":
        return WalletBalance(**{name: max(Decimal("0"), getattr(self, name)) for name in BALANCE_FIELDS})

    def to_store(self, *, exclude: Optional[set] = None) -> dict:
        return self.clamped().model_dump(by_alias=True, exclude=exclude, mode="python")


class Campaign(StoreModel):
    id: Optional[str] = None
    title: str
    description: str = ""
    instructions: str = ""
    category: str = ""
    creator_id: str
    creator_name: str = ""
    status: CampaignStatus = CampaignStatus.ACTIVE
    total_workers: int
    completed_workers: int = 0
    reward_per_worker: Decimal
    total_budget: Decimal
    remaining_budget: Decimal
    created_at: datetime = Field(default_factory=utcnow)

    def has_open_slots(self) -> bool:
        return self.completed_workers < self.total_workers

    def to_store(self, *, exclude: Optional[set] = None) -> dict:
        return super().to_store(exclude={"id"} | (exclude or set()))


class WorkSubmission(StoreModel):
    id: str
    user_id: str
    user_name: str = ""
    campaign_id: str
    reward: Decimal
    proof_url: str = ""
    status: WorkStatus = WorkStatus.PENDING
    submitted_at: datetime = Field(default_factory=utcnow)

    def can_resubmit(self) -> bool:
        return self.status in (WorkStatus.PENDING, WorkStatus.REJECTED)


class TransactionRecord(StoreModel):
    id: Optional[str] = None
    type: TransactionType
    amount: Decimal
    status: RequestStatus = RequestStatus.PENDING
    description: str = ""
    upi_transaction_id: Optional[str] = None
    upi_id: Optional[str] = None
    reference_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_store(self, *, exclude: Optional[set] = None) -> dict:
        return super().to_store(exclude={"id"} | (exclude or set()))


class MoneyRequest(StoreModel):
    id: Optional[str] = None
    type: MoneyRequestType
    user_id: str
    user_name: str = ""
    amount: Decimal
    status: RequestStatus = RequestStatus.PENDING
    upi_transaction_id: Optional[str] = None
    upi_id: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_store(self, *, exclude: Optional[set] = None) -> dict:
        return super().to_store(exclude={"id"} | (exclude or set()))


class WalletAdjustment(BaseModel):
    transaction_id: str
    wallet: Optional[WalletBalance] = None


# -- request / response bodies --

class CreateCampaignRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    instructions: str = ""
    category: str = ""
    creator_name: str = ""
    total_workers: int = Field(..., gt=0)
    reward_per_worker: Decimal = Field(..., gt=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "title": "Follow our page",
            "instructions": "Follow the page and upload a screenshot",
            "category": "social",
            "total_workers": 50,
            "reward_per_worker": 5.00
        }
    })


class DeductBudgetRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    user_id: str


class AddMoneyRequest(BaseModel):
    amount: Decimal
    upi_transaction_id: str = Field(..., min_length=1, description="Claimed UPI transaction id")
    user_name: str = ""


class WithdrawalRequest(BaseModel):
    amount: Decimal
    upi_id: str = Field(..., min_length=1, description="Payout UPI id")
    user_name: str = ""


class ApplyToCampaignRequest(BaseModel):
    user_id: str
    user_name: str = ""


class SubmitWorkRequest(BaseModel):
    user_id: str
    proof_url: str = Field(..., min_length=1)


class ApproveWorkRequest(BaseModel):
    campaign_id: str
    reward: Decimal = Field(..., gt=0)


class RejectWorkRequest(BaseModel):
    campaign_id: str


class ResolveMoneyRequest(BaseModel):
    user_id: str
    amount: Decimal = Field(..., gt=0)
    resolution: RequestStatus


class CampaignStatusRequest(BaseModel):
    action: CampaignAction


class OperationResponse(BaseModel):
    success: bool
    message: str

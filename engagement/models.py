from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict, HttpUrl

from ledger.models import Transaction, utcnow


def normalize_channel(channel: str) -> str:
    channel = channel.strip()
    return channel if channel.startswith("@") else f"@{channel}"


def same_channel(a: str, b: str) -> bool:
    return normalize_channel(a).lower() == normalize_channel(b).lower()


class CompletionStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class Task(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    creator_id: UUID
    title: str
    title_bn: Optional[str] = None
    channel_username: str
    channel_link: str
    reward_per_member: Decimal
    total_budget: Decimal
    remaining_budget: Decimal
    completed_count: int = 0
    max_members: int
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    @property
    def channel(self) -> str:
        return normalize_channel(self.channel_username)

    def has_open_slot(self) -> bool:
        return self.is_active and self.remaining_budget >= self.reward_per_member


class Completion(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    task_id: UUID
    account_id: UUID
    status: CompletionStatus = CompletionStatus.PENDING
    reward_amount: Optional[Decimal] = None
    verified_at: Optional[datetime] = None
    retention_checked: bool = False
    deducted: bool = False
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class CreateTaskRequest(BaseModel):
    creator_id: UUID
    title: str = Field(..., min_length=3, max_length=200)
    title_bn: Optional[str] = Field(default=None, max_length=200)
    channel_username: str = Field(..., min_length=1, max_length=100)
    channel_link: HttpUrl
    reward_per_member: Decimal = Field(..., ge=Decimal("0.5"), description="Minimum reward is 0.5")
    total_budget: Decimal = Field(..., ge=1, description="Budget must be at least 1")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "creator_id": "550e8400-e29b-41d4-a716-446655440000",
            "title": "Join our crypto news channel",
            "channel_username": "@crypto_news_bd",
            "channel_link": "https://t.me/crypto_news_bd",
            "reward_per_member": 2,
            "total_budget": 100
        }
    })


class VerifyTaskRequest(BaseModel):
    account_id: UUID


class VerifyReferralRequest(BaseModel):
    account_id: UUID


class VerificationResult(BaseModel):
    success: bool
    completion: Optional[Completion] = None
    transaction: Optional[Transaction] = None
    referral_bonus: Optional[Transaction] = None
    already_completed: bool = False
    error: Optional[str] = None


class ReferralVerificationResult(BaseModel):
    success: bool
    bonus_credited: bool = False
    already_credited: bool = False
    transaction: Optional[Transaction] = None
    error: Optional[str] = None


class SweepReport(BaseModel):
    checked: int = 0
    retained: int = 0
    deducted: int = 0
    insufficient_balance: int = 0
    errors: int = 0
    duration_ms: int = 0

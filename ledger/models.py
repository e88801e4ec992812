from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict


CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    TASK_EARNING = "task_earning"
    TASK_CREATION = "task_creation"
    REFERRAL_BONUS = "referral_bonus"
    DAILY_BONUS = "daily_bonus"
    DEDUCTION = "deduction"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentMethod(str, Enum):
    BKASH = "bkash"
    NAGAD = "nagad"
    USDT = "usdt"


class Account(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    telegram_id: str
    username: Optional[str] = None
    first_name: str
    last_name: Optional[str] = None
    photo_url: Optional[str] = None
    balance: Decimal = Decimal("0.00")
    referral_code: str
    referred_by: Optional[UUID] = None
    referral_bonus_pending: bool = False
    referral_bonus_credited: bool = False
    is_admin: bool = False
    daily_checkin_last_claimed: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    account_id: UUID
    type: TransactionType
    amount: Decimal
    status: TransactionStatus = TransactionStatus.APPROVED
    method: Optional[PaymentMethod] = None
    wallet_address: Optional[str] = None
    external_transaction_id: Optional[str] = None
    note: Optional[str] = None
    idempotency_key: Optional[str] = None
    balance_after: Optional[Decimal] = None
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class TransactionMeta(BaseModel):
    """Optional attributes carried onto the Transaction a ledger operation records."""
    status: TransactionStatus = TransactionStatus.APPROVED
    method: Optional[PaymentMethod] = None
    wallet_address: Optional[str] = None
    external_transaction_id: Optional[str] = None
    note: Optional[str] = None
    idempotency_key: Optional[str] = None


class AppSettings(BaseModel):
    id: str = "default"
    referral_bonus_amount: Decimal = Decimal("5.00")
    min_withdraw_amount: Decimal = Decimal("50.00")
    min_deposit_amount: Decimal = Decimal("10.00")
    daily_checkin_reward: Decimal = Decimal("1.00")
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0


class SettingsUpdate(BaseModel):
    referral_bonus_amount: Optional[Decimal] = Field(default=None, ge=0)
    min_withdraw_amount: Optional[Decimal] = Field(default=None, ge=0)
    min_deposit_amount: Optional[Decimal] = Field(default=None, ge=0)
    daily_checkin_reward: Optional[Decimal] = Field(default=None, gt=0)


class RegisterAccountRequest(BaseModel):
    telegram_id: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1)
    username: Optional[str] = None
    last_name: Optional[str] = None
    photo_url: Optional[str] = None
    referral_code: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "telegram_id": "700100200",
            "first_name": "Rahim",
            "username": "rahim_bd",
            "referral_code": "K7Q2XZ"
        }
    })


class DepositRequest(BaseModel):
    account_id: UUID
    amount: Decimal = Field(..., gt=0, description="Checked against min_deposit_amount")
    method: PaymentMethod
    transaction_id: str = Field(..., min_length=1, description="Payment provider transaction id")


class WithdrawRequest(BaseModel):
    account_id: UUID
    amount: Decimal = Field(..., gt=0, description="Checked against min_withdraw_amount")
    method: PaymentMethod
    wallet_address: str = Field(..., min_length=1)


class UserBalance(BaseModel):
    account_id: UUID
    currency: str
    current_balance: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    account_id: UUID
    entries: list[Transaction]
    total_count: int
    current_balance: Decimal


class AdminStats(BaseModel):
    total_users: int
    total_deposits: Decimal
    total_withdrawals: Decimal
    pending_deposits: int
    pending_withdrawals: int
    active_tasks: int


class DailyBonusResponse(BaseModel):
    transaction: Transaction
    next_claim_at: datetime
    message: str

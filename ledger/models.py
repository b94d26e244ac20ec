from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

MAX_REFERRAL_DEPTH = 10
LEVELS = range(1, MAX_REFERRAL_DEPTH + 1)
CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def level_key(level: int) -> str:
    return f"level{level}"


def quantize_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class EntryType(str, Enum):
    COMMISSION = "COMMISSION"
    WALLET_CREDIT = "WALLET_CREDIT"
    WITHDRAWAL = "WITHDRAWAL"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Subscription(BaseModel):
    is_active: bool = False
    purchase_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    amount_paid: Decimal = ZERO
    subscription_id: Optional[str] = None

    def is_current(self, now: datetime) -> bool:
        return self.is_active and self.expiry_date is not None and self.expiry_date > now


class ReferralInfo(BaseModel):
    referrer: Optional[UUID] = None
    levels: dict[str, list[UUID]] = Field(default_factory=dict)
    earnings_by_level: dict[str, Decimal] = Field(default_factory=dict)
    total_earnings: Decimal = ZERO
    wallet_credits: Decimal = ZERO


class BankAccount(BaseModel):
    account_number: Optional[str] = None
    bank_name: Optional[str] = None
    account_holder: Optional[str] = None

    def is_complete(self) -> bool:
        return bool(self.account_number and self.bank_name and self.account_holder)


class WithdrawalRecord(BaseModel):
    id: UUID
    amount_requested: Decimal
    amount_paid: Decimal
    status: WithdrawalStatus
    requested_at: datetime
    processed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class Withdrawals(BaseModel):
    bank_account: BankAccount = Field(default_factory=BankAccount)
    pending_request: bool = False
    last_withdrawal_date: Optional[datetime] = None
    total_withdrawn: Decimal = ZERO
    history: list[WithdrawalRecord] = Field(default_factory=list)


class Account(BaseModel):
    id: UUID
    name: str
    username: str
    email: str
    referral_code: Optional[str] = None
    subscription: Subscription = Field(default_factory=Subscription)
    referral: ReferralInfo = Field(default_factory=ReferralInfo)
    withdrawals: Withdrawals = Field(default_factory=Withdrawals)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreateAccountRequest(BaseModel):
    name: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    referral_code: Optional[str] = Field(default=None, description="Code of the account that referred this one")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Ayesha Khan",
            "username": "ayesha",
            "email": "ayesha@example.com",
            "referral_code": "PMX7K2QD"
        }
    })


class BankDetailsRequest(BaseModel):
    account_number: str = Field(..., min_length=1)
    bank_name: str = Field(..., min_length=1)
    account_holder: str = Field(..., min_length=1)


class RejectWithdrawalRequest(BaseModel):
    reason: str = Field(..., description="Reason for rejection")


class LedgerEntry(BaseModel):
    id: UUID
    account_id: UUID
    entry_type: EntryType
    amount: Decimal
    balance_after: Decimal
    bucket: Optional[str] = None
    reference: Optional[str] = None
    description: str
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class AccountBalance(BaseModel):
    account_id: UUID
    total_earnings: Decimal
    earnings_by_level: dict[str, Decimal]
    wallet_credits: Decimal
    total_withdrawn: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    account_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class SubscriptionStatus(BaseModel):
    is_active: bool
    purchase_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    referral_code: Optional[str] = None
    days_remaining: int = 0


class WithdrawalResponse(BaseModel):
    withdrawal: WithdrawalRecord
    total_earnings: Decimal
    message: str

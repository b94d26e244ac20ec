from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    ABANDONED = "abandoned"


class InquiryStatus(str, Enum):
    WAITING = "waiting"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"


class SettlementSource(str, Enum):
    INQUIRY = "inquiry"
    CALLBACK = "callback"
    EXPIRY = "expiry"


class PendingTransaction(BaseModel):
    txn_ref: str
    account_id: Optional[UUID] = None
    amount_minor: int
    currency: str
    txn_datetime: Optional[str] = None
    response_code: Optional[str] = None
    request_payload: dict = Field(default_factory=dict)
    response_payload: dict = Field(default_factory=dict)
    created_at: datetime
    status_inquiry_scheduled_for: datetime
    last_checked: Optional[datetime] = None
    inquiry_attempts: int = 0
    last_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    txn_ref: str
    account_id: Optional[UUID] = None
    amount: Decimal
    amount_minor: int
    currency: str
    status: TransactionStatus
    source: SettlementSource
    bill_reference: Optional[str] = None
    description: Optional[str] = None
    response_code: Optional[str] = None
    response_message: Optional[str] = None
    payment_response_code: Optional[str] = None
    secure_hash: Optional[str] = None
    raw: dict = Field(default_factory=dict)
    created_at: datetime
    fulfilled: bool = False
    fulfilled_at: Optional[datetime] = None
    fulfilment_attempts: int = 0
    fulfilment_claimed_until: Optional[datetime] = None
    commission_distributed_at: Optional[datetime] = None
    fulfilment_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class InitiatePaymentRequest(BaseModel):
    account_id: UUID
    amount: Decimal = Field(..., gt=0, description="Amount in major currency units")
    mobile_number: str = Field(..., min_length=10, max_length=15)
    cnic_last_six: Optional[str] = Field(default=None, min_length=6, max_length=6)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "account_id": "550e8400-e29b-41d4-a716-446655440000",
            "amount": 1000,
            "mobile_number": "03123456789",
            "cnic_last_six": "345678"
        }
    })


class InitiatePaymentResult(BaseModel):
    txn_ref: str
    status: InquiryStatus = InquiryStatus.PENDING
    status_inquiry_scheduled_for: datetime
    response_code: Optional[str] = None
    response_message: Optional[str] = None


class StatusInquiryResult(BaseModel):
    txn_ref: str
    status: InquiryStatus
    remaining_time_ms: Optional[int] = None
    transaction: Optional[Transaction] = None


class ApiEnvelope(BaseModel):
    success: bool
    message: str
    data: Optional[Any] = None

from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field

from payflow.core.constants import (
    TransactionStatus,
    PaymentStatus,
    DeliveryStatus,
    TransactionType,
    ItemKind,
    SubscriptionDuration,
)

# -------------------------- TRANSACTIONS -----------------------------------

class TransactionItemCreate(BaseModel):
    kind: ItemKind = ItemKind.PRODUCT
    package_id: Optional[str] = Field(None, max_length=100)
    quantity: int = Field(1, ge=1)
    unit_price: Optional[Decimal] = Field(None, ge=0)
    duration: Optional[SubscriptionDuration] = None


class TransactionCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    type: TransactionType
    currency: Optional[str] = Field(None, min_length=3, max_length=10)
    voucher_id: Optional[int] = None
    notes: Optional[str] = None
    original_amount: Optional[Decimal] = Field(None, ge=0)
    discount_amount: Optional[Decimal] = Field(None, ge=0)
    final_amount: Optional[Decimal] = Field(None, ge=0)
    service_fee_amount: Optional[Decimal] = Field(None, ge=0)
    items: List[TransactionItemCreate] = []


class TransactionItemResponse(BaseModel):
    id: int
    kind: ItemKind
    package_id: str | None
    quantity: int
    unit_price: Decimal | None
    duration: SubscriptionDuration | None

    model_config = ConfigDict(from_attributes=True)


class DeliveryItemResponse(BaseModel):
    id: int
    transaction_id: int
    customer_id: int
    package_id: str | None
    quantity: int
    status: DeliveryStatus
    delivered_at: datetime | None
    addon_details: List[dict] | None = None

    model_config = ConfigDict(from_attributes=True)


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    currency: str
    type: TransactionType
    status: TransactionStatus
    expires_at: datetime

    original_amount: Decimal | None
    discount_amount: Decimal | None
    final_amount: Decimal | None
    service_fee_amount: Decimal | None
    voucher_id: int | None
    notes: str | None

    items: List[TransactionItemResponse] = []
    delivery_items: List[DeliveryItemResponse] = []

    created_at: datetime | None
    updated_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


# -------------------------- PAYMENTS ---------------------------------------

class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    method: str = Field(..., min_length=1, max_length=50)
    service_fee: Optional[Decimal] = Field(None, ge=0)
    external_id: Optional[str] = Field(None, max_length=100)
    payment_url: Optional[str] = None


class PaymentStatusUpdate(BaseModel):
    # Checked against PaymentStatus by the service so bad values surface as ValidationError
    status: str
    admin_notes: Optional[str] = None


class PaymentResponse(BaseModel):
    id: int
    transaction_id: int
    amount: Decimal
    method: str
    service_fee: Decimal | None
    status: PaymentStatus
    expires_at: datetime

    external_id: str | None
    payment_url: str | None

    admin_notes: str | None
    admin_user_id: int | None
    action_date: datetime | None
    payment_date: datetime | None

    created_at: datetime | None
    updated_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


# -------------------------- DELIVERY ---------------------------------------

class DeliveryRequest(BaseModel):
    item_id: Optional[int] = None


class WaiveDeliveryRequest(BaseModel):
    item_id: int
    kind: ItemKind


class DeliveryResult(BaseModel):
    delivered: bool
    transaction_completed: bool


class WaiveResult(BaseModel):
    waived: bool
    transaction_completed: bool


# -------------------------- EXPIRATION SWEEP -------------------------------

class ExpiredPaymentSummary(BaseModel):
    id: int
    transaction_id: int
    amount: Decimal
    method: str
    original_expires_at: datetime = Field(..., validation_alias="expires_at")
    status: PaymentStatus

    model_config = ConfigDict(from_attributes=True)


class ExpiredTransactionSummary(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    type: TransactionType
    original_expires_at: datetime = Field(..., validation_alias="expires_at")
    status: TransactionStatus

    model_config = ConfigDict(from_attributes=True)


class ExpirationSweepResponse(BaseModel):
    success: bool = True
    message: str
    processed_at: datetime
    expired_payments_count: int
    expired_transactions_count: int
    expired_payments: List[ExpiredPaymentSummary]
    expired_transactions: List[ExpiredTransactionSummary]

# payflow/routes/transaction.py
import logging
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from payflow.core.database import get_db
from payflow.core.auth_dependencies import get_current_user, require_role, verify_cron_secret
from payflow.core.constants import RoleEnum
from payflow.core.exceptions import NotFoundError, StateConflictError
from payflow.models.transaction import User, Transaction, Payment
from payflow.services.payment_expiration import PaymentExpirationService
from payflow.schemas.transaction import (
    TransactionCreate,
    TransactionResponse,
    PaymentCreate,
    PaymentResponse,
    PaymentStatusUpdate,
    DeliveryRequest,
    DeliveryResult,
    WaiveDeliveryRequest,
    WaiveResult,
    ExpirationSweepResponse,
    ExpiredPaymentSummary,
    ExpiredTransactionSummary,
)
from payflow.utils.dates import utcnow

logger = logging.getLogger("router logging")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


transaction_router = APIRouter(prefix="/api/v1/transactions", tags=["Transactions"])
payment_router = APIRouter(prefix="/api/v1/payments", tags=["Payments"])
admin_router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])
cron_router = APIRouter(prefix="/api/v1/cron", tags=["Cron"])


def _owned_transaction(db: Session, transaction_id: int, user: User) -> Transaction:
    transaction = db.query(Transaction).filter(Transaction.id == transaction_id).first()
    if not transaction or (transaction.user_id != user.id and user.role != RoleEnum.ADMIN):
        raise NotFoundError("Transaction not found or unauthorized")
    return transaction


# ==================== CUSTOMER: TRANSACTIONS ====================

@transaction_router.post("/", response_model=TransactionResponse, status_code=201)
def create_transaction(
    data: TransactionCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Create a transaction for the current user.

    - Starts as **pending** and expires after 7 days without settlement
    - An optional voucher is applied and recorded
    """
    transaction = PaymentExpirationService.create_transaction_with_expiration(
        db,
        user_id=current_user.id,
        amount=data.amount,
        type=data.type.value,
        currency=data.currency,
        voucher_id=data.voucher_id,
        notes=data.notes,
        original_amount=data.original_amount,
        discount_amount=data.discount_amount,
        final_amount=data.final_amount,
        service_fee_amount=data.service_fee_amount,
        items=[item.model_dump() for item in data.items],
    )
    logger.info(f"User {current_user.id} created transaction {transaction.id}")
    return transaction


@transaction_router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get a transaction; an overdue one is expired before it is returned."""
    transaction = _owned_transaction(db, transaction_id, current_user)
    PaymentExpirationService.auto_expire_on_api_call(db, transaction_id=transaction.id)
    db.refresh(transaction)
    return transaction


@transaction_router.post("/{transaction_id}/cancel", response_model=TransactionResponse)
def cancel_transaction(
    transaction_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Cancel one of the current user's transactions.

    - Cancelling a finished, cancelled or expired transaction returns it unchanged
    """
    return PaymentExpirationService.cancel_transaction_by_user(db, transaction_id, current_user.id)


@transaction_router.post("/{transaction_id}/payments", response_model=PaymentResponse, status_code=201)
def create_payment(
    transaction_id: int,
    data: PaymentCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Open a payment for a transaction.

    - Only one pending payment may exist per transaction
    - The payment expires after 1 day
    """
    transaction = _owned_transaction(db, transaction_id, current_user)

    PaymentExpirationService.auto_expire_on_api_call(db, transaction_id=transaction.id)
    if not PaymentExpirationService.can_create_payment_for_transaction(db, transaction.id):
        raise StateConflictError("Cannot create payment for this transaction")

    payment = PaymentExpirationService.create_payment_with_expiration(
        db,
        transaction_id=transaction.id,
        amount=data.amount,
        method=data.method,
        service_fee=data.service_fee,
        external_id=data.external_id,
        payment_url=data.payment_url,
    )
    logger.info(f"User {current_user.id} opened payment {payment.id} on transaction {transaction_id}")
    return payment


# ==================== CUSTOMER: PAYMENTS ====================

@payment_router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get a payment; an overdue one is expired before it is returned."""
    payment = db.query(Payment).filter(Payment.id == payment_id).first()
    owner_id = payment.transaction.user_id if payment else None
    if owner_id is None or (owner_id != current_user.id and current_user.role != RoleEnum.ADMIN):
        raise NotFoundError("Payment not found or unauthorized")

    PaymentExpirationService.auto_expire_on_api_call(
        db, transaction_id=payment.transaction_id, payment_id=payment.id
    )
    db.refresh(payment)
    return payment


# ==================== ADMIN ====================

@admin_router.patch("/payments/{payment_id}/status", response_model=PaymentResponse)
def update_payment_status(
    payment_id: int,
    data: PaymentStatusUpdate,
    current_user: User = Depends(require_role(["ADMIN"])),
    db: Session = Depends(get_db)
):
    """
    Manually change a payment's status.

    - **paid** records the payment date and queues the purchased items for delivery
    - The admin and notes are kept on the payment for audit
    """
    payment = PaymentExpirationService.update_payment_status(
        db,
        payment_id,
        data.status,
        admin_notes=data.admin_notes,
        admin_user_id=current_user.id,
    )
    logger.info(f"Admin {current_user.id} set payment {payment_id} to {data.status}")
    return payment


@admin_router.post("/transactions/{transaction_id}/cancel", response_model=TransactionResponse)
def admin_cancel_transaction(
    transaction_id: int,
    current_user: User = Depends(require_role(["ADMIN"])),
    db: Session = Depends(get_db)
):
    return PaymentExpirationService.cancel_transaction(db, transaction_id, current_user.id)


@admin_router.post("/transactions/{transaction_id}/complete-product-delivery", response_model=DeliveryResult)
def complete_product_delivery(
    transaction_id: int,
    data: Optional[DeliveryRequest] = None,
    current_user: User = Depends(require_role(["ADMIN"])),
    db: Session = Depends(get_db)
):
    """
    Mark a product delivered.

    - Without **item_id** the oldest item still awaiting delivery is used
    - The transaction completes when its last item is delivered
    """
    return PaymentExpirationService.complete_product_delivery(
        db, transaction_id, current_user.id, item_id=data.item_id if data else None
    )


@admin_router.post("/transactions/{transaction_id}/complete-whatsapp-delivery", response_model=DeliveryResult)
def complete_whatsapp_delivery(
    transaction_id: int,
    data: Optional[DeliveryRequest] = None,
    current_user: User = Depends(require_role(["ADMIN"])),
    db: Session = Depends(get_db)
):
    return PaymentExpirationService.complete_whatsapp_delivery(
        db, transaction_id, current_user.id, item_id=data.item_id if data else None
    )


@admin_router.post("/transactions/{transaction_id}/complete-addons-delivery", response_model=DeliveryResult)
def complete_addons_delivery(
    transaction_id: int,
    current_user: User = Depends(require_role(["ADMIN"])),
    db: Session = Depends(get_db)
):
    """Mark the transaction's add-ons delivered (they ship together as one line item)."""
    return PaymentExpirationService.complete_addons_delivery(db, transaction_id, current_user.id)


@admin_router.post("/transactions/{transaction_id}/waive-delivery", response_model=WaiveResult)
def waive_delivery(
    transaction_id: int,
    data: WaiveDeliveryRequest,
    current_user: User = Depends(require_role(["ADMIN"])),
    db: Session = Depends(get_db)
):
    return PaymentExpirationService.waive_delivery_item(
        db, transaction_id, data.item_id, data.kind.value, current_user.id
    )


# ==================== CRON ====================

@cron_router.post("/expire-payments", response_model=ExpirationSweepResponse, dependencies=[Depends(verify_cron_secret)])
def expire_payments(db: Session = Depends(get_db)):
    """
    Expire overdue payments and transactions.

    Called by an external scheduler with `Authorization: Bearer <CRON_SECRET>`.
    """
    logger.info("Starting payment and transaction expiration sweep...")
    expired_payments = PaymentExpirationService.process_expired_payments(db)
    expired_transactions = PaymentExpirationService.process_expired_transactions(db)

    message = f"Expired {len(expired_payments)} payments and {len(expired_transactions)} transactions"
    logger.info(message)

    return ExpirationSweepResponse(
        message=message,
        processed_at=utcnow(),
        expired_payments_count=len(expired_payments),
        expired_transactions_count=len(expired_transactions),
        expired_payments=[ExpiredPaymentSummary.model_validate(p) for p in expired_payments],
        expired_transactions=[ExpiredTransactionSummary.model_validate(t) for t in expired_transactions],
    )

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payflow.core.config import settings
from payflow.core.database import atomic
from payflow.core.constants import (
    TransactionStatus,
    PaymentStatus,
    DeliveryStatus,
    TransactionType,
    ItemKind,
    SubscriptionDuration,
    OPEN_TRANSACTION_STATUSES,
    SUBSCRIPTION_DAYS,
)
from payflow.core.exceptions import (
    ValidationError,
    NotFoundError,
    StateConflictError,
    PersistenceError,
    DeliveryError,
)
from payflow.models.transaction import (
    Transaction,
    TransactionItem,
    Payment,
    ServicesProductCustomers,
    ServicesWhatsappCustomers,
    ServicesAddonsCustomers,
)
from payflow.services.transaction_status_manager import TransactionStatusManager
from payflow.services.voucher_service import VoucherService
from payflow.utils.dates import utcnow, ensure_aware

logger = logging.getLogger(__name__)

DELIVERY_MODEL_BY_KIND = {
    ItemKind.PRODUCT: ServicesProductCustomers,
    ItemKind.WHATSAPP: ServicesWhatsappCustomers,
    ItemKind.ADDON: ServicesAddonsCustomers,
}


def _to_amount(value, field: str) -> Decimal:
    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    if amount <= 0:
        raise ValidationError(f"{field} must be positive")
    return amount


def _build_items(items: Optional[List[Dict[str, Any]]]) -> List[TransactionItem]:
    """Validate purchased items up front so a bad one leaves nothing in the session"""
    built = []
    for item in items or []:
        try:
            kind = ItemKind(item.get("kind", ItemKind.PRODUCT))
            duration = SubscriptionDuration(item["duration"]) if item.get("duration") else None
        except ValueError as e:
            raise ValidationError(f"Invalid item: {e}") from e
        built.append(TransactionItem(
            kind=kind,
            package_id=item.get("package_id"),
            quantity=item.get("quantity") or 1,
            unit_price=item.get("unit_price"),
            duration=duration,
        ))
    return built


def _has_paid_payment():
    """Correlated EXISTS: the transaction already has a settled payment"""
    return exists().where(
        Payment.transaction_id == Transaction.id,
        Payment.status == PaymentStatus.PAID,
    )


class PaymentExpirationService:
    """
    Lifecycle of transactions and their payments: creation with deadlines,
    lazy and swept expiration, cancellation, admin status changes and
    delivery completion.
    """

    # ==================== CREATION ====================
    @staticmethod
    def create_transaction_with_expiration(
        db: Session,
        user_id: int,
        amount,
        type: str,
        currency: Optional[str] = None,
        voucher_id: Optional[int] = None,
        notes: Optional[str] = None,
        original_amount=None,
        discount_amount=None,
        final_amount=None,
        service_fee_amount=None,
        items: Optional[List[Dict[str, Any]]] = None,
    ) -> Transaction:
        """Create a pending transaction expiring TRANSACTION_EXPIRY_DAYS from now"""
        amount = _to_amount(amount, "amount")
        if not type:
            raise ValidationError("type is required")
        try:
            tx_type = TransactionType(type)
        except ValueError:
            raise ValidationError(f"Unknown transaction type '{type}'")
        purchased = _build_items(items)

        expires_at = utcnow() + timedelta(days=settings.TRANSACTION_EXPIRY_DAYS)

        with atomic(db, "creating transaction"):
            if voucher_id is not None:
                discount = VoucherService.apply_voucher(db, voucher_id, user_id, amount)
                if original_amount is None:
                    original_amount = amount
                if discount_amount is None:
                    discount_amount = discount
                if final_amount is None:
                    final_amount = Decimal(str(original_amount)) - Decimal(str(discount_amount))

            transaction = Transaction(
                user_id=user_id,
                amount=amount,
                currency=currency or settings.DEFAULT_CURRENCY,
                type=tx_type,
                status=TransactionStatus.PENDING,
                expires_at=expires_at,
                voucher_id=voucher_id,
                notes=notes,
                original_amount=original_amount,
                discount_amount=discount_amount,
                final_amount=final_amount,
                service_fee_amount=service_fee_amount,
            )
            db.add(transaction)

            transaction.items.extend(purchased)
            db.flush()

            if voucher_id is not None:
                VoucherService.record_usage(db, voucher_id, user_id, transaction.id, discount_amount)

        db.refresh(transaction)
        logger.info(f"Transaction created: ID={transaction.id}, Amount={transaction.amount}, Expires={expires_at}")
        return transaction

    @staticmethod
    def can_create_payment_for_transaction(
        db: Session,
        transaction_id: int,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Whether a new payment may be opened for the transaction.

        Pure read. Run auto_expire_on_api_call first for an up-to-date answer.
        """
        now = now or utcnow()
        transaction = db.query(Transaction).filter(Transaction.id == transaction_id).first()

        if not transaction:
            return False

        if transaction.status not in OPEN_TRANSACTION_STATUSES:
            return False

        if ensure_aware(transaction.expires_at) <= now:
            return False

        blocking = (
            db.query(Payment.id)
            .filter(
                Payment.transaction_id == transaction_id,
                Payment.status.in_([PaymentStatus.PENDING, PaymentStatus.PAID]),
            )
            .first()
        )
        return blocking is None

    @staticmethod
    def create_payment_with_expiration(
        db: Session,
        transaction_id: int,
        amount,
        method: str,
        service_fee=None,
        external_id: Optional[str] = None,
        payment_url: Optional[str] = None,
    ) -> Payment:
        """
        Open a pending payment expiring PAYMENT_EXPIRY_DAYS from now and move
        the transaction from pending to in_progress, in one commit.

        Callers check can_create_payment_for_transaction beforehand; a second
        pending payment is still refused by the store.
        """
        amount = _to_amount(amount, "amount")
        if not method:
            raise ValidationError("method is required")

        expires_at = utcnow() + timedelta(days=settings.PAYMENT_EXPIRY_DAYS)

        with atomic(db, f"creating payment for transaction {transaction_id}"):
            transaction = TransactionStatusManager.lock_transaction(db, transaction_id)
            if not transaction:
                raise NotFoundError(f"Transaction {transaction_id} not found")

            payment = Payment(
                transaction_id=transaction.id,
                amount=amount,
                method=method,
                service_fee=service_fee or 0,
                status=PaymentStatus.PENDING,
                expires_at=expires_at,
                external_id=external_id,
                payment_url=payment_url,
            )
            db.add(payment)
            try:
                db.flush()
            except IntegrityError as e:
                raise StateConflictError(
                    f"Transaction {transaction_id} already has an active payment"
                ) from e

            TransactionStatusManager.transition_transaction(
                db, transaction.id, TransactionStatus.IN_PROGRESS
            )

        db.refresh(payment)
        logger.info(f"Payment created: ID={payment.id}, Transaction={transaction_id}, Method={method}")
        return payment

    # ==================== STATUS UPDATES ====================
    @staticmethod
    def update_payment_status(
        db: Session,
        payment_id: int,
        new_status: str,
        admin_notes: Optional[str] = None,
        admin_user_id: Optional[int] = None,
    ) -> Payment:
        """
        Manually set a payment's status.

        Marking a payment paid fans out delivery line items and moves the
        transaction to success if all of them are already done, otherwise to
        in_progress. Failed, expired and cancelled payments leave the
        transaction as it is.
        """
        try:
            status = PaymentStatus(new_status)
        except ValueError:
            allowed = ", ".join(s.value for s in PaymentStatus)
            raise ValidationError(f"Invalid payment status '{new_status}'. Allowed: {allowed}")

        payment = db.query(Payment).filter(Payment.id == payment_id).first()
        if not payment:
            raise NotFoundError(f"Payment {payment_id} not found")

        PaymentExpirationService.auto_expire_on_api_call(
            db, transaction_id=payment.transaction_id, payment_id=payment.id
        )

        now = utcnow()
        with atomic(db, f"updating payment {payment_id}"):
            transaction = TransactionStatusManager.lock_transaction(db, payment.transaction_id)
            payment = TransactionStatusManager.lock_payment(db, payment_id)

            if payment.status != PaymentStatus.PENDING:
                if payment.status == status:
                    return payment
                raise StateConflictError(
                    f"Payment {payment_id} is already {payment.status.value} and cannot become {status.value}"
                )

            if status == PaymentStatus.PAID and transaction.status not in OPEN_TRANSACTION_STATUSES:
                raise StateConflictError(
                    f"Transaction {transaction.id} is {transaction.status.value}; payment cannot be marked paid"
                )

            audit = {
                "admin_notes": admin_notes,
                "admin_user_id": admin_user_id,
                "action_date": now,
            }

            if status == PaymentStatus.PENDING:
                for key, value in audit.items():
                    setattr(payment, key, value)
            else:
                if status == PaymentStatus.PAID:
                    audit["payment_date"] = now
                moved = TransactionStatusManager.transition_payment(db, payment.id, status, **audit)
                if not moved:
                    raise StateConflictError(f"Payment {payment_id} changed while being updated")

            if status == PaymentStatus.PAID:
                TransactionStatusManager.create_delivery_records(db, transaction)
                if not TransactionStatusManager.check_and_complete_transaction(db, transaction.id):
                    TransactionStatusManager.transition_transaction(
                        db, transaction.id, TransactionStatus.IN_PROGRESS
                    )

        db.refresh(payment)
        logger.info(f"Payment ID={payment_id} set to {status.value} by admin={admin_user_id}")
        return payment

    # ==================== EXPIRATION ====================
    @staticmethod
    def is_payment_expired(payment: Payment, now: Optional[datetime] = None) -> bool:
        if not payment.expires_at or payment.status != PaymentStatus.PENDING:
            return False
        return (now or utcnow()) > ensure_aware(payment.expires_at)

    @staticmethod
    def is_transaction_expired(transaction: Transaction, now: Optional[datetime] = None) -> bool:
        if not transaction.expires_at or transaction.status not in OPEN_TRANSACTION_STATUSES:
            return False
        return (now or utcnow()) > ensure_aware(transaction.expires_at)

    @staticmethod
    def _expire_payment(db: Session, payment_id: int, now: datetime) -> bool:
        return TransactionStatusManager.transition_payment(
            db, payment_id, PaymentStatus.EXPIRED,
            conditions=(Payment.expires_at < now,),
        )

    @staticmethod
    def _expire_transaction(db: Session, transaction_id: int, now: datetime) -> bool:
        moved = TransactionStatusManager.transition_transaction(
            db, transaction_id, TransactionStatus.EXPIRED,
            conditions=(Transaction.expires_at < now, ~_has_paid_payment()),
        )
        if moved:
            TransactionStatusManager.cancel_pending_payments(db, transaction_id, PaymentStatus.EXPIRED)
        return moved

    @staticmethod
    def auto_expire_on_api_call(
        db: Session,
        transaction_id: Optional[int] = None,
        payment_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Expire the given transaction and/or payment if their deadline has passed.

        Writes the transaction row before the payment row, the lock order
        update_payment_status and payment creation use as well.
        """
        now = now or utcnow()
        with atomic(db, "auto-expiring on access"):
            if transaction_id is not None and PaymentExpirationService._expire_transaction(db, transaction_id, now):
                logger.info(f"[AUTO_EXPIRE] Transaction ID={transaction_id} expired on access")
            if payment_id is not None and PaymentExpirationService._expire_payment(db, payment_id, now):
                logger.info(f"[AUTO_EXPIRE] Payment ID={payment_id} expired on access")

    @staticmethod
    def get_expired_payments(db: Session, now: Optional[datetime] = None) -> List[Payment]:
        now = now or utcnow()
        return (
            db.query(Payment)
            .filter(Payment.status == PaymentStatus.PENDING, Payment.expires_at < now)
            .order_by(Payment.id)
            .all()
        )

    @staticmethod
    def get_expired_transactions(db: Session, now: Optional[datetime] = None) -> List[Transaction]:
        now = now or utcnow()
        return (
            db.query(Transaction)
            .filter(
                Transaction.status.in_(OPEN_TRANSACTION_STATUSES),
                Transaction.expires_at < now,
                ~_has_paid_payment(),
            )
            .order_by(Transaction.id)
            .all()
        )

    @staticmethod
    def process_expired_payments(db: Session, now: Optional[datetime] = None) -> List[Payment]:
        """Expire every overdue pending payment; returns the ones this call expired"""
        now = now or utcnow()
        expired = []
        with atomic(db, "expiring overdue payments"):
            for payment in PaymentExpirationService.get_expired_payments(db, now):
                if PaymentExpirationService._expire_payment(db, payment.id, now):
                    expired.append(payment)

        for payment in expired:
            db.refresh(payment)
        logger.info(f"Expired {len(expired)} payments")
        return expired

    @staticmethod
    def process_expired_transactions(db: Session, now: Optional[datetime] = None) -> List[Transaction]:
        """Expire every overdue open transaction; returns the ones this call expired"""
        now = now or utcnow()
        expired = []
        with atomic(db, "expiring overdue transactions"):
            for transaction in PaymentExpirationService.get_expired_transactions(db, now):
                if PaymentExpirationService._expire_transaction(db, transaction.id, now):
                    expired.append(transaction)

        for transaction in expired:
            db.refresh(transaction)
        logger.info(f"Expired {len(expired)} transactions")
        return expired

    # ==================== CANCELLATION ====================
    @staticmethod
    def _cancel(db: Session, transaction: Transaction, actor: str) -> Transaction:
        PaymentExpirationService.auto_expire_on_api_call(db, transaction_id=transaction.id)

        with atomic(db, f"cancelling transaction {transaction.id}"):
            if TransactionStatusManager.transition_transaction(db, transaction.id, TransactionStatus.CANCELLED):
                cancelled = TransactionStatusManager.cancel_pending_payments(
                    db, transaction.id, PaymentStatus.CANCELLED
                )
                logger.info(f"[TRANSACTION_CANCELLATION] Transaction ID={transaction.id} cancelled by {actor}, payments cancelled={cancelled}")
            else:
                logger.info(f"[TRANSACTION_CANCELLATION] Transaction ID={transaction.id} already {transaction.status.value}, nothing to cancel")

        db.refresh(transaction)
        return transaction

    @staticmethod
    def cancel_transaction_by_user(db: Session, transaction_id: int, user_id: int) -> Transaction:
        """Cancel the caller's own transaction; terminal transactions come back unchanged"""
        transaction = (
            db.query(Transaction)
            .filter(Transaction.id == transaction_id, Transaction.user_id == user_id)
            .first()
        )
        if not transaction:
            raise NotFoundError("Transaction not found or unauthorized")

        return PaymentExpirationService._cancel(db, transaction, f"user {user_id}")

    @staticmethod
    def cancel_transaction(db: Session, transaction_id: int, admin_user_id: Optional[int] = None) -> Transaction:
        transaction = db.query(Transaction).filter(Transaction.id == transaction_id).first()
        if not transaction:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        return PaymentExpirationService._cancel(db, transaction, f"admin {admin_user_id}")

    # ==================== DELIVERY ====================
    @staticmethod
    def _extend_whatsapp_subscription(db: Session, item: ServicesWhatsappCustomers, now: datetime) -> None:
        """Start the subscription now, or at the end of the customer's current one for this package"""
        current = (
            db.query(ServicesWhatsappCustomers)
            .filter(
                ServicesWhatsappCustomers.customer_id == item.customer_id,
                ServicesWhatsappCustomers.package_id == item.package_id,
                ServicesWhatsappCustomers.id != item.id,
                ServicesWhatsappCustomers.status == DeliveryStatus.DELIVERED,
                ServicesWhatsappCustomers.expired_at > now,
            )
            .order_by(ServicesWhatsappCustomers.expired_at.desc())
            .first()
        )
        start = ensure_aware(current.expired_at) if current else now
        days = SUBSCRIPTION_DAYS[item.duration or SubscriptionDuration.MONTH]
        item.expired_at = start + timedelta(days=days)
        logger.info(f"[WHATSAPP_ACTIVATION] Customer {item.customer_id} subscribed until {item.expired_at}")

    @staticmethod
    def _complete_delivery(
        db: Session,
        model,
        transaction_id: int,
        admin_user_id: Optional[int],
        item_id: Optional[int] = None,
        target_status: DeliveryStatus = DeliveryStatus.DELIVERED,
    ) -> Dict[str, bool]:
        now = utcnow()
        try:
            with atomic(db, f"completing delivery for transaction {transaction_id}"):
                transaction = TransactionStatusManager.lock_transaction(db, transaction_id)
                if not transaction:
                    raise NotFoundError(f"Transaction {transaction_id} not found")

                if transaction.status not in OPEN_TRANSACTION_STATUSES + [TransactionStatus.SUCCESS]:
                    raise StateConflictError(
                        f"Transaction {transaction_id} is {transaction.status.value}; delivery is closed"
                    )

                query = db.query(model).filter(model.transaction_id == transaction_id)
                if item_id is not None:
                    item = query.filter(model.id == item_id).first()
                else:
                    item = (
                        query.filter(model.status == DeliveryStatus.AWAITING_DELIVERY).order_by(model.id).first()
                        or query.order_by(model.id).first()
                    )
                if not item:
                    raise NotFoundError(f"{model.__name__} record not found for transaction {transaction_id}")

                delivered = False
                if item.status == DeliveryStatus.AWAITING_DELIVERY:
                    item.status = target_status
                    if target_status == DeliveryStatus.DELIVERED:
                        item.delivered_at = now
                        item.delivered_by = admin_user_id
                        if model is ServicesWhatsappCustomers:
                            PaymentExpirationService._extend_whatsapp_subscription(db, item, now)
                    delivered = True
                    db.flush()

                completed = TransactionStatusManager.check_and_complete_transaction(db, transaction_id)
                if not completed:
                    completed = transaction.status == TransactionStatus.SUCCESS
        except PersistenceError as e:
            raise DeliveryError(f"Failed to complete delivery: {e.message}") from e

        logger.info(
            f"[DELIVERY_COMPLETION] {model.__name__} item for transaction {transaction_id} "
            f"{target_status.value}={delivered}, completed={completed}"
        )
        return {"delivered": delivered, "transaction_completed": completed}

    @staticmethod
    def complete_product_delivery(
        db: Session,
        transaction_id: int,
        admin_user_id: Optional[int] = None,
        item_id: Optional[int] = None,
    ) -> Dict[str, bool]:
        """Mark a product line item delivered and close the transaction if it was the last one"""
        return PaymentExpirationService._complete_delivery(
            db, ServicesProductCustomers, transaction_id, admin_user_id, item_id
        )

    @staticmethod
    def complete_whatsapp_delivery(
        db: Session,
        transaction_id: int,
        admin_user_id: Optional[int] = None,
        item_id: Optional[int] = None,
    ) -> Dict[str, bool]:
        return PaymentExpirationService._complete_delivery(
            db, ServicesWhatsappCustomers, transaction_id, admin_user_id, item_id
        )

    @staticmethod
    def complete_addons_delivery(
        db: Session,
        transaction_id: int,
        admin_user_id: Optional[int] = None,
    ) -> Dict[str, bool]:
        """Mark the transaction's combined add-on line item delivered"""
        return PaymentExpirationService._complete_delivery(
            db, ServicesAddonsCustomers, transaction_id, admin_user_id
        )

    @staticmethod
    def waive_delivery_item(
        db: Session,
        transaction_id: int,
        item_id: int,
        kind: str,
        admin_user_id: Optional[int] = None,
    ) -> Dict[str, bool]:
        """Waive a line item so it no longer blocks completion"""
        try:
            item_kind = ItemKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown item kind '{kind}'")

        model = DELIVERY_MODEL_BY_KIND[item_kind]
        result = PaymentExpirationService._complete_delivery(
            db, model, transaction_id, admin_user_id, item_id, target_status=DeliveryStatus.WAIVED
        )
        return {"waived": result["delivered"], "transaction_completed": result["transaction_completed"]}

import logging
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from payflow.core.constants import (
    TransactionStatus,
    PaymentStatus,
    DeliveryStatus,
    TransactionType,
    ItemKind,
    SubscriptionDuration,
    TRANSACTION_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    OPEN_TRANSACTION_STATUSES,
    DONE_DELIVERY_STATUSES,
)
from payflow.models.transaction import (
    Transaction,
    Payment,
    ServicesProductCustomers,
    ServicesWhatsappCustomers,
    ServicesAddonsCustomers,
)
from payflow.utils.dates import utcnow

logger = logging.getLogger(__name__)

DELIVERY_MODELS = (ServicesProductCustomers, ServicesWhatsappCustomers, ServicesAddonsCustomers)


class TransactionStatusManager:
    """
    Single place where Transaction and Payment status columns are written.

    Every write is a conditional update: the row only moves if its current
    status is one the transition table allows as a source for the target.
    The caller owns the commit.
    """

    # ==================== TRANSITION TABLE ====================
    @staticmethod
    def get_valid_status_transitions(current_status: TransactionStatus) -> List[TransactionStatus]:
        return list(TRANSACTION_TRANSITIONS.get(TransactionStatus(current_status), []))

    @staticmethod
    def transaction_sources(new_status: TransactionStatus) -> List[TransactionStatus]:
        return [src for src, targets in TRANSACTION_TRANSITIONS.items() if new_status in targets]

    @staticmethod
    def payment_sources(new_status: PaymentStatus) -> List[PaymentStatus]:
        return [src for src, targets in PAYMENT_TRANSITIONS.items() if new_status in targets]

    # ==================== CONDITIONAL UPDATES ====================
    @staticmethod
    def transition_transaction(
        db: Session,
        transaction_id: int,
        new_status: TransactionStatus,
        conditions: tuple = (),
    ) -> bool:
        """Move a transaction to new_status; True if this call made the change"""
        sources = TransactionStatusManager.transaction_sources(new_status)
        if not sources:
            return False

        result = db.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status.in_(sources),
                *conditions,
            )
            .values(status=new_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        moved = result.rowcount == 1
        if moved:
            logger.info(f"Transaction ID={transaction_id} -> {new_status.value}")
        return moved

    @staticmethod
    def transition_payment(
        db: Session,
        payment_id: int,
        new_status: PaymentStatus,
        conditions: tuple = (),
        **values,
    ) -> bool:
        """Move a payment to new_status, writing any extra column values alongside"""
        sources = TransactionStatusManager.payment_sources(new_status)
        if not sources:
            return False

        result = db.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status.in_(sources),
                *conditions,
            )
            .values(status=new_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        moved = result.rowcount == 1
        if moved:
            logger.info(f"Payment ID={payment_id} -> {new_status.value}")
        return moved

    @staticmethod
    def cancel_pending_payments(db: Session, transaction_id: int, new_status: PaymentStatus) -> int:
        """Close every pending payment of a transaction (cancelled or expired)"""
        result = db.execute(
            update(Payment)
            .where(
                Payment.transaction_id == transaction_id,
                Payment.status == PaymentStatus.PENDING,
            )
            .values(status=new_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ==================== LOCKING ====================
    @staticmethod
    def lock_transaction(db: Session, transaction_id: int) -> Optional[Transaction]:
        """SELECT ... FOR UPDATE on the parent row (no-op lock on SQLite)"""
        return db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @staticmethod
    def lock_payment(db: Session, payment_id: int) -> Optional[Payment]:
        return db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    # ==================== DELIVERY ====================
    @staticmethod
    def create_delivery_records(db: Session, transaction: Transaction) -> int:
        """
        Fan out one delivery line item per purchased item.

        Add-ons are combined into a single line item. A transaction without
        recorded items gets one line item for the whole purchase, routed by
        its type. Existing line items make this a no-op.
        """
        existing = sum(
            db.query(func.count(model.id)).filter(model.transaction_id == transaction.id).scalar()
            for model in DELIVERY_MODELS
        )
        if existing:
            return 0

        records = []
        addons = []
        for item in transaction.items:
            if item.kind == ItemKind.ADDON:
                addons.append(item)
            elif item.kind == ItemKind.WHATSAPP:
                records.append(ServicesWhatsappCustomers(
                    transaction_id=transaction.id,
                    customer_id=transaction.user_id,
                    transaction_item_id=item.id,
                    package_id=item.package_id,
                    quantity=item.quantity,
                    duration=item.duration or SubscriptionDuration.MONTH,
                    status=DeliveryStatus.AWAITING_DELIVERY,
                ))
            else:
                records.append(ServicesProductCustomers(
                    transaction_id=transaction.id,
                    customer_id=transaction.user_id,
                    transaction_item_id=item.id,
                    package_id=item.package_id,
                    quantity=item.quantity,
                    status=DeliveryStatus.AWAITING_DELIVERY,
                ))

        if addons:
            records.append(ServicesAddonsCustomers(
                transaction_id=transaction.id,
                customer_id=transaction.user_id,
                quantity=sum(item.quantity for item in addons),
                addon_details=[
                    {
                        "transaction_item_id": item.id,
                        "package_id": item.package_id,
                        "quantity": item.quantity,
                        "unit_price": str(item.unit_price) if item.unit_price is not None else None,
                    }
                    for item in addons
                ],
                status=DeliveryStatus.AWAITING_DELIVERY,
            ))

        if not records:
            model = (
                ServicesWhatsappCustomers
                if transaction.type == TransactionType.WHATSAPP_SERVICE
                else ServicesProductCustomers
            )
            records.append(model(
                transaction_id=transaction.id,
                customer_id=transaction.user_id,
                quantity=1,
                status=DeliveryStatus.AWAITING_DELIVERY,
            ))

        db.add_all(records)
        db.flush()
        logger.info(f"Created {len(records)} delivery record(s) for transaction ID={transaction.id}")
        return len(records)

    @staticmethod
    def all_items_delivered(db: Session, transaction_id: int) -> bool:
        """True when no line item of the transaction is still awaiting delivery"""
        outstanding = 0
        for model in DELIVERY_MODELS:
            outstanding += (
                db.query(func.count(model.id))
                .filter(
                    model.transaction_id == transaction_id,
                    model.status.notin_(DONE_DELIVERY_STATUSES),
                )
                .scalar()
            )
        return outstanding == 0

    @staticmethod
    def check_and_complete_transaction(db: Session, transaction_id: int) -> bool:
        """
        Close the transaction as success once every line item is done.

        Runs under a row lock on the parent so two deliveries finishing at the
        same time cannot both miss the last sibling.
        """
        transaction = TransactionStatusManager.lock_transaction(db, transaction_id)
        if not transaction or transaction.status not in OPEN_TRANSACTION_STATUSES:
            return False

        db.flush()
        if not TransactionStatusManager.all_items_delivered(db, transaction_id):
            logger.info(f"Transaction ID={transaction_id} not yet complete: items awaiting delivery")
            return False

        return TransactionStatusManager.transition_transaction(
            db, transaction_id, TransactionStatus.SUCCESS
        )

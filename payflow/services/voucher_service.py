from decimal import Decimal
from sqlalchemy import update, or_
from sqlalchemy.orm import Session
import logging

from payflow.core.exceptions import ValidationError
from payflow.models.transaction import Voucher, VoucherUsage
from payflow.utils.dates import utcnow, ensure_aware

logger = logging.getLogger(__name__)


class VoucherService:

    @staticmethod
    def calculate_discount(voucher: Voucher, amount: Decimal) -> Decimal:
        """Discount for an amount, capped by max_discount and by the amount itself"""
        if voucher.discount_type == "percent":
            discount = (amount * Decimal(voucher.value)) / Decimal('100')
        elif voucher.discount_type == "flat":
            discount = Decimal(voucher.value)
        else:
            discount = Decimal('0')

        if voucher.max_discount is not None and discount > voucher.max_discount:
            discount = Decimal(voucher.max_discount)

        return min(discount, amount).quantize(Decimal('0.01'))

    @staticmethod
    def apply_voucher(db: Session, voucher_id: int, user_id: int, amount: Decimal) -> Decimal:
        """
        Validate a voucher for this purchase and return its discount.
        Nothing is written; usage is recorded once the transaction exists.
        """
        voucher = db.query(Voucher).filter(Voucher.id == voucher_id).first()

        if not voucher or not voucher.is_active:
            raise ValidationError(f"Voucher {voucher_id} is not valid")

        if voucher.expires_at and ensure_aware(voucher.expires_at) <= utcnow():
            raise ValidationError(f"Voucher {voucher.code} has expired")

        if voucher.max_uses is not None and voucher.used_count >= voucher.max_uses:
            raise ValidationError(f"Voucher {voucher.code} usage limit reached")

        if voucher.min_amount and amount < voucher.min_amount:
            raise ValidationError(f"Voucher {voucher.code} requires a minimum amount of {voucher.min_amount}")

        return VoucherService.calculate_discount(voucher, amount)

    @staticmethod
    def record_usage(
        db: Session,
        voucher_id: int,
        user_id: int,
        transaction_id: int,
        discount_amount: Decimal
    ) -> VoucherUsage:
        """
        Record the voucher against a transaction; caller commits.

        The use counter only moves while it is below max_uses.
        """
        result = db.execute(
            update(Voucher)
            .where(
                Voucher.id == voucher_id,
                or_(Voucher.max_uses.is_(None), Voucher.used_count < Voucher.max_uses),
            )
            .values(used_count=Voucher.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ValidationError(f"Voucher {voucher_id} usage limit reached")

        usage = VoucherUsage(
            voucher_id=voucher_id,
            user_id=user_id,
            transaction_id=transaction_id,
            discount_amount=discount_amount,
        )
        db.add(usage)

        logger.info(f"Voucher ID={voucher_id} used on transaction ID={transaction_id}, discount={discount_amount}")
        return usage

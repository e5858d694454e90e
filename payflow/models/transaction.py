# payflow/models/transaction.py
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, Text, Numeric, String, DateTime, Boolean, ForeignKey,
    Enum as SAEnum, Index, JSON, text
)
from sqlalchemy.orm import relationship, validates

from payflow.core.database import Base
from payflow.core.constants import (
    TransactionStatus,
    PaymentStatus,
    DeliveryStatus,
    TransactionType,
    ItemKind,
    SubscriptionDuration,
    RoleEnum,
)
from payflow.core.exceptions import StateConflictError
from payflow.utils.dates import utcnow


# ========== USERS & AUTH ==========
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=False)
    role = Column(SAEnum(RoleEnum), nullable=False, default=RoleEnum.CUSTOMER)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    transactions = relationship("Transaction", back_populates="user")
    blacklisted_tokens = relationship("JWTBlacklist", back_populates="user")


class JWTBlacklist(Base):
    """Revoked access tokens, shared by every process serving the API."""
    __tablename__ = "jwt_blacklist"

    id = Column(Integer, primary_key=True, index=True)
    jti = Column(String(36), unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)
    reason = Column(String(50))

    user = relationship("User", back_populates="blacklisted_tokens")

    __table_args__ = (
        Index('ix_jwt_blacklist_expires', 'expires_at'),
    )


# ========== VOUCHERS ==========
class Voucher(Base):
    __tablename__ = "vouchers"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, index=True, nullable=False)
    discount_type = Column(String(20), nullable=False)  # "flat" | "percent"
    value = Column(Numeric(14, 2), nullable=False)
    max_discount = Column(Numeric(14, 2), nullable=True)
    min_amount = Column(Numeric(14, 2), default=0)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    usages = relationship("VoucherUsage", back_populates="voucher")


class VoucherUsage(Base):
    __tablename__ = "voucher_usages"

    id = Column(Integer, primary_key=True, index=True)
    voucher_id = Column(Integer, ForeignKey("vouchers.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False)
    discount_amount = Column(Numeric(14, 2), nullable=False)
    used_at = Column(DateTime(timezone=True), default=utcnow)

    voucher = relationship("Voucher", back_populates="usages")
    transaction = relationship("Transaction", back_populates="voucher_usage")


# ========== TRANSACTIONS ==========
class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="IDR")
    type = Column(SAEnum(TransactionType), nullable=False)
    status = Column(SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING)

    # Set once at creation, kept after cancel/expire for audit
    expires_at = Column(DateTime(timezone=True), nullable=False)

    # Pricing breakdown (write-once)
    original_amount = Column(Numeric(14, 2), nullable=True)
    discount_amount = Column(Numeric(14, 2), nullable=True)
    final_amount = Column(Numeric(14, 2), nullable=True)
    service_fee_amount = Column(Numeric(14, 2), nullable=True)
    voucher_id = Column(Integer, ForeignKey("vouchers.id"), nullable=True)

    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="transactions")
    items = relationship("TransactionItem", back_populates="transaction", order_by="TransactionItem.id")
    payments = relationship("Payment", back_populates="transaction", order_by="Payment.id")
    product_deliveries = relationship("ServicesProductCustomers", back_populates="transaction", order_by="ServicesProductCustomers.id")
    whatsapp_deliveries = relationship("ServicesWhatsappCustomers", back_populates="transaction", order_by="ServicesWhatsappCustomers.id")
    addon_deliveries = relationship("ServicesAddonsCustomers", back_populates="transaction", order_by="ServicesAddonsCustomers.id")
    voucher_usage = relationship("VoucherUsage", back_populates="transaction", uselist=False)

    __table_args__ = (
        Index('ix_transactions_status_expires', 'status', 'expires_at'),
        Index('ix_transactions_user', 'user_id'),
    )

    @validates("original_amount", "discount_amount", "final_amount", "service_fee_amount")
    def _freeze_pricing(self, key, value):
        current = self.__dict__.get(key)
        if current is not None and value is not None and Decimal(str(value)) != Decimal(str(current)):
            raise StateConflictError(f"{key} is immutable once set")
        if current is not None and value is None:
            raise StateConflictError(f"{key} is immutable once set")
        return value

    @property
    def delivery_items(self):
        return list(self.product_deliveries) + list(self.whatsapp_deliveries) + list(self.addon_deliveries)


class TransactionItem(Base):
    """A purchased package recorded with the transaction."""
    __tablename__ = "transaction_items"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False)
    kind = Column(SAEnum(ItemKind), nullable=False)
    package_id = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(14, 2), nullable=True)
    duration = Column(SAEnum(SubscriptionDuration), nullable=True)

    transaction = relationship("Transaction", back_populates="items")


# ========== PAYMENTS ==========
class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False)

    amount = Column(Numeric(14, 2), nullable=False)
    method = Column(String(50), nullable=False)
    service_fee = Column(Numeric(14, 2), default=0)
    status = Column(SAEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    # Payment gateway references
    external_id = Column(String(100), nullable=True)
    payment_url = Column(Text, nullable=True)

    # Manual admin action audit
    admin_notes = Column(Text, nullable=True)
    admin_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action_date = Column(DateTime(timezone=True), nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    transaction = relationship("Transaction", back_populates="payments")

    __table_args__ = (
        # At most one pending payment per transaction
        Index(
            'uq_payments_one_pending',
            'transaction_id',
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index('ix_payments_status_expires', 'status', 'expires_at'),
    )


# ========== DELIVERY LINE ITEMS ==========
class DeliveryMixin:
    """Common columns for delivery line items"""

    id = Column(Integer, primary_key=True, index=True)
    package_id = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    status = Column(SAEnum(DeliveryStatus), nullable=False, default=DeliveryStatus.AWAITING_DELIVERY)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ServicesProductCustomers(Base, DeliveryMixin):
    __tablename__ = "services_product_customers"

    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    transaction_item_id = Column(Integer, ForeignKey("transaction_items.id"), nullable=True)
    delivered_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    transaction = relationship("Transaction", back_populates="product_deliveries")


class ServicesWhatsappCustomers(Base, DeliveryMixin):
    __tablename__ = "services_whatsapp_customers"

    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    transaction_item_id = Column(Integer, ForeignKey("transaction_items.id"), nullable=True)
    delivered_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    duration = Column(SAEnum(SubscriptionDuration), nullable=False, default=SubscriptionDuration.MONTH)
    expired_at = Column(DateTime(timezone=True), nullable=True)

    transaction = relationship("Transaction", back_populates="whatsapp_deliveries")


class ServicesAddonsCustomers(Base, DeliveryMixin):
    """All add-ons of a transaction, delivered together as one line item."""
    __tablename__ = "services_addons_customers"

    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    delivered_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    addon_details = Column(JSON, nullable=True)

    transaction = relationship("Transaction", back_populates="addon_deliveries")

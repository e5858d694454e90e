from enum import Enum


class TransactionStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    SUCCESS = 'success'        # paid and fully delivered
    FAILED = 'failed'          # reserved, never assigned by a transition
    CANCELLED = 'cancelled'
    EXPIRED = 'expired'


class PaymentStatus(str, Enum):
    PENDING = 'pending'
    PAID = 'paid'
    FAILED = 'failed'
    EXPIRED = 'expired'
    CANCELLED = 'cancelled'


class DeliveryStatus(str, Enum):
    AWAITING_DELIVERY = 'awaiting_delivery'
    DELIVERED = 'delivered'
    WAIVED = 'waived'


class TransactionType(str, Enum):
    PRODUCT = 'product'
    WHATSAPP_SERVICE = 'whatsapp_service'


class ItemKind(str, Enum):
    PRODUCT = 'product'
    WHATSAPP = 'whatsapp'
    ADDON = 'addon'


class SubscriptionDuration(str, Enum):
    MONTH = 'month'
    YEAR = 'year'


class RoleEnum(str, Enum):
    CUSTOMER = 'CUSTOMER'
    ADMIN = 'ADMIN'


# Allowed status transitions, source -> targets
TRANSACTION_TRANSITIONS = {
    TransactionStatus.PENDING: [
        TransactionStatus.IN_PROGRESS,
        TransactionStatus.SUCCESS,
        TransactionStatus.CANCELLED,
        TransactionStatus.EXPIRED,
    ],
    TransactionStatus.IN_PROGRESS: [
        TransactionStatus.SUCCESS,
        TransactionStatus.CANCELLED,
        TransactionStatus.EXPIRED,
    ],
    TransactionStatus.SUCCESS: [],
    TransactionStatus.FAILED: [],
    TransactionStatus.CANCELLED: [],
    TransactionStatus.EXPIRED: [],
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: [
        PaymentStatus.PAID,
        PaymentStatus.FAILED,
        PaymentStatus.EXPIRED,
        PaymentStatus.CANCELLED,
    ],
    PaymentStatus.PAID: [],
    PaymentStatus.FAILED: [],
    PaymentStatus.EXPIRED: [],
    PaymentStatus.CANCELLED: [],
}

OPEN_TRANSACTION_STATUSES = [TransactionStatus.PENDING, TransactionStatus.IN_PROGRESS]
DONE_DELIVERY_STATUSES = [DeliveryStatus.DELIVERED, DeliveryStatus.WAIVED]

SUBSCRIPTION_DAYS = {
    SubscriptionDuration.MONTH: 30,
    SubscriptionDuration.YEAR: 365,
}

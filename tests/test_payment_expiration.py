from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from payflow.core.constants import (
    TransactionStatus,
    PaymentStatus,
    DeliveryStatus,
    TransactionType,
)
from payflow.core.exceptions import (
    ValidationError,
    NotFoundError,
    StateConflictError,
    DeliveryError,
)
from payflow.models.transaction import (
    Payment,
    Transaction,
    TransactionItem,
    ServicesAddonsCustomers,
    ServicesProductCustomers,
    ServicesWhatsappCustomers,
    Voucher,
    VoucherUsage,
)
from payflow.core.database import atomic
from payflow.services.payment_expiration import PaymentExpirationService
from payflow.services.transaction_status_manager import TransactionStatusManager
from payflow.services.voucher_service import VoucherService
from payflow.utils.dates import utcnow, ensure_aware

from factories import make_transaction, make_payment, backdate


def _pay(db, payment, admin=None):
    return PaymentExpirationService.update_payment_status(
        db, payment.id, "paid", admin_notes="confirmed transfer", admin_user_id=admin.id if admin else None
    )


# ==================== CREATION ====================

def test_create_transaction_starts_pending_with_deadline(db, customer):
    before = utcnow()
    transaction = make_transaction(db, customer)

    assert transaction.status == TransactionStatus.PENDING
    assert transaction.currency == "IDR"
    deadline = ensure_aware(transaction.expires_at)
    assert before + timedelta(days=7) <= deadline <= utcnow() + timedelta(days=7)


@pytest.mark.parametrize("amount,type", [
    ("0", "product"),
    ("-5", "product"),
    (None, "product"),
    ("abc", "product"),
    ("NaN", "product"),
    ("Infinity", "product"),
    ("-Infinity", "product"),
    ("1000", ""),
    ("1000", "gift_card"),
])
def test_create_transaction_rejects_bad_input(db, customer, amount, type):
    with pytest.raises(ValidationError):
        PaymentExpirationService.create_transaction_with_expiration(
            db, user_id=customer.id, amount=amount, type=type
        )


@pytest.mark.parametrize("items", [
    [{"kind": "product", "package_id": "starter"}, {"kind": "bogus"}],
    [{"kind": "whatsapp", "package_id": "wa-basic", "duration": "fortnight"}],
])
def test_invalid_item_leaves_nothing_behind(db, customer, items):
    with pytest.raises(ValidationError):
        make_transaction(db, customer, items=items)

    db.commit()
    assert db.query(Transaction).count() == 0
    assert db.query(TransactionItem).count() == 0


def test_unexpected_error_rolls_back_the_block(db, customer):
    with pytest.raises(RuntimeError):
        with atomic(db, "creating transaction"):
            db.add(Transaction(
                user_id=customer.id,
                amount=Decimal("1000"),
                type=TransactionType.PRODUCT,
                expires_at=utcnow(),
            ))
            db.flush()
            raise RuntimeError("boom")

    db.commit()
    assert db.query(Transaction).count() == 0


def test_create_payment_moves_transaction_in_progress(db, customer):
    transaction = make_transaction(db, customer)
    payment = make_payment(db, transaction)

    assert payment.status == PaymentStatus.PENDING
    assert ensure_aware(payment.expires_at) <= utcnow() + timedelta(days=1)
    db.refresh(transaction)
    assert transaction.status == TransactionStatus.IN_PROGRESS


def test_create_payment_requires_method_and_amount(db, customer):
    transaction = make_transaction(db, customer)
    with pytest.raises(ValidationError):
        PaymentExpirationService.create_payment_with_expiration(db, transaction.id, "1000", "")
    with pytest.raises(ValidationError):
        PaymentExpirationService.create_payment_with_expiration(db, transaction.id, "0", "va")


def test_create_payment_unknown_transaction(db):
    with pytest.raises(NotFoundError):
        PaymentExpirationService.create_payment_with_expiration(db, 999, "1000", "va")


def test_second_pending_payment_is_refused(db, customer):
    transaction = make_transaction(db, customer)
    make_payment(db, transaction)

    assert not PaymentExpirationService.can_create_payment_for_transaction(db, transaction.id)
    with pytest.raises(StateConflictError):
        make_payment(db, transaction)

    pending = db.query(Payment).filter(
        Payment.transaction_id == transaction.id,
        Payment.status == PaymentStatus.PENDING,
    ).count()
    assert pending == 1


def test_can_create_payment_for_unknown_or_closed_transaction(db, customer):
    assert not PaymentExpirationService.can_create_payment_for_transaction(db, 12345)

    transaction = make_transaction(db, customer)
    assert PaymentExpirationService.can_create_payment_for_transaction(db, transaction.id)

    PaymentExpirationService.cancel_transaction_by_user(db, transaction.id, customer.id)
    assert not PaymentExpirationService.can_create_payment_for_transaction(db, transaction.id)


# ==================== PAYMENT AND DELIVERY ====================

def test_paid_payment_with_single_delivery_completes_transaction(db, customer, admin):
    transaction = make_transaction(db, customer)
    payment = make_payment(db, transaction)

    payment = _pay(db, payment, admin)
    assert payment.status == PaymentStatus.PAID
    assert payment.payment_date is not None
    assert payment.admin_user_id == admin.id
    assert payment.admin_notes == "confirmed transfer"

    db.refresh(transaction)
    assert transaction.status == TransactionStatus.IN_PROGRESS
    items = db.query(ServicesProductCustomers).filter_by(transaction_id=transaction.id).all()
    assert len(items) == 1
    assert items[0].status == DeliveryStatus.AWAITING_DELIVERY

    result = PaymentExpirationService.complete_product_delivery(db, transaction.id, admin.id)
    assert result == {"delivered": True, "transaction_completed": True}

    db.refresh(transaction)
    assert transaction.status == TransactionStatus.SUCCESS


def test_transaction_completes_only_after_last_item(db, customer, admin):
    transaction = make_transaction(db, customer, items=[
        {"kind": "product", "package_id": "starter", "quantity": 1},
        {"kind": "product", "package_id": "pro", "quantity": 2},
    ])
    payment = make_payment(db, transaction)
    _pay(db, payment, admin)

    items = (
        db.query(ServicesProductCustomers)
        .filter_by(transaction_id=transaction.id)
        .order_by(ServicesProductCustomers.id)
        .all()
    )
    assert [i.package_id for i in items] == ["starter", "pro"]

    first = PaymentExpirationService.complete_product_delivery(db, transaction.id, admin.id, item_id=items[0].id)
    assert first == {"delivered": True, "transaction_completed": False}
    db.refresh(transaction)
    assert transaction.status == TransactionStatus.IN_PROGRESS

    second = PaymentExpirationService.complete_product_delivery(db, transaction.id, admin.id)
    assert second == {"delivered": True, "transaction_completed": True}
    db.refresh(transaction)
    assert transaction.status == TransactionStatus.SUCCESS


def test_delivering_twice_is_a_no_op(db, customer, admin):
    transaction = make_transaction(db, customer)
    _pay(db, make_payment(db, transaction), admin)
    PaymentExpirationService.complete_product_delivery(db, transaction.id, admin.id)

    again = PaymentExpirationService.complete_product_delivery(db, transaction.id, admin.id)
    assert again == {"delivered": False, "transaction_completed": True}

    item = db.query(ServicesProductCustomers).filter_by(transaction_id=transaction.id).one()
    assert item.status == DeliveryStatus.DELIVERED
    assert item.delivered_by == admin.id


def test_delivery_on_cancelled_transaction_is_rejected(db, customer, admin):
    transaction = make_transaction(db, customer)
    PaymentExpirationService.cancel_transaction(db, transaction.id, admin.id)

    with pytest.raises(StateConflictError):
        PaymentExpirationService.complete_product_delivery(db, transaction.id, admin.id)


def test_delivery_without_line_items_is_not_found(db, customer, admin):
    transaction = make_transaction(db, customer)
    with pytest.raises(NotFoundError):
        PaymentExpirationService.complete_product_delivery(db, transaction.id, admin.id)
    with pytest.raises(NotFoundError):
        PaymentExpirationService.complete_product_delivery(db, 4040, admin.id)


def test_storage_failure_during_delivery_surfaces_as_delivery_error(db, customer, admin, monkeypatch):
    transaction = make_transaction(db, customer)
    _pay(db, make_payment(db, transaction), admin)

    def broken(db, transaction_id):
        raise OperationalError("UPDATE transactions", {}, Exception("connection lost"))

    monkeypatch.setattr(TransactionStatusManager, "check_and_complete_transaction", staticmethod(broken))

    with pytest.raises(DeliveryError):
        PaymentExpirationService.complete_product_delivery(db, transaction.id, admin.id)

    item = db.query(ServicesProductCustomers).filter_by(transaction_id=transaction.id).one()
    assert item.status == DeliveryStatus.AWAITING_DELIVERY


def test_whatsapp_subscription_extends_current_one(db, customer, admin):
    first_tx = make_transaction(db, customer, type=TransactionType.WHATSAPP_SERVICE.value, items=[
        {"kind": "whatsapp", "package_id": "wa-basic", "duration": "year"},
    ])
    _pay(db, make_payment(db, first_tx), admin)
    before = utcnow()
    result = PaymentExpirationService.complete_whatsapp_delivery(db, first_tx.id, admin.id)
    assert result["transaction_completed"] is True

    first = db.query(ServicesWhatsappCustomers).filter_by(transaction_id=first_tx.id).one()
    first_end = ensure_aware(first.expired_at)
    assert before + timedelta(days=365) <= first_end <= utcnow() + timedelta(days=365)

    second_tx = make_transaction(db, customer, type=TransactionType.WHATSAPP_SERVICE.value, items=[
        {"kind": "whatsapp", "package_id": "wa-basic", "duration": "month"},
    ])
    _pay(db, make_payment(db, second_tx), admin)
    PaymentExpirationService.complete_whatsapp_delivery(db, second_tx.id, admin.id)

    second = db.query(ServicesWhatsappCustomers).filter_by(transaction_id=second_tx.id).one()
    assert ensure_aware(second.expired_at) == first_end + timedelta(days=30)


def test_whatsapp_transaction_without_items_gets_one_line_item(db, customer, admin):
    transaction = make_transaction(db, customer, type=TransactionType.WHATSAPP_SERVICE.value)
    _pay(db, make_payment(db, transaction), admin)

    assert db.query(ServicesWhatsappCustomers).filter_by(transaction_id=transaction.id).count() == 1
    assert db.query(ServicesProductCustomers).filter_by(transaction_id=transaction.id).count() == 0


def test_waived_item_no_longer_blocks_completion(db, customer, admin):
    transaction = make_transaction(db, customer, items=[
        {"kind": "product", "package_id": "starter"},
        {"kind": "whatsapp", "package_id": "wa-basic", "duration": "month"},
    ])
    _pay(db, make_payment(db, transaction), admin)

    PaymentExpirationService.complete_product_delivery(db, transaction.id, admin.id)
    whatsapp_item = db.query(ServicesWhatsappCustomers).filter_by(transaction_id=transaction.id).one()

    result = PaymentExpirationService.waive_delivery_item(db, transaction.id, whatsapp_item.id, "whatsapp", admin.id)
    assert result == {"waived": True, "transaction_completed": True}

    db.refresh(whatsapp_item)
    assert whatsapp_item.status == DeliveryStatus.WAIVED
    assert whatsapp_item.expired_at is None


def test_waive_with_unknown_kind(db, customer, admin):
    transaction = make_transaction(db, customer)
    with pytest.raises(ValidationError):
        PaymentExpirationService.waive_delivery_item(db, transaction.id, 1, "voucher", admin.id)


def test_addons_are_delivered_as_one_line_item(db, customer, admin):
    transaction = make_transaction(db, customer, items=[
        {"kind": "product", "package_id": "starter"},
        {"kind": "addon", "package_id": "extra-storage", "quantity": 1, "unit_price": "15000"},
        {"kind": "addon", "package_id": "priority-support", "quantity": 2},
    ])
    _pay(db, make_payment(db, transaction), admin)

    assert db.query(ServicesProductCustomers).filter_by(transaction_id=transaction.id).count() == 1
    addon = db.query(ServicesAddonsCustomers).filter_by(transaction_id=transaction.id).one()
    assert addon.quantity == 3
    assert addon.status == DeliveryStatus.AWAITING_DELIVERY
    assert [d["package_id"] for d in addon.addon_details] == ["extra-storage", "priority-support"]
    assert Decimal(addon.addon_details[0]["unit_price"]) == Decimal("15000")
    assert addon.addon_details[1]["unit_price"] is None

    product = PaymentExpirationService.complete_product_delivery(db, transaction.id, admin.id)
    assert product == {"delivered": True, "transaction_completed": False}

    addons = PaymentExpirationService.complete_addons_delivery(db, transaction.id, admin.id)
    assert addons == {"delivered": True, "transaction_completed": True}

    db.refresh(addon)
    db.refresh(transaction)
    assert addon.status == DeliveryStatus.DELIVERED
    assert addon.delivered_by == admin.id
    assert transaction.status == TransactionStatus.SUCCESS


def test_addon_line_item_can_be_waived(db, customer, admin):
    transaction = make_transaction(db, customer, items=[
        {"kind": "addon", "package_id": "extra-storage"},
    ])
    _pay(db, make_payment(db, transaction), admin)
    addon = db.query(ServicesAddonsCustomers).filter_by(transaction_id=transaction.id).one()
    assert db.query(ServicesProductCustomers).filter_by(transaction_id=transaction.id).count() == 0

    result = PaymentExpirationService.waive_delivery_item(db, transaction.id, addon.id, "addon", admin.id)
    assert result == {"waived": True, "transaction_completed": True}


# ==================== STATUS UPDATES ====================

def test_failed_payment_leaves_transaction_open_for_retry(db, customer, admin):
    transaction = make_transaction(db, customer)
    payment = make_payment(db, transaction)

    payment = PaymentExpirationService.update_payment_status(db, payment.id, "failed", admin_user_id=admin.id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.payment_date is None

    db.refresh(transaction)
    assert transaction.status == TransactionStatus.IN_PROGRESS
    assert PaymentExpirationService.can_create_payment_for_transaction(db, transaction.id)
    assert make_payment(db, transaction).status == PaymentStatus.PENDING


def test_update_payment_status_validates_input(db, customer):
    transaction = make_transaction(db, customer)
    payment = make_payment(db, transaction)

    with pytest.raises(ValidationError):
        PaymentExpirationService.update_payment_status(db, payment.id, "refunded")
    with pytest.raises(NotFoundError):
        PaymentExpirationService.update_payment_status(db, 777, "paid")


def test_terminal_payment_cannot_change(db, customer, admin):
    transaction = make_transaction(db, customer)
    payment = make_payment(db, transaction)
    _pay(db, payment, admin)

    with pytest.raises(StateConflictError):
        PaymentExpirationService.update_payment_status(db, payment.id, "failed")

    # Repeating the same status is accepted and changes nothing
    same = PaymentExpirationService.update_payment_status(db, payment.id, "paid")
    assert same.status == PaymentStatus.PAID


def test_expired_payment_cannot_be_marked_paid(db, customer, admin):
    transaction = make_transaction(db, customer)
    payment = backdate(db, make_payment(db, transaction), minutes=5)

    with pytest.raises(StateConflictError):
        _pay(db, payment, admin)

    db.refresh(payment)
    assert payment.status == PaymentStatus.EXPIRED
    assert db.query(ServicesProductCustomers).filter_by(transaction_id=transaction.id).count() == 0


def test_payment_on_expired_transaction_cannot_be_marked_paid(db, customer, admin):
    transaction = make_transaction(db, customer)
    payment = make_payment(db, transaction)
    backdate(db, transaction, minutes=5)

    with pytest.raises(StateConflictError):
        _pay(db, payment, admin)

    db.refresh(transaction)
    db.refresh(payment)
    assert transaction.status == TransactionStatus.EXPIRED
    assert payment.status == PaymentStatus.EXPIRED


# ==================== EXPIRATION ====================

def test_expired_payment_reopens_transaction_for_a_new_payment(db, customer):
    transaction = make_transaction(db, customer)
    payment = backdate(db, make_payment(db, transaction), minutes=1)

    assert PaymentExpirationService.is_payment_expired(payment)
    PaymentExpirationService.auto_expire_on_api_call(db, transaction_id=transaction.id, payment_id=payment.id)

    db.refresh(payment)
    db.refresh(transaction)
    assert payment.status == PaymentStatus.EXPIRED
    assert transaction.status == TransactionStatus.IN_PROGRESS
    assert PaymentExpirationService.can_create_payment_for_transaction(db, transaction.id)


def test_expired_transaction_expires_its_pending_payment(db, customer):
    transaction = make_transaction(db, customer)
    payment = make_payment(db, transaction)
    backdate(db, transaction, days=1)

    assert PaymentExpirationService.is_transaction_expired(transaction)
    PaymentExpirationService.auto_expire_on_api_call(db, transaction_id=transaction.id)

    db.refresh(transaction)
    db.refresh(payment)
    assert transaction.status == TransactionStatus.EXPIRED
    assert payment.status == PaymentStatus.EXPIRED
    assert not PaymentExpirationService.can_create_payment_for_transaction(db, transaction.id)


def test_access_expiry_writes_transaction_before_payment(db, engine, customer):
    transaction = make_transaction(db, customer)
    payment = backdate(db, make_payment(db, transaction), minutes=5)
    backdate(db, transaction, minutes=5)

    updates = []

    def record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("UPDATE"):
            updates.append(statement.split()[1].strip('"'))

    event.listen(engine, "before_cursor_execute", record)
    try:
        PaymentExpirationService.auto_expire_on_api_call(db, transaction_id=transaction.id, payment_id=payment.id)
    finally:
        event.remove(engine, "before_cursor_execute", record)

    assert updates[0] == "transactions"
    assert "payments" in updates

    db.refresh(transaction)
    db.refresh(payment)
    assert transaction.status == TransactionStatus.EXPIRED
    assert payment.status == PaymentStatus.EXPIRED


def test_access_expiry_is_idempotent(db, customer):
    transaction = make_transaction(db, customer)
    payment = backdate(db, make_payment(db, transaction), minutes=5)
    backdate(db, transaction, minutes=5)

    PaymentExpirationService.auto_expire_on_api_call(db, transaction_id=transaction.id, payment_id=payment.id)
    db.refresh(transaction)
    db.refresh(payment)
    first = (transaction.status, transaction.expires_at, payment.status, payment.expires_at)
    assert first[0] == TransactionStatus.EXPIRED
    assert first[2] == PaymentStatus.EXPIRED

    for _ in range(2):
        PaymentExpirationService.auto_expire_on_api_call(db, transaction_id=transaction.id, payment_id=payment.id)
        db.refresh(transaction)
        db.refresh(payment)
        assert (transaction.status, transaction.expires_at, payment.status, payment.expires_at) == first


def test_is_expired_ignores_terminal_records(db, customer):
    transaction = make_transaction(db, customer)
    PaymentExpirationService.cancel_transaction_by_user(db, transaction.id, customer.id)
    later = utcnow() + timedelta(days=30)

    assert not PaymentExpirationService.is_transaction_expired(transaction, now=later)


def test_sweep_is_idempotent(db, customer):
    transaction = make_transaction(db, customer)
    payment = make_payment(db, transaction)
    later = utcnow() + timedelta(days=2)

    assert [p.id for p in PaymentExpirationService.get_expired_payments(db, later)] == [payment.id]
    first = PaymentExpirationService.process_expired_payments(db, now=later)
    assert [p.id for p in first] == [payment.id]
    assert first[0].status == PaymentStatus.EXPIRED

    assert PaymentExpirationService.process_expired_payments(db, now=later) == []
    assert PaymentExpirationService.process_expired_transactions(db, now=later) == []


def test_sweep_expires_overdue_transactions(db, customer):
    stale = make_transaction(db, customer)
    pending_payment = make_payment(db, stale)
    fresh = make_transaction(db, customer)
    backdate(db, stale, hours=1)

    expired = PaymentExpirationService.process_expired_transactions(db)
    assert [t.id for t in expired] == [stale.id]
    assert expired[0].status == TransactionStatus.EXPIRED

    db.refresh(pending_payment)
    db.refresh(fresh)
    assert pending_payment.status == PaymentStatus.EXPIRED
    assert fresh.status == TransactionStatus.PENDING


def test_transaction_with_paid_payment_never_expires(db, customer, admin):
    transaction = make_transaction(db, customer)
    _pay(db, make_payment(db, transaction), admin)
    later = utcnow() + timedelta(days=30)

    assert PaymentExpirationService.get_expired_transactions(db, later) == []
    assert PaymentExpirationService.process_expired_transactions(db, now=later) == []

    PaymentExpirationService.auto_expire_on_api_call(db, transaction_id=transaction.id, now=later)
    db.refresh(transaction)
    assert transaction.status == TransactionStatus.IN_PROGRESS


# ==================== CANCELLATION ====================

def test_user_cancel_closes_pending_payment(db, customer):
    transaction = make_transaction(db, customer)
    payment = make_payment(db, transaction)

    cancelled = PaymentExpirationService.cancel_transaction_by_user(db, transaction.id, customer.id)
    assert cancelled.status == TransactionStatus.CANCELLED

    db.refresh(payment)
    assert payment.status == PaymentStatus.CANCELLED


def test_user_cannot_cancel_someone_elses_transaction(db, customer, other_customer):
    transaction = make_transaction(db, customer)

    with pytest.raises(NotFoundError):
        PaymentExpirationService.cancel_transaction_by_user(db, transaction.id, other_customer.id)

    db.refresh(transaction)
    assert transaction.status == TransactionStatus.PENDING


def test_cancel_terminal_transaction_returns_it_unchanged(db, customer, admin):
    transaction = make_transaction(db, customer)
    backdate(db, transaction, minutes=1)

    result = PaymentExpirationService.cancel_transaction(db, transaction.id, admin.id)
    assert result.status == TransactionStatus.EXPIRED

    with pytest.raises(NotFoundError):
        PaymentExpirationService.cancel_transaction(db, 999, admin.id)


def test_terminal_transaction_never_leaves_its_state(db, customer):
    transaction = make_transaction(db, customer)
    PaymentExpirationService.cancel_transaction_by_user(db, transaction.id, customer.id)

    for target in (TransactionStatus.IN_PROGRESS, TransactionStatus.SUCCESS, TransactionStatus.EXPIRED):
        assert not TransactionStatusManager.transition_transaction(db, transaction.id, target)
    db.commit()

    db.refresh(transaction)
    assert transaction.status == TransactionStatus.CANCELLED
    assert TransactionStatusManager.get_valid_status_transitions(TransactionStatus.CANCELLED) == []


def test_transition_table():
    assert TransactionStatusManager.get_valid_status_transitions("pending") == [
        TransactionStatus.IN_PROGRESS,
        TransactionStatus.SUCCESS,
        TransactionStatus.CANCELLED,
        TransactionStatus.EXPIRED,
    ]
    assert TransactionStatus.FAILED not in TransactionStatusManager.transaction_sources(TransactionStatus.SUCCESS)
    assert TransactionStatusManager.payment_sources(PaymentStatus.PENDING) == []


# ==================== PRICING AND VOUCHERS ====================

def test_pricing_breakdown_is_write_once(db, customer):
    transaction = make_transaction(
        db, customer,
        original_amount="120000",
        discount_amount="20000",
        final_amount="100000",
        service_fee_amount="2500",
    )

    transaction.final_amount = Decimal("100000")
    with pytest.raises(StateConflictError):
        transaction.final_amount = Decimal("1")
    with pytest.raises(StateConflictError):
        transaction.discount_amount = None


def _voucher(db, **fields):
    voucher = Voucher(code=fields.pop("code", "HEMAT10"), **fields)
    db.add(voucher)
    db.commit()
    db.refresh(voucher)
    return voucher


def test_voucher_is_applied_and_recorded(db, customer):
    voucher = _voucher(db, discount_type="flat", value=Decimal("10000"), min_amount=Decimal("50000"), max_uses=5)

    transaction = make_transaction(db, customer, amount="100000", voucher_id=voucher.id)
    assert transaction.original_amount == Decimal("100000")
    assert transaction.discount_amount == Decimal("10000")
    assert transaction.final_amount == Decimal("90000")

    db.refresh(voucher)
    assert voucher.used_count == 1
    usage = db.query(VoucherUsage).filter_by(transaction_id=transaction.id).one()
    assert usage.user_id == customer.id


@pytest.mark.parametrize("fields,amount", [
    ({"is_active": False}, "100000"),
    ({"expires_at": utcnow() - timedelta(days=1)}, "100000"),
    ({"max_uses": 1, "used_count": 1}, "100000"),
    ({"min_amount": Decimal("500000")}, "100000"),
])
def test_unusable_voucher_is_rejected(db, customer, fields, amount):
    voucher = _voucher(db, discount_type="flat", value=Decimal("10000"), **fields)

    with pytest.raises(ValidationError):
        make_transaction(db, customer, amount=amount, voucher_id=voucher.id)
    assert db.query(VoucherUsage).count() == 0


def test_percent_discount_is_capped():
    voucher = Voucher(discount_type="percent", value=Decimal("50"), max_discount=Decimal("25000"))
    assert VoucherService.calculate_discount(voucher, Decimal("100000")) == Decimal("25000.00")

    flat = Voucher(discount_type="flat", value=Decimal("80000"))
    assert VoucherService.calculate_discount(flat, Decimal("50000")) == Decimal("50000.00")


def test_voucher_use_counter_stops_at_limit(db, customer):
    voucher = _voucher(db, discount_type="flat", value=Decimal("10000"), max_uses=1)
    first = make_transaction(db, customer)
    second = make_transaction(db, customer)

    # Both purchases passed the limit check before either recorded its use
    for _ in range(2):
        VoucherService.apply_voucher(db, voucher.id, customer.id, Decimal("100000"))

    VoucherService.record_usage(db, voucher.id, customer.id, first.id, Decimal("10000"))
    db.commit()

    with pytest.raises(ValidationError):
        VoucherService.record_usage(db, voucher.id, customer.id, second.id, Decimal("10000"))
    db.rollback()

    db.refresh(voucher)
    assert voucher.used_count == 1
    assert db.query(VoucherUsage).filter_by(voucher_id=voucher.id).count() == 1

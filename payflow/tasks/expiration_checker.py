from payflow.core.database import SessionLocal
from payflow.services.payment_expiration import PaymentExpirationService
import logging

logger = logging.getLogger("expiration_checker")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def expire_overdue_records(session_factory=SessionLocal) -> dict:
    """Periodic counterpart of the per-request lazy expiration"""
    db = session_factory()

    try:
        payments = PaymentExpirationService.process_expired_payments(db)
        for payment in payments:
            logger.info(f"Payment ID={payment.id} (transaction {payment.transaction_id}) marked as EXPIRED.")

        transactions = PaymentExpirationService.process_expired_transactions(db)
        for transaction in transactions:
            logger.info(f"Transaction ID={transaction.id} marked as EXPIRED.")

        return {
            "expired_payments": [p.id for p in payments],
            "expired_transactions": [t.id for t in transactions],
        }

    finally:
        db.close()

# Celery wrapper
from payflow.worker_app import celery_app

@celery_app.task(bind=True, max_retries=3, name="payflow.tasks.expiration_checker.expire_overdue_records_task")
def expire_overdue_records_task(self):
    try:
        return expire_overdue_records()
    except Exception as e:
        # Retry after 10 seconds
        raise self.retry(exc=e, countdown=10)

from celery import Celery
from datetime import timedelta
from payflow.core.config import settings

celery_app = Celery(
    "worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

# Autodiscover task modules
celery_app.autodiscover_tasks(["payflow.tasks"])

# Force import so Celery registers tasks
import payflow.tasks.expiration_checker


celery_app.conf.beat_schedule = {

    # --------------------------------------------------------
    # Expire overdue payments and transactions
    # --------------------------------------------------------
    "expire-overdue-records": {
        "task": "payflow.tasks.expiration_checker.expire_overdue_records_task",
        "schedule": timedelta(minutes=settings.EXPIRATION_SWEEP_MINUTES),
    },

}

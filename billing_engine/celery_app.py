from datetime import timedelta

from celery import Celery

from billing_engine.config import settings


def get_celery_config() -> dict:
    broker = settings.celery_broker_url or settings.redis_url
    backend = settings.celery_result_backend or settings.redis_url
    return {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": settings.celery_timezone or "UTC",
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }


def build_beat_schedule() -> dict:
    return {
        "billing_pass": {
            "task": "billing_engine.tasks.billing.run_billing_pass",
            "schedule": timedelta(minutes=max(settings.scheduler_interval_minutes, 1)),
        },
        "billing_cleanup": {
            "task": "billing_engine.tasks.billing.cleanup_billing_records",
            "schedule": timedelta(days=1),
        },
    }


celery_app = Celery("billing_engine")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["billing_engine.tasks"])

from celery import Celery

from territory.core.config import get_settings

settings = get_settings()

celery_app = Celery("territory_api", broker=settings.redis_url, backend=settings.redis_url, include=["territory.reconcile.tasks"])
celery_app.conf.beat_schedule = {
    "refresh-views-if-idle": {
        "task": "territory.tasks.refresh_views_if_idle",
        "schedule": float(settings.view_refresh_interval_seconds),
    },
}


@celery_app.task(name="territory.tasks.ping")
def ping_task() -> str:
    return "pong"

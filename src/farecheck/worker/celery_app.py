from __future__ import annotations

from celery import Celery

from farecheck.core.config import settings


def make_celery() -> Celery:
    app = Celery("farecheck", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.environment == "dev",
        task_eager_propagates=True,
        task_track_started=True,
        task_acks_late=True,
    )
    app.autodiscover_tasks(["farecheck.worker.tasks"])
    return app


celery_app = make_celery()

import structlog
from celery import Celery

from owlnotes.settings import settings

logger = structlog.get_logger(__name__)

app = Celery(
    __name__,
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["owlnotes.worker.tasks"],
)
app.conf.broker_connection_retry_on_startup = True

app.conf.beat_schedule = {
    "poll_meeting_jobs": {
        "task": "owlnotes.worker.tasks.poll_meeting_jobs",
        "schedule": float(settings.JOB_POLL_INTERVAL),
    },
}
logger.info("Meeting job polling is enabled", interval=settings.JOB_POLL_INTERVAL)

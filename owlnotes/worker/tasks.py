from celery import shared_task

from owlnotes.asynctask import asynctask
from owlnotes.db import dispose_engine
from owlnotes.logger import logger
from owlnotes.worker.poller import build_poller


@shared_task(ignore_result=True)
@asynctask
async def poll_meeting_jobs(max_jobs: int | None = None):
    poller = build_poller()
    try:
        jobs = await poller.poll(max_jobs=max_jobs)
    finally:
        # engine is bound to this task's event loop
        await dispose_engine()
    logger.info("Polling round done", processed=len(jobs))
    return len(jobs)

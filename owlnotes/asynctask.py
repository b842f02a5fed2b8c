import asyncio
import functools


def asynctask(f):
    """Run a coroutine function to completion inside a synchronous celery task.

    Each call gets a fresh event loop, so database engines must be disposed
    before the task returns.
    """

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))

    return wrapper

"""Background execution for post-commit side effects."""

from booking.workers.background_tasks import BackgroundTaskRunner, get_background_runner

__all__ = ["BackgroundTaskRunner", "get_background_runner"]

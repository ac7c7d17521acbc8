from .job_queue import JobQueue, format_error

__all__ = [
    "JobQueue",
    "format_error",
]

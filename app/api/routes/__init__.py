from . import jobs, progress, webhooks

__all__ = ["jobs", "progress", "webhooks"]

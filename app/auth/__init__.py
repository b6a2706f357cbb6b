from app.auth.dependencies import CurrentUserId, DB, JobManager, Processor, WebhookAuth

__all__ = ["CurrentUserId", "DB", "JobManager", "Processor", "WebhookAuth"]

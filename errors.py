from __future__ import annotations


class UploaderError(Exception):
    """Base class for agent errors."""


class InvalidJob(UploaderError):
    """Queue entry that can never be sent (missing payload or target)."""

    def __init__(self, job_id: str, reason: str):
        super().__init__(f"invalid job {job_id}: {reason}")
        self.job_id = job_id
        self.reason = reason


class UploadFailure(UploaderError):
    """Transport-level failure; the job stays queued and is retried later."""

    retryable = True
    outcome = "network"


class NetworkFailure(UploadFailure):
    outcome = "network"


class UploadTimeout(UploadFailure):
    outcome = "timeout"


class ServerRejected(UploadFailure):
    outcome = "rejected"

    def __init__(self, status: int, body: str = ""):
        message = f"server rejected upload with HTTP {status}"
        if body:
            message = f"{message}: {body[:200]}"
        super().__init__(message)
        self.status = status
        self.body = body


class StorageFailure(UploaderError):
    """Durable store read/write error."""


class ChannelUnavailable(UploaderError):
    """Real-time channel could not be established."""

"""
Domain errors for the email sync pipeline.

Provider errors are expected (expired tokens, rate limits, network) and are
recorded on the sync job. The rest are raised to callers and mapped to HTTP
responses by the endpoints.
"""


class ProviderError(Exception):
    """Listing or fetching emails from the mail provider failed."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Stored credentials are missing, revoked or cannot be refreshed."""


class SyncJobNotFoundError(Exception):
    def __init__(self, job_id: str):
        super().__init__(f"Sync job {job_id} not found")
        self.job_id = job_id


class ActiveSyncJobError(Exception):
    """The user already has a pending or running sync job."""

    def __init__(self, job):
        super().__init__(f"Sync job {job.id} is already {job.status} for this user")
        self.job = job


class InvalidTransitionError(Exception):
    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Sync job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target

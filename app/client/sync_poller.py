"""
Client-side sync job poller.

State machine:

    idle -> starting -> polling -> done | error
    starting -> error  (start request rejected)

Polls the job status on a fixed interval (next poll only after the previous
one returned) until the job is completed or failed. Cancelling stops the
polling loop; the job keeps running on the server.
"""

import enum
import logging
import threading
from typing import Callable, Optional

from app.client.sync_client import SyncApiClient, SyncClientError
from app.config import Config
from app.utils.date_formatter import utcnow

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0  # seconds
INDETERMINATE_PROGRESS = 10


class PollerState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    POLLING = "polling"
    DONE = "done"
    ERROR = "error"


def job_progress(job: Optional[dict]) -> int:
    """
    Percentage for a job snapshot.

    Capped at 99 until the job is observed as completed, so counters
    reaching the total one poll before the status flips never show 100.
    """
    if not job:
        return 0
    status = job.get("status")
    if status == "completed":
        return 100
    if status == "pending":
        return 0

    total = job.get("total_emails")
    if not total:
        return INDETERMINATE_PROGRESS
    return min(round(job.get("processed_emails", 0) / total * 100), 99)


def pending_snapshot(job_id: str, user_id: str = "", kind: str = "sync", query: str = None,
                     cursor: str = None, category: str = None) -> dict:
    """
    Placeholder job shown between the start response and the first poll.

    Carries every field of the job status response.
    """
    now = utcnow().isoformat()
    return {
        "id": job_id,
        "user_id": user_id,
        "status": "pending",
        "kind": kind,
        "category": category or Config.SYNC_DEFAULT_CATEGORY,
        "query": query,
        "cursor": cursor,
        "total_emails": None,
        "processed_emails": 0,
        "new_emails": 0,
        "transactions": 0,
        "statements": 0,
        "failed_emails": 0,
        "error_message": None,
        "started_at": None,
        "completed_at": None,
        "created_at": now,
        "updated_at": now,
    }


class SyncJobPoller:
    def __init__(
        self,
        client: SyncApiClient,
        interval: float = DEFAULT_POLL_INTERVAL,
        on_complete: Callable[[dict], None] = None,
        on_error: Callable[[Exception], None] = None,
        on_update: Callable[[dict, int], None] = None
    ):
        self.client = client
        self.interval = interval
        self.on_complete = on_complete
        self.on_error = on_error
        self.on_update = on_update

        self.state = PollerState.IDLE
        self.job: Optional[dict] = None
        self.error: Optional[Exception] = None
        self._progress = 0
        self._cancelled = threading.Event()

    # ============ STATE ============

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def is_syncing(self) -> bool:
        return self.state in (PollerState.STARTING, PollerState.POLLING)

    def reset(self) -> None:
        self.state = PollerState.IDLE
        self.job = None
        self.error = None
        self._progress = 0
        self._cancelled.clear()

    def cancel(self) -> None:
        """Stop future polls. Does not cancel the job on the server."""
        self._cancelled.set()

    # ============ START ============

    def start_sync(self, query: str = None, cursor: str = None, max_results: int = None) -> Optional[str]:
        return self._start(
            lambda: self.client.start_sync(query=query, cursor=cursor, max_results=max_results),
            kind="sync",
            query=query,
            cursor=cursor
        )

    def start_reprocess(self) -> Optional[str]:
        return self._start(self.client.start_reprocess, kind="reprocess")

    def _start(self, request: Callable[[], str], **snapshot) -> Optional[str]:
        if self.is_syncing:
            raise RuntimeError("A sync is already being tracked by this poller")

        self.reset()
        self.state = PollerState.STARTING

        try:
            job_id = request()
        except SyncClientError as e:
            self._fail(e)
            return None

        self.job = pending_snapshot(job_id, user_id=self.client.user_id, **snapshot)
        self._progress = 0
        self.state = PollerState.POLLING
        logger.info(f"Tracking sync job {job_id}")
        return job_id

    # ============ POLLING ============

    def poll_once(self) -> PollerState:
        """Fetch the job status once and apply the resulting transition."""
        if self.state != PollerState.POLLING:
            return self.state

        try:
            job = self.client.get_job(self.job["id"])
        except SyncClientError as e:
            # The job itself may still be running; only this poller gives up
            self._fail(SyncClientError(f"Failed to poll sync job status: {e.message}", e.status_code))
            return self.state

        self.job = job
        status = job.get("status")

        if status == "completed":
            self._progress = 100
            self.state = PollerState.DONE
            self.client.invalidate_emails()
            self._notify_update()
            if self.on_complete:
                self.on_complete(job)
        elif status == "failed":
            self._notify_update()
            self._fail(SyncClientError(job.get("error_message") or "Sync failed"))
        else:
            self._progress = max(self._progress, job_progress(job))
            self._notify_update()

        return self.state

    def wait(self) -> PollerState:
        """
        Poll until the job is terminal, polling fails, or `cancel()` is called.

        Returns the final poller state (POLLING if cancelled mid-way).
        """
        while self.state == PollerState.POLLING and not self._cancelled.is_set():
            self.poll_once()
            if self.state != PollerState.POLLING:
                break
            if self._cancelled.wait(self.interval):
                logger.info(f"Stopped polling sync job {self.job['id']}")
                break
        return self.state

    def run_sync(self, query: str = None, cursor: str = None, max_results: int = None) -> PollerState:
        """Start a sync and poll it to the end."""
        if self.start_sync(query=query, cursor=cursor, max_results=max_results) is None:
            return self.state
        return self.wait()

    def _notify_update(self) -> None:
        if self.on_update:
            self.on_update(self.job, self._progress)

    def _fail(self, error: Exception) -> None:
        self.state = PollerState.ERROR
        self.error = error
        logger.warning(f"Sync poller error: {error}")
        if self.on_error:
            self.on_error(error)

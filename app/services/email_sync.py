"""
Email sync service.

Drives one ingestion run end to end and keeps its SyncJob truthful:

1. Create the job (pending) and return its id to the caller
2. Mark running, list candidate message ids from the provider
3. Fetch content in batches and upsert into the raw email store
4. Parse each stored email, counting transactions/statements
5. Mark completed, or failed with a provider error summary

The run itself happens in a background task; `run_sync_job` and
`run_reprocess_job` are the top-level handlers that make sure a job never
stays `running` after an unexpected error.
"""

import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from app.config import Config
from app.exceptions import ProviderError, SyncJobNotFoundError, InvalidTransitionError
from app.models.sync_job import SyncJob, SyncJobKind
from app.services import raw_email_store, sync_job_repository
from app.services.email_parsers import DEFAULT_PARSERS, find_parser
from app.utils.date_formatter import gmail_after_timestamp

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 512
REPROCESS_QUERY = "__reprocess__"


class EmailSyncService:
    def __init__(
        self,
        session_factory,
        provider,
        parsers=None,
        batch_size: int = None,
        stale_after: timedelta = None
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.parsers = DEFAULT_PARSERS if parsers is None else parsers
        self.batch_size = batch_size or Config.SYNC_BATCH_SIZE
        self.stale_after = stale_after or timedelta(minutes=Config.SYNC_STALE_MINUTES)

    # ============ QUERIES ============

    def build_incremental_query(self, db, user_id: str, category: str) -> str:
        """
        Default search for a category when the caller gives none.

        After a completed sync, fetch everything since it finished (with a
        few days of overlap for late-arriving mail); otherwise use the
        first-sync window.
        """
        base = Config.SYNC_BASE_QUERY
        last = sync_job_repository.find_last_completed(db, user_id, category)

        if last and last.completed_at:
            after = gmail_after_timestamp(last.completed_at, Config.SYNC_INCREMENTAL_OVERLAP_DAYS)
            logger.info(f"Incremental sync for user {user_id} [{category}] after {after}")
            return f"{base} after:{after}"

        logger.info(f"First sync for user {user_id} [{category}], last {Config.SYNC_FIRST_SYNC_WINDOW}")
        return f"{base} newer_than:{Config.SYNC_FIRST_SYNC_WINDOW}"

    def get_job(self, user_id: str, job_id: str) -> SyncJob:
        """
        Status of one of the caller's jobs.

        Raises:
            SyncJobNotFoundError: unknown id or owned by another user
        """
        with self.session_factory() as db:
            sync_job_repository.fail_stale_jobs(db, self.stale_after, user_id=user_id)
            job = sync_job_repository.get_for_user(db, job_id, user_id)
            if not job:
                raise SyncJobNotFoundError(job_id)
            return job

    def list_jobs(self, user_id: str, limit: int = 10, category: str = None) -> list[SyncJob]:
        with self.session_factory() as db:
            sync_job_repository.fail_stale_jobs(db, self.stale_after, user_id=user_id)
            return sync_job_repository.list_by_user(db, user_id, limit, category)

    def fail_stale_jobs(self) -> list[SyncJob]:
        """Sweep every user's stale jobs (run at startup)."""
        with self.session_factory() as db:
            return sync_job_repository.fail_stale_jobs(db, self.stale_after)

    # ============ SYNC ============

    def start_sync(
        self,
        user_id: str,
        query: str = None,
        cursor: str = None,
        category: str = None
    ) -> SyncJob:
        """
        Create a pending sync job. The caller schedules `run_sync_job`.

        Raises:
            ActiveSyncJobError: the user already has an active job
            ValueError: query or cursor longer than 512 characters
        """
        category = category or Config.SYNC_DEFAULT_CATEGORY
        if query and len(query) > MAX_QUERY_LENGTH:
            raise ValueError(f"query must be at most {MAX_QUERY_LENGTH} characters")
        if cursor and len(cursor) > MAX_QUERY_LENGTH:
            raise ValueError(f"cursor must be at most {MAX_QUERY_LENGTH} characters")

        with self.session_factory() as db:
            sync_job_repository.fail_stale_jobs(db, self.stale_after, user_id=user_id)
            if not query:
                query = self.build_incremental_query(db, user_id, category)

            return sync_job_repository.create(
                db,
                user_id=user_id,
                category=category,
                query=query,
                cursor=cursor,
                kind=SyncJobKind.SYNC.value
            )

    def execute_sync(self, job_id: str, max_results: int = None) -> SyncJob:
        """
        Run a pending sync job to a terminal state.

        Provider errors fail the job; anything else propagates.
        """
        with self.session_factory() as db:
            job = sync_job_repository.mark_running(db, job_id)
            user_id, category = job.user_id, job.category
            logger.info(f"Sync job {job_id} [{category}] running: {job.query!r}")

            try:
                refs = self.provider.list_messages(
                    user_id,
                    job.query,
                    cursor=job.cursor,
                    max_results=max_results
                )
            except ProviderError as e:
                logger.error(f"Sync job {job_id}: listing failed: {e.message}")
                return sync_job_repository.mark_failed(db, job_id, e.message)

            message_ids = [ref["id"] for ref in refs]
            sync_job_repository.set_total(db, job_id, len(message_ids))
            logger.info(f"📬 Sync job {job_id} [{category}]: found {len(message_ids)} emails to process")

            progress = _empty_progress()

            try:
                for start in range(0, len(message_ids), self.batch_size):
                    batch_ids = message_ids[start:start + self.batch_size]
                    logger.debug(
                        f"Sync job {job_id}: batch {start // self.batch_size + 1}, {len(batch_ids)} emails"
                    )

                    raw_emails = self.provider.fetch_content_batch(user_id, batch_ids, category)

                    for raw in raw_emails:
                        self._ingest(db, job_id, user_id, raw, progress)
                        sync_job_repository.save_progress(db, job_id, **progress)

                    returned = {raw.get("provider_message_id") for raw in raw_emails}
                    skipped = [message_id for message_id in batch_ids if message_id not in returned]
                    if skipped:
                        logger.warning(f"Sync job {job_id}: {len(skipped)} emails could not be fetched: {skipped}")
                        progress["failed_emails"] += len(skipped)
                        sync_job_repository.save_progress(db, job_id, **progress)
            except ProviderError as e:
                logger.error(f"Sync job {job_id}: fetch failed after {progress['processed_emails']} emails: {e.message}")
                return sync_job_repository.mark_failed(db, job_id, e.message)

            logger.info(
                f"✅ Sync job {job_id} [{category}]: {progress['processed_emails']}/{len(message_ids)} stored, "
                f"{progress['new_emails']} new, {progress['transactions']} transactions, "
                f"{progress['statements']} statements"
            )
            return sync_job_repository.mark_completed(db, job_id)

    def run_sync_job(self, job_id: str, max_results: int = None) -> None:
        """Background entry point: execute and never leave the job running."""
        try:
            self.execute_sync(job_id, max_results=max_results)
        except InvalidTransitionError as e:
            logger.warning(f"Sync job {job_id} was finished elsewhere, stopping: {e}")
        except Exception as e:
            logger.exception(f"Sync job {job_id} failed unexpectedly")
            self._fail_unexpected(job_id, e)

    def run_sync(
        self,
        user_id: str,
        query: str = None,
        cursor: str = None,
        max_results: int = None,
        category: str = None
    ) -> SyncJob:
        """Create and run a sync job in the calling thread; returns the finished job."""
        job = self.start_sync(user_id, query=query, cursor=cursor, category=category)
        self.run_sync_job(job.id, max_results=max_results)
        with self.session_factory() as db:
            return sync_job_repository.get(db, job.id)

    # ============ REPROCESS ============

    def start_reprocess(self, user_id: str, category: str = None) -> SyncJob:
        category = category or Config.SYNC_DEFAULT_CATEGORY
        with self.session_factory() as db:
            sync_job_repository.fail_stale_jobs(db, self.stale_after, user_id=user_id)
            return sync_job_repository.create(
                db,
                user_id=user_id,
                category=category,
                query=REPROCESS_QUERY,
                kind=SyncJobKind.REPROCESS.value
            )

    def execute_reprocess(self, job_id: str) -> SyncJob:
        """Re-parse every stored email of the job's category. No provider calls."""
        with self.session_factory() as db:
            job = sync_job_repository.mark_running(db, job_id)
            user_id, category = job.user_id, job.category

            emails = raw_email_store.list_all_by_user(db, user_id, category=category)
            sync_job_repository.set_total(db, job_id, len(emails))
            logger.info(f"Reprocess job {job_id}: re-parsing {len(emails)} stored emails")

            progress = _empty_progress()
            for email in emails:
                self._parse(job_id, email, progress, include_statement=True)
                progress["processed_emails"] += 1
                sync_job_repository.save_progress(db, job_id, **progress)

            logger.info(
                f"Reprocess job {job_id} completed: {progress['transactions']} transactions, "
                f"{progress['statements']} statements from {len(emails)} emails"
            )
            return sync_job_repository.mark_completed(db, job_id)

    def run_reprocess_job(self, job_id: str) -> None:
        try:
            self.execute_reprocess(job_id)
        except InvalidTransitionError as e:
            logger.warning(f"Reprocess job {job_id} was finished elsewhere, stopping: {e}")
        except Exception as e:
            logger.exception(f"Reprocess job {job_id} failed unexpectedly")
            self._fail_unexpected(job_id, e)

    def reprocess(self, user_id: str, category: str = None) -> SyncJob:
        job = self.start_reprocess(user_id, category=category)
        self.run_reprocess_job(job.id)
        with self.session_factory() as db:
            return sync_job_repository.get(db, job.id)

    # ============ PREVIEW ============

    def fetch_preview_emails(
        self,
        user_id: str,
        query: str,
        max_results: int,
        category: str = "playground"
    ) -> list[dict]:
        """
        Fetch emails for preview without storing them or creating a job.

        Args:
            max_results: 1-20; larger values are capped at 20

        Raises:
            ProviderError: listing or fetching failed
        """
        if max_results < 1:
            raise ValueError("max_results must be at least 1")
        limit = min(max_results, Config.PREVIEW_MAX_RESULTS)

        refs = self.provider.list_messages(user_id, query, max_results=limit)
        if not refs:
            return []

        ids = [ref["id"] for ref in refs[:limit]]
        return self.provider.fetch_content_batch(user_id, ids, category)[:limit]

    # ============ INTERNALS ============

    def _ingest(self, db, job_id: str, user_id: str, raw: dict, progress: dict) -> None:
        """Store one fetched email and parse it; per-item failures are counted, not raised."""
        message_id = raw.get("provider_message_id")
        try:
            record, is_new = raw_email_store.upsert(db, user_id, raw)
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Failed to store email {message_id} in job {job_id}: {e}")
            progress["failed_emails"] += 1
            return

        if record is None:
            logger.warning(f"Email {message_id} vanished after a concurrent insert in job {job_id}")
            progress["failed_emails"] += 1
            return

        progress["processed_emails"] += 1
        if is_new:
            progress["new_emails"] += 1

        # Statements are only counted the first time an email is seen
        self._parse(job_id, record, progress, include_statement=is_new)

    def _parse(self, job_id: str, email, progress: dict, include_statement: bool) -> None:
        parser = find_parser(self.parsers, email)
        if not parser:
            logger.debug(f"Job {job_id}: no parser for email {email.id} (from={email.sender})")
            return

        try:
            transactions = parser.parse_transactions(email)
            statement = parser.parse_statement(email) if include_statement else None
        except Exception as e:
            logger.warning(
                f"Job {job_id}: failed to parse email {email.id} "
                f"(subject={(email.subject or '')[:60]}): {e}",
                exc_info=True
            )
            progress["failed_emails"] += 1
            return

        progress["transactions"] += len(transactions)
        if statement:
            progress["statements"] += 1

    def _fail_unexpected(self, job_id: str, error: Exception) -> None:
        message = str(error) or "Unexpected error"
        try:
            with self.session_factory() as db:
                sync_job_repository.mark_failed(db, job_id, message)
        except InvalidTransitionError as e:
            logger.warning(f"Job {job_id} already finished, not marking failed: {e}")
        except SyncJobNotFoundError:
            logger.error(f"Job {job_id} disappeared before it could be marked failed")
        except SQLAlchemyError:
            logger.exception(f"Critical: failed to update job {job_id} status to failed")


def _empty_progress() -> dict:
    return {
        "processed_emails": 0,
        "new_emails": 0,
        "transactions": 0,
        "statements": 0,
        "failed_emails": 0,
    }

from datetime import datetime, timedelta
from typing import Optional
import asyncio
import logging
import uuid

import httpx

from config.settings import settings
from jobs.job_events import JobEventBus, import_channel
from jobs.job_store import JobStore, InMemoryJobStore
from models.import_job_state import ImportJob, ImportJobStatus, TERMINAL_STATUSES, can_transition
from services.errors import InvalidTransitionError
from services.storage_service import LocalBlobStore
from utils.security_utils import ensure_stl_filename, validate_stl_content

logger = logging.getLogger(__name__)

STL_CONTENT_TYPE = "model/stl"


class ImportJobManager:
    """
    Tracks STL imports from creation to a terminal state.

    URL imports move pending -> downloading -> processing -> completed;
    direct uploads start at processing since the bytes are already here.
    Any non-terminal job may fail. Every advance is published on the job's
    channel, with an extra import-completed / import-failed event at the end.
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        events: Optional[JobEventBus] = None,
        blob_store: Optional[LocalBlobStore] = None,
        download_timeout: Optional[float] = None,
        retention: Optional[timedelta] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_download_bytes: Optional[int] = None,
    ):
        self.store = store or InMemoryJobStore()
        self.events = events or JobEventBus()
        self.blob_store = blob_store or LocalBlobStore()
        self.download_timeout = download_timeout or settings.import_download_timeout_seconds
        self.retention = retention or timedelta(hours=settings.import_retention_hours)
        self.max_download_bytes = max_download_bytes or settings.max_upload_bytes
        self._transport = transport
        self._tasks = set()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_import_job(self, stl_url: str, file_name: Optional[str] = None, source: Optional[str] = None,
                          metadata: Optional[dict] = None) -> str:
        """
        Register a URL import and start downloading it in the background.

        Returns:
            The new job id, before any download work has happened
        """
        job_id = str(uuid.uuid4())
        job = ImportJob(
            id=job_id,
            source=source or "unknown",
            file_name=ensure_stl_filename(file_name or f"model-{job_id}.stl"),
            metadata=metadata or {},
        )
        self._insert(job)
        logger.info(f"New STL import job created: {job_id}")

        task = asyncio.create_task(self._process_download(job_id, stl_url))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job_id

    async def create_upload_job(self, content: bytes, file_name: str, source: Optional[str] = None,
                                metadata: Optional[dict] = None) -> ImportJob:
        """
        Register a direct upload, validate and store it, and finish the job.

        Returns:
            The job in its terminal state
        """
        job_id = str(uuid.uuid4())
        job = ImportJob(
            id=job_id,
            source=source or "direct-upload",
            file_name=ensure_stl_filename(file_name or f"model-{job_id}.stl"),
            status=ImportJobStatus.PROCESSING,
            metadata=metadata or {},
        )
        self._insert(job)
        logger.info(f"New direct STL upload job created: {job_id}")

        await self._store_model(job_id, content)
        return self.store.get(job_id) or job

    def _insert(self, job: ImportJob) -> None:
        self.store.set(job)
        self._publish(job)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def advance(self, job_id: str, status, file_path: Optional[str] = None,
                error: Optional[str] = None) -> Optional[ImportJob]:
        """
        Move a job forward and notify its subscribers.

        Args:
            job_id: Job to update
            status: Requested ImportJobStatus
            file_path: Stored model path (on completion)
            error: Failure reason (on failure)

        Returns:
            The updated job, or None if the job no longer exists

        Raises:
            InvalidTransitionError: The move is backwards or leaves a terminal state
        """
        status = ImportJobStatus(status)
        job = self.store.get(job_id)
        if job is None:
            logger.warning(f"Job {job_id} not found when updating status to {status.value}")
            return None
        if not can_transition(job.status, status):
            raise InvalidTransitionError(job_id, job.status.value, status.value)

        job.update(status, file_path=file_path, error=error)
        self.store.set(job)
        self._publish(job)
        logger.info(f"Import job {job_id} status updated to: {status.value}")
        return job

    def _publish(self, job: ImportJob) -> None:
        channel = import_channel(job.id)
        snapshot = job.to_dict()
        self.events.publish(channel, {
            "event": "import-status-update",
            "import_id": job.id,
            "status": job.status.value,
            "job": snapshot,
        })
        if job.status == ImportJobStatus.COMPLETED:
            self.events.publish(channel, {"event": "import-completed", "import_id": job.id, "job": snapshot})
        elif job.status == ImportJobStatus.FAILED:
            self.events.publish(channel, {
                "event": "import-failed",
                "import_id": job.id,
                "error": job.error,
                "job": snapshot,
            })

    def get_job(self, job_id: str) -> Optional[ImportJob]:
        return self.store.get(job_id)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    async def _process_download(self, job_id: str, stl_url: str) -> None:
        try:
            self.advance(job_id, ImportJobStatus.DOWNLOADING)
            async with httpx.AsyncClient(
                follow_redirects=True, timeout=self.download_timeout, transport=self._transport
            ) as client:
                async with client.stream("GET", stl_url) as response:
                    response.raise_for_status()
                    content = await self._read_body(response)
        except (httpx.HTTPError, httpx.InvalidURL, OSError, ValueError) as e:
            logger.error(f"Error downloading STL for import job {job_id}: {e}")
            self._fail(job_id, str(e) or type(e).__name__)
            return

        if self.advance(job_id, ImportJobStatus.PROCESSING) is None:
            return
        await self._store_model(job_id, content)

    async def _read_body(self, response: httpx.Response) -> bytes:
        """Read a streamed response, giving up as soon as it passes max_download_bytes."""
        chunks = bytearray()
        async for chunk in response.aiter_bytes():
            chunks.extend(chunk)
            if len(chunks) > self.max_download_bytes:
                max_mb = self.max_download_bytes / (1024 * 1024)
                raise ValueError(f"Remote file exceeds maximum allowed size ({max_mb}MB)")
        return bytes(chunks)

    async def _store_model(self, job_id: str, content: bytes) -> None:
        """Validate content, write it to blob storage and complete the job."""
        job = self.store.get(job_id)
        if job is None:
            return
        try:
            validate_stl_content(content)
            stored = await self.blob_store.upload(content, f"imports/{job_id}-{job.file_name}", STL_CONTENT_TYPE)
        except (ValueError, OSError) as e:
            logger.error(f"Error processing STL import job {job_id}: {e}")
            self._fail(job_id, str(e))
            return

        if self.advance(job_id, ImportJobStatus.COMPLETED, file_path=stored["file_path"]) is None:
            # Job was reaped while the file was being written
            await self.blob_store.delete(stored["file_path"])
            return
        logger.info(f"STL import job {job_id} completed successfully")

    def _fail(self, job_id: str, error: str) -> None:
        try:
            self.advance(job_id, ImportJobStatus.FAILED, error=error)
        except InvalidTransitionError as e:
            logger.warning(str(e))

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup_old_imports(self, now: Optional[datetime] = None) -> int:
        """
        Remove every job older than the retention window, whatever its status.

        Each job is compared against the snapshot taken at the start of the
        sweep; a job advanced since then is left for the next sweep. File
        deletion is best-effort.

        Returns:
            Number of jobs removed
        """
        now = now or datetime.utcnow()
        snapshot = [(job.id, job.updated_at, job.imported_at) for job in self.store.scan()]
        removed = 0

        for job_id, updated_at, imported_at in snapshot:
            if now - imported_at < self.retention:
                continue
            job = self.store.get(job_id)
            if job is None or job.updated_at != updated_at:
                continue

            self.store.delete(job_id)
            channel = import_channel(job_id)
            if job.status not in TERMINAL_STATUSES:
                # Final event for anyone still watching
                self.events.publish(channel, {
                    "event": "import-failed",
                    "import_id": job_id,
                    "error": "Import job expired",
                    "job": job.to_dict(),
                })
            self.events.clear(channel)
            removed += 1
            logger.info(f"Removed old import job: {job_id} (status: {job.status.value})")

            if job.file_path:
                try:
                    if await self.blob_store.delete(job.file_path):
                        logger.info(f"Deleted file for old import job: {job_id}")
                except OSError as e:
                    logger.error(f"Error deleting file for import job {job_id}: {e}")

        if removed:
            logger.info(f"Cleaned up {removed} old import job(s)")
        return removed


# Process-wide manager used by the routers and the retention sweep
import_jobs = ImportJobManager()

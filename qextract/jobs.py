"""
Job Queue
=========
FIFO queue of source files, processed one file at a time.

Architecture:
    - Every mutation (submit, cancel, clear, job settling) funnels through
      ``_changed()``, which starts the earliest pending job when nothing is
      processing. There is no polling loop and no timer.
    - All state lives on one asyncio event loop; no mutation spans an
      ``await``, so at most one job is ever ``processing``.
    - Cancellation only removes pending jobs. A processing job always runs
      to ``completed`` or ``error``.

Usage (inside a running event loop):
    queue = JobQueue(file_processor)
    queue.submit([SourceFile.from_path("test-1.pdf")], calibration)
    await queue.join()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from .models import CalibrationConfig, JobStatus, JobView, SourceFile
from .pipeline import FileProcessor

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """Unit of work for one source file."""
    id: str
    source: SourceFile
    config: CalibrationConfig
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    total_questions: int = 0
    test_id: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def view(self) -> JobView:
        return JobView(
            id=self.id,
            file_name=self.source.name,
            status=self.status,
            progress=self.progress,
            total_questions=self.total_questions,
            test_id=self.test_id,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


class JobQueue:
    """
    Serialized file scheduler.

    Args:
        file_processor: Runs one file to completion.
        on_change: Optional listener called with the job list after every
            state change (submission, start, progress, settle, removal).
    """

    def __init__(
        self,
        file_processor: FileProcessor,
        on_change: Optional[Callable[[list[JobView]], None]] = None,
    ):
        self.file_processor = file_processor
        self.on_change = on_change
        self._jobs: list[Job] = []
        self._current: Optional[Job] = None
        self._task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    # ─── Public Operations ────────────────────────────────────────────────

    def submit(
        self, files: Iterable[SourceFile], config: CalibrationConfig
    ) -> list[str]:
        """
        Queue files as pending jobs. Never blocks; must be called from the
        event loop that runs the queue.

        Returns:
            The new job IDs, in submission order.
        """
        snapshot = config.model_copy(deep=True)
        new_jobs = [
            Job(id=f"j_{uuid.uuid4().hex}", source=source, config=snapshot)
            for source in files
        ]
        self._jobs.extend(new_jobs)
        if new_jobs:
            logger.info(f"Queued {len(new_jobs)} file(s)")
        self._changed()
        return [job.id for job in new_jobs]

    def cancel_all(self) -> int:
        """Remove every pending job. Returns how many were removed."""
        before = len(self._jobs)
        self._jobs = [j for j in self._jobs if j.status is not JobStatus.PENDING]
        removed = before - len(self._jobs)
        if removed:
            logger.info(f"Cancelled {removed} pending job(s)")
        self._changed()
        return removed

    def clear_completed(self) -> int:
        """Drop completed jobs from the visible list."""
        before = len(self._jobs)
        self._jobs = [j for j in self._jobs if j.status is not JobStatus.COMPLETED]
        removed = before - len(self._jobs)
        self._changed()
        return removed

    def is_working(self) -> bool:
        return any(
            j.status in (JobStatus.PENDING, JobStatus.PROCESSING)
            for j in self._jobs
        )

    @property
    def jobs(self) -> list[JobView]:
        return [job.view() for job in self._jobs]

    @property
    def current(self) -> Optional[JobView]:
        return self._current.view() if self._current else None

    def get(self, job_id: str) -> Optional[JobView]:
        for job in self._jobs:
            if job.id == job_id:
                return job.view()
        return None

    async def join(self):
        """Wait until no job is pending or processing."""
        await self._idle.wait()

    async def aclose(self):
        """Stop scheduling and abandon the running file (host shutdown only)."""
        self._closed = True
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    # ─── Scheduling ───────────────────────────────────────────────────────

    def _changed(self):
        self._dispatch()
        if self.is_working():
            self._idle.clear()
        else:
            self._idle.set()
        if self.on_change:
            try:
                self.on_change(self.jobs)
            except Exception:
                logger.exception("Job list listener failed")

    def _dispatch(self):
        if self._closed or self._current is not None:
            return
        job = next(
            (j for j in self._jobs if j.status is JobStatus.PENDING), None
        )
        if job is None:
            return

        job.status = JobStatus.PROCESSING
        job.started_at = _now()
        self._current = job
        logger.info(f"Job {job.id}: processing {job.source.name}")
        self._task = asyncio.get_running_loop().create_task(
            self._run(job), name=f"extract-{job.id}"
        )

    async def _run(self, job: Job):
        try:
            test = await self.file_processor.process(
                job.source,
                job.config,
                progress_callback=lambda pct: self._set_progress(job, pct),
            )
        except asyncio.CancelledError:
            job.status = JobStatus.ERROR
            job.progress = 0
            raise
        except Exception as e:
            logger.error(
                f"Job {job.id}: {job.source.name} FAILED — {e}", exc_info=True
            )
            job.status = JobStatus.ERROR
            job.progress = 0
        else:
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.total_questions = len(test.questions)
            job.test_id = test.test_id
            logger.info(
                f"Job {job.id}: COMPLETED — {job.total_questions} questions "
                f"from {job.source.name}"
            )
        finally:
            job.finished_at = _now()
            # settled jobs keep only the file name
            job.source = job.source.model_copy(update={"data": None})
            self._current = None
            self._task = None
            self._changed()

    def _set_progress(self, job: Job, percent: int):
        percent = max(0, min(100, int(percent)))
        if job.status is JobStatus.PROCESSING and percent > job.progress:
            job.progress = percent
            self._changed()

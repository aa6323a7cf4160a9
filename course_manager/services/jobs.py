"""Background job scheduling for repository maintenance."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Protocol,
)

from ..config import AppConfig
from .events import JOB_ID, emit_file_event, emit_task_event, new_correlation_id
from .storage import CourseRepository


LOGGER = logging.getLogger(__name__)


UPDATE_REPO_MAX_FILE_SIZE = "update_repo_max_file_size"
REPO_SETTINGS_FILE = "repo_settings.json"

JobStatus = Literal["pending", "running", "succeeded", "failed"]
JobHandler = Callable[[int, Dict[str, Any]], Any]


@dataclass
class QueuedJob:
    """A unit of background work for one course."""

    id: str
    course_id: int
    operation: str
    options: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = "pending"
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def mark_running(self) -> None:
        self.status = "running"
        self.started_at = time.time()
        self.error = None

    def mark_finished(self) -> None:
        self.status = "succeeded"
        self.completed_at = time.time()

    def mark_failed(self, message: str) -> None:
        self.status = "failed"
        self.completed_at = time.time()
        self.error = message

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "course_id": self.course_id,
            "operation": self.operation,
            "options": dict(self.options),
            "status": self.status,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }


class JobScheduler(Protocol):
    def schedule(
        self, operation: str, course_id: int, options: Optional[Dict[str, Any]] = None
    ) -> QueuedJob:
        ...


def _new_job(operation: str, course_id: int, options: Optional[Dict[str, Any]]) -> QueuedJob:
    return QueuedJob(
        id=new_correlation_id(),
        course_id=course_id,
        operation=operation,
        options=dict(options or {}),
    )


def _run_handler(handler: JobHandler, job: QueuedJob) -> Any:
    token = JOB_ID.set(job.id)
    try:
        emit_task_event(
            "started",
            f"{job.operation} started",
            payload={"course_id": job.course_id, "job_id": job.id},
        )
        start = time.perf_counter()
        result = handler(job.course_id, dict(job.options))
        emit_task_event(
            "finished",
            f"{job.operation} finished",
            payload={"course_id": job.course_id, "result": result},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return result
    finally:
        JOB_ID.reset(token)


def build_job_processor(
    handlers: Mapping[str, JobHandler],
) -> Callable[[QueuedJob], Awaitable[None]]:
    """Return a coroutine function that runs sync *handlers* in the default executor."""

    async def _process(job: QueuedJob) -> None:
        handler = handlers.get(job.operation)
        if handler is None:
            raise ValueError(f"Unknown job operation '{job.operation}'")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _run_handler, handler, job)

    return _process


class JobQueue:
    """FIFO queue that executes jobs sequentially on one asyncio worker."""

    def __init__(self, processor: Callable[[QueuedJob], Awaitable[None]]) -> None:
        self._processor = processor
        self._pending: Deque[QueuedJob] = deque()
        self._jobs: Deque[QueuedJob] = deque()
        self._index: Dict[str, QueuedJob] = {}
        self._lock = asyncio.Lock()
        self._pending_event = asyncio.Event()
        self._worker: Optional[asyncio.Task[None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._history_limit = 200
        self._stopping = False

    async def start(self) -> None:
        async with self._lock:
            self._start_locked()

    def _start_locked(self) -> None:
        if self._worker is None or self._worker.done():
            self._stopping = False
            self._loop = asyncio.get_running_loop()
            self._worker = self._loop.create_task(self._run(), name="job-queue-worker")

    async def stop(self) -> None:
        async with self._lock:
            self._stopping = True
            self._pending_event.set()
            worker = self._worker
            self._worker = None
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

    async def enqueue(
        self, course_id: int, operation: str, options: Optional[Dict[str, Any]] = None
    ) -> QueuedJob:
        job = _new_job(operation, course_id, options)
        async with self._lock:
            self._push(job)
            self._start_locked()
        return job

    def submit(
        self, course_id: int, operation: str, options: Optional[Dict[str, Any]] = None
    ) -> QueuedJob:
        """Queue a job from synchronous code.

        On the event loop thread the job is queued immediately; from worker
        threads it is handed to the loop the queue was started on.
        """

        job = _new_job(operation, course_id, options)
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            if self._loop is None or self._loop.is_closed():
                raise RuntimeError("The job queue has not been started") from None
            self._loop.call_soon_threadsafe(self._push, job)
        else:
            self._push(job)
            self._start_locked()
        return job

    def schedule(
        self, operation: str, course_id: int, options: Optional[Dict[str, Any]] = None
    ) -> QueuedJob:
        job = self.submit(course_id, operation, options)
        emit_task_event(
            "queued",
            f"{operation} queued",
            payload={"course_id": course_id, "job_id": job.id},
        )
        return job

    def _push(self, job: QueuedJob) -> None:
        self._pending.append(job)
        self._jobs.append(job)
        self._index[job.id] = job
        self._pending_event.set()
        self._prune_history_locked()

    async def list(self) -> List[QueuedJob]:
        async with self._lock:
            return [job for job in self._jobs]

    def get(self, job_id: str) -> Optional[QueuedJob]:
        return self._index.get(job_id)

    async def _wait_for_job(self) -> None:
        while True:
            async with self._lock:
                if self._pending or self._stopping:
                    return
                self._pending_event.clear()
            await self._pending_event.wait()

    async def _acquire_next(self) -> Optional[QueuedJob]:
        async with self._lock:
            if self._pending:
                job = self._pending.popleft()
                job.mark_running()
                return job
            return None

    async def _run(self) -> None:
        while True:
            await self._wait_for_job()
            if self._stopping:
                return
            job = await self._acquire_next()
            if job is None:
                continue
            try:
                await self._processor(job)
            except Exception as error:  # noqa: BLE001 - recorded on the job
                job.mark_failed(str(error) or "Job failed")
                LOGGER.exception("Job %s failed for course %s", job.operation, job.course_id)
                emit_task_event(
                    "failed",
                    f"{job.operation} failed",
                    payload={"course_id": job.course_id, "job_id": job.id, "error": str(error)},
                    level=logging.ERROR,
                )
            else:
                job.mark_finished()
            finally:
                async with self._lock:
                    self._prune_history_locked()

    def _prune_history_locked(self) -> None:
        while len(self._jobs) > self._history_limit:
            oldest = self._jobs[0]
            if oldest.status in {"succeeded", "failed"}:
                self._jobs.popleft()
                self._index.pop(oldest.id, None)
            else:
                break


class InlineJobRunner:
    """Scheduler that runs each job immediately in the calling thread."""

    def __init__(self, handlers: Mapping[str, JobHandler]) -> None:
        self._handlers = dict(handlers)
        self.history: List[QueuedJob] = []

    def schedule(
        self, operation: str, course_id: int, options: Optional[Dict[str, Any]] = None
    ) -> QueuedJob:
        job = _new_job(operation, course_id, options)
        self.history.append(job)
        handler = self._handlers.get(operation)
        if handler is None:
            job.mark_failed(f"Unknown job operation '{operation}'")
            raise ValueError(job.error)
        job.mark_running()
        try:
            _run_handler(handler, job)
        except Exception as error:
            job.mark_failed(str(error) or "Job failed")
            raise
        job.mark_finished()
        return job


class RepositoryMaxFileSizeUpdater:
    """Write a course's ``max_file_size`` into each of its repositories' settings."""

    def __init__(self, repository: CourseRepository, config: AppConfig) -> None:
        self._repository = repository
        self._config = config

    def __call__(self, course_id: int, options: Dict[str, Any]) -> int:
        course = self._repository.get_course(course_id)
        if course is None:
            raise LookupError(f"Course {course_id} does not exist")

        course_root = self._config.repositories_root / course.name
        if not course_root.is_dir():
            LOGGER.debug("No repositories for course '%s' under %s", course.name, course_root)
            return 0

        updated = 0
        for repository_dir in sorted(course_root.iterdir()):
            if not repository_dir.is_dir():
                continue
            settings_path = repository_dir / REPO_SETTINGS_FILE
            settings: Dict[str, Any] = {}
            if settings_path.exists():
                try:
                    settings = json.loads(settings_path.read_text(encoding="utf-8"))
                except json.JSONDecodeError:
                    LOGGER.warning("Replacing unreadable settings file %s", settings_path)
            settings["max_file_size"] = course.max_file_size
            settings_path.write_text(json.dumps(settings, indent=2), encoding="utf-8")
            emit_file_event(
                "Repository settings written",
                payload={"path": settings_path, "max_file_size": course.max_file_size},
            )
            updated += 1

        LOGGER.info(
            "Updated max_file_size=%s for %s repositories of course '%s'",
            course.max_file_size,
            updated,
            course.name,
        )
        return updated


def default_job_handlers(repository: CourseRepository, config: AppConfig) -> Dict[str, JobHandler]:
    return {UPDATE_REPO_MAX_FILE_SIZE: RepositoryMaxFileSizeUpdater(repository, config)}


__all__ = [
    "InlineJobRunner",
    "JobQueue",
    "JobScheduler",
    "QueuedJob",
    "REPO_SETTINGS_FILE",
    "RepositoryMaxFileSizeUpdater",
    "UPDATE_REPO_MAX_FILE_SIZE",
    "build_job_processor",
    "default_job_handlers",
]

"""
Background generation jobs.

A job runs one generation on its own daemon thread and talks to the caller
only through a bounded message queue: zero or more progress messages and
exactly one terminal message (result, cancelled or error). Cancellation is
a threading.Event the search polls at every recursive entry.
"""

import logging
import queue
import threading
import uuid
from datetime import datetime
from typing import Optional

from models import SnapshotError, parse_snapshot
from solver import GenerationCancelled, generate_timetable

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000

PENDING = 'pending'
RUNNING = 'running'
COMPLETED = 'completed'
CANCELLED = 'cancelled'
FAILED = 'failed'

FINISHED_STATUSES = (COMPLETED, CANCELLED, FAILED)


class TimetableJob:
    """One generation run on a background thread.

    The payload is parsed into an immutable snapshot before the thread
    starts, so the caller and the search never share mutable state.
    """

    def __init__(self, payload: dict, max_queue: int = DEFAULT_QUEUE_SIZE, job_id: Optional[str] = None):
        self.id = job_id or str(uuid.uuid4())
        self.status = PENDING
        self.created_at = datetime.now().isoformat()
        self.completed_at: Optional[str] = None
        self.latest_progress: Optional[dict] = None
        self.terminal: Optional[dict] = None
        self.dropped_progress = 0

        self._messages: queue.Queue = queue.Queue(maxsize=max_queue)
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        try:
            self._snapshot = parse_snapshot(payload)
            self._parse_error = None
        except (SnapshotError, KeyError, TypeError) as e:
            self._snapshot = None
            self._parse_error = e

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def start(self) -> 'TimetableJob':
        self._thread = threading.Thread(target=self._run, name=f'timetable-{self.id[:8]}')
        self._thread.daemon = True
        self.status = RUNNING
        self._thread.start()
        return self

    def cancel(self):
        """Ask the search to stop. Safe to call more than once.

        Has no effect once the job has finished.
        """
        with self._lock:
            if self.status in FINISHED_STATUSES or self._cancel.is_set():
                return
            logger.info(f'Job {self.id}: cancellation requested')
            self._cancel.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the thread; returns True once the job has finished."""
        if self._thread is not None:
            self._thread.join(timeout)
        return self.status in FINISHED_STATUSES

    def drain(self) -> list:
        """All messages queued since the last drain."""
        messages = []
        while True:
            try:
                messages.append(self._messages.get_nowait())
            except queue.Empty:
                return messages

    def _on_progress(self, payload: dict):
        self.latest_progress = payload
        try:
            self._messages.put_nowait({'type': 'progress', 'payload': payload})
        except queue.Full:
            self.dropped_progress += 1

    def _finish(self, status: str, message: dict):
        with self._lock:
            # A cancelled run never reports a result, even if it finished first
            if status == COMPLETED and self._cancel.is_set():
                status = CANCELLED
                message = {'type': 'cancelled', 'payload': self._cancel_payload()}
            self.status = status
            self.terminal = message
            self.completed_at = datetime.now().isoformat()
        # The terminal message must always get through
        while True:
            try:
                self._messages.put_nowait(message)
                return
            except queue.Full:
                try:
                    self._messages.get_nowait()
                    self.dropped_progress += 1
                except queue.Empty:
                    pass

    def _cancel_payload(self, exc: Optional[GenerationCancelled] = None) -> dict:
        if exc is not None:
            return {'placed': exc.placed, 'total': exc.total, 'backtracks': exc.backtracks}
        progress = self.latest_progress or {}
        return {'placed': progress.get('placed', 0), 'total': progress.get('total', 0), 'backtracks': progress.get('backtracks', 0)}

    def _run(self):
        if self._parse_error is not None:
            logger.warning(f'Job {self.id}: invalid input: {self._parse_error}')
            self._finish(FAILED, {'type': 'error', 'payload': {'message': f'Invalid input: {self._parse_error}'}})
            return

        try:
            result = generate_timetable(self._snapshot, on_progress=self._on_progress, cancel_event=self._cancel)
        except GenerationCancelled as e:
            logger.info(f'Job {self.id}: {e}')
            self._finish(CANCELLED, {'type': 'cancelled', 'payload': self._cancel_payload(e)})
        except Exception as e:
            logger.error(f'Job {self.id} failed: {e}', exc_info=True)
            self._finish(FAILED, {'type': 'error', 'payload': {'message': str(e)}})
        else:
            self._finish(COMPLETED, {'type': 'result', 'payload': result})

    def to_dict(self, include_messages: bool = True) -> dict:
        terminal = self.terminal or {}
        return {
            'jobId': self.id,
            'status': self.status,
            'createdAt': self.created_at,
            'completedAt': self.completed_at,
            'progress': self.latest_progress,
            'messages': self.drain() if include_messages else [],
            'droppedProgress': self.dropped_progress,
            'result': terminal.get('payload') if terminal.get('type') == 'result' else None,
            'error': terminal.get('payload', {}).get('message') if terminal.get('type') == 'error' else None,
        }


class JobRegistry:
    """Thread-safe store of generation jobs keyed by job id."""

    def __init__(self, max_queue: int = DEFAULT_QUEUE_SIZE, max_finished: int = 50):
        self.max_queue = max_queue
        self.max_finished = max_finished
        self._jobs: dict = {}
        self._lock = threading.Lock()

    def submit(self, payload: dict) -> TimetableJob:
        job = TimetableJob(payload, max_queue=self.max_queue)
        with self._lock:
            self._jobs[job.id] = job
        self.prune()
        logger.info(f'Job {job.id}: started')
        return job.start()

    def get(self, job_id: str) -> Optional[TimetableJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def cancel(self, job_id: str) -> Optional[TimetableJob]:
        job = self.get(job_id)
        if job is not None:
            job.cancel()
        return job

    def prune(self):
        """Forget the oldest finished jobs beyond max_finished."""
        with self._lock:
            finished = [j for j in self._jobs.values() if j.status in FINISHED_STATUSES]
            excess = len(finished) - self.max_finished
            for job in finished[:max(excess, 0)]:
                del self._jobs[job.id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

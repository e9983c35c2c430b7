#!/usr/bin/env python3
"""
jobs.py — Cleanup job tracking and the single-run guard

Every cleanup (scheduled or manual) and every status scan goes through
JobManager, which holds a per-directory gate: at most one of them touches a
download directory at any time. A second request is rejected with
CleanupConflict instead of waiting.
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set

from .cleaner import Cleaner, ScanError, ScanResult

LOG = logging.getLogger("clarr.jobs")

MAX_JOB_HISTORY = 50


class CleanupConflict(Exception):
    """A cleanup or scan is already running for this directory."""

    def __init__(self, root: str):
        super().__init__(f"a cleanup is already running for {root}")
        self.root = root


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Job:
    id: str
    kind: str
    trigger: str
    status: JobStatus
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    result: Optional[dict] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id, "kind": self.kind, "trigger": self.trigger,
            "status": self.status.value,
            "started_at": self.started_at, "completed_at": self.completed_at,
            "result": self.result, "error": self.error,
        }


class DirectoryGate:
    """Non-blocking mutual exclusion keyed by directory."""

    def __init__(self):
        self._lock = threading.Lock()
        self._busy: Set[str] = set()

    @staticmethod
    def _key(root: str) -> str:
        return os.path.realpath(root)

    def try_acquire(self, root: str) -> bool:
        key = self._key(root)
        with self._lock:
            if key in self._busy:
                return False
            self._busy.add(key)
            return True

    def release(self, root: str):
        with self._lock:
            self._busy.discard(self._key(root))

    def is_busy(self, root: str) -> bool:
        with self._lock:
            return self._key(root) in self._busy

    @contextmanager
    def hold(self, root: str) -> Iterator[None]:
        if not self.try_acquire(root):
            raise CleanupConflict(root)
        try:
            yield
        finally:
            self.release(root)


class JobManager:
    def __init__(self, cleaner: Cleaner, gate: Optional[DirectoryGate] = None):
        self.cleaner = cleaner
        self.gate = gate or DirectoryGate()
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def root(self) -> str:
        return self.cleaner.download_dir

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self, limit: int = 20) -> List[Job]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.started_at or "", reverse=True)
            return jobs[:limit]

    def is_running(self) -> bool:
        return self.gate.is_busy(self.root)

    def _add_job(self, job: Job):
        with self._lock:
            self._jobs[job.id] = job
            if len(self._jobs) > MAX_JOB_HISTORY:
                oldest = sorted(self._jobs.values(), key=lambda j: j.started_at or "")
                for old in oldest[:len(self._jobs) - MAX_JOB_HISTORY]:
                    self._jobs.pop(old.id, None)

    def start_cleanup(self, trigger: str = "manual") -> Job:
        """Start a cleanup in the background. Raises CleanupConflict if one is running."""
        if self._cancel.is_set():
            raise CleanupConflict(self.root)
        if not self.gate.try_acquire(self.root):
            LOG.info(f"Cleanup ({trigger}) rejected: already running for {self.root}")
            raise CleanupConflict(self.root)

        job = Job(id=str(uuid.uuid4())[:8], kind="cleanup", trigger=trigger,
                  status=JobStatus.RUNNING, started_at=datetime.now().isoformat())
        self._add_job(job)

        thread = threading.Thread(target=self._run_cleanup, args=(job,),
                                  name=f"cleanup-{job.id}", daemon=True)
        self._threads = [t for t in self._threads if t.is_alive()]
        self._threads.append(thread)
        try:
            thread.start()
        except RuntimeError:
            self.gate.release(self.root)
            raise
        LOG.info(f"Cleanup job {job.id} started ({trigger})")
        return job

    def _finish(self, job: Job, status: JobStatus, result: Optional[dict] = None,
                error: Optional[str] = None):
        with self._lock:
            job.status = status
            job.result = result
            job.error = error
            job.completed_at = datetime.now().isoformat()

    def _run_cleanup(self, job: Job):
        try:
            result = self.cleaner.run(cancel_event=self._cancel)
        except ScanError as e:
            LOG.error(f"Cleanup job {job.id} failed: {e}")
            self._finish(job, JobStatus.FAILED, error=str(e))
        except Exception as e:
            LOG.exception(f"Cleanup job {job.id} crashed: {e}")
            self._finish(job, JobStatus.FAILED, error=str(e))
        else:
            status = JobStatus.CANCELLED if result.cancelled else JobStatus.COMPLETED
            self._finish(job, status, result=result.to_dict())
            LOG.info(f"Cleanup job {job.id} {status.value}: {len(result.orphans)} orphan(s), "
                     f"freed {result.freed_human}, {len(result.errors)} error(s)")
        finally:
            self.gate.release(self.root)

    def scan_status(self) -> ScanResult:
        """Scan-only pass under the same gate as cleanups."""
        with self.gate.hold(self.root):
            return self.cleaner.scan()

    def shutdown(self, timeout: float = 10.0):
        """Cancel running cleanups and wait for them to stop deleting."""
        self._cancel.set()
        for thread in self._threads:
            if thread.is_alive():
                LOG.info(f"Waiting for {thread.name} to stop")
                thread.join(timeout)

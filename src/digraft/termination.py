from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from digraft.exceptions import DigraftTerminationError
from digraft.types import ShutdownJob

logger = logging.getLogger(__name__)


class ContainerTermination:
    """Collect shutdown jobs and run them once when a container terminates.

    Jobs run in reverse registration order, mirroring acquisition order.
    Jobs added while ``run_all`` is in progress run after the current batch;
    jobs removed while it is in progress are skipped. A failing job never
    prevents the remaining jobs from running: failures are logged and raised
    together as ``DigraftTerminationError`` once every job has been attempted.

    Components obtain the termination of their container by declaring a
    ``ContainerTermination`` dependency.
    """

    def __init__(self) -> None:
        self._jobs: list[ShutdownJob] = []
        self._added: list[ShutdownJob] = []
        self._removed: list[ShutdownJob] = []
        self._lock = threading.Lock()
        self._running = False
        self._terminated = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    def add(self, job: ShutdownJob | Callable[[], Any], name: str | None = None) -> ShutdownJob:
        """Register a job and return it.

        Plain callables are wrapped in a ``ShutdownJob`` named after the
        callable unless ``name`` is given.
        """
        if not isinstance(job, ShutdownJob):
            job = ShutdownJob(name=name or getattr(job, "__qualname__", repr(job)), action=job)

        with self._lock:
            if self._terminated:
                logger.warning("Ignoring shutdown job %r added after termination", job.name)
                return job
            if self._running:
                self._added.append(job)
            else:
                self._jobs.append(job)
        return job

    def remove(self, job: ShutdownJob) -> None:
        """Unregister a job; removing an unknown job is a no-op."""
        with self._lock:
            if self._running:
                self._removed.append(job)
                if job in self._added:
                    self._added.remove(job)
            elif job in self._jobs:
                self._jobs.remove(job)

    def run_all(self) -> None:
        """Run every registered job once, last registered first.

        A second call is a no-op.

        Raises:
            DigraftTerminationError: If one or more jobs raised.

        """
        with self._lock:
            if self._running or self._terminated:
                return
            self._running = True
            batch, self._jobs = self._jobs, []

        failures: list[tuple[ShutdownJob, BaseException]] = []
        try:
            while batch:
                self._run_batch(batch, failures)
                with self._lock:
                    batch, self._added = self._added, []
        finally:
            with self._lock:
                self._running = False
                self._terminated = True
                self._removed.clear()

        if failures:
            raise DigraftTerminationError(failures)

    def _run_batch(
        self,
        batch: list[ShutdownJob],
        failures: list[tuple[ShutdownJob, BaseException]],
    ) -> None:
        for job in reversed(batch):
            with self._lock:
                if job in self._removed:
                    self._removed.remove(job)
                    continue
            try:
                job()
            except Exception as error:
                logger.exception("Shutdown job %r failed", job.name)
                failures.append((job, error))

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs) + len(self._added)

"""Time-triggered dispatch of scheduled posts.

A single timer thread calls ``tick`` every ``interval`` seconds. Each
tick claims a bounded batch of due work items (PENDING → PROCESSING)
and hands them to a worker pool, so slow platform calls never block the
timer. One item's failure is recorded on that item and the rest of the
batch carries on.

Items found PROCESSING at startup belong to a run that died mid-publish.
Their outcome is unknown, so by default they are only reported; an
operator resolves them with ``reconcile``. ``auto_retry_stale`` requeues
them instead, accepting the duplicate-publish risk.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Iterable, Protocol

from socialcast.models import Post, ScheduledWorkItem
from socialcast.orchestrator import PublishOutcome
from socialcast.work_queue import WorkQueue

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    def publish(self, owner_id: str, post_id: str) -> PublishOutcome:
        ...

    def recover_interrupted(self, post_id: str) -> Post | None:
        ...


class Dispatcher:
    """Runs due work items through the publisher on a fixed cadence."""

    def __init__(
        self,
        queue: WorkQueue,
        publisher: Publisher,
        batch_size: int = 50,
        workers: int = 4,
        interval: float = 60.0,
        stale_after: float = 900.0,
        auto_retry_stale: bool = False,
    ) -> None:
        self._queue = queue
        self._publisher = publisher
        self._batch_size = batch_size
        self._workers = workers
        self._interval = interval
        self._stale_after = stale_after
        self._auto_retry_stale = auto_retry_stale
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._inflight: set[str] = set()
        self._inflight_lock = threading.Lock()

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # --- scheduling entry points ---

    def schedule(self, post: Post) -> ScheduledWorkItem:
        return self._queue.schedule(post)

    def reschedule(self, post: Post) -> ScheduledWorkItem:
        return self._queue.reschedule(post)

    def bulk_schedule(self, posts: Iterable[Post]) -> list[ScheduledWorkItem]:
        return self._queue.bulk_schedule(posts)

    def cancel(self, post_id: str) -> int:
        return self._queue.cancel(post_id)

    # --- processing ---

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._workers, thread_name_prefix="socialcast-dispatch",
                )
            return self._executor

    def tick(self, wait: bool = True) -> list[ScheduledWorkItem]:
        """Claim due items and dispatch them to the worker pool.

        With ``wait`` the finished items are returned; otherwise the call
        returns as soon as the batch is submitted.
        """
        try:
            items = self._queue.claim_due(self._batch_size)
        except Exception:
            logger.exception("Claiming due work items failed")
            return []
        if not items:
            return []

        logger.info("Dispatching %d due posts", len(items))
        with self._inflight_lock:
            self._inflight.update(i.id for i in items)
        executor = self._get_executor()
        futures = [executor.submit(self._process, item) for item in items]
        if not wait:
            for item, future in zip(items, futures):
                future.add_done_callback(self._reporter(item))
            return []
        return [f.result() for f in futures]

    @staticmethod
    def _reporter(item: ScheduledWorkItem):
        def report(future) -> None:
            exc = future.exception()
            if exc is not None:
                logger.error("Work item %s for post %s crashed in the worker pool",
                             item.id, item.post_id, exc_info=exc)
        return report

    def _process(self, item: ScheduledWorkItem) -> ScheduledWorkItem:
        try:
            return self._execute(item)
        finally:
            with self._inflight_lock:
                self._inflight.discard(item.id)

    def _execute(self, item: ScheduledWorkItem) -> ScheduledWorkItem:
        try:
            outcome = self._publisher.publish(item.owner_id, item.post_id)
        except Exception as exc:
            logger.exception("Work item %s for post %s failed", item.id, item.post_id)
            updated = self._queue.fail(item.id, str(exc) or exc.__class__.__name__)
            return updated or self._queue.get(item.id) or item

        if outcome.success:
            updated = self._queue.complete(item.id, outcome.results)
        else:
            error = "; ".join(
                f"{p.value}: {r.error}" for p, r in outcome.results.items() if not r.success
            )
            updated = self._queue.fail(item.id, error or "Publish failed", outcome.results)
        # None means the item was cancelled while the publish was in flight.
        return updated or self._queue.get(item.id) or item

    # --- timer ---

    def start(self) -> None:
        if self.running:
            return
        self._handle_orphans()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="socialcast-dispatcher", daemon=True)
        self._thread.start()
        logger.info("Dispatcher started (interval %.0fs, batch %d)", self._interval, self._batch_size)

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None
        logger.info("Dispatcher stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick(wait=False)
            except Exception:
                logger.exception("Dispatcher tick failed")
            self._stop.wait(self._interval)

    # --- stuck items ---

    def orphaned_items(self) -> list[ScheduledWorkItem]:
        """PROCESSING items this dispatcher is not currently working on."""
        with self._inflight_lock:
            inflight = set(self._inflight)
        return [i for i in self._queue.processing() if i.id not in inflight]

    def stale_items(self) -> list[ScheduledWorkItem]:
        with self._inflight_lock:
            inflight = set(self._inflight)
        return [
            i for i in self._queue.stale(timedelta(seconds=self._stale_after))
            if i.id not in inflight
        ]

    def _handle_orphans(self) -> None:
        for item in self.orphaned_items():
            if self._auto_retry_stale:
                logger.warning("Requeueing work item %s for post %s left processing",
                               item.id, item.post_id)
                self.reconcile(item.id, retry=True)
            else:
                logger.warning(
                    "Work item %s for post %s was left processing; outcome unknown, "
                    "verify on the platforms and reconcile",
                    item.id, item.post_id,
                )

    def reconcile(self, item_id: str, retry: bool) -> ScheduledWorkItem | None:
        """Resolve a stuck item: requeue it for another attempt or fail it."""
        item = self._queue.get(item_id)
        if item is None:
            raise KeyError(item_id)
        self._publisher.recover_interrupted(item.post_id)
        if retry:
            updated = self._queue.requeue(item_id)
        else:
            updated = self._queue.fail(item_id, "Marked failed during reconciliation")
        if updated is not None:
            logger.info("Reconciled work item %s -> %s", item_id, updated.status.value)
        return updated

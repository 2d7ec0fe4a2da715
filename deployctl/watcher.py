import logging
import os
import queue
import shutil
import signal
import threading
from typing import Dict, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .dispatcher import Dispatcher, OUTCOME_SKIPPED
from .errors import MalformedRecordError
from .models import PENDING, PROCESSING, PROCESSED, FAILED_PARTITION, COMPLETED, TERMINAL_STATES
from .store import FileJobStore, is_record_name, record_id_from_name
from .utils import seconds_since

logger = logging.getLogger("deployctl.watcher")

POLL_SECONDS = 0.5

# Reconciliation-only outcomes
OUTCOME_INTERRUPTED = "interrupted"
OUTCOME_REFILED = "refiled"


class PendingEventHandler(FileSystemEventHandler):
    """Forward record names created or renamed into pending/; ignore everything else."""

    def __init__(self, pending_dir: str, sink: "queue.Queue[str]"):
        super().__init__()
        self.pending_dir = os.path.abspath(pending_dir)
        self.sink = sink

    def on_created(self, event):
        if not event.is_directory:
            self.offer(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self.offer(event.dest_path)

    def offer(self, path) -> bool:
        path = os.fsdecode(path)
        if os.path.dirname(os.path.abspath(path)) != self.pending_dir:
            return False
        if not is_record_name(os.path.basename(path)):
            return False
        self.sink.put(path)
        return True


class Watcher:
    def __init__(self, store: FileJobStore, dispatcher: Dispatcher, *,
                 stale_after: int = 3600, projects_dir: Optional[str] = None,
                 min_free_disk_mb: int = 1024, stop_event: Optional[threading.Event] = None,
                 observer_cls=Observer):
        self.store = store
        self.dispatcher = dispatcher
        self.stale_after = stale_after
        self.projects_dir = projects_dir
        self.min_free_disk_mb = min_free_disk_mb
        self.stop_event = stop_event or threading.Event()
        self.events: "queue.Queue[str]" = queue.Queue()
        self.flagged: List[str] = []
        self.observer_cls = observer_cls

    @property
    def pending_dir(self) -> str:
        return self.store.partition_dir(PENDING)

    # ---------- Startup ----------
    def check_disk_space(self) -> Optional[int]:
        """Warn when the projects volume is low on space; returns free MB."""
        path = self.projects_dir if self.projects_dir and os.path.isdir(self.projects_dir) else self.store.root
        try:
            free_mb = shutil.disk_usage(path).free // (1024 * 1024)
        except OSError as e:
            logger.warning("Could not check disk space on %s: %s", path, e)
            return None
        if free_mb < self.min_free_disk_mb:
            logger.warning("Low disk space warning: %sMB available on %s", free_mb, path)
        return free_mb

    def reconcile(self) -> Dict[str, int]:
        """
        Dispatch every record already sitting in pending/.

        Records left in ``processing`` by a previous run are reported (and
        flagged once older than ``stale_after``) but never re-dispatched.
        Returns a count per outcome.
        """
        logger.info("Processing any existing deployment requests...")
        results: Dict[str, int] = {}
        self.flagged = []
        for job_id in self.store.scan(PENDING):
            outcome = self._reconcile_one(job_id)
            results[outcome] = results.get(outcome, 0) + 1
        if self.flagged:
            logger.warning("%d stale job(s) stuck in processing: %s (inspect, then `deployctl stale --fail`)",
                           len(self.flagged), ", ".join(self.flagged))
        return results

    def _reconcile_one(self, job_id: str) -> str:
        try:
            record = self.store.read(job_id, PENDING)
        except FileNotFoundError:
            return OUTCOME_SKIPPED
        except MalformedRecordError:
            return self.dispatcher.dispatch_id(job_id)

        if record.status == PROCESSING:
            age = seconds_since(record.started_at or record.updated_at or "")
            if age is None or age >= self.stale_after:
                self.flagged.append(record.id)
                logger.warning("Job %s has been processing since %s; flagged as stale, not re-dispatched",
                               record.id, record.started_at or "an unknown time")
            else:
                logger.warning("Job %s was interrupted in processing (%ds ago); not re-dispatched",
                               record.id, int(age))
            return OUTCOME_INTERRUPTED

        if record.status in TERMINAL_STATES:
            # Terminal status written but the move never happened.
            partition = PROCESSED if record.status == COMPLETED else FAILED_PARTITION
            self.store.move(record.id, PENDING, partition)
            logger.info("Filed interrupted job %s into %s", record.id, partition)
            return OUTCOME_REFILED

        return self.dispatcher.dispatch(record)

    # ---------- Live events ----------
    def handle_path(self, path: str) -> str:
        """Dispatch one notified path if it names a record in pending/."""
        name = os.path.basename(path)
        if os.path.dirname(os.path.abspath(path)) != self.pending_dir or not is_record_name(name):
            return OUTCOME_SKIPPED
        return self.dispatcher.dispatch_id(record_id_from_name(name))

    def drain(self, block: bool = False) -> int:
        """Handle queued notifications; returns how many were handled."""
        handled = 0
        while not self.stop_event.is_set():
            try:
                path = self.events.get(timeout=POLL_SECONDS) if block and handled == 0 else self.events.get_nowait()
            except queue.Empty:
                break
            self.handle_path(path)
            handled += 1
        return handled

    def setup_signal_handlers(self):
        def _handler(signum, frame):
            logger.info("Received signal %s. Shutting down deployment processor", signum)
            self.stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                signal.signal(sig, _handler)
            except ValueError:
                # Not on the main thread; the caller owns stop_event.
                pass

    def run(self):
        """
        Reconcile, then follow pending/ until stopped.

        The observer starts before the scan so nothing written during the
        scan is missed; duplicates are dropped by the status guard.
        Only one engine may hold the queue: QueueLockedError if another
        does. JobStoreError propagates and stops the engine.
        """
        self.store.init()
        with self.store.consumer_lock():
            self.setup_signal_handlers()
            self.check_disk_space()
            self._follow()

    def _follow(self):
        handler = PendingEventHandler(self.pending_dir, self.events)
        observer = self.observer_cls()
        observer.schedule(handler, self.pending_dir, recursive=False)
        observer.start()
        logger.info("Watching queue directory: %s", self.pending_dir)
        try:
            self.reconcile()
            logger.info("Deployment processor ready")
            while not self.stop_event.is_set():
                self.drain(block=True)
        finally:
            observer.stop()
            observer.join()
            logger.info("Deployment processor stopped")

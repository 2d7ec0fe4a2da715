import fcntl
import json
import logging
import os
import tempfile
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, ContextManager, Dict, Iterator

from .errors import DuplicateJobError, JobStoreError, MalformedRecordError, QueueLockedError
from .models import JobRecord, PARTITIONS, PENDING, FAILED_PARTITION, FAILED
from .utils import now_iso

logger = logging.getLogger("deployctl.store")

RECORD_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"
CONFIG_FILE = "config.json"
LOCK_FILE = ".dispatcher.lock"


def is_temporary_name(name: str) -> bool:
    """Hidden or .tmp names are in-progress writes and never records."""
    return name.startswith(".") or name.endswith(TEMP_SUFFIX)


def is_record_name(name: str) -> bool:
    return not is_temporary_name(name) and name.endswith(RECORD_SUFFIX)


def record_id_from_name(name: str) -> str:
    return name[: -len(RECORD_SUFFIX)]


def _mtime(entry: os.DirEntry) -> float:
    try:
        return entry.stat().st_mtime
    except FileNotFoundError:
        return 0.0


class JobStore(ABC):
    """
    What the dispatcher needs from durable storage.

    The watcher and dispatcher only talk to this interface; FileJobStore is
    the one implementation.
    """

    @abstractmethod
    def put(self, record: JobRecord) -> None: ...

    @abstractmethod
    def read(self, job_id: str, partition: str = PENDING) -> JobRecord: ...

    @abstractmethod
    def write(self, record: JobRecord, partition: str = PENDING) -> None: ...

    @abstractmethod
    def move(self, job_id: str, from_partition: str, to_partition: str) -> None: ...

    @abstractmethod
    def delete(self, job_id: str, partition: str = PENDING) -> None: ...

    @abstractmethod
    def exists(self, job_id: str, partition: str = PENDING) -> bool: ...

    @abstractmethod
    def scan(self, partition: str = PENDING) -> Iterator[str]: ...

    @abstractmethod
    def read_raw(self, job_id: str, partition: str = PENDING) -> str: ...

    @abstractmethod
    def quarantine(self, job_id: str, raw: str, reason: str) -> str: ...

    @abstractmethod
    def consumer_lock(self) -> ContextManager[None]: ...


class FileJobStore(JobStore):
    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    # ---------- Layout ----------
    def init(self) -> "FileJobStore":
        try:
            for partition in PARTITIONS:
                os.makedirs(self.partition_dir(partition), exist_ok=True)
        except OSError as e:
            raise JobStoreError(f"cannot create job store at {self.root}: {e}") from e
        return self

    @contextmanager
    def consumer_lock(self) -> Iterator[None]:
        """
        Hold the queue for one dispatcher.

        Exclusive and non-blocking: QueueLockedError if another process (or
        another handle in this one) already holds it.
        """
        path = os.path.join(self.root, LOCK_FILE)
        try:
            handle = open(path, "a+", encoding="utf-8")
        except OSError as e:
            raise JobStoreError(f"cannot open {path}: {e}") from e
        with handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise QueueLockedError(f"another dispatcher is already running on {self.root}")
            except OSError as e:
                raise JobStoreError(f"cannot lock {path}: {e}") from e
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def partition_dir(self, partition: str) -> str:
        if partition not in PARTITIONS:
            raise ValueError(f"Unknown partition: {partition}")
        return os.path.join(self.root, partition)

    def path_for(self, job_id: str, partition: str = PENDING) -> str:
        if not job_id or "/" in job_id or job_id.startswith("."):
            raise ValueError(f"Invalid job id: {job_id!r}")
        return os.path.join(self.partition_dir(partition), job_id + RECORD_SUFFIX)

    # ---------- Low level ----------
    def _write_temp(self, directory: str, name: str, payload: Dict[str, Any]) -> str:
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{name}.", suffix=TEMP_SUFFIX)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, sort_keys=True)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        return tmp_path

    def _atomic_replace(self, path: str, payload: Dict[str, Any]) -> None:
        directory, name = os.path.split(path)
        try:
            tmp_path = self._write_temp(directory, name, payload)
        except OSError as e:
            raise JobStoreError(f"cannot write {path}: {e}") from e
        try:
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise JobStoreError(f"cannot write {path}: {e}") from e

    # ---------- Records ----------
    def put(self, record: JobRecord) -> None:
        """
        Create a new pending record.

        The temp file is hard-linked to its final name: the link is atomic and
        fails if the name is taken, so a colliding id never overwrites.
        """
        for partition in PARTITIONS:
            if self.exists(record.id, partition):
                raise DuplicateJobError(f"Job '{record.id}' already exists in {partition}.")

        final = self.path_for(record.id, PENDING)
        directory, name = os.path.split(final)
        try:
            tmp_path = self._write_temp(directory, name, record.to_dict())
        except OSError as e:
            raise JobStoreError(f"cannot write {final}: {e}") from e
        try:
            os.link(tmp_path, final)
        except FileExistsError:
            raise DuplicateJobError(f"Job '{record.id}' already exists in {PENDING}.")
        except OSError as e:
            raise JobStoreError(f"cannot publish {final}: {e}") from e
        finally:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass

    def read_path(self, path: str) -> JobRecord:
        """Parse a record file. MalformedRecordError if it is not a record."""
        try:
            with open(path, "rb") as fh:
                raw = fh.read()
        except FileNotFoundError:
            raise
        except OSError as e:
            raise JobStoreError(f"cannot read {path}: {e}") from e
        try:
            data = json.loads(raw.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise MalformedRecordError(f"not UTF-8: {e}") from e
        except (ValueError, RecursionError) as e:
            raise MalformedRecordError(f"invalid JSON: {e}") from e
        file_id = record_id_from_name(os.path.basename(path))
        record = JobRecord.from_dict(data, fallback_id=file_id)
        if record.id != file_id:
            raise MalformedRecordError(f"id {record.id!r} does not match file name {file_id!r}")
        return record

    def read(self, job_id: str, partition: str = PENDING) -> JobRecord:
        return self.read_path(self.path_for(job_id, partition))

    def read_raw(self, job_id: str, partition: str = PENDING) -> str:
        path = self.path_for(job_id, partition)
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as fh:
                return fh.read()
        except FileNotFoundError:
            raise
        except OSError as e:
            raise JobStoreError(f"cannot read {path}: {e}") from e

    def write(self, record: JobRecord, partition: str = PENDING) -> None:
        record.updated_at = now_iso()
        self._atomic_replace(self.path_for(record.id, partition), record.to_dict())

    def move(self, job_id: str, from_partition: str, to_partition: str) -> None:
        src = self.path_for(job_id, from_partition)
        dst = self.path_for(job_id, to_partition)
        try:
            os.replace(src, dst)
        except OSError as e:
            raise JobStoreError(f"cannot move {job_id} from {from_partition} to {to_partition}: {e}") from e
        logger.debug("Moved %s: %s -> %s", job_id, from_partition, to_partition)

    def delete(self, job_id: str, partition: str = PENDING) -> None:
        try:
            os.unlink(self.path_for(job_id, partition))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise JobStoreError(f"cannot delete {job_id} from {partition}: {e}") from e

    def exists(self, job_id: str, partition: str = PENDING) -> bool:
        return os.path.isfile(self.path_for(job_id, partition))

    def scan(self, partition: str = PENDING) -> Iterator[str]:
        """Yield record ids currently in ``partition``, oldest file first."""
        directory = self.partition_dir(partition)
        try:
            entries = [e for e in os.scandir(directory) if is_record_name(e.name)]
        except FileNotFoundError:
            return
        except OSError as e:
            raise JobStoreError(f"cannot list {directory}: {e}") from e
        entries.sort(key=lambda e: (_mtime(e), e.name))
        for entry in entries:
            yield record_id_from_name(entry.name)

    def quarantine(self, job_id: str, raw: str, reason: str) -> str:
        """
        File an unparsable pending file into ``failed`` as a diagnostic record.

        The original bytes are kept under ``raw``. Returns the id used.
        """
        failed_id = job_id
        if self.exists(failed_id, FAILED_PARTITION):
            failed_id = f"{job_id}.{uuid.uuid4().hex[:6]}"
        ts = now_iso()
        payload = {
            "id": failed_id,
            "status": FAILED,
            "reason": reason,
            "raw": raw,
            "created_at": ts,
            "finished_at": ts,
        }
        self._atomic_replace(self.path_for(failed_id, FAILED_PARTITION), payload)
        self.delete(job_id, PENDING)
        return failed_id

    # ---------- Config ----------
    def read_config(self) -> Dict[str, str]:
        path = os.path.join(self.root, CONFIG_FILE)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except ValueError as e:
            raise JobStoreError(f"config file {path} is not valid JSON: {e}") from e
        except OSError as e:
            raise JobStoreError(f"cannot read {path}: {e}") from e
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def write_config(self, data: Dict[str, str]) -> None:
        self._atomic_replace(os.path.join(self.root, CONFIG_FILE), data)

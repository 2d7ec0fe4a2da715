import logging
from typing import Dict, List, Optional, Tuple

from .config import DEFAULT_CONFIG, env_overrides, validate_config_value
from .errors import MalformedRecordError
from .models import (
    JobRecord, QUEUED, PROCESSING, FAILED, PARTITIONS, PENDING, FAILED_PARTITION,
    MAX_SOURCE_URLS, environment_for_branch,
)
from .store import FileJobStore
from .utils import branch_from_ref, make_job_id, now_iso, seconds_since

logger = logging.getLogger("deployctl.repository")


# ---------- Config ----------
def get_config(store: FileJobStore) -> Dict[str, str]:
    cfg = dict(DEFAULT_CONFIG)
    cfg.update({k: v for k, v in store.read_config().items() if k in DEFAULT_CONFIG})
    cfg.update(env_overrides())
    return cfg


def set_config(store: FileJobStore, key: str, value: str):
    value = validate_config_value(key, value)
    stored = store.read_config()
    stored[key] = value
    store.write_config(stored)


# ---------- Producer ----------
def enqueue_deployment(
    store: FileJobStore,
    *,
    project: str,
    ref: str,
    commit: str = "",
    actor: str = "",
    source_urls: Optional[List[str]] = None,
    retry_of: Optional[str] = None,
) -> Optional[JobRecord]:
    """
    Queue a deployment request for a push to ``ref``.

    Returns None when the branch does not map to an environment; that is an
    expected outcome, not an error.
    """
    if not project or not project.strip():
        raise ValueError("Project cannot be empty.")
    if not ref or not ref.strip():
        raise ValueError("Ref cannot be empty.")
    urls = [u for u in (source_urls or []) if u]
    if len(urls) > MAX_SOURCE_URLS:
        raise ValueError(f"At most {MAX_SOURCE_URLS} source URLs are allowed.")

    branch = branch_from_ref(ref)
    environment = environment_for_branch(branch)
    if environment is None:
        logger.info("Branch '%s' is not supported for deployment", branch)
        return None

    record = JobRecord(
        id=make_job_id(project.strip(), environment),
        project=project.strip(),
        branch=branch,
        ref=ref.strip(),
        environment=environment,
        commit=commit or "unknown",
        actor=actor or "unknown",
        source_urls=urls,
        status=QUEUED,
        created_at=now_iso(),
        retry_of=retry_of,
    )
    store.put(record)
    logger.info(
        "Deployment request queued: %s", record.id,
        extra={
            "event": "deployment_queued",
            "project": record.project,
            "environment": environment,
            "commit": record.commit,
            "branch": branch,
            "pusher": record.actor,
        },
    )
    return record


# ---------- Queries ----------
def list_jobs(store: FileJobStore, partition: Optional[str] = None) -> List[Tuple[str, JobRecord]]:
    out = []
    for part in ([partition] if partition else PARTITIONS):
        for job_id in store.scan(part):
            try:
                out.append((part, store.read(job_id, part)))
            except FileNotFoundError:
                continue
            except MalformedRecordError as e:
                logger.warning("Unreadable record %s in %s: %s", job_id, part, e)
    return out


def counts(store: FileJobStore) -> Dict[str, int]:
    out = {"queued": 0, "processing": 0, "processed": 0, "failed": 0}
    for part, record in list_jobs(store):
        if part == PENDING:
            key = PROCESSING if record.status == PROCESSING else "queued"
        else:
            key = part
        out[key] += 1
    return out


def find_stale(store: FileJobStore, older_than: int) -> List[JobRecord]:
    """Records sitting in processing for at least ``older_than`` seconds."""
    stale = []
    for part, record in list_jobs(store, PENDING):
        if record.status != PROCESSING:
            continue
        age = seconds_since(record.started_at or record.updated_at or "")
        if age is None or age >= older_than:
            stale.append(record)
    return stale


def fail_stale(store: FileJobStore, older_than: int) -> List[str]:
    """
    Move stale processing records to failed.

    processing -> failed is a legal transition; nothing is re-dispatched.
    """
    failed = []
    for record in find_stale(store, older_than):
        record.status = FAILED
        record.finished_at = now_iso()
        record.reason = f"abandoned in processing since {record.started_at or 'unknown'}"
        store.write(record, PENDING)
        store.move(record.id, PENDING, FAILED_PARTITION)
        logger.warning("Stale job %s marked failed", record.id)
        failed.append(record.id)
    return failed


# ---------- Failed partition ----------
def failed_list(store: FileJobStore) -> List[JobRecord]:
    return [record for _, record in list_jobs(store, FAILED_PARTITION)]


def retry_failed(store: FileJobStore, job_id: str) -> Optional[JobRecord]:
    """
    Queue a fresh record copied from a failed one.

    The failed record stays where it is; terminal records are never picked
    up again. Returns None for an unsupported branch.
    """
    if not job_id or not job_id.strip():
        raise ValueError("Job id cannot be empty.")
    if not store.exists(job_id, FAILED_PARTITION):
        raise KeyError(job_id)
    original = store.read(job_id, FAILED_PARTITION)
    return enqueue_deployment(
        store,
        project=original.project,
        ref=original.ref or original.branch,
        commit=original.commit,
        actor=original.actor,
        source_urls=original.source_urls,
        retry_of=original.id,
    )

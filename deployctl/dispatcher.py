import json
import logging
from typing import Optional

from .deploy import DeployResult, DeploymentOperation
from .errors import JobStoreError, MalformedRecordError
from .hooks import HookExecutor, ProjectLayout, load_project_env
from .models import (
    JobRecord, QUEUED, PROCESSING, COMPLETED, FAILED, CLAIMED_STATES,
    PENDING, PROCESSED, FAILED_PARTITION, ENVIRONMENTS, PRE_DEPLOY, POST_DEPLOY,
    environment_for_branch,
)
from .store import JobStore
from .utils import now_iso

logger = logging.getLogger("deployctl.dispatcher")

# Dispatch outcomes
OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_REJECTED = "rejected"
OUTCOME_DISCARDED = "discarded"
OUTCOME_SKIPPED = "skipped"

MAX_REASON_CHARS = 2000


class Dispatcher:
    """
    queued -> processing -> completed | failed, or queued -> failed when the
    request is invalid. Unsupported branches are deleted from pending.
    """

    def __init__(self, store: JobStore, deployment: DeploymentOperation, *,
                 projects_dir: str, deploy_timeout: int = 1800, hook_timeout: int = 300):
        self.store = store
        self.deployment = deployment
        self.projects_dir = projects_dir
        self.deploy_timeout = deploy_timeout
        self.hook_timeout = hook_timeout

    # ---------- Entry points ----------
    def dispatch_id(self, job_id: str) -> str:
        """Load a pending record and dispatch it. Unparsable records are filed as failed."""
        try:
            record = self.store.read(job_id, PENDING)
        except FileNotFoundError:
            logger.debug("Job %s is no longer pending", job_id)
            return OUTCOME_SKIPPED
        except MalformedRecordError as e:
            try:
                raw = self.store.read_raw(job_id, PENDING)
            except FileNotFoundError:
                return OUTCOME_SKIPPED
            failed_id = self.store.quarantine(job_id, raw, f"malformed record: {e}")
            logger.error("Malformed deployment request %s filed as failed (%s): %s", job_id, failed_id, e)
            return OUTCOME_REJECTED
        return self.dispatch(record)

    def dispatch(self, record: JobRecord) -> str:
        """
        Run one record through its lifecycle.

        Per-record failures end up in failed/; only JobStoreError escapes.
        """
        if record.status in CLAIMED_STATES:
            logger.debug("Job %s already %s; not dispatching", record.id, record.status)
            return OUTCOME_SKIPPED
        if record.status != QUEUED:
            logger.warning("Skipping job %s with unknown status %r", record.id, record.status)
            return OUTCOME_SKIPPED

        missing = record.missing_fields()
        if missing:
            return self._reject(record, f"missing required fields: {', '.join(missing)}")

        branch = record.branch_name
        mapped = environment_for_branch(branch)
        if mapped is None:
            return self._discard(record, branch)

        if not record.environment:
            return self._reject(record, "missing required fields: environment")
        if record.environment not in ENVIRONMENTS:
            return self._reject(record, f"unsupported environment {record.environment!r}")
        if record.environment != mapped:
            return self._reject(
                record,
                f"environment {record.environment!r} does not match branch {branch!r} ({mapped})",
            )

        self._mark_processing(record)
        layout = ProjectLayout(self.projects_dir, record.project, record.environment)
        result = self._run(record, layout)
        if result.ok:
            return self._finish(record, COMPLETED, PROCESSED)
        return self._finish(record, FAILED, FAILED_PARTITION, reason=result.detail)

    # ---------- Steps ----------
    def _run(self, record: JobRecord, layout: ProjectLayout) -> DeployResult:
        logger.info("Repository: %s", record.project)
        logger.info("Branch: %s -> Environment: %s", record.branch_name, record.environment)
        logger.info("Commit: %s", record.commit or "unknown")
        logger.info("Pushed by: %s", record.actor or "unknown")

        try:
            hooks = HookExecutor.for_record(record, layout, self.hook_timeout,
                                            project_env=load_project_env(layout))
            logger.info("=== PRE-DEPLOY HOOKS ===")
            hooks.execute_stage(PRE_DEPLOY)

            logger.info("=== MAIN DEPLOYMENT ===")
            result = self.deployment.deploy(
                record.project, record.environment, record.ref or record.branch, record.commit,
                record=record, layout=layout, env=hooks.env, timeout=self.deploy_timeout,
            )
        except JobStoreError:
            raise
        except Exception as e:
            logger.exception("Deployment of %s raised", record.id)
            return DeployResult(False, 1, f"{type(e).__name__}: {e}")

        if not result.ok:
            logger.error("Deployment failed (exit %s): %s", result.returncode, result.detail)
            return result

        logger.info("=== POST-DEPLOY HOOKS ===")
        try:
            hooks.execute_stage(POST_DEPLOY)
        except JobStoreError:
            raise
        except Exception:
            logger.exception("Post-deploy hooks for %s raised (continuing anyway)", record.id)
        return result

    def _mark_processing(self, record: JobRecord) -> None:
        record.status = PROCESSING
        record.started_at = now_iso()
        self.store.write(record, PENDING)
        logger.info("Job %s: %s -> %s", record.id, QUEUED, PROCESSING)

    def _finish(self, record: JobRecord, status: str, partition: str,
                reason: Optional[str] = None) -> str:
        previous = record.status
        record.status = status
        record.finished_at = now_iso()
        if reason:
            record.reason = reason[-MAX_REASON_CHARS:]
        self.store.write(record, PENDING)
        self.store.move(record.id, PENDING, partition)

        event = "deployment_completed" if status == COMPLETED else "deployment_failed"
        log = logger.info if status == COMPLETED else logger.error
        log(
            "Job %s: %s -> %s%s", record.id, previous, status,
            f" ({record.reason})" if reason else "",
            extra={
                "event": event,
                "project": record.project,
                "environment": record.environment,
                "commit": record.commit,
                "branch": record.branch_name,
                "pusher": record.actor,
            },
        )
        return OUTCOME_COMPLETED if status == COMPLETED else OUTCOME_FAILED

    def _reject(self, record: JobRecord, reason: str) -> str:
        logger.error("Invalid deployment request %s: %s", record.id, reason)
        self._finish(record, FAILED, FAILED_PARTITION, reason=reason)
        return OUTCOME_REJECTED

    def _discard(self, record: JobRecord, branch: str) -> str:
        # Unsupported branches are expected; the log line is the audit trail.
        logger.info("Branch %r is not deployable; discarding %s: %s",
                    branch, record.id, json.dumps(record.to_dict(), sort_keys=True))
        self.store.delete(record.id, PENDING)
        return OUTCOME_DISCARDED

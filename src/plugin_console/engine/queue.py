# src/plugin_console/engine/queue.py
import json
import logging
import os
import queue
import secrets
import socket
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import Engine, select, update, delete
from sqlalchemy.orm import Session

from plugin_console.db.models import JobAction, JobStatus, PluginJob, isoformat, utcnow
from plugin_console.plugins.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

# Actions that need a plugin name / a URL at submission time
NAME_REQUIRED = {JobAction.UPDATE, JobAction.UNINSTALL, JobAction.ENABLE, JobAction.DISABLE, JobAction.ROLLBACK}
URL_REQUIRED = {JobAction.INSTALL, JobAction.UPDATE}

RESTART_ERROR = "Worker restarted while job was running"


def generate_job_id() -> str:
    return f"job-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _log_entry(message: str) -> Dict[str, str]:
    return {"timestamp": isoformat(utcnow()), "message": message}


class JobQueue:
    """
    Durable plugin job queue.

    The API side only creates, reads and cancels jobs. The worker side claims
    jobs and records their outcome. Every status change is a guarded UPDATE
    (`WHERE status = <expected>`), so a transition that lost a race changes
    nothing.

    `wakeup` is the channel the worker blocks on; `create_job` drops the new
    job id into it.
    """

    def __init__(self, engine: Engine, wakeup: Optional[queue.Queue] = None):
        self.engine = engine
        self.wakeup = wakeup if wakeup is not None else queue.Queue()
        self.hostname = socket.gethostname()
        self.pid = os.getpid()

    # ------------------------------------------------------------------
    # API side
    # ------------------------------------------------------------------

    def create_job(
        self,
        action: str,
        name: Optional[str] = None,
        url: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> PluginJob:
        try:
            job_action = JobAction(action)
        except ValueError:
            raise ValidationError(
                f"Invalid action: {action!r} (valid: {[a.value for a in JobAction]})"
            ) from None

        if job_action in URL_REQUIRED and not url:
            raise ValidationError(f"URL is required for {job_action.value} action")
        if job_action in NAME_REQUIRED and not name:
            raise ValidationError(f"Plugin name is required for {job_action.value} action")
        if options is not None and not isinstance(options, dict):
            raise ValidationError("options must be an object")

        job = PluginJob(
            id=generate_job_id(),
            action=job_action,
            plugin_name=name,
            url=url,
            options_json=options or {},
            status=JobStatus.QUEUED,
            logs_json=[],
            created_at=utcnow(),
        )

        with Session(self.engine) as session:
            session.add(job)
            session.commit()
            session.refresh(job)
            session.expunge(job)

        logger.info(f"Created job {job.id}: {job_action.value} {name or url or ''}")
        self.wakeup.put(job.id)
        return job

    def get_job(self, job_id: str) -> PluginJob:
        with Session(self.engine) as session:
            job = session.scalars(select(PluginJob).where(PluginJob.id == job_id)).first()
            if job is None:
                raise JobNotFoundError(job_id)
            session.expunge(job)
            return job

    def get_jobs(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[PluginJob]:
        """Jobs newest first, optionally filtered by status and capped at `limit`."""
        stmt = select(PluginJob).order_by(PluginJob.seq.desc())
        if status:
            try:
                stmt = stmt.where(PluginJob.status == JobStatus(status))
            except ValueError:
                raise ValidationError(f"Invalid status filter: {status!r}") from None
        if limit:
            stmt = stmt.limit(limit)

        with Session(self.engine) as session:
            jobs = list(session.scalars(stmt))
            session.expunge_all()
            return jobs

    def cancel_job(self, job_id: str) -> PluginJob:
        """
        Cancel a job that has not started yet.

        Running and finished jobs cannot be cancelled here; see
        PluginJobWorker.request_cancel for aborting a running job.
        """
        with Session(self.engine) as session:
            job = session.scalars(select(PluginJob).where(PluginJob.id == job_id)).first()
            if job is None:
                raise JobNotFoundError(job_id)

            logs = job.logs + [_log_entry("Job cancelled by user request")]
            claimed = session.execute(
                update(PluginJob)
                .where(PluginJob.id == job_id, PluginJob.status == JobStatus.QUEUED)
                .values(
                    status=JobStatus.CANCELLED,
                    error="Job cancelled by user",
                    completed_at=utcnow(),
                    logs_json=json.dumps(logs),
                )
            ).rowcount
            session.commit()

            if not claimed:
                session.refresh(job)
                raise InvalidJobStateError(f"Cannot cancel job in {job.status.value} state")

        logger.info(f"Cancelled job {job_id}")
        return self.get_job(job_id)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def pop_job(self) -> Optional[PluginJob]:
        """
        Claim the oldest queued job (queued -> running).

        Returns None when the queue is empty or the candidate was cancelled
        between the read and the claim.
        """
        with Session(self.engine) as session:
            job = session.scalars(
                select(PluginJob)
                .where(PluginJob.status == JobStatus.QUEUED)
                .order_by(PluginJob.seq.asc())
                .limit(1)
            ).first()
            if job is None:
                return None

            claimed = session.execute(
                update(PluginJob)
                .where(PluginJob.seq == job.seq, PluginJob.status == JobStatus.QUEUED)
                .values(
                    status=JobStatus.RUNNING,
                    started_at=utcnow(),
                    worker_host=self.hostname,
                    worker_pid=self.pid,
                )
            ).rowcount
            session.commit()

            if not claimed:
                logger.info(f"Job {job.id} was no longer queued, skipping")
                return None

            session.refresh(job)
            session.expunge(job)
            return job

    def add_log(self, job_id: str, message: str):
        with Session(self.engine) as session:
            job = session.scalars(select(PluginJob).where(PluginJob.id == job_id)).first()
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status.is_terminal:
                logger.warning(f"Ignoring log for finished job {job_id}: {message}")
                return
            job.logs_json = job.logs + [_log_entry(message)]
            session.commit()

    def complete_job(self, job_id: str, result: Any = None) -> bool:
        done = self._finish(job_id, JobStatus.COMPLETED, result=result)
        if done:
            logger.info(f"Job {job_id} marked COMPLETED.")
        return done

    def fail_job(self, job_id: str, error: str) -> bool:
        done = self._finish(job_id, JobStatus.FAILED, error=str(error))
        if done:
            logger.error(f"Job {job_id} marked FAILED: {error}")
        return done

    def _finish(self, job_id: str, status: JobStatus, result: Any = None, error: Optional[str] = None) -> bool:
        with Session(self.engine) as session:
            finished = session.execute(
                update(PluginJob)
                .where(PluginJob.id == job_id, PluginJob.status == JobStatus.RUNNING)
                .values(
                    status=status,
                    result_json=json.dumps(result, default=str) if result is not None else None,
                    error=error,
                    completed_at=utcnow(),
                )
            ).rowcount
            session.commit()

        if not finished:
            logger.warning(f"Job {job_id} was not running; {status.value} not recorded")
        return bool(finished)

    def reconcile_stale_jobs(self) -> List[str]:
        """
        Fail every job left `running` by a previous worker process.

        Only one worker runs per registry, so at startup nothing can
        legitimately be running. A job claimed by another process on this
        host that is still alive is left alone and logged: that is a second
        worker, not a crashed one.
        """
        with Session(self.engine) as session:
            stale = []
            for job in session.scalars(select(PluginJob).where(PluginJob.status == JobStatus.RUNNING)):
                if self._owned_by_live_process(job):
                    logger.error(
                        f"Job {job.id} is running in live worker pid {job.worker_pid}; "
                        "only one worker may run per plugins directory"
                    )
                    continue
                stale.append(job)
            for job in stale:
                job.logs_json = job.logs + [_log_entry(f"Failed: {RESTART_ERROR}")]
                job.status = JobStatus.FAILED
                job.error = RESTART_ERROR
                job.completed_at = utcnow()
            session.commit()
            ids = [job.id for job in stale]

        for job_id in ids:
            logger.warning(f"Reconciled stale job {job_id}: marked FAILED")
        return ids

    def _owned_by_live_process(self, job: PluginJob) -> bool:
        if job.worker_host != self.hostname or not job.worker_pid or job.worker_pid == self.pid:
            return False
        try:
            os.kill(job.worker_pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def prune_jobs(self, keep: int = 100) -> int:
        """Delete the oldest finished jobs beyond `keep`. Queued/running jobs stay."""
        with Session(self.engine) as session:
            keep_seqs = (
                select(PluginJob.seq)
                .where(PluginJob.status.in_(TERMINAL_STATUSES))
                .order_by(PluginJob.seq.desc())
                .limit(keep)
            )
            removed = session.execute(
                delete(PluginJob).where(
                    PluginJob.status.in_(TERMINAL_STATUSES),
                    PluginJob.seq.not_in(keep_seqs),
                )
            ).rowcount
            session.commit()

        if removed:
            logger.info(f"Pruned {removed} old jobs")
        return removed

# src/plugin_console/engine/worker.py
import logging
import queue
import threading
from typing import Any, Callable, Dict, Optional

from plugin_console.db.models import JobAction, PluginJob
from plugin_console.engine.cancellation import CancellationToken
from plugin_console.engine.queue import JobQueue
from plugin_console.plugins.download import DownloadProgress
from plugin_console.plugins.manager import PluginManager

logger = logging.getLogger(__name__)

PROGRESS_STEP = 10


class PluginJobWorker:
    """
    Single consumer of the plugin job queue.

    Runs in its own thread and is the only caller of the mutating
    PluginManager operations, so jobs execute strictly one at a time in
    submission order. It sleeps on the queue's wake-up channel and falls
    back to polling every `poll_interval` seconds.
    """

    def __init__(
        self,
        job_queue: JobQueue,
        manager: PluginManager,
        poll_interval: float = 2.0,
        job_retention: int = 100,
    ):
        self.queue = job_queue
        self.manager = manager
        self.poll_interval = poll_interval
        self.job_retention = job_retention

        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self._current_job_id: Optional[str] = None
        self._current_token: Optional[CancellationToken] = None

        self._handlers: Dict[JobAction, Callable[[PluginJob, CancellationToken], Any]] = {
            JobAction.INSTALL: self._handle_install,
            JobAction.UPDATE: self._handle_update,
            JobAction.UNINSTALL: self._handle_uninstall,
            JobAction.ENABLE: self._handle_enable,
            JobAction.DISABLE: self._handle_disable,
            JobAction.ROLLBACK: self._handle_rollback,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Plugin job worker already running")
            return

        self.queue.reconcile_stale_jobs()
        self._stopping.clear()
        self._thread = threading.Thread(target=self.run, name="plugin-job-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 10.0):
        self._stopping.set()
        with self._lock:
            if self._current_token is not None:
                self._current_token.cancel("Worker shutting down")
        # Unblock the wait on the wake-up channel
        self.queue.wakeup.put(None)

        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Plugin job worker did not stop within timeout")
            self._thread = None
        logger.info("Plugin job worker stopped")

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self):
        logger.info("Plugin job worker online. Waiting for jobs...")
        while not self._stopping.is_set():
            try:
                processed = self.process_next_job()
            except Exception as e:
                # Queue/database trouble; keep the loop alive and retry on the next tick
                logger.error(f"Worker loop error: {e}", exc_info=True)
                processed = False

            if processed:
                continue
            try:
                self.queue.wakeup.get(timeout=self.poll_interval)
            except queue.Empty:
                pass

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def is_processing(self) -> bool:
        return self._current_job_id is not None

    def get_current_job_id(self) -> Optional[str]:
        return self._current_job_id

    def request_cancel(self, job_id: str) -> bool:
        """Trip the cancellation token of `job_id` if it is the running job."""
        with self._lock:
            if self._current_job_id != job_id or self._current_token is None:
                return False
            self._current_token.cancel()
        logger.info(f"Cancellation requested for running job {job_id}")
        return True

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_next_job(self) -> bool:
        """Claim and run one job. Returns False if there was nothing to do."""
        job = self.queue.pop_job()
        if job is None:
            return False

        token = CancellationToken()
        with self._lock:
            self._current_job_id = job.id
            self._current_token = token

        logger.info(f"Processing job {job.id} | {job.action.value} {job.plugin_name or job.url}")
        try:
            self.queue.add_log(job.id, f"Started {job.action.value} operation")
            result = self._handlers[job.action](job, token)
            self.queue.add_log(job.id, "Completed successfully")
            self.queue.complete_job(job.id, result)
        except Exception as e:
            logger.error(f"Job {job.id} failed: {e}", exc_info=True)
            try:
                self.queue.add_log(job.id, f"Failed: {e}")
            except Exception as log_error:
                logger.error(f"Could not log failure of job {job.id}: {log_error}")
            self.queue.fail_job(job.id, str(e))
        finally:
            with self._lock:
                self._current_job_id = None
                self._current_token = None

        self.queue.prune_jobs(self.job_retention)
        return True

    def _progress_logger(self, job_id: str) -> Callable[[DownloadProgress], None]:
        last = {"pct": 0}

        def on_progress(event: DownloadProgress):
            pct = event.percentage
            if pct is None:
                return
            if pct - last["pct"] >= PROGRESS_STEP or (pct == 100 and last["pct"] != 100):
                last["pct"] = pct
                self.queue.add_log(job_id, f"Download progress: {pct}%")

        return on_progress

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_install(self, job: PluginJob, token: CancellationToken):
        options = job.options
        self.queue.add_log(job.id, f"Downloading from {job.url}")
        result = self.manager.install_from_url(
            job.url,
            custom_name=options.get("customName") or job.plugin_name,
            selected_option=options.get("selectedOption"),
            on_progress=self._progress_logger(job.id),
            token=token,
        )

        if result["status"] == "multiple-options":
            self.queue.add_log(job.id, f"Multiple JAR files found ({len(result['options'])}); select one")
            return result

        if result["status"] != "conflict":
            self.queue.add_log(job.id, f"Installed {result['pluginName']} {result['version']}")
            return result

        required = result["requiredAction"]
        self.queue.add_log(
            job.id,
            f"Plugin {result['pluginName']} already installed "
            f"({result['currentVersion']} -> {result['newVersion']}), requires {required}",
        )
        confirmed = options.get("confirm") == required or (
            options.get("autoUpdate") and required == "update"
        )
        if not confirmed:
            return result

        self.queue.add_log(job.id, f"Proceeding with {required}")
        return self.manager.proceed_with_install(
            job.url,
            result["pluginName"],
            required,
            on_progress=self._progress_logger(job.id),
            token=token,
            selected_option=options.get("selectedOption"),
        )

    def _handle_update(self, job: PluginJob, token: CancellationToken):
        self.queue.add_log(job.id, f"Updating {job.plugin_name} from {job.url}")
        return self.manager.proceed_with_install(
            job.url,
            job.plugin_name,
            "update",
            on_progress=self._progress_logger(job.id),
            token=token,
            selected_option=job.options.get("selectedOption"),
        )

    def _handle_uninstall(self, job: PluginJob, token: CancellationToken):
        delete_configs = bool(job.options.get("deleteConfigs"))
        self.queue.add_log(
            job.id,
            f"Uninstalling {job.plugin_name}" + (" and its configs" if delete_configs else ""),
        )
        return self.manager.uninstall_plugin(job.plugin_name, delete_configs=delete_configs)

    def _handle_enable(self, job: PluginJob, token: CancellationToken):
        return self.manager.toggle_plugin(job.plugin_name, True)

    def _handle_disable(self, job: PluginJob, token: CancellationToken):
        return self.manager.toggle_plugin(job.plugin_name, False)

    def _handle_rollback(self, job: PluginJob, token: CancellationToken):
        self.queue.add_log(job.id, f"Restoring {job.plugin_name} from backup")
        return self.manager.rollback_plugin(job.plugin_name)

"""
Tests for PluginJobWorker: dispatch, outcome recording, progress and cancellation.

Most tests drive the worker synchronously through `process_next_job`; the
threaded tests exercise start/stop and the wake-up channel.
"""
import threading
import time

import httpx
import pytest

from conftest import BASE_URL, build_jar
from plugin_console.db.models import JobStatus
from plugin_console.engine.queue import RESTART_ERROR
from plugin_console.engine.worker import PluginJobWorker


@pytest.fixture
def worker(job_queue, manager):
    w = PluginJobWorker(job_queue, manager, poll_interval=0.05)
    yield w
    w.stop(timeout=5)


def run_job(worker, job_queue, action, **kwargs):
    job = job_queue.create_job(action, **kwargs)
    assert worker.process_next_job() is True
    return job_queue.get_job(job.id)


def messages(job):
    return [entry["message"] for entry in job.logs]


def wait_until(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestInstallScenario:
    def test_install_conflict_confirm_rollback(self, worker, job_queue, manager, serve_jar):
        url_10 = serve_jar("plugin-1.0.jar", "Foo", "1.0")
        url_11 = serve_jar("plugin-1.1.jar", "Foo", "1.1")

        # Fresh install
        job = run_job(worker, job_queue, "install", url=url_10, options={"customName": "Foo"})
        assert job.status == JobStatus.COMPLETED
        assert job.result["status"] == "installed"
        assert job.result["version"] == "1.0"
        assert manager.find_plugin("Foo").version == "1.0"
        assert manager.has_backup("Foo") is False

        # Newer build: withheld as a conflict
        job = run_job(worker, job_queue, "install", url=url_11, options={"customName": "Foo"})
        assert job.status == JobStatus.COMPLETED
        assert job.result["status"] == "conflict"
        assert job.result["requiredAction"] == "update"
        assert job.result["comparison"] == "upgrade"
        assert manager.find_plugin("Foo").version == "1.0"

        # Confirm
        result = manager.proceed_with_install(url_11, "Foo", "update")
        assert result["version"] == "1.1"
        assert manager.find_plugin("Foo").version == "1.1"
        assert manager.has_backup("Foo") is True

        # Undo
        job = run_job(worker, job_queue, "rollback", name="Foo")
        assert job.status == JobStatus.COMPLETED
        assert manager.find_plugin("Foo").version == "1.0"
        assert manager.has_backup("Foo") is False

    def test_logs_record_lifecycle(self, worker, job_queue, serve_jar):
        url = serve_jar("foo.jar", "Foo", "1.0")
        job = run_job(worker, job_queue, "install", url=url)

        logs = messages(job)
        assert logs[0] == "Started install operation"
        assert "Installed Foo 1.0" in logs
        assert logs[-1] == "Completed successfully"
        assert job.started_at is not None and job.completed_at is not None


class TestConfirmationOptions:
    def test_confirm_option_proceeds(self, worker, job_queue, manager, serve_jar):
        url = serve_jar("foo.jar", "Foo", "1.0")
        run_job(worker, job_queue, "install", url=url)

        job = run_job(worker, job_queue, "install", url=url, options={"confirm": "reinstall"})

        assert job.status == JobStatus.COMPLETED
        assert job.result["status"] == "success"
        assert job.result["action"] == "reinstall"
        assert manager.has_backup("Foo")

    def test_wrong_confirmation_returns_conflict(self, worker, job_queue, serve_jar):
        url_10 = serve_jar("foo-1.0.jar", "Foo", "1.0")
        url_20 = serve_jar("foo-2.0.jar", "Foo", "2.0")
        run_job(worker, job_queue, "install", url=url_20)

        job = run_job(worker, job_queue, "install", url=url_10, options={"confirm": "update"})

        assert job.result["status"] == "conflict"
        assert job.result["requiredAction"] == "downgrade"

    def test_auto_update_applies_to_upgrades(self, worker, job_queue, manager, serve_jar):
        run_job(worker, job_queue, "install", url=serve_jar("foo-1.0.jar", "Foo", "1.0"))

        job = run_job(
            worker, job_queue, "install",
            url=serve_jar("foo-1.1.jar", "Foo", "1.1"),
            options={"autoUpdate": True},
        )

        assert job.result["status"] == "success"
        assert manager.find_plugin("Foo").version == "1.1"
        assert "Proceeding with update" in messages(job)

    def test_auto_update_never_downgrades(self, worker, job_queue, manager, serve_jar):
        run_job(worker, job_queue, "install", url=serve_jar("foo-2.0.jar", "Foo", "2.0"))

        job = run_job(
            worker, job_queue, "install",
            url=serve_jar("foo-1.0.jar", "Foo", "1.0"),
            options={"autoUpdate": True},
        )

        assert job.result["status"] == "conflict"
        assert manager.find_plugin("Foo").version == "2.0"


class TestOtherActions:
    def test_update_action(self, worker, job_queue, manager, serve_jar):
        run_job(worker, job_queue, "install", url=serve_jar("foo-1.0.jar", "Foo", "1.0"))

        job = run_job(worker, job_queue, "update", name="Foo", url=serve_jar("foo-1.2.jar", "Foo", "1.2"))

        assert job.status == JobStatus.COMPLETED
        assert job.result["action"] == "update"
        assert manager.find_plugin("Foo").version == "1.2"

    def test_disable_then_enable(self, worker, job_queue, manager, plugins_dir, serve_jar):
        run_job(worker, job_queue, "install", url=serve_jar("foo.jar", "Foo", "1.0"))

        job = run_job(worker, job_queue, "disable", name="Foo")
        assert job.result["changed"] is True
        assert (plugins_dir / "Foo.jar.disabled").is_file()
        assert not (plugins_dir / "Foo.jar").exists()
        assert manager.find_plugin("Foo").enabled is False

        job = run_job(worker, job_queue, "enable", name="Foo")
        assert job.result["changed"] is True
        assert (plugins_dir / "Foo.jar").is_file()
        assert manager.find_plugin("Foo").enabled is True

    def test_uninstall(self, worker, job_queue, manager, plugins_dir, serve_jar):
        run_job(worker, job_queue, "install", url=serve_jar("foo.jar", "Foo", "1.0"))
        (plugins_dir / "Foo").mkdir()
        (plugins_dir / "Foo" / "config.yml").write_text("x: 1")

        job = run_job(worker, job_queue, "uninstall", name="Foo", options={"deleteConfigs": True})

        assert job.status == JobStatus.COMPLETED
        assert job.result["configsDeleted"] is True
        assert manager.find_plugin("Foo") is None
        assert not (plugins_dir / "Foo.jar").exists()
        assert not (plugins_dir / "Foo").exists()


class TestFailures:
    def test_rollback_without_backup_fails(self, worker, job_queue, serve_jar):
        run_job(worker, job_queue, "install", url=serve_jar("foo.jar", "Foo", "1.0"))

        job = run_job(worker, job_queue, "rollback", name="Foo")

        assert job.status == JobStatus.FAILED
        assert job.error == "No backup available for plugin: Foo"
        assert messages(job)[-1] == "Failed: No backup available for plugin: Foo"

    def test_invalid_archive_fails(self, worker, job_queue, http_routes):
        http_routes[f"{BASE_URL}/broken.jar"] = b"this is not a zip file"

        job = run_job(worker, job_queue, "install", url=f"{BASE_URL}/broken.jar")

        assert job.status == JobStatus.FAILED
        assert job.error.startswith("Invalid plugin file")

    def test_http_error_fails(self, worker, job_queue, http_routes):
        http_routes[f"{BASE_URL}/gone.jar"] = 500

        job = run_job(worker, job_queue, "install", url=f"{BASE_URL}/gone.jar")

        assert job.status == JobStatus.FAILED
        assert "HTTP 500" in job.error

    def test_download_timeout_fails(self, worker, job_queue, http_routes):
        def timeout(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        http_routes[f"{BASE_URL}/slow.jar"] = timeout

        job = run_job(worker, job_queue, "install", url=f"{BASE_URL}/slow.jar")

        assert job.status == JobStatus.FAILED
        assert "timed out" in job.error

    def test_uninstall_unknown_plugin_fails(self, worker, job_queue):
        job = run_job(worker, job_queue, "uninstall", name="Ghost")

        assert job.status == JobStatus.FAILED
        assert job.error == "Plugin not found: Ghost"

    def test_job_fails_even_if_failure_log_cannot_be_written(self, worker, job_queue, monkeypatch):
        add_log = job_queue.add_log

        def flaky_add_log(job_id, message):
            if message.startswith("Failed:"):
                raise RuntimeError("database is locked")
            add_log(job_id, message)

        monkeypatch.setattr(job_queue, "add_log", flaky_add_log)

        job = run_job(worker, job_queue, "uninstall", name="Ghost")

        assert job.status == JobStatus.FAILED
        assert job.error == "Plugin not found: Ghost"

    def test_failure_does_not_block_next_job(self, worker, job_queue, manager, serve_jar):
        job_queue.create_job("rollback", name="Nothing")
        good = job_queue.create_job("install", url=serve_jar("foo.jar", "Foo", "1.0"))

        assert worker.process_next_job()
        assert worker.process_next_job()
        assert worker.process_next_job() is False

        assert job_queue.get_job(good.id).status == JobStatus.COMPLETED
        assert manager.find_plugin("Foo") is not None


class TestProgressAndCancellation:
    def test_progress_logged_in_steps(self, worker, job_queue, http_routes):
        url = f"{BASE_URL}/big.jar"
        http_routes[url] = build_jar("Big", "1.0", padding=50_000)

        job = run_job(worker, job_queue, "install", url=url)

        progress = [m for m in messages(job) if m.startswith("Download progress:")]
        assert job.status == JobStatus.COMPLETED
        assert progress[-1] == "Download progress: 100%"
        assert 2 <= len(progress) <= 11
        pcts = [int(m.split(":")[1].strip().rstrip("%")) for m in progress]
        assert pcts == sorted(pcts)

    def test_cancel_running_download(self, worker, job_queue, http_routes, tmp_path):
        url = f"{BASE_URL}/stream.jar"
        payload = build_jar("Slow", "1.0", padding=20_000)
        job = job_queue.create_job("install", url=url)

        def stream(request):
            def body():
                yield payload[:1024]
                assert worker.request_cancel(job.id) is True
                for i in range(1024, len(payload), 1024):
                    yield payload[i:i + 1024]

            return httpx.Response(200, content=body(), headers={"Content-Length": str(len(payload))})

        http_routes[url] = stream

        assert worker.process_next_job()

        done = job_queue.get_job(job.id)
        assert done.status == JobStatus.FAILED
        assert done.error == "Job cancelled while running"
        staging = tmp_path / "staging"
        assert not staging.exists() or list(staging.iterdir()) == []

    def test_request_cancel_ignores_other_jobs(self, worker):
        assert worker.request_cancel("job-0-00000000") is False

    def test_observability_outside_a_job(self, worker):
        assert worker.is_processing() is False
        assert worker.get_current_job_id() is None


class TestThreadedWorker:
    def test_start_reconciles_stale_jobs(self, job_queue, manager):
        stuck = job_queue.create_job("enable", name="Foo")
        job_queue.pop_job()

        w = PluginJobWorker(job_queue, manager, poll_interval=0.05)
        w.start()
        try:
            job = job_queue.get_job(stuck.id)
            assert job.status == JobStatus.FAILED
            assert job.error == RESTART_ERROR
        finally:
            w.stop(timeout=5)

    def test_processes_jobs_one_at_a_time(self, worker, job_queue, serve_jar):
        urls = [serve_jar(f"p{i}.jar", f"Plugin{i}", "1.0") for i in range(6)]
        worker.start()

        jobs = []
        lock = threading.Lock()
        go = threading.Barrier(len(urls))

        def submit(url):
            go.wait()
            job = job_queue.create_job("install", url=url)
            with lock:
                jobs.append(job)

        submitters = [threading.Thread(target=submit, args=(url,)) for url in urls]
        for t in submitters:
            t.start()
        for t in submitters:
            t.join()
        assert len(jobs) == len(urls)
        jobs.sort(key=lambda j: j.seq)

        max_running = 0

        def all_done():
            nonlocal max_running
            running = job_queue.get_jobs(status="running")
            max_running = max(max_running, len(running))
            return all(job_queue.get_job(j.id).status.is_terminal for j in jobs)

        assert wait_until(all_done)
        assert max_running <= 1
        assert all(job_queue.get_job(j.id).status == JobStatus.COMPLETED for j in jobs)

        started = [job_queue.get_job(j.id).started_at for j in jobs]
        assert started == sorted(started)

    def test_stop_joins_thread(self, worker):
        worker.start()
        assert worker.is_alive()

        worker.stop(timeout=5)
        assert not worker.is_alive()

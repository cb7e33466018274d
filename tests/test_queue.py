"""
Unit tests for JobQueue operations.
"""
import os
import re
import threading

import pytest

from plugin_console.db.models import JobStatus
from plugin_console.engine.queue import RESTART_ERROR, JobQueue
from plugin_console.plugins.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    ValidationError,
)


URL = "https://downloads.example.com/foo-1.0.jar"


class TestCreateJob:
    def test_new_job_is_queued(self, job_queue):
        job = job_queue.create_job("install", url=URL)

        assert job.status == JobStatus.QUEUED
        fetched = job_queue.get_job(job.id)
        assert fetched.status == JobStatus.QUEUED
        assert fetched.url == URL
        assert fetched.logs == []
        assert fetched.created_at is not None
        assert fetched.started_at is None

    def test_job_id_format(self, job_queue):
        job = job_queue.create_job("install", url=URL)
        assert re.match(r"^job-\d+-[0-9a-f]{8}$", job.id)

    def test_ids_are_unique(self, job_queue):
        ids = {job_queue.create_job("install", url=URL).id for _ in range(20)}
        assert len(ids) == 20

    def test_options_round_trip(self, job_queue):
        job = job_queue.create_job("install", url=URL, options={"customName": "Foo", "confirm": "update"})
        assert job_queue.get_job(job.id).options == {"customName": "Foo", "confirm": "update"}

    def test_signals_wakeup_channel(self, job_queue):
        job = job_queue.create_job("install", url=URL)
        assert job_queue.wakeup.get_nowait() == job.id

    @pytest.mark.parametrize(
        "action,kwargs",
        [
            ("explode", {"url": URL}),
            ("install", {}),
            ("update", {"url": URL}),
            ("update", {"name": "Foo"}),
            ("uninstall", {}),
            ("enable", {}),
            ("disable", {}),
            ("rollback", {}),
        ],
    )
    def test_rejects_invalid_requests(self, job_queue, action, kwargs):
        with pytest.raises(ValidationError):
            job_queue.create_job(action, **kwargs)
        assert job_queue.get_jobs() == []

    def test_to_dict_shape(self, job_queue):
        job = job_queue.create_job("uninstall", name="Foo", options={"deleteConfigs": True})
        data = job_queue.get_job(job.id).to_dict()

        assert data["id"] == job.id
        assert data["action"] == "uninstall"
        assert data["pluginName"] == "Foo"
        assert data["status"] == "queued"
        assert data["options"] == {"deleteConfigs": True}
        assert data["createdAt"].endswith("Z")
        assert data["startedAt"] is None and data["completedAt"] is None


class TestReads:
    def test_get_unknown_job(self, job_queue):
        with pytest.raises(JobNotFoundError, match="Job not found: nope"):
            job_queue.get_job("nope")

    def test_get_jobs_newest_first(self, job_queue):
        first = job_queue.create_job("enable", name="A")
        second = job_queue.create_job("enable", name="B")
        third = job_queue.create_job("enable", name="C")

        assert [j.id for j in job_queue.get_jobs()] == [third.id, second.id, first.id]

    def test_get_jobs_filter_and_limit(self, job_queue):
        a = job_queue.create_job("enable", name="A")
        job_queue.create_job("enable", name="B")
        job_queue.create_job("enable", name="C")
        job_queue.cancel_job(a.id)

        assert [j.id for j in job_queue.get_jobs(status="cancelled")] == [a.id]
        assert len(job_queue.get_jobs(status="queued")) == 2
        assert len(job_queue.get_jobs(limit=1)) == 1

    def test_get_jobs_rejects_unknown_status(self, job_queue):
        with pytest.raises(ValidationError):
            job_queue.get_jobs(status="sleeping")


class TestCancel:
    def test_cancel_queued_job(self, job_queue):
        job = job_queue.create_job("install", url=URL)

        cancelled = job_queue.cancel_job(job.id)

        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.error == "Job cancelled by user"
        assert cancelled.completed_at is not None
        assert cancelled.logs[-1]["message"] == "Job cancelled by user request"

    def test_cancelled_job_is_never_popped(self, job_queue):
        job = job_queue.create_job("install", url=URL)
        job_queue.cancel_job(job.id)

        assert job_queue.pop_job() is None

    def test_cancel_running_job_fails(self, job_queue):
        job = job_queue.create_job("install", url=URL)
        job_queue.pop_job()

        with pytest.raises(InvalidJobStateError, match="Cannot cancel job in running state"):
            job_queue.cancel_job(job.id)
        assert job_queue.get_job(job.id).status == JobStatus.RUNNING

    @pytest.mark.parametrize("finish", ["complete", "fail"])
    def test_cancel_terminal_job_leaves_it_unchanged(self, job_queue, finish):
        job = job_queue.create_job("install", url=URL)
        job_queue.pop_job()
        if finish == "complete":
            job_queue.complete_job(job.id, {"status": "installed"})
        else:
            job_queue.fail_job(job.id, "boom")
        before = job_queue.get_job(job.id).to_dict()

        with pytest.raises(InvalidJobStateError, match="Cannot cancel"):
            job_queue.cancel_job(job.id)
        assert job_queue.get_job(job.id).to_dict() == before

    def test_cancel_unknown_job(self, job_queue):
        with pytest.raises(JobNotFoundError):
            job_queue.cancel_job("job-0-deadbeef")


class TestWorkerSide:
    def test_pop_job_returns_none_when_empty(self, job_queue):
        assert job_queue.pop_job() is None

    def test_pop_job_is_fifo(self, job_queue):
        jobs = [job_queue.create_job("enable", name=f"P{i}") for i in range(3)]

        popped = []
        for _ in jobs:
            job = job_queue.pop_job()
            popped.append(job.id)
            job_queue.complete_job(job.id)

        assert popped == [j.id for j in jobs]

    def test_pop_job_marks_running(self, job_queue):
        job_queue.create_job("install", url=URL)
        job = job_queue.pop_job()

        assert job.status == JobStatus.RUNNING
        assert job.started_at is not None
        assert job.worker_pid == job_queue.pid

    def test_concurrent_pops_claim_each_job_once(self, job_queue):
        for i in range(10):
            job_queue.create_job("enable", name=f"P{i}")

        claimed = []
        lock = threading.Lock()

        def consume():
            while True:
                job = job_queue.pop_job()
                if job is None:
                    if not job_queue.get_jobs(status="queued"):
                        return
                    continue
                with lock:
                    claimed.append(job.id)

        threads = [threading.Thread(target=consume) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(claimed) == 10
        assert len(set(claimed)) == 10

    def test_complete_job(self, job_queue):
        job = job_queue.create_job("install", url=URL)
        job_queue.pop_job()

        assert job_queue.complete_job(job.id, {"status": "installed", "version": "1.0"})

        done = job_queue.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.result == {"status": "installed", "version": "1.0"}
        assert done.completed_at is not None

    def test_fail_job(self, job_queue):
        job = job_queue.create_job("install", url=URL)
        job_queue.pop_job()

        assert job_queue.fail_job(job.id, "Download failed: HTTP 500")

        failed = job_queue.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "Download failed: HTTP 500"

    def test_finishing_requires_running(self, job_queue):
        job = job_queue.create_job("install", url=URL)

        assert job_queue.complete_job(job.id, {"x": 1}) is False
        assert job_queue.get_job(job.id).status == JobStatus.QUEUED

    def test_terminal_state_is_immutable(self, job_queue):
        job = job_queue.create_job("install", url=URL)
        job_queue.pop_job()
        job_queue.complete_job(job.id, {"ok": True})

        assert job_queue.fail_job(job.id, "late failure") is False
        done = job_queue.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.error is None

    def test_add_log_appends_in_order(self, job_queue):
        job = job_queue.create_job("install", url=URL)
        job_queue.pop_job()

        job_queue.add_log(job.id, "one")
        job_queue.add_log(job.id, "two")

        messages = [entry["message"] for entry in job_queue.get_job(job.id).logs]
        assert messages == ["one", "two"]

    def test_add_log_ignored_after_finish(self, job_queue):
        job = job_queue.create_job("install", url=URL)
        job_queue.pop_job()
        job_queue.complete_job(job.id)

        job_queue.add_log(job.id, "too late")
        assert job_queue.get_job(job.id).logs == []


class TestMaintenance:
    def test_reconcile_fails_stuck_running_jobs(self, test_db_engine):
        old_process = JobQueue(test_db_engine)
        stuck = old_process.create_job("install", url=URL)
        waiting = old_process.create_job("enable", name="Foo")
        old_process.pop_job()

        fresh = JobQueue(test_db_engine)
        assert fresh.reconcile_stale_jobs() == [stuck.id]

        job = fresh.get_job(stuck.id)
        assert job.status == JobStatus.FAILED
        assert job.error == RESTART_ERROR
        assert job.completed_at is not None
        assert fresh.get_job(waiting.id).status == JobStatus.QUEUED

    def test_reconcile_leaves_jobs_of_a_live_worker_process(self, test_db_engine):
        other_worker = JobQueue(test_db_engine)
        other_worker.pid = os.getppid()
        running = other_worker.create_job("install", url=URL)
        other_worker.pop_job()

        fresh = JobQueue(test_db_engine)
        assert fresh.reconcile_stale_jobs() == []
        assert fresh.get_job(running.id).status == JobStatus.RUNNING

    def test_reconcile_fails_jobs_of_a_dead_worker_process(self, test_db_engine):
        crashed = JobQueue(test_db_engine)
        crashed.pid = 2 ** 22 + 1  # above Linux pid_max
        stuck = crashed.create_job("install", url=URL)
        crashed.pop_job()

        fresh = JobQueue(test_db_engine)
        assert fresh.reconcile_stale_jobs() == [stuck.id]

    def test_reconcile_with_nothing_running(self, job_queue):
        job_queue.create_job("enable", name="Foo")
        assert job_queue.reconcile_stale_jobs() == []

    def test_prune_keeps_newest_terminal_jobs(self, job_queue):
        finished = []
        for i in range(5):
            job = job_queue.create_job("enable", name=f"P{i}")
            job_queue.pop_job()
            job_queue.complete_job(job.id)
            finished.append(job.id)

        assert job_queue.prune_jobs(keep=2) == 3
        assert {j.id for j in job_queue.get_jobs()} == set(finished[-2:])

    def test_prune_never_removes_active_jobs(self, job_queue):
        running = job_queue.create_job("enable", name="Running")
        job_queue.pop_job()
        queued = job_queue.create_job("enable", name="Queued")
        cancelled = job_queue.create_job("enable", name="Cancelled")
        job_queue.cancel_job(cancelled.id)

        assert job_queue.prune_jobs(keep=0) == 1

        remaining = {j.id for j in job_queue.get_jobs()}
        assert remaining == {running.id, queued.id}

import time
import threading

from services.sync_scheduler import SyncScheduler


class CountingJob:
    def __init__(self, fail: bool = False):
        self.calls = 0
        self.fail = fail

    def __call__(self):
        self.calls += 1
        time.sleep(0.01)
        if self.fail:
            raise RuntimeError("boom")


def test_sync_scheduler_start_stop_lifecycle() -> None:
    job = CountingJob()
    sched = SyncScheduler(job=job, interval_seconds=1)

    sched.start()
    time.sleep(0.2)

    assert sched.running is True
    thread = getattr(sched, "_thread", None)
    assert thread is not None and isinstance(thread, threading.Thread)
    assert thread.is_alive()
    assert job.calls == 1

    sched.stop()
    time.sleep(0.1)
    assert sched.running is False
    thread_after = getattr(sched, "_thread", None)
    assert thread_after is None or not thread_after.is_alive()


def test_sync_scheduler_start_idempotent() -> None:
    sched = SyncScheduler(job=CountingJob(), interval_seconds=1, name="monitor")

    sched.start()
    time.sleep(0.15)
    first_thread = getattr(sched, "_thread", None)

    sched.start()
    time.sleep(0.15)
    second_thread = getattr(sched, "_thread", None)

    assert first_thread is second_thread
    assert first_thread.name == "scheduler-monitor"
    sched.stop()


def test_sync_scheduler_survives_failing_job() -> None:
    job = CountingJob(fail=True)
    sched = SyncScheduler(job=job, interval_seconds=1)

    sched.start()
    time.sleep(1.3)
    sched.stop()

    assert job.calls >= 2


def test_sync_scheduler_picks_up_shorter_interval() -> None:
    job = CountingJob()
    sched = SyncScheduler(job=job, interval_seconds=3600)

    sched.start()
    time.sleep(0.2)
    assert job.calls == 1

    sched.interval_seconds = 1
    time.sleep(1.5)
    sched.stop()

    assert job.calls >= 2

from gatewayd.jobs import JobManager, JobStatus
from gatewayd.models import LifecycleEvent


def test_completed_job_keeps_result():
    manager = JobManager()
    job = manager.submit("restart", lambda: {"pid": 7})

    job = manager.wait(job.id, timeout=5)

    assert job.status == JobStatus.COMPLETED
    assert job.to_dict()["result"] == {"pid": 7}
    assert job.to_dict()["duration_seconds"] is not None


def test_failed_job_records_error_and_event(db):
    def boom():
        raise RuntimeError("gateway exited during startup")

    manager = JobManager()
    job = manager.wait(manager.submit("boot", boom).id, timeout=5)

    assert job.status == JobStatus.FAILED
    assert job.error == "gateway exited during startup"
    assert LifecycleEvent.get(LifecycleEvent.kind == "boot_failed").message == job.error


def test_recent_filters_and_prunes_finished():
    manager = JobManager(keep_finished=2)
    jobs = [manager.submit("restart", lambda: None) for _ in range(3)]
    for job in jobs:
        manager.wait(job.id, timeout=5)
    boot = manager.wait(manager.submit("boot", lambda: None).id, timeout=5)

    assert manager.recent(kind="boot") == [boot]
    assert len(manager.recent()) <= 3
    assert manager.get("missing") is None

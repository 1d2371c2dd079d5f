import threading

import pytest

from errors import ExpiredArtifactError
from sweeper import ExpirationSweeper


@pytest.fixture
def sweeper(store, db):
    return ExpirationSweeper(store, db=db)


def complete_batch(service, worker):
    job_id = service.submit("owner-1", ["a.png", "b.png"], "batch")
    worker.process_next()
    return service.get_job(job_id)


def test_nothing_to_sweep_before_expiry(service, worker, sweeper, store, clock):
    job = complete_batch(service, worker)
    clock.current = job.expires_at

    assert sweeper.sweep_once() == 0
    assert all(store.exists(ref) for ref in job.artifact_refs)


def test_expired_artifacts_are_revoked(service, worker, sweeper, store, clock):
    job = complete_batch(service, worker)
    clock.current = job.expires_at
    clock.advance(1)

    assert sweeper.sweep_once() == 1

    swept = service.get_job(job.id)
    assert swept.status == "completed"
    assert swept.artifacts_revoked_at == clock()
    assert not any(store.exists(ref) for ref in job.artifact_refs)
    assert not store.exists(job.aggregate_ref)
    with pytest.raises(ExpiredArtifactError):
        service.get_artifacts(job.id)


def test_second_sweep_is_a_no_op(service, worker, sweeper, clock):
    job = complete_batch(service, worker)
    clock.current = job.expires_at
    clock.advance(1)
    sweeper.sweep_once()

    assert sweeper.sweep_once() == 0


def test_only_completed_jobs_are_swept(service, sweeper, clock):
    job_id = service.submit("owner-1", ["a.png"])
    clock.advance(30 * 24 * 3600)

    assert sweeper.sweep_once() == 0
    assert service.get_status(job_id)["status"] == "pending"


def test_run_stops_with_the_event(store, db):
    stop = threading.Event()
    stop.set()

    ExpirationSweeper(store, db=db, stop_event=stop).run()

"""Tests for the job lifecycle facade."""

import pytest

from conftest import ScriptedEngine
from errors import (ConflictError, ExpiredArtifactError, NotFoundError, PermanentExecutionError,
                    TransientExecutionError, ValidationError)
from models import RenderSettings

GOOD_SETTINGS = {"format": "png", "quality": 80, "width": 100, "height": 200, "scale": 2}


class TestSubmit:
    def test_submit_creates_pending_job_and_enqueues(self, service, queue):
        job_id = service.submit("owner-1", ["a.png", "b.png"], "batch", GOOD_SETTINGS, priority="high",
                                preset="iPhone 6.7")

        job = service.get_job(job_id)
        assert job.status == "pending"
        assert job.progress == 0
        assert job.attempt_count == 0
        assert job.item_refs == ["a.png", "b.png"]
        assert job.render_settings == RenderSettings(format="png", quality=80, width=100, height=200, scale=2)
        assert job.priority == "high"
        assert job.preset == "iPhone 6.7"
        assert job.max_attempts == 3
        assert queue.contains(job_id)

    def test_caller_supplied_id(self, service):
        assert service.submit("owner-1", ["a.png"], "single", job_id="job-42") == "job-42"

    def test_duplicate_id_is_a_conflict(self, service):
        service.submit("owner-1", ["a.png"], "single", job_id="job-42")

        with pytest.raises(ConflictError) as exc_info:
            service.submit("owner-1", ["a.png"], "single", job_id="job-42")
        assert exc_info.value.code == "duplicate_id"

    def test_render_settings_defaults(self, service):
        job_id = service.submit("owner-1", ["a.png"])

        settings = service.get_job(job_id).render_settings
        assert (settings.format, settings.quality, settings.scale) == ("png", 90, 2)

    @pytest.mark.parametrize("owner, items, kind, render_settings, priority, field", [
        ("", ["a.png"], "single", None, "normal", "owner_id"),
        ("o", [], "batch", None, "normal", "item_refs"),
        ("o", "a.png", "single", None, "normal", "item_refs"),
        ("o", ["a.png", " "], "batch", None, "normal", "item_refs"),
        ("o", ["a.png", "b.png"], "single", None, "normal", "item_refs"),
        ("o", ["a.png"] * 11, "batch", None, "normal", "item_refs"),
        ("o", ["a.png"], "zip", None, "normal", "kind"),
        ("o", ["a.png"], "single", None, "urgent", "priority"),
        ("o", ["a.png"], "single", {"format": "gif"}, "normal", "format"),
        ("o", ["a.png"], "single", {"quality": 0}, "normal", "quality"),
        ("o", ["a.png"], "single", {"quality": 101}, "normal", "quality"),
        ("o", ["a.png"], "single", {"width": 0}, "normal", "width"),
        ("o", ["a.png"], "single", {"height": "tall"}, "normal", "height"),
        ("o", ["a.png"], "single", {"scale": 4}, "normal", "scale"),
        ("o", ["a.png"], "single", ["png"], "normal", "render_settings"),
    ])
    def test_invalid_submissions_are_rejected_before_enqueue(self, service, owner, items, kind, render_settings,
                                                             priority, field):
        with pytest.raises(ValidationError) as exc_info:
            service.submit(owner, items, kind, render_settings, priority=priority)

        assert exc_info.value.field == field
        assert service.list_jobs()[1] == 0
        assert service.queue_stats()["total"] == 0


class TestStatus:
    def test_unknown_job(self, service):
        with pytest.raises(NotFoundError):
            service.get_status("nope")

    def test_pending_job_status(self, service):
        job_id = service.submit("owner-1", ["a.png"])

        assert service.get_status(job_id) == {
            "status": "pending",
            "progress": 0,
            "failure_reason": None,
            "attempt_count": 0,
            "cancel_requested": False,
        }

    def test_list_jobs_filters_and_paginates(self, service, clock):
        for i in range(5):
            service.submit("alice" if i % 2 == 0 else "bob", ["a.png"], job_id=f"job-{i}")
            clock.advance(1)

        jobs, total = service.list_jobs(owner_id="alice", page=1, limit=2)
        assert total == 3
        assert [j.id for j in jobs] == ["job-4", "job-2"]

        jobs, total = service.list_jobs(owner_id="alice", page=2, limit=2)
        assert [j.id for j in jobs] == ["job-0"]

        assert service.list_jobs(status="completed") == ([], 0)

    def test_list_jobs_rejects_unknown_status(self, service):
        with pytest.raises(ValidationError):
            service.list_jobs(status="exploded")


class TestCancel:
    def test_cancel_pending(self, service, queue):
        job_id = service.submit("owner-1", ["a.png"])

        assert service.cancel(job_id) == "ok"

        assert service.get_status(job_id)["status"] == "cancelled"
        assert not queue.contains(job_id)

    def test_cancel_leased_job_only_sets_the_flag(self, service, queue):
        job_id = service.submit("owner-1", ["a.png"])
        queue.dequeue("w1", lease_seconds=60)

        assert service.cancel(job_id) == "ok"

        status = service.get_status(job_id)
        assert status["status"] == "pending"
        assert status["cancel_requested"] is True
        assert queue.contains(job_id)

    def test_cancel_terminal_job_is_a_conflict(self, service):
        job_id = service.submit("owner-1", ["a.png"])
        service.cancel(job_id)

        with pytest.raises(ConflictError) as exc_info:
            service.cancel(job_id)
        assert exc_info.value.code == "already_terminal"

    def test_cancel_unknown_job(self, service):
        with pytest.raises(NotFoundError):
            service.cancel("nope")


class TestRetry:
    def test_retry_requires_failed_job(self, service):
        job_id = service.submit("owner-1", ["a.png"])

        with pytest.raises(ConflictError) as exc_info:
            service.retry(job_id)
        assert exc_info.value.code == "not_failed"

    def test_retry_resets_failed_job(self, service, make_worker, queue):
        engine = ScriptedEngine(failures=[PermanentExecutionError("bad pixels")])
        worker = make_worker(render_engine=engine)
        job_id = service.submit("owner-1", ["a.png"])
        worker.process_next()
        assert service.get_status(job_id)["status"] == "failed"

        assert service.retry(job_id) == "ok"

        job = service.get_job(job_id)
        assert job.status == "pending"
        assert job.progress == 0
        assert job.failure_reason is None
        assert job.artifact_refs == []
        assert job.started_at is None
        assert job.completed_at is None
        assert job.attempt_count == 1
        assert queue.contains(job_id)

        worker.process_next()
        job = service.get_job(job_id)
        assert job.status == "completed"
        assert job.attempt_count == 2

    def test_retry_after_aggregation_failure_re_renders_everything(self, service, make_worker, store):
        job_id = service.submit("owner-1", ["a.png", "b.png"], "batch")
        first = f"exports/owner-1/{job_id}/export_{job_id}_0.png"
        engine = ScriptedEngine(on_render=lambda ref: store.delete(first) if ref == "b.png" else None)
        make_worker(render_engine=engine).process_next()
        assert service.get_status(job_id)["failure_reason"] == "aggregation_failed"

        service.retry(job_id)
        make_worker("second", render_engine=ScriptedEngine()).process_next()

        job = service.get_job(job_id)
        assert job.status == "completed"
        assert len(job.artifact_refs) == 2
        assert store.exists(job.aggregate_ref)

    def test_manual_retry_gets_a_fresh_attempt_budget(self, service, make_worker, settings, clock):
        engine = ScriptedEngine(failures=[TransientExecutionError("down")] * 4)
        worker = make_worker(render_engine=engine)
        job_id = service.submit("owner-1", ["a.png"])
        for _ in range(3):
            worker.process_next()
            clock.advance(3600)
        assert service.get_status(job_id)["status"] == "failed"

        service.retry(job_id)
        worker.process_next()

        job = service.get_job(job_id)
        assert job.attempt_count == 4
        assert job.status == "processing"  # retry scheduled, not exhausted

    def test_retry_still_queues_when_artifact_cleanup_fails(self, service, make_worker, store, queue, monkeypatch):
        engine = ScriptedEngine(failures=[PermanentExecutionError("bad pixels")])
        job_id = service.submit("owner-1", ["a.png"])
        make_worker(render_engine=engine).process_next()

        def unavailable(refs):
            raise TransientExecutionError("storage unavailable")

        monkeypatch.setattr(store, "delete_many", unavailable)

        assert service.retry(job_id) == "ok"

        assert service.get_status(job_id)["status"] == "pending"
        assert queue.contains(job_id)
        monkeypatch.undo()
        make_worker("second", render_engine=ScriptedEngine()).process_next()
        assert service.get_status(job_id)["status"] == "completed"

    def test_retry_unknown_job(self, service):
        with pytest.raises(NotFoundError):
            service.retry("nope")


class TestArtifacts:
    def test_not_completed(self, service):
        job_id = service.submit("owner-1", ["a.png"])

        with pytest.raises(ConflictError) as exc_info:
            service.get_artifacts(job_id)
        assert exc_info.value.code == "not_completed"

    def test_available_until_expiry_then_expired(self, service, worker, clock):
        job_id = service.submit("owner-1", ["a.png", "b.png"], "batch")
        worker.process_next()
        expires_at = service.get_job(job_id).expires_at

        result = service.get_artifacts(job_id)
        assert len(result["item_refs"]) == 2
        assert result["aggregate_ref"] is not None
        assert result["expires_at"] == expires_at

        clock.current = expires_at
        assert service.get_artifacts(job_id)["item_refs"] == result["item_refs"]

        clock.advance(0.001)
        with pytest.raises(ExpiredArtifactError):
            service.get_artifacts(job_id)
        with pytest.raises(ExpiredArtifactError):
            service.open_artifact(job_id, result["item_refs"][0])

    def test_open_artifact(self, service, worker):
        job_id = service.submit("owner-1", ["a.png"])
        worker.process_next()
        ref = service.get_artifacts(job_id)["item_refs"][0]

        assert service.open_artifact(job_id, ref) == b"rendered:a.png:png"

    def test_open_artifact_of_another_job(self, service, worker):
        job_id = service.submit("owner-1", ["a.png"])
        other_id = service.submit("owner-2", ["b.png"])
        worker.process_next()
        worker.process_next()
        other_ref = service.get_artifacts(other_id)["item_refs"][0]

        with pytest.raises(NotFoundError):
            service.open_artifact(job_id, other_ref)

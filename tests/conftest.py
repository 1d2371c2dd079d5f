"""Pytest configuration and fixtures for exportctl tests"""

from datetime import datetime, timedelta, timezone

import pytest

from artifacts import LocalStorage
from events import EventBus
from exports import ExportService
from job_queue import JobQueue
from render import RenderEngine
from settings import Settings
from storage import Storage
from worker import Worker


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)


class ScriptedEngine(RenderEngine):
    """Render engine returning predictable bytes, with scripted failures.

    `failures` is consumed one entry per render call: an exception instance is
    raised, None means succeed. `on_render` runs before each call.
    """

    def __init__(self, failures=None, on_render=None):
        self.failures = list(failures or [])
        self.on_render = on_render
        self.calls = []

    def render(self, settings, item_ref):
        self.calls.append(item_ref)
        if self.on_render:
            self.on_render(item_ref)
        if self.failures:
            exc = self.failures.pop(0)
            if exc is not None:
                raise exc
        return f"rendered:{item_ref}:{settings.format}".encode()


class EventRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, event, job_id, data):
        self.events.append((event, job_id, data))

    def of(self, event):
        return [data for name, _, data in self.events if name == event]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "exports.db")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        worker_count=2,
        lease_seconds=60,
        poll_interval=0.01,
        job_timeout_seconds=30,
        max_attempts=3,
        backoff_base=1.0,
        backoff_max_seconds=60.0,
        retention_days=7.0,
        sweep_interval=3600.0,
        max_items_per_job=10,
        storage_dir=str(tmp_path / "store"),
        source_dir=str(tmp_path / "source"),
    )


@pytest.fixture
def db(db_path, clock):
    storage = Storage(db_path, clock=clock)
    yield storage
    storage.close()


@pytest.fixture
def queue(db):
    return JobQueue(db, poll_interval=0.01)


@pytest.fixture
def store(settings):
    return LocalStorage(settings.storage_dir)


@pytest.fixture
def service(db, settings, store):
    return ExportService(db=db, settings=settings, artifacts=store)


@pytest.fixture
def engine():
    return ScriptedEngine()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def bus(recorder):
    bus = EventBus()
    bus.subscribe(recorder)
    return bus


@pytest.fixture
def make_worker(db_path, settings, store, engine, bus, clock):
    created = []

    def factory(worker_id="worker-test", render_engine=None, worker_settings=None):
        w = Worker(render_engine or engine, store, db_path=db_path, settings=worker_settings or settings,
                   events_bus=bus, worker_id=worker_id, clock=clock)
        created.append(w)
        return w

    yield factory
    for w in created:
        w.db.close()


@pytest.fixture
def worker(make_worker):
    return make_worker()

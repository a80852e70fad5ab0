import threading
from unittest import mock

from displaypush.dispatcher import Dispatcher
from displaypush.models import STATUS_COMPLETED, STATUS_FAILED, STATUS_QUEUED
from displaypush.worker import UploadWorker

from conftest import FakeSession

CREDS = {"username": "alice", "password": "s3cret"}
SETTINGS = {"interval_minutes": 0, "cycle": False, "display": "12"}


def queue_job(store, tmp_path, name="A.png", owner="user-1"):
    path = tmp_path / name
    path.write_bytes(b"img")
    return store.create_job(owner, CREDS, [{"path": str(path), "name": name}], SETTINGS)


def test_tick_is_noop_on_empty_queue(store):
    run_job = mock.Mock()
    dispatcher = Dispatcher(store, run_job)

    assert dispatcher.tick() is None
    run_job.assert_not_called()


def test_tick_claims_one_job_and_runs_it_in_background(store, tmp_path):
    first = queue_job(store, tmp_path, "A.png")
    second = queue_job(store, tmp_path, "B.png")
    seen = []
    dispatcher = Dispatcher(store, lambda job: seen.append((job.id, threading.current_thread().name)))

    job = dispatcher.tick()
    dispatcher.join(timeout=5)

    assert job.id == first
    assert seen == [(first, f"job-{first}")]
    assert store.get_status(second) == STATUS_QUEUED


def test_tick_does_not_wait_for_worker(store, tmp_path):
    queue_job(store, tmp_path)
    release = threading.Event()
    dispatcher = Dispatcher(store, lambda job: release.wait(5))

    dispatcher.tick()
    assert len(dispatcher.active_workers()) == 1

    release.set()
    dispatcher.join(timeout=5)
    assert dispatcher.active_workers() == []


def test_claim_errors_are_logged_not_raised():
    store = mock.Mock()
    store.claim_next.side_effect = RuntimeError("database is locked")
    dispatcher = Dispatcher(store, mock.Mock())

    assert dispatcher.tick() is None


def test_worker_exception_does_not_escape(store, tmp_path):
    queue_job(store, tmp_path, "A.png")
    queue_job(store, tmp_path, "B.png")

    def explode(job):
        raise RuntimeError("boom")

    dispatcher = Dispatcher(store, explode)
    dispatcher.tick()
    dispatcher.join(timeout=5)

    assert dispatcher.tick() is not None


def test_failed_worker_start_marks_job_failed(store, tmp_path):
    job_id = queue_job(store, tmp_path)
    dispatcher = Dispatcher(store, mock.Mock())

    with mock.patch("displaypush.dispatcher.threading.Thread") as thread_cls:
        thread_cls.return_value.start.side_effect = RuntimeError("can't start new thread")
        dispatcher.tick()

    assert store.get_status(job_id) == STATUS_FAILED


def test_run_keeps_ticking_until_stopped():
    stop = threading.Event()
    calls = []

    def claim_next():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient")
        if len(calls) >= 3:
            stop.set()
        return None

    store = mock.Mock()
    store.claim_next.side_effect = claim_next
    dispatcher = Dispatcher(store, mock.Mock(), poll_interval=0.01)

    dispatcher.run(stop)

    assert len(calls) == 3


def test_dispatcher_drives_worker_to_completion(store, config, tmp_path):
    job_id = queue_job(store, tmp_path)
    worker = UploadWorker(store, config, session_factory=FakeSession(), sleep=lambda s: None)
    dispatcher = Dispatcher(store, worker)

    dispatcher.tick()
    dispatcher.join(timeout=10)

    assert store.get_status(job_id) == STATUS_COMPLETED
    assert not (tmp_path / "A.png").exists()

import asyncio

from conftest import FakeSessionFactory

from supportrag.services.ingestion import BatchResult
from supportrag.services.sync import SyncResult
from supportrag.workers import ingestion as ingestion_worker
from supportrag.workers import sync as sync_worker
from supportrag.workers.base import BaseWorker
from supportrag.workers.ingestion import IngestionWorker
from supportrag.workers.runner import build_workers
from supportrag.workers.sync import SyncWorker


def test_full_batch_means_more_work(monkeypatch):
    selected = []

    async def fake_batch(session_factory, limit=None, embedder=None):
        return BatchResult(selected=selected.pop(0))

    monkeypatch.setattr(ingestion_worker, "process_ingestion_batch", fake_batch)
    worker = IngestionWorker(session_factory=FakeSessionFactory(), batch_size=10)

    selected.extend([10, 3])
    assert asyncio.run(worker.run_once()) is True
    assert asyncio.run(worker.run_once()) is False


def test_run_loop_survives_errors_and_stops():
    class FlakyWorker(BaseWorker):
        name = "flaky"

        def __init__(self):
            super().__init__(poll_interval=0.001)
            self.calls = 0

        async def run_once(self) -> bool:
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("database restarting")
            self.stop()
            return True

    worker = FlakyWorker()
    asyncio.run(worker.run())

    assert worker.calls == 2
    assert not worker.running


def test_sync_worker_runs_on_interval(monkeypatch):
    runs = []

    async def fake_sync_all(session):
        runs.append("sync")
        return SyncResult(enqueued={"ticket": 2})

    async def fake_cleanup(session):
        runs.append("cleanup")
        return {"ticket": 1}

    monkeypatch.setattr(sync_worker, "sync_all", fake_sync_all)
    monkeypatch.setattr(sync_worker, "cleanup_orphaned_sources", fake_cleanup)
    factory = FakeSessionFactory()
    worker = SyncWorker(session_factory=factory, interval_seconds=3600)

    assert worker.is_due()
    assert asyncio.run(worker.run_once()) is False
    assert runs == ["sync", "cleanup"]
    assert factory.calls == 2

    assert not worker.is_due()
    asyncio.run(worker.run_once())
    assert runs == ["sync", "cleanup"]


def test_worker_pool():
    workers = build_workers(concurrency=3)

    assert [w.name for w in workers] == ["ingestion-1", "ingestion-2", "ingestion-3", "sync"]
    assert isinstance(workers[-1], SyncWorker)

import threading
from datetime import timedelta

import pytest

from errors import AlreadyUsedError, ConflictError
from gate import GateScanProcessor
from models import PassStatus
from notifier import NotificationDispatcher
from passes import PassManager
from store import PassStore


class StaleFirstReadStore(PassStore):
    """Hands out a stale snapshot on the first barcode lookup, like a terminal that read just before another one wrote."""

    def __init__(self, session_factory, snapshot):
        super().__init__(session_factory)
        self.snapshot = snapshot
        self.writes = 0

    def get_by_barcode(self, barcode):
        if self.snapshot is not None:
            stale, self.snapshot = self.snapshot, None
            return stale
        return super().get_by_barcode(barcode)

    def conditional_update(self, pass_id, expected_version, patch):
        self.writes += 1
        return super().conditional_update(pass_id, expected_version, patch)


class AlwaysConflictStore(PassStore):

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.attempts = 0

    def conditional_update(self, pass_id, expected_version, patch):
        self.attempts += 1
        raise ConflictError(f"Pass {pass_id} was modified concurrently")


def test_conditional_update_rejects_stale_version(services, student, make_pass, clock):
    record = make_pass(student)
    store = services.passes.store

    updated = store.conditional_update(record.id, record.version, {"status": PassStatus.EXITED, "exit_time": clock()})
    assert updated.version == record.version + 1

    with pytest.raises(ConflictError):
        store.conditional_update(record.id, record.version, {"status": PassStatus.EXITED, "exit_time": clock()})


def test_racing_exit_scans_record_one_exit(services, session_factory, student, make_pass, clock, notifier):
    record = make_pass(student)
    stale = services.passes.store.get_by_barcode(record.barcode)

    first = services.gate.scan(record.barcode)
    assert first.scan_type == "exit"
    exit_time = first.pass_.exit_time

    clock.advance(seconds=2)
    store = StaleFirstReadStore(session_factory, stale)
    other_terminal = GateScanProcessor(store, services.users, NotificationDispatcher(notifier), clock=clock)

    with pytest.raises(AlreadyUsedError):
        other_terminal.scan(record.barcode)

    assert store.writes == 1
    stored = services.passes.get_pass(record.id)
    assert stored.status == PassStatus.EXITED
    assert stored.exit_time == exit_time
    assert stored.entry_time is None


def test_threaded_exit_scans(services, student, make_pass):
    record = make_pass(student)
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def terminal():
        barrier.wait()
        try:
            result = services.gate.scan(record.barcode).scan_type
        except AlreadyUsedError:
            result = "already_used"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=terminal) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(outcomes) == 2
    assert outcomes.count("exit") == 1
    assert services.passes.get_pass(record.id).exit_time is not None


def test_conflict_surfaces_after_one_retry(services, session_factory, student, clock, notifier):
    record = services.passes.create_pass(student.id, "outing", None, clock(), clock() + timedelta(hours=1))
    store = AlwaysConflictStore(session_factory)
    manager = PassManager(store, services.users, NotificationDispatcher(notifier), clock=clock)

    with pytest.raises(ConflictError):
        manager.approve_by_warden(record.id)

    assert store.attempts == 2
    assert services.passes.get_pass(record.id).status == PassStatus.PENDING

import uuid
from datetime import timedelta

import pytest

from errors import AlreadyUsedError, ExpiredError, InvalidStateError, NotFoundError, NotYetValidError, ValidationError
from models import PassStatus


def test_exit_then_entry_within_window(services, clock, student, make_pass, notifier):
    record = make_pass(student, status=PassStatus.ACTIVE)

    result = services.gate.scan(record.barcode)
    assert result.scan_type == "exit"
    assert result.pass_.status == PassStatus.EXITED
    assert result.pass_.exit_time == clock()
    assert result.pass_.entry_time is None
    assert result.student_name == student.name

    clock.advance(minutes=30)
    result = services.gate.scan(record.barcode)
    assert result.scan_type == "entry"
    assert result.pass_.status == PassStatus.ENTERED
    assert result.pass_.entry_time == clock()
    assert notifier.of_type("late_entry") == []


@pytest.mark.parametrize("status", [PassStatus.ACTIVE, PassStatus.APPROVED, PassStatus.APPROVED_WARDEN])
def test_scannable_statuses_exit(services, student, make_pass, status):
    record = make_pass(student, status=status)
    assert services.gate.scan(record.barcode).scan_type == "exit"


@pytest.mark.parametrize("status", [PassStatus.PENDING, PassStatus.APPROVED_PARENT, PassStatus.REJECTED])
def test_non_scannable_statuses(services, student, make_pass, status):
    record = make_pass(student, status=status)

    with pytest.raises(InvalidStateError) as exc:
        services.gate.scan(record.barcode)
    assert exc.value.status == status.value
    assert status.value in exc.value.message

    stored = services.passes.get_pass(record.id)
    assert stored.status == status
    assert stored.version == record.version
    assert stored.exit_time is None


def test_late_entry_alerts_warden_and_parent(services, clock, student, parent, make_pass, notifier):
    deadline = clock() - timedelta(hours=1)
    record = make_pass(student, status=PassStatus.EXITED,
                       valid_from=clock() - timedelta(hours=3), valid_to=deadline,
                       exit_time=clock() - timedelta(hours=2))

    result = services.gate.scan(record.barcode)

    assert result.scan_type == "entry"
    assert result.pass_.status == PassStatus.ENTERED
    alerts = notifier.of_type("late_entry")
    assert [a["channel"] for a in alerts] == ["warden_alerts", f"parent_{parent.id}_alerts"]
    data = alerts[0]["data"]
    assert data["passId"] == record.id
    assert data["studentName"] == student.name
    assert data["entryTime"] == clock().isoformat()
    assert data["validUntil"] == deadline.isoformat()
    # 09:00 UTC shown in IST
    assert alerts[0]["body"] == f"Student {student.name} LATE ENTRY at 14:30."


def test_late_entry_without_parent_only_alerts_warden(services, clock, unlinked_student, make_pass, notifier):
    record = make_pass(unlinked_student, status=PassStatus.EXITED,
                       valid_from=clock() - timedelta(hours=3), valid_to=clock() - timedelta(minutes=1),
                       exit_time=clock() - timedelta(hours=2))

    services.gate.scan(record.barcode)
    assert [a["channel"] for a in notifier.of_type("late_entry")] == ["warden_alerts"]


def test_expired_unused_pass_cannot_exit(services, clock, student, make_pass):
    record = make_pass(student, status=PassStatus.ACTIVE,
                       valid_from=clock() - timedelta(hours=3), valid_to=clock() - timedelta(hours=1))

    with pytest.raises(ExpiredError) as exc:
        services.gate.scan(record.barcode)
    assert exc.value.extra["validTo"] == record.valid_to.isoformat()

    stored = services.passes.get_pass(record.id)
    assert stored.status == PassStatus.ACTIVE
    assert stored.exit_time is None


def test_not_yet_valid_outside_grace(services, clock, student, make_pass):
    record = make_pass(student, valid_from=clock() + timedelta(minutes=6), valid_to=clock() + timedelta(hours=2))
    with pytest.raises(NotYetValidError):
        services.gate.scan(record.barcode)
    assert services.passes.get_pass(record.id).exit_time is None


def test_grace_period_allows_early_scan(services, clock, student, make_pass):
    record = make_pass(student, valid_from=clock() + timedelta(minutes=5), valid_to=clock() + timedelta(hours=2))
    assert services.gate.scan(record.barcode).scan_type == "exit"


def test_third_scan_is_already_used(services, clock, student, make_pass):
    record = make_pass(student)
    services.gate.scan(record.barcode)
    services.gate.scan(record.barcode)

    with pytest.raises(AlreadyUsedError):
        services.gate.scan(record.barcode)

    stored = services.passes.get_pass(record.id)
    assert stored.status == PassStatus.ENTERED
    assert stored.exit_time is not None and stored.entry_time is not None


def test_both_times_set_is_already_used(services, clock, student, make_pass):
    record = make_pass(student, status=PassStatus.EXITED,
                       exit_time=clock() - timedelta(minutes=20), entry_time=clock() - timedelta(minutes=10))
    with pytest.raises(AlreadyUsedError):
        services.gate.scan(record.barcode)


def test_unknown_barcode(services):
    with pytest.raises(NotFoundError):
        services.gate.scan(str(uuid.uuid4()))


def test_blank_barcode(services):
    with pytest.raises(ValidationError):
        services.gate.scan("")


def test_full_workflow_to_gate(services, clock, student, parent):
    record = services.passes.create_pass(student.id, "outing", "Market",
                                         clock(), clock() + timedelta(hours=3))

    services.passes.approve_by_parent(record.id, parent.id)
    with pytest.raises(InvalidStateError):
        services.gate.scan(record.barcode)

    services.passes.approve_by_warden(record.id)
    clock.advance(minutes=10)
    assert services.gate.scan(record.barcode).scan_type == "exit"
    clock.advance(hours=4)
    assert services.gate.scan(record.barcode).scan_type == "entry"


def test_entry_never_precedes_exit(services, clock, student, make_pass):
    passes = [make_pass(student, status=s) for s in PassStatus]
    for record in passes:
        for _ in range(3):
            try:
                services.gate.scan(record.barcode)
            except (InvalidStateError, ExpiredError, NotYetValidError):
                pass
            clock.advance(minutes=1)

    for record in passes:
        stored = services.passes.get_pass(record.id)
        if stored.entry_time is not None:
            assert stored.exit_time is not None
            assert stored.exit_time <= stored.entry_time

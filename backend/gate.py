"""
Gate scan processing.

A pass supports exactly one round trip: the first accepted scan records
the exit, the second records the entry, anything after that is refused.
An unused pass cannot leave after it expires, but a student already
outside is always let back in; a return after ``valid_to`` raises a
late-entry alert instead.
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from clock import utcnow
from errors import AlreadyUsedError, ExpiredError, InvalidStateError, NotFoundError, NotYetValidError, ValidationError
from models import Pass, PassStatus
from notifier import WARDEN_CHANNEL, NotificationDispatcher, parent_channel
from passes import SCANNABLE, ensure_transition
from store import PassStore
from users import UserDirectory

logger = logging.getLogger(__name__)

SCAN_GRACE_MINUTES = int(os.getenv("SCAN_GRACE_MINUTES", "5"))
# Only used to print the local clock time in the late-entry message (IST by default)
ALERT_UTC_OFFSET_MINUTES = int(os.getenv("ALERT_UTC_OFFSET_MINUTES", "330"))

EXIT = "exit"
ENTRY = "entry"


@dataclass
class ScanResult:
    scan_type: str
    pass_: Pass
    student_name: Optional[str]


class GateScanProcessor:

    def __init__(
        self,
        store: PassStore,
        users: UserDirectory,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
        grace_minutes: int = SCAN_GRACE_MINUTES,
        alert_utc_offset_minutes: int = ALERT_UTC_OFFSET_MINUTES,
    ):
        self.store = store
        self.users = users
        self.dispatcher = dispatcher
        self.clock = clock
        self.grace = timedelta(minutes=grace_minutes)
        self.alert_offset = timedelta(minutes=alert_utc_offset_minutes)

    def scan(self, barcode: str) -> ScanResult:
        """
        Apply one barcode scan.

        The scan type is fixed by the first read. If a concurrent writer
        wins the conditional update, the retry re-reads the pass and fails
        with AlreadyUsedError when that scan type no longer applies, so two
        terminals scanning the same pass can never both record an exit.
        """
        if not barcode:
            raise ValidationError("barcode required")

        now = self.clock()
        intended: Dict[str, str] = {}

        def load() -> Pass:
            record = self.store.get_by_barcode(barcode)
            if not record:
                raise NotFoundError("Pass not found")
            return record

        def plan(current: Pass) -> Dict:
            scan_type = self.classify(current, now)
            if intended and intended["scan_type"] != scan_type:
                raise AlreadyUsedError(current.status, f"Pass already scanned for {intended['scan_type']}")
            intended["scan_type"] = scan_type
            if scan_type == EXIT:
                return {"exit_time": now, "status": PassStatus.EXITED, "updated_at": now}
            return {"entry_time": now, "status": PassStatus.ENTERED, "updated_at": now}

        try:
            updated = self.store.update_with_retry(load, plan)
        except (InvalidStateError, NotYetValidError, ExpiredError) as e:
            logger.warning(f"Scan refused for barcode {barcode}: {e.message}")
            raise

        scan_type = intended["scan_type"]
        owner = self.users.get_by_id(updated.user_id)
        student_name = owner.name if owner else None
        logger.info(f"Pass {updated.id} scanned: {scan_type} at {now.isoformat()}")

        if scan_type == ENTRY and now > updated.valid_to:
            self._late_entry_alert(updated, owner, now)

        return ScanResult(scan_type=scan_type, pass_=updated, student_name=student_name)

    def classify(self, record: Pass, now: datetime) -> str:
        """Decide whether a scan at ``now`` is an exit or an entry, or raise."""
        status = PassStatus(record.status)
        if status == PassStatus.ENTERED:
            raise AlreadyUsedError(status, "Pass already used for entry")
        if status not in SCANNABLE:
            raise InvalidStateError(status)

        if record.valid_from > now + self.grace:
            raise NotYetValidError("Pass not yet valid", validFrom=record.valid_from.isoformat())

        if record.valid_to < now and record.exit_time is None:
            raise ExpiredError("Pass expired", validTo=record.valid_to.isoformat())

        if record.exit_time is None:
            ensure_transition(status, PassStatus.EXITED)
            return EXIT
        if record.entry_time is None:
            ensure_transition(status, PassStatus.ENTERED)
            return ENTRY
        raise AlreadyUsedError(status, "Pass already used for entry")

    def _late_entry_alert(self, record: Pass, owner, now: datetime) -> None:
        name = owner.name if owner else "Unknown"
        local_time = (now + self.alert_offset).strftime("%H:%M")
        title = "LATE ENTRY ALERT"
        body = f"Student {name} LATE ENTRY at {local_time}."
        data = {
            "type": "late_entry",
            "passId": record.id,
            "studentId": record.user_id,
            "studentName": name,
            "entryTime": now.isoformat(),
            "validUntil": record.valid_to.isoformat(),
        }
        logger.warning(f"Late entry on pass {record.id}: deadline {record.valid_to.isoformat()}, entered {now.isoformat()}")

        self.dispatcher.send(WARDEN_CHANNEL, title, body, data)
        if owner is not None and owner.parent_id:
            self.dispatcher.send(parent_channel(owner.parent_id), title, body, data)

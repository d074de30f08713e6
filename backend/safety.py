"""
SOS alerts and location reports from the student app.

Geofence checks happen on the device; a report only carries the verdict.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from clock import utcnow
from errors import InvalidStateError, NotFoundError, ValidationError
from models import LocationReport, Role, SosAlert, User
from notifier import ADMIN_GEOFENCE_CHANNEL, ADMIN_SOS_CHANNEL, NotificationDispatcher, parent_channel, user_channel
from users import UserDirectory

logger = logging.getLogger(__name__)

ACTIVE = "active"
RESOLVED = "resolved"
ALERT_TYPES = ("manual", "geofence")


class SafetyService:

    def __init__(
        self,
        session_factory,
        users: UserDirectory,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.users = users
        self.dispatcher = dispatcher
        self.clock = clock

    # SOS

    def raise_sos(
        self,
        student_id: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        alert_type: str = "manual",
    ) -> SosAlert:
        if not student_id:
            raise ValidationError("studentId required")
        if alert_type not in ALERT_TYPES:
            raise ValidationError(f"alertType must be one of {', '.join(ALERT_TYPES)}")
        student = self.users.get_by_id(student_id)
        if not student:
            raise NotFoundError("Student not found")

        now = self.clock()
        sos = self._save(SosAlert(
            student_id=student.id,
            latitude=latitude,
            longitude=longitude,
            alert_type=alert_type,
            status=ACTIVE,
            created_at=now,
        ))
        logger.warning(f"SOS {sos.id} raised by {student.id} ({alert_type})")

        title = "SOS Alert!"
        body = f"{student.name} has triggered an emergency alert"
        data = {
            "type": "sos_alert",
            "studentId": student.id,
            "studentName": student.name,
            "alertType": alert_type,
            "latitude": latitude,
            "longitude": longitude,
            "timestamp": now.isoformat(),
        }
        if student.parent_id:
            self.dispatcher.send(parent_channel(student.parent_id), title, body, data)
        else:
            logger.warning(f"Student {student.id} has no parent linked, parent SOS notification skipped")
        self.dispatcher.send(ADMIN_SOS_CHANNEL, title, body, data)
        return sos

    def list_active_sos(self, caller: User) -> List[SosAlert]:
        db = self.session_factory()
        try:
            q = db.query(SosAlert).filter(SosAlert.status == ACTIVE)
            if caller.role == Role.PARENT:
                child_ids = [c.id for c in self.users.find_children_of(caller.id)]
                q = q.filter(SosAlert.student_id.in_(child_ids))
            elif caller.role in (Role.STUDENT, Role.GUARD):
                q = q.filter(SosAlert.student_id == caller.id)
            return q.order_by(SosAlert.created_at.desc()).all()
        finally:
            db.close()

    def resolve_sos(self, sos_id: str, resolver_id: str) -> SosAlert:
        db = self.session_factory()
        try:
            sos = db.get(SosAlert, sos_id)
            if not sos:
                raise NotFoundError("SOS alert not found")
            if sos.status == RESOLVED:
                raise InvalidStateError(sos.status, "SOS alert already resolved")
            sos.status = RESOLVED
            sos.resolved_at = self.clock()
            sos.resolved_by = resolver_id
            db.commit()
            db.refresh(sos)
            logger.info(f"SOS {sos_id} resolved by {resolver_id}")
            return sos
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def sos_history(self, student_id: str) -> List[SosAlert]:
        db = self.session_factory()
        try:
            return db.query(SosAlert)\
                .filter(SosAlert.student_id == student_id)\
                .order_by(SosAlert.created_at.desc())\
                .all()
        finally:
            db.close()

    # Location

    def report_location(
        self,
        student_id: str,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
        is_geofence_violation: bool = False,
    ) -> LocationReport:
        if not student_id or latitude is None or longitude is None:
            raise ValidationError("studentId, latitude, longitude required")
        student = self.users.get_by_id(student_id)
        if not student:
            raise NotFoundError("Student not found")

        now = self.clock()
        report = self._save(LocationReport(
            student_id=student.id,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            is_geofence_violation=bool(is_geofence_violation),
            timestamp=now,
        ))

        if is_geofence_violation:
            self._save(SosAlert(
                student_id=student.id,
                latitude=latitude,
                longitude=longitude,
                alert_type="geofence",
                status=ACTIVE,
                created_at=now,
            ))
            title = "Geofence Violation"
            body = f"{student.name} is outside campus boundaries"
            data = {
                "type": "geofence_violation",
                "studentId": student.id,
                "studentName": student.name,
                "latitude": latitude,
                "longitude": longitude,
                "timestamp": now.isoformat(),
            }
            if student.parent_id:
                self.dispatcher.send(parent_channel(student.parent_id), title, body, data)
            self.dispatcher.send(ADMIN_GEOFENCE_CHANNEL, title, body, data)
        return report

    def latest_location(self, student_id: str) -> LocationReport:
        db = self.session_factory()
        try:
            report = db.query(LocationReport)\
                .filter(LocationReport.student_id == student_id)\
                .order_by(LocationReport.timestamp.desc())\
                .first()
        finally:
            db.close()
        if not report:
            raise NotFoundError("No location data found")
        return report

    def location_history(self, student_id: str, limit: int = 100) -> List[LocationReport]:
        db = self.session_factory()
        try:
            return db.query(LocationReport)\
                .filter(LocationReport.student_id == student_id)\
                .order_by(LocationReport.timestamp.desc())\
                .limit(limit)\
                .all()
        finally:
            db.close()

    def geofence_violations(self) -> List[Tuple[LocationReport, User]]:
        """Latest violating report per student, newest first."""
        db = self.session_factory()
        try:
            rows = db.query(LocationReport, User)\
                .join(User, User.id == LocationReport.student_id)\
                .filter(LocationReport.is_geofence_violation.is_(True))\
                .order_by(LocationReport.timestamp.desc())\
                .all()
        finally:
            db.close()
        latest = {}
        for report, student in rows:
            latest.setdefault(student.id, (report, student))
        return list(latest.values())

    def request_location_update(self, student_id: str, requester_id: str) -> None:
        """Ask the student's app to push a fresh location report."""
        if not student_id:
            raise ValidationError("studentId required")
        student = self.users.get_by_id(student_id)
        if not student or student.role != Role.STUDENT:
            raise NotFoundError("Student not found")
        logger.info(f"Location update for {student_id} requested by {requester_id}")
        self.dispatcher.send(user_channel(student), "Location Request", "Updating location...",
                             {"type": "location_request", "requesterId": requester_id})

    def _save(self, record):
        db = self.session_factory()
        try:
            db.add(record)
            db.commit()
            db.refresh(record)
            return record
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

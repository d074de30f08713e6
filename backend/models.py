"""
SQLAlchemy models for the campus pass system.
"""
import uuid
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float, ForeignKey
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    STUDENT = "student"
    PARENT = "parent"
    WARDEN = "warden"
    GUARD = "guard"
    ADMIN = "admin"


class PassStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    APPROVED_PARENT = "approved_parent"
    APPROVED_WARDEN = "approved_warden"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXITED = "exited"
    ENTERED = "entered"


class User(Base):
    """Campus account. Students may point at one parent account."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    role = Column(SAEnum(Role, native_enum=False, values_callable=lambda e: [m.value for m in e]),
                  nullable=False, default=Role.STUDENT)
    parent_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    fcm_token = Column(String, nullable=True)  # Device push token
    created_at = Column(DateTime, nullable=False)


class Pass(Base):
    """Time-boxed authorization for one exit/entry cycle through the gate."""
    __tablename__ = "passes"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # e.g. "outing"
    purpose = Column(String, nullable=True)
    valid_from = Column(DateTime, nullable=False)
    valid_to = Column(DateTime, nullable=False)
    barcode = Column(String, unique=True, nullable=False, index=True)
    status = Column(SAEnum(PassStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
                    nullable=False, index=True)
    rejection_reason = Column(String, nullable=True)
    exit_time = Column(DateTime, nullable=True)
    entry_time = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)  # Bumped by every conditional update
    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False, index=True)


class SosAlert(Base):
    """Emergency alert raised by a student (manual) or by a geofence report."""
    __tablename__ = "sos_alerts"

    id = Column(String(36), primary_key=True, default=new_id)
    student_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    alert_type = Column(String, nullable=False, default="manual")  # manual | geofence
    status = Column(String, nullable=False, default="active", index=True)  # active | resolved
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)


class LocationReport(Base):
    """Location sample pushed by the student app."""
    __tablename__ = "locations"

    id = Column(String(36), primary_key=True, default=new_id)
    student_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)  # Meters
    is_geofence_violation = Column(Boolean, default=False, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)


class Setting(Base):
    """Per-user app preferences. Created with defaults on first read."""
    __tablename__ = "settings"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    theme = Column(String, nullable=False, default="light")  # light | dark
    notifications = Column(Boolean, nullable=False, default=True)
    biometric = Column(Boolean, nullable=False, default=False)
    location_tracking = Column(Boolean, nullable=False, default=True)
    emergency_alerts = Column(Boolean, nullable=False, default=True)
    pass_notifications = Column(Boolean, nullable=False, default=True)
    auto_logout = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

import os
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Header, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from clock import utcnow
from database import SessionLocal, init_db, User
from errors import PassError
from gate import GateScanProcessor
from logger_helper import configure_logging, setup_logger, create_logging_middleware
from models import Pass, Role
from notifier import LoggingNotifier, NotificationDispatcher, WebhookNotifier
from passes import PassManager
from permissions import require
from safety import SafetyService
from store import PassStore
from users import UserDirectory

# Configuration
PUSH_GATEWAY_URL = os.getenv("PUSH_GATEWAY_URL")
PUSH_GATEWAY_TIMEOUT = float(os.getenv("PUSH_GATEWAY_TIMEOUT", "10"))
NOTIFY_WORKERS = int(os.getenv("NOTIFY_WORKERS", "4"))
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

logger = logging.getLogger(__name__)


@dataclass
class Services:
    users: UserDirectory
    passes: PassManager
    gate: GateScanProcessor
    safety: SafetyService
    dispatcher: NotificationDispatcher


def build_services(session_factory, dispatcher: NotificationDispatcher, clock=utcnow) -> Services:
    """Wire store, directory and services around one session factory."""
    users = UserDirectory(session_factory, clock=clock)
    store = PassStore(session_factory)
    return Services(
        users=users,
        passes=PassManager(store, users, dispatcher, clock=clock),
        gate=GateScanProcessor(store, users, dispatcher, clock=clock),
        safety=SafetyService(session_factory, users, dispatcher, clock=clock),
        dispatcher=dispatcher,
    )


def build_notifier():
    if PUSH_GATEWAY_URL:
        logger.info(f"Push gateway: {PUSH_GATEWAY_URL}")
        return WebhookNotifier(PUSH_GATEWAY_URL, timeout=PUSH_GATEWAY_TIMEOUT)
    logger.info("No PUSH_GATEWAY_URL set, notifications are logged only")
    return LoggingNotifier()


# Global service container
services: Optional[Services] = None

# Request Models
class GeneratePassRequest(BaseModel):
    userId: Optional[str] = None
    type: Optional[str] = None
    purpose: Optional[str] = None
    validFrom: Optional[datetime] = None
    validTo: Optional[datetime] = None

class ScanRequest(BaseModel):
    barcode: Optional[str] = None

class RejectRequest(BaseModel):
    reason: Optional[str] = None

class LinkStudentRequest(BaseModel):
    studentEmail: Optional[str] = None

class DeviceTokenRequest(BaseModel):
    token: Optional[str] = None

class SosRequest(BaseModel):
    studentId: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    alertType: str = "manual"

class LocationRequest(BaseModel):
    studentId: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    isGeofenceViolation: bool = False

class LocationUpdateRequest(BaseModel):
    studentId: Optional[str] = None

class SettingsRequest(BaseModel):
    theme: Optional[str] = None
    notifications: Optional[bool] = None
    biometric: Optional[bool] = None
    locationTracking: Optional[bool] = None
    emergencyAlerts: Optional[bool] = None
    passNotifications: Optional[bool] = None
    autoLogout: Optional[bool] = None

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize resources on startup."""
    global services

    configure_logging()
    init_db()
    logger.info("Database initialized")

    services = build_services(SessionLocal, NotificationDispatcher.threaded(build_notifier(), NOTIFY_WORKERS))
    logger.info("Pass services ready")

    yield

    services.dispatcher.shutdown()
    logger.info("Shutting down...")

app = FastAPI(
    title="Campus Pass Backend",
    description="Student entry/exit passes with parent and warden approval, gate scanning and SOS alerts",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

create_logging_middleware(app, setup_logger())


@app.exception_handler(PassError)
async def pass_error_handler(request, exc: PassError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Dependencies

def get_services() -> Services:
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services

def get_caller(
    x_user_id: Optional[str] = Header(default=None),
    svc: Services = Depends(get_services),
) -> User:
    """Resolve the calling user. Token verification happens upstream."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    caller = svc.users.get_by_id(x_user_id)
    if not caller:
        raise HTTPException(status_code=401, detail="Unknown caller")
    return caller


# Serialization

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def pass_to_dict(record: Pass, student_name: Optional[str] = None) -> dict:
    return {
        "id": record.id,
        "userId": record.user_id,
        "type": record.type,
        "purpose": record.purpose,
        "validFrom": _iso(record.valid_from),
        "validTo": _iso(record.valid_to),
        "barcode": record.barcode,
        "status": record.status.value,
        "rejectionReason": record.rejection_reason,
        "exitTime": _iso(record.exit_time),
        "entryTime": _iso(record.entry_time),
        "createdAt": _iso(record.created_at),
        "updatedAt": _iso(record.updated_at),
        "studentName": student_name,
    }

def passes_to_list(svc: Services, records) -> list:
    names = svc.users.names_for(r.user_id for r in records)
    return [pass_to_dict(r, names.get(r.user_id)) for r in records]

def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "parentId": user.parent_id,
        "createdAt": _iso(user.created_at),
    }

def sos_to_dict(sos) -> dict:
    return {
        "id": sos.id,
        "studentId": sos.student_id,
        "latitude": sos.latitude,
        "longitude": sos.longitude,
        "alertType": sos.alert_type,
        "status": sos.status,
        "resolvedAt": _iso(sos.resolved_at),
        "resolvedBy": sos.resolved_by,
        "createdAt": _iso(sos.created_at),
    }

def settings_to_dict(settings) -> dict:
    return {
        "theme": settings.theme,
        "notifications": settings.notifications,
        "biometric": settings.biometric,
        "locationTracking": settings.location_tracking,
        "emergencyAlerts": settings.emergency_alerts,
        "passNotifications": settings.pass_notifications,
        "autoLogout": settings.auto_logout,
        "updatedAt": _iso(settings.updated_at),
    }

def location_to_dict(report) -> dict:
    return {
        "id": report.id,
        "studentId": report.student_id,
        "latitude": report.latitude,
        "longitude": report.longitude,
        "accuracy": report.accuracy,
        "isGeofenceViolation": report.is_geofence_violation,
        "timestamp": _iso(report.timestamp),
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "running",
        "push_gateway": bool(PUSH_GATEWAY_URL),
    }

# Pass Endpoints

@app.post("/passes/generate", status_code=201)
def generate_pass(request: GeneratePassRequest, caller: User = Depends(get_caller),
                  svc: Services = Depends(get_services)):
    """Request a new pass. Students start pending; staff passes are active immediately."""
    require(caller.role, caller.id, "create_pass")
    requester_id = request.userId or caller.id
    if requester_id != caller.id:
        require(caller.role, caller.id, "create_pass_for_other")

    record = svc.passes.create_pass(requester_id, request.type, request.purpose,
                                    request.validFrom, request.validTo)
    return {"message": "Pass created", "pass": pass_to_dict(record)}

@app.get("/passes/pending/warden")
def pending_for_warden(caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "list_warden")
    return passes_to_list(svc, svc.passes.list_pending_for_warden())

@app.get("/passes/history/warden")
def history_for_warden(limit: Optional[int] = Query(default=None, ge=1, le=1000),
                       caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "list_warden")
    return passes_to_list(svc, svc.passes.list_history_for_warden(limit))

@app.get("/passes/pending/parent")
def pending_for_parent(caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "list_parent")
    return passes_to_list(svc, svc.passes.list_pending_for_parent(caller.id))

@app.get("/passes/user/{user_id}")
def passes_for_user(user_id: str, caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    target = svc.users.get_by_id(user_id)
    require(caller.role, caller.id, "view_user_passes", target)
    return passes_to_list(svc, svc.passes.list_for_user(user_id))

@app.post("/passes/scan")
def scan_pass(request: ScanRequest, caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    """Gate terminal scan: first scan records exit, second records entry."""
    require(caller.role, caller.id, "scan_pass")
    result = svc.gate.scan(request.barcode)
    return {
        "message": "Student Exited" if result.scan_type == "exit" else "Student Entered",
        "scanType": result.scan_type,
        "pass": pass_to_dict(result.pass_, result.student_name),
    }

@app.get("/passes/{pass_id}")
def get_pass(pass_id: str, caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "view_pass")
    record = svc.passes.get_pass(pass_id)
    return passes_to_list(svc, [record])[0]

@app.patch("/passes/{pass_id}/approve-parent")
def approve_by_parent(pass_id: str, caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    record = svc.passes.approve_by_parent(pass_id, caller.id)
    return {"message": "Approved by parent", "pass": pass_to_dict(record)}

@app.patch("/passes/{pass_id}/approve-warden")
def approve_by_warden(pass_id: str, caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "approve_warden")
    record = svc.passes.approve_by_warden(pass_id)
    return {"message": "Approved by warden", "pass": pass_to_dict(record)}

@app.patch("/passes/{pass_id}/reject")
def reject_pass(pass_id: str, request: RejectRequest, caller: User = Depends(get_caller),
                svc: Services = Depends(get_services)):
    owner = svc.users.get_by_id(svc.passes.get_pass(pass_id).user_id)
    require(caller.role, caller.id, "reject_pass", owner,
            message="Unauthorized: You are not the parent of this student.")
    record = svc.passes.reject_pass(pass_id, request.reason)
    return {"message": "Pass rejected", "pass": pass_to_dict(record)}

# User Endpoints

@app.post("/users/link-student")
def link_student(request: LinkStudentRequest, caller: User = Depends(get_caller),
                 svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "link_student")
    student = svc.users.link_student(caller.id, request.studentEmail)
    return {"message": "Student linked successfully",
            "student": {"name": student.name, "email": student.email}}

@app.get("/users/children")
def list_children(caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    return [user_to_dict(child) for child in svc.users.find_children_of(caller.id)]

@app.post("/users/device-token")
def register_device(request: DeviceTokenRequest, caller: User = Depends(get_caller),
                    svc: Services = Depends(get_services)):
    svc.users.register_device(caller.id, request.token)
    return {"message": "Device token registered"}

@app.get("/users")
def list_users(caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "list_users")
    return [user_to_dict(u) for u in svc.users.list_users()]

@app.get("/users/{user_id}")
def get_user(user_id: str, caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    """A user with their passes. Admins see anyone, others only themselves."""
    target = svc.users.get_by_id(user_id)
    require(caller.role, caller.id, "view_user", target,
            message="Forbidden: You can only view your own data")
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    body = user_to_dict(target)
    body["passes"] = [pass_to_dict(p, target.name) for p in svc.passes.list_for_user(user_id)]
    return body

# Settings Endpoints

@app.get("/settings")
def get_settings(caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    return {"settings": settings_to_dict(svc.users.get_settings(caller.id))}

@app.put("/settings")
def update_settings(request: SettingsRequest, caller: User = Depends(get_caller),
                    svc: Services = Depends(get_services)):
    settings = svc.users.update_settings(caller.id, request.model_dump(exclude_none=True))
    return {"message": "Settings updated successfully", "settings": settings_to_dict(settings)}

# SOS & Location Endpoints

@app.post("/sos", status_code=201)
def send_sos(request: SosRequest, caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    student_id = request.studentId or caller.id
    require(caller.role, caller.id, "raise_sos", svc.users.get_by_id(student_id))
    sos = svc.safety.raise_sos(student_id, request.latitude, request.longitude, request.alertType)
    return {"message": "SOS alert sent", "sos": sos_to_dict(sos)}

@app.get("/sos/active")
def active_sos(caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "view_sos")
    return [sos_to_dict(s) for s in svc.safety.list_active_sos(caller)]

@app.patch("/sos/{sos_id}/resolve")
def resolve_sos(sos_id: str, caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "resolve_sos")
    sos = svc.safety.resolve_sos(sos_id, caller.id)
    return {"message": "SOS alert resolved", "sos": sos_to_dict(sos)}

@app.get("/sos/history/{student_id}")
def sos_history(student_id: str, caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "track_student", svc.users.get_by_id(student_id))
    return [sos_to_dict(s) for s in svc.safety.sos_history(student_id)]

@app.post("/location", status_code=201)
def update_location(request: LocationRequest, caller: User = Depends(get_caller),
                    svc: Services = Depends(get_services)):
    student_id = request.studentId or caller.id
    require(caller.role, caller.id, "track_student", svc.users.get_by_id(student_id))
    report = svc.safety.report_location(student_id, request.latitude, request.longitude,
                                        request.accuracy, request.isGeofenceViolation)
    return {"message": "Location updated", "location": location_to_dict(report)}

@app.get("/location/violations")
def geofence_violations(caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "view_violations")
    return [
        {"student": {"id": student.id, "name": student.name, "email": student.email},
         "location": location_to_dict(report)}
        for report, student in svc.safety.geofence_violations()
    ]

@app.post("/location/request-update")
def request_location_update(request: LocationUpdateRequest, caller: User = Depends(get_caller),
                            svc: Services = Depends(get_services)):
    """Push a location request to the student app."""
    if request.studentId:
        require(caller.role, caller.id, "track_student", svc.users.get_by_id(request.studentId),
                message="Unauthorized to track this student")
    svc.safety.request_location_update(request.studentId, caller.id)
    return {"message": "Location request sent"}

@app.get("/location/{student_id}")
def latest_location(student_id: str, caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "track_student", svc.users.get_by_id(student_id))
    return location_to_dict(svc.safety.latest_location(student_id))

@app.get("/location/{student_id}/history")
def location_history(student_id: str, limit: int = Query(default=100, ge=1, le=1000),
                     caller: User = Depends(get_caller), svc: Services = Depends(get_services)):
    require(caller.role, caller.id, "track_student", svc.users.get_by_id(student_id))
    return [location_to_dict(r) for r in svc.safety.location_history(student_id, limit)]

# Demo data

@app.post("/seed-demo/")
def seed_demo(svc: Services = Depends(get_services)):
    """Seed the database with one account per role. Skipped if the admin exists."""
    if svc.users.get_by_email("admin@campus.demo"):
        return {"message": "Demo users already present. Clear the database to reseed."}

    parent = svc.users.create_user("Meera Nair", "parent@campus.demo", Role.PARENT.value)
    demo_people = [
        ("Arjun Nair", "student@campus.demo", Role.STUDENT.value, parent.id),
        ("Ravi Kumar", "warden@campus.demo", Role.WARDEN.value, None),
        ("Suresh Patil", "guard@campus.demo", Role.GUARD.value, None),
        ("Campus Admin", "admin@campus.demo", Role.ADMIN.value, None),
    ]
    created = [user_to_dict(parent)]
    for name, email, role, parent_id in demo_people:
        created.append(user_to_dict(svc.users.create_user(name, email, role, parent_id=parent_id)))

    return {
        "message": f"Successfully seeded {len(created)} demo users",
        "users": created,
        "note": "Send the user id as X-User-Id to act as that user.",
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
